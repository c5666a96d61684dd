import threading
from datetime import datetime
from typing import Dict, List, Optional

from shellpilot.errors import InvalidRequest, NotFound
from shellpilot.keys import parse_public_key
from shellpilot.models import (
    CommandRecord, Connection, SSHKeyRecord, STATUS_PENDING,
)


class MemoryStore:
    """In-process record store for connections, public keys and command history."""

    def __init__(self):
        self.lock = threading.Lock()
        self.connections: Dict[str, Connection] = {}
        self.keys: Dict[str, SSHKeyRecord] = {}
        self.commands: Dict[str, CommandRecord] = {}

    # ---- connections ----
    def list_connections(self) -> List[Connection]:
        with self.lock:
            return sorted(self.connections.values(), key=lambda c: c.created_at)

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        with self.lock:
            return self.connections.get(connection_id)

    def require_connection(self, connection_id: str) -> Connection:
        connection = self.get_connection(connection_id)
        if connection is None:
            raise NotFound(
                f"connection {connection_id} not found",
                hint="List connections with connection_list or create one with connection_create.",
            )
        return connection

    def create_connection(self, name: str, host: str, username: str, port: int = 22) -> Connection:
        if not host or not username:
            raise InvalidRequest("host and username are required")
        connection = Connection(name=name or f"{username}@{host}", host=host, username=username, port=int(port or 22))
        with self.lock:
            self.connections[connection.id] = connection
        return connection

    def delete_connection(self, connection_id: str) -> bool:
        with self.lock:
            return self.connections.pop(connection_id, None) is not None

    def set_connection_active(self, connection_id: str, active: bool) -> None:
        with self.lock:
            connection = self.connections.get(connection_id)
            if connection is None:
                return
            if active:
                for other in self.connections.values():
                    other.is_active = False
            connection.is_active = active

    def active_connection(self) -> Optional[Connection]:
        with self.lock:
            for connection in self.connections.values():
                if connection.is_active:
                    return connection
        return None

    # ---- public keys ----
    def list_keys(self) -> List[SSHKeyRecord]:
        with self.lock:
            return [key for key in self.keys.values() if key.is_active]

    def get_key(self, key_id: str) -> Optional[SSHKeyRecord]:
        with self.lock:
            return self.keys.get(key_id)

    def create_key(self, name: str, public_key: str) -> SSHKeyRecord:
        parsed = parse_public_key(public_key)
        if parsed is None:
            raise InvalidRequest("Invalid public key format")
        key_type, fingerprint = parsed
        record = SSHKeyRecord(name=name, public_key=public_key.strip(), fingerprint=fingerprint, key_type=key_type)
        with self.lock:
            self.keys[record.id] = record
        return record

    def touch_key(self, key_id: str) -> None:
        with self.lock:
            record = self.keys.get(key_id)
            if record is not None:
                record.last_used = datetime.now()

    def delete_key(self, key_id: str) -> bool:
        with self.lock:
            record = self.keys.get(key_id)
            if record is None:
                return False
            record.is_active = False
            return True

    # ---- command history ----
    def list_commands(self, connection_id: Optional[str] = None) -> List[CommandRecord]:
        with self.lock:
            rows = list(self.commands.values())
        if connection_id:
            rows = [row for row in rows if row.connection_id == connection_id]
        return sorted(rows, key=lambda row: row.created_at, reverse=True)

    def get_command(self, command_id: str) -> Optional[CommandRecord]:
        with self.lock:
            return self.commands.get(command_id)

    def create_command(
        self,
        connection_id: str,
        plain_text_input: str,
        generated_command: str,
        ai_explanation: str = "",
        risk_level: str = "low",
        requires_confirmation: bool = False,
    ) -> CommandRecord:
        if not generated_command or not generated_command.strip():
            raise InvalidRequest("command is required")
        record = CommandRecord(
            connection_id=connection_id,
            plain_text_input=plain_text_input or generated_command,
            generated_command=generated_command,
            ai_explanation=ai_explanation,
            risk_level=risk_level,
            requires_confirmation=requires_confirmation,
            status=STATUS_PENDING,
        )
        with self.lock:
            self.commands[record.id] = record
        return record

    def update_command_status(self, command_id: str, status: str) -> None:
        with self.lock:
            record = self.commands.get(command_id)
            if record is not None:
                record.status = status

    def update_command_result(
        self,
        command_id: str,
        output: str,
        exit_code: Optional[int],
        status: str,
        execution_time_ms: Optional[int],
    ) -> None:
        with self.lock:
            record = self.commands.get(command_id)
            if record is None:
                return
            record.output = output
            record.exit_code = exit_code
            record.status = status
            record.execution_time_ms = execution_time_ms
            record.completed_at = datetime.now()

    def clear_command_history(self, connection_id: Optional[str] = None) -> int:
        with self.lock:
            if not connection_id:
                count = len(self.commands)
                self.commands.clear()
                return count
            doomed = [cid for cid, row in self.commands.items() if row.connection_id == connection_id]
            for cid in doomed:
                del self.commands[cid]
            return len(doomed)
