import os
import time
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
import paramiko

from shellpilot.config import CONNECT_TIMEOUT, KEEPALIVE_INTERVAL, HEALTH_CHECK_INTERVAL, CHANNEL_OPEN_TIMEOUT
from shellpilot.errors import ConnectError, NoSession, ShellPilotError
from shellpilot.utils import log_error, iso_now, json_line, safe_name

STATE_ABSENT = "absent"
STATE_CONNECTING = "connecting"
STATE_READY = "ready"
STATE_FAILED = "failed"
STATE_CLOSED = "closed"


class SSHSession:
    """One authenticated transport bound to one connection id.

    Only SessionManager creates and closes these. Commands on a session run one
    at a time, in the order they asked for the session (see `exclusive`).
    """

    def __init__(
        self,
        connection,
        cache_dirs: Optional[Dict[str, str]] = None,
        project_tag: str = "",
        client_factory: Callable[[], Any] = paramiko.SSHClient,
        verify_host_key: bool = True,
    ):
        self.connection = connection
        self.connection_id = connection.id
        self.cache_dirs = cache_dirs or {}
        self.project_tag = project_tag
        self._client_factory = client_factory
        self.verify_host_key = verify_host_key

        self.client: Optional[paramiko.SSHClient] = None
        self.state = STATE_ABSENT
        self.auth_strategy: Optional[str] = None
        self.created_at = datetime.now()
        self.death_reason = ""

        self.lock = threading.Lock()
        self._gate = threading.Condition(self.lock)
        self._next_ticket = 0
        self._serving = 0
        self.active_command_id: Optional[str] = None
        self.last_command = ""
        self.last_command_time: Optional[datetime] = None

        self.session_log_path = self._build_session_log_path()
        self._log_session("SYS", {"event": "session_created", "address": connection.address})

    def _build_session_log_path(self) -> str:
        sessions_dir = self.cache_dirs.get("sessions_dir")
        if not sessions_dir:
            return ""
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        filename = f"{self.project_tag}__{safe_name(self.connection.name or self.connection_id)}__{stamp}.log"
        return os.path.join(sessions_dir, filename)

    def _log_session(self, direction: str, payload: Dict[str, Any]) -> None:
        data = {"ts": iso_now(), "dir": direction, "connection_id": self.connection_id}
        data.update(payload)
        json_line(self.session_log_path, data)

    def _apply_host_key_policy(self, client) -> None:
        if self.verify_host_key:
            client.load_system_host_keys()
        else:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

    @staticmethod
    def _close_client(client) -> None:
        try:
            client.close()
        except Exception as exc:
            log_error(f"client close failed: {exc}")

    def _fail(self, reason: str) -> None:
        with self.lock:
            self.state = STATE_FAILED
            self.death_reason = reason
        self._log_session("SYS", {"event": "connect_failed", "error": reason})

    def connect(self, credential, timeout: float = CONNECT_TIMEOUT) -> None:
        conn = self.connection
        with self.lock:
            self.state = STATE_CONNECTING

        last_exc: Optional[Exception] = None
        for key in credential.keys:
            client = self._client_factory()
            self._apply_host_key_policy(client)
            try:
                client.connect(
                    hostname=conn.host,
                    port=conn.port,
                    username=conn.username,
                    pkey=key,
                    timeout=timeout,
                    banner_timeout=timeout,
                    auth_timeout=timeout,
                    allow_agent=False,
                    look_for_keys=False,
                )
            except paramiko.AuthenticationException as exc:
                last_exc = exc
                self._close_client(client)
                continue
            except (paramiko.SSHException, OSError) as exc:
                self._close_client(client)
                self._fail(f"connect failed: {exc}")
                raise ConnectError(f"failed to connect to {conn.address}: {exc}") from exc

            transport = client.get_transport()
            if transport:
                transport.set_keepalive(KEEPALIVE_INTERVAL)
            with self.lock:
                self.client = client
                self.state = STATE_READY
                self.auth_strategy = credential.strategy
            self._log_session(
                "SYS",
                {"event": "connected", "host": conn.host, "port": conn.port, "strategy": credential.strategy},
            )
            return

        self._fail(f"authentication rejected: {last_exc}")
        raise ConnectError(
            f"{conn.address} rejected every identity offered by {credential.strategy}: {last_exc}",
            hint="The server refused the key. Make sure its public key is in ~/.ssh/authorized_keys on the host.",
        )

    def is_alive(self) -> bool:
        client = self.client
        if client is None:
            return False
        try:
            transport = client.get_transport()
            return bool(transport and transport.is_active())
        except Exception:
            return False

    def is_ready(self) -> bool:
        return self.state == STATE_READY and self.is_alive()

    def open_channel(self, timeout: float = CHANNEL_OPEN_TIMEOUT):
        with self.lock:
            client = self.client
            state = self.state
        if state != STATE_READY or client is None:
            raise NoSession(f"session for {self.connection_id} is {state}")
        transport = client.get_transport()
        if transport is None or not transport.is_active():
            raise NoSession(f"transport for {self.connection_id} is not active")
        return transport.open_session(timeout=timeout)

    @contextmanager
    def exclusive(self, command_id: str = ""):
        with self._gate:
            ticket = self._next_ticket
            self._next_ticket += 1
            while ticket != self._serving and self.state == STATE_READY:
                self._gate.wait()
            if self.state != STATE_READY:
                raise NoSession(f"session for {self.connection_id} is {self.state}")
            self.active_command_id = command_id
            self.last_command_time = datetime.now()
        try:
            yield self
        finally:
            with self._gate:
                self.active_command_id = None
                self._serving += 1
                self._gate.notify_all()

    def is_busy(self) -> bool:
        with self.lock:
            return self.active_command_id is not None

    def close(self, reason: str = "closed") -> None:
        with self._gate:
            if self.state == STATE_CLOSED:
                return
            self.state = STATE_CLOSED
            self.death_reason = reason
            client = self.client
            self.client = None
            self._gate.notify_all()
        if client is not None:
            self._close_client(client)
        self._log_session("SYS", {"event": "closed", "reason": reason})

    def info(self) -> Dict[str, Any]:
        with self.lock:
            active = self.active_command_id
            state = self.state
            queued = max(0, self._next_ticket - self._serving - (1 if active is not None else 0))
        return {
            "connection_id": self.connection_id,
            "address": self.connection.address,
            "state": state,
            "alive": state == STATE_READY and self.is_alive(),
            "busy": active is not None,
            "queued": queued,
            "active_command_id": active,
            "strategy": self.auth_strategy,
            "death_reason": self.death_reason if state in (STATE_CLOSED, STATE_FAILED) else "",
            "last_command": self.last_command,
            "last_command_time": self.last_command_time.isoformat() if self.last_command_time else None,
            "created_at": self.created_at.isoformat(),
            "session_log_path": self.session_log_path,
        }


class _PendingConnect:
    def __init__(self):
        self.done = threading.Event()
        self.session: Optional[SSHSession] = None
        self.error: Optional[ShellPilotError] = None
        self.cancelled = False


class SessionManager:
    def __init__(
        self,
        auth_resolver,
        cache_dirs: Optional[Dict[str, str]] = None,
        project_tag: str = "",
        client_factory: Callable[[], Any] = paramiko.SSHClient,
        verify_host_key: bool = True,
        connect_timeout: float = CONNECT_TIMEOUT,
        start_health_thread: bool = True,
    ):
        self.auth_resolver = auth_resolver
        self.cache_dirs = cache_dirs or {}
        self.project_tag = project_tag
        self.client_factory = client_factory
        self.verify_host_key = verify_host_key
        self.connect_timeout = connect_timeout

        self.sessions: Dict[str, SSHSession] = {}
        self._pending: Dict[str, _PendingConnect] = {}
        self.lock = threading.Lock()

        self.health_thread_stop = False
        self.health_thread: Optional[threading.Thread] = None
        if start_health_thread:
            self.health_thread = threading.Thread(target=self._health_loop, daemon=True)
            self.health_thread.start()

    def _new_session(self, connection) -> SSHSession:
        return SSHSession(
            connection,
            cache_dirs=self.cache_dirs,
            project_tag=self.project_tag,
            client_factory=self.client_factory,
            verify_host_key=self.verify_host_key,
        )

    def _health_loop(self) -> None:
        while not self.health_thread_stop:
            time.sleep(HEALTH_CHECK_INTERVAL)
            try:
                self.reap_dead_sessions()
            except Exception as exc:
                log_error(f"health loop error: {exc}")

    def reap_dead_sessions(self) -> List[str]:
        with self.lock:
            dead = [(cid, s) for cid, s in self.sessions.items() if s.state == STATE_READY and not s.is_alive()]
            for cid, _ in dead:
                self.sessions.pop(cid, None)
        for cid, session in dead:
            session.close("transport disconnected")
            log_error(f"session {cid} dropped: transport disconnected")
        return [cid for cid, _ in dead]

    def ensure_session(self, connection) -> SSHSession:
        cid = connection.id
        stale: Optional[SSHSession] = None
        with self.lock:
            session = self.sessions.get(cid)
            if session is not None:
                if session.is_ready():
                    return session
                stale = self.sessions.pop(cid)
            pending = self._pending.get(cid)
            owner = pending is None
            if owner:
                pending = _PendingConnect()
                self._pending[cid] = pending

        if stale is not None:
            stale.close("replaced: transport no longer ready")

        if not owner:
            pending.done.wait()
            if pending.error is not None:
                raise pending.error
            return pending.session

        try:
            session = self._open(connection, pending)
        except ShellPilotError as exc:
            pending.error = exc
            raise
        except Exception as exc:
            pending.error = ConnectError(f"failed to connect to {connection.address}: {exc}")
            raise pending.error from exc
        finally:
            with self.lock:
                self._pending.pop(cid, None)
            pending.done.set()
        return session

    def _open(self, connection, pending: _PendingConnect) -> SSHSession:
        session = self._new_session(connection)
        credential = self.auth_resolver.resolve(connection)
        try:
            session.connect(credential, timeout=self.connect_timeout)
        finally:
            credential.release()

        with self.lock:
            cancelled = pending.cancelled
            if not cancelled:
                self.sessions[connection.id] = session
                pending.session = session
        if cancelled:
            session.close("disconnected while connecting")
            raise ConnectError(f"connection {connection.id} was disconnected while connecting", hint="")
        return session

    def get_session(self, connection_id: str) -> Optional[SSHSession]:
        with self.lock:
            return self.sessions.get(connection_id)

    def require_session(self, connection_id: str) -> SSHSession:
        session = self.get_session(connection_id)
        if session is None or session.state != STATE_READY:
            raise NoSession(f"no ready session for connection {connection_id}")
        return session

    def state(self, connection_id: str) -> str:
        with self.lock:
            if connection_id in self._pending:
                return STATE_CONNECTING
            session = self.sessions.get(connection_id)
        if session is None:
            return STATE_ABSENT
        return session.state

    def disconnect(self, connection_id: str) -> bool:
        with self.lock:
            session = self.sessions.pop(connection_id, None)
            pending = self._pending.get(connection_id)
            if pending is not None:
                pending.cancelled = True
        if session is not None:
            session.close("disconnected")
            return True
        return pending is not None

    def disconnect_all(self) -> None:
        self.health_thread_stop = True
        with self.lock:
            ids = list(self.sessions.keys()) + list(self._pending.keys())
        for cid in ids:
            self.disconnect(cid)

    def test_connection(self, connection, timeout: Optional[float] = None) -> Tuple[bool, str]:
        session = self._new_session(connection)
        try:
            credential = self.auth_resolver.resolve(connection)
            try:
                session.connect(credential, timeout=timeout or self.connect_timeout)
            finally:
                credential.release()
        except ShellPilotError as exc:
            return False, str(exc)
        finally:
            session.close("connection test finished")
        return True, ""

    def list_sessions(self) -> List[Dict[str, Any]]:
        with self.lock:
            sessions = list(self.sessions.values())
            connecting = list(self._pending.keys())
        rows = [session.info() for session in sessions]
        for cid in connecting:
            rows.append({"connection_id": cid, "state": STATE_CONNECTING, "alive": False, "busy": False})
        rows.sort(key=lambda row: row["connection_id"])
        return rows
