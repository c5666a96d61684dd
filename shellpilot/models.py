import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_SUCCESS = "success"
STATUS_ERROR = "error"
STATUS_UNKNOWN = "unknown"
STATUS_ABORTED = "aborted"


def new_id() -> str:
    return str(uuid.uuid4())


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Connection:
    name: str
    host: str
    username: str
    port: int = 22
    id: str = field(default_factory=new_id)
    is_active: bool = False
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def address(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = _iso(self.created_at)
        return data


@dataclass
class SSHKeyRecord:
    name: str
    public_key: str
    fingerprint: str
    key_type: str = "rsa"
    id: str = field(default_factory=new_id)
    is_active: bool = True
    last_used: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["last_used"] = _iso(self.last_used)
        data["created_at"] = _iso(self.created_at)
        return data


@dataclass
class CommandRecord:
    connection_id: str
    plain_text_input: str
    generated_command: str
    ai_explanation: str = ""
    risk_level: str = "low"
    requires_confirmation: bool = False
    id: str = field(default_factory=new_id)
    output: Optional[str] = None
    exit_code: Optional[int] = None
    status: str = STATUS_PENDING
    execution_time_ms: Optional[int] = None
    created_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = _iso(self.created_at)
        data["completed_at"] = _iso(self.completed_at)
        return data


@dataclass
class ExecutionChunk:
    command_id: str
    stream: str  # "stdout" | "stderr"
    data: str


ChunkSink = Callable[[ExecutionChunk], None]


@dataclass
class ExecutionRequest:
    connection_id: str
    command_text: str
    sink: Optional[ChunkSink] = None
    command_id: Optional[str] = None
    check_conflicts: bool = False
    timeout: float = 0.0


@dataclass
class ExecutionResult:
    output: str
    exit_code: Optional[int]
    duration_ms: int
    command_id: str = ""

    @property
    def status(self) -> str:
        if self.exit_code is None:
            return STATUS_UNKNOWN
        return STATUS_SUCCESS if self.exit_code == 0 else STATUS_ERROR

    @property
    def error(self) -> bool:
        return self.status != STATUS_SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command_id": self.command_id,
            "output": self.output,
            "exit_code": self.exit_code,
            "status": self.status,
            "error": self.error,
            "duration_ms": self.duration_ms,
        }


@dataclass
class ConflictVerdict:
    is_duplicate: bool
    message: str = ""
    suggestions: List[str] = field(default_factory=list)
    rule: str = ""
    probe_failed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


