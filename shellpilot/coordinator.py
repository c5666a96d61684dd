import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from shellpilot.config import DEFAULT_CHECK_TIMEOUT, MAX_CHECK_TIMEOUT
from shellpilot.errors import ExecutionAborted, ExecutionError, InvalidRequest, NotFound, ShellPilotError
from shellpilot.models import (
    CommandRecord, ConflictVerdict, ExecutionRequest, ExecutionResult, new_id,
    STATUS_ABORTED, STATUS_ERROR, STATUS_RUNNING,
)
from shellpilot.oracle import QuickActions
from shellpilot.workflows import WorkflowCatalog, parse_options
from shellpilot.utils import clamp_float, log_error

STATE_PENDING = "pending"
STATE_RESOLVING = "resolving"
STATE_CONNECTED = "connected"
STATE_CHECKING = "checking"
STATE_EXECUTING = "executing"
STATE_COMPLETED = "completed"
STATE_BLOCKED = "blocked"
STATE_FAILED = "failed"
STATE_ABORTED = "aborted"


@dataclass
class ExecutionOutcome:
    command_id: str
    connection_id: str
    command: str
    state: str = STATE_PENDING
    result: Optional[ExecutionResult] = None
    verdict: Optional[ConflictVerdict] = None
    error: Optional[ShellPilotError] = None
    timed_out: bool = False
    transitions: List[str] = field(default_factory=list)

    def advance(self, state: str) -> None:
        self.state = state
        self.transitions.append(state)

    @property
    def aborted(self) -> bool:
        return isinstance(self.error, ExecutionAborted)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "command_id": self.command_id,
            "connection_id": self.connection_id,
            "command": self.command,
            "state": self.state,
        }
        if self.result is not None:
            data.update(self.result.to_dict())
        if self.verdict is not None:
            data["conflict"] = self.verdict.to_dict()
        if self.error is not None:
            data.update(self.error.to_dict())
            if self.aborted:
                data["status"] = STATUS_ABORTED
        if self.timed_out:
            data["timed_out"] = True
        return data


class _Deadline:
    """Coarse timeout: when it fires the whole session is disconnected."""

    def __init__(self, seconds: float, on_expire: Callable[[], None]):
        self.fired = False
        self._timer: Optional[threading.Timer] = None
        if seconds and seconds > 0:
            self._timer = threading.Timer(seconds, self._fire, args=(on_expire,))
            self._timer.daemon = True

    def _fire(self, on_expire: Callable[[], None]) -> None:
        self.fired = True
        on_expire()

    def __enter__(self) -> "_Deadline":
        if self._timer is not None:
            self._timer.start()
        return self

    def __exit__(self, *exc_info) -> None:
        if self._timer is not None:
            self._timer.cancel()


class ExecutionCoordinator:
    def __init__(
        self,
        store,
        sessions,
        executor,
        inspector,
        broadcaster,
        oracle=None,
        quick_actions: Optional[QuickActions] = None,
        workflows: Optional[WorkflowCatalog] = None,
        check_timeout: float = DEFAULT_CHECK_TIMEOUT,
    ):
        self.store = store
        self.sessions = sessions
        self.executor = executor
        self.inspector = inspector
        self.broadcaster = broadcaster
        self.oracle = oracle
        self.quick_actions = quick_actions or QuickActions()
        self.workflows = workflows or WorkflowCatalog()
        self.check_timeout = clamp_float(check_timeout, DEFAULT_CHECK_TIMEOUT, 0.0, MAX_CHECK_TIMEOUT)

    # ---- connection lifecycle ----
    def connect(self, connection_id: str):
        connection = self.store.require_connection(connection_id)
        session = self.sessions.ensure_session(connection)
        self.store.set_connection_active(connection_id, True)
        return session

    def disconnect(self, connection_id: str) -> bool:
        closed = self.sessions.disconnect(connection_id)
        self.store.set_connection_active(connection_id, False)
        return closed

    def shutdown(self) -> None:
        self.sessions.disconnect_all()
        for connection in self.store.list_connections():
            self.store.set_connection_active(connection.id, False)

    def _expire(self, connection_id: str, what: str) -> None:
        log_error(f"{what} on {connection_id} timed out; disconnecting session")
        self.disconnect(connection_id)

    # ---- conflict inspection ----
    def check(self, connection_id: str, command: str) -> ConflictVerdict:
        session = self.connect(connection_id)
        return self._inspect(session, connection_id, command)

    def _inspect(self, session, connection_id: str, command: str) -> ConflictVerdict:
        with _Deadline(self.check_timeout, lambda: self._expire(connection_id, "conflict check")):
            return self.inspector.check(session, command)

    # ---- execution ----
    def _resolve_text(self, request: ExecutionRequest, record: Optional[CommandRecord]) -> str:
        text = (request.command_text or "").strip()
        if not text and record is not None:
            text = record.generated_command
        if not text:
            raise InvalidRequest("command is required")
        return text

    def execute(self, request: ExecutionRequest) -> ExecutionOutcome:
        record = self.store.get_command(request.command_id) if request.command_id else None
        command_id = request.command_id or new_id()
        outcome = ExecutionOutcome(command_id=command_id, connection_id=request.connection_id,
                                   command=request.command_text or "")
        try:
            outcome.advance(STATE_RESOLVING)
            outcome.command = self._resolve_text(request, record)
            if record is not None and record.connection_id and record.connection_id != request.connection_id:
                raise InvalidRequest(
                    f"command {command_id} belongs to connection {record.connection_id}, not {request.connection_id}"
                )
            session = self.connect(request.connection_id)
            outcome.advance(STATE_CONNECTED)

            if request.check_conflicts:
                outcome.advance(STATE_CHECKING)
                outcome.verdict = self._inspect(session, request.connection_id, outcome.command)
                if outcome.verdict.is_duplicate:
                    outcome.advance(STATE_BLOCKED)
                    self.broadcaster.publish_blocked(command_id, outcome.verdict.message)
                    return outcome

            outcome.advance(STATE_EXECUTING)
            if record is not None:
                self.store.update_command_status(command_id, STATUS_RUNNING)

            publish = self.broadcaster.sink_for(command_id)
            caller_sink = request.sink

            def sink(chunk) -> None:
                publish(chunk)
                if caller_sink is not None:
                    caller_sink(chunk)

            deadline = _Deadline(request.timeout, lambda: self._expire(request.connection_id, "command"))
            try:
                with deadline:
                    result = self.executor.execute(session, outcome.command, on_chunk=sink, command_id=command_id)
            finally:
                outcome.timed_out = deadline.fired

            outcome.result = result
            if record is not None:
                self.store.update_command_result(
                    command_id, result.output, result.exit_code, result.status, result.duration_ms
                )
            self.broadcaster.publish_terminal(command_id, result.exit_code, result.duration_ms)
            outcome.advance(STATE_COMPLETED)
        except ShellPilotError as exc:
            outcome.error = exc
            outcome.advance(STATE_ABORTED if isinstance(exc, ExecutionAborted) else STATE_FAILED)
            self._record_failure(record, command_id, exc)
            self.broadcaster.publish_error(command_id, str(exc))
        return outcome

    def _record_failure(self, record: Optional[CommandRecord], command_id: str, exc: ShellPilotError) -> None:
        if record is None:
            return
        status = STATUS_ABORTED if isinstance(exc, ExecutionAborted) else STATUS_ERROR
        if isinstance(exc, ExecutionError):
            self.store.update_command_result(command_id, exc.partial_output, None, status, None)
        else:
            self.store.update_command_status(command_id, status)

    def run(self, connection_id: str, command: str, **options) -> ExecutionOutcome:
        return self.execute(ExecutionRequest(connection_id=connection_id, command_text=command, **options))

    # ---- text-to-command ----
    def generate(self, connection_id: str, plain_text: str, system_info: Optional[str] = None) -> CommandRecord:
        if self.oracle is None:
            raise InvalidRequest("no command oracle configured", hint="Set OPENAI_API_KEY to enable generation.")
        self.store.require_connection(connection_id)
        suggestion = self.oracle.generate_command(plain_text, system_info=system_info)
        if not suggestion.command:
            raise InvalidRequest("the oracle returned an empty command")
        return self.store.create_command(
            connection_id,
            plain_text,
            suggestion.command,
            ai_explanation=suggestion.explanation,
            risk_level=suggestion.risk_level,
            requires_confirmation=suggestion.requires_confirmation,
        )

    def quick_action(self, action: str, connection_id: Optional[str] = None):
        suggestion = self.quick_actions.get(action)
        record = None
        if connection_id:
            self.store.require_connection(connection_id)
            record = self.store.create_command(
                connection_id,
                f"quick action: {action}",
                suggestion.command,
                ai_explanation=suggestion.explanation,
                risk_level=suggestion.risk_level,
                requires_confirmation=suggestion.requires_confirmation,
            )
        return suggestion, record

    # ---- workflows ----
    def prepare_workflow(self, connection_id: str, category_id: str, section_id: str, command_id: str,
                         values: Optional[Dict[str, Any]] = None):
        """Render a catalog command and store it as a pending history row."""
        self.store.require_connection(connection_id)
        template, command = self.workflows.render(category_id, section_id, command_id, values)
        record = self.store.create_command(
            connection_id,
            f"Quick Action: {template.explanation}",
            command,
            ai_explanation=template.explanation,
            risk_level=template.risk_level,
            requires_confirmation=template.requires_confirmation,
        )
        return template, record

    def detect_options(self, connection_id: str, category_id: str, section_id: str, command_id: str,
                       input_name: str) -> List[str]:
        """Run an input's auto-detect command on the target and list the values it found."""
        item = self.workflows.command(category_id, section_id, command_id).input(input_name)
        if not item.auto_detect:
            raise InvalidRequest(f"input {input_name} has no auto-detect command")
        outcome = self.run(connection_id, item.auto_detect)
        if outcome.error is not None:
            raise outcome.error
        if outcome.result.exit_code != 0:
            return []
        return parse_options(outcome.result.output, item.auto_detect)

    def analyze_failure(self, command_id: str) -> str:
        if self.oracle is None:
            raise InvalidRequest("no command oracle configured", hint="Set OPENAI_API_KEY to enable analysis.")
        record = self.store.get_command(command_id)
        if record is None:
            raise NotFound(f"command {command_id} not found")
        return self.oracle.analyze_error(record.generated_command, record.output or "", record.exit_code)
