import codecs
import os
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import paramiko

from shellpilot.config import BUFFER_SIZE, POLL_INTERVAL, CHANNEL_OPEN_TIMEOUT
from shellpilot.errors import ExecutionAborted, ExecutionError, NoSession
from shellpilot.models import ChunkSink, ExecutionChunk, ExecutionResult, new_id
from shellpilot.ssh import STATE_READY
from shellpilot.utils import log_error, iso_now, json_line

# paramiko reports -1 when the channel closed without an exit-status message
NO_EXIT_STATUS = -1


class _RunLog:
    def __init__(self, runs_dir: str, project_tag: str, connection_id: str, command_id: str):
        self.path = ""
        if runs_dir:
            stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            self.path = os.path.join(runs_dir, f"{project_tag}__{connection_id[:8]}__{command_id[:8]}__{stamp}.log")
        self.connection_id = connection_id
        self.command_id = command_id

    def write(self, direction: str, payload: Dict[str, Any]) -> None:
        data = {"ts": iso_now(), "dir": direction, "connection_id": self.connection_id, "command_id": self.command_id}
        data.update(payload)
        json_line(self.path, data)


class CommandExecutor:
    """Runs one command on a ready session and collects its output.

    stdout and stderr are read from the same exec channel and appended to one
    buffer in arrival order; each chunk is also handed to the optional sink as
    soon as it is read.
    """

    def __init__(self, cache_dirs: Optional[Dict[str, str]] = None, project_tag: str = "",
                 poll_interval: float = POLL_INTERVAL, channel_open_timeout: float = CHANNEL_OPEN_TIMEOUT):
        self.cache_dirs = cache_dirs or {}
        self.project_tag = project_tag
        self.poll_interval = poll_interval
        self.channel_open_timeout = channel_open_timeout

    def execute(
        self,
        session,
        command: str,
        on_chunk: Optional[ChunkSink] = None,
        command_id: Optional[str] = None,
    ) -> ExecutionResult:
        if session is None or session.state != STATE_READY:
            state = getattr(session, "state", "absent")
            raise NoSession(f"cannot execute without a ready session (state={state})")

        command_id = command_id or new_id()
        with session.exclusive(command_id):
            session.last_command = command
            return self._run(session, command, on_chunk, command_id)

    def _run(self, session, command: str, on_chunk: Optional[ChunkSink], command_id: str) -> ExecutionResult:
        run_log = _RunLog(self.cache_dirs.get("runs_dir", ""), self.project_tag, session.connection_id, command_id)
        buffer: List[str] = []
        decoders = {
            "stdout": codecs.getincrementaldecoder("utf-8")(errors="replace"),
            "stderr": codecs.getincrementaldecoder("utf-8")(errors="replace"),
        }

        def emit(stream: str, raw: bytes, final: bool = False) -> None:
            text = decoders[stream].decode(raw, final=final)
            if not text:
                return
            buffer.append(text)
            run_log.write("OUT" if stream == "stdout" else "ERR", {"chunk": text})
            if on_chunk is not None:
                try:
                    on_chunk(ExecutionChunk(command_id, stream, text))
                except Exception as exc:
                    log_error(f"output sink error ({command_id}): {exc}")

        started = time.monotonic()
        run_log.write("IN", {"event": "command_sent", "command": command})

        try:
            channel = session.open_channel(timeout=self.channel_open_timeout)
        except (paramiko.SSHException, OSError) as exc:
            run_log.write("SYS", {"event": "channel_open_failed", "error": str(exc)})
            raise ExecutionError(f"failed to open command channel: {exc}") from exc

        try:
            channel.exec_command(command)
            while True:
                progressed = False
                if channel.recv_ready():
                    data = channel.recv(BUFFER_SIZE)
                    if data:
                        emit("stdout", data)
                        progressed = True
                if channel.recv_stderr_ready():
                    data = channel.recv_stderr(BUFFER_SIZE)
                    if data:
                        emit("stderr", data)
                        progressed = True
                if channel.exit_status_ready() and not channel.recv_ready() and not channel.recv_stderr_ready():
                    exit_status = channel.recv_exit_status()
                    break
                if not progressed:
                    if not session.is_ready():
                        raise ExecutionAborted(
                            f"session for {session.connection_id} closed during execution",
                            partial_output="".join(buffer),
                        )
                    time.sleep(self.poll_interval)
        except ExecutionError as exc:
            run_log.write("SYS", {"event": "command_aborted", "error": str(exc)})
            raise
        except (paramiko.SSHException, OSError, EOFError) as exc:
            partial = "".join(buffer)
            run_log.write("SYS", {"event": "command_failed", "error": str(exc)})
            if not session.is_ready():
                raise ExecutionAborted(f"session lost during execution: {exc}", partial_output=partial) from exc
            raise ExecutionError(f"command channel failed: {exc}", partial_output=partial) from exc
        finally:
            try:
                channel.close()
            except Exception as exc:
                log_error(f"channel close failed: {exc}")

        emit("stdout", b"", final=True)
        emit("stderr", b"", final=True)
        output = "".join(buffer)

        if exit_status == NO_EXIT_STATUS and not session.is_ready():
            run_log.write("SYS", {"event": "command_aborted", "error": "session closed"})
            raise ExecutionAborted(
                f"session for {session.connection_id} closed before the command reported an exit code",
                partial_output=output,
            )

        duration_ms = max(0, int((time.monotonic() - started) * 1000))
        exit_code = None if exit_status == NO_EXIT_STATUS else exit_status
        result = ExecutionResult(output=output, exit_code=exit_code, duration_ms=duration_ms, command_id=command_id)
        run_log.write(
            "SYS",
            {"event": "command_finished", "exit_code": exit_code, "status": result.status, "duration_ms": duration_ms},
        )
        return result
