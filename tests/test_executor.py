import threading
import time

import pytest

from conftest import Reply, wait_until
from shellpilot.errors import ExecutionAborted, NoSession
from shellpilot.models import STATUS_ERROR, STATUS_SUCCESS, STATUS_UNKNOWN


class TestCommandExecutor:
    def test_merges_streams_in_arrival_order(self, host, session, executor):
        host.responder = {
            "build": Reply(chunks=[("out", b"step 1\n"), ("err", b"warn: x\n"), ("out", b"step 2\n")], exit=0),
        }
        seen = []

        result = executor.execute(session, "build", on_chunk=seen.append, command_id="c1")

        assert result.output == "step 1\nwarn: x\nstep 2\n"
        assert result.exit_code == 0
        assert result.status == STATUS_SUCCESS
        assert result.command_id == "c1"
        assert [(c.stream, c.data) for c in seen] == [
            ("stdout", "step 1\n"),
            ("stderr", "warn: x\n"),
            ("stdout", "step 2\n"),
        ]
        assert "".join(c.data for c in seen) == result.output

    def test_nonzero_exit_is_error(self, host, session, executor):
        host.responder = {"false": Reply.text(err="nope\n", exit=2)}

        result = executor.execute(session, "false")

        assert result.exit_code == 2
        assert result.status == STATUS_ERROR
        assert result.error is True
        assert result.output == "nope\n"

    def test_missing_exit_status_is_unknown_not_success(self, host, session, executor):
        host.responder = {"kill -9 $$": Reply.text(out="bye\n", exit=None)}

        result = executor.execute(session, "kill -9 $$")

        assert result.exit_code is None
        assert result.status == STATUS_UNKNOWN
        assert result.error is True

    def test_duration_is_measured(self, host, session, executor):
        gate = threading.Event()
        host.responder = {"sleep": Reply(gate=gate)}
        threading.Timer(0.05, gate.set).start()

        started = time.monotonic()
        result = executor.execute(session, "sleep")
        elapsed_ms = (time.monotonic() - started) * 1000

        assert 40 <= result.duration_ms <= elapsed_ms + 1

    def test_multibyte_character_split_across_chunks(self, host, session, executor):
        data = "café\n".encode("utf-8")
        host.responder = {"cat menu": Reply(chunks=[("out", data[:4]), ("out", data[4:])])}

        result = executor.execute(session, "cat menu")

        assert result.output == "café\n"

    def test_sink_errors_do_not_break_execution(self, host, session, executor):
        host.responder = {"echo hi": Reply.text(out="hi\n")}

        def broken_sink(chunk):
            raise RuntimeError("subscriber went away")

        result = executor.execute(session, "echo hi", on_chunk=broken_sink)

        assert result.output == "hi\n"
        assert result.exit_code == 0

    def test_requires_ready_session(self, executor, sessions, session, connection):
        with pytest.raises(NoSession):
            executor.execute(None, "ls")

        sessions.disconnect(connection.id)
        with pytest.raises(NoSession):
            executor.execute(session, "ls")

    def test_session_lost_mid_command_is_aborted(self, host, sessions, session, connection, executor):
        gate = threading.Event()
        host.responder = {"tail -f log": Reply(chunks=[("out", b"line 1\n")], gate=gate)}
        threading.Timer(0.05, sessions.disconnect, args=(connection.id,)).start()

        with pytest.raises(ExecutionAborted) as excinfo:
            executor.execute(session, "tail -f log")

        assert excinfo.value.partial_output == "line 1\n"
        assert excinfo.value.to_dict()["output"] == "line 1\n"


class TestSerialization:
    def test_commands_on_one_session_run_one_at_a_time_in_order(self, host, session, executor):
        gate = threading.Event()
        host.responder = lambda cmd: Reply(gate=gate) if cmd == "first" else Reply.text(out=cmd)
        results = {}

        def run(cmd):
            results[cmd] = executor.execute(session, cmd)

        first = threading.Thread(target=run, args=("first",))
        first.start()
        assert wait_until(lambda: host.commands == ["first"])

        second = threading.Thread(target=run, args=("second",))
        second.start()
        assert wait_until(lambda: session.info()["queued"] == 1)
        third = threading.Thread(target=run, args=("third",))
        third.start()
        assert wait_until(lambda: session.info()["queued"] == 2)

        time.sleep(0.05)
        assert host.commands == ["first"]
        assert session.is_busy()

        gate.set()
        for thread in (first, second, third):
            thread.join(timeout=2)

        assert host.commands == ["first", "second", "third"]
        assert results["third"].output == "third"
        assert not session.is_busy()

    def test_waiters_are_released_when_session_closes(self, host, sessions, session, connection, executor):
        gate = threading.Event()
        host.responder = {"hold": Reply(gate=gate)}
        errors = []

        def run(cmd):
            try:
                executor.execute(session, cmd)
            except (NoSession, ExecutionAborted) as exc:
                errors.append((cmd, type(exc)))

        holder = threading.Thread(target=run, args=("hold",))
        holder.start()
        assert wait_until(lambda: host.commands == ["hold"])
        waiter = threading.Thread(target=run, args=("queued",))
        waiter.start()
        assert wait_until(lambda: session.info()["queued"] == 1)

        sessions.disconnect(connection.id)
        holder.join(timeout=2)
        waiter.join(timeout=2)

        assert sorted(errors) == sorted([("hold", ExecutionAborted), ("queued", NoSession)])
        assert host.commands == ["hold"]
