import threading

import paramiko
import pytest

from conftest import FakeAgent, FakeClient, wait_until
from shellpilot.auth import AuthResolver
from shellpilot.errors import AuthUnavailable, ConnectError, NoSession
from shellpilot.models import Connection
from shellpilot.ssh import (
    SessionManager, STATE_ABSENT, STATE_CLOSED, STATE_CONNECTING, STATE_READY,
)


def _manager(resolver, host, **kwargs):
    return SessionManager(
        resolver,
        client_factory=lambda: FakeClient(host),
        verify_host_key=False,
        start_health_thread=False,
        **kwargs,
    )


class TestEnsureSession:
    def test_connects_once_and_reuses(self, host, sessions, connection):
        first = sessions.ensure_session(connection)
        second = sessions.ensure_session(connection)

        assert first is second
        assert host.connect_calls == 1
        assert sessions.state(connection.id) == STATE_READY
        kwargs = host.connect_kwargs[0]
        assert kwargs["hostname"] == "10.0.0.5"
        assert kwargs["username"] == "deploy"
        assert kwargs["port"] == 22
        assert kwargs["timeout"] == 10
        assert kwargs["allow_agent"] is False
        assert host.clients[0].transport.keepalive == 30

    def test_concurrent_callers_share_one_connect(self, host, sessions, connection):
        host.connect_delay = 0.1
        results = []
        lock = threading.Lock()

        def worker():
            session = sessions.ensure_session(connection)
            with lock:
                results.append(session)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        assert wait_until(lambda: sessions.state(connection.id) == STATE_CONNECTING)
        for thread in threads:
            thread.join(timeout=3)

        assert host.connect_calls == 1
        assert len(results) == 8
        assert all(s is results[0] for s in results)

    def test_concurrent_callers_share_the_failure(self, host, sessions, connection):
        host.connect_delay = 0.05
        host.connect_error = OSError("connection refused")
        errors = []

        def worker():
            try:
                sessions.ensure_session(connection)
            except ConnectError as exc:
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=3)

        assert host.connect_calls == 1
        assert len(errors) == 4
        assert errors[0].retryable is True
        assert "connection refused" in str(errors[0])
        assert sessions.state(connection.id) == STATE_ABSENT

    def test_auth_unavailable_never_dials(self, host, connection):
        manager = _manager(AuthResolver(), host)

        with pytest.raises(AuthUnavailable):
            manager.ensure_session(connection)

        assert host.connect_calls == 0

    def test_tries_each_agent_identity(self, host, connection):
        agent = FakeAgent(["stale-key", "good-key"])
        host.reject_keys = {"stale-key"}
        manager = _manager(AuthResolver(agent_socket="/tmp/agent.sock", agent_factory=lambda path: agent), host)

        session = manager.ensure_session(connection)

        assert session.is_ready()
        assert session.auth_strategy == "agent"
        assert [kw["pkey"] for kw in host.connect_kwargs] == ["stale-key", "good-key"]
        assert agent.closed
        manager.disconnect_all()

    def test_rejected_identity_is_a_connect_error(self, host, sessions, connection):
        host.reject_keys = {"explicit-key"}

        with pytest.raises(ConnectError) as excinfo:
            sessions.ensure_session(connection)

        assert "authorized_keys" in excinfo.value.hint

    def test_dead_transport_is_replaced(self, host, sessions, connection):
        first = sessions.ensure_session(connection)
        host.clients[0].transport.active = False

        second = sessions.ensure_session(connection)

        assert second is not first
        assert first.state == STATE_CLOSED
        assert host.connect_calls == 2

    def test_sessions_are_per_connection(self, host, sessions, connection):
        other = Connection(name="db", host="10.0.0.6", username="deploy")

        a = sessions.ensure_session(connection)
        b = sessions.ensure_session(other)

        assert a is not b
        assert {row["connection_id"] for row in sessions.list_sessions()} == {connection.id, other.id}


class TestDisconnect:
    def test_disconnect_then_require_session_fails(self, sessions, session, connection):
        assert sessions.disconnect(connection.id) is True

        assert session.state == STATE_CLOSED
        assert sessions.state(connection.id) == STATE_ABSENT
        with pytest.raises(NoSession):
            sessions.require_session(connection.id)
        with pytest.raises(NoSession):
            session.open_channel()

    def test_disconnect_is_idempotent(self, sessions, session, connection):
        assert sessions.disconnect(connection.id) is True
        assert sessions.disconnect(connection.id) is False

    def test_disconnect_while_connecting_cancels(self, host, sessions, connection):
        host.connect_delay = 0.1
        errors = []

        def worker():
            try:
                sessions.ensure_session(connection)
            except ConnectError as exc:
                errors.append(exc)

        thread = threading.Thread(target=worker)
        thread.start()
        assert wait_until(lambda: sessions.state(connection.id) == STATE_CONNECTING)
        assert sessions.disconnect(connection.id) is True
        thread.join(timeout=3)

        assert len(errors) == 1
        assert sessions.state(connection.id) == STATE_ABSENT
        assert host.clients[0].closed

    def test_disconnect_all(self, sessions, connection):
        other = Connection(name="db", host="10.0.0.6", username="deploy")
        a = sessions.ensure_session(connection)
        b = sessions.ensure_session(other)

        sessions.disconnect_all()

        assert a.state == STATE_CLOSED and b.state == STATE_CLOSED
        assert sessions.list_sessions() == []

    def test_reap_drops_sessions_with_dead_transport(self, host, sessions, session, connection):
        host.clients[0].transport.active = False

        assert sessions.reap_dead_sessions() == [connection.id]
        assert sessions.state(connection.id) == STATE_ABSENT


class TestConnectionTest:
    def test_success_leaves_no_session(self, host, sessions, connection):
        ok, error = sessions.test_connection(connection)

        assert ok is True
        assert error == ""
        assert sessions.state(connection.id) == STATE_ABSENT
        assert host.clients[0].closed

    def test_failure_reports_reason(self, host, sessions, connection):
        host.connect_error = paramiko.SSHException("banner exchange failed")

        ok, error = sessions.test_connection(connection)

        assert ok is False
        assert "banner exchange failed" in error
