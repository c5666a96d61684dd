"""Shared fixtures for the shellpilot test suite.

Provides an in-memory stand-in for the paramiko client/transport/channel
stack (``FakeHost``), a fake ssh-agent, and fully wired core components.
No test touches the network.
"""

import base64
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple, Union

import paramiko
import pytest

from shellpilot.auth import AuthResolver
from shellpilot.broadcast import OutputBroadcaster
from shellpilot.conflicts import ConflictInspector
from shellpilot.coordinator import ExecutionCoordinator
from shellpilot.executor import CommandExecutor
from shellpilot.models import Connection
from shellpilot.ssh import SessionManager
from shellpilot.store import MemoryStore


PUBLIC_KEY = "ssh-ed25519 " + base64.b64encode(
    b"\x00\x00\x00\x0bssh-ed25519" + b"\x00\x00\x00\x20" + b"k" * 32
).decode("ascii") + " tester@laptop"


# ---------------------------------------------------------------------------
# Fake paramiko stack
# ---------------------------------------------------------------------------


@dataclass
class Reply:
    """Scripted result of one remote command.

    ``chunks`` is a list of ("out" | "err", bytes) in arrival order.
    ``exit`` None means the channel closes without an exit status.
    ``gate`` holds the command open until it is set.
    """

    chunks: List[Tuple[str, bytes]] = field(default_factory=list)
    exit: Optional[int] = 0
    gate: Optional[threading.Event] = None

    @classmethod
    def text(cls, out: str = "", exit: Optional[int] = 0, err: str = "") -> "Reply":
        chunks = []
        if out:
            chunks.append(("out", out.encode("utf-8")))
        if err:
            chunks.append(("err", err.encode("utf-8")))
        return cls(chunks=chunks, exit=exit)


Responder = Union[Dict[str, Reply], Callable[[str], Optional[Reply]]]


class FakeHost:
    """Remote host state shared by every FakeClient created for it."""

    def __init__(self):
        self.responder: Responder = {}
        self.commands: List[str] = []
        self.connect_calls = 0
        self.connect_kwargs: List[dict] = []
        self.connect_delay = 0.0
        self.connect_error: Optional[Exception] = None
        self.reject_keys: set = set()
        self.password: Optional[str] = None
        self.clients: List["FakeClient"] = []
        self.lock = threading.Lock()

    def respond(self, command: str) -> Reply:
        with self.lock:
            self.commands.append(command)
        if callable(self.responder):
            reply = self.responder(command)
        else:
            reply = self.responder.get(command)
        return reply if reply is not None else Reply()


class FakeChannel:
    def __init__(self, host: FakeHost):
        self.host = host
        self.reply: Optional[Reply] = None
        self.pending: List[Tuple[str, bytes]] = []
        self.closed = False

    def exec_command(self, command: str) -> None:
        self.reply = self.host.respond(command)
        self.pending = list(self.reply.chunks)

    def _next_is(self, stream: str) -> bool:
        return bool(self.pending) and self.pending[0][0] == stream

    def recv_ready(self) -> bool:
        return self._next_is("out")

    def recv(self, size: int) -> bytes:
        return self.pending.pop(0)[1] if self._next_is("out") else b""

    def recv_stderr_ready(self) -> bool:
        return self._next_is("err")

    def recv_stderr(self, size: int) -> bytes:
        return self.pending.pop(0)[1] if self._next_is("err") else b""

    def exit_status_ready(self) -> bool:
        if self.pending:
            return False
        gate = self.reply.gate if self.reply else None
        return gate is None or gate.is_set()

    def recv_exit_status(self) -> int:
        if self.reply is None or self.reply.exit is None:
            return -1
        return self.reply.exit

    def close(self) -> None:
        self.closed = True


class FakeTransport:
    def __init__(self, host: FakeHost):
        self.host = host
        self.active = True
        self.keepalive = None

    def is_active(self) -> bool:
        return self.active

    def set_keepalive(self, interval: int) -> None:
        self.keepalive = interval

    def open_session(self, timeout=None) -> FakeChannel:
        if not self.active:
            raise paramiko.SSHException("transport is closed")
        return FakeChannel(self.host)


class _FakeStream:
    def __init__(self, data: bytes, exit_code: int = 0):
        self._data = data
        self.channel = self
        self._exit = exit_code

    def read(self) -> bytes:
        return self._data

    def recv_exit_status(self) -> int:
        return self._exit


class FakeClient:
    def __init__(self, host: FakeHost):
        self.host = host
        self.transport: Optional[FakeTransport] = None
        self.closed = False
        self.policy = None
        host.clients.append(self)

    def load_system_host_keys(self) -> None:
        pass

    def set_missing_host_key_policy(self, policy) -> None:
        self.policy = policy

    def connect(self, **kwargs) -> None:
        with self.host.lock:
            self.host.connect_calls += 1
            self.host.connect_kwargs.append(kwargs)
        if self.host.connect_delay:
            time.sleep(self.host.connect_delay)
        if self.host.connect_error is not None:
            raise self.host.connect_error
        if kwargs.get("pkey") in self.host.reject_keys:
            raise paramiko.AuthenticationException("Authentication failed.")
        if "password" in kwargs and self.host.password is not None and kwargs["password"] != self.host.password:
            raise paramiko.AuthenticationException("Authentication failed.")
        self.transport = FakeTransport(self.host)

    def get_transport(self) -> Optional[FakeTransport]:
        return self.transport

    def exec_command(self, command: str, timeout=None):
        reply = self.host.respond(command)
        out = b"".join(data for stream, data in reply.chunks if stream == "out")
        err = b"".join(data for stream, data in reply.chunks if stream == "err")
        exit_code = -1 if reply.exit is None else reply.exit
        return None, _FakeStream(out, exit_code), _FakeStream(err)

    def close(self) -> None:
        self.closed = True
        if self.transport is not None:
            self.transport.active = False


class FakeAgent:
    def __init__(self, keys):
        self.keys = list(keys)
        self.closed = False

    def get_keys(self):
        return tuple(self.keys)

    def close(self) -> None:
        self.closed = True


def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


# ---------------------------------------------------------------------------
# Component fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def host() -> FakeHost:
    return FakeHost()


@pytest.fixture
def client_factory(host: FakeHost):
    return lambda: FakeClient(host)


@pytest.fixture
def connection() -> Connection:
    return Connection(name="web", host="10.0.0.5", username="deploy")


@pytest.fixture
def resolver() -> AuthResolver:
    """Resolver with explicit key material; the loader returns a plain marker object."""
    return AuthResolver(private_key="-----BEGIN KEY-----", key_text_loader=lambda text, passphrase: "explicit-key")


@pytest.fixture
def sessions(resolver, client_factory):
    manager = SessionManager(resolver, client_factory=client_factory, verify_host_key=False, start_health_thread=False)
    yield manager
    manager.disconnect_all()


@pytest.fixture
def executor() -> CommandExecutor:
    return CommandExecutor(poll_interval=0.001)


@pytest.fixture
def session(sessions, connection):
    return sessions.ensure_session(connection)


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def broadcaster() -> OutputBroadcaster:
    return OutputBroadcaster(queue_size=100)


@pytest.fixture
def coordinator(store, sessions, executor, broadcaster) -> ExecutionCoordinator:
    return ExecutionCoordinator(store, sessions, executor, ConflictInspector(executor), broadcaster)


@pytest.fixture
def stored_connection(store):
    return store.create_connection("web", "10.0.0.5", "deploy")
