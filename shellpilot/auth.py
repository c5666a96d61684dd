"""Credential source selection.

Sources are tried in a fixed order and the first one that yields at least one
usable identity wins:

1. explicit private-key material (``SSH_PRIVATE_KEY``)
2. a running ssh-agent reachable through ``SSH_AUTH_SOCK``
3. a private-key file on disk (``SSH_KEY_PATH`` or the usual ~/.ssh names)

Nothing here opens a network connection; the agent is a local Unix socket.
"""

import io
import os
import socket
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence

import paramiko
from paramiko.agent import AgentSSH

from shellpilot.errors import AuthUnavailable
from shellpilot.utils import log_error

STRATEGY_EXPLICIT_KEY = "explicit_key"
STRATEGY_AGENT = "agent"
STRATEGY_KEY_FILE = "key_file"

STRATEGY_ORDER = (STRATEGY_EXPLICIT_KEY, STRATEGY_AGENT, STRATEGY_KEY_FILE)

KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)


@dataclass
class Credential:
    strategy: str
    keys: List[Any]
    source: str
    agent: Any = None
    _released: bool = field(default=False, repr=False)

    def release(self) -> None:
        # agent keys sign through the agent socket, so it stays open until auth is over
        if self._released:
            return
        self._released = True
        if self.agent is not None:
            try:
                self.agent.close()
            except Exception as exc:
                log_error(f"agent close failed: {exc}")


def load_private_key_text(text: str, passphrase: Optional[str] = None):
    last_exc: Optional[Exception] = None
    for key_class in KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(text), password=passphrase)
        except (paramiko.SSHException, ValueError) as exc:
            last_exc = exc
    raise paramiko.SSHException(f"unsupported or unreadable private key: {last_exc}")


def load_private_key_file(path: str, passphrase: Optional[str] = None):
    last_exc: Optional[Exception] = None
    for key_class in KEY_CLASSES:
        try:
            return key_class.from_private_key_file(path, password=passphrase)
        except (paramiko.SSHException, ValueError) as exc:
            last_exc = exc
    raise paramiko.SSHException(f"unsupported or unreadable private key file {path}: {last_exc}")


def open_agent(socket_path: str) -> AgentSSH:
    """Connect to the agent listening on `socket_path` and fetch its identities."""
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.connect(socket_path)
    except OSError:
        sock.close()
        raise
    agent = AgentSSH()
    # private hook paramiko.Agent uses after dialing SSH_AUTH_SOCK; present through paramiko 3.x and 4.x,
    # the range pinned in pyproject.toml
    agent._connect(sock)
    return agent


class AuthResolver:
    def __init__(
        self,
        private_key: Optional[str] = None,
        passphrase: Optional[str] = None,
        agent_socket: Optional[str] = None,
        key_path: Optional[str] = None,
        agent_factory: Callable[[str], Any] = open_agent,
        key_text_loader: Callable[..., Any] = load_private_key_text,
        key_file_loader: Callable[..., Any] = load_private_key_file,
    ):
        self.private_key = private_key
        self.passphrase = passphrase
        self.agent_socket = agent_socket
        self.key_path = key_path
        self._agent_factory = agent_factory
        self._key_text_loader = key_text_loader
        self._key_file_loader = key_file_loader

        self.lock = threading.Lock()
        self.last_strategy: Optional[str] = None
        self.last_attempts: List[str] = []

    @classmethod
    def from_config(cls, cfg) -> "AuthResolver":
        return cls(
            private_key=cfg.SSH_PRIVATE_KEY,
            passphrase=cfg.SSH_KEY_PASSPHRASE,
            agent_socket=cfg.SSH_AUTH_SOCK,
            key_path=cfg.resolve_key_path(),
        )

    def configured_sources(self) -> Sequence[str]:
        sources = []
        if self.private_key:
            sources.append(STRATEGY_EXPLICIT_KEY)
        if self.agent_socket:
            sources.append(STRATEGY_AGENT)
        if self.key_path:
            sources.append(STRATEGY_KEY_FILE)
        return sources

    def resolve(self, connection=None) -> Credential:
        attempts: List[str] = []
        credential = None
        for strategy in STRATEGY_ORDER:
            if strategy == STRATEGY_EXPLICIT_KEY:
                credential = self._try_explicit_key(attempts)
            elif strategy == STRATEGY_AGENT:
                credential = self._try_agent(attempts)
            else:
                credential = self._try_key_file(attempts)
            if credential is not None:
                break

        with self.lock:
            self.last_attempts = attempts
            self.last_strategy = credential.strategy if credential else None

        target = connection.address if connection is not None else "<unknown>"
        if credential is None:
            log_error(f"auth unavailable for {target}: {'; '.join(attempts)}")
            raise AuthUnavailable(attempts)
        log_error(f"auth strategy for {target}: {credential.strategy} ({credential.source})")
        return credential

    def _try_explicit_key(self, attempts: List[str]) -> Optional[Credential]:
        if not self.private_key:
            attempts.append(f"{STRATEGY_EXPLICIT_KEY}: not configured")
            return None
        try:
            key = self._key_text_loader(self.private_key, self.passphrase)
        except Exception as exc:
            attempts.append(f"{STRATEGY_EXPLICIT_KEY}: unreadable ({exc})")
            return None
        attempts.append(f"{STRATEGY_EXPLICIT_KEY}: ok")
        return Credential(STRATEGY_EXPLICIT_KEY, [key], "SSH_PRIVATE_KEY")

    def _try_agent(self, attempts: List[str]) -> Optional[Credential]:
        if not self.agent_socket:
            attempts.append(f"{STRATEGY_AGENT}: no agent socket")
            return None
        try:
            agent = self._agent_factory(self.agent_socket)
        except Exception as exc:
            attempts.append(f"{STRATEGY_AGENT}: unreachable ({exc})")
            return None
        keys = list(agent.get_keys() or ())
        if not keys:
            attempts.append(f"{STRATEGY_AGENT}: no identities")
            try:
                agent.close()
            except Exception as exc:
                log_error(f"agent close failed: {exc}")
            return None
        attempts.append(f"{STRATEGY_AGENT}: {len(keys)} identities")
        return Credential(STRATEGY_AGENT, keys, self.agent_socket, agent=agent)

    def _try_key_file(self, attempts: List[str]) -> Optional[Credential]:
        if not self.key_path:
            attempts.append(f"{STRATEGY_KEY_FILE}: not configured")
            return None
        path = os.path.expanduser(self.key_path)
        if not os.path.isfile(path):
            attempts.append(f"{STRATEGY_KEY_FILE}: {path} not found")
            return None
        try:
            key = self._key_file_loader(path, self.passphrase)
        except Exception as exc:
            attempts.append(f"{STRATEGY_KEY_FILE}: unreadable ({exc})")
            return None
        attempts.append(f"{STRATEGY_KEY_FILE}: ok")
        return Credential(STRATEGY_KEY_FILE, [key], path)
