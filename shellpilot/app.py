from dataclasses import dataclass
from typing import Any, Callable, Optional

import paramiko

from shellpilot.auth import AuthResolver
from shellpilot.broadcast import OutputBroadcaster
from shellpilot.conflicts import ConflictInspector
from shellpilot.coordinator import ExecutionCoordinator
from shellpilot.executor import CommandExecutor
from shellpilot.oracle import OpenAIOracle
from shellpilot.ssh import SessionManager
from shellpilot.store import MemoryStore


@dataclass
class ShellPilotApp:
    store: MemoryStore
    auth: AuthResolver
    sessions: SessionManager
    executor: CommandExecutor
    inspector: ConflictInspector
    broadcaster: OutputBroadcaster
    oracle: Optional[OpenAIOracle]
    coordinator: ExecutionCoordinator
    client_factory: Callable[[], Any] = paramiko.SSHClient
    verify_host_key: bool = True

    def shutdown(self) -> None:
        self.coordinator.shutdown()


def build_app(
    cfg,
    client_factory: Callable[[], Any] = paramiko.SSHClient,
    auth: Optional[AuthResolver] = None,
    oracle: Optional[OpenAIOracle] = None,
    start_health_thread: bool = True,
) -> ShellPilotApp:
    store = MemoryStore()
    auth = auth or AuthResolver.from_config(cfg)
    sessions = SessionManager(
        auth,
        cache_dirs=cfg.CACHE_DIRS,
        project_tag=cfg.PROJECT_TAG,
        client_factory=client_factory,
        verify_host_key=cfg.SSH_VERIFY_HOST_KEY,
        start_health_thread=start_health_thread,
    )
    executor = CommandExecutor(cache_dirs=cfg.CACHE_DIRS, project_tag=cfg.PROJECT_TAG)
    inspector = ConflictInspector(executor)
    broadcaster = OutputBroadcaster()
    if oracle is None and cfg.OPENAI_API_KEY:
        oracle = OpenAIOracle(cfg.OPENAI_API_KEY, model=cfg.OPENAI_MODEL, base_url=cfg.OPENAI_BASE_URL)
    coordinator = ExecutionCoordinator(store, sessions, executor, inspector, broadcaster, oracle=oracle,
                                       check_timeout=cfg.CHECK_TIMEOUT)
    return ShellPilotApp(
        store=store,
        auth=auth,
        sessions=sessions,
        executor=executor,
        inspector=inspector,
        broadcaster=broadcaster,
        oracle=oracle,
        coordinator=coordinator,
        client_factory=client_factory,
        verify_host_key=cfg.SSH_VERIFY_HOST_KEY,
    )
