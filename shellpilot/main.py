import sys
import io
import json
import re
import argparse
import threading
from typing import Iterable, List, Optional, Tuple

from shellpilot.config import config
from shellpilot.utils import (
    log_error, resolve_runtime_paths, make_cache_dirs
)
from shellpilot.server import handle_request, output_notification

CONNECTION_SPEC = re.compile(r"^(?:(?P<name>[^=]+)=)?(?P<user>[^@\s]+)@(?P<host>[^:\s]+)(?::(?P<port>\d+))?$")


class _Writer:
    """Serialises JSON-RPC lines from the request loop and the output pump."""

    def __init__(self, stream):
        self.stream = stream
        self.lock = threading.Lock()

    def write(self, message: dict) -> None:
        with self.lock:
            try:
                self.stream.write(json.dumps(message, ensure_ascii=False, default=str) + "\n")
                self.stream.flush()
            except Exception as exc:
                log_error(f"response write error: {exc}")
                # Fallback: escape all non-ASCII to guarantee safe output
                try:
                    self.stream.write(json.dumps(message, ensure_ascii=True, default=str) + "\n")
                    self.stream.flush()
                except Exception as exc2:
                    log_error(f"response write fallback error: {exc2}")


def parse_connection_spec(text: str) -> Tuple[str, str, str, int]:
    """Parse `[name=]user@host[:port]` into (name, username, host, port)."""
    match = CONNECTION_SPEC.match((text or "").strip())
    if not match:
        raise argparse.ArgumentTypeError(f"expected [name=]user@host[:port], got {text!r}")
    user, host = match.group("user"), match.group("host")
    port = int(match.group("port") or 22)
    name = (match.group("name") or f"{user}@{host}").strip()
    return name, user, host, port


def _pump_output(app, writer: _Writer, stop: threading.Event) -> None:
    sub = app.broadcaster.subscribe()
    try:
        while not stop.is_set():
            event = sub.get(timeout=0.5)
            if event is not None:
                writer.write(output_notification(event))
    finally:
        app.broadcaster.unsubscribe(sub)


def _answer(request, app, writer: _Writer) -> None:
    try:
        response = handle_request(request, app)
        if response is not None:
            writer.write(response)
    except Exception as exc:
        log_error(f"unexpected error: {exc}")
        # Send an error response back so the client doesn't hang
        req_id = request.get("id") if isinstance(request, dict) else None
        writer.write({
            "jsonrpc": "2.0",
            "id": req_id,
            "error": {"code": -32603, "message": f"Internal error: {exc}"},
        })


def serve(app, lines: Iterable[str], writer: _Writer) -> List[threading.Thread]:
    """Read requests until EOF. Tool calls get their own thread; returns the ones still running."""
    workers: List[threading.Thread] = []
    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            request = json.loads(line)
        except json.JSONDecodeError as exc:
            log_error(f"invalid json: {exc}")
            continue
        if isinstance(request, dict) and request.get("method") == "tools/call":
            worker = threading.Thread(target=_answer, args=(request, app, writer), daemon=True)
            worker.start()
            workers = [w for w in workers if w.is_alive()]
            workers.append(worker)
        else:
            _answer(request, app, writer)
    return [w for w in workers if w.is_alive()]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="ShellPilot: SSH remote execution server (JSON-RPC over stdio)"
    )
    parser.add_argument("--key", help="Private key material (overrides SSH_PRIVATE_KEY env)")
    parser.add_argument("--key-path", help="Path to SSH private key (overrides SSH_KEY_PATH env)")
    parser.add_argument("--passphrase", help="Passphrase for SSH private key (overrides SSH_KEY_PASSPHRASE env)")
    parser.add_argument("--agent-sock", help="SSH agent socket (overrides SSH_AUTH_SOCK env)")
    parser.add_argument("--no-agent", action="store_true", help="Never consult the SSH agent")
    parser.add_argument("--verify-host", action="store_true", help="Verify SSH host key (default: True, use --no-verify-host to disable)")
    parser.add_argument("--no-verify-host", action="store_true", help="Disable SSH host key verification")
    parser.add_argument("--project-root", help="Project root for local state")
    parser.add_argument("--cache-dir", help="Optional cache root override")
    parser.add_argument("--model", help="OpenAI model for command generation (overrides OPENAI_MODEL env)")
    parser.add_argument("--check-timeout", type=float, help="Seconds allowed for duplicate-action checks, 0 disables (overrides SHELLPILOT_CHECK_TIMEOUT env)")
    parser.add_argument(
        "--connection", action="append", default=[], type=parse_connection_spec,
        metavar="[NAME=]USER@HOST[:PORT]", help="Pre-register a connection (repeatable)",
    )
    return parser


def apply_args(args) -> None:
    if args.key: config.SSH_PRIVATE_KEY = args.key.replace("\\n", "\n")
    if args.key_path: config.SSH_KEY_PATH = args.key_path
    if args.passphrase: config.SSH_KEY_PASSPHRASE = args.passphrase
    if args.agent_sock: config.SSH_AUTH_SOCK = args.agent_sock
    if args.no_agent: config.SSH_AUTH_SOCK = None
    if args.model: config.OPENAI_MODEL = args.model
    if args.check_timeout is not None: config.CHECK_TIMEOUT = args.check_timeout

    if args.no_verify_host:
        config.SSH_VERIFY_HOST_KEY = False
    elif args.verify_host:
        config.SSH_VERIFY_HOST_KEY = True


def main(argv: Optional[list] = None) -> None:
    from shellpilot.app import build_app

    # Pre-load from environment
    config.load_from_env()
    args = build_parser().parse_args(argv)
    apply_args(args)

    runtime_paths = resolve_runtime_paths(project_root_arg=args.project_root, cache_dir_arg=args.cache_dir)
    config.PROJECT_ROOT = runtime_paths["project_root"]
    config.PROJECT_TAG = runtime_paths["project_tag"]
    config.CACHE_DIRS = make_cache_dirs(runtime_paths["cache_root"])

    app = build_app(config)
    for name, user, host, port in args.connection:
        connection = app.store.create_connection(name, host, user, port)
        log_error(f"registered connection {connection.name} ({connection.address}) id={connection.id}")

    sources = ", ".join(app.auth.configured_sources()) or "none"
    log_error(
        f"shellpilot started. auth sources: {sources}. "
        f"project_root={config.PROJECT_ROOT} cache={config.CACHE_DIRS['cache_root']} "
        f"verify_host={config.SSH_VERIFY_HOST_KEY} oracle={'on' if app.oracle else 'off'}"
    )

    # Force UTF-8 I/O so remote output with non-cp1252 characters cannot break the pipe
    stdin = io.TextIOWrapper(sys.stdin.buffer, encoding="utf-8", errors="replace")
    writer = _Writer(io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", line_buffering=True))

    stop = threading.Event()
    pump = threading.Thread(target=_pump_output, args=(app, writer, stop), daemon=True)
    pump.start()

    workers: List[threading.Thread] = []
    try:
        workers = serve(app, stdin, writer)
    finally:
        log_error("shutting down...")
        stop.set()
        # in-flight tool calls end as aborted once their sessions are gone
        app.shutdown()
        for worker in workers:
            worker.join(timeout=2)
        pump.join(timeout=2)


if __name__ == "__main__":
    main()
