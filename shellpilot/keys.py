import base64
import binascii
import hashlib
import shlex
from typing import Any, Callable, Optional, Tuple

import paramiko

from shellpilot.config import DEPLOY_CONNECT_TIMEOUT
from shellpilot.errors import ConnectError, ExecutionError
from shellpilot.utils import log_error

DEPLOY_MARKER = "Key deployed successfully"


def _key_blob(public_key: str) -> Optional[Tuple[str, bytes]]:
    parts = (public_key or "").strip().split()
    if len(parts) < 2:
        return None
    try:
        blob = base64.b64decode(parts[1].encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError, ValueError):
        return None
    if not blob:
        return None
    return parts[0], blob


def fingerprint(public_key: str) -> str:
    parsed = _key_blob(public_key)
    data = parsed[1] if parsed else (public_key or "").encode("utf-8")
    digest = hashlib.sha256(data).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")


def parse_public_key(public_key: str) -> Optional[Tuple[str, str]]:
    """Return (key_type, fingerprint) for an OpenSSH public key line, or None."""
    parsed = _key_blob(public_key)
    if parsed is None:
        return None
    key_type, _ = parsed
    if key_type.startswith("ssh-"):
        key_type = key_type[len("ssh-"):]
    return key_type, fingerprint(public_key)


def deploy_command(public_key: str) -> str:
    key_line = shlex.quote(public_key.strip())
    return (
        "mkdir -p ~/.ssh && chmod 700 ~/.ssh && "
        f"printf '%s\\n' {key_line} >> ~/.ssh/authorized_keys && "
        "chmod 600 ~/.ssh/authorized_keys && "
        "sort -u ~/.ssh/authorized_keys > ~/.ssh/authorized_keys.tmp && "
        "mv ~/.ssh/authorized_keys.tmp ~/.ssh/authorized_keys && "
        f"echo '{DEPLOY_MARKER}'"
    )


def deploy_public_key(
    connection,
    public_key: str,
    password: str,
    client_factory: Callable[[], Any] = paramiko.SSHClient,
    verify_host_key: bool = True,
    timeout: float = DEPLOY_CONNECT_TIMEOUT,
) -> bool:
    """Append `public_key` to the remote authorized_keys using password auth.

    Runs on its own short-lived client, outside SessionManager, because the
    connection has no key access yet.
    """
    if parse_public_key(public_key) is None:
        raise ValueError("invalid public key format")

    client = client_factory()
    if verify_host_key:
        client.load_system_host_keys()
    else:
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    try:
        try:
            client.connect(
                hostname=connection.host,
                port=connection.port,
                username=connection.username,
                password=password,
                timeout=timeout,
                banner_timeout=timeout,
                auth_timeout=timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except (paramiko.SSHException, OSError) as exc:
            raise ConnectError(f"key deployment connect to {connection.address} failed: {exc}") from exc

        try:
            _stdin, stdout, stderr = client.exec_command(deploy_command(public_key), timeout=timeout)
            output = stdout.read().decode("utf-8", errors="replace")
            errors = stderr.read().decode("utf-8", errors="replace")
            exit_code = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as exc:
            raise ExecutionError(f"key deployment command failed: {exc}") from exc

        if exit_code != 0 or DEPLOY_MARKER not in output:
            log_error(f"key deployment on {connection.address} failed (exit={exit_code}): {errors.strip()}")
            return False
        return True
    finally:
        try:
            client.close()
        except Exception as exc:
            log_error(f"client close failed: {exc}")
