from typing import List, Optional


class ShellPilotError(Exception):
    """Base error. `hint` is shown to the operator, `retryable` says whether
    simply trying again can help."""

    hint = ""
    retryable = False

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        if hint is not None:
            self.hint = hint

    def to_dict(self):
        data = {"error": str(self), "error_type": type(self).__name__, "retryable": self.retryable}
        if self.hint:
            data["hint"] = self.hint
        return data


class AuthUnavailable(ShellPilotError):
    hint = (
        "No usable SSH identity. Load a key into the agent (ssh-add ~/.ssh/<key>) "
        "or set SSH_PRIVATE_KEY / SSH_KEY_PATH, then retry."
    )

    def __init__(self, attempted: List[str], message: Optional[str] = None):
        self.attempted = list(attempted)
        if message is None:
            tried = "; ".join(self.attempted) if self.attempted else "none configured"
            message = f"no credential source yielded a usable identity ({tried})"
        super().__init__(message)

    def to_dict(self):
        data = super().to_dict()
        data["attempted"] = list(self.attempted)
        return data


class ConnectError(ShellPilotError):
    retryable = True
    hint = "Check host, port and that the server accepts your key, then reconnect."


class NoSession(ShellPilotError):
    hint = "Connect first (connect tool) before running commands."


class ProbeFailure(ShellPilotError):
    pass


class ExecutionError(ShellPilotError):
    """The command channel failed to open or broke before an exit code."""

    def __init__(self, message: str, partial_output: str = "", hint: Optional[str] = None):
        super().__init__(message, hint=hint)
        self.partial_output = partial_output

    def to_dict(self):
        data = super().to_dict()
        data["output"] = self.partial_output
        return data


class ExecutionAborted(ExecutionError):
    """The session went away while the command was running."""

    hint = "The session was disconnected mid-command; the command's outcome is unknown."


class OracleError(ShellPilotError):
    retryable = True


class NotFound(ShellPilotError):
    pass


class InvalidRequest(ShellPilotError):
    pass
