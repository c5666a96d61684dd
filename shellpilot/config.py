import os
import re
from typing import Optional, Dict

# ========= Static config =========
CONNECT_TIMEOUT = 10
DEPLOY_CONNECT_TIMEOUT = 15
KEEPALIVE_INTERVAL = 30
BUFFER_SIZE = 4096
HEALTH_CHECK_INTERVAL = 30
POLL_INTERVAL = 0.02
CHANNEL_OPEN_TIMEOUT = 10.0

DEFAULT_COMMAND_TIMEOUT = 0.0  # 0 means disabled
MAX_COMMAND_TIMEOUT = 3600.0
DEFAULT_CHECK_TIMEOUT = 0.0  # 0 means disabled
MAX_CHECK_TIMEOUT = 300.0

SUBSCRIBER_QUEUE_SIZE = 10000
DEFAULT_HISTORY_ROWS = 50
MAX_HISTORY_ROWS = 1000
MAX_RESULT_OUTPUT_CHARS = 200000

DEFAULT_KEY_PATHS = ("~/.ssh/id_ed25519", "~/.ssh/id_ecdsa", "~/.ssh/id_rsa")
DEFAULT_OPENAI_MODEL = "gpt-4o"

# ========= Output cleanup =========
ANSI_ESCAPE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")
CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")

# ========= Runtime Configuration =========
class ServerConfig:
    def __init__(self):
        self.SSH_PRIVATE_KEY: Optional[str] = None
        self.SSH_KEY_PASSPHRASE: Optional[str] = None
        self.SSH_AUTH_SOCK: Optional[str] = None
        self.SSH_KEY_PATH: Optional[str] = None
        self.SSH_VERIFY_HOST_KEY: bool = True
        self.OPENAI_API_KEY: Optional[str] = None
        self.OPENAI_MODEL: str = DEFAULT_OPENAI_MODEL
        self.OPENAI_BASE_URL: Optional[str] = None
        self.CHECK_TIMEOUT = DEFAULT_CHECK_TIMEOUT
        self.PROJECT_ROOT: str = ""
        self.PROJECT_TAG: str = ""
        self.CACHE_DIRS: Dict[str, str] = {}

    def load_from_env(self):
        private_key = os.environ.get("SSH_PRIVATE_KEY")
        if private_key:
            # deployment secrets usually arrive with escaped newlines
            self.SSH_PRIVATE_KEY = private_key.replace("\\n", "\n")
        self.SSH_KEY_PASSPHRASE = os.environ.get("SSH_KEY_PASSPHRASE", self.SSH_KEY_PASSPHRASE)
        self.SSH_AUTH_SOCK = os.environ.get("SSH_AUTH_SOCK", self.SSH_AUTH_SOCK) or None
        self.SSH_KEY_PATH = os.environ.get("SSH_KEY_PATH", self.SSH_KEY_PATH)

        verify_host_env = os.environ.get("SSH_VERIFY_HOST_KEY")
        if verify_host_env is not None:
            self.SSH_VERIFY_HOST_KEY = verify_host_env.lower() in ("true", "1", "yes")

        self.OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY", self.OPENAI_API_KEY)
        self.OPENAI_MODEL = os.environ.get("OPENAI_MODEL", self.OPENAI_MODEL)
        self.OPENAI_BASE_URL = os.environ.get("OPENAI_BASE_URL", self.OPENAI_BASE_URL)

        # clamped by the coordinator; unparsable values fall back to the default
        self.CHECK_TIMEOUT = os.environ.get("SHELLPILOT_CHECK_TIMEOUT", self.CHECK_TIMEOUT)

    def resolve_key_path(self) -> Optional[str]:
        if self.SSH_KEY_PATH:
            return os.path.expanduser(self.SSH_KEY_PATH)
        for candidate in DEFAULT_KEY_PATHS:
            path = os.path.expanduser(candidate)
            if os.path.isfile(path):
                return path
        return None

# Global instance
config = ServerConfig()
