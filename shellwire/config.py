import os
from typing import Optional, Dict

# ========= Static config =========
CONNECT_TIMEOUT = 10
KEEPALIVE_INTERVAL = 30
BUFFER_SIZE = 4096
READ_POLL_TIMEOUT = 0.5

SETUP_TIMEOUT = 15.0
DEFAULT_COMMAND_TIMEOUT = 20.0
QUICK_TIMEOUT = 10.0
MAX_COMMAND_TIMEOUT = 3600.0
DEFAULT_SETTLE_DELAY = 0.15
CLOSE_GRACE = 0.5

MAX_OUTPUT_CHARS = 10_000_000

# File operation timeouts (seconds)
LIST_TIMEOUT = 30.0
QUICK_LIST_TIMEOUT = 15.0
MUTATE_TIMEOUT = 15.0
TREE_MUTATE_TIMEOUT = 30.0
TRANSFER_TIMEOUT = 60.0
READ_TIMEOUT = 30.0
SEARCH_TIMEOUT = 30.0

MAX_FILE_READ_BYTES = 1_000_000
MAX_INLINE_WRITE_BYTES = 2048
WRITE_CHUNK_CHARS = 800
SEARCH_MAX_DEPTH = 5
SEARCH_MAX_RESULTS = 100

DEFAULT_PATH = "/usr/local/bin:/usr/bin:/bin:/usr/sbin:/sbin:/opt/bin:/opt/sbin"
LOCAL_SHELL_FALLBACK = "/bin/sh"


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("true", "1", "yes", "on")


# ========= Runtime Configuration =========
class EngineConfig:
    def __init__(self):
        self.SSH_HOST: Optional[str] = None
        self.SSH_USER: Optional[str] = None
        self.SSH_PORT: int = 22
        self.SSH_KEY_PATH: Optional[str] = None
        self.SSH_VERIFY_HOST_KEY: bool = True
        self.EXTRA_PATH: Optional[str] = None
        self.SETTLE_DELAY: float = DEFAULT_SETTLE_DELAY
        self.INTERRUPT_ON_TIMEOUT: bool = True
        self.LOCAL_SHELL: str = LOCAL_SHELL_FALLBACK
        self.CACHE_DIR: str = ""
        self.CACHE_DIRS: Dict[str, str] = {}

    def load_from_env(self):
        self.SSH_HOST = os.environ.get("SHELLWIRE_SSH_HOST", self.SSH_HOST)
        self.SSH_USER = os.environ.get("SHELLWIRE_SSH_USER", self.SSH_USER)
        self.SSH_PORT = int(os.environ.get("SHELLWIRE_SSH_PORT", self.SSH_PORT))
        self.SSH_KEY_PATH = os.environ.get("SHELLWIRE_SSH_KEY_PATH", self.SSH_KEY_PATH)
        self.SSH_VERIFY_HOST_KEY = _env_bool("SHELLWIRE_SSH_VERIFY_HOST_KEY", self.SSH_VERIFY_HOST_KEY)
        self.EXTRA_PATH = os.environ.get("SHELLWIRE_EXTRA_PATH", self.EXTRA_PATH)
        self.SETTLE_DELAY = float(os.environ.get("SHELLWIRE_SETTLE_DELAY", self.SETTLE_DELAY))
        self.INTERRUPT_ON_TIMEOUT = _env_bool("SHELLWIRE_INTERRUPT_ON_TIMEOUT", self.INTERRUPT_ON_TIMEOUT)
        self.LOCAL_SHELL = os.environ.get("SHELLWIRE_LOCAL_SHELL") or os.environ.get("SHELL") or self.LOCAL_SHELL
        self.CACHE_DIR = os.environ.get("SHELLWIRE_CACHE_DIR", self.CACHE_DIR)

# Global instance
config = EngineConfig()
