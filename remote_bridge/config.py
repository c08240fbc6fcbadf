import os
import shlex
from typing import Optional, Dict, List

# ========= Static config =========
CONNECT_TIMEOUT = 10
KEEPALIVE_INTERVAL = 30
BUFFER_SIZE = 4096

WRITE_CACHE_TTL = 10.0
EDIT_OVERRIDE_TTL = 10.0

DEFAULT_EXEC_TIMEOUT = 120.0
MIN_EXEC_TIMEOUT = 0.01
MAX_EXEC_TIMEOUT = 3600.0
POLL_INTERVAL = 0.3
CHANNEL_WARMUP = 0.5
DEFAULT_SENTINEL_DIR = "/tmp"
SENTINEL_PREFIX = ".bridge_exec_"

MAX_OUTPUT_CHARS = 30000
TRUNCATION_MARKER = "\n\n... [truncated] ...\n\n"
GLOB_MAX_RESULTS = 1000
GLOB_SKIP_DIRS = frozenset({"node_modules", ".git", "__pycache__"})
MAX_SSH_OUTPUT_BYTES = 5 * 1024 * 1024

REVIEW_TIMEOUT = 300.0
TOOL_WORKERS = 4

LOCAL_MIRROR_DIR = os.path.join("~", ".remote-bridge")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("true", "1", "yes", "on")


# ========= Runtime Configuration =========
class BridgeConfig:
    def __init__(self):
        self.SSH_HOST: Optional[str] = None
        self.SSH_USER: Optional[str] = None
        self.SSH_PASSWORD: Optional[str] = None
        self.SSH_PORT: int = 22
        self.SSH_KEY_PATH: Optional[str] = None
        self.SSH_KEY_PASSPHRASE: Optional[str] = None
        self.SSH_VERIFY_HOST_KEY: bool = True
        self.SSH_CONFIG_FILE: Optional[str] = None
        self.SSH_EXTRA_ARGS: List[str] = []

        self.REMOTE_ROOT: str = ""
        self.LOCAL_ROOT: Optional[str] = None
        self.USE_SSH_EXEC: bool = False
        self.SENTINEL_DIR: str = DEFAULT_SENTINEL_DIR
        self.REVIEW: bool = False
        self.REVIEW_TIMEOUT: float = REVIEW_TIMEOUT
        self.CACHE_DIRS: Dict[str, str] = {}

    def load_from_env(self):
        self.SSH_HOST = os.environ.get("SSH_HOST", self.SSH_HOST)
        self.SSH_USER = os.environ.get("SSH_USER", self.SSH_USER)
        self.SSH_PASSWORD = os.environ.get("SSH_PASSWORD", self.SSH_PASSWORD)
        self.SSH_PORT = int(os.environ.get("SSH_PORT", self.SSH_PORT))
        self.SSH_KEY_PATH = os.environ.get("SSH_KEY_PATH", self.SSH_KEY_PATH)
        self.SSH_KEY_PASSPHRASE = os.environ.get("SSH_KEY_PASSPHRASE", self.SSH_KEY_PASSPHRASE)
        self.SSH_VERIFY_HOST_KEY = _env_bool("SSH_VERIFY_HOST_KEY", self.SSH_VERIFY_HOST_KEY)
        self.SSH_CONFIG_FILE = os.environ.get("SSH_CONFIG_FILE", self.SSH_CONFIG_FILE)
        extra = os.environ.get("SSH_EXTRA_ARGS")
        if extra:
            self.SSH_EXTRA_ARGS = shlex.split(extra)

        self.REMOTE_ROOT = os.environ.get("REMOTE_BRIDGE_ROOT", self.REMOTE_ROOT)
        self.LOCAL_ROOT = os.environ.get("REMOTE_BRIDGE_LOCAL_ROOT", self.LOCAL_ROOT)
        self.USE_SSH_EXEC = _env_bool("REMOTE_BRIDGE_USE_SSH_EXEC", self.USE_SSH_EXEC)
        self.SENTINEL_DIR = os.environ.get("REMOTE_BRIDGE_SENTINEL_DIR", self.SENTINEL_DIR)
        self.REVIEW = _env_bool("REMOTE_BRIDGE_REVIEW", self.REVIEW)
        review_timeout = os.environ.get("REMOTE_BRIDGE_REVIEW_TIMEOUT")
        if review_timeout:
            self.REVIEW_TIMEOUT = float(review_timeout)

# Global instance
config = BridgeConfig()
