import os
import posixpath
from typing import NamedTuple, Optional

from remote_bridge.config import LOCAL_MIRROR_DIR
from remote_bridge.errors import ConfigError


class RemoteLocator(NamedTuple):
    host: str
    path: str

    def __str__(self) -> str:
        return f"ssh-remote+{self.host}{self.path}"


def default_local_root(host: str, remote_root: str) -> str:
    """Local directory the agent treats as its working root for ``remote_root``."""
    safe_remote = (remote_root or "default").replace("/", "-").lstrip("-")
    return os.path.join(os.path.expanduser(LOCAL_MIRROR_DIR), host or "unknown", safe_remote)


class PathResolver:
    def __init__(self, remote_root: str, host: str = "", local_root: Optional[str] = None):
        if not remote_root:
            raise ConfigError("no remote workspace root configured; cannot determine remote working directory")
        self.remote_root = remote_root.rstrip("/") or "/"
        self.host = host
        self.local_root = local_root if local_root is not None else default_local_root(host, self.remote_root)

    def to_remote_path(self, logical_path: str) -> str:
        if self._under_local_root(logical_path):
            rel = logical_path[len(self.local_root.rstrip("/\\")):].lstrip("/\\").replace("\\", "/")
            return posixpath.join(self.remote_root, rel) if rel else self.remote_root

        if posixpath.isabs(logical_path):
            return logical_path

        return posixpath.join(self.remote_root, logical_path)

    def _under_local_root(self, logical_path: str) -> bool:
        root = self.local_root.rstrip("/\\")
        if not root or not logical_path.startswith(root):
            return False
        return len(logical_path) == len(root) or logical_path[len(root)] in "/\\"

    def get_remote_locator(self, logical_path: str) -> RemoteLocator:
        return RemoteLocator(self.host, self.to_remote_path(logical_path))
