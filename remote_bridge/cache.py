import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from remote_bridge.config import WRITE_CACHE_TTL, EDIT_OVERRIDE_TTL


@dataclass
class CacheEntry:
    content: str
    timestamp: float


class WriteCache:
    """Recently written content per remote path.

    The SFTP side can hand back the previous bytes for a short while after a
    write lands, so reads check here first.
    """

    def __init__(self, ttl: float = WRITE_CACHE_TTL, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self.lock = threading.Lock()
        self.entries: Dict[str, CacheEntry] = {}

    def cache_write(self, remote_path: str, content: str) -> None:
        with self.lock:
            now = self.clock()
            expired = [path for path, entry in self.entries.items() if now - entry.timestamp > self.ttl]
            for path in expired:
                del self.entries[path]
            self.entries[remote_path] = CacheEntry(content, now)

    def get_cached_write(self, remote_path: str) -> Optional[str]:
        with self.lock:
            entry = self.entries.get(remote_path)
            if entry is None:
                return None
            if self.clock() - entry.timestamp > self.ttl:
                del self.entries[remote_path]
                return None
            return entry.content

    def clear(self) -> None:
        with self.lock:
            self.entries.clear()


class EditOverrides:
    """Reviewer-approved replacement content, consumed once per remote path."""

    def __init__(self, ttl: float = EDIT_OVERRIDE_TTL, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self.lock = threading.Lock()
        self.pending: Dict[str, CacheEntry] = {}

    def set_override(self, remote_path: str, content: str) -> None:
        with self.lock:
            self.pending[remote_path] = CacheEntry(content, self.clock())

    def consume_override(self, remote_path: str) -> Optional[str]:
        with self.lock:
            now = self.clock()
            expired = [path for path, entry in self.pending.items() if now - entry.timestamp >= self.ttl]
            for path in expired:
                del self.pending[path]
            entry = self.pending.pop(remote_path, None)
            return entry.content if entry is not None else None

    def clear(self) -> None:
        with self.lock:
            self.pending.clear()
