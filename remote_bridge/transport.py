import posixpath
import stat
import threading
import time
from collections import deque
from typing import Any, Dict, List, Optional, Protocol

import paramiko

from remote_bridge.config import (
    CONNECT_TIMEOUT, KEEPALIVE_INTERVAL, BUFFER_SIZE, GLOB_MAX_RESULTS, GLOB_SKIP_DIRS,
    BridgeConfig,
)
from remote_bridge.errors import IOFailure, RemoteUnreachable
from remote_bridge.paths import RemoteLocator
from remote_bridge.utils import glob_to_regex, iso_now, json_line, log_error


class RemoteFiles(Protocol):
    def read(self, locator: RemoteLocator) -> bytes: ...

    def write(self, locator: RemoteLocator, data: bytes) -> None: ...

    def list(self, locator: RemoteLocator, pattern: str, limit: int = GLOB_MAX_RESULTS) -> List[str]: ...


class ShellChannel(Protocol):
    # bumped every time a new shell is opened; lets callers wait for a fresh prompt
    generation: int

    def submit(self, text: str) -> None: ...


class SSHTransport:
    """One authenticated SSH connection exposing SFTP file access and a
    persistent interactive shell."""

    def __init__(
        self,
        host: str,
        user: Optional[str] = None,
        password: Optional[str] = None,
        port: int = 22,
        key_path: Optional[str] = None,
        key_passphrase: Optional[str] = None,
        verify_host_key: bool = True,
        log_path: Optional[str] = None,
    ):
        self.host = host
        self.user = user
        self.password = password
        self.port = port
        self.key_path = key_path
        self.key_passphrase = key_passphrase
        self.verify_host_key = verify_host_key
        self.log_path = log_path

        self.client: Optional[paramiko.SSHClient] = None
        self.channel: Optional[paramiko.Channel] = None
        self.sftp: Optional[paramiko.SFTPClient] = None
        self.generation = 0

        self.channel_lock = threading.Lock()
        self.sftp_lock = threading.Lock()
        # taken by both the shell and SFTP paths before any (re)connect
        self.connect_lock = threading.RLock()

    @classmethod
    def from_config(cls, cfg: BridgeConfig) -> "SSHTransport":
        return cls(
            host=cfg.SSH_HOST or "",
            user=cfg.SSH_USER,
            password=cfg.SSH_PASSWORD,
            port=cfg.SSH_PORT,
            key_path=cfg.SSH_KEY_PATH,
            key_passphrase=cfg.SSH_KEY_PASSPHRASE,
            verify_host_key=cfg.SSH_VERIFY_HOST_KEY,
            log_path=cfg.CACHE_DIRS.get("transport_log"),
        )

    def _log(self, payload: Dict[str, Any]) -> None:
        if not self.log_path:
            return
        data = {"ts": iso_now(), "host": self.host}
        data.update(payload)
        json_line(self.log_path, data)

    def connect(self) -> None:
        with self.connect_lock:
            self._connect()

    def _connect(self) -> None:
        try:
            self.close()
            self.client = paramiko.SSHClient()

            if self.verify_host_key:
                self.client.load_system_host_keys()
            else:
                self.client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

            connect_kwargs = {
                "hostname": self.host,
                "port": self.port,
                "username": self.user,
                "timeout": CONNECT_TIMEOUT,
                "allow_agent": True,
                "look_for_keys": True,
            }
            if self.password:
                connect_kwargs["password"] = self.password
            if self.key_path:
                connect_kwargs["key_filename"] = self.key_path
                if self.key_passphrase:
                    connect_kwargs["passphrase"] = self.key_passphrase

            self.client.connect(**connect_kwargs)

            transport = self.client.get_transport()
            if transport:
                transport.set_keepalive(KEEPALIVE_INTERVAL)

            self._open_channel()
            self._log({"event": "connected", "port": self.port})
        except Exception as exc:
            self._log({"event": "connect_failed", "error": str(exc)})
            raise RemoteUnreachable(f"failed to connect to {self.host}:{self.port}: {exc}")

    def _open_channel(self) -> None:
        self.channel = self.client.invoke_shell()
        self.channel.settimeout(1.0)
        self.generation += 1
        time.sleep(0.2)
        self._drain()

    def _drain(self) -> None:
        # The sentinel protocol never reads the shell's echo; discard it so the
        # channel window does not fill up.
        try:
            while self.channel and self.channel.recv_ready():
                self.channel.recv(BUFFER_SIZE)
        except Exception:
            pass

    def is_alive(self) -> bool:
        if not self.client:
            return False
        try:
            transport = self.client.get_transport()
            return bool(transport and transport.is_active())
        except Exception:
            return False

    def check_health(self) -> None:
        with self.connect_lock:
            if not self.is_alive():
                log_error(f"SSH connection to {self.host} lost, reconnecting...")
                self._connect()
                return
            if not self.channel or self.channel.closed:
                self._log({"event": "channel_reopen"})
                self._open_channel()

    # ----- shell channel -----

    def submit(self, text: str) -> None:
        with self.channel_lock:
            self.check_health()
            self._drain()
            try:
                self.channel.send(text + "\n")
            except Exception as exc:
                raise RemoteUnreachable(f"failed to send command: {exc}")

    # ----- file primitive -----

    def _get_sftp(self) -> paramiko.SFTPClient:
        if self.sftp is not None:
            try:
                self.sftp.normalize(".")
                return self.sftp
            except Exception:
                log_error("SFTP channel broken, reopening...")
                try:
                    self.sftp.close()
                except Exception:
                    pass
                self.sftp = None
        self.check_health()
        try:
            self.sftp = self.client.open_sftp()
        except Exception as exc:
            raise RemoteUnreachable(f"failed to open SFTP channel: {exc}")
        return self.sftp

    def read(self, locator: RemoteLocator) -> bytes:
        with self.sftp_lock:
            sftp = self._get_sftp()
            try:
                with sftp.file(locator.path, "rb") as handle:
                    return handle.read()
            except FileNotFoundError:
                raise
            except (OSError, EOFError, paramiko.SSHException) as exc:
                raise IOFailure(f"read {locator.path}: {exc}")

    def write(self, locator: RemoteLocator, data: bytes) -> None:
        with self.sftp_lock:
            sftp = self._get_sftp()
            try:
                self._makedirs(sftp, posixpath.dirname(locator.path))
                with sftp.file(locator.path, "wb") as handle:
                    handle.write(data)
            except (OSError, EOFError, paramiko.SSHException) as exc:
                raise IOFailure(f"write {locator.path}: {exc}")

    @staticmethod
    def _makedirs(sftp: paramiko.SFTPClient, directory: str) -> None:
        missing = []
        while directory and directory != "/":
            try:
                sftp.stat(directory)
                break
            except FileNotFoundError:
                missing.append(directory)
                directory = posixpath.dirname(directory)
        for path in reversed(missing):
            sftp.mkdir(path)

    def list(self, locator: RemoteLocator, pattern: str, limit: int = GLOB_MAX_RESULTS) -> List[str]:
        matcher = glob_to_regex(pattern)
        base = locator.path.rstrip("/") or "/"
        matches: List[str] = []
        with self.sftp_lock:
            sftp = self._get_sftp()
            queue = deque([""])
            while queue and len(matches) < limit:
                rel_dir = queue.popleft()
                directory = posixpath.join(base, rel_dir) if rel_dir else base
                try:
                    entries = sftp.listdir_attr(directory)
                except FileNotFoundError:
                    if not rel_dir:
                        raise
                    continue
                except (OSError, EOFError, paramiko.SSHException) as exc:
                    if not rel_dir:
                        raise IOFailure(f"list {directory}: {exc}")
                    log_error(f"skipping unreadable directory {directory}: {exc}")
                    continue
                for entry in sorted(entries, key=lambda e: e.filename):
                    rel = posixpath.join(rel_dir, entry.filename) if rel_dir else entry.filename
                    if stat.S_ISDIR(entry.st_mode or 0):
                        if entry.filename not in GLOB_SKIP_DIRS:
                            queue.append(rel)
                    elif matcher.match(rel):
                        matches.append(posixpath.join(base, rel))
                        if len(matches) >= limit:
                            break
        return matches

    def close(self) -> None:
        try:
            if self.sftp:
                self.sftp.close()
        except Exception:
            pass
        self.sftp = None

        try:
            if self.channel:
                self.channel.close()
        except Exception:
            pass
        self.channel = None

        try:
            if self.client:
                self.client.close()
        except Exception:
            pass
        self.client = None
