"""Remote command execution.

The interactive shell has no request/response framing: text goes in, a byte
stream comes out, and nothing says when a given command finished.
``SentinelExecutor`` runs every command with its output redirected into three
files under the sentinel directory and polls for the exit-status file over
SFTP. ``SSHSubprocessExecutor`` is the drop-in alternative that spawns the
local ``ssh`` client per call.
"""

import itertools
import os
import posixpath
import shlex
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

from remote_bridge.config import (
    DEFAULT_EXEC_TIMEOUT, MIN_EXEC_TIMEOUT, MAX_EXEC_TIMEOUT, POLL_INTERVAL, CHANNEL_WARMUP,
    DEFAULT_SENTINEL_DIR, SENTINEL_PREFIX, MAX_SSH_OUTPUT_BYTES, BUFFER_SIZE, BridgeConfig,
)
from remote_bridge.errors import BridgeError, ConfigError, IOFailure, RemoteUnreachable, TimedOut
from remote_bridge.paths import RemoteLocator
from remote_bridge.transport import RemoteFiles, ShellChannel
from remote_bridge.utils import clamp_float, iso_now, json_line, log_error


@dataclass
class ExecResult:
    stdout: str
    stderr: str
    exit_code: int


def _with_cwd(command: str, cwd: Optional[str]) -> str:
    return f"cd {shlex.quote(cwd)} && {command}" if cwd else command


class SentinelExecutor:
    def __init__(
        self,
        files: RemoteFiles,
        channel: ShellChannel,
        host: str = "",
        sentinel_dir: str = DEFAULT_SENTINEL_DIR,
        poll_interval: float = POLL_INTERVAL,
        warmup: float = CHANNEL_WARMUP,
        log_path: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.files = files
        self.channel = channel
        self.host = host
        self.sentinel_dir = sentinel_dir
        self.poll_interval = poll_interval
        self.warmup = warmup
        self.log_path = log_path
        self.sleep = sleep
        self.clock = clock

        # one sentinel cycle on the shared shell at a time
        self.lock = threading.Lock()
        self.counter = itertools.count(1)
        self.ready_generation: Optional[int] = None

    def _log(self, payload: Dict[str, Any]) -> None:
        if self.log_path:
            data = {"ts": iso_now(), "executor": "sentinel"}
            data.update(payload)
            json_line(self.log_path, data)

    def _locator(self, path: str) -> RemoteLocator:
        return RemoteLocator(self.host, path)

    def sentinel_base(self, exec_id: str) -> str:
        return posixpath.join(self.sentinel_dir, f"{SENTINEL_PREFIX}{exec_id}")

    @staticmethod
    def wrap_command(command: str, cwd: Optional[str], base: str) -> str:
        q = shlex.quote
        return f"({_with_cwd(command, cwd)}) > {q(base + '.out')} 2> {q(base + '.err')}; echo $? > {q(base + '.exit')}"

    def _read_text(self, path: str) -> str:
        return self.files.read(self._locator(path)).decode("utf-8", errors="replace")

    def _read_optional(self, path: str) -> str:
        try:
            return self._read_text(path)
        except (OSError, BridgeError):
            return ""

    def _submit_quietly(self, text: str) -> None:
        try:
            self.channel.submit(text)
        except (OSError, BridgeError) as exc:
            log_error(f"sentinel cleanup failed: {exc}")

    def execute(self, command: str, cwd: Optional[str] = None, timeout: float = DEFAULT_EXEC_TIMEOUT) -> ExecResult:
        timeout = clamp_float(timeout, DEFAULT_EXEC_TIMEOUT, MIN_EXEC_TIMEOUT, MAX_EXEC_TIMEOUT)
        with self.lock:
            exec_id = f"{int(time.time() * 1000)}_{next(self.counter)}"
            base = self.sentinel_base(exec_id)
            files = " ".join(shlex.quote(base + ext) for ext in (".out", ".err", ".exit"))

            if self.ready_generation != self.channel.generation:
                self.sleep(self.warmup)
                self.ready_generation = self.channel.generation

            self.channel.submit(self.wrap_command(command, cwd, base))
            started = self.clock()
            self._log({"event": "submitted", "id": exec_id, "command": command, "cwd": cwd, "timeout": timeout})

            while True:
                self.sleep(self.poll_interval)
                try:
                    exit_text = self._read_text(f"{base}.exit").strip()
                except (FileNotFoundError, IOFailure):
                    exit_text = ""
                if exit_text:
                    break
                if self.clock() - started >= timeout:
                    self._submit_quietly("\x03")
                    self._submit_quietly(f"kill %1 2>/dev/null; rm -f {files}")
                    self._log({"event": "timed_out", "id": exec_id, "elapsed": self.clock() - started})
                    raise TimedOut(f"Command timed out after {int(timeout * 1000)}ms")

            try:
                exit_code = int(exit_text)
            except ValueError:
                exit_code = 1
            stdout = self._read_optional(f"{base}.out")
            stderr = self._read_optional(f"{base}.err")
            self._submit_quietly(f"rm -f {files}")
            self._log({
                "event": "completed", "id": exec_id, "exit_code": exit_code,
                "elapsed": round(self.clock() - started, 3),
            })
            return ExecResult(stdout, stderr, exit_code)


class SSHSubprocessExecutor:
    def __init__(
        self,
        host: str,
        identity_file: Optional[str] = None,
        extra_args: Optional[List[str]] = None,
        config_file: Optional[str] = None,
        port: Optional[int] = None,
        verify_host_key: bool = True,
        ssh_binary: str = "ssh",
        max_output: int = MAX_SSH_OUTPUT_BYTES,
        log_path: Optional[str] = None,
    ):
        if not host:
            raise ConfigError("No SSH host configured")
        self.host = host
        self.identity_file = identity_file
        self.extra_args = list(extra_args or [])
        self.config_file = config_file
        self.port = port
        self.verify_host_key = verify_host_key
        self.ssh_binary = ssh_binary
        self.max_output = max_output
        self.log_path = log_path

    def build_args(self, command: str, cwd: Optional[str]) -> List[str]:
        args = [self.ssh_binary]
        if self.config_file:
            args += ["-F", self.config_file]
        if self.identity_file:
            args += ["-i", os.path.expanduser(self.identity_file)]
        if self.port and self.port != 22:
            args += ["-p", str(self.port)]
        args += self.extra_args
        args += ["-o", "BatchMode=yes", "-o", "ConnectTimeout=10"]
        if not self.verify_host_key:
            args += ["-o", "StrictHostKeyChecking=no"]
        args += ["--", self.host, _with_cwd(command, cwd)]
        return args

    def _reader(self, pipe, sink: bytearray) -> None:
        try:
            while True:
                chunk = pipe.read1(BUFFER_SIZE)
                if not chunk:
                    break
                room = self.max_output - len(sink)
                if room > 0:
                    sink.extend(chunk[:room])
        except (OSError, ValueError):
            pass

    @staticmethod
    def _kill(proc: subprocess.Popen) -> None:
        try:
            proc.terminate()
            proc.wait(timeout=2)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()
        except OSError:
            pass

    def execute(self, command: str, cwd: Optional[str] = None, timeout: float = DEFAULT_EXEC_TIMEOUT) -> ExecResult:
        timeout = clamp_float(timeout, DEFAULT_EXEC_TIMEOUT, MIN_EXEC_TIMEOUT, MAX_EXEC_TIMEOUT)
        args = self.build_args(command, cwd)
        try:
            proc = subprocess.Popen(args, stdin=subprocess.DEVNULL, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        except FileNotFoundError:
            raise RemoteUnreachable("SSH client not found.")

        out_buf, err_buf = bytearray(), bytearray()
        readers = [
            threading.Thread(target=self._reader, args=(proc.stdout, out_buf), daemon=True),
            threading.Thread(target=self._reader, args=(proc.stderr, err_buf), daemon=True),
        ]
        for reader in readers:
            reader.start()

        started = time.monotonic()
        try:
            exit_code = proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            self._kill(proc)
            for reader in readers:
                reader.join(timeout=1.0)
            if self.log_path:
                json_line(self.log_path, {"ts": iso_now(), "executor": "ssh", "event": "timed_out", "command": command})
            raise TimedOut(f"SSH command timed out after {int(timeout * 1000)}ms")
        for reader in readers:
            reader.join(timeout=5.0)

        if self.log_path:
            json_line(self.log_path, {
                "ts": iso_now(), "executor": "ssh", "event": "completed", "command": command,
                "cwd": cwd, "exit_code": exit_code, "elapsed": round(time.monotonic() - started, 3),
            })
        return ExecResult(
            out_buf.decode("utf-8", errors="replace"),
            err_buf.decode("utf-8", errors="replace"),
            exit_code,
        )


Executor = Union[SentinelExecutor, SSHSubprocessExecutor]


def build_executor(cfg: BridgeConfig, files: RemoteFiles, channel: ShellChannel) -> Executor:
    log_path = cfg.CACHE_DIRS.get("exec_log")
    if cfg.USE_SSH_EXEC:
        host = cfg.SSH_HOST or ""
        if host and cfg.SSH_USER and "@" not in host:
            host = f"{cfg.SSH_USER}@{host}"
        return SSHSubprocessExecutor(
            host=host,
            identity_file=cfg.SSH_KEY_PATH,
            extra_args=cfg.SSH_EXTRA_ARGS,
            config_file=cfg.SSH_CONFIG_FILE,
            port=cfg.SSH_PORT,
            verify_host_key=cfg.SSH_VERIFY_HOST_KEY,
            log_path=log_path,
        )
    return SentinelExecutor(
        files,
        channel,
        host=cfg.SSH_HOST or "",
        sentinel_dir=cfg.SENTINEL_DIR,
        log_path=log_path,
    )
