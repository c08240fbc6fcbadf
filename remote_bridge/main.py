import sys
import io
import json
import argparse
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Optional

from remote_bridge.config import TOOL_WORKERS, config
from remote_bridge.errors import BridgeError
from remote_bridge.executor import build_executor
from remote_bridge.handlers import ToolBridge
from remote_bridge.paths import PathResolver
from remote_bridge.server import ClientPeer, handle_request, make_error
from remote_bridge.transport import SSHTransport
from remote_bridge.utils import log_error, make_cache_dirs, resolve_runtime_paths

# Force UTF-8 I/O so remote output with non-cp1252 characters survives on Windows
_stdin = io.TextIOWrapper(sys.stdin.buffer, encoding="utf-8", errors="replace")
_stdout = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", line_buffering=True)
_stdout_lock = threading.Lock()


def _write_message(message: Dict[str, Any]) -> None:
    """Write one JSON-RPC message to stdout as UTF-8."""
    with _stdout_lock:
        try:
            _stdout.write(json.dumps(message, ensure_ascii=False) + "\n")
            _stdout.flush()
        except Exception as exc:
            log_error(f"response write error: {exc}")
            # Fallback: escape all non-ASCII to guarantee safe output
            try:
                _stdout.write(json.dumps(message, ensure_ascii=True) + "\n")
                _stdout.flush()
            except Exception as exc2:
                log_error(f"response write fallback error: {exc2}")


def _serve(request: Dict[str, Any], bridge: ToolBridge) -> None:
    try:
        response = handle_request(request, bridge)
    except Exception as exc:
        log_error(f"unexpected error: {exc}")
        response = make_error(request.get("id"), -32603, f"Internal error: {exc}")
    if response is not None:
        _write_message(response)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Remote tool bridge (file and shell tools executed on an SSH host)"
    )
    parser.add_argument("--host", help="SSH host (overrides SSH_HOST env)")
    parser.add_argument("--user", help="SSH username (overrides SSH_USER env)")
    parser.add_argument("--password", help="SSH password (overrides SSH_PASSWORD env)")
    parser.add_argument("--key", help="Path to SSH private key (overrides SSH_KEY_PATH env)")
    parser.add_argument("--passphrase", help="Passphrase for SSH private key (overrides SSH_KEY_PASSPHRASE env)")
    parser.add_argument("--no-verify-host", action="store_true", help="Disable SSH host key verification")
    parser.add_argument("--port", type=int, help="SSH port (overrides SSH_PORT env)")
    parser.add_argument("--ssh-config", help="ssh_config file for the ssh subprocess executor")
    parser.add_argument("--remote-root", help="Remote workspace root (overrides REMOTE_BRIDGE_ROOT env)")
    parser.add_argument("--local-root", help="Local directory that mirrors the remote workspace root")
    parser.add_argument("--use-ssh-exec", action="store_true", help="Run commands through the local ssh client instead of the shared shell")
    parser.add_argument("--sentinel-dir", help="Remote directory for command sentinel files")
    parser.add_argument("--review", action="store_true", help="Ask the client to review writes and edits before they land")
    parser.add_argument("--review-timeout", type=float, help="Seconds to wait for a review decision")
    parser.add_argument("--project-root", help="Project root for local state")
    parser.add_argument("--cache-dir", help="Optional cache root override")
    return parser


def apply_args(args: argparse.Namespace) -> None:
    if args.host: config.SSH_HOST = args.host
    if args.user: config.SSH_USER = args.user
    if args.password: config.SSH_PASSWORD = args.password
    if args.key: config.SSH_KEY_PATH = args.key
    if args.passphrase: config.SSH_KEY_PASSPHRASE = args.passphrase
    if args.port: config.SSH_PORT = args.port
    if args.ssh_config: config.SSH_CONFIG_FILE = args.ssh_config
    if args.no_verify_host: config.SSH_VERIFY_HOST_KEY = False
    if args.remote_root: config.REMOTE_ROOT = args.remote_root
    if args.local_root: config.LOCAL_ROOT = args.local_root
    if args.use_ssh_exec: config.USE_SSH_EXEC = True
    if args.sentinel_dir: config.SENTINEL_DIR = args.sentinel_dir
    if args.review: config.REVIEW = True
    if args.review_timeout is not None: config.REVIEW_TIMEOUT = args.review_timeout


def build_bridge(peer: Optional[ClientPeer]) -> ToolBridge:
    resolver = PathResolver(config.REMOTE_ROOT, host=config.SSH_HOST or "", local_root=config.LOCAL_ROOT)
    transport = SSHTransport.from_config(config)
    transport.connect()
    executor = build_executor(config, transport, transport)
    return ToolBridge(
        resolver,
        transport,
        executor,
        review_gate=peer.review_edit if (peer and config.REVIEW) else None,
        notifier=peer.file_updated if peer else None,
        review_timeout=config.REVIEW_TIMEOUT,
        transport=transport,
    )


def main() -> None:
    # Pre-load from environment
    config.load_from_env()

    parser = build_parser()
    args = parser.parse_args()
    apply_args(args)

    if not config.SSH_HOST:
        parser.error("SSH host is required (via --host or SSH_HOST env)")
    if not config.SSH_USER:
        parser.error("SSH user is required (via --user or SSH_USER env)")
    if not config.REMOTE_ROOT:
        parser.error("Remote workspace root is required (via --remote-root or REMOTE_BRIDGE_ROOT env)")

    runtime_paths = resolve_runtime_paths(project_root_arg=args.project_root, cache_dir_arg=args.cache_dir)
    config.CACHE_DIRS = make_cache_dirs(runtime_paths["cache_root"])

    peer = ClientPeer(_write_message)
    try:
        bridge = build_bridge(peer)
    except BridgeError as exc:
        log_error(f"startup failed: {exc}")
        sys.exit(1)

    log_error(
        f"remote bridge started for {config.SSH_HOST}:{config.SSH_PORT}. "
        f"remote_root={bridge.resolver.remote_root} local_root={bridge.resolver.local_root} "
        f"exec={'ssh' if config.USE_SSH_EXEC else 'sentinel'} review={config.REVIEW}"
    )

    pool = ThreadPoolExecutor(max_workers=TOOL_WORKERS, thread_name_prefix="tool")
    for line in _stdin:
        line = line.strip()
        if not line:
            continue
        try:
            message = json.loads(line)
        except json.JSONDecodeError as exc:
            log_error(f"invalid json: {exc}")
            continue
        if not isinstance(message, dict):
            log_error("ignoring non-object message")
            continue
        if "method" not in message:
            if not peer.resolve(message):
                log_error(f"unmatched response id: {message.get('id')}")
            continue
        pool.submit(_serve, message, bridge)

    log_error("shutting down...")
    peer.cancel_all()
    pool.shutdown(wait=True)
    bridge.close()

if __name__ == "__main__":
    main()
