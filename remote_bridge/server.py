import itertools
import threading
from concurrent.futures import Future
from typing import Any, Callable, Dict, Optional

from remote_bridge.errors import UnknownTool
from remote_bridge.handlers import ToolBridge, ToolCallResult
from remote_bridge.utils import log_error

PROTOCOL_VERSION = "2024-11-05"
SERVER_INFO = {"name": "remote-bridge", "version": "1.0.0"}


def format_tool_result(result: ToolCallResult) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"content": [{"type": "text", "text": result.output}]}
    if result.is_error:
        payload["isError"] = True
    meta = {}
    if result.exit_code is not None:
        meta["exitCode"] = result.exit_code
    if result.kind:
        meta["errorKind"] = result.kind
    if meta:
        payload["_meta"] = meta
    return payload


def make_response(req_id: Any, result: ToolCallResult) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "result": format_tool_result(result)}


def make_error(req_id: Any, code: int, message: str) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "error": {"code": code, "message": message}}


def tools_list() -> Dict[str, Any]:
    file_path_param = {"type": "string", "description": "Absolute path to the file on the remote server"}
    tools = [
        {
            "name": "read_file",
            "description": "Read the contents of a file on the remote server",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "file_path": file_path_param,
                    "offset": {"type": "number", "description": "Line number to start reading from (1-based)"},
                    "limit": {"type": "number", "description": "Number of lines to read"},
                },
                "required": ["file_path"],
            },
        },
        {
            "name": "write_file",
            "description": "Write content to a file on the remote server (creates or overwrites)",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "file_path": file_path_param,
                    "content": {"type": "string", "description": "The content to write to the file"},
                },
                "required": ["file_path", "content"],
            },
        },
        {
            "name": "edit_file",
            "description": "Edit a file on the remote server by replacing an exact string match",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "file_path": file_path_param,
                    "old_string": {"type": "string", "description": "The exact string to find and replace"},
                    "new_string": {"type": "string", "description": "The replacement string"},
                },
                "required": ["file_path", "old_string", "new_string"],
            },
        },
        {
            "name": "glob",
            "description": "Find files matching a glob pattern on the remote server",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "pattern": {"type": "string", "description": "Glob pattern to match files (e.g. '**/*.py')"},
                    "path": {"type": "string", "description": "Directory to search in. Defaults to workspace root."},
                },
                "required": ["pattern"],
            },
        },
        {
            "name": "grep",
            "description": "Search file contents on the remote server (uses rg if available, falls back to grep)",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "pattern": {"type": "string", "description": "The regex pattern to search for"},
                    "path": {"type": "string", "description": "Directory or file to search in. Defaults to workspace root."},
                    "include": {"type": "string", "description": "Glob pattern to filter files (e.g. '*.py')"},
                    "context": {"type": "number", "description": "Number of context lines before and after each match"},
                    "max_results": {"type": "number", "description": "Maximum number of results to return"},
                },
                "required": ["pattern"],
            },
        },
        {
            "name": "bash",
            "description": "Execute a bash command on the remote server",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "command": {"type": "string", "description": "The bash command to execute on the remote server"},
                    "cwd": {"type": "string", "description": "Working directory for the command. Defaults to workspace root."},
                    "timeout_ms": {"type": "number", "description": "Timeout in milliseconds (default 120000)"},
                },
                "required": ["command"],
            },
        },
    ]
    return {"tools": tools}


class ClientPeer:
    """Outgoing side of the stdio connection: notifications and server-initiated
    requests whose responses arrive on the same stdin stream."""

    def __init__(self, write: Callable[[Dict[str, Any]], None]):
        self.write = write
        self.lock = threading.Lock()
        self.counter = itertools.count(1)
        self.pending: Dict[str, Future] = {}

    def notify(self, method: str, params: Dict[str, Any]) -> None:
        self.write({"jsonrpc": "2.0", "method": method, "params": params})

    def request(self, method: str, params: Dict[str, Any]) -> Future:
        future: Future = Future()
        req_id = f"bridge-{next(self.counter)}"
        with self.lock:
            self.pending[req_id] = future
        future.add_done_callback(lambda _f: self._forget(req_id))
        self.write({"jsonrpc": "2.0", "id": req_id, "method": method, "params": params})
        return future

    def _forget(self, req_id: str) -> None:
        with self.lock:
            self.pending.pop(req_id, None)

    def resolve(self, message: Dict[str, Any]) -> bool:
        """Route a response to the request it answers. Returns False if no
        pending request matches."""
        with self.lock:
            future = self.pending.get(message.get("id"))
        if future is None:
            return False
        if not future.set_running_or_notify_cancel():
            return True
        if "error" in message:
            error = message.get("error") or {}
            future.set_exception(RuntimeError(error.get("message", "client error")))
        else:
            future.set_result(message.get("result") or {})
        return True

    def cancel_all(self) -> None:
        with self.lock:
            futures = list(self.pending.values())
        for future in futures:
            future.cancel()

    def review_edit(self, tool_name: str, tool_input: Dict[str, Any], old_content: str, new_content: str) -> Future:
        return self.request("bridge/reviewEdit", {
            "tool": tool_name,
            "input": tool_input,
            "path": tool_input.get("file_path"),
            "oldContent": old_content,
            "newContent": new_content,
        })

    def file_updated(self, remote_path: str, old_content: str, new_content: str) -> None:
        self.notify("bridge/fileUpdated", {
            "path": remote_path,
            "oldContent": old_content,
            "newContent": new_content,
        })


def handle_request(request: Dict[str, Any], bridge: ToolBridge) -> Optional[Dict[str, Any]]:
    method = request.get("method")
    params = request.get("params", {}) or {}
    req_id = request.get("id", 1)

    if method == "initialize":
        return {
            "jsonrpc": "2.0", "id": req_id,
            "result": {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {}},
                "serverInfo": SERVER_INFO,
            },
        }

    if method == "notifications/initialized":
        return None
    if method == "ping":
        return {"jsonrpc": "2.0", "id": req_id, "result": {}}
    if method == "tools/list":
        return {"jsonrpc": "2.0", "id": req_id, "result": tools_list()}

    if method == "bridge/setEditOverride":
        path = params.get("path") or params.get("file_path")
        content = params.get("content")
        if not path or content is None:
            return make_error(req_id, -32602, "path and content are required")
        remote_path = bridge.set_edit_override(path, str(content))
        return {"jsonrpc": "2.0", "id": req_id, "result": {"remotePath": remote_path}}

    if method == "tools/call":
        tool_name = params.get("name")
        args = params.get("arguments", {}) or {}
        try:
            return make_response(req_id, bridge.call(tool_name, args))
        except UnknownTool as exc:
            return make_error(req_id, -32601, str(exc))
        except Exception as exc:
            log_error(f"tool execution error ({tool_name}): {exc}")
            return make_response(req_id, ToolCallResult(f"Error: {exc}", is_error=True, kind="error"))

    return make_error(req_id, -32601, f"Unknown method: {method}")
