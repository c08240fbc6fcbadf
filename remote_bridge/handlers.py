import functools
import posixpath
import shlex
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from remote_bridge.cache import EditOverrides, WriteCache
from remote_bridge.config import DEFAULT_EXEC_TIMEOUT, GLOB_MAX_RESULTS, REVIEW_TIMEOUT
from remote_bridge.errors import Ambiguous, NotFound, Rejected, UnknownTool, UnsupportedTool
from remote_bridge.executor import ExecResult, Executor
from remote_bridge.paths import PathResolver
from remote_bridge.review import ReviewGate, UpdateNotifier, await_decision
from remote_bridge.transport import RemoteFiles
from remote_bridge.utils import log_error, optional_int, slice_lines, truncate_output

TOOL_NAMES = ("read_file", "write_file", "edit_file", "glob", "grep", "bash")


@dataclass
class ToolCallResult:
    output: str
    is_error: bool = False
    kind: str = ""
    exit_code: Optional[int] = None


def tool_boundary(verb: str) -> Callable:
    """Turn every exception raised by a handler into an error result."""
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> ToolCallResult:
            try:
                return func(*args, **kwargs)
            except Rejected as exc:
                return ToolCallResult(str(exc), is_error=True, kind=exc.kind)
            except Exception as exc:
                kind = getattr(exc, "kind", "error")
                log_error(f"{func.__name__} failed ({kind}): {exc}")
                return ToolCallResult(f"Error {verb}: {exc}", is_error=True, kind=kind)
        return wrapper
    return decorator


def build_rg_command(
    pattern: str, include: Optional[str], context: Optional[int], max_results: Optional[int],
    target: Optional[str] = None,
) -> str:
    cmd = "rg --color=never --line-number"
    if include:
        cmd += f" --glob {shlex.quote(include)}"
    if context:
        cmd += f" -C {int(context)}"
    if max_results:
        cmd += f" --max-count {int(max_results)}"
    cmd += f" {shlex.quote(pattern)}"
    return cmd + f" {shlex.quote(target)}" if target else cmd


def build_grep_command(
    pattern: str, include: Optional[str], context: Optional[int], max_results: Optional[int],
    target: Optional[str] = None,
) -> str:
    cmd = "grep -rn"
    if include:
        cmd += f" --include={shlex.quote(include)}"
    if context:
        cmd += f" -C {int(context)}"
    if max_results:
        cmd += f" -m {int(max_results)}"
    return cmd + f" {shlex.quote(pattern)} {shlex.quote(target or '.')}"


def scope_search(build: Callable[..., str], scope: str, *args: Any) -> str:
    """Run ``build``'s search inside ``scope``: from the directory itself, or
    from a file's parent with the file as the only target."""
    q = shlex.quote
    in_file = build(*args, target=posixpath.basename(scope))
    in_dir = build(*args)
    parent = posixpath.dirname(scope) or "/"
    return f"if [ -f {q(scope)} ]; then cd {q(parent)} && {in_file}; else cd {q(scope)} && {in_dir}; fi"


def require_arg(value: Any, name: str) -> None:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValueError(f"{name} is required")


def search_tool_missing(result: ExecResult) -> bool:
    return result.exit_code == 127 or "command not found" in (result.stderr or "")


class ToolBridge:
    """The six remote tools plus the edit-override hand-off.

    Write visibility and reviewer overrides live on the instance, so two
    bridges in one process never share state.
    """

    def __init__(
        self,
        resolver: PathResolver,
        files: RemoteFiles,
        executor: Executor,
        review_gate: Optional[ReviewGate] = None,
        notifier: Optional[UpdateNotifier] = None,
        review_timeout: Optional[float] = REVIEW_TIMEOUT,
        write_cache: Optional[WriteCache] = None,
        overrides: Optional[EditOverrides] = None,
        transport: Any = None,
    ):
        self.resolver = resolver
        self.files = files
        self.executor = executor
        self.review_gate = review_gate
        self.notifier = notifier
        self.review_timeout = review_timeout
        self.write_cache = write_cache or WriteCache()
        self.overrides = overrides or EditOverrides()
        self.transport = transport

    # ----- edit override -----

    def set_edit_override(self, file_path: str, content: str) -> str:
        remote_path = self.resolver.to_remote_path(file_path)
        self.overrides.set_override(remote_path, content)
        return remote_path

    def consume_edit_override(self, file_path: str) -> Optional[str]:
        return self.overrides.consume_override(self.resolver.to_remote_path(file_path))

    # ----- remote content helpers -----

    def _read_live(self, remote_path: str) -> str:
        data = self.files.read(self.resolver.get_remote_locator(remote_path))
        return data.decode("utf-8", errors="replace")

    def _read_current(self, remote_path: str) -> str:
        cached = self.write_cache.get_cached_write(remote_path)
        if cached is not None:
            return cached
        return self._read_live(remote_path)

    def _read_prior(self, remote_path: str) -> str:
        try:
            return self._read_current(remote_path)
        except Exception:
            return ""

    def _commit(self, remote_path: str, old_text: str, new_text: str) -> int:
        encoded = new_text.encode("utf-8")
        self.files.write(self.resolver.get_remote_locator(remote_path), encoded)
        self.write_cache.cache_write(remote_path, new_text)
        if self.notifier:
            try:
                self.notifier(remote_path, old_text, new_text)
            except Exception as exc:
                log_error(f"file update notification failed for {remote_path}: {exc}")
        return len(encoded)

    def _review(self, tool_name: str, tool_input: Dict[str, Any], old_text: str, new_text: str, rejection: str) -> str:
        if not self.review_gate:
            return new_text
        decision = await_decision(self.review_gate(tool_name, tool_input, old_text, new_text), self.review_timeout)
        if not decision.accepted:
            raise Rejected(rejection)
        return new_text if decision.final_content is None else decision.final_content

    # ----- tools -----

    @tool_boundary("reading file")
    def read_file(self, file_path: str, offset: Optional[int] = None, limit: Optional[int] = None) -> ToolCallResult:
        require_arg(file_path, "file_path")
        remote_path = self.resolver.to_remote_path(file_path)
        text = self._read_current(remote_path)
        offset = optional_int(offset, "offset")
        limit = optional_int(limit, "limit")
        if offset is not None or limit is not None:
            text = slice_lines(text, offset, limit)
        return ToolCallResult(truncate_output(text))

    @tool_boundary("writing file")
    def write_file(self, file_path: str, content: str) -> ToolCallResult:
        require_arg(file_path, "file_path")
        remote_path = self.resolver.to_remote_path(file_path)
        old_text = self._read_prior(remote_path)

        override = self.overrides.consume_override(remote_path)
        if override is not None:
            final_text = override
        else:
            final_text = self._review(
                "write_file", {"file_path": file_path, "content": content},
                old_text, content, f"Write rejected by user for {file_path}",
            )

        written = self._commit(remote_path, old_text, final_text)
        return ToolCallResult(f"Successfully wrote {written} bytes to {file_path}")

    @tool_boundary("editing file")
    def edit_file(self, file_path: str, old_string: str, new_string: str) -> ToolCallResult:
        require_arg(file_path, "file_path")
        remote_path = self.resolver.to_remote_path(file_path)

        override = self.overrides.consume_override(remote_path)
        if override is not None:
            self._commit(remote_path, self._read_prior(remote_path), override)
            return ToolCallResult(f"Successfully edited {file_path}")

        if not old_string:
            raise ValueError("old_string must not be empty")
        old_text = self._read_current(remote_path)
        count = old_text.count(old_string)
        if count == 0:
            raise NotFound(f"old_string not found in {file_path}")
        if count > 1:
            raise Ambiguous(
                f"old_string found {count} times in {file_path}. Provide more context to make it unique."
            )

        new_text = old_text.replace(old_string, new_string, 1)
        final_text = self._review(
            "edit_file", {"file_path": file_path, "old_string": old_string, "new_string": new_string},
            old_text, new_text, f"Edit rejected by user for {file_path}",
        )
        self._commit(remote_path, old_text, final_text)
        return ToolCallResult(f"Successfully edited {file_path}")

    @tool_boundary("globbing")
    def glob(self, pattern: str, path: Optional[str] = None) -> ToolCallResult:
        require_arg(pattern, "pattern")
        base = self.resolver.to_remote_path(path or self.resolver.remote_root)
        found: List[str] = self.files.list(self.resolver.get_remote_locator(base), pattern, GLOB_MAX_RESULTS)
        paths = sorted(found)
        if not paths:
            return ToolCallResult("No files found matching pattern.")
        return ToolCallResult("\n".join(paths))

    def _search(self, tool: str, command: str) -> ExecResult:
        result = self.executor.execute(command)
        if search_tool_missing(result):
            raise UnsupportedTool(f"{tool} is not installed on the remote host")
        return result

    @tool_boundary("running grep")
    def grep(
        self,
        pattern: str,
        path: Optional[str] = None,
        include: Optional[str] = None,
        context: Optional[int] = None,
        max_results: Optional[int] = None,
    ) -> ToolCallResult:
        require_arg(pattern, "pattern")
        scope = self.resolver.to_remote_path(path or self.resolver.remote_root)
        args = (pattern, include, optional_int(context, "context"), optional_int(max_results, "max_results"))

        try:
            result = self._search("rg", scope_search(build_rg_command, scope, *args))
        except UnsupportedTool as exc:
            log_error(f"{exc}; falling back to grep")
            result = self.executor.execute(scope_search(build_grep_command, scope, *args))

        no_output = result.exit_code == 1 and not result.stdout
        if no_output and not (result.stderr or "").strip():
            return ToolCallResult("No matches found.", exit_code=1)
        # exit 1 with stderr is a failed cd or an unreadable scope, not an empty search
        if no_output or result.exit_code > 1:
            return ToolCallResult(
                f"grep error (exit {result.exit_code}): {result.stderr or result.stdout}",
                is_error=True, kind="error", exit_code=result.exit_code,
            )
        return ToolCallResult(truncate_output(result.stdout), exit_code=result.exit_code)

    @tool_boundary("running bash")
    def bash(self, command: str, cwd: Optional[str] = None, timeout_ms: Optional[int] = None) -> ToolCallResult:
        require_arg(command, "command")
        remote_cwd = self.resolver.to_remote_path(cwd or self.resolver.remote_root)
        timeout_ms = optional_int(timeout_ms, "timeout_ms")
        timeout = timeout_ms / 1000.0 if timeout_ms else DEFAULT_EXEC_TIMEOUT

        result = self.executor.execute(f"bash -c {shlex.quote(command)}", remote_cwd, timeout)

        output = result.stdout or ""
        if result.stderr:
            output += ("\n" if output else "") + result.stderr
        if not output:
            output = f"(no output, exit code {result.exit_code})"
        return ToolCallResult(truncate_output(output), exit_code=result.exit_code)

    # ----- dispatch -----

    def call(self, tool_name: str, args: Dict[str, Any]) -> ToolCallResult:
        if tool_name not in TOOL_NAMES:
            raise UnknownTool(f"Unknown tool: {tool_name}")
        file_path = args.get("file_path", args.get("path"))
        if tool_name == "read_file":
            return self.read_file(file_path, offset=args.get("offset"), limit=args.get("limit"))
        if tool_name == "write_file":
            return self.write_file(file_path, args.get("content", ""))
        if tool_name == "edit_file":
            return self.edit_file(file_path, args.get("old_string", ""), args.get("new_string", ""))
        if tool_name == "glob":
            return self.glob(args.get("pattern", ""), path=args.get("path"))
        if tool_name == "grep":
            return self.grep(
                args.get("pattern", ""),
                path=args.get("path"),
                include=args.get("include"),
                context=args.get("context"),
                max_results=args.get("max_results"),
            )
        return self.bash(
            args.get("command", ""),
            cwd=args.get("cwd"),
            timeout_ms=args.get("timeout_ms", args.get("timeout")),
        )

    def close(self) -> None:
        self.write_cache.clear()
        self.overrides.clear()
        if self.transport is not None:
            self.transport.close()
