import concurrent.futures

import pytest

from remote_bridge.config import MAX_OUTPUT_CHARS, TRUNCATION_MARKER
from remote_bridge.errors import IOFailure, UnknownTool, UnsupportedTool
from remote_bridge.review import ReviewDecision

from tests.fakes import FakeFiles

A_PY = "/srv/app/a.py"


@pytest.fixture
def stale_files():
    return FakeFiles(stale_reads=3)


# ----- read / write visibility -----

def test_write_then_read_survives_stale_backend(make_bridge, stale_files):
    stale_files.seed(A_PY, "old\n")
    bridge = make_bridge(files=stale_files)
    result = bridge.write_file(A_PY, "new\n")
    assert not result.is_error
    assert result.output == "Successfully wrote 4 bytes to /srv/app/a.py"
    assert bridge.read_file(A_PY).output == "new\n"
    assert stale_files.text(A_PY) == "new\n"


def test_read_prefers_cache_over_backend(bridge, files):
    bridge.write_cache.cache_write(A_PY, "cached")
    files.seed(A_PY, "remote")
    assert bridge.read_file(A_PY).output == "cached"
    assert files.reads == []


def test_read_falls_through_after_ttl(make_bridge, stale_files, clock):
    stale_files.seed(A_PY, "old\n")
    bridge = make_bridge(files=stale_files)
    bridge.write_file(A_PY, "new\n")
    clock.advance(11)
    # the backend is still lagging and the cache no longer covers it
    assert bridge.read_file(A_PY).output == "old\n"


def test_read_through_local_mirror_path(bridge, files):
    files.seed("/srv/app/pkg/m.py", "x = 1\n")
    assert bridge.read_file("/home/dev/mirror/pkg/m.py").output == "x = 1\n"


def test_read_offset_and_limit(bridge, files):
    files.seed(A_PY, "1\n2\n3\n4\n5")
    assert bridge.read_file(A_PY, offset=2, limit=2).output == "2\n3"


def test_read_missing_file_is_error(bridge):
    result = bridge.read_file("/srv/app/missing.py")
    assert result.is_error
    assert result.output.startswith("Error reading file:")


def test_read_truncates_large_file(bridge, files):
    files.seed(A_PY, "a" * (MAX_OUTPUT_CHARS + 500))
    output = bridge.read_file(A_PY).output
    assert TRUNCATION_MARKER in output
    assert len(output) == MAX_OUTPUT_CHARS + len(TRUNCATION_MARKER)


def test_write_counts_utf8_bytes(bridge, files):
    result = bridge.write_file("/srv/app/u.txt", "héllo")
    assert result.output == "Successfully wrote 6 bytes to /srv/app/u.txt"
    assert files.data["/srv/app/u.txt"] == "héllo".encode("utf-8")


def test_write_failure_is_reported(bridge, files):
    def broken_write(locator, data):
        raise IOFailure("disk full")

    files.write = broken_write
    result = bridge.write_file(A_PY, "x")
    assert result.is_error
    assert result.kind == "io_failure"
    assert result.output == "Error writing file: disk full"
    assert bridge.write_cache.get_cached_write(A_PY) is None


# ----- edit -----

def test_edit_replaces_unique_occurrence(bridge, files):
    files.seed(A_PY, "def f():\n    return 1\n")
    result = bridge.edit_file(A_PY, "return 1", "return 2")
    assert result.output == "Successfully edited /srv/app/a.py"
    assert files.text(A_PY) == "def f():\n    return 2\n"


def test_edit_not_found(bridge, files):
    files.seed(A_PY, "abc")
    result = bridge.edit_file(A_PY, "xyz", "q")
    assert result.is_error
    assert result.kind == "not_found"
    assert result.output == "Error editing file: old_string not found in /srv/app/a.py"
    assert files.writes == []


def test_edit_ambiguous(bridge, files):
    files.seed(A_PY, "x = 1\nx = 1\n")
    result = bridge.edit_file(A_PY, "x = 1", "x = 2")
    assert result.is_error
    assert result.kind == "ambiguous"
    assert "old_string found 2 times in /srv/app/a.py" in result.output
    assert files.writes == []


def test_edit_sees_previous_write_despite_stale_backend(make_bridge, stale_files):
    stale_files.seed(A_PY, "v1")
    bridge = make_bridge(files=stale_files)
    bridge.write_file(A_PY, "v2")
    result = bridge.edit_file(A_PY, "v2", "v3")
    assert not result.is_error
    assert stale_files.text(A_PY) == "v3"
    assert bridge.read_file(A_PY).output == "v3"


# ----- overrides and review -----

def test_override_wins_over_write_content(bridge, files):
    remote = bridge.set_edit_override("/home/dev/mirror/a.py", "approved")
    assert remote == A_PY
    bridge.write_file(A_PY, "proposed")
    assert files.text(A_PY) == "approved"
    bridge.write_file(A_PY, "second")
    assert files.text(A_PY) == "second"


def test_override_wins_over_edit_and_skips_matching(bridge, files):
    files.seed(A_PY, "nothing to match")
    bridge.set_edit_override(A_PY, "approved")
    result = bridge.edit_file(A_PY, "absent", "x")
    assert result.output == "Successfully edited /srv/app/a.py"
    assert files.text(A_PY) == "approved"
    assert bridge.consume_edit_override(A_PY) is None


def test_override_skips_review(make_bridge, files):
    calls = []
    bridge = make_bridge(review_gate=lambda *args: calls.append(args) or ReviewDecision(True))
    bridge.set_edit_override(A_PY, "approved")
    bridge.write_file(A_PY, "proposed")
    assert calls == []


def test_override_for_other_path_does_not_apply(bridge, files):
    bridge.set_edit_override("/srv/app/b.py", "B")
    bridge.write_file(A_PY, "A")
    assert files.text(A_PY) == "A"
    assert bridge.consume_edit_override("/srv/app/b.py") == "B"


def test_expired_override_is_ignored(bridge, files, clock):
    bridge.set_edit_override(A_PY, "approved")
    clock.advance(10)
    bridge.write_file(A_PY, "proposed")
    assert files.text(A_PY) == "proposed"


def test_review_rejection(make_bridge, files):
    files.seed(A_PY, "old")
    bridge = make_bridge(review_gate=lambda *args: ReviewDecision(False))
    result = bridge.write_file(A_PY, "new")
    assert result.is_error
    assert result.kind == "rejected"
    assert result.output == "Write rejected by user for /srv/app/a.py"
    assert files.text(A_PY) == "old"


def test_review_edit_rejection(make_bridge, files):
    files.seed(A_PY, "a = 1")
    bridge = make_bridge(review_gate=lambda *args: ReviewDecision(False))
    result = bridge.edit_file(A_PY, "1", "2")
    assert result.output == "Edit rejected by user for /srv/app/a.py"
    assert files.text(A_PY) == "a = 1"


def test_review_sees_old_and_new_content(make_bridge, files):
    files.seed(A_PY, "a = 1")
    seen = []

    def gate(tool_name, tool_input, old, new):
        seen.append((tool_name, tool_input, old, new))
        return ReviewDecision(True)

    bridge = make_bridge(review_gate=gate)
    bridge.edit_file(A_PY, "1", "2")
    assert seen == [(
        "edit_file", {"file_path": A_PY, "old_string": "1", "new_string": "2"}, "a = 1", "a = 2",
    )]


def test_review_can_modify_content(make_bridge, files):
    bridge = make_bridge(review_gate=lambda *args: ReviewDecision(True, final_content="reviewed"))
    result = bridge.write_file(A_PY, "proposed")
    assert result.output == "Successfully wrote 8 bytes to /srv/app/a.py"
    assert files.text(A_PY) == "reviewed"
    assert bridge.read_file(A_PY).output == "reviewed"


def test_review_future_resolved_with_dict(make_bridge, files):
    future = concurrent.futures.Future()
    future.set_result({"accepted": True, "finalContent": "from client"})
    bridge = make_bridge(review_gate=lambda *args: future)
    bridge.write_file(A_PY, "proposed")
    assert files.text(A_PY) == "from client"


def test_review_timeout_counts_as_rejection(make_bridge, files):
    pending = concurrent.futures.Future()
    bridge = make_bridge(review_gate=lambda *args: pending, review_timeout=0.05)
    result = bridge.write_file(A_PY, "proposed")
    assert result.kind == "rejected"
    assert A_PY not in files.data
    assert pending.cancelled()


def test_notifier_receives_update(make_bridge, files):
    files.seed(A_PY, "old")
    updates = []
    bridge = make_bridge(notifier=lambda *args: updates.append(args))
    bridge.write_file(A_PY, "new")
    assert updates == [(A_PY, "old", "new")]


def test_notifier_failure_does_not_fail_write(make_bridge, files):
    def notifier(*args):
        raise RuntimeError("client went away")

    bridge = make_bridge(notifier=notifier)
    result = bridge.write_file(A_PY, "new")
    assert not result.is_error
    assert files.text(A_PY) == "new"


# ----- glob -----

def test_glob_sorted(bridge, files):
    for path in ("/srv/app/z.py", "/srv/app/a.py", "/srv/app/pkg/m.py", "/srv/app/node_modules/x.py", "/srv/app/r.md"):
        files.seed(path, "")
    result = bridge.glob("**/*.py")
    assert result.output == "/srv/app/a.py\n/srv/app/pkg/m.py\n/srv/app/z.py"


def test_glob_in_subdirectory(bridge, files):
    files.seed("/srv/app/pkg/m.py", "")
    files.seed("/srv/app/a.py", "")
    assert bridge.glob("*.py", path="/home/dev/mirror/pkg").output == "/srv/app/pkg/m.py"


def test_glob_no_matches(bridge):
    assert bridge.glob("*.rs").output == "No files found matching pattern."


# ----- grep -----

def test_grep_uses_rg(bridge, channel):
    channel.responder = lambda command: ("a.py:1:match\n", "", 0)
    result = bridge.grep("match", include="*.py", context=2, max_results=5)
    assert result.output == "a.py:1:match\n"
    rg = "rg --color=never --line-number --glob '*.py' -C 2 --max-count 5 match"
    assert channel.commands == [
        f"if [ -f /srv/app ]; then cd /srv && {rg} app; else cd /srv/app && {rg}; fi"
    ]


def test_grep_falls_back_when_rg_missing(bridge, channel):
    def responder(command):
        if " rg " in command:
            return ("", "bash: rg: command not found\n", 127)
        return ("./a.py:3:needle\n", "", 0)

    channel.responder = responder
    result = bridge.grep("needle", include="*.py")
    assert result.output == "./a.py:3:needle\n"
    assert channel.commands[1] == (
        "if [ -f /srv/app ]; then cd /srv && grep -rn --include='*.py' needle app; "
        "else cd /srv/app && grep -rn --include='*.py' needle .; fi"
    )


def test_grep_missing_rg_raises_unsupported(bridge, channel):
    channel.responder = lambda command: ("", "bash: rg: command not found\n", 127)
    with pytest.raises(UnsupportedTool, match="rg is not installed"):
        bridge._search("rg", "rg needle")


def test_grep_in_single_file(bridge, channel):
    channel.responder = lambda command: ("3:needle\n", "", 0)
    result = bridge.grep("needle", path="/srv/app/pkg/a.py")
    assert result.output == "3:needle\n"
    assert channel.commands == [
        "if [ -f /srv/app/pkg/a.py ]; then cd /srv/app/pkg && rg --color=never --line-number needle a.py; "
        "else cd /srv/app/pkg/a.py && rg --color=never --line-number needle; fi"
    ]


def test_grep_failed_cd_is_error(bridge, channel):
    channel.responder = lambda command: ("", "bash: cd: /srv/app/gone: No such file or directory\n", 1)
    result = bridge.grep("needle", path="/srv/app/gone")
    assert result.is_error
    assert result.output.startswith("grep error (exit 1): bash: cd:")


def test_grep_no_matches(bridge, channel):
    channel.responder = lambda command: ("", "", 1)
    result = bridge.grep("nothing")
    assert result.output == "No matches found."
    assert not result.is_error


def test_grep_error_exit(bridge, channel):
    channel.responder = lambda command: ("", "regex parse error", 2)
    result = bridge.grep("(")
    assert result.is_error
    assert result.output == "grep error (exit 2): regex parse error"


# ----- bash -----

def test_bash_combines_streams(bridge, channel):
    channel.responder = lambda command: ("out\n", "err\n", 0)
    result = bridge.bash("make")
    assert result.output == "out\n\nerr\n"
    assert result.exit_code == 0
    assert channel.commands == ["cd /srv/app && bash -c make"]


def test_bash_no_output(bridge, channel):
    channel.responder = lambda command: ("", "", 7)
    result = bridge.bash("false", cwd="/tmp")
    assert result.output == "(no output, exit code 7)"
    assert result.exit_code == 7
    assert not result.is_error
    assert channel.commands == ["cd /tmp && bash -c false"]


def test_bash_quotes_command(bridge, channel):
    bridge.bash("echo 'hi there' | wc -c")
    assert channel.commands == ["cd /srv/app && bash -c 'echo '\"'\"'hi there'\"'\"' | wc -c'"]


def test_bash_timeout_is_error(bridge, channel):
    channel.responder = lambda command: None
    result = bridge.bash("sleep 999", timeout_ms=1000)
    assert result.is_error
    assert result.kind == "timed_out"
    assert result.output == "Error running bash: Command timed out after 1000ms"


def test_bash_output_truncated(bridge, channel):
    channel.responder = lambda command: ("y" * (MAX_OUTPUT_CHARS * 2), "", 0)
    output = bridge.bash("yes").output
    assert len(output) == MAX_OUTPUT_CHARS + len(TRUNCATION_MARKER)


# ----- dispatch -----

def test_call_accepts_path_alias(bridge, files):
    files.seed(A_PY, "content")
    assert bridge.call("read_file", {"path": A_PY}).output == "content"


def test_call_accepts_timeout_alias(bridge, channel):
    channel.responder = lambda command: None
    result = bridge.call("bash", {"command": "sleep 9", "timeout": 2000})
    assert result.output == "Error running bash: Command timed out after 2000ms"


def test_call_unknown_tool(bridge):
    with pytest.raises(UnknownTool, match="Unknown tool: rm_rf"):
        bridge.call("rm_rf", {})


@pytest.mark.parametrize(
    "tool_name, args",
    [
        ("read_file", {}),
        ("write_file", {"content": "x"}),
        ("edit_file", {"file_path": A_PY, "old_string": "", "new_string": "x"}),
        ("glob", {}),
        ("grep", {}),
        ("bash", {}),
        ("read_file", {"file_path": A_PY, "offset": "abc"}),
    ],
)
def test_bad_input_is_error_result(bridge, files, tool_name, args):
    files.seed(A_PY, "x")
    result = bridge.call(tool_name, args)
    assert result.is_error


def test_close_clears_state(bridge):
    bridge.write_cache.cache_write(A_PY, "x")
    bridge.set_edit_override(A_PY, "y")
    bridge.close()
    assert bridge.write_cache.get_cached_write(A_PY) is None
    assert bridge.consume_edit_override(A_PY) is None
