from __future__ import annotations

import asyncio
import shlex

import pytest

from xcodebuild_mcp import executor
from xcodebuild_mcp.executor import (
    DirectCapture,
    ExecutionResult,
    PrettyCapture,
    execute_command,
    join_command,
    quote_arg,
    select_capture,
)
from xcodebuild_mcp.progress import ProgressStatus, ProgressTracker, ProgressUpdate


def run(tokens, label="Test", **kwargs) -> tuple[ExecutionResult, list[ProgressUpdate]]:
    updates: list[ProgressUpdate] = []
    kwargs.setdefault("pretty", False)
    result = asyncio.run(execute_command(tokens, label, updates.append, **kwargs))
    return result, updates


def assert_single_terminal_last(updates: list[ProgressUpdate]) -> None:
    terminal = [u for u in updates if u.is_terminal]
    assert len(terminal) == 1
    assert updates[-1] is terminal[0]
    assert len({u.operation_id for u in updates}) == 1


# -- quoting --

def test_plain_tokens_are_untouched() -> None:
    assert quote_arg("xcodebuild") == "xcodebuild"
    assert quote_arg("-scheme") == "-scheme"
    assert quote_arg("/tmp/App.xcodeproj") == "/tmp/App.xcodeproj"


def test_tokens_with_special_characters_are_quoted() -> None:
    assert quote_arg("My App") == '"My App"'
    assert quote_arg("a,b") == '"a,b"'
    assert quote_arg("KEY=value") == '"KEY=value"'
    assert quote_arg("it's") == '"it\'s"'
    assert (
        quote_arg("platform=iOS Simulator,name=iPhone 16,OS=latest")
        == '"platform=iOS Simulator,name=iPhone 16,OS=latest"'
    )


def test_embedded_quotes_and_backslashes_are_escaped() -> None:
    assert quote_arg('say "hi"') == '"say \\"hi\\""'
    assert quote_arg("C:\\My Dir") == '"C:\\\\My Dir"'


def test_already_quoted_token_is_not_requoted() -> None:
    assert quote_arg('"My App"') == '"My App"'


@pytest.mark.parametrize("token", ["My App", 'say "hi"', "a,b=c", "back\\slash here", "tab\there"])
def test_quoting_is_idempotent(token: str) -> None:
    once = quote_arg(token)
    assert quote_arg(once) == once


@pytest.mark.parametrize(
    "token",
    [
        "/tmp/My $HOME App/App.xcodeproj",
        "Scheme `echo injected` X",
        "$(echo injected)",
        "/tmp/App(1).xcodeproj",
        "a;b",
        "a|b",
        "*.swift",
        "back\\slash",
        "~/Library",
        "#hash",
        "{a,b}",
    ],
)
def test_shell_metacharacters_reach_the_command_literally(token: str) -> None:
    result, _ = run(["printf", "[%s]", token])
    assert result.succeeded, result.error
    assert result.output == f"[{token}]"


def test_empty_token_is_kept() -> None:
    assert quote_arg("") == '""'
    result, _ = run(["printf", "[%s]", "", "x"])
    assert result.output == "[][x]"


def test_dollar_and_backtick_are_escaped() -> None:
    assert quote_arg("$HOME") == '"\\$HOME"'
    assert quote_arg("a`b`") == '"a\\`b\\`"'
    assert quote_arg("App(1)") == '"App(1)"'


def test_join_command_splits_back_to_tokens() -> None:
    tokens = ["xcodebuild", "-project", "/tmp/My App/App.xcodeproj", "-scheme", 'Say "Hi"', "build"]
    assert shlex.split(join_command(tokens)) == tokens


# -- execution --

def test_success_returns_stdout() -> None:
    result, updates = run(["echo", "hello world"])
    assert result == ExecutionResult(succeeded=True, output="hello world\n", error=None)
    assert updates[0].status is ProgressStatus.RUNNING
    assert updates[0].message == "Starting Test..."
    assert updates[-1].status is ProgressStatus.COMPLETED
    assert updates[-1].progress == 100
    assert_single_terminal_last(updates)


def test_shell_receives_quoted_tokens_whole() -> None:
    result, _ = run(["printf", '"[%s]"', "a b", "c,d", 'e"f', "g=h"])
    assert result.output == '[a b][c,d][e"f][g=h]'


def test_empty_output_gets_generic_message() -> None:
    result, _ = run(["true"], label="Noop")
    assert result.succeeded
    assert result.output == "Noop operation completed successfully"


def test_nonzero_exit_reports_stderr() -> None:
    result, updates = run(["sh", "-c", "echo partial; echo boom >&2; exit 3"])
    assert not result.succeeded
    assert result.output == "partial\n"
    assert result.error == "boom\n"
    assert updates[-1].status is ProgressStatus.FAILED
    assert updates[-1].message == "Test failed with exit code 3"
    assert updates[-1].details == "boom\n"
    assert_single_terminal_last(updates)


def test_nonzero_exit_without_stderr() -> None:
    result, updates = run(["sh", "-c", "exit 65"])
    assert not result.succeeded
    assert result.error == "Operation failed with exit code 65. No stderr output."
    assert_single_terminal_last(updates)


def test_missing_executable_is_a_failed_result() -> None:
    result, updates = run(["definitely-not-a-real-tool-xyz", "--flag"])
    assert not result.succeeded
    assert result.error
    assert_single_terminal_last(updates)


def test_stdin_is_closed() -> None:
    result, _ = run(["cat"])
    assert result.succeeded
    assert result.output == "Test operation completed successfully"


def test_spawn_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    async def refuse(*args, **kwargs):
        raise PermissionError(13, "Permission denied")

    monkeypatch.setattr(executor.asyncio, "create_subprocess_shell", refuse)
    result, updates = run(["xcodebuild", "build"], label="Build")
    assert not result.succeeded
    assert result.output == ""
    assert result.error.startswith("Failed to start process:")
    assert updates[-1].status is ProgressStatus.FAILED
    assert updates[-1].progress == 0
    assert updates[-1].message.startswith("Failed to start Build process:")
    assert_single_terminal_last(updates)


def test_phase_lines_drive_progress() -> None:
    script = "CompileSwift a.swift\\nLinking App\\nCodeSign App.app\\n"
    result, updates = run(["printf", script], progress_interval=60)
    assert result.succeeded
    messages = [u.message for u in updates]
    assert "CompileSwift phase..." in messages
    assert "Linking phase..." in messages
    assert "CodeSign phase..." in messages
    running = [u.progress for u in updates if not u.is_terminal]
    assert running == [0, 25, 50, 75]
    assert updates[-1].progress == 100


def test_large_output_is_drained() -> None:
    result, _ = run(["sh", "-c", "yes CompileC | head -n 100000; yes err | head -n 20000 >&2"])
    assert result.succeeded
    assert result.output.count("\n") == 100000


def test_runs_without_sink() -> None:
    result = asyncio.run(execute_command(["echo", "ok"], "Quiet", pretty=False))
    assert result.succeeded


def test_empty_command_is_rejected() -> None:
    with pytest.raises(ValueError):
        asyncio.run(execute_command([], "Nothing"))


def test_concurrent_executions_are_independent() -> None:
    first: list[ProgressUpdate] = []
    second: list[ProgressUpdate] = []

    async def go():
        return await asyncio.gather(
            execute_command(["printf", "Linking a\\n"], "A", first.append, pretty=False),
            execute_command(["sh", "-c", "exit 1"], "B", second.append, pretty=False),
        )

    a, b = asyncio.run(go())
    assert a.succeeded and not b.succeeded
    assert first[-1].status is ProgressStatus.COMPLETED
    assert second[-1].status is ProgressStatus.FAILED
    assert {u.operation_id for u in first}.isdisjoint({u.operation_id for u in second})


# -- output capture strategies --

def capture(strategy, tokens) -> ExecutionResult:
    tracker = ProgressTracker("Capture")
    return asyncio.run(strategy.run(join_command(tokens), "Capture", tracker))


def test_pretty_capture_formats_stdout() -> None:
    result = capture(PrettyCapture(["tr", "a-z", "A-Z"]), ["echo", "hello"])
    assert result == ExecutionResult(succeeded=True, output="HELLO\n", raw_output="hello\n")
    assert result.unformatted == "hello\n"


@pytest.mark.parametrize("formatter", [["false"], ["/nonexistent/xcpretty"]])
def test_pretty_capture_falls_back_to_direct_result(formatter: list[str]) -> None:
    tokens = ["sh", "-c", "echo out; echo err >&2; exit 2"]
    assert capture(PrettyCapture(formatter), tokens) == capture(DirectCapture(), tokens)

    tokens = ["echo", "fine"]
    assert capture(PrettyCapture(formatter), tokens) == capture(DirectCapture(), tokens)


def test_select_capture() -> None:
    assert isinstance(select_capture(["xcodebuild", "build"], pretty=True, formatter="sh"), PrettyCapture)
    assert isinstance(
        select_capture(["xcodebuild", "build"], pretty=True, formatter="no-such-formatter-xyz"),
        DirectCapture,
    )
    assert isinstance(select_capture(["xcrun", "simctl"], pretty=True, formatter="sh"), DirectCapture)
    assert isinstance(select_capture(["xcodebuild", "build"], pretty=False, formatter="sh"), DirectCapture)


def test_select_capture_splits_formatter_arguments() -> None:
    chosen = select_capture(["xcodebuild"], pretty=True, formatter="sh -c cat")
    assert isinstance(chosen, PrettyCapture)
    assert chosen.formatter == ["sh", "-c", "cat"]


def test_bad_formatter_setting_fails_before_any_progress() -> None:
    updates: list[ProgressUpdate] = []
    with pytest.raises(ValueError):
        asyncio.run(
            execute_command(["xcodebuild", "build"], "Build", updates.append, pretty=True, formatter='"unbalanced')
        )
    assert updates == []
