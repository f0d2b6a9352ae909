"""Run one shell command, capture its output and report progress.

Expected failures (nonzero exit, a process that can't be started) come back
inside an :class:`ExecutionResult`; they are never raised. Nothing is retried,
timed out or cancelled here.
"""

import asyncio
import codecs
import json
import logging
import re
import shlex
import shutil
from dataclasses import dataclass
from typing import NamedTuple, Optional, Protocol, Sequence

from . import config
from .progress import DEFAULT_CLASSIFIER, PhaseClassifier, ProgressSink, ProgressTracker

logger = logging.getLogger(__name__)

# whitespace, comma, quotes, = and anything else sh would interpret
_NEEDS_QUOTES = re.compile(r"[\s,\"'=;&|<>()$`\\*?\[\]#~!{}]")
_FULLY_QUOTED = re.compile(r'^".*"$', re.DOTALL)
_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class ExecutionResult:
    succeeded: bool
    output: str
    error: Optional[str] = None
    # stdout before formatting, set only when a formatter rewrote it
    raw_output: Optional[str] = None

    @property
    def unformatted(self) -> str:
        return self.output if self.raw_output is None else self.raw_output


def quote_arg(token: str) -> str:
    """Double-quote ``token`` for ``sh`` if it holds whitespace, a comma, a quote, ``=``
    or another shell metacharacter. Embedded ``"``, ``\\``, ``$`` and backticks are escaped
    so the shell passes the token through literally.

    A token already wrapped in double quotes is returned unchanged. An empty
    token becomes ``""``.
    """
    if not token:
        return '""'
    if _NEEDS_QUOTES.search(token) and not _FULLY_QUOTED.match(token):
        escaped = re.sub(r'(["\\$`])', r"\\\1", token)
        return f'"{escaped}"'
    return token


def join_command(tokens: Sequence[str]) -> str:
    return " ".join(quote_arg(token) for token in tokens)


class FormatterError(RuntimeError):
    """The output formatter could not be run or exited nonzero."""


class _Completed(NamedTuple):
    exit_code: int
    stdout: str
    stderr: str


async def _drain_stdout(stream: asyncio.StreamReader, tracker: ProgressTracker, parts: list[str]) -> None:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    pending = ""
    while True:
        chunk = await stream.read(_CHUNK_SIZE)
        text = decoder.decode(chunk, final=not chunk)
        parts.append(text)
        pending += text
        *lines, pending = pending.split("\n")
        for line in lines:
            await tracker.feed_stdout(line)
        if not chunk:
            break
    if pending:
        await tracker.feed_stdout(pending)


async def _drain_stderr(stream: asyncio.StreamReader, tracker: ProgressTracker, parts: list[str]) -> None:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        chunk = await stream.read(_CHUNK_SIZE)
        text = decoder.decode(chunk, final=not chunk)
        if text:
            parts.append(text)
            logger.warning("stderr chunk: %s", text.strip())
            await tracker.feed_stderr(text)
        if not chunk:
            break


async def _run(command: str, tracker: ProgressTracker) -> _Completed:
    """Spawn ``command`` under ``sh`` with stdin closed and drain both streams.

    Raises OSError if the process can't be started.
    """
    process = await asyncio.create_subprocess_shell(
        command,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout: list[str] = []
    stderr: list[str] = []
    await asyncio.gather(
        _drain_stdout(process.stdout, tracker, stdout),
        _drain_stderr(process.stderr, tracker, stderr),
    )
    exit_code = await process.wait()
    return _Completed(exit_code, "".join(stdout), "".join(stderr))


async def _spawn_failed(label: str, tracker: ProgressTracker, err: OSError) -> ExecutionResult:
    logger.error("%s failed to start process: %s", label, err)
    await tracker.fail(f"Failed to start {label} process: {err}")
    return ExecutionResult(succeeded=False, output="", error=f"Failed to start process: {err}")


async def _conclude(
    label: str,
    tracker: ProgressTracker,
    completed: _Completed,
    raw_stdout: Optional[str] = None,
) -> ExecutionResult:
    exit_code = completed.exit_code
    logger.info("%s process completed with exit code: %s", label, exit_code)

    if exit_code == 0:
        await tracker.succeed()
        logger.info("%s operation successful", label)
        return ExecutionResult(
            succeeded=True,
            output=completed.stdout or f"{label} operation completed successfully",
            raw_output=raw_stdout,
        )

    await tracker.fail(f"{label} failed with exit code {exit_code}", completed.stderr)
    logger.error("%s operation failed with exit code %s", label, exit_code)
    return ExecutionResult(
        succeeded=False,
        output=completed.stdout,
        error=completed.stderr or f"Operation failed with exit code {exit_code}. No stderr output.",
        raw_output=raw_stdout,
    )


class OutputCapture(Protocol):
    async def run(self, command: str, label: str, tracker: ProgressTracker) -> ExecutionResult:
        ...


class DirectCapture:
    """Return the command's own stdout and stderr."""

    async def run(self, command: str, label: str, tracker: ProgressTracker) -> ExecutionResult:
        try:
            completed = await _run(command, tracker)
        except OSError as err:
            return await _spawn_failed(label, tracker, err)
        return await _conclude(label, tracker, completed)


class PrettyCapture:
    """Like :class:`DirectCapture`, but stdout is passed through a formatter such as xcpretty.

    Progress is still classified from the raw output, and the raw stdout is
    kept on ``raw_output``. If the formatter fails the raw stdout is used as
    is, so the result matches the direct path.
    """

    def __init__(self, formatter: Sequence[str]):
        self.formatter = list(formatter)

    async def run(self, command: str, label: str, tracker: ProgressTracker) -> ExecutionResult:
        try:
            completed = await _run(command, tracker)
        except OSError as err:
            return await _spawn_failed(label, tracker, err)

        raw_stdout = None
        if completed.stdout:
            try:
                formatted = await self.format(completed.stdout)
            except FormatterError as err:
                logger.warning("%s: formatter failed, using raw output: %s", label, err)
            else:
                raw_stdout = completed.stdout
                completed = completed._replace(stdout=formatted)
        return await _conclude(label, tracker, completed, raw_stdout)

    async def format(self, text: str) -> str:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.formatter,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            out, err = await process.communicate(text.encode())
        except OSError as e:
            raise FormatterError(f"could not start {self.formatter[0]}: {e}") from e
        if process.returncode != 0:
            raise FormatterError(
                f"{self.formatter[0]} exited with {process.returncode}: "
                f"{err.decode(errors='replace').strip()}"
            )
        return out.decode(errors="replace")


def select_capture(
    tokens: Sequence[str],
    pretty: Optional[bool] = None,
    formatter: Optional[str] = None,
) -> OutputCapture:
    """Use the formatter for xcodebuild when it's enabled and on PATH, else capture directly."""
    pretty = config.PRETTY_OUTPUT if pretty is None else pretty
    formatter_args = shlex.split(config.FORMATTER if formatter is None else formatter)
    if pretty and tokens and tokens[0] == "xcodebuild" and formatter_args:
        if shutil.which(formatter_args[0]):
            return PrettyCapture(formatter_args)
        logger.debug("%s not found on PATH, capturing output directly", formatter_args[0])
    return DirectCapture()


async def execute_command(
    tokens: Sequence[str],
    label: str,
    on_progress: Optional[ProgressSink] = None,
    *,
    classifier: Optional[PhaseClassifier] = None,
    pretty: Optional[bool] = None,
    formatter: Optional[str] = None,
    progress_interval: Optional[float] = None,
) -> ExecutionResult:
    """Run ``tokens`` as one shell command and return exactly one result.

    Args:
        tokens: Command and arguments, e.g. ``["xcodebuild", "-scheme", "App", "build"]``.
        label: Human-readable name used in log lines and progress messages.
        on_progress: Optional sink for :class:`ProgressUpdate` values; sync or async.
            It receives exactly one terminal update, last.
        classifier: Phase detection for progress; defaults to xcodebuild phases.
        pretty: Override ``XCODEBUILD_MCP_PRETTY``.
        formatter: Override ``XCODEBUILD_MCP_FORMATTER``.
        progress_interval: Minimum seconds between throttled progress updates.
    """
    if not tokens:
        raise ValueError("Command must have at least one token")

    command = join_command(tokens)
    logger.info("Executing %s command: %s", label, command)
    logger.debug("Raw command array: %s", json.dumps(list(tokens)))

    tracker = ProgressTracker(
        label,
        on_progress,
        classifier or DEFAULT_CLASSIFIER,
        interval=config.PROGRESS_INTERVAL if progress_interval is None else progress_interval,
    )
    capture = select_capture(tokens, pretty, formatter)
    await tracker.start()
    logger.debug("%s using %s", label, type(capture).__name__)
    return await capture.run(command, label, tracker)
