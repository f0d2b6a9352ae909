"""Best-effort build progress for long-running xcodebuild invocations.

Progress is guessed from output text: a line mentioning a known phase marker
moves the estimate to that phase's floor, and ``N of M files`` lines move it
along by ratio. The numbers are approximate and tool-version dependent; they
never decide success or failure.
"""

import inspect
import logging
import re
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional, Sequence, Union

logger = logging.getLogger(__name__)

RUNNING_CAP = 95
DETAILS_LIMIT = 500


class ProgressStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class ProgressUpdate:
    operation_id: str
    status: ProgressStatus
    progress: int
    message: str
    timestamp: str
    details: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status is not ProgressStatus.RUNNING


ProgressSink = Callable[[ProgressUpdate], Union[None, Awaitable[None]]]


class PhaseClassifier:
    """Ordered phase markers matched by substring against each output line."""

    def __init__(
        self,
        phases: Sequence[str],
        file_phases: Sequence[str] = (),
        file_pattern: Optional[str] = r"(\d+) of (\d+) files",
    ):
        self.phases: tuple[str, ...] = tuple(phases)
        self.file_phases = frozenset(file_phases)
        self._file_re = re.compile(file_pattern) if file_pattern else None

    def classify(self, line: str) -> Optional[int]:
        """Index of the first phase marker found in ``line``."""
        for index, phase in enumerate(self.phases):
            if phase in line:
                return index
        return None

    @staticmethod
    def floor(index: int) -> int:
        return min(25 * index, 90)

    def counts_files(self, index: int) -> bool:
        return self.phases[index] in self.file_phases

    def file_count(self, line: str) -> Optional[tuple[int, int]]:
        if self._file_re is None:
            return None
        match = self._file_re.search(line)
        if not match:
            return None
        return int(match.group(1)), int(match.group(2))


DEFAULT_CLASSIFIER = PhaseClassifier(
    ("CompileC", "CompileSwift", "Linking", "CodeSign"),
    file_phases=("CompileC", "CompileSwift"),
)

NULL_CLASSIFIER = PhaseClassifier((), file_pattern=None)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ProgressTracker:
    """Progress state for one execution.

    Running updates are throttled to one per ``interval`` seconds. The first
    update, phase transitions and the terminal update always go out. After
    the terminal update nothing more is emitted.
    """

    def __init__(
        self,
        label: str,
        sink: Optional[ProgressSink] = None,
        classifier: PhaseClassifier = DEFAULT_CLASSIFIER,
        interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.label = label
        self.operation_id = str(uuid.uuid4())
        self.classifier = classifier
        self.interval = interval
        self.phase: Optional[str] = None
        self.processed_files = 0
        self.total_files = 0
        self.estimate = 0
        self.finished = False
        self._sink = sink
        self._clock = clock
        self._last_emit: Optional[float] = None

    async def start(self) -> None:
        await self._emit(f"Starting {self.label}...", force=True)

    async def feed_stdout(self, line: str) -> None:
        index = self.classifier.classify(line)
        if index is not None:
            phase = self.classifier.phases[index]
            floor = self.classifier.floor(index)
            if phase != self.phase:
                # a new phase resets the estimate to its floor
                self.phase = phase
                self.estimate = floor
                await self._emit(f"{phase} phase...", force=True)
            if self.classifier.counts_files(index):
                self.processed_files += 1
                if self.total_files > 0:
                    ratio = min(self.processed_files / self.total_files, 1.0)
                    self._advance(floor + ratio * 25)
            await self._emit(f"Processing: {line[:80]}...")

        counts = self.classifier.file_count(line)
        if counts and counts[1] > 0:
            self.processed_files, self.total_files = counts
            self._advance(self.processed_files / self.total_files * 90)
            await self._emit(f"Processing file {self.processed_files} of {self.total_files}")

    async def feed_stderr(self, text: str) -> None:
        await self._emit(f"Warning: {text[:100]}...")

    async def succeed(self) -> None:
        self.estimate = 100
        await self._finish(ProgressStatus.COMPLETED, f"{self.label} completed successfully")

    async def fail(self, message: str, details: Optional[str] = None) -> None:
        await self._finish(
            ProgressStatus.FAILED, message, details[:DETAILS_LIMIT] if details else None
        )

    def _advance(self, value: float) -> None:
        self.estimate = max(self.estimate, min(int(value), RUNNING_CAP))

    async def _finish(self, status: ProgressStatus, message: str, details: Optional[str] = None) -> None:
        if self.finished:
            return
        self.finished = True
        await self._deliver(self._update(status, message, details))

    async def _emit(self, message: str, force: bool = False) -> None:
        if self._sink is None or self.finished:
            return
        now = self._clock()
        if not force and self._last_emit is not None and now - self._last_emit < self.interval:
            return
        self._last_emit = now
        await self._deliver(
            self._update(ProgressStatus.RUNNING, message, f"Phase: {self.phase or 'Preparing'}")
        )

    def _update(self, status: ProgressStatus, message: str, details: Optional[str]) -> ProgressUpdate:
        return ProgressUpdate(
            operation_id=self.operation_id,
            status=status,
            progress=self.estimate,
            message=message,
            timestamp=_now(),
            details=details,
        )

    async def _deliver(self, update: ProgressUpdate) -> None:
        if self._sink is None:
            return
        try:
            result = self._sink(update)
            if inspect.isawaitable(result):
                await result
        except Exception:
            # sink failures never interrupt output draining
            logger.warning("%s: progress sink raised", self.label, exc_info=True)
