"""Marker parser for agent output.

The agent reports progress with plain-text markers embedded in its output:

    [ITERATION 3]   the agent started its third iteration
    [SUCCESS]       all acceptance criteria are met
    [BLOCKED] why   the agent cannot continue without help

One ``OutputParser`` is shared by the stdout and stderr readers of a run.
Each stream keeps its own log buffer; finalization happens at most once.
"""

import logging
import re
import threading
import time
from typing import Protocol

logger = logging.getLogger(__name__)

SUCCESS_MARKER = "[SUCCESS]"
BLOCKED_MARKER = "[BLOCKED]"
ITERATION_PATTERN = re.compile(r"\[ITERATION\s+(\d+)\]")

OUTCOME_SUCCESS = "success"
OUTCOME_BLOCKED = "blocked"
OUTCOME_ITERATION_LIMIT = "iteration_limit"


class ParserSink(Protocol):
    def on_line(self, line: str, stream: str) -> None: ...

    def on_flush(self, text: str) -> None: ...

    def on_iteration(self, iteration: int) -> None: ...

    def on_finalize(self, outcome: str, reason: str) -> None: ...


class OutputParser:
    def __init__(
        self,
        task_id: str,
        max_iterations: int,
        sink: ParserSink,
        flush_interval: float = 5.0,
        clock=time.monotonic,
    ):
        self.task_id = task_id
        self.max_iterations = max_iterations
        self.sink = sink
        self.flush_interval = flush_interval
        self._clock = clock
        self._lock = threading.Lock()
        self._buffers: dict[str, list[str]] = {}
        self._last_flush: dict[str, float] = {}
        self._outcome: str | None = None
        self._reason = ""
        self._iteration = 0

    @property
    def outcome(self) -> str | None:
        return self._outcome

    @property
    def reason(self) -> str:
        return self._reason

    @property
    def iteration(self) -> int:
        return self._iteration

    @property
    def finalized(self) -> bool:
        return self._outcome is not None

    def feed(self, line: str, stream: str = "stdout") -> None:
        """Process one line of output (without the trailing newline)."""
        self.sink.on_line(line, stream)
        self._buffer(line, stream)
        self._detect(line)

    def close_stream(self, stream: str) -> None:
        """Flush whatever is left for ``stream``. Called at end of stream."""
        with self._lock:
            text = self._take(stream)
        if text:
            self.sink.on_flush(text)

    def _buffer(self, line: str, stream: str) -> None:
        now = self._clock()
        with self._lock:
            self._buffers.setdefault(stream, []).append(line + "\n")
            last = self._last_flush.setdefault(stream, now)
            if now - last < self.flush_interval:
                return
            text = self._take(stream)
        if text:
            self.sink.on_flush(text)

    def _take(self, stream: str) -> str:
        lines = self._buffers.get(stream) or []
        self._buffers[stream] = []
        self._last_flush[stream] = self._clock()
        return "".join(lines)

    def _detect(self, line: str) -> None:
        if SUCCESS_MARKER in line:
            self._finalize(OUTCOME_SUCCESS, "")
        if BLOCKED_MARKER in line:
            self._finalize(OUTCOME_BLOCKED, line.strip())

        for match in ITERATION_PATTERN.finditer(line):
            try:
                iteration = int(match.group(1))
            except ValueError:
                continue
            if iteration <= 0:
                continue
            with self._lock:
                if self._outcome is not None:
                    return
                self._iteration = iteration
            self.sink.on_iteration(iteration)
            if iteration >= self.max_iterations:
                self._finalize(
                    OUTCOME_ITERATION_LIMIT,
                    f"Reached maximum iterations ({self.max_iterations})",
                )

    def _finalize(self, outcome: str, reason: str) -> None:
        with self._lock:
            if self._outcome is not None:
                return
            self._outcome = outcome
            self._reason = reason
        logger.info("Task %s finalized: %s", self.task_id, outcome)
        self.sink.on_finalize(outcome, reason)
