"""Completion detection for one chat turn.

The chat surface offers no completion event, so a turn is judged finished by
polling: the response must stop changing for several consecutive idle samples.
A single idle sample is not enough because streamed responses pause mid-answer
and rendering lags generation.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
import logging
import re
import time
from typing import Awaitable, Callable, Optional, Union


logger = logging.getLogger(__name__)


_RATE_LIMIT_RE = re.compile(
    r"(?:\b429\b|rate\s*limit|rate_limited|too\s+many\s+requests|요청이\s*너무\s*많)",
    re.I,
)
_GENERIC_FAILURE_RE = re.compile(
    r"(?:something\s+went\s+wrong|an\s+error\s+occurred|문제가\s*발생|오류가\s*발생)",
    re.I,
)
_REFUSAL_RE = re.compile(
    r"(?:i\s+can(?:no|')t\s+(?:help|assist)|i'?m\s+(?:not\s+able|unable)\s+to|"
    r"도와드릴\s*수\s*없|답변할\s*수\s*없)",
    re.I,
)


def classify_banner(text: Optional[str]) -> Optional[str]:
    """Map error-banner text to a failure kind, or None if it is not a failure."""
    if not text:
        return None
    if _RATE_LIMIT_RE.search(text):
        return "rate_limited"
    if _GENERIC_FAILURE_RE.search(text):
        return "generic_failure"
    if _REFUSAL_RE.search(text):
        return "refusal"
    return None


@dataclass
class Observation:
    busy: Optional[bool]  # None when the surface cannot tell
    latest_text: str = ""
    error_banner_text: Optional[str] = None
    response_count: Optional[int] = None  # rendered responses in the thread, if countable


@dataclass
class Success:
    text: str
    elapsed_ms: int


@dataclass
class GenerationFailed:
    message: str
    kind: str = "generic_failure"


@dataclass
class TimedOut:
    elapsed_ms: int
    partial_text: str = ""


@dataclass
class Cancelled:
    pass


TurnOutcome = Union[Success, GenerationFailed, TimedOut, Cancelled]


class DetectorPhase(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    GENERATING = "generating"
    STABILIZING = "stabilizing"
    COMPLETE = "complete"
    ERROR = "error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


_TERMINAL = {
    DetectorPhase.COMPLETE,
    DetectorPhase.ERROR,
    DetectorPhase.TIMEOUT,
    DetectorPhase.CANCELLED,
}

DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_DEADLINE_SECONDS = 180.0
DEFAULT_STABILITY_THRESHOLD = 3


class CompletionDetector:
    """
    State machine: IDLE -> SENDING -> GENERATING -> STABILIZING -> terminal.

    Stability counts consecutive idle samples carrying the same non-empty text.
    The first idle sample with a given text counts as one, a different text
    starts a new run, and any busy sample clears the run.

    Idle text identical to the pre-send baseline only counts once a new
    response is evident: busy was observed, the response count grew past
    ``baseline_count``, or the surface can report neither busy nor a count.
    """

    def __init__(
        self,
        *,
        stability_threshold: int = DEFAULT_STABILITY_THRESHOLD,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        deadline: float = DEFAULT_DEADLINE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.stability_threshold = max(1, int(stability_threshold))
        self.poll_interval = poll_interval
        self.deadline = deadline
        self._clock = clock
        self.phase = DetectorPhase.IDLE
        self.stability_count = 0
        self._started_at = 0.0
        self._baseline = ""
        self._stable_text: Optional[str] = None
        self._last_text = ""
        self._seen_busy = False
        self._busy_observable = True
        self._baseline_count: Optional[int] = None
        self._seen_new_response = False

    @property
    def is_terminal(self) -> bool:
        return self.phase in _TERMINAL

    def begin(
        self,
        baseline_text: str = "",
        now: Optional[float] = None,
        *,
        baseline_count: Optional[int] = None,
    ) -> None:
        self.phase = DetectorPhase.SENDING
        self.stability_count = 0
        self._started_at = self._clock() if now is None else now
        self._baseline = (baseline_text or "").strip()
        self._stable_text = None
        self._last_text = ""
        self._seen_busy = False
        self._busy_observable = True
        self._baseline_count = baseline_count
        self._seen_new_response = False

    def mark_sent(self, busy_observable: bool = True) -> None:
        if self.phase != DetectorPhase.SENDING:
            return
        if not busy_observable:
            self._busy_observable = False
            self.phase = DetectorPhase.GENERATING

    def _elapsed_ms(self, now: float) -> int:
        return int((now - self._started_at) * 1000)

    def check_deadline(self, now: float) -> Optional[TurnOutcome]:
        if now - self._started_at > self.deadline:
            self.phase = DetectorPhase.TIMEOUT
            return TimedOut(elapsed_ms=self._elapsed_ms(now), partial_text=self._last_text)
        return None

    def cancel(self) -> TurnOutcome:
        self.phase = DetectorPhase.CANCELLED
        return Cancelled()

    def _new_response_evident(self) -> bool:
        if self._seen_busy or self._seen_new_response:
            return True
        # nothing to gate on; a repeated answer must still be able to complete
        return not self._busy_observable and self._baseline_count is None

    def feed(self, observation: Observation, now: Optional[float] = None) -> Optional[TurnOutcome]:
        """Fold one sample into the state machine; return an outcome once terminal."""
        if self.phase == DetectorPhase.IDLE:
            raise RuntimeError("begin() must be called before feeding observations")
        if self.is_terminal:
            raise RuntimeError(f"detector already finished: {self.phase.value}")
        now = self._clock() if now is None else now

        kind = classify_banner(observation.error_banner_text)
        if kind is not None:
            self.phase = DetectorPhase.ERROR
            return GenerationFailed(message=str(observation.error_banner_text).strip(), kind=kind)
        if observation.error_banner_text:
            logger.debug("Ignoring unrecognized banner: %r", observation.error_banner_text)

        timed_out = self.check_deadline(now)
        if timed_out is not None:
            return timed_out

        text = (observation.latest_text or "").strip()
        if text:
            self._last_text = text

        if (
            self._baseline_count is not None
            and observation.response_count is not None
            and observation.response_count > self._baseline_count
        ):
            self._seen_new_response = True

        if observation.busy:
            self._seen_busy = True
            self.phase = DetectorPhase.GENERATING
            self.stability_count = 0
            self._stable_text = None
            return None

        if not text or (text == self._baseline and not self._new_response_evident()):
            self.stability_count = 0
            self._stable_text = None
            return None

        if text == self._stable_text:
            self.stability_count += 1
        else:
            self._stable_text = text
            self.stability_count = 1
        self.phase = DetectorPhase.STABILIZING

        if self.stability_count >= self.stability_threshold:
            self.phase = DetectorPhase.COMPLETE
            return Success(text=text, elapsed_ms=self._elapsed_ms(now))
        return None

    async def wait(
        self,
        observe: Callable[[], Awaitable[Observation]],
        *,
        stop: Optional[Callable[[], Awaitable[object]]] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> TurnOutcome:
        """Poll until terminal. ``begin()`` must have been called."""
        while True:
            if should_stop is not None and should_stop():
                return self.cancel()
            try:
                observation = await observe()
            except Exception as exc:
                # transient DOM/CDP hiccups are expected; keep polling until the deadline
                logger.warning("Observation failed: %s", exc)
                outcome = self.check_deadline(self._clock())
            else:
                outcome = self.feed(observation)
            if outcome is not None:
                if isinstance(outcome, TimedOut):
                    await self._issue_stop(stop)
                return outcome
            await asyncio.sleep(self.poll_interval)

    async def _issue_stop(self, stop: Optional[Callable[[], Awaitable[object]]]) -> None:
        if stop is None:
            return
        try:
            await stop()
        except Exception as exc:
            logger.warning("Stop signal after timeout failed: %s", exc)
