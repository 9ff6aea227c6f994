"""Session continuity policy: decides when to abandon a chat thread."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
import logging
import threading
from typing import Any, Deque, Dict, Iterable, Optional

from webchat_translator.prompts.builder import build_translation_prompt


logger = logging.getLogger(__name__)


@dataclass
class PolicyThresholds:
    # Tuned empirically against the chat surface; keep as-is unless re-measured.
    max_consecutive_errors: int = 2
    max_consecutive_successes: int = 20
    latency_spike_ratio: float = 1.5
    latency_spike_floor_ms: float = 3000.0
    latency_hard_limit_ms: float = 10000.0
    recent_window: int = 3
    latency_window: int = 10
    max_context_tails: int = 3
    max_tail_chars: int = 200
    max_glossary_entries: int = 50
    slow_avg_ms: float = 5000.0
    medium_avg_ms: float = 3000.0
    small_chunk_size: int = 3000
    medium_chunk_size: int = 4000
    large_chunk_size: int = 5000


@dataclass
class SessionState:
    thresholds: PolicyThresholds = field(default_factory=PolicyThresholds)
    active_conversation_id: Optional[str] = None
    consecutive_successes: int = 0
    consecutive_errors: int = 0
    processed_units: int = 0
    response_times: Deque[float] = field(init=False)
    context_tails: Deque[str] = field(init=False)
    glossary: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.response_times = deque(maxlen=self.thresholds.latency_window)
        self.context_tails = deque(maxlen=self.thresholds.max_context_tails)


class SessionContinuityPolicy:
    """
    Owns the session state. Every mutation goes through these methods; callers
    only ever read snapshots.
    """

    def __init__(
        self,
        thresholds: Optional[PolicyThresholds] = None,
        *,
        target_lang: str = "Korean",
        style: str = "natural",
    ):
        self.thresholds = thresholds or PolicyThresholds()
        self.target_lang = target_lang
        self.style = style
        self._state = SessionState(thresholds=self.thresholds)
        self._lock = threading.Lock()

    # --- decisions -------------------------------------------------------

    def should_reset_before_unit(self, index: int) -> bool:
        t = self.thresholds
        with self._lock:
            state = self._state
            if index == 0:
                return True
            if state.consecutive_errors >= t.max_consecutive_errors:
                state.consecutive_errors = 0
                logger.info("Session reset: %d consecutive errors", t.max_consecutive_errors)
                return True
            if state.consecutive_successes >= t.max_consecutive_successes:
                state.consecutive_successes = 0
                logger.info("Session reset: success streak reached %d", t.max_consecutive_successes)
                return True

            times = state.response_times
            if len(times) >= t.recent_window:
                recent = list(times)[-t.recent_window:]
                recent_avg = sum(recent) / len(recent)
                running_avg = sum(times) / len(times)
                if (
                    recent_avg > running_avg * t.latency_spike_ratio
                    and recent_avg > t.latency_spike_floor_ms
                ):
                    state.consecutive_successes = 0
                    logger.info(
                        "Session reset: recent latency %.0fms vs average %.0fms",
                        recent_avg,
                        running_avg,
                    )
                    return True
            if times and times[-1] > t.latency_hard_limit_ms:
                state.consecutive_successes = 0
                logger.info("Session reset: last turn took %.0fms", times[-1])
                return True
            return False

    def optimal_chunk_size(self) -> int:
        t = self.thresholds
        avg = self.running_average_ms
        if avg > t.slow_avg_ms:
            return t.small_chunk_size
        if avg > t.medium_avg_ms:
            return t.medium_chunk_size
        return t.large_chunk_size

    # --- recording -------------------------------------------------------

    def record_success(self, elapsed_ms: float) -> None:
        with self._lock:
            self._state.processed_units += 1
            self._state.consecutive_successes += 1
            self._state.consecutive_errors = 0
            self._state.response_times.append(float(elapsed_ms))

    def record_error(self) -> None:
        with self._lock:
            self._state.consecutive_errors += 1
            self._state.consecutive_successes = 0

    def add_context_tail(self, text: str) -> None:
        if not text or not text.strip():
            return
        with self._lock:
            self._state.context_tails.append(text[-self.thresholds.max_tail_chars:])

    def add_glossary_entry(self, original: str, translated: str) -> None:
        if not original or not original.strip() or not translated or not translated.strip():
            return
        with self._lock:
            glossary = self._state.glossary
            if (
                original not in glossary
                and len(glossary) >= self.thresholds.max_glossary_entries
            ):
                oldest = next(iter(glossary))
                del glossary[oldest]
            glossary[original] = translated

    def note_session_started(self, conversation_id: Optional[str] = None) -> None:
        with self._lock:
            self._state.active_conversation_id = conversation_id

    def reset(self) -> None:
        with self._lock:
            self._state = SessionState(thresholds=self.thresholds)

    def seed_history(self, response_times: Iterable[float], consecutive_errors: int = 0) -> bool:
        """Rebuild the latency window and error streak of a resumed run.

        A policy that already recorded turns keeps its own history.
        """
        with self._lock:
            state = self._state
            if state.response_times or state.processed_units:
                return False
            for elapsed in response_times:
                state.response_times.append(float(elapsed))
                state.processed_units += 1
            state.consecutive_errors = max(state.consecutive_errors, int(consecutive_errors))
            return True

    # --- read side -------------------------------------------------------

    @property
    def running_average_ms(self) -> float:
        with self._lock:
            times = self._state.response_times
            return sum(times) / len(times) if times else 0.0

    @property
    def consecutive_errors(self) -> int:
        return self._state.consecutive_errors

    @property
    def consecutive_successes(self) -> int:
        return self._state.consecutive_successes

    def glossary(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._state.glossary)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            state = self._state
            return {
                "active_conversation_id": state.active_conversation_id,
                "consecutive_successes": state.consecutive_successes,
                "consecutive_errors": state.consecutive_errors,
                "processed_units": state.processed_units,
                "response_times": list(state.response_times),
                "context_tails": list(state.context_tails),
                "glossary": dict(state.glossary),
            }

    def build_prompt(
        self,
        text: str,
        *,
        use_visual_history: bool = False,
    ) -> str:
        """Prompt with the rolling glossary and context tail.

        With ``use_visual_history`` the chat thread itself carries the earlier
        turns, so the tail is not repeated in the prompt.
        """
        with self._lock:
            glossary: Dict[str, str] = dict(self._state.glossary)
            previous = None
            if not use_visual_history and self._state.context_tails:
                previous = "\n".join(self._state.context_tails)
        return build_translation_prompt(
            text,
            self.target_lang,
            self.style,
            glossary=glossary,
            previous_context=previous,
        )
