"""Chunked translation pipeline over a single chat session."""

from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional

from webchat_translator.core.cache import TranslatedUnit, TranslationCache, source_fingerprint
from webchat_translator.core.chunker import Chunker, WorkUnit
from webchat_translator.core.cleaner import clean_translation, validate_translation
from webchat_translator.core.completion import (
    Cancelled,
    GenerationFailed,
    Success,
    TimedOut,
    TurnOutcome,
)
from webchat_translator.core.errors import (
    CancellationRequested,
    GenerationError,
    TranslatorError,
    TurnTimeout,
)
from webchat_translator.core.session_policy import SessionContinuityPolicy
from webchat_translator.prompts.glossary import TranslationOverrides
from webchat_translator.utils.log_protocol import ProgressTracker, emit_warning


logger = logging.getLogger(__name__)


class TranslationPipeline:
    """
    Strictly sequential: one unit in flight at a time, in index order. The
    rolling context window and the streak counters depend on that ordering.

    ``runner`` is any object with ``run_turn(prompt, unit_index=, should_stop=)``
    returning a turn outcome and ``reset_session()`` starting a fresh thread.
    """

    def __init__(
        self,
        runner: Any,
        policy: Optional[SessionContinuityPolicy] = None,
        *,
        chunker: Optional[Chunker] = None,
        overrides: Optional[TranslationOverrides] = None,
        cache: Optional[TranslationCache] = None,
        tracker: Optional[ProgressTracker] = None,
        on_unit: Optional[Callable[[TranslatedUnit], None]] = None,
        use_visual_history: bool = False,
    ):
        self.runner = runner
        self.policy = policy or SessionContinuityPolicy()
        self.chunker = chunker or Chunker()
        self.overrides = overrides
        self.cache = cache
        self.tracker = tracker
        self.on_unit = on_unit
        self.use_visual_history = use_visual_history
        self.session_resets = 0

    def _build_prompt(self, text: str) -> str:
        if self.overrides is not None and self.overrides.is_active:
            return self.overrides.build_prompt(text, self.policy.target_lang, self.policy.style)
        return self.policy.build_prompt(text, use_visual_history=self.use_visual_history)

    async def _reset_session(self, unit: WorkUnit, results: List[TranslatedUnit]) -> None:
        logger.info("Starting a new chat session before unit %d", unit.index + 1)
        try:
            conversation_id = await self.runner.reset_session()
        except TranslatorError as exc:
            self._record_failure()
            exc.unit_index = unit.index
            exc.results = results
            raise
        except Exception as exc:
            self._record_failure()
            raise TranslatorError(
                f"Session reset failed: {exc}",
                error_type="session_reset_failed",
                unit_index=unit.index,
                results=results,
            ) from exc
        self.policy.note_session_started(conversation_id)
        self.session_resets += 1
        if self.tracker is not None:
            self.tracker.note_reset()

    def _fail(
        self,
        outcome: TurnOutcome,
        unit: WorkUnit,
        results: List[TranslatedUnit],
    ) -> TranslatorError:
        self._record_failure()
        if isinstance(outcome, GenerationFailed):
            return GenerationError(
                outcome.message,
                error_type=outcome.kind,
                unit_index=unit.index,
                results=results,
            )
        if isinstance(outcome, TimedOut):
            return TurnTimeout(
                f"No complete response within the deadline ({outcome.elapsed_ms}ms)",
                unit_index=unit.index,
                results=results,
            )
        return TranslatorError(f"Unexpected outcome {outcome!r}", unit_index=unit.index, results=results)

    def _record_failure(self) -> None:
        self.policy.record_error()
        if self.tracker is not None:
            self.tracker.note_error()
        if self.cache is not None:
            self.cache.save(consecutiveErrors=self.policy.consecutive_errors)

    def _prime_from(self, results: List[TranslatedUnit]) -> None:
        carried_errors = 0
        if self.cache is not None:
            carried_errors = int(self.cache.metadata.get("consecutiveErrors") or 0)
        if self.policy.seed_history((done.elapsed_ms for done in results), carried_errors):
            for done in results[-self.policy.thresholds.max_context_tails:]:
                self.policy.add_context_tail(done.text)
        if self.tracker is not None:
            self.tracker.seed_progress(
                completed_units=len(results),
                consumed_to=results[-1].end,
                output_chars=sum(len(r.text) for r in results),
            )

    async def translate(
        self,
        text: str,
        resume_from: Optional[List[TranslatedUnit]] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> List[TranslatedUnit]:
        """Translate ``text`` unit by unit.

        ``resume_from`` is extended in place, so a caller holding it keeps the
        partial results even when a failure propagates. Resumed runs continue
        carving at the end offset of the last completed unit and always open a
        fresh session first.
        """
        results: List[TranslatedUnit] = resume_from if resume_from is not None else []
        resuming = bool(results)
        if not resuming:
            self.policy.reset()
        if self.tracker is not None:
            self.tracker.source_chars = len(text)
        if self.cache is not None:
            self.cache.fingerprint = source_fingerprint(text)
        if resuming:
            self._prime_from(results)
            logger.info("Resuming after %d completed units", len(results))

        offset = results[-1].end if results else 0
        index = len(results)
        force_reset = resuming

        while True:
            if should_stop is not None and should_stop():
                raise CancellationRequested("stop_requested", unit_index=index, results=results)

            chunk_size = self.policy.optimal_chunk_size()
            unit = self.chunker.carve(text, offset, index, chunk_size)
            if unit is None:
                break

            if self.policy.should_reset_before_unit(index) or force_reset:
                await self._reset_session(unit, results)
                force_reset = False

            prompt = self._build_prompt(unit.source_text)
            try:
                outcome = await self.runner.run_turn(
                    prompt, unit_index=index, should_stop=should_stop
                )
            except TranslatorError as exc:
                # input/send stage failures count against the session like any failed turn
                self._record_failure()
                exc.unit_index = index
                exc.results = results
                raise

            if isinstance(outcome, Cancelled):
                raise CancellationRequested("stop_requested", unit_index=index, results=results)
            if not isinstance(outcome, Success):
                error = self._fail(outcome, unit, results)
                logger.error("Unit %d failed: %s", index + 1, error)
                raise error

            cleaned = clean_translation(outcome.text)
            ok, reason = validate_translation(cleaned)
            if not ok:
                logger.warning("Unit %d validation: %s", index + 1, reason)
                emit_warning(index + 1, reason or "invalid", warn_type="validation")

            translated = TranslatedUnit(
                index=index,
                source_text=unit.source_text,
                text=cleaned,
                start=unit.start,
                end=unit.end,
                elapsed_ms=outcome.elapsed_ms,
                warning=None if ok else reason,
            )
            results.append(translated)
            self.policy.add_context_tail(cleaned)
            self.policy.record_success(outcome.elapsed_ms)

            if self.cache is not None:
                self.cache.add_unit(translated)
                self.cache.save()
            if self.tracker is not None:
                self.tracker.unit_done(
                    index,
                    unit.source_text,
                    cleaned,
                    consumed_to=unit.end,
                    avg_response_ms=self.policy.running_average_ms,
                    chunk_size=chunk_size,
                )
            if self.on_unit is not None:
                self.on_unit(translated)

            offset = unit.end
            index += 1

        return results
