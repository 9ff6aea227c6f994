"""Translate every leaf string of a JSON document, one turn per leaf."""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterator, List, Optional

from webchat_translator.core.cleaner import clean_translation
from webchat_translator.core.completion import Cancelled, GenerationFailed, Success, TimedOut
from webchat_translator.core.errors import (
    CancellationRequested,
    GenerationError,
    TranslatorError,
    TurnTimeout,
)
from webchat_translator.prompts.builder import build_setup_prompt, build_translation_prompt


logger = logging.getLogger(__name__)

SETUP_SAMPLE_COUNT = 5


def iter_leaf_strings(data: Any) -> Iterator[str]:
    if isinstance(data, dict):
        for value in data.values():
            yield from iter_leaf_strings(value)
    elif isinstance(data, list):
        for value in data:
            yield from iter_leaf_strings(value)
    elif isinstance(data, str) and data.strip():
        yield data


class JsonLeafTranslator:
    def __init__(
        self,
        runner: Any,
        *,
        target_lang: str = "Korean",
        style: str = "natural",
        work_name: Optional[str] = None,
        warm_up: bool = True,
    ):
        self.runner = runner
        self.target_lang = target_lang
        self.style = style
        self.work_name = work_name
        self.warm_up = warm_up
        self.translated_leaves = 0

    async def _send_setup(self, data: Any, should_stop: Optional[Callable[[], bool]]) -> None:
        samples: List[str] = []
        for leaf in iter_leaf_strings(data):
            samples.append(leaf)
            if len(samples) >= SETUP_SAMPLE_COUNT:
                break
        if not samples:
            return
        prompt = build_setup_prompt(samples, self.target_lang, self.style, self.work_name)
        try:
            outcome = await self.runner.run_turn(prompt, should_stop=should_stop)
        except TranslatorError as exc:
            logger.warning("Warm-up turn failed, continuing without it: %s", exc)
            return
        if not isinstance(outcome, Success):
            logger.warning("Warm-up turn did not complete: %r", outcome)

    async def translate(self, data: Any, should_stop: Optional[Callable[[], bool]] = None) -> Any:
        """Return a copy of ``data`` with every non-blank string leaf translated."""
        self.translated_leaves = 0
        await self.runner.reset_session()
        if self.warm_up:
            await self._send_setup(data, should_stop)
        return await self._walk(data, should_stop)

    async def _walk(self, node: Any, should_stop: Optional[Callable[[], bool]]) -> Any:
        if isinstance(node, dict):
            return {key: await self._walk(value, should_stop) for key, value in node.items()}
        if isinstance(node, list):
            return [await self._walk(value, should_stop) for value in node]
        if isinstance(node, str) and node.strip():
            return await self._translate_leaf(node, should_stop)
        return node

    async def _translate_leaf(self, value: str, should_stop: Optional[Callable[[], bool]]) -> str:
        index = self.translated_leaves
        if should_stop is not None and should_stop():
            raise CancellationRequested("stop_requested", unit_index=index)
        prompt = build_translation_prompt(value, self.target_lang, self.style)
        outcome = await self.runner.run_turn(prompt, unit_index=index, should_stop=should_stop)
        if isinstance(outcome, Cancelled):
            raise CancellationRequested("stop_requested", unit_index=index)
        if isinstance(outcome, GenerationFailed):
            raise GenerationError(outcome.message, error_type=outcome.kind, unit_index=index)
        if isinstance(outcome, TimedOut):
            raise TurnTimeout(f"Leaf {index + 1} timed out", unit_index=index)
        self.translated_leaves += 1
        return clean_translation(outcome.text).strip()
