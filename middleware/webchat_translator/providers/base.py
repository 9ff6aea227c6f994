"""Content-generation backends invoked as ``generate(prompt) -> str``."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Optional, Union

from webchat_translator.core.completion import (
    Cancelled,
    GenerationFailed,
    Success,
    TimedOut,
    TurnOutcome,
)


logger = logging.getLogger(__name__)

GenerateFn = Callable[[str], Union[str, Awaitable[str]]]


class ProviderError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        error_type: str | None = None,
        status_code: int | None = None,
        duration_ms: int | None = None,
        url: str | None = None,
        response_text: str | None = None,
    ) -> None:
        super().__init__(message)
        self.error_type = error_type
        self.status_code = status_code
        self.duration_ms = duration_ms
        self.url = url
        self.response_text = response_text


class CallableTurnRunner:
    """Adapts a plain backend callable to the turn-runner interface."""

    def __init__(
        self,
        generate: GenerateFn,
        *,
        reset: Optional[Callable[[], Any]] = None,
    ):
        self.generate = generate
        self._reset = reset

    async def reset_session(self) -> Optional[str]:
        if self._reset is None:
            return None
        result = self._reset()
        if inspect.isawaitable(result):
            result = await result
        return result if isinstance(result, str) else None

    async def _call(self, prompt: str) -> str:
        if inspect.iscoroutinefunction(self.generate):
            return await self.generate(prompt)
        result = await asyncio.to_thread(self.generate, prompt)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def run_turn(
        self,
        prompt: str,
        *,
        unit_index: Optional[int] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> TurnOutcome:
        if should_stop is not None and should_stop():
            return Cancelled()
        start = time.perf_counter()
        try:
            text = await self._call(prompt)
        except Exception as exc:
            elapsed_ms = int((time.perf_counter() - start) * 1000)
            error_type = getattr(exc, "error_type", None) or "backend_error"
            if error_type == "timeout":
                return TimedOut(elapsed_ms=elapsed_ms)
            logger.warning("Backend call failed for unit %s: %s", unit_index, exc)
            return GenerationFailed(message=str(exc), kind=error_type)
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        return Success(text=str(text or ""), elapsed_ms=elapsed_ms)
