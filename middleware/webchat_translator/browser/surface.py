"""Automation surface boundary and the turn runner that drives it."""

from __future__ import annotations

import asyncio
import importlib
import logging
import time
from typing import Any, Awaitable, Callable, Optional, Type

from webchat_translator.core.completion import (
    Cancelled,
    CompletionDetector,
    Observation,
    TurnOutcome,
)
from webchat_translator.core.errors import SendFailure, TranslatorError, UploadFailure
from webchat_translator.utils.log_protocol import emit_retry


logger = logging.getLogger(__name__)

DEFAULT_INPUT_WINDOW = 10.0
DEFAULT_SEND_WINDOW = 10.0
DEFAULT_RETRY_INTERVAL = 0.5


class AutomationSurface:
    """
    The controllable chat UI. Element selection belongs to implementations;
    the core only sees these operations.
    """

    async def write_input(self, text: str) -> bool:
        raise NotImplementedError

    async def click_send(self) -> bool:
        raise NotImplementedError

    async def is_busy(self) -> Optional[bool]:
        """True while generating; None when the surface cannot tell."""
        raise NotImplementedError

    async def latest_response_text(self) -> str:
        raise NotImplementedError

    async def error_banner_text(self) -> Optional[str]:
        raise NotImplementedError

    async def response_count(self) -> Optional[int]:
        """Number of responses rendered in the thread; None when not countable."""
        return None

    async def stop(self) -> None:
        raise NotImplementedError

    async def start_new_chat(self) -> Optional[str]:
        """Open a fresh conversation; may return its id."""
        raise NotImplementedError


def load_surface_factory(spec: str) -> Callable[..., AutomationSurface]:
    """Resolve ``package.module:callable`` to a surface factory."""
    module_name, sep, attr = str(spec or "").partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Surface factory must look like 'module:callable', got {spec!r}")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ValueError(f"Surface factory {spec!r} is not callable")
    return factory


class SurfaceTurnRunner:
    """Runs one turn: write input, click send, then poll for completion."""

    def __init__(
        self,
        surface: AutomationSurface,
        *,
        detector_factory: Callable[[], CompletionDetector] = CompletionDetector,
        input_window: float = DEFAULT_INPUT_WINDOW,
        send_window: float = DEFAULT_SEND_WINDOW,
        retry_interval: float = DEFAULT_RETRY_INTERVAL,
    ):
        self.surface = surface
        self.detector_factory = detector_factory
        self.input_window = input_window
        self.send_window = send_window
        self.retry_interval = retry_interval

    async def reset_session(self) -> Optional[str]:
        return await self.surface.start_new_chat()

    async def run_turn(
        self,
        prompt: str,
        *,
        unit_index: Optional[int] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> TurnOutcome:
        if should_stop is not None and should_stop():
            return Cancelled()

        detector = self.detector_factory()
        detector.begin(await self._baseline_text(), baseline_count=await self._response_count())

        await self._bounded_stage(
            "write_input",
            lambda: self.surface.write_input(prompt),
            self.input_window,
            UploadFailure,
            unit_index,
        )
        await self._bounded_stage(
            "click_send",
            self.surface.click_send,
            self.send_window,
            SendFailure,
            unit_index,
        )
        detector.mark_sent(busy_observable=await self._busy_observable())
        return await detector.wait(self._observe, stop=self.surface.stop, should_stop=should_stop)

    async def _baseline_text(self) -> str:
        try:
            return await self.surface.latest_response_text() or ""
        except Exception as exc:
            logger.debug("No baseline response text: %s", exc)
            return ""

    async def _response_count(self) -> Optional[int]:
        try:
            return await self.surface.response_count()
        except Exception as exc:
            logger.debug("Response count unavailable: %s", exc)
            return None

    async def _busy_observable(self) -> bool:
        try:
            return (await self.surface.is_busy()) is not None
        except Exception as exc:
            logger.debug("Busy indicator unavailable: %s", exc)
            return False

    async def _observe(self) -> Observation:
        busy = await self.surface.is_busy()
        text = await self.surface.latest_response_text()
        banner = await self.surface.error_banner_text()
        return Observation(
            busy=busy,
            latest_text=text or "",
            error_banner_text=banner,
            response_count=await self._response_count(),
        )

    async def _bounded_stage(
        self,
        stage: str,
        action: Callable[[], Awaitable[Any]],
        window: float,
        error_cls: Type[TranslatorError],
        unit_index: Optional[int],
    ) -> None:
        deadline = time.monotonic() + window
        attempt = 0
        last_error: Optional[BaseException] = None
        while True:
            attempt += 1
            try:
                if await action() is not False:
                    return
            except Exception as exc:
                last_error = exc
                logger.debug("%s attempt %d failed: %s", stage, attempt, exc)
            if time.monotonic() >= deadline:
                detail = f": {last_error}" if last_error else ""
                raise error_cls(
                    f"{stage} did not succeed within {window:.1f}s{detail}",
                    unit_index=unit_index,
                )
            if unit_index is not None:
                emit_retry(unit_index + 1, attempt, stage)
            await asyncio.sleep(self.retry_interval)
