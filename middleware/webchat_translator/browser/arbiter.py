"""Exclusive ownership of the single controlled browser process."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
import logging
import time
from typing import Callable, Optional

from webchat_translator.browser.lifecycle import BrowserLifecycleManager, ProcessHandle
from webchat_translator.core.errors import TranslatorError
from webchat_translator.utils.events import EventChannel


logger = logging.getLogger(__name__)


class Owner(str, Enum):
    NONE = "none"
    TRANSLATION = "translation"
    INTERACTIVE = "interactive"


@dataclass(frozen=True)
class OwnershipLease:
    owner: Owner = Owner.NONE
    held_since: Optional[float] = None
    process_handle: Optional[ProcessHandle] = None


@dataclass(frozen=True)
class OwnershipChanged:
    previous: Owner
    current: Owner
    reason: str


@dataclass(frozen=True)
class ProcessClosed:
    handle: ProcessHandle


class OwnershipArbiter:
    """
    Grants, denies and forces exclusive leases on the browser.

    Every lease mutation, including the out-of-band "process exited" signal,
    runs under one asyncio gate. Exit signals arrive on watcher threads and are
    funnelled through a single queue drained by one consumer task, so a crash
    can never interleave with an in-flight acquire.
    """

    def __init__(
        self,
        lifecycle: BrowserLifecycleManager,
        *,
        events: Optional[EventChannel[OwnershipChanged]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._lifecycle = lifecycle
        self.events: EventChannel[OwnershipChanged] = events or EventChannel()
        self._clock = clock
        self._lease = OwnershipLease()
        self._gate = asyncio.Lock()
        self._closed_events: asyncio.Queue = asyncio.Queue()
        self._consumer: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # --- read side -------------------------------------------------------

    @property
    def lease(self) -> OwnershipLease:
        return self._lease

    @property
    def current_owner(self) -> Owner:
        return self._lease.owner

    @property
    def lifecycle(self) -> BrowserLifecycleManager:
        return self._lifecycle

    def is_owned_by(self, requester: Owner) -> bool:
        return self._lease.owner is requester

    def is_available_to(self, requester: Owner) -> bool:
        return self._lease.owner in (Owner.NONE, requester)

    # --- mutations -------------------------------------------------------

    async def acquire(
        self,
        requester: Owner,
        headless: bool = False,
        force_release: bool = False,
    ) -> bool:
        if requester is Owner.NONE:
            raise ValueError("requester must be a concrete owner")
        self._ensure_consumer()
        async with self._gate:
            lease = self._lease
            if lease.owner is requester:
                handle = lease.process_handle
                if handle is not None and handle.is_alive():
                    return True
                logger.info("Browser for %s is gone, relaunching", requester.value)
                return await self._grant(requester, headless, reason="relaunch")

            if lease.owner is not Owner.NONE:
                if not force_release:
                    logger.info(
                        "Browser held by %s, denied to %s",
                        lease.owner.value,
                        requester.value,
                    )
                    return False
                logger.info(
                    "Force-releasing browser from %s for %s",
                    lease.owner.value,
                    requester.value,
                )
                await self._teardown(reason="force_release")

            return await self._grant(requester, headless, reason="acquire")

    async def release(self, requester: Owner) -> None:
        async with self._gate:
            if self._lease.owner is not requester or requester is Owner.NONE:
                logger.info(
                    "Release by %s ignored; current owner is %s",
                    requester.value,
                    self._lease.owner.value,
                )
                return
            await self._teardown(reason="release")

    async def force_release_all(self) -> None:
        async with self._gate:
            if self._lease.owner is Owner.NONE:
                return
            await self._teardown(reason="force_release_all")

    async def reset_browser(self, clear_user_data: bool = False) -> None:
        """Tear down any lease and hard-reinstall the browser."""
        async with self._gate:
            if self._lease.owner is not Owner.NONE:
                await self._teardown(reason="reset")
            await asyncio.to_thread(self._lifecycle.reset, clear_user_data)

    async def wait_idle(self) -> None:
        """Wait until every queued process-exit signal has been handled."""
        await self._closed_events.join()

    async def aclose(self) -> None:
        consumer = self._consumer
        self._consumer = None
        if consumer is not None and not consumer.done():
            consumer.cancel()
            try:
                await consumer
            except asyncio.CancelledError:
                pass

    # --- internals (gate held) -------------------------------------------

    async def _grant(self, requester: Owner, headless: bool, *, reason: str) -> bool:
        try:
            handle = await asyncio.to_thread(self._lifecycle.launch, headless)
        except (TranslatorError, OSError) as exc:
            logger.error("Browser launch for %s failed: %s", requester.value, exc)
            self._set_lease(OwnershipLease(), reason="launch_failed")
            return False
        self._set_lease(
            OwnershipLease(owner=requester, held_since=self._clock(), process_handle=handle),
            reason=reason,
        )
        handle.add_closed_callback(self._on_process_closed)
        return True

    async def _teardown(self, *, reason: str) -> None:
        self._set_lease(OwnershipLease(), reason=reason)
        try:
            await asyncio.to_thread(self._lifecycle.close)
        except Exception as exc:
            # the lease is already cleared; a stuck process is reaped by reset
            logger.warning("Browser close during %s failed: %s", reason, exc)

    def _set_lease(self, lease: OwnershipLease, *, reason: str) -> None:
        previous = self._lease.owner
        self._lease = lease
        if previous is not lease.owner:
            logger.info("Browser owner %s -> %s (%s)", previous.value, lease.owner.value, reason)
            self.events.publish(OwnershipChanged(previous, lease.owner, reason))

    # --- process-exit signal path -----------------------------------------

    def _ensure_consumer(self) -> None:
        if self._consumer is not None and not self._consumer.done():
            return
        self._loop = asyncio.get_running_loop()
        self._consumer = self._loop.create_task(self._consume_closed_events())

    def _on_process_closed(self, handle: ProcessHandle) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.debug("Process %s exited with no running arbiter loop", handle.pid)
            return
        try:
            loop.call_soon_threadsafe(self._closed_events.put_nowait, ProcessClosed(handle))
        except RuntimeError as exc:
            logger.debug("Dropped exit signal for pid %s: %s", handle.pid, exc)

    async def _consume_closed_events(self) -> None:
        while True:
            event: ProcessClosed = await self._closed_events.get()
            try:
                async with self._gate:
                    if self._lease.process_handle is event.handle:
                        self._set_lease(OwnershipLease(), reason="process_closed")
                    else:
                        logger.debug("Stale exit signal for pid %s", event.handle.pid)
            finally:
                self._closed_events.task_done()
