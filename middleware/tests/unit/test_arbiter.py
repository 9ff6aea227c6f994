import asyncio
import threading

import pytest

from webchat_translator.browser.arbiter import Owner, OwnershipArbiter
from webchat_translator.core.errors import ProcessLaunchFailure


class FakeHandle:
    def __init__(self, pid):
        self.pid = pid
        self.alive = True
        self._callbacks = []
        self._lock = threading.Lock()

    def is_alive(self):
        return self.alive

    def add_closed_callback(self, callback):
        with self._lock:
            if self.alive:
                self._callbacks.append(callback)
                return
        callback(self)

    def exit(self):
        with self._lock:
            if not self.alive:
                return
            self.alive = False
            callbacks = list(self._callbacks)
        for callback in callbacks:
            callback(self)


class FakeLifecycle:
    installed_version = "130.0.1"

    def __init__(self):
        self.launches = 0
        self.closes = 0
        self.resets = []
        self.fail = False
        self.handle = None

    def launch(self, headless=False):
        if self.fail:
            raise ProcessLaunchFailure("no binary")
        if self.handle is not None and self.handle.is_alive():
            return self.handle
        self.launches += 1
        self.handle = FakeHandle(pid=1000 + self.launches)
        return self.handle

    def close(self):
        self.closes += 1
        handle, self.handle = self.handle, None
        if handle is not None:
            handle.exit()

    def reset(self, clear_user_data=False):
        self.resets.append(clear_user_data)

    def is_update_available(self):
        return False


async def _next_event(queue, timeout=2.0):
    return await asyncio.wait_for(queue.get(), timeout)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_concurrent_acquire_grants_exactly_one():
    lifecycle = FakeLifecycle()
    arbiter = OwnershipArbiter(lifecycle)
    try:
        granted = await asyncio.gather(
            arbiter.acquire(Owner.TRANSLATION),
            arbiter.acquire(Owner.INTERACTIVE),
        )
        assert sorted(granted) == [False, True]
        winner = Owner.TRANSLATION if granted[0] else Owner.INTERACTIVE
        assert arbiter.current_owner is winner
        assert lifecycle.launches == 1
    finally:
        await arbiter.aclose()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_denied_without_force_then_forced():
    lifecycle = FakeLifecycle()
    arbiter = OwnershipArbiter(lifecycle)
    seen = []
    arbiter.events.add_listener(lambda e: seen.append((e.previous, e.current, e.reason)))
    try:
        assert await arbiter.acquire(Owner.TRANSLATION) is True
        assert await arbiter.acquire(Owner.INTERACTIVE) is False
        assert arbiter.current_owner is Owner.TRANSLATION
        assert await arbiter.acquire(Owner.INTERACTIVE, force_release=True) is True
        assert arbiter.current_owner is Owner.INTERACTIVE
        await arbiter.wait_idle()
        assert seen == [
            (Owner.NONE, Owner.TRANSLATION, "acquire"),
            (Owner.TRANSLATION, Owner.NONE, "force_release"),
            (Owner.NONE, Owner.INTERACTIVE, "acquire"),
        ]
        assert lifecycle.closes == 1
    finally:
        await arbiter.aclose()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_same_owner_reacquire_reuses_live_process():
    lifecycle = FakeLifecycle()
    arbiter = OwnershipArbiter(lifecycle)
    try:
        assert await arbiter.acquire(Owner.TRANSLATION)
        assert await arbiter.acquire(Owner.TRANSLATION)
        assert lifecycle.launches == 1
    finally:
        await arbiter.aclose()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_process_exit_clears_lease_and_publishes():
    lifecycle = FakeLifecycle()
    arbiter = OwnershipArbiter(lifecycle)
    queue = arbiter.events.subscribe()
    try:
        assert await arbiter.acquire(Owner.INTERACTIVE)
        first = await _next_event(queue)
        assert first.current is Owner.INTERACTIVE

        watcher = threading.Thread(target=lifecycle.handle.exit)
        watcher.start()
        watcher.join()
        event = await _next_event(queue)
        assert (event.previous, event.current, event.reason) == (
            Owner.INTERACTIVE,
            Owner.NONE,
            "process_closed",
        )
        assert arbiter.current_owner is Owner.NONE
        assert await arbiter.acquire(Owner.TRANSLATION) is True
    finally:
        arbiter.events.unsubscribe(queue)
        await arbiter.aclose()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_launch_failure_leaves_no_owner():
    lifecycle = FakeLifecycle()
    lifecycle.fail = True
    arbiter = OwnershipArbiter(lifecycle)
    try:
        assert await arbiter.acquire(Owner.TRANSLATION) is False
        assert arbiter.current_owner is Owner.NONE
        lifecycle.fail = False
        assert await arbiter.acquire(Owner.TRANSLATION) is True
    finally:
        await arbiter.aclose()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_release_only_by_owner():
    lifecycle = FakeLifecycle()
    arbiter = OwnershipArbiter(lifecycle)
    try:
        await arbiter.acquire(Owner.TRANSLATION)
        await arbiter.release(Owner.INTERACTIVE)
        assert arbiter.current_owner is Owner.TRANSLATION
        assert arbiter.is_owned_by(Owner.TRANSLATION)
        assert not arbiter.is_owned_by(Owner.INTERACTIVE)
        assert lifecycle.closes == 0
        await arbiter.release(Owner.TRANSLATION)
        assert arbiter.current_owner is Owner.NONE
        assert lifecycle.closes == 1
        assert not arbiter.is_owned_by(Owner.TRANSLATION)
        assert arbiter.is_available_to(Owner.INTERACTIVE)
    finally:
        await arbiter.aclose()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_reset_browser_tears_down_lease():
    lifecycle = FakeLifecycle()
    arbiter = OwnershipArbiter(lifecycle)
    try:
        await arbiter.acquire(Owner.INTERACTIVE)
        await arbiter.reset_browser(clear_user_data=True)
        assert arbiter.current_owner is Owner.NONE
        assert lifecycle.resets == [True]
    finally:
        await arbiter.aclose()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_none_is_not_a_requester():
    arbiter = OwnershipArbiter(FakeLifecycle())
    with pytest.raises(ValueError):
        await arbiter.acquire(Owner.NONE)
