from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Generic, Hashable, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_DELAY_S = 0.5


class DebouncedRequest(Generic[T]):
    """
    Handle for a debounced call.

    The call starts once its delay elapses without a newer submission on the same
    channel. `wait()` resolves to the call's result, or to None when the request
    was superseded or cancelled before it started. A started call is never
    cancelled.
    """

    def __init__(
        self,
        channel: Hashable,
        loop: asyncio.AbstractEventLoop,
        on_cancel: Callable[["DebouncedRequest[T]"], None] | None = None,
    ):
        self.channel = channel
        self._on_cancel = on_cancel
        self.superseded = False
        self._future: asyncio.Future = loop.create_future()
        self._timer: asyncio.TimerHandle | None = None
        self._task: asyncio.Task | None = None

    @property
    def started(self) -> bool:
        return self._task is not None

    def done(self) -> bool:
        return self._future.done()

    def cancel(self) -> bool:
        """
        Drop the request if it has not started yet. Returns True when dropped.
        """
        if self._task is not None or self._future.done():
            return False
        if self._timer is not None:
            self._timer.cancel()
        self.superseded = True
        self._future.set_result(None)
        if self._on_cancel is not None:
            self._on_cancel(self)
        return True

    async def wait(self) -> T | None:
        return await asyncio.shield(self._future)

    def _settle(self, task: asyncio.Task) -> None:
        if self._future.done():
            return
        if task.cancelled():
            self._future.set_result(None)
        elif task.exception() is not None:
            self._future.set_exception(task.exception())
        else:
            self._future.set_result(task.result())


class Debouncer:
    """
    Per-channel trailing-edge debounce: only the last submission within `delay_s` runs.
    """

    def __init__(self, delay_s: float = DEFAULT_DELAY_S):
        self.delay_s = max(0.0, float(delay_s))
        self._pending: dict[Hashable, DebouncedRequest[Any]] = {}

    def pending_count(self) -> int:
        return len(self._pending)

    def submit(self, channel: Hashable, factory: Callable[[], Awaitable[T]]) -> DebouncedRequest[T]:
        loop = asyncio.get_running_loop()
        prev = self._pending.get(channel)
        if prev is not None and prev.cancel():
            log.debug("debounce: superseded pending request on channel %r", channel)

        req: DebouncedRequest[T] = DebouncedRequest(channel, loop, self._forget)
        self._pending[channel] = req

        def _start() -> None:
            self._forget(req)
            if req.done():
                return
            req._task = loop.create_task(_run(factory))
            req._task.add_done_callback(req._settle)

        req._timer = loop.call_later(self.delay_s, _start)
        return req

    def _forget(self, req: DebouncedRequest[Any]) -> None:
        if self._pending.get(req.channel) is req:
            del self._pending[req.channel]

    def cancel_all(self) -> int:
        n = 0
        for req in list(self._pending.values()):
            if req.cancel():
                n += 1
        self._pending.clear()
        return n


async def _run(factory: Callable[[], Awaitable[T]]) -> T:
    return await factory()
