"""Readiness barriers: per-frame gates for the page-side runtime.

A barrier opens when the runtime of the frame's current document posts its
``ready`` message and closes again on every new-document commit. Waiting on
a closed barrier suspends until the next readiness signal, the progress
deadline, or a reset (which rejects the waiter so the caller re-resolves).
"""

import asyncio
import logging
import time
from typing import Any, ClassVar

from bubus import BaseEvent
from pydantic import PrivateAttr

from tabwright.browser.events import FrameRemovedEvent, ReadinessBarrierResetEvent, TabClosedEvent
from tabwright.browser.views import ContextDestroyedError, FrameDetachedError
from tabwright.browser.watchdog import BaseWatchdog
from tabwright.core.progress import Progress

logger = logging.getLogger(__name__)


class ReadinessBarrier:
    """NOT_READY -> READY on the readiness signal, READY -> NOT_READY on a new document."""

    def __init__(self, tab_id: int, frame_id: int):
        self.tab_id = tab_id
        self.frame_id = frame_id
        self.last_seen = time.monotonic()
        self.reset_count = 0
        self._ready = False
        self._disposed = False
        self._waiters: set[asyncio.Future[None]] = set()

    def __repr__(self) -> str:
        state = 'disposed' if self._disposed else 'ready' if self._ready else 'not-ready'
        return f'<ReadinessBarrier tab={self.tab_id} frame={self.frame_id} {state} waiters={len(self._waiters)}>'

    @property
    def has_waiters(self) -> bool:
        return bool(self._waiters)

    @property
    def disposed(self) -> bool:
        return self._disposed

    def touch(self) -> None:
        self.last_seen = time.monotonic()

    def is_ready(self) -> bool:
        return self._ready

    def mark_ready(self) -> None:
        if self._disposed:
            return
        self.touch()
        self._ready = True
        waiters, self._waiters = self._waiters, set()
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)

    def reset(self) -> None:
        self.touch()
        self._ready = False
        self.reset_count += 1
        self._reject_waiters(ContextDestroyedError('Barrier reset for new navigation'))

    def dispose(self) -> None:
        self._disposed = True
        self._ready = False
        self._reject_waiters(FrameDetachedError('Frame was detached while waiting for page readiness'))

    async def wait_for_ready(self, progress: Progress | None = None) -> None:
        if self._disposed:
            raise FrameDetachedError('Frame was detached while waiting for page readiness')
        if self._ready:
            return
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.add(waiter)
        try:
            if progress is not None:
                await progress.race(waiter)
            else:
                await waiter
        finally:
            self._waiters.discard(waiter)

    def _reject_waiters(self, error: Exception) -> None:
        waiters, self._waiters = self._waiters, set()
        for waiter in waiters:
            if not waiter.done():
                waiter.set_exception(error)


class ReadinessManager(BaseWatchdog):
    """Owns every readiness barrier of a session.

    A periodic sweep drops barriers not seen within ``STALE_AFTER_S`` and the
    total is capped at ``MAX_BARRIERS`` with oldest-first eviction.
    """

    LISTENS_TO: ClassVar[list[type[BaseEvent[Any]]]] = [TabClosedEvent, FrameRemovedEvent]
    EMITS: ClassVar[list[type[BaseEvent[Any]]]] = [ReadinessBarrierResetEvent]

    SWEEP_INTERVAL_S: ClassVar[float] = 15.0
    STALE_AFTER_S: ClassVar[float] = 45.0
    MAX_BARRIERS: ClassVar[int] = 200
    EVICTION_SLACK: ClassVar[int] = 20

    _barriers: dict[tuple[int, int], ReadinessBarrier] = PrivateAttr(default_factory=dict)
    _sweep_task: asyncio.Task[None] | None = PrivateAttr(default=None)

    @property
    def barrier_count(self) -> int:
        return len(self._barriers)

    def get_barrier(self, tab_id: int, frame_id: int) -> ReadinessBarrier:
        key = (tab_id, frame_id)
        barrier = self._barriers.get(key)
        if barrier is None:
            barrier = self._barriers[key] = ReadinessBarrier(tab_id, frame_id)
            self._enforce_cap(keep=key)
        else:
            barrier.touch()
        return barrier

    def peek_barrier(self, tab_id: int, frame_id: int) -> ReadinessBarrier | None:
        return self._barriers.get((tab_id, frame_id))

    def reset_barrier(self, tab_id: int, frame_id: int) -> None:
        """Close the frame's barrier. Runs synchronously inside the commit handler."""
        self.get_barrier(tab_id, frame_id).reset()
        self.logger.debug(f'[ReadinessManager] Barrier reset for tab {tab_id} frame {frame_id}')
        self.event_bus.dispatch(ReadinessBarrierResetEvent(tab_id=tab_id, frame_id=frame_id))

    def remove_barrier(self, tab_id: int, frame_id: int) -> None:
        barrier = self._barriers.pop((tab_id, frame_id), None)
        if barrier is not None:
            barrier.dispose()

    def remove_tab_barriers(self, tab_id: int) -> None:
        for key in [key for key in self._barriers if key[0] == tab_id]:
            self._barriers.pop(key).dispose()

    async def on_TabClosedEvent(self, event: TabClosedEvent) -> None:
        self.remove_tab_barriers(event.tab_id)

    async def on_FrameRemovedEvent(self, event: FrameRemovedEvent) -> None:
        self.remove_barrier(event.tab_id, event.frame_id)

    def sweep(self, now: float | None = None) -> int:
        """Dispose stale barriers that nobody waits on. Returns how many were dropped."""
        now = time.monotonic() if now is None else now
        stale = [
            key
            for key, barrier in self._barriers.items()
            if now - barrier.last_seen > self.STALE_AFTER_S and not barrier.has_waiters
        ]
        for key in stale:
            self._barriers.pop(key).dispose()
        if stale:
            self.logger.debug(f'[ReadinessManager] Swept {len(stale)} stale barriers')
        return len(stale)

    def _enforce_cap(self, keep: tuple[int, int]) -> None:
        excess = len(self._barriers) - self.MAX_BARRIERS
        if excess <= 0:
            return
        candidates = sorted((key for key in self._barriers if key != keep), key=lambda key: self._barriers[key].last_seen)
        evicted = candidates[: excess + self.EVICTION_SLACK]
        for key in evicted:
            self._barriers.pop(key).dispose()
        self.logger.debug(f'[ReadinessManager] Evicted {len(evicted)} barriers over the cap of {self.MAX_BARRIERS}')

    def start(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.SWEEP_INTERVAL_S)
            self.sweep()

    async def dispose(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        for barrier in self._barriers.values():
            barrier.dispose()
        self._barriers.clear()
