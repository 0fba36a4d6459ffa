"""Navigation tracker: one ordered navigation stream per (tab, frame).

Host navigation events and the in-page messages posted by the page-side
runtime are merged here. For every frame the tracker keeps the current URL,
the current document id, and the lifecycle stages fired for that document.
A commit with a new document id clears the lifecycle set and resets the
frame's readiness barrier before anybody else sees the commit.

Subscribers (the frame managers) are called synchronously, in the order the
tracker received the events.
"""

import asyncio
import logging
import time
from typing import Any, Callable, ClassVar
from urllib.parse import urlsplit, urlunsplit

from bubus import BaseEvent
from pydantic import Field, PrivateAttr

from tabwright.browser.events import (
    FrameRemovedEvent,
    HistoryStateUpdatedEvent,
    NavigationCommittedEvent,
    NavigationCompletedEvent,
    NavigationDOMContentLoadedEvent,
    NavigationErrorEvent,
    PageMessageEvent,
    TabClosedEvent,
)
from tabwright.browser.readiness import ReadinessManager
from tabwright.browser.views import (
    LIFECYCLE_ORDER,
    FrameDetachedError,
    LifecycleEvent,
    NavigationAbortedError,
    NavigationEvent,
    TimeoutError,
    WaitUntil,
)
from tabwright.browser.watchdog import BaseWatchdog
from tabwright.config import CONFIG
from tabwright.core.progress import Progress
from tabwright.host.base import NAVIGATION_MESSAGE_TYPE

logger = logging.getLogger(__name__)

NavigationListener = Callable[[NavigationEvent], None]

SAME_DOCUMENT_KINDS = frozenset({'pushState', 'replaceState', 'popstate', 'hashchange'})


def normalize_url(url: str) -> str:
    """Canonical form used to compare navigation targets."""
    parts = urlsplit(url)
    if parts.scheme not in ('http', 'https'):
        return url
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path or '/', parts.query, parts.fragment))


def lifecycle_stage(wait_until: WaitUntil) -> LifecycleEvent:
    # networkidle needs a committed document whose runtime reported ready; load is not involved
    return 'commit' if wait_until == 'networkidle' else wait_until


def with_implied_stages(stage: LifecycleEvent) -> set[LifecycleEvent]:
    """``load`` implies ``domcontentloaded`` implies ``commit``."""
    return set(LIFECYCLE_ORDER[: LIFECYCLE_ORDER.index(stage) + 1])


class FrameNavigationState:
    def __init__(self, url: str = '', document_id: str | None = None):
        self.url = url
        self.document_id = document_id
        self.lifecycle: set[LifecycleEvent] = set()
        self.last_seen = time.monotonic()

    def __repr__(self) -> str:
        return f'<FrameNavigationState {self.url} doc={self.document_id} lifecycle={sorted(self.lifecycle)}>'


class NavigationWaiter:
    """A registered interest in the next matching navigation of one frame.

    Created by :meth:`NavigationTracker.expect_navigation` before the
    navigation is triggered, so a fast host cannot fire the events first.
    """

    def __init__(
        self,
        tracker: 'NavigationTracker',
        tab_id: int,
        frame_id: int,
        to_url: str | None,
        wait_until: WaitUntil,
        requires_new_document: bool = False,
    ):
        self.tracker = tracker
        self.tab_id = tab_id
        self.frame_id = frame_id
        self.to_url = normalize_url(to_url) if to_url else None
        self.wait_until = wait_until
        self.stage = lifecycle_stage(wait_until)
        self.requires_new_document = requires_new_document
        self.matched: NavigationEvent | None = None
        self._future: asyncio.Future[NavigationEvent] = asyncio.get_running_loop().create_future()

    def _matches_url(self, url: str) -> bool:
        return self.to_url is None or normalize_url(url) == self.to_url

    def _on_event(self, event: NavigationEvent) -> None:
        if self._future.done():
            return
        if event.kind == 'detached':
            self._future.set_exception(FrameDetachedError('Navigating frame was detached'))
            return
        if event.kind == 'aborted':
            if self.matched is None and self._matches_url(event.url):
                self._future.set_exception(
                    NavigationAbortedError(event.error or 'Navigation aborted', document_id=event.document_id)
                )
            return
        if event.kind == 'same_document' and self.requires_new_document:
            return
        if event.kind in ('committed', 'same_document') and self._matches_url(event.url):
            self.matched = event
        self._check()

    def _check(self) -> None:
        if self.matched is None or self._future.done():
            return
        state = self.tracker.get_state(self.tab_id, self.frame_id)
        if state is None or state.document_id != self.matched.document_id:
            return
        if self.stage in state.lifecycle:
            self._future.set_result(self.matched)

    async def _settled(self) -> NavigationEvent:
        event = await asyncio.shield(self._future)
        if self.wait_until == 'networkidle':
            # The barrier was reset by the commit, so this is the new document's readiness
            await self.tracker.readiness_manager.get_barrier(self.tab_id, self.frame_id).wait_for_ready()
        return event

    async def wait(self, timeout_ms: float | None = None, progress: Progress | None = None) -> NavigationEvent:
        try:
            if progress is not None:
                return await progress.race(self._settled())
            timeout_ms = CONFIG.NAVIGATION_TIMEOUT_MS if timeout_ms is None else timeout_ms
            try:
                return await asyncio.wait_for(self._settled(), timeout_ms / 1000)
            except asyncio.TimeoutError:
                raise TimeoutError(timeout_ms, f'Timeout {timeout_ms:g}ms exceeded while waiting for navigation')
        finally:
            self.cancel()

    def cancel(self) -> None:
        self.tracker._remove_waiter(self)
        if not self._future.done():
            self._future.cancel()


class NavigationTracker(BaseWatchdog):
    """Merges host navigation events and in-page signals per frame."""

    LISTENS_TO: ClassVar[list[type[BaseEvent[Any]]]] = [
        NavigationCommittedEvent,
        NavigationDOMContentLoadedEvent,
        NavigationCompletedEvent,
        HistoryStateUpdatedEvent,
        NavigationErrorEvent,
        PageMessageEvent,
        FrameRemovedEvent,
        TabClosedEvent,
    ]
    EMITS: ClassVar[list[type[BaseEvent[Any]]]] = []

    MAX_FRAME_STATES: ClassVar[int] = 500
    EVICT_COUNT: ClassVar[int] = 100

    readiness_manager: ReadinessManager = Field()

    _states: dict[tuple[int, int], FrameNavigationState] = PrivateAttr(default_factory=dict)
    _listeners: dict[int, list[NavigationListener]] = PrivateAttr(default_factory=dict)
    _waiters: dict[tuple[int, int], list[NavigationWaiter]] = PrivateAttr(default_factory=dict)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def frame_state_count(self) -> int:
        return len(self._states)

    def get_state(self, tab_id: int, frame_id: int) -> FrameNavigationState | None:
        return self._states.get((tab_id, frame_id))

    def lifecycle(self, tab_id: int, frame_id: int) -> set[LifecycleEvent]:
        state = self._states.get((tab_id, frame_id))
        return set(state.lifecycle) if state is not None else set()

    def _touch_state(self, tab_id: int, frame_id: int) -> FrameNavigationState:
        key = (tab_id, frame_id)
        state = self._states.pop(key, None) or FrameNavigationState()
        state.last_seen = time.monotonic()
        # Re-inserting keeps the dict ordered from least to most recently seen
        self._states[key] = state
        if len(self._states) > self.MAX_FRAME_STATES:
            for old_key in list(self._states)[: self.EVICT_COUNT]:
                del self._states[old_key]
            self.logger.debug(f'[NavigationTracker] Evicted {self.EVICT_COUNT} frame states over the cap')
        return state

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    def subscribe(self, tab_id: int, listener: NavigationListener) -> Callable[[], None]:
        """Receive every navigation event of a tab. Returns an unsubscribe callable."""
        self._listeners.setdefault(tab_id, []).append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(tab_id)
            if listeners and listener in listeners:
                listeners.remove(listener)
                if not listeners:
                    del self._listeners[tab_id]

        return unsubscribe

    def _publish(self, event: NavigationEvent) -> None:
        for listener in list(self._listeners.get(event.tab_id, [])):
            try:
                listener(event)
            except Exception as e:
                self.logger.error(f'[NavigationTracker] Listener failed on {event.kind} of frame {event.frame_id}: {e}')
        for waiter in list(self._waiters.get((event.tab_id, event.frame_id), [])):
            waiter._on_event(event)

    # ------------------------------------------------------------------
    # Host events
    # ------------------------------------------------------------------

    async def on_NavigationCommittedEvent(self, event: NavigationCommittedEvent) -> None:
        state = self._touch_state(event.tab_id, event.frame_id)
        new_document = event.document_id is None or event.document_id != state.document_id
        state.url = event.url
        if new_document:
            state.document_id = event.document_id
            state.lifecycle.clear()
            self.readiness_manager.reset_barrier(event.tab_id, event.frame_id)
        state.lifecycle.add('commit')
        self.logger.debug(
            f'[NavigationTracker] Commit in tab {event.tab_id} frame {event.frame_id}: {event.url} '
            f'(doc={event.document_id}, new_document={new_document})'
        )
        self._publish(
            NavigationEvent(
                kind='committed' if new_document else 'same_document',
                tab_id=event.tab_id,
                frame_id=event.frame_id,
                parent_frame_id=event.parent_frame_id,
                url=event.url,
                document_id=state.document_id,
                name=event.frame_name,
                new_document=new_document,
            )
        )

    async def on_NavigationDOMContentLoadedEvent(self, event: NavigationDOMContentLoadedEvent) -> None:
        self._on_lifecycle(event.tab_id, event.frame_id, event.url, event.document_id, 'domcontentloaded')

    async def on_NavigationCompletedEvent(self, event: NavigationCompletedEvent) -> None:
        self._on_lifecycle(event.tab_id, event.frame_id, event.url, event.document_id, 'load')

    def _on_lifecycle(
        self, tab_id: int, frame_id: int, url: str, document_id: str | None, stage: LifecycleEvent
    ) -> None:
        state = self.get_state(tab_id, frame_id)
        if state is None:
            return
        if document_id is not None and document_id != state.document_id:
            self.logger.debug(f'[NavigationTracker] Ignoring {stage} of stale document {document_id} in frame {frame_id}')
            return
        state = self._touch_state(tab_id, frame_id)
        state.lifecycle |= with_implied_stages(stage)
        self._publish(
            NavigationEvent(kind=stage, tab_id=tab_id, frame_id=frame_id, url=url, document_id=state.document_id)
        )

    async def on_HistoryStateUpdatedEvent(self, event: HistoryStateUpdatedEvent) -> None:
        self._on_same_document(event.tab_id, event.frame_id, event.url)

    async def on_PageMessageEvent(self, event: PageMessageEvent) -> None:
        if event.type != NAVIGATION_MESSAGE_TYPE:
            return
        kind = event.detail.get('event')
        if kind == 'ready':
            state = self.get_state(event.tab_id, event.frame_id)
            document_id = event.detail.get('document_id')
            if state is not None and document_id is not None and document_id != state.document_id:
                self.logger.debug(f'[NavigationTracker] Ignoring ready of stale document {document_id}')
                return
            self.readiness_manager.get_barrier(event.tab_id, event.frame_id).mark_ready()
        elif kind in SAME_DOCUMENT_KINDS and event.detail.get('url'):
            self._on_same_document(event.tab_id, event.frame_id, str(event.detail['url']))

    def _on_same_document(self, tab_id: int, frame_id: int, url: str) -> None:
        state = self.get_state(tab_id, frame_id)
        if state is None or state.url == url:
            # The host and the page both report history changes
            return
        state = self._touch_state(tab_id, frame_id)
        state.url = url
        self._publish(
            NavigationEvent(kind='same_document', tab_id=tab_id, frame_id=frame_id, url=url, document_id=state.document_id)
        )

    async def on_NavigationErrorEvent(self, event: NavigationErrorEvent) -> None:
        self.logger.debug(f'[NavigationTracker] Navigation of frame {event.frame_id} to {event.url} failed: {event.error}')
        self._publish(
            NavigationEvent(
                kind='aborted',
                tab_id=event.tab_id,
                frame_id=event.frame_id,
                url=event.url,
                document_id=event.document_id,
                error=event.error,
            )
        )

    async def on_FrameRemovedEvent(self, event: FrameRemovedEvent) -> None:
        self._detach(event.tab_id, event.frame_id)

    async def on_TabClosedEvent(self, event: TabClosedEvent) -> None:
        frame_ids = sorted({frame_id for tab_id, frame_id in [*self._states, *self._waiters] if tab_id == event.tab_id})
        for frame_id in reversed(frame_ids):
            self._detach(event.tab_id, frame_id)
        self._listeners.pop(event.tab_id, None)

    def _detach(self, tab_id: int, frame_id: int) -> None:
        self._states.pop((tab_id, frame_id), None)
        self._publish(NavigationEvent(kind='detached', tab_id=tab_id, frame_id=frame_id))

    # ------------------------------------------------------------------
    # Waiting
    # ------------------------------------------------------------------

    def expect_navigation(
        self,
        tab_id: int,
        frame_id: int = 0,
        to_url: str | None = None,
        wait_until: WaitUntil = 'load',
        requires_new_document: bool = False,
    ) -> NavigationWaiter:
        """Register for the next matching navigation. Must be called before triggering it."""
        waiter = NavigationWaiter(self, tab_id, frame_id, to_url, wait_until, requires_new_document)
        self._waiters.setdefault((tab_id, frame_id), []).append(waiter)
        return waiter

    def _remove_waiter(self, waiter: NavigationWaiter) -> None:
        key = (waiter.tab_id, waiter.frame_id)
        waiters = self._waiters.get(key)
        if waiters and waiter in waiters:
            waiters.remove(waiter)
            if not waiters:
                del self._waiters[key]

    async def wait_for_navigation(
        self,
        tab_id: int,
        frame_id: int = 0,
        to_url: str | None = None,
        wait_until: WaitUntil = 'load',
        timeout_ms: float | None = None,
        progress: Progress | None = None,
    ) -> NavigationEvent:
        """Wait until a navigation matching ``to_url`` reaches ``wait_until``.

        Returns immediately when the frame is already at ``to_url`` with the
        requested stage fired for its current document.
        """
        state = self.get_state(tab_id, frame_id)
        stage = lifecycle_stage(wait_until)
        if (
            to_url is not None
            and state is not None
            and normalize_url(state.url) == normalize_url(to_url)
            and stage in state.lifecycle
            and (wait_until != 'networkidle' or self.readiness_manager.get_barrier(tab_id, frame_id).is_ready())
        ):
            return NavigationEvent(
                kind='committed', tab_id=tab_id, frame_id=frame_id, url=state.url, document_id=state.document_id
            )
        waiter = self.expect_navigation(tab_id, frame_id, to_url, wait_until)
        return await waiter.wait(timeout_ms=timeout_ms, progress=progress)
