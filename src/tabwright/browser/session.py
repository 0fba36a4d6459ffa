"""Browser session: owner of the event bus and of every page.

The session connects a ``BrowserHost`` to one ``bubus`` event bus, constructs
the navigation tracker, readiness manager and downloads watchdog for that
bus, and keeps one ``Page`` per open tab.
"""

import logging
from typing import Any

from bubus import EventBus
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from tabwright.browser.downloads import DownloadsWatchdog
from tabwright.browser.events import (
    BrowserStartEvent,
    BrowserStopEvent,
    BrowserStoppedEvent,
    TabClosedEvent,
    TabCreatedEvent,
)
from tabwright.browser.navigation import NavigationTracker
from tabwright.browser.page import Page
from tabwright.browser.readiness import ReadinessManager
from tabwright.browser.views import TabwrightError
from tabwright.host.base import BrowserHost
from tabwright.screenshots.service import CaptureRateLimiter


class BrowserSession(BaseModel):
    """Control-plane session over one browser host.

    Every host event stream is process-wide, so the services that consume
    them (navigation tracker, readiness manager, downloads watchdog) exist
    once per session and are constructed explicitly on start.

    Example:
        >>> host = MemoryHost()
        >>> host.route('https://example.com/', '<a href="/next">Next</a>')
        >>> async with BrowserSession(host=host) as session:
        ...     page = await session.new_page('https://example.com/')
        ...     await page.click('text=Next')
    """

    model_config = ConfigDict(
        arbitrary_types_allowed=True,
        validate_assignment=True,
        extra='forbid',
        revalidate_instances='never',
    )

    host: BrowserHost

    # Main shared event bus for host events and page events
    event_bus: EventBus = Field(default_factory=EventBus)

    _readiness_manager: ReadinessManager | None = PrivateAttr(default=None)
    _navigation_tracker: NavigationTracker | None = PrivateAttr(default=None)
    _downloads_watchdog: DownloadsWatchdog | None = PrivateAttr(default=None)
    _capture_limiter: CaptureRateLimiter = PrivateAttr(default_factory=CaptureRateLimiter)
    _pages: dict[int, Page] = PrivateAttr(default_factory=dict)
    _watchdogs_attached: bool = PrivateAttr(default=False)
    _logger: logging.Logger | None = PrivateAttr(default=None)

    def model_post_init(self, __context: Any) -> None:
        """Connect the host and register the session's own event handlers."""
        self._register_handlers()

    def _register_handlers(self) -> None:
        self.host.connect(self.event_bus)
        self.event_bus.on(BrowserStartEvent, self.on_BrowserStartEvent)
        self.event_bus.on(BrowserStopEvent, self.on_BrowserStopEvent)
        self.event_bus.on(TabCreatedEvent, self.on_TabCreatedEvent)
        self.event_bus.on(TabClosedEvent, self.on_TabClosedEvent)

    @property
    def logger(self) -> logging.Logger:
        if self._logger is None:
            self._logger = logging.getLogger('tabwright.browser_session')
        return self._logger

    async def __aenter__(self) -> 'BrowserSession':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_value, traceback) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------

    @property
    def readiness_manager(self) -> ReadinessManager:
        if self._readiness_manager is None:
            raise TabwrightError('Browser session is not started')
        return self._readiness_manager

    @property
    def navigation_tracker(self) -> NavigationTracker:
        if self._navigation_tracker is None:
            raise TabwrightError('Browser session is not started')
        return self._navigation_tracker

    @property
    def downloads(self) -> DownloadsWatchdog:
        if self._downloads_watchdog is None:
            raise TabwrightError('Browser session is not started')
        return self._downloads_watchdog

    @property
    def capture_limiter(self) -> CaptureRateLimiter:
        """Shared by every page: the host's capture ceiling is global."""
        return self._capture_limiter

    @property
    def is_started(self) -> bool:
        return self._watchdogs_attached

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Attach the session services and start the barrier sweep.

        Raises:
            TabwrightError: If a start handler fails.
        """
        start_event = self.event_bus.dispatch(BrowserStartEvent())
        await start_event
        await start_event.event_result(raise_if_any=True, raise_if_none=False)

    async def stop(self) -> None:
        """Tear down every page and stop the event bus.

        Host tabs stay open; only the controller side is released. A stopped
        session can be started again on a fresh bus.
        """
        await self.event_bus.dispatch(BrowserStopEvent())
        await self.event_bus.stop(clear=True, timeout=5)
        self._reset()
        self.event_bus = EventBus()
        self._register_handlers()

    def _reset(self) -> None:
        self._pages.clear()
        self._readiness_manager = None
        self._navigation_tracker = None
        self._downloads_watchdog = None
        self._watchdogs_attached = False

    def attach_all_watchdogs(self) -> None:
        """Construct the session services and subscribe them to the bus.

        The readiness manager goes first so a commit handled by the tracker
        always finds it in place.
        """
        if self._watchdogs_attached:
            self.logger.debug('Watchdogs already attached, skipping duplicate attachment')
            return

        self._readiness_manager = ReadinessManager(event_bus=self.event_bus)
        self._readiness_manager.attach_to_session()

        self._navigation_tracker = NavigationTracker(event_bus=self.event_bus, readiness_manager=self._readiness_manager)
        self._navigation_tracker.attach_to_session()

        self._downloads_watchdog = DownloadsWatchdog(event_bus=self.event_bus)
        self._downloads_watchdog.attach_to_session()

        self._watchdogs_attached = True

    async def on_BrowserStartEvent(self, event: BrowserStartEvent) -> None:
        self.attach_all_watchdogs()
        self.readiness_manager.start()
        self.logger.debug(f'Session started on {type(self.host).__name__}')

    async def on_BrowserStopEvent(self, event: BrowserStopEvent) -> None:
        for page in list(self._pages.values()):
            page._on_closed()
        self._pages.clear()
        if self._readiness_manager is not None:
            await self._readiness_manager.dispose()
        await self.event_bus.dispatch(BrowserStoppedEvent(reason='Session stopped'))
        self.logger.debug('Session stopped')

    # ------------------------------------------------------------------
    # Pages
    # ------------------------------------------------------------------

    async def on_TabCreatedEvent(self, event: TabCreatedEvent) -> None:
        if not self._watchdogs_attached:
            self.logger.debug(f'Ignoring tab {event.tab_id} created before the session started')
            return
        if event.tab_id in self._pages:
            return
        page = Page(self, event.tab_id)
        self._pages[event.tab_id] = page
        self.downloads.register_page(page)
        self.logger.debug(f'Page created for tab {event.tab_id}')

    async def on_TabClosedEvent(self, event: TabClosedEvent) -> None:
        page = self._pages.pop(event.tab_id, None)
        if page is not None:
            page._on_closed()
            self.logger.debug(f'Page for tab {event.tab_id} closed')

    async def new_page(self, url: str = 'about:blank') -> Page:
        """Open a tab on the host and return its page once ``url`` has committed."""
        if not self._watchdogs_attached:
            raise TabwrightError('Browser session is not started')
        tab_id = await self.host.create_tab(url)
        page = self._pages.get(tab_id)
        if page is None:
            raise TabwrightError(f'Host did not report tab {tab_id}')
        return page

    @property
    def pages(self) -> list[Page]:
        return [page for page in self._pages.values() if not page.is_closed()]

    def get_page(self, tab_id: int) -> Page | None:
        page = self._pages.get(tab_id)
        if page is None or page.is_closed():
            return None
        return page
