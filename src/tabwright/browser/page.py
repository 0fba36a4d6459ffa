"""Page: the controller-side view of one tab.

A page owns the frame tree of its tab (through the frame manager), the
screenshot pipeline and the download correlation for the tab. Most
document-level calls delegate to the main frame.

Example:
    >>> page = await session.new_page('https://example.com/')
    >>> await page.click('text=More information')
    >>> await page.wait_for_load_state('load')
    >>> print(await page.snapshot_for_ai())
"""

import asyncio
import logging
import re
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import TYPE_CHECKING, Any, AsyncIterator, Pattern
from urllib.parse import urlsplit

from bubus import EventBus

from tabwright.browser.downloads import Download
from tabwright.browser.element import ElementHandle, FilePayload
from tabwright.browser.events import ExecutionContextDestroyedEvent, PageClosedEvent
from tabwright.browser.frame import ALLOWED_NAVIGATION_SCHEMES, Frame, NavigationInfo, URLMatcher, _url_matcher
from tabwright.browser.frame_manager import FrameManager
from tabwright.browser.views import (
    NavigationEvent,
    ScreenshotOptions,
    SelectorState,
    TabwrightError,
    TimeoutError,
    WaitUntil,
    World,
)
from tabwright.config import CONFIG
from tabwright.core.progress import Progress, execute_with_progress
from tabwright.injected.operations import OperationName
from tabwright.screenshots.service import Screenshotter

if TYPE_CHECKING:
    from tabwright.browser.downloads import DownloadsWatchdog
    from tabwright.browser.locator import FrameLocator, Locator
    from tabwright.browser.navigation import NavigationTracker
    from tabwright.browser.readiness import ReadinessManager
    from tabwright.browser.session import BrowserSession
    from tabwright.host.base import BrowserHost

logger = logging.getLogger(__name__)

_SNAPSHOT_REF = re.compile(r'\[ref=([^\]]+)\]')


class DownloadInfo:
    """Filled in when the ``expect_download`` block exits."""

    def __init__(self) -> None:
        self._download: Download | None = None

    @property
    def value(self) -> Download:
        if self._download is None:
            raise TabwrightError('Download is not available until the expect_download block has finished')
        return self._download


class Page:
    def __init__(self, session: 'BrowserSession', tab_id: int):
        self._session = session
        self._tab_id = tab_id
        self._closed = False
        self._visited_origins: set[str] = set()
        # Child frame ids in the order the last snapshot_for_ai met them; ``f<n>`` refs index into it
        self.last_snapshot_frame_ids: list[int] = []
        self.screenshotter = Screenshotter(self, session.capture_limiter)
        self.frame_manager = FrameManager(self)

    def __repr__(self) -> str:
        return f'<Page tab={self._tab_id} url={self.url!r}>'

    # ------------------------------------------------------------------
    # Session services
    # ------------------------------------------------------------------

    @property
    def session(self) -> 'BrowserSession':
        return self._session

    @property
    def host(self) -> 'BrowserHost':
        return self._session.host

    @property
    def event_bus(self) -> EventBus:
        return self._session.event_bus

    @property
    def navigation_tracker(self) -> 'NavigationTracker':
        return self._session.navigation_tracker

    @property
    def readiness_manager(self) -> 'ReadinessManager':
        return self._session.readiness_manager

    @property
    def downloads(self) -> 'DownloadsWatchdog':
        return self._session.downloads

    # ------------------------------------------------------------------
    # Frames
    # ------------------------------------------------------------------

    @property
    def tab_id(self) -> int:
        return self._tab_id

    @property
    def main_frame(self) -> Frame:
        return self.frame_manager.main_frame

    @property
    def url(self) -> str:
        return self.main_frame.url

    @property
    def frames(self) -> list[Frame]:
        return self.frame_manager.frames()

    def frame(self, name: str | None = None, url: URLMatcher | None = None) -> Frame | None:
        """First frame matching ``name`` and/or ``url``."""
        if name is None and url is None:
            raise TabwrightError('Either name or url matcher should be specified')
        matches_url = _url_matcher(url) if url is not None else None
        for frame in self.frames:
            if name is not None and frame.name != name:
                continue
            if matches_url is not None and not matches_url(frame.url):
                continue
            return frame
        return None

    def is_closed(self) -> bool:
        return self._closed

    @property
    def visited_origins(self) -> set[str]:
        """Origins the main frame has committed to, http(s) only."""
        return set(self._visited_origins)

    def _record_visit(self, url: str) -> None:
        parts = urlsplit(url)
        if parts.scheme in ALLOWED_NAVIGATION_SCHEMES and parts.netloc:
            self._visited_origins.add(f'{parts.scheme}://{parts.netloc}')

    def _on_context_destroyed(self, frame: Frame, reason: str) -> None:
        logger.debug(f'Execution context of frame {frame.frame_id} in tab {self._tab_id} destroyed: {reason}')
        self.event_bus.dispatch(ExecutionContextDestroyedEvent(tab_id=self._tab_id, frame_id=frame.frame_id, reason=reason))

    def _on_closed(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.frame_manager.dispose()
        self.readiness_manager.remove_tab_barriers(self._tab_id)
        self.downloads.unregister_page(self)
        self.event_bus.dispatch(PageClosedEvent(tab_id=self._tab_id))

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    async def goto(self, url: str, wait_until: WaitUntil = 'commit', timeout: float | None = None) -> NavigationEvent | None:
        return await self.main_frame.goto(url, wait_until=wait_until, timeout=timeout)

    async def reload(self, wait_until: WaitUntil = 'load', timeout: float | None = None) -> NavigationEvent | None:
        async def action(progress: Progress) -> NavigationEvent | None:
            progress.log(f'reloading, waiting until "{wait_until}"')
            return await self.main_frame._wait_for_navigation(
                progress, lambda: self.host.reload(self._tab_id), requires_new_document=True, wait_until=wait_until
            )

        return await execute_with_progress(action, timeout, api_name='page.reload')

    async def go_back(self, wait_until: WaitUntil = 'load', timeout: float | None = None) -> NavigationEvent | None:
        """Go one history entry back. Returns None when there is nothing to go back to."""

        async def action(progress: Progress) -> NavigationEvent | None:
            return await self.main_frame._wait_for_navigation(
                progress, lambda: self.host.go_back(self._tab_id), requires_new_document=False, wait_until=wait_until
            )

        return await execute_with_progress(action, timeout, api_name='page.goBack')

    async def go_forward(self, wait_until: WaitUntil = 'load', timeout: float | None = None) -> NavigationEvent | None:
        async def action(progress: Progress) -> NavigationEvent | None:
            return await self.main_frame._wait_for_navigation(
                progress, lambda: self.host.go_forward(self._tab_id), requires_new_document=False, wait_until=wait_until
            )

        return await execute_with_progress(action, timeout, api_name='page.goForward')

    async def wait_for_load_state(self, state: WaitUntil = 'load', timeout: float | None = None) -> None:
        await self.main_frame.wait_for_load_state(state, timeout=timeout)

    async def wait_for_url(self, url: URLMatcher, wait_until: WaitUntil = 'load', timeout: float | None = None) -> None:
        await self.main_frame.wait_for_url(url, wait_until=wait_until, timeout=timeout)

    def expect_navigation(
        self, url: str | None = None, wait_until: WaitUntil = 'load', timeout: float | None = None
    ) -> AbstractAsyncContextManager[NavigationInfo]:
        return self.main_frame.expect_navigation(url, wait_until=wait_until, timeout=timeout)

    async def bring_to_front(self) -> None:
        await self.host.activate_tab(self._tab_id)

    async def close(self) -> None:
        if self._closed:
            return
        await self.host.close_tab(self._tab_id)
        # Hosts that drop the tab without reporting it still leave the page closed
        self._on_closed()

    # ------------------------------------------------------------------
    # Document
    # ------------------------------------------------------------------

    async def title(self) -> str:
        return await self.main_frame.title()

    async def content(self) -> str:
        return await self.main_frame.content()

    async def evaluate(self, function_name: OperationName, *args: Any, world: World = 'MAIN', timeout: float | None = None) -> Any:
        return await self.main_frame.evaluate(function_name, *args, world=world, timeout=timeout)

    async def evaluate_handle(self, function_name: OperationName, *args: Any, world: World = 'MAIN') -> ElementHandle | None:
        return await self.main_frame.evaluate_handle(function_name, *args, world=world)

    async def query_selector(self, selector: str, strict: bool = False) -> ElementHandle | None:
        return await self.main_frame.query_selector(selector, strict=strict)

    async def query_selector_all(self, selector: str) -> list[ElementHandle]:
        return await self.main_frame.query_selector_all(selector)

    async def wait_for_selector(
        self, selector: str, state: SelectorState = 'visible', timeout: float | None = None, strict: bool = False
    ) -> ElementHandle | None:
        return await self.main_frame.wait_for_selector(selector, state=state, timeout=timeout, strict=strict)

    # ------------------------------------------------------------------
    # Selector-based actions, getters and states
    # ------------------------------------------------------------------

    async def click(
        self, selector: str, force: bool = False, modifiers: list[str] | None = None, timeout: float | None = None
    ) -> None:
        await self.main_frame.click(selector, force=force, modifiers=modifiers, timeout=timeout)

    async def tap(self, selector: str, force: bool = False, timeout: float | None = None) -> None:
        await self.main_frame.tap(selector, force=force, timeout=timeout)

    async def fill(self, selector: str, value: str, force: bool = False, timeout: float | None = None) -> None:
        await self.main_frame.fill(selector, value, force=force, timeout=timeout)

    async def check(self, selector: str, force: bool = False, timeout: float | None = None) -> None:
        await self.main_frame.check(selector, force=force, timeout=timeout)

    async def uncheck(self, selector: str, force: bool = False, timeout: float | None = None) -> None:
        await self.main_frame.uncheck(selector, force=force, timeout=timeout)

    async def set_checked(self, selector: str, checked: bool, force: bool = False, timeout: float | None = None) -> None:
        await self.main_frame.set_checked(selector, checked, force=force, timeout=timeout)

    async def hover(self, selector: str, force: bool = False, timeout: float | None = None) -> None:
        await self.main_frame.hover(selector, force=force, timeout=timeout)

    async def focus(self, selector: str, timeout: float | None = None) -> None:
        await self.main_frame.focus(selector, timeout=timeout)

    async def dispatch_event(
        self, selector: str, event_type: str, event_init: dict[str, Any] | None = None, timeout: float | None = None
    ) -> None:
        await self.main_frame.dispatch_event(selector, event_type, event_init, timeout=timeout)

    async def select_option(
        self, selector: str, values: str | list[str], force: bool = False, timeout: float | None = None
    ) -> list[str]:
        return await self.main_frame.select_option(selector, values, force=force, timeout=timeout)

    async def set_input_files(
        self, selector: str, files: str | FilePayload | list[Any], timeout: float | None = None
    ) -> None:
        await self.main_frame.set_input_files(selector, files, timeout=timeout)

    async def text_content(self, selector: str, timeout: float | None = None) -> str | None:
        return await self.main_frame.text_content(selector, timeout=timeout)

    async def inner_text(self, selector: str, timeout: float | None = None) -> str:
        return await self.main_frame.inner_text(selector, timeout=timeout)

    async def inner_html(self, selector: str, timeout: float | None = None) -> str:
        return await self.main_frame.inner_html(selector, timeout=timeout)

    async def get_attribute(self, selector: str, name: str, timeout: float | None = None) -> str | None:
        return await self.main_frame.get_attribute(selector, name, timeout=timeout)

    async def input_value(self, selector: str, timeout: float | None = None) -> str:
        return await self.main_frame.input_value(selector, timeout=timeout)

    async def is_visible(self, selector: str) -> bool:
        return await self.main_frame.is_visible(selector)

    async def is_hidden(self, selector: str) -> bool:
        return await self.main_frame.is_hidden(selector)

    async def is_enabled(self, selector: str, timeout: float | None = None) -> bool:
        return await self.main_frame.is_enabled(selector, timeout=timeout)

    async def is_disabled(self, selector: str, timeout: float | None = None) -> bool:
        return await self.main_frame.is_disabled(selector, timeout=timeout)

    async def is_editable(self, selector: str, timeout: float | None = None) -> bool:
        return await self.main_frame.is_editable(selector, timeout=timeout)

    async def is_checked(self, selector: str, timeout: float | None = None) -> bool:
        return await self.main_frame.is_checked(selector, timeout=timeout)

    # ------------------------------------------------------------------
    # Locators
    # ------------------------------------------------------------------

    def locator(self, selector: str, has_text: str | Pattern[str] | None = None, has: 'Locator | None' = None) -> 'Locator':
        return self.main_frame.locator(selector, has_text=has_text, has=has)

    def frame_locator(self, selector: str) -> 'FrameLocator':
        return self.main_frame.frame_locator(selector)

    def get_by_text(self, text: str | Pattern[str], exact: bool = False) -> 'Locator':
        return self.main_frame.get_by_text(text, exact=exact)

    def get_by_role(self, role: str, name: str | Pattern[str] | None = None, exact: bool = False, **options: Any) -> 'Locator':
        return self.main_frame.get_by_role(role, name=name, exact=exact, **options)

    def get_by_test_id(self, test_id: str) -> 'Locator':
        return self.main_frame.get_by_test_id(test_id)

    def get_by_label(self, text: str | Pattern[str], exact: bool = False) -> 'Locator':
        return self.main_frame.get_by_label(text, exact=exact)

    def get_by_placeholder(self, text: str, exact: bool = False) -> 'Locator':
        return self.main_frame.get_by_placeholder(text, exact=exact)

    # ------------------------------------------------------------------
    # Screenshots and snapshots
    # ------------------------------------------------------------------

    async def screenshot(self, options: ScreenshotOptions | None = None, timeout: float | None = None, **kwargs: Any) -> bytes:
        """Capture the viewport, a clip or (``full_page=True``) the whole page.

        Options can be passed as a ``ScreenshotOptions`` or as keyword
        arguments, e.g. ``await page.screenshot(full_page=True, type='jpeg')``.
        """
        options = options or ScreenshotOptions(**kwargs)
        return await self.screenshotter.screenshot_page(options, timeout)

    async def snapshot_for_ai(self, timeout: float | None = None) -> str:
        """Accessibility snapshot of the page with child frames stitched in.

        Each ``<iframe>`` line is followed by the snapshot of its content
        frame. Refs of the n-th stitched frame carry an ``f<n>`` prefix, so
        ``aria-ref=f1e3`` can later jump straight into that frame.
        """
        self.last_snapshot_frame_ids = []

        async def action(progress: Progress) -> str:
            lines = await self._snapshot_frame(progress, self.main_frame, '')
            return '\n'.join(lines)

        return await execute_with_progress(action, timeout, api_name='page.snapshotForAI')

    async def _snapshot_frame(self, progress: Progress, frame: Frame, ref_prefix: str) -> list[str]:
        async def attempt(first: bool) -> tuple[dict[str, Any]]:
            context = await frame.get_context()
            return (await context.execute_script('snapshot_for_ai', ref_prefix),)

        (result,) = await frame._retry_with_progress_and_timeouts(progress, attempt)
        iframe_refs = set(result['iframe_refs'])
        lines: list[str] = []
        for line in result['snapshot'].splitlines():
            match = _SNAPSHOT_REF.search(line)
            if match is None or match.group(1) not in iframe_refs:
                lines.append(line)
                continue
            child = await self._snapshot_child_frame(frame, match.group(1))
            if child is None:
                lines.append(line)
                continue
            self.last_snapshot_frame_ids.append(child.frame_id)
            child_lines = await self._snapshot_frame(progress, child, f'f{len(self.last_snapshot_frame_ids)}')
            indent = ' ' * (len(line) - len(line.lstrip())) + '  '
            lines.append(f'{line}:')
            lines.extend(indent + child_line for child_line in child_lines)
        return lines

    async def _snapshot_child_frame(self, frame: Frame, ref: str) -> Frame | None:
        try:
            handle = await frame.selectors.query(f'aria-ref={ref}')
            if handle is None:
                return None
            child = await handle.content_frame()
            await handle.dispose()
            return child
        except TabwrightError as e:
            logger.debug(f'Skipping child frame snapshot for {ref} in frame {frame.frame_id}: {e}')
            return None

    # ------------------------------------------------------------------
    # Downloads
    # ------------------------------------------------------------------

    async def wait_for_download(self, timeout: float | None = None) -> Download:
        return await self.downloads.wait_for_download(self, timeout)

    @asynccontextmanager
    async def expect_download(self, timeout: float | None = None) -> AsyncIterator[DownloadInfo]:
        """Wait for a download started inside the ``async with`` block.

        Example:
            >>> async with page.expect_download() as download_info:
            ...     await page.click('a#export')
            >>> await download_info.value.save_as('report.csv')
        """
        timeout_ms = CONFIG.DEFAULT_TIMEOUT_MS if timeout is None else timeout
        future = self.downloads.expect_download(self)
        info = DownloadInfo()
        try:
            yield info
            try:
                info._download = await asyncio.wait_for(asyncio.shield(future), timeout_ms / 1000)
            except asyncio.TimeoutError:
                raise TimeoutError(timeout_ms, f'Download timeout after {timeout_ms:g}ms')
        finally:
            self.downloads._discard_waiter(future)
