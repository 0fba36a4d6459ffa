"""Downloads watchdog and the ``Download`` objects it hands out.

The host reports downloads without saying which tab started them. Each
download is attributed to the most recently activated page, which is right
for the usual "click a link, get a file" flow but can be wrong when several
tabs download at the same time. This is a known limitation of the host
surface, not something the watchdog tries to repair.
"""

import asyncio
import logging
import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Any, ClassVar
from urllib.parse import unquote, urlsplit

from bubus import BaseEvent
from pydantic import PrivateAttr

from tabwright.browser.events import (
    BrowserStoppedEvent,
    DownloadChangedEvent,
    DownloadCreatedEvent,
    DownloadFailedEvent,
    DownloadStartedEvent,
    FileDownloadedEvent,
    TabActivatedEvent,
    TabClosedEvent,
)
from tabwright.browser.views import TabwrightError, TimeoutError
from tabwright.browser.watchdog import BaseWatchdog
from tabwright.config import CONFIG

if TYPE_CHECKING:
    from tabwright.browser.page import Page

logger = logging.getLogger(__name__)

DOWNLOAD_COMPLETION_TIMEOUT_MS = 30000


def suggested_filename_from_url(url: str) -> str:
    path = urlsplit(url).path
    return unquote(path.rsplit('/', 1)[-1]) or 'download'


class Download:
    """A file download attributed to a page."""

    def __init__(self, page: 'Page', download_id: int, url: str, suggested_filename: str):
        self._page = page
        self._id = download_id
        self._url = url
        self._suggested_filename = suggested_filename
        self._state = 'in_progress'
        self._failure: str | None = None
        self._path: Path | None = None
        self._finished: asyncio.Future[None] = asyncio.get_running_loop().create_future()

    def __repr__(self) -> str:
        return f'<Download {self._id} {self._url} {self._state}>'

    @property
    def page(self) -> 'Page':
        return self._page

    @property
    def url(self) -> str:
        return self._url

    @property
    def suggested_filename(self) -> str:
        return self._suggested_filename

    @property
    def download_id(self) -> int:
        return self._id

    @property
    def state(self) -> str:
        return self._state

    def _on_complete(self, path: str | None) -> None:
        self._state = 'complete'
        self._path = Path(path) if path else None
        if not self._finished.done():
            self._finished.set_result(None)

    def _on_failed(self, error: str) -> None:
        self._state = 'interrupted'
        self._failure = error
        if not self._finished.done():
            self._finished.set_result(None)

    async def _wait_for_completion(self, timeout_ms: float = DOWNLOAD_COMPLETION_TIMEOUT_MS) -> None:
        try:
            await asyncio.wait_for(asyncio.shield(self._finished), timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise TimeoutError(timeout_ms, f'Download did not finish within {timeout_ms:g}ms')

    async def path(self) -> Path:
        """Local path of the finished download."""
        await self._wait_for_completion()
        if self._state == 'interrupted':
            raise TabwrightError(f'Download failed: {self._failure}')
        if self._path is None:
            raise TabwrightError('Download finished without a local file')
        return self._path

    async def failure(self) -> str | None:
        await self._wait_for_completion()
        return self._failure

    async def save_as(self, path: str | Path) -> None:
        await self._wait_for_completion()
        if self._state == 'interrupted':
            raise TabwrightError(f'Cannot save interrupted download: {self._failure}')
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        if self._path is not None and self._path.exists():
            shutil.copyfile(self._path, target)
        else:
            target.write_bytes(await self._page.host.read_download(self._id))

    async def cancel(self) -> None:
        if self._state != 'in_progress':
            return
        await self._page.host.cancel_download(self._id)


class DownloadsWatchdog(BaseWatchdog):
    """Attributes host downloads to pages and publishes download events.

    Listens to:
        TabActivatedEvent: Tracks the most recently activated page.
        TabClosedEvent: Forgets the page and rejects its pending waits.
        DownloadCreatedEvent: Creates a ``Download`` for the active page.
        DownloadChangedEvent: Completes or fails the ``Download``.
        BrowserStoppedEvent: Rejects every pending wait.

    Emits:
        DownloadStartedEvent, FileDownloadedEvent, DownloadFailedEvent
    """

    LISTENS_TO: ClassVar[list[type[BaseEvent[Any]]]] = [
        TabActivatedEvent,
        TabClosedEvent,
        DownloadCreatedEvent,
        DownloadChangedEvent,
        BrowserStoppedEvent,
    ]
    EMITS: ClassVar[list[type[BaseEvent[Any]]]] = [
        DownloadStartedEvent,
        FileDownloadedEvent,
        DownloadFailedEvent,
    ]

    _pages: dict[int, Any] = PrivateAttr(default_factory=dict)
    _last_active_tab: int | None = PrivateAttr(default=None)
    _downloads: dict[int, Download] = PrivateAttr(default_factory=dict)
    _waiters: list[tuple[int, asyncio.Future[Download]]] = PrivateAttr(default_factory=list)

    # ------------------------------------------------------------------
    # Page registry
    # ------------------------------------------------------------------

    def register_page(self, page: 'Page') -> None:
        self._pages[page.tab_id] = page
        self._last_active_tab = page.tab_id

    def unregister_page(self, page: 'Page') -> None:
        self._pages.pop(page.tab_id, None)
        if self._last_active_tab == page.tab_id:
            self._last_active_tab = None
        self._reject_waiters(lambda tab_id: tab_id == page.tab_id, 'Page closed')

    def _find_associated_page(self) -> 'Page | None':
        if self._last_active_tab is not None and self._last_active_tab in self._pages:
            return self._pages[self._last_active_tab]
        pages = list(self._pages.values())
        return pages[-1] if pages else None

    def get_download(self, download_id: int) -> Download | None:
        return self._downloads.get(download_id)

    # ------------------------------------------------------------------
    # Waiting
    # ------------------------------------------------------------------

    def expect_download(self, page: 'Page') -> asyncio.Future[Download]:
        """Register for the next download of ``page``. Call before triggering it."""
        future: asyncio.Future[Download] = asyncio.get_running_loop().create_future()
        self._waiters.append((page.tab_id, future))
        return future

    async def wait_for_download(self, page: 'Page', timeout_ms: float | None = None) -> Download:
        timeout_ms = CONFIG.DEFAULT_TIMEOUT_MS if timeout_ms is None else timeout_ms
        future = self.expect_download(page)
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise TimeoutError(timeout_ms, f'Download timeout after {timeout_ms:g}ms')
        finally:
            self._discard_waiter(future)

    def _discard_waiter(self, future: asyncio.Future[Download]) -> None:
        self._waiters = [(tab_id, waiter) for tab_id, waiter in self._waiters if waiter is not future]
        if not future.done():
            future.cancel()

    def _reject_waiters(self, predicate: Any, reason: str) -> None:
        remaining: list[tuple[int, asyncio.Future[Download]]] = []
        for tab_id, waiter in self._waiters:
            if predicate(tab_id):
                if not waiter.done():
                    waiter.set_exception(TabwrightError(f'Waiting for download failed: {reason}'))
            else:
                remaining.append((tab_id, waiter))
        self._waiters = remaining

    def _resolve_waiter(self, download: Download) -> None:
        # Prefer a waiter on the attributed page, otherwise the oldest one
        pending = [(tab_id, waiter) for tab_id, waiter in self._waiters if not waiter.done()]
        chosen = next((entry for entry in pending if entry[0] == download.page.tab_id), None)
        if chosen is None and pending:
            chosen = pending[0]
        if chosen is None:
            return
        chosen[1].set_result(download)
        self._waiters = [entry for entry in self._waiters if entry is not chosen]

    # ------------------------------------------------------------------
    # Host events
    # ------------------------------------------------------------------

    async def on_TabActivatedEvent(self, event: TabActivatedEvent) -> None:
        if event.tab_id in self._pages:
            self._last_active_tab = event.tab_id

    async def on_TabClosedEvent(self, event: TabClosedEvent) -> None:
        page = self._pages.get(event.tab_id)
        if page is not None:
            self.unregister_page(page)

    async def on_BrowserStoppedEvent(self, event: BrowserStoppedEvent) -> None:
        self._reject_waiters(lambda tab_id: True, 'Browser stopped')
        self._pages.clear()
        self._last_active_tab = None

    async def on_DownloadCreatedEvent(self, event: DownloadCreatedEvent) -> None:
        page = self._find_associated_page()
        if page is None:
            self.logger.warning(f'[DownloadsWatchdog] No page available for download {event.download_id} from {event.url}')
            return
        suggested = event.filename.rsplit('/', 1)[-1] if event.filename else suggested_filename_from_url(event.url)
        download = Download(page, event.download_id, event.url, suggested)
        self._downloads[event.download_id] = download
        self.logger.debug(f'[DownloadsWatchdog] Download {event.download_id} started: {suggested} from {event.url}')
        self.event_bus.dispatch(
            DownloadStartedEvent(
                tab_id=page.tab_id, download_id=event.download_id, url=event.url, suggested_filename=suggested
            )
        )
        self._resolve_waiter(download)

    async def on_DownloadChangedEvent(self, event: DownloadChangedEvent) -> None:
        download = self._downloads.get(event.download_id)
        if download is None:
            return
        if event.state == 'complete':
            download._on_complete(event.filename)
            path = event.filename or ''
            self.logger.info(f'[DownloadsWatchdog] Download {event.download_id} finished: {path}')
            self.event_bus.dispatch(
                FileDownloadedEvent(
                    tab_id=download.page.tab_id,
                    download_id=event.download_id,
                    url=download.url,
                    path=path,
                    file_name=Path(path).name if path else download.suggested_filename,
                )
            )
        elif event.state == 'interrupted':
            error = event.error or 'Unknown error'
            download._on_failed(error)
            self.logger.warning(f'[DownloadsWatchdog] Download {event.download_id} failed: {error}')
            self.event_bus.dispatch(
                DownloadFailedEvent(
                    tab_id=download.page.tab_id, download_id=event.download_id, url=download.url, error=error
                )
            )
