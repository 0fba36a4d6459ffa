"""In-process reference host.

``MemoryHost`` serves routed HTML documents and runs the page-side runtime
from :mod:`tabwright.injected` on a BeautifulSoup DOM. It honours the same
boundary a real extension host has: requests and responses are JSON
round-tripped so nothing but plain data crosses into or out of the page.

Example:
    >>> host = MemoryHost()
    >>> host.route('https://example.com/', '<h1>Hello</h1>')
    >>> session = BrowserSession(host=host)
    >>> await session.start()
    >>> page = await session.new_page('https://example.com/')
"""

import asyncio
import base64
import io
import itertools
import json
import logging
from pathlib import Path
from typing import Any, Awaitable
from urllib.parse import urljoin

from bs4 import Tag
from PIL import Image
from pydantic import BaseModel, ConfigDict, Field

from tabwright.browser.events import (
    DownloadChangedEvent,
    DownloadCreatedEvent,
    FrameRemovedEvent,
    HistoryStateUpdatedEvent,
    NavigationCommittedEvent,
    NavigationCompletedEvent,
    NavigationDOMContentLoadedEvent,
    NavigationErrorEvent,
    PageMessageEvent,
    TabActivatedEvent,
    TabClosedEvent,
    TabCreatedEvent,
)
from tabwright.browser.views import CaptureRateLimitError, World
from tabwright.config import CONFIG
from tabwright.host.base import NAVIGATION_MESSAGE_TYPE, BrowserHost
from tabwright.injected import dom
from tabwright.injected.script import InjectedScript, PageDocument, WindowState

logger = logging.getLogger(__name__)

NOT_REACHABLE = 'Could not establish connection. Receiving end does not exist.'


class MemoryRoute(BaseModel):
    """What the host serves for one URL (fragment excluded)."""

    model_config = ConfigDict(extra='forbid')

    html: str = ''
    page_width: int | None = None
    page_height: int | None = None
    page_globals: dict[str, Any] = Field(default_factory=dict)
    # A route with a body is served as a download instead of a document
    download: bytes | None = None
    filename: str | None = None
    mime_type: str = 'application/octet-stream'
    hold_download: bool = False
    error: str | None = None


class _HostFrame:
    def __init__(self, frame_id: int, parent_frame_id: int | None = None, name: str | None = None):
        self.frame_id = frame_id
        self.parent_frame_id = parent_frame_id
        self.name = name
        self.url = 'about:blank'
        self.document: PageDocument | None = None
        self.scripts: dict[str, InjectedScript] = {}
        self.instrumented = False


class _HostTab:
    def __init__(self, tab_id: int):
        self.tab_id = tab_id
        self.frames: dict[int, _HostFrame] = {0: _HostFrame(0)}
        self.history: list[tuple[str, str | None]] = []
        self.history_index = -1
        self.frame_ids = itertools.count(1)

    @property
    def main_frame(self) -> _HostFrame:
        return self.frames[0]

    def push_history(self, url: str, document_id: str | None) -> None:
        del self.history[self.history_index + 1 :]
        self.history.append((url, document_id))
        self.history_index = len(self.history) - 1

    def descendants(self, frame_id: int) -> list[int]:
        """Descendant frame ids, parents before children."""
        result: list[int] = []
        pending = [frame_id]
        while pending:
            parent = pending.pop(0)
            children = [f.frame_id for f in self.frames.values() if f.parent_frame_id == parent]
            result.extend(children)
            pending.extend(children)
        return result


class _HostDownload:
    def __init__(self, download_id: int, url: str, path: Path, body: bytes):
        self.download_id = download_id
        self.url = url
        self.path = path
        self.body = body
        self.state = 'in_progress'


class MemoryHost(BrowserHost):
    """Browser host that keeps every tab in process.

    Args:
        viewport_width: CSS width of every tab's viewport.
        viewport_height: CSS height of every tab's viewport.
        device_pixel_ratio: Device pixels per CSS pixel for captures.
        auto_load: When False, a navigation stops after commit and the test
            drives ``fire_dom_content_loaded`` / ``signal_ready`` / ``fire_load``.
        max_captures_per_second: Optional capture ceiling; exceeding it raises
            the distinguished rate-limit error.
        downloads_dir: Where downloaded bodies are written.
    """

    def __init__(
        self,
        viewport_width: int = 1280,
        viewport_height: int = 720,
        device_pixel_ratio: float = 1.0,
        auto_load: bool = True,
        max_captures_per_second: int | None = None,
        downloads_dir: str | Path | None = None,
        latency_ms: float = 0,
    ):
        super().__init__()
        self.viewport_width = viewport_width
        self.viewport_height = viewport_height
        self.device_pixel_ratio = device_pixel_ratio
        self.auto_load = auto_load
        self.max_captures_per_second = max_captures_per_second
        self.downloads_dir = Path(downloads_dir) if downloads_dir is not None else Path(CONFIG.DOWNLOADS_DIR)
        self.latency_ms = latency_ms

        self.fail_next_captures = 0
        self.capture_count = 0
        self.inject_count = 0

        self._routes: dict[str, MemoryRoute] = {}
        self._tabs: dict[int, _HostTab] = {}
        self._downloads: dict[int, _HostDownload] = {}
        self._tab_ids = itertools.count(1)
        self._document_ids = itertools.count(1)
        self._download_ids = itertools.count(1)
        self._capture_times: list[float] = []
        self._tasks: set[asyncio.Task[None]] = set()
        self._page_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def route(
        self,
        url: str,
        html: str,
        page_width: int | None = None,
        page_height: int | None = None,
        page_globals: dict[str, Any] | None = None,
    ) -> None:
        self._routes[_strip_fragment(url)] = MemoryRoute(
            html=html, page_width=page_width, page_height=page_height, page_globals=page_globals or {}
        )

    def route_download(
        self,
        url: str,
        body: bytes,
        filename: str,
        mime_type: str = 'application/octet-stream',
        hold: bool = False,
    ) -> None:
        self._routes[_strip_fragment(url)] = MemoryRoute(
            download=body, filename=filename, mime_type=mime_type, hold_download=hold
        )

    def route_error(self, url: str, error: str = 'net::ERR_CONNECTION_REFUSED') -> None:
        self._routes[_strip_fragment(url)] = MemoryRoute(error=error)

    # ------------------------------------------------------------------
    # Inspection helpers
    # ------------------------------------------------------------------

    def document(self, tab_id: int, frame_id: int = 0) -> PageDocument:
        document = self._frame(tab_id, frame_id).document
        if document is None:
            raise RuntimeError(f'Frame {frame_id} in tab {tab_id} has no document')
        return document

    def frame_scripts(self, tab_id: int, frame_id: int = 0) -> dict[str, InjectedScript]:
        """Page-side runtimes of a frame's current document, keyed by world."""
        return dict(self._frame(tab_id, frame_id).scripts)

    def frame_ids(self, tab_id: int) -> list[int]:
        return list(self._tab(tab_id).frames)

    def child_frame_ids(self, tab_id: int, frame_id: int) -> list[int]:
        return [f.frame_id for f in self._tab(tab_id).frames.values() if f.parent_frame_id == frame_id]

    async def idle(self) -> None:
        """Wait until every page-initiated navigation has been processed."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Script injection
    # ------------------------------------------------------------------

    async def inject(self, tab_id: int, frame_id: int, world: World, request: dict[str, Any]) -> dict[str, Any]:
        await asyncio.sleep(self.latency_ms / 1000)
        frame = self._frame(tab_id, frame_id)
        if frame.document is None or not frame.instrumented:
            raise RuntimeError(NOT_REACHABLE)
        script = frame.scripts[world]
        self.inject_count += 1
        response = script.evaluate(json.loads(json.dumps(request)))
        self._drain_page_requests(tab_id, frame)
        return json.loads(json.dumps(response))

    async def ensure_instrumentation(self, tab_id: int, frame_id: int) -> None:
        frame = self._frame(tab_id, frame_id)
        if frame.document is not None:
            frame.instrumented = True

    async def ping(self, tab_id: int, frame_id: int) -> bool:
        frame = self._frame(tab_id, frame_id)
        return frame.document is not None and frame.instrumented

    def _drain_page_requests(self, tab_id: int, frame: _HostFrame) -> None:
        document = frame.document
        if document is None:
            return
        history, document.history_requests = document.history_requests, []
        navigations, document.navigation_requests = document.navigation_requests, []
        for kind, url in history:
            self._spawn(self._same_document(tab_id, frame.frame_id, document, kind, url))
        if navigations:
            self._spawn(self.navigate(tab_id, frame.frame_id, navigations[-1]))

    def _spawn(self, coro: Awaitable[None]) -> None:
        async def run() -> None:
            async with self._page_lock:
                try:
                    await coro
                except Exception as e:
                    logger.warning(f'Page-initiated navigation failed: {type(e).__name__}: {e}')

        task = asyncio.create_task(run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    async def capture_visible(self, tab_id: int, format: str = 'png', quality: int | None = None) -> str:
        await asyncio.sleep(self.latency_ms / 1000)
        if self.fail_next_captures > 0:
            self.fail_next_captures -= 1
            raise RuntimeError(CaptureRateLimitError().message)
        if self.max_captures_per_second is not None:
            now = asyncio.get_running_loop().time()
            self._capture_times = [t for t in self._capture_times if now - t < 1.0]
            if len(self._capture_times) >= self.max_captures_per_second:
                raise RuntimeError(CaptureRateLimitError().message)
            self._capture_times.append(now)

        document = self._frame(tab_id, 0).document
        window = document.window if document is not None else WindowState(self.viewport_width, self.viewport_height)
        self.capture_count += 1
        image = render_viewport(window)
        buffer = io.BytesIO()
        if format == 'jpeg':
            image.save(buffer, format='JPEG', quality=quality or 80)
        else:
            image.save(buffer, format='PNG')
        encoded = base64.b64encode(buffer.getvalue()).decode('utf-8')
        return f'data:image/{format};base64,{encoded}'

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    async def navigate(self, tab_id: int, frame_id: int, url: str) -> None:
        tab = self._tab(tab_id)
        frame = self._frame(tab_id, frame_id)
        committed = await self._commit(tab, frame_id, url, frame.parent_frame_id, frame.name, complete=self.auto_load)
        if committed and frame_id == 0:
            tab.push_history(url, committed)

    async def reload(self, tab_id: int) -> None:
        tab = self._tab(tab_id)
        committed = await self._commit(tab, 0, tab.main_frame.url, None, None, complete=self.auto_load)
        if committed and tab.history_index >= 0:
            tab.history[tab.history_index] = (tab.main_frame.url, committed)

    async def go_back(self, tab_id: int) -> bool:
        tab = self._tab(tab_id)
        if tab.history_index <= 0:
            return False
        tab.history_index -= 1
        await self._traverse(tab)
        return True

    async def go_forward(self, tab_id: int) -> bool:
        tab = self._tab(tab_id)
        if tab.history_index >= len(tab.history) - 1:
            return False
        tab.history_index += 1
        await self._traverse(tab)
        return True

    async def _traverse(self, tab: _HostTab) -> None:
        url, document_id = tab.history[tab.history_index]
        main = tab.main_frame
        if main.document is not None and document_id is not None and main.document.document_id == document_id:
            await self._same_document(tab.tab_id, 0, main.document, 'popstate', url, record_history=False)
            return
        committed = await self._commit(tab, 0, url, None, None, complete=self.auto_load)
        if committed:
            tab.history[tab.history_index] = (url, committed)

    async def _commit(
        self,
        tab: _HostTab,
        frame_id: int,
        url: str,
        parent_frame_id: int | None,
        name: str | None,
        complete: bool,
    ) -> str | None:
        """Load ``url`` into a frame. Returns the new document id, or None if nothing committed."""
        route = self._routes.get(_strip_fragment(url))
        if route is None and not url.startswith('about:'):
            route = MemoryRoute(error='net::ERR_NAME_NOT_RESOLVED')
        if route is not None and route.error is not None:
            logger.debug(f'Navigation of frame {frame_id} in tab {tab.tab_id} to {url} failed: {route.error}')
            await self.emit(NavigationErrorEvent(tab_id=tab.tab_id, frame_id=frame_id, url=url, error=route.error))
            return None
        if route is not None and route.download is not None:
            await self._start_download(url, route)
            return None

        for child_id in reversed(tab.descendants(frame_id)):
            tab.frames.pop(child_id, None)
            await self.emit(FrameRemovedEvent(tab_id=tab.tab_id, frame_id=child_id))

        route = route or MemoryRoute()
        window = WindowState(
            inner_width=self.viewport_width,
            inner_height=self.viewport_height,
            device_pixel_ratio=self.device_pixel_ratio,
            scroll_width=route.page_width,
            scroll_height=route.page_height,
            page_globals=json.loads(json.dumps(route.page_globals)),
        )
        document = PageDocument(route.html, url, f'doc-{next(self._document_ids)}', window)
        frame = tab.frames.get(frame_id)
        if frame is None:
            frame = tab.frames[frame_id] = _HostFrame(frame_id, parent_frame_id, name)
        frame.url = url
        frame.document = document
        frame.instrumented = False
        frame.scripts = {'MAIN': InjectedScript(document, 'MAIN'), 'ISOLATED': InjectedScript(document, 'ISOLATED')}

        await self.emit(
            NavigationCommittedEvent(
                tab_id=tab.tab_id,
                frame_id=frame_id,
                parent_frame_id=parent_frame_id,
                url=url,
                document_id=document.document_id,
                frame_name=name,
            )
        )

        for element in document.soup.find_all(list(dom.FRAME_TAGS)):
            if not isinstance(element, Tag) or frame.document is not document:
                continue
            child_id = next(tab.frame_ids)
            child_name = str(element['name']) if element.get('name') else None
            tab.frames[child_id] = _HostFrame(child_id, frame_id, child_name)
            child_url = urljoin(url, str(element.get('src') or 'about:blank'))
            await self._commit(tab, child_id, child_url, frame_id, child_name, complete=True)

        if complete and frame.document is document:
            await self.finish_load(tab.tab_id, frame_id)
        return document.document_id

    async def _same_document(
        self,
        tab_id: int,
        frame_id: int,
        document: PageDocument,
        kind: str,
        url: str,
        record_history: bool = True,
    ) -> None:
        tab = self._tabs.get(tab_id)
        frame = tab.frames.get(frame_id) if tab is not None else None
        if frame is None or frame.document is not document:
            return
        document.url = url
        frame.url = url
        if frame_id == 0 and record_history:
            if kind == 'replaceState' and tab.history_index >= 0:
                tab.history[tab.history_index] = (url, document.document_id)
            else:
                tab.push_history(url, document.document_id)
        if kind != 'popstate':
            await self.emit(HistoryStateUpdatedEvent(tab_id=tab_id, frame_id=frame_id, url=url, kind=kind))
        await self.emit(
            PageMessageEvent(
                tab_id=tab_id,
                frame_id=frame_id,
                type=NAVIGATION_MESSAGE_TYPE,
                detail={'event': kind, 'url': url, 'document_id': document.document_id},
            )
        )

    # Manual lifecycle steps, used directly when auto_load is False

    async def fire_dom_content_loaded(self, tab_id: int, frame_id: int = 0) -> None:
        document = self.document(tab_id, frame_id)
        await self.emit(
            NavigationDOMContentLoadedEvent(
                tab_id=tab_id, frame_id=frame_id, url=document.url, document_id=document.document_id
            )
        )

    async def signal_ready(self, tab_id: int, frame_id: int = 0) -> None:
        """Install the page-side runtime and post its readiness message."""
        frame = self._frame(tab_id, frame_id)
        document = self.document(tab_id, frame_id)
        frame.instrumented = True
        await self.emit(
            PageMessageEvent(
                tab_id=tab_id,
                frame_id=frame_id,
                type=NAVIGATION_MESSAGE_TYPE,
                detail={'event': 'ready', 'url': document.url, 'document_id': document.document_id},
            )
        )

    async def fire_load(self, tab_id: int, frame_id: int = 0) -> None:
        document = self.document(tab_id, frame_id)
        await self.emit(
            NavigationCompletedEvent(tab_id=tab_id, frame_id=frame_id, url=document.url, document_id=document.document_id)
        )

    async def finish_load(self, tab_id: int, frame_id: int = 0) -> None:
        await self.fire_dom_content_loaded(tab_id, frame_id)
        await self.signal_ready(tab_id, frame_id)
        await self.fire_load(tab_id, frame_id)

    async def remove_frame(self, tab_id: int, frame_id: int) -> None:
        """Drop a child frame and its subtree, as when an iframe is removed from the DOM."""
        tab = self._tab(tab_id)
        for removed in [*reversed(tab.descendants(frame_id)), frame_id]:
            tab.frames.pop(removed, None)
            await self.emit(FrameRemovedEvent(tab_id=tab_id, frame_id=removed))

    # ------------------------------------------------------------------
    # Tabs
    # ------------------------------------------------------------------

    async def create_tab(self, url: str = 'about:blank') -> int:
        tab = _HostTab(next(self._tab_ids))
        self._tabs[tab.tab_id] = tab
        await self.emit(TabCreatedEvent(tab_id=tab.tab_id, url=url))
        await self.emit(TabActivatedEvent(tab_id=tab.tab_id))
        committed = await self._commit(tab, 0, url, None, None, complete=True)
        tab.push_history(url, committed)
        return tab.tab_id

    async def close_tab(self, tab_id: int) -> None:
        if self._tabs.pop(tab_id, None) is None:
            return
        await self.emit(TabClosedEvent(tab_id=tab_id))

    async def activate_tab(self, tab_id: int) -> None:
        self._tab(tab_id)
        await self.emit(TabActivatedEvent(tab_id=tab_id))

    # ------------------------------------------------------------------
    # Downloads
    # ------------------------------------------------------------------

    async def _start_download(self, url: str, route: MemoryRoute) -> None:
        download_id = next(self._download_ids)
        filename = route.filename or url.rstrip('/').rsplit('/', 1)[-1] or 'download'
        self.downloads_dir.mkdir(parents=True, exist_ok=True)
        path = _unique_path(self.downloads_dir / filename)
        body = route.download or b''
        download = self._downloads[download_id] = _HostDownload(download_id, url, path, body)
        await self.emit(
            DownloadCreatedEvent(
                download_id=download_id,
                url=url,
                filename=path.name,
                mime_type=route.mime_type,
                total_bytes=len(body),
            )
        )
        if not route.hold_download:
            await self.complete_download(download.download_id)

    async def complete_download(self, download_id: int) -> None:
        download = self._downloads[download_id]
        if download.state != 'in_progress':
            return
        download.path.write_bytes(download.body)
        download.state = 'complete'
        await self.emit(DownloadChangedEvent(download_id=download_id, state='complete', filename=str(download.path)))

    async def fail_download(self, download_id: int, error: str = 'NETWORK_FAILED') -> None:
        download = self._downloads[download_id]
        if download.state != 'in_progress':
            return
        download.state = 'interrupted'
        await self.emit(DownloadChangedEvent(download_id=download_id, state='interrupted', error=error))

    async def cancel_download(self, download_id: int) -> None:
        if download_id in self._downloads:
            await self.fail_download(download_id, 'USER_CANCELED')

    async def read_download(self, download_id: int) -> bytes:
        download = self._downloads.get(download_id)
        if download is None or download.state != 'complete':
            raise RuntimeError(f'Download {download_id} is not complete')
        return download.path.read_bytes()

    # ------------------------------------------------------------------

    def _tab(self, tab_id: int) -> _HostTab:
        tab = self._tabs.get(tab_id)
        if tab is None:
            raise RuntimeError(f'No tab with id: {tab_id}.')
        return tab

    def _frame(self, tab_id: int, frame_id: int) -> _HostFrame:
        frame = self._tab(tab_id).frames.get(frame_id)
        if frame is None:
            raise RuntimeError(f'No frame with id {frame_id} in tab {tab_id}.')
        return frame


def render_viewport(window: WindowState) -> Image.Image:
    """Render the visible part of a synthetic page raster.

    Every device pixel of the full page has ``R = x % 256`` and ``G = y % 256``
    (page device coordinates) and ``B = 128``, so stitched captures can be
    checked pixel by pixel.
    """
    ratio = window.device_pixel_ratio
    width = round(window.inner_width * ratio)
    height = round(window.inner_height * ratio)
    red = _ramp(width, round(window.scroll_x * ratio), horizontal=True).resize((width, height), Image.Resampling.NEAREST)
    green = _ramp(height, round(window.scroll_y * ratio), horizontal=False).resize((width, height), Image.Resampling.NEAREST)
    blue = Image.new('L', (width, height), 128)
    return Image.merge('RGB', (red, green, blue))


def _ramp(length: int, offset: int, horizontal: bool) -> Image.Image:
    """A one-pixel line whose values count ``offset % 256`` upward, wrapping at 256."""
    gradient = Image.linear_gradient('L')
    if horizontal:
        gradient = gradient.transpose(Image.Transpose.TRANSPOSE)
    start = offset % 256
    tiles = (start + length) // 256 + 1
    strip = Image.new('L', (256 * tiles, 256) if horizontal else (256, 256 * tiles))
    for index in range(tiles):
        strip.paste(gradient, (index * 256, 0) if horizontal else (0, index * 256))
    box = (start, 0, start + length, 1) if horizontal else (0, start, 1, start + length)
    return strip.crop(box)


def _strip_fragment(url: str) -> str:
    return url.split('#', 1)[0]


def _unique_path(path: Path) -> Path:
    if not path.exists():
        return path
    for counter in itertools.count(1):
        candidate = path.with_name(f'{path.stem} ({counter}){path.suffix}')
        if not candidate.exists():
            return candidate
    return path
