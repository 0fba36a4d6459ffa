"""Screenshot service: viewport captures, clipping and scroll-and-stitch.

The host can only capture the visible part of a tab, and only a limited
number of times per second. Full-page images are assembled from one capture
per viewport-sized segment, and every capture goes through a shared
``CaptureRateLimiter``.
"""

import asyncio
import base64
import io
import logging
import math
import random
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Literal

from PIL import Image

from tabwright.browser.views import (
    CaptureRateLimitError,
    InvalidArgumentError,
    Rect,
    ScreenshotOptions,
    Size,
    TabwrightError,
)
from tabwright.config import CONFIG
from tabwright.core.progress import Progress, execute_with_progress

if TYPE_CHECKING:
    from tabwright.browser.context import FrameExecutionContext
    from tabwright.browser.element import ElementHandle
    from tabwright.browser.page import Page

logger = logging.getLogger(__name__)

ImageFormat = Literal['png', 'jpeg']

DEFAULT_JPEG_QUALITY = 80


class ScreenshotEncoding:
    @staticmethod
    def decode_to_bytes(screenshot_b64: str) -> bytes:
        """Decode base64 screenshot to bytes."""
        return base64.b64decode(screenshot_b64)

    @staticmethod
    def encode_from_bytes(image_bytes: bytes) -> str:
        """Encode bytes to base64 string."""
        return base64.b64encode(image_bytes).decode('utf-8')

    @staticmethod
    def data_url_to_bytes(data_url: str) -> bytes:
        _, _, payload = data_url.partition(',')
        return ScreenshotEncoding.decode_to_bytes(payload or data_url)

    @staticmethod
    def open_image(data: bytes) -> Image.Image:
        image = Image.open(io.BytesIO(data))
        image.load()
        return image

    @staticmethod
    def encode_image(image: Image.Image, format: ImageFormat, quality: int | None = None) -> bytes:
        buffer = io.BytesIO()
        if format == 'jpeg':
            image.convert('RGB').save(buffer, format='JPEG', quality=quality or DEFAULT_JPEG_QUALITY)
        else:
            image.save(buffer, format='PNG')
        return buffer.getvalue()


class ScreenshotMath:
    @staticmethod
    def device_px(css_pixels: float, dpr: float) -> int:
        return round(css_pixels * dpr)

    @staticmethod
    def scale_rect(rect: Rect, dpr: float) -> Rect:
        return Rect(
            x=ScreenshotMath.device_px(rect.x, dpr),
            y=ScreenshotMath.device_px(rect.y, dpr),
            width=ScreenshotMath.device_px(rect.width, dpr),
            height=ScreenshotMath.device_px(rect.height, dpr),
        )

    @staticmethod
    def compute_segments(total_width: float, total_height: float, viewport_width: float, viewport_height: float) -> tuple[int, int]:
        return math.ceil(total_width / viewport_width), math.ceil(total_height / viewport_height)

    @staticmethod
    def last_segment_clamp(index: int, total_segments: int, viewport_size: float, total_size: float) -> float:
        """Offset of a segment; the last one is pulled back so it ends exactly at the page edge."""
        if index == total_segments - 1:
            return max(0, total_size - viewport_size)
        return index * viewport_size

    @staticmethod
    def segment_offsets(total_size: float, viewport_size: float) -> list[float]:
        segments = math.ceil(total_size / viewport_size)
        return [ScreenshotMath.last_segment_clamp(index, segments, viewport_size, total_size) for index in range(segments)]

    @staticmethod
    def clamp_rect_to_size(rect: Rect, size: Size) -> Rect:
        x1 = max(0.0, min(rect.x, size.width))
        y1 = max(0.0, min(rect.y, size.height))
        x2 = max(0.0, min(rect.x + rect.width, size.width))
        y2 = max(0.0, min(rect.y + rect.height, size.height))
        result = Rect(x=x1, y=y1, width=x2 - x1, height=y2 - y1)
        if not result.width or not result.height:
            raise InvalidArgumentError('Clipped area is either empty or outside the resulting image')
        return result


def validate_screenshot_options(options: ScreenshotOptions) -> ImageFormat:
    format: ImageFormat = options.type or 'png'
    if options.quality is not None:
        if format != 'jpeg':
            raise InvalidArgumentError(f'options.quality is unsupported for the {format} screenshots')
        if not 0 <= options.quality <= 100:
            raise InvalidArgumentError(
                f'Expected options.quality to be between 0 and 100 (inclusive), got {options.quality}'
            )
    if options.clip is not None:
        if options.clip.width == 0:
            raise InvalidArgumentError('Expected options.clip.width not to be 0.')
        if options.clip.height == 0:
            raise InvalidArgumentError('Expected options.clip.height not to be 0.')
    return format


class CaptureRateLimiter:
    """Spaces out host captures and backs off when the host reports its ceiling.

    One limiter is shared by every page of a session because the host's
    calls-per-second ceiling is global.
    """

    def __init__(
        self,
        min_interval_ms: int | None = None,
        max_interval_ms: int | None = None,
        max_retries: int = 4,
    ):
        self.interval_ms = CONFIG.CAPTURE_INTERVAL_MS if min_interval_ms is None else min_interval_ms
        self.max_interval_ms = CONFIG.MAX_CAPTURE_INTERVAL_MS if max_interval_ms is None else max_interval_ms
        self.max_retries = max_retries
        self._next_allowed = 0.0
        self._lock = asyncio.Lock()

    def next_backoff_ms(self, current_ms: int) -> int:
        return min(self.max_interval_ms, math.floor(current_ms * 1.5) + random.randint(0, 119))

    def backoff(self) -> None:
        self.interval_ms = self.next_backoff_ms(self.interval_ms)
        logger.debug(f'Capture rate limit hit, minimum interval is now {self.interval_ms}ms')

    async def wait(self, progress: Progress | None = None) -> None:
        async with self._lock:
            loop = asyncio.get_running_loop()
            delay_ms = max(0.0, (self._next_allowed - loop.time()) * 1000)
            if delay_ms:
                if progress is not None:
                    await progress.wait(delay_ms)
                else:
                    await asyncio.sleep(delay_ms / 1000)
            self._next_allowed = loop.time() + self.interval_ms / 1000

    async def capture(self, capture: Callable[[], Awaitable[str]], progress: Progress | None = None) -> str:
        """Run ``capture`` with pacing, retrying only on the host's rate-limit error."""
        for attempt in range(self.max_retries + 1):
            await self.wait(progress)
            try:
                return await capture()
            except Exception as e:
                if not CaptureRateLimitError.matches(e):
                    raise
                self.backoff()
                if attempt == self.max_retries:
                    raise CaptureRateLimitError(f'Capture rate limit still exceeded after {attempt + 1} attempts: {e}') from e
                extra_ms = 250 + attempt * 150
                if progress is not None:
                    progress.log(f'  capture rate limited, retrying in {extra_ms}ms')
                    await progress.wait(extra_ms)
                else:
                    await asyncio.sleep(extra_ms / 1000)
        raise AssertionError('unreachable')


class Screenshotter:
    """Takes page and element screenshots for one page, one at a time."""

    def __init__(self, page: 'Page', limiter: CaptureRateLimiter):
        self._page = page
        self._limiter = limiter
        self._lock = asyncio.Lock()

    async def screenshot_page(self, options: ScreenshotOptions, timeout: float | None = None, progress: Progress | None = None) -> bytes:
        format = validate_screenshot_options(options)

        async def action(progress: Progress) -> bytes:
            async with self._lock:
                progress.log('taking page screenshot')
                data = await self._screenshot(progress, format, options)
            if options.path:
                Path(options.path).write_bytes(data)
            return data

        return await execute_with_progress(action, timeout, progress=progress, api_name='page.screenshot')

    async def screenshot_element(self, handle: 'ElementHandle', options: ScreenshotOptions, timeout: float | None = None) -> bytes:
        async def action(progress: Progress) -> bytes:
            progress.log('taking element screenshot')
            try:
                await handle.scroll_into_view_if_needed()
            except TabwrightError as e:
                progress.log(f'warning: failed to scroll element into view: {e.message}')
            box = await handle.bounding_box()
            if box is None:
                raise TabwrightError('Failed to capture element: element is not attached or not visible')
            context = await self._page.main_frame.get_context()
            scroll = await context.execute_script('scroll_position', world='MAIN')
            clip = Rect(x=box.x - scroll['x'], y=box.y - scroll['y'], width=box.width, height=box.height)
            merged = options.model_copy(update={'clip': clip, 'full_page': False})
            return await self.screenshot_page(merged, progress=progress)

        return await execute_with_progress(action, timeout, api_name='elementHandle.screenshot')

    async def _screenshot(self, progress: Progress, format: ImageFormat, options: ScreenshotOptions) -> bytes:
        quality = (options.quality if options.quality is not None else DEFAULT_JPEG_QUALITY) if format == 'jpeg' else None
        context = await self._page.main_frame.get_context()
        viewport = Size(**await context.execute_script('viewport_size', world='MAIN'))
        dpr = float(await context.execute_script('device_pixel_ratio', world='MAIN') or 1)

        if options.full_page:
            full = Size(**await context.execute_script('full_page_size', world='MAIN'))
            document_rect = Rect(x=0, y=0, width=full.width, height=full.height)
            if options.clip is not None:
                document_rect = ScreenshotMath.clamp_rect_to_size(options.clip, full)
            fits_viewport = full.width <= viewport.width and full.height <= viewport.height
            if fits_viewport:
                image = await self._capture_image(progress, format, quality)
            else:
                progress.log('content extends beyond viewport, using scroll-and-stitch approach')
                image = await self._capture_full_page(progress, context, format, quality, dpr)
            image = self._crop(image, document_rect, full, dpr)
        else:
            viewport_rect = (
                ScreenshotMath.clamp_rect_to_size(options.clip, viewport)
                if options.clip is not None
                else Rect(x=0, y=0, width=viewport.width, height=viewport.height)
            )
            image = await self._capture_image(progress, format, quality)
            image = self._crop(image, viewport_rect, viewport, dpr)

        if options.scale == 'css' and dpr != 1:
            css_size = (max(1, round(image.width / dpr)), max(1, round(image.height / dpr)))
            image = image.resize(css_size, Image.Resampling.LANCZOS)
        return ScreenshotEncoding.encode_image(image, format, quality)

    async def _capture_image(self, progress: Progress, format: ImageFormat, quality: int | None) -> Image.Image:
        host = self._page.host
        tab_id = self._page.tab_id
        data_url = await self._limiter.capture(lambda: host.capture_visible(tab_id, format, quality), progress)
        return ScreenshotEncoding.open_image(ScreenshotEncoding.data_url_to_bytes(data_url))

    def _crop(self, image: Image.Image, rect: Rect, whole: Size, dpr: float) -> Image.Image:
        if rect.x == 0 and rect.y == 0 and rect.width == whole.width and rect.height == whole.height:
            return image
        scaled = ScreenshotMath.scale_rect(rect, dpr)
        left = max(0, min(int(scaled.x), image.width))
        top = max(0, min(int(scaled.y), image.height))
        right = max(left, min(int(scaled.x + scaled.width), image.width))
        bottom = max(top, min(int(scaled.y + scaled.height), image.height))
        return image.crop((left, top, right, bottom))

    async def _capture_full_page(
        self,
        progress: Progress,
        context: 'FrameExecutionContext',
        format: ImageFormat,
        quality: int | None,
        dpr: float,
    ) -> Image.Image:
        info: dict[str, Any] = await context.execute_script('begin_scroll_capture', world='MAIN')
        x_segments, y_segments = info['x_segments'], info['y_segments']
        total_width, total_height = info['total_width'], info['total_height']
        progress.log(f'capturing {x_segments}x{y_segments} segments (total: {total_width}x{total_height})')

        segments: list[tuple[Image.Image, float, float]] = []
        try:
            for y_index in range(y_segments):
                for x_index in range(x_segments):
                    progress.log(f'capturing segment {x_index + 1},{y_index + 1} of {x_segments},{y_segments}')
                    position = await context.execute_script('scroll_to_segment', x_index, y_index, world='MAIN')
                    await progress.wait(CONFIG.SEGMENT_SETTLE_DELAY_MS)
                    image = await self._capture_image(progress, format, quality)
                    segments.append((image, position['x'], position['y']))
        finally:
            if not context.is_destroyed:
                await context.execute_script('restore_scroll', world='MAIN')

        progress.log('stitching segments together')
        canvas = Image.new('RGB', (ScreenshotMath.device_px(total_width, dpr), ScreenshotMath.device_px(total_height, dpr)))
        for image, x, y in segments:
            dx = ScreenshotMath.device_px(x, dpr)
            dy = ScreenshotMath.device_px(y, dpr)
            width = min(image.width, canvas.width - dx)
            height = min(image.height, canvas.height - dy)
            canvas.paste(image.convert('RGB').crop((0, 0, width, height)), (dx, dy))
        return canvas
