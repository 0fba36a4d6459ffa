"""Tests for viewport, clip, element and full-page screenshots.

The in-process host renders a synthetic raster where every device pixel at
page position (x, y) is ``(x % 256, y % 256, 128)``, so stitched images can
be checked pixel by pixel.
"""

import io

import pytest
from PIL import Image

from tabwright.browser.views import CaptureRateLimitError, InvalidArgumentError, Rect, ScreenshotOptions, Size
from tabwright.screenshots.service import CaptureRateLimiter, ScreenshotMath, validate_screenshot_options


def open_image(data: bytes) -> Image.Image:
    image = Image.open(io.BytesIO(data))
    image.load()
    return image.convert('RGB')


class TestScreenshotMath:
    def test_segment_offsets_clamp_last(self):
        assert ScreenshotMath.segment_offsets(2500, 1000) == [0, 1000, 1500]
        assert ScreenshotMath.segment_offsets(600, 600) == [0]

    def test_compute_segments(self):
        assert ScreenshotMath.compute_segments(800, 2500, 800, 600) == (1, 5)

    def test_clamp_rect(self):
        clamped = ScreenshotMath.clamp_rect_to_size(Rect(x=-10, y=20, width=50, height=1000), Size(width=800, height=600))
        assert (clamped.x, clamped.y, clamped.width, clamped.height) == (0, 20, 40, 580)

    def test_clamp_rect_outside(self):
        with pytest.raises(InvalidArgumentError, match='Clipped area is either empty or outside the resulting image'):
            ScreenshotMath.clamp_rect_to_size(Rect(x=900, y=0, width=50, height=50), Size(width=800, height=600))

    def test_scale_rect(self):
        scaled = ScreenshotMath.scale_rect(Rect(x=10, y=5, width=20, height=7.5), 2)
        assert (scaled.x, scaled.y, scaled.width, scaled.height) == (20, 10, 40, 15)


class TestScreenshotOptions:
    def test_defaults_to_png(self):
        assert validate_screenshot_options(ScreenshotOptions()) == 'png'

    def test_quality_rejected_for_png(self):
        with pytest.raises(InvalidArgumentError, match='options.quality is unsupported for the png screenshots'):
            validate_screenshot_options(ScreenshotOptions(quality=50))

    def test_quality_range(self):
        with pytest.raises(InvalidArgumentError, match='between 0 and 100'):
            validate_screenshot_options(ScreenshotOptions(type='jpeg', quality=101))

    def test_zero_sized_clip_rejected(self):
        with pytest.raises(InvalidArgumentError, match='clip.width'):
            validate_screenshot_options(ScreenshotOptions(clip=Rect(x=0, y=0, width=0, height=10)))
        with pytest.raises(InvalidArgumentError, match='clip.height'):
            validate_screenshot_options(ScreenshotOptions(clip=Rect(x=0, y=0, width=10, height=0)))


class TestCaptureRateLimiter:
    """Tests for capture pacing and rate-limit backoff."""

    def test_backoff_grows_then_plateaus(self):
        limiter = CaptureRateLimiter(min_interval_ms=10, max_interval_ms=2500)
        intervals = [limiter.interval_ms]
        for _ in range(20):
            limiter.backoff()
            intervals.append(limiter.interval_ms)
        plateau = intervals.index(2500)
        rising = intervals[: plateau + 1]
        assert all(later > earlier for earlier, later in zip(rising, rising[1:]))
        assert set(intervals[plateau:]) == {2500}

    @pytest.mark.asyncio
    async def test_retries_only_rate_limit_errors(self):
        limiter = CaptureRateLimiter(min_interval_ms=0, max_interval_ms=50)
        calls = []

        async def capture() -> str:
            calls.append(limiter.interval_ms)
            if len(calls) < 3:
                raise RuntimeError(CaptureRateLimitError().message)
            return 'data:image/png;base64,'

        assert await limiter.capture(capture) == 'data:image/png;base64,'
        assert len(calls) == 3
        assert calls[1] >= calls[0]

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self):
        limiter = CaptureRateLimiter(min_interval_ms=0, max_interval_ms=50)
        calls = []

        async def capture() -> str:
            calls.append(1)
            raise RuntimeError('Tab is gone')

        with pytest.raises(RuntimeError, match='Tab is gone'):
            await limiter.capture(capture)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        limiter = CaptureRateLimiter(min_interval_ms=0, max_interval_ms=20, max_retries=1)

        async def capture() -> str:
            raise RuntimeError(CaptureRateLimitError().message)

        with pytest.raises(CaptureRateLimitError, match='after 2 attempts'):
            await limiter.capture(capture)


class TestPageScreenshots:
    """Tests for screenshots taken through pages and elements."""

    @pytest.mark.asyncio
    async def test_viewport_screenshot(self, open_page):
        page = await open_page('<p>Hello</p>')
        image = open_image(await page.screenshot())
        assert image.size == (800, 600)
        assert image.getpixel((300, 10)) == (300 % 256, 10, 128)

    @pytest.mark.asyncio
    async def test_clip(self, open_page):
        page = await open_page('<p>Hello</p>')
        image = open_image(await page.screenshot(clip=Rect(x=100, y=200, width=50, height=20)))
        assert image.size == (50, 20)
        assert image.getpixel((0, 0)) == (100, 200, 128)

    @pytest.mark.asyncio
    async def test_full_page_stitches_segments(self, host, open_page):
        """Segments land at their page offsets, including the clamped last one."""
        page = await open_page('<p>Tall</p>', page_height=2500)
        image = open_image(await page.screenshot(full_page=True))
        assert image.size == (800, 2500)
        for y in (0, 599, 650, 1850, 2400, 2499):
            assert image.getpixel((300, y)) == (300 % 256, y % 256, 128)
        assert host.capture_count == 5
        assert await page.evaluate('scroll_position') == {'x': 0, 'y': 0}

    @pytest.mark.asyncio
    async def test_full_page_that_fits_uses_one_capture(self, host, open_page):
        page = await open_page('<p>Short</p>')
        before = host.capture_count
        image = open_image(await page.screenshot(full_page=True))
        assert image.size == (800, 600)
        assert host.capture_count == before + 1

    @pytest.mark.asyncio
    async def test_full_page_clip(self, open_page):
        page = await open_page('<p>Tall</p>', page_height=2500)
        image = open_image(await page.screenshot(full_page=True, clip=Rect(x=10, y=2000, width=20, height=30)))
        assert image.size == (20, 30)
        assert image.getpixel((0, 0)) == (10, 2000 % 256, 128)

    @pytest.mark.asyncio
    async def test_jpeg(self, open_page):
        page = await open_page('<p>Hello</p>')
        data = await page.screenshot(type='jpeg', quality=90)
        assert data[:2] == b'\xff\xd8'

    @pytest.mark.asyncio
    async def test_writes_path(self, open_page, tmp_path):
        page = await open_page('<p>Hello</p>')
        target = tmp_path / 'shot.png'
        data = await page.screenshot(path=str(target))
        assert target.read_bytes() == data

    @pytest.mark.asyncio
    async def test_element_screenshot(self, open_page):
        page = await open_page(
            '<div style="position:absolute; left:100px; top:50px">'
            '<span id="pos" style="left:10px; top:20px; width:30px; height:40px">Box</span></div>'
        )
        image = open_image(await page.locator('#pos').screenshot())
        assert image.size == (30, 40)
        assert image.getpixel((0, 0)) == (110, 70, 128)

    @pytest.mark.asyncio
    async def test_recovers_from_rate_limit(self, host, open_page):
        page = await open_page('<p>Hello</p>')
        host.fail_next_captures = 2
        image = open_image(await page.screenshot(timeout=10000))
        assert image.size == (800, 600)
        assert host.fail_next_captures == 0
        assert host.capture_count == 1

    @pytest.mark.asyncio
    async def test_invalid_options_fail_before_capture(self, host, open_page):
        page = await open_page('<p>Hello</p>')
        before = host.capture_count
        with pytest.raises(InvalidArgumentError):
            await page.screenshot(quality=10)
        assert host.capture_count == before
