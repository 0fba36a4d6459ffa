"""Tests for BrowserSession and Page lifecycle, document access and AI snapshots."""

import pytest

from tabwright.browser.events import PageClosedEvent
from tabwright.browser.session import BrowserSession
from tabwright.browser.views import FrameDetachedError, InvalidSelectorError, TabwrightError
from tabwright.host.memory import MemoryHost

ORIGIN = 'https://example.test'


class TestBrowserSession:
    """Tests for session start, stop and page bookkeeping."""

    @pytest.mark.asyncio
    async def test_new_page_requires_start(self, host):
        session = BrowserSession(host=host)
        with pytest.raises(TabwrightError, match='not started'):
            await session.new_page()
        with pytest.raises(TabwrightError, match='not started'):
            session.navigation_tracker

    @pytest.mark.asyncio
    async def test_context_manager(self, tmp_path):
        host = MemoryHost(downloads_dir=tmp_path)
        host.route(f'{ORIGIN}/', '<p>Hi</p>')
        async with BrowserSession(host=host) as session:
            assert session.is_started
            page = await session.new_page(f'{ORIGIN}/')
            assert session.pages == [page]
        assert not session.is_started
        assert page.is_closed()

    @pytest.mark.asyncio
    async def test_pages_and_lookup(self, session, host):
        host.route(f'{ORIGIN}/a', '<p>A</p>')
        host.route(f'{ORIGIN}/b', '<p>B</p>')
        first = await session.new_page(f'{ORIGIN}/a')
        second = await session.new_page(f'{ORIGIN}/b')
        assert session.pages == [first, second]
        assert session.get_page(second.tab_id) is second
        assert session.get_page(999) is None

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, session, host):
        host.route(f'{ORIGIN}/', '<p>Again</p>')
        await session.stop()
        await session.start()
        page = await session.new_page(f'{ORIGIN}/')
        assert await page.text_content('p') == 'Again'


class TestPage:
    """Tests for page-level document access and teardown."""

    @pytest.mark.asyncio
    async def test_title_and_content(self, open_page):
        page = await open_page('<title>Shop</title><p class="x">Hello</p>')
        assert await page.title() == 'Shop'
        content = await page.content()
        assert '<p class="x">Hello</p>' in content

    @pytest.mark.asyncio
    async def test_close_tears_down(self, session, open_page):
        page = await open_page('<p>Bye</p>')
        closed: list[PageClosedEvent] = []

        def on_closed(event: PageClosedEvent) -> None:
            closed.append(event)

        session.event_bus.on(PageClosedEvent, on_closed)
        main_frame = page.main_frame
        await page.close()
        await session.event_bus.wait_until_idle()
        assert page.is_closed()
        assert main_frame.is_detached()
        assert [event.tab_id for event in closed] == [page.tab_id]
        assert page not in session.pages
        assert session.readiness_manager.peek_barrier(page.tab_id, 0) is None
        with pytest.raises(FrameDetachedError):
            await main_frame.get_context()
        await page.close()

    @pytest.mark.asyncio
    async def test_bring_to_front(self, session, host, open_page):
        first = await open_page('<p>First</p>')
        host.route(f'{ORIGIN}/other', '<p>Other</p>')
        await session.new_page(f'{ORIGIN}/other')
        await first.bring_to_front()
        assert session.downloads._find_associated_page() is first

    @pytest.mark.asyncio
    async def test_evaluate_handle(self, open_page):
        page = await open_page('<p id="x">Handle</p>')
        handle = await page.evaluate_handle('query_selector', '#x')
        assert handle is not None
        assert await handle.inner_text() == 'Handle'


class TestSnapshotForAI:
    """Tests for accessibility snapshots with stitched child frames."""

    @pytest.mark.asyncio
    async def test_snapshot_stitches_child_frames(self, host, open_page):
        host.route(f'{ORIGIN}/child', '<button id="go">Go</button>')
        page = await open_page('<h1>Main</h1><iframe src="/child"></iframe>')
        lines = (await page.snapshot_for_ai()).splitlines()
        assert lines[0].startswith('- heading "Main"')
        assert lines[0].endswith('[ref=e1]')
        assert lines[1].startswith('- iframe')
        assert lines[1].endswith('[ref=e2]:')
        assert lines[2] == '  - button "Go" [ref=f1e1]'
        assert page.last_snapshot_frame_ids == [page.frames[1].frame_id]

    @pytest.mark.asyncio
    async def test_aria_ref_clicks_into_child_frame(self, host, open_page):
        host.route(f'{ORIGIN}/child', '<button id="go">Go</button>')
        page = await open_page('<h1>Main</h1><iframe src="/child"></iframe>')
        await page.snapshot_for_ai()
        await page.click('aria-ref=f1e1')
        log = await page.frames[1].evaluate('event_log')
        assert [(entry['type'], entry['target']) for entry in log] == [('click', 'button#go')]

    @pytest.mark.asyncio
    async def test_unknown_frame_ref(self, open_page):
        page = await open_page('<p>Solo</p>')
        await page.snapshot_for_ai()
        with pytest.raises(InvalidSelectorError, match='Invalid frame in aria-ref selector'):
            await page.query_selector('aria-ref=f3e1')

    @pytest.mark.asyncio
    async def test_disabled_and_checked(self, open_page):
        page = await open_page('<button disabled>Off</button><input type="checkbox" checked aria-label="Keep">')
        snapshot = await page.snapshot_for_ai()
        assert '- button "Off" [disabled] [ref=e1]' in snapshot
        assert '- checkbox "Keep" [checked] [ref=e2]' in snapshot
