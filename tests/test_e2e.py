"""End-to-end navigation scenario with manually driven page lifecycle.

The host stops every navigation right after commit, so each step between
commit, readiness and load can be observed from the session side.
"""

import asyncio

import pytest
import pytest_asyncio

from tabwright.browser.events import ExecutionContextDestroyedEvent, ReadinessBarrierResetEvent
from tabwright.browser.session import BrowserSession
from tabwright.host.memory import MemoryHost

ORIGIN = 'https://a.test'


@pytest_asyncio.fixture
async def manual_session(tmp_path):
    host = MemoryHost(viewport_width=800, viewport_height=600, auto_load=False, downloads_dir=tmp_path)
    host.route(f'{ORIGIN}/', '<h1>Start</h1><a id="next" href="/b">Next</a>')
    host.route(f'{ORIGIN}/b', '<h1>Second</h1>')
    session = BrowserSession(host=host)
    await session.start()
    yield host, session
    await session.stop()


class TestManualLifecycle:
    """A link click observed one lifecycle step at a time."""

    @pytest.mark.asyncio
    async def test_link_click_commit_then_load(self, manual_session):
        host, session = manual_session
        page = await session.new_page(f'{ORIGIN}/')
        await page.query_selector('a#next')
        await session.event_bus.wait_until_idle()

        destroyed: list[ExecutionContextDestroyedEvent] = []
        resets: list[ReadinessBarrierResetEvent] = []

        def on_destroyed(event: ExecutionContextDestroyedEvent) -> None:
            destroyed.append(event)

        def on_reset(event: ReadinessBarrierResetEvent) -> None:
            resets.append(event)

        session.event_bus.on(ExecutionContextDestroyedEvent, on_destroyed)
        session.event_bus.on(ReadinessBarrierResetEvent, on_reset)

        await page.click('a#next')
        await host.idle()
        frame = page.main_frame
        assert page.url == f'{ORIGIN}/b'
        assert frame.fired_lifecycle == set()
        assert not session.readiness_manager.get_barrier(page.tab_id, 0).is_ready()

        await host.finish_load(page.tab_id)
        assert frame.fired_lifecycle == {'commit', 'domcontentloaded', 'load'}
        assert session.readiness_manager.get_barrier(page.tab_id, 0).is_ready()

        await session.event_bus.wait_until_idle()
        assert [(event.tab_id, event.frame_id) for event in destroyed] == [(page.tab_id, 0)]
        assert [(event.tab_id, event.frame_id) for event in resets] == [(page.tab_id, 0)]
        assert await page.text_content('h1') == 'Second'

    @pytest.mark.asyncio
    async def test_commit_wait_resolves_before_load(self, manual_session):
        host, session = manual_session
        page = await session.new_page(f'{ORIGIN}/')
        event = await page.goto(f'{ORIGIN}/b', wait_until='commit', timeout=2000)
        assert event.url == f'{ORIGIN}/b'
        assert page.main_frame.fired_lifecycle == set()
        await page.wait_for_load_state('commit', timeout=50)

        loading = asyncio.create_task(page.wait_for_load_state('load', timeout=2000))
        await asyncio.sleep(0.05)
        assert not loading.done()
        await host.finish_load(page.tab_id)
        await loading

    @pytest.mark.asyncio
    async def test_actions_wait_for_readiness(self, manual_session):
        """A query issued before the new document is ready waits for its readiness signal."""
        host, session = manual_session
        page = await session.new_page(f'{ORIGIN}/')
        await page.goto(f'{ORIGIN}/b', wait_until='commit', timeout=2000)

        reading = asyncio.create_task(page.text_content('h1', timeout=5000))
        await asyncio.sleep(0.05)
        assert not reading.done()
        await host.finish_load(page.tab_id)
        assert await asyncio.wait_for(reading, 1) == 'Second'

    @pytest.mark.asyncio
    async def test_domcontentloaded_before_load(self, manual_session):
        host, session = manual_session
        page = await session.new_page(f'{ORIGIN}/')
        await page.goto(f'{ORIGIN}/b', wait_until='commit', timeout=2000)
        await host.fire_dom_content_loaded(page.tab_id)
        assert page.main_frame.fired_lifecycle == {'commit', 'domcontentloaded'}
        await page.wait_for_load_state('domcontentloaded', timeout=50)
        await host.signal_ready(page.tab_id)
        await host.fire_load(page.tab_id)
        assert 'load' in page.main_frame.fired_lifecycle
