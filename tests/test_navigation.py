"""Tests for navigation tracking, readiness barriers and page navigation.

The first half drives the NavigationTracker and ReadinessManager directly
with host events; the second half navigates real pages of the MemoryHost.
"""

import asyncio
import re
import time

import pytest
import pytest_asyncio
from bubus import EventBus

from tabwright.browser.events import (
    NavigationCommittedEvent,
    NavigationCompletedEvent,
    NavigationDOMContentLoadedEvent,
    PageMessageEvent,
)
from tabwright.browser.navigation import NavigationTracker, normalize_url, with_implied_stages
from tabwright.browser.readiness import ReadinessManager
from tabwright.browser.session import BrowserSession
from tabwright.browser.views import (
    ContextDestroyedError,
    FrameDetachedError,
    NavigationAbortedError,
    NavigationEvent,
    TabwrightError,
    TimeoutError,
    URLNotAllowedError,
)
from tabwright.host.base import NAVIGATION_MESSAGE_TYPE
from tabwright.host.memory import MemoryHost

ORIGIN = 'https://example.test'


@pytest_asyncio.fixture
async def tracker():
    bus = EventBus()
    readiness = ReadinessManager(event_bus=bus)
    navigation = NavigationTracker(event_bus=bus, readiness_manager=readiness)
    yield navigation
    await readiness.dispose()
    await bus.stop(clear=True, timeout=5)


async def commit(tracker: NavigationTracker, url: str, document_id: str, frame_id: int = 0) -> None:
    await tracker.on_NavigationCommittedEvent(
        NavigationCommittedEvent(tab_id=1, frame_id=frame_id, url=url, document_id=document_id)
    )


async def ready(tracker: NavigationTracker, document_id: str, frame_id: int = 0) -> None:
    await tracker.on_PageMessageEvent(
        PageMessageEvent(
            tab_id=1,
            frame_id=frame_id,
            type=NAVIGATION_MESSAGE_TYPE,
            detail={'event': 'ready', 'document_id': document_id},
        )
    )


class TestNavigationHelpers:
    def test_normalize_url(self):
        assert normalize_url('HTTPS://Example.TEST') == 'https://example.test/'
        assert normalize_url('about:blank') == 'about:blank'

    def test_implied_stages(self):
        assert with_implied_stages('load') == {'commit', 'domcontentloaded', 'load'}
        assert with_implied_stages('commit') == {'commit'}


class TestNavigationTracker:
    """Tests for NavigationTracker event handling."""

    @pytest.mark.asyncio
    async def test_commit_clears_lifecycle(self, tracker):
        await commit(tracker, f'{ORIGIN}/a', 'doc-1')
        await tracker.on_NavigationCompletedEvent(
            NavigationCompletedEvent(tab_id=1, frame_id=0, url=f'{ORIGIN}/a', document_id='doc-1')
        )
        assert tracker.lifecycle(1, 0) == {'commit', 'domcontentloaded', 'load'}
        await commit(tracker, f'{ORIGIN}/b', 'doc-2')
        assert tracker.lifecycle(1, 0) == {'commit'}
        assert tracker.get_state(1, 0).document_id == 'doc-2'

    @pytest.mark.asyncio
    async def test_stale_lifecycle_ignored(self, tracker):
        """Lifecycle events of a replaced document do not leak into the new one."""
        await commit(tracker, f'{ORIGIN}/a', 'doc-1')
        await commit(tracker, f'{ORIGIN}/b', 'doc-2')
        await tracker.on_NavigationDOMContentLoadedEvent(
            NavigationDOMContentLoadedEvent(tab_id=1, frame_id=0, url=f'{ORIGIN}/a', document_id='doc-1')
        )
        assert tracker.lifecycle(1, 0) == {'commit'}

    @pytest.mark.asyncio
    async def test_same_document_commit_keeps_lifecycle(self, tracker):
        await commit(tracker, f'{ORIGIN}/a', 'doc-1')
        await tracker.on_NavigationCompletedEvent(
            NavigationCompletedEvent(tab_id=1, frame_id=0, url=f'{ORIGIN}/a', document_id='doc-1')
        )
        events: list[NavigationEvent] = []
        tracker.subscribe(1, events.append)
        await commit(tracker, f'{ORIGIN}/a#top', 'doc-1')
        assert 'load' in tracker.lifecycle(1, 0)
        assert [event.kind for event in events] == ['same_document']

    @pytest.mark.asyncio
    async def test_subscribers_see_events_in_order(self, tracker):
        events: list[NavigationEvent] = []
        unsubscribe = tracker.subscribe(1, events.append)
        await commit(tracker, f'{ORIGIN}/a', 'doc-1')
        await tracker.on_NavigationDOMContentLoadedEvent(
            NavigationDOMContentLoadedEvent(tab_id=1, frame_id=0, url=f'{ORIGIN}/a', document_id='doc-1')
        )
        await tracker.on_NavigationCompletedEvent(
            NavigationCompletedEvent(tab_id=1, frame_id=0, url=f'{ORIGIN}/a', document_id='doc-1')
        )
        unsubscribe()
        await commit(tracker, f'{ORIGIN}/b', 'doc-2')
        assert [event.kind for event in events] == ['committed', 'domcontentloaded', 'load']

    @pytest.mark.asyncio
    async def test_waiter_resolves_at_requested_stage(self, tracker):
        waiter = tracker.expect_navigation(1, 0, f'{ORIGIN}/a', 'load')
        await commit(tracker, f'{ORIGIN}/a', 'doc-1')
        assert not waiter._future.done()
        await tracker.on_NavigationCompletedEvent(
            NavigationCompletedEvent(tab_id=1, frame_id=0, url=f'{ORIGIN}/a', document_id='doc-1')
        )
        event = await waiter.wait(timeout_ms=1000)
        assert event.url == f'{ORIGIN}/a'
        assert event.document_id == 'doc-1'

    @pytest.mark.asyncio
    async def test_networkidle_waiter_needs_readiness_not_load(self, tracker):
        """A networkidle waiter resolves on the new document's ready signal, before any load."""
        waiter = tracker.expect_navigation(1, 0, f'{ORIGIN}/a', 'networkidle')
        waiting = asyncio.create_task(waiter.wait(timeout_ms=1000))
        await commit(tracker, f'{ORIGIN}/a', 'doc-1')
        await asyncio.sleep(0.01)
        assert not waiting.done()
        await ready(tracker, 'doc-1')
        event = await asyncio.wait_for(waiting, 1)
        assert event.document_id == 'doc-1'
        assert 'load' not in tracker.lifecycle(1, 0)

    @pytest.mark.asyncio
    async def test_waiter_ignores_other_urls(self, tracker):
        waiter = tracker.expect_navigation(1, 0, f'{ORIGIN}/b', 'commit')
        await commit(tracker, f'{ORIGIN}/a', 'doc-1')
        with pytest.raises(TimeoutError):
            await waiter.wait(timeout_ms=50)

    @pytest.mark.asyncio
    async def test_waiter_requiring_new_document_skips_history(self, tracker):
        await commit(tracker, f'{ORIGIN}/a', 'doc-1')
        waiter = tracker.expect_navigation(1, 0, None, 'commit', requires_new_document=True)
        await commit(tracker, f'{ORIGIN}/a#x', 'doc-1')
        assert not waiter._future.done()
        await commit(tracker, f'{ORIGIN}/a', 'doc-2')
        event = await waiter.wait(timeout_ms=1000)
        assert event.document_id == 'doc-2'

    @pytest.mark.asyncio
    async def test_detached_frame_rejects_waiter(self, tracker):
        await commit(tracker, f'{ORIGIN}/child', 'doc-1', frame_id=3)
        waiter = tracker.expect_navigation(1, 3)
        tracker._detach(1, 3)
        with pytest.raises(FrameDetachedError):
            await waiter.wait(timeout_ms=1000)
        assert tracker.get_state(1, 3) is None


class TestReadiness:
    """Tests for readiness barriers."""

    @pytest.mark.asyncio
    async def test_commit_resets_barrier_before_anyone_waits(self, tracker):
        """A wait started right after a commit blocks until the new document is ready."""
        await commit(tracker, f'{ORIGIN}/a', 'doc-1')
        await ready(tracker, 'doc-1')
        barrier = tracker.readiness_manager.get_barrier(1, 0)
        assert barrier.is_ready()

        await commit(tracker, f'{ORIGIN}/b', 'doc-2')
        assert not barrier.is_ready()
        assert barrier.reset_count == 2
        waiting = asyncio.create_task(barrier.wait_for_ready())
        await asyncio.sleep(0.01)
        assert not waiting.done()
        await ready(tracker, 'doc-2')
        await asyncio.wait_for(waiting, 1)

    @pytest.mark.asyncio
    async def test_stale_ready_signal_ignored(self, tracker):
        await commit(tracker, f'{ORIGIN}/a', 'doc-1')
        await commit(tracker, f'{ORIGIN}/b', 'doc-2')
        await ready(tracker, 'doc-1')
        assert not tracker.readiness_manager.get_barrier(1, 0).is_ready()

    @pytest.mark.asyncio
    async def test_reset_rejects_pending_waiters(self, tracker):
        await commit(tracker, f'{ORIGIN}/a', 'doc-1')
        barrier = tracker.readiness_manager.get_barrier(1, 0)
        waiting = asyncio.create_task(barrier.wait_for_ready())
        await asyncio.sleep(0)
        await commit(tracker, f'{ORIGIN}/b', 'doc-2')
        with pytest.raises(ContextDestroyedError):
            await waiting

    @pytest.mark.asyncio
    async def test_removed_barrier_rejects_waiters(self, tracker):
        manager = tracker.readiness_manager
        barrier = manager.get_barrier(1, 5)
        waiting = asyncio.create_task(barrier.wait_for_ready())
        await asyncio.sleep(0)
        manager.remove_barrier(1, 5)
        with pytest.raises(FrameDetachedError):
            await waiting
        assert manager.peek_barrier(1, 5) is None

    @pytest.mark.asyncio
    async def test_sweep_drops_stale_barriers(self, tracker):
        manager = tracker.readiness_manager
        manager.get_barrier(1, 0)
        busy = manager.get_barrier(1, 1)
        waiting = asyncio.create_task(busy.wait_for_ready())
        await asyncio.sleep(0)
        assert manager.sweep(now=time.monotonic() + manager.STALE_AFTER_S + 1) == 1
        assert manager.peek_barrier(1, 0) is None
        assert manager.peek_barrier(1, 1) is busy
        busy.mark_ready()
        await waiting

    @pytest.mark.asyncio
    async def test_barrier_cap_evicts_oldest(self, tracker, monkeypatch):
        monkeypatch.setattr(ReadinessManager, 'MAX_BARRIERS', 5)
        monkeypatch.setattr(ReadinessManager, 'EVICTION_SLACK', 1)
        manager = tracker.readiness_manager
        for frame_id in range(7):
            manager.get_barrier(1, frame_id)
        assert manager.barrier_count <= 5
        assert manager.peek_barrier(1, 6) is not None
        assert manager.peek_barrier(1, 0) is None


class TestPageNavigation:
    """Tests for navigation through pages of the in-process host."""

    @pytest.mark.asyncio
    async def test_goto_waits_for_load(self, host, open_page):
        page = await open_page('<a href="/next">Next</a>', f'{ORIGIN}/')
        host.route(f'{ORIGIN}/next', '<title>Next</title><p>Second</p>')
        event = await page.goto('/next', wait_until='load')
        assert event.url == f'{ORIGIN}/next'
        assert page.url == f'{ORIGIN}/next'
        assert await page.title() == 'Next'
        assert 'load' in page.main_frame.fired_lifecycle

    @pytest.mark.asyncio
    async def test_goto_disallowed_scheme(self, open_page):
        page = await open_page('<p>Start</p>')
        with pytest.raises(URLNotAllowedError):
            await page.goto('file:///etc/passwd')
        with pytest.raises(URLNotAllowedError):
            await page.goto('javascript:alert(1)')

    @pytest.mark.asyncio
    async def test_goto_network_error(self, host, open_page):
        page = await open_page('<p>Start</p>')
        host.route_error(f'{ORIGIN}/down', 'net::ERR_CONNECTION_REFUSED')
        with pytest.raises(NavigationAbortedError, match='ERR_CONNECTION_REFUSED'):
            await page.goto(f'{ORIGIN}/down', timeout=2000)
        assert page.url == f'{ORIGIN}/'

    @pytest.mark.asyncio
    async def test_reload_creates_new_document(self, open_page):
        page = await open_page('<p>Start</p>')
        before = page.main_frame.document_id
        await page.reload()
        assert page.main_frame.document_id != before
        assert page.url == f'{ORIGIN}/'

    @pytest.mark.asyncio
    async def test_back_and_forward(self, host, open_page):
        page = await open_page('<p>Start</p>')
        host.route(f'{ORIGIN}/two', '<p>Two</p>')
        await page.goto(f'{ORIGIN}/two', wait_until='load')
        await page.go_back()
        assert page.url == f'{ORIGIN}/'
        await page.go_forward()
        assert page.url == f'{ORIGIN}/two'
        assert await page.go_forward() is None

    @pytest.mark.asyncio
    async def test_go_back_at_start_returns_none(self, open_page):
        page = await open_page('<p>Start</p>')
        assert await page.go_back() is None

    @pytest.mark.asyncio
    async def test_push_state_is_same_document(self, host, open_page):
        page = await open_page('<p>Start</p>')
        document_id = page.main_frame.document_id
        await page.evaluate('history_push_state', '/step-2')
        await host.idle()
        assert page.url == f'{ORIGIN}/step-2'
        assert page.main_frame.document_id == document_id
        await page.go_back()
        assert page.url == f'{ORIGIN}/'
        assert page.main_frame.document_id == document_id

    @pytest.mark.asyncio
    async def test_expect_navigation_around_link_click(self, host, open_page):
        page = await open_page('<a id="next" href="/next">Next</a>')
        host.route(f'{ORIGIN}/next', '<p>Second</p>')
        async with page.expect_navigation(timeout=2000) as navigation:
            await page.click('#next')
        assert navigation.url == f'{ORIGIN}/next'

    @pytest.mark.asyncio
    async def test_form_submit_navigates_with_query(self, host, open_page):
        page = await open_page(
            '<form action="/search"><input name="q"><input type="checkbox" name="safe" checked>'
            '<button>Search</button></form>'
        )
        host.route(f'{ORIGIN}/search?q=cats&safe=on', '<p>Results</p>')
        await page.fill('input[name=q]', 'cats')
        async with page.expect_navigation(timeout=2000):
            await page.click('button')
        assert page.url == f'{ORIGIN}/search?q=cats&safe=on'

    @pytest.mark.asyncio
    async def test_wait_for_url(self, host, open_page):
        page = await open_page('<a id="next" href="/done">Done</a>')
        host.route(f'{ORIGIN}/done', '<p>Done</p>')
        await page.click('#next')
        await page.wait_for_url(re.compile(r'/done$'), timeout=2000)
        assert page.url == f'{ORIGIN}/done'
        await page.wait_for_url(f'{ORIGIN}/done', timeout=100)

    @pytest.mark.asyncio
    async def test_load_state_after_load_is_immediate(self, open_page):
        """Earlier stages count as reached once load has fired."""
        page = await open_page('<p>Loaded</p>')
        await page.wait_for_load_state('domcontentloaded', timeout=50)
        await page.wait_for_load_state('commit', timeout=50)
        await page.wait_for_load_state('networkidle', timeout=50)

    @pytest.mark.asyncio
    async def test_visited_origins(self, host, open_page):
        page = await open_page('<p>Start</p>')
        host.route('https://other.test/', '<p>Other</p>')
        await page.goto('https://other.test/', wait_until='load')
        assert page.visited_origins == {'https://example.test', 'https://other.test'}


class TestExecutionContexts:
    """Tests for execution contexts across document changes."""

    @pytest.mark.asyncio
    async def test_pending_call_fails_when_document_commits(self, host, open_page):
        page = await open_page('<p>Old</p>', f'{ORIGIN}/')
        host.route(f'{ORIGIN}/next', '<p>New</p>')
        context = await page.main_frame.get_context()
        host.latency_ms = 200
        call = asyncio.create_task(context.execute_script('document_info'))
        await asyncio.sleep(0.01)
        await host.navigate(page.tab_id, 0, f'{ORIGIN}/next')
        with pytest.raises(ContextDestroyedError):
            await call
        assert context.is_destroyed
        host.latency_ms = 0
        assert await page.text_content('p') == 'New'

    @pytest.mark.asyncio
    async def test_handle_rejected_by_other_context(self, host, open_page):
        page = await open_page('<p>Old</p>', f'{ORIGIN}/')
        host.route(f'{ORIGIN}/next', '<p>New</p>')
        handle = await page.query_selector('p')
        await page.goto('/next', wait_until='load')
        new_context = await page.main_frame.get_context()
        assert new_context is not handle.context
        with pytest.raises(TabwrightError, match='only in the context they were created in'):
            await new_context.execute_script('text_content', handle, world=handle.world)

    @pytest.mark.asyncio
    async def test_handle_rejected_by_other_world(self, open_page):
        page = await open_page('<p>Same</p>')
        handle = await page.query_selector('p')
        other_world = 'MAIN' if handle.world == 'ISOLATED' else 'ISOLATED'
        with pytest.raises(TabwrightError, match='only in the context they were created in'):
            await handle.context.execute_script('text_content', handle, world=other_world)


class TestNetworkIdle:
    """Tests for load-state waits on a host that stops after commit."""

    @pytest.mark.asyncio
    async def test_lifecycle_waiter_removed_on_timeout(self, tmp_path):
        host = MemoryHost(auto_load=False, downloads_dir=tmp_path)
        host.route(f'{ORIGIN}/', '<p>Start</p>')
        async with BrowserSession(host=host) as session:
            page = await session.new_page(f'{ORIGIN}/')
            with pytest.raises(TimeoutError):
                await page.wait_for_load_state('load', timeout=50)
            assert page.main_frame._lifecycle_waiters == []

    @pytest.mark.asyncio
    async def test_ready_before_load_satisfies_networkidle(self, tmp_path):
        host = MemoryHost(auto_load=False, downloads_dir=tmp_path)
        host.route(f'{ORIGIN}/', '<p>Start</p>')
        host.route(f'{ORIGIN}/b', '<p>Second</p>')
        async with BrowserSession(host=host) as session:
            page = await session.new_page(f'{ORIGIN}/')
            await page.goto(f'{ORIGIN}/b', wait_until='commit', timeout=2000)
            idle = asyncio.create_task(page.wait_for_load_state('networkidle', timeout=2000))
            await asyncio.sleep(0.05)
            assert not idle.done()
            await host.signal_ready(page.tab_id)
            await asyncio.wait_for(idle, 1)
            assert 'load' not in page.main_frame.fired_lifecycle

    @pytest.mark.asyncio
    async def test_goto_networkidle_resolves_without_load(self, tmp_path):
        host = MemoryHost(auto_load=False, downloads_dir=tmp_path)
        host.route(f'{ORIGIN}/', '<p>Start</p>')
        host.route(f'{ORIGIN}/b', '<p>Second</p>')
        async with BrowserSession(host=host) as session:
            page = await session.new_page(f'{ORIGIN}/')
            going = asyncio.create_task(page.goto(f'{ORIGIN}/b', wait_until='networkidle', timeout=2000))
            await asyncio.sleep(0.05)
            assert page.url == f'{ORIGIN}/b'
            assert not going.done()
            await host.signal_ready(page.tab_id)
            event = await asyncio.wait_for(going, 1)
            assert event.url == f'{ORIGIN}/b'
            assert 'load' not in page.main_frame.fired_lifecycle
