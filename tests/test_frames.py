"""Tests for frames, frame trees and cross-frame selector resolution.

Each test opens a page whose iframes are served by the in-process host,
then resolves selectors that cross one or more iframe boundaries.
"""

import re

import pytest

from tabwright.browser.views import FrameDetachedError, InvalidSelectorError, TabwrightError

ORIGIN = 'https://example.test'

MAIN_HTML = """
<h1>Main</h1>
<div id="box">Not a frame</div>
<iframe id="outer" name="outer-frame" src="/child"></iframe>
"""
CHILD_HTML = '<p>Child</p><iframe id="inner" src="/grandchild"></iframe>'
GRANDCHILD_HTML = '<button id="deep">Deep</button>'


@pytest.fixture
def nested_page(host, open_page):
    async def factory():
        host.route(f'{ORIGIN}/child', CHILD_HTML)
        host.route(f'{ORIGIN}/grandchild', GRANDCHILD_HTML)
        return await open_page(MAIN_HTML, f'{ORIGIN}/')

    return factory


class TestFrameTree:
    """Tests for the frame tree kept by the frame manager."""

    @pytest.mark.asyncio
    async def test_frames_parents_before_children(self, nested_page):
        """page.frames lists the main frame, the child and the grandchild in tree order."""
        page = await nested_page()
        frames = page.frames
        assert [frame.url for frame in frames] == [f'{ORIGIN}/', f'{ORIGIN}/child', f'{ORIGIN}/grandchild']
        assert frames[1].parent_frame is frames[0]
        assert frames[2].parent_frame is frames[1]
        assert frames[0].is_main_frame
        assert not frames[2].is_main_frame

    @pytest.mark.asyncio
    async def test_frame_lookup_by_name_and_url(self, nested_page):
        page = await nested_page()
        assert page.frame(name='outer-frame').url == f'{ORIGIN}/child'
        assert page.frame(url=re.compile(r'/grandchild$')).url == f'{ORIGIN}/grandchild'
        assert page.frame(name='missing') is None
        with pytest.raises(TabwrightError):
            page.frame()

    @pytest.mark.asyncio
    async def test_child_frames_are_loaded(self, nested_page):
        page = await nested_page()
        for frame in page.frames:
            assert {'domcontentloaded', 'load'} <= frame.fired_lifecycle

    @pytest.mark.asyncio
    async def test_removed_frame_is_detached(self, host, nested_page):
        """Removing a frame on the host detaches it and its subtree."""
        page = await nested_page()
        child, grandchild = page.frames[1], page.frames[2]
        await host.remove_frame(page.tab_id, child.frame_id)
        assert child.is_detached()
        assert grandchild.is_detached()
        assert [frame.url for frame in page.frames] == [f'{ORIGIN}/']
        with pytest.raises(FrameDetachedError):
            await child.get_context()

    @pytest.mark.asyncio
    async def test_navigation_replaces_subtree(self, host, nested_page):
        """A new main document detaches every child frame of the old one."""
        page = await nested_page()
        old_child = page.frames[1]
        host.route(f'{ORIGIN}/plain', '<p>Plain</p>')
        await page.goto(f'{ORIGIN}/plain', wait_until='load')
        assert old_child.is_detached()
        assert len(page.frames) == 1


class TestCrossFrameSelectors:
    """Tests for selectors that enter iframes."""

    @pytest.mark.asyncio
    async def test_grandchild_resolution(self, nested_page):
        """Two enter-frame boundaries resolve into the grandchild document."""
        page = await nested_page()
        handle = await page.query_selector(
            '#outer >> internal:control=enter-frame >> #inner >> internal:control=enter-frame >> button'
        )
        assert handle is not None
        assert await handle.text_content() == 'Deep'
        assert handle.frame.url == f'{ORIGIN}/grandchild'

    @pytest.mark.asyncio
    async def test_frame_locator_chain(self, nested_page):
        page = await nested_page()
        button = page.frame_locator('#outer').frame_locator('#inner').locator('button')
        assert await button.text_content() == 'Deep'
        await button.click()
        log = await page.frames[2].evaluate('event_log')
        assert [entry['type'] for entry in log] == ['click']

    @pytest.mark.asyncio
    async def test_non_iframe_chunk_rejected(self, nested_page):
        page = await nested_page()
        with pytest.raises(InvalidSelectorError, match='did not resolve to an iframe'):
            await page.query_selector('#box >> internal:control=enter-frame >> p')

    @pytest.mark.asyncio
    async def test_missing_frame_rejected(self, nested_page):
        page = await nested_page()
        with pytest.raises(InvalidSelectorError, match='Could not find frame'):
            await page.query_selector('#nope >> internal:control=enter-frame >> p')

    @pytest.mark.asyncio
    async def test_query_all_inside_frame(self, nested_page):
        page = await nested_page()
        handles = await page.query_selector_all('#outer >> internal:control=enter-frame >> p')
        assert [await handle.text_content() for handle in handles] == ['Child']

    @pytest.mark.asyncio
    async def test_content_frame(self, nested_page):
        page = await nested_page()
        iframe = await page.query_selector('#outer')
        frame = await iframe.content_frame()
        assert frame is page.frames[1]
        box = await page.query_selector('#box')
        assert await box.content_frame() is None
