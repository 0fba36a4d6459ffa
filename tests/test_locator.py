"""Tests for locators and selector-based actions.

Locators are lazy: every call re-resolves the selector, retries while the
element is missing or detached, and enforces strict mode for actions.
"""

import asyncio
import re

import pytest
from bs4 import BeautifulSoup

from tabwright.browser.views import StrictModeViolationError, TabwrightError, TimeoutError

FORM_HTML = """
<form action="/search" method="get">
  <label for="q">Query</label>
  <input id="q" name="q" placeholder="Search here">
  <label><input id="agree" type="checkbox" name="agree"> I agree</label>
  <input type="radio" name="size" id="small" value="s">
  <input type="radio" name="size" id="large" value="l" checked>
  <select id="color"><option value="r">Red</option><option value="g">Green</option></select>
  <textarea id="notes"></textarea>
  <input id="ro" readonly value="fixed">
  <input id="upload" type="file">
  <button type="submit" data-testid="go">Go</button>
</form>
<ul>
  <li class="row">One <span class="tag">new</span></li>
  <li class="row">Two</li>
  <li class="row">Three</li>
</ul>
<button id="off" disabled>Off</button>
<p id="gone" style="display:none">Hidden text</p>
<div id="slot"></div>
<div style="position:absolute; left:100px; top:50px"><span id="pos" style="left:10px; top:20px; width:30px; height:40px">Box</span></div>
"""


@pytest.fixture
def form_page(open_page):
    async def factory():
        return await open_page(FORM_HTML)

    return factory


class TestLocatorQueries:
    """Tests for locator construction and resolution."""

    @pytest.mark.asyncio
    async def test_count_and_texts(self, form_page):
        page = await form_page()
        rows = page.locator('li.row')
        assert await rows.count() == 3
        assert await rows.all_inner_texts() == ['One new', 'Two', 'Three']
        assert len(await rows.all()) == 3

    @pytest.mark.asyncio
    async def test_first_last_nth(self, form_page):
        page = await form_page()
        rows = page.locator('li.row')
        assert await rows.last.inner_text() == 'Three'
        assert await rows.nth(1).inner_text() == 'Two'
        assert (await rows.first.inner_text()).startswith('One')

    @pytest.mark.asyncio
    async def test_filter(self, form_page):
        page = await form_page()
        rows = page.locator('li.row')
        assert await rows.filter(has_text='two').inner_text() == 'Two'
        assert await rows.filter(has=page.locator('span.tag')).count() == 1
        assert await rows.filter(has_not_text=re.compile('^T')).count() == 1
        assert await page.locator('li', has_text='Three').count() == 1

    @pytest.mark.asyncio
    async def test_and_or(self, form_page):
        page = await form_page()
        enabled_off = page.locator('button').and_(page.locator('#off'))
        assert await enabled_off.count() == 1
        either = page.locator('#q').or_(page.locator('#notes'))
        assert await either.count() == 2

    @pytest.mark.asyncio
    async def test_get_by_helpers(self, form_page):
        page = await form_page()
        assert await page.get_by_label('Query').get_attribute('id') == 'q'
        assert await page.get_by_placeholder('Search here').get_attribute('id') == 'q'
        assert await page.get_by_test_id('go').inner_text() == 'Go'
        assert await page.get_by_role('button', name='Go').count() == 1
        assert await page.get_by_role('checkbox').count() == 1
        assert await page.get_by_text('Two', exact=True).count() == 1
        assert await page.locator('ul').get_by_text(re.compile('^thr', re.I)).count() == 1

    @pytest.mark.asyncio
    async def test_inner_locator_from_other_frame_rejected(self, host, form_page):
        page = await form_page()
        host.route('https://example.test/other', '<p>x</p>')
        other = await page.session.new_page('https://example.test/other')
        with pytest.raises(TabwrightError, match='must belong to the same frame'):
            page.locator('li').filter(has=other.locator('p'))


class TestLocatorActions:
    """Tests for locator actions and element state queries."""

    @pytest.mark.asyncio
    async def test_fill_and_input_value(self, form_page):
        page = await form_page()
        field = page.get_by_label('Query')
        await field.fill('cats')
        assert await field.input_value() == 'cats'
        await field.clear()
        assert await field.input_value() == ''
        await page.fill('#notes', 'line')
        assert await page.input_value('#notes') == 'line'

    @pytest.mark.asyncio
    async def test_fill_readonly_rejected(self, form_page):
        page = await form_page()
        with pytest.raises(TabwrightError, match='not editable') as exc_info:
            await page.fill('#ro', 'changed', timeout=1000)
        assert exc_info.value.operation == 'frame.fill'

    @pytest.mark.asyncio
    async def test_check_and_uncheck(self, form_page):
        page = await form_page()
        agree = page.get_by_label('I agree')
        await agree.check()
        assert await agree.is_checked()
        await agree.uncheck()
        assert not await agree.is_checked()

    @pytest.mark.asyncio
    async def test_radio_group(self, form_page):
        page = await form_page()
        await page.check('#small')
        assert await page.is_checked('#small')
        assert not await page.is_checked('#large')
        with pytest.raises(TabwrightError, match='Cannot uncheck radio button'):
            await page.uncheck('#small', timeout=1000)

    @pytest.mark.asyncio
    async def test_select_option(self, form_page):
        page = await form_page()
        assert await page.select_option('#color', 'Green') == ['g']
        assert await page.input_value('#color') == 'g'

    @pytest.mark.asyncio
    async def test_set_input_files(self, form_page, tmp_path):
        page = await form_page()
        upload = tmp_path / 'report.csv'
        upload.write_text('a,b\n')
        await page.set_input_files('#upload', str(upload))
        assert await page.input_value('#upload') == 'C:\\fakepath\\report.csv'

    @pytest.mark.asyncio
    async def test_click_records_event(self, form_page):
        page = await form_page()
        await page.locator('li.row').nth(1).click(modifiers=['Shift'])
        await page.hover('#q')
        await page.dispatch_event('#notes', 'custom', {'detail': 1})
        log = await page.evaluate('event_log')
        assert [(entry['type'], entry['target']) for entry in log] == [
            ('click', 'li.row'),
            ('mouseover', 'input#q'),
            ('custom', 'textarea#notes'),
        ]
        assert log[0]['modifiers'] == ['Shift']

    @pytest.mark.asyncio
    async def test_states(self, form_page):
        page = await form_page()
        assert await page.is_disabled('#off')
        assert await page.is_enabled('#q')
        assert await page.is_editable('#q')
        assert not await page.is_editable('#ro')
        assert await page.is_hidden('#gone')
        assert not await page.is_visible('#missing')
        assert await page.locator('#q').is_visible()

    @pytest.mark.asyncio
    async def test_click_disabled_fails(self, form_page):
        page = await form_page()
        with pytest.raises(TabwrightError, match='disabled'):
            await page.click('#off', timeout=1000)

    @pytest.mark.asyncio
    async def test_strict_mode_violation(self, form_page):
        page = await form_page()
        with pytest.raises(StrictModeViolationError, match='resolved to 3 elements'):
            await page.locator('li.row').click(timeout=1000)

    @pytest.mark.asyncio
    async def test_element_handle(self, form_page):
        page = await form_page()
        handle = await page.get_by_test_id('go').element_handle()
        assert await handle.get_attribute('type') == 'submit'
        box = await page.locator('#pos').bounding_box()
        assert (box.x, box.y, box.width, box.height) == (110, 70, 30, 40)
        assert await page.locator('#q').bounding_box() is None

    @pytest.mark.asyncio
    async def test_element_handle_without_match_raises(self, form_page, monkeypatch):
        page = await form_page()

        async def no_element(*args, **kwargs):
            return None

        monkeypatch.setattr(page.main_frame, 'wait_for_selector', no_element)
        with pytest.raises(TabwrightError, match='resolved to no element'):
            await page.locator('#q').element_handle()


class TestLocatorRetries:
    """Tests for the retrying behaviour of locator actions."""

    @pytest.mark.asyncio
    async def test_never_matching_selector_times_out(self, form_page):
        """A click on a selector that never matches ends at its deadline."""
        page = await form_page()
        loop = asyncio.get_running_loop()
        started = loop.time()
        with pytest.raises(TimeoutError) as exc_info:
            await page.locator('#never').click(timeout=400)
        elapsed = loop.time() - started
        assert 0.35 <= elapsed < 2.0
        assert exc_info.value.operation == 'frame.click'
        assert 'waiting for #never' in exc_info.value.call_log

    @pytest.mark.asyncio
    async def test_click_waits_for_late_element(self, host, form_page):
        """An element inserted after the first attempt is found by a retry."""
        page = await form_page()
        document = host.document(page.tab_id)

        async def insert_later() -> None:
            await asyncio.sleep(0.1)
            fragment = BeautifulSoup('<button id="late">Late</button>', 'html.parser')
            document.soup.find(id='slot').append(fragment.button)

        inserter = asyncio.create_task(insert_later())
        await page.click('#late', timeout=3000)
        await inserter
        log = await page.evaluate('event_log')
        assert log[-1]['target'] == 'button#late'

    @pytest.mark.asyncio
    async def test_wait_for_states(self, host, form_page):
        page = await form_page()
        await page.locator('#q').wait_for()
        await page.locator('#gone').wait_for(state='hidden')
        await page.locator('#never').wait_for(state='detached')
        with pytest.raises(TimeoutError):
            await page.locator('#gone').wait_for(state='visible', timeout=200)
        assert await page.wait_for_selector('#never', state='detached') is None

    @pytest.mark.asyncio
    async def test_locator_resolves_again_after_navigation(self, host, open_page):
        """The same locator acts on the new document after a navigation."""
        page = await open_page('<button id="go">First</button>')
        button = page.locator('#go')
        assert await button.inner_text() == 'First'
        host.route('https://example.test/next', '<button id="go">Second</button>')
        await page.goto('/next', wait_until='load')
        assert await button.inner_text() == 'Second'
        await button.click()
        log = await page.evaluate('event_log')
        assert [(entry['type'], entry['target']) for entry in log] == [('click', 'button#go')]
