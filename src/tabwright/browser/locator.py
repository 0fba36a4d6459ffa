"""Locators: re-resolving, auto-waiting references to elements.

A locator is only a frame plus a selector string. Every operation resolves
the selector again through the frame, so a locator keeps working across
navigations and DOM replacement.
"""

import json
import logging
import re
from typing import TYPE_CHECKING, Any, Pattern

from tabwright.browser.element import ElementHandle, FilePayload
from tabwright.browser.views import Rect, ScreenshotOptions, SelectorState, TabwrightError
from tabwright.injected.selector_parser import nested_selector_body, quote_selector_text

if TYPE_CHECKING:
    from tabwright.browser.frame import Frame
    from tabwright.browser.page import Page

logger = logging.getLogger(__name__)


# ============================================================================
# Selector builders
# ============================================================================


def _regex_body(pattern: Pattern[str]) -> str:
    flags = ''
    if pattern.flags & re.IGNORECASE:
        flags += 'i'
    if pattern.flags & re.DOTALL:
        flags += 's'
    if pattern.flags & re.MULTILINE:
        flags += 'm'
    return f'/{pattern.pattern}/{flags}'


def _text_body(text: str | Pattern[str], exact: bool) -> str:
    if isinstance(text, re.Pattern):
        return _regex_body(text)
    return quote_selector_text(text, exact)


def get_by_text_selector(text: str | Pattern[str], exact: bool = False) -> str:
    return f'text={_text_body(text, exact)}'


def get_by_label_selector(text: str | Pattern[str], exact: bool = False) -> str:
    return f'internal:label={_text_body(text, exact)}'


def get_by_test_id_selector(test_id: str) -> str:
    return f'data-testid={json.dumps(test_id)}'


def get_by_placeholder_selector(text: str, exact: bool = False) -> str:
    value = json.dumps(text)
    return f'css=[placeholder={value}]' if exact else f'css=[placeholder*={value} i]'


def get_by_role_selector(
    role: str,
    name: str | Pattern[str] | None = None,
    exact: bool = False,
    checked: bool | None = None,
    disabled: bool | None = None,
    level: int | None = None,
    selected: bool | None = None,
    include_hidden: bool | None = None,
) -> str:
    """``role=button[name="Save"s][disabled=false]``"""
    props: list[str] = []
    if name is not None:
        props.append(f'[name={_text_body(name, exact)}]')
    for attr, value in (('checked', checked), ('disabled', disabled), ('selected', selected)):
        if value is not None:
            props.append(f'[{attr}={str(value).lower()}]')
    if level is not None:
        props.append(f'[level={level}]')
    if include_hidden is not None:
        props.append(f'[include-hidden={str(include_hidden).lower()}]')
    return f'role={role}{"".join(props)}'


# ============================================================================
# Locator
# ============================================================================


class Locator:
    """Strict, retrying reference to the elements matching a selector in a frame."""

    def __init__(
        self,
        frame: 'Frame',
        selector: str,
        has_text: str | Pattern[str] | None = None,
        has_not_text: str | Pattern[str] | None = None,
        has: 'Locator | None' = None,
        has_not: 'Locator | None' = None,
    ):
        self._frame = frame
        self._selector = selector
        if has_text is not None:
            self._selector += f' >> internal:has-text={_text_body(has_text, False)}'
        if has_not_text is not None:
            self._selector += f' >> internal:has-not-text={_text_body(has_not_text, False)}'
        if has is not None:
            self._selector += f' >> internal:has={nested_selector_body(self._inner_selector(has, "has"))}'
        if has_not is not None:
            self._selector += f' >> internal:has-not={nested_selector_body(self._inner_selector(has_not, "has_not"))}'

    def __repr__(self) -> str:
        return f'<Locator frame={self._frame.frame_id} selector={self._selector!r}>'

    def _inner_selector(self, other: 'Locator', option: str) -> str:
        if other._frame is not self._frame:
            raise TabwrightError(f'Inner "{option}" locator must belong to the same frame.')
        return other._selector

    @property
    def selector(self) -> str:
        return self._selector

    @property
    def frame(self) -> 'Frame':
        return self._frame

    @property
    def page(self) -> 'Page':
        return self._frame.page

    # ------------------------------------------------------------------
    # Refinement
    # ------------------------------------------------------------------

    def locator(
        self,
        selector_or_locator: 'str | Locator',
        has_text: str | Pattern[str] | None = None,
        has_not_text: str | Pattern[str] | None = None,
        has: 'Locator | None' = None,
        has_not: 'Locator | None' = None,
    ) -> 'Locator':
        if isinstance(selector_or_locator, Locator):
            inner = self._inner_selector(selector_or_locator, 'locator')
            return Locator(self._frame, f'{self._selector} >> {inner}')
        return Locator(
            self._frame,
            f'{self._selector} >> {selector_or_locator}',
            has_text=has_text,
            has_not_text=has_not_text,
            has=has,
            has_not=has_not,
        )

    def filter(
        self,
        has_text: str | Pattern[str] | None = None,
        has_not_text: str | Pattern[str] | None = None,
        has: 'Locator | None' = None,
        has_not: 'Locator | None' = None,
    ) -> 'Locator':
        return Locator(self._frame, self._selector, has_text=has_text, has_not_text=has_not_text, has=has, has_not=has_not)

    def and_(self, locator: 'Locator') -> 'Locator':
        inner = self._inner_selector(locator, 'and')
        return Locator(self._frame, f'{self._selector} >> internal:and={nested_selector_body(inner)}')

    def or_(self, locator: 'Locator') -> 'Locator':
        inner = self._inner_selector(locator, 'or')
        return Locator(self._frame, f'{self._selector} >> internal:or={nested_selector_body(inner)}')

    @property
    def first(self) -> 'Locator':
        return Locator(self._frame, f'{self._selector} >> nth=0')

    @property
    def last(self) -> 'Locator':
        return Locator(self._frame, f'{self._selector} >> nth=-1')

    def nth(self, index: int) -> 'Locator':
        return Locator(self._frame, f'{self._selector} >> nth={index}')

    def frame_locator(self, selector: str) -> 'FrameLocator':
        return FrameLocator(self._frame, f'{self._selector} >> {selector}')

    @property
    def content_frame(self) -> 'FrameLocator':
        return FrameLocator(self._frame, self._selector)

    def get_by_text(self, text: str | Pattern[str], exact: bool = False) -> 'Locator':
        return self.locator(get_by_text_selector(text, exact))

    def get_by_role(self, role: str, name: str | Pattern[str] | None = None, exact: bool = False, **options: Any) -> 'Locator':
        return self.locator(get_by_role_selector(role, name=name, exact=exact, **options))

    def get_by_test_id(self, test_id: str) -> 'Locator':
        return self.locator(get_by_test_id_selector(test_id))

    def get_by_label(self, text: str | Pattern[str], exact: bool = False) -> 'Locator':
        return self.locator(get_by_label_selector(text, exact))

    def get_by_placeholder(self, text: str, exact: bool = False) -> 'Locator':
        return self.locator(get_by_placeholder_selector(text, exact))

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def count(self) -> int:
        return await self._frame.query_count(self._selector)

    async def all(self) -> list['Locator']:
        return [self.nth(index) for index in range(await self.count())]

    async def element_handle(self, timeout: float | None = None) -> ElementHandle:
        handle = await self._frame.wait_for_selector(self._selector, state='attached', timeout=timeout, strict=True)
        if handle is None:
            raise TabwrightError(f'Locator {self._selector} resolved to no element', operation='locator.elementHandle')
        return handle

    async def element_handles(self) -> list[ElementHandle]:
        return await self._frame.query_selector_all(self._selector)

    async def wait_for(self, state: SelectorState = 'visible', timeout: float | None = None) -> None:
        await self._frame.wait_for_selector(self._selector, state=state, timeout=timeout, strict=True)

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def click(self, force: bool = False, modifiers: list[str] | None = None, timeout: float | None = None) -> None:
        await self._frame.click(self._selector, force=force, modifiers=modifiers, timeout=timeout)

    async def tap(self, force: bool = False, timeout: float | None = None) -> None:
        await self._frame.tap(self._selector, force=force, timeout=timeout)

    async def fill(self, value: str, force: bool = False, timeout: float | None = None) -> None:
        await self._frame.fill(self._selector, value, force=force, timeout=timeout)

    async def clear(self, force: bool = False, timeout: float | None = None) -> None:
        await self.fill('', force=force, timeout=timeout)

    async def check(self, force: bool = False, timeout: float | None = None) -> None:
        await self._frame.check(self._selector, force=force, timeout=timeout)

    async def uncheck(self, force: bool = False, timeout: float | None = None) -> None:
        await self._frame.uncheck(self._selector, force=force, timeout=timeout)

    async def set_checked(self, checked: bool, force: bool = False, timeout: float | None = None) -> None:
        await self._frame.set_checked(self._selector, checked, force=force, timeout=timeout)

    async def hover(self, force: bool = False, timeout: float | None = None) -> None:
        await self._frame.hover(self._selector, force=force, timeout=timeout)

    async def focus(self, timeout: float | None = None) -> None:
        await self._frame.focus(self._selector, timeout=timeout)

    async def dispatch_event(self, event_type: str, event_init: dict[str, Any] | None = None, timeout: float | None = None) -> None:
        await self._frame.dispatch_event(self._selector, event_type, event_init, timeout=timeout)

    async def select_option(self, values: str | list[str], force: bool = False, timeout: float | None = None) -> list[str]:
        return await self._frame.select_option(self._selector, values, force=force, timeout=timeout)

    async def set_input_files(self, files: str | FilePayload | list[Any], timeout: float | None = None) -> None:
        await self._frame.set_input_files(self._selector, files, timeout=timeout)

    async def scroll_into_view_if_needed(self, timeout: float | None = None) -> None:
        await self._frame._selector_action(
            'locator.scrollIntoViewIfNeeded', self._selector, lambda p, h: h._scroll_into_view(p), timeout
        )

    # ------------------------------------------------------------------
    # Getters and states
    # ------------------------------------------------------------------

    async def text_content(self, timeout: float | None = None) -> str | None:
        return await self._frame.text_content(self._selector, timeout=timeout)

    async def inner_text(self, timeout: float | None = None) -> str:
        return await self._frame.inner_text(self._selector, timeout=timeout)

    async def inner_html(self, timeout: float | None = None) -> str:
        return await self._frame.inner_html(self._selector, timeout=timeout)

    async def get_attribute(self, name: str, timeout: float | None = None) -> str | None:
        return await self._frame.get_attribute(self._selector, name, timeout=timeout)

    async def input_value(self, timeout: float | None = None) -> str:
        return await self._frame.input_value(self._selector, timeout=timeout)

    async def all_text_contents(self) -> list[str]:
        return [await handle.text_content() or '' for handle in await self.element_handles()]

    async def all_inner_texts(self) -> list[str]:
        return [await handle.inner_text() for handle in await self.element_handles()]

    async def bounding_box(self, timeout: float | None = None) -> Rect | None:
        handle = await self.element_handle(timeout=timeout)
        return await handle.bounding_box()

    async def is_visible(self) -> bool:
        return await self._frame.is_visible(self._selector)

    async def is_hidden(self) -> bool:
        return await self._frame.is_hidden(self._selector)

    async def is_enabled(self, timeout: float | None = None) -> bool:
        return await self._frame.is_enabled(self._selector, timeout=timeout)

    async def is_disabled(self, timeout: float | None = None) -> bool:
        return await self._frame.is_disabled(self._selector, timeout=timeout)

    async def is_editable(self, timeout: float | None = None) -> bool:
        return await self._frame.is_editable(self._selector, timeout=timeout)

    async def is_checked(self, timeout: float | None = None) -> bool:
        return await self._frame.is_checked(self._selector, timeout=timeout)

    async def screenshot(self, options: ScreenshotOptions | None = None, timeout: float | None = None, **kwargs: Any) -> bytes:
        handle = await self.element_handle(timeout=timeout)
        return await handle.screenshot(options, **kwargs)


class FrameLocator:
    """Points into the content frame of the iframe matched by a selector."""

    def __init__(self, frame: 'Frame', frame_selector: str):
        self._frame = frame
        self._frame_selector = frame_selector

    def __repr__(self) -> str:
        return f'<FrameLocator frame={self._frame.frame_id} selector={self._frame_selector!r}>'

    def locator(
        self,
        selector: str,
        has_text: str | Pattern[str] | None = None,
        has_not_text: str | Pattern[str] | None = None,
        has: 'Locator | None' = None,
        has_not: 'Locator | None' = None,
    ) -> Locator:
        return Locator(
            self._frame,
            f'{self._frame_selector} >> internal:control=enter-frame >> {selector}',
            has_text=has_text,
            has_not_text=has_not_text,
            has=has,
            has_not=has_not,
        )

    def frame_locator(self, selector: str) -> 'FrameLocator':
        return FrameLocator(self._frame, f'{self._frame_selector} >> internal:control=enter-frame >> {selector}')

    @property
    def owner(self) -> Locator:
        return Locator(self._frame, self._frame_selector)

    @property
    def first(self) -> 'FrameLocator':
        return FrameLocator(self._frame, f'{self._frame_selector} >> nth=0')

    @property
    def last(self) -> 'FrameLocator':
        return FrameLocator(self._frame, f'{self._frame_selector} >> nth=-1')

    def nth(self, index: int) -> 'FrameLocator':
        return FrameLocator(self._frame, f'{self._frame_selector} >> nth={index}')

    def get_by_text(self, text: str | Pattern[str], exact: bool = False) -> Locator:
        return self.locator(get_by_text_selector(text, exact))

    def get_by_role(self, role: str, name: str | Pattern[str] | None = None, exact: bool = False, **options: Any) -> Locator:
        return self.locator(get_by_role_selector(role, name=name, exact=exact, **options))

    def get_by_test_id(self, test_id: str) -> Locator:
        return self.locator(get_by_test_id_selector(test_id))

    def get_by_label(self, text: str | Pattern[str], exact: bool = False) -> Locator:
        return self.locator(get_by_label_selector(text, exact))
