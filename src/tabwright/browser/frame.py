"""Frame: one node of a tab's frame tree.

A frame tracks the lifecycle stages of its current document, owns the
execution context of that document, and exposes retrying selector-based
operations. The frame manager feeds it navigation events; everything else
goes through the host.
"""

import asyncio
import logging
import re
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, Callable, Pattern, TypeVar
from urllib.parse import urljoin, urlsplit

from tabwright.browser.context import FrameExecutionContext
from tabwright.browser.element import ElementHandle, FilePayload, _action_options, file_payloads
from tabwright.browser.frame_selectors import FrameSelectors
from tabwright.browser.navigation import lifecycle_stage, normalize_url, with_implied_stages
from tabwright.browser.views import (
    NOT_CONNECTED,
    ContextDestroyedError,
    ElementState,
    FrameDetachedError,
    LifecycleEvent,
    NavigationEvent,
    ProtocolError,
    SelectorState,
    TabwrightError,
    URLNotAllowedError,
    WaitUntil,
    World,
    is_retriable_error,
)
from tabwright.core.progress import Progress, execute_with_progress
from tabwright.injected.operations import OperationName

if TYPE_CHECKING:
    from tabwright.browser.locator import FrameLocator, Locator
    from tabwright.browser.page import Page

logger = logging.getLogger(__name__)

T = TypeVar('T')

# Delays between attempts of a retrying operation, after one immediate attempt
DEFAULT_RETRY_TIMEOUTS = [0, 20, 50, 100, 100, 500]

READINESS_WAIT_CAP_MS = 2000
CONTEXT_POLL_TIMEOUT_MS = 5000
CONTEXT_POLL_INTERVAL_MS = 50

ALLOWED_NAVIGATION_SCHEMES = ('http', 'https')

URLMatcher = str | Pattern[str] | Callable[[str], bool]


def _url_matcher(url: URLMatcher) -> Callable[[str], bool]:
    if callable(url):
        return url
    if isinstance(url, re.Pattern):
        return lambda candidate: url.search(candidate) is not None
    target = normalize_url(url)
    return lambda candidate: normalize_url(candidate) == target


class NavigationInfo:
    """Filled in when an ``expect_navigation`` block exits."""

    def __init__(self) -> None:
        self.event: NavigationEvent | None = None

    @property
    def url(self) -> str | None:
        return self.event.url if self.event is not None else None


class Frame:
    """A frame of a page, main frame or iframe."""

    def __init__(self, page: 'Page', frame_id: int, parent_frame: 'Frame | None' = None):
        self._page = page
        self._frame_id = frame_id
        self._parent_frame = parent_frame
        self._child_frames: list[Frame] = []
        self._url = ''
        self._name = ''
        self._document_id: str | None = None
        self._fired_lifecycle: set[LifecycleEvent] = set()
        self._committed = False
        self._lifecycle_waiters: list[tuple[LifecycleEvent, asyncio.Future[None]]] = []
        self._detached = False
        self._context: FrameExecutionContext | None = None
        self._context_lock = asyncio.Lock()
        self.selectors = FrameSelectors(self)
        if parent_frame is not None:
            parent_frame._child_frames.append(self)

    def __repr__(self) -> str:
        return f'<Frame {self._frame_id} tab={self.tab_id} url={self._url!r}>'

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def page(self) -> 'Page':
        return self._page

    @property
    def tab_id(self) -> int:
        return self._page.tab_id

    @property
    def frame_id(self) -> int:
        return self._frame_id

    @property
    def parent_frame(self) -> 'Frame | None':
        return self._parent_frame

    @property
    def child_frames(self) -> list['Frame']:
        return list(self._child_frames)

    @property
    def url(self) -> str:
        return self._url

    @property
    def name(self) -> str:
        return self._name

    @property
    def document_id(self) -> str | None:
        return self._document_id

    @property
    def fired_lifecycle(self) -> set[LifecycleEvent]:
        return set(self._fired_lifecycle)

    @property
    def is_main_frame(self) -> bool:
        return self._parent_frame is None

    def is_detached(self) -> bool:
        return self._detached

    # ------------------------------------------------------------------
    # Navigation events, fed by the frame manager
    # ------------------------------------------------------------------

    def _on_new_document_committed(self, url: str, document_id: str | None, name: str | None = None) -> None:
        self._url = url
        if name is not None:
            self._name = name
        self._document_id = document_id
        self._on_clear_lifecycle()
        self._destroy_context('navigation')
        # The fired set restarts empty; commit is implied by the document itself
        self._committed = True
        self._resolve_lifecycle_waiters()

    def _on_same_document_navigation(self, url: str) -> None:
        self._url = url

    def _on_clear_lifecycle(self) -> None:
        self._fired_lifecycle.clear()

    def _on_lifecycle_event(self, event: LifecycleEvent) -> None:
        self._fired_lifecycle |= with_implied_stages(event)
        self._resolve_lifecycle_waiters()

    def _has_reached(self, stage: LifecycleEvent) -> bool:
        return stage in self._fired_lifecycle or (stage == 'commit' and self._committed)

    def _resolve_lifecycle_waiters(self) -> None:
        pending: list[tuple[LifecycleEvent, asyncio.Future[None]]] = []
        for stage, waiter in self._lifecycle_waiters:
            if waiter.done():
                continue
            if self._has_reached(stage):
                waiter.set_result(None)
            else:
                pending.append((stage, waiter))
        self._lifecycle_waiters = pending

    def _on_detached(self) -> None:
        if self._detached:
            return
        self._detached = True
        self._destroy_context('frame detached')
        waiters, self._lifecycle_waiters = self._lifecycle_waiters, []
        for _, waiter in waiters:
            if not waiter.done():
                waiter.set_exception(FrameDetachedError())
        if self._parent_frame is not None and self in self._parent_frame._child_frames:
            self._parent_frame._child_frames.remove(self)

    def _destroy_context(self, reason: str) -> None:
        context, self._context = self._context, None
        if context is None or context.is_destroyed:
            return
        context.context_destroyed(reason)
        self._page._on_context_destroyed(self, reason)

    # ------------------------------------------------------------------
    # Execution context
    # ------------------------------------------------------------------

    def _live_context(self) -> FrameExecutionContext | None:
        context = self._context
        if context is not None and not context.is_destroyed and context.document_id == self._document_id:
            return context
        return None

    async def get_context(self) -> FrameExecutionContext:
        """Return the context of the current document, creating it when missing.

        Waits (capped) on the readiness barrier, asks the host to install the
        page-side runtime, then polls until it answers. A runtime that never
        answers is a configuration problem and is not retried.
        """
        if self._detached:
            raise FrameDetachedError()
        context = self._live_context()
        if context is not None:
            return context

        async with self._context_lock:
            context = self._live_context()
            if context is not None:
                return context
            if self._detached:
                raise FrameDetachedError()

            document_id = self._document_id
            barrier = self._page.readiness_manager.get_barrier(self.tab_id, self._frame_id)
            if not barrier.is_ready():
                try:
                    await asyncio.wait_for(barrier.wait_for_ready(), READINESS_WAIT_CAP_MS / 1000)
                except asyncio.TimeoutError:
                    logger.debug(f'Readiness of frame {self._frame_id} not signalled within {READINESS_WAIT_CAP_MS}ms')

            host = self._page.host
            try:
                await host.ensure_instrumentation(self.tab_id, self._frame_id)
                loop = asyncio.get_running_loop()
                deadline = loop.time() + CONTEXT_POLL_TIMEOUT_MS / 1000
                while not await host.ping(self.tab_id, self._frame_id):
                    if loop.time() >= deadline:
                        raise TabwrightError(
                            f'Page runtime did not answer in frame {self._frame_id} within {CONTEXT_POLL_TIMEOUT_MS}ms'
                        )
                    await asyncio.sleep(CONTEXT_POLL_INTERVAL_MS / 1000)
            except TabwrightError:
                raise
            except Exception as e:
                error = ProtocolError.from_error(e, 'ping')
                if error.is_closed:
                    raise ContextDestroyedError(error.raw_message) from e
                raise error from e

            if self._detached:
                raise FrameDetachedError()
            if self._document_id != document_id:
                raise ContextDestroyedError('navigation')
            self._context = FrameExecutionContext(self, document_id)
            return self._context

    # ------------------------------------------------------------------
    # Lifecycle waits
    # ------------------------------------------------------------------

    async def _wait_for_load_state(self, progress: Progress, state: LifecycleEvent) -> None:
        if self._detached:
            raise FrameDetachedError()
        # The fired set already contains the stages implied by later ones
        if self._has_reached(state):
            return
        progress.log(f'waiting for "{state}" event')
        entry: tuple[LifecycleEvent, asyncio.Future[None]] = (state, asyncio.get_running_loop().create_future())
        self._lifecycle_waiters.append(entry)
        try:
            await progress.race(entry[1])
        finally:
            if entry in self._lifecycle_waiters:
                self._lifecycle_waiters.remove(entry)

    async def _wait_for_readiness(self, progress: Progress) -> None:
        if self._detached:
            raise FrameDetachedError()
        progress.log('waiting for page runtime readiness')
        await self._page.readiness_manager.get_barrier(self.tab_id, self._frame_id).wait_for_ready(progress)

    async def _wait_for_state(self, progress: Progress, state: WaitUntil) -> None:
        if state == 'networkidle':
            # Only the current document's readiness counts, whether or not load fired
            await self._wait_for_readiness(progress)
        else:
            await self._wait_for_load_state(progress, lifecycle_stage(state))

    async def wait_for_load_state(self, state: WaitUntil = 'load', timeout: float | None = None) -> None:
        async def action(progress: Progress) -> None:
            await self._wait_for_state(progress, state)

        await execute_with_progress(action, timeout, api_name='frame.waitForLoadState')

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    async def _wait_for_navigation(
        self,
        progress: Progress,
        trigger: Callable[[], Awaitable[Any]],
        requires_new_document: bool,
        wait_until: WaitUntil = 'load',
        to_url: str | None = None,
    ) -> NavigationEvent | None:
        """Register for the navigation, run ``trigger``, then wait for ``wait_until``.

        Returns None when the trigger reports that nothing navigates
        (``go_back`` at the start of history).
        """
        waiter = self._page.navigation_tracker.expect_navigation(
            self.tab_id, self._frame_id, to_url, wait_until, requires_new_document
        )
        progress.cleanup_when_aborted(waiter.cancel)
        progress.log(f'waiting for navigation until "{wait_until}"')
        try:
            started = await progress.race(trigger())
        except Exception:
            waiter.cancel()
            raise
        if started is False:
            waiter.cancel()
            return None
        if wait_until == 'networkidle':
            progress.log('  then waiting for page runtime readiness')
        event = await waiter.wait(progress=progress)
        progress.log(f'  navigated to "{event.url}"')
        return event

    async def goto(self, url: str, wait_until: WaitUntil = 'commit', timeout: float | None = None) -> NavigationEvent | None:
        """Navigate this frame with a history entry. Only http(s) targets are allowed."""
        base = self._url if urlsplit(self._url).scheme in ALLOWED_NAVIGATION_SCHEMES else None
        absolute = urljoin(base, url) if base else url
        if urlsplit(absolute).scheme not in ALLOWED_NAVIGATION_SCHEMES:
            raise URLNotAllowedError(
                f'Blocked navigation to disallowed URL scheme: {absolute}. Only http(s) URLs are permitted.',
                operation='frame.goto',
            )

        async def action(progress: Progress) -> NavigationEvent | None:
            progress.log(f'navigating to "{absolute}", waiting until "{wait_until}"')
            host = self._page.host
            return await self._wait_for_navigation(
                progress,
                lambda: host.navigate(self.tab_id, self._frame_id, absolute),
                requires_new_document=False,
                wait_until=wait_until,
            )

        return await execute_with_progress(action, timeout, api_name='frame.goto')

    @asynccontextmanager
    async def expect_navigation(
        self, url: str | None = None, wait_until: WaitUntil = 'load', timeout: float | None = None
    ) -> AsyncIterator[NavigationInfo]:
        """Wait for a navigation triggered inside the ``async with`` block.

        Example:
            >>> async with page.main_frame.expect_navigation() as navigation:
            ...     await page.click('a#next')
            >>> navigation.url
        """
        waiter = self._page.navigation_tracker.expect_navigation(self.tab_id, self._frame_id, url, wait_until)
        info = NavigationInfo()
        try:
            yield info

            async def action(progress: Progress) -> NavigationEvent:
                return await waiter.wait(progress=progress)

            info.event = await execute_with_progress(action, timeout, api_name='frame.expectNavigation')
        finally:
            waiter.cancel()

    async def wait_for_url(self, url: URLMatcher, wait_until: WaitUntil = 'load', timeout: float | None = None) -> None:
        matches = _url_matcher(url)

        async def action(progress: Progress) -> None:
            tracker = self._page.navigation_tracker
            while True:
                waiter = tracker.expect_navigation(self.tab_id, self._frame_id, None, 'commit')
                progress.cleanup_when_aborted(waiter.cancel)
                if matches(self._url):
                    waiter.cancel()
                    await self._wait_for_state(progress, wait_until)
                    return
                progress.log(f'waiting for navigation to match, current url "{self._url}"')
                await waiter.wait(progress=progress)

        await execute_with_progress(action, timeout, api_name='frame.waitForURL')

    # ------------------------------------------------------------------
    # Retrying machinery
    # ------------------------------------------------------------------

    async def _retry_with_progress_and_timeouts(
        self, progress: Progress, action: Callable[[bool], Awaitable[T | str]]
    ) -> T:
        """Run ``action`` until it returns something other than ``'error:notconnected'``.

        The first attempt is immediate. Later attempts wait on the
        ``DEFAULT_RETRY_TIMEOUTS`` schedule, repeating its last delay. Retriable
        errors (destroyed context, closed target) count as "not connected".
        Anything else propagates. The progress deadline ends the loop.
        """
        timeouts = [0, *DEFAULT_RETRY_TIMEOUTS]
        attempt = 0
        while True:
            delay = timeouts[min(attempt, len(timeouts) - 1)]
            if delay:
                progress.log(f'  waiting {delay}ms')
                await progress.wait(delay)
            try:
                result = await progress.race(action(attempt == 0))
            except Exception as e:
                if not is_retriable_error(e):
                    raise
                progress.log(f'  {e}, retrying')
                attempt += 1
                continue
            if result == NOT_CONNECTED:
                if attempt == 0:
                    progress.log('  element is not attached, retrying')
                attempt += 1
                continue
            return result  # type: ignore[return-value]

    async def _act_on_selector(
        self,
        progress: Progress,
        selector: str,
        fn: Callable[[ElementHandle], Awaitable[T | str]],
        strict: bool = True,
    ) -> T:
        async def attempt(first: bool) -> T | str:
            handle = await self.selectors.query(selector, strict=strict)
            if handle is None:
                if first:
                    progress.log(f'waiting for {selector}')
                return NOT_CONNECTED
            if first:
                progress.log(f'  resolved {selector} to {handle!r}')
            return await fn(handle)

        return await self._retry_with_progress_and_timeouts(progress, attempt)

    async def _selector_action(
        self,
        api_name: str,
        selector: str,
        fn: Callable[[Progress, ElementHandle], Awaitable[T | str]],
        timeout: float | None = None,
        strict: bool = True,
    ) -> T:
        async def action(progress: Progress) -> T:
            return await self._act_on_selector(progress, selector, lambda handle: fn(progress, handle), strict)

        return await execute_with_progress(action, timeout, api_name=api_name)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def query_selector(self, selector: str, strict: bool = False) -> ElementHandle | None:
        return await self.selectors.query(selector, strict=strict)

    async def query_selector_all(self, selector: str) -> list[ElementHandle]:
        return await self.selectors.query_all(selector)

    async def query_count(self, selector: str) -> int:
        return await self.selectors.query_count(selector)

    async def wait_for_selector(
        self, selector: str, state: SelectorState = 'visible', timeout: float | None = None, strict: bool = False
    ) -> ElementHandle | None:
        """Wait until ``selector`` satisfies ``state``.

        Returns the element for ``attached``/``visible`` and None for
        ``detached``/``hidden``.
        """
        if state not in ('attached', 'detached', 'visible', 'hidden'):
            raise TabwrightError(f'state: expected one of (attached|detached|visible|hidden), got {state!r}')

        async def action(progress: Progress) -> ElementHandle | None:
            progress.log(f'waiting for {selector} to be {state}')

            async def attempt(first: bool) -> tuple[ElementHandle | None] | str:
                resolved = await self.selectors.resolve_frame_for_selector(selector, strict)
                context = await resolved.frame.get_context()
                result = await context.execute_script(
                    'check_selector_state', resolved.selector, None, state, strict, world=resolved.world
                )
                if not result['matched']:
                    return NOT_CONNECTED
                return (result['element'],)

            (element,) = await self._retry_with_progress_and_timeouts(progress, attempt)
            return element

        return await execute_with_progress(action, timeout, api_name='frame.waitForSelector')

    # ------------------------------------------------------------------
    # Selector-based actions
    # ------------------------------------------------------------------

    async def click(
        self, selector: str, force: bool = False, modifiers: list[str] | None = None, timeout: float | None = None
    ) -> None:
        options = _action_options(force, modifiers)
        await self._selector_action('frame.click', selector, lambda p, h: h._click(p, options), timeout)

    async def tap(self, selector: str, force: bool = False, timeout: float | None = None) -> None:
        options = _action_options(force)
        await self._selector_action('frame.tap', selector, lambda p, h: h._tap(p, options), timeout)

    async def fill(self, selector: str, value: str, force: bool = False, timeout: float | None = None) -> None:
        options = _action_options(force)
        await self._selector_action('frame.fill', selector, lambda p, h: h._fill(p, value, options), timeout)

    async def set_checked(self, selector: str, checked: bool, force: bool = False, timeout: float | None = None) -> None:
        options = _action_options(force)
        await self._selector_action(
            'frame.setChecked', selector, lambda p, h: h._set_checked(p, checked, options), timeout
        )

    async def check(self, selector: str, force: bool = False, timeout: float | None = None) -> None:
        await self.set_checked(selector, True, force=force, timeout=timeout)

    async def uncheck(self, selector: str, force: bool = False, timeout: float | None = None) -> None:
        await self.set_checked(selector, False, force=force, timeout=timeout)

    async def hover(self, selector: str, force: bool = False, timeout: float | None = None) -> None:
        options = _action_options(force)
        await self._selector_action('frame.hover', selector, lambda p, h: h._hover(p, options), timeout)

    async def focus(self, selector: str, timeout: float | None = None) -> None:
        await self._selector_action('frame.focus', selector, lambda p, h: h._focus(p), timeout)

    async def dispatch_event(
        self, selector: str, event_type: str, event_init: dict[str, Any] | None = None, timeout: float | None = None
    ) -> None:
        await self._selector_action(
            'frame.dispatchEvent', selector, lambda p, h: h._dispatch_event(p, event_type, event_init), timeout
        )

    async def select_option(
        self, selector: str, values: str | list[str], force: bool = False, timeout: float | None = None
    ) -> list[str]:
        wanted = [values] if isinstance(values, str) else list(values)
        options = _action_options(force)
        return await self._selector_action(
            'frame.selectOption', selector, lambda p, h: h._select_option(p, wanted, options), timeout
        )

    async def set_input_files(
        self, selector: str, files: str | FilePayload | list[Any], timeout: float | None = None
    ) -> None:
        payloads = file_payloads(files)
        await self._selector_action(
            'frame.setInputFiles', selector, lambda p, h: h._set_input_files(p, payloads), timeout
        )

    # ------------------------------------------------------------------
    # Selector-based getters and states
    # ------------------------------------------------------------------

    async def text_content(self, selector: str, timeout: float | None = None) -> str | None:
        return await self._selector_action(
            'frame.textContent', selector, lambda p, h: h._property(p, 'text_content'), timeout
        )

    async def inner_text(self, selector: str, timeout: float | None = None) -> str:
        return await self._selector_action('frame.innerText', selector, lambda p, h: h._property(p, 'inner_text'), timeout)

    async def inner_html(self, selector: str, timeout: float | None = None) -> str:
        return await self._selector_action('frame.innerHTML', selector, lambda p, h: h._property(p, 'inner_html'), timeout)

    async def get_attribute(self, selector: str, name: str, timeout: float | None = None) -> str | None:
        return await self._selector_action(
            'frame.getAttribute', selector, lambda p, h: h._property(p, 'get_attribute', name), timeout
        )

    async def input_value(self, selector: str, timeout: float | None = None) -> str:
        return await self._selector_action(
            'frame.inputValue', selector, lambda p, h: h._property(p, 'input_value'), timeout
        )

    async def _element_state(self, selector: str, state: ElementState, timeout: float | None = None) -> bool:
        return bool(
            await self._selector_action(f'frame.is{state.capitalize()}', selector, lambda p, h: h._state(p, state), timeout)
        )

    async def is_visible(self, selector: str) -> bool:
        """Immediate check, no waiting: a missing element is not visible."""
        handle = await self.selectors.query(selector, strict=True)
        if handle is None:
            return False
        return await handle.is_visible()

    async def is_hidden(self, selector: str) -> bool:
        return not await self.is_visible(selector)

    async def is_enabled(self, selector: str, timeout: float | None = None) -> bool:
        return await self._element_state(selector, 'enabled', timeout)

    async def is_disabled(self, selector: str, timeout: float | None = None) -> bool:
        return await self._element_state(selector, 'disabled', timeout)

    async def is_editable(self, selector: str, timeout: float | None = None) -> bool:
        return await self._element_state(selector, 'editable', timeout)

    async def is_checked(self, selector: str, timeout: float | None = None) -> bool:
        return await self._element_state(selector, 'checked', timeout)

    # ------------------------------------------------------------------
    # Document
    # ------------------------------------------------------------------

    async def evaluate(self, function_name: OperationName, *args: Any, world: World = 'MAIN', timeout: float | None = None) -> Any:
        """Run a registered page-side operation, retrying across a navigation in flight."""

        async def action(progress: Progress) -> Any:
            async def attempt(first: bool) -> tuple[Any]:
                context = await self.get_context()
                return (await context.execute_script(function_name, *args, world=world),)

            (result,) = await self._retry_with_progress_and_timeouts(progress, attempt)
            return result

        return await execute_with_progress(action, timeout, api_name='frame.evaluate')

    async def evaluate_handle(self, function_name: OperationName, *args: Any, world: World = 'MAIN') -> ElementHandle | None:
        context = await self.get_context()
        return await context.evaluate_handle(function_name, *args, world=world)

    async def title(self) -> str:
        info = await self.evaluate('document_info', world='ISOLATED')
        return info['title']

    async def content(self) -> str:
        return await self.evaluate('document_html', world='ISOLATED')

    # ------------------------------------------------------------------
    # Locators
    # ------------------------------------------------------------------

    def locator(self, selector: str, has_text: str | Pattern[str] | None = None, has: 'Locator | None' = None) -> 'Locator':
        from tabwright.browser.locator import Locator

        return Locator(self, selector, has_text=has_text, has=has)

    def frame_locator(self, selector: str) -> 'FrameLocator':
        from tabwright.browser.locator import FrameLocator

        return FrameLocator(self, selector)

    def get_by_text(self, text: str | Pattern[str], exact: bool = False) -> 'Locator':
        from tabwright.browser.locator import get_by_text_selector

        return self.locator(get_by_text_selector(text, exact))

    def get_by_role(self, role: str, name: str | Pattern[str] | None = None, exact: bool = False, **options: Any) -> 'Locator':
        from tabwright.browser.locator import get_by_role_selector

        return self.locator(get_by_role_selector(role, name=name, exact=exact, **options))

    def get_by_test_id(self, test_id: str) -> 'Locator':
        from tabwright.browser.locator import get_by_test_id_selector

        return self.locator(get_by_test_id_selector(test_id))

    def get_by_label(self, text: str | Pattern[str], exact: bool = False) -> 'Locator':
        from tabwright.browser.locator import get_by_label_selector

        return self.locator(get_by_label_selector(text, exact))

    def get_by_placeholder(self, text: str, exact: bool = False) -> 'Locator':
        from tabwright.browser.locator import get_by_placeholder_selector

        return self.locator(get_by_placeholder_selector(text, exact))
