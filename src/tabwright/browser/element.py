"""Element handles: handle-scoped, non-retrying element operations.

Internal ``_click``/``_fill``/... methods return the tri-state result
(``'done'`` or ``'error:notconnected'``, anything else raises) so retrying
callers such as ``Locator`` can re-resolve. Public methods make one attempt and
raise ``ElementNotConnectedError`` when the node is gone.
"""

import base64
import logging
import mimetypes
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, TypeVar

from tabwright.browser.views import (
    NOT_CONNECTED,
    ContextDestroyedError,
    ElementNotConnectedError,
    ElementState,
    EvaluationError,
    Rect,
    ScreenshotOptions,
    TabwrightError,
    World,
)
from tabwright.core.progress import Progress, execute_with_progress
from tabwright.injected.operations import ElementAction, ElementProperty

if TYPE_CHECKING:
    from tabwright.browser.context import FrameExecutionContext
    from tabwright.browser.frame import Frame

logger = logging.getLogger(__name__)

T = TypeVar('T')

FilePayload = dict[str, Any]


def _action_options(force: bool = False, modifiers: list[str] | None = None) -> dict[str, Any]:
    return {'force': force, 'modifiers': modifiers or []}


def file_payloads(files: str | Path | FilePayload | list[str | Path | FilePayload]) -> list[FilePayload]:
    """Normalize ``set_input_files`` arguments into ``{name, mime_type, buffer}`` dicts."""
    items = files if isinstance(files, list) else [files]
    payloads: list[FilePayload] = []
    for item in items:
        if isinstance(item, dict):
            buffer = item.get('buffer', b'')
            if isinstance(buffer, bytes):
                buffer = base64.b64encode(buffer).decode('utf-8')
            payloads.append(
                {
                    'name': item['name'],
                    'mime_type': item.get('mime_type') or 'application/octet-stream',
                    'buffer': buffer,
                }
            )
            continue
        path = Path(item)
        mime_type, _ = mimetypes.guess_type(path.name)
        payloads.append(
            {
                'name': path.name,
                'mime_type': mime_type or 'application/octet-stream',
                'buffer': base64.b64encode(path.read_bytes()).decode('utf-8'),
            }
        )
    return payloads


class ElementHandle:
    """Reference to one DOM node inside one world of one frame document."""

    def __init__(self, context: 'FrameExecutionContext', handle_id: str, world: World = 'ISOLATED'):
        self.context = context
        self.handle_id = handle_id
        self.world = world
        self._disposed = False

    def __repr__(self) -> str:
        return f'<ElementHandle {self.handle_id} frame={self.frame.frame_id} world={self.world}>'

    @property
    def frame(self) -> 'Frame':
        return self.context.frame

    async def owner_frame(self) -> 'Frame':
        return self.frame

    async def dispose(self) -> None:
        """Release the page-side reference. Later calls on this handle report not connected."""
        if self._disposed:
            return
        self._disposed = True
        if self.context.is_destroyed:
            return
        try:
            await self.context.execute_script('release_handle', self.handle_id, world=self.world)
        except ContextDestroyedError:
            # The registry went away with its document
            logger.debug(f'Handle {self.handle_id} outlived its context')

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    async def _evaluate(self, function_name: ElementAction | ElementProperty | str, *args: Any) -> Any:
        if self._disposed:
            return NOT_CONNECTED
        try:
            return await self.context.execute_script(function_name, self, *args, world=self.world)  # type: ignore[arg-type]
        except ContextDestroyedError:
            # A destroyed context means the node went away with its document
            return NOT_CONNECTED

    async def _single_attempt(
        self,
        api_name: str,
        label: str,
        fn: Callable[[Progress], Awaitable[T]],
        timeout: float | None = None,
    ) -> T:
        async def action(progress: Progress) -> T:
            progress.log(f'{label} {self!r}')
            result = await fn(progress)
            if result == NOT_CONNECTED:
                raise ElementNotConnectedError()
            return result

        try:
            return await execute_with_progress(action, timeout, api_name=f'elementHandle.{api_name}')
        except TabwrightError as e:
            # Page-side failures get the action label; typed errors pass through
            if type(e) in (TabwrightError, EvaluationError):
                raise TabwrightError(f'{label} failed: {e.message}', operation=e.operation, call_log=e.call_log) from e
            raise

    # ------------------------------------------------------------------
    # Tri-state internals used by retrying callers
    # ------------------------------------------------------------------

    async def _click(self, progress: Progress, options: dict[str, Any]) -> str:
        progress.log('  performing click action')
        return await progress.race(self._evaluate('click', options))

    async def _tap(self, progress: Progress, options: dict[str, Any]) -> str:
        progress.log('  performing tap action')
        return await progress.race(self._evaluate('tap', options))

    async def _fill(self, progress: Progress, value: str, options: dict[str, Any]) -> str:
        progress.log(f'  fill("{value}")')
        return await progress.race(self._evaluate('fill', value, options))

    async def _set_checked(self, progress: Progress, state: bool, options: dict[str, Any]) -> str:
        progress.log(f'  {"check" if state else "uncheck"}')
        return await progress.race(self._evaluate('set_checked', state, options))

    async def _dispatch_event(self, progress: Progress, event_type: str, event_init: dict[str, Any] | None) -> str:
        return await progress.race(self._evaluate('dispatch_event', event_type, event_init or {}))

    async def _hover(self, progress: Progress, options: dict[str, Any]) -> str:
        return await progress.race(self._evaluate('hover', options))

    async def _focus(self, progress: Progress) -> str:
        return await progress.race(self._evaluate('focus'))

    async def _select_option(self, progress: Progress, values: list[str], options: dict[str, Any]) -> list[str] | str:
        return await progress.race(self._evaluate('select_option', values, options))

    async def _set_input_files(self, progress: Progress, payloads: list[FilePayload]) -> str:
        return await progress.race(self._evaluate('set_input_files', payloads))

    async def _scroll_into_view(self, progress: Progress) -> str:
        return await progress.race(self._evaluate('scroll_into_view'))

    async def _property(self, progress: Progress, name: ElementProperty, *args: Any) -> Any:
        return await progress.race(self._evaluate(name, *args))

    async def _state(self, progress: Progress, state: ElementState) -> bool | str:
        return await progress.race(self._evaluate('element_state', state))

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def click(self, force: bool = False, modifiers: list[str] | None = None, timeout: float | None = None) -> None:
        await self._single_attempt('click', 'Click', lambda p: self._click(p, _action_options(force, modifiers)), timeout)

    async def tap(self, force: bool = False, timeout: float | None = None) -> None:
        await self._single_attempt('tap', 'Tap', lambda p: self._tap(p, _action_options(force)), timeout)

    async def fill(self, value: str, force: bool = False, timeout: float | None = None) -> None:
        await self._single_attempt('fill', 'Fill', lambda p: self._fill(p, value, _action_options(force)), timeout)

    async def check(self, force: bool = False, timeout: float | None = None) -> None:
        await self.set_checked(True, force=force, timeout=timeout)

    async def uncheck(self, force: bool = False, timeout: float | None = None) -> None:
        await self.set_checked(False, force=force, timeout=timeout)

    async def set_checked(self, checked: bool, force: bool = False, timeout: float | None = None) -> None:
        label = 'Check' if checked else 'Uncheck'
        await self._single_attempt(
            'setChecked', label, lambda p: self._set_checked(p, checked, _action_options(force)), timeout
        )

    async def hover(self, force: bool = False, timeout: float | None = None) -> None:
        await self._single_attempt('hover', 'Hover', lambda p: self._hover(p, _action_options(force)), timeout)

    async def focus(self, timeout: float | None = None) -> None:
        await self._single_attempt('focus', 'Focus', self._focus, timeout)

    async def dispatch_event(self, event_type: str, event_init: dict[str, Any] | None = None, timeout: float | None = None) -> None:
        await self._single_attempt(
            'dispatchEvent', 'Dispatch event', lambda p: self._dispatch_event(p, event_type, event_init), timeout
        )

    async def select_option(self, values: str | list[str], force: bool = False, timeout: float | None = None) -> list[str]:
        wanted = [values] if isinstance(values, str) else list(values)
        return await self._single_attempt(
            'selectOption', 'Select option', lambda p: self._select_option(p, wanted, _action_options(force)), timeout
        )

    async def set_input_files(
        self, files: str | Path | FilePayload | list[str | Path | FilePayload], timeout: float | None = None
    ) -> None:
        payloads = file_payloads(files)
        await self._single_attempt('setInputFiles', 'Set input files', lambda p: self._set_input_files(p, payloads), timeout)

    async def scroll_into_view_if_needed(self, timeout: float | None = None) -> None:
        await self._single_attempt('scrollIntoViewIfNeeded', 'Scroll into view', self._scroll_into_view, timeout)

    # ------------------------------------------------------------------
    # Getters and states
    # ------------------------------------------------------------------

    async def text_content(self) -> str | None:
        return await self._single_attempt('textContent', 'Text content', lambda p: self._property(p, 'text_content'))

    async def inner_text(self) -> str:
        return await self._single_attempt('innerText', 'Inner text', lambda p: self._property(p, 'inner_text'))

    async def inner_html(self) -> str:
        return await self._single_attempt('innerHTML', 'Inner HTML', lambda p: self._property(p, 'inner_html'))

    async def get_attribute(self, name: str) -> str | None:
        return await self._single_attempt('getAttribute', 'Get attribute', lambda p: self._property(p, 'get_attribute', name))

    async def input_value(self) -> str:
        return await self._single_attempt('inputValue', 'Input value', lambda p: self._property(p, 'input_value'))

    async def bounding_box(self) -> Rect | None:
        box = await self._evaluate('bounding_box')
        if box is None or box == NOT_CONNECTED:
            return None
        return Rect(**box)

    async def _check_state(self, api_name: str, state: ElementState) -> bool:
        return bool(await self._single_attempt(api_name, f'Check {state} state', lambda p: self._state(p, state)))

    async def is_visible(self) -> bool:
        return await self._check_state('isVisible', 'visible')

    async def is_hidden(self) -> bool:
        return await self._check_state('isHidden', 'hidden')

    async def is_enabled(self) -> bool:
        return await self._check_state('isEnabled', 'enabled')

    async def is_disabled(self) -> bool:
        return await self._check_state('isDisabled', 'disabled')

    async def is_editable(self) -> bool:
        return await self._check_state('isEditable', 'editable')

    async def is_checked(self) -> bool:
        return await self._check_state('isChecked', 'checked')

    # ------------------------------------------------------------------
    # Frames and screenshots
    # ------------------------------------------------------------------

    async def content_frame(self) -> 'Frame | None':
        """The child frame hosted by this ``<iframe>``, or None for other elements."""
        info = await self._evaluate('iframe_info')
        if info == NOT_CONNECTED or not isinstance(info, dict) or not info.get('is_frame'):
            return None
        return self.frame.page.frame_manager.find_child_frame(
            self.frame, src=info['src'], ordinal=info['ordinal'], index=info['index']
        )

    async def screenshot(self, options: ScreenshotOptions | None = None, **kwargs: Any) -> bytes:
        options = options or ScreenshotOptions(**kwargs)
        return await self.frame.page.screenshotter.screenshot_element(self, options)
