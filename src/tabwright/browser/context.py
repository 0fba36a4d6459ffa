"""Execution context bridge for one document of one frame.

The bridge turns ``execute_script('click', handle, options)`` into a host
injection request, expands element handles to their wire form, and turns
handle results back into ``ElementHandle`` objects. A context lives exactly as
long as its document: a new-document commit destroys it and every call still
pending fails with ``ContextDestroyedError``.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from tabwright.browser.views import (
    ContextDestroyedError,
    EvaluationError,
    InvalidSelectorError,
    ProtocolError,
    StrictModeViolationError,
    TabwrightError,
    World,
)
from tabwright.injected.operations import OperationName
from tabwright.injected.script import HANDLE_KEY

if TYPE_CHECKING:
    from tabwright.browser.element import ElementHandle
    from tabwright.browser.frame import Frame

logger = logging.getLogger(__name__)

_ERROR_TYPES: dict[str, type[TabwrightError]] = {
    'InvalidSelectorError': InvalidSelectorError,
    'StrictModeViolationError': StrictModeViolationError,
    'TabwrightError': TabwrightError,
}


class FrameExecutionContext:
    """Both worlds of one frame document, reached through ``BrowserHost.inject``."""

    def __init__(self, frame: 'Frame', document_id: str | None):
        self.frame = frame
        self.document_id = document_id
        self.destroyed_reason: str | None = None
        self._destroyed: asyncio.Future[None] = asyncio.get_running_loop().create_future()

    def __repr__(self) -> str:
        state = f'destroyed: {self.destroyed_reason}' if self.is_destroyed else 'live'
        return f'<FrameExecutionContext tab={self.frame.tab_id} frame={self.frame.frame_id} doc={self.document_id} {state}>'

    @property
    def is_destroyed(self) -> bool:
        return self._destroyed.done()

    def context_destroyed(self, reason: str) -> None:
        """Reject every pending and future call with ``ContextDestroyedError``."""
        if self._destroyed.done():
            return
        self.destroyed_reason = reason
        self._destroyed.set_exception(ContextDestroyedError(reason))
        # Nobody awaits the future directly; retrieve it so asyncio stays quiet
        self._destroyed.exception()

    async def execute_script(self, function_name: OperationName, *args: Any, world: World = 'ISOLATED') -> Any:
        """Run a registered page-side operation and return its decoded result."""
        result = await self._call(function_name, args, world)
        return self._wrap_handles(result, world)

    async def evaluate_handle(self, function_name: OperationName, *args: Any, world: World = 'ISOLATED') -> 'ElementHandle | None':
        """Run an operation whose result is a single node, returned as a handle."""
        from tabwright.browser.element import ElementHandle

        result = self._wrap_handles(await self._call(function_name, args, world), world)
        if result is None or isinstance(result, ElementHandle):
            return result
        raise EvaluationError(f'{function_name} did not return an element')

    async def _call(self, function_name: str, args: tuple[Any, ...], world: World) -> Any:
        if self.is_destroyed:
            raise ContextDestroyedError(self.destroyed_reason)
        request = {'function_name': function_name, 'args': [self._serialize(arg, world) for arg in args]}
        host = self.frame.page.host
        call = asyncio.ensure_future(host.inject(self.frame.tab_id, self.frame.frame_id, world, request))
        try:
            done, _ = await asyncio.wait({call, self._destroyed}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            call.cancel()
            raise

        if call not in done:
            call.cancel()
            raise ContextDestroyedError(self.destroyed_reason)

        try:
            response = call.result()
        except Exception as e:
            error = ProtocolError.from_error(e, 'inject')
            if error.is_closed:
                self.context_destroyed(error.raw_message)
                raise ContextDestroyedError(error.raw_message) from e
            raise error from e
        return self._unwrap(function_name, response)

    def _unwrap(self, function_name: str, response: Any) -> Any:
        if not isinstance(response, dict):
            raise ProtocolError('error', 'inject', f'Malformed response to {function_name}: {response!r}')
        if response.get('success'):
            return response.get('result')
        message = str(response.get('error') or f'{function_name} failed')
        error_class = _ERROR_TYPES.get(str(response.get('error_type')), EvaluationError)
        raise error_class(message)

    def _serialize(self, value: Any, world: World) -> Any:
        from tabwright.browser.element import ElementHandle

        if isinstance(value, ElementHandle):
            if value.context is not self or value.world != world:
                raise TabwrightError('Element handles can be evaluated only in the context they were created in')
            return {HANDLE_KEY: value.handle_id}
        if isinstance(value, dict):
            return {key: self._serialize(item, world) for key, item in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._serialize(item, world) for item in value]
        return value

    def _wrap_handles(self, value: Any, world: World) -> Any:
        from tabwright.browser.element import ElementHandle

        if isinstance(value, dict):
            if set(value) == {HANDLE_KEY}:
                return ElementHandle(self, str(value[HANDLE_KEY]), world)
            return {key: self._wrap_handles(item, world) for key, item in value.items()}
        if isinstance(value, list):
            return [self._wrap_handles(item, world) for item in value]
        return value
