"""Timeout and cancellation token shared by a whole controller call tree.

Every long-running operation runs inside a ``ProgressController``. Work is
expressed as ``await progress.race(...)`` so a single deadline (or an explicit
``abort``) unblocks every nested suspension point at once.

Example:
    >>> async def action(progress):
    ...     progress.log('waiting for something')
    ...     await progress.race(some_coroutine())
    >>> await execute_with_progress(action, timeout_ms=5000, api_name='frame.action')
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Literal, TypeVar

from tabwright.browser.views import TabwrightError, TimeoutError
from tabwright.config import CONFIG

logger = logging.getLogger(__name__)

T = TypeVar('T')

CleanupCallback = Callable[[], Any]


def _consume_exception(future: 'asyncio.Future[Any]') -> None:
    # Marks the exception as retrieved so asyncio does not warn about it.
    if not future.cancelled():
        future.exception()


class Progress:
    """Handle given to operations running under a ``ProgressController``."""

    def __init__(self, controller: 'ProgressController'):
        self._controller = controller

    @property
    def aborted(self) -> bool:
        future = self._controller._abort_future
        return future is not None and future.done()

    @property
    def logs(self) -> list[str]:
        return list(self._controller._logs)

    def log(self, message: str) -> None:
        self._controller._logs.append(message)
        logger.debug(f'[{self._controller.api_name or "progress"}] {message}')

    def cleanup_when_aborted(self, callback: CleanupCallback) -> None:
        """Register a callback that runs once if the operation does not finish normally.

        Callbacks run in registration order. Registering after the abort has
        already happened schedules the callback immediately.
        """
        controller = self._controller
        if controller._state == 'aborted':
            controller._schedule_late_cleanup(callback)
        else:
            controller._cleanups.append(callback)

    def time_left_ms(self) -> float:
        deadline = self._controller._deadline
        if deadline is None:
            return float('inf')
        return max(0.0, (deadline - asyncio.get_running_loop().time()) * 1000)

    def abort(self, error: BaseException | None = None) -> None:
        self._controller.abort(error)

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the progress is aborted first.

        Raises the abort error (usually ``TimeoutError``) when the deadline
        passes, cancelling the raced work.
        """
        abort_future = self._controller._abort_future
        if abort_future is None:
            return await awaitable
        if abort_future.done():
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise abort_future.exception()  # type: ignore[misc]

        task = asyncio.ensure_future(awaitable)
        try:
            done, _ = await asyncio.wait({task, abort_future}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        if task in done:
            return task.result()
        task.cancel()
        task.add_done_callback(_consume_exception)
        raise abort_future.exception()  # type: ignore[misc]

    async def wait(self, timeout_ms: float) -> None:
        await self.race(asyncio.sleep(timeout_ms / 1000))


class ProgressController:
    """Owns the deadline, the diagnostic log and the cleanup list of one call."""

    def __init__(self, timeout_ms: float | None = None, api_name: str | None = None):
        self.timeout_ms = CONFIG.DEFAULT_TIMEOUT_MS if timeout_ms is None else timeout_ms
        self.api_name = api_name
        self._state: Literal['before', 'running', 'aborted', 'finished'] = 'before'
        self._logs: list[str] = []
        self._cleanups: list[CleanupCallback] = []
        self._cleanups_ran = False
        self._abort_future: asyncio.Future[Any] | None = None
        self._deadline: float | None = None
        self._late_cleanups: set[asyncio.Task[None]] = set()
        self.progress = Progress(self)

    def abort(self, error: BaseException | None = None) -> None:
        if self._abort_future is None or self._abort_future.done():
            return
        self._state = 'aborted'
        self._abort_future.set_exception(error or TabwrightError('Operation was aborted'))

    def _on_timeout(self) -> None:
        self.abort(TimeoutError(self.timeout_ms))

    async def run(self, task: Callable[[Progress], Awaitable[T]]) -> T:
        loop = asyncio.get_running_loop()
        self._abort_future = loop.create_future()
        self._abort_future.add_done_callback(_consume_exception)
        timer = None
        if self.timeout_ms and self.timeout_ms > 0:
            self._deadline = loop.time() + self.timeout_ms / 1000
            timer = loop.call_later(self.timeout_ms / 1000, self._on_timeout)
        self._state = 'running'
        try:
            result = await self.progress.race(task(self.progress))
            self._state = 'finished'
            return result
        except BaseException as e:
            if self._state == 'running':
                self._state = 'aborted'
            if not self._abort_future.done():
                if isinstance(e, Exception):
                    self._abort_future.set_exception(e)
                else:
                    self._abort_future.cancel()
            await self._run_cleanups()
            raise
        finally:
            if timer is not None:
                timer.cancel()

    async def _run_cleanups(self) -> None:
        if self._cleanups_ran:
            return
        self._cleanups_ran = True
        cleanups, self._cleanups = self._cleanups, []
        for callback in cleanups:
            await _invoke_cleanup(callback)

    def _schedule_late_cleanup(self, callback: CleanupCallback) -> None:
        task = asyncio.ensure_future(_invoke_cleanup(callback))
        self._late_cleanups.add(task)
        task.add_done_callback(self._late_cleanups.discard)


async def _invoke_cleanup(callback: CleanupCallback) -> None:
    try:
        result = callback()
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        logger.debug(f'Cleanup callback {callback!r} failed: {type(e).__name__}: {e}')


async def execute_with_progress(
    fn: Callable[[Progress], Awaitable[T]],
    timeout_ms: float | None = None,
    progress: Progress | None = None,
    api_name: str | None = None,
) -> T:
    """Run ``fn`` under a fresh progress, or under ``progress`` when nested.

    Errors derived from ``TabwrightError`` leave with the api name and the
    accumulated call log attached.
    """
    if progress is not None:
        return await fn(progress)

    controller = ProgressController(timeout_ms, api_name)
    try:
        return await controller.run(fn)
    except TabwrightError as e:
        if e.operation is None:
            e.operation = api_name
        if not e.call_log:
            e.call_log = controller.progress.logs
        raise
