"""Tests for the progress controller.

Validates the shared deadline and cancellation token:

    - ProgressController: deadline, abort, cleanup ordering
    - Progress.race: unblocking nested suspension points
    - execute_with_progress: nesting and error decoration
"""

import asyncio

import pytest

from tabwright.browser.views import TabwrightError, TimeoutError
from tabwright.core.progress import Progress, ProgressController, execute_with_progress


class TestProgressController:
    """Tests for ProgressController.run."""

    @pytest.mark.asyncio
    async def test_returns_task_result(self):
        """A task finishing before the deadline returns its value."""

        async def task(progress: Progress) -> int:
            await progress.wait(1)
            return 42

        assert await ProgressController(1000).run(task) == 42

    @pytest.mark.asyncio
    async def test_deadline_raises_timeout(self):
        """The deadline aborts a task blocked in race()."""

        async def task(progress: Progress) -> None:
            await progress.race(asyncio.sleep(10))

        loop = asyncio.get_running_loop()
        started = loop.time()
        with pytest.raises(TimeoutError) as exc_info:
            await ProgressController(50, 'test.wait').run(task)
        assert exc_info.value.timeout_ms == 50
        assert 'Timeout 50ms exceeded' in exc_info.value.message
        assert loop.time() - started < 2

    @pytest.mark.asyncio
    async def test_cleanups_run_once_in_order(self):
        """Cleanups registered before the abort run once each, in registration order."""
        calls: list[str] = []

        async def async_cleanup() -> None:
            calls.append('second')

        async def task(progress: Progress) -> None:
            progress.cleanup_when_aborted(lambda: calls.append('first'))
            progress.cleanup_when_aborted(async_cleanup)
            await progress.race(asyncio.sleep(10))

        controller = ProgressController(30)
        with pytest.raises(TimeoutError):
            await controller.run(task)
        await controller._run_cleanups()
        assert calls == ['first', 'second']

    @pytest.mark.asyncio
    async def test_cleanups_skipped_on_success(self):
        """A task that finishes normally does not run its cleanups."""
        calls: list[str] = []

        async def task(progress: Progress) -> None:
            progress.cleanup_when_aborted(lambda: calls.append('cleanup'))

        await ProgressController(1000).run(task)
        assert calls == []

    @pytest.mark.asyncio
    async def test_cleanup_registered_after_abort_runs_immediately(self):
        """Registering a cleanup on an aborted progress schedules it right away."""
        calls: list[str] = []
        captured: list[Progress] = []

        async def task(progress: Progress) -> None:
            captured.append(progress)
            await progress.race(asyncio.sleep(10))

        with pytest.raises(TimeoutError):
            await ProgressController(20).run(task)
        captured[0].cleanup_when_aborted(lambda: calls.append('late'))
        await asyncio.sleep(0.01)
        assert calls == ['late']

    @pytest.mark.asyncio
    async def test_cleanup_errors_are_contained(self):
        """A failing cleanup does not stop the following ones."""
        calls: list[str] = []

        def broken() -> None:
            raise RuntimeError('cleanup failed')

        async def task(progress: Progress) -> None:
            progress.cleanup_when_aborted(broken)
            progress.cleanup_when_aborted(lambda: calls.append('after'))
            raise TabwrightError('boom')

        with pytest.raises(TabwrightError, match='boom'):
            await ProgressController(1000).run(task)
        assert calls == ['after']

    @pytest.mark.asyncio
    async def test_explicit_abort(self):
        """abort() with an error rejects every pending race with that error."""

        async def task(progress: Progress) -> None:
            asyncio.get_running_loop().call_later(0.01, progress.abort, TabwrightError('stopped'))
            await progress.race(asyncio.sleep(10))

        with pytest.raises(TabwrightError, match='stopped'):
            await ProgressController(5000).run(task)

    @pytest.mark.asyncio
    async def test_race_after_abort_fails_fast(self):
        """race() on an already aborted progress raises without awaiting."""

        async def task(progress: Progress) -> None:
            progress.abort(TabwrightError('gone'))
            assert progress.aborted
            await progress.race(asyncio.sleep(10))

        with pytest.raises(TabwrightError, match='gone'):
            await ProgressController(5000).run(task)

    @pytest.mark.asyncio
    async def test_time_left_decreases(self):
        """time_left_ms() counts down toward zero."""

        async def task(progress: Progress) -> tuple[float, float]:
            first = progress.time_left_ms()
            await progress.wait(20)
            return first, progress.time_left_ms()

        first, second = await ProgressController(1000).run(task)
        assert 0 < second < first <= 1000


class TestExecuteWithProgress:
    """Tests for execute_with_progress."""

    @pytest.mark.asyncio
    async def test_error_carries_operation_and_call_log(self):
        """Errors leave with the api name and the accumulated log."""

        async def action(progress: Progress) -> None:
            progress.log('step one')
            progress.log('step two')
            raise TabwrightError('boom')

        with pytest.raises(TabwrightError) as exc_info:
            await execute_with_progress(action, 1000, api_name='frame.test')
        error = exc_info.value
        assert error.operation == 'frame.test'
        assert error.call_log == ['step one', 'step two']
        assert str(error).startswith('frame.test: boom')
        assert '  - step one' in str(error)

    @pytest.mark.asyncio
    async def test_timeout_carries_operation(self):
        """A timed-out call is reported under its own api name."""

        async def action(progress: Progress) -> None:
            progress.log('waiting forever')
            await progress.race(asyncio.sleep(10))

        with pytest.raises(TimeoutError) as exc_info:
            await execute_with_progress(action, 30, api_name='page.waitForever')
        assert exc_info.value.operation == 'page.waitForever'
        assert exc_info.value.call_log == ['waiting forever']

    @pytest.mark.asyncio
    async def test_nested_call_reuses_outer_progress(self):
        """A nested call shares the outer deadline and log."""
        outer_progress: list[Progress] = []

        async def inner(progress: Progress) -> str:
            progress.log('inner')
            return 'done'

        async def outer(progress: Progress) -> str:
            outer_progress.append(progress)
            progress.log('outer')
            return await execute_with_progress(inner, 1, progress=progress, api_name='inner.call')

        assert await execute_with_progress(outer, 1000, api_name='outer.call') == 'done'
        assert outer_progress[0].logs == ['outer', 'inner']

    @pytest.mark.asyncio
    async def test_default_timeout_from_environment(self, monkeypatch):
        """Without an explicit timeout the configured default applies."""
        monkeypatch.setenv('TABWRIGHT_DEFAULT_TIMEOUT_MS', '40')

        async def action(progress: Progress) -> None:
            await progress.race(asyncio.sleep(10))

        with pytest.raises(TimeoutError) as exc_info:
            await execute_with_progress(action)
        assert exc_info.value.timeout_ms == 40
