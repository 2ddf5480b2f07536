import asyncio
import threading

from petsync.services.scheduling import AsyncioScheduler, AsyncRunner


class TestAsyncRunner:
    """Background loop thread used by the Flask views"""

    def test_run_returns_coroutine_result(self):
        runner = AsyncRunner().start()

        async def answer():
            return 42

        try:
            assert runner.run(answer()) == 42
        finally:
            runner.stop()

    def test_stop_cancels_outstanding_tasks(self):
        runner = AsyncRunner().start()
        scheduler = AsyncioScheduler(runner.loop)
        started = threading.Event()
        outcome = []

        async def long_running():
            started.set()
            try:
                await asyncio.sleep(60)
            except asyncio.CancelledError:
                outcome.append('cancelled')
                raise

        scheduler.spawn(long_running())
        scheduler.call_every(60, lambda: None)
        assert started.wait(2)

        runner.stop()

        assert outcome == ['cancelled']
        assert runner.loop.is_closed()

    def test_stop_is_idempotent(self):
        runner = AsyncRunner().start()

        runner.stop()
        runner.stop()

        assert runner.loop.is_closed()
