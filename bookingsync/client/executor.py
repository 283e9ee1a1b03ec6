"""Single logical execution context for client-side state.

Every externally triggered event (visibility change, timer expiry, inbound
message, finished network call) is posted here and handled one at a time,
in order, by a single asyncio task. Handlers are plain functions and must
not block; network I/O is started with :meth:`SerialExecutor.spawn` and its
outcome is posted back as another event.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

ResultCallback = Callable[[Any, BaseException | None], None]


class SerialExecutor:
    """Serializes handlers onto one asyncio task."""

    def __init__(self):
        self._queue: asyncio.Queue | None = None
        self._task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._running = False

    async def start(self) -> None:
        """Start draining posted handlers."""
        if self._running:
            return

        self._queue = asyncio.Queue()
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.debug("Serial executor started")

    async def stop(self) -> None:
        """Cancel pending work and stop.

        Spawned tasks and timers are cancelled and awaited; nothing posted
        before or after this call runs once it returns.
        """
        self._running = False

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._queue = None
        logger.debug("Serial executor stopped")

    @property
    def running(self) -> bool:
        return self._running

    def post(self, handler: Callable[..., Any], *args: Any) -> bool:
        """Queue a handler to run on the executor.

        Returns:
            False if the executor is not running and the handler was dropped.
        """
        if not self._running or self._queue is None:
            logger.debug(f"Executor stopped, dropping {getattr(handler, '__name__', handler)}")
            return False
        self._queue.put_nowait((handler, args, None))
        return True

    def submit(self, handler: Callable[..., Any], *args: Any) -> asyncio.Future:
        """Queue a handler and get a future for its return value."""
        future = asyncio.get_running_loop().create_future()
        if not self._running or self._queue is None:
            future.set_exception(RuntimeError("Executor is not running"))
            return future
        self._queue.put_nowait((handler, args, future))
        return future

    def spawn(
        self,
        coro: Awaitable[Any],
        callback: ResultCallback | None = None,
    ) -> asyncio.Task:
        """Run a coroutine off the executor and post its outcome back.

        Args:
            coro: Coroutine to run (typically network I/O).
            callback: Called on the executor with ``(result, exception)``.
                Not called if the task is cancelled.

        Returns:
            The task, which :meth:`stop` cancels if it is still running.
        """
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            if t.cancelled() or callback is None:
                return
            exc = t.exception()
            self.post(callback, None if exc else t.result(), exc)

        task.add_done_callback(_done)
        return task

    def call_later(self, delay: float, handler: Callable[..., Any], *args: Any) -> asyncio.Task:
        """Post a handler after a delay.

        Cancel the returned task to drop the timer.
        """

        async def _timer() -> None:
            await asyncio.sleep(delay)
            self.post(handler, *args)

        task = asyncio.ensure_future(_timer())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait until every handler posted so far has run."""
        if self._queue is not None:
            await self._queue.join()

    async def _run_loop(self) -> None:
        """Main handler loop."""
        assert self._queue is not None
        queue = self._queue

        while True:
            handler, args, future = await queue.get()
            try:
                result = handler(*args)
            except Exception as e:
                logger.error(
                    f"Handler {getattr(handler, '__name__', handler)} failed: {e}",
                    exc_info=True,
                )
                if future is not None and not future.done():
                    future.set_exception(e)
            else:
                if future is not None and not future.done():
                    future.set_result(result)
            finally:
                queue.task_done()
