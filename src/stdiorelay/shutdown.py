import asyncio
import enum
import signal
from typing import Awaitable, Iterable, TypeVar

from .handles import Handle
from .logging import get_logger


LOGGER = get_logger(__name__)

T = TypeVar("T")


class ShutdownState(enum.Enum):
    RUNNING = 0
    STOPPING = 1
    CLOSING = 2
    TERMINATED = 3


class ShutdownCoordinator:
    """Decides when the relay stops and closes every handle afterwards.

    A stop is requested by a signal or by a supervised task finishing with a
    truthy result (a forwarding direction reaching end of stream). A
    supervised task that raises propagates the error out of ``wait``.
    """

    def __init__(self):
        self.state = ShutdownState.RUNNING
        self.reason: str | None = None
        self._stopping = asyncio.Event()
        self._tasks: dict[asyncio.Task, str | None] = {}

    def supervise(self, task: asyncio.Task, reason: str | None = None):
        self._tasks[task] = reason

    def request_stop(self, reason: str) -> bool:
        if self.state is not ShutdownState.RUNNING:
            LOGGER.debug("Ignoring stop request (%s) while %s.", reason, self.state.name)
            return False

        LOGGER.info("Stopping: %s.", reason)
        self.state = ShutdownState.STOPPING
        self.reason = reason
        self._stopping.set()
        return True

    def on_signal(self, signum: int):
        self.request_stop(f"received {signal.Signals(signum).name}")

    async def run_until_stopped(self, aw: Awaitable[T]) -> T | None:
        """Awaits ``aw`` unless a stop is requested first, in which case it is
        cancelled and None is returned."""

        task = asyncio.ensure_future(aw)
        stop_task = asyncio.create_task(self._stopping.wait())
        try:
            await asyncio.wait([task, stop_task], return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_task.cancel()

        if task.done():
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        return None

    async def wait(self):
        stop_task = asyncio.create_task(self._stopping.wait())

        try:
            while self.state is ShutdownState.RUNNING:
                done_tasks, _ = await asyncio.wait(
                    [stop_task, *self._tasks], return_when=asyncio.FIRST_COMPLETED
                )

                for task in done_tasks:
                    if task is stop_task:
                        continue

                    reason = self._tasks.pop(task)
                    # Raises if the task failed.
                    if task.result() and reason is not None:
                        self.request_stop(reason)
        finally:
            if not stop_task.done():
                stop_task.cancel()

    async def close(self, handles: Iterable[Handle]):
        if self.state in (ShutdownState.CLOSING, ShutdownState.TERMINATED):
            return
        if self.state is ShutdownState.RUNNING:
            self.request_stop("closing")

        self.state = ShutdownState.CLOSING

        tasks = list(self._tasks)
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        for handle in handles:
            handle.close()
            await handle.wait_closed()

        self.state = ShutdownState.TERMINATED
        LOGGER.info("All handles closed.")
