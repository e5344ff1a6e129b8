import asyncio
import contextlib
import errno
import os
import signal
import socket
import stat
import sys
from typing import Awaitable, Callable

from .common import FatalError, InflightWrite, TargetAddress
from .logging import get_logger


LOGGER = get_logger(__name__)


class Handle:
    """An OS level resource with an explicit close lifecycle.

    ``close`` only requests the close; ``wait_closed`` returns once the handle
    has confirmed it. Both may be called any number of times.
    """

    def __init__(self, name: str):
        self.name = name
        self._closing_task: asyncio.Task[None] | None = None

    def is_closing(self) -> bool:
        return self._closing_task is not None

    @property
    def closed(self) -> bool:
        return self._closing_task is not None and self._closing_task.done()

    def close(self):
        if self._closing_task is not None:
            return
        LOGGER.debug("Closing %s.", self.name)
        self._closing_task = asyncio.get_running_loop().create_task(self._close())

    async def wait_closed(self):
        if self._closing_task is None:
            raise RuntimeError(f"Handle {self.name} has not been asked to close.")
        await asyncio.shield(self._closing_task)
        LOGGER.debug("Closed %s.", self.name)

    async def _close(self):
        raise NotImplementedError


class WriteQueue:
    """Unbounded FIFO of in-flight writes drained by a single task.

    Submitting never waits, so a reader feeding the queue is never slowed
    down by its sink. Writes complete in submission order, and every request
    is released exactly once: after its write, on failure, or when dropped
    by ``close``.
    """

    def __init__(self, name: str, send: Callable[[bytes], Awaitable[None]]):
        self.name = name
        self._send = send
        self._queue: asyncio.Queue[InflightWrite] = asyncio.Queue()
        self._closing = False
        self.task = asyncio.get_running_loop().create_task(self._run(), name=f"write {name}")

    def __len__(self) -> int:
        return self._queue.qsize()

    def submit(self, request: InflightWrite):
        if self._closing:
            LOGGER.debug("Dropping %d bytes for %s, queue is closed.", len(request), self.name)
            request.release()
            return
        self._queue.put_nowait(request)

    async def flush(self):
        """Waits until every submitted write has completed."""
        await self._queue.join()

    async def close(self):
        self._closing = True

        if not self.task.done():
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass

        dropped = 0
        while not self._queue.empty():
            request = self._queue.get_nowait()
            dropped += len(request)
            request.release()
            self._queue.task_done()

        if dropped:
            LOGGER.info("Dropped %d queued bytes for %s.", dropped, self.name)

    async def _run(self):
        while True:
            request = await self._queue.get()
            try:
                with request as payload:
                    await self._send(payload)
            except OSError as e:
                raise FatalError.from_os_error("write", e) from e
            finally:
                self._queue.task_done()


class SignalWatcher(Handle):
    def __init__(self, signum: int, callback: Callable[[int], None]):
        super().__init__(signal.Signals(signum).name)
        self.signum = signum
        self._loop = asyncio.get_running_loop()

        try:
            self._loop.add_signal_handler(signum, callback, signum)
        except NotImplementedError as e:
            raise FatalError("signal_start", errno.ENOSYS, "signal handlers are not supported") from e
        except (RuntimeError, ValueError) as e:
            raise FatalError("signal_start", errno.EINVAL, str(e)) from e

    async def _close(self):
        self._loop.remove_signal_handler(self.signum)


@contextlib.contextmanager
def blocking_mode_restored(fd: int = 0):
    """Puts the blocking mode of ``fd`` back on exit, also after a fatal error."""

    try:
        blocking = os.get_blocking(fd)
    except OSError:
        yield
        return

    try:
        yield
    finally:
        try:
            os.set_blocking(fd, blocking)
        except OSError:
            LOGGER.debug("Could not restore blocking mode of fd %d.", fd)


class InputStream(Handle):
    """Non-blocking reader for a file descriptor, stdin by default."""

    def __init__(self, fd: int = 0):
        super().__init__("stdin")
        self._fd = fd
        self._loop = asyncio.get_running_loop()
        self._waiter: asyncio.Future[None] | None = None

        try:
            self._was_blocking = os.get_blocking(fd)
            os.set_blocking(fd, False)
        except OSError as e:
            raise FatalError.from_os_error("pipe_open", e) from e

    async def readinto(self, buffer: bytearray) -> int:
        while True:
            try:
                return os.readv(self._fd, [buffer])
            except (BlockingIOError, InterruptedError):
                await self._wait_readable()

    async def _wait_readable(self):
        self._waiter = self._loop.create_future()
        try:
            self._loop.add_reader(self._fd, self._on_readable, self._waiter)
        except OSError as e:
            self._waiter = None
            raise FatalError.from_os_error("read_start", e) from e

        try:
            await self._waiter
        finally:
            self._loop.remove_reader(self._fd)
            self._waiter = None

    @staticmethod
    def _on_readable(waiter: asyncio.Future[None]):
        if not waiter.done():
            waiter.set_result(None)

    async def _close(self):
        if self._waiter is not None:
            self._waiter.cancel()
            self._loop.remove_reader(self._fd)
        try:
            os.set_blocking(self._fd, self._was_blocking)
        except OSError:
            LOGGER.debug("Could not restore blocking mode of fd %d.", self._fd)


class _OutputProtocol(asyncio.streams.FlowControlMixin):
    def __init__(self, loop: asyncio.AbstractEventLoop | None = None):
        super().__init__(loop)
        self._closed = asyncio.get_running_loop().create_future()

    def connection_lost(self, exc: Exception | None):
        super().connection_lost(exc)
        if not self._closed.done():
            self._closed.set_result(None)

    def _get_close_waiter(self, stream: asyncio.StreamWriter) -> asyncio.Future[None]:
        return self._closed


class OutputStream(Handle):
    """Writes to stdout, or any pipe or file, through an ordered write queue.

    Pipes, sockets and character devices go through an asyncio write pipe
    transport. Regular files never block and are written directly.
    """

    def __init__(self, writer: asyncio.StreamWriter | None, file=None):
        super().__init__("stdout")
        self._writer = writer
        self._file = file
        self.writes = WriteQueue("stdout", self._send)

    @classmethod
    async def open(cls, pipe=None) -> "OutputStream":
        if pipe is None:
            sys.stdout.flush()
            pipe = open(sys.stdout.fileno(), "wb", buffering=0, closefd=False)

        try:
            mode = os.fstat(pipe.fileno()).st_mode
        except OSError as e:
            raise FatalError.from_os_error("pipe_open", e) from e

        if stat.S_ISREG(mode):
            return cls(None, pipe)

        loop = asyncio.get_running_loop()
        try:
            transport, protocol = await loop.connect_write_pipe(_OutputProtocol, pipe)
        except ValueError as e:
            raise FatalError("pipe_open", errno.EINVAL, str(e)) from e
        except OSError as e:
            raise FatalError.from_os_error("pipe_open", e) from e

        # A write only completes once the OS has taken every byte of it.
        transport.set_write_buffer_limits(high=0)
        return cls(asyncio.StreamWriter(transport, protocol, None, loop))

    def submit(self, request: InflightWrite):
        self.writes.submit(request)

    async def flush(self):
        await self.writes.flush()

    async def _send(self, payload: bytes):
        if self._writer is None:
            view = memoryview(payload)
            while view:
                view = view[os.write(self._file.fileno(), view):]
            return

        self._writer.write(payload)
        await self._writer.drain()

    async def _close(self):
        await self.writes.close()

        if self._writer is None:
            self._file.close()
            return

        # Completed writes are already with the OS, anything still buffered
        # belongs to a dropped write and must not keep the close waiting.
        if not self._writer.is_closing():
            self._writer.transport.abort()
        await self._writer.wait_closed()


class Connection(Handle):
    """A connected TCP socket. Reads go straight into the caller's buffer."""

    def __init__(self, sock: socket.socket, peer: TargetAddress):
        super().__init__("connection")
        self.peer = peer
        self._sock = sock
        self._loop = asyncio.get_running_loop()
        self.writes = WriteQueue("connection", self._send)

    async def readinto(self, buffer: bytearray) -> int:
        return await self._loop.sock_recv_into(self._sock, buffer)

    def submit(self, request: InflightWrite):
        self.writes.submit(request)

    async def flush(self):
        await self.writes.flush()

    async def _send(self, payload: bytes):
        await self._loop.sock_sendall(self._sock, payload)

    async def _close(self):
        await self.writes.close()
        self._sock.close()
