import asyncio
import dataclasses
import signal

from .common import BufferPool, Constants, Direction, InflightWrite, Relay
from .handles import Connection, Handle, InputStream, OutputStream, SignalWatcher
from .logging import get_logger
from .network import connect, resolve
from .shutdown import ShutdownCoordinator


LOGGER = get_logger(__name__)


@dataclasses.dataclass(slots=True)
class RelayContext:
    """Owns every resource of a single relay run."""

    coordinator: ShutdownCoordinator
    buffers: BufferPool
    signals: list[SignalWatcher] = dataclasses.field(default_factory=list)
    connection: Connection | None = None
    stdin: InputStream | None = None
    stdout: OutputStream | None = None

    def handles(self) -> list[Handle]:
        """Every open handle, in the order they are closed."""
        handles: list[Handle] = [
            handle for handle in (self.connection, self.stdin, self.stdout) if handle is not None
        ]
        # Signals stay watched until everything else has closed.
        handles.extend(self.signals)
        return handles


async def _establish(context: RelayContext, host: str, port: int) -> bool:
    address = await resolve(host, port)
    context.connection = await connect(address)

    message = f"Connected to {address.host} on port {address.port}!"
    LOGGER.info(message)
    context.stdout.submit(InflightWrite.from_bytes(f"{message}\n".encode()))
    await context.stdout.flush()
    return True


def _start_relays(context: RelayContext):
    coordinator = context.coordinator

    upstream = Relay(
        Direction.UPSTREAM,
        context.stdin,
        context.connection,
        context.buffers.get(Direction.UPSTREAM),
    )
    downstream = Relay(
        Direction.DOWNSTREAM,
        context.connection,
        context.stdout,
        context.buffers.get(Direction.DOWNSTREAM),
    )

    coordinator.supervise(
        asyncio.create_task(upstream.serve(), name="relay upstream"), "end of stream on stdin"
    )
    coordinator.supervise(
        asyncio.create_task(downstream.serve(), name="relay downstream"),
        "end of stream on connection",
    )
    coordinator.supervise(context.connection.writes.task)
    coordinator.supervise(context.stdout.writes.task)


async def run(
    host: str = Constants.HOST,
    port: int = Constants.PORT,
    *,
    stdin_fd: int = 0,
    stdout_pipe=None,
) -> RelayContext:
    """Relays stdin and stdout through a TCP connection until either side
    closes or SIGINT/SIGTERM arrives.

    Fatal errors propagate as ``FatalError`` without closing anything.
    """

    coordinator = ShutdownCoordinator()
    context = RelayContext(coordinator, BufferPool(Constants.BUFFER_LEN))

    for signum in (signal.SIGINT, signal.SIGTERM):
        context.signals.append(SignalWatcher(signum, coordinator.on_signal))

    context.stdin = InputStream(stdin_fd)
    context.stdout = await OutputStream.open(stdout_pipe)

    established = await coordinator.run_until_stopped(_establish(context, host, port))

    if established:
        _start_relays(context)
        await coordinator.wait()

    await coordinator.close(context.handles())
    context.buffers.close()
    LOGGER.debug("Relay terminated: %s.", coordinator.reason)
    return context
