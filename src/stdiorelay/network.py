import asyncio
import socket

from .common import FatalError, TargetAddress
from .handles import Connection
from .logging import get_logger


LOGGER = get_logger(__name__)


async def resolve(host: str, port: int | str) -> TargetAddress:
    """Resolves ``host`` and ``port`` to a single IPv4 address.

    Only the first result of the lookup is kept. A failed lookup is fatal,
    there is no retry and no fallback address.
    """

    loop = asyncio.get_running_loop()
    try:
        results = await loop.getaddrinfo(
            host, port, family=socket.AF_INET, type=socket.SOCK_STREAM
        )
    except socket.gaierror as e:
        raise FatalError.from_os_error("getaddrinfo", e) from e

    if not results:
        raise FatalError("getaddrinfo", socket.EAI_NONAME, f"no address found for {host}")

    LOGGER.debug("Resolved %s:%s to %d address(es).", host, port, len(results))
    *_, sockaddr = results[0]
    return TargetAddress(sockaddr[0], sockaddr[1])


async def connect(address: TargetAddress) -> Connection:
    loop = asyncio.get_running_loop()

    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setblocking(False)

    LOGGER.debug("Connecting to %s.", address)
    try:
        await loop.sock_connect(sock, (address.host, address.port))
    except OSError as e:
        sock.close()
        raise FatalError.from_os_error("connect", e) from e
    except asyncio.CancelledError:
        sock.close()
        raise

    return Connection(sock, address)
