import dataclasses
import enum
import errno
import os
import traceback

from .logging import get_logger


LOGGER = get_logger(__name__)


class Constants:

    HOST = "localhost"
    PORT = 12345

    BUFFER_LEN = 4096


class GenericException(Exception):
    def __init__(self, msg: str):
        super().__init__(msg)
        self._msg = msg

    @property
    def message(self) -> str:
        return self._msg


class FatalError(GenericException):
    """An unrecoverable failure of an underlying system call.

    Parameters
    ----------
    call : str
        Name of the call that failed, e.g. ``getaddrinfo`` or ``connect``.
    code : int
        The error code reported by the call.
    description : str
        Human readable description of the error.
    """

    def __init__(self, call: str, code: int, description: str):
        super().__init__(f"{call}: {description}")
        self.call = call
        self.code = code
        self.description = description

    @classmethod
    def from_os_error(cls, call: str, error: OSError) -> "FatalError":
        code = error.errno if error.errno is not None else errno.EIO
        description = error.strerror or str(error) or os.strerror(code)
        return cls(call, code, description)

    @property
    def exit_code(self) -> int:
        return abs(self.code) % 256 or 1

    @property
    def location(self) -> str:
        frames = traceback.extract_tb(self.__traceback__)
        if not frames:
            return "<unknown>"
        frame = frames[-1]
        return f"{frame.filename}:{frame.lineno}"


class Direction(enum.Enum):
    UPSTREAM = "stdin -> socket"
    DOWNSTREAM = "socket -> stdout"


class BufferPool:
    """Holds one reusable read buffer per relay direction."""

    def __init__(self, buffer_len: int = Constants.BUFFER_LEN):
        if buffer_len <= 0:
            raise ValueError("Buffer length must be positive.")
        self._buffers: dict[Direction, bytearray] | None = {
            direction: bytearray(buffer_len) for direction in Direction
        }

    @property
    def closed(self) -> bool:
        return self._buffers is None

    def get(self, direction: Direction) -> bytearray:
        if self._buffers is None:
            raise RuntimeError("Buffer pool is closed.")
        return self._buffers[direction]

    def close(self):
        self._buffers = None


class InflightWrite:
    """A queued write together with the copy of the bytes it owns.

    The payload is copied out of the read buffer on construction, so the read
    buffer can be reused as soon as the write has been queued. The payload is
    released exactly once, when the write completes, fails or is dropped.
    """

    def __init__(self, buffer: bytearray, nread: int):
        if not 0 < nread <= len(buffer):
            raise ValueError(f"Invalid read length {nread} for a buffer of {len(buffer)} bytes.")
        self._payload: bytes | None = bytes(memoryview(buffer)[:nread])

    def __len__(self) -> int:
        return 0 if self._payload is None else len(self._payload)

    def __enter__(self) -> bytes:
        return self.payload

    def __exit__(self, exc_type, exc, tb):
        self.release()

    @property
    def released(self) -> bool:
        return self._payload is None

    @property
    def payload(self) -> bytes:
        if self._payload is None:
            raise RuntimeError("Write payload has already been released.")
        return self._payload

    def release(self):
        if self._payload is None:
            raise RuntimeError("Write payload released twice.")
        self._payload = None

    @classmethod
    def from_bytes(cls, data: bytes) -> "InflightWrite":
        return cls(bytearray(data), len(data))


@dataclasses.dataclass(frozen=True, slots=True)
class TargetAddress:
    host: str
    port: int

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


class Relay:
    """Forwards everything read from ``source`` to ``sink``, one direction only.

    ``source`` needs an ``async readinto(buffer) -> int`` returning 0 at end of
    stream. ``sink`` needs ``submit(InflightWrite)`` and ``async flush()``.
    """

    def __init__(self, direction: Direction, source, sink, buffer: bytearray):
        self.direction = direction
        self._source = source
        self._sink = sink
        self._buffer = buffer
        self.bytes_forwarded = 0

    async def serve(self) -> bool:
        """Runs until the source is exhausted.

        Returns
        -------
        bool
            True on end of stream, once the sink has written everything read.
            False if reading failed; the direction is then abandoned.
        """

        while True:
            try:
                nread = await self._source.readinto(self._buffer)
            except OSError as e:
                LOGGER.warning("Read error on %s, no longer forwarding: %s", self.direction.value, e)
                return False

            if nread == 0:
                LOGGER.info(
                    "End of stream on %s after %d bytes.", self.direction.value, self.bytes_forwarded
                )
                await self._sink.flush()
                return True

            self._sink.submit(InflightWrite(self._buffer, nread))
            self.bytes_forwarded += nread
