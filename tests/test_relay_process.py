import asyncio
import errno
import os
import signal
import socket
import sys
import tempfile
from pathlib import Path

import pytest

from stdiorelay.common import Constants

SRC = Path(__file__).resolve().parents[1] / "src"
CONNECTED = f"Connected to 127.0.0.1 on port {Constants.PORT}!\n".encode()
TIMEOUT = 10

skip_windows = pytest.mark.skipif(os.name == "nt", reason="Skipping due to Windows")


def _env() -> dict[str, str]:
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(SRC), env.get("PYTHONPATH")]))
    return env


async def _start_relay(stdout=asyncio.subprocess.PIPE) -> asyncio.subprocess.Process:
    return await asyncio.create_subprocess_exec(
        sys.executable,
        "-m",
        "stdiorelay.relay",
        stdin=asyncio.subprocess.PIPE,
        stdout=stdout,
        stderr=asyncio.subprocess.PIPE,
        env=_env(),
    )


async def _listen(callback) -> asyncio.AbstractServer:
    try:
        return await asyncio.start_server(callback, "127.0.0.1", Constants.PORT)
    except OSError as e:
        pytest.skip(f"Port {Constants.PORT} is unavailable: {e}")


@skip_windows
@pytest.mark.asyncio
async def test_forwards_stdin_to_peer():
    received = asyncio.Future()

    async def on_connection(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        received.set_result(await reader.read())
        writer.close()

    async with await _listen(on_connection):
        proc = await _start_relay()

        assert await asyncio.wait_for(proc.stdout.readline(), TIMEOUT) == CONNECTED

        proc.stdin.write(b"hello\n")
        await proc.stdin.drain()
        proc.stdin.close()

        assert await asyncio.wait_for(received, TIMEOUT) == b"hello\n"
        assert await asyncio.wait_for(proc.wait(), TIMEOUT) == 0


@skip_windows
@pytest.mark.asyncio
async def test_forwards_peer_to_stdout():
    async def on_connection(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        writer.write(b"world")
        await writer.drain()
        writer.write_eof()
        await reader.read()
        writer.close()

    async with await _listen(on_connection):
        proc = await _start_relay()

        output = await asyncio.wait_for(proc.stdout.read(), TIMEOUT)
        assert output == CONNECTED + b"world"
        assert await asyncio.wait_for(proc.wait(), TIMEOUT) == 0
        proc.stdin.close()


@skip_windows
@pytest.mark.asyncio
@pytest.mark.parametrize("signum", [signal.SIGINT, signal.SIGTERM])
async def test_signal_shuts_down_gracefully(signum):
    async def on_connection(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        await reader.read()
        writer.close()

    async with await _listen(on_connection):
        proc = await _start_relay()
        assert await asyncio.wait_for(proc.stdout.readline(), TIMEOUT) == CONNECTED

        proc.stdin.write(b"x" * 65536)
        proc.send_signal(signum)

        assert await asyncio.wait_for(proc.wait(), TIMEOUT) == 0
        proc.stdin.close()


@skip_windows
@pytest.mark.asyncio
async def test_connection_refused_is_fatal():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind(("127.0.0.1", Constants.PORT))
        except OSError as e:
            pytest.skip(f"Port {Constants.PORT} is unavailable: {e}")

    proc = await _start_relay()
    stdout, stderr = await asyncio.wait_for(proc.communicate(), TIMEOUT)

    assert proc.returncode == errno.ECONNREFUSED
    assert stdout == b""
    assert b"connect: Connection refused" in stderr


@skip_windows
@pytest.mark.asyncio
async def test_sigint_with_stalled_stdout_reader():
    accepted = asyncio.Event()

    async def on_connection(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        accepted.set()
        try:
            for _ in range(64):
                writer.write(b"x" * 65536)
                await writer.drain()
            await reader.read()
        except ConnectionError:
            pass
        writer.close()

    stdout_r, stdout_w = os.pipe()
    try:
        async with await _listen(on_connection):
            proc = await _start_relay(stdout=stdout_w)
            os.close(stdout_w)
            stdout_w = None

            await asyncio.wait_for(accepted.wait(), TIMEOUT)
            await asyncio.sleep(0.5)

            proc.send_signal(signal.SIGINT)
            assert await asyncio.wait_for(proc.wait(), TIMEOUT) == 0
            proc.stdin.close()
    finally:
        os.close(stdout_r)
        if stdout_w is not None:
            os.close(stdout_w)


@skip_windows
@pytest.mark.asyncio
async def test_forwards_peer_to_regular_file():
    async def on_connection(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        writer.write(b"world")
        await writer.drain()
        writer.write_eof()
        await reader.read()
        writer.close()

    with tempfile.TemporaryFile() as out:
        async with await _listen(on_connection):
            proc = await _start_relay(stdout=out)
            assert await asyncio.wait_for(proc.wait(), TIMEOUT) == 0
            proc.stdin.close()

        out.seek(0)
        assert out.read() == CONNECTED + b"world"
