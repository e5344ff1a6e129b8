import os
import sys
import asyncio
from tqdm import tqdm

from echo import client_callback
from stdiorelay.common import Constants


PACKET_SIZE = 1024 ** 2
TOTAL_SIZE = 256 * PACKET_SIZE


async def write(stdin: asyncio.StreamWriter):
    data = os.urandom(PACKET_SIZE)

    for _ in range(TOTAL_SIZE // PACKET_SIZE):
        stdin.write(data)
        await stdin.drain()


async def read(stdout: asyncio.StreamReader):
    # Skip the connection confirmation.
    await stdout.readline()

    received = 0
    with tqdm(desc="Bytes relayed", total=TOTAL_SIZE, unit="B", unit_scale=True) as pbar:
        while received < TOTAL_SIZE:
            data = await stdout.read(PACKET_SIZE)
            if not data:
                break
            received += len(data)
            pbar.update(len(data))
    return received


async def main():
    server = await asyncio.start_server(client_callback, "127.0.0.1", Constants.PORT)

    async with server:
        proc = await asyncio.create_subprocess_exec(
            sys.executable,
            "-m",
            "stdiorelay.relay",
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
        )

        received, _ = await asyncio.gather(read(proc.stdout), write(proc.stdin))
        # End of stream on the relay stdin shuts it down.
        proc.stdin.close()
        await proc.wait()

    print(f"done, {received} of {TOTAL_SIZE} bytes echoed, exit code {proc.returncode}")


if __name__ == "__main__":
    asyncio.run(main())
