import asyncio

from stdiorelay.common import Constants


async def client_callback(reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
    print("new connection from", writer.get_extra_info("peername"))
    while True:
        data = await reader.read(Constants.BUFFER_LEN)
        if not data:
            break
        writer.write(data)
        await writer.drain()
    writer.close()
    await writer.wait_closed()
    print("connection closed")


async def main():
    server = await asyncio.start_server(client_callback, "127.0.0.1", Constants.PORT)
    async with server:
        await server.serve_forever()


if __name__ == "__main__":
    asyncio.run(main())
