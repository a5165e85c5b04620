"""Raw socket helpers for talking to the proxy in tests"""

import asyncio
import os
import socket

from aiohttp import web
from multidict import CIMultiDict

# Paths the stub destination saw on its redirect chain
HOPS = web.AppKey("hops", list)

BIG_BODY = os.urandom(512 * 1024)
GZIP_TEXT = "维基百科，自由的百科全书\n" * 200


def free_port() -> int:
    """A port nothing listens on"""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        return s.getsockname()[1]


def make_reader(data: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return reader


class FakeWriter:
    """Collects everything written; stands in for asyncio.StreamWriter"""

    def __init__(self, peer=('127.0.0.1', 40000)):
        self.buffer = bytearray()
        self.peer = peer
        self.closed = False
        self.transport = None

    def get_extra_info(self, name, default=None):
        return self.peer if name == 'peername' else default

    def write(self, data):
        self.buffer.extend(data)

    async def drain(self):
        pass

    def is_closing(self):
        return self.closed

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass


def parse_head(head: bytes):
    lines = head.decode('latin-1').split('\r\n')
    status = int(lines[0].split(' ')[1])
    headers = CIMultiDict()
    for line in lines[1:]:
        if line:
            name, _, value = line.partition(':')
            headers.add(name, value.strip())
    return status, headers


async def read_chunked(reader: asyncio.StreamReader) -> bytes:
    body = bytearray()
    while True:
        size = int((await reader.readline()).split(b';')[0].strip(), 16)
        if size == 0:
            await reader.readline()
            return bytes(body)
        body.extend(await reader.readexactly(size))
        await reader.readexactly(2)


async def read_response(reader: asyncio.StreamReader, method: str = 'GET'):
    """Reads one response; returns (status, headers, body)"""
    head = await reader.readuntil(b"\r\n\r\n")
    status, headers = parse_head(head)

    if method == 'HEAD' or status in (204, 304) or 100 <= status < 200:
        body = b""
    elif 'Content-Length' in headers:
        body = await reader.readexactly(int(headers['Content-Length']))
    elif headers.get('Transfer-Encoding', '').lower() == 'chunked':
        body = await read_chunked(reader)
    else:
        body = await reader.read()
    return status, headers, body


async def proxy_request(port: int, raw: bytes, method: str = 'GET', timeout: float = 10.0):
    """Sends raw request bytes to the proxy and reads one response"""
    reader, writer = await asyncio.open_connection('127.0.0.1', port)
    try:
        writer.write(raw)
        await writer.drain()
        return await asyncio.wait_for(read_response(reader, method), timeout)
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError):
            pass


async def read_until_eof(reader: asyncio.StreamReader, timeout: float = 10.0) -> bytes:
    return await asyncio.wait_for(reader.read(), timeout)
