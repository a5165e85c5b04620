# core/proxy/inbound.py
"""
Inbound side of a proxy connection.

Parses HTTP/1.x request heads from an asyncio stream, exposes the request
body as a single-pass stream, frames responses back to the caller and lets
the tunnel take the raw socket away from HTTP framing.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from http import HTTPStatus
from typing import AsyncIterator, Optional, Tuple

from multidict import CIMultiDict

from core.proxy.headers import has_token

logger = logging.getLogger(__name__)

_TOKEN = re.compile(r"[!#$%&'*+.^_`|~0-9A-Za-z-]+")

DEFAULT_CHUNK_SIZE = 32 * 1024


class RequestParseError(Exception):
    """The caller sent something that is not a valid HTTP/1.x request"""

    def __init__(self, status: int, reason: str):
        super().__init__(reason)
        self.status = status
        self.reason = reason


class BodyTooLarge(Exception):
    pass


class TakeoverNotSupported(Exception):
    """The connection cannot hand its raw socket over"""


class InboundBody:
    """Single-pass stream over a request body.

    Reads either ``length`` bytes or a chunked body from the client stream,
    ``chunk_size`` bytes at a time. Nothing is buffered beyond one read.
    """

    def __init__(self, reader: asyncio.StreamReader, length: int = 0, chunked: bool = False,
                 max_size: Optional[int] = None, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self._reader = reader
        self.length = length
        self.chunked = chunked
        self.max_size = max_size
        self.chunk_size = chunk_size
        self.bytes_read = 0
        self._started = False
        self.exhausted = self.is_empty

    @property
    def is_empty(self) -> bool:
        return not self.chunked and not self.length

    async def iter_chunks(self) -> AsyncIterator[bytes]:
        if self._started:
            raise RuntimeError("request body can only be read once")
        self._started = True

        source = self._read_chunked() if self.chunked else self._read_fixed()
        async for chunk in source:
            yield chunk
        self.exhausted = True

    async def _read_exact_stream(self, size: int) -> AsyncIterator[bytes]:
        remaining = size
        while remaining > 0:
            chunk = await self._reader.read(min(self.chunk_size, remaining))
            if not chunk:
                raise asyncio.IncompleteReadError(b"", remaining)
            remaining -= len(chunk)
            self.bytes_read += len(chunk)
            yield chunk

    async def _read_fixed(self) -> AsyncIterator[bytes]:
        async for chunk in self._read_exact_stream(self.length):
            yield chunk

    async def _read_chunked(self) -> AsyncIterator[bytes]:
        while True:
            size_line = await self._reader.readline()
            if not size_line.endswith(b"\n"):
                raise asyncio.IncompleteReadError(size_line, None)

            size_text = size_line.split(b";", 1)[0].strip()
            try:
                size = int(size_text, 16)
            except ValueError:
                raise RequestParseError(400, "invalid chunk size") from None
            if size < 0:
                raise RequestParseError(400, "invalid chunk size")

            if size == 0:
                # Trailers are discarded
                while True:
                    line = await self._reader.readline()
                    if line in (b"\r\n", b"\n", b""):
                        return

            if self.max_size is not None and self.bytes_read + size > self.max_size:
                raise BodyTooLarge(f"chunked body exceeds {self.max_size} bytes")

            async for chunk in self._read_exact_stream(size):
                yield chunk

            if await self._reader.readline() not in (b"\r\n", b"\n"):
                raise RequestParseError(400, "missing CRLF after chunk data")


@dataclass
class InboundRequest:
    method: str
    target: str
    version: str
    headers: CIMultiDict
    body: InboundBody
    client: Optional[Tuple[str, int]] = None

    @property
    def keep_alive(self) -> bool:
        """Whether the caller allows the connection to be reused"""
        for name in ('Connection', 'Proxy-Connection'):
            if has_token(self.headers, name, 'close'):
                return False
        if self.version == 'HTTP/1.0':
            return (has_token(self.headers, 'Connection', 'keep-alive') or
                    has_token(self.headers, 'Proxy-Connection', 'keep-alive'))
        return True


async def read_request(reader: asyncio.StreamReader, client=None,
                       max_body_size: Optional[int] = None,
                       chunk_size: int = DEFAULT_CHUNK_SIZE) -> Optional[InboundRequest]:
    """Reads one request head; returns None when the caller closed cleanly.

    The body is not read here, it is handed out as an ``InboundBody``.
    """
    while True:
        try:
            head = await reader.readuntil(b"\r\n\r\n")
        except asyncio.IncompleteReadError as e:
            if e.partial.strip():
                raise RequestParseError(400, "incomplete request head") from None
            return None
        except asyncio.LimitOverrunError:
            raise RequestParseError(431, "request head too large") from None

        # Blank lines between pipelined requests are ignored
        head = head.lstrip(b"\r\n")
        if head:
            break

    # Same codec as ResponseWriter, so raw non-ASCII bytes go upstream unchanged
    lines = head.decode('utf-8', 'surrogateescape').split('\r\n')
    parts = lines[0].split(' ')
    if len(parts) != 3:
        raise RequestParseError(400, "malformed request line")

    method, target, version = parts
    if not _TOKEN.fullmatch(method) or not target:
        raise RequestParseError(400, "malformed request line")
    if not version.startswith('HTTP/1.'):
        raise RequestParseError(505, f"unsupported protocol version {version}")

    headers = CIMultiDict()
    for line in lines[1:]:
        if not line:
            continue
        if line[0] in ' \t':
            raise RequestParseError(400, "obsolete header line folding")
        name, sep, value = line.partition(':')
        if not sep or not _TOKEN.fullmatch(name):
            raise RequestParseError(400, f"malformed header line {line!r}")
        headers.add(name, value.strip(' \t'))

    if method == 'CONNECT':
        # Bytes after the head belong to the tunnel
        body = InboundBody(reader, length=0, chunk_size=chunk_size)
    elif 'Transfer-Encoding' in headers:
        codings = [
            coding.strip().lower()
            for value in headers.getall('Transfer-Encoding')
            for coding in value.split(',')
            if coding.strip()
        ]
        if codings != ['chunked']:
            raise RequestParseError(501, "unsupported transfer encoding")
        headers.popall('Content-Length', None)
        body = InboundBody(reader, chunked=True, max_size=max_body_size, chunk_size=chunk_size)
    else:
        lengths = {value.strip() for value in headers.getall('Content-Length', [])}
        if len(lengths) > 1:
            raise RequestParseError(400, "conflicting Content-Length values")
        length = 0
        if lengths:
            value = lengths.pop()
            if not value.isdigit():
                raise RequestParseError(400, f"invalid Content-Length {value!r}")
            length = int(value)
        if max_body_size is not None and length > max_body_size:
            raise RequestParseError(413, "request body too large")
        body = InboundBody(reader, length=length, chunk_size=chunk_size)

    return InboundRequest(
        method=method,
        target=target,
        version=version,
        headers=headers,
        body=body,
        client=client,
    )


@dataclass
class RawSocket:
    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter


class InboundConnection:
    """One accepted client connection.

    ``supports_takeover`` is the raw-socket capability: when it is off,
    ``take_raw_socket`` always raises ``TakeoverNotSupported``.
    """

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                 supports_takeover: bool = True, write_timeout: Optional[float] = None):
        self.reader = reader
        self.writer = writer
        self.supports_takeover = supports_takeover
        self.write_timeout = write_timeout
        self.peer = writer.get_extra_info('peername')
        self.response_started = False
        self.taken_over = False

    def start_request(self):
        self.response_started = False

    async def write(self, data: bytes):
        self.writer.write(data)
        if self.write_timeout is None:
            await self.writer.drain()
        else:
            await asyncio.wait_for(self.writer.drain(), self.write_timeout)

    def response(self, request: InboundRequest) -> "ResponseWriter":
        return ResponseWriter(self, version=request.version, method=request.method,
                              keep_alive=request.keep_alive)

    async def send_error(self, status: int, message: str, request: Optional[InboundRequest] = None):
        """Plain-text error response, the connection is closed afterwards"""
        if self.response_started:
            logger.warning(f"Response already started, cannot send {status} to {self.peer}")
            return

        response = ResponseWriter(
            self,
            version=request.version if request else 'HTTP/1.1',
            method=request.method if request else 'GET',
            keep_alive=False,
        )
        body = f"{message}\n".encode('utf-8')
        response.headers['Content-Type'] = 'text/plain; charset=utf-8'
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['Content-Length'] = str(len(body))
        await response.write_header(status)
        await response.write(body)
        await response.finish()

    def take_raw_socket(self) -> RawSocket:
        """Removes the connection from HTTP framing and returns its streams"""
        if not self.supports_takeover:
            raise TakeoverNotSupported("connection does not support raw socket takeover")
        if self.taken_over:
            raise TakeoverNotSupported("raw socket already taken")
        if self.response_started:
            raise TakeoverNotSupported("response already started")
        if self.writer.is_closing():
            raise TakeoverNotSupported("connection is closing")

        self.taken_over = True
        return RawSocket(self.reader, self.writer)

    async def close(self):
        if self.taken_over:
            return
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug(f"Error closing client connection {self.peer}: {e}")


class ResponseWriter:
    """Frames one response on an ``InboundConnection``.

    Framing is picked in ``write_header``: no body for HEAD, 1xx, 204 and
    304; the given Content-Length when present; chunked for HTTP/1.1
    callers; close-delimited for HTTP/1.0 callers.
    """

    def __init__(self, connection: InboundConnection, version: str = 'HTTP/1.1',
                 method: str = 'GET', keep_alive: bool = True):
        self.connection = connection
        self.version = version
        self.method = method
        self.headers = CIMultiDict()
        self.status = None
        self.will_close = not keep_alive
        self._mode = None
        self._finished = False

    async def write_header(self, status: int, reason: Optional[str] = None):
        if self.status is not None:
            raise RuntimeError("response headers already sent")
        self.status = status
        self.connection.response_started = True

        headers = self.headers
        headers.popall('Transfer-Encoding', None)
        if has_token(headers, 'Connection', 'close'):
            self.will_close = True

        if self.method == 'HEAD' or 100 <= status < 200 or status in (204, 304):
            self._mode = 'none'
        elif 'Content-Length' in headers:
            self._mode = 'length'
        elif self.version == 'HTTP/1.1':
            self._mode = 'chunked'
            headers['Transfer-Encoding'] = 'chunked'
        else:
            self._mode = 'close'
            self.will_close = True

        if self.will_close:
            headers['Connection'] = 'close'

        if not reason:
            try:
                reason = HTTPStatus(status).phrase
            except ValueError:
                reason = 'Unknown'

        lines = [f"HTTP/1.1 {status} {reason}"]
        lines.extend(f"{name}: {value}" for name, value in headers.items())
        head = "\r\n".join(lines).encode('utf-8', 'surrogateescape') + b"\r\n\r\n"
        await self.connection.write(head)

    async def write(self, data: bytes):
        if self.status is None:
            await self.write_header(200)
        if not data or self._mode == 'none':
            return
        if self._mode == 'chunked':
            data = b"%x\r\n%s\r\n" % (len(data), data)
        await self.connection.write(data)

    async def finish(self):
        if self._finished:
            return
        if self.status is None:
            await self.write_header(200)
        self._finished = True
        if self._mode == 'chunked':
            await self.connection.write(b"0\r\n\r\n")
