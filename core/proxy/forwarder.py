# core/proxy/forwarder.py
"""Plain HTTP relay: mirrors the caller's request upstream and streams the reply back"""

import asyncio
import logging
import zlib
from typing import AsyncIterator, Optional

from aiohttp import ClientConnectorError, ClientError, ClientResponse
from yarl import URL

from core.proxy.headers import (
    DEFAULT_OVERRIDE_HEADERS,
    REQUEST_FRAMING_HEADERS,
    apply_overrides,
    copy_headers,
)
from core.proxy.inbound import InboundConnection, InboundRequest
from core.proxy.outbound_client import OutboundClient, OutboundRequest

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 32 * 1024


class RequestConstructionError(ValueError):
    """The inbound request cannot be turned into an outbound one"""


def resolve_target_url(request: InboundRequest) -> URL:
    """Absolute URL of the destination.

    Absolute-form targets are used as they are, origin-form targets are
    resolved against the Host header, anything without a scheme is plain
    http.
    """
    target = request.target

    if target.startswith('/'):
        host = request.headers.get('Host', '').strip()
        if not host:
            raise RequestConstructionError(f"origin-form target {target!r} without Host header")
        raw_url = f"http://{host}{target}"
    elif '://' in target:
        raw_url = target
    elif target == '*':
        raise RequestConstructionError("asterisk-form target cannot be forwarded")
    else:
        raw_url = f"http://{target}"

    try:
        url = URL(raw_url, encoded=True)
        port = url.port
    except (ValueError, TypeError) as e:
        raise RequestConstructionError(f"invalid target {target!r}: {e}") from None

    if url.scheme not in ('http', 'https'):
        raise RequestConstructionError(f"unsupported scheme {url.scheme!r} in {target!r}")
    if not url.host or port is None:
        raise RequestConstructionError(f"no host in target {target!r}")

    return url.with_fragment(None)


def build_outbound_request(request: InboundRequest, overrides=DEFAULT_OVERRIDE_HEADERS,
                           negotiate_compression: bool = True) -> OutboundRequest:
    """Mirrors the inbound request, then applies the fixed overrides"""
    url = resolve_target_url(request)

    headers = copy_headers(request.headers, skip=REQUEST_FRAMING_HEADERS)
    apply_overrides(headers, overrides)

    # No gzip for HEAD (Content-Length must survive) or ranges (a slice of
    # a gzip stream cannot be decoded)
    decompress = False
    if (negotiate_compression and request.method != 'HEAD' and
            'Accept-Encoding' not in headers and 'Range' not in headers):
        headers['Accept-Encoding'] = 'gzip'
        decompress = True

    return OutboundRequest(
        method=request.method,
        url=url,
        headers=headers,
        body=request.body,
        decompress=decompress,
    )


async def _iter_gunzip(chunks: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
    decoder = zlib.decompressobj(16 + zlib.MAX_WBITS)
    async for chunk in chunks:
        data = decoder.decompress(chunk)
        if data:
            yield data
    tail = decoder.flush()
    if tail:
        yield tail


class HTTPForwarder:
    """Relays non-CONNECT requests through the outbound client"""

    def __init__(self, client: OutboundClient, overrides=DEFAULT_OVERRIDE_HEADERS,
                 chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.client = client
        self.overrides = tuple(overrides)
        self.chunk_size = chunk_size

    async def forward(self, request: InboundRequest, connection: InboundConnection) -> bool:
        """Relays one request; returns True when the connection can be reused"""
        try:
            outbound = build_outbound_request(
                request, self.overrides,
                negotiate_compression=self.client.settings.compression,
            )
        except RequestConstructionError as e:
            logger.error(f"Error creating request for {request.target}: {e}")
            await connection.send_error(500, "Failed to create request", request)
            return False

        try:
            upstream_response = await self.client.send(outbound)
        except ClientConnectorError as e:
            logger.error(f"Error forwarding request to {outbound.url}: cannot connect: {e}")
            await connection.send_error(502, "Failed to forward request", request)
            return False
        except asyncio.TimeoutError:
            logger.error(f"Error forwarding request to {outbound.url}: timed out")
            await connection.send_error(502, "Failed to forward request", request)
            return False
        except (ClientError, OSError) as e:
            logger.error(f"Error forwarding request to {outbound.url}: {e}")
            await connection.send_error(502, "Failed to forward request", request)
            return False
        except Exception as e:
            logger.error(f"Error forwarding request to {outbound.url}: {e}", exc_info=True)
            await connection.send_error(502, "Failed to forward request", request)
            return False

        try:
            return await self._relay_response(request, connection, outbound, upstream_response)
        finally:
            upstream_response.release()

    async def _relay_response(self, request: InboundRequest, connection: InboundConnection,
                              outbound: OutboundRequest, upstream_response: ClientResponse) -> bool:
        response = connection.response(request)

        for key, value in upstream_response.headers.items():
            response.headers.add(key, value)

        body = upstream_response.content.iter_chunked(self.chunk_size)
        encoding = upstream_response.headers.get('Content-Encoding', '').strip().lower()
        if outbound.decompress and encoding == 'gzip':
            response.headers.popall('Content-Encoding', None)
            response.headers.popall('Content-Length', None)
            body = _iter_gunzip(body)

        logger.debug(f"Upstream response: {upstream_response.status} for {outbound.url}")

        try:
            await response.write_header(upstream_response.status, upstream_response.reason)
            async for chunk in body:
                await response.write(chunk)
            await response.finish()
        except (ClientError, asyncio.TimeoutError, OSError, zlib.error) as e:
            # Status already sent, the caller gets a truncated body
            logger.warning(f"Error copying response from {outbound.url}: {e}")
            upstream_response.close()
            return False

        return not response.will_close and request.keep_alive and request.body.exhausted
