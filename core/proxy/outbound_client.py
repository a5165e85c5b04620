# core/proxy/outbound_client.py
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from aiohttp import ClientResponse, ClientSession, ClientTimeout, DummyCookieJar, TCPConnector
from multidict import CIMultiDict
from yarl import URL

from core.config_manager import ClientSettings
from core.proxy.headers import SENSITIVE_REDIRECT_HEADERS
from core.proxy.inbound import InboundBody

logger = logging.getLogger(__name__)

REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})


def keeps_sensitive_headers(initial_host: Optional[str], next_host: Optional[str]) -> bool:
    """True when a redirect stays on the original host or one of its subdomains"""
    if not initial_host or not next_host:
        return False
    initial_host = initial_host.lower().rstrip('.')
    next_host = next_host.lower().rstrip('.')
    return next_host == initial_host or next_host.endswith('.' + initial_host)


@dataclass
class OutboundRequest:
    """Request the forwarder issues on behalf of the caller.

    ``decompress`` is set when the proxy negotiated gzip itself, so the
    caller must get the decoded body.
    """

    method: str
    url: URL
    headers: CIMultiDict
    body: Optional[InboundBody] = None
    decompress: bool = False


class OutboundClient:
    """HTTP client used by the forwarder.

    Wraps one aiohttp session with a shared connection pool. Redirects are
    followed here rather than by aiohttp so that running past the cap hands
    back the last response instead of raising.
    """

    def __init__(self, settings: Optional[ClientSettings] = None):
        self.settings = settings or ClientSettings()

        # Connection pool shared by all callers
        self.connector = None
        self.session = None

    async def initialize(self):
        """Creates the connection pool and session"""
        if self.connector is None:
            self.connector = TCPConnector(
                ssl=self.settings.verify_ssl,
                limit=self.settings.max_idle_conns,
                keepalive_timeout=self.settings.idle_conn_timeout,
                force_close=False,
            )

        if self.session is None:
            self.session = ClientSession(
                connector=self.connector,
                cookie_jar=DummyCookieJar(),  # No cookies carried between callers
                auto_decompress=False,
            )

    async def cleanup(self):
        """Releases the pool"""
        if self.session:
            await self.session.close()
            self.session = None
        if self.connector:
            await self.connector.close()
            self.connector = None

    def _timeout(self, deadline: Optional[float]) -> ClientTimeout:
        total = None
        if deadline is not None:
            total = max(deadline - asyncio.get_running_loop().time(), 0.001)
        return ClientTimeout(total=total, connect=self.settings.tls_handshake_timeout)

    async def send(self, request: OutboundRequest) -> ClientResponse:
        """Issues the request, following up to ``max_redirects`` redirects.

        Transport failures propagate as aiohttp ``ClientError``,
        ``asyncio.TimeoutError`` or ``OSError``. The caller owns the returned
        response and must release it.
        """
        await self.initialize()

        deadline = None
        if self.settings.timeout is not None:
            deadline = asyncio.get_running_loop().time() + self.settings.timeout

        method = request.method
        url = request.url
        headers = CIMultiDict(request.headers)
        data = None
        if request.body is not None and not request.body.is_empty:
            data = request.body.iter_chunks()
        hops = 0

        while True:
            response = await self.session.request(
                method,
                url,
                headers=headers,
                data=data,
                allow_redirects=False,
                skip_auto_headers=('Accept-Encoding',),
                timeout=self._timeout(deadline),
            )

            if response.status not in REDIRECT_STATUSES or 'Location' not in response.headers:
                return response
            if hops >= self.settings.max_redirects:
                logger.debug(f"Redirect limit {self.settings.max_redirects} reached at {url}")
                return response
            if response.status in (307, 308) and data is not None:
                # A streamed body cannot be sent a second time
                return response

            try:
                next_url = url.join(URL(response.headers['Location']))
            except ValueError:
                return response
            if next_url.scheme not in ('http', 'https') or not next_url.host:
                return response

            response.release()
            hops += 1
            logger.debug(f"Redirect {hops}/{self.settings.max_redirects}: "
                         f"{response.status} {url} -> {next_url}")

            if response.status in (301, 302, 303):
                if method not in ('GET', 'HEAD'):
                    method = 'GET'
                data = None
                headers.popall('Content-Length', None)
                headers.popall('Content-Type', None)

            if not keeps_sensitive_headers(request.url.host, next_url.host):
                for name in SENSITIVE_REDIRECT_HEADERS:
                    headers.popall(name, None)

            url = next_url
