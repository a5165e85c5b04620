# proxy_manager.py
import asyncio
import logging
from http import HTTPStatus
from typing import List, Optional, Tuple

from core.config_manager import (
    ClientSettings,
    ConfigManager,
    ServerSettings,
    TunnelSettings,
    build_override_headers,
)
from core.proxy import Dispatcher, HTTPForwarder, OutboundClient, TunnelEstablisher
from core.proxy.headers import DEFAULT_OVERRIDE_HEADERS
from core.proxy.inbound import InboundConnection, RequestParseError, read_request
from utils.port_utils import check_port_availability

logger = logging.getLogger(__name__)


class ProxyServer:
    """Connection handler for asyncio.start_server.

    Reads requests off one client connection and hands each of them to the
    dispatcher until the connection cannot be reused. After a raw-socket
    takeover the connection belongs to the tunnel and is left alone.
    """

    def __init__(self, dispatcher: Dispatcher, settings: Optional[ServerSettings] = None,
                 chunk_size: int = 32 * 1024):
        self.dispatcher = dispatcher
        self.settings = settings or ServerSettings()
        self.chunk_size = chunk_size

    async def handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        connection = InboundConnection(reader, writer, write_timeout=self.settings.write_timeout)
        peer = connection.peer

        try:
            while True:
                try:
                    request = await asyncio.wait_for(
                        read_request(reader, peer, self.settings.max_body_size, self.chunk_size),
                        self.settings.read_timeout,
                    )
                except asyncio.TimeoutError:
                    logger.debug(f"Read timeout on {peer}")
                    break
                except RequestParseError as e:
                    logger.warning(f"Bad request from {peer}: {e.reason}")
                    await connection.send_error(e.status, HTTPStatus(e.status).phrase)
                    break

                if request is None:
                    break

                connection.start_request()
                if not await self.dispatcher.dispatch(request, connection):
                    break

        except (ConnectionError, OSError) as e:
            logger.debug(f"Connection error on {peer}: {e}")
        except Exception as e:
            logger.error(f"Unexpected error on connection {peer}: {e}", exc_info=True)
        finally:
            await connection.close()


class ProxyManager:
    """Owns the listening socket and the outbound client pool"""

    def __init__(self, config: Optional[ConfigManager] = None,
                 server_settings: Optional[ServerSettings] = None,
                 client_settings: Optional[ClientSettings] = None,
                 tunnel_settings: Optional[TunnelSettings] = None,
                 overrides=None):
        self.server_settings = server_settings or (
            ServerSettings.from_config(config) if config else ServerSettings())
        self.client_settings = client_settings or (
            ClientSettings.from_config(config) if config else ClientSettings())
        self.tunnel_settings = tunnel_settings or (
            TunnelSettings.from_config(config) if config else TunnelSettings())
        if overrides is None:
            overrides = build_override_headers(config) if config else DEFAULT_OVERRIDE_HEADERS
        self.overrides = tuple(overrides)

        self.client = None
        self.server = None
        self.is_running = False

        # Error tracking
        self.last_error_details = None

    def _build_dispatcher(self) -> Dispatcher:
        self.client = OutboundClient(self.client_settings)
        forwarder = HTTPForwarder(self.client, self.overrides,
                                  chunk_size=self.client_settings.chunk_size)
        tunnel = TunnelEstablisher(self.tunnel_settings)
        return Dispatcher(forwarder, tunnel)

    async def start(self):
        """Binds the listening socket; raises OSError when that fails"""
        if self.is_running:
            logger.warning("⚠️ Proxy already running")
            return

        settings = self.server_settings
        dispatcher = self._build_dispatcher()
        await self.client.initialize()

        handler = ProxyServer(dispatcher, settings, chunk_size=self.client_settings.chunk_size)
        try:
            self.server = await asyncio.start_server(
                handler.handle_client,
                host=settings.host,
                port=settings.port,
                limit=settings.max_header_size,
            )
        except OSError as e:
            self.last_error_details = str(e)
            logger.critical(f"❌ Cannot listen on {settings.host}:{settings.port}: {e}")
            self._log_port_owner(settings.host, settings.port)
            await self.client.cleanup()
            raise

        self.is_running = True
        logger.info(f"✅ Proxy server started on {', '.join(f'{h}:{p}' for h, p in self.addresses)}")
        logger.info(f"📊 Outbound pool: limit={self.client_settings.max_idle_conns}, "
                    f"timeout={self.client_settings.timeout}s, "
                    f"max_redirects={self.client_settings.max_redirects}")

    @staticmethod
    def _log_port_owner(host: str, port: int):
        available, message = check_port_availability(port, host)
        if not available:
            logger.info(f"📌 {message}")

    @property
    def addresses(self) -> List[Tuple[str, int]]:
        if not self.server:
            return []
        return [sock.getsockname()[:2] for sock in self.server.sockets]

    @property
    def port(self) -> Optional[int]:
        addresses = self.addresses
        return addresses[0][1] if addresses else None

    async def run(self):
        """Starts the proxy and serves until cancelled"""
        await self.start()
        try:
            await self.server.serve_forever()
        except asyncio.CancelledError:
            logger.info("🛑 Stopping proxy...")
            raise
        finally:
            await self.stop()

    async def stop(self):
        if not self.is_running:
            return

        self.is_running = False
        self.server.close()
        # Server.close_clients() only exists on Python 3.13+; without it
        # wait_closed() may block on open keep-alive connections
        if hasattr(self.server, 'close_clients'):
            self.server.close_clients()
        try:
            await asyncio.wait_for(self.server.wait_closed(), timeout=5)
        except asyncio.TimeoutError:
            logger.warning("⚠️ Some client connections did not close in time")

        await self.client.cleanup()
        logger.info("✅ Proxy stopped")
