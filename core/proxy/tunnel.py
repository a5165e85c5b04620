# core/proxy/tunnel.py
"""
CONNECT tunnels.

The proxy dials ``host:port``, takes the caller's raw socket away from HTTP
framing, acknowledges the tunnel and then copies opaque bytes both ways.
Tunneled traffic is never inspected.
"""

import asyncio
import logging
from typing import Optional, Tuple

from core.config_manager import TunnelSettings
from core.proxy.inbound import InboundConnection, InboundRequest, RawSocket, TakeoverNotSupported

logger = logging.getLogger(__name__)

CONNECTION_ESTABLISHED = b"HTTP/1.1 200 Connection Established\r\n\r\n"


def split_host_port(target: str) -> Tuple[str, int]:
    """Splits ``host:port`` or ``[v6addr]:port``; raises ValueError"""
    if target.startswith('['):
        host, sep, rest = target[1:].partition(']')
        if not sep or not rest.startswith(':'):
            raise ValueError(f"missing port in address {target!r}")
        port_text = rest[1:]
    else:
        host, sep, port_text = target.rpartition(':')
        if not sep:
            raise ValueError(f"missing port in address {target!r}")
        if ':' in host:
            raise ValueError(f"too many colons in address {target!r}")

    if not host:
        raise ValueError(f"missing host in address {target!r}")
    if not port_text.isdigit() or not 0 < int(port_text) < 65536:
        raise ValueError(f"invalid port in address {target!r}")
    return host, int(port_text)


async def _close_writer(writer: asyncio.StreamWriter, label: str):
    writer.close()
    try:
        await writer.wait_closed()
    except (ConnectionError, OSError) as e:
        logger.debug(f"Error closing {label} socket: {e}")


class TunnelSession:
    """A live client/target stream pair.

    ``relay`` returns only after both directions have finished, and the
    sockets are closed only after that.
    """

    def __init__(self, client: RawSocket, target_reader: asyncio.StreamReader,
                 target_writer: asyncio.StreamWriter, buffer_size: int = 32 * 1024,
                 name: str = ''):
        self.client = client
        self.target_reader = target_reader
        self.target_writer = target_writer
        self.buffer_size = buffer_size
        self.name = name
        self.bytes_up = 0
        self.bytes_down = 0

    def _abort(self):
        for writer in (self.client.writer, self.target_writer):
            transport = writer.transport
            if transport is not None and not transport.is_closing():
                transport.abort()

    async def _pipe(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                    direction: str) -> int:
        """Copies until EOF or error; returns the number of bytes copied"""
        copied = 0
        try:
            while True:
                data = await reader.read(self.buffer_size)
                if not data:
                    break
                writer.write(data)
                await writer.drain()
                copied += len(data)
        except (ConnectionError, OSError) as e:
            logger.warning(f"Error copying {direction} for {self.name}: {e}")
            # The reverse direction may be blocked on a socket nobody will close
            self._abort()
            return copied

        # Half-close so the peer sees EOF while the reverse direction drains
        try:
            if writer.can_write_eof():
                writer.write_eof()
        except (ConnectionError, OSError) as e:
            logger.debug(f"Error half-closing {direction} for {self.name}: {e}")
        return copied

    async def relay(self):
        upstream = asyncio.create_task(
            self._pipe(self.client.reader, self.target_writer, "client -> target"))
        try:
            self.bytes_down = await self._pipe(
                self.target_reader, self.client.writer, "target -> client")
        except BaseException:
            upstream.cancel()
            await asyncio.gather(upstream, return_exceptions=True)
            raise

        # Join the other direction before anything is closed
        self.bytes_up = await upstream

    async def close(self):
        await _close_writer(self.target_writer, f"target {self.name}")
        await _close_writer(self.client.writer, f"client {self.name}")


class TunnelEstablisher:
    """Handles CONNECT requests"""

    def __init__(self, settings: Optional[TunnelSettings] = None):
        self.settings = settings or TunnelSettings()

    async def _dial(self, target: str):
        host, port = split_host_port(target)
        return await asyncio.wait_for(
            asyncio.open_connection(host, port), self.settings.dial_timeout)

    async def establish(self, request: InboundRequest, connection: InboundConnection) -> bool:
        """Runs the tunnel to completion; the connection is never reusable afterwards"""
        target = request.target

        # Dialing
        try:
            target_reader, target_writer = await self._dial(target)
        except asyncio.TimeoutError:
            logger.error(f"Error connecting to target {target}: timed out")
            await connection.send_error(502, "Failed to connect to target", request)
            return False
        except (OSError, ValueError) as e:
            logger.error(f"Error connecting to target {target}: {e}")
            await connection.send_error(502, "Failed to connect to target", request)
            return False

        # Hijacking
        try:
            client = connection.take_raw_socket()
        except TakeoverNotSupported as e:
            logger.error(f"Error hijacking connection for {target}: {e}")
            await _close_writer(target_writer, f"target {target}")
            await connection.send_error(500, "Failed to hijack connection", request)
            return False

        session = TunnelSession(client, target_reader, target_writer,
                                buffer_size=self.settings.buffer_size, name=target)
        try:
            # Acknowledging
            try:
                client.writer.write(CONNECTION_ESTABLISHED)
                await asyncio.wait_for(client.writer.drain(), self.settings.handshake_write_timeout)
            except (asyncio.TimeoutError, ConnectionError, OSError) as e:
                logger.error(f"Error sending 200 response for {target}: {e!r}")
                return False

            # Relaying
            await session.relay()
            logger.debug(f"Tunnel {target} finished: "
                         f"{session.bytes_up} bytes up, {session.bytes_down} bytes down")
        finally:
            # Closing
            await session.close()

        return False
