# core/proxy/dispatcher.py
import enum
import logging

from core.proxy.forwarder import HTTPForwarder
from core.proxy.inbound import InboundConnection, InboundRequest
from core.proxy.tunnel import TunnelEstablisher

logger = logging.getLogger(__name__)


class Route(enum.Enum):
    FORWARD = 'forward'
    TUNNEL = 'tunnel'


def route_for(method: str) -> Route:
    """Only the method decides the route"""
    return Route.TUNNEL if method == 'CONNECT' else Route.FORWARD


class Dispatcher:
    def __init__(self, forwarder: HTTPForwarder, tunnel: TunnelEstablisher):
        self.forwarder = forwarder
        self.tunnel = tunnel

    async def dispatch(self, request: InboundRequest, connection: InboundConnection) -> bool:
        """Routes one request; returns True when the connection can be reused"""
        logger.info(f"Received {request.method} request for {request.target} from {_format_peer(request.client)}")

        if route_for(request.method) is Route.TUNNEL:
            return await self.tunnel.establish(request, connection)
        return await self.forwarder.forward(request, connection)


def _format_peer(client) -> str:
    if not client:
        return 'unknown'
    try:
        return f"{client[0]}:{client[1]}"
    except (TypeError, IndexError):
        return str(client)
