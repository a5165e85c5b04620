# core/proxy/__init__.py
"""
Request dispatch and byte relay.

Dispatcher routes CONNECT to the TunnelEstablisher and everything else to
the HTTPForwarder, which issues requests through the OutboundClient.
"""

from core.proxy.dispatcher import Dispatcher, Route, route_for
from core.proxy.forwarder import HTTPForwarder, RequestConstructionError, build_outbound_request
from core.proxy.inbound import (
    InboundConnection,
    InboundRequest,
    RequestParseError,
    TakeoverNotSupported,
    read_request,
)
from core.proxy.outbound_client import OutboundClient, OutboundRequest
from core.proxy.tunnel import CONNECTION_ESTABLISHED, TunnelEstablisher, TunnelSession

__all__ = [
    'CONNECTION_ESTABLISHED',
    'Dispatcher',
    'HTTPForwarder',
    'InboundConnection',
    'InboundRequest',
    'OutboundClient',
    'OutboundRequest',
    'RequestConstructionError',
    'RequestParseError',
    'Route',
    'TakeoverNotSupported',
    'TunnelEstablisher',
    'TunnelSession',
    'build_outbound_request',
    'read_request',
    'route_for',
]
