# utils/port_utils.py
import logging
import socket
from dataclasses import dataclass
from typing import Optional

import psutil

logger = logging.getLogger(__name__)

_WILDCARD_ADDRESSES = ('0.0.0.0', '::', '')


@dataclass(frozen=True)
class PortOwner:
    name: str
    pid: int
    username: Optional[str] = None

    def describe(self) -> str:
        details = f"PID {self.pid}"
        if self.username:
            details += f", user {self.username}"
        return f"{self.name} ({details})"


def _family(host: str) -> int:
    return socket.AF_INET6 if ':' in host else socket.AF_INET


def is_port_in_use(port: int, host: str = '127.0.0.1') -> bool:
    """True when the listener could not bind ``host:port`` right now.

    SO_REUSEADDR is set the way asyncio.start_server sets it, so sockets
    lingering in TIME_WAIT do not count as busy.
    """
    with socket.socket(_family(host), socket.SOCK_STREAM) as s:
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            s.bind((host, port))
        except OSError:
            return True
    return False


def _address_matches(bound_ip: str, host: Optional[str]) -> bool:
    if host is None:
        return True
    return host in _WILDCARD_ADDRESSES or bound_ip in _WILDCARD_ADDRESSES or bound_ip == host


def get_process_using_port(port: int, host: Optional[str] = None) -> Optional[PortOwner]:
    """Finds the process listening on ``port`` (optionally on ``host``)"""
    try:
        connections = psutil.net_connections(kind='inet')
    except (psutil.Error, OSError) as e:
        logger.debug(f"Cannot list sockets while looking up port {port}: {e}")
        return None

    for conn in connections:
        if (not conn.laddr or conn.laddr.port != port or
                conn.status != psutil.CONN_LISTEN or not conn.pid):
            continue
        if not _address_matches(conn.laddr.ip, host):
            continue

        try:
            process = psutil.Process(conn.pid)
            try:
                username = process.username()
            except psutil.AccessDenied:
                username = None
            return PortOwner(name=process.name(), pid=process.pid, username=username)
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue

    return None


def check_port_availability(port: int, host: str = '127.0.0.1') -> tuple[bool, str]:
    """Returns (available, explanation) for the listening address"""
    if not is_port_in_use(port, host):
        return True, f"{host}:{port} is free"

    owner = get_process_using_port(port, host)
    if owner:
        return False, f"{host}:{port} is held by {owner.describe()}"
    return False, f"{host}:{port} is in use (owner not visible to this user)"
