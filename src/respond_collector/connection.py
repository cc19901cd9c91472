from __future__ import annotations

import contextlib
import logging
import socket
from typing import Any


MULTICAST_GROUP = "ff02::2:1001"
PORT = 1001
MAX_DATAGRAM_SIZE = 8192
REQUEST_PAYLOAD = b"GET nodeinfo statistics neighbours"
RECEIVE_POLL_SECONDS = 0.5
LOGGER = logging.getLogger("respond_collector.connection")

SocketAddress = tuple[Any, ...]


def multicast_target(iface: str = "") -> str:
    host = f"{MULTICAST_GROUP}%{iface}" if iface else MULTICAST_GROUP
    return f"[{host}]:{PORT}"


def split_address(address: str) -> tuple[str, int]:
    host, separator, port = address.strip().rpartition(":")
    if not separator or not host or not port.isdigit():
        raise ValueError(f"invalid address {address!r}, expected host:port")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    elif ":" in host:
        raise ValueError(f"invalid address {address!r}, ipv6 hosts must be bracketed")
    return host, int(port)


def format_address(address: SocketAddress | None) -> str:
    if not address:
        return "<unknown>"
    host, port = address[0], address[1]
    if ":" in str(host):
        return f"[{host}]:{port}"
    return f"{host}:{port}"


class RequestConnection:
    """UDP socket used to send requests and read the responses of mesh nodes.

    The socket binds an ephemeral port. ``iface`` selects the interface used
    for outgoing multicast on IPv6 sockets; it has no effect on IPv4 binds.
    """

    def __init__(self, iface: str = "", bind_host: str = "::") -> None:
        family = socket.AF_INET6 if ":" in bind_host else socket.AF_INET
        self._sock = socket.socket(family, socket.SOCK_DGRAM)
        try:
            if family == socket.AF_INET6:
                self._sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
                if iface:
                    self._sock.setsockopt(
                        socket.IPPROTO_IPV6,
                        socket.IPV6_MULTICAST_IF,
                        socket.if_nametoindex(iface),
                    )
            self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, MAX_DATAGRAM_SIZE)
            self._sock.bind((bind_host, 0))
        except OSError:
            self._sock.close()
            raise
        self._sock.settimeout(RECEIVE_POLL_SECONDS)
        self.iface = iface

    @property
    def local_address(self) -> SocketAddress:
        return self._sock.getsockname()

    def resolve(self, address: str) -> SocketAddress:
        host, port = split_address(address)
        flags = socket.AI_V4MAPPED if self._sock.family == socket.AF_INET6 else 0
        infos = socket.getaddrinfo(host, port, self._sock.family, socket.SOCK_DGRAM, 0, flags)
        return infos[0][4]

    def send(self, payload: bytes, address: str | SocketAddress) -> None:
        if isinstance(address, str):
            address = self.resolve(address)
        try:
            self._sock.sendto(payload, address)
        except OSError as error:
            LOGGER.warning("sending request to %s failed: %s", format_address(address), error)

    def receive_into(self, buffer: bytearray) -> tuple[int, SocketAddress]:
        return self._sock.recvfrom_into(buffer)

    def close(self) -> None:
        # shutdown wakes a reader blocked in recvfrom on Linux; close alone does not
        with contextlib.suppress(OSError):
            self._sock.shutdown(socket.SHUT_RDWR)
        self._sock.close()
