"""Freebind connector: outbound TCP connections from arbitrary block addresses.

The socket gets ``IP_FREEBIND`` (``IPV6_FREEBIND`` for IPv6) before ``bind``,
which lets the kernel accept a local address that is routed to the host but not
configured on any interface. Only the raw, connected socket is produced here;
HTTP and TLS are layered on top by httpcore through :class:`FreebindBackend`.
"""
from __future__ import annotations

import asyncio
import ipaddress
import socket
import ssl
from typing import Any, Iterable, Optional, Protocol, Tuple, Union

import httpcore

from .addresses import IPAddress, IPNetwork, parse_cidr, random_address
from .errors import BindError, ConnectError
from .logging import logger

SocketOption = Union[Tuple[int, int, int], Tuple[int, int, Union[bytes, bytearray]], Tuple[int, int, None, int]]

# Linux values; older Python builds do not export the constants.
IP_FREEBIND = getattr(socket, "IP_FREEBIND", 15)
IPV6_FREEBIND = getattr(socket, "IPV6_FREEBIND", 78)


def resolve_port(scheme: Optional[str], port: Optional[Union[int, str]]) -> int:
    if port:
        return int(port)
    return 80 if (scheme or "").rstrip(":").lower() == "http" else 443


def _enable_freebind(sock: socket.socket, family: int) -> None:
    try:
        if family == socket.AF_INET6:
            sock.setsockopt(socket.IPPROTO_IPV6, IPV6_FREEBIND, 1)
        else:
            sock.setsockopt(socket.IPPROTO_IP, IP_FREEBIND, 1)
    except OSError as e:
        raise BindError(f"freebind not supported on this host: {e}") from e


async def connect_from_address(
    hostname: str,
    port: Optional[int],
    source_address: Union[str, IPAddress],
    socket_options: Optional[Iterable[SocketOption]] = None,
    *,
    timeout: Optional[float] = None,
    scheme: str = "https",
) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Open a TCP connection to ``hostname:port`` bound to *source_address*."""
    try:
        source = ipaddress.ip_address(str(source_address))
    except ValueError as e:
        raise BindError(f"invalid source address {source_address!r}") from e
    port = resolve_port(scheme, port)
    family = socket.AF_INET if source.version == 4 else socket.AF_INET6
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(hostname, port, family=family, type=socket.SOCK_STREAM)
    except socket.gaierror as e:
        raise ConnectError(f"cannot resolve {hostname} for IPv{source.version}: {e}") from e
    if not infos:
        raise ConnectError(f"no IPv{source.version} address for {hostname}")
    destination = infos[0][4]

    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setblocking(False)
        _enable_freebind(sock, family)
        for option in socket_options or ():
            sock.setsockopt(*option)
        try:
            sock.bind((str(source), 0))
        except OSError as e:
            raise BindError(f"cannot bind source address {source}: {e}") from e
        try:
            await asyncio.wait_for(loop.sock_connect(sock, destination), timeout)
        except TimeoutError as e:
            raise ConnectError(f"timed out connecting to {hostname}:{port} from {source}") from e
        except OSError as e:
            raise ConnectError(f"cannot connect to {hostname}:{port} from {source}: {e}") from e
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        return await asyncio.open_connection(sock=sock)
    except BaseException:
        sock.close()
        raise


async def connect_random(
    hostname: str,
    port: Optional[int],
    cidr: Union[str, IPNetwork],
    socket_options: Optional[Iterable[SocketOption]] = None,
    *,
    timeout: Optional[float] = None,
    scheme: str = "https",
) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    source = random_address(parse_cidr(cidr))
    return await connect_from_address(hostname, port, source, socket_options, timeout=timeout, scheme=scheme)


class FreebindStream(httpcore.AsyncNetworkStream):
    """httpcore network stream over an asyncio reader/writer pair."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        self._reader = reader
        self._writer = writer

    async def read(self, max_bytes: int, timeout: Optional[float] = None) -> bytes:
        try:
            return await asyncio.wait_for(self._reader.read(max_bytes), timeout)
        except TimeoutError as e:
            raise httpcore.ReadTimeout(str(e)) from e
        except OSError as e:
            raise httpcore.ReadError(str(e)) from e

    async def write(self, buffer: bytes, timeout: Optional[float] = None) -> None:
        if not buffer:
            return
        try:
            self._writer.write(buffer)
            await asyncio.wait_for(self._writer.drain(), timeout)
        except TimeoutError as e:
            raise httpcore.WriteTimeout(str(e)) from e
        except OSError as e:
            raise httpcore.WriteError(str(e)) from e

    async def aclose(self) -> None:
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except OSError as e:  # peer already gone
            logger.debug(f"close after peer reset: {e}")

    async def start_tls(
        self,
        ssl_context: ssl.SSLContext,
        server_hostname: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> httpcore.AsyncNetworkStream:
        try:
            await asyncio.wait_for(self._writer.start_tls(ssl_context, server_hostname=server_hostname), timeout)
        except TimeoutError as e:
            raise httpcore.ConnectTimeout(str(e)) from e
        except OSError as e:
            raise httpcore.ConnectError(str(e)) from e
        return self

    def get_extra_info(self, info: str) -> Any:
        if info == "is_readable":
            return self._reader.at_eof()
        if info == "client_addr":
            return self._writer.get_extra_info("sockname")
        if info == "server_addr":
            return self._writer.get_extra_info("peername")
        if info in ("ssl_object", "socket"):
            return self._writer.get_extra_info(info)
        return None


class AddressSource(Protocol):
    def next_address(self) -> IPAddress: ...


class FreebindBackend(httpcore.AsyncNetworkBackend):
    """Network backend that binds every new connection to ``source.next_address()``."""

    def __init__(self, source: AddressSource, socket_options: Optional[Iterable[SocketOption]] = None):
        self.source = source
        self.socket_options = list(socket_options or [])

    async def connect_tcp(
        self,
        host: str,
        port: int,
        timeout: Optional[float] = None,
        local_address: Optional[str] = None,
        socket_options: Optional[Iterable[SocketOption]] = None,
    ) -> httpcore.AsyncNetworkStream:
        address = self.source.next_address()
        options = self.socket_options + list(socket_options or [])
        logger.trace(f"connect {host}:{port} from {address}")
        reader, writer = await connect_from_address(host, port, address, options, timeout=timeout)
        return FreebindStream(reader, writer)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


__all__ = [
    "resolve_port",
    "connect_from_address",
    "connect_random",
    "FreebindStream",
    "FreebindBackend",
    "AddressSource",
]
