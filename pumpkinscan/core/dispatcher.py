"""httpx transports that originate every connection from a chosen block address.

Usage::

    transport = random_sticky_dispatcher("2001:db8::/48")
    async with build_client(transport, timeout=10) as client:
        await client.get("https://example.org/")

Connector failures (:class:`BindError`, :class:`ConnectError`) are raised
from the client call unchanged.
"""
from __future__ import annotations

import ipaddress
import itertools
import random
import ssl
from typing import Iterable, Optional, Union

import httpcore
import httpx

from .addresses import (
    IPAddress,
    IPNetwork,
    OffsetRange,
    address_at,
    parse_cidr,
    random_address,
)
from .freebind import FreebindBackend, AddressSource, SocketOption


class FixedAddressSource:
    def __init__(self, address: Union[str, IPAddress]):
        self.address = ipaddress.ip_address(str(address))

    def next_address(self) -> IPAddress:
        return self.address


class RandomAddressSource:
    def __init__(self, network: IPNetwork, rng: Optional[random.Random] = None):
        self.network = network
        self._rng = rng

    def next_address(self) -> IPAddress:
        return random_address(self.network, rng=self._rng)


class StickyAddressSource:
    """One random address per source instance.

    With ``sticky_bits > 0`` the low bits rotate per connection while the rest
    of the address stays fixed.
    """

    def __init__(self, network: IPNetwork, sticky_bits: int = 0, rng: Optional[random.Random] = None):
        self.network = network
        self.sticky_bits = sticky_bits
        self._rng = rng
        self.anchor = random_address(network, rng=rng)

    def next_address(self) -> IPAddress:
        return random_address(self.network, self.sticky_bits, anchor=self.anchor, rng=self._rng)


class OffsetRangeSource:
    """Cycle through the offsets of one worker's private range."""

    def __init__(self, network: IPNetwork, offset_range: OffsetRange):
        # validate both ends up front so a bad range fails at construction
        address_at(network, offset_range.start)
        address_at(network, offset_range.stop - 1)
        self.network = network
        self.offset_range = offset_range
        self._counter = itertools.count()

    def next_address(self) -> IPAddress:
        return address_at(self.network, self.offset_range.offset_for(next(self._counter)))


class FreebindTransport(httpx.AsyncHTTPTransport):
    """AsyncHTTPTransport whose connection pool dials through :class:`FreebindBackend`."""

    def __init__(
        self,
        source: AddressSource,
        *,
        ssl_context: Optional[ssl.SSLContext] = None,
        http2: bool = False,
        limits: httpx.Limits = httpx.Limits(max_connections=100, max_keepalive_connections=20),
        retries: int = 0,
        socket_options: Optional[Iterable[SocketOption]] = None,
    ):
        ssl_context = ssl_context or httpx.create_ssl_context()
        super().__init__(verify=ssl_context, http2=http2, limits=limits, retries=retries)
        self.source = source
        self._pool = httpcore.AsyncConnectionPool(
            ssl_context=ssl_context,
            max_connections=limits.max_connections,
            max_keepalive_connections=limits.max_keepalive_connections,
            keepalive_expiry=limits.keepalive_expiry,
            http1=True,
            http2=http2,
            retries=retries,
            network_backend=FreebindBackend(source, socket_options),
        )


def dispatcher_from_address(address: Union[str, IPAddress], **kwargs) -> FreebindTransport:
    return FreebindTransport(FixedAddressSource(address), **kwargs)


def random_dispatcher(cidr: Union[str, IPNetwork], **kwargs) -> FreebindTransport:
    return FreebindTransport(RandomAddressSource(parse_cidr(cidr)), **kwargs)


def random_sticky_dispatcher(cidr: Union[str, IPNetwork], bits: int = 0, **kwargs) -> FreebindTransport:
    return FreebindTransport(StickyAddressSource(parse_cidr(cidr), bits), **kwargs)


def range_dispatcher(cidr: Union[str, IPNetwork], offset_range: OffsetRange, **kwargs) -> FreebindTransport:
    return FreebindTransport(OffsetRangeSource(parse_cidr(cidr), offset_range), **kwargs)


def build_client(transport: httpx.AsyncBaseTransport, timeout: Optional[float] = 10.0, **kwargs) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=transport, timeout=httpx.Timeout(timeout), **kwargs)


__all__ = [
    "FixedAddressSource",
    "RandomAddressSource",
    "StickyAddressSource",
    "OffsetRangeSource",
    "FreebindTransport",
    "dispatcher_from_address",
    "random_dispatcher",
    "random_sticky_dispatcher",
    "range_dispatcher",
    "build_client",
]
