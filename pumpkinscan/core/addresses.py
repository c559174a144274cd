"""Address allocation inside a CIDR block.

An *offset* is an integer index from the block's network address. Offsets
``[first, first + count)`` returned by :func:`host_bounds` are the usable host
addresses: the IPv4 network/broadcast addresses and the IPv6 subnet-router
anycast address are never handed out (except for /31, /32, /127 and /128
blocks, where every address is a host).

Offset ranges for workers use floor division: every worker receives
``host_count // worker_count`` offsets and the remainder at the top of the
block is left unused, so no range ever leaves the block.
"""
from __future__ import annotations

import ipaddress
import random
from dataclasses import dataclass
from typing import Optional, Tuple, Union

from .errors import AllocationError

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]
IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

_rng = random.SystemRandom()


@dataclass(frozen=True)
class OffsetRange:
    start: int
    count: int

    @property
    def stop(self) -> int:
        return self.start + self.count

    def __contains__(self, offset: object) -> bool:
        return isinstance(offset, int) and self.start <= offset < self.stop

    def offset_for(self, n: int) -> int:
        """Return the n-th offset of the range, wrapping around at the end."""
        return self.start + (n % self.count)

    def overlaps(self, other: "OffsetRange") -> bool:
        return self.start < other.stop and other.start < self.stop


def parse_cidr(cidr: Union[str, IPNetwork]) -> IPNetwork:
    if isinstance(cidr, (ipaddress.IPv4Network, ipaddress.IPv6Network)):
        return cidr
    try:
        return ipaddress.ip_network(str(cidr).strip(), strict=False)
    except ValueError as e:
        raise AllocationError(f"Invalid CIDR block {cidr!r}: {e}") from e


def host_bounds(network: IPNetwork) -> Tuple[int, int]:
    """Return ``(first_offset, host_count)`` for the usable hosts of *network*."""
    total = network.num_addresses
    if network.version == 4:
        if network.prefixlen >= 31:
            return 0, total
        return 1, total - 2
    if network.prefixlen >= 127:
        return 0, total
    return 1, total - 1


def usable_host_count(network: IPNetwork) -> int:
    return host_bounds(network)[1]


def address_at(network: IPNetwork, offset: int) -> IPAddress:
    first, count = host_bounds(network)
    if not first <= offset < first + count:
        raise AllocationError(f"Offset {offset} outside usable hosts of {network} [{first}, {first + count})")
    return network.network_address + offset


def offset_of(network: IPNetwork, address: IPAddress) -> int:
    if address not in network:
        raise AllocationError(f"{address} is not inside {network}")
    return int(address) - int(network.network_address)


def random_address(
    network: IPNetwork,
    sticky_bits: Optional[int] = None,
    *,
    anchor: Optional[IPAddress] = None,
    rng: Optional[random.Random] = None,
) -> IPAddress:
    """Pick a random usable host address inside *network*.

    Without an *anchor* (or without *sticky_bits*) the address is uniform over
    the usable hosts. With both, only the lowest *sticky_bits* bits of the host
    part are drawn; every bit above them is copied from *anchor*, so repeated
    calls with the same anchor stay inside the anchor's ``2**sticky_bits``
    sub-block while the low bits rotate.
    """
    rng = rng or _rng
    first, count = host_bounds(network)
    host_bits = network.max_prefixlen - network.prefixlen
    if sticky_bits is not None and sticky_bits < 0:
        raise AllocationError(f"sticky_bits must be >= 0, got {sticky_bits}")
    if anchor is None or sticky_bits is None or sticky_bits >= host_bits:
        return address_at(network, first + rng.randrange(count))
    anchor_offset = offset_of(network, anchor)
    address_at(network, anchor_offset)  # anchor itself must be usable
    if sticky_bits == 0:
        return anchor
    high = anchor_offset >> sticky_bits << sticky_bits
    while True:
        offset = high | rng.getrandbits(sticky_bits)
        if first <= offset < first + count:
            return network.network_address + offset


def allocate_offset_range(network: IPNetwork, worker_count: int, worker_index: int) -> OffsetRange:
    if worker_count < 1:
        raise AllocationError(f"worker_count must be >= 1, got {worker_count}")
    if not 0 <= worker_index < worker_count:
        raise AllocationError(f"worker_index {worker_index} outside [0, {worker_count})")
    first, total = host_bounds(network)
    per_worker = total // worker_count
    if per_worker == 0:
        raise AllocationError(
            f"{worker_count} workers exceed the {total} usable addresses of {network}"
        )
    return OffsetRange(first + worker_index * per_worker, per_worker)


__all__ = [
    "IPNetwork",
    "IPAddress",
    "OffsetRange",
    "parse_cidr",
    "host_bounds",
    "usable_host_count",
    "address_at",
    "offset_of",
    "random_address",
    "allocate_offset_range",
]
