import ipaddress
import random

import pytest

from pumpkinscan.core.addresses import (
    OffsetRange,
    address_at,
    allocate_offset_range,
    host_bounds,
    parse_cidr,
    random_address,
    usable_host_count,
)
from pumpkinscan.core.errors import AllocationError, ConfigError


def test_four_workers_on_slash_24():
    net = parse_cidr("10.0.0.0/24")
    ranges = [allocate_offset_range(net, 4, i) for i in range(4)]
    assert [r.start for r in ranges] == [1, 64, 127, 190]
    assert all(r.count == 63 for r in ranges)
    assert str(address_at(net, ranges[0].start)) == "10.0.0.1"
    assert str(address_at(net, ranges[-1].stop - 1)) == "10.0.0.252"


@pytest.mark.parametrize("cidr,workers", [("10.0.0.0/24", 3), ("10.8.0.0/16", 7), ("2001:db8::/64", 8), ("192.0.2.0/29", 6)])
def test_ranges_disjoint_and_inside_block(cidr, workers):
    net = parse_cidr(cidr)
    first, count = host_bounds(net)
    ranges = [allocate_offset_range(net, workers, i) for i in range(workers)]
    for i, a in enumerate(ranges):
        assert first <= a.start and a.stop <= first + count
        for b in ranges[i + 1:]:
            assert not a.overlaps(b)


def test_host_bounds():
    assert host_bounds(parse_cidr("10.0.0.0/24")) == (1, 254)
    assert host_bounds(parse_cidr("10.0.0.0/31")) == (0, 2)
    assert host_bounds(parse_cidr("10.0.0.7/32")) == (0, 1)
    assert host_bounds(parse_cidr("2001:db8::/64")) == (1, 2**64 - 1)
    assert host_bounds(parse_cidr("2001:db8::/127")) == (0, 2)
    assert usable_host_count(parse_cidr("192.0.2.0/30")) == 2


def test_too_many_workers():
    net = parse_cidr("192.0.2.0/30")
    with pytest.raises(AllocationError):
        allocate_offset_range(net, 3, 0)


def test_bad_worker_arguments():
    net = parse_cidr("10.0.0.0/24")
    with pytest.raises(AllocationError):
        allocate_offset_range(net, 0, 0)
    with pytest.raises(AllocationError):
        allocate_offset_range(net, 4, 4)


def test_parse_cidr_errors_are_config_errors():
    with pytest.raises(ConfigError):
        parse_cidr("not-a-block")
    assert str(parse_cidr("10.0.0.5/24")) == "10.0.0.0/24"


def test_address_at_rejects_reserved_offsets():
    net = parse_cidr("10.0.0.0/24")
    with pytest.raises(AllocationError):
        address_at(net, 0)
    with pytest.raises(AllocationError):
        address_at(net, 255)
    assert str(address_at(net, 254)) == "10.0.0.254"


def test_offset_range_cycles():
    r = OffsetRange(64, 3)
    assert [r.offset_for(n) for n in range(5)] == [64, 65, 66, 64, 65]
    assert 66 in r and 67 not in r


def test_random_address_stays_on_hosts():
    net = parse_cidr("192.0.2.0/30")
    rng = random.Random(7)
    seen = {str(random_address(net, rng=rng)) for _ in range(200)}
    assert seen == {"192.0.2.1", "192.0.2.2"}


def test_sticky_bits_keep_high_bits():
    net = parse_cidr("2001:db8::/48")
    rng = random.Random(1)
    anchor = random_address(net, rng=rng)
    for _ in range(50):
        addr = random_address(net, 16, anchor=anchor, rng=rng)
        assert addr in net
        assert int(addr) >> 16 == int(anchor) >> 16


def test_sticky_zero_bits_returns_anchor():
    net = parse_cidr("10.0.0.0/24")
    anchor = ipaddress.ip_address("10.0.0.9")
    assert random_address(net, 0, anchor=anchor) == anchor


def test_sticky_bits_redraw_reserved():
    net = parse_cidr("10.0.0.0/24")
    anchor = ipaddress.ip_address("10.0.0.1")
    rng = random.Random(3)
    for _ in range(100):
        addr = random_address(net, 2, anchor=anchor, rng=rng)
        assert str(addr) in {"10.0.0.1", "10.0.0.2", "10.0.0.3"}
