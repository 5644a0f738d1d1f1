import ipaddress
import struct

import pytest

from feosutils import packets
from feosutils.packets import (
    build_neighbor_solicitation,
    build_router_solicitation,
    icmpv6_checksum,
    mac_to_ipv6_link_local,
    parse_ipv6_frame,
)

MAC = bytes([0x02, 0x00, 0x00, 0x00, 0x00, 0x01])
SRC = ipaddress.IPv6Address("2001:db8::10")
TARGET = ipaddress.IPv6Address("fe80::1")


def router_advert(source, flags):
    icmp = bytes([packets.ROUTER_ADVERT, 0, 0, 0, 64, flags]) + bytes(10)
    ip = struct.pack("!IHBB", 6 << 28, len(icmp), 58, 255)
    ip += ipaddress.IPv6Address(source).packed + packets.ALL_ROUTERS.packed
    eth = packets.BROADCAST_MAC + MAC + struct.pack("!H", packets.ETH_P_IPV6)
    return eth + ip + icmp


def test_link_local_from_mac():
    assert mac_to_ipv6_link_local(MAC) == ipaddress.IPv6Address("fe80::ff:fe00:1")


@pytest.mark.parametrize("mac", [b"", b"\x01\x02\x03", bytes(8)])
def test_link_local_rejects_bad_length(mac):
    assert mac_to_ipv6_link_local(mac) is None


def test_link_local_structure():
    mac = bytes([0x10, 0x22, 0x33, 0x44, 0x55, 0x66])
    packed = mac_to_ipv6_link_local(mac).packed
    assert packed[:2] == b"\xfe\x80"
    assert packed[11:13] == b"\xff\xfe"
    assert packed[13:] == mac[3:]
    assert packed[8] == 0x12


def test_neighbor_solicitation_layout():
    frame = build_neighbor_solicitation(MAC, SRC, TARGET)
    assert len(frame) == 86
    assert frame[:6] == packets.BROADCAST_MAC
    assert frame[6:12] == MAC
    assert struct.unpack_from("!H", frame, 12)[0] == packets.ETH_P_IPV6
    assert struct.unpack_from("!H", frame, 18)[0] == 32
    assert frame[21] == 255
    assert frame[22:38] == SRC.packed
    assert frame[38:54] == TARGET.packed
    assert frame[54] == packets.NEIGHBOR_SOLICIT
    assert frame[62:78] == TARGET.packed
    assert frame[78:86] == bytes([1, 1]) + MAC


def test_neighbor_solicitation_checksum_matches():
    frame = build_neighbor_solicitation(MAC, SRC, TARGET)
    icmp = frame[54:]
    assert icmpv6_checksum(icmp, SRC, TARGET) == struct.unpack("!H", icmp[2:4])[0]


def test_checksum_ignores_existing_field():
    icmp = bytes([packets.NEIGHBOR_SOLICIT, 0, 0xAB, 0xCD]) + bytes(28)
    cleared = icmp[:2] + b"\0\0" + icmp[4:]
    assert icmpv6_checksum(icmp, SRC, TARGET) == icmpv6_checksum(cleared, SRC, TARGET)


def test_router_solicitation_layout():
    frame = build_router_solicitation(MAC)
    assert len(frame) == 128
    assert frame[22:38] == bytes(16)
    assert frame[38:54] == packets.ALL_ROUTERS.packed
    assert struct.unpack_from("!H", frame, 18)[0] == 8
    assert frame[54] == packets.ROUTER_SOLICIT
    assert frame[62:] == bytes(128 - 62)
    icmp = frame[54:62]
    expected = icmpv6_checksum(icmp, "::", packets.ALL_ROUTERS)
    assert struct.unpack("!H", icmp[2:4])[0] == expected


def test_build_rejects_bad_mac():
    with pytest.raises(ValueError):
        build_router_solicitation(b"\x01\x02")


def test_build_accepts_mac_string():
    assert build_router_solicitation("02:00:00:00:00:01") == build_router_solicitation(MAC)


def test_parse_neighbor_solicitation_round_trip():
    info = parse_ipv6_frame(build_neighbor_solicitation(MAC, SRC, TARGET))
    assert info.source == SRC
    assert info.icmp_type == packets.NEIGHBOR_SOLICIT
    assert info.ra_flags is None


def test_parse_router_advert_flags():
    info = parse_ipv6_frame(router_advert(TARGET, 0xC0))
    assert info.source == TARGET
    assert info.icmp_type == packets.ROUTER_ADVERT
    assert info.ra_flags == 0xC0


def test_parse_rejects_other_ethertype_and_short_frames():
    frame = bytearray(build_neighbor_solicitation(MAC, SRC, TARGET))
    frame[12:14] = b"\x08\x00"
    assert parse_ipv6_frame(bytes(frame)) is None
    assert parse_ipv6_frame(b"\x00" * 10) is None
    assert parse_ipv6_frame(build_router_solicitation(MAC)[:30]) is None


def test_watch_stops_at_managed_advert():
    first = ipaddress.IPv6Address("fe80::a")
    later = ipaddress.IPv6Address("fe80::b")
    frames = [router_advert(first, 0xC0), build_neighbor_solicitation(MAC, later, TARGET)]
    assert packets._watch_for_router(frames, False) == first


def test_watch_ignores_unflagged_advert_unless_told():
    first = ipaddress.IPv6Address("fe80::a")
    later = ipaddress.IPv6Address("fe80::b")
    frames = [router_advert(first, 0x00), build_neighbor_solicitation(MAC, later, TARGET)]
    assert packets._watch_for_router(frames, False) == later
    assert packets._watch_for_router(frames, True) == first


def test_watch_without_ipv6_frames_returns_none():
    assert packets._watch_for_router([b"\x00" * 20], True) is None