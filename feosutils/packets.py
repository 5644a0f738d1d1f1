"""Ethernet/IPv6/ICMPv6 frames for router discovery and neighbour solicitation."""

from __future__ import annotations

import ipaddress
import logging
import socket
import struct
import time
from dataclasses import dataclass
from typing import Iterable, Iterator

from feosutils.hostinfo import get_mac_address

log = logging.getLogger(__name__)

ETH_P_ALL = 0x0003
ETH_P_IPV6 = 0x86DD
IPPROTO_ICMPV6 = 58

ROUTER_SOLICIT = 133
ROUTER_ADVERT = 134
NEIGHBOR_SOLICIT = 135

ALL_ROUTERS = ipaddress.IPv6Address("ff02::2")
BROADCAST_MAC = b"\xff" * 6

_ETH_HEADER_LEN = 14
_IPV6_HEADER_LEN = 40
_RA_MIN_LEN = 16
_RS_FRAME_LEN = 128
_MANAGED_AND_OTHER = 0xC0


@dataclass(frozen=True)
class Ipv6FrameInfo:
    """What router discovery needs to know about a received IPv6 frame."""

    source: ipaddress.IPv6Address
    icmp_type: int | None = None
    ra_flags: int | None = None


def _mac_bytes(mac) -> bytes:
    data = bytes.fromhex(mac.replace(":", "")) if isinstance(mac, str) else bytes(mac)
    if len(data) != 6:
        raise ValueError(f"invalid MAC address: {mac!r}")
    return data


def mac_to_ipv6_link_local(mac_address) -> ipaddress.IPv6Address | None:
    """The EUI-64 link-local address for a 6-byte MAC, or None for other lengths."""
    mac = bytes(mac_address)
    if len(mac) != 6:
        return None
    suffix = bytes([mac[0] ^ 0x02, mac[1], mac[2], 0xFF, 0xFE, mac[3], mac[4], mac[5]])
    return ipaddress.IPv6Address(b"\xfe\x80" + bytes(6) + suffix)


def icmpv6_checksum(icmp: bytes, source, destination) -> int:
    """ICMPv6 checksum over the pseudo header; the packet's own checksum field is ignored."""
    data = bytearray(icmp)
    if len(data) >= 4:
        data[2:4] = b"\0\0"
    pseudo = (
        ipaddress.IPv6Address(source).packed
        + ipaddress.IPv6Address(destination).packed
        + struct.pack("!I", len(data))
        + bytes(3)
        + bytes([IPPROTO_ICMPV6])
    )
    buf = pseudo + bytes(data)
    if len(buf) % 2:
        buf += b"\0"
    total = sum(struct.unpack(f"!{len(buf) // 2}H", buf))
    while total >> 16:
        total = (total & 0xFFFF) + (total >> 16)
    return ~total & 0xFFFF


def _ethernet_header(source_mac: bytes) -> bytes:
    return BROADCAST_MAC + source_mac + struct.pack("!H", ETH_P_IPV6)


def _ipv6_header(payload_length: int, source, destination) -> bytes:
    return (
        struct.pack("!IHBB", 6 << 28, payload_length, IPPROTO_ICMPV6, 255)
        + ipaddress.IPv6Address(source).packed
        + ipaddress.IPv6Address(destination).packed
    )


def _with_checksum(icmp: bytes, source, destination) -> bytes:
    checksum = icmpv6_checksum(icmp, source, destination)
    return icmp[:2] + struct.pack("!H", checksum) + icmp[4:]


def build_neighbor_solicitation(source_mac, src_address, target_address) -> bytes:
    """An 86-byte neighbour solicitation frame sent straight to the target address."""
    mac = _mac_bytes(source_mac)
    src = ipaddress.IPv6Address(src_address)
    target = ipaddress.IPv6Address(target_address)
    icmp = bytes([NEIGHBOR_SOLICIT, 0, 0, 0]) + bytes(4) + target.packed + bytes([1, 1]) + mac
    icmp = _with_checksum(icmp, src, target)
    return _ethernet_header(mac) + _ipv6_header(len(icmp), src, target) + icmp


def build_router_solicitation(source_mac) -> bytes:
    """A router solicitation to all routers from the unspecified address, padded to 128 bytes."""
    mac = _mac_bytes(source_mac)
    src = ipaddress.IPv6Address("::")
    icmp = _with_checksum(bytes([ROUTER_SOLICIT, 0, 0, 0]) + bytes(4), src, ALL_ROUTERS)
    frame = _ethernet_header(mac) + _ipv6_header(len(icmp), src, ALL_ROUTERS) + icmp
    return frame.ljust(_RS_FRAME_LEN, b"\0")


def parse_ipv6_frame(frame: bytes) -> Ipv6FrameInfo | None:
    """Read source, ICMPv6 type and router advertisement flags from an Ethernet frame."""
    if len(frame) < _ETH_HEADER_LEN:
        return None
    (ethertype,) = struct.unpack_from("!H", frame, 12)
    if ethertype != ETH_P_IPV6:
        return None
    ip = frame[_ETH_HEADER_LEN:]
    if len(ip) < _IPV6_HEADER_LEN:
        return None
    (payload_length,) = struct.unpack_from("!H", ip, 4)
    source = ipaddress.IPv6Address(bytes(ip[8:24]))
    payload = ip[_IPV6_HEADER_LEN : _IPV6_HEADER_LEN + payload_length]
    if len(payload) < 4:
        return Ipv6FrameInfo(source=source)
    icmp_type = payload[0]
    ra_flags = payload[5] if icmp_type == ROUTER_ADVERT and len(payload) >= _RA_MIN_LEN else None
    return Ipv6FrameInfo(source=source, icmp_type=icmp_type, ra_flags=ra_flags)


def _watch_for_router(frames: Iterable[bytes], ignore_ra_flag: bool) -> ipaddress.IPv6Address | None:
    sender = None
    for frame in frames:
        info = parse_ipv6_frame(frame)
        if info is None:
            continue
        sender = info.source
        if info.ra_flags is not None and (
            (info.ra_flags & _MANAGED_AND_OTHER) == _MANAGED_AND_OTHER or ignore_ra_flag
        ):
            break
    return sender


def _receive_frames(sock: socket.socket) -> Iterator[bytes]:
    while True:
        try:
            yield sock.recv(65535)
        except OSError:
            return


def _interface_mac(interface_name: str) -> bytes | None:
    text = get_mac_address(interface_name)
    if text is None:
        return None
    try:
        return _mac_bytes(text)
    except ValueError:
        return None


def _open_channel(interface_name: str) -> socket.socket:
    sock = socket.socket(socket.AF_PACKET, socket.SOCK_RAW, socket.htons(ETH_P_ALL))
    try:
        sock.bind((interface_name, 0))
    except OSError:
        sock.close()
        raise
    return sock


def _interface_exists(interface_name: str) -> bool:
    try:
        socket.if_nametoindex(interface_name)
    except OSError:
        return False
    return True


def send_neigh_solicitation(interface_name: str, target_address, src_address) -> None:
    """Send a neighbour solicitation for ``target_address``; failures are logged."""
    if not _interface_exists(interface_name):
        log.error("Error getting interface")
        return
    mac = _interface_mac(interface_name)
    if mac is None:
        log.error("Error getting MAC address of %s", interface_name)
        return
    try:
        sock = _open_channel(interface_name)
    except OSError as err:
        log.error("Error creating channel: %s", err)
        return
    with sock:
        frame = build_neighbor_solicitation(mac, src_address, target_address)
        try:
            sock.send(frame)
        except OSError:
            log.error("Failed to send neighbor solicitation")


def is_dhcpv6_needed(interface_name: str, ignore_ra_flag: bool) -> ipaddress.IPv6Address | None:
    """Solicit a router and return the source of the last IPv6 frame seen before a
    fitting router advertisement, or None if the interface cannot be used."""
    if not _interface_exists(interface_name):
        return None
    mac = _interface_mac(interface_name)
    if mac is None:
        return None
    try:
        sock = _open_channel(interface_name)
    except OSError:
        return None
    with sock:
        log.info("Sending Router Solicitation ...")
        time.sleep(5)
        try:
            sock.send(build_router_solicitation(mac))
        except OSError:
            log.error("Failed to send router solicitation")
        return _watch_for_router(_receive_frames(sock), ignore_ra_flag)