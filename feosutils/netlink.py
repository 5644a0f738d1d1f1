"""Minimal rtnetlink client for links, IPv6 addresses and IPv6 routes."""

from __future__ import annotations

import errno
import ipaddress
import os
import socket
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Iterator

NETLINK_ROUTE = 0

NLMSG_ERROR = 2
NLMSG_DONE = 3

RTM_NEWLINK = 16
RTM_GETLINK = 18
RTM_SETLINK = 19
RTM_NEWADDR = 20
RTM_NEWROUTE = 24

NLM_F_REQUEST = 0x001
NLM_F_ACK = 0x004
NLM_F_EXCL = 0x200
NLM_F_CREATE = 0x400

IFF_UP = 0x1

IFLA_ADDRESS = 1
IFLA_IFNAME = 3
IFLA_MTU = 4
IFLA_CARRIER = 33

IFA_ADDRESS = 1

RTA_DST = 1
RTA_OIF = 4
RTA_GATEWAY = 5
RTA_PRIORITY = 6

RT_TABLE_MAIN = 254
RTPROT_STATIC = 4
RT_SCOPE_UNIVERSE = 0

AF_INET6 = 10

_NLMSG_HDR = struct.Struct("=IHHII")
_RTATTR = struct.Struct("=HH")
_IFINFOMSG = struct.Struct("=BxHiII")
_IFADDRMSG = struct.Struct("=BBBBI")
_RTMSG = struct.Struct("=BBBBBBBBI")
_U32 = struct.Struct("=I")
_I32 = struct.Struct("=i")

_ATTR_TYPE_MASK = 0x3FFF
_ADD_FLAGS = NLM_F_REQUEST | NLM_F_ACK | NLM_F_EXCL | NLM_F_CREATE


class RouteType(IntEnum):
    """Kernel route types (``RTN_*``)."""

    UNSPEC = 0
    UNICAST = 1
    LOCAL = 2
    BROADCAST = 3
    ANYCAST = 4
    MULTICAST = 5
    BLACKHOLE = 6
    UNREACHABLE = 7
    PROHIBIT = 8


class NetlinkError(OSError):
    """A netlink request failed; ``errno`` holds the kernel's error code."""


def _align(length: int) -> int:
    return (length + 3) & ~3


def _attr(kind: int, data: bytes) -> bytes:
    length = _RTATTR.size + len(data)
    return _RTATTR.pack(length, kind) + data + b"\0" * (_align(length) - length)


def _iter_attrs(data: bytes) -> Iterator[tuple[int, bytes]]:
    offset = 0
    while offset + _RTATTR.size <= len(data):
        length, kind = _RTATTR.unpack_from(data, offset)
        if length < _RTATTR.size or offset + length > len(data):
            return
        yield kind & _ATTR_TYPE_MASK, data[offset + _RTATTR.size : offset + length]
        offset += _align(length)


def _nlmsg(kind: int, flags: int, seq: int, payload: bytes) -> bytes:
    return _NLMSG_HDR.pack(_NLMSG_HDR.size + len(payload), kind, flags, seq, 0) + payload


def _iter_messages(data: bytes) -> Iterator[tuple[int, int, int, bytes]]:
    offset = 0
    while offset + _NLMSG_HDR.size <= len(data):
        length, kind, flags, seq, _pid = _NLMSG_HDR.unpack_from(data, offset)
        if length < _NLMSG_HDR.size or offset + length > len(data):
            return
        yield kind, flags, seq, data[offset + _NLMSG_HDR.size : offset + length]
        offset += _align(length)


@dataclass
class Link:
    """A network link as reported by the kernel."""

    index: int
    flags: int = 0
    name: str | None = None
    address: bytes | None = None
    mtu: int | None = None
    carrier: int | None = None


def parse_link_message(data: bytes) -> Link:
    """Parse the body of an RTM_NEWLINK message (ifinfomsg plus attributes)."""
    if len(data) < _IFINFOMSG.size:
        raise NetlinkError(errno.EINVAL, "link message too short")
    _family, _type, index, flags, _change = _IFINFOMSG.unpack_from(data)
    link = Link(index=index, flags=flags)
    for kind, value in _iter_attrs(data[_IFINFOMSG.size :]):
        if kind == IFLA_IFNAME:
            link.name = value.split(b"\0", 1)[0].decode("utf-8", "replace")
        elif kind == IFLA_ADDRESS:
            link.address = bytes(value)
        elif kind == IFLA_MTU and len(value) >= 4:
            link.mtu = _U32.unpack_from(value)[0]
        elif kind == IFLA_CARRIER and value:
            link.carrier = value[0]
    return link


@dataclass
class Route:
    """An IPv6 route to be added through netlink."""

    oif: int
    prefix_length: int = 0
    destination: ipaddress.IPv6Address | None = None
    gateway: ipaddress.IPv6Address | None = None
    metric: int | None = None
    route_type: RouteType = RouteType.UNICAST

    def encode(self, seq: int) -> bytes:
        """The complete RTM_NEWROUTE request for this route."""
        body = _RTMSG.pack(
            AF_INET6,
            self.prefix_length,
            0,
            0,
            RT_TABLE_MAIN,
            RTPROT_STATIC,
            RT_SCOPE_UNIVERSE,
            int(self.route_type),
            0,
        )
        if self.destination is not None:
            body += _attr(RTA_DST, ipaddress.IPv6Address(self.destination).packed)
        if self.gateway is not None:
            body += _attr(RTA_GATEWAY, ipaddress.IPv6Address(self.gateway).packed)
        body += _attr(RTA_OIF, _U32.pack(self.oif))
        if self.metric is not None:
            body += _attr(RTA_PRIORITY, _U32.pack(self.metric))
        return _nlmsg(RTM_NEWROUTE, _ADD_FLAGS, seq, body)


class Netlink:
    """A route-netlink socket that sends requests and waits for their answers."""

    def __init__(self, sock=None) -> None:
        if sock is None:
            sock = socket.socket(socket.AF_NETLINK, socket.SOCK_RAW, NETLINK_ROUTE)
            sock.bind((0, 0))
        self._sock = sock
        self._seq = 0

    def close(self) -> None:
        self._sock.close()

    def __enter__(self) -> "Netlink":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def _next_seq(self) -> int:
        self._seq = (self._seq + 1) & 0xFFFFFFFF
        return self._seq

    def _send(self, data: bytes) -> None:
        self._sock.sendto(data, (0, 0))

    def _await(self, seq: int, reply_type: int | None = None) -> bytes | None:
        while True:
            data = self._sock.recv(65536)
            if not data:
                raise NetlinkError(errno.EIO, "netlink socket closed")
            for kind, _flags, msg_seq, payload in _iter_messages(data):
                if msg_seq != seq:
                    continue
                if kind == NLMSG_ERROR:
                    code = _I32.unpack_from(payload)[0] if len(payload) >= 4 else -errno.EIO
                    if code:
                        raise NetlinkError(-code, os.strerror(-code))
                    return None
                if kind == NLMSG_DONE:
                    return None
                if reply_type is not None and kind == reply_type:
                    return payload

    def _request(self, kind: int, flags: int, payload: bytes, reply_type: int | None = None):
        seq = self._next_seq()
        self._send(_nlmsg(kind, flags, seq, payload))
        return self._await(seq, reply_type)

    def get_link(self, name: str) -> Link:
        """Look a link up by name; raises NetlinkError when it does not exist."""
        payload = _IFINFOMSG.pack(0, 0, 0, 0, 0) + _attr(IFLA_IFNAME, name.encode() + b"\0")
        reply = self._request(RTM_GETLINK, NLM_F_REQUEST, payload, RTM_NEWLINK)
        if reply is None:
            raise NetlinkError(errno.ENODEV, f"link {name} not found")
        return parse_link_message(reply)

    def set_link_up(self, link: Link) -> None:
        """Set the IFF_UP flag on a link."""
        payload = _IFINFOMSG.pack(0, 0, link.index, link.flags | IFF_UP, IFF_UP)
        self._request(RTM_SETLINK, NLM_F_REQUEST | NLM_F_ACK, payload)

    def add_address(self, index: int, address, prefix_length: int) -> None:
        """Add an IPv6 address to the link with the given index."""
        addr = ipaddress.IPv6Address(address)
        payload = _IFADDRMSG.pack(AF_INET6, prefix_length, 0, RT_SCOPE_UNIVERSE, index)
        payload += _attr(IFA_ADDRESS, addr.packed)
        self._request(RTM_NEWADDR, _ADD_FLAGS, payload)

    def add_route(self, route: Route) -> None:
        """Add a route to the kernel's table."""
        seq = self._next_seq()
        self._send(route.encode(seq))
        self._await(seq)


def set_ipv6_address(netlink: Netlink, interface_name: str, ipv6_addr, pfx_len: int) -> None:
    """Add an IPv6 address to the named interface."""
    link = netlink.get_link(interface_name)
    netlink.add_address(link.index, ipv6_addr, pfx_len)


def add_ipv6_route(
    netlink: Netlink,
    interface_name: str,
    destination,
    prefix_length: int,
    gateway,
    metric: int,
    route_type: RouteType,
) -> None:
    """Add an IPv6 route out of the named interface; the gateway applies to unicast only."""
    link = netlink.get_link(interface_name)
    route_type = RouteType(route_type)
    gw = None
    if route_type == RouteType.UNICAST and gateway is not None:
        gw = ipaddress.IPv6Address(gateway)
    netlink.add_route(
        Route(
            oif=link.index,
            prefix_length=prefix_length,
            destination=ipaddress.IPv6Address(destination),
            gateway=gw,
            metric=metric,
            route_type=route_type,
        )
    )


def set_ipv6_gateway(netlink: Netlink, interface_name: str, ipv6_gateway) -> None:
    """Add a default IPv6 route through the given gateway."""
    link = netlink.get_link(interface_name)
    netlink.add_route(
        Route(
            oif=link.index,
            prefix_length=0,
            gateway=ipaddress.IPv6Address(ipv6_gateway),
            route_type=RouteType.UNICAST,
        )
    )