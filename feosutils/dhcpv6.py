"""DHCPv6 messages and a client that leases an address and a delegated prefix."""

from __future__ import annotations

import asyncio
import bisect
import ipaddress
import logging
import socket
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Awaitable, Callable

from feosutils.netlink import Netlink, set_ipv6_address

log = logging.getLogger(__name__)

DHCP_CLIENT_PORT = 546
DHCP_SERVER_PORT = 547
ALL_DHCP_SERVERS = ipaddress.IPv6Address("ff02::1:2")
CLIENT_ID = bytes(range(29, 45))
XID = b"\x12\x34\x56"

_OPTION_HEADER = struct.Struct("!HH")
_U16 = struct.Struct("!H")
_IA = struct.Struct("!III")
_LIFETIMES = struct.Struct("!II")
_SO_BINDTODEVICE = getattr(socket, "SO_BINDTODEVICE", 25)


class MessageType(IntEnum):
    """DHCPv6 message types."""

    SOLICIT = 1
    ADVERTISE = 2
    REQUEST = 3
    CONFIRM = 4
    RENEW = 5
    REBIND = 6
    REPLY = 7
    RELEASE = 8
    DECLINE = 9
    RECONFIGURE = 10
    INFORMATION_REQUEST = 11
    RELAY_FORW = 12
    RELAY_REPL = 13


class OptionCode(IntEnum):
    """DHCPv6 option codes used by the client."""

    CLIENT_ID = 1
    SERVER_ID = 2
    IA_NA = 3
    IA_TA = 4
    IA_ADDR = 5
    ORO = 6
    PREFERENCE = 7
    ELAPSED_TIME = 8
    STATUS_CODE = 13
    RAPID_COMMIT = 14
    DOMAIN_NAME_SERVERS = 23
    DOMAIN_SEARCH_LIST = 24
    IA_PD = 25
    IA_PREFIX = 26
    SNTP_SERVERS = 31
    CLIENT_FQDN = 39


class Dhcpv6Error(Exception):
    """A DHCPv6 message was malformed or the exchange gave no address."""


def _code(value: int) -> int:
    try:
        return OptionCode(value)
    except ValueError:
        return value


class _OptionsMixin:
    """Options kept ordered by code, as ``(code, value)`` pairs."""

    options: list

    def get(self, code: int) -> Any:
        """The value of the first option with ``code``, or None."""
        for option_code, value in self.options:
            if option_code == code:
                return value
        return None

    def insert(self, code: int, value: Any) -> None:
        """Insert an option after any options with the same or a lower code."""
        codes = [option_code for option_code, _ in self.options]
        self.options.insert(bisect.bisect_right(codes, code), (_code(code), value))

    @property
    def codes(self) -> list[int]:
        return [option_code for option_code, _ in self.options]


@dataclass
class IAAddr(_OptionsMixin):
    """An IA address option."""

    addr: ipaddress.IPv6Address
    preferred_life: int
    valid_life: int
    options: list = field(default_factory=list)

    def _encode_body(self) -> bytes:
        return (
            ipaddress.IPv6Address(self.addr).packed
            + _LIFETIMES.pack(self.preferred_life, self.valid_life)
            + _encode_options(self.options)
        )

    @classmethod
    def _decode_body(cls, data: bytes) -> "IAAddr":
        if len(data) < 24:
            raise Dhcpv6Error("IA address option too short")
        preferred, valid = _LIFETIMES.unpack_from(data, 16)
        return cls(ipaddress.IPv6Address(data[:16]), preferred, valid, _decode_options(data[24:]))


@dataclass
class IAPrefix(_OptionsMixin):
    """An IA prefix option."""

    preferred_lifetime: int
    valid_lifetime: int
    prefix_len: int
    prefix_ip: ipaddress.IPv6Address
    options: list = field(default_factory=list)

    def _encode_body(self) -> bytes:
        return (
            _LIFETIMES.pack(self.preferred_lifetime, self.valid_lifetime)
            + bytes([self.prefix_len])
            + ipaddress.IPv6Address(self.prefix_ip).packed
            + _encode_options(self.options)
        )

    @classmethod
    def _decode_body(cls, data: bytes) -> "IAPrefix":
        if len(data) < 25:
            raise Dhcpv6Error("IA prefix option too short")
        preferred, valid = _LIFETIMES.unpack_from(data)
        return cls(
            preferred,
            valid,
            data[8],
            ipaddress.IPv6Address(data[9:25]),
            _decode_options(data[25:]),
        )


@dataclass
class _IdentityAssociation(_OptionsMixin):
    id: int
    t1: int
    t2: int
    options: list = field(default_factory=list)

    def _encode_body(self) -> bytes:
        return _IA.pack(self.id, self.t1, self.t2) + _encode_options(self.options)

    @classmethod
    def _decode_body(cls, data: bytes):
        if len(data) < _IA.size:
            raise Dhcpv6Error("identity association option too short")
        ia_id, t1, t2 = _IA.unpack_from(data)
        return cls(ia_id, t1, t2, _decode_options(data[_IA.size :]))


class IANA(_IdentityAssociation):
    """An identity association for non-temporary addresses."""


class IAPD(_IdentityAssociation):
    """An identity association for prefix delegation."""


_STRUCTURED = {
    OptionCode.IA_NA: IANA,
    OptionCode.IA_ADDR: IAAddr,
    OptionCode.IA_PD: IAPD,
    OptionCode.IA_PREFIX: IAPrefix,
}


def _encode_value(code: int, value: Any) -> bytes:
    if isinstance(value, (IAAddr, IAPrefix, _IdentityAssociation)):
        return value._encode_body()
    if code == OptionCode.ORO:
        return b"".join(_U16.pack(requested) for requested in value)
    if code == OptionCode.ELAPSED_TIME:
        return _U16.pack(value)
    if code == OptionCode.RAPID_COMMIT:
        return b""
    return bytes(value)


def _decode_value(code: int, data: bytes) -> Any:
    kind = _STRUCTURED.get(code)
    if kind is not None:
        return kind._decode_body(data)
    if code == OptionCode.ORO:
        if len(data) % 2:
            raise Dhcpv6Error("option request option has odd length")
        return [_code(requested) for (requested,) in _U16.iter_unpack(data)]
    if code == OptionCode.ELAPSED_TIME:
        if len(data) != 2:
            raise Dhcpv6Error("elapsed time option must be 2 bytes")
        return _U16.unpack(data)[0]
    if code == OptionCode.RAPID_COMMIT:
        if data:
            raise Dhcpv6Error("rapid commit option must be empty")
        return None
    return bytes(data)


def _encode_options(options: list) -> bytes:
    parts = []
    for code, value in options:
        body = _encode_value(code, value)
        if len(body) > 0xFFFF:
            raise ValueError(f"option {code} is too long")
        parts.append(_OPTION_HEADER.pack(code, len(body)) + body)
    return b"".join(parts)


def _decode_options(data: bytes) -> list:
    options = []
    offset = 0
    while offset < len(data):
        if offset + _OPTION_HEADER.size > len(data):
            raise Dhcpv6Error("truncated option header")
        code, length = _OPTION_HEADER.unpack_from(data, offset)
        start = offset + _OPTION_HEADER.size
        end = start + length
        if end > len(data):
            raise Dhcpv6Error(f"option {code} runs past the end of the message")
        code = _code(code)
        options.append((code, _decode_value(code, data[start:end])))
        offset = end
    return options


@dataclass
class Message(_OptionsMixin):
    """A DHCPv6 client/server message."""

    msg_type: int
    xid: bytes = b"\0\0\0"
    options: list = field(default_factory=list)

    def encode(self) -> bytes:
        """The message in wire format."""
        if len(self.xid) != 3:
            raise ValueError("transaction id must be 3 bytes")
        return bytes([self.msg_type]) + bytes(self.xid) + _encode_options(self.options)

    @classmethod
    def decode(cls, data: bytes) -> "Message":
        """Parse a message; raises Dhcpv6Error when it is malformed."""
        if len(data) < 4:
            raise Dhcpv6Error("message too short")
        try:
            msg_type = MessageType(data[0])
        except ValueError:
            msg_type = data[0]
        return cls(msg_type, bytes(data[1:4]), _decode_options(bytes(data[4:])))


@dataclass(frozen=True)
class PrefixInfo:
    """A delegated prefix."""

    prefix: ipaddress.IPv6Address
    prefix_length: int


@dataclass(frozen=True)
class Dhcpv6Result:
    """The leased address and, if any, the delegated prefix."""

    address: ipaddress.IPv6Address
    prefix: PrefixInfo | None = None


_UNSPECIFIED = ipaddress.IPv6Address("::")


def _iana(address: ipaddress.IPv6Address) -> IANA:
    return IANA(123, 3600, 7200, [(OptionCode.IA_ADDR, IAAddr(address, 3000, 5000))])


def _iapd(prefix: IAPrefix) -> IAPD:
    return IAPD(456, 3600, 7200, [(OptionCode.IA_PREFIX, prefix)])


def build_solicit(client_id: bytes, xid: bytes) -> Message:
    """A Solicit asking for an address, a /80 prefix and rapid commit."""
    msg = Message(MessageType.SOLICIT, bytes(xid))
    msg.insert(OptionCode.CLIENT_ID, bytes(client_id))
    msg.insert(OptionCode.ELAPSED_TIME, 0)
    msg.insert(OptionCode.RAPID_COMMIT, None)
    msg.insert(
        OptionCode.ORO,
        [
            OptionCode.DOMAIN_NAME_SERVERS,
            OptionCode.DOMAIN_SEARCH_LIST,
            OptionCode.CLIENT_FQDN,
            OptionCode.SNTP_SERVERS,
            OptionCode.RAPID_COMMIT,
            OptionCode.IA_PD,
            OptionCode.IA_PREFIX,
        ],
    )
    msg.insert(OptionCode.IA_NA, _iana(_UNSPECIFIED))
    msg.insert(OptionCode.IA_PD, _iapd(IAPrefix(0, 0, 80, _UNSPECIFIED)))
    return msg


def build_request(advertise: Message, client_id: bytes, xid: bytes) -> Message:
    """A Request for what an Advertise offered."""
    ia_addr = None
    ia_prefix = None
    iana = advertise.get(OptionCode.IA_NA)
    if isinstance(iana, IANA):
        ia_addr = iana.get(OptionCode.IA_ADDR)
    iapd = advertise.get(OptionCode.IA_PD)
    if isinstance(iapd, IAPD):
        ia_prefix = iapd.get(OptionCode.IA_PREFIX)

    msg = Message(MessageType.REQUEST, bytes(xid))
    msg.insert(OptionCode.CLIENT_ID, bytes(client_id))
    msg.insert(OptionCode.ELAPSED_TIME, 0)

    server_id = advertise.get(OptionCode.SERVER_ID)
    if isinstance(server_id, bytes):
        msg.insert(OptionCode.SERVER_ID, server_id)
    else:
        log.warning("Server ID was not found or not a ServerId type.")

    if isinstance(ia_addr, IAAddr):
        msg.insert(OptionCode.IA_NA, _iana(ia_addr.addr))
    else:
        log.warning("No IP was found in Advertise message")

    if isinstance(ia_prefix, IAPrefix):
        copy = IAPrefix(
            ia_prefix.preferred_lifetime,
            ia_prefix.valid_lifetime,
            ia_prefix.prefix_len,
            ia_prefix.prefix_ip,
            list(ia_prefix.options),
        )
        msg.insert(OptionCode.IA_PD, _iapd(copy))
    return msg


def build_confirm(xid: bytes) -> Message:
    """An option-less Confirm."""
    return Message(MessageType.CONFIRM, bytes(xid))


async def get_interface_index(interface_name: str) -> int:
    """The kernel index of an interface; raises OSError if it does not exist."""
    try:
        return await asyncio.to_thread(socket.if_nametoindex, interface_name)
    except OSError as err:
        raise OSError(f"Error getting index: {err}") from err


def create_multicast_socket(interface_name: str, interface_index: int, lport: int) -> socket.socket:
    """A non-blocking UDP socket on the interface that has joined the DHCP server group."""
    sock = socket.socket(socket.AF_INET6, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        index = struct.pack("@I", interface_index)
        sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_MULTICAST_IF, index)
        sock.setsockopt(
            socket.IPPROTO_IPV6, socket.IPV6_JOIN_GROUP, ALL_DHCP_SERVERS.packed + index
        )
        sock.bind(("::", lport, 0, 0))
        sock.setsockopt(socket.SOL_SOCKET, _SO_BINDTODEVICE, interface_name.encode())
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock


async def _negotiate(
    send: Callable[[bytes], None],
    receive: Callable[[], Awaitable[bytes]],
    client_id: bytes = CLIENT_ID,
    xid: bytes = XID,
) -> tuple[IAAddr | None, IAPrefix | None]:
    send(build_solicit(client_id, xid).encode())
    while True:
        response = Message.decode(await receive())
        if response.msg_type == MessageType.ADVERTISE:
            log.info("DHCPv6 processing in progress...")
            send(build_request(response, client_id, xid).encode())
        elif response.msg_type == MessageType.REPLY:
            ia_addr = None
            ia_prefix = None
            iana = response.get(OptionCode.IA_NA)
            if isinstance(iana, IANA):
                candidate = iana.get(OptionCode.IA_ADDR)
                if isinstance(candidate, IAAddr):
                    ia_addr = candidate
            iapd = response.get(OptionCode.IA_PD)
            if isinstance(iapd, IAPD):
                candidate = iapd.get(OptionCode.IA_PREFIX)
                if isinstance(candidate, IAPrefix):
                    ia_prefix = candidate
            send(build_confirm(xid).encode())
            return ia_addr, ia_prefix


class _Receiver(asyncio.DatagramProtocol):
    def __init__(self) -> None:
        self.queue: asyncio.Queue = asyncio.Queue()

    def datagram_received(self, data: bytes, addr) -> None:
        self.queue.put_nowait(data)

    def error_received(self, exc: Exception) -> None:
        self.queue.put_nowait(exc)

    async def receive(self) -> bytes:
        item = await self.queue.get()
        if isinstance(item, Exception):
            raise item
        return item


def _assign_address(interface_name: str, address: ipaddress.IPv6Address) -> None:
    with Netlink() as netlink:
        set_ipv6_address(netlink, interface_name, address, 128)


async def run_dhcpv6_client(interface_name: str) -> Dhcpv6Result:
    """Lease an address (and a prefix, if offered) and assign the address as a /128."""
    interface_index = await get_interface_index(interface_name)
    sock = create_multicast_socket(interface_name, interface_index, DHCP_CLIENT_PORT)
    loop = asyncio.get_running_loop()
    transport, protocol = await loop.create_datagram_endpoint(_Receiver, sock=sock)
    destination = (str(ALL_DHCP_SERVERS), DHCP_SERVER_PORT)
    try:
        ia_addr, ia_prefix = await _negotiate(
            lambda data: transport.sendto(data, destination), protocol.receive
        )
    finally:
        transport.close()

    if ia_addr is None:
        raise Dhcpv6Error("No valid address received")

    await asyncio.to_thread(_assign_address, interface_name, ia_addr.addr)
    log.info("DHCPv6 processing finished, setting IPv6 address %s", ia_addr.addr)

    prefix = None
    if ia_prefix is not None:
        prefix = PrefixInfo(ia_prefix.prefix_ip, ia_prefix.prefix_len)
        log.info(
            "Received delegated prefix %s with length %d", prefix.prefix, prefix.prefix_length
        )
    else:
        log.info("No prefix delegation received.")
    return Dhcpv6Result(ia_addr.addr, prefix)