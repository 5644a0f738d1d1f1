import ipaddress
import logging
import socket

import pytest

from feosutils.dhcpv6 import (
    CLIENT_ID,
    IAAddr,
    IANA,
    IAPD,
    IAPrefix,
    Dhcpv6Error,
    Message,
    MessageType,
    OptionCode,
    XID,
    _negotiate,
    build_confirm,
    build_request,
    build_solicit,
    get_interface_index,
)

ADDRESS = ipaddress.IPv6Address("2001:db8::5")
PREFIX = ipaddress.IPv6Address("2001:db8:1::")


def _advertise(with_server=True, with_address=True, with_prefix=True, kind=MessageType.ADVERTISE):
    msg = Message(kind, XID)
    if with_server:
        msg.insert(OptionCode.SERVER_ID, b"\x00\x01server")
    if with_address:
        msg.insert(
            OptionCode.IA_NA,
            IANA(1, 10, 20, [(OptionCode.IA_ADDR, IAAddr(ADDRESS, 100, 200))]),
        )
    if with_prefix:
        msg.insert(
            OptionCode.IA_PD,
            IAPD(2, 10, 20, [(OptionCode.IA_PREFIX, IAPrefix(300, 400, 64, PREFIX))]),
        )
    return Message.decode(msg.encode())


def test_solicit_round_trip():
    msg = build_solicit(CLIENT_ID, XID)
    assert Message.decode(msg.encode()) == msg


def test_solicit_header_and_first_option():
    wire = build_solicit(CLIENT_ID, XID).encode()
    assert wire[:4] == b"\x01\x12\x34\x56"
    assert wire[4:8] == b"\x00\x01\x00\x10"
    assert wire[8:24] == CLIENT_ID


def test_solicit_options_sorted_and_complete():
    msg = build_solicit(CLIENT_ID, XID)
    assert msg.codes == sorted(msg.codes)
    assert set(msg.codes) == {
        OptionCode.CLIENT_ID,
        OptionCode.ELAPSED_TIME,
        OptionCode.RAPID_COMMIT,
        OptionCode.ORO,
        OptionCode.IA_NA,
        OptionCode.IA_PD,
    }


def test_solicit_requested_options_in_order():
    msg = Message.decode(build_solicit(CLIENT_ID, XID).encode())
    assert msg.get(OptionCode.ORO) == [
        OptionCode.DOMAIN_NAME_SERVERS,
        OptionCode.DOMAIN_SEARCH_LIST,
        OptionCode.CLIENT_FQDN,
        OptionCode.SNTP_SERVERS,
        OptionCode.RAPID_COMMIT,
        OptionCode.IA_PD,
        OptionCode.IA_PREFIX,
    ]


def test_solicit_identity_associations():
    msg = Message.decode(build_solicit(CLIENT_ID, XID).encode())
    iana = msg.get(OptionCode.IA_NA)
    assert (iana.id, iana.t1, iana.t2) == (123, 3600, 7200)
    ia_addr = iana.get(OptionCode.IA_ADDR)
    assert ia_addr.addr == ipaddress.IPv6Address("::")
    assert (ia_addr.preferred_life, ia_addr.valid_life) == (3000, 5000)
    iapd = msg.get(OptionCode.IA_PD)
    assert iapd.id == 456
    assert iapd.get(OptionCode.IA_PREFIX).prefix_len == 80


def test_request_from_full_advertise():
    request = build_request(_advertise(), CLIENT_ID, XID)
    assert request.msg_type == MessageType.REQUEST
    assert request.xid == XID
    assert request.get(OptionCode.SERVER_ID) == b"\x00\x01server"
    assert request.get(OptionCode.CLIENT_ID) == CLIENT_ID
    ia_addr = request.get(OptionCode.IA_NA).get(OptionCode.IA_ADDR)
    assert ia_addr.addr == ADDRESS
    assert (ia_addr.preferred_life, ia_addr.valid_life) == (3000, 5000)
    iapd = request.get(OptionCode.IA_PD)
    assert iapd.id == 456
    assert iapd.get(OptionCode.IA_PREFIX) == IAPrefix(300, 400, 64, PREFIX)


def test_request_from_empty_advertise_warns(caplog):
    advertise = _advertise(with_server=False, with_address=False, with_prefix=False)
    with caplog.at_level(logging.WARNING):
        request = build_request(advertise, CLIENT_ID, XID)
    assert request.codes == [OptionCode.CLIENT_ID, OptionCode.ELAPSED_TIME]
    assert "Server ID was not found" in caplog.text
    assert "No IP was found in Advertise message" in caplog.text


def test_confirm_wire():
    assert build_confirm(XID).encode() == b"\x04\x12\x34\x56"


def test_unknown_option_kept_raw():
    msg = Message(MessageType.REPLY, XID)
    msg.insert(200, b"abc")
    decoded = Message.decode(msg.encode())
    assert decoded.get(200) == b"abc"
    assert decoded.encode() == msg.encode()


def test_decode_too_short():
    with pytest.raises(Dhcpv6Error):
        Message.decode(b"\x07\x00")


def test_decode_option_past_end():
    with pytest.raises(Dhcpv6Error):
        Message.decode(b"\x07\x12\x34\x56\x00\x01\x00\x10abc")


def test_encode_rejects_bad_xid():
    with pytest.raises(ValueError):
        Message(MessageType.SOLICIT, b"\x01").encode()


@pytest.mark.asyncio
async def test_negotiate_advertise_then_reply():
    sent = []
    replies = [_advertise().encode(), _advertise(kind=MessageType.REPLY).encode()]

    async def receive():
        return replies.pop(0)

    ia_addr, ia_prefix = await _negotiate(sent.append, receive)
    assert ia_addr.addr == ADDRESS
    assert ia_prefix.prefix_ip == PREFIX
    assert ia_prefix.prefix_len == 64
    assert [Message.decode(data).msg_type for data in sent] == [
        MessageType.SOLICIT,
        MessageType.REQUEST,
        MessageType.CONFIRM,
    ]


@pytest.mark.asyncio
async def test_negotiate_ignores_other_types_and_reply_without_address():
    sent = []
    replies = [
        Message(MessageType.RECONFIGURE, XID).encode(),
        _advertise(with_address=False, with_prefix=False, kind=MessageType.REPLY).encode(),
    ]

    async def receive():
        return replies.pop(0)

    ia_addr, ia_prefix = await _negotiate(sent.append, receive)
    assert ia_addr is None
    assert ia_prefix is None
    assert len(sent) == 2


@pytest.mark.asyncio
async def test_get_interface_index_loopback():
    assert await get_interface_index("lo") == socket.if_nametoindex("lo")


@pytest.mark.asyncio
async def test_get_interface_index_missing():
    with pytest.raises(OSError, match="Error getting index"):
        await get_interface_index("nosuchif0")