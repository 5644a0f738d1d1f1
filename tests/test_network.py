import os
from unittest.mock import AsyncMock, patch

import pytest

from feosutils import network
from feosutils.network import (
    bind_vf_to_vfio,
    configure_sriov,
    enable_ipv6_forwarding,
    format_mac,
    format_pci_address,
    get_device_information,
    nth_next_pci_address,
    parse_pci_address,
)


@pytest.mark.parametrize("address", ["0000:03:00.0", "0000:af:1f.7", "ffff:ff:ff.7"])
def test_parse_format_round_trip(address):
    assert format_pci_address(parse_pci_address(address)) == address


@pytest.mark.parametrize(
    "address, message",
    [
        ("0000:03:00", "Invalid PCI address format"),
        ("0000:03:00.0.1", "Invalid PCI address format"),
        ("zzzz:03:00.0", "Invalid domain"),
        ("0000:1ff:00.0", "Invalid bus"),
        ("0000:03:xx.0", "Invalid slot"),
        ("0000:03:00.", "Invalid function"),
    ],
)
def test_parse_invalid(address, message):
    with pytest.raises(ValueError, match=message):
        parse_pci_address(address)


def test_nth_next_zero_is_identity():
    address = parse_pci_address("0000:03:02.5")
    assert nth_next_pci_address(address, 0) == address


def test_nth_next_carries_into_slot_and_bus():
    assert nth_next_pci_address((0, 0, 0, 7), 1) == (0, 0, 1, 0)
    assert nth_next_pci_address((0, 0, 31, 7), 1) == (0, 1, 0, 0)


@pytest.mark.parametrize("m, n", [(1, 2), (7, 9), (250, 300)])
def test_nth_next_is_additive(m, n):
    base = parse_pci_address("0000:03:00.0")
    assert nth_next_pci_address(base, m + n) == nth_next_pci_address(
        nth_next_pci_address(base, m), n
    )


def test_format_pci_address():
    assert format_pci_address((0, 3, 0, 2)) == "0000:03:00.2"


def test_format_mac_round_trip():
    data = bytes([0x02, 0x00, 0x00, 0xAA, 0xBB, 0xCC])
    text = format_mac(data)
    assert text == "02:00:00:aa:bb:cc"
    assert bytes.fromhex(text.replace(":", "")) == data


@pytest.mark.asyncio
async def test_get_device_information(tmp_path):
    (tmp_path / "0000:03:00.0").mkdir()
    (tmp_path / "0000:03:00.0" / "sriov_offset").write_text("  2\n")
    with patch.object(network, "PCI_DEVICES_DIR", tmp_path):
        assert await get_device_information("0000:03:00.0", "sriov_offset") == "2"


@pytest.mark.asyncio
async def test_bind_vf_to_vfio(tmp_path):
    device = tmp_path / "devices" / "0000:03:00.2"
    device.mkdir(parents=True)
    (device / "driver_override").write_text("")
    bind = tmp_path / "bind"
    bind.write_text("")
    with patch.object(network, "PCI_DEVICES_DIR", tmp_path / "devices"), patch.object(
        network, "VFIO_BIND_PATH", bind
    ):
        result = await bind_vf_to_vfio("0000:03:00.2")
    assert result is None
    assert (device / "driver_override").read_text() == "vfio-pci"
    assert bind.read_text() == "0000:03:00.2"


@pytest.mark.asyncio
async def test_bind_vf_to_vfio_missing_device(tmp_path):
    with patch.object(network, "PCI_DEVICES_DIR", tmp_path):
        with pytest.raises(FileNotFoundError):
            await bind_vf_to_vfio("0000:03:00.2")


def test_enable_ipv6_forwarding(tmp_path):
    target = tmp_path / "forwarding"
    target.write_text("0")
    with patch.object(network, "IPV6_FORWARDING_PATH", target):
        result = enable_ipv6_forwarding()
    assert result is None
    assert target.read_text() == "1"


def _sriov_tree(tmp_path):
    devices = tmp_path / "devices"
    pf = devices / "0000:03:00.0"
    pf.mkdir(parents=True)
    (pf / "sriov_drivers_autoprobe").write_text("")
    (pf / "sriov_numvfs").write_text("")
    (pf / "sriov_offset").write_text("2\n")
    for vf in ("0000:03:00.2", "0000:03:00.3"):
        (devices / vf).mkdir()
        (devices / vf / "driver_override").write_text("")
    net = tmp_path / "net" / "eth0"
    net.mkdir(parents=True)
    os.symlink(pf, net / "device")
    bind = tmp_path / "bind"
    bind.write_text("")
    return devices, pf, bind


@pytest.mark.asyncio
async def test_configure_sriov(tmp_path):
    devices, pf, bind = _sriov_tree(tmp_path)
    with patch.object(network, "SYS_CLASS_NET", tmp_path / "net"), patch.object(
        network, "PCI_DEVICES_DIR", devices
    ), patch.object(network, "VFIO_BIND_PATH", bind), patch(
        "feosutils.network.asyncio.sleep", new=AsyncMock()
    ):
        result = await configure_sriov(2)
    assert result is None
    assert (pf / "sriov_drivers_autoprobe").read_text() == "0\n"
    assert (pf / "sriov_numvfs").read_text().endswith("2\n")
    for vf in ("0000:03:00.2", "0000:03:00.3"):
        assert (devices / vf / "driver_override").read_text() == "vfio-pci"


@pytest.mark.asyncio
async def test_configure_sriov_without_autoprobe(tmp_path):
    with patch.object(network, "SYS_CLASS_NET", tmp_path):
        with pytest.raises(RuntimeError, match="Failed to open sriov_drivers_autoprobe"):
            await configure_sriov(1)


@pytest.mark.asyncio
async def test_configure_sriov_missing_vf(tmp_path):
    devices, pf, bind = _sriov_tree(tmp_path)
    with patch.object(network, "SYS_CLASS_NET", tmp_path / "net"), patch.object(
        network, "PCI_DEVICES_DIR", devices
    ), patch.object(network, "VFIO_BIND_PATH", bind), patch(
        "feosutils.network.asyncio.sleep", new=AsyncMock()
    ):
        with pytest.raises(RuntimeError, match="Failed to bind VF"):
            await configure_sriov(3)