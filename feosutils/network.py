"""Bring up the uplink interface and set up SR-IOV virtual functions."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import os
import re
from pathlib import Path, PurePath

from feosutils.dhcpv6 import run_dhcpv6_client
from feosutils.netlink import Netlink, RouteType, add_ipv6_route, set_ipv6_gateway
from feosutils.packets import is_dhcpv6_needed, send_neigh_solicitation

log = logging.getLogger(__name__)

INTERFACE_NAME = "eth0"
SYS_CLASS_NET = Path("/sys/class/net")
PCI_DEVICES_DIR = Path("/sys/bus/pci/devices")
VFIO_BIND_PATH = Path("/sys/bus/pci/drivers/vfio-pci/bind")
IPV6_FORWARDING_PATH = Path("/proc/sys/net/ipv6/conf/all/forwarding")

PciAddress = tuple[int, int, int, int]

_HEX = re.compile(r"\+?[0-9a-fA-F]+")
_DIGITS = re.compile(r"\+?[0-9]+")
_FUNCTIONS_PER_BUS = 32 * 8
_FUNCTIONS_PER_DOMAIN = 256 * _FUNCTIONS_PER_BUS


def _hex_field(text: str, limit: int, what: str) -> int:
    if not _HEX.fullmatch(text):
        raise ValueError(f"Invalid {what}")
    value = int(text, 16)
    if value > limit:
        raise ValueError(f"Invalid {what}")
    return value


def parse_pci_address(address: str) -> PciAddress:
    """Split ``dddd:bb:ss.f`` into (domain, bus, slot, function)."""
    parts = re.split(r"[:. ]", address)
    if len(parts) != 4:
        raise ValueError("Invalid PCI address format")
    return (
        _hex_field(parts[0], 0xFFFF, "domain"),
        _hex_field(parts[1], 0xFF, "bus"),
        _hex_field(parts[2], 0xFF, "slot"),
        _hex_field(parts[3], 0xFF, "function"),
    )


def nth_next_pci_address(address: PciAddress, n: int) -> PciAddress:
    """The PCI function ``n`` places after ``address``."""
    domain, bus, slot, function = address
    total = (
        domain * _FUNCTIONS_PER_DOMAIN + bus * _FUNCTIONS_PER_BUS + slot * 8 + function + n
    ) & 0xFFFFFFFF
    remaining = total % _FUNCTIONS_PER_DOMAIN
    return (
        (total // _FUNCTIONS_PER_DOMAIN) & 0xFFFF,
        remaining // _FUNCTIONS_PER_BUS,
        (remaining % _FUNCTIONS_PER_BUS) // 8,
        remaining % 8,
    )


def format_pci_address(address: PciAddress) -> str:
    domain, bus, slot, function = address
    return f"{domain:04x}:{bus:02x}:{slot:02x}.{function}"


def format_mac(data: bytes) -> str:
    return ":".join(f"{byte:02x}" for byte in data)


def _write_existing(path: Path, data: bytes) -> None:
    fd = os.open(path, os.O_WRONLY)
    try:
        os.write(fd, data)
    finally:
        os.close(fd)


async def get_device_information(pci: str, field: str) -> str:
    """Read a sysfs attribute of a PCI device, stripped of whitespace."""
    path = PCI_DEVICES_DIR / pci / field
    text = await asyncio.to_thread(path.read_text)
    return text.strip()


async def bind_vf_to_vfio(pci_address: str) -> None:
    """Hand a PCI function over to the vfio-pci driver."""
    override = PCI_DEVICES_DIR / pci_address / "driver_override"
    await asyncio.to_thread(_write_existing, override, b"vfio-pci")
    await asyncio.to_thread(_write_existing, VFIO_BIND_PATH, pci_address.encode())


async def configure_sriov(num_vfs: int) -> None:
    """Create ``num_vfs`` virtual functions on the uplink and bind them to vfio-pci.

    Raises RuntimeError describing the step that failed.
    """
    base_path = SYS_CLASS_NET / INTERFACE_NAME / "device"

    autoprobe_path = base_path / "sriov_drivers_autoprobe"
    log.info("Disabling sriov_drivers_autoprobe at %s", autoprobe_path)
    try:
        fd = os.open(autoprobe_path, os.O_WRONLY)
    except OSError as err:
        raise RuntimeError(f"Failed to open sriov_drivers_autoprobe: {err}") from err
    try:
        os.write(fd, b"0\n")
    except OSError as err:
        raise RuntimeError(f"Failed to disable autoprobe: {err}") from err
    finally:
        os.close(fd)

    try:
        fd = os.open(base_path / "sriov_numvfs", os.O_WRONLY)
    except OSError as err:
        raise RuntimeError(str(err)) from err
    try:
        log.info("Resetting VFs to 0 for %s", INTERFACE_NAME)
        try:
            os.write(fd, b"0\n")
        except OSError as err:
            raise RuntimeError(f"Failed to write 0 to sriov_numvfs: {err}") from err
        await asyncio.sleep(1)

        log.info("Creating %d sriov virtual functions for %s", num_vfs, INTERFACE_NAME)
        try:
            os.write(fd, f"{num_vfs}\n".encode())
        except OSError as err:
            raise RuntimeError(f"Failed to write to sriov_numvfs: {err}") from err
        await asyncio.sleep(2)
    finally:
        os.close(fd)

    try:
        device_path = os.readlink(base_path)
    except OSError as err:
        raise RuntimeError(str(err)) from err
    pci_address = PurePath(device_path).name
    if pci_address in ("", ".."):
        raise RuntimeError("No PCI address found")
    log.info("Found PCI address of %s: %s", INTERFACE_NAME, pci_address)

    try:
        offset_text = await get_device_information(pci_address, "sriov_offset")
    except OSError as err:
        raise RuntimeError(str(err)) from err
    if not _DIGITS.fullmatch(offset_text):
        raise RuntimeError(f"invalid sriov_offset: {offset_text!r}")
    sriov_offset = int(offset_text)

    try:
        base_pci_address = parse_pci_address(pci_address)
    except ValueError as err:
        raise RuntimeError(str(err)) from err

    virtual_funcs = [
        format_pci_address(nth_next_pci_address(base_pci_address, index + sriov_offset))
        for index in range(num_vfs)
    ]
    for vf_pci in virtual_funcs:
        try:
            await bind_vf_to_vfio(vf_pci)
        except OSError as err:
            raise RuntimeError(f"Failed to bind VF {vf_pci} to vfio-pci: {err}") from err


def enable_ipv6_forwarding() -> None:
    """Turn on IPv6 forwarding for all interfaces."""
    with open(IPV6_FORWARDING_PATH, "w", encoding="ascii") as handle:
        handle.write("1")


async def configure_network_devices() -> tuple[ipaddress.IPv6Address, int] | None:
    """Bring the uplink up, run DHCPv6 if a router answers and install routes.

    Returns the delegated prefix and its length, if one was received.
    Raises RuntimeError when the uplink cannot be brought up.
    """
    ignore_ra_flag = True  # until router advertisements carry the M/O flags
    interface_name = INTERFACE_NAME
    delegated_prefix = None

    with Netlink() as netlink:
        try:
            enable_ipv6_forwarding()
        except OSError as err:
            raise RuntimeError(f"Failed to enable ipv6 forwarding: {err}") from err

        try:
            link = netlink.get_link(interface_name)
        except OSError as err:
            raise RuntimeError(f"{interface_name} not found: {err}") from err

        try:
            netlink.set_link_up(link)
        except OSError as err:
            raise RuntimeError(f"{interface_name} can not be set up: {err}") from err

        log.info("%s:", interface_name)
        if link.address is not None:
            log.info("  mac: %s", format_mac(link.address))
        if link.carrier is not None:
            log.info("  carrier: %s", link.carrier)
        if link.mtu is not None:
            log.info("  mtu: %s", link.mtu)

        ipv6_gateway = await asyncio.to_thread(is_dhcpv6_needed, interface_name, ignore_ra_flag)
        if ipv6_gateway is None:
            return None

        await asyncio.sleep(4)
        try:
            result = await run_dhcpv6_client(interface_name)
        except Exception as err:
            log.warning("Error running DHCPv6 client: %s", err)
            return None

        await asyncio.to_thread(
            send_neigh_solicitation, interface_name, ipv6_gateway, result.address
        )
        if result.prefix is not None:
            prefix = result.prefix.prefix
            length = result.prefix.prefix_length
            log.info("Received delegated prefix %s with length %d", prefix, length)
            delegated_prefix = (prefix, length)
            try:
                add_ipv6_route(
                    netlink, INTERFACE_NAME, prefix, length, None, 1024, RouteType.UNREACHABLE
                )
            except OSError as err:
                log.error("Failed to add unreachable IPv6 route: %s", err)
        else:
            log.info("No prefix delegation received.")

        log.info("Setting IPv6 gateway to %s on interface %s", ipv6_gateway, interface_name)
        try:
            set_ipv6_gateway(netlink, interface_name, ipv6_gateway)
        except OSError as err:
            log.warning("Failed to set IPv6 gateway: %s", err)

    return delegated_prefix