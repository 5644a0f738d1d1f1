"""Host facts: CPU count, memory, uptime and network interfaces."""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import time
from dataclasses import dataclass, field
from pathlib import Path, PurePath

log = logging.getLogger(__name__)


@dataclass
class Interface:
    """A network interface with the addresses sysfs knows for it."""

    name: str = ""
    pci_address: str | None = None
    mac_address: str | None = None


@dataclass
class HostInfo:
    """A snapshot of basic host information."""

    uptime: int = 0
    ram_total: int = 0
    ram_unused: int = 0
    num_cores: int = 0
    net_interfaces: list[Interface] = field(default_factory=list)


def get_pci_address(interface_name: str, sysfs_root: str | os.PathLike = "/sys") -> str | None:
    """Return the PCI address behind an interface's device link, if any."""
    path = Path(sysfs_root, "class", "net", interface_name, "device")
    try:
        target = os.readlink(path)
    except OSError:
        return None
    name = PurePath(target).name
    if name in ("", ".."):
        return None
    return name


def get_mac_address(interface_name: str, sysfs_root: str | os.PathLike = "/sys") -> str | None:
    """Return the interface's MAC address as sysfs reports it, if readable."""
    path = Path(sysfs_root, "class", "net", interface_name, "address")
    try:
        return path.read_text(encoding="utf-8").strip()
    except (OSError, UnicodeDecodeError):
        return None


def get_interfaces(sysfs_root: str | os.PathLike = "/sys") -> list[Interface]:
    """List the host's network interfaces; raises OSError if they cannot be listed."""
    interfaces = []
    for index, name in socket.if_nameindex():
        log.info("found network interface: %s (index %d)", name, index)
        interfaces.append(
            Interface(
                name=name,
                pci_address=get_pci_address(name, sysfs_root),
                mac_address=get_mac_address(name, sysfs_root),
            )
        )
    return interfaces


def check_info() -> HostInfo:
    """Gather host information; parts that cannot be read are logged and left at zero."""
    host = HostInfo()

    try:
        cores = os.sysconf("SC_NPROCESSORS_ONLN")
    except (ValueError, OSError) as err:
        log.info("Error getting number of CPU cores: %s", err)
    else:
        if cores >= 0:
            host.num_cores = cores

    try:
        uptime = int(time.clock_gettime(time.CLOCK_BOOTTIME))
        page_size = os.sysconf("SC_PAGE_SIZE")
        ram_total = os.sysconf("SC_PHYS_PAGES") * page_size
        ram_unused = os.sysconf("SC_AVPHYS_PAGES") * page_size
    except (AttributeError, ValueError, OSError) as err:
        log.info("Error getting sysinfo: %s", err)
    else:
        host.uptime = uptime
        host.ram_total = ram_total
        host.ram_unused = ram_unused

    try:
        host.net_interfaces = get_interfaces()
    except OSError as err:
        log.info("Error getting network interfaces: %s", err)

    return host


async def is_running_on_vm(dmi_root: str | os.PathLike = "/sys/class/dmi/id") -> bool:
    """Tell whether DMI product name and vendor both name a cloud hypervisor.

    Raises OSError when either DMI file cannot be read.
    """
    match_count = 0
    for file_name in ("product_name", "sys_vendor"):
        contents = await asyncio.to_thread(Path(dmi_root, file_name).read_text)
        lowered = contents.lower()
        if "cloud" in lowered and "hypervisor" in lowered:
            match_count += 1
    return match_count == 2