# feosutils

Utilities for bringing up a small Linux host that runs virtual machines. The
package collects the pieces an init process needs once the kernel has handed
over control:

- **`feosutils.logger`**: an asyncio log sink for the `logging` module that
  keeps a bounded history of recent entries, writes lines to standard output
  (with the level coloured on a terminal), and lets any number of readers
  replay the history and then follow new entries.
- **`feosutils.hostinfo`**: CPU count, uptime, memory totals and network
  interfaces (with PCI and MAC addresses from sysfs), plus `is_running_on_vm`,
  which checks the DMI product name and vendor for a cloud hypervisor.
- **`feosutils.packets`**: builds and parses the Ethernet/IPv6/ICMPv6 frames
  used for router and neighbour solicitation, computes ICMPv6 checksums, and
  derives EUI-64 link-local addresses from MAC addresses.
- **`feosutils.dhcpv6`**: encodes and decodes DHCPv6 messages and runs a
  client that leases an address and a delegated prefix, then assigns the
  address to the interface as a /128.
- **`feosutils.netlink`**: a small rtnetlink client to look up links, bring
  them up, and add IPv6 addresses and routes.
- **`feosutils.network`**: brings up `eth0` end to end (IPv6 forwarding,
  router discovery, DHCPv6, default gateway and an unreachable route for the
  delegated prefix), and creates SR-IOV virtual functions bound to `vfio-pci`.

Most of the network and sysfs work needs Linux and root privileges. The
message encoders and parsers, the frame builders and the PCI address helpers
work anywhere.

## Installation

```
pip install feosutils
```

Nothing outside the standard library is required.

## Logging

```python
import asyncio
import logging

from feosutils.logger import Builder, Level

async def main():
    handle = Builder().filter_level(Level.DEBUG).max_history(500).init(logging.getLogger())
    logging.getLogger("boot").info("starting")

    reader = await handle.new_reader()
    entry = await reader.next()
    print(entry)  # [2024-01-01 12:00:00.000 INFO  boot] starting

    handle.close()

asyncio.run(main())
```

`Builder.init()` must be called while an event loop is running; it installs
the sink on the given logger (the root logger by default) and raises
`RuntimeError` if one is already installed there. Messages above the filter
level are dropped, and when the internal queue is full a message is dropped
with a warning on standard error.

A `LogReader` first returns the history that existed when it was created,
then new entries as they arrive; it can also be used with `async for`. If a
reader falls too far behind, its stream ends. `LogHandle.close()` detaches
the sink and stops the logger: open readers end once drained, and
`new_reader()` raises `LoggerClosedError`.

## Host information

```python
import asyncio
from feosutils.hostinfo import check_info, is_running_on_vm

host = check_info()
print(host.num_cores, host.ram_total, [iface.name for iface in host.net_interfaces])
print(asyncio.run(is_running_on_vm()))
```

Parts of `check_info()` that cannot be read are logged and left at zero.

## Frames and DHCPv6 messages

```python
from feosutils.packets import build_router_solicitation, mac_to_ipv6_link_local
from feosutils.dhcpv6 import CLIENT_ID, XID, Message, build_solicit

print(mac_to_ipv6_link_local(bytes.fromhex("020000000001")))  # fe80::ff:fe00:1
frame = build_router_solicitation("02:00:00:00:00:01")     # 128 bytes

wire = build_solicit(CLIENT_ID, XID).encode()
print(Message.decode(wire).msg_type)
```

## Network bring-up

```python
import asyncio
from feosutils.network import configure_network_devices, configure_sriov

prefix = asyncio.run(configure_network_devices())
if prefix is not None:
    address, length = prefix
    print(f"delegated prefix {address}/{length}")

asyncio.run(configure_sriov(4))
```

Both raise `RuntimeError` naming the step that failed. Failures after the
link is up (DHCPv6, routes, gateway) are logged and do not raise.

The PCI helpers can be used on their own:

```python
from feosutils.network import parse_pci_address, nth_next_pci_address, format_pci_address

base = parse_pci_address("0000:3b:00.0")
print(format_pci_address(nth_next_pci_address(base, 2)))  # 0000:3b:00.2
```

## What this package does not do

It is a library only: it has no command-line program, no daemon or API
server, and does not manage virtual machines or images. It does not mount
filesystems, move the root filesystem, configure hugepages, or reboot or
power off the host.

## Tests

```
pip install -e .[test]
pytest
```