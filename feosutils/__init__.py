"""Host utilities: logging, host information, ICMPv6 frames, DHCPv6, netlink, network and SR-IOV setup."""

__version__ = "0.5.0"

__all__ = ["dhcpv6", "hostinfo", "logger", "netlink", "network", "packets"]