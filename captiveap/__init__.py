"""Captive-portal access point: a DHCP server, a catch-all DNS server and an LED web page."""

__version__ = "0.1.0"
__all__ = ["access_point", "dhcp", "dns"]