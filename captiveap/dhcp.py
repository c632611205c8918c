"""A minimal DHCP server that hands out a small pool of addresses on one /24."""

from __future__ import annotations

import ipaddress
import logging
import select
import socket
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Union

log = logging.getLogger(__name__)

DHCPDISCOVER = 1
DHCPOFFER = 2
DHCPREQUEST = 3
DHCPDECLINE = 4
DHCPACK = 5
DHCPNACK = 6
DHCPRELEASE = 7
DHCPINFORM = 8

OPT_PAD = 0
OPT_SUBNET_MASK = 1
OPT_ROUTER = 3
OPT_DNS = 6
OPT_HOST_NAME = 12
OPT_REQUESTED_IP = 50
OPT_IP_LEASE_TIME = 51
OPT_MSG_TYPE = 53
OPT_SERVER_ID = 54
OPT_PARAM_REQUEST_LIST = 55
OPT_MAX_MSG_SIZE = 57
OPT_VENDOR_CLASS_ID = 60
OPT_CLIENT_ID = 61
OPT_END = 255

PORT_DHCP_SERVER = 67
PORT_DHCP_CLIENT = 68

DEFAULT_LEASE_TIME_S = 24 * 60 * 60
BASE_IP = 16
MAX_IP = 8
MAC_LEN = 6

MIN_SIZE = 240 + 3
MSG_SIZE = 548
_OPTIONS_OFFSET = 236
_COOKIE_LEN = 4
_YIADDR = 16
_CHADDR = 28
_OPTION_SCAN_LIMIT = 308
_EMPTY_MAC = bytes(MAC_LEN)

AddressLike = Union[str, ipaddress.IPv4Address]


def _default_clock() -> int:
    return int(time.monotonic() * 1000) & 0xFFFFFFFF


def find_option(options: bytes, code: int) -> Optional[bytes]:
    """Return the data of the first option with ``code``, or None.

    ``options`` starts just after the magic cookie. Scanning stops at the
    end option or after 308 bytes.
    """
    i = 0
    limit = min(_OPTION_SCAN_LIMIT, len(options))
    while i < limit and options[i] != OPT_END:
        length = options[i + 1] if i + 1 < len(options) else 0
        if options[i] == code:
            return bytes(options[i + 2 : i + 2 + length])
        i += 2 + length
    return None


@dataclass
class Lease:
    """One slot in the address pool; ``expiry`` is the tick count shifted right by 16."""

    mac: bytes = _EMPTY_MAC
    expiry: int = 0

    @property
    def free(self) -> bool:
        return self.mac == _EMPTY_MAC

    def expired(self, now_ms: int) -> bool:
        deadline = ((self.expiry << 16) | 0xFFFF) & 0xFFFFFFFF
        return (deadline - now_ms) & 0xFFFFFFFF >= 0x80000000


@dataclass
class DhcpServer:
    """Answers DISCOVER and REQUEST messages from a pool of eight addresses."""

    ip: AddressLike
    netmask: AddressLike
    clock: Callable[[], int] = _default_clock
    leases: list = field(default_factory=lambda: [Lease() for _ in range(MAX_IP)])
    reply_address: tuple = ("255.255.255.255", PORT_DHCP_CLIENT)
    sock: Optional[socket.socket] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        self.ip = ipaddress.IPv4Address(self.ip)
        self.netmask = ipaddress.IPv4Address(self.netmask)

    def _now(self) -> int:
        return int(self.clock()) & 0xFFFFFFFF

    def _pick_offer(self, mac: bytes) -> Optional[int]:
        chosen: Optional[int] = None
        now = self._now()
        for index, lease in enumerate(self.leases):
            if lease.mac == mac:
                return index
            if chosen is None:
                if lease.free:
                    chosen = index
                if lease.expired(now):
                    lease.mac = _EMPTY_MAC
                    chosen = index
        return chosen

    def _accept_request(self, options: bytes, mac: bytes) -> Optional[int]:
        requested = find_option(options, OPT_REQUESTED_IP)
        if requested is None or len(requested) < 4:
            return None
        if requested[:3] != self.ip.packed[:3]:
            return None
        index = (requested[3] - BASE_IP) & 0xFF
        if index >= MAX_IP:
            return None
        lease = self.leases[index]
        if lease.mac == mac:
            pass
        elif lease.free:
            lease.mac = mac
        else:
            return None
        lease.expiry = ((self._now() + DEFAULT_LEASE_TIME_S * 1000) >> 16) & 0xFFFF
        return index

    def handle_packet(self, data: bytes) -> Optional[bytes]:
        """Build the reply to one client message, or return None to ignore it."""
        if len(data) < MIN_SIZE:
            return None
        msg = bytearray(data[:MSG_SIZE])
        msg.extend(bytes(MSG_SIZE - len(msg)))

        msg[0] = DHCPOFFER
        msg[_YIADDR : _YIADDR + 4] = self.ip.packed
        mac = bytes(msg[_CHADDR : _CHADDR + MAC_LEN])

        opt_start = _OPTIONS_OFFSET + _COOKIE_LEN
        options = bytes(msg[opt_start:])
        msg_type = find_option(options, OPT_MSG_TYPE)
        if not msg_type:
            return None

        if msg_type[0] == DHCPDISCOVER:
            index = self._pick_offer(mac)
            if index is None:
                return None
            reply_type = DHCPOFFER
        elif msg_type[0] == DHCPREQUEST:
            index = self._accept_request(options, mac)
            if index is None:
                return None
            reply_type = DHCPACK
        else:
            return None

        msg[_YIADDR + 3] = (BASE_IP + index) & 0xFF
        if reply_type == DHCPACK:
            log.info(
                "DHCPS: client connected: MAC=%s IP=%s",
                ":".join(f"{b:02x}" for b in mac),
                ".".join(str(b) for b in msg[_YIADDR : _YIADDR + 4]),
            )

        ip = self.ip.packed
        out = bytearray([OPT_MSG_TYPE, 1, reply_type])
        for code, value in (
            (OPT_SERVER_ID, ip),
            (OPT_SUBNET_MASK, self.netmask.packed),
            (OPT_ROUTER, ip),
            (OPT_DNS, ip),
            (OPT_IP_LEASE_TIME, DEFAULT_LEASE_TIME_S.to_bytes(4, "big")),
        ):
            out += bytes([code, len(value)]) + value
        out.append(OPT_END)
        return bytes(msg[:opt_start]) + bytes(out)

    def start(self, host: str = "0.0.0.0", port: int = PORT_DHCP_SERVER) -> None:
        """Open and bind the UDP socket."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            sock.bind((host, port))
        except OSError:
            sock.close()
            raise
        sock.setblocking(False)
        self.sock = sock

    @property
    def address(self) -> tuple:
        if self.sock is None:
            raise RuntimeError("server is not started")
        return self.sock.getsockname()

    def poll(self) -> int:
        """Handle every datagram waiting on the socket; return how many were read."""
        if self.sock is None:
            raise RuntimeError("server is not started")
        handled = 0
        while select.select([self.sock], [], [], 0)[0]:
            try:
                data, _ = self.sock.recvfrom(0xFFFF)
            except BlockingIOError:
                break
            handled += 1
            reply = self.handle_packet(data)
            if reply is None:
                continue
            try:
                self.sock.sendto(reply[:0xFFFF], self.reply_address)
            except OSError as exc:
                log.warning("DHCP reply failed: %s", exc)
        return handled

    def close(self) -> None:
        """Close the socket if it is open."""
        if self.sock is not None:
            self.sock.close()
            self.sock = None

    def __enter__(self) -> "DhcpServer":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()