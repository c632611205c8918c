"""A DNS server that answers every standard query with one fixed address."""

from __future__ import annotations

import ipaddress
import logging
import select
import socket
import struct
from typing import Optional, Union

log = logging.getLogger(__name__)

PORT_DNS_SERVER = 53
MAX_DNS_MSG_SIZE = 300
HEADER_SIZE = 12
MAX_LABEL_LEN = 63
MAX_QUESTION_LEN = 255
TTL_S = 60

_FLAGS_REPLY = 1 << 15 | 1 << 10 | 1 << 7

AddressLike = Union[str, ipaddress.IPv4Address]


def build_reply(query: bytes, ip: AddressLike) -> Optional[bytes]:
    """Answer the first question of ``query`` with ``ip``, or return None to ignore it."""
    msg = bytes(query[:MAX_DNS_MSG_SIZE])
    if len(msg) < HEADER_SIZE:
        return None
    _, flags, question_count = struct.unpack_from("!HHH", msg)

    if flags >> 15 & 1:
        return None
    if flags >> 11 & 0xF:
        return None
    if question_count < 1:
        return None

    ptr = HEADER_SIZE
    while ptr < len(msg):
        label_len = msg[ptr]
        ptr += 1
        if label_len == 0:
            break
        if label_len > MAX_LABEL_LEN:
            return None
        ptr += label_len

    if ptr - HEADER_SIZE > MAX_QUESTION_LEN:
        return None
    ptr += 4  # QTYPE and QCLASS

    packed_ip = ipaddress.IPv4Address(ip).packed
    answer = struct.pack("!BBHHIH", 0xC0, HEADER_SIZE, 1, 1, TTL_S, len(packed_ip)) + packed_ip

    buf = bytearray(msg)
    buf.extend(bytes(MAX_DNS_MSG_SIZE - len(buf)))
    buf[ptr : ptr + len(answer)] = answer
    struct.pack_into("!HHHHH", buf, 2, _FLAGS_REPLY, 1, 1, 0, 0)
    return bytes(buf[: ptr + len(answer)])


class DnsServer:
    """Serves :func:`build_reply` answers over UDP."""

    def __init__(self, ip: AddressLike) -> None:
        self.ip = ipaddress.IPv4Address(ip)
        self.sock: Optional[socket.socket] = None

    def start(self, host: str = "0.0.0.0", port: int = PORT_DNS_SERVER) -> None:
        """Open and bind the UDP socket."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, port))
        except OSError:
            sock.close()
            log.error("dns failed to bind to port %u", port)
            raise
        sock.setblocking(False)
        self.sock = sock

    @property
    def address(self) -> tuple:
        if self.sock is None:
            raise RuntimeError("server is not started")
        return self.sock.getsockname()

    def poll(self) -> int:
        """Answer every query waiting on the socket; return how many were read."""
        if self.sock is None:
            raise RuntimeError("server is not started")
        handled = 0
        while select.select([self.sock], [], [], 0)[0]:
            try:
                data, source = self.sock.recvfrom(0xFFFF)
            except BlockingIOError:
                break
            handled += 1
            reply = build_reply(data, self.ip)
            if reply is None:
                continue
            try:
                self.sock.sendto(reply[:0xFFFF], source)
            except OSError as exc:
                log.error("DNS: Failed to send message %s", exc)
        return handled

    def close(self) -> None:
        """Close the socket if it is open."""
        if self.sock is not None:
            self.sock.close()
            self.sock = None

    def __enter__(self) -> "DnsServer":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()