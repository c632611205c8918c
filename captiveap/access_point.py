"""An HTTP server that toggles an LED, alongside the DHCP and DNS servers of a captive portal."""

from __future__ import annotations

import argparse
import ipaddress
import logging
import re
import select
import socket
import time
from dataclasses import dataclass, field
from typing import Optional, Sequence, Union

from captiveap.dhcp import PORT_DHCP_SERVER, DhcpServer
from captiveap.dns import PORT_DNS_SERVER, DnsServer

log = logging.getLogger(__name__)

TCP_PORT = 80
POLL_TIME_S = 5
HEADERS_SIZE = 128
RESULT_SIZE = 256
RECV_SIZE = 4096
LED_TEST = "/ledtest"
HTTP_GET = b"GET"
HTTP_RESPONSE_HEADERS = (
    "HTTP/1.1 {status} OK\nContent-Length: {length}\n"
    "Content-Type: text/html; charset=utf-8\nConnection: close\n\n"
)
LED_TEST_BODY = (
    '<html><body><h1>Hello from Pico W.</h1><p>Led is {state}</p>'
    '<p><a href="?led={param}">Turn led {action}</a></body></html>'
)
HTTP_RESPONSE_REDIRECT = "HTTP/1.1 302 Redirect\nLocation: http://{gateway}" + LED_TEST + "\n\n"

_LED_PARAM = re.compile(r"led=\s*([+-]?\d+)")

AddressLike = Union[str, ipaddress.IPv4Address]


class ResponseTooLarge(ValueError):
    """The generated headers or body do not fit the response buffers."""


@dataclass
class Led:
    """The state of the LED the web page switches."""

    on: bool = False


def render_content(path: str, params: Optional[str], led: Led) -> str:
    """Return the page for ``path``, or an empty string if there is none.

    A ``led=<n>`` parameter switches the LED on for a non-zero ``n``
    and off for zero.
    """
    if not path.startswith(LED_TEST):
        return ""
    state = led.on
    if params is not None:
        match = _LED_PARAM.match(params)
        if match:
            state = int(match.group(1)) != 0
            led.on = state
    if state:
        return LED_TEST_BODY.format(state="ON", param=0, action="OFF")
    return LED_TEST_BODY.format(state="OFF", param=1, action="ON")


def _parse_request(data: bytes) -> Optional[tuple]:
    raw = bytes(data[: HEADERS_SIZE - 1]).split(b"\0", 1)[0]
    if not raw.startswith(HTTP_GET):
        return None
    text = raw[len(HTTP_GET) + 1 :].decode("latin-1")
    question = text.find("?")
    if question < 0:
        return text, None
    space = text.find(" ")
    if space < 0:
        return text[:question], text[question + 1 :]
    if space > question:
        return text[:question], text[question + 1 : space]
    return text[:space], text[question + 1 :]


def build_response(request: bytes, led: Led, gateway: AddressLike) -> Optional[bytes]:
    """Build the full reply to a request, or return None if it is not a GET.

    Paths without a page are redirected to the LED page on ``gateway``.
    Raises :class:`ResponseTooLarge` if the reply does not fit its buffers.
    """
    parsed = _parse_request(request)
    if parsed is None:
        return None
    path, params = parsed
    body = render_content(path, params, led).encode("utf-8")
    log.debug("Request: %s?%s", path, params)
    if len(body) > RESULT_SIZE - 1:
        raise ResponseTooLarge(f"Too much result data {len(body)}")
    if body:
        head = HTTP_RESPONSE_HEADERS.format(status=200, length=len(body)).encode("ascii")
        if len(head) > HEADERS_SIZE - 1:
            raise ResponseTooLarge(f"Too much header data {len(head)}")
    else:
        head = HTTP_RESPONSE_REDIRECT.format(gateway=ipaddress.IPv4Address(gateway)).encode("ascii")
        log.debug("Sending redirect %s", head)
    return head + body


@dataclass
class _Client:
    sock: socket.socket
    accepted_at: float
    outgoing: bytearray = field(default_factory=bytearray)
    responded: bool = False


class AccessPoint:
    """Runs the web page together with DHCP and DNS servers on the gateway address."""

    def __init__(
        self,
        gateway: AddressLike = "192.168.4.1",
        netmask: AddressLike = "255.255.255.0",
        http_port: int = TCP_PORT,
        dhcp_port: int = PORT_DHCP_SERVER,
        dns_port: int = PORT_DNS_SERVER,
    ) -> None:
        self.gateway = ipaddress.IPv4Address(gateway)
        self.netmask = ipaddress.IPv4Address(netmask)
        self.http_port = http_port
        self.dhcp_port = dhcp_port
        self.dns_port = dns_port
        self.led = Led()
        self.complete = False
        self.dhcp: Optional[DhcpServer] = None
        self.dns: Optional[DnsServer] = None
        self._listener: Optional[socket.socket] = None
        self._clients: dict = {}

    def start(self) -> None:
        """Start the DHCP, DNS and HTTP servers."""
        self.complete = False
        try:
            self.dhcp = DhcpServer(self.gateway, self.netmask)
            self.dhcp.start(port=self.dhcp_port)
            self.dns = DnsServer(self.gateway)
            self.dns.start(port=self.dns_port)
            log.info("starting server on port %d", self.http_port)
            listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            try:
                listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                listener.bind(("0.0.0.0", self.http_port))
                listener.listen(1)
            except OSError:
                listener.close()
                raise
            listener.setblocking(False)
            self._listener = listener
        except OSError:
            self.stop()
            raise

    @property
    def http_address(self) -> tuple:
        if self._listener is None:
            raise RuntimeError("access point is not started")
        return self._listener.getsockname()

    def serve(self, timeout: Optional[float] = None) -> None:
        """Handle traffic until :meth:`stop` is called or ``timeout`` seconds pass."""
        if self._listener is None or self.dhcp is None or self.dns is None:
            raise RuntimeError("access point is not started")
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self.complete and self._listener is not None:
            now = time.monotonic()
            if deadline is not None and now >= deadline:
                break
            wait = 1.0 if deadline is None else min(1.0, deadline - now)
            self._expire_clients(now)
            readers = [self._listener, self.dhcp.sock, self.dns.sock, *self._clients]
            writers = [sock for sock, client in self._clients.items() if client.outgoing]
            readable, writable, _ = select.select(readers, writers, [], wait)
            for sock in readable:
                if sock is self._listener:
                    self._accept()
                elif sock is self.dhcp.sock:
                    self.dhcp.poll()
                elif sock is self.dns.sock:
                    self.dns.poll()
                elif sock in self._clients:
                    self._receive(self._clients[sock])
            for sock in writable:
                if sock in self._clients:
                    self._send(self._clients[sock])

    def _accept(self) -> None:
        try:
            sock, _ = self._listener.accept()
        except (BlockingIOError, InterruptedError):
            return
        except OSError as exc:
            log.warning("failure in accept: %s", exc)
            return
        log.debug("client connected")
        sock.setblocking(False)
        self._clients[sock] = _Client(sock, time.monotonic())

    def _expire_clients(self, now: float) -> None:
        for client in list(self._clients.values()):
            if now - client.accepted_at >= POLL_TIME_S:
                log.debug("closing idle client")
                self._close_client(client)

    def _receive(self, client: _Client) -> None:
        try:
            data = client.sock.recv(RECV_SIZE)
        except (BlockingIOError, InterruptedError):
            return
        except OSError as exc:
            log.debug("client error %s", exc)
            self._close_client(client)
            return
        if not data:
            log.debug("connection closed")
            self._close_client(client)
            return
        try:
            reply = build_response(data, self.led, self.gateway)
        except ResponseTooLarge as exc:
            log.warning("%s", exc)
            self._close_client(client)
            return
        if reply is not None:
            client.outgoing += reply
            client.responded = True

    def _send(self, client: _Client) -> None:
        try:
            sent = client.sock.send(client.outgoing)
        except (BlockingIOError, InterruptedError):
            return
        except OSError as exc:
            log.debug("failed to write data %s", exc)
            self._close_client(client)
            return
        del client.outgoing[:sent]
        if client.responded and not client.outgoing:
            log.debug("all done")
            self._close_client(client)

    def _close_client(self, client: _Client) -> None:
        self._clients.pop(client.sock, None)
        client.sock.close()

    def stop(self) -> None:
        """Stop serving and close every socket."""
        self.complete = True
        for client in list(self._clients.values()):
            self._close_client(client)
        if self._listener is not None:
            self._listener.close()
            self._listener = None
        if self.dns is not None:
            self.dns.close()
        if self.dhcp is not None:
            self.dhcp.close()

    def __enter__(self) -> "AccessPoint":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the access point servers until interrupted or the duration ends."""
    parser = argparse.ArgumentParser(description="Captive portal with DHCP, DNS and an LED page.")
    parser.add_argument("--gateway", default="192.168.4.1")
    parser.add_argument("--netmask", default="255.255.255.0")
    parser.add_argument("--http-port", type=int, default=TCP_PORT)
    parser.add_argument("--dhcp-port", type=int, default=PORT_DHCP_SERVER)
    parser.add_argument("--dns-port", type=int, default=PORT_DNS_SERVER)
    parser.add_argument("--duration", type=float, default=None, help="seconds to run")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(message)s")
    ap = AccessPoint(args.gateway, args.netmask, args.http_port, args.dhcp_port, args.dns_port)
    try:
        ap.start()
    except (OSError, ValueError) as exc:
        print(f"failed to open server: {exc}")
        return 1
    print(f"Try connecting to http://{ap.gateway}{LED_TEST} (press Ctrl+C to stop)")
    try:
        ap.serve(args.duration)
    except KeyboardInterrupt:
        pass
    finally:
        ap.stop()
    return 0