# captiveap

A captive-portal access point built on plain sockets and the standard
library only. It runs three small services on one gateway address.

- **DHCP** (`captiveap.dhcp.DhcpServer`) hands out a pool of eight
  addresses. The pool starts at `.16` in the gateway's /24. The service
  answers DISCOVER with OFFER and REQUEST with ACK. A 24-hour lease time is
  sent in each reply, with the server ID, router and DNS options all set to
  the gateway, plus the subnet mask. It broadcasts replies to
  `255.255.255.255:68`. It ignores requests it cannot honour; it does not
  send NAKs. `captiveap.dhcp.find_option` reads one option out of a
  message's options area. `DhcpServer.handle_packet(data)` builds a reply
  without any network I/O. Its `clock` argument takes a millisecond tick
  source, which lets lease expiry be controlled.
- **DNS** (`captiveap.dns.DnsServer`) answers every standard query with a
  single A record for the gateway, with a 60-second TTL. It ignores
  responses, non-standard opcodes and malformed names.
  `captiveap.dns.build_reply(query, ip)` builds the reply bytes without any
  network I/O.
- **HTTP** (`captiveap.access_point.AccessPoint`) serves `/ledtest`. This
  page shows the state of an in-memory LED (`Led`), and `?led=1` or
  `?led=0` switches it. Every other GET path gets a `302` redirect to
  `http://<gateway>/ledtest`. Each client connection is closed after its
  response is sent, or after 5 seconds.

`DhcpServer` and `DnsServer` each have `start(host, port)`, `poll()`,
`close()` and an `address` property, and each one closes itself when used
as a context manager. `AccessPoint` starts all three services when it is
used as a context manager and stops them on exit.

## Installation

```
pip install .
```

## Command line

```
captiveap
```

This starts the DHCP, DNS and HTTP services and runs until you press
Ctrl+C, or until `--duration` seconds have passed. The options are:

- `--gateway`, default `192.168.4.1`
- `--netmask`, default `255.255.255.0`
- `--http-port`, default 80
- `--dhcp-port`, default 67
- `--dns-port`, default 53
- `--duration`, in seconds; by default the command runs until interrupted

Binding the standard ports usually needs elevated privileges.

## Library use

```python
from captiveap.access_point import AccessPoint, Led, build_response, render_content

led = Led()
print(render_content("/ledtest", "led=1", led))   # turns the LED on
print(build_response(b"GET /other HTTP/1.1\r\n\r\n", led, "192.168.4.1"))

ap = AccessPoint("192.168.4.1", "255.255.255.0", 8080, 6767, 5353)
ap.start()
try:
    ap.serve(10.0)   # handle traffic for ten seconds
finally:
    ap.stop()
```

`build_response` returns `None` for requests that are not GET. It raises
`captiveap.access_point.ResponseTooLarge` if a reply would not fit its
fixed buffers.

## What it does not do

The package does not create a wireless network or configure any network
interface. It only runs the three services on sockets of the host it runs
on. The interface, and the gateway address assigned to it, must be set up
separately. The LED is a value in memory, not a device. Leases are held
in memory only and are lost when the process stops.

## Running the tests

```
pip install .[test]
pytest
```