import select
import socket

import pytest

from captiveap.dhcp import DhcpServer, Lease, find_option

GATEWAY = "192.168.4.1"
MASK = "255.255.255.0"
COOKIE = bytes([99, 130, 83, 99])


def mac(n):
    return bytes([0x02, 0, 0, 0, 0, n])


def packet(msg_type, client_mac, requested=None, pad=True):
    head = bytearray(236)
    head[0] = 1
    head[1] = 1
    head[2] = 6
    head[28:34] = client_mac
    options = bytearray([53, 1, msg_type])
    if requested is not None:
        options += bytes([50, 4]) + bytes(requested)
    options.append(255)
    data = bytes(head) + COOKIE + bytes(options)
    if pad:
        data += bytes(max(0, 300 - len(data)))
    return data


class Clock:
    def __init__(self, now=0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def server(clock):
    return DhcpServer(GATEWAY, MASK, clock)


def opts(reply):
    return reply[240:]


def test_find_option_returns_data():
    assert find_option(bytes([53, 1, 1, 255]), 53) == b"\x01"


def test_find_option_stops_at_end():
    assert find_option(bytes([255, 53, 1, 1]), 53) is None


def test_find_option_missing():
    assert find_option(bytes([12, 2, 65, 66, 255]), 53) is None


def test_short_packet_ignored(server):
    assert server.handle_packet(bytes(242)) is None


def test_packet_without_message_type_ignored(server):
    data = bytes(236) + COOKIE + bytes([255]) + bytes(60)
    assert server.handle_packet(data) is None


def test_discover_offers_first_address(server):
    reply = server.handle_packet(packet(1, mac(1)))
    assert reply[0] == 2
    assert reply[16:20] == bytes([192, 168, 4, 16])
    assert reply[236:240] == COOKIE
    assert find_option(opts(reply), 53) == b"\x02"
    assert reply[-1] == 255


def test_reply_options(server):
    reply = server.handle_packet(packet(1, mac(1)))
    gw = bytes([192, 168, 4, 1])
    assert find_option(opts(reply), 54) == gw
    assert find_option(opts(reply), 1) == bytes([255, 255, 255, 0])
    assert find_option(opts(reply), 3) == gw
    assert find_option(opts(reply), 6) == gw
    assert find_option(opts(reply), 51) == (24 * 60 * 60).to_bytes(4, "big")


def test_request_acknowledged_and_leased(server):
    reply = server.handle_packet(packet(3, mac(1), [192, 168, 4, 16]))
    assert find_option(opts(reply), 53) == b"\x05"
    assert reply[16:20] == bytes([192, 168, 4, 16])
    assert server.leases[0].mac == mac(1)


def test_lease_expiry_recorded(server, clock):
    clock.now = 5000
    server.handle_packet(packet(3, mac(1), [192, 168, 4, 16]))
    assert server.leases[0].expiry == (5000 + 24 * 60 * 60 * 1000) >> 16


def test_discover_does_not_reserve(server):
    server.handle_packet(packet(1, mac(1)))
    assert all(lease.free for lease in server.leases)


def test_second_client_gets_next_address(server):
    server.handle_packet(packet(3, mac(1), [192, 168, 4, 16]))
    reply = server.handle_packet(packet(1, mac(2)))
    assert reply[19] == 17


def test_known_client_gets_its_address(server):
    server.handle_packet(packet(3, mac(1), [192, 168, 4, 18]))
    reply = server.handle_packet(packet(1, mac(1)))
    assert reply[19] == 18


def test_request_for_taken_address_ignored(server):
    server.handle_packet(packet(3, mac(1), [192, 168, 4, 16]))
    assert server.handle_packet(packet(3, mac(2), [192, 168, 4, 16])) is None
    assert server.leases[0].mac == mac(1)


def test_request_same_client_renews(server):
    server.handle_packet(packet(3, mac(1), [192, 168, 4, 16]))
    reply = server.handle_packet(packet(3, mac(1), [192, 168, 4, 16]))
    assert find_option(opts(reply), 53) == b"\x05"


def test_request_wrong_subnet_ignored(server):
    assert server.handle_packet(packet(3, mac(1), [10, 0, 0, 16])) is None


@pytest.mark.parametrize("last", [15, 24, 200])
def test_request_out_of_pool_ignored(server, last):
    assert server.handle_packet(packet(3, mac(1), [192, 168, 4, last])) is None


def test_request_without_requested_ip_ignored(server):
    assert server.handle_packet(packet(3, mac(1))) is None


def test_other_message_types_ignored(server):
    assert server.handle_packet(packet(7, mac(1))) is None


def test_pool_exhausted(server):
    for n in range(8):
        assert server.handle_packet(packet(3, mac(n + 1), [192, 168, 4, 16 + n])) is not None
    assert server.handle_packet(packet(1, mac(20))) is None


def test_expired_lease_reused(server, clock):
    clock.now = 1000
    for n in range(8):
        server.handle_packet(packet(3, mac(n + 1), [192, 168, 4, 16 + n]))
    clock.now = 1000 + 24 * 60 * 60 * 1000 + 200000
    reply = server.handle_packet(packet(1, mac(20)))
    assert reply[19] == 16
    assert server.leases[0].free


def test_lease_expired_check():
    lease = Lease(mac(1), expiry=1)
    assert not lease.expired(0)
    assert lease.expired(0x30000)


def test_poll_requires_start(server):
    with pytest.raises(RuntimeError):
        server.poll()


def test_socket_round_trip(server):
    receiver = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    receiver.bind(("127.0.0.1", 0))
    client = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        server.start("127.0.0.1", 0)
        server.reply_address = receiver.getsockname()
        assert server.poll() == 0
        client.sendto(packet(1, mac(1)), server.address)
        select.select([server.sock], [], [], 2)
        assert server.poll() == 1
        ready = select.select([receiver], [], [], 2)[0]
        assert ready
        data, _ = receiver.recvfrom(2048)
        assert data[16:20] == bytes([192, 168, 4, 16])
    finally:
        server.close()
        receiver.close()
        client.close()
    assert server.sock is None