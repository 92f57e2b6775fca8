import ipaddress
import socket
import threading
from collections import namedtuple
from unittest.mock import patch

import pytest

from icelink.stun import BINDING_SUCCESS, Message, StunError, XORMappedAddress
from icelink.url import PortError
from icelink.util import (
    NetworkType,
    PortRangeError,
    TCPAddr,
    UDPAddr,
    addr_equal,
    create_addr,
    get_xor_mapped_addr,
    is_supported_ipv6,
    listen_udp_in_port_range,
    local_interfaces,
    parse_addr,
    stun_request,
)

ip = ipaddress.ip_address


def test_is_supported_ipv6():
    assert not is_supported_ipv6(bytes([0] * 12 + [1, 1, 1, 1]))
    assert not is_supported_ipv6(ip("fec0::2333"))
    assert not is_supported_ipv6(ip("fe80::2333"))
    assert not is_supported_ipv6(ip("ff02::2333"))
    assert is_supported_ipv6(ip("2001::1"))
    assert not is_supported_ipv6(ip("1.2.3.4"))


def test_create_addr():
    assert create_addr(NetworkType.UDP4, "127.0.0.1", 9000) == UDPAddr(ip("127.0.0.1"), 9000)
    assert create_addr(NetworkType.UDP6, "::1", 9000) == UDPAddr(ip("::1"), 9000)
    assert create_addr(NetworkType.TCP4, "127.0.0.1", 9000) == TCPAddr(ip("127.0.0.1"), 9000)
    assert create_addr(NetworkType.TCP6, "::1", 9000) == TCPAddr(ip("::1"), 9000)


def test_network_type_predicates():
    assert NetworkType.UDP4.is_udp() and NetworkType.UDP4.is_ipv4()
    assert NetworkType.TCP6.is_tcp() and NetworkType.TCP6.is_ipv6()
    assert not NetworkType.UDP6.is_tcp()
    assert str(NetworkType.TCP4) == "tcp4"


def test_addr_str():
    assert str(UDPAddr("1.2.3.4", 5)) == "1.2.3.4:5"
    assert str(UDPAddr("::1", 2500, "zone")) == "[::1%zone]:2500"
    assert str(UDPAddr(None, 7)) == ":7"


def test_parse_addr():
    assert parse_addr(UDPAddr("1.2.3.4", 5)) == (ip("1.2.3.4"), 5, NetworkType.UDP4)
    assert parse_addr(TCPAddr("1.2.3.4", 5)) == (ip("1.2.3.4"), 5, NetworkType.TCP4)
    with pytest.raises(TypeError):
        parse_addr(("1.2.3.4", 5))


def test_addr_equal():
    assert addr_equal(UDPAddr("1.2.3.4", 5), UDPAddr("::ffff:1.2.3.4", 5))
    assert not addr_equal(UDPAddr("1.2.3.4", 5), TCPAddr("1.2.3.4", 5))
    assert not addr_equal(UDPAddr("1.2.3.4", 5), UDPAddr("1.2.3.4", 6))
    assert not addr_equal(UDPAddr("1.2.3.4", 5), "1.2.3.4:5")


Addr = namedtuple("Addr", "family address netmask broadcast ptp")
Stats = namedtuple("Stats", "isup duplex speed mtu flags")

FAKE_ADDRS = {
    "lo": [Addr(socket.AF_INET, "127.0.0.1", "255.0.0.0", None, None)],
    "eth0": [
        Addr(socket.AF_UNSPEC, "00:00:5e:00:53:01", None, None, None),
        Addr(socket.AF_INET, "1.2.3.1", "255.255.255.0", None, None),
        Addr(socket.AF_INET6, "2001:db8::1", None, None, None),
        Addr(socket.AF_INET6, "fe80::1%eth0", None, None, None),
    ],
    "eth1": [Addr(socket.AF_INET, "10.0.0.5", "255.255.255.0", None, None)],
    "docker0": [Addr(socket.AF_INET, "172.17.0.1", "255.255.0.0", None, None)],
}
FAKE_STATS = {
    "lo": Stats(True, 0, 0, 65536, "up,loopback,running"),
    "eth0": Stats(True, 2, 1000, 1500, "up,broadcast,running,multicast"),
    "eth1": Stats(False, 0, 0, 1500, "broadcast,multicast"),
    "docker0": Stats(True, 0, 0, 1500, "up,broadcast,running"),
}


@pytest.fixture
def fake_interfaces():
    with patch("psutil.net_if_addrs", return_value=FAKE_ADDRS), patch(
        "psutil.net_if_stats", return_value=FAKE_STATS
    ):
        yield


def test_local_interfaces_ipv4(fake_interfaces):
    assert local_interfaces(None, None, [NetworkType.UDP4]) == [ip("1.2.3.1"), ip("172.17.0.1")]


def test_local_interfaces_ipv4_and_ipv6(fake_interfaces):
    found = local_interfaces(None, None, [NetworkType.UDP4, NetworkType.UDP6])
    assert found == [ip("1.2.3.1"), ip("2001:db8::1"), ip("172.17.0.1")]


def test_local_interfaces_interface_filter(fake_interfaces):
    seen = []

    def keep(name):
        seen.append(name)
        return "docker" not in name

    assert local_interfaces(keep, None, [NetworkType.UDP4]) == [ip("1.2.3.1")]
    assert seen == ["eth0", "docker0"]


def test_local_interfaces_ip_filter(fake_interfaces):
    assert local_interfaces(None, lambda addr: False, [NetworkType.UDP4]) == []


def test_local_interfaces_no_networks(fake_interfaces):
    assert local_interfaces(None, None, []) == []


def _free_port():
    probe = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    probe.bind(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()
    return port


def test_listen_without_restriction():
    sock = listen_udp_in_port_range(0, 0, UDPAddr("127.0.0.1", 0))
    try:
        assert sock.getsockname()[1] > 0
    finally:
        sock.close()


def test_listen_invalid_range():
    with pytest.raises(PortRangeError):
        listen_udp_in_port_range(4999, 5000, UDPAddr("127.0.0.1", 0))
    assert issubclass(PortRangeError, PortError)


def test_listen_single_port():
    port = _free_port()
    sock = listen_udp_in_port_range(port, port, UDPAddr("127.0.0.1", 0))
    try:
        assert sock.getsockname()[1] == port
    finally:
        sock.close()


def test_listen_busy_range():
    busy = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    busy.bind(("127.0.0.1", 0))
    port = busy.getsockname()[1]
    try:
        with pytest.raises(PortRangeError):
            listen_udp_in_port_range(port, port, UDPAddr("127.0.0.1", 0))
    finally:
        busy.close()


def test_stun_request_round_trip():
    sent = []

    def write(data):
        sent.append(data)
        return len(data)

    def read(size):
        request = Message().decode(sent[0])
        response = Message(msg_type=BINDING_SUCCESS, transaction_id=request.transaction_id)
        XORMappedAddress("213.141.156.236", 21254).add_to(response)
        assert size == 1280
        return response.raw

    response = stun_request(read, write)
    assert response.msg_type == BINDING_SUCCESS
    mapped = XORMappedAddress.from_message(response)
    assert mapped.ip == ip("213.141.156.236")
    assert mapped.port == 21254


@pytest.fixture
def udp_pair():
    server = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    server.bind(("127.0.0.1", 0))
    client = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    client.bind(("127.0.0.1", 0))
    yield server, client
    server.close()
    client.close()


def _serve_once(server, with_address=True):
    data, peer = server.recvfrom(2048)
    request = Message().decode(data)
    response = Message(msg_type=BINDING_SUCCESS, transaction_id=request.transaction_id)
    if with_address:
        XORMappedAddress(peer[0], peer[1]).add_to(response)
    server.sendto(response.encode(), peer)


def test_get_xor_mapped_addr(udp_pair):
    server, client = udp_pair
    worker = threading.Thread(target=_serve_once, args=(server,))
    worker.start()
    mapped = get_xor_mapped_addr(client, UDPAddr(*server.getsockname()), 2.0)
    worker.join()
    assert mapped.ip == ip("127.0.0.1")
    assert mapped.port == client.getsockname()[1]
    assert client.gettimeout() is None


def test_get_xor_mapped_addr_missing_attribute(udp_pair):
    server, client = udp_pair
    worker = threading.Thread(target=_serve_once, args=(server, False))
    worker.start()
    with pytest.raises(StunError, match="XOR-MAPPED-ADDRESS"):
        get_xor_mapped_addr(client, UDPAddr(*server.getsockname()), 2.0)
    worker.join()


def test_get_xor_mapped_addr_timeout(udp_pair):
    server, client = udp_pair
    with pytest.raises(TimeoutError):
        get_xor_mapped_addr(client, UDPAddr(*server.getsockname()), 0.05)
    assert client.gettimeout() is None