"""Network helpers: addresses, interface discovery and STUN queries."""

from __future__ import annotations

import ipaddress
import logging
import random
import socket
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Iterable, Optional, Union

import psutil

from .stun import Message, StunError, XORMappedAddress, build_binding_request
from .url import PortError

logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

_MAX_MESSAGE_SIZE = 1280


class PortRangeError(PortError):
    """Raised when no port in the requested range can be used."""


class NetworkType(IntEnum):
    UDP4 = 1
    UDP6 = 2
    TCP4 = 3
    TCP6 = 4

    def __str__(self) -> str:
        return self.name.lower()

    def is_udp(self) -> bool:
        return self in (NetworkType.UDP4, NetworkType.UDP6)

    def is_tcp(self) -> bool:
        return self in (NetworkType.TCP4, NetworkType.TCP6)

    def is_ipv4(self) -> bool:
        return self in (NetworkType.UDP4, NetworkType.TCP4)

    def is_ipv6(self) -> bool:
        return self in (NetworkType.UDP6, NetworkType.TCP6)


def _normalize_ip(value) -> Optional[IPAddress]:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = bytes(value)
    ip = value if isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)) else ipaddress.ip_address(value)
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def _join_host_port(host: str, port: int) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


@dataclass(frozen=True)
class _IPPortAddr:
    ip: Optional[IPAddress] = None
    port: int = 0
    zone: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "ip", _normalize_ip(self.ip))

    @property
    def host(self) -> str:
        host = "" if self.ip is None else str(self.ip)
        return f"{host}%{self.zone}" if self.zone else host

    def __str__(self) -> str:
        return _join_host_port(self.host, self.port)


@dataclass(frozen=True)
class UDPAddr(_IPPortAddr):
    """A UDP endpoint address."""


@dataclass(frozen=True)
class TCPAddr(_IPPortAddr):
    """A TCP endpoint address."""


def is_supported_ipv6(ip) -> bool:
    """Return whether ``ip`` is an IPv6 address usable as an ICE candidate."""
    if isinstance(ip, (bytes, bytearray)):
        if len(ip) != 16:
            return False
        ip = ipaddress.IPv6Address(bytes(ip))
    elif not isinstance(ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        ip = ipaddress.ip_address(ip)
    if ip.version != 6:
        return False
    raw = ip.packed
    if not any(raw[:12]):
        return False  # IPv4-compatible IPv6
    if raw[0] == 0xFE and raw[1] & 0xC0 == 0xC0:
        return False  # site-local unicast
    if raw[0] == 0xFE and raw[1] & 0xC0 == 0x80:
        return False  # link-local unicast
    if raw[0] == 0xFF and raw[1] & 0x0F == 0x02:
        return False  # link-local multicast
    return True


def parse_addr(addr) -> tuple[Optional[IPAddress], int, NetworkType]:
    """Return ``(ip, port, network_type)`` for a UDP or TCP address."""
    if isinstance(addr, UDPAddr):
        return addr.ip, addr.port, NetworkType.UDP4
    if isinstance(addr, TCPAddr):
        return addr.ip, addr.port, NetworkType.TCP4
    raise TypeError(f"unsupported address type {type(addr).__name__}")


def create_addr(network: NetworkType, ip, port: int) -> Union[UDPAddr, TCPAddr]:
    if network.is_tcp():
        return TCPAddr(ip, port)
    return UDPAddr(ip, port)


def addr_equal(a, b) -> bool:
    try:
        a_ip, a_port, a_type = parse_addr(a)
        b_ip, b_port, b_type = parse_addr(b)
    except TypeError:
        return False
    return a_type == b_type and a_ip == b_ip and a_port == b_port


def stun_request(read: Callable[[int], bytes], write: Callable[[bytes], object]) -> Message:
    """Send a binding request via ``write`` and decode the reply from ``read``.

    ``read`` is called with the largest message size accepted.
    """
    request = build_binding_request()
    write(request.raw)
    data = read(_MAX_MESSAGE_SIZE)
    return Message().decode(data)


def _sockaddr(addr: _IPPortAddr) -> tuple:
    return (addr.host, addr.port)


def get_xor_mapped_addr(sock: socket.socket, server_addr: UDPAddr, deadline: float) -> XORMappedAddress:
    """Ask the STUN server at ``server_addr`` for this socket's mapped address.

    ``deadline`` is a timeout in seconds; zero or less waits indefinitely.
    """
    previous = sock.gettimeout()
    if deadline > 0:
        sock.settimeout(deadline)
    try:
        response = stun_request(
            lambda size: sock.recvfrom(size)[0],
            lambda data: sock.sendto(data, _sockaddr(server_addr)),
        )
    finally:
        if deadline > 0:
            sock.settimeout(previous)
    try:
        return XORMappedAddress.from_message(response)
    except StunError as exc:
        raise StunError(f"failed to get XOR-MAPPED-ADDRESS response: {exc}") from exc


def local_interfaces(
    interface_filter: Optional[Callable[[str], bool]] = None,
    ip_filter: Optional[Callable[[IPAddress], bool]] = None,
    network_types: Iterable[NetworkType] = (),
) -> list[IPAddress]:
    """Return usable local IP addresses of up, non-loopback interfaces."""
    network_types = list(network_types)
    want_ipv4 = any(t.is_ipv4() for t in network_types)
    want_ipv6 = any(t.is_ipv6() for t in network_types)

    stats = psutil.net_if_stats()
    result: list[IPAddress] = []
    for name, entries in psutil.net_if_addrs().items():
        state = stats.get(name)
        if state is None or not state.isup:
            continue
        if "loopback" in getattr(state, "flags", "").split(","):
            continue
        if interface_filter is not None and not interface_filter(name):
            continue
        for entry in entries:
            if entry.family not in (socket.AF_INET, socket.AF_INET6):
                continue
            try:
                ip = _normalize_ip(entry.address.split("%", 1)[0])
            except ValueError:
                continue
            if ip.is_loopback:
                continue
            if ip.version == 6:
                if not want_ipv6 or not is_supported_ipv6(ip):
                    continue
            elif not want_ipv4:
                continue
            if ip_filter is not None and not ip_filter(ip):
                continue
            result.append(ip)
    return result


def _bind_udp(addr: UDPAddr) -> socket.socket:
    family = socket.AF_INET6 if addr.ip is not None and addr.ip.version == 6 else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_DGRAM)
    try:
        sock.bind(_sockaddr(addr))
    except OSError:
        sock.close()
        raise
    return sock


def listen_udp_in_port_range(port_max: int, port_min: int, laddr: UDPAddr) -> socket.socket:
    """Bind a UDP socket on ``laddr`` using a port within ``[port_min, port_max]``.

    A zero bound means the widest value; the search starts at a random port.
    """
    if laddr.port != 0 or (port_min == 0 and port_max == 0):
        return _bind_udp(laddr)
    low = port_min or 1
    high = port_max or 0xFFFF
    if low > high:
        raise PortRangeError()

    start = random.randint(low, high)
    current = start
    while True:
        candidate = UDPAddr(laddr.ip, current, laddr.zone)
        try:
            return _bind_udp(candidate)
        except OSError as exc:
            logger.debug("failed to listen %s: %s", candidate, exc)
        current = current + 1 if current < high else low
        if current == start:
            break
    raise PortRangeError()