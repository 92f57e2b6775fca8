"""A logical packet connection carried over a shared UDP socket."""

from __future__ import annotations

import ipaddress
import struct
import threading
from collections import deque
from typing import TYPE_CHECKING

from .util import UDPAddr

if TYPE_CHECKING:
    from .udp_mux import UDPMuxDefault

RECEIVE_MTU = 8192
MAX_ADDR_SIZE = 512


def encode_udp_addr(addr: UDPAddr) -> bytes:
    """Serialise ``addr`` as ``| ip len | ip text | port | zone |`` (little endian)."""
    ip_text = b"" if addr.ip is None else str(addr.ip).encode("ascii")
    encoded = (
        struct.pack("<H", len(ip_text))
        + ip_text
        + struct.pack("<H", addr.port & 0xFFFF)
        + addr.zone.encode("utf-8")
    )
    if len(encoded) > MAX_ADDR_SIZE:
        raise ValueError("short buffer: address does not fit")
    return encoded


def decode_udp_addr(buf: bytes) -> UDPAddr:
    """Parse an address written by :func:`encode_udp_addr`."""
    buf = bytes(buf)
    if len(buf) < 2:
        raise ValueError("short buffer")
    (ip_len,) = struct.unpack_from("<H", buf)
    offset = 2
    if offset + ip_len + 2 > len(buf):
        raise ValueError("short buffer")
    ip_text = buf[offset:offset + ip_len].decode("ascii")
    ip = ipaddress.ip_address(ip_text) if ip_text else None
    offset += ip_len
    (port,) = struct.unpack_from("<H", buf, offset)
    zone = buf[offset + 2:].decode("utf-8")
    return UDPAddr(ip, port, zone)


class UDPMuxedConn:
    """Packet connection for one ufrag, fed by a UDP mux."""

    def __init__(self, mux: UDPMuxDefault, key: str, local_addr: UDPAddr) -> None:
        self._mux = mux
        self.key = key
        self._local_addr = local_addr
        self._addresses: list[str] = []
        self._lock = threading.Lock()
        self._packets: deque[tuple[bytes, bytes]] = deque()
        self._ready = threading.Condition()
        self._closed = False

    def __enter__(self) -> UDPMuxedConn:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def read_from(self) -> tuple[bytes, UDPAddr]:
        """Block until a packet arrives and return it with its sender.

        Pending packets are still delivered after close; then EOFError is raised.
        """
        with self._ready:
            while not self._packets and not self._closed:
                self._ready.wait()
            if not self._packets:
                raise EOFError("connection closed")
            data, encoded = self._packets.popleft()
        return data, decode_udp_addr(encoded)

    def write_to(self, data: bytes, addr: UDPAddr) -> int:
        """Send ``data`` to ``addr`` through the mux, registering the address."""
        if self.is_closed():
            raise BrokenPipeError("connection closed")
        address = str(addr)
        if not self.contains_address(address):
            self.add_address(address)
        return self._mux.write_to(data, addr)

    def local_addr(self) -> UDPAddr:
        return self._local_addr

    def close(self) -> None:
        with self._ready:
            if self._closed:
                return
            self._closed = True
            self._ready.notify_all()
        self._mux.remove_conn_by_ufrag(self.key)

    def is_closed(self) -> bool:
        with self._ready:
            return self._closed

    def get_addresses(self) -> list[str]:
        with self._lock:
            return list(self._addresses)

    def add_address(self, addr: str) -> None:
        with self._lock:
            self._addresses.append(addr)
        self._mux.register_conn_for_address(self, addr)

    def remove_address(self, addr: str) -> None:
        with self._lock:
            self._addresses = [a for a in self._addresses if a != addr]

    def contains_address(self, addr: str) -> bool:
        with self._lock:
            return addr in self._addresses

    def write_packet(self, data: bytes, addr: UDPAddr) -> None:
        """Queue an incoming packet from ``addr`` for :meth:`read_from`."""
        if len(data) > RECEIVE_MTU:
            raise ValueError("short buffer: packet too large")
        encoded = encode_udp_addr(addr)
        with self._ready:
            if self._closed:
                raise BrokenPipeError("connection closed")
            self._packets.append((bytes(data), encoded))
            self._ready.notify()