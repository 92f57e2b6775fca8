"""A UDP mux that also learns server reflexive addresses from STUN servers."""

from __future__ import annotations

import errno
import logging
import socket
import threading
import time
from dataclasses import dataclass, field
from typing import Optional

from .stun import (
    ATTR_XOR_MAPPED_ADDRESS,
    Message,
    StunError,
    XORMappedAddress,
    build_binding_request,
    is_message,
)
from .udp_mux import UDPMuxDefault
from .udp_muxed_conn import UDPMuxedConn
from .util import UDPAddr

DEFAULT_XOR_MAPPED_ADDR_CACHE_TTL = 25.0


class XORMappedAddrTimeoutError(TimeoutError):
    """Raised when no STUN server reply arrives before the deadline."""

    def __init__(self, message: str = "timeout while waiting for XORMappedAddr") -> None:
        super().__init__(message)


class NoXorAddrMappingError(LookupError):
    """Raised when no mapped address is known for a STUN server."""

    def __init__(self, message: str = "no address mapping") -> None:
        super().__init__(message)


@dataclass
class _XORMapped:
    expires_at: float
    waiter: threading.Event = field(default_factory=threading.Event)
    addr: Optional[XORMappedAddress] = None

    def close_waiters(self) -> None:
        self.waiter.set()

    def pending(self) -> bool:
        return self.addr is None

    def expired(self) -> bool:
        return self.expires_at < time.monotonic()

    def set_addr(self, addr: XORMappedAddress) -> None:
        self.addr = addr
        self.close_waiters()


class UniversalUDPMuxDefault(UDPMuxDefault):
    """UDP mux for host and server reflexive candidates sharing one socket.

    Replies from STUN servers are inspected for XOR-MAPPED-ADDRESS before the
    packet is routed as usual.
    """

    def __init__(
        self,
        udp_conn: socket.socket,
        logger: Optional[logging.Logger] = None,
        xor_mapped_addr_cache_ttl: float = 0.0,
    ) -> None:
        self.xor_mapped_addr_cache_ttl = xor_mapped_addr_cache_ttl or DEFAULT_XOR_MAPPED_ADDR_CACHE_TTL
        self._xor_lock = threading.Lock()
        self._xor_mapped: dict[str, _XORMapped] = {}
        super().__init__(udp_conn, logger)

    def get_relayed_addr(self, turn_addr: UDPAddr, deadline: float) -> UDPAddr:
        """Relayed candidates cannot be obtained through this mux."""
        raise OSError(errno.EOPNOTSUPP, f"relayed addresses via {turn_addr} are not supported by this mux")

    def get_conn_for_url(self, ufrag: str, url, addr: UDPAddr) -> UDPMuxedConn:
        """Return a connection unique to both ``ufrag`` and the server ``url``."""
        return self.get_conn(f"{ufrag}{url}", addr)

    def get_xor_mapped_addr(self, server_addr: UDPAddr, deadline: float) -> XORMappedAddress:
        """Return the mapped address reported by the STUN server at ``server_addr``.

        A fresh cached answer is returned at once; otherwise a binding request is
        sent and the call waits up to ``deadline`` seconds for the reply.
        """
        key = str(server_addr)
        with self._xor_lock:
            entry = self._xor_mapped.get(key)
            if entry is not None:
                if entry.expired():
                    entry.close_waiters()
                    del self._xor_mapped[key]
                elif not entry.pending():
                    return entry.addr

        waiter = self._send_stun(server_addr)
        if not waiter.wait(deadline):
            raise XORMappedAddrTimeoutError()
        with self._xor_lock:
            entry = self._xor_mapped.get(key)
            if entry is None or entry.addr is None:
                raise NoXorAddrMappingError()
            return entry.addr

    def _send_stun(self, server_addr: UDPAddr) -> threading.Event:
        with self._xor_lock:
            key = str(server_addr)
            entry = self._xor_mapped.get(key)
            if entry is None:
                entry = _XORMapped(expires_at=time.monotonic() + self.xor_mapped_addr_cache_ttl)
                self._xor_mapped[key] = entry
            request = build_binding_request()
            self.write_to(request.raw, server_addr)
            return entry.waiter

    def _is_xor_mapped_response(self, message: Message, stun_addr: str) -> bool:
        with self._xor_lock:
            return stun_addr in self._xor_mapped and message.contains(ATTR_XOR_MAPPED_ADDRESS)

    def _handle_xor_mapped_response(self, stun_addr: str, message: Message) -> None:
        with self._xor_lock:
            entry = self._xor_mapped.get(stun_addr)
            if entry is None:
                raise NoXorAddrMappingError()
            entry.set_addr(XORMappedAddress.from_message(message))

    def _read_packet(self) -> Optional[tuple[bytes, UDPAddr]]:
        packet = super()._read_packet()
        if packet is None:
            return None
        data, addr = packet
        if is_message(data):
            try:
                message = Message().decode(data)
            except StunError as exc:
                self._log.warning("Failed to handle decode ICE from %s: %s", addr, exc)
                return packet
            if self._is_xor_mapped_response(message, str(addr)):
                try:
                    self._handle_xor_mapped_response(str(addr), message)
                except (StunError, NoXorAddrMappingError) as exc:
                    self._log.debug("failed to get XOR-MAPPED-ADDRESS response: %s", exc)
        return packet