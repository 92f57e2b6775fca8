"""Multiplexing of many ICE connections over a single UDP socket."""

from __future__ import annotations

import abc
import logging
import select
import socket
import threading
from typing import Optional

from .stun import ATTR_USERNAME, Message, StunError, is_message
from .udp_muxed_conn import RECEIVE_MTU, UDPMuxedConn
from .util import NetworkType, UDPAddr, local_interfaces

_POLL_INTERVAL = 0.1


class InvalidAddressError(ValueError):
    """Raised when a connection is requested for an address the mux does not serve."""

    def __init__(self, message: str = "invalid address") -> None:
        super().__init__(message)


class UDPMux(abc.ABC):
    """Lets multiple connections share UDP ports."""

    @abc.abstractmethod
    def get_conn(self, ufrag: str, addr: UDPAddr) -> UDPMuxedConn:
        """Return the connection for ``ufrag`` on ``addr``, creating it if needed."""

    @abc.abstractmethod
    def remove_conn_by_ufrag(self, ufrag: str) -> None:
        """Forget the connections for ``ufrag``."""

    @abc.abstractmethod
    def get_listen_addresses(self) -> list[UDPAddr]:
        """Return the addresses the mux listens on."""

    @abc.abstractmethod
    def close(self) -> None:
        """Close the mux; no more connections can be created."""

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def _to_udp_addr(sockaddr) -> UDPAddr:
    host, port = sockaddr[0], sockaddr[1]
    ip_text, _, zone = host.partition("%")
    return UDPAddr(ip_text or None, port, zone)


def _is_ipv6(addr) -> bool:
    return isinstance(addr, UDPAddr) and (addr.ip is None or addr.ip.version == 6)


class UDPMuxDefault(UDPMux):
    """Routes packets of one UDP socket to connections keyed by ufrag."""

    def __init__(self, udp_conn: socket.socket, logger: Optional[logging.Logger] = None) -> None:
        self._log = logger or logging.getLogger("icelink")
        self._sock = udp_conn
        self._local_addr = _to_udp_addr(udp_conn.getsockname())
        self._lock = threading.Lock()
        self._address_lock = threading.Lock()
        self._conns_ipv4: dict[str, UDPMuxedConn] = {}
        self._conns_ipv6: dict[str, UDPMuxedConn] = {}
        self._address_map: dict[str, UDPMuxedConn] = {}
        self._closed = threading.Event()
        self._unspecified_addrs = self._addresses_for_unspecified()
        self._worker = threading.Thread(target=self._run, name="udp-mux", daemon=True)
        self._worker.start()

    def _addresses_for_unspecified(self) -> list[UDPAddr]:
        ip = self._local_addr.ip
        if ip is None or not ip.is_unspecified:
            return []
        self._log.warning(
            "UDPMuxDefault should not listen on an unspecified address, "
            "use multi_udp_mux_from_port instead"
        )
        if ip.version == 4:
            networks = [NetworkType.UDP4]
        else:
            networks = [NetworkType.UDP4, NetworkType.UDP6]
        try:
            ips = local_interfaces(None, None, networks)
        except OSError as exc:
            self._log.error("failed to get local interfaces for unspecified addr: %s", exc)
            return []
        return [UDPAddr(local_ip, self._local_addr.port) for local_ip in ips]

    def local_addr(self) -> UDPAddr:
        return self._local_addr

    def get_listen_addresses(self) -> list[UDPAddr]:
        if self._unspecified_addrs:
            return list(self._unspecified_addrs)
        return [self._local_addr]

    def get_conn(self, ufrag: str, addr: UDPAddr) -> UDPMuxedConn:
        if not self._unspecified_addrs and str(self._local_addr) != str(addr):
            raise InvalidAddressError()
        conns_for_family = self._conns_ipv6 if _is_ipv6(addr) else self._conns_ipv4
        with self._lock:
            if self.is_closed():
                raise BrokenPipeError("mux closed")
            conns = self._conns_ipv6 if _is_ipv6(addr) else self._conns_ipv4
            existing = conns.get(ufrag)
            if existing is not None:
                return existing
            conn = self._create_muxed_conn(ufrag)
            conns[ufrag] = conn
        del conns_for_family
        return conn

    def remove_conn_by_ufrag(self, ufrag: str) -> None:
        with self._lock:
            removed = [
                conn
                for conn in (self._conns_ipv4.pop(ufrag, None), self._conns_ipv6.pop(ufrag, None))
                if conn is not None
            ]
        if not removed:
            return
        with self._address_lock:
            for conn in removed:
                for address in conn.get_addresses():
                    self._address_map.pop(address, None)

    def is_closed(self) -> bool:
        return self._closed.is_set()

    def close(self) -> None:
        with self._lock:
            if self._closed.is_set():
                return
            conns = [*self._conns_ipv4.values(), *self._conns_ipv6.values()]
            self._conns_ipv4 = {}
            self._conns_ipv6 = {}
            self._closed.set()
        for conn in conns:
            conn.close()
        self._sock.close()
        if threading.current_thread() is not self._worker:
            self._worker.join(timeout=1.0)

    def write_to(self, data: bytes, addr: UDPAddr) -> int:
        return self._sock.sendto(data, self._to_sockaddr(addr))

    def register_conn_for_address(self, conn: UDPMuxedConn, addr: str) -> None:
        if self.is_closed():
            return
        with self._address_lock:
            existing = self._address_map.get(addr)
            if existing is not None:
                existing.remove_address(addr)
            self._address_map[addr] = conn
        self._log.debug("Registered %s for %s", addr, conn.key)

    def _create_muxed_conn(self, key: str) -> UDPMuxedConn:
        return UDPMuxedConn(self, key, self._local_addr)

    def _lookup(self, ufrag: str, is_ipv6: bool) -> Optional[UDPMuxedConn]:
        conns = self._conns_ipv6 if is_ipv6 else self._conns_ipv4
        return conns.get(ufrag)

    def _to_sockaddr(self, addr: UDPAddr) -> tuple[str, int]:
        ip = addr.ip
        if self._sock.family == socket.AF_INET6:
            if ip is None:
                host = "::"
            elif ip.version == 4:
                host = f"::ffff:{ip}"
            else:
                host = str(ip)
        else:
            host = "0.0.0.0" if ip is None else str(ip)
        if addr.zone:
            host += "%" + addr.zone
        return host, addr.port

    def _read_packet(self) -> Optional[tuple[bytes, UDPAddr]]:
        """Wait briefly for a datagram; return None when none is ready."""
        ready, _, _ = select.select([self._sock], [], [], _POLL_INTERVAL)
        if not ready:
            return None
        data, sockaddr = self._sock.recvfrom(RECEIVE_MTU)
        return data, _to_udp_addr(sockaddr)

    def _run(self) -> None:
        try:
            while not self.is_closed():
                try:
                    packet = self._read_packet()
                except (BlockingIOError, TimeoutError):
                    continue
                except (OSError, ValueError) as exc:
                    if not self.is_closed():
                        self._log.error("could not read udp packet: %s", exc)
                    return
                if packet is None or self.is_closed():
                    continue
                self._dispatch(*packet)
        finally:
            self.close()

    def _dispatch(self, data: bytes, addr: UDPAddr) -> None:
        with self._address_lock:
            destination = self._address_map.get(str(addr))

        if destination is None and is_message(data):
            try:
                message = Message().decode(data)
            except StunError as exc:
                self._log.warning("Failed to handle decode ICE from %s: %s", addr, exc)
                return
            try:
                username = message.get(ATTR_USERNAME)
            except StunError:
                self._log.warning("No Username attribute in STUN message from %s", addr)
                return
            ufrag = username.decode("utf-8", errors="replace").split(":", 1)[0]
            with self._lock:
                destination = self._lookup(ufrag, _is_ipv6(addr))

        if destination is None:
            self._log.debug("dropping packet from %s", addr)
            return

        try:
            destination.write_packet(data, addr)
        except (ValueError, OSError) as exc:
            self._log.error("could not write packet: %s", exc)