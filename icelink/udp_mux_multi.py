"""Combining several UDP muxes behind one interface."""

from __future__ import annotations

import logging
import socket
from typing import Callable, Iterable, Optional

from .udp_mux import UDPMux, UDPMuxDefault
from .udp_muxed_conn import UDPMuxedConn
from .util import IPAddress, NetworkType, UDPAddr, local_interfaces


class NoUDPMuxAvailableError(LookupError):
    """Raised when no underlying mux listens on the requested address."""

    def __init__(self, message: str = "no UDP mux is available") -> None:
        super().__init__(message)


class MultiUDPMuxDefault(UDPMux):
    """Dispatches connection requests to the mux listening on the address."""

    def __init__(self, *muxes: UDPMux) -> None:
        self._muxes: list[UDPMux] = list(muxes)
        self._by_addr: dict[str, UDPMux] = {
            str(addr): mux for mux in self._muxes for addr in mux.get_listen_addresses()
        }

    @property
    def muxes(self) -> list[UDPMux]:
        return list(self._muxes)

    def get_conn(self, ufrag: str, addr: UDPAddr) -> UDPMuxedConn:
        mux = self._by_addr.get(str(addr))
        if mux is None:
            raise NoUDPMuxAvailableError()
        return mux.get_conn(ufrag, addr)

    def remove_conn_by_ufrag(self, ufrag: str) -> None:
        for mux in self._muxes:
            mux.remove_conn_by_ufrag(ufrag)

    def close(self) -> None:
        """Close every mux; the last error met, if any, is raised afterwards."""
        error: Optional[BaseException] = None
        for mux in self._muxes:
            try:
                mux.close()
            except Exception as exc:  # noqa: BLE001 - every mux must get closed
                error = exc
        if error is not None:
            raise error

    def get_listen_addresses(self) -> list[UDPAddr]:
        return [addr for mux in self._muxes for addr in mux.get_listen_addresses()]


def _listen(ip: IPAddress, port: int, read_buffer_size: int, write_buffer_size: int) -> socket.socket:
    family = socket.AF_INET6 if ip.version == 6 else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_DGRAM)
    try:
        sock.bind((str(ip), port))
    except OSError:
        sock.close()
        raise
    if read_buffer_size > 0:
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, read_buffer_size)
        except OSError:
            pass
    if write_buffer_size > 0:
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_SNDBUF, write_buffer_size)
        except OSError:
            pass
    return sock


def multi_udp_mux_from_port(
    port: int,
    interface_filter: Optional[Callable[[str], bool]] = None,
    ip_filter: Optional[Callable[[IPAddress], bool]] = None,
    networks: Optional[Iterable[NetworkType]] = None,
    read_buffer_size: int = 0,
    write_buffer_size: int = 0,
    logger: Optional[logging.Logger] = None,
) -> MultiUDPMuxDefault:
    """Listen on ``port`` on every usable local address and mux each socket.

    ``networks`` defaults to both UDP over IPv4 and UDP over IPv6.
    """
    if networks is None:
        networks = [NetworkType.UDP4, NetworkType.UDP6]
    ips = local_interfaces(interface_filter, ip_filter, list(networks))

    sockets: list[socket.socket] = []
    try:
        for ip in ips:
            sockets.append(_listen(ip, port, read_buffer_size, write_buffer_size))
    except OSError:
        for sock in sockets:
            sock.close()
        raise

    return MultiUDPMuxDefault(*(UDPMuxDefault(sock, logger) for sock in sockets))