"""ICE TCP candidate types (RFC 6544, section 4.5)."""

from enum import IntEnum


class TCPType(IntEnum):
    UNSPECIFIED = 0
    ACTIVE = 1
    PASSIVE = 2
    SIMULTANEOUS_OPEN = 3

    def __str__(self) -> str:
        return _NAMES[self]


_NAMES = {
    TCPType.UNSPECIFIED: "",
    TCPType.ACTIVE: "active",
    TCPType.PASSIVE: "passive",
    TCPType.SIMULTANEOUS_OPEN: "so",
}

_BY_NAME = {name: kind for kind, name in _NAMES.items() if name}


def new_tcp_type(value: str) -> TCPType:
    """Return the TCP type named by ``value``, case-insensitively."""
    return _BY_NAME.get(value.lower(), TCPType.UNSPECIFIED)