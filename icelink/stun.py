"""Minimal STUN message handling (RFC 5389) as needed for ICE connectivity."""

from __future__ import annotations

import ipaddress
import secrets
import struct
from dataclasses import dataclass, field
from typing import Union

MAGIC_COOKIE = 0x2112A442
HEADER_SIZE = 20
TRANSACTION_ID_SIZE = 12

ATTR_USERNAME = 0x0006
ATTR_XOR_MAPPED_ADDRESS = 0x0020
ATTR_USE_CANDIDATE = 0x0025

BINDING_REQUEST = 0x0001
BINDING_SUCCESS = 0x0101

_FAMILY_IPV4 = 0x01
_FAMILY_IPV6 = 0x02

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class StunError(ValueError):
    """Raised when a STUN message is malformed or lacks an attribute."""


def is_message(data: bytes) -> bool:
    """Return True if ``data`` looks like a STUN message."""
    if len(data) < HEADER_SIZE:
        return False
    return int.from_bytes(bytes(data[4:8]), "big") == MAGIC_COOKIE


def _padded(length: int) -> int:
    return length + (-length % 4)


def _random_transaction_id() -> bytes:
    return secrets.token_bytes(TRANSACTION_ID_SIZE)


@dataclass
class Message:
    """A STUN message: type, transaction id and ordered attributes."""

    msg_type: int = 0
    transaction_id: bytes = field(default_factory=_random_transaction_id)
    attributes: list[tuple[int, bytes]] = field(default_factory=list)
    raw: bytes = b""

    def add(self, attr_type: int, value: bytes | None) -> None:
        """Append an attribute and refresh the raw encoding."""
        self.attributes.append((attr_type, bytes(value or b"")))
        self.encode()

    def get(self, attr_type: int) -> bytes:
        """Return the value of the first attribute of ``attr_type``."""
        for kind, value in self.attributes:
            if kind == attr_type:
                return value
        raise StunError(f"attribute 0x{attr_type:04x} not found")

    def contains(self, attr_type: int) -> bool:
        return any(kind == attr_type for kind, _ in self.attributes)

    def encode(self) -> bytes:
        """Serialise the message, store it in ``raw`` and return it."""
        if len(self.transaction_id) != TRANSACTION_ID_SIZE:
            raise StunError("transaction id must be 12 bytes")
        body = b"".join(
            struct.pack(">HH", kind, len(value)) + value + b"\x00" * (-len(value) % 4)
            for kind, value in self.attributes
        )
        header = struct.pack(">HHI", self.msg_type, len(body), MAGIC_COOKIE)
        self.raw = header + self.transaction_id + body
        return self.raw

    def decode(self, raw: bytes) -> Message:
        """Parse ``raw`` into this message and return it."""
        raw = bytes(raw)
        if len(raw) < HEADER_SIZE:
            raise StunError("unexpected EOF: not enough bytes to read header")
        msg_type, length, cookie = struct.unpack_from(">HHI", raw)
        if cookie != MAGIC_COOKIE:
            raise StunError(f"0x{cookie:08x} is invalid magic cookie")
        end = HEADER_SIZE + length
        if len(raw) < end:
            raise StunError(f"buffer length {len(raw)} is less than {end}")
        attributes = []
        offset = HEADER_SIZE
        while offset < end:
            if end - offset < 4:
                raise StunError("unexpected EOF: not enough bytes to read attribute header")
            kind, size = struct.unpack_from(">HH", raw, offset)
            offset += 4
            if offset + _padded(size) > end:
                raise StunError(f"attribute 0x{kind:04x} is truncated")
            attributes.append((kind, raw[offset:offset + size]))
            offset += _padded(size)
        self.msg_type = msg_type
        self.transaction_id = raw[8:HEADER_SIZE]
        self.attributes = attributes
        self.raw = raw[:end]
        return self


def build_binding_request(*args) -> Message:
    """Build a binding request, applying each argument's ``add_to``."""
    message = Message(msg_type=BINDING_REQUEST)
    for setter in args:
        setter.add_to(message)
    message.encode()
    return message


@dataclass
class XORMappedAddress:
    """The XOR-MAPPED-ADDRESS attribute."""

    ip: IPAddress
    port: int = 0

    def __post_init__(self) -> None:
        if not isinstance(self.ip, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
            self.ip = ipaddress.ip_address(self.ip)

    @staticmethod
    def _xor_key(message: Message) -> bytes:
        return MAGIC_COOKIE.to_bytes(4, "big") + message.transaction_id

    def add_to(self, message: Message) -> None:
        family = _FAMILY_IPV4 if self.ip.version == 4 else _FAMILY_IPV6
        key = self._xor_key(message)
        packed = bytes(a ^ b for a, b in zip(self.ip.packed, key))
        value = struct.pack(">BBH", 0, family, self.port ^ (MAGIC_COOKIE >> 16)) + packed
        message.add(ATTR_XOR_MAPPED_ADDRESS, value)

    @classmethod
    def from_message(cls, message: Message) -> XORMappedAddress:
        value = message.get(ATTR_XOR_MAPPED_ADDRESS)
        if len(value) < 4:
            raise StunError("XOR-MAPPED-ADDRESS is too short")
        family = value[1]
        port = struct.unpack(">H", value[2:4])[0] ^ (MAGIC_COOKIE >> 16)
        if family == _FAMILY_IPV4:
            size = 4
        elif family == _FAMILY_IPV6:
            size = 16
        else:
            raise StunError(f"bad address family 0x{family:02x}")
        if len(value) < 4 + size:
            raise StunError("XOR-MAPPED-ADDRESS is truncated")
        key = cls._xor_key(message)
        packed = bytes(a ^ b for a, b in zip(value[4:4 + size], key))
        return cls(ipaddress.ip_address(packed), port)


class UseCandidateAttr:
    """The USE-CANDIDATE attribute, which carries no value."""

    def add_to(self, message: Message) -> None:
        message.add(ATTR_USE_CANDIDATE, None)

    def is_set(self, message: Message) -> bool:
        return message.contains(ATTR_USE_CANDIDATE)


def use_candidate() -> UseCandidateAttr:
    return UseCandidateAttr()