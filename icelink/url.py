"""STUN (RFC 7064) and TURN (RFC 7065) URLs."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import IntEnum
from urllib.parse import unquote_plus


class URLError(ValueError):
    """Raised when a STUN or TURN URL cannot be parsed."""

    default_message = "invalid url"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)


class SchemeTypeError(URLError):
    default_message = "unknown scheme type"


class HostError(URLError):
    default_message = "invalid hostname"


class PortError(URLError):
    default_message = "invalid port"


class STUNQueryError(URLError):
    default_message = "queries not supported in stun address"


class InvalidQueryError(URLError):
    default_message = "invalid query"


class ProtoTypeError(URLError):
    default_message = "unknown protocol type"


class _MissingPortError(URLError):
    default_message = "missing port in address"


class SchemeType(IntEnum):
    UNKNOWN = 0
    STUN = 1
    STUNS = 2
    TURN = 3
    TURNS = 4

    def __str__(self) -> str:
        return "Unknown" if self is SchemeType.UNKNOWN else self.name.lower()


class ProtoType(IntEnum):
    UNKNOWN = 0
    UDP = 1
    TCP = 2

    def __str__(self) -> str:
        return "Unknown" if self is ProtoType.UNKNOWN else self.name.lower()


_SCHEMES = {str(s): s for s in SchemeType if s is not SchemeType.UNKNOWN}
_PROTOS = {str(p): p for p in ProtoType if p is not ProtoType.UNKNOWN}
_INTEGER = re.compile(r"[+-]?[0-9]+")
_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")


def new_scheme_type(raw: str) -> SchemeType:
    return _SCHEMES.get(raw, SchemeType.UNKNOWN)


def new_proto_type(raw: str) -> ProtoType:
    return _PROTOS.get(raw, ProtoType.UNKNOWN)


def _join_host_port(host: str, port: int) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


@dataclass
class URL:
    scheme: SchemeType
    host: str
    port: int
    username: str = ""
    password: str = ""
    proto: ProtoType = ProtoType.UNKNOWN

    def __str__(self) -> str:
        text = str(self.scheme) + ":" + _join_host_port(self.host, self.port)
        if self.scheme in (SchemeType.TURN, SchemeType.TURNS):
            text += "?transport=" + str(self.proto)
        return text

    def is_secure(self) -> bool:
        return self.scheme in (SchemeType.STUNS, SchemeType.TURNS)


def _get_scheme(raw: str) -> tuple[str, str]:
    for index, char in enumerate(raw):
        if char.isascii() and char.isalpha():
            continue
        if char.isascii() and (char.isdigit() or char in "+-."):
            if index == 0:
                return "", raw
            continue
        if char == ":":
            if index == 0:
                raise URLError("missing protocol scheme")
            return raw[:index], raw[index + 1:]
        return "", raw
    return "", raw


def _split_url(raw: str) -> tuple[str, str, str]:
    """Split ``raw`` into scheme, opaque part and raw query."""
    if any(ord(c) < 0x20 or ord(c) == 0x7F for c in raw):
        raise URLError("invalid control character in URL")
    raw, _, _fragment = raw.partition("#")
    scheme, rest = _get_scheme(raw)
    scheme = scheme.lower()
    if rest.endswith("?") and rest.count("?") == 1:
        rest, query = rest[:-1], ""
    else:
        rest, _, query = rest.partition("?")
    if rest.startswith("/"):
        return scheme, "", query
    if not scheme:
        if ":" in rest.split("/", 1)[0]:
            raise URLError("first path segment in URL cannot contain colon")
        return scheme, "", query
    return scheme, rest, query


def _split_host_port(hostport: str) -> tuple[str, str]:
    colon = hostport.rfind(":")
    if colon < 0:
        raise _MissingPortError()
    if hostport.startswith("["):
        end = hostport.find("]")
        if end < 0:
            raise URLError("missing ']' in address")
        if end + 1 == len(hostport):
            raise _MissingPortError()
        if end + 1 != colon:
            if hostport[end + 1] == ":":
                raise URLError("too many colons in address")
            raise _MissingPortError()
        host = hostport[1:end]
        left, right = 1, end + 1
    else:
        host = hostport[:colon]
        if ":" in host:
            raise URLError("too many colons in address")
        left = right = 0
    if "[" in hostport[left:]:
        raise URLError("unexpected '[' in address")
    if "]" in hostport[right:]:
        raise URLError("unexpected ']' in address")
    return host, hostport[colon + 1:]


def _unescape(text: str) -> str:
    if _BAD_ESCAPE.search(text):
        raise ValueError(f"invalid URL escape in {text!r}")
    return unquote_plus(text)


def _parse_query(query: str) -> dict[str, list[str]]:
    values: dict[str, list[str]] = {}
    for item in query.split("&"):
        if not item:
            continue
        if ";" in item:
            raise ValueError("invalid semicolon separator in query")
        key, _, value = item.partition("=")
        values.setdefault(_unescape(key), []).append(_unescape(value))
    return values


def _parse_proto(query: str) -> ProtoType:
    try:
        args = _parse_query(query)
    except ValueError as exc:
        raise InvalidQueryError() from exc
    if len(args) > 1:
        raise InvalidQueryError()
    raw_proto = args.get("transport", [""])[0]
    if raw_proto:
        proto = new_proto_type(raw_proto)
        if proto is ProtoType.UNKNOWN:
            raise ProtoTypeError()
        return proto
    if args:
        raise InvalidQueryError()
    return ProtoType.UNKNOWN


def _reject_stun_query(query: str) -> None:
    try:
        args = _parse_query(query)
    except ValueError as exc:
        raise STUNQueryError() from exc
    if args:
        raise STUNQueryError()


def _parse(raw: str, may_add_port: bool) -> URL:
    scheme_text, opaque, query = _split_url(raw)
    scheme = new_scheme_type(scheme_text)
    if scheme is SchemeType.UNKNOWN:
        raise SchemeTypeError()

    try:
        host, raw_port = _split_host_port(opaque)
    except _MissingPortError:
        if not may_add_port:
            raise
        default_port = 3478 if scheme in (SchemeType.STUN, SchemeType.TURN) else 5349
        retry = f"{str(scheme)}:{opaque}:{default_port}"
        if query:
            retry += "?" + query
        return _parse(retry, False)

    if not host:
        raise HostError()
    if not _INTEGER.fullmatch(raw_port):
        raise PortError()
    port = int(raw_port)

    if scheme is SchemeType.STUN:
        _reject_stun_query(query)
        proto = ProtoType.UDP
    elif scheme is SchemeType.STUNS:
        _reject_stun_query(query)
        proto = ProtoType.TCP
    elif scheme is SchemeType.TURN:
        proto = _parse_proto(query) or ProtoType.UDP
    else:
        proto = _parse_proto(query) or ProtoType.TCP
    return URL(scheme=scheme, host=host, port=port, proto=ProtoType(proto))


def parse_url(raw: str) -> URL:
    """Parse a STUN or TURN URL, filling in the default port when absent."""
    return _parse(raw, True)