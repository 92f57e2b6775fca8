# icelink

Building blocks for Interactive Connectivity Establishment (ICE):

- `icelink.url` parses and formats STUN and TURN server URLs
  (`stun:`, `stuns:`, `turn:`, `turns:`). It fills in default ports and
  transports.
- `icelink.stun` is a minimal STUN message codec. It handles the attributes
  ICE needs: `USERNAME`, `XOR-MAPPED-ADDRESS` (`XORMappedAddress`) and the
  `USE-CANDIDATE` flag (`UseCandidateAttr`, `use_candidate()`).
- `icelink.tcptype` defines the ICE TCP candidate types (`TCPType`,
  `new_tcp_type`).
- `icelink.util` provides:
  - the `UDPAddr`, `TCPAddr` and `NetworkType` address helpers;
  - local interface discovery (`local_interfaces`, which uses psutil);
  - a one-shot STUN query (`get_xor_mapped_addr`);
  - binding a UDP socket to a port within a range (`listen_udp_in_port_range`).
- `icelink.udp_mux`, `icelink.udp_mux_multi` and `icelink.udp_mux_universal`
  carry many ICE sessions over one UDP socket. Each session is identified by
  its ufrag.

The package depends on psutil. Install the `test` extra to get pytest for the
test suite.

## Parsing server URLs

```python
from icelink.url import parse_url, SchemeType, ProtoType

url = parse_url("turn:turn.example.com")
assert url.scheme is SchemeType.TURN
assert url.port == 3478
assert url.proto is ProtoType.UDP
print(str(url))          # turn:turn.example.com:3478?transport=udp
print(url.is_secure())   # False
```

Default ports:

- `stun:` and `turn:` default to port 3478.
- `stuns:` and `turns:` default to port 5349.

Default transports:

- `stun:` is always UDP and `stuns:` is always TCP. Neither accepts a query.
- `turn:` defaults to UDP and `turns:` defaults to TCP.
- A TURN URL may set its transport with `?transport=udp` or `?transport=tcp`.

Malformed URLs raise a subclass of `URLError`: `SchemeTypeError`,
`HostError`, `PortError`, `STUNQueryError`, `InvalidQueryError` or
`ProtoTypeError`.

## STUN messages

```python
from icelink.stun import Message, build_binding_request, use_candidate, is_message

request = build_binding_request(use_candidate())
assert is_message(request.raw)
assert use_candidate().is_set(request)

decoded = Message().decode(request.raw)
assert use_candidate().is_set(decoded)
```

Malformed messages and missing attributes raise `StunError`.

## Multiplexing ICE sessions over one UDP port

```python
import socket
from icelink.udp_mux import UDPMuxDefault

sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
sock.bind(("127.0.0.1", 0))

mux = UDPMuxDefault(sock)
conn = mux.get_conn("ufrag1", mux.local_addr())
data, remote = conn.read_from()
conn.write_to(b"reply", remote)
mux.close()
```

### How packets are routed

A background thread reads the socket and routes each packet:

- From an address that is already registered, the packet goes to that
  address's connection.
- From an unregistered address, a STUN message goes to the connection named
  by the part of its `USERNAME` before the first colon.
- Anything else is dropped.

An address is registered for a connection when that connection calls
`write_to` to it.

### Other muxes

- `get_conn` raises `InvalidAddressError` when asked for an address the mux
  does not listen on.
- `icelink.udp_mux_multi.multi_udp_mux_from_port(port, ...)` listens on
  `port` on every usable local address and returns a `MultiUDPMuxDefault`.
  Its `get_conn` raises `NoUDPMuxAvailableError` for an address none of its
  muxes serves.
- `icelink.udp_mux_universal.UniversalUDPMuxDefault` also learns
  server-reflexive addresses from a STUN server through the shared socket.
  Answers are cached for `xor_mapped_addr_cache_ttl` seconds, 25 by default.

```python
from icelink.util import UDPAddr

mapped = mux.get_xor_mapped_addr(UDPAddr("192.0.2.1", 3478), deadline=1.0)
print(mapped.ip, mapped.port)
```

If no reply arrives in time, this raises `XORMappedAddrTimeoutError`.

## What the package does not do

There is no ICE agent here. The package does not:

- gather candidates;
- run connectivity checks;
- select a candidate pair;
- keep a connection alive.

`UniversalUDPMuxDefault.get_relayed_addr` always raises `OSError`, because
TURN relaying is not supported. TCP candidates are described only by
`TCPType`; there is no TCP transport.