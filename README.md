# hopprobe

`hopprobe` is a library for the building blocks of a traceroute-style probe
engine. It builds ICMP and UDP probe packets, opens TCP and SCTP probe
sockets, keeps track of probes in flight, matches incoming ICMP messages to
the probes that caused them, decodes MPLS labels from ICMP extensions, and
formats one reply line per finished probe.

It has no dependencies beyond the standard library.

## Installing

```
pip install .
```

Opening raw sockets usually needs elevated privileges. On Linux,
`hopprobe.netstate.init_net_state_privileged()` falls back to unprivileged
datagram sockets when raw sockets cannot be opened.

## Modules

- `hopprobe.timeval`: `Timeval`, a seconds/microseconds value with
  `normalized()` and `Timeval.now()`, and `compare_timeval(a, b)`, which
  returns -1, 0 or 1.
- `hopprobe.sockaddr`: `SockAddr`, an IPv4 or IPv6 address with its port,
  `addr_size()`, `size()`, `with_port()`, `to_tuple()` and `from_tuple()`.
- `hopprobe.model`: the data types `ProbeParam`, `Probe`, `MplsLabel`,
  `PlatformState` and `NetState`. `NetState` holds the outstanding probes,
  newest first, and offers `is_ip_version_supported()`,
  `is_protocol_supported()` and `next_port()`, which hands out sequence
  numbers from 33000 to 65535 and wraps around.
- `hopprobe.probe`: `decode_address_string()`, `find_source_addr()`,
  `resolve_probe_addresses()`, `alloc_probe()` (at most 1024 probes in
  flight), `free_probe()`, `find_probe()`, `format_mpls_string()`,
  `format_probe_response()` and `respond_to_probe()`, which writes the reply
  line to standard output. Failures raise `ProbeError`.
- `hopprobe.netstate`: `init_net_state_privileged()` opens the probe sockets,
  `check_sctp_support()`, `set_socket_nonblocking()`, `report_packet_error()`,
  `receive_probe()` (computes the round-trip time and reports),
  `check_probe_timeouts()` and `get_next_probe_timeout()`.
- `hopprobe.packets`: `compute_checksum()`, `udp4_checksum()`,
  `compute_packet_size()`, `udp_ports()`, `build_ip4_packet()` and
  `build_ip6_packet()`.
- `hopprobe.construct`: `construct_packet()` builds a probe's packet and
  prepares the socket that carries it; `open_stream_socket()` and
  `set_stream_socket_options()` handle TCP and SCTP probes. Failures raise
  `OSError` carrying the errno value.
- `hopprobe.mpls`: `decode_mpls_labels()` reads up to eight labels from an
  ICMP message's extension object.
- `hopprobe.deconstruct`: `handle_received_ip4_packet()`,
  `handle_received_ip6_packet()` and `handle_error_queue_packet()` match a
  received packet to an outstanding probe and report it.

## Reply lines

A finished probe is reported as one line:

```
7 reply ip-4 192.0.2.1 round-trip-time 12345
7 ttl-expired ip-4 198.51.100.1 round-trip-time 2345 mpls 12345,0,1,1
7 no-route ip-6 2001:db8::1 round-trip-time 4000
```

The round-trip time is in microseconds. MPLS labels are listed as
`label,traffic-class,bottom-of-stack,ttl` groups joined by commas. A probe
that times out is reported as `<token> no-reply`. Send failures are reported
by `report_packet_error()` as `invalid-argument`, `network-down`, `no-route`,
`permission-denied`, `address-in-use`, `address-not-available` or
`unexpected-error errno <n>`.

## Example

```python
import socket

from hopprobe.model import Probe
from hopprobe.probe import format_probe_response
from hopprobe.sockaddr import SockAddr
from hopprobe.timeval import Timeval

hop = SockAddr(socket.AF_INET, socket.inet_pton(socket.AF_INET, "192.0.2.1"))
print(format_probe_response(Probe(token=7), 11, hop, 2345))
# 7 ttl-expired ip-4 192.0.2.1 round-trip-time 2345

print(Timeval(1, 1_500_000).normalized())
# Timeval(sec=2, usec=500000)
```

## What this package does not do

There is no command-line program. The package does not read or parse
request lines, does not dispatch requests to handlers, does not buffer input
from standard input, and has no main loop that waits on its sockets and
collects replies. It does not send the packets it builds: a caller that owns
the sockets in `NetState.platform` passes the bytes from `construct_packet()`
to them, and feeds the packets it receives to the handlers in
`hopprobe.deconstruct`.