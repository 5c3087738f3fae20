"""Probe bookkeeping, address resolution and reply formatting."""

from __future__ import annotations

import errno
import os
import socket
import sys
from collections.abc import Iterable

from hopprobe.model import (
    IPPROTO_ICMP,
    MAX_PROBES,
    MplsLabel,
    NetState,
    Probe,
    ProbeParam,
)
from hopprobe.sockaddr import SockAddr

ICMP_ECHOREPLY = 0
ICMP_DEST_UNREACH = 3
ICMP_TIME_EXCEEDED = 11

COMMAND_BUFFER_SIZE = 4096

_LINUX = sys.platform.startswith("linux")

_RESULT_NAMES = {
    ICMP_TIME_EXCEEDED: "ttl-expired",
    ICMP_DEST_UNREACH: "no-route",
    ICMP_ECHOREPLY: "reply",
}

_FAMILIES = {4: socket.AF_INET, 6: socket.AF_INET6}


class ProbeError(Exception):
    """Raised when a probe cannot be set up."""


def _icmp_id() -> int:
    """The ICMP identifier used for this process's probes."""
    return os.getpid() & 0xFFFF


def decode_address_string(ip_version: int, address_string: str | None) -> SockAddr:
    """Convert a textual address of the given IP version into a SockAddr."""
    family = _FAMILIES.get(ip_version)
    if family is None:
        raise ProbeError(f"unsupported IP version {ip_version}")
    if address_string is None:
        raise ProbeError("no address given")
    try:
        packed = socket.inet_pton(family, address_string)
    except (OSError, ValueError) as exc:
        raise ProbeError(f"invalid address {address_string!r}") from exc
    return SockAddr(family, packed)


def find_source_addr(dest: SockAddr) -> SockAddr:
    """Ask the kernel which local address would be used to reach dest."""
    # A non-zero port is required by some systems for a UDP connect;
    # nothing is ever sent to it.
    dest_with_port = dest.with_port(1)
    try:
        sock = socket.socket(dest.family, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    except OSError as exc:
        raise ProbeError("open socket") from exc

    with sock:
        try:
            sock.connect(dest_with_port.to_tuple())
        except OSError as exc:
            if not _LINUX:
                raise ProbeError("connect failed") from exc
            # An unreachable host may become reachable later, so carry on
            # with the wildcard address.
            if exc.errno != errno.EHOSTUNREACH:
                raise ProbeError("not hostunreach") from exc
            return SockAddr(dest.family, bytes(dest.addr_size()))
        try:
            name = sock.getsockname()
        except OSError as exc:
            raise ProbeError("getsockname") from exc

    return SockAddr.from_tuple(dest.family, name).with_port(0)


def resolve_probe_addresses(
    net_state: NetState, param: ProbeParam
) -> tuple[SockAddr, SockAddr]:
    """Resolve the remote and local addresses for a probe."""
    try:
        dest = decode_address_string(param.ip_version, param.remote_address)
    except ProbeError as exc:
        raise ProbeError("decode address string remote") from exc

    if param.local_address:
        try:
            src = decode_address_string(param.ip_version, param.local_address)
        except ProbeError as exc:
            raise ProbeError("decode address string local") from exc
    else:
        src = find_source_addr(dest)

    # Datagram ICMP sockets take the ICMP id from the source port.
    if param.protocol == IPPROTO_ICMP:
        platform = net_state.platform
        if (src.family == socket.AF_INET and not platform.ip4_socket_raw) or (
            src.family == socket.AF_INET6 and not platform.ip6_socket_raw
        ):
            src = src.with_port(_icmp_id())

    return dest, src


def alloc_probe(net_state: NetState, token: int) -> Probe:
    """Start tracking a new probe with a fresh sequence number."""
    if net_state.outstanding_probe_count >= MAX_PROBES:
        raise ProbeError("probes exhausted")
    probe = Probe(token=token, sequence=net_state.next_port())
    net_state.outstanding_probes.insert(0, probe)
    return probe


def free_probe(net_state: NetState, probe: Probe) -> None:
    """Stop tracking a probe and close its socket, if it has one."""
    net_state.outstanding_probes.remove(probe)
    if probe.socket is not None:
        probe.socket.close()
        probe.socket = None


def find_probe(
    net_state: NetState, protocol: int, icmp_id: int, sequence: int
) -> Probe | None:
    """Find an outstanding probe by sequence; ICMP ids must match this process.

    The id and sequence are host-order values decoded from the packet.
    """
    if protocol == IPPROTO_ICMP and icmp_id != _icmp_id():
        return None
    for probe in net_state.outstanding_probes:
        if probe.sequence == sequence:
            return probe
    return None


def format_mpls_string(labels: Iterable[MplsLabel]) -> str:
    """Format MPLS labels as a comma separated list of four-field groups."""
    return ",".join(
        f"{m.label},{m.traffic_class},{m.bottom_of_stack},{m.ttl}" for m in labels
    )


def format_probe_response(
    probe: Probe,
    icmp_type: int,
    remote_addr: SockAddr,
    round_trip_us: int,
    mpls: Iterable[MplsLabel] | None = None,
) -> str:
    """Build the reply line reporting a probe's result."""
    try:
        result = _RESULT_NAMES[icmp_type]
    except KeyError:
        raise ValueError(f"unexpected ICMP type {icmp_type}") from None

    ip_argument = "ip-6" if remote_addr.family == socket.AF_INET6 else "ip-4"
    response = (
        f"{probe.token} {result} {ip_argument} {remote_addr.host} "
        f"round-trip-time {round_trip_us}"
    )
    labels = list(mpls or ())
    if labels:
        response += " mpls " + format_mpls_string(labels)
    return response[: COMMAND_BUFFER_SIZE - 1]


def respond_to_probe(
    net_state: NetState,
    probe: Probe,
    icmp_type: int,
    remote_addr: SockAddr,
    round_trip_us: int,
    mpls: Iterable[MplsLabel] | None = None,
) -> None:
    """Report a probe's result on standard output and stop tracking it."""
    line = format_probe_response(probe, icmp_type, remote_addr, round_trip_us, mpls)
    sys.stdout.write(line + "\n")
    free_probe(net_state, probe)