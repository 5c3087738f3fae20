"""Opening probe sockets, reporting send errors and tracking timeouts."""

from __future__ import annotations

import errno
import socket
import sys
from collections.abc import Iterable
from contextlib import ExitStack

from hopprobe.model import (
    IPPROTO_ICMP,
    IPPROTO_ICMPV6,
    IPPROTO_SCTP,
    IPPROTO_UDP,
    MplsLabel,
    NetState,
    PlatformState,
    Probe,
)
from hopprobe.probe import free_probe, respond_to_probe
from hopprobe.sockaddr import SockAddr
from hopprobe.timeval import USEC_PER_SEC, Timeval, compare_timeval

_LINUX = sys.platform.startswith("linux")

_IP_RECVERR = getattr(socket, "IP_RECVERR", 11)
_IPV6_RECVERR = getattr(socket, "IPV6_RECVERR", 25)
_IPPROTO_IPV6 = getattr(socket, "IPPROTO_IPV6", 41)

_ERROR_NAMES = {
    errno.EINVAL: "invalid-argument",
    errno.ENETDOWN: "network-down",
    errno.ENETUNREACH: "no-route",
    errno.EHOSTUNREACH: "no-route",
    errno.EPERM: "permission-denied",
    errno.EADDRINUSE: "address-in-use",
    errno.EADDRNOTAVAIL: "address-not-available",
}


def set_socket_nonblocking(sock: socket.socket) -> None:
    """Put a socket into non-blocking mode."""
    sock.setblocking(False)


def _open_ip4_sockets_raw(platform: PlatformState) -> None:
    try:
        send_socket = socket.socket(socket.AF_INET, socket.SOCK_RAW, socket.IPPROTO_RAW)
    except OSError:
        send_socket = socket.socket(socket.AF_INET, socket.SOCK_RAW, IPPROTO_ICMP)

    with ExitStack() as stack:
        stack.enter_context(send_socket)
        # The IP header is included in transmitted packets.
        send_socket.setsockopt(socket.IPPROTO_IP, socket.IP_HDRINCL, 1)
        recv_socket = socket.socket(socket.AF_INET, socket.SOCK_RAW, IPPROTO_ICMP)
        stack.pop_all()

    platform.ip4_present = True
    platform.ip4_socket_raw = True
    platform.ip4_send_socket = send_socket
    platform.ip4_recv_socket = recv_socket


def _open_ip4_sockets_dgram(platform: PlatformState) -> None:
    with ExitStack() as stack:
        icmp_socket = stack.enter_context(
            socket.socket(socket.AF_INET, socket.SOCK_DGRAM, IPPROTO_ICMP)
        )
        icmp_socket.setsockopt(socket.IPPROTO_IP, _IP_RECVERR, 1)
        udp_socket = stack.enter_context(
            socket.socket(socket.AF_INET, socket.SOCK_DGRAM, IPPROTO_UDP)
        )
        udp_socket.setsockopt(socket.IPPROTO_IP, _IP_RECVERR, 1)
        tmp_socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, IPPROTO_ICMP)
        stack.pop_all()

    platform.ip4_present = True
    platform.ip4_socket_raw = False
    platform.ip4_txrx_icmp_socket = icmp_socket
    platform.ip4_tmp_icmp_socket = tmp_socket
    platform.ip4_txrx_udp_socket = udp_socket


def _open_ip6_sockets_raw(platform: PlatformState) -> None:
    with ExitStack() as stack:
        icmp_send = stack.enter_context(
            socket.socket(socket.AF_INET6, socket.SOCK_RAW, IPPROTO_ICMPV6)
        )
        udp_send = stack.enter_context(
            socket.socket(socket.AF_INET6, socket.SOCK_RAW, IPPROTO_UDP)
        )
        recv_socket = socket.socket(socket.AF_INET6, socket.SOCK_RAW, IPPROTO_ICMPV6)
        stack.pop_all()

    platform.ip6_present = True
    platform.ip6_socket_raw = True
    platform.icmp6_send_socket = icmp_send
    platform.udp6_send_socket = udp_send
    platform.ip6_recv_socket = recv_socket


def _open_ip6_sockets_dgram(platform: PlatformState) -> None:
    with ExitStack() as stack:
        icmp_socket = stack.enter_context(
            socket.socket(socket.AF_INET6, socket.SOCK_DGRAM, IPPROTO_ICMPV6)
        )
        icmp_socket.setsockopt(_IPPROTO_IPV6, _IPV6_RECVERR, 1)
        udp_socket = stack.enter_context(
            socket.socket(socket.AF_INET6, socket.SOCK_DGRAM, IPPROTO_UDP)
        )
        udp_socket.setsockopt(_IPPROTO_IPV6, _IPV6_RECVERR, 1)
        stack.pop_all()

    platform.ip6_present = True
    platform.ip6_socket_raw = False
    platform.ip6_txrx_icmp_socket = icmp_socket
    platform.ip6_txrx_udp_socket = udp_socket


def _open_family(raw_opener, dgram_opener, platform: PlatformState) -> OSError | None:
    """Try raw sockets, then unprivileged ones on Linux; return the last error."""
    try:
        raw_opener(platform)
        return None
    except OSError as exc:
        if not _LINUX:
            return exc
    try:
        dgram_opener(platform)
        return None
    except OSError as exc:
        return exc


def init_net_state_privileged() -> NetState:
    """Open the probe sockets; the part of start-up that needs privileges."""
    net_state = NetState()
    platform = net_state.platform

    ip4_err = _open_family(_open_ip4_sockets_raw, _open_ip4_sockets_dgram, platform)
    ip6_err = _open_family(_open_ip6_sockets_raw, _open_ip6_sockets_dgram, platform)

    if not platform.ip4_present and not platform.ip6_present:
        raise OSError(
            f"Failure to open IPv4 sockets: {ip4_err}; "
            f"Failure to open IPv6 sockets: {ip6_err}"
        )
    return net_state


def check_sctp_support(net_state: NetState) -> None:
    """Record whether SCTP stream sockets can be created on this host."""
    try:
        sctp_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM, IPPROTO_SCTP)
    except OSError:
        return
    sctp_socket.close()
    net_state.platform.sctp_support = True


def report_packet_error(token: int, err: int) -> None:
    """Report a send failure, described by an errno value, on standard output."""
    name = _ERROR_NAMES.get(err)
    if name is None:
        print(f"{token} unexpected-error errno {err}")
    else:
        print(f"{token} {name}")


def _as_int32(value: int) -> int:
    return ((value + 2**31) % 2**32) - 2**31


def receive_probe(
    net_state: NetState,
    probe: Probe,
    icmp_type: int,
    remote_addr: SockAddr,
    timestamp: Timeval | None = None,
    mpls: Iterable[MplsLabel] | None = None,
) -> None:
    """Compute the round trip time of a probe and report its result."""
    if timestamp is None:
        timestamp = Timeval.now()
    departure = probe.departure_time
    round_trip_us = (
        (timestamp.sec - departure.sec) * USEC_PER_SEC + timestamp.usec - departure.usec
    )
    respond_to_probe(
        net_state, probe, icmp_type, remote_addr, _as_int32(round_trip_us), mpls
    )


def check_probe_timeouts(net_state: NetState) -> None:
    """Report and drop every probe whose timeout has passed."""
    now = Timeval.now()
    for probe in list(net_state.outstanding_probes):
        if compare_timeval(probe.timeout_time, now) < 0:
            print(f"{probe.token} no-reply")
            free_probe(net_state, probe)


def get_next_probe_timeout(net_state: NetState) -> Timeval | None:
    """Time left until the earliest probe timeout, or None with no probes."""
    now = Timeval.now()
    soonest: Timeval | None = None
    for probe in net_state.outstanding_probes:
        remaining = Timeval(
            probe.timeout_time.sec - now.sec, probe.timeout_time.usec - now.usec
        ).normalized()
        if soonest is None or compare_timeval(remaining, soonest) < 0:
            soonest = remaining
    return soonest