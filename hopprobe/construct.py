"""Preparing probe packets and the sockets that carry them."""

from __future__ import annotations

import errno
import os
import socket
import sys

from hopprobe.model import (
    IPPROTO_ICMP,
    IPPROTO_SCTP,
    IPPROTO_TCP,
    IPPROTO_UDP,
    PACKET_BUFFER_SIZE,
    NetState,
    PlatformState,
    Probe,
    ProbeParam,
)
from hopprobe.packets import build_ip4_packet, build_ip6_packet, compute_packet_size
from hopprobe.sockaddr import SockAddr

HTTP_PORT = 80

_LINUX = sys.platform.startswith("linux")
_SO_MARK = getattr(socket, "SO_MARK", 36 if _LINUX else None)
_IPPROTO_IPV6 = getattr(socket, "IPPROTO_IPV6", 41)
_IPV6_CHECKSUM = getattr(socket, "IPV6_CHECKSUM", 7)
_IPV6_TCLASS = getattr(socket, "IPV6_TCLASS", 67)
_IPV6_UNICAST_HOPS = getattr(socket, "IPV6_UNICAST_HOPS", 16)

# Offset of the checksum field within a UDP header.
_UDP_CHECKSUM_OFFSET = 6

_STREAM_PROTOCOLS = (IPPROTO_TCP, IPPROTO_SCTP)
_FAMILIES = {4: socket.AF_INET, 6: socket.AF_INET6}


def _invalid(message: str) -> OSError:
    return OSError(errno.EINVAL, message)


def _set_routing_mark(sock: socket.socket | None, param: ProbeParam) -> None:
    """Apply the requested routing mark, where the system supports one."""
    if not param.routing_mark or _SO_MARK is None:
        return
    if sock is None:
        raise _invalid("no socket to mark")
    sock.setsockopt(socket.SOL_SOCKET, _SO_MARK, param.routing_mark)


def set_stream_socket_options(sock: socket.socket, param: ProbeParam) -> None:
    """Set address reuse, hop limit, type of service and mark on a stream socket."""
    reuseport = getattr(socket, "SO_REUSEPORT", None)
    if reuseport is not None:
        sock.setsockopt(socket.SOL_SOCKET, reuseport, 1)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

    if param.ip_version == 6:
        level, ttl_opt, tos_opt = _IPPROTO_IPV6, _IPV6_UNICAST_HOPS, _IPV6_TCLASS
    else:
        level, ttl_opt, tos_opt = socket.IPPROTO_IP, socket.IP_TTL, socket.IP_TOS

    sock.setsockopt(level, ttl_opt, param.ttl)
    sock.setsockopt(level, tos_opt, param.type_of_service)
    _set_routing_mark(sock, param)


def open_stream_socket(
    protocol: int,
    port: int,
    src: SockAddr,
    dest: SockAddr,
    param: ProbeParam,
) -> socket.socket:
    """Open a non-blocking TCP or SCTP socket bound to port and start connecting."""
    family = _FAMILIES.get(param.ip_version)
    if family is None:
        raise _invalid(f"unsupported IP version {param.ip_version}")

    sock = socket.socket(family, socket.SOCK_STREAM, protocol)
    try:
        sock.setblocking(False)
        set_stream_socket_options(sock, param)
        # A known local port lets an expired probe be matched later.
        sock.bind(src.with_port(port & 0xFFFF).to_tuple())
        dest_port = param.dest_port or HTTP_PORT
        err = sock.connect_ex(dest.with_port(dest_port & 0xFFFF).to_tuple())
        if err not in (0, errno.EINPROGRESS):
            raise OSError(err, os.strerror(err))
    except BaseException:
        sock.close()
        raise
    return sock


def _ip4_probe_socket(
    platform: PlatformState, param: ProbeParam
) -> socket.socket | None:
    if platform.ip4_socket_raw:
        return platform.ip4_send_socket
    if param.protocol == IPPROTO_ICMP:
        if param.is_probing_byte_order:
            return platform.ip4_tmp_icmp_socket
        return platform.ip4_txrx_icmp_socket
    if param.protocol == IPPROTO_UDP:
        return platform.ip4_txrx_udp_socket
    return None


def _construct_ip4(
    net_state: NetState, probe: Probe, param: ProbeParam, packet_size: int
) -> bytes:
    platform = net_state.platform
    packet = build_ip4_packet(net_state, probe, param, packet_size)

    # Setting a mark needs more privilege than sending, so only when asked.
    _set_routing_mark(_ip4_probe_socket(platform, param), param)

    # Datagram ICMP sockets take the ICMP id from the bound source port.
    if (
        not platform.ip4_socket_raw
        and param.protocol == IPPROTO_ICMP
        and not param.is_probing_byte_order
    ):
        sock = platform.ip4_txrx_icmp_socket
        current = sock.getsockname()
        if not current[1]:
            sock.bind(probe.local_addr.to_tuple())

    if not platform.ip4_socket_raw and not param.is_probing_byte_order:
        if param.protocol == IPPROTO_ICMP:
            sock = platform.ip4_txrx_icmp_socket
        elif param.protocol == IPPROTO_UDP:
            sock = platform.ip4_txrx_udp_socket
        else:
            return packet
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_TOS, param.type_of_service)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_TTL, param.ttl)

    return packet


def _construct_ip6(
    net_state: NetState, probe: Probe, param: ProbeParam, packet_size: int
) -> bytes:
    platform = net_state.platform
    raw = platform.ip6_socket_raw

    if param.protocol == IPPROTO_ICMP:
        sock = platform.icmp6_send_socket if raw else platform.ip6_txrx_icmp_socket
        packet = build_ip6_packet(probe, param, packet_size)
    elif param.protocol == IPPROTO_UDP:
        sock = platform.udp6_send_socket if raw else platform.ip6_txrx_udp_socket
        packet = build_ip6_packet(probe, param, packet_size)
        if raw:
            # The kernel fills in the pseudo-header checksum on raw sockets.
            sock.setsockopt(_IPPROTO_IPV6, _IPV6_CHECKSUM, _UDP_CHECKSUM_OFFSET)
    else:
        raise _invalid(f"unsupported protocol {param.protocol}")

    # Some systems refuse to bind an already bound socket, even to the
    # same address, so skip a bind that would change nothing.
    bind_needed = True
    try:
        current = sock.getsockname()
    except OSError:
        current = None
    if current is not None:
        if raw:
            try:
                bound = SockAddr.from_tuple(socket.AF_INET6, current)
            except ValueError:
                bound = None
            if bound == probe.local_addr:
                bind_needed = False
        elif current[1]:
            bind_needed = False

    if bind_needed:
        sock.bind(probe.local_addr.to_tuple())

    sock.setsockopt(_IPPROTO_IPV6, _IPV6_TCLASS, param.type_of_service)
    sock.setsockopt(_IPPROTO_IPV6, _IPV6_UNICAST_HOPS, param.ttl)
    _set_routing_mark(sock, param)
    return packet


def construct_packet(net_state: NetState, probe: Probe, param: ProbeParam) -> bytes:
    """Build the packet for a probe and prepare the socket that sends it.

    Stream protocols get a connecting socket stored on the probe and an
    empty packet.  Failures raise OSError carrying the errno value.
    """
    packet_size = compute_packet_size(net_state, param)
    if packet_size > PACKET_BUFFER_SIZE:
        raise _invalid(f"packet size {packet_size} too large")
    if param.ip_version not in _FAMILIES:
        raise _invalid(f"unsupported IP version {param.ip_version}")

    if param.protocol in _STREAM_PROTOCOLS:
        probe.socket = open_stream_socket(
            param.protocol, probe.sequence, probe.local_addr, probe.remote_addr, param
        )
        return b""

    if param.ip_version == 6:
        return _construct_ip6(net_state, probe, param, packet_size)
    return _construct_ip4(net_state, probe, param, packet_size)