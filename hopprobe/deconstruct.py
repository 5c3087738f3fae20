"""Matching received ICMP packets to the probes that caused them."""

from __future__ import annotations

import socket
import struct

from hopprobe.model import (
    IPPROTO_ICMP,
    IPPROTO_ICMPV6,
    IPPROTO_SCTP,
    IPPROTO_TCP,
    IPPROTO_UDP,
    MplsLabel,
    NetState,
)
from hopprobe.mpls import MAX_MPLS_LABELS, decode_mpls_labels
from hopprobe.netstate import receive_probe
from hopprobe.probe import (
    ICMP_DEST_UNREACH,
    ICMP_ECHOREPLY,
    ICMP_TIME_EXCEEDED,
    find_probe,
)
from hopprobe.sockaddr import SockAddr
from hopprobe.timeval import Timeval

ICMP_PORT_UNREACH = 3
ICMP6_DEST_UNREACH = 1
ICMP6_TIME_EXCEEDED = 3
ICMP6_ECHOREPLY = 129
ICMP6_PORT_UNREACH = 4

IP_HEADER_SIZE = 20
IP6_HEADER_SIZE = 40
ICMP_HEADER_SIZE = 8
UDP_HEADER_SIZE = 8
TCP_HEADER_SIZE = 8
SCTP_HEADER_SIZE = 8

_ICMP = struct.Struct("!BBHHH")
_UDP = struct.Struct("!HHHH")
_PORT = struct.Struct("!H")

# Per family: header size, protocol offset, ICMP protocol, source and
# destination address slices within the IP header.
_LAYOUTS = {
    socket.AF_INET: (IP_HEADER_SIZE, 9, IPPROTO_ICMP, slice(12, 16), slice(16, 20)),
    socket.AF_INET6: (IP6_HEADER_SIZE, 6, IPPROTO_ICMPV6, slice(8, 24), slice(24, 40)),
}


def _find_and_receive(
    net_state: NetState,
    remote_addr: SockAddr,
    timestamp: Timeval | None,
    icmp_type: int,
    protocol: int,
    icmp_id: int,
    sequence: int,
    mpls: list[MplsLabel],
) -> None:
    probe = find_probe(net_state, protocol, icmp_id, sequence)
    if probe is None:
        return
    receive_probe(net_state, probe, icmp_type, remote_addr, timestamp, mpls)


def _handle_inner_udp(
    net_state: NetState,
    remote_addr: SockAddr,
    icmp_result: int,
    family: int,
    ip: bytes | None,
    udp: bytes,
    timestamp: Timeval | None,
    mpls: list[MplsLabel],
) -> None:
    """Match a returned UDP header; the sequence may be in either port or the checksum."""
    if len(udp) < UDP_HEADER_SIZE:
        return
    srcport, dstport, _length, checksum = _UDP.unpack_from(udp)

    probe = None
    for candidate in (dstport, srcport, checksum):
        probe = find_probe(net_state, IPPROTO_UDP, 0, candidate)
        if probe is not None:
            break
    if probe is None or probe.remote_addr is None or probe.local_addr is None:
        return

    if probe.remote_addr.family != remote_addr.family:
        return
    if dstport != probe.remote_addr.port or srcport != probe.local_addr.port:
        return

    layout = _LAYOUTS.get(family)
    if layout is None or ip is None:
        return
    _size, _proto_at, _icmp_proto, saddr_at, daddr_at = layout
    if probe.remote_addr.address != ip[daddr_at]:
        return
    if probe.local_addr.address != ip[saddr_at]:
        return

    receive_probe(net_state, probe, icmp_result, remote_addr, timestamp, mpls)


def _handle_inner_ip(
    net_state: NetState,
    remote_addr: SockAddr,
    icmp_result: int,
    family: int,
    ip: bytes,
    timestamp: Timeval | None,
    mpls: list[MplsLabel],
) -> None:
    """Match the original IP packet quoted in an ICMP error with a probe."""
    header_size, proto_at, icmp_proto, _saddr, _daddr = _LAYOUTS[family]
    if len(ip) < header_size:
        return
    protocol = ip[proto_at]
    payload = ip[header_size:]

    if protocol == icmp_proto:
        if len(ip) < header_size + ICMP_HEADER_SIZE:
            return
        _type, _code, _checksum, icmp_id, sequence = _ICMP.unpack_from(payload)
        _find_and_receive(
            net_state, remote_addr, timestamp, icmp_result,
            IPPROTO_ICMP, icmp_id, sequence, mpls,
        )
    elif protocol == IPPROTO_UDP:
        if len(ip) < header_size + UDP_HEADER_SIZE:
            return
        _handle_inner_udp(
            net_state, remote_addr, icmp_result, family, ip, payload, timestamp, mpls
        )
    elif protocol in (IPPROTO_TCP, IPPROTO_SCTP):
        needed = TCP_HEADER_SIZE if protocol == IPPROTO_TCP else SCTP_HEADER_SIZE
        if len(ip) < header_size + needed:
            return
        (srcport,) = _PORT.unpack_from(payload)
        _find_and_receive(
            net_state, remote_addr, timestamp, icmp_result,
            protocol, 0, srcport, mpls,
        )


def handle_error_queue_packet(
    net_state: NetState,
    remote_addr: SockAddr,
    icmp_result: int,
    proto: int,
    packet: bytes,
    timestamp: Timeval | None = None,
) -> None:
    """Handle one of our own packets returned through a socket error queue."""
    if proto == IPPROTO_UDP:
        # No IP header accompanies the datagram, so address checks cannot pass.
        _handle_inner_udp(
            net_state, remote_addr, ICMP_TIME_EXCEEDED, 0, None, packet, timestamp, []
        )
    elif proto in (IPPROTO_ICMP, IPPROTO_ICMPV6):
        if len(packet) < ICMP_HEADER_SIZE:
            return
        _type, _code, _checksum, icmp_id, sequence = _ICMP.unpack_from(packet)
        _find_and_receive(
            net_state, remote_addr, timestamp, ICMP_TIME_EXCEEDED,
            IPPROTO_ICMP, icmp_id, sequence, [],
        )


def _handle_icmp4(
    net_state: NetState,
    remote_addr: SockAddr,
    icmp: bytes,
    timestamp: Timeval | None,
) -> None:
    icmp_ip_size = ICMP_HEADER_SIZE
    if net_state.platform.ip4_socket_raw:
        icmp_ip_size += IP_HEADER_SIZE
    mpls = decode_mpls_labels(icmp, MAX_MPLS_LABELS)
    icmp_type, code, _checksum, icmp_id, sequence = _ICMP.unpack_from(icmp)

    if icmp_type == ICMP_ECHOREPLY:
        _find_and_receive(
            net_state, remote_addr, timestamp, ICMP_ECHOREPLY,
            IPPROTO_ICMP, icmp_id, sequence, mpls,
        )

    if len(icmp) < icmp_ip_size:
        return
    inner = icmp[ICMP_HEADER_SIZE:]

    if icmp_type == ICMP_TIME_EXCEEDED:
        result = ICMP_TIME_EXCEEDED
    elif icmp_type == ICMP_DEST_UNREACH:
        # Port unreachable means a non-ICMP probe reached its destination.
        result = ICMP_ECHOREPLY if code == ICMP_PORT_UNREACH else ICMP_DEST_UNREACH
    else:
        return
    _handle_inner_ip(
        net_state, remote_addr, result, socket.AF_INET, inner, timestamp, mpls
    )


def _handle_icmp6(
    net_state: NetState,
    remote_addr: SockAddr,
    icmp: bytes,
    timestamp: Timeval | None,
) -> None:
    if len(icmp) < ICMP_HEADER_SIZE:
        return
    mpls = decode_mpls_labels(icmp, MAX_MPLS_LABELS)
    icmp_type, code, _checksum, icmp_id, sequence = _ICMP.unpack_from(icmp)

    if icmp_type == ICMP6_ECHOREPLY:
        _find_and_receive(
            net_state, remote_addr, timestamp, ICMP_ECHOREPLY,
            IPPROTO_ICMP, icmp_id, sequence, mpls,
        )

    if len(icmp) < ICMP_HEADER_SIZE + IP6_HEADER_SIZE:
        return
    inner = icmp[ICMP_HEADER_SIZE:]

    if icmp_type == ICMP6_TIME_EXCEEDED:
        result = ICMP_TIME_EXCEEDED
    elif icmp_type == ICMP6_DEST_UNREACH:
        result = ICMP_ECHOREPLY if code == ICMP6_PORT_UNREACH else ICMP_DEST_UNREACH
    else:
        return
    _handle_inner_ip(
        net_state, remote_addr, result, socket.AF_INET6, inner, timestamp, mpls
    )


def handle_received_ip4_packet(
    net_state: NetState,
    remote_addr: SockAddr,
    packet: bytes,
    timestamp: Timeval | None = None,
) -> None:
    """Handle a received IPv4 ICMP packet, with an IP header on raw sockets."""
    raw = net_state.platform.ip4_socket_raw
    ip_icmp_size = ICMP_HEADER_SIZE + (IP_HEADER_SIZE if raw else 0)
    if len(packet) < ip_icmp_size:
        return

    if raw:
        if packet[9] != IPPROTO_ICMP:
            return
        icmp = packet[IP_HEADER_SIZE:]
    else:
        icmp = packet
    _handle_icmp4(net_state, remote_addr, bytes(icmp), timestamp)


def handle_received_ip6_packet(
    net_state: NetState,
    remote_addr: SockAddr,
    packet: bytes,
    timestamp: Timeval | None = None,
) -> None:
    """Handle a received ICMPv6 packet; it starts at the ICMP header."""
    _handle_icmp6(net_state, remote_addr, bytes(packet), timestamp)