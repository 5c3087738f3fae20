"""Building the bytes of outgoing ICMP and UDP probe packets."""

from __future__ import annotations

import errno
import os
import struct

from hopprobe.model import (
    IPPROTO_ICMP,
    IPPROTO_SCTP,
    IPPROTO_TCP,
    IPPROTO_UDP,
    NetState,
    Probe,
    ProbeParam,
)

IP_HEADER_SIZE = 20
IP6_HEADER_SIZE = 40
ICMP_HEADER_SIZE = 8
UDP_HEADER_SIZE = 8
UDP_PSEUDO_HEADER_SIZE = 12

ICMP_ECHO = 8
ICMP6_ECHO = 128

# Room kept after the UDP header for a sequence number in the payload.
_SEQUENCE_ROOM = 4


def _invalid(message: str) -> OSError:
    return OSError(errno.EINVAL, message)


def _pid16() -> int:
    return os.getpid() & 0xFFFF


def compute_checksum(data: bytes) -> int:
    """Return the one's complement Internet checksum of data."""
    total = (sum(data[0::2]) << 8) + sum(data[1::2])
    while total >> 16:
        total = (total >> 16) + (total & 0xFFFF)
    return ~total & 0xFFFF


def udp4_checksum(
    pseudo_header: bytes, udp_data: bytes, alt_checksum: bool = False
) -> int:
    """Checksum a UDP datagram behind its pseudo header.

    With alt_checksum, the two payload bytes right after the UDP header
    are taken as zero, since they will hold the checksum itself.
    """
    buf = bytearray(pseudo_header)
    buf += udp_data
    if alt_checksum and len(udp_data) >= UDP_HEADER_SIZE + 2:
        start = len(pseudo_header) + UDP_HEADER_SIZE
        buf[start : start + 2] = b"\x00\x00"
    return compute_checksum(buf)


def compute_packet_size(net_state: NetState, param: ProbeParam) -> int:
    """Size of the packet to be built; 0 for stream protocols.

    Raises OSError(EINVAL) for an unknown IP version or protocol.
    """
    if param.protocol in (IPPROTO_TCP, IPPROTO_SCTP):
        return 0

    platform = net_state.platform
    packet_size = 0
    if param.ip_version == 6:
        if platform.ip6_socket_raw:
            packet_size += IP6_HEADER_SIZE
    elif param.ip_version == 4:
        if platform.ip4_socket_raw:
            packet_size += IP_HEADER_SIZE
    else:
        raise _invalid(f"unsupported IP version {param.ip_version}")

    if param.protocol == IPPROTO_ICMP:
        packet_size += ICMP_HEADER_SIZE
    elif param.protocol == IPPROTO_UDP:
        packet_size += UDP_HEADER_SIZE + _SEQUENCE_ROOM
    else:
        raise _invalid(f"unsupported protocol {param.protocol}")

    packet_size = max(packet_size, param.packet_size)

    # The IPv6 header is never built by us, only accounted for.
    if param.ip_version == 6 and platform.ip6_socket_raw:
        packet_size -= IP6_HEADER_SIZE
    return packet_size


def udp_ports(
    probe: Probe, param: ProbeParam, pid: int | None = None
) -> tuple[int, int, int]:
    """Choose source port, destination port and checksum field for a UDP probe.

    The probe's sequence goes into the destination port, the source port
    or the checksum, depending on which ports were requested.  The probe's
    local and remote addresses are updated to carry the chosen ports.
    """
    if pid is None:
        pid = _pid16()
    sequence = probe.sequence & 0xFFFF

    if param.dest_port:
        dst = param.dest_port & 0xFFFF
        if param.local_port:
            src = param.local_port & 0xFFFF
            checksum = sequence
        else:
            src = sequence
            checksum = 0
    else:
        dst = sequence
        src = (param.local_port or pid) & 0xFFFF
        checksum = 0

    if probe.local_addr is not None:
        probe.local_addr = probe.local_addr.with_port(src)
    if probe.remote_addr is not None:
        probe.remote_addr = probe.remote_addr.with_port(dst)
    return src, dst, checksum


def _filled(param: ProbeParam, packet_size: int) -> bytearray:
    return bytearray([param.bit_pattern & 0xFF]) * packet_size


def _write_ip4_header(
    buf: bytearray,
    host_order: bool,
    probe: Probe,
    param: ProbeParam,
    packet_size: int,
) -> None:
    struct.pack_into(
        "!BBHHHBBH4s4s",
        buf,
        0,
        0x45,
        param.type_of_service & 0xFF,
        0,
        0,
        0,
        param.ttl & 0xFF,
        param.protocol & 0xFF,
        0,
        probe.local_addr.address,
        probe.remote_addr.address,
    )
    struct.pack_into("=H" if host_order else "!H", buf, 2, packet_size & 0xFFFF)


def _write_icmp4(buf: bytearray, offset: int, probe: Probe) -> None:
    struct.pack_into(
        "!BBHHH", buf, offset, ICMP_ECHO, 0, 0, _pid16(), probe.sequence & 0xFFFF
    )
    checksum = compute_checksum(buf[offset:])
    struct.pack_into("!H", buf, offset + 2, checksum)


def _write_udp4(
    buf: bytearray, offset: int, probe: Probe, param: ProbeParam
) -> None:
    udp_size = len(buf) - offset
    src, dst, field = udp_ports(probe, param, _pid16())
    struct.pack_into("!HHHH", buf, offset, src, dst, udp_size & 0xFFFF, field)

    pseudo = struct.pack(
        "!4s4sBBH",
        probe.local_addr.address,
        probe.remote_addr.address,
        0,
        IPPROTO_UDP,
        udp_size & 0xFFFF,
    )
    alt = field != 0
    value = udp4_checksum(pseudo, bytes(buf[offset:]), alt)
    # When the checksum field carries the sequence, the real checksum
    # goes into the start of the payload instead.
    where = offset + UDP_HEADER_SIZE if alt else offset + 6
    struct.pack_into("!H", buf, where, value)


def build_ip4_packet(
    net_state: NetState, probe: Probe, param: ProbeParam, packet_size: int
) -> bytes:
    """Build an IPv4 ICMP or UDP probe, with an IP header on raw sockets."""
    buf = _filled(param, packet_size)
    offset = 0
    if net_state.platform.ip4_socket_raw:
        _write_ip4_header(
            buf, net_state.platform.ip_length_host_order, probe, param, packet_size
        )
        offset = IP_HEADER_SIZE

    if param.protocol == IPPROTO_ICMP:
        _write_icmp4(buf, offset, probe)
    elif param.protocol == IPPROTO_UDP:
        _write_udp4(buf, offset, probe, param)
    else:
        raise _invalid(f"unsupported protocol {param.protocol}")
    return bytes(buf)


def build_ip6_packet(probe: Probe, param: ProbeParam, packet_size: int) -> bytes:
    """Build an ICMPv6 or UDP probe for IPv6; the kernel adds the IP header."""
    buf = _filled(param, packet_size)
    if param.protocol == IPPROTO_ICMP:
        struct.pack_into(
            "!BBHHH", buf, 0, ICMP6_ECHO, 0, 0, _pid16(), probe.sequence & 0xFFFF
        )
    elif param.protocol == IPPROTO_UDP:
        src, dst, field = udp_ports(probe, param, _pid16())
        struct.pack_into("!HHHH", buf, 0, src, dst, packet_size & 0xFFFF, field)
    else:
        raise _invalid(f"unsupported protocol {param.protocol}")
    return bytes(buf)