"""Probe parameters, in-flight probes and network state."""

from __future__ import annotations

import socket
from dataclasses import dataclass, field

from hopprobe.sockaddr import SockAddr
from hopprobe.timeval import Timeval

IPPROTO_ICMP = 1
IPPROTO_TCP = 6
IPPROTO_UDP = 17
IPPROTO_ICMPV6 = 58
IPPROTO_SCTP = 132

MAX_PROBES = 1024
PACKET_BUFFER_SIZE = 9000

MIN_PORT = 33000
MAX_PORT = 65535


@dataclass
class ProbeParam:
    """Parameters for sending a single probe."""

    ip_version: int = 0
    command_token: int = 0
    remote_address: str | None = None
    local_address: str | None = None
    protocol: int = 0
    dest_port: int = 0
    local_port: int = 0
    type_of_service: int = 0
    routing_mark: int = 0
    ttl: int = 0
    packet_size: int = 0
    bit_pattern: int = 0
    timeout: int = 0
    is_probing_byte_order: bool = False


@dataclass(eq=False)
class Probe:
    """Tracking information for an outstanding probe."""

    token: int = 0
    sequence: int = 0
    remote_addr: SockAddr | None = None
    local_addr: SockAddr | None = None
    socket: socket.socket | None = None
    timeout_time: Timeval = field(default_factory=Timeval)
    departure_time: Timeval = field(default_factory=Timeval)


@dataclass(frozen=True)
class MplsLabel:
    """One Multiprotocol Label Switching label."""

    label: int
    traffic_class: int
    bottom_of_stack: int
    ttl: int


@dataclass
class PlatformState:
    """Sockets and capabilities discovered for this host."""

    ip4_present: bool = False
    ip6_present: bool = False
    ip4_socket_raw: bool = False
    ip6_socket_raw: bool = False
    ip4_send_socket: socket.socket | None = None
    ip4_recv_socket: socket.socket | None = None
    ip4_tmp_icmp_socket: socket.socket | None = None
    ip4_txrx_icmp_socket: socket.socket | None = None
    ip4_txrx_udp_socket: socket.socket | None = None
    icmp6_send_socket: socket.socket | None = None
    udp6_send_socket: socket.socket | None = None
    ip6_recv_socket: socket.socket | None = None
    ip6_txrx_icmp_socket: socket.socket | None = None
    ip6_txrx_udp_socket: socket.socket | None = None
    ip_length_host_order: bool = False
    sctp_support: bool = False
    next_sequence: int = MIN_PORT


@dataclass
class NetState:
    """Global state: outstanding probes, newest first, and platform sockets."""

    outstanding_probes: list[Probe] = field(default_factory=list)
    platform: PlatformState = field(default_factory=PlatformState)

    @property
    def outstanding_probe_count(self) -> int:
        return len(self.outstanding_probes)

    def is_ip_version_supported(self, ip_version: int) -> bool:
        """True if sockets for this IP version could be opened."""
        if ip_version == 4:
            return self.platform.ip4_present
        if ip_version == 6:
            return self.platform.ip6_present
        return False

    def is_protocol_supported(self, protocol: int) -> bool:
        """True if probes can be sent with this protocol."""
        if protocol in (IPPROTO_ICMP, IPPROTO_UDP, IPPROTO_TCP):
            return True
        if protocol == IPPROTO_SCTP:
            return self.platform.sctp_support
        return False

    def next_port(self) -> int:
        """Hand out the next probe sequence number, wrapping within the port range."""
        sequence = self.platform.next_sequence
        self.platform.next_sequence += 1
        if self.platform.next_sequence > MAX_PORT:
            self.platform.next_sequence = MIN_PORT
        return sequence