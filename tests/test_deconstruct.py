import os
import socket
import struct

from hopprobe.deconstruct import (
    handle_error_queue_packet,
    handle_received_ip4_packet,
    handle_received_ip6_packet,
)
from hopprobe.model import NetState
from hopprobe.probe import alloc_probe
from hopprobe.sockaddr import SockAddr
from hopprobe.timeval import Timeval

PID = os.getpid() & 0xFFFF
LOCAL4 = socket.inet_pton(socket.AF_INET, "192.0.2.1")
REMOTE4 = socket.inet_pton(socket.AF_INET, "198.51.100.7")
ROUTER4 = SockAddr(socket.AF_INET, socket.inet_pton(socket.AF_INET, "203.0.113.9"))
LOCAL6 = socket.inet_pton(socket.AF_INET6, "2001:db8::10")
REMOTE6 = socket.inet_pton(socket.AF_INET6, "2001:db8::20")
ROUTER6 = SockAddr(socket.AF_INET6, socket.inet_pton(socket.AF_INET6, "2001:db8::1"))

DEPARTED = Timeval(1000, 0)
ARRIVED = Timeval(1000, 1500)


def make_state(raw4=True, raw6=True):
    net_state = NetState()
    net_state.platform.ip4_socket_raw = raw4
    net_state.platform.ip6_socket_raw = raw6
    return net_state


def add_probe(net_state, token):
    probe = alloc_probe(net_state, token)
    probe.departure_time = DEPARTED
    return probe


def ip4_header(proto, src, dst):
    return struct.pack("!BBHHHBBH4s4s", 0x45, 0, 0, 0, 0, 64, proto, 0, src, dst)


def ip6_header(proto, src, dst):
    return struct.pack("!IHBB16s16s", 0x60000000, 0, proto, 64, src, dst)


def icmp(icmp_type, code, ident=0, seq=0):
    return struct.pack("!BBHHH", icmp_type, code, 0, ident, seq)


def udp(src, dst):
    return struct.pack("!HHHH", src, dst, 8, 0)


def test_ip4_raw_echo_reply_is_reported(capsys):
    net_state = make_state()
    probe = add_probe(net_state, 7)
    packet = ip4_header(1, ROUTER4.address, LOCAL4) + icmp(0, 0, PID, probe.sequence)
    handle_received_ip4_packet(net_state, ROUTER4, packet, ARRIVED)
    assert capsys.readouterr().out == "7 reply ip-4 203.0.113.9 round-trip-time 1500\n"
    assert net_state.outstanding_probes == []


def test_echo_reply_with_foreign_id_is_ignored(capsys):
    net_state = make_state()
    probe = add_probe(net_state, 7)
    packet = ip4_header(1, ROUTER4.address, LOCAL4) + icmp(
        0, 0, (PID + 1) & 0xFFFF, probe.sequence
    )
    handle_received_ip4_packet(net_state, ROUTER4, packet, ARRIVED)
    assert capsys.readouterr().out == ""
    assert net_state.outstanding_probes == [probe]


def test_dgram_echo_reply_starts_at_icmp_header(capsys):
    net_state = make_state(raw4=False)
    probe = add_probe(net_state, 3)
    handle_received_ip4_packet(
        net_state, ROUTER4, icmp(0, 0, PID, probe.sequence), ARRIVED
    )
    assert capsys.readouterr().out.startswith("3 reply ip-4 203.0.113.9 ")
    assert net_state.outstanding_probes == []


def test_raw_packet_with_non_icmp_protocol_is_ignored(capsys):
    net_state = make_state()
    probe = add_probe(net_state, 7)
    packet = ip4_header(17, ROUTER4.address, LOCAL4) + icmp(0, 0, PID, probe.sequence)
    handle_received_ip4_packet(net_state, ROUTER4, packet, ARRIVED)
    assert capsys.readouterr().out == ""
    assert net_state.outstanding_probes == [probe]


def test_short_packet_is_ignored(capsys):
    net_state = make_state()
    probe = add_probe(net_state, 7)
    handle_received_ip4_packet(net_state, ROUTER4, ip4_header(1, LOCAL4, REMOTE4))
    assert capsys.readouterr().out == ""
    assert net_state.outstanding_probes == [probe]


def test_time_exceeded_with_inner_icmp(capsys):
    net_state = make_state()
    probe = add_probe(net_state, 7)
    packet = (
        ip4_header(1, ROUTER4.address, LOCAL4)
        + icmp(11, 0)
        + ip4_header(1, LOCAL4, REMOTE4)
        + icmp(8, 0, PID, probe.sequence)
    )
    handle_received_ip4_packet(net_state, ROUTER4, packet, ARRIVED)
    assert capsys.readouterr().out.startswith("7 ttl-expired ip-4 203.0.113.9 ")
    assert net_state.outstanding_probes == []


def _udp_probe(net_state, token, family, local, remote):
    probe = add_probe(net_state, token)
    probe.local_addr = SockAddr(family, local, 40000)
    probe.remote_addr = SockAddr(family, remote, probe.sequence)
    return probe


def test_port_unreachable_for_udp_is_a_reply(capsys):
    net_state = make_state(raw4=False)
    probe = _udp_probe(net_state, 9, socket.AF_INET, LOCAL4, REMOTE4)
    packet = icmp(3, 3) + ip4_header(17, LOCAL4, REMOTE4) + udp(40000, probe.sequence)
    handle_received_ip4_packet(net_state, ROUTER4, packet, ARRIVED)
    assert capsys.readouterr().out.startswith("9 reply ip-4 203.0.113.9 ")
    assert net_state.outstanding_probes == []


def test_udp_with_other_destination_is_ignored(capsys):
    net_state = make_state(raw4=False)
    probe = _udp_probe(net_state, 9, socket.AF_INET, LOCAL4, REMOTE4)
    packet = icmp(3, 3) + ip4_header(17, LOCAL4, LOCAL4) + udp(40000, probe.sequence)
    handle_received_ip4_packet(net_state, ROUTER4, packet, ARRIVED)
    assert capsys.readouterr().out == ""
    assert net_state.outstanding_probes == [probe]


def test_other_unreachable_code_for_tcp_is_no_route(capsys):
    net_state = make_state(raw4=False)
    probe = add_probe(net_state, 4)
    packet = (
        icmp(3, 1)
        + ip4_header(6, LOCAL4, REMOTE4)
        + struct.pack("!HHI", probe.sequence, 80, 0)
    )
    handle_received_ip4_packet(net_state, ROUTER4, packet, ARRIVED)
    assert capsys.readouterr().out.startswith("4 no-route ip-4 203.0.113.9 ")
    assert net_state.outstanding_probes == []


def test_ip6_echo_reply(capsys):
    net_state = make_state()
    probe = add_probe(net_state, 5)
    handle_received_ip6_packet(
        net_state, ROUTER6, icmp(129, 0, PID, probe.sequence), ARRIVED
    )
    assert capsys.readouterr().out.startswith("5 reply ip-6 2001:db8::1 ")
    assert net_state.outstanding_probes == []


def test_ip6_time_exceeded_with_inner_udp(capsys):
    net_state = make_state()
    probe = _udp_probe(net_state, 6, socket.AF_INET6, LOCAL6, REMOTE6)
    packet = icmp(3, 0) + ip6_header(17, LOCAL6, REMOTE6) + udp(40000, probe.sequence)
    handle_received_ip6_packet(net_state, ROUTER6, packet, ARRIVED)
    assert capsys.readouterr().out.startswith("6 ttl-expired ip-6 2001:db8::1 ")
    assert net_state.outstanding_probes == []


def test_ip6_port_unreachable_with_inner_icmp(capsys):
    net_state = make_state()
    probe = add_probe(net_state, 8)
    packet = icmp(1, 4) + ip6_header(58, LOCAL6, REMOTE6) + icmp(128, 0, PID, probe.sequence)
    handle_received_ip6_packet(net_state, ROUTER6, packet, ARRIVED)
    assert capsys.readouterr().out.startswith("8 reply ip-6 2001:db8::1 ")


def test_error_queue_icmp_reports_ttl_expired(capsys):
    net_state = make_state(raw4=False)
    probe = add_probe(net_state, 2)
    handle_error_queue_packet(
        net_state, ROUTER4, 0, 1, icmp(8, 0, PID, probe.sequence), ARRIVED
    )
    assert capsys.readouterr().out.startswith("2 ttl-expired ip-4 203.0.113.9 ")
    assert net_state.outstanding_probes == []


def test_error_queue_udp_without_ip_header_is_not_matched(capsys):
    net_state = make_state(raw4=False)
    probe = _udp_probe(net_state, 2, socket.AF_INET, LOCAL4, REMOTE4)
    handle_error_queue_packet(
        net_state, ROUTER4, 0, 17, udp(40000, probe.sequence), ARRIVED
    )
    assert capsys.readouterr().out == ""
    assert net_state.outstanding_probes == [probe]


def test_mpls_labels_are_appended(capsys):
    net_state = make_state(raw4=False)
    probe = add_probe(net_state, 7)
    original = ip4_header(1, LOCAL4, REMOTE4) + icmp(8, 0, PID, probe.sequence)
    original = original.ljust(128, b"\x00")
    extension = b"\x20\x00\x00\x00" + struct.pack("!HBB", 8, 1, 1) + bytes([0, 1, 1, 1])
    packet = icmp(11, 0) + original + extension
    handle_received_ip4_packet(net_state, ROUTER4, packet, ARRIVED)
    out = capsys.readouterr().out
    assert out.startswith("7 ttl-expired ip-4 203.0.113.9 ")
    assert out.endswith(" mpls 16,0,1,1\n")