import os
import socket

import pytest

from hopprobe.model import (
    IPPROTO_ICMP,
    IPPROTO_UDP,
    MAX_PROBES,
    MIN_PORT,
    MplsLabel,
    NetState,
    Probe,
    ProbeParam,
)
from hopprobe.probe import (
    ICMP_DEST_UNREACH,
    ICMP_ECHOREPLY,
    ICMP_TIME_EXCEEDED,
    ProbeError,
    alloc_probe,
    decode_address_string,
    find_probe,
    find_source_addr,
    format_mpls_string,
    format_probe_response,
    free_probe,
    resolve_probe_addresses,
    respond_to_probe,
)
from hopprobe.sockaddr import SockAddr


def _v4(text):
    return SockAddr(socket.AF_INET, socket.inet_pton(socket.AF_INET, text))


def test_decode_ipv4_address():
    addr = decode_address_string(4, "192.0.2.1")
    assert addr.family == socket.AF_INET
    assert addr.address == socket.inet_pton(socket.AF_INET, "192.0.2.1")
    assert addr.port == 0


def test_decode_ipv6_address():
    addr = decode_address_string(6, "::1")
    assert addr.family == socket.AF_INET6
    assert addr.host == "::1"


@pytest.mark.parametrize(
    "version, text",
    [(4, "not-an-address"), (4, "::1"), (6, "192.0.2.1"), (5, "192.0.2.1"), (4, None)],
)
def test_decode_rejects_bad_input(version, text):
    with pytest.raises(ProbeError):
        decode_address_string(version, text)


def test_resolve_icmp_dgram_uses_pid_as_port():
    state = NetState()
    param = ProbeParam(
        ip_version=4,
        remote_address="192.0.2.1",
        local_address="192.0.2.2",
        protocol=IPPROTO_ICMP,
    )
    dest, src = resolve_probe_addresses(state, param)
    assert dest.host == "192.0.2.1"
    assert src.host == "192.0.2.2"
    assert src.port == os.getpid() & 0xFFFF


def test_resolve_icmp_raw_keeps_zero_port():
    state = NetState()
    state.platform.ip4_socket_raw = True
    param = ProbeParam(
        ip_version=4,
        remote_address="192.0.2.1",
        local_address="192.0.2.2",
        protocol=IPPROTO_ICMP,
    )
    _, src = resolve_probe_addresses(state, param)
    assert src.port == 0


def test_resolve_udp_keeps_zero_port():
    param = ProbeParam(
        ip_version=4,
        remote_address="192.0.2.1",
        local_address="192.0.2.2",
        protocol=IPPROTO_UDP,
    )
    _, src = resolve_probe_addresses(NetState(), param)
    assert src.port == 0


def test_resolve_bad_remote_raises():
    param = ProbeParam(ip_version=4, remote_address="bogus", protocol=IPPROTO_ICMP)
    with pytest.raises(ProbeError, match="remote"):
        resolve_probe_addresses(NetState(), param)


def test_resolve_bad_local_raises():
    param = ProbeParam(
        ip_version=4, remote_address="192.0.2.1", local_address="bogus"
    )
    with pytest.raises(ProbeError, match="local"):
        resolve_probe_addresses(NetState(), param)


def test_find_source_addr_for_loopback():
    src = find_source_addr(_v4("127.0.0.1"))
    assert src.host == "127.0.0.1"
    assert src.port == 0


def test_resolve_finds_source_when_none_given():
    param = ProbeParam(ip_version=4, remote_address="127.0.0.1", protocol=IPPROTO_UDP)
    dest, src = resolve_probe_addresses(NetState(), param)
    assert dest.host == "127.0.0.1"
    assert src.host == "127.0.0.1"


def test_alloc_probe_assigns_sequences_newest_first():
    state = NetState()
    first = alloc_probe(state, 1)
    second = alloc_probe(state, 2)
    assert first.sequence == MIN_PORT
    assert second.sequence == MIN_PORT + 1
    assert state.outstanding_probes == [second, first]
    assert state.outstanding_probe_count == 2


def test_alloc_probe_exhausted():
    state = NetState()
    for token in range(MAX_PROBES):
        alloc_probe(state, token)
    with pytest.raises(ProbeError):
        alloc_probe(state, MAX_PROBES)
    assert state.outstanding_probe_count == MAX_PROBES


def test_free_probe_closes_socket():
    state = NetState()
    probe = alloc_probe(state, 3)
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    probe.socket = sock
    free_probe(state, probe)
    assert sock.fileno() == -1
    assert probe.socket is None
    assert state.outstanding_probes == []


def test_find_probe_icmp_checks_id():
    state = NetState()
    probe = alloc_probe(state, 4)
    pid_id = os.getpid() & 0xFFFF
    assert find_probe(state, IPPROTO_ICMP, pid_id, probe.sequence) is probe
    assert find_probe(state, IPPROTO_ICMP, (pid_id + 1) & 0xFFFF, probe.sequence) is None


def test_find_probe_udp_ignores_id():
    state = NetState()
    probe = alloc_probe(state, 5)
    other = alloc_probe(state, 6)
    assert find_probe(state, IPPROTO_UDP, 0, probe.sequence) is probe
    assert find_probe(state, IPPROTO_UDP, 0, other.sequence) is other
    assert find_probe(state, IPPROTO_UDP, 0, 1) is None


def test_format_mpls_string():
    labels = [MplsLabel(16, 0, 0, 255), MplsLabel(17, 3, 1, 254)]
    assert format_mpls_string(labels) == "16,0,0,255,17,3,1,254"
    assert format_mpls_string([]) == ""


def test_format_response_reply_ipv4():
    probe = Probe(token=12)
    line = format_probe_response(probe, ICMP_ECHOREPLY, _v4("192.0.2.9"), 1500)
    assert line == "12 reply ip-4 192.0.2.9 round-trip-time 1500"


def test_format_response_ttl_expired_ipv6_with_mpls():
    probe = Probe(token=3)
    remote = SockAddr(socket.AF_INET6, socket.inet_pton(socket.AF_INET6, "2001:db8::1"))
    line = format_probe_response(
        probe, ICMP_TIME_EXCEEDED, remote, 42, [MplsLabel(16, 0, 1, 255)]
    )
    assert line == "3 ttl-expired ip-6 2001:db8::1 round-trip-time 42 mpls 16,0,1,255"


def test_format_response_no_route():
    line = format_probe_response(Probe(token=1), ICMP_DEST_UNREACH, _v4("192.0.2.9"), 7)
    assert line.split()[1] == "no-route"


def test_format_response_rejects_unknown_type():
    with pytest.raises(ValueError):
        format_probe_response(Probe(token=1), 99, _v4("192.0.2.9"), 0)


def test_respond_to_probe_prints_and_frees(capsys):
    state = NetState()
    probe = alloc_probe(state, 21)
    respond_to_probe(state, probe, ICMP_ECHOREPLY, _v4("192.0.2.9"), 10)
    assert capsys.readouterr().out == "21 reply ip-4 192.0.2.9 round-trip-time 10\n"
    assert state.outstanding_probe_count == 0