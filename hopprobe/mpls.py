"""Decoding MPLS label stacks from ICMP extension objects."""

from __future__ import annotations

import struct

from hopprobe.model import MplsLabel

ICMP_ORIGINAL_DATAGRAM_MIN_SIZE = 128
ICMP_EXT_MPLS_CLASSNUM = 1
ICMP_EXT_MPLS_CTYPE = 1
MAX_MPLS_LABELS = 8

_ICMP_HEADER_SIZE = 8
_EXT_HEADER_SIZE = 4
_EXT_OBJECT_SIZE = 4
_LABEL_SIZE = 4
_EXT_VERSION = 0x20


def _decode_labels(body: bytes, max_labels: int) -> list[MplsLabel]:
    count = min(max_labels, len(body) // _LABEL_SIZE)
    labels = []
    for b0, b1, b2, ttl in struct.iter_unpack("!BBBB", body[: count * _LABEL_SIZE]):
        labels.append(
            MplsLabel(
                label=b0 << 12 | b1 << 4 | b2 >> 4,
                traffic_class=(b2 & 0x0E) >> 1,
                bottom_of_stack=b2 & 0x01,
                ttl=ttl,
            )
        )
    return labels


def decode_mpls_labels(
    icmp_packet: bytes, max_labels: int = MAX_MPLS_LABELS
) -> list[MplsLabel]:
    """Return the MPLS labels in an ICMP message's extension, if any.

    icmp_packet starts at the ICMP header.  Malformed or absent
    extensions yield an empty list.
    """
    header_end = _ICMP_HEADER_SIZE + ICMP_ORIGINAL_DATAGRAM_MIN_SIZE
    objects_start = header_end + _EXT_HEADER_SIZE
    if len(icmp_packet) < objects_start:
        return []
    if icmp_packet[header_end] & 0xF0 != _EXT_VERSION:
        return []

    offset = objects_start
    remaining = len(icmp_packet) - objects_start
    while remaining >= _EXT_OBJECT_SIZE:
        obj_len, classnum, ctype = struct.unpack_from("!HBB", icmp_packet, offset)
        if obj_len > remaining or obj_len < _EXT_OBJECT_SIZE:
            return []
        if classnum == ICMP_EXT_MPLS_CLASSNUM and ctype == ICMP_EXT_MPLS_CTYPE:
            body = icmp_packet[offset + _EXT_OBJECT_SIZE : offset + obj_len]
            return _decode_labels(body, max_labels)
        remaining -= obj_len
        offset += obj_len
    return []