"""Socket addresses for IPv4 and IPv6 with their wire sizes."""

from __future__ import annotations

import socket
from dataclasses import dataclass, replace

_ADDR_SIZES = {socket.AF_INET: 4, socket.AF_INET6: 16}
_SOCKADDR_SIZES = {socket.AF_INET: 16, socket.AF_INET6: 28}


@dataclass(frozen=True)
class SockAddr:
    """An address family, packed address bytes and port."""

    family: int
    address: bytes
    port: int = 0
    flowinfo: int = 0
    scope_id: int = 0

    def __post_init__(self) -> None:
        expected = _ADDR_SIZES.get(self.family)
        if expected is not None and len(self.address) != expected:
            raise ValueError(
                f"address of family {self.family} must be {expected} bytes"
            )

    @property
    def host(self) -> str:
        """The address in its textual form."""
        return socket.inet_ntop(self.family, self.address)

    def addr_size(self) -> int:
        """Size in bytes of the packed address, or 0 for unknown families."""
        return _ADDR_SIZES.get(self.family, 0)

    def size(self) -> int:
        """Size in bytes of the full socket address structure, or 0."""
        return _SOCKADDR_SIZES.get(self.family, 0)

    def with_port(self, port: int) -> SockAddr:
        """Return a copy carrying a different port."""
        return replace(self, port=port)

    def to_tuple(self) -> tuple:
        """Return the address in the form the socket module expects."""
        if self.family == socket.AF_INET:
            return (self.host, self.port)
        if self.family == socket.AF_INET6:
            return (self.host, self.port, self.flowinfo, self.scope_id)
        raise ValueError(f"unsupported address family {self.family}")

    @classmethod
    def from_tuple(cls, family: int, address: tuple) -> SockAddr:
        """Build from a socket-module address tuple of the given family."""
        if family not in _ADDR_SIZES:
            raise ValueError(f"unsupported address family {family}")
        host = str(address[0]).split("%", 1)[0]
        try:
            packed = socket.inet_pton(family, host)
        except OSError as exc:
            raise ValueError(f"invalid address {host!r}") from exc
        port = int(address[1]) if len(address) > 1 else 0
        if family == socket.AF_INET6:
            flowinfo = int(address[2]) if len(address) > 2 else 0
            scope_id = int(address[3]) if len(address) > 3 else 0
            return cls(family, packed, port, flowinfo, scope_id)
        return cls(family, packed, port)