"""Build network probe packets, track probes in flight and match ICMP replies to them."""

__version__ = "0.1.0"