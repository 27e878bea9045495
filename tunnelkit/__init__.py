"""Building blocks for encrypted tunnels: SOCKS5 and HTTP proxying, backhauls, blind signatures and FEC."""

__version__ = "0.1.0"

__all__ = [
    "aioutils",
    "backhaul",
    "fec",
    "http_proxy",
    "mizaru",
    "nursery",
    "reed_solomon",
    "scheduler",
    "socks5",
    "socks_proto",
]