"""SOCKS5 wire constants, reply codes and address encoding."""

from __future__ import annotations

import asyncio
import enum
import ipaddress
import socket
import struct
from dataclasses import dataclass
from typing import Optional, Tuple, Union

SOCKS5_VERSION = 0x05
AUTH_METHOD_NONE = 0x00
CMD_TCP_CONNECT = 0x01

Host = Union[ipaddress.IPv4Address, ipaddress.IPv6Address, str]


class AddrType(enum.IntEnum):
    """Address type tags used on the wire."""

    IPV4 = 0x01
    DOMAIN_NAME = 0x03
    IPV6 = 0x04


class Reply(enum.IntEnum):
    """Reply codes a SOCKS5 server may send."""

    SUCCEEDED = 0x00
    GENERAL_FAILURE = 0x01
    CONNECTION_NOT_ALLOWED = 0x02
    NETWORK_UNREACHABLE = 0x03
    HOST_UNREACHABLE = 0x04
    CONNECTION_REFUSED = 0x05
    TTL_EXPIRED = 0x06
    COMMAND_NOT_SUPPORTED = 0x07
    ADDRESS_TYPE_NOT_SUPPORTED = 0x08

    def __str__(self) -> str:
        return describe_reply(self)


_DESCRIPTIONS = {
    Reply.SUCCEEDED: "Succeeded",
    Reply.ADDRESS_TYPE_NOT_SUPPORTED: "Address type not supported",
    Reply.COMMAND_NOT_SUPPORTED: "Command not supported",
    Reply.CONNECTION_NOT_ALLOWED: "Connection not allowed",
    Reply.CONNECTION_REFUSED: "Connection refused",
    Reply.GENERAL_FAILURE: "General failure",
    Reply.HOST_UNREACHABLE: "Host unreachable",
    Reply.NETWORK_UNREACHABLE: "Network unreachable",
    Reply.TTL_EXPIRED: "TTL expired",
}


def describe_reply(reply: Union[Reply, int]) -> str:
    """Human-readable text for a reply code, known or not."""
    try:
        return _DESCRIPTIONS[Reply(reply)]
    except ValueError:
        return f"Other reply ({int(reply)})"


def reply_from_code(code: int) -> Union[Reply, int]:
    """Map a raw reply byte to a Reply, leaving unknown codes as plain ints."""
    try:
        return Reply(code)
    except ValueError:
        return code


class Socks5Error(Exception):
    """A SOCKS5 protocol failure carrying the reply code that describes it."""

    def __init__(self, reply: Union[Reply, int], message: str) -> None:
        super().__init__(message)
        self.reply = reply
        self.message = message

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True)
class Address:
    """A destination: an IP socket address or a domain name with a port."""

    host: Host
    port: int

    def __post_init__(self) -> None:
        if not isinstance(self.host, (ipaddress.IPv4Address, ipaddress.IPv6Address, str)):
            raise TypeError(f"unsupported host type {type(self.host).__name__}")
        if not 0 <= self.port <= 0xFFFF:
            raise ValueError(f"port out of range: {self.port}")

    @property
    def is_domain(self) -> bool:
        return isinstance(self.host, str)

    def __str__(self) -> str:
        if isinstance(self.host, ipaddress.IPv6Address):
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"

    def to_bytes(self) -> bytes:
        """Encode as the SOCKS5 address field: type, address, big-endian port."""
        port = struct.pack("!H", self.port)
        if isinstance(self.host, ipaddress.IPv4Address):
            return bytes([AddrType.IPV4]) + self.host.packed + port
        if isinstance(self.host, ipaddress.IPv6Address):
            return bytes([AddrType.IPV6]) + self.host.packed + port
        name = self.host.encode("utf-8")
        if len(name) > 0xFF:
            raise ValueError("domain name longer than 255 bytes")
        return bytes([AddrType.DOMAIN_NAME, len(name)]) + name + port

    def serialized_len(self) -> int:
        if isinstance(self.host, ipaddress.IPv4Address):
            return 1 + 4 + 2
        if isinstance(self.host, ipaddress.IPv6Address):
            return 1 + 8 * 2 + 2
        return 1 + 1 + len(self.host.encode("utf-8")) + 2

    def to_socket_addrs(self) -> list[Address]:
        """Resolve to IP addresses; IP addresses resolve to themselves."""
        if not self.is_domain:
            return [self]
        infos = socket.getaddrinfo(self.host, self.port, type=socket.SOCK_STREAM)
        resolved: list[Address] = []
        for family, _, _, _, sockaddr in infos:
            if family not in (socket.AF_INET, socket.AF_INET6):
                continue
            ip = ipaddress.ip_address(sockaddr[0].split("%", 1)[0])
            addr = Address(ip, sockaddr[1])
            if addr not in resolved:
                resolved.append(addr)
        return resolved


async def _read_address(reader: asyncio.StreamReader) -> Address:
    addr_type = (await reader.readexactly(1))[0]
    if addr_type == AddrType.IPV4:
        raw = await reader.readexactly(6)
        (port,) = struct.unpack("!H", raw[4:])
        return Address(ipaddress.IPv4Address(raw[:4]), port)
    if addr_type == AddrType.IPV6:
        raw = await reader.readexactly(18)
        (port,) = struct.unpack("!H", raw[16:])
        return Address(ipaddress.IPv6Address(raw[:16]), port)
    if addr_type == AddrType.DOMAIN_NAME:
        length = (await reader.readexactly(1))[0]
        raw = await reader.readexactly(length + 2)
        try:
            name = raw[:length].decode("utf-8")
        except UnicodeDecodeError:
            raise Socks5Error(Reply.GENERAL_FAILURE, "invalid address encoding") from None
        (port,) = struct.unpack("!H", raw[length:])
        return Address(name, port)
    raise Socks5Error(
        Reply.ADDRESS_TYPE_NOT_SUPPORTED,
        f"not supported addres type {addr_type:#x}",
    )


async def read_address(reader: asyncio.StreamReader) -> Address:
    """Read a SOCKS5 address field from a stream."""
    try:
        return await _read_address(reader)
    except asyncio.IncompleteReadError as exc:
        raise Socks5Error(Reply.GENERAL_FAILURE, str(exc)) from exc


def _split_uri(uri: str) -> Tuple[Optional[str], Optional[str]]:
    """Return the scheme and authority of a request target."""
    if not uri or uri.startswith("/") or uri == "*":
        return None, None
    scheme, sep, rest = uri.partition("://")
    if not sep:
        return None, uri
    if not scheme:
        return None, None
    end = min((i for i in (rest.find(c) for c in "/?#") if i >= 0), default=len(rest))
    return scheme.lower(), rest[:end]


def _parse_port(text: str) -> int:
    if not (text.isascii() and text.isdigit()) or int(text) > 0xFFFF:
        raise ValueError(f"invalid port {text!r}")
    return int(text)


def _split_authority(authority: str) -> Tuple[str, Optional[int]]:
    """Split an authority into host (brackets kept) and optional port."""
    hostport = authority.rpartition("@")[2]
    if hostport.startswith("["):
        close = hostport.find("]")
        if close < 0:
            raise ValueError("unterminated IPv6 literal")
        host, rest = hostport[: close + 1], hostport[close + 1 :]
        if not rest:
            return host, None
        if not rest.startswith(":"):
            raise ValueError("garbage after IPv6 literal")
        port_text = rest[1:]
    else:
        host, sep, port_text = hostport.partition(":")
        if not sep:
            return host, None
    if not port_text:
        return host, None
    return host, _parse_port(port_text)


def _parse_socket_addr(text: str) -> Optional[Address]:
    try:
        if text.startswith("["):
            ip_text, sep, port_text = text[1:].partition("]:")
            if not sep or "%" in ip_text:
                return None
            return Address(ipaddress.IPv6Address(ip_text), _parse_port(port_text))
        ip_text, sep, port_text = text.rpartition(":")
        if not sep:
            return None
        return Address(ipaddress.IPv4Address(ip_text), _parse_port(port_text))
    except ValueError:
        return None


_DEFAULT_PORTS = {None: 80, "http": 80, "https": 443}


def host_addr(uri: str) -> Optional[Address]:
    """Extract the destination address from a request URI, or None."""
    scheme, authority = _split_uri(uri)
    if not authority:
        return None
    try:
        host, port = _split_authority(authority)
    except ValueError:
        return None
    if port is not None:
        return _parse_socket_addr(authority) or Address(host, port)
    default_port = _DEFAULT_PORTS.get(scheme)
    if default_port is None:
        return None
    if authority.startswith("[") and authority.endswith("]"):
        try:
            return Address(ipaddress.ip_address(authority.lstrip("[").rstrip("]")), default_port)
        except ValueError:
            return None
    try:
        return Address(ipaddress.ip_address(authority), default_port)
    except ValueError:
        return Address(authority, default_port)