"""SOCKS5 client messages and the CONNECT handshake."""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass
from typing import Tuple, Union

from tunnelkit.socks_proto import (
    AUTH_METHOD_NONE,
    CMD_TCP_CONNECT,
    SOCKS5_VERSION,
    Address,
    Reply,
    Socks5Error,
    describe_reply,
    read_address,
    reply_from_code,
)


class Command(enum.IntEnum):
    """SOCKS5 commands this client issues."""

    TCP_CONNECT = CMD_TCP_CONNECT


@dataclass(frozen=True)
class TcpRequestHeader:
    """A request asking the proxy to run a command against an address."""

    command: Command
    address: Address

    def to_bytes(self) -> bytes:
        return bytes([SOCKS5_VERSION, self.command, 0x00]) + self.address.to_bytes()

    def serialized_len(self) -> int:
        return self.address.serialized_len() + 3

    async def write_to(self, writer: asyncio.StreamWriter) -> None:
        writer.write(self.to_bytes())
        await writer.drain()


@dataclass(frozen=True)
class HandshakeRequest:
    """The greeting listing the authentication methods the client offers."""

    methods: bytes

    def __post_init__(self) -> None:
        object.__setattr__(self, "methods", bytes(self.methods))
        if len(self.methods) > 0xFF:
            raise ValueError("at most 255 authentication methods")

    def to_bytes(self) -> bytes:
        return bytes([SOCKS5_VERSION, len(self.methods)]) + self.methods

    def serialized_len(self) -> int:
        return 2 + len(self.methods)

    async def write_to(self, writer: asyncio.StreamWriter) -> None:
        writer.write(self.to_bytes())
        await writer.drain()


@dataclass(frozen=True)
class HandshakeResponse:
    """The server's choice of authentication method."""

    chosen_method: int


@dataclass(frozen=True)
class TcpResponseHeader:
    """The server's reply to a request, with the bound address."""

    reply: Union[Reply, int]
    address: Address


async def read_handshake_response(reader: asyncio.StreamReader) -> HandshakeResponse:
    """Read the server's method selection; raises ValueError on a bad version."""
    version, method = await reader.readexactly(2)
    if version != SOCKS5_VERSION:
        raise ValueError(f"unsupported socks version {version:#x}")
    return HandshakeResponse(chosen_method=method)


async def read_tcp_response_header(reader: asyncio.StreamReader) -> TcpResponseHeader:
    """Read a reply header from the server."""
    try:
        version, reply_code, _ = await reader.readexactly(3)
    except asyncio.IncompleteReadError as exc:
        raise Socks5Error(Reply.GENERAL_FAILURE, str(exc)) from exc
    if version != SOCKS5_VERSION:
        raise Socks5Error(Reply.CONNECTION_REFUSED, f"unsupported socks version {version:#x}")
    address = await read_address(reader)
    return TcpResponseHeader(reply=reply_from_code(reply_code), address=address)


def _proxy_endpoint(proxy: Union[Address, Tuple[str, int]]) -> Tuple[str, int]:
    if isinstance(proxy, Address):
        return str(proxy.host), proxy.port
    host, port = proxy
    return host, port


async def connect(
    addr: Address, proxy: Union[Address, Tuple[str, int]]
) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Open a stream to ``addr`` tunnelled through the SOCKS5 proxy at ``proxy``."""
    host, port = _proxy_endpoint(proxy)
    reader, writer = await asyncio.open_connection(host, port)
    try:
        await HandshakeRequest(bytes([AUTH_METHOD_NONE])).write_to(writer)
        response = await read_handshake_response(reader)
        if response.chosen_method != AUTH_METHOD_NONE:
            raise Socks5Error(
                Reply.GENERAL_FAILURE,
                f"proxy chose unsupported auth method {response.chosen_method:#x}",
            )
        await TcpRequestHeader(Command.TCP_CONNECT, addr).write_to(writer)
        header = await read_tcp_response_header(reader)
        if header.reply != Reply.SUCCEEDED:
            raise Socks5Error(header.reply, describe_reply(header.reply))
    except BaseException:
        writer.close()
        raise
    return reader, writer