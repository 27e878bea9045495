"""Small asyncio helpers: length-prefixed framing, stream copying and DNS."""

from __future__ import annotations

import asyncio
import socket
import struct
from typing import Any, Awaitable, BinaryIO, Callable, List, Tuple, TypeVar

import msgpack

IDLE_TIMEOUT = 86400.0
"""Seconds a copy may sit idle before it gives up."""

_MAX_FRAME = 0xFFFF
_ASYNC_CHUNK = 8192
_SYNC_CHUNK = 32768

T = TypeVar("T")


async def read_pascalish(reader: asyncio.StreamReader) -> Any:
    """Read a msgpack value preceded by a 16-bit big-endian length."""
    (length,) = struct.unpack("!H", await reader.readexactly(2))
    body = await reader.readexactly(length)
    return msgpack.unpackb(body, raw=False)


async def write_pascalish(writer: asyncio.StreamWriter, value: Any) -> None:
    """Write a msgpack value preceded by a 16-bit big-endian length."""
    body = msgpack.packb(value, use_bin_type=True)
    if len(body) > _MAX_FRAME:
        raise ValueError(f"serialized value is {len(body)} bytes, more than {_MAX_FRAME}")
    writer.write(struct.pack("!H", len(body)) + body)
    await writer.drain()


async def _before_deadline(awaitable: Awaitable[T], deadline: float) -> T:
    remaining = max(deadline - asyncio.get_running_loop().time(), 0.0)
    try:
        return await asyncio.wait_for(awaitable, remaining)
    except asyncio.TimeoutError:
        raise TimeoutError("copy_with_stats timeout") from None


async def copy_with_stats(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    on_write: Callable[[int], None],
) -> None:
    """Copy ``reader`` to ``writer`` until EOF, reporting each chunk's size.

    Raises TimeoutError if the copy stays idle for IDLE_TIMEOUT seconds.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + IDLE_TIMEOUT
    while True:
        data = await _before_deadline(reader.read(_ASYNC_CHUNK), deadline)
        if not data:
            return
        on_write(len(data))
        deadline = loop.time() + IDLE_TIMEOUT
        writer.write(data)
        await _before_deadline(writer.drain(), deadline)


def copy_with_stats_sync(
    reader: BinaryIO, writer: BinaryIO, on_write: Callable[[int], None]
) -> None:
    """Blocking copy from ``reader`` to ``writer``, reporting each chunk's size."""
    while data := reader.read(_SYNC_CHUNK):
        on_write(len(data))
        writer.write(data)


async def recv_chan_many(queue: "asyncio.Queue[T]") -> List[T]:
    """Wait for one item, then return it with every item already queued."""
    items = [await queue.get()]
    while True:
        try:
            items.append(queue.get_nowait())
        except asyncio.QueueEmpty:
            return items


def _split_host_port(host_port: str) -> Tuple[str, int]:
    host, sep, port_text = host_port.rpartition(":")
    if not sep:
        raise OSError("no port in address")
    if not (port_text.isascii() and port_text.isdigit()) or int(port_text) > 0xFFFF:
        raise OSError(f"invalid port {port_text!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    if not host:
        raise OSError("no host in address")
    return host, int(port_text)


async def resolve(host_port: str) -> List[Tuple[str, int]]:
    """Resolve ``host:port`` into a list of (ip, port) socket addresses."""
    host, port = _split_host_port(host_port)
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    resolved: List[Tuple[str, int]] = []
    for family, _, _, _, sockaddr in infos:
        if family not in (socket.AF_INET, socket.AF_INET6):
            continue
        addr = (sockaddr[0], sockaddr[1])
        if addr not in resolved:
            resolved.append(addr)
    return resolved