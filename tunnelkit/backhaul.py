"""Datagram backhauls: an abstract packet transport, a statistics wrapper and UDP."""

from __future__ import annotations

import abc
import asyncio
from typing import Callable, List, Optional, Sequence, Tuple, Union

SocketAddr = Tuple[str, int]
Datagram = Tuple[bytes, SocketAddr]

RECV_BUFFER = 2048
"""Largest datagram a UDP backhaul returns; longer ones are truncated."""


class Backhaul(abc.ABC):
    """A datagram transport in the style of a packet connection."""

    @abc.abstractmethod
    async def send_to(self, to_send: bytes, dest: SocketAddr) -> None:
        """Send one datagram."""

    async def send_to_many(self, to_send: Sequence[Datagram]) -> None:
        """Send several datagrams, in order."""
        for data, dest in to_send:
            await self.send_to(data, dest)

    @abc.abstractmethod
    async def recv_from(self) -> Datagram:
        """Wait for the next datagram."""

    async def recv_from_many(self) -> List[Datagram]:
        """Wait for one or more datagrams."""
        return [await self.recv_from()]


class StatsBackhaul(Backhaul):
    """Wraps a backhaul, reporting the size and peer of datagrams through callbacks."""

    def __init__(
        self,
        haul: Backhaul,
        on_recv: Callable[[int, SocketAddr], None],
        on_send: Callable[[int, SocketAddr], None],
    ) -> None:
        self.haul = haul
        self.on_recv = on_recv
        self.on_send = on_send

    async def send_to(self, to_send: bytes, dest: SocketAddr) -> None:
        self.on_send(len(to_send), dest)
        await self.haul.send_to(to_send, dest)

    async def send_to_many(self, to_send: Sequence[Datagram]) -> None:
        # Batched sends are reported through the receive callback.
        for data, dest in to_send:
            self.on_recv(len(data), dest)
        await self.haul.send_to_many(to_send)

    async def recv_from(self) -> Datagram:
        data, addr = await self.haul.recv_from()
        self.on_recv(len(data), addr)
        return data, addr

    async def recv_from_many(self) -> List[Datagram]:
        datagrams = await self.haul.recv_from_many()
        for data, addr in datagrams:
            self.on_recv(len(data), addr)
        return datagrams


class _UdpProtocol(asyncio.DatagramProtocol):
    def __init__(self) -> None:
        self.queue: "asyncio.Queue[Union[Datagram, Exception]]" = asyncio.Queue()
        self.closed: Optional[Exception] = None

    def datagram_received(self, data: bytes, addr) -> None:
        self.queue.put_nowait((bytes(data[:RECV_BUFFER]), (addr[0], addr[1])))

    def error_received(self, exc: Exception) -> None:
        self.queue.put_nowait(exc)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self.closed = exc or ConnectionAbortedError("socket closed")
        self.queue.put_nowait(self.closed)


class UdpBackhaul(Backhaul):
    """A backhaul over an asyncio UDP socket."""

    def __init__(self, transport: asyncio.DatagramTransport, protocol: _UdpProtocol) -> None:
        self._transport = transport
        self._protocol = protocol

    @property
    def local_addr(self) -> SocketAddr:
        sockname = self._transport.get_extra_info("sockname")
        return sockname[0], sockname[1]

    async def send_to(self, to_send: bytes, dest: SocketAddr) -> None:
        if self._transport.is_closing():
            raise ConnectionAbortedError("socket closed")
        self._transport.sendto(bytes(to_send), dest)
        await asyncio.sleep(0)

    async def recv_from(self) -> Datagram:
        item = await self._protocol.queue.get()
        if isinstance(item, Exception):
            if item is self._protocol.closed:
                self._protocol.queue.put_nowait(item)
            raise item
        return item

    def close(self) -> None:
        self._transport.close()


def _local_endpoint(addr: Union[SocketAddr, str]) -> SocketAddr:
    if isinstance(addr, str):
        host, sep, port = addr.rpartition(":")
        if not sep or not (port.isascii() and port.isdigit()):
            raise ValueError(f"invalid address {addr!r}")
        return host.strip("[]"), int(port)
    host, port = addr
    return host, int(port)


async def open_udp_backhaul(addr: Union[SocketAddr, str]) -> UdpBackhaul:
    """Bind a UDP socket at ``addr`` and return it as a backhaul."""
    loop = asyncio.get_running_loop()
    transport, protocol = await loop.create_datagram_endpoint(
        _UdpProtocol, local_addr=_local_endpoint(addr)
    )
    return UdpBackhaul(transport, protocol)