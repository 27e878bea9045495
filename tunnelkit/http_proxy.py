"""HTTP proxy that forwards every request through a SOCKS5 proxy."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import ipaddress
import logging
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple, Union

from multidict import CIMultiDict

from tunnelkit.socks5 import connect as socks5_connect
from tunnelkit.socks_proto import Address, _split_authority, _split_uri, host_addr

log = logging.getLogger(__name__)

HTTP_10 = "HTTP/1.0"
HTTP_11 = "HTTP/1.1"

HOP_BY_HOP_HEADERS = (
    "Keep-Alive",
    "Transfer-Encoding",
    "TE",
    "Connection",
    "Trailer",
    "Upgrade",
    "Proxy-Authorization",
    "Proxy-Authenticate",
    "Proxy-Connection",
)

_DEFAULT_PORTS = {None: 80, "http": 80, "https": 443}

Endpoint = Union[Address, Tuple[str, int], str]
Headers = CIMultiDict


class _BadMessage(ValueError):
    """A malformed HTTP message."""


def _require_supported(version: str) -> None:
    if version not in (HTTP_10, HTTP_11):
        raise ValueError("HTTP Proxy only supports 1.0 and 1.1")


def _header_values(headers: Headers, name: str) -> Iterator[str]:
    return (value for value in headers.getall(name, []) if value.isascii())


def _endpoint(value: Endpoint) -> Tuple[str, int]:
    if isinstance(value, Address):
        return str(value.host), value.port
    if isinstance(value, str):
        host, sep, port = value.rpartition(":")
        if not sep or not host or not (port.isascii() and port.isdigit()) or int(port) > 0xFFFF:
            raise ValueError(f"invalid address {value!r}")
        return host.strip("[]"), int(port)
    host, port = value
    return host, int(port)


def authority_addr(scheme: Optional[str], authority: str) -> Optional[Address]:
    """Destination named by a Host-style authority; userinfo is ignored."""
    try:
        host, port = _split_authority(authority)
    except ValueError:
        return None
    if not host:
        return None
    if port is None:
        port = _DEFAULT_PORTS.get(scheme)
        if port is None:
            return None
    if host.startswith("[") and host.endswith("]"):
        try:
            return Address(ipaddress.IPv6Address(host[1:-1]), port)
        except ValueError:
            return None
    try:
        return Address(ipaddress.IPv4Address(host), port)
    except ValueError:
        return Address(host, port)


def check_keep_alive(version: str, headers: Headers, check_proxy: bool) -> bool:
    """Whether the connection should persist, per version and connection headers."""
    _require_supported(version)
    keep_alive = version == HTTP_11
    names = ("Proxy-Connection", "Connection") if check_proxy else ("Connection",)
    for name in names:
        for value in _header_values(headers, name):
            if value.lower() == "close":
                keep_alive = False
            elif any(part.strip().lower() == "keep-alive" for part in value.split(",")):
                keep_alive = True
    return keep_alive


def clear_hop_headers(headers: Headers) -> None:
    """Remove hop-by-hop headers and any headers the connection headers name."""
    extra = [
        part.strip()
        for name in ("Connection", "Proxy-Connection")
        for value in _header_values(headers, name)
        if value.lower() != "close"
        for part in value.split(",")
        if part.strip().lower() != "keep-alive"
    ]
    for header in (*extra, *HOP_BY_HOP_HEADERS):
        if header:
            headers.popall(header, None)


def set_conn_keep_alive(version: str, headers: Headers, keep_alive: bool) -> None:
    """Set a Connection header where the version's default differs from keep_alive."""
    _require_supported(version)
    if version == HTTP_10 and keep_alive:
        headers["Connection"] = "keep-alive"
    elif version == HTTP_11 and not keep_alive:
        headers["Connection"] = "close"


async def connect_via_socks(
    uri: str, proxy: Endpoint
) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    """Open a stream to the host named by ``uri`` through the SOCKS5 proxy."""
    addr = host_addr(uri)
    if addr is None:
        raise OSError("URI must be a valid Address")
    return await socks5_connect(addr, _endpoint(proxy))


async def _read_head(reader: asyncio.StreamReader) -> Optional[Tuple[str, Headers]]:
    line = await reader.readline()
    while line in (b"\r\n", b"\n"):
        line = await reader.readline()
    if not line:
        return None
    start = line.decode("latin-1").rstrip("\r\n")
    headers: Headers = CIMultiDict()
    while True:
        line = await reader.readline()
        if not line:
            raise _BadMessage("connection closed inside headers")
        text = line.decode("latin-1").rstrip("\r\n")
        if not text:
            return start, headers
        name, sep, value = text.partition(":")
        if not sep or not name.strip() or name != name.strip():
            raise _BadMessage(f"malformed header line {text!r}")
        headers.add(name, value.strip())


async def _read_chunked(reader: asyncio.StreamReader) -> bytes:
    parts: List[bytes] = []
    while True:
        line = await reader.readline()
        if not line:
            raise _BadMessage("connection closed inside chunked body")
        try:
            size = int(line.split(b";", 1)[0].strip(), 16)
        except ValueError:
            raise _BadMessage("invalid chunk size") from None
        if size == 0:
            while (await reader.readline()).strip():
                pass
            return b"".join(parts)
        parts.append(await reader.readexactly(size))
        await reader.readexactly(2)


async def _read_body(reader: asyncio.StreamReader, headers: Headers, until_eof: bool) -> bytes:
    encodings = ",".join(headers.getall("Transfer-Encoding", []))
    if encodings and encodings.split(",")[-1].strip().lower() == "chunked":
        return await _read_chunked(reader)
    lengths = headers.getall("Content-Length", [])
    if lengths:
        text = lengths[0].strip()
        if not (text.isascii() and text.isdigit()):
            raise _BadMessage(f"invalid content length {text!r}")
        return await reader.readexactly(int(text))
    return await reader.read() if until_eof else b""


def _serialize(start_line: str, headers: Headers, body: bytes = b"") -> bytes:
    lines = [start_line, *(f"{name}: {value}" for name, value in headers.items())]
    return ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1") + body


def _simple_response(status: int, reason: str, body: bytes = b"") -> bytes:
    headers: Headers = CIMultiDict({"Content-Length": str(len(body))})
    return _serialize(f"{HTTP_11} {status} {reason}", headers, body)


def _origin_form(uri: str) -> str:
    scheme, authority = _split_uri(uri)
    if authority is None:
        return uri or "/"
    if scheme is None:
        return "/"
    rest = uri.partition("://")[2][len(authority):]
    if rest and not rest.startswith("/"):
        rest = "/" + rest
    return rest or "/"


def _looks_like_authority(text: str) -> bool:
    return bool(text) and not any(c.isspace() or c in "/?#" for c in text)


@dataclass
class _Upstream:
    version: str
    status: int
    reason: str
    headers: Headers
    body: bytes
    has_body: bool


async def _pipe(src: asyncio.StreamReader, dst: asyncio.StreamWriter) -> None:
    while data := await src.read(65536):
        dst.write(data)
        await dst.drain()


@dataclass
class ProxyServer:
    """HTTP/1 proxy that relays requests and CONNECT tunnels through SOCKS5."""

    proxy_addr: Endpoint

    def __post_init__(self) -> None:
        self.proxy_addr = _endpoint(self.proxy_addr)

    async def handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Serve HTTP requests from one client connection until it ends."""
        peer = writer.get_extra_info("peername")
        try:
            while await self._serve_one(reader, writer, peer):
                pass
        except _BadMessage as exc:
            log.debug("bad request from %s: %s", peer, exc)
            with contextlib.suppress(Exception):
                writer.write(_simple_response(400, "Bad Request"))
                await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError) as exc:
            log.debug("connection from %s ended: %s", peer, exc)
        except Exception as exc:
            log.error("request from %s failed: %s", peer, exc)
        finally:
            writer.close()
            with contextlib.suppress(Exception):
                await writer.wait_closed()

    async def _serve_one(self, reader, writer, peer) -> bool:
        head = await _read_head(reader)
        if head is None:
            return False
        start, headers = head
        parts = start.split(" ")
        if len(parts) != 3:
            raise _BadMessage(f"malformed request line {start!r}")
        method, target, version = parts
        if version not in (HTTP_10, HTTP_11):
            raise _BadMessage(f"unsupported version {version!r}")
        client_keep_alive = check_keep_alive(version, headers, False)
        is_connect = method == "CONNECT"
        body = b"" if is_connect else await _read_body(reader, headers, until_eof=False)

        uri = target
        host = host_addr(target)
        if host is None:
            scheme, authority = _split_uri(target)
            if authority:
                log.error("HTTP %s URI %s doesn't have a valid host", method, target)
                return await self._reply(writer, _simple_response(400, "Bad Request"), client_keep_alive)
            host_values = list(_header_values(headers, "Host"))
            if not host_values or not _looks_like_authority(host_values[0]):
                return await self._reply(writer, _simple_response(400, "Bad Request"), client_keep_alive)
            host_header = host_values[0]
            host = authority_addr(scheme, host_header)
            if host is None:
                log.error("HTTP %s URI %s \"Host\" header invalid, value: %s", method, target, host_header)
                return await self._reply(writer, _simple_response(400, "Bad Request"), client_keep_alive)
            uri = f"{scheme or 'http'}://{host_header}{target}"
            log.debug("Reassembled URI from \"Host\", %s", uri)

        if is_connect:
            await self._tunnel(reader, writer, host, peer)
            return False

        log.debug("HTTP %s %s", method, host)
        conn_keep_alive = check_keep_alive(version, headers, True)
        clear_hop_headers(headers)
        set_conn_keep_alive(version, headers, conn_keep_alive)
        if body or "Content-Length" in headers:
            headers["Content-Length"] = str(len(body))
        try:
            upstream = await self._forward(method, uri, version, headers, body)
            res_keep_alive = conn_keep_alive and check_keep_alive(
                upstream.version, upstream.headers, False
            )
            clear_hop_headers(upstream.headers)
            set_conn_keep_alive(upstream.version, upstream.headers, res_keep_alive)
        except Exception as exc:
            log.error("HTTP %s %s <-> %s (%s) relay failed, error: %s",
                      method, peer, self.proxy_addr, host, exc)
            message = f"Relay failed to {host}".encode("utf-8")
            return await self._reply(
                writer, _simple_response(500, "Internal Server Error", message), conn_keep_alive
            )
        if upstream.has_body:
            upstream.headers["Content-Length"] = str(len(upstream.body))
        start_line = f"{upstream.version} {upstream.status} {upstream.reason}".rstrip()
        return await self._reply(
            writer, _serialize(start_line, upstream.headers, upstream.body), res_keep_alive
        )

    @staticmethod
    async def _reply(writer: asyncio.StreamWriter, data: bytes, keep_alive: bool) -> bool:
        writer.write(data)
        await writer.drain()
        return keep_alive

    async def _forward(self, method, uri, version, headers, body) -> _Upstream:
        up_reader, up_writer = await connect_via_socks(uri, self.proxy_addr)
        try:
            if "Host" not in headers:
                _, authority = _split_uri(uri)
                headers["Host"] = (authority or "").rpartition("@")[2]
            up_writer.write(_serialize(f"{method} {_origin_form(uri)} {version}", headers, body))
            await up_writer.drain()
            while True:
                head = await _read_head(up_reader)
                if head is None:
                    raise ConnectionError("upstream closed without a response")
                start, res_headers = head
                parts = start.split(" ", 2)
                if len(parts) < 2 or not parts[1].isdigit():
                    raise _BadMessage(f"malformed status line {start!r}")
                status = int(parts[1])
                if not (100 <= status < 200) or status == 101:
                    break
            has_body = not (method == "HEAD" or 100 <= status < 200 or status in (204, 304))
            res_body = await _read_body(up_reader, res_headers, until_eof=True) if has_body else b""
            reason = parts[2] if len(parts) > 2 else ""
            return _Upstream(parts[0], status, reason, res_headers, res_body, has_body)
        finally:
            up_writer.close()

    async def _tunnel(self, reader, writer, host: Address, peer) -> None:
        up_reader, up_writer = await socks5_connect(host, self.proxy_addr)
        log.debug("CONNECT relay connected %s <-> %s (%s)", peer, self.proxy_addr, host)
        try:
            writer.write(f"{HTTP_11} 200 OK\r\n\r\n".encode("latin-1"))
            await writer.drain()
            tasks = [
                asyncio.ensure_future(_pipe(reader, up_writer)),
                asyncio.ensure_future(_pipe(up_reader, writer)),
            ]
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                if task.exception() is not None:
                    log.debug("CONNECT relay %s (%s) closed with error %s",
                              peer, host, task.exception())
            log.debug("CONNECT relay %s <-> %s (%s) closed", peer, self.proxy_addr, host)
        finally:
            up_writer.close()

    async def serve(self, listen_addr: Endpoint) -> None:
        """Listen on ``listen_addr`` and serve clients forever."""
        host, port = _endpoint(listen_addr)
        server = await asyncio.start_server(self.handle_client, host, port)
        log.debug("listening on %s:%s", host, port)
        async with server:
            await server.serve_forever()


async def run(listen_addr: Endpoint, proxy_addr: Endpoint) -> None:
    """Run an HTTP proxy on ``listen_addr`` relaying through ``proxy_addr``."""
    await ProxyServer(proxy_addr).serve(listen_addr)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="tunnelkit-http-proxy",
        description="HTTP proxy that relays through a SOCKS5 proxy.",
    )
    parser.add_argument("--listen", required=True, help="host:port to listen on")
    parser.add_argument("--socks", required=True, help="host:port of the SOCKS5 proxy")
    args = parser.parse_args(argv)
    try:
        listen = _endpoint(args.listen)
        socks = _endpoint(args.socks)
    except ValueError as exc:
        parser.error(str(exc))
    logging.basicConfig(level=logging.INFO)
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(run(listen, socks))
    return 0