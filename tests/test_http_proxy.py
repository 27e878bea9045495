import asyncio
import contextlib
import ipaddress

import pytest
from multidict import CIMultiDict

from tunnelkit.http_proxy import (
    ProxyServer,
    authority_addr,
    check_keep_alive,
    clear_hop_headers,
    connect_via_socks,
    main,
    set_conn_keep_alive,
)
from tunnelkit.socks_proto import Address, read_address


# ---------- pure helpers ----------


def test_authority_addr_domain_default_port():
    assert authority_addr("http", "example.com") == Address("example.com", 80)
    assert authority_addr(None, "example.com") == Address("example.com", 80)
    assert authority_addr("https", "example.com") == Address("example.com", 443)


def test_authority_addr_explicit_port_and_userinfo():
    assert authority_addr("ftp", "example.com:8080") == Address("example.com", 8080)
    assert authority_addr("http", "user@example.com:99") == Address("example.com", 99)


def test_authority_addr_ip_literals():
    assert authority_addr("http", "1.2.3.4:81") == Address(ipaddress.IPv4Address("1.2.3.4"), 81)
    assert authority_addr("https", "[::1]") == Address(ipaddress.IPv6Address("::1"), 443)


def test_authority_addr_rejects():
    assert authority_addr("ftp", "example.com") is None
    assert authority_addr("http", "[zz]") is None


def test_check_keep_alive_defaults():
    assert check_keep_alive("HTTP/1.1", CIMultiDict(), True) is True
    assert check_keep_alive("HTTP/1.0", CIMultiDict(), True) is False


def test_check_keep_alive_proxy_connection():
    headers = CIMultiDict({"Proxy-Connection": "keep-alive"})
    assert check_keep_alive("HTTP/1.0", headers, True) is True
    assert check_keep_alive("HTTP/1.0", headers, False) is False


def test_check_keep_alive_connection_overrides():
    headers = CIMultiDict({"Proxy-Connection": "keep-alive", "Connection": "close"})
    assert check_keep_alive("HTTP/1.1", headers, True) is False
    headers = CIMultiDict({"Connection": "Upgrade, Keep-Alive"})
    assert check_keep_alive("HTTP/1.0", headers, False) is True


def test_check_keep_alive_rejects_other_versions():
    with pytest.raises(ValueError):
        check_keep_alive("HTTP/2", CIMultiDict(), True)


def test_clear_hop_headers_removes_listed_and_standard():
    headers = CIMultiDict(
        [
            ("Host", "example.com"),
            ("Connection", "X-Drop, keep-alive"),
            ("X-Drop", "1"),
            ("Keep-Alive", "timeout=5"),
            ("Transfer-Encoding", "chunked"),
            ("X-Keep", "yes"),
        ]
    )
    clear_hop_headers(headers)
    assert list(headers.items()) == [("Host", "example.com"), ("X-Keep", "yes")]


def test_clear_hop_headers_close_names_nothing():
    headers = CIMultiDict([("Proxy-Connection", "close"), ("Close", "x")])
    clear_hop_headers(headers)
    assert list(headers.items()) == [("Close", "x")]


def test_set_conn_keep_alive():
    headers = CIMultiDict()
    set_conn_keep_alive("HTTP/1.0", headers, True)
    assert headers.getall("Connection") == ["keep-alive"]

    headers = CIMultiDict()
    set_conn_keep_alive("HTTP/1.0", headers, False)
    assert "Connection" not in headers

    headers = CIMultiDict({"Connection": "a", "connection": "b"})
    set_conn_keep_alive("HTTP/1.1", headers, False)
    assert headers.getall("Connection") == ["close"]

    headers = CIMultiDict()
    set_conn_keep_alive("HTTP/1.1", headers, True)
    assert "Connection" not in headers


@pytest.mark.asyncio
async def test_connect_via_socks_needs_host():
    with pytest.raises(OSError, match="URI must be a valid Address"):
        await connect_via_socks("/only/a/path", ("127.0.0.1", 1))


def test_main_rejects_bad_address():
    with pytest.raises(SystemExit):
        main(["--listen", "nonsense", "--socks", "127.0.0.1:1080"])


# ---------- end to end through fake servers ----------


async def _start(handler):
    server = await asyncio.start_server(handler, "127.0.0.1", 0)
    return server, server.sockets[0].getsockname()[1]


async def _read_message(reader):
    head = await reader.readuntil(b"\r\n\r\n")
    length = 0
    for line in head.split(b"\r\n")[1:]:
        name, _, value = line.partition(b":")
        if name.strip().lower() == b"content-length":
            length = int(value)
    body = await reader.readexactly(length)
    return head.decode("latin-1"), body


async def _copy(src, dst):
    while data := await src.read(4096):
        dst.write(data)
        await dst.drain()


class FakeSocks:
    def __init__(self, target_port, reply=0):
        self.target_port = target_port
        self.reply = reply
        self.requested = []

    async def handle(self, reader, writer):
        bound = Address(ipaddress.IPv4Address("0.0.0.0"), 0).to_bytes()
        try:
            greeting = await reader.readexactly(2)
            await reader.readexactly(greeting[1])
            writer.write(b"\x05\x00")
            await writer.drain()
            await reader.readexactly(3)
            self.requested.append(await read_address(reader))
            if self.reply:
                writer.write(bytes([5, self.reply, 0]) + bound)
                await writer.drain()
                return
            up_r, up_w = await asyncio.open_connection("127.0.0.1", self.target_port)
            writer.write(b"\x05\x00\x00" + bound)
            await writer.drain()
            tasks = [asyncio.ensure_future(_copy(reader, up_w)), asyncio.ensure_future(_copy(up_r, writer))]
            _, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            up_w.close()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()


class Upstream:
    def __init__(self, response):
        self.response = response
        self.requests = []

    async def handle(self, reader, writer):
        try:
            self.requests.append(await _read_message(reader))
            writer.write(self.response)
            await writer.drain()
        finally:
            writer.close()


async def _echo(reader, writer):
    try:
        await _copy(reader, writer)
    finally:
        writer.close()


@contextlib.asynccontextmanager
async def _proxy_chain(target_handler, reply=0):
    target, target_port = await _start(target_handler)
    socks = FakeSocks(target_port, reply)
    socks_server, socks_port = await _start(socks.handle)
    proxy = ProxyServer(("127.0.0.1", socks_port))
    proxy_server, proxy_port = await _start(proxy.handle_client)
    try:
        reader, writer = await asyncio.open_connection("127.0.0.1", proxy_port)
        try:
            yield reader, writer, socks
        finally:
            writer.close()
    finally:
        for server in (proxy_server, socks_server, target):
            server.close()


OK_RESPONSE = b"HTTP/1.1 200 OK\r\nContent-Length: 5\r\nKeep-Alive: timeout=5\r\n\r\nhello"


@pytest.mark.asyncio
async def test_get_absolute_uri_is_relayed():
    upstream = Upstream(OK_RESPONSE)
    async with _proxy_chain(upstream.handle) as (reader, writer, socks):
        writer.write(
            b"GET http://example.com/hello HTTP/1.1\r\nHost: example.com\r\n"
            b"Proxy-Connection: keep-alive\r\nConnection: X-Drop\r\nX-Drop: 1\r\n"
            b"X-Keep: yes\r\n\r\n"
        )
        await writer.drain()
        head, body = await asyncio.wait_for(_read_message(reader), 5)

    assert head.startswith("HTTP/1.1 200")
    assert body == b"hello"
    assert "keep-alive:" not in head.lower()
    assert socks.requested == [Address("example.com", 80)]
    raw, _ = upstream.requests[0]
    assert raw.split("\r\n")[0] == "GET /hello HTTP/1.1"
    assert "x-drop" not in raw.lower()
    assert "proxy-connection" not in raw.lower()
    assert "X-Keep: yes" in raw


@pytest.mark.asyncio
async def test_keep_alive_serves_two_requests():
    upstream = Upstream(OK_RESPONSE)
    async with _proxy_chain(upstream.handle) as (reader, writer, socks):
        for _ in range(2):
            writer.write(b"GET http://example.com/ HTTP/1.1\r\nHost: example.com\r\n\r\n")
            await writer.drain()
            _, body = await asyncio.wait_for(_read_message(reader), 5)
            assert body == b"hello"
    assert len(upstream.requests) == 2


@pytest.mark.asyncio
async def test_connection_close_closes_client():
    upstream = Upstream(OK_RESPONSE)
    async with _proxy_chain(upstream.handle) as (reader, writer, _):
        writer.write(b"GET http://example.com/ HTTP/1.1\r\nConnection: close\r\n\r\n")
        await writer.drain()
        head, body = await asyncio.wait_for(_read_message(reader), 5)
        rest = await asyncio.wait_for(reader.read(), 5)
    assert "Connection: close" in head
    assert body == b"hello"
    assert rest == b""
    raw, _ = upstream.requests[0]
    assert "Connection: close" in raw


@pytest.mark.asyncio
async def test_chunked_request_body_is_forwarded_with_length():
    upstream = Upstream(OK_RESPONSE)
    async with _proxy_chain(upstream.handle) as (reader, writer, _):
        writer.write(
            b"POST http://example.com/submit HTTP/1.1\r\nHost: example.com\r\n"
            b"Transfer-Encoding: chunked\r\n\r\n3\r\nabc\r\n2\r\nde\r\n0\r\n\r\n"
        )
        await writer.drain()
        await asyncio.wait_for(_read_message(reader), 5)
    raw, body = upstream.requests[0]
    assert body == b"abcde"
    assert "transfer-encoding" not in raw.lower()


@pytest.mark.asyncio
async def test_origin_form_uses_host_header():
    upstream = Upstream(OK_RESPONSE)
    async with _proxy_chain(upstream.handle) as (reader, writer, socks):
        writer.write(b"GET /path HTTP/1.1\r\nHost: example.org:8080\r\n\r\n")
        await writer.drain()
        head, _ = await asyncio.wait_for(_read_message(reader), 5)
    assert head.startswith("HTTP/1.1 200")
    assert socks.requested == [Address("example.org", 8080)]
    assert upstream.requests[0][0].split("\r\n")[0] == "GET /path HTTP/1.1"


@pytest.mark.asyncio
async def test_missing_host_is_bad_request():
    upstream = Upstream(OK_RESPONSE)
    async with _proxy_chain(upstream.handle) as (reader, writer, socks):
        writer.write(b"GET /path HTTP/1.1\r\n\r\n")
        await writer.drain()
        head, _ = await asyncio.wait_for(_read_message(reader), 5)
    assert head.startswith("HTTP/1.1 400")
    assert socks.requested == []


@pytest.mark.asyncio
async def test_relay_failure_is_internal_error():
    upstream = Upstream(OK_RESPONSE)
    async with _proxy_chain(upstream.handle, reply=5) as (reader, writer, _):
        writer.write(b"GET http://example.com/ HTTP/1.1\r\nHost: example.com\r\n\r\n")
        await writer.drain()
        head, body = await asyncio.wait_for(_read_message(reader), 5)
    assert head.startswith("HTTP/1.1 500")
    assert body == b"Relay failed to example.com:80"
    assert upstream.requests == []


@pytest.mark.asyncio
async def test_connect_tunnel_relays_bytes():
    async with _proxy_chain(_echo) as (reader, writer, socks):
        writer.write(b"CONNECT example.com:443 HTTP/1.1\r\nHost: example.com:443\r\n\r\n")
        await writer.drain()
        head = await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), 5)
        writer.write(b"ping through tunnel")
        await writer.drain()
        echoed = await asyncio.wait_for(reader.readexactly(len(b"ping through tunnel")), 5)
    assert head.startswith(b"HTTP/1.1 200")
    assert echoed == b"ping through tunnel"
    assert socks.requested == [Address("example.com", 443)]