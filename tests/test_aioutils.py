import asyncio
import io

import pytest

from tunnelkit.aioutils import (
    copy_with_stats,
    copy_with_stats_sync,
    read_pascalish,
    recv_chan_many,
    resolve,
    write_pascalish,
)


class Sink:
    def __init__(self):
        self.data = bytearray()

    def write(self, chunk):
        self.data.extend(chunk)

    async def drain(self):
        await asyncio.sleep(0)


def reader_with(data: bytes, eof: bool = True) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    if eof:
        reader.feed_eof()
    return reader


@pytest.mark.asyncio
async def test_pascalish_round_trip():
    value = {"name": "binder", "items": [1, 2, 3], "blob": b"\x00\x01"}
    sink = Sink()
    await write_pascalish(sink, value)
    assert await read_pascalish(reader_with(bytes(sink.data))) == value


@pytest.mark.asyncio
async def test_pascalish_wire_format():
    sink = Sink()
    await write_pascalish(sink, "hello")
    raw = bytes(sink.data)
    assert int.from_bytes(raw[:2], "big") == len(raw) - 2
    assert raw[2:] == b"\xa5hello"


@pytest.mark.asyncio
async def test_pascalish_several_frames_in_sequence():
    sink = Sink()
    await write_pascalish(sink, 1)
    await write_pascalish(sink, [True, None])
    reader = reader_with(bytes(sink.data))
    assert await read_pascalish(reader) == 1
    assert await read_pascalish(reader) == [True, None]


@pytest.mark.asyncio
async def test_pascalish_too_large():
    with pytest.raises(ValueError):
        await write_pascalish(Sink(), b"x" * 70000)


@pytest.mark.asyncio
async def test_pascalish_truncated():
    sink = Sink()
    await write_pascalish(sink, "hello world")
    with pytest.raises(asyncio.IncompleteReadError):
        await read_pascalish(reader_with(bytes(sink.data)[:-3]))


@pytest.mark.asyncio
async def test_copy_with_stats_copies_everything():
    payload = bytes(range(256)) * 100
    sink = Sink()
    sizes = []
    await copy_with_stats(reader_with(payload), sink, sizes.append)
    assert bytes(sink.data) == payload
    assert sum(sizes) == len(payload)
    assert all(size > 0 for size in sizes)


@pytest.mark.asyncio
async def test_copy_with_stats_empty():
    sink = Sink()
    sizes = []
    await copy_with_stats(reader_with(b""), sink, sizes.append)
    assert sizes == []
    assert bytes(sink.data) == b""


def test_copy_with_stats_sync():
    payload = b"abcdefgh" * 20000
    out = io.BytesIO()
    sizes = []
    copy_with_stats_sync(io.BytesIO(payload), out, sizes.append)
    assert out.getvalue() == payload
    assert sum(sizes) == len(payload)
    assert len(sizes) > 1


@pytest.mark.asyncio
async def test_recv_chan_many_takes_all_queued():
    queue = asyncio.Queue()
    for item in ("a", "b", "c"):
        queue.put_nowait(item)
    assert await recv_chan_many(queue) == ["a", "b", "c"]
    assert queue.empty()


@pytest.mark.asyncio
async def test_recv_chan_many_waits_for_first():
    queue = asyncio.Queue()
    task = asyncio.ensure_future(recv_chan_many(queue))
    await asyncio.sleep(0.01)
    assert not task.done()
    queue.put_nowait(7)
    assert await asyncio.wait_for(task, 5) == [7]


@pytest.mark.asyncio
async def test_resolve_ip_literal():
    assert await resolve("127.0.0.1:80") == [("127.0.0.1", 80)]


@pytest.mark.asyncio
async def test_resolve_without_port():
    with pytest.raises(OSError):
        await resolve("localhost")


@pytest.mark.asyncio
async def test_resolve_bad_port():
    with pytest.raises(OSError):
        await resolve("127.0.0.1:notaport")