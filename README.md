# tunnelkit

Building blocks for encrypted tunnelling software, written for asyncio.

## What is inside

| Module | Purpose |
| --- | --- |
| `tunnelkit.socks_proto` | SOCKS5 addresses, reply codes, and reading or writing addresses on the wire; `host_addr` works out the target address of a proxied HTTP request URI. |
| `tunnelkit.socks5` | SOCKS5 client messages (`HandshakeRequest`, `TcpRequestHeader`, ...) and `connect`, which opens a TCP stream through a SOCKS5 proxy. |
| `tunnelkit.http_proxy` | An HTTP/1.x proxy (plain requests and `CONNECT` tunnels) that forwards everything through a SOCKS5 proxy. |
| `tunnelkit.aioutils` | Length-prefixed message framing (`read_pascalish` / `write_pascalish`), stream copying with byte counters, batch receiving from a queue, and host:port resolution. |
| `tunnelkit.backhaul` | A datagram transport interface (`Backhaul`), a UDP implementation (`open_udp_backhaul`) and a wrapper that counts traffic (`StatsBackhaul`). |
| `tunnelkit.mizaru` | Blind-signature keys: one RSA key per day, committed to by a Merkle root that serves as the public key. |
| `tunnelkit.scheduler` | A global thread-backed task runner: `spawn`, `block_on`, `active_task_count`. |
| `tunnelkit.nursery` | Structured concurrency: a `Nursery` whose tasks must finish before it does, with per-task error strategies (`OnError`). |
| `tunnelkit.reed_solomon` | Reed–Solomon erasure coding over GF(2^8). |
| `tunnelkit.fec` | Adaptive forward error correction for packet runs: `FrameEncoder` picks the amount of parity from the measured loss, `FrameDecoder` recovers lost packets. |

## Installation

```
pip install tunnelkit
```

## Running the HTTP proxy

The package installs one command, which listens for HTTP proxy clients and
relays their traffic through an existing SOCKS5 proxy:

```
tunnelkit-http-proxy --help
```

Point a browser or `curl --proxy` at the listening address. Both plain HTTP
requests and `CONNECT` tunnels (used for HTTPS) are supported; hop-by-hop
headers are stripped and keep-alive is negotiated as HTTP/1.0 and 1.1 require.

The same server can be started from your own asyncio program with
`tunnelkit.http_proxy.run(listen_addr, proxy_addr)`.

## Forward error correction

Packets of a run are padded to a common length with a two-byte length header
before they are coded; `post_decode` undoes that:

```python
from tunnelkit.fec import pre_encode, post_decode

padded = pre_encode(b"hello", 16)
assert len(padded) == 16
assert post_decode(padded) == b"hello"
```

`FrameEncoder.encode(measured_loss, pkts)` returns the data packets followed by
as many parity packets as the loss estimate (in 1/256 units) calls for. Feed
whatever arrives to `FrameDecoder.decode(pkt, pkt_idx)`: data packets come back
at once, and once enough packets of the run are present the missing data
packets are reconstructed from the parity.

## Structured concurrency

A `Nursery` owns the tasks spawned through it or through any `NurseryHandle`
obtained from `Nursery.handle()`. `Nursery.wait()` (or `wait_sync()` outside an
event loop) returns once every handle is closed and every task has finished,
and raises as soon as a task fails with the `OnError` strategy set to
propagate. `OnError.ignore_with(f)` and `OnError.propagate_with(f)` run a
callback on the error first; `OnError.custom(f)` lets the callback choose the
strategy.

## Running the tests

```
pip install "tunnelkit[test]"
pytest
```