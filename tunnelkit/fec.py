"""Forward error correction for runs of packets."""

from __future__ import annotations

import itertools
import logging
import math
import struct
from typing import Dict, List, Optional, Sequence, Tuple

from tunnelkit.reed_solomon import new_cached

log = logging.getLogger(__name__)

_MAX_PACKET = 0xFFFF


def pre_encode(pkt: bytes, length: int) -> bytes:
    """Prefix ``pkt`` with its little-endian 16-bit length and pad to ``length``."""
    if len(pkt) > _MAX_PACKET:
        raise ValueError("packet longer than 65535 bytes")
    if len(pkt) + 2 > length:
        raise ValueError("padded length too small for packet")
    return struct.pack("<H", len(pkt)) + bytes(pkt) + bytes(length - len(pkt) - 2)


def post_decode(raw: bytes) -> Optional[bytes]:
    """Strip the length prefix and padding, or None if ``raw`` is malformed."""
    if len(raw) < 2:
        return None
    (body_len,) = struct.unpack("<H", bytes(raw[:2]))
    if 2 + body_len > len(raw):
        return None
    return bytes(raw[2 : 2 + body_len])


def _binomial_cdf(x: int, trials: int, failure: float) -> float:
    """P(successes <= x) over ``trials`` trials that each fail with ``failure``."""
    if x < 0:
        return 0.0
    if x >= trials:
        return 1.0
    log_success = math.log1p(-failure)
    log_failure = math.log(failure)
    log_n = math.lgamma(trials + 1)
    total = sum(
        math.exp(
            log_n
            - math.lgamma(k + 1)
            - math.lgamma(trials - k + 1)
            + k * log_success
            + (trials - k) * log_failure
        )
        for k in range(x + 1)
    )
    return min(total, 1.0)


def _check_byte(name: str, value: int) -> None:
    if not 0 <= value <= 255:
        raise ValueError(f"{name} must be between 0 and 255")


class FrameEncoder:
    """Adds parity packets to runs of packets to meet a target loss rate.

    Loss rates are given in 256ths.
    """

    def __init__(self, target_loss: int) -> None:
        _check_byte("target_loss", target_loss)
        self.target_loss = target_loss
        self._rate_table: Dict[Tuple[int, int], int] = {}

    def encode(self, measured_loss: int, pkts: Sequence[bytes]) -> List[bytes]:
        """Return the padded packets followed by their parity packets."""
        if not pkts:
            raise ValueError("nothing to encode")
        max_length = max(len(p) for p in pkts)
        padded = [pre_encode(p, max_length + 2) for p in pkts]
        parity_shards = self.repair_len(measured_loss, len(pkts))
        if parity_shards > 0:
            padded.extend(new_cached(len(pkts), parity_shards).encode(padded))
        return padded

    def repair_len(self, measured_loss: int, run_len: int) -> int:
        """Parity packets needed to carry ``run_len`` packets through ``measured_loss``."""
        _check_byte("measured_loss", measured_loss)
        _check_byte("run_len", run_len)
        key = (measured_loss, run_len)
        if key not in self._rate_table:
            self._rate_table[key] = self._search(measured_loss, run_len)
        return self._rate_table[key]

    def _search(self, measured_loss: int, run_len: int) -> int:
        cap = min(255 - run_len, run_len)
        failure = min(max(measured_loss / 256.0, 1e-100), 1.0 - 1e-100)
        target = self.target_loss / 256.0
        for additional in itertools.count():
            if additional - 1 >= cap:
                return cap
            if _binomial_cdf(run_len, run_len + additional, failure) <= target:
                return max(additional - 1, 0)
        raise AssertionError("unreachable")


class FrameDecoder:
    """A single-use decoder for one run of data and parity packets."""

    def __init__(self, data_shards: int, parity_shards: int) -> None:
        log.debug("decoding with %d/%d", data_shards, parity_shards)
        self.data_shards = data_shards
        self.parity_shards = parity_shards
        self._space: List[bytearray] = []
        self._present = [False] * (data_shards + parity_shards)
        self._present_count = 0
        self._rs = new_cached(data_shards, parity_shards)
        self._done = False

    def good_pkts(self) -> int:
        """Data packets received or recovered so far."""
        if self._done:
            return self.data_shards
        received = sum(1 for flag in self._present[: self.data_shards] if flag)
        return min(received, self.data_shards)

    def lost_pkts(self) -> int:
        return self.data_shards - self.good_pkts()

    def decode(self, pkt: bytes, pkt_idx: int) -> Optional[List[bytes]]:
        """Take the packet at ``pkt_idx``; return any packets it yields."""
        if self.parity_shards == 0:
            self._done = True
            body = post_decode(pkt)
            return None if body is None else [body]
        if self._done or pkt_idx < 0:
            return None
        if not self._space:
            self._space = [bytearray(len(pkt)) for _ in self._present]
        if pkt_idx >= len(self._space) or len(self._space[pkt_idx]) != len(pkt):
            return None
        self._space[pkt_idx][:] = pkt
        if not self._present[pkt_idx]:
            self._present_count += 1
        self._present[pkt_idx] = True
        if pkt_idx < self.data_shards:
            body = post_decode(self._space[pkt_idx])
            return None if body is None else [body]
        if self._present_count < self.data_shards:
            return None
        try:
            shards = self._rs.reconstruct(self._space, self._present)
        except ValueError:
            return None
        self._done = True
        self._space = []
        recovered = []
        for shard, flag in zip(shards[: self.data_shards], self._present):
            if not flag:
                body = post_decode(shard)
                if body is not None:
                    recovered.append(body)
        return recovered