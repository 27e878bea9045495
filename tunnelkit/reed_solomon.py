"""Systematic Reed-Solomon erasure coding over GF(2^8)."""

from __future__ import annotations

import functools
from typing import List, Sequence, Tuple

MAX_SHARDS = 256
"""Most shards, data and parity together, that one code may have."""

_POLY = 0x11D

Matrix = Tuple[Tuple[int, ...], ...]


def _build_tables() -> Tuple[List[int], List[int]]:
    exp = [0] * 510
    log = [0] * 256
    x = 1
    for i in range(255):
        exp[i] = x
        log[x] = i
        x <<= 1
        if x & 0x100:
            x ^= _POLY
    for i in range(255, 510):
        exp[i] = exp[i - 255]
    return exp, log


_EXP, _LOG = _build_tables()


def _mul(a: int, b: int) -> int:
    if a == 0 or b == 0:
        return 0
    return _EXP[_LOG[a] + _LOG[b]]


def _inverse(a: int) -> int:
    if a == 0:
        raise ZeroDivisionError("zero has no inverse in GF(2^8)")
    return _EXP[(255 - _LOG[a]) % 255]


def _power(a: int, n: int) -> int:
    if n == 0:
        return 1
    if a == 0:
        return 0
    return _EXP[(_LOG[a] * n) % 255]


_MUL_TABLES = tuple(bytes(_mul(c, x) for x in range(256)) for c in range(256))


def _mat_mul(a: Matrix, b: Matrix) -> Matrix:
    inner = len(b)
    cols = len(b[0])
    result = []
    for row in a:
        out = []
        for j in range(cols):
            acc = 0
            for k in range(inner):
                acc ^= _mul(row[k], b[k][j])
            out.append(acc)
        result.append(tuple(out))
    return tuple(result)


def _invert(matrix: Matrix) -> Matrix:
    size = len(matrix)
    work = [
        list(row) + [1 if i == j else 0 for j in range(size)]
        for i, row in enumerate(matrix)
    ]
    for col in range(size):
        pivot = next((r for r in range(col, size) if work[r][col]), None)
        if pivot is None:
            raise ValueError("singular matrix")
        work[col], work[pivot] = work[pivot], work[col]
        scale = _inverse(work[col][col])
        work[col] = [_mul(scale, v) for v in work[col]]
        for r in range(size):
            factor = work[r][col]
            if r != col and factor:
                work[r] = [v ^ _mul(factor, p) for v, p in zip(work[r], work[col])]
    return tuple(tuple(row[size:]) for row in work)


def _combine(coeffs: Sequence[int], shards: Sequence[bytes], size: int) -> bytes:
    acc = 0
    for coeff, shard in zip(coeffs, shards):
        if coeff == 0:
            continue
        term = shard if coeff == 1 else shard.translate(_MUL_TABLES[coeff])
        acc ^= int.from_bytes(term, "little")
    return acc.to_bytes(size, "little")


def _common_size(shards: Sequence[bytes]) -> int:
    sizes = {len(s) for s in shards}
    if len(sizes) != 1:
        raise ValueError("shards differ in size")
    size = sizes.pop()
    if size == 0:
        raise ValueError("empty shard")
    return size


class ReedSolomon:
    """An erasure code with a fixed number of data and parity shards.

    Data shards are carried unchanged; any ``data_shards`` of the shards are
    enough to recover all of them.
    """

    def __init__(self, data_shards: int, parity_shards: int) -> None:
        if data_shards <= 0:
            raise ValueError("too few data shards")
        if parity_shards <= 0:
            raise ValueError("too few parity shards")
        if data_shards + parity_shards > MAX_SHARDS:
            raise ValueError("too many shards")
        self.data_shards = data_shards
        self.parity_shards = parity_shards
        total = data_shards + parity_shards
        vandermonde: Matrix = tuple(
            tuple(_power(r, c) for c in range(data_shards)) for r in range(total)
        )
        top_inverse = _invert(vandermonde[:data_shards])
        self._matrix = _mat_mul(vandermonde, top_inverse)
        self._parity_rows = self._matrix[data_shards:]

    @property
    def total_shards(self) -> int:
        return self.data_shards + self.parity_shards

    def encode(self, shards: Sequence[bytes]) -> List[bytes]:
        """Compute the parity shards for the given data shards."""
        data = [bytes(s) for s in shards]
        if len(data) != self.data_shards:
            raise ValueError(f"expected {self.data_shards} data shards, got {len(data)}")
        size = _common_size(data)
        return [_combine(row, data, size) for row in self._parity_rows]

    def reconstruct(self, shards: Sequence[bytes], present: Sequence[bool]) -> List[bytes]:
        """Return every shard, rebuilding those not marked present."""
        total = self.total_shards
        if len(shards) != total or len(present) != total:
            raise ValueError(f"expected {total} shards and presence flags")
        indices = [i for i, flag in enumerate(present) if flag]
        if len(indices) < self.data_shards:
            raise ValueError("too few shards present")
        size = _common_size([bytes(shards[i]) for i in indices])
        if len(indices) == total:
            return [bytes(s) for s in shards]
        rows = indices[: self.data_shards]
        decode = _invert(tuple(self._matrix[i] for i in rows))
        inputs = [bytes(shards[i]) for i in rows]
        data_out = [
            bytes(shards[i]) if present[i] else _combine(decode[i], inputs, size)
            for i in range(self.data_shards)
        ]
        parity_out = [
            bytes(shards[self.data_shards + k])
            if present[self.data_shards + k]
            else _combine(row, data_out, size)
            for k, row in enumerate(self._parity_rows)
        ]
        return data_out + parity_out

    def __repr__(self) -> str:
        return f"ReedSolomon(data_shards={self.data_shards}, parity_shards={self.parity_shards})"


@functools.lru_cache(maxsize=20)
def _cached(data_shards: int, parity_shards: int) -> ReedSolomon:
    return ReedSolomon(data_shards, parity_shards)


def new_cached(data_shards: int, parity_shards: int) -> ReedSolomon:
    """A shared code for these shard counts, each raised to at least one."""
    return _cached(max(data_shards, 1), max(parity_shards, 1))