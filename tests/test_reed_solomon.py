import itertools
import random

import pytest

from tunnelkit.reed_solomon import ReedSolomon, new_cached


def _data(count, size, seed=0):
    rng = random.Random(seed)
    return [bytes(rng.randrange(256) for _ in range(size)) for _ in range(count)]


def test_encode_produces_parity_of_same_size():
    rs = ReedSolomon(4, 2)
    parity = rs.encode(_data(4, 16))
    assert len(parity) == 2
    assert all(len(p) == 16 for p in parity)


def test_single_data_shard_parity_copies_it():
    rs = ReedSolomon(1, 3)
    data = [b"\x01\x02\xff"]
    assert rs.encode(data) == [data[0]] * 3


def test_encode_is_deterministic():
    data = _data(5, 20, seed=3)
    first = ReedSolomon(5, 3).encode(data)
    second = ReedSolomon(5, 3).encode(data)
    assert first == second
    assert len(first) == 3
    # the parity from one instance must restore data lost under another
    shards = [bytes(20)] * 3 + data[3:] + second
    present = [False] * 3 + [True] * 5
    assert ReedSolomon(5, 3).reconstruct(shards, present)[:5] == data


def test_reconstruct_every_erasure_pattern():
    rs = ReedSolomon(4, 3)
    data = _data(4, 32, seed=1)
    full = data + rs.encode(data)
    for lost in itertools.combinations(range(7), 3):
        shards = [bytes(32) if i in lost else s for i, s in enumerate(full)]
        present = [i not in lost for i in range(7)]
        assert rs.reconstruct(shards, present) == full


def test_reconstruct_with_everything_present():
    rs = ReedSolomon(3, 2)
    data = _data(3, 8, seed=2)
    full = data + rs.encode(data)
    assert rs.reconstruct(full, [True] * 5) == full


def test_reconstruct_too_few_present():
    rs = ReedSolomon(3, 2)
    data = _data(3, 8)
    full = data + rs.encode(data)
    with pytest.raises(ValueError):
        rs.reconstruct(full, [True, False, False, True, False])


def test_reconstruct_wrong_length_flags():
    rs = ReedSolomon(2, 1)
    with pytest.raises(ValueError):
        rs.reconstruct(_data(3, 4), [True, True])


@pytest.mark.parametrize("data,parity", [(0, 1), (1, 0), (200, 57)])
def test_invalid_shard_counts(data, parity):
    with pytest.raises(ValueError):
        ReedSolomon(data, parity)


def test_encode_rejects_mismatched_sizes():
    with pytest.raises(ValueError):
        ReedSolomon(2, 1).encode([b"abc", b"ab"])


def test_encode_rejects_empty_shards():
    with pytest.raises(ValueError):
        ReedSolomon(2, 1).encode([b"", b""])


def test_encode_rejects_wrong_count():
    with pytest.raises(ValueError):
        ReedSolomon(3, 1).encode(_data(2, 4))


def test_new_cached_shares_instances_and_raises_to_one():
    assert new_cached(3, 2) is new_cached(3, 2)
    rs = new_cached(0, 0)
    assert (rs.data_shards, rs.parity_shards) == (1, 1)