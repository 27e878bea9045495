"""Blind-signature keys: one RSA key per day, committed to by a Merkle root."""

from __future__ import annotations

import hashlib
import logging
import math
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Sequence, Tuple, Union

import msgpack
from cryptography.hazmat.primitives.asymmetric import rsa

log = logging.getLogger(__name__)

KEY_COUNT = 65536
KEY_BITS = 2048
_SECONDS_PER_DAY = 86400


def time_to_epoch(time: Union[datetime, float]) -> int:
    """Days since the Unix epoch for a datetime or a Unix timestamp."""
    timestamp = time.timestamp() if isinstance(time, datetime) else float(time)
    if timestamp < 0:
        raise ValueError("time is before the Unix epoch")
    return int(timestamp // _SECONDS_PER_DAY)


def _byte_len(n: int) -> int:
    return max(1, (n.bit_length() + 7) // 8)


def _to_fixed(value: int, size: int) -> bytes:
    return value.to_bytes(size, "big")


@dataclass(frozen=True)
class RsaPublicKey:
    """An RSA public key."""

    n: int
    e: int

    @property
    def size(self) -> int:
        """Modulus length in bytes."""
        return _byte_len(self.n)

    def to_bytes(self) -> bytes:
        """Canonical encoding, used for Merkle leaves."""
        return msgpack.packb([self.n.to_bytes(_byte_len(self.n), "big"),
                              self.e.to_bytes(_byte_len(self.e), "big")])


@dataclass(frozen=True)
class RsaPrivateKey:
    """An RSA private key."""

    n: int
    e: int
    d: int = field(repr=False)

    def to_public_key(self) -> RsaPublicKey:
        return RsaPublicKey(self.n, self.e)


def _generate_rsa_key(bits: int) -> RsaPrivateKey:
    key = rsa.generate_private_key(public_exponent=65537, key_size=bits)
    numbers = key.private_numbers()
    return RsaPrivateKey(numbers.public_numbers.n, numbers.public_numbers.e, numbers.d)


def _full_domain_hash(public_key: RsaPublicKey, message: bytes) -> int:
    size = public_key.size
    blocks = math.ceil(size / 32)
    for iv in range(256):
        stream = b"".join(
            hashlib.sha256(bytes([iv]) + counter.to_bytes(4, "big") + message).digest()
            for counter in range(blocks)
        )
        value = int.from_bytes(stream[:size], "big")
        if value < public_key.n:
            return value
    raise ValueError("could not hash the message into the key's domain")


def blind(public_key: RsaPublicKey, message: bytes) -> Tuple[bytes, bytes, bytes]:
    """Blind ``message`` for signing under ``public_key``.

    Returns the blinded digest to send to the signer, the unblinder to keep,
    and the unblinded digest that the final signature verifies against.
    """
    n, e, size = public_key.n, public_key.e, public_key.size
    digest = _full_domain_hash(public_key, message)
    while True:
        r = secrets.randbelow(n - 2) + 2
        if math.gcd(r, n) == 1:
            break
    blinded = (digest * pow(r, e, n)) % n
    unblinder = pow(r, -1, n)
    return _to_fixed(blinded, size), _to_fixed(unblinder, size), _to_fixed(digest, size)


def _sign_blinded(key: RsaPrivateKey, blinded_digest: bytes) -> bytes:
    value = int.from_bytes(blinded_digest, "big")
    if value >= key.n:
        raise ValueError("blinded digest is out of range for the key")
    return _to_fixed(pow(value, key.d, key.n), _byte_len(key.n))


def _verify(public_key: RsaPublicKey, digest: bytes, signature: bytes) -> bool:
    m = int.from_bytes(digest, "big")
    s = int.from_bytes(signature, "big")
    if m >= public_key.n or s >= public_key.n:
        return False
    return pow(s, public_key.e, public_key.n) == m


def hash_together(x: bytes, y: bytes) -> bytes:
    """SHA-256 of ``x`` followed by ``y``."""
    return hashlib.sha256(x + y).digest()


@dataclass(frozen=True)
class UnblindedSignature:
    """A finished signature together with the proof that its key is genuine."""

    epoch: int
    used_key: RsaPublicKey
    merkle_branch: List[bytes]
    unblinded_sig: bytes


@dataclass(frozen=True)
class BlindedSignature:
    """A signature over a blinded digest, with the Merkle proof of its key."""

    epoch: int
    used_key: RsaPublicKey
    merkle_branch: List[bytes]
    blinded_sig: bytes

    def unblind(self, unblinder: bytes) -> UnblindedSignature:
        """Remove the blinding factor, producing a signature on the real digest."""
        n = self.used_key.n
        value = (int.from_bytes(self.blinded_sig, "big") * int.from_bytes(unblinder, "big")) % n
        return UnblindedSignature(
            epoch=self.epoch,
            used_key=self.used_key,
            merkle_branch=list(self.merkle_branch),
            unblinded_sig=_to_fixed(value, self.used_key.size),
        )


@dataclass(frozen=True)
class PublicKey:
    """The Merkle root over the encoded RSA public keys of every epoch."""

    root: bytes

    def __post_init__(self) -> None:
        if len(self.root) != 32:
            raise ValueError("a public key is a 32-byte Merkle root")

    def blind_verify(self, unblinded_digest: bytes, sig: UnblindedSignature) -> bool:
        """Check both the key's membership and the signature on the digest."""
        return self.verify_member(sig.epoch, sig.used_key, sig.merkle_branch) and _verify(
            sig.used_key, unblinded_digest, sig.unblinded_sig
        )

    def verify_member(
        self, epoch: int, subkey: RsaPublicKey, merkle_branch: Sequence[bytes]
    ) -> bool:
        """Check that ``subkey`` is the key for ``epoch`` under this root."""
        accumulator = hashlib.sha256(subkey.to_bytes()).digest()
        for i, sibling in enumerate(merkle_branch):
            if (epoch >> i) & 1 == 0:
                accumulator = hash_together(accumulator, sibling)
            else:
                accumulator = hash_together(sibling, accumulator)
        return accumulator == self.root


@dataclass(frozen=True)
class SecretKey:
    """One RSA private key per epoch and every level of their Merkle tree."""

    rsa_keys: List[RsaPrivateKey] = field(repr=False)
    merkle_tree: List[List[bytes]] = field(repr=False)

    @classmethod
    def generate(cls, key_count: int = KEY_COUNT, key_bits: int = KEY_BITS) -> "SecretKey":
        """Generate a key; with the defaults this takes a very long time."""
        if key_count <= 0 or key_count & (key_count - 1):
            raise ValueError("key_count must be a power of two")
        rsa_keys = []
        for count in range(key_count):
            log.info("generated %d/%d keys", count, key_count)
            rsa_keys.append(_generate_rsa_key(key_bits))
        level = [hashlib.sha256(key.to_public_key().to_bytes()).digest() for key in rsa_keys]
        tree = [level]
        while len(level) > 1:
            level = [hash_together(left, right) for left, right in zip(level[0::2], level[1::2])]
            tree.append(level)
        return cls(rsa_keys=rsa_keys, merkle_tree=tree)

    def merkle_branch(self, idx: int) -> List[bytes]:
        """Sibling hashes from the leaf at ``idx`` up to just below the root."""
        branch = []
        for level in self.merkle_tree[:-1]:
            branch.append(level[idx ^ 1])
            idx >>= 1
        return branch

    def blind_sign(self, epoch: int, blinded_digest: bytes) -> BlindedSignature:
        """Sign a blinded digest with the key of ``epoch``."""
        if not 0 <= epoch < len(self.rsa_keys):
            raise ValueError(f"epoch {epoch} out of range")
        key = self.rsa_keys[epoch]
        return BlindedSignature(
            epoch=epoch,
            used_key=key.to_public_key(),
            merkle_branch=self.merkle_branch(epoch),
            blinded_sig=_sign_blinded(key, blinded_digest),
        )

    def to_public_key(self) -> PublicKey:
        return PublicKey(self.merkle_tree[-1][0])

    def get_subkey(self, epoch: int) -> RsaPrivateKey:
        return self.rsa_keys[epoch]