from __future__ import annotations

import random
import struct
from typing import Optional

UINT64_MASK = 0xFFFFFFFFFFFFFFFF
HASH_SIZE = 32
NONCE_SIZE = 8


# ─────────────────────────────────────────────────────────────────────────────
# Nonce encoding
# ─────────────────────────────────────────────────────────────────────────────
def encode_nonce(nonce: int) -> bytes:
    """8-byte big-endian encoding; wraps modulo 2**64."""
    return struct.pack(">Q", nonce & UINT64_MASK)


# ─────────────────────────────────────────────────────────────────────────────
# Search preimage
# ─────────────────────────────────────────────────────────────────────────────
def build_message(header_hash: bytes, nonce: int) -> bytes:
    """
    Construct the first hash input of a nonce attempt.

    message := header_hash (32 bytes) || nonce (8 bytes, big-endian)
    """
    if len(header_hash) != HASH_SIZE:
        raise ValueError(f"header hash must be {HASH_SIZE} bytes, got {len(header_hash)}")
    return header_hash + encode_nonce(nonce)


# ─────────────────────────────────────────────────────────────────────────────
# Per-slot nonce source
# ─────────────────────────────────────────────────────────────────────────────
class NonceSource:
    """
    Private random generator for one worker slot.

    Each slot owns one instance seeded independently, so slots working the
    same job start from unrelated points of the nonce space and a fixed seed
    reproduces the same sequence of start nonces.
    """

    def __init__(self, seed: Optional[int] = None) -> None:
        self.seed = seed
        self._rng = random.Random(seed)

    def next_start(self) -> int:
        return self._rng.getrandbits(64)


__all__ = [
    "UINT64_MASK",
    "HASH_SIZE",
    "NONCE_SIZE",
    "encode_nonce",
    "build_message",
    "NonceSource",
]
