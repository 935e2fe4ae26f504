from __future__ import annotations

from dataclasses import dataclass

from .mining.nonce_domain import HASH_SIZE, UINT64_MASK, encode_nonce


def job_id_for(header_hash: bytes) -> str:
    """Job identity is the 0x-prefixed hex of the header hash, nothing else."""
    return "0x" + bytes(header_hash).hex()


@dataclass(frozen=True)
class Job:
    """
    Immutable snapshot of one `eth_getWork` package handed to the worker slots.

    Attributes:
        header_hash: Header hash to mine against (32 bytes).
        seed_hash: Seed hash as reported by the node (32 bytes). Decoded and
            carried along, but not part of the search input.
        target: Upper bound (inclusive) for the final digest read as a
            big-endian unsigned integer.
        block_number: Height reported by `eth_blockNumber`, for logging only.
    """

    header_hash: bytes
    seed_hash: bytes
    target: int
    block_number: int = 0

    def __post_init__(self) -> None:
        if len(self.header_hash) != HASH_SIZE:
            raise ValueError(f"header_hash must be {HASH_SIZE} bytes")
        if len(self.seed_hash) != HASH_SIZE:
            raise ValueError(f"seed_hash must be {HASH_SIZE} bytes")
        if self.target < 0:
            raise ValueError("target must be non-negative")
        if not 0 <= self.block_number <= UINT64_MASK:
            raise ValueError("block_number must fit in 64 bits")

    @property
    def job_id(self) -> str:
        return job_id_for(self.header_hash)


@dataclass(frozen=True)
class Candidate:
    nonce: int
    header_hash: bytes
    mix_digest: bytes

    @property
    def nonce_bytes(self) -> bytes:
        return encode_nonce(self.nonce)
