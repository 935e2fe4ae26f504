from __future__ import annotations

"""
CPU hash-chain search for `eth_getWork` packages.

Each nonce attempt hashes ``header_hash || nonce_be8`` with BLAKE3-256 and
then rehashes the 32-byte result ``ITER_COUNT`` more times. The final digest
qualifies when, read as a big-endian unsigned integer, it is ``<= target``.
The node's verifier performs the same chain, so the construction and the
iteration count are protocol constants.

Usage sketch
------------
    from liberty_miner.mining.hash_search import HashChainSearch

    search = HashChainSearch(submit=lambda cand: True, worker_id=0)
    cancel = threading.Event()
    candidate = search.search(job, start_nonce=12345, cancel=cancel)

Interfaces
----------
- `HashChainSearch.search(...)` blocks until a candidate is found and
  submitted, or until `cancel.is_set()` is observed (returns None).
- Utility helpers:
    * chain_digest(header_hash, nonce, iterations)
    * digest_to_int256(digest)
    * meets_target(digest, target)
"""

import logging
from typing import Callable, Optional, Protocol

from blake3 import blake3

from ..job import Candidate, Job
from .errors import MinerError
from .nonce_domain import UINT64_MASK, build_message

log = logging.getLogger("liberty_miner.search")

# Rehashes after the first digest; ITER_COUNT + 1 BLAKE3 evaluations per nonce.
ITER_COUNT = 312688

Submitter = Callable[[Candidate], bool]


class CancelToken(Protocol):
    def is_set(self) -> bool: ...


# ─────────────────────────────────────────────────────────────────────────────
# Numeric helpers
# ─────────────────────────────────────────────────────────────────────────────


def digest_to_int256(digest: bytes) -> int:
    """Interpret a 32-byte digest as a big-endian unsigned 256-bit integer."""
    if len(digest) != 32:
        raise ValueError("digest must be 32 bytes for int256 conversion")
    return int.from_bytes(digest, "big", signed=False)


def meets_target(digest: bytes, target: int) -> bool:
    return digest_to_int256(digest) <= target


def chain_digest(header_hash: bytes, nonce: int, iterations: int = ITER_COUNT) -> bytes:
    """
    Final digest of one nonce attempt. Strictly sequential: every step hashes
    the previous step's output.
    """
    digest = blake3(build_message(header_hash, nonce)).digest()
    for _ in range(iterations):
        digest = blake3(digest).digest()
    return digest


# ─────────────────────────────────────────────────────────────────────────────
# Search
# ─────────────────────────────────────────────────────────────────────────────


class HashChainSearch:
    """
    One cancellable search over consecutive nonces of a single job.

    The instance is owned by one search thread. `attempts` counts completed
    nonce attempts and may be read from other threads for telemetry.
    """

    def __init__(
        self,
        submit: Optional[Submitter] = None,
        *,
        iterations: int = ITER_COUNT,
        worker_id: int = 0,
    ) -> None:
        if iterations < 0:
            raise ValueError("iterations must be non-negative")
        self._submit = submit
        self.iterations = iterations
        self.worker_id = worker_id
        self.attempts = 0

    def search(self, job: Job, start_nonce: int, cancel: CancelToken) -> Optional[Candidate]:
        nonce = start_nonce & UINT64_MASK
        header_hash = job.header_hash
        target = job.target
        iterations = self.iterations

        while True:
            if cancel.is_set():
                log.debug(
                    "Worker %d: search for job %s cancelled after %d attempts",
                    self.worker_id,
                    job.job_id,
                    self.attempts,
                )
                return None

            digest = chain_digest(header_hash, nonce, iterations)
            self.attempts += 1

            if meets_target(digest, target):
                candidate = Candidate(nonce=nonce, header_hash=header_hash, mix_digest=digest)
                log.info(
                    "Worker %d: valid solution found for job %s nonce=%d",
                    self.worker_id,
                    job.job_id,
                    nonce,
                )
                self._deliver(candidate)
                return candidate

            nonce = (nonce + 1) & UINT64_MASK

    def _deliver(self, candidate: Candidate) -> None:
        if self._submit is not None:
            deliver_candidate(self._submit, candidate, self.worker_id)


def deliver_candidate(submit: Submitter, candidate: Candidate, worker_id: int = 0) -> Optional[bool]:
    """
    Hand a solution to the submitter and log the verdict. Submission errors
    are logged and swallowed; they end the search, never the worker.
    """
    nonce_hex = "0x" + candidate.nonce_bytes.hex()
    try:
        accepted = submit(candidate)
    except MinerError as exc:
        log.error("Worker %d: submission of nonce=%s failed: %s", worker_id, nonce_hex, exc)
        return None
    if accepted:
        log.info("Worker %d: solution nonce=%s accepted by the node", worker_id, nonce_hex)
    else:
        log.warning("Worker %d: solution nonce=%s rejected by the node", worker_id, nonce_hex)
    return accepted


__all__ = [
    "ITER_COUNT",
    "Submitter",
    "CancelToken",
    "HashChainSearch",
    "deliver_candidate",
    "chain_digest",
    "digest_to_int256",
    "meets_target",
]
