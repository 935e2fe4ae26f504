from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict


class MiningErrorCode(IntEnum):
    """Stable, machine-consumable error codes for miner & node flows."""

    MINER_ERROR = 1000
    TRANSPORT = 1001
    PROTOCOL = 1002


@dataclass
class MinerError(Exception):
    """
    Base class for miner-facing errors.

    Attributes
    ----------
    message : str
        Human-friendly explanation (safe to log).
    code : MiningErrorCode
        Programmatic code stable across releases.
    retryable : bool
        Whether the dispatcher should poll again after its retry delay. A
        non-retryable error raised while fetching work stops the miner.
    context : dict
        Small, JSON-serializable context (non-sensitive) for diagnostics.
    """

    message: str
    code: MiningErrorCode = MiningErrorCode.MINER_ERROR
    retryable: bool = False
    context: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:  # pragma: no cover - trivial
        base = f"[{self.code}] {self.message}"
        if self.context:
            base += f" ctx={self.context}"
        return base


@dataclass
class TransportError(MinerError):
    """
    The node could not be reached or the call failed in flight: connection
    refused, timeout, non-2xx HTTP status, closed socket, or a JSON-RPC
    ``error`` object in the reply.
    """

    message: str = "node unreachable"
    code: MiningErrorCode = MiningErrorCode.TRANSPORT
    retryable: bool = True


@dataclass
class ProtocolError(MinerError):
    """
    The node answered, but the reply does not have the expected shape
    (short work package, bad hex, wrong result type, undecodable JSON).
    """

    message: str = "malformed node response"
    code: MiningErrorCode = MiningErrorCode.PROTOCOL
    retryable: bool = True


__all__ = [
    "MiningErrorCode",
    "MinerError",
    "TransportError",
    "ProtocolError",
]
