"""
Liberty CPU miner package.

This module wires the JSON-RPC node client to the BLAKE3 hash-chain worker
slots and exposes an asyncio-friendly `LibertyMiner` used by the CLI entry
point.
"""

from .miner import JobDispatcher, LibertyMiner

__all__ = ["JobDispatcher", "LibertyMiner"]
