"""
Liberty Mining Package

Numeric core of the miner: nonce encoding, the BLAKE3 hash-chain search and
the error taxonomy shared with the node client.

Exports
-------
__version__ : str
    Semantic version string for the mining module.
"""

from .version import __version__  # re-export

__all__ = ["__version__"]
