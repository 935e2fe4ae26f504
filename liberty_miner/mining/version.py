from __future__ import annotations

import os

# Bump this when the wire behaviour or the hash chain changes.
__version__ = "0.1.0"

VERSION_ENV = "LIBERTY_MINER_VERSION"


def get_version() -> str:
    """Version string shown by the CLI; `LIBERTY_MINER_VERSION` overrides it."""
    return os.getenv(VERSION_ENV) or f"v{__version__}"


__all__ = ["__version__", "VERSION_ENV", "get_version"]
