# src/lockdrop/utils/hash.py
"""Hashing helpers for the ledger event chain."""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

from blake3 import blake3

GENESIS_DIGEST = "0" * 64


def blake3_digest(data: bytes) -> bytes:
    """Return the byte digest of the supplied data."""
    return blake3(data).digest()


def blake3_hexdigest(data: bytes) -> str:
    """Return the hexadecimal digest of the supplied data."""
    return blake3(data).hexdigest()


def canonical_json(payload: Mapping[str, Any]) -> bytes:
    """Encode a mapping deterministically (sorted keys, no whitespace)."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


def chain_digest(prev_digest: str, body: Mapping[str, Any]) -> str:
    """Return the digest linking ``body`` to the previous entry of the chain."""
    return blake3_hexdigest(prev_digest.encode("ascii") + b"|" + canonical_json(body))
