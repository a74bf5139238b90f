"""Deterministic hashing helpers."""

from __future__ import annotations

import hashlib


def deterministic_hash(value: str) -> int:
    """Return a deterministic integer hash for ``value``.

    Python's built-in ``hash`` is salted per process, which would make the
    bucketed term embeddings differ between runs.
    """
    digest = hashlib.sha256(value.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], byteorder="big", signed=False)
