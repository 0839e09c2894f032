"""Content-addressed ObjectSlice naming.

``name_for`` is a pure function of the owner name, the slice objects and a
salt: equal content always yields the same name, so a slice stored by one
reconcile is found again by the next, and a salt lets callers step around a
name that is already taken by different content.
"""

from __future__ import annotations

import json
import struct
from typing import Any

# Kubernetes ``rand.SafeEncodeString`` alphabet: no vowels, no 0/1/3.
_SAFE_ALPHABET = "bcdfghjklmnpqrstvwxz2456789"

_FNV32_OFFSET = 0x811C9DC5
_FNV32_PRIME = 0x01000193

# DNS subdomain limit for object names.
MAX_NAME_LENGTH = 253


def fnv32a(data: bytes, seed: int = _FNV32_OFFSET) -> int:
    """32-bit FNV-1a."""
    h = seed
    for byte in data:
        h ^= byte
        h = (h * _FNV32_PRIME) & 0xFFFFFFFF
    return h


def safe_encode(value: str) -> str:
    """Map every character onto the Kubernetes safe alphabet."""
    return "".join(_SAFE_ALPHABET[ord(c) % len(_SAFE_ALPHABET)] for c in value)


def canonical_json(value: Any) -> bytes:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def content_hash(objects: list[dict[str, Any]], salt: int = 0) -> str:
    """Hash slice *objects* (wire form) with an optional *salt*."""
    h = fnv32a(canonical_json(objects))
    if salt:
        h = fnv32a(struct.pack("<I", salt & 0xFFFFFFFF), seed=h)
    return safe_encode(str(h))


def name_for(owner_name: str, objects: list[dict[str, Any]], salt: int = 0) -> str:
    """Return ``<owner>-<hash>`` for a slice of *objects*.

    The owner prefix is truncated so the result never exceeds
    :data:`MAX_NAME_LENGTH`.
    """
    suffix = content_hash(objects, salt)
    prefix = owner_name[: MAX_NAME_LENGTH - len(suffix) - 1].rstrip("-.")
    return f"{prefix}-{suffix}"
