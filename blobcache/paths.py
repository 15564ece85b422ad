"""Locations of cache entries relative to the cache directory."""

from __future__ import annotations

import posixpath

from .cache import EntryKind

_HASH_LEN = 64


def file_location_base(kind: EntryKind, legacy: bool, hash: str, size: int) -> str:
    """Relative path prefix for an entry, before the random suffix is added."""
    if kind is EntryKind.RAW:
        return posixpath.join("raw.v2", hash[:2], hash)
    if kind is EntryKind.AC:
        return posixpath.join("ac.v2", hash[:2], hash)
    if legacy:
        return posixpath.join("cas.v2", hash[:2], hash)
    return f"cas.v2/{hash[:2]}/{hash}-{size}"


def file_location(
    kind: EntryKind, legacy: bool, hash: str, size: int, random: str
) -> str:
    """Full relative path of an entry, including its random suffix."""
    if kind is EntryKind.RAW:
        return posixpath.join("raw.v2", hash[:2], f"{hash}-{random}")
    if kind is EntryKind.AC:
        return posixpath.join("ac.v2", hash[:2], f"{hash}-{random}")
    if legacy:
        return f"cas.v2/{hash[:2]}/{hash}-{random}.v1"
    return f"cas.v2/{hash[:2]}/{hash}-{size}-{random}"


def is_size_mismatch(requested_size: int, found_size: int) -> bool:
    """True if both sizes are known and they differ."""
    return requested_size > -1 and found_size > -1 and requested_size != found_size


def kind_from_lookup_key(key: str) -> EntryKind:
    """The entry kind encoded in an index key such as ``cas/<hash>``.

    Keys with an unrecognised prefix are treated as action cache keys.
    """
    if key.startswith("cas"):
        return EntryKind.CAS
    if key.startswith("ac"):
        return EntryKind.AC
    if key.startswith("raw"):
        return EntryKind.RAW
    return EntryKind.AC