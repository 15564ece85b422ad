"""Core cache types: entry kinds, errors, digests and the proxy interface."""

from __future__ import annotations

import abc
import hashlib
import logging
from dataclasses import dataclass
from enum import Enum
from typing import BinaryIO, Optional, Protocol, Tuple

_log = logging.getLogger(__name__)


class EntryKind(Enum):
    """The kind of a cache entry."""

    AC = "ac"
    """Action Cache."""

    CAS = "cas"
    """Content Addressable Storage."""

    RAW = "raw"
    """Unvalidated items, only used over HTTP when AC validation is disabled."""

    def __str__(self) -> str:
        return self.value

    def dir_name(self) -> str:
        """Name of the directory that holds entries of this kind."""
        return f"{self.value}.v2"


class CacheError(Exception):
    """A structured cache error carrying an HTTP status code."""

    def __init__(self, code: int, text: str) -> None:
        super().__init__(text)
        self.code = int(code)
        self.text = text

    def __str__(self) -> str:
        return self.text


@dataclass(frozen=True)
class Digest:
    """A content digest: lowercase hex sha256 hash and size in bytes."""

    hash: str
    size_bytes: int


class _Logger(Protocol):
    def info(self, msg: str, *args: object) -> None: ...


class Proxy(abc.ABC):
    """Interface for optional proxy backends. Implementations must be thread safe."""

    @abc.abstractmethod
    def put(
        self,
        kind: EntryKind,
        hash: str,
        logical_size: int,
        size_on_disk: int,
        stream: BinaryIO,
    ) -> None:
        """Make a reasonable effort to upload `stream` asynchronously.

        The implementation takes ownership of `stream` and must close it.
        May fail silently, for example under heavy load.
        """

    @abc.abstractmethod
    def get(
        self, kind: EntryKind, hash: str, size: int
    ) -> Tuple[Optional[BinaryIO], int]:
        """Return a readable stream and the logical size, or (None, -1) if missing.

        Raises on unexpected failures.
        """

    @abc.abstractmethod
    def contains(self, kind: EntryKind, hash: str, size: int) -> Tuple[bool, int]:
        """Return whether the item exists remotely, and its size (-1 if unknown)."""


def transform_action_cache_key(
    key: str, instance: str, logger: Optional[_Logger] = None
) -> str:
    """Derive an action cache key that is specific to an instance name.

    The key is returned unchanged if the instance name is empty.
    """
    if not instance:
        return key

    digest = hashlib.sha256()
    digest.update(key.encode())
    digest.update(instance.encode())
    new_key = digest.hexdigest()

    (logger or _log).info("REMAP AC HASH %s : %s => %s", key, instance, new_key)
    return new_key


def lookup_key(kind: EntryKind, hash: str) -> str:
    """The index key for an entry of the given kind and hash."""
    return f"{kind}/{hash}"