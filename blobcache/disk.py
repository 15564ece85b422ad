"""A filesystem-based LRU cache of AC, CAS and RAW entries, with an optional proxy backend."""

from __future__ import annotations

import hashlib
import io
import logging
import os
import posixpath
import secrets
import shutil
import sys
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import BinaryIO, Callable, List, Optional, Tuple

import zstandard

from . import casblob
from .cache import CacheError, Digest, EntryKind, Proxy, lookup_key
from .layout import create_directory_structure, migrate_directories, scan_dir
from .paths import file_location, file_location_base, is_size_mismatch, kind_from_lookup_key

_log = logging.getLogger(__name__)

_HASH_LEN = 64
EMPTY_SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
EMPTY_ZSTD_BLOB = bytes([40, 181, 47, 253, 32, 0, 1, 0, 0])

_BAD_REQUEST = 400
_INTERNAL = 500
_INSUFFICIENT_STORAGE = 507

_DISK_OPS_LIMIT = 3000 if sys.platform == "darwin" else 5000
_COPY_BLOCK = 64 * 1024


@dataclass(frozen=True)
class CacheStats:
    """A snapshot of the cache's size accounting."""

    total_size: int
    reserved_size: int
    num_items: int
    uncompressed_size: int


@dataclass(frozen=True)
class _Item:
    size: int
    size_on_disk: int
    random: str
    legacy: bool


class _SizedLRU:
    """Index of cache entries in least-recently-used order, bounded by size on disk."""

    def __init__(
        self, max_size: int, on_evict: Callable[[str, _Item], None], hard_limit: int = 0
    ) -> None:
        self.max_size = max_size
        self.hard_limit = hard_limit
        self._on_evict = on_evict
        self._items: "OrderedDict[str, _Item]" = OrderedDict()
        self.total_size = 0
        self.reserved_size = 0
        self.uncompressed_size = 0

    def __len__(self) -> int:
        return len(self._items)

    def get(self, key: str) -> Optional[_Item]:
        item = self._items.get(key)
        if item is not None:
            self._items.move_to_end(key)
        return item

    def _drop(self, key: str) -> _Item:
        item = self._items.pop(key)
        self.total_size -= item.size_on_disk
        self.uncompressed_size -= item.size
        return item

    def remove(self, key: str) -> None:
        if key in self._items:
            self._on_evict(key, self._drop(key))

    def _evict_until(self, needed: int) -> None:
        while self._items and self.total_size + self.reserved_size + needed > self.max_size:
            key = next(iter(self._items))
            self._on_evict(key, self._drop(key))

    def add(self, key: str, item: _Item) -> bool:
        if item.size_on_disk > self.max_size:
            return False
        old = self._items.get(key)
        if old is not None:
            self._drop(key)
            if old.random != item.random or old.legacy != item.legacy:
                self._on_evict(key, old)
        self._items[key] = item
        self.total_size += item.size_on_disk
        self.uncompressed_size += item.size
        self._evict_until(0)
        return True

    def reserve(self, size: int) -> None:
        if size > self.max_size:
            raise CacheError(
                _BAD_REQUEST,
                f"Unable to reserve space for blob (size: {size}) larger than cache size {self.max_size}",
            )
        if self.hard_limit > 0 and self.total_size + self.reserved_size + size > self.hard_limit:
            raise CacheError(_INSUFFICIENT_STORAGE, "Cache hard size limit reached")
        self._evict_until(size)
        if self.reserved_size + size > self.max_size:
            raise CacheError(
                _INSUFFICIENT_STORAGE,
                f"Not enough free space to reserve {size} bytes",
            )
        self.reserved_size += size

    def unreserve(self, size: int) -> None:
        if size > self.reserved_size:
            raise CacheError(
                _INTERNAL, f"Unable to unreserve {size} bytes, only {self.reserved_size} reserved"
            )
        self.reserved_size -= size


def _bad_request(text: str) -> CacheError:
    return CacheError(_BAD_REQUEST, text)


def _internal(err: BaseException) -> CacheError:
    if isinstance(err, CacheError):
        return err
    return CacheError(_INTERNAL, str(err))


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except OSError:
        _log.warning("failed to remove file: %r", path)


class DiskCache:
    """A filesystem-based LRU cache, safe for use from several threads."""

    def __init__(
        self,
        directory: str,
        max_size_bytes: int,
        *,
        proxy: Optional[Proxy] = None,
        storage_mode: str = "zstd",
        max_blob_size: int = sys.maxsize,
        max_proxy_blob_size: int = sys.maxsize,
        max_size_hard_limit: int = 0,
        access_logger: Optional[logging.Logger] = None,
    ) -> None:
        if storage_mode == "zstd":
            self.storage_mode = casblob.CompressionType.ZSTANDARD
        elif storage_mode == "uncompressed":
            self.storage_mode = casblob.CompressionType.IDENTITY
        else:
            raise ValueError(f"Unsupported storage mode: {storage_mode!r}")

        os.makedirs(directory, exist_ok=True)
        self.directory = os.path.realpath(directory)
        self.proxy = proxy
        self.max_blob_size = max_blob_size
        self.max_proxy_blob_size = max_proxy_blob_size
        self.access_logger = access_logger or _log

        self._lock = threading.Lock()
        self._disk_ops = threading.BoundedSemaphore(_DISK_OPS_LIMIT)

        create_directory_structure(self.directory)
        migrate_directories(self.directory)
        items = scan_dir(self.directory)

        self._lru = _SizedLRU(max_size_bytes, self._on_evict, max_size_hard_limit)
        for scanned in items:
            item = _Item(scanned.size, scanned.size_on_disk, scanned.random, scanned.legacy)
            if not self._lru.add(scanned.lookup_key, item):
                _remove_quietly(self._element_path(scanned.lookup_key, item))

    def _element_path(self, key: str, item: _Item) -> str:
        kind = kind_from_lookup_key(key)
        hash_ = key[-_HASH_LEN:]
        return os.path.join(
            self.directory, file_location(kind, item.legacy, hash_, item.size, item.random)
        )

    def _on_evict(self, key: str, item: _Item) -> None:
        _remove_quietly(self._element_path(key, item))

    def max_size(self) -> int:
        """The size at which the cache starts evicting, in bytes."""
        return self._lru.max_size

    def stats(self) -> CacheStats:
        """Current size accounting of the cache."""
        with self._lock:
            return CacheStats(
                self._lru.total_size,
                self._lru.reserved_size,
                len(self._lru),
                self._lru.uncompressed_size,
            )

    def _create_tempfile(self, base: str, legacy: bool) -> Tuple[BinaryIO, str, str]:
        suffix = ".v1" if legacy else ""
        while True:
            random = str(secrets.randbelow(10**9) + 1)
            path = f"{base}-{random}{suffix}"
            try:
                return open(path, "xb"), path, random
            except FileExistsError:
                continue

    def _write_and_close(
        self, reader: BinaryIO, kind: EntryKind, hash: str, size: int, f: BinaryIO
    ) -> int:
        if kind is EntryKind.CAS and self.storage_mode != casblob.CompressionType.IDENTITY:
            return casblob.write_and_close(reader, f, self.storage_mode, hash, size)

        with f:
            hasher = hashlib.sha256() if kind is EntryKind.CAS else None
            written = 0
            while True:
                block = reader.read(_COPY_BLOCK)
                if not block:
                    break
                f.write(block)
                written += len(block)
                if hasher is not None:
                    hasher.update(block)
            if is_size_mismatch(written, size):
                raise ValueError(f"sizes don't match. Expected {size}, found {written}")
            f.flush()
            os.fsync(f.fileno())
            if hasher is not None and hasher.hexdigest() != hash:
                raise ValueError(
                    f"failed to verify hash: expected {hash}, found {hasher.hexdigest()}"
                )
            return written

    def _commit(
        self, key: str, legacy: bool, reserved: int, logical_size: int, size_on_disk: int, random: str
    ) -> None:
        with self._lock:
            if reserved > 0:
                self._lru.unreserve(reserved)
            if not self._lru.add(key, _Item(logical_size, size_on_disk, random, legacy)):
                raise CacheError(
                    _INTERNAL,
                    f"INTERNAL ERROR: failed to add: {key}, size {logical_size} (on disk: {size_on_disk})",
                )

    def _unreserve(self, size: int) -> None:
        with self._lock:
            self._lru.unreserve(size)

    def put(self, kind: EntryKind, hash: str, size: int, reader: BinaryIO) -> None:
        """Store `size` bytes read from `reader` under `hash`.

        CAS contents must match `hash`. All of `reader` is consumed.
        """
        try:
            self._put(kind, hash, size, reader)
        finally:
            while reader.read(_COPY_BLOCK):
                pass

    def _put(self, kind: EntryKind, hash: str, size: int, reader: BinaryIO) -> None:
        if size < 0:
            raise _bad_request(f"Invalid (negative) size: {size}")
        if size > self.max_blob_size:
            raise _bad_request(
                f"Blob size {size} too large, max blob size is {self.max_blob_size}"
            )
        if len(hash) != _HASH_LEN:
            raise _bad_request(f"Invalid hash size: {len(hash)}, expected: 32")
        if kind is EntryKind.CAS and size == 0 and hash == EMPTY_SHA256:
            return

        with self._disk_ops:
            reserved = 0
            if size > 0:
                with self._lock:
                    self._lru.reserve(size)
                reserved = size

            blob_file = None
            try:
                legacy = kind is EntryKind.CAS and self.storage_mode == casblob.CompressionType.IDENTITY
                base = posixpath.join(
                    self.directory, file_location_base(kind, legacy, hash, size)
                )
                f, blob_file, random = self._create_tempfile(base, legacy)
                try:
                    size_on_disk = self._write_and_close(reader, kind, hash, size, f)
                except Exception as err:
                    raise _internal(err) from err

                if self.proxy is not None:
                    try:
                        self.proxy.put(kind, hash, size, size_on_disk, open(blob_file, "rb"))
                    except OSError as err:
                        _log.warning("Failed to proxy Put: %s", err)

                self._commit(lookup_key(kind, hash), legacy, reserved, size, size_on_disk, random)
                reserved = 0
                blob_file = None
            finally:
                if blob_file is not None:
                    _remove_quietly(blob_file)
                if reserved:
                    self._unreserve(reserved)

    def get(
        self, kind: EntryKind, hash: str, size: int = -1, offset: int = 0
    ) -> Tuple[Optional[BinaryIO], int]:
        """Return a stream of the entry's data from `offset` and its size, or (None, -1)."""
        return self._get(kind, hash, size, offset, zstd=False)

    def get_zstd(
        self, hash: str, size: int = -1, offset: int = 0
    ) -> Tuple[Optional[BinaryIO], int]:
        """Like get for CAS entries, but the stream holds zstd-compressed data."""
        return self._get(EntryKind.CAS, hash, size, offset, zstd=True)

    def _open_local(
        self, kind: EntryKind, hash: str, size: int, offset: int, zstd: bool
    ) -> Tuple[Optional[BinaryIO], int]:
        key = lookup_key(kind, hash)
        with self._lock:
            item = self._lru.get(key)
        if item is None or is_size_mismatch(size, item.size):
            return None, -1

        path = os.path.join(
            self.directory, file_location(kind, item.legacy, hash, item.size, item.random)
        )
        try:
            f = open(path, "rb")
        except FileNotFoundError:
            _log.warning("expected %r to exist on disk, undersized cache?", path)
            return None, -1

        if kind is EntryKind.CAS:
            try:
                if item.legacy:
                    f.seek(offset)
                    rc = casblob.get_legacy_zstd_reader(f) if zstd else f
                elif zstd:
                    rc = casblob.get_zstd_reader(f, size, offset)
                else:
                    rc = casblob.get_uncompressed_reader(f, size, offset)
            except (OSError, ValueError, zstandard.ZstdError) as err:
                _log.warning("failed to retrieve %s: %s", path, err)
                f.close()
                with self._lock:
                    self._lru.remove(key)
                return None, -1
            return rc, item.size

        found = os.fstat(f.fileno()).st_size
        if is_size_mismatch(size, found):
            f.close()
            return None, -1
        f.seek(offset)
        return f, found

    def _get(
        self, kind: EntryKind, hash: str, size: int, offset: int, zstd: bool
    ) -> Tuple[Optional[BinaryIO], int]:
        if len(hash) != _HASH_LEN:
            raise _bad_request(f"Invalid hash size: {len(hash)}, expected: 32")
        if kind is EntryKind.CAS and size <= 0 and hash == EMPTY_SHA256:
            return io.BytesIO(EMPTY_ZSTD_BLOB if zstd else b""), 0
        if kind is not EntryKind.CAS and zstd:
            raise _bad_request("Only CAS blobs are available in compressed form")
        if offset < 0:
            raise _bad_request(f"Invalid offset: {offset}")
        if size > 0 and offset >= size:
            raise _bad_request(f"Invalid offset: {offset} for size {size}")

        rc, found = self._open_local(kind, hash, size, offset, zstd)
        if rc is not None:
            return rc, found

        if self.proxy is None or size > self.max_proxy_blob_size:
            return None, -1

        reserved = 0
        if size > 0:
            with self._lock:
                self._lru.reserve(size)
            reserved = size

        blob_file = None
        try:
            with self._disk_ops:
                return self._get_from_proxy(kind, hash, size, offset, zstd, reserved)
        finally:
            pass

    def _get_from_proxy(
        self, kind: EntryKind, hash: str, size: int, offset: int, zstd: bool, reserved: int
    ) -> Tuple[Optional[BinaryIO], int]:
        key = lookup_key(kind, hash)
        blob_file = None
        try:
            if size < 0 and kind is EntryKind.CAS:
                with self._lock:
                    cached = self._lru.get(key)
                if cached is not None:
                    size = cached.size
            if size > 0 and not reserved:
                with self._lock:
                    try:
                        self._lru.reserve(size)
                        reserved = size
                    except CacheError:
                        pass

            try:
                stream, found = self.proxy.get(kind, hash, size)
            except Exception as err:
                raise _internal(err) from err
            if stream is None:
                return None, -1

            with stream:
                if found > self.max_proxy_blob_size:
                    return None, -1
                if is_size_mismatch(size, found) or found < 0:
                    return None, -1

                legacy = kind is EntryKind.CAS and self.storage_mode == casblob.CompressionType.IDENTITY
                base = posixpath.join(
                    self.directory, file_location_base(kind, legacy, hash, found)
                )
                f, blob_file, random = self._create_tempfile(base, legacy)
                source: BinaryIO = stream
                if kind is EntryKind.CAS and self.storage_mode != casblob.CompressionType.IDENTITY:
                    source = zstandard.ZstdDecompressor().stream_reader(
                        stream, read_across_frames=True
                    )
                try:
                    size_on_disk = self._write_and_close(source, kind, hash, found, f)
                except Exception as err:
                    raise _internal(err) from err

            try:
                rcf = open(blob_file, "rb")
                if kind is not EntryKind.CAS or legacy:
                    if offset > 0:
                        rcf.seek(offset)
                    rc = casblob.get_legacy_zstd_reader(rcf) if zstd else rcf
                elif zstd:
                    rc = casblob.get_zstd_reader(rcf, found, offset)
                else:
                    rc = casblob.get_uncompressed_reader(rcf, found, offset)
            except Exception as err:
                raise _internal(err) from err

            try:
                self._commit(key, legacy, reserved, found, size_on_disk, random)
            except CacheError:
                rc.close()
                raise
            reserved = 0
            blob_file = None
            return rc, found
        finally:
            if blob_file is not None:
                _remove_quietly(blob_file)
            if reserved:
                self._unreserve(reserved)

    def contains(self, kind: EntryKind, hash: str, size: int = -1) -> Tuple[bool, int]:
        """Whether the entry exists locally or via the proxy, and its size (-1 if unknown)."""
        if len(hash) != _HASH_LEN:
            return False, -1
        if kind is EntryKind.CAS and size <= 0 and hash == EMPTY_SHA256:
            return True, 0

        with self._lock:
            item = self._lru.get(lookup_key(kind, hash))
        if item is not None and not is_size_mismatch(size, item.size):
            return True, item.size

        if self.proxy is not None and size <= self.max_proxy_blob_size:
            exists, found = self.proxy.contains(kind, hash, size)
            if exists and found <= self.max_proxy_blob_size and not is_size_mismatch(size, found):
                return True, found

        return False, -1

    def find_missing_local(self, blobs: List[Optional[Digest]]) -> int:
        """Replace CAS digests present locally with None; return how many are missing."""
        missing = 0
        with self._lock:
            for i, digest in enumerate(blobs):
                if digest is None:
                    continue
                if digest.size_bytes == 0 and digest.hash == EMPTY_SHA256:
                    self.access_logger.info("GRPC CAS HEAD %s OK", digest.hash)
                    blobs[i] = None
                    continue
                item = self._lru.get(lookup_key(EntryKind.CAS, digest.hash))
                if item is not None and not is_size_mismatch(digest.size_bytes, item.size):
                    self.access_logger.info("GRPC CAS HEAD %s OK", digest.hash)
                    blobs[i] = None
                else:
                    missing += 1
        return missing