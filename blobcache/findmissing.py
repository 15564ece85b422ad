"""Find which CAS blobs are missing, checking the local index first and then the proxy."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence

from .cache import Digest, EntryKind

_log = logging.getLogger(__name__)

# Moderates how long the cache lock is held during local lookups.
_BATCH_SIZE = 20
_MAX_PROXY_WORKERS = 512


class MissingBlobError(LookupError):
    """A blob could be found neither in the local cache nor via the proxy."""

    def __init__(self, message: str = "a blob could not be found") -> None:
        super().__init__(message)


def filter_non_none(blobs: Sequence[Optional[Digest]]) -> List[Digest]:
    """The non-None entries of `blobs`, in their original order."""
    return [blob for blob in blobs if blob is not None]


def _local_misses(cache, blobs: List[Optional[Digest]], fail_fast: bool) -> List[int]:
    """Mark locally found blobs as None and return the indices to check via the proxy."""
    proxy = cache.proxy
    pending: List[int] = []

    for start in range(0, len(blobs), _BATCH_SIZE):
        chunk = blobs[start:start + _BATCH_SIZE]
        missing = cache.find_missing_local(chunk)
        blobs[start:start + len(chunk)] = chunk
        if missing == 0:
            continue

        if proxy is None:
            if fail_fast:
                raise MissingBlobError()
            continue

        for offset, digest in enumerate(chunk):
            if digest is None:
                continue
            if digest.size_bytes > cache.max_proxy_blob_size:
                # Too large to be fetched through the proxy.
                if fail_fast:
                    raise MissingBlobError()
                continue
            pending.append(start + offset)

    return pending


def mark_missing_cas_blobs(
    cache, blobs: List[Optional[Digest]], fail_fast: bool = False
) -> None:
    """Replace every blob in `blobs` that the cache or its proxy holds with None.

    Missing digests are left in place. With `fail_fast`, MissingBlobError is
    raised as soon as one blob is known to be missing; `blobs` may then be
    only partly updated.
    """
    pending = _local_misses(cache, blobs, fail_fast)
    if not pending:
        return

    proxy = cache.proxy
    access_log = getattr(cache, "access_logger", None) or _log
    missed = threading.Event()

    def check(index: int) -> None:
        digest = blobs[index]
        if digest is None:
            return
        if fail_fast and missed.is_set():
            access_log.info("GRPC CAS HEAD %s CANCELLED", digest.hash)
            return
        found, _ = proxy.contains(EntryKind.CAS, digest.hash, digest.size_bytes)
        if found:
            access_log.info("GRPC CAS HEAD %s OK", digest.hash)
            blobs[index] = None
        else:
            access_log.info("GRPC CAS HEAD %s NOT FOUND", digest.hash)
            if fail_fast:
                missed.set()

    workers = min(_MAX_PROXY_WORKERS, len(pending))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [pool.submit(check, index) for index in pending]
        for future in futures:
            future.result()

    if missed.is_set():
        raise MissingBlobError()


def find_missing_cas_blobs(cache, blobs: Sequence[Optional[Digest]]) -> List[Digest]:
    """The digests in `blobs` that neither the cache nor its proxy holds."""
    remaining = list(blobs)
    mark_missing_cas_blobs(cache, remaining, fail_fast=False)
    return filter_non_none(remaining)