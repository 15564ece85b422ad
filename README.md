# blobcache

A filesystem-backed LRU cache for build artifacts. Entries live in three
separate keyspaces, given by `blobcache.cache.EntryKind`:

- `EntryKind.CAS`: content-addressable storage. The key is the SHA-256 of the
  blob, and uploads are checked against it.
- `EntryKind.AC`: the action cache, keyed by an action digest.
- `EntryKind.RAW`: entries stored as they arrive, without any check.

By default, CAS blobs are stored on disk in a chunked zstandard format. A
small header records the offsets of independently compressed 1 MiB chunks,
so reads from any offset only decompress the chunks they need. AC and RAW
entries are stored as they are.

## Installation

```
pip install blobcache
```

For development, with the test dependencies:

```
pip install -e ".[test]"
pytest
```

## Usage

```python
import hashlib
import io

from blobcache.cache import EntryKind
from blobcache.disk import DiskCache

cache = DiskCache("/tmp/blobcache", 64 * 1024 * 1024)

data = b"hello"
digest = hashlib.sha256(data).hexdigest()

cache.put(EntryKind.CAS, digest, len(data), io.BytesIO(data))

assert cache.contains(EntryKind.CAS, digest, len(data)) == (True, len(data))

stream, size = cache.get(EntryKind.CAS, digest, len(data), 0)
with stream:
    assert stream.read() == data

# Partial reads start from an offset:
stream, size = cache.get(EntryKind.CAS, digest, len(data), 2)
with stream:
    assert stream.read() == b"llo"

# The same blob as a zstandard stream (CAS entries only):
stream, size = cache.get_zstd(digest, len(data), 0)
```

`get` and `get_zstd` return `(None, -1)` on a miss, and `contains` returns
`(False, -1)`. The returned size is always the logical (uncompressed) size.
The empty CAS blob is always present and never stored.

Errors raise `blobcache.cache.CacheError`, whose `code` attribute carries an
HTTP-style status:

- 400 for bad requests: a hash that is not 64 characters long, a negative
  size, a blob larger than `max_blob_size` or than the whole cache, or an
  invalid offset.
- 500 for failures while storing, such as a size mismatch or a CAS upload
  whose contents do not match the hash.
- 507 when there is not enough space to reserve for an incoming blob, or
  when `max_size_hard_limit` would be exceeded.

### Options

`DiskCache(directory, max_size_bytes, *, ...)` takes these keyword options:

- `storage_mode`: `"zstd"` (default) or `"uncompressed"`. Any other value
  raises `ValueError`. In uncompressed mode, CAS blobs are stored as raw
  files.
- `max_blob_size`: the largest blob that `put` accepts.
- `max_proxy_blob_size`: the largest blob that is looked up via the proxy.
- `max_size_hard_limit`: when greater than 0, reservations that would take
  stored plus reserved bytes past this limit are refused.
- `proxy`: an optional proxy backend (see below).
- `access_logger`: a `logging.Logger` for access lines.

A size of `-1` means "unknown" wherever a size is passed. When the size on
disk goes past `max_size_bytes`, the least recently used entries are evicted
and their files removed. `stats()` and `max_size()` report the current state:

```python
stats = cache.stats()
print(stats.total_size, stats.reserved_size, stats.num_items, stats.uncompressed_size)
print(cache.max_size())
```

### Existing directories

A cache directory is reused when a `DiskCache` is created on it. Files in the
older flat (`ac/`, `cas/`, `raw/`) layouts are moved into the current
`ac.v2/`, `cas.v2/` and `raw.v2/` layout. The entries are then indexed from
least to most recently accessed, so eviction order survives restarts.
`lost+found` directories and `.DS_Store` files are ignored. Any other
unexpected file or directory raises `ValueError`. The module
`blobcache.layout` offers these steps on their own: `create_directory_structure`,
`migrate_directories`, `migrate_directory` and `scan_dir`.

### Finding missing blobs

```python
from blobcache.cache import Digest
from blobcache.findmissing import find_missing_cas_blobs, mark_missing_cas_blobs

missing = find_missing_cas_blobs(cache, [Digest(digest, len(data))])
```

`find_missing_cas_blobs` checks the local index first, in batches. It then
asks the proxy, in parallel, about each local miss that is no larger than
`max_proxy_blob_size`. `mark_missing_cas_blobs(cache, blobs, fail_fast)`
changes the list in place, setting found entries to `None`. With
`fail_fast=True` it raises `MissingBlobError` once any blob is known to be
missing.

### Proxy backends

To use a proxy backend, subclass `blobcache.cache.Proxy` and implement three
methods:

- `put(kind, hash, logical_size, size_on_disk, stream)` is called after each
  successful store, with an open copy of the stored file. The proxy must
  close that stream.
- `get(kind, hash, size)` returns `(stream, size)` or `(None, -1)`. In `"zstd"`
  storage mode, CAS data from the proxy must be a zstandard stream. A file in
  the cache's own CAS format qualifies, since its header is a skippable
  frame. Otherwise the data must be the raw bytes.
- `contains(kind, hash, size)` returns `(found, size)`.

Blobs that the proxy returns are stored locally before they are served.

### Other helpers

- `blobcache.casblob` reads and writes the chunked CAS format:
  `write_and_close`, `read_header`, `get_uncompressed_reader`,
  `get_zstd_reader`, `get_legacy_zstd_reader` and `extract_logical_size`.
- `blobcache.paths` computes entry paths relative to the cache directory.
- `blobcache.cache.transform_action_cache_key` derives an instance-specific
  AC key, and `blobcache.cache.lookup_key` builds index keys.
- `blobcache.auth_methods` lists the authentication method names accepted
  for a blob storage backend (`get_auth_methods`, `is_valid_auth_method`).

## What this package does not do

This is a library only. It has no HTTP or gRPC server and no command-line
program. It exports no metrics. It includes no ready-made proxy backends:
`blobcache.auth_methods` only validates method names and does not connect
anywhere. It also does not check action cache entries against the CAS
blobs they refer to. Any proxy must be written against the `Proxy` interface.