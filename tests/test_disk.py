import hashlib
import io
import os
import threading

import pytest
import zstandard

from blobcache import casblob
from blobcache.cache import CacheError, Digest, EntryKind, Proxy
from blobcache.disk import DiskCache

CONTENTS = b"hello"
CONTENTS_HASH = "2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824"


def sha(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def random_data(n):
    data = os.urandom(n)
    return data, sha(data)


def read_all(rc):
    with rc:
        return rc.read()


def test_basics(tmp_path):
    c = DiskCache(str(tmp_path), 256 * 2 + 4096)
    data, h = random_data(256)
    assert c.get(EntryKind.CAS, h, 256, 0) == (None, -1)
    c.put(EntryKind.CAS, h, 256, io.BytesIO(data))
    rc, size = c.get(EntryKind.CAS, h, 256, 0)
    assert size == 256
    assert read_all(rc) == data


def test_put_wrong_size(tmp_path):
    c = DiskCache(str(tmp_path), 4096)
    h = sha(b"hello")
    for kind in EntryKind:
        c.put(kind, h, 5, io.BytesIO(b"hello"))
        with pytest.raises(CacheError):
            c.put(kind, h, 6, io.BytesIO(b"hello"))
        with pytest.raises(CacheError):
            c.put(kind, h, 4, io.BytesIO(b"hello"))
        with pytest.raises(CacheError):
            c.put(kind, sha(b"hell"), 4, io.BytesIO(b"hello"))


def test_get_contains_wrong_size(tmp_path):
    c = DiskCache(str(tmp_path), 4096)
    c.put(EntryKind.CAS, CONTENTS_HASH, 5, io.BytesIO(CONTENTS))
    assert c.contains(EntryKind.CAS, CONTENTS_HASH, 6) == (False, -1)
    assert c.get(EntryKind.CAS, CONTENTS_HASH, 6, 0)[0] is None
    assert c.contains(EntryKind.CAS, CONTENTS_HASH, -1) == (True, 5)
    rc, _ = c.get(EntryKind.CAS, CONTENTS_HASH, -1, 0)
    assert read_all(rc) == CONTENTS


class StubProxy(Proxy):
    def put(self, kind, hash, logical_size, size_on_disk, stream):
        stream.close()

    def get(self, kind, hash, size):
        if hash != CONTENTS_HASH or kind is not EntryKind.CAS:
            return None, -1
        return io.BytesIO(zstandard.ZstdCompressor().compress(CONTENTS)), len(CONTENTS)

    def contains(self, kind, hash, size):
        if hash != CONTENTS_HASH or kind is not EntryKind.CAS:
            return False, -1
        return True, len(CONTENTS)


def test_get_contains_wrong_size_with_proxy(tmp_path):
    c = DiskCache(str(tmp_path), 4096, proxy=StubProxy())
    assert c.stats().num_items == 0
    assert c.contains(EntryKind.CAS, CONTENTS_HASH, 6)[0] is False
    assert c.get(EntryKind.CAS, CONTENTS_HASH, 6, 0)[0] is None
    assert c.stats().num_items == 0
    assert c.contains(EntryKind.CAS, CONTENTS_HASH, -1)[0] is True
    rc, size = c.get(EntryKind.CAS, CONTENTS_HASH, -1, 0)
    assert read_all(rc) == CONTENTS
    assert size == 5
    assert c.stats().num_items == 1


def test_overwrite(tmp_path):
    c = DiskCache(str(tmp_path), 4096)
    cases = [
        (EntryKind.CAS, sha(b"hello"), b"hello"),
        (EntryKind.CAS, sha(b"hello"), b"hello"),
        (EntryKind.AC, sha(b"world"), b"world1"),
        (EntryKind.AC, sha(b"world"), b"world2"),
        (EntryKind.RAW, sha(b"world"), b"world3"),
        (EntryKind.RAW, sha(b"world"), b"world4"),
    ]
    for kind, h, data in cases:
        c.put(kind, h, len(data), io.BytesIO(data))
        rc, size = c.get(kind, h, len(data), 0)
        assert size == len(data)
        assert read_all(rc) == data


def test_existing_files_evict_oldest_first(tmp_path):
    items = [
        (b"hej", "9c478bf63e9500cb5db1e85ece82f18c8eb9e52e2f9135acd7f10972c8d563ba",
         "cas.v2/9c/9c478bf63e9500cb5db1e85ece82f18c8eb9e52e2f9135acd7f10972c8d563ba-3-123456789"),
        ("världen".encode(), "d497feaa39156f4ae61317db9d2adc3a8f2ff1437fd48ccb56f814f0b7ac5fe1",
         "cas.v2/d4/d497feaa39156f4ae61317db9d2adc3a8f2ff1437fd48ccb56f814f0b7ac5fe1-8-123456789"),
        (b"foo", "733e21b37cef883579a88183eed0d00cdeea0b59e1bcd77db6957f881c3a6b54",
         "ac.v2/73/733e21b37cef883579a88183eed0d00cdeea0b59e1bcd77db6957f881c3a6b54-123456789"),
        (b"bar", "733e21b37cef883579a88183eed0d00cdeea0b59e1bcd77db6957f881c3a6b54",
         "raw.v2/73/733e21b37cef883579a88183eed0d00cdeea0b59e1bcd77db6957f881c3a6b54-123456789"),
    ]
    for n, (data, h, rel) in enumerate(items):
        fp = tmp_path / rel
        fp.parent.mkdir(parents=True, exist_ok=True)
        if rel.startswith("cas.v2/"):
            casblob.write_and_close(
                io.BytesIO(data), open(fp, "wb"), casblob.CompressionType.ZSTANDARD, h, len(data)
            )
        else:
            fp.write_bytes(data)
        os.utime(fp, (1_000_000 + n * 100, 1_000_000 + n * 100))

    c = DiskCache(str(tmp_path), 1000)
    assert c.stats().num_items == 4
    assert c.contains(EntryKind.CAS, items[0][1], 3)[0] is True

    evicted = False
    for _ in range(100):
        data, h = random_data(32)
        c.put(EntryKind.CAS, h, 32, io.BytesIO(data))
        if not c.contains(EntryKind.CAS, items[0][1], 3)[0]:
            evicted = True
            break
    assert evicted
    assert c.contains(EntryKind.CAS, items[1][1], 8)[0] is True
    assert not (tmp_path / items[0][2]).exists()


def test_blob_too_large(tmp_path):
    c = DiskCache(str(tmp_path), 4096)
    for kind in (EntryKind.AC, EntryKind.RAW):
        with pytest.raises(CacheError) as excinfo:
            c.put(kind, sha(b"foo"), 10000, io.BytesIO(CONTENTS))
        assert excinfo.value.code == 400


def test_corrupted_cas_blob(tmp_path):
    c = DiskCache(str(tmp_path), 4096)
    with pytest.raises(CacheError):
        c.put(EntryKind.CAS, sha(b"foo"), 5, io.BytesIO(CONTENTS))
    c.put(EntryKind.RAW, sha(b"foo"), 5, io.BytesIO(CONTENTS))
    assert c.contains(EntryKind.RAW, sha(b"foo"), 5) == (True, 5)


def test_migrate_from_old_directory_structure(tmp_path):
    (tmp_path / "ac").mkdir()
    (tmp_path / "cas").mkdir()
    ac_data, ac_hash = random_data(512)
    (tmp_path / "ac" / ac_hash).write_bytes(ac_data)
    cas_data1, cas_hash1 = random_data(1024)
    (tmp_path / "cas" / cas_hash1).write_bytes(cas_data1)
    cas_data2, cas_hash2 = random_data(1024)
    (tmp_path / "cas" / cas_hash2).write_bytes(cas_data2)

    c = DiskCache(str(tmp_path), 2560 * 2 + 4096 * 2)
    assert c.stats().num_items == 3
    assert c.contains(EntryKind.AC, ac_hash, 512)[0] is True
    assert c.contains(EntryKind.CAS, cas_hash1, 1024)[0] is True
    assert c.contains(EntryKind.CAS, cas_hash2, 1024)[0] is True


def test_load_existing_entries(tmp_path):
    blobs = {}
    for name in ("ac", "cas"):
        d, h = random_data(1024)
        (tmp_path / name).mkdir(exist_ok=True)
        (tmp_path / name / h).write_bytes(d)
        blobs[name + "0"] = h
    for name in ("cas", "ac", "raw"):
        d, h = random_data(1024)
        sub = tmp_path / name / h[:2]
        sub.mkdir(parents=True, exist_ok=True)
        (sub / h).write_bytes(d)
        blobs[name + "1"] = h
    (tmp_path / "raw" / blobs["raw1"][:2] / ".DS_Store").write_bytes(b"\x01\x02\x03")
    (tmp_path / "raw" / ".DS_Store").write_bytes(b"")
    (tmp_path / ".DS_Store").write_bytes(b"\x04\x05\x06")

    c = DiskCache(str(tmp_path), (1024 + 4096) * 5 * 2)
    assert c.stats().num_items == 5
    assert c.contains(EntryKind.AC, blobs["ac0"], 1024)[0]
    assert c.contains(EntryKind.CAS, blobs["cas0"], 1024)[0]
    assert c.contains(EntryKind.CAS, blobs["cas1"], 1024)[0]
    assert c.contains(EntryKind.RAW, blobs["raw1"], 1024)[0]


def test_distinct_keyspaces(tmp_path):
    c = DiskCache(str(tmp_path), (1024 + 4096) * 3 * 2)
    blob, h = random_data(1024)
    for kind in (EntryKind.CAS, EntryKind.AC, EntryKind.RAW):
        c.put(kind, h, 1024, io.BytesIO(blob))
        rc, size = c.get(kind, h, 1024, 0)
        assert read_all(rc) == blob
        assert size == 1024
    assert c.stats().num_items == 3


@pytest.mark.parametrize("mode", ["zstd", "uncompressed"])
def test_get_with_offset(tmp_path, mode):
    size = 2048 + 256
    c = DiskCache(str(tmp_path), size * 4, storage_mode=mode)
    data, h = random_data(size)
    c.put(EntryKind.CAS, h, size, io.BytesIO(data))
    for offset in (0, 42, 1023, 1024, 1025, 2048, 2303):
        rc, found = c.get(EntryKind.CAS, h, size, offset)
        assert found == size
        assert read_all(rc) == data[offset:]


def test_get_zstd_roundtrip(tmp_path):
    c = DiskCache(str(tmp_path), 10000)
    data, h = random_data(300)
    c.put(EntryKind.CAS, h, 300, io.BytesIO(data))
    rc, size = c.get_zstd(h, 300, 0)
    compressed = read_all(rc)
    reader = zstandard.ZstdDecompressor().stream_reader(
        io.BytesIO(compressed), read_across_frames=True
    )
    assert reader.read() == data
    assert size == 300


def test_get_zstd_rejects_non_cas(tmp_path):
    c = DiskCache(str(tmp_path), 4096)
    with pytest.raises(CacheError) as excinfo:
        c._get(EntryKind.AC, CONTENTS_HASH, 5, 0, zstd=True)
    assert excinfo.value.code == 400


def test_invalid_offset(tmp_path):
    c = DiskCache(str(tmp_path), 4096)
    with pytest.raises(CacheError) as excinfo:
        c.get(EntryKind.CAS, CONTENTS_HASH, 5, 5)
    assert excinfo.value.code == 400


def test_empty_blob(tmp_path):
    c = DiskCache(str(tmp_path), 4096)
    empty = sha(b"")
    assert c.contains(EntryKind.CAS, empty, 0) == (True, 0)
    rc, size = c.get(EntryKind.CAS, empty, 0, 0)
    assert (read_all(rc), size) == (b"", 0)


def test_lost_and_found(tmp_path):
    (tmp_path / "lost+found").mkdir()
    for kind in ("ac.v2", "cas.v2", "raw.v2"):
        for a in "0123456789abcdef":
            for b in "0123456789abcdef":
                (tmp_path / kind / (a + b) / "lost+found").mkdir(parents=True)
    c = DiskCache(str(tmp_path), 4096)
    assert c.stats().num_items == 0


@pytest.mark.parametrize("mode", ["zstd", "uncompressed"])
def test_validates_cas_hash(tmp_path, mode):
    data = b"test data"
    c = DiskCache(str(tmp_path), 10000, storage_mode=mode)
    _, other = random_data(len(data) + 1)
    with pytest.raises(CacheError):
        c.put(EntryKind.CAS, other, len(data), io.BytesIO(data))
    c.put(EntryKind.CAS, sha(data), len(data), io.BytesIO(data))
    assert c.contains(EntryKind.CAS, sha(data), len(data)) == (True, len(data))


def test_find_missing_local(tmp_path):
    c = DiskCache(str(tmp_path), 10000)
    data, h = random_data(100)
    c.put(EntryKind.CAS, h, 100, io.BytesIO(data))
    blobs = [Digest(h, 100), Digest(sha(b"x"), 1), Digest(sha(b""), 0)]
    assert c.find_missing_local(blobs) == 1
    assert blobs == [None, Digest(sha(b"x"), 1), None]


class BlockingProxy(Proxy):
    def __init__(self):
        self.store = {}
        self.started = threading.Event()
        self.proceed = threading.Event()

    def put(self, kind, hash, logical_size, size_on_disk, stream):
        stream.close()

    def get(self, kind, hash, size):
        self.started.set()
        self.proceed.wait(10)
        if hash in self.store:
            return io.BytesIO(self.store[hash]), size
        return None, -1

    def contains(self, kind, hash, size):
        return hash in self.store, size


def test_proxy_result_too_large_to_reserve(tmp_path):
    proxy = BlockingProxy()
    c = DiskCache(str(tmp_path), 4096, proxy=proxy, storage_mode="uncompressed")
    d1, h1 = random_data(4096)
    d2, h2 = random_data(4096)
    proxy.store[h1] = d1
    proxy.store[h2] = d2

    results = []

    def fetch():
        rc, _ = c.get(EntryKind.CAS, h1, 4096, 0)
        results.append(read_all(rc))

    t = threading.Thread(target=fetch)
    t.start()
    assert proxy.started.wait(10)

    with pytest.raises(CacheError) as excinfo:
        c.get(EntryKind.CAS, h2, 4096, 0)
    assert excinfo.value.code == 507

    proxy.proceed.set()
    t.join(10)
    assert results == [d1]

    rc, size = c.get(EntryKind.CAS, h2, 4096, 0)
    assert read_all(rc) == d2
    assert size == 4096