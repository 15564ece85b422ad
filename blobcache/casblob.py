"""On-disk format for CAS blobs: a zstd skippable-frame header, then independently compressed chunks.

The header is stored little-endian and starts with a zstd skippable frame,
so a stored blob is itself a valid zstd stream:

* magic number (uint32) and frame size (uint32)
* uncompressed size (int64), compression type (uint8), chunk size (uint32)
* number of chunk offsets (int64), followed by that many int64 offsets.
  The final offset is the size of the whole file.
"""

from __future__ import annotations

import contextlib
import hashlib
import io
import itertools
import os
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import BinaryIO, Callable, Iterable, Iterator, Tuple

import zstandard

DEFAULT_CHUNK_SIZE = 1024 * 1024

SKIPPABLE_FRAME_MAGIC_NUMBER = 0x184D2A50

_FIXED_HEADER = struct.Struct("<IIqBIq")

CHUNK_TABLE_OFFSET = _FIXED_HEADER.size  # 4 + 4 + 8 + 1 + 4 + 8

_BLOCK_SIZE = 64 * 1024


class CompressionType(IntEnum):
    """How the data following the header is stored."""

    IDENTITY = 0
    ZSTANDARD = 1


@dataclass
class Header:
    """The metadata stored at the start of a CAS blob file."""

    uncompressed_size: int
    compression: int
    chunk_size: int
    chunk_offsets: list[int] = field(default_factory=list)

    def size(self) -> int:
        """Size of the header itself, in bytes."""
        return CHUNK_TABLE_OFFSET + len(self.chunk_offsets) * 8

    def frame_size(self) -> int:
        """Size of the skippable frame's payload (everything after the first 8 bytes)."""
        return self.size() - 8

    def to_bytes(self) -> bytes:
        """Serialise the header in its on-disk form."""
        n = len(self.chunk_offsets)
        return _FIXED_HEADER.pack(
            SKIPPABLE_FRAME_MAGIC_NUMBER,
            self.frame_size(),
            self.uncompressed_size,
            int(self.compression),
            self.chunk_size,
            n,
        ) + struct.pack(f"<{n}q", *self.chunk_offsets)


class _ChunkStream(io.RawIOBase):
    """A read-only stream fed by an iterable of byte strings."""

    def __init__(self, chunks: Iterable[bytes], on_close: Callable[[], None]) -> None:
        super().__init__()
        self._chunks = iter(chunks)
        self._on_close = on_close
        self._pending = b""

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        while not self._pending:
            try:
                self._pending = next(self._chunks)
            except StopIteration:
                return 0
        view = memoryview(buffer)
        n = min(len(view), len(self._pending))
        view[:n] = self._pending[:n]
        self._pending = self._pending[n:]
        return n

    def close(self) -> None:
        if self.closed:
            return
        try:
            closer = getattr(self._chunks, "close", None)
            if closer is not None:
                closer()
            self._on_close()
        finally:
            super().close()


@contextlib.contextmanager
def _close_on_error(f: BinaryIO) -> Iterator[None]:
    try:
        yield
    except BaseException:
        f.close()
        raise


def _read_exact(reader: BinaryIO, n: int) -> bytes:
    """Read up to `n` bytes, stopping early only at end of stream."""
    parts = []
    remaining = n
    while remaining > 0:
        data = reader.read(remaining)
        if not data:
            break
        parts.append(data)
        remaining -= len(data)
    return b"".join(parts)


def _file_blocks(f: BinaryIO) -> Iterator[bytes]:
    while True:
        data = f.read(_BLOCK_SIZE)
        if not data:
            return
        yield data


def read_header(f: BinaryIO) -> Header:
    """Read and validate the header, leaving `f` positioned at the start of the data."""
    position = f.tell()
    file_size = f.seek(0, io.SEEK_END)
    f.seek(position)

    minimum = CHUNK_TABLE_OFFSET + 16
    if file_size <= minimum:
        raise ValueError(
            f"file too small ({file_size}) than the minimum header size ({minimum})"
        )

    fixed = _read_exact(f, CHUNK_TABLE_OFFSET)
    if len(fixed) != CHUNK_TABLE_OFFSET:
        raise ValueError("unable to read header")
    magic, frame_size, uncompressed_size, compression, chunk_size, num_offsets = (
        _FIXED_HEADER.unpack(fixed)
    )
    if magic != SKIPPABLE_FRAME_MAGIC_NUMBER:
        raise ValueError("expected magic number not found")

    if num_offsets < 2:
        raise ValueError(
            f"internal error: need at least one chunk, found {num_offsets - 1}"
        )

    metadata_size = num_offsets * 8 + 8 + 1 + 4 + 8
    if frame_size != metadata_size:
        raise ValueError(
            f"metadata frame size {frame_size}, but metadata size {metadata_size}"
        )

    table = _read_exact(f, num_offsets * 8)
    if len(table) != num_offsets * 8:
        raise ValueError("unable to read chunk offset table")
    offsets = list(struct.unpack(f"<{num_offsets}q", table))

    previous = -1
    for offset in offsets:
        if offset <= previous:
            raise ValueError(
                f"offset table values should increase: {offset} -> {previous}"
            )
        previous = offset

    if previous != file_size:
        raise ValueError(
            f"final offset in chunk table {previous} should be file size {file_size}"
        )

    try:
        compression = CompressionType(compression)
    except ValueError:
        pass

    return Header(uncompressed_size, compression, chunk_size, offsets)


def _check_expected_size(header: Header, expected_size: int) -> None:
    if expected_size != -1 and header.uncompressed_size != expected_size:
        raise ValueError(
            f"expected a blob of size {expected_size}, found {header.uncompressed_size}"
        )


def extract_logical_size(stream: BinaryIO) -> Tuple[BinaryIO, int]:
    """Read the logical size from the start of a stored blob.

    Returns a stream equivalent to `stream` (nothing consumed) and the size.
    """
    early = _read_exact(stream, 16)
    if len(early) != 16:
        raise ValueError(f"tried to read 16 header bytes, only read {len(early)}")

    (uncompressed_size,) = struct.unpack_from("<q", early, 8)
    if uncompressed_size <= 0:
        raise ValueError(
            f"expected blob to have positive size, found {uncompressed_size}"
        )

    combined = _ChunkStream(
        itertools.chain([early], _file_blocks(stream)), stream.close
    )
    return combined, uncompressed_size


def _decompressed_chunks(
    f: BinaryIO, header: Header, first_chunk: int, skip: int
) -> Iterator[bytes]:
    dctx = zstandard.ZstdDecompressor()
    offsets = header.chunk_offsets
    for index in range(first_chunk, len(offsets) - 1):
        f.seek(offsets[index])
        compressed = _read_exact(f, offsets[index + 1] - offsets[index])
        data = dctx.decompress(compressed, max_output_size=header.chunk_size)
        if index == first_chunk and skip:
            data = data[skip:]
        yield data


def get_uncompressed_reader(f: BinaryIO, expected_size: int, offset: int) -> BinaryIO:
    """Return a stream of the blob's uncompressed data, starting at `offset`.

    Closing the returned stream closes `f`. On error `f` is closed.
    """
    with _close_on_error(f):
        header = read_header(f)
        _check_expected_size(header, expected_size)

        if header.compression == CompressionType.IDENTITY:
            if offset > 0:
                f.seek(offset, io.SEEK_CUR)
            return f

        if header.compression != CompressionType.ZSTANDARD:
            raise ValueError(
                f"internal error: unsupported compression type {int(header.compression)}"
            )

        chunk_num, remainder = divmod(offset, header.chunk_size)
        return _ChunkStream(
            _decompressed_chunks(f, header, chunk_num, remainder), f.close
        )


def get_zstd_reader(f: BinaryIO, expected_size: int, offset: int) -> BinaryIO:
    """Return a stream of zstd-compressed data for the blob, starting at `offset`.

    A full read (offset 0) streams the whole file, header included.
    Closing the returned stream closes `f`. On error `f` is closed.
    """
    with _close_on_error(f):
        header = read_header(f)
        _check_expected_size(header, expected_size)

        if header.compression == CompressionType.IDENTITY:
            if offset > 0:
                f.seek(offset, io.SEEK_CUR)
            return get_legacy_zstd_reader(f)

        if header.compression != CompressionType.ZSTANDARD:
            raise ValueError(
                f"unsupported compression type: {int(header.compression)}"
            )

        if offset == 0:
            f.seek(0)
            return f

        chunk_num, remainder = divmod(offset, header.chunk_size)
        offsets = header.chunk_offsets
        f.seek(offsets[chunk_num])

        if remainder == 0:
            return f

        compressed = _read_exact(f, offsets[chunk_num + 1] - offsets[chunk_num])
        data = zstandard.ZstdDecompressor().decompress(
            compressed, max_output_size=header.chunk_size
        )
        recompressed = zstandard.ZstdCompressor().compress(data[remainder:])

        if chunk_num == len(offsets) - 2:
            f.close()
            return io.BytesIO(recompressed)

        return _ChunkStream(itertools.chain([recompressed], _file_blocks(f)), f.close)


def get_legacy_zstd_reader(f: BinaryIO) -> BinaryIO:
    """Return a stream of zstd-compressed data read from the uncompressed file `f`.

    Closing the returned stream closes `f`.
    """

    def compressed() -> Iterator[bytes]:
        cobj = zstandard.ZstdCompressor().compressobj()
        for block in _file_blocks(f):
            out = cobj.compress(block)
            if out:
                yield out
        yield cobj.flush()

    return _ChunkStream(compressed(), f.close)


def _sync(f: BinaryIO) -> None:
    f.flush()
    try:
        fd = f.fileno()
    except (AttributeError, io.UnsupportedOperation):
        return
    os.fsync(fd)


def write_and_close(
    reader: BinaryIO,
    f: BinaryIO,
    compression: CompressionType,
    hash: str,
    size: int,
) -> int:
    """Read `size` bytes from `reader` and store them in `f` as a CAS blob.

    The sha256 of the data must equal `hash`. Returns the size on disk.
    `f` is always closed.
    """
    try:
        if size <= 0:
            raise ValueError(f"invalid file size: {size}")

        chunk_size = DEFAULT_CHUNK_SIZE
        compression = CompressionType(compression)

        if compression == CompressionType.ZSTANDARD:
            num_chunks = -(-size // chunk_size)
        else:
            num_chunks = 1

        header = Header(
            uncompressed_size=size,
            compression=compression,
            chunk_size=chunk_size,
            chunk_offsets=[0] * (num_chunks + 1),
        )
        header.chunk_offsets[0] = CHUNK_TABLE_OFFSET
        file_offset = header.size()
        hasher = hashlib.sha256()

        if compression == CompressionType.IDENTITY:
            header.chunk_offsets = [file_offset, file_offset + size]
            f.write(header.to_bytes())

            copied = 0
            for block in _file_blocks(reader):
                f.write(block)
                hasher.update(block)
                copied += len(block)
            if copied != size:
                raise ValueError(
                    f"expected to copy {size} bytes, actually copied {copied} bytes"
                )

            actual = hasher.hexdigest()
            if actual != hash:
                raise ValueError(
                    f"checksums don't match. Expected {hash}, found {actual}"
                )
            _sync(f)
            return copied + file_offset

        f.write(header.to_bytes())

        cctx = zstandard.ZstdCompressor()
        remaining = size
        for index in range(num_chunks):
            header.chunk_offsets[index] = file_offset
            chunk_end = min(chunk_size, remaining)
            remaining -= chunk_end

            chunk = _read_exact(reader, chunk_end)
            if len(chunk) != chunk_end:
                raise ValueError(
                    f"only managed to read {len(chunk)} of {chunk_end} bytes"
                )

            hasher.update(chunk)
            compressed = cctx.compress(chunk)
            f.write(compressed)
            file_offset += len(compressed)
        header.chunk_offsets[num_chunks] = file_offset

        extra = _read_exact(reader, chunk_size)
        if extra:
            raise ValueError(
                f"expected {size} bytes but got at least {len(extra)} more"
            )

        actual = hasher.hexdigest()
        if actual != hash:
            raise ValueError(f"checksums don't match. Expected {hash}, found {actual}")

        f.seek(CHUNK_TABLE_OFFSET)
        f.write(struct.pack(f"<{len(header.chunk_offsets)}q", *header.chunk_offsets))
        _sync(f)
        return file_offset
    finally:
        f.close()