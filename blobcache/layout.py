"""Directory layout of a disk cache: creating, migrating and scanning it."""

from __future__ import annotations

import logging
import os
import posixpath
import re
import shutil
from dataclasses import dataclass

from .cache import EntryKind

_log = logging.getLogger(__name__)

_HEX = "0123456789abcdef"
_LOWERCASE_DS_STORE = ".ds_store"
_LOST_AND_FOUND = "lost+found"
_KIND_DIRS = {kind.dir_name(): kind for kind in (EntryKind.AC, EntryKind.CAS, EntryKind.RAW)}

_HASH_KEY = re.compile(r"[a-f0-9]{64}")
_TWO_HEX = re.compile(r"[a-f0-9]{2}")

# compressed CAS items: <hash>-<logical size>-<random>
# uncompressed CAS items: <hash>-<logical size>-<random>.v1 (or <hash>-<random>.v1)
# AC and RAW items: <hash>-<random>
_ITEM_NAME = re.compile(r"([a-f0-9]{64})(?:-([1-9][0-9]*))?-([0-9a-zA-Z]+)(\.v1)?")


@dataclass(frozen=True)
class ScannedItem:
    """A cache entry found on disk."""

    lookup_key: str
    size: int
    size_on_disk: int
    random: str
    legacy: bool
    atime: float


def create_directory_structure(base_dir: str) -> None:
    """Create the cache directory and every per-kind, per-prefix subdirectory."""
    os.makedirs(base_dir, exist_ok=True)
    for c1 in _HEX:
        for c2 in _HEX:
            sub_dir = c1 + c2
            for kind in (EntryKind.CAS, EntryKind.AC, EntryKind.RAW):
                os.makedirs(os.path.join(base_dir, kind.dir_name(), sub_dir), exist_ok=True)


def migrate_directories(base_dir: str) -> None:
    """Move entries from older directory layouts into the current one."""
    for kind in (EntryKind.AC, EntryKind.CAS, EntryKind.RAW):
        migrate_directory(base_dir, kind)


def _is_ds_store(name: str) -> bool:
    return name.lower() == _LOWERCASE_DS_STORE


def migrate_directory(base_dir: str, kind: EntryKind) -> None:
    """Migrate the old-layout directory for `kind`, then remove it.

    Version 0 stored files named by hash directly in ``<kind>/``; version 1
    used two-character subdirectories. Both are moved into ``<kind>.v2/``.
    """
    source_dir = posixpath.join(base_dir, kind.value)
    if not os.path.exists(source_dir):
        return

    _log.info("Migrating files (if any) to new directory structure: %s", source_dir)
    target_dir = posixpath.join(base_dir, kind.dir_name())

    with os.scandir(source_dir) as it:
        listing = list(it)

    total = len(listing)
    for number, item in enumerate(listing, start=1):
        name = item.name
        old_path = os.path.join(source_dir, name)
        _log.info("Migrating %s item(s) %d/%d, %s", source_dir, number, total, name)

        if item.is_dir(follow_symlinks=False):
            if not _TWO_HEX.fullmatch(name):
                _log.warning("Warning: unexpected directory %s", old_path)
            dest_dir = os.path.join(target_dir, name[:2])
            try:
                _migrate_v1_subdir(old_path, dest_dir, kind)
            except (OSError, ValueError) as err:
                _log.warning("Warning: failed to read subdir %r: %s", old_path, err)
            continue

        if not item.is_file(follow_symlinks=False):
            _log.warning("Warning: skipping non-regular file: %s", old_path)
            continue

        if not _HASH_KEY.fullmatch(name):
            _log.warning("Warning: skipping unexpected file: %s", old_path)
            continue

        # A fixed "random" suffix is fine: there is only one file per hash here.
        dest = os.path.join(target_dir, name[:2], name + "-222444666")
        if kind is EntryKind.CAS:
            dest += ".v1"
        os.rename(old_path, dest)

    shutil.rmtree(source_dir)


def _migrate_v1_subdir(old_dir: str, dest_dir: str, kind: EntryKind) -> None:
    with os.scandir(old_dir) as it:
        listing = list(it)

    suffix = "-556677.v1" if kind is EntryKind.CAS else "-112233"

    for item in listing:
        name = item.name
        old_path = posixpath.join(old_dir, name)

        if not _HASH_KEY.fullmatch(name):
            if _is_ds_store(name):
                try:
                    os.remove(old_path)
                except OSError:
                    pass
                continue
            raise ValueError(f"unexpected file: {old_path}")

        dest_path = posixpath.join(dest_dir, name) + suffix
        try:
            os.rename(old_path, dest_path)
        except OSError as err:
            raise OSError(f"failed to migrate blob {old_path}: {err}") from err

    if kind is EntryKind.CAS:
        os.rmdir(old_dir)


def _scan_subdir(base_dir: str, rel_dir: str) -> list[ScannedItem]:
    dir_name = posixpath.join(base_dir, rel_dir)
    kind = _KIND_DIRS[rel_dir.split("/", 1)[0]]
    prefix = f"{kind.value}/"

    items = []
    with os.scandir(dir_name) as it:
        entries = list(it)

    for entry in entries:
        name = entry.name
        full = posixpath.join(dir_name, name)

        if entry.is_dir(follow_symlinks=False):
            if name == _LOST_AND_FOUND:
                continue
            raise ValueError(f"unexpected directory: {full!r}")

        info = entry.stat(follow_symlinks=False)

        match = _ITEM_NAME.fullmatch(name)
        if match is None:
            raise ValueError(f"unrecognized file: {full!r}")

        hash_, size_text, random, v1 = match.groups()
        size_on_disk = info.st_size
        size = int(size_text) if size_text else size_on_disk

        items.append(
            ScannedItem(
                lookup_key=prefix + hash_,
                size=size,
                size_on_disk=size_on_disk,
                random=random,
                legacy=v1 == ".v1",
                atime=info.st_atime,
            )
        )
    return items


def scan_dir(base_dir: str) -> list[ScannedItem]:
    """List every cache entry under `base_dir`, least recently accessed first.

    Raises ValueError if the directory holds anything unexpected.
    """
    _log.info("Scanning cache directory %s", base_dir)

    sub_dirs = []
    with os.scandir(base_dir) as it:
        top = list(it)

    for entry in top:
        name = entry.name
        if not entry.is_dir(follow_symlinks=False):
            if _is_ds_store(name):
                continue
            raise ValueError(f"unexpected file: {name}")

        if name == _LOST_AND_FOUND:
            continue

        if name not in _KIND_DIRS:
            raise ValueError(f"unexpected dir: {name}")

        with os.scandir(posixpath.join(base_dir, name)) as it2:
            second = list(it2)

        for entry2 in second:
            name2 = entry2.name
            dir_path = posixpath.join(name, name2)

            if not entry2.is_dir(follow_symlinks=False):
                if _is_ds_store(name2):
                    continue
                raise ValueError(f"unexpected file: {dir_path}")

            if name2 == _LOST_AND_FOUND:
                continue

            if not _TWO_HEX.fullmatch(name2):
                raise ValueError(f"unexpected dir: {dir_path}")

            sub_dirs.append(dir_path)

    items = [item for rel in sub_dirs for item in _scan_subdir(base_dir, rel)]
    items.sort(key=lambda item: item.atime)
    return items