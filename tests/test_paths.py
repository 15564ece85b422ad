import pytest

from blobcache.cache import EntryKind, lookup_key
from blobcache.paths import (
    file_location,
    file_location_base,
    is_size_mismatch,
    kind_from_lookup_key,
)

HASH = "9c478bf63e9500cb5db1e85ece82f18c8eb9e52e2f9135acd7f10972c8d563ba"


def test_location_matches_source_layout():
    assert (
        file_location(EntryKind.CAS, False, HASH, 3, "123456789")
        == "cas.v2/9c/9c478bf63e9500cb5db1e85ece82f18c8eb9e52e2f9135acd7f10972c8d563ba-3-123456789"
    )
    assert (
        file_location(EntryKind.AC, False, HASH, 3, "123456789")
        == "ac.v2/9c/9c478bf63e9500cb5db1e85ece82f18c8eb9e52e2f9135acd7f10972c8d563ba-123456789"
    )
    assert (
        file_location(EntryKind.RAW, False, HASH, 3, "123456789")
        == "raw.v2/9c/9c478bf63e9500cb5db1e85ece82f18c8eb9e52e2f9135acd7f10972c8d563ba-123456789"
    )


def test_legacy_cas_location_has_v1_suffix():
    loc = file_location(EntryKind.CAS, True, HASH, 3, "222444666")
    assert loc == f"cas.v2/{HASH[:2]}/{HASH}-222444666.v1"


@pytest.mark.parametrize("kind", list(EntryKind))
@pytest.mark.parametrize("legacy", [False, True])
def test_location_extends_base(kind, legacy):
    base = file_location_base(kind, legacy, HASH, 42)
    full = file_location(kind, legacy, HASH, 42, "abc")
    assert full.startswith(base + "-")
    assert full.startswith(kind.dir_name() + "/" + HASH[:2] + "/")


def test_base_locations():
    assert file_location_base(EntryKind.CAS, False, HASH, 42) == f"cas.v2/9c/{HASH}-42"
    assert file_location_base(EntryKind.CAS, True, HASH, 42) == f"cas.v2/9c/{HASH}"
    assert file_location_base(EntryKind.AC, False, HASH, 42) == f"ac.v2/9c/{HASH}"


@pytest.mark.parametrize(
    "requested, found, expected",
    [
        (5, 6, True),
        (5, 5, False),
        (-1, 6, False),
        (5, -1, False),
        (-1, -1, False),
        (0, 3, True),
    ],
)
def test_is_size_mismatch(requested, found, expected):
    assert is_size_mismatch(requested, found) is expected


@pytest.mark.parametrize("kind", list(EntryKind))
def test_kind_from_lookup_key_round_trip(kind):
    assert kind_from_lookup_key(lookup_key(kind, HASH)) is kind


def test_kind_from_unknown_key_defaults_to_ac():
    assert kind_from_lookup_key("zzz/" + HASH) is EntryKind.AC