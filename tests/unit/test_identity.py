"""Unit tests for site_publisher.identity."""

from __future__ import annotations

import hashlib

import pytest

from site_publisher.identity import compute_content_hash, is_content_addressed, resolve
from site_publisher.models import ArchiveHandle


def _handles(*fingerprints: str) -> list[ArchiveHandle]:
    return [
        ArchiveHandle(bundle_index=i, storage_key=f"assets/{fp}.zip", fingerprint=fp)
        for i, fp in enumerate(fingerprints)
    ]


def test_resolve_is_md5_of_concatenated_fingerprints() -> None:
    expected = hashlib.md5(b"aaa" + b"bbb").hexdigest()
    assert resolve(_handles("aaa", "bbb")) == f"deploy-{expected}"


def test_resolve_is_stable_for_same_handles() -> None:
    handles = _handles("f" * 64, "e" * 64)
    assert resolve(handles) == resolve(list(handles))


def test_resolve_depends_on_bundle_order() -> None:
    assert resolve(_handles("aaa", "bbb")) != resolve(_handles("bbb", "aaa"))


def test_resolve_changes_when_any_fingerprint_changes() -> None:
    assert resolve(_handles("aaa", "bbb")) != resolve(_handles("aaa", "bbc"))


def test_resolve_dev_mode_is_fixed_slot() -> None:
    assert resolve(_handles("aaa"), dev_mode=True) == "deploy-live"
    assert resolve([], dev_mode=True) == "deploy-live"


def test_resolve_rejects_empty_handles() -> None:
    with pytest.raises(ValueError, match="zero archives"):
        resolve([])


def test_resolve_rejects_handles_out_of_order() -> None:
    handles = list(reversed(_handles("aaa", "bbb")))
    with pytest.raises(ValueError, match="out of order"):
        resolve(handles)


def test_compute_content_hash_is_32_hex_chars() -> None:
    digest = compute_content_hash(["abc"])
    assert len(digest) == 32
    int(digest, 16)


def test_is_content_addressed() -> None:
    assert is_content_addressed(resolve(_handles("aaa")))
    assert not is_content_addressed("deploy-live")
    assert not is_content_addressed("release-1")
