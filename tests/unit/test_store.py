"""Unit tests for site_publisher.store."""

from __future__ import annotations

import hashlib
import threading
from typing import Any
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from site_publisher.bundler import serialize_bundle, split
from site_publisher.exceptions import StagingFailed, UploadFailed
from site_publisher.models import ArchiveHandle, BuildOutput
from site_publisher.store import ArtifactStore

_BUCKET = "site-bucket"


def _bundles() -> list[Any]:
    files = {"a.js": b"a" * 50, "b.js": b"b" * 180, "index.html": b"<html/>"}
    return split(BuildOutput.from_mapping(files), 200)


def _store(s3: Any, **kwargs: Any) -> ArtifactStore:
    return ArtifactStore(_BUCKET, s3_client=s3, sleep=lambda _: None, **kwargs)


def _client_error(code: str, status: int) -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        "PutObject",
    )


def test_upload_stores_archive_under_fingerprint_key(aws: dict[str, Any]) -> None:
    bundle = _bundles()[0]
    store = _store(aws["s3"])

    handle = store.upload(bundle)

    body = serialize_bundle(bundle)
    fingerprint = hashlib.sha256(body).hexdigest()
    assert handle == ArchiveHandle(
        bundle_index=0, storage_key=f"assets/{fingerprint}.zip", fingerprint=fingerprint
    )
    stored = aws["s3"].get_object(Bucket=_BUCKET, Key=handle.storage_key)
    assert stored["Body"].read() == body
    assert stored["ContentType"] == "application/zip"


def test_upload_of_same_content_reuses_object(aws: dict[str, Any]) -> None:
    bundle = _bundles()[0]
    store = _store(aws["s3"])

    first = store.upload(bundle)
    second = store.upload(bundle)

    assert first == second
    listed = aws["s3"].list_objects_v2(Bucket=_BUCKET, Prefix="assets/")
    assert listed["KeyCount"] == 1


def test_upload_all_returns_handles_in_index_order(aws: dict[str, Any]) -> None:
    bundles = _bundles()
    handles = _store(aws["s3"]).upload_all(list(reversed(bundles)), max_workers=4)

    assert [h.bundle_index for h in handles] == [0, 1]
    assert len({h.fingerprint for h in handles}) == 2


def test_upload_all_waits_for_every_upload_before_raising() -> None:
    s3 = MagicMock()
    s3.head_object.side_effect = _client_error("404", 404)
    finished: list[str] = []
    lock = threading.Lock()

    def _put_object(**kwargs: Any) -> dict[str, Any]:
        body = kwargs["Body"]
        if b"aaaa" in body:
            raise _client_error("AccessDenied", 403)
        with lock:
            finished.append(kwargs["Key"])
        return {}

    s3.put_object.side_effect = _put_object

    with pytest.raises(UploadFailed) as exc_info:
        _store(s3).upload_all(_bundles(), max_workers=2)

    assert exc_info.value.bundle_index == 0
    assert len(finished) == 1


def test_upload_retries_transient_failures_then_fails() -> None:
    s3 = MagicMock()
    s3.head_object.side_effect = _client_error("404", 404)
    s3.put_object.side_effect = _client_error("SlowDown", 503)
    sleeps: list[float] = []
    store = ArtifactStore(_BUCKET, s3_client=s3, sleep=sleeps.append)

    with pytest.raises(UploadFailed) as exc_info:
        store.upload(_bundles()[0])

    assert exc_info.value.attempts == 4
    assert s3.put_object.call_count == 4
    assert sleeps == [2.0, 4.0, 8.0]


def test_upload_recovers_from_transient_failure() -> None:
    s3 = MagicMock()
    s3.head_object.side_effect = _client_error("404", 404)
    s3.put_object.side_effect = [_client_error("SlowDown", 503), {}]
    store = _store(s3)

    handle = store.upload(_bundles()[0])

    assert handle.bundle_index == 0
    assert s3.put_object.call_count == 2


def test_fetch_verifies_fingerprint(aws: dict[str, Any]) -> None:
    store = _store(aws["s3"])
    handle = store.upload(_bundles()[1])

    assert hashlib.sha256(store.fetch(handle)).hexdigest() == handle.fingerprint

    aws["s3"].put_object(Bucket=_BUCKET, Key=handle.storage_key, Body=b"corrupted")
    with pytest.raises(StagingFailed, match="fingerprint mismatch"):
        store.fetch(handle)


def test_fetch_missing_archive_fails_without_retry(aws: dict[str, Any]) -> None:
    store = _store(aws["s3"])
    handle = ArchiveHandle(bundle_index=0, storage_key="assets/missing.zip", fingerprint="0" * 64)

    with pytest.raises(StagingFailed) as exc_info:
        store.fetch(handle)
    assert exc_info.value.attempts == 1
