"""
site_publisher.store — Content-addressed artifact store for bundle archives.

Each bundle is serialized (see bundler.serialize_bundle) and stored once under

    s3://{artifact_bucket}/{prefix}/{sha256}.zip

Uploading byte-identical content again reuses the existing object. A handle
is only returned once the object is confirmed stored; failed uploads never
produce a handle.
"""

from __future__ import annotations

import hashlib
import os
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError

from site_publisher.bundler import serialize_bundle
from site_publisher.exceptions import StagingFailed, UploadFailed
from site_publisher.models import ArchiveHandle, Bundle
from site_publisher.retry import (
    OperationFailed,
    RetryPolicy,
    botocore_config,
    call_with_backoff,
    error_code,
)

logger = Logger(service="site-publisher")

DEFAULT_ARTIFACT_PREFIX = "assets"
DEFAULT_UPLOAD_CONCURRENCY = 4
_NOT_FOUND_CODES = frozenset({"404", "NoSuchKey", "NotFound"})


def fingerprint_of(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def is_not_found(exc: ClientError) -> bool:
    return error_code(exc) in _NOT_FOUND_CODES


def make_s3_client(
    region: str, *, connect_timeout: float = 10.0, read_timeout: float = 60.0
) -> Any:
    return boto3.client(
        "s3",
        region_name=region,
        config=botocore_config(connect_timeout=connect_timeout, read_timeout=read_timeout),
    )


class ArtifactStore:
    """
    Upload and fetch bundle archives by content fingerprint.

    Upload and fetch retry transient failures with bounded exponential
    backoff. upload_all runs uploads on a bounded thread pool and returns
    only after every upload has finished.
    """

    def __init__(
        self,
        bucket: str,
        *,
        prefix: str = DEFAULT_ARTIFACT_PREFIX,
        s3_client: Any = None,
        retry: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._bucket = bucket
        self._prefix = prefix.strip("/")
        self._s3: Any = s3_client or boto3.client("s3", region_name=os.environ["AWS_REGION"])
        self._retry = retry or RetryPolicy()
        self._sleep = sleep

    @property
    def bucket(self) -> str:
        return self._bucket

    def key_for(self, fingerprint: str) -> str:
        name = f"{fingerprint}.zip"
        return f"{self._prefix}/{name}" if self._prefix else name

    def _exists(self, key: str) -> bool:
        try:
            self._s3.head_object(Bucket=self._bucket, Key=key)
        except ClientError as exc:
            if is_not_found(exc):
                return False
            raise
        return True

    def upload(self, bundle: Bundle) -> ArchiveHandle:
        """Store one bundle. Raises UploadFailed."""
        body = serialize_bundle(bundle)
        fingerprint = fingerprint_of(body)
        key = self.key_for(fingerprint)

        def _put() -> bool:
            if self._exists(key):
                return False
            self._s3.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=body,
                ContentType="application/zip",
            )
            return True

        try:
            created = call_with_backoff(
                _put, self._retry, describe=f"upload bundle {bundle.index}", sleep=self._sleep
            )
        except OperationFailed as exc:
            raise UploadFailed(
                bundle.index, attempts=exc.attempts, reason=str(exc)
            ) from exc.last_error

        logger.info(
            "Bundle stored" if created else "Bundle already stored; reusing",
            bundle_index=bundle.index,
            key=key,
            fingerprint=fingerprint,
            size=len(body),
        )
        return ArchiveHandle(bundle_index=bundle.index, storage_key=key, fingerprint=fingerprint)

    def upload_all(
        self, bundles: Sequence[Bundle], *, max_workers: int = DEFAULT_UPLOAD_CONCURRENCY
    ) -> list[ArchiveHandle]:
        """Upload bundles concurrently; return handles in bundle-index order.

        Waits for every upload before returning or raising. When several
        uploads fail, the failure of the lowest bundle index is raised.
        """
        if not bundles:
            raise ValueError("upload_all requires at least one bundle")

        workers = max(1, min(max_workers, len(bundles)))
        handles: dict[int, ArchiveHandle] = {}
        failures: dict[int, UploadFailed] = {}
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="bundle-upload") as pool:
            futures = {pool.submit(self.upload, bundle): bundle.index for bundle in bundles}
            for future in as_completed(futures):
                index = futures[future]
                try:
                    handles[index] = future.result()
                except UploadFailed as exc:
                    failures[index] = exc

        if failures:
            raise failures[min(failures)]
        return [handles[bundle.index] for bundle in sorted(bundles, key=lambda b: b.index)]

    def fetch(self, handle: ArchiveHandle) -> bytes:
        """Read an archive back and verify its fingerprint. Raises StagingFailed."""

        def _get() -> bytes:
            response = self._s3.get_object(Bucket=self._bucket, Key=handle.storage_key)
            return response["Body"].read()

        try:
            data = call_with_backoff(
                _get, self._retry, describe=f"fetch {handle.storage_key}", sleep=self._sleep
            )
        except OperationFailed as exc:
            raise StagingFailed(
                handle.storage_key, attempts=exc.attempts, reason=str(exc)
            ) from exc.last_error

        actual = fingerprint_of(data)
        if actual != handle.fingerprint:
            raise StagingFailed(
                handle.storage_key,
                attempts=1,
                reason=f"fingerprint mismatch (expected {handle.fingerprint}, got {actual})",
            )
        return data
