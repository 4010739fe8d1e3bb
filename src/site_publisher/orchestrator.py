"""
site_publisher.orchestrator — Publish a resolved deployment atomically.

State machine (FAILED reachable from any non-terminal state):

    STAGING -> UPLOADED -> ACTIVATED -> INVALIDATED (= PUBLISHED)

STAGING      Unpack every archive into {prefix}/{deploymentId}/, substituting
             placeholder tokens before each write, so no object is ever
             stored with raw tokens. Skipped when a completion marker for the
             same identity and substitution values already exists.
UPLOADED     Verify every staged object that matches a substitution rule,
             rewriting any that still hold tokens, then write the completion
             marker.
ACTIVATED    One compare-and-swap write of the live pointer. If it fails the
             previous PublishRecord stays authoritative.
INVALIDATED  One "/*" invalidation. Only now is the deploy PUBLISHED.

Stale namespace cleanup runs after PUBLISHED, is best-effort, and never
changes the outcome.

Dev mode always targets the fixed "deploy-live" namespace: staging is never
skipped and objects the new content no longer has are removed.
"""

from __future__ import annotations

import json
import mimetypes
import os
import time
from collections.abc import Callable, Iterator, Sequence
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError

from site_publisher.bundler import read_bundle
from site_publisher.exceptions import DeployFailed, InputError, StagingFailed
from site_publisher.globs import cache_control_for, validate_file_options
from site_publisher.invalidation import CloudFrontInvalidator
from site_publisher.models import (
    DEPLOYMENT_ID_PREFIX,
    MANIFEST_DIR,
    ArchiveHandle,
    DeployManifest,
    FileOption,
    InvalidationRequest,
    PublishOutcome,
    PublishRecord,
    PUBLISH_ORDER,
    PublishState,
    SubstitutionRule,
    manifest_key_for,
    namespace_for,
)
from site_publisher.pointer import ReadPathPointer
from site_publisher.retry import OperationFailed, RetryPolicy, call_with_backoff
from site_publisher.store import ArtifactStore, is_not_found
from site_publisher.substitution import apply_rules, rules_digest, rules_for

logger = Logger(service="site-publisher")

_DELETE_BATCH_SIZE = 1000


def utc_now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def content_type_for(path: str) -> str:
    content_type, _ = mimetypes.guess_type(path)
    return content_type or "application/octet-stream"


class _Progress:
    """Tracks the state a publish has reached and which states completed."""

    def __init__(self, deployment_id: str) -> None:
        self.deployment_id = deployment_id
        self.state = PublishState.STAGING
        self.completed: list[PublishState] = []

    def enter(self, state: PublishState) -> None:
        self.state = state
        logger.info("Publish state entered", deployment_id=self.deployment_id, state=state.value)

    def complete(self) -> None:
        self.completed.append(self.state)

    def fail(self, exc: BaseException) -> DeployFailed:
        logger.error(
            "Publish failed",
            deployment_id=self.deployment_id,
            state=PublishState.FAILED.value,
            failed_in=self.state.value,
            error=str(exc),
        )
        return DeployFailed(
            last_state=self.state,
            completed_states=tuple(self.completed),
            deployment_id=self.deployment_id,
            reason=str(exc),
        )


class PublishOrchestrator:
    """
    Stage, activate and invalidate one deployment of one site.

    Steps run strictly in sequence. Callers must hold the site lock
    (site_lock.held_lock) so that two publishes of the same site never race
    on the pointer; a lost race still surfaces as PointerConflict.
    """

    def __init__(
        self,
        *,
        site: str,
        bucket: str,
        artifact_store: ArtifactStore,
        pointer: ReadPathPointer,
        invalidator: CloudFrontInvalidator,
        s3_client: Any = None,
        destination_prefix: str = "",
        file_options: Sequence[FileOption] = (),
        default_cache_control: str | None = None,
        retry: RetryPolicy | None = None,
        prune_stale: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        validate_file_options(file_options)
        self._site = site
        self._bucket = bucket
        self._store = artifact_store
        self._pointer = pointer
        self._invalidator = invalidator
        self._s3: Any = s3_client or boto3.client("s3", region_name=os.environ["AWS_REGION"])
        self._prefix = destination_prefix.strip("/")
        self._file_options = tuple(file_options)
        self._default_cache_control = default_cache_control
        self._retry = retry or RetryPolicy()
        self._prune_stale = prune_stale
        self._sleep = sleep

    @property
    def artifact_store(self) -> ArtifactStore:
        return self._store

    @property
    def pointer(self) -> ReadPathPointer:
        return self._pointer

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def publish(
        self,
        *,
        deployment_id: str,
        handles: Sequence[ArchiveHandle],
        rules: Sequence[SubstitutionRule],
        dev_mode: bool = False,
    ) -> PublishOutcome:
        """Run the state machine. Raises DeployFailed."""
        progress = _Progress(deployment_id)
        namespace = namespace_for(self._prefix, deployment_id)
        digest = rules_digest(rules)
        fingerprints = tuple(h.fingerprint for h in handles)

        try:
            previous = self._pointer.current(self._site)

            progress.enter(PublishState.STAGING)
            manifest = None if dev_mode else self.read_manifest(deployment_id)
            replay = False
            if manifest is not None and manifest.rules_digest == digest:
                logger.info("Deployment already staged; skipping", deployment_id=deployment_id)
                replay = True
                staged_paths = list(manifest.paths)
            else:
                staged_paths = self._stage(namespace, handles, rules, dev_mode=dev_mode)
            progress.complete()

            progress.enter(PublishState.UPLOADED)
            if not replay:
                self._substitute(namespace, rules)
                self._write_manifest(
                    DeployManifest(
                        deployment_id=deployment_id,
                        fingerprints=fingerprints,
                        rules_digest=digest,
                        paths=tuple(sorted(staged_paths)),
                        staged_at=utc_now_iso(),
                    )
                )
            progress.complete()

            progress.enter(PublishState.ACTIVATED)
            if previous is not None and previous.deployment_id == deployment_id:
                logger.info(
                    "Deployment already live; pointer unchanged", deployment_id=deployment_id
                )
                record = previous
            else:
                record = PublishRecord(
                    site=self._site,
                    deployment_id=deployment_id,
                    destination_prefix=self._prefix,
                    bucket=self._bucket,
                    published_at=utc_now_iso(),
                    fingerprints=fingerprints,
                    previous_deployment_id=previous.deployment_id if previous else None,
                )
                self._pointer.switch(
                    self._site,
                    expected=previous.deployment_id if previous else None,
                    record=record,
                )
            progress.complete()

            progress.enter(PublishState.INVALIDATED)
            invalidation_id = self._invalidator.invalidate(
                InvalidationRequest(), caller_reference=f"{deployment_id}-{uuid4().hex}"
            )
            progress.complete()
        except Exception as exc:
            raise progress.fail(exc) from exc

        logger.info("Deployment published", site=self._site, deployment_id=deployment_id)
        pruned: tuple[str, ...] = ()
        if self._prune_stale:
            keep = {deployment_id}
            if previous is not None:
                keep.add(previous.deployment_id)
            pruned = self.prune(keep=keep)
        return PublishOutcome(
            record=record,
            state=PublishState.PUBLISHED,
            invalidation_id=invalidation_id,
            restaged=not replay,
            pruned=pruned,
        )

    def rollback(self, deployment_id: str) -> PublishOutcome:
        """Repoint the site at an already staged deployment and invalidate."""
        manifest = self.read_manifest(deployment_id)
        if manifest is None:
            raise InputError(
                f"Deployment {deployment_id!r} has no completed staging for site {self._site!r}"
            )

        progress = _Progress(deployment_id)
        progress.completed = list(PUBLISH_ORDER[:2])
        try:
            progress.enter(PublishState.ACTIVATED)
            previous = self._pointer.current(self._site)
            record = PublishRecord(
                site=self._site,
                deployment_id=deployment_id,
                destination_prefix=self._prefix,
                bucket=self._bucket,
                published_at=utc_now_iso(),
                fingerprints=manifest.fingerprints,
                previous_deployment_id=previous.deployment_id if previous else None,
            )
            self._pointer.switch(
                self._site,
                expected=previous.deployment_id if previous else None,
                record=record,
            )
            progress.complete()

            progress.enter(PublishState.INVALIDATED)
            invalidation_id = self._invalidator.invalidate(
                InvalidationRequest(), caller_reference=f"rollback-{deployment_id}-{uuid4().hex}"
            )
            progress.complete()
        except Exception as exc:
            raise progress.fail(exc) from exc

        logger.info("Deployment rolled back", site=self._site, deployment_id=deployment_id)
        return PublishOutcome(
            record=record,
            state=PublishState.PUBLISHED,
            invalidation_id=invalidation_id,
            restaged=False,
        )

    def read_manifest(self, deployment_id: str) -> DeployManifest | None:
        key = manifest_key_for(self._prefix, deployment_id)
        try:
            response = self._s3.get_object(Bucket=self._bucket, Key=key)
        except ClientError as exc:
            if is_not_found(exc):
                return None
            raise
        return DeployManifest.from_dict(json.loads(response["Body"].read()))

    def deployed_identities(self) -> list[str]:
        """Identities with a completed staging marker, sorted."""
        marker_prefix = f"{self._prefix}/{MANIFEST_DIR}/" if self._prefix else f"{MANIFEST_DIR}/"
        identities = []
        for key in self._list_keys(marker_prefix):
            name = key[len(marker_prefix) :]
            if name.endswith(".json"):
                identities.append(name[: -len(".json")])
        return sorted(identities)

    def prune(self, *, keep: set[str]) -> tuple[str, ...]:
        """Delete staged namespaces not in keep. Best-effort: failures are logged."""
        pruned: list[str] = []
        for deployment_id in self._namespace_identities():
            if deployment_id in keep:
                continue
            try:
                namespace = namespace_for(self._prefix, deployment_id)
                self._delete_keys(list(self._list_keys(f"{namespace}/")))
                self._delete_keys([manifest_key_for(self._prefix, deployment_id)])
            except Exception:
                logger.exception("Failed to prune stale namespace", deployment_id=deployment_id)
                continue
            pruned.append(deployment_id)
        if pruned:
            logger.info("Pruned stale namespaces", site=self._site, deployment_ids=pruned)
        return tuple(pruned)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _stage(
        self,
        namespace: str,
        handles: Sequence[ArchiveHandle],
        rules: Sequence[SubstitutionRule],
        *,
        dev_mode: bool,
    ) -> list[str]:
        staged: list[str] = []
        for handle in handles:
            archive = self._store.fetch(handle)
            for path, content in read_bundle(archive):
                self._put(f"{namespace}/{path}", path, apply_rules(path, content, rules))
                staged.append(path)
        logger.info(
            "Namespace staged",
            namespace=namespace,
            archive_count=len(handles),
            file_count=len(staged),
        )

        if dev_mode:
            wanted = {f"{namespace}/{path}" for path in staged}
            stale = [key for key in self._list_keys(f"{namespace}/") if key not in wanted]
            self._delete_keys(stale)
            if stale:
                logger.info("Removed objects dropped from dev deploy", count=len(stale))
        return staged

    def _substitute(self, namespace: str, rules: Sequence[SubstitutionRule]) -> int:
        if not rules:
            return 0
        rewritten = 0
        base = f"{namespace}/"
        for key in self._list_keys(base):
            path = key[len(base) :]
            if not rules_for(path, rules):
                continue
            content = self._get(key)
            updated = apply_rules(path, content, rules)
            if updated != content:
                self._put(key, path, updated)
                rewritten += 1
        logger.info("Placeholders substituted", namespace=namespace, rewritten=rewritten)
        return rewritten

    def _write_manifest(self, manifest: DeployManifest) -> None:
        key = manifest_key_for(self._prefix, manifest.deployment_id)
        body = json.dumps(manifest.to_dict(), indent=2, sort_keys=True).encode("utf-8")
        self._with_backoff(
            key,
            lambda: self._s3.put_object(
                Bucket=self._bucket, Key=key, Body=body, ContentType="application/json"
            ),
        )

    # ------------------------------------------------------------------
    # S3 helpers
    # ------------------------------------------------------------------

    def _with_backoff(self, key: str, fn: Callable[[], Any]) -> Any:
        try:
            return call_with_backoff(fn, self._retry, describe=f"stage {key}", sleep=self._sleep)
        except OperationFailed as exc:
            raise StagingFailed(key, attempts=exc.attempts, reason=str(exc)) from exc.last_error

    def _put(self, key: str, path: str, content: bytes) -> None:
        extra: dict[str, str] = {"ContentType": content_type_for(path)}
        cache_control = cache_control_for(path, self._file_options, self._default_cache_control)
        if cache_control:
            extra["CacheControl"] = cache_control
        self._with_backoff(
            key, lambda: self._s3.put_object(Bucket=self._bucket, Key=key, Body=content, **extra)
        )

    def _get(self, key: str) -> bytes:
        return self._with_backoff(
            key, lambda: self._s3.get_object(Bucket=self._bucket, Key=key)["Body"].read()
        )

    def _list_keys(self, prefix: str) -> Iterator[str]:
        paginator = self._s3.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
            for obj in page.get("Contents", []):
                yield obj["Key"]

    def _namespace_identities(self) -> list[str]:
        base = f"{self._prefix}/" if self._prefix else ""
        paginator = self._s3.get_paginator("list_objects_v2")
        identities = []
        for page in paginator.paginate(Bucket=self._bucket, Prefix=base, Delimiter="/"):
            for common in page.get("CommonPrefixes", []):
                name = common["Prefix"][len(base) :].rstrip("/")
                if name.startswith(DEPLOYMENT_ID_PREFIX):
                    identities.append(name)
        return sorted(identities)

    def _delete_keys(self, keys: list[str]) -> None:
        for start in range(0, len(keys), _DELETE_BATCH_SIZE):
            batch = keys[start : start + _DELETE_BATCH_SIZE]
            self._s3.delete_objects(
                Bucket=self._bucket,
                Delete={"Objects": [{"Key": key} for key in batch], "Quiet": True},
            )
