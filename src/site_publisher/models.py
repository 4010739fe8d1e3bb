"""
site_publisher.models — Data model for the publish pipeline.

Records flowing through the pipeline, leaves first:

    BuildOutput   immutable file tree produced by the external build step
    Bundle        ordered, numbered, size-bounded group of build entries
    ArchiveHandle uploaded bundle: storage key + SHA-256 fingerprint
    PublishRecord the live pointer for a site (DynamoDB PK: SITE#{site})

Storage layout in the destination bucket:

    {prefix}/{deploymentId}/{relativePath}   staged site content
    {prefix}/_deploys/{deploymentId}.json    staging completion marker
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
DEPLOYMENT_ID_PREFIX: str = "deploy-"
DEV_DEPLOYMENT_ID: str = "deploy-live"  # fixed slot used in dev mode
DEFAULT_SIZE_LIMIT_MB: int = 200  # per-bundle target, set by asset transport limits
DEFAULT_INDEX_PAGE: str = "index.html"
FULL_INVALIDATION_PATHS: tuple[str, ...] = ("/*",)
MANIFEST_DIR: str = "_deploys"
SITE_LOCK_TTL_SECONDS: int = 30 * 60  # 30 minutes


# ---------------------------------------------------------------------------
# Build output
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FileEntry:
    """One file of a build output.

    path is relative and forward-slash separated. Content is read lazily
    from source unless data was supplied directly.
    """

    path: str
    size: int
    source: Path | None = None
    data: bytes | None = field(default=None, repr=False)

    def read(self) -> bytes:
        if self.data is not None:
            return self.data
        if self.source is None:
            raise ValueError(f"FileEntry {self.path!r} has neither data nor source")
        return self.source.read_bytes()


@dataclass(frozen=True)
class BuildOutput:
    """Immutable file tree. Entries are sorted by path."""

    root: str
    entries: tuple[FileEntry, ...]

    @classmethod
    def from_mapping(cls, files: dict[str, bytes], *, root: str = "<memory>") -> BuildOutput:
        entries = tuple(
            FileEntry(path=path, size=len(content), data=content)
            for path, content in sorted(files.items())
        )
        return cls(root=root, entries=entries)

    @property
    def total_size(self) -> int:
        return sum(entry.size for entry in self.entries)


@dataclass(frozen=True)
class Bundle:
    """A numbered group of entries, serialized as one archive."""

    index: int
    entries: tuple[FileEntry, ...]

    @property
    def size(self) -> int:
        return sum(entry.size for entry in self.entries)

    @property
    def paths(self) -> tuple[str, ...]:
        return tuple(entry.path for entry in self.entries)


@dataclass(frozen=True)
class ArchiveHandle:
    bundle_index: int
    storage_key: str
    fingerprint: str  # SHA-256 hex of the serialized bundle bytes


# ---------------------------------------------------------------------------
# Substitution and cache-control rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SubstitutionRule:
    file_pattern: str
    token: str
    replacement: str


@dataclass(frozen=True)
class FileOption:
    """Per-object Cache-Control rule, passed through to the destination store.

    exclude/include accept a single pattern or a list in configuration and
    are normalized to tuples here.
    """

    exclude: tuple[str, ...]
    include: tuple[str, ...]
    cache_control: str

    @classmethod
    def from_config(
        cls, *, exclude: str | list[str], include: str | list[str], cache_control: str
    ) -> FileOption:
        return cls(
            exclude=(exclude,) if isinstance(exclude, str) else tuple(exclude),
            include=(include,) if isinstance(include, str) else tuple(include),
            cache_control=cache_control,
        )


# ---------------------------------------------------------------------------
# Publish state machine
# ---------------------------------------------------------------------------


class PublishState(StrEnum):
    STAGING = "staging"
    UPLOADED = "uploaded"
    ACTIVATED = "activated"
    INVALIDATED = "invalidated"
    FAILED = "failed"

    PUBLISHED = "invalidated"  # alias: a deploy is published once invalidated


PUBLISH_ORDER: tuple[PublishState, ...] = (
    PublishState.STAGING,
    PublishState.UPLOADED,
    PublishState.ACTIVATED,
    PublishState.INVALIDATED,
)


def namespace_for(destination_prefix: str, deployment_id: str) -> str:
    """Return the key prefix (no trailing slash) holding one deployment."""
    prefix = destination_prefix.strip("/")
    return f"{prefix}/{deployment_id}" if prefix else deployment_id


def manifest_key_for(destination_prefix: str, deployment_id: str) -> str:
    prefix = destination_prefix.strip("/")
    key = f"{MANIFEST_DIR}/{deployment_id}.json"
    return f"{prefix}/{key}" if prefix else key


# ---------------------------------------------------------------------------
# Table: platform-site-publish
# PK: SITE#{site}  SK: ACTIVE
# One record per site; overwritten by compare-and-swap on each publish.
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PublishRecord:
    """The live pointer: which deployment a site currently serves."""

    site: str
    deployment_id: str
    destination_prefix: str
    bucket: str
    published_at: str  # ISO 8601 UTC
    fingerprints: tuple[str, ...] = ()
    previous_deployment_id: str | None = None

    @property
    def pk(self) -> str:
        return f"SITE#{self.site}"

    @property
    def sk(self) -> str:
        return "ACTIVE"

    @property
    def namespace(self) -> str:
        return namespace_for(self.destination_prefix, self.deployment_id)

    @property
    def origin_path(self) -> str:
        return f"/{self.namespace}"


@dataclass(frozen=True)
class InvalidationRequest:
    paths: tuple[str, ...] = FULL_INVALIDATION_PATHS


@dataclass(frozen=True)
class DeployManifest:
    """Completion marker written once a namespace is fully staged.

    rules_digest pins the substitution values the namespace was rendered
    with; a replay with different values restages.
    """

    deployment_id: str
    fingerprints: tuple[str, ...]
    rules_digest: str
    paths: tuple[str, ...]
    staged_at: str  # ISO 8601 UTC

    def to_dict(self) -> dict[str, Any]:
        return {
            "deploymentId": self.deployment_id,
            "fingerprints": list(self.fingerprints),
            "rulesDigest": self.rules_digest,
            "paths": list(self.paths),
            "stagedAt": self.staged_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DeployManifest:
        return cls(
            deployment_id=str(data["deploymentId"]),
            fingerprints=tuple(str(f) for f in data.get("fingerprints") or []),
            rules_digest=str(data.get("rulesDigest", "")),
            paths=tuple(str(p) for p in data.get("paths") or []),
            staged_at=str(data.get("stagedAt", "")),
        )


@dataclass(frozen=True)
class PublishOutcome:
    record: PublishRecord
    state: PublishState
    invalidation_id: str | None
    restaged: bool
    pruned: tuple[str, ...] = ()


@dataclass(frozen=True)
class PublishResult:
    """Reported outputs for downstream consumers."""

    site: str
    url: str
    custom_domain_url: str | None
    deployment_id: str
    fingerprints: tuple[str, ...]
    bucket: str
    namespace: str
    state: PublishState

    def to_dict(self) -> dict[str, Any]:
        return {
            "site": self.site,
            "url": self.url,
            "customDomainUrl": self.custom_domain_url,
            "deploymentId": self.deployment_id,
            "fingerprints": list(self.fingerprints),
            "bucket": self.bucket,
            "namespace": self.namespace,
            "state": self.state.value,
        }
