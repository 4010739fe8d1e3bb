"""
site_publisher.identity — Deployment identity from archive fingerprints.

Hash algorithm:
    - Take ArchiveHandle fingerprints in bundle-index order
    - Concatenate them (no separator; fingerprints are fixed-length hex)
    - MD5 of the concatenation, full 32 hex characters
    - Prefix with "deploy-"

MD5 is fine here: the identity only buckets deployments, the fingerprints
themselves are SHA-256. In dev mode the identity is always "deploy-live",
one mutable slot that every dev deploy overwrites.
"""

from __future__ import annotations

import hashlib
from collections.abc import Sequence

from site_publisher.models import DEPLOYMENT_ID_PREFIX, DEV_DEPLOYMENT_ID, ArchiveHandle


def compute_content_hash(fingerprints: Sequence[str]) -> str:
    """Return the MD5 hex digest of the ordered fingerprint concatenation."""
    return hashlib.md5("".join(fingerprints).encode(), usedforsecurity=False).hexdigest()


def resolve(handles: Sequence[ArchiveHandle], *, dev_mode: bool = False) -> str:
    """Return the deployment identity for handles.

    handles must be in bundle-index order, numbered 0..n-1. Reordering
    between bundling and resolution would silently change the identity,
    so it is rejected rather than corrected.
    """
    if dev_mode:
        return DEV_DEPLOYMENT_ID
    if not handles:
        raise ValueError("Cannot resolve a deployment identity from zero archives")
    for position, handle in enumerate(handles):
        if handle.bundle_index != position:
            raise ValueError(
                f"Archive handles out of order: position {position} holds bundle "
                f"{handle.bundle_index}"
            )
    return f"{DEPLOYMENT_ID_PREFIX}{compute_content_hash([h.fingerprint for h in handles])}"


def is_content_addressed(deployment_id: str) -> bool:
    return deployment_id.startswith(DEPLOYMENT_ID_PREFIX) and deployment_id != DEV_DEPLOYMENT_ID
