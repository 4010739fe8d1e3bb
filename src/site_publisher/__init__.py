"""
site_publisher — Publish static site builds to S3 behind CloudFront.

A build is split into size-bounded archives, uploaded content-addressed,
staged under an immutable deployment namespace and made live with a single
pointer switch followed by a full cache invalidation.
"""

from site_publisher.config import SiteSettings, load_settings
from site_publisher.deploy import AwsClients, deploy_site, rollback_site, site_status
from site_publisher.exceptions import (
    DeployFailed,
    InputError,
    PublisherError,
    StateConflictError,
    TransientIOError,
)
from site_publisher.models import PublishResult, PublishState

__all__ = [
    "AwsClients",
    "DeployFailed",
    "InputError",
    "PublishResult",
    "PublishState",
    "PublisherError",
    "SiteSettings",
    "StateConflictError",
    "TransientIOError",
    "deploy_site",
    "load_settings",
    "rollback_site",
    "site_status",
]
