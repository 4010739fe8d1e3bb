"""
site_publisher.deploy — End-to-end publish pipeline for one site.

    build -> load tree -> split -> upload (all) -> resolve identity
          -> compile rules -> [site lock] orchestrate [release] -> report

Only the orchestrator touches the destination bucket and the pointer, and
only while the site lock is held. Upload failures happen before anything
is staged, so they surface as DeployFailed(last_state=STAGING) with the
previous deployment still live.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import boto3
from aws_lambda_powertools import Logger

from site_publisher.build import run_build
from site_publisher.bundler import load_build_output, size_limit_bytes, split, stub_build_output
from site_publisher.config import (
    SiteSettings,
    custom_domain_url,
    public_url,
    resolve_infrastructure,
)
from site_publisher.exceptions import DeployFailed, TransientIOError
from site_publisher.identity import resolve
from site_publisher.invalidation import CloudFrontInvalidator
from site_publisher.models import PublishResult, PublishState, namespace_for
from site_publisher.orchestrator import PublishOrchestrator
from site_publisher.pointer import (
    CloudFrontOriginPointer,
    DynamoPublishRecordStore,
    ReadPathPointer,
)
from site_publisher.retry import RetryPolicy, botocore_config
from site_publisher.site_lock import default_owner, held_lock
from site_publisher.store import ArtifactStore, make_s3_client
from site_publisher.substitution import compile_rules

logger = Logger(service="site-publisher")


@dataclass(frozen=True)
class AwsClients:
    s3: Any
    dynamodb: Any
    cloudfront: Any
    ssm: Any

    @classmethod
    def from_settings(cls, settings: SiteSettings) -> AwsClients:
        config = botocore_config(
            connect_timeout=settings.connect_timeout, read_timeout=settings.read_timeout
        )
        region = settings.aws_region
        return cls(
            s3=make_s3_client(
                region,
                connect_timeout=settings.connect_timeout,
                read_timeout=settings.read_timeout,
            ),
            dynamodb=boto3.client("dynamodb", region_name=region, config=config),
            cloudfront=boto3.client("cloudfront", region_name=region, config=config),
            ssm=boto3.client("ssm", region_name=region, config=config),
        )


def _retry_policy(settings: SiteSettings) -> RetryPolicy:
    return RetryPolicy(max_attempts=settings.retry_attempts, base_delay=settings.retry_base_delay)


def _pointer_for(settings: SiteSettings, clients: AwsClients) -> ReadPathPointer:
    if settings.pointer_backend == "cloudfront":
        return CloudFrontOriginPointer(
            settings.require("distribution_id"),
            bucket=settings.require("bucket"),
            cloudfront_client=clients.cloudfront,
        )
    return DynamoPublishRecordStore(settings.records_table, ddb_client=clients.dynamodb)


def _orchestrator_for(settings: SiteSettings, clients: AwsClients) -> PublishOrchestrator:
    retry = _retry_policy(settings)
    return PublishOrchestrator(
        site=settings.site,
        bucket=settings.require("bucket"),
        artifact_store=ArtifactStore(
            settings.resolved_artifact_bucket,
            prefix=settings.artifact_prefix,
            s3_client=clients.s3,
            retry=retry,
        ),
        pointer=_pointer_for(settings, clients),
        invalidator=CloudFrontInvalidator(
            settings.require("distribution_id"),
            cloudfront_client=clients.cloudfront,
            wait=settings.wait_for_invalidation,
        ),
        s3_client=clients.s3,
        destination_prefix=settings.destination_prefix,
        file_options=settings.file_options,
        default_cache_control=settings.default_cache_control,
        retry=retry,
        prune_stale=settings.prune_stale and not settings.dev_mode,
    )


def _prepare(settings: SiteSettings, clients: AwsClients | None) -> tuple[SiteSettings, AwsClients]:
    clients = clients or AwsClients.from_settings(settings)
    return resolve_infrastructure(settings, clients.ssm), clients


def _result(
    settings: SiteSettings,
    deployment_id: str,
    fingerprints: tuple[str, ...],
    state: PublishState,
) -> PublishResult:
    return PublishResult(
        site=settings.site,
        url=public_url(settings),
        custom_domain_url=custom_domain_url(settings.custom_domain),
        deployment_id=deployment_id,
        fingerprints=fingerprints,
        bucket=settings.require("bucket"),
        namespace=namespace_for(settings.destination_prefix, deployment_id),
        state=state,
    )


def deploy_site(settings: SiteSettings, clients: AwsClients | None = None) -> PublishResult:
    """Build, upload and publish one site. Raises InputError, StateConflictError or DeployFailed."""
    settings, clients = _prepare(settings, clients)

    if settings.dev_mode:
        tree = stub_build_output(settings.site)
    else:
        if settings.build_command and not settings.skip_build:
            run_build(
                settings.build_command,
                cwd=settings.site_path,
                environment=settings.environment,
            )
        tree = load_build_output(settings.build_output_path)

    bundles = split(tree, size_limit_bytes(settings.size_limit_mb))
    orchestrator = _orchestrator_for(settings, clients)
    rules = compile_rules(
        settings.environment, index_page=settings.index_page, extra=settings.replace_values
    )

    try:
        handles = orchestrator.artifact_store.upload_all(
            bundles, max_workers=settings.upload_concurrency
        )
    except TransientIOError as exc:
        logger.exception("Bundle upload failed", site=settings.site)
        raise DeployFailed(last_state=PublishState.STAGING, reason=str(exc)) from exc

    deployment_id = resolve(handles, dev_mode=settings.dev_mode)
    logger.info(
        "Deployment resolved",
        site=settings.site,
        deployment_id=deployment_id,
        bundle_count=len(handles),
    )

    with held_lock(
        clients.dynamodb,
        table_name=settings.locks_table,
        site=settings.site,
        acquired_by=default_owner(),
    ):
        outcome = orchestrator.publish(
            deployment_id=deployment_id,
            handles=handles,
            rules=rules,
            dev_mode=settings.dev_mode,
        )

    return _result(
        settings,
        outcome.record.deployment_id,
        tuple(h.fingerprint for h in handles),
        outcome.state,
    )


def rollback_site(
    settings: SiteSettings, deployment_id: str, clients: AwsClients | None = None
) -> PublishResult:
    settings, clients = _prepare(settings, clients)
    orchestrator = _orchestrator_for(settings, clients)
    with held_lock(
        clients.dynamodb,
        table_name=settings.locks_table,
        site=settings.site,
        acquired_by=default_owner(),
    ):
        outcome = orchestrator.rollback(deployment_id)
    return _result(settings, deployment_id, outcome.record.fingerprints, outcome.state)


def site_status(settings: SiteSettings, clients: AwsClients | None = None) -> dict[str, Any]:
    """Live deployment and every staged identity for the site."""
    settings, clients = _prepare(settings, clients)
    orchestrator = _orchestrator_for(settings, clients)
    record = orchestrator.pointer.current(settings.site)
    return {
        "site": settings.site,
        "url": public_url(settings),
        "liveDeploymentId": record.deployment_id if record else None,
        "previousDeploymentId": record.previous_deployment_id if record else None,
        "publishedAt": record.published_at if record else None,
        "stagedDeploymentIds": orchestrator.deployed_identities(),
    }
