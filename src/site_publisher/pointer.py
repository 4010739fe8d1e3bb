"""
site_publisher.pointer — The live read-path pointer for a site.

Activating a deployment is one compare-and-swap write: the write succeeds
only if the pointer still names the deployment the caller last observed.
Readers therefore see either the old namespace or the new one, never a mix.

Backends:
  DynamoPublishRecordStore   PublishRecord item in DynamoDB
                             (PK: SITE#{site}, SK: ACTIVE), conditional put.
  CloudFrontOriginPointer    the distribution origin's OriginPath, updated
                             with update_distribution guarded by IfMatch.
"""

from __future__ import annotations

import os
from typing import Any, Protocol

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError

from site_publisher.exceptions import PointerConflict
from site_publisher.models import PublishRecord
from site_publisher.retry import error_code

logger = Logger(service="site-publisher")

DEFAULT_RECORDS_TABLE = "platform-site-publish"


class ReadPathPointer(Protocol):
    def current(self, site: str) -> PublishRecord | None: ...

    def switch(self, site: str, *, expected: str | None, record: PublishRecord) -> None: ...


# ---------------------------------------------------------------------------
# DynamoDB-backed PublishRecord
# ---------------------------------------------------------------------------


def record_to_item(record: PublishRecord) -> dict[str, Any]:
    item: dict[str, Any] = {
        "PK": {"S": record.pk},
        "SK": {"S": record.sk},
        "site": {"S": record.site},
        "deploymentId": {"S": record.deployment_id},
        "destinationPrefix": {"S": record.destination_prefix},
        "bucket": {"S": record.bucket},
        "publishedAt": {"S": record.published_at},
        "fingerprints": {"L": [{"S": f} for f in record.fingerprints]},
    }
    if record.previous_deployment_id:
        item["previousDeploymentId"] = {"S": record.previous_deployment_id}
    return item


def item_to_record(item: dict[str, Any]) -> PublishRecord:
    previous = item.get("previousDeploymentId", {}).get("S")
    return PublishRecord(
        site=item["site"]["S"],
        deployment_id=item["deploymentId"]["S"],
        destination_prefix=item.get("destinationPrefix", {}).get("S", ""),
        bucket=item.get("bucket", {}).get("S", ""),
        published_at=item.get("publishedAt", {}).get("S", ""),
        fingerprints=tuple(f["S"] for f in item.get("fingerprints", {}).get("L", [])),
        previous_deployment_id=previous or None,
    )


class DynamoPublishRecordStore:
    """PublishRecord stored as a single DynamoDB item per site."""

    def __init__(self, table_name: str = DEFAULT_RECORDS_TABLE, *, ddb_client: Any = None) -> None:
        self._table_name = table_name
        self._ddb: Any = ddb_client or boto3.client(
            "dynamodb", region_name=os.environ["AWS_REGION"]
        )

    def current(self, site: str) -> PublishRecord | None:
        response = self._ddb.get_item(
            TableName=self._table_name,
            Key={"PK": {"S": f"SITE#{site}"}, "SK": {"S": "ACTIVE"}},
            ConsistentRead=True,
        )
        item = response.get("Item")
        return item_to_record(item) if item else None

    def switch(self, site: str, *, expected: str | None, record: PublishRecord) -> None:
        """Write record if the live deployment is still expected (None: no record yet)."""
        kwargs: dict[str, Any] = {"TableName": self._table_name, "Item": record_to_item(record)}
        if expected is None:
            kwargs["ConditionExpression"] = "attribute_not_exists(PK)"
        else:
            kwargs["ConditionExpression"] = "deploymentId = :expected"
            kwargs["ExpressionAttributeValues"] = {":expected": {"S": expected}}
        try:
            self._ddb.put_item(**kwargs)
        except ClientError as exc:
            if error_code(exc) == "ConditionalCheckFailedException":
                actual = self.current(site)
                raise PointerConflict(
                    site,
                    expected=expected,
                    actual=actual.deployment_id if actual else None,
                ) from exc
            raise
        logger.info(
            "Publish record switched",
            site=site,
            deployment_id=record.deployment_id,
            previous_deployment_id=expected,
        )


# ---------------------------------------------------------------------------
# CloudFront origin path
# ---------------------------------------------------------------------------


def _split_origin_path(origin_path: str) -> tuple[str, str] | None:
    """'/{prefix}/{deploymentId}' -> (prefix, deploymentId); '' -> None."""
    namespace = origin_path.strip("/")
    if not namespace:
        return None
    prefix, _, deployment_id = namespace.rpartition("/")
    return prefix, deployment_id


class CloudFrontOriginPointer:
    """The distribution's origin path is the pointer.

    The ETag returned by get_distribution_config is passed back as IfMatch,
    so a concurrent edit of the distribution fails the update instead of
    being overwritten.
    """

    def __init__(
        self,
        distribution_id: str,
        *,
        bucket: str,
        cloudfront_client: Any = None,
        origin_id: str | None = None,
    ) -> None:
        self._distribution_id = distribution_id
        self._bucket = bucket
        self._origin_id = origin_id
        self._cloudfront: Any = cloudfront_client or boto3.client("cloudfront")

    def _origin(self, config: dict[str, Any]) -> dict[str, Any]:
        origins = config.get("Origins", {}).get("Items", [])
        if not origins:
            raise ValueError(f"Distribution {self._distribution_id} has no origins")
        if self._origin_id is None:
            return origins[0]
        for origin in origins:
            if origin.get("Id") == self._origin_id:
                return origin
        raise ValueError(
            f"Origin {self._origin_id!r} not found on distribution {self._distribution_id}"
        )

    def current(self, site: str) -> PublishRecord | None:
        response = self._cloudfront.get_distribution_config(Id=self._distribution_id)
        origin = self._origin(response["DistributionConfig"])
        parsed = _split_origin_path(origin.get("OriginPath", ""))
        if parsed is None:
            return None
        prefix, deployment_id = parsed
        return PublishRecord(
            site=site,
            deployment_id=deployment_id,
            destination_prefix=prefix,
            bucket=self._bucket,
            published_at="",
        )

    def switch(self, site: str, *, expected: str | None, record: PublishRecord) -> None:
        response = self._cloudfront.get_distribution_config(Id=self._distribution_id)
        etag = response["ETag"]
        config = response["DistributionConfig"]
        origin = self._origin(config)

        parsed = _split_origin_path(origin.get("OriginPath", ""))
        actual = parsed[1] if parsed else None
        if actual != expected:
            raise PointerConflict(site, expected=expected, actual=actual)

        origin["OriginPath"] = record.origin_path
        try:
            self._cloudfront.update_distribution(
                Id=self._distribution_id, DistributionConfig=config, IfMatch=etag
            )
        except ClientError as exc:
            if error_code(exc) == "PreconditionFailed":
                raise PointerConflict(site, expected=expected, actual=None) from exc
            raise
        logger.info(
            "Origin path switched",
            site=site,
            distribution_id=self._distribution_id,
            origin_path=record.origin_path,
        )
