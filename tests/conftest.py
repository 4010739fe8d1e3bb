"""Shared fixtures for site publisher tests."""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any
from unittest.mock import MagicMock

import boto3
import pytest
from moto import mock_aws

REGION = "eu-west-2"
BUCKET = "site-bucket"
RECORDS_TABLE = "platform-site-publish"
LOCKS_TABLE = "platform-ops-locks"


@pytest.fixture(autouse=True)
def aws_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AWS_REGION", REGION)
    monkeypatch.setenv("AWS_DEFAULT_REGION", REGION)
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")  # pragma: allowlist secret
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")  # pragma: allowlist secret
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")  # pragma: allowlist secret
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")  # pragma: allowlist secret
    for name in (
        "SITE_PUBLISH_BUCKET",
        "SITE_PUBLISH_DISTRIBUTION_ID",
        "SITE_PUBLISH_RECORDS_TABLE",
        "SITE_PUBLISH_LOCKS_TABLE",
        "SITE_PUBLISH_DEV_MODE",
    ):
        monkeypatch.delenv(name, raising=False)


def create_pk_sk_table(ddb: Any, table_name: str) -> None:
    ddb.create_table(
        TableName=table_name,
        KeySchema=[
            {"AttributeName": "PK", "KeyType": "HASH"},
            {"AttributeName": "SK", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "PK", "AttributeType": "S"},
            {"AttributeName": "SK", "AttributeType": "S"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )


@pytest.fixture
def aws() -> Iterator[dict[str, Any]]:
    """Mocked S3 bucket and DynamoDB tables."""
    with mock_aws():
        s3 = boto3.client("s3", region_name=REGION)
        s3.create_bucket(
            Bucket=BUCKET, CreateBucketConfiguration={"LocationConstraint": REGION}
        )
        ddb = boto3.client("dynamodb", region_name=REGION)
        create_pk_sk_table(ddb, RECORDS_TABLE)
        create_pk_sk_table(ddb, LOCKS_TABLE)
        yield {"s3": s3, "dynamodb": ddb}


@pytest.fixture
def cloudfront() -> MagicMock:
    client = MagicMock()
    counter = {"n": 0}

    def _create_invalidation(**kwargs: Any) -> dict[str, Any]:
        counter["n"] += 1
        return {"Invalidation": {"Id": f"I{counter['n']}", "Status": "InProgress"}}

    client.create_invalidation.side_effect = _create_invalidation
    return client
