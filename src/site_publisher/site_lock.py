"""
site_publisher.site_lock — DynamoDB lock allowing one deploy per site.

A second deploy for the same site while one is in flight is rejected with
SiteLockHeld; it never interleaves pointer switches with the first.

Lock record:
  table: platform-ops-locks
  PK:    LOCK#site-publish#{site}
  SK:    METADATA
TTL:
  30 minutes. An expired lock may be taken over even before DynamoDB's TTL
  sweeper deletes it.
"""

from __future__ import annotations

import os
import socket
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError

from site_publisher.exceptions import SiteLockHeld, StateConflictError
from site_publisher.models import SITE_LOCK_TTL_SECONDS

logger = Logger(service="site-publisher")

DEFAULT_LOCKS_TABLE = "platform-ops-locks"


class LockOwnershipError(StateConflictError):
    """Raised when release fails due to lock ownership mismatch."""


@dataclass(frozen=True)
class LockRecord:
    site: str
    lock_id: str
    acquired_by: str
    acquired_at: str
    ttl: int

    @property
    def lock_name(self) -> str:
        return lock_name_for(self.site)


def lock_name_for(site: str) -> str:
    return f"site-publish#{site}"


def now_utc() -> datetime:
    return datetime.now(UTC)


def iso8601_utc(dt: datetime) -> str:
    return dt.astimezone(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def default_owner() -> str:
    user = os.environ.get("USER") or os.environ.get("USERNAME") or "unknown"
    host = socket.gethostname() or "unknown-host"
    return f"site-publisher:{user}@{host}"


def _is_conditional_check_failed(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


def _lock_key(site: str) -> dict[str, Any]:
    return {"PK": {"S": f"LOCK#{lock_name_for(site)}"}, "SK": {"S": "METADATA"}}


def acquire_lock(
    ddb_client: Any,
    *,
    table_name: str,
    site: str,
    acquired_by: str,
    ttl_seconds: int = SITE_LOCK_TTL_SECONDS,
    now: datetime | None = None,
) -> LockRecord:
    current_time = now or now_utc()
    record = LockRecord(
        site=site,
        lock_id=str(uuid4()),
        acquired_by=acquired_by,
        acquired_at=iso8601_utc(current_time),
        ttl=int(current_time.timestamp()) + ttl_seconds,
    )
    item = {
        **_lock_key(site),
        "lockName": {"S": record.lock_name},
        "lockId": {"S": record.lock_id},
        "acquiredBy": {"S": record.acquired_by},
        "acquiredAt": {"S": record.acquired_at},
        "ttl": {"N": str(record.ttl)},
    }
    try:
        ddb_client.put_item(
            TableName=table_name,
            Item=item,
            ConditionExpression="attribute_not_exists(PK) OR #ttl < :now",
            ExpressionAttributeNames={"#ttl": "ttl"},
            ExpressionAttributeValues={":now": {"N": str(int(current_time.timestamp()))}},
        )
    except ClientError as exc:
        if _is_conditional_check_failed(exc):
            raise SiteLockHeld(site) from exc
        raise
    logger.info("Site lock acquired", site=site, lock_id=record.lock_id, owner=acquired_by)
    return record


def release_lock(
    ddb_client: Any,
    *,
    table_name: str,
    site: str,
    lock_id: str | None = None,
) -> bool:
    """Delete the lock. With lock_id, only if it is still ours."""
    delete_kwargs: dict[str, Any] = {
        "TableName": table_name,
        "Key": _lock_key(site),
        "ReturnValues": "ALL_OLD",
    }
    if lock_id:
        delete_kwargs["ConditionExpression"] = "lockId = :lock_id"
        delete_kwargs["ExpressionAttributeValues"] = {":lock_id": {"S": lock_id}}
    try:
        response = ddb_client.delete_item(**delete_kwargs)
    except ClientError as exc:
        if _is_conditional_check_failed(exc):
            raise LockOwnershipError(
                f"Lock ownership mismatch for site {site!r}; refusing to release"
            ) from exc
        raise
    return "Attributes" in response


def current_lock(ddb_client: Any, *, table_name: str, site: str) -> LockRecord | None:
    item = ddb_client.get_item(TableName=table_name, Key=_lock_key(site), ConsistentRead=True).get(
        "Item"
    )
    if not item:
        return None
    return LockRecord(
        site=site,
        lock_id=item["lockId"]["S"],
        acquired_by=item["acquiredBy"]["S"],
        acquired_at=item["acquiredAt"]["S"],
        ttl=int(item["ttl"]["N"]),
    )


@contextmanager
def held_lock(
    ddb_client: Any,
    *,
    table_name: str,
    site: str,
    acquired_by: str,
    ttl_seconds: int = SITE_LOCK_TTL_SECONDS,
) -> Iterator[LockRecord]:
    record = acquire_lock(
        ddb_client,
        table_name=table_name,
        site=site,
        acquired_by=acquired_by,
        ttl_seconds=ttl_seconds,
    )
    try:
        yield record
    finally:
        try:
            release_lock(ddb_client, table_name=table_name, site=site, lock_id=record.lock_id)
        except LockOwnershipError:
            # Lock expired and was taken over; the new holder owns it now.
            logger.warning("Site lock was taken over before release", site=site)
