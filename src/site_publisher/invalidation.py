"""
site_publisher.invalidation — CloudFront cache invalidation.

One request per publish, path set {"/*"}. Not retried here: if it fails the
publish fails, and re-running the publish is cheap because staging is
idempotent.
"""

from __future__ import annotations

from typing import Any

import boto3
from aws_lambda_powertools import Logger

from site_publisher.models import InvalidationRequest

logger = Logger(service="site-publisher")

WAITER_DELAY_SECONDS = 20
WAITER_MAX_ATTEMPTS = 45  # 15 minutes


class CloudFrontInvalidator:
    def __init__(
        self, distribution_id: str, *, cloudfront_client: Any = None, wait: bool = False
    ) -> None:
        self._distribution_id = distribution_id
        self._cloudfront: Any = cloudfront_client or boto3.client("cloudfront")
        self._wait = wait

    def invalidate(self, request: InvalidationRequest, *, caller_reference: str) -> str:
        """Create the invalidation and return its id.

        caller_reference makes the call idempotent on the CloudFront side;
        reusing it returns the existing invalidation.
        """
        response = self._cloudfront.create_invalidation(
            DistributionId=self._distribution_id,
            InvalidationBatch={
                "Paths": {"Quantity": len(request.paths), "Items": list(request.paths)},
                "CallerReference": caller_reference,
            },
        )
        invalidation_id = str(response["Invalidation"]["Id"])
        logger.info(
            "Invalidation created",
            distribution_id=self._distribution_id,
            invalidation_id=invalidation_id,
            paths=list(request.paths),
        )
        if self._wait:
            waiter = self._cloudfront.get_waiter("invalidation_completed")
            waiter.wait(
                DistributionId=self._distribution_id,
                Id=invalidation_id,
                WaiterConfig={"Delay": WAITER_DELAY_SECONDS, "MaxAttempts": WAITER_MAX_ATTEMPTS},
            )
            logger.info("Invalidation completed", invalidation_id=invalidation_id)
        return invalidation_id
