"""
site_publisher.retry — Bounded exponential backoff for storage operations.

Default policy: 4 attempts (the first try plus 3 retries), waiting
2s, 4s, 8s between them. Only transient failures are retried:
connection/timeout errors, throttling, and 5xx responses. Anything else
is raised on the first attempt.

Pointer switches and invalidations are deliberately not routed through
this module; a failed publish is retried as a whole.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from aws_lambda_powertools import Logger
from botocore.config import Config
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

logger = Logger(service="site-publisher")

T = TypeVar("T")

TRANSIENT_ERROR_CODES: frozenset[str] = frozenset(
    {
        "RequestTimeout",
        "RequestTimeoutException",
        "SlowDown",
        "ServiceUnavailable",
        "InternalError",
        "Throttling",
        "ThrottlingException",
        "RequestLimitExceeded",
    }
)

_TRANSIENT_EXCEPTIONS = (
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
    ConnectionClosedError,
    ConnectionError,
    TimeoutError,
)


def botocore_config(*, connect_timeout: float, read_timeout: float) -> Config:
    """Per-operation timeouts; botocore makes one attempt and RetryPolicy retries."""
    return Config(
        connect_timeout=connect_timeout,
        read_timeout=read_timeout,
        retries={"total_max_attempts": 1, "mode": "standard"},
    )


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 4
    base_delay: float = 2.0
    max_delay: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay < 0:
            raise ValueError(f"base_delay must be >= 0, got {self.base_delay}")

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number attempt (1-based)."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


class OperationFailed(Exception):
    """Raised by call_with_backoff; wraps the last error and the attempt count."""

    def __init__(self, last_error: BaseException, *, attempts: int) -> None:
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(f"{type(last_error).__name__}: {last_error}")


def error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, _TRANSIENT_EXCEPTIONS):
        return True
    if isinstance(exc, ClientError):
        if error_code(exc) in TRANSIENT_ERROR_CODES:
            return True
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        return isinstance(status, int) and status >= 500
    return False


def call_with_backoff(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    describe: str,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call fn, retrying transient failures per policy.

    Raises OperationFailed once the budget is spent or on the first
    non-transient failure (attempts then reflects how many calls were made).
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except Exception as exc:
            if not is_transient(exc):
                raise OperationFailed(exc, attempts=attempt) from exc
            if attempt >= policy.max_attempts:
                logger.error(
                    "Retries exhausted",
                    operation=describe,
                    attempts=attempt,
                    error=str(exc),
                )
                raise OperationFailed(exc, attempts=attempt) from exc
            delay = policy.delay_for(attempt)
            logger.warning(
                "Transient failure, backing off",
                operation=describe,
                attempt=attempt,
                delay_seconds=delay,
                error=str(exc),
            )
            sleep(delay)
