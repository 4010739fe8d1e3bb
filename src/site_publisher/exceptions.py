"""
site_publisher.exceptions — Error taxonomy for the publish pipeline.

    InputError          fatal, never retried, names the offending path/pattern
    TransientIOError    retried with bounded backoff, then escalated
    StateConflictError  fatal for the losing caller, never retried automatically
    DeployFailed        carries the pipeline state the deploy had reached
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from site_publisher.models import PublishState


class PublisherError(Exception):
    """Base class for all site publisher errors."""


# ---------------------------------------------------------------------------
# InputError — bad build output, bad patterns, bad configuration
# ---------------------------------------------------------------------------


class InputError(PublisherError):
    """Raised for caller mistakes. Never retried."""

    def __init__(
        self, message: str, *, path: str | None = None, pattern: str | None = None
    ) -> None:
        self.path = path
        self.pattern = pattern
        super().__init__(message)


class BuildOutputMissing(InputError):
    def __init__(self, path: str) -> None:
        super().__init__(f"No build output found at {path!r}", path=path)


class BuildOutputEmpty(InputError):
    def __init__(self, path: str) -> None:
        super().__init__(
            f"Build output at {path!r} contains no files; check the build output directory",
            path=path,
        )


class InvalidBuildPath(InputError):
    def __init__(self, path: str, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Invalid build output path {path!r}: {reason}", path=path)


class InvalidGlobPattern(InputError):
    def __init__(self, pattern: str, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Invalid glob pattern {pattern!r}: {reason}", pattern=pattern)


class BuildFailed(InputError):
    def __init__(self, command: str, returncode: int, *, path: str | None = None) -> None:
        self.command = command
        self.returncode = returncode
        super().__init__(
            f"Build command {command!r} exited with status {returncode}",
            path=path,
        )


class ConfigError(InputError):
    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(f"{field}: {message}")


# ---------------------------------------------------------------------------
# TransientIOError — network/storage failures, retried with backoff
# ---------------------------------------------------------------------------


class TransientIOError(PublisherError):
    """Raised when a storage operation failed after its retry budget."""

    def __init__(self, message: str, *, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(message)


class UploadFailed(TransientIOError):
    def __init__(self, bundle_index: int, *, attempts: int, reason: str) -> None:
        self.bundle_index = bundle_index
        super().__init__(
            f"Upload of bundle {bundle_index} failed after {attempts} attempt(s): {reason}",
            attempts=attempts,
        )


class StagingFailed(TransientIOError):
    def __init__(self, key: str, *, attempts: int, reason: str) -> None:
        self.key = key
        super().__init__(
            f"Staging object {key!r} failed after {attempts} attempt(s): {reason}",
            attempts=attempts,
        )


# ---------------------------------------------------------------------------
# StateConflictError — concurrent publish for the same site
# ---------------------------------------------------------------------------


class StateConflictError(PublisherError):
    """Raised when another publish for the same site got there first."""


class SiteLockHeld(StateConflictError):
    def __init__(self, site: str) -> None:
        self.site = site
        super().__init__(f"A deploy for site {site!r} is already in progress")


class PointerConflict(StateConflictError):
    def __init__(self, site: str, *, expected: str | None, actual: str | None) -> None:
        self.site = site
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Live pointer for site {site!r} moved underneath us "
            f"(expected {expected!r}, found {actual!r})"
        )


# ---------------------------------------------------------------------------
# DeployFailed
# ---------------------------------------------------------------------------


class DeployFailed(PublisherError):
    """
    Raised when a publish stops before reaching PUBLISHED.

    Attributes:
        last_state:        State the deploy had reached when it stopped. Work
                           for this state may be partially done.
        completed_states:  States whose work fully completed, in order.
        deployment_id:     Identity being published, when already resolved.

    The underlying exception is attached as __cause__. Retrying the whole
    deploy is always safe: staging of an already staged identity is a no-op.
    """

    def __init__(
        self,
        *,
        last_state: PublishState,
        completed_states: tuple[PublishState, ...] = (),
        deployment_id: str | None = None,
        reason: str = "",
    ) -> None:
        self.last_state = last_state
        self.completed_states = completed_states
        self.deployment_id = deployment_id
        self.reason = reason
        super().__init__(
            f"Deploy {deployment_id or '<unresolved>'} failed in state "
            f"{last_state.value}: {reason}"
        )
