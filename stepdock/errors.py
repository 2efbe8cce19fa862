"""
Error classes for stepdock execution.

These error types classify failures at the container runtime boundary:
- InvalidReference: malformed image identifier (never retried)
- MissingConfiguration: step has no docker configuration
- RuntimeOperationFailure: any failed runtime call (create, start, wait, ...)
  - ImageNotFound: image absent locally; triggers the one-shot re-pull in create
  - PullFailure: registry or pull error
  - StreamFormatError: malformed multiplexed log stream

Error handling contract:
- Runtime clients translate SDK errors into these types
- The engine propagates them untouched, except during destroy where
  per-container cleanup errors are collected instead of raised
"""

from typing import Optional


class StepdockError(Exception):
    """Base exception for stepdock."""
    pass


class ConfigError(StepdockError):
    """Configuration validation error."""
    pass


class SpecError(StepdockError):
    """Pipeline spec could not be loaded or is structurally invalid."""
    pass


class InvalidReference(StepdockError):
    """
    Image reference does not match the reference grammar.

    Examples:
    - Empty string
    - Uppercase repository name
    - Illegal characters or malformed tag/digest
    """

    def __init__(self, reference: str, reason: str):
        self.reference = reference
        self.reason = reason
        super().__init__(f"invalid reference format: {reason}: {reference!r}")


class MissingConfiguration(StepdockError):
    """Step lacks the docker configuration required to run it."""

    def __init__(self, step_id: str):
        self.step_id = step_id
        super().__init__(f"engine: missing docker configuration for step '{step_id}'")


class Cancelled(StepdockError):
    """Operation was interrupted by its cancel event."""
    pass


class RuntimeOperationFailure(StepdockError):
    """
    A call against the container runtime failed.

    Attributes:
        operation: Runtime operation name (e.g. "container_create")
        resource: Identifier of the container, volume, network or image
        cause: Underlying SDK exception, if any
    """

    def __init__(
        self,
        message: str,
        operation: str = "",
        resource: str = "",
        cause: Optional[Exception] = None,
    ):
        self.operation = operation
        self.resource = resource
        self.cause = cause
        super().__init__(message)


class ImageNotFound(RuntimeOperationFailure):
    """The image does not exist locally (distinguished for the re-pull path)."""
    pass


class PullFailure(RuntimeOperationFailure):
    """Image pull from the registry failed."""
    pass


class StreamFormatError(RuntimeOperationFailure):
    """The multiplexed log stream is truncated or carries an unknown frame."""
    pass
