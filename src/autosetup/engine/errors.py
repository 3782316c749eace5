"""Error taxonomy for external operations and persistence."""

from __future__ import annotations


class ExternalOperationError(RuntimeError):
    """Base error for failures of wrapped external tools."""


class TransientExternalFailure(ExternalOperationError):
    """Failure that may succeed on a later attempt."""


class FatalExternalFailure(ExternalOperationError):
    """Failure that will not improve by retrying."""


class OperationTimeout(TransientExternalFailure):
    """External operation exceeded its per-attempt timeout."""


class ProcessLaunchError(ExternalOperationError):
    """Process could not be started, with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class PersistenceFailure(RuntimeError):
    """State document could not be written or read."""


class CancellationRequested(RuntimeError):
    """Run cancellation was requested by the operator."""
