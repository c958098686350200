"""Error taxonomy for the sync pipeline.

Every error carries enough metadata to be attached to a SyncOperation's
error list via ``to_dict()``. ``retryable`` tells the orchestrator whether a
later attempt could succeed without operator action.
"""

from datetime import datetime, timezone
from typing import Any


class SyncError(Exception):
    """Base exception for all pipeline errors."""

    category = "unknown"
    retryable = False

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


class TransientNetworkError(SyncError):
    """Timeout, 5xx or 429 that persisted after all retry attempts."""

    category = "transient_network"
    retryable = True


class UnsupportedEndpoint(SyncError):
    """The source does not expose this endpoint family (HTTP 404)."""

    category = "unsupported_endpoint"


class SourceRequestError(SyncError):
    """Non-retryable request failure: other 4xx or an unparsable body."""

    category = "source_request"


class FatalAuthError(SyncError):
    """Credentials rejected; no further progress is possible."""

    category = "fatal_auth"


class ReconciliationGap(SyncError):
    """A source identifier that cannot be resolved to a canonical one."""

    category = "reconciliation_gap"

    def __init__(self, kind: str, raw_code: str, message: str | None = None, details: dict | None = None):
        super().__init__(message or f"Unresolved {kind} code: {raw_code!r}", details)
        self.kind = kind
        self.raw_code = raw_code

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["kind"] = self.kind
        data["raw_code"] = self.raw_code
        return data


class ValidationError(SyncError):
    """Malformed source record (missing date, out-of-range period index)."""

    category = "validation"


class LoadError(SyncError):
    """Storage constraint violation for a record or batch."""

    category = "load"


class AliasConflictError(SyncError):
    """An alias change would make a source code resolve to two schools."""

    category = "alias_conflict"


class OverlappingOperationError(SyncError):
    """Another running operation already covers part of this scope."""

    category = "overlapping_operation"
    retryable = True


class OperationClaimedError(SyncError):
    """The operation is already held by another worker."""

    category = "operation_claimed"
