"""
Error taxonomy for quotaflow.

Ordinary quota denials are return values (see DenialReason), never exceptions.
Only infrastructure faults and API misuse are raised.
"""

from enum import Enum


class DenialReason(str, Enum):
    """Machine-readable reason attached to a denied quota decision."""
    FEATURE_DISABLED = "feature_disabled"
    QUOTA_EXCEEDED = "quota_exceeded"
    STORAGE_UNAVAILABLE = "storage_unavailable"


class QuotaflowError(Exception):
    """Base class for quotaflow errors."""
    pass


class StorageUnavailable(QuotaflowError):
    """Raised when the storage layer cannot complete an operation.

    Transient. The enforcement gate retries once and then fails closed.
    """
    pass


class InvalidOverrideConfiguration(QuotaflowError):
    """Raised when a custom override cannot be created as requested.

    At lookup time the same condition is only logged and the resolver falls
    back to the base plan.
    """
    pass


class InvalidTransition(QuotaflowError):
    """Raised when a lifecycle status change is not allowed."""
    def __init__(self, entity: str, current: str, target: str):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot move {entity} from '{current}' to '{target}'"
        )


class NotFoundError(QuotaflowError):
    """Raised when a plan, override or recommendation id does not exist."""
    pass
