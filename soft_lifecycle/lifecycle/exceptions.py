"""Exceptions for lifecycle transitions."""

from typing import Optional


class LifecycleError(Exception):
    """Base exception for destroy/restore lifecycle operations."""

    def __init__(self, message: str, record_id: Optional[str] = None):
        self.record_id = record_id
        super().__init__(message)


class CallbackAbort(LifecycleError):
    """Raised by a lifecycle hook to abort the current transition."""

    def __init__(self, message: str = "Lifecycle hook aborted the transition"):
        super().__init__(message)


class PolicyResolutionError(LifecycleError):
    """Raised when a dependent's policy or concrete type cannot be resolved."""

    def __init__(self, relation: str, reason: str):
        self.relation = relation
        super().__init__(f"Cannot resolve dependent policy for {relation}: {reason}")


class DetachedRecordError(LifecycleError):
    """Raised when a transition is requested for a record without a session."""

    def __init__(self, record_type: str):
        super().__init__(
            f"{record_type} instance is not attached to a session; "
            "add it to a session before destroying or restoring it"
        )


class NotLifecycleEnabledError(LifecycleError):
    """Raised when a lifecycle-only operation targets a type without ``destroyed_at``."""

    def __init__(self, record_type: str, operation: str = "restore"):
        self.operation = operation
        super().__init__(
            f"{record_type} does not declare a destroyed_at column; "
            f"{operation} is not available"
        )
