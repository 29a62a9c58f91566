"""
Data models for lifecycle transitions.

These models describe the outcome of a destroy, restore or delete call so
callers can check success and see which dependents took part in a cascade.
"""

from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field

from .policies import identity_of


class TransitionAction(str, Enum):
    """Kinds of lifecycle transition."""

    DESTROY = "destroy"
    RESTORE = "restore"
    DELETE = "delete"


class RecordRef(BaseModel):
    """Type and identity of a record taking part in a transition."""

    type: str = Field(..., description="Mapped class name")
    id: str = Field(..., description="Primary key, comma separated if composite")

    @classmethod
    def from_record(cls, record: Any) -> "RecordRef":
        identity = identity_of(record)
        return cls(
            type=type(record).__name__,
            id=",".join(str(value) for value in identity),
        )

    def __str__(self) -> str:
        return f"{self.type}:{self.id}"


class TransitionResult(BaseModel):
    """Outcome of one root transition and its cascade."""

    success: bool = Field(..., description="Whether the transition committed")
    action: TransitionAction
    record: RecordRef
    instant: Optional[datetime] = Field(
        None, description="Correlation instant of the cascade"
    )
    transitioned: List[RecordRef] = Field(
        default_factory=list,
        description="Records whose destroyed_at changed, root first",
    )
    hard_deleted: List[RecordRef] = Field(
        default_factory=list, description="Records removed from storage"
    )
    skipped: bool = Field(
        False, description="True when destroy was a no-op on a destroyed record"
    )
    error: Optional[str] = Field(None, description="Failure message, if any")

    def __bool__(self) -> bool:
        return self.success

    @property
    def cascade_count(self) -> int:
        """Number of dependents affected besides the root record."""
        dependents = [ref for ref in self.transitioned if ref != self.record]
        return len(dependents) + len(
            [ref for ref in self.hard_deleted if ref != self.record]
        )
