"""Core domain models for datasets, rows, users and realtime events."""

from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any

from pydantic import BaseModel, Field, field_validator, model_validator

from .ids import utcnow


class RowStatus(str, Enum):
    """Lifecycle state of a row."""

    PENDING = "pending"
    WORKING = "working"
    COMPLETED = "completed"
    BLOCKED = "blocked"


class UserRole(str, Enum):
    """Account-level role. Not scoped per dataset."""

    ADMIN = "admin"
    MEMBER = "member"


class User(BaseModel):
    """A collaborator with a display colour used to attribute locks."""

    user_id: str
    email: str
    full_name: Optional[str] = None
    color: str = "#9CA3AF"
    role: UserRole = UserRole.MEMBER
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def display_name(self) -> str:
        return self.full_name or self.email

    @property
    def initial(self) -> str:
        name = self.display_name.strip()
        return name[0].upper() if name else "?"


class Dataset(BaseModel):
    """A named collection of rows imported from one CSV file.

    ``total_rows`` and ``completed_rows`` are cached counters; the rows
    themselves are always authoritative.
    """

    dataset_id: str
    name: str
    original_filename: Optional[str] = None
    uploaded_by: Optional[str] = None
    total_rows: int = Field(0, ge=0)
    completed_rows: int = Field(0, ge=0)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def progress(self) -> float:
        """Completion percentage in the range 0-100."""
        if not self.total_rows:
            return 0.0
        return round(100.0 * self.completed_rows / self.total_rows, 1)


class Row(BaseModel):
    """One unit of collaborative work with its own lock and status."""

    row_id: str
    dataset_id: str
    sequence: int = Field(..., ge=0)
    fields: Dict[str, Any] = Field(default_factory=dict)
    status: RowStatus = RowStatus.PENDING
    assigned_to: Optional[str] = None
    lock_holder: Optional[str] = None
    locked_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    note: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("note")
    @classmethod
    def _normalize_note(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None

    @model_validator(mode="after")
    def _check_invariants(self) -> "Row":
        if (self.lock_holder is None) != (self.locked_at is None):
            raise ValueError("lock_holder and locked_at must be set together")
        if (self.status == RowStatus.COMPLETED) != (self.completed_at is not None):
            raise ValueError("completed_at must be set exactly when status is completed")
        return self

    @property
    def is_locked(self) -> bool:
        return self.lock_holder is not None

    def matches(self, query: str) -> bool:
        """Case-insensitive substring match against any cell value."""
        if not query:
            return True
        needle = query.lower()
        return any(needle in str(value).lower() for value in self.fields.values())


class ChangeKind(str, Enum):
    """Kind of mutation reported by the change feed."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class ChangeEvent(BaseModel):
    """Change-feed notification. A trigger to re-sync, not a delta."""

    dataset_id: str
    row_id: Optional[str] = None
    kind: ChangeKind
    emitted_at: datetime = Field(default_factory=utcnow)


class PeerEvent(BaseModel):
    """Best-effort broadcast telling other clients to re-fetch."""

    dataset_id: str
    row_id: Optional[str] = None
    action: str
    sender_id: Optional[str] = None
    sent_at: datetime = Field(default_factory=utcnow)


class ActivityEntry(BaseModel):
    """Append-only audit record."""

    entry_id: Optional[int] = None
    user_id: Optional[str] = None
    action: str
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)
