"""Queue data models."""
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import IntEnum
from typing import Any, Dict, List, Optional, Sequence

# Item statuses
PENDING = "pending"
QUEUED = "queued"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"

STATUSES = (PENDING, QUEUED, PROCESSING, COMPLETED, FAILED, CANCELLED)
ACTIVE_STATUSES = (PENDING, QUEUED, PROCESSING)

# Rejection reasons reported by prepare_queue
CAPACITY_EXHAUSTED = "capacity_exhausted"
ALREADY_QUEUED = "already_queued"
DUPLICATE_CANDIDATE = "duplicate_candidate"
INVALID_CANDIDATE = "invalid_candidate"
PERSISTENCE_FAILED = "persistence_failed"
INVALID_TRANSITION = "invalid_transition"


class Priority(IntEnum):
    LOW = 0
    MEDIUM = 1
    HIGH = 2
    URGENT = 3

    @classmethod
    def parse(cls, value) -> "Priority":
        """Accept a Priority, its name ("high") or its ordinal (2)."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise ValueError(f"Unknown priority: {value!r}")
        return cls(int(value))


@dataclass
class QueueItem:
    """One unit of scheduled work: contacting a single lead."""

    id: str
    subject_id: str
    status: str = PENDING
    priority: Priority = Priority.MEDIUM
    scheduled_for: Optional[datetime] = None
    attempts: int = 0
    max_attempts: int = 3
    sequence: int = 0  # arrival order inside its batch
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    queued_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    provider_message_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(cls, subject_id: str, priority=Priority.MEDIUM, max_attempts: int = 3,
               sequence: int = 0, metadata: Optional[Dict[str, Any]] = None,
               now: Optional[datetime] = None):
        """Factory method for a fresh pending item."""
        return cls(
            id=uuid.uuid4().hex,
            subject_id=subject_id,
            priority=Priority.parse(priority),
            max_attempts=max_attempts,
            sequence=sequence,
            created_at=now,
            updated_at=now,
            metadata=dict(metadata or {}),
        )

    @property
    def is_hard_failure(self) -> bool:
        return self.status == FAILED and self.attempts >= self.max_attempts

    @property
    def is_terminal(self) -> bool:
        return self.status in (COMPLETED, CANCELLED) or self.is_hard_failure

    @property
    def can_retry(self) -> bool:
        return self.status == FAILED and self.attempts < self.max_attempts

    def evolve(self, **changes) -> "QueueItem":
        return replace(self, **changes)


@dataclass
class CapacityWindow:
    """Committed load of a single calendar day."""

    day: date
    limit: int
    committed: int = 0

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.committed)

    @property
    def over_committed(self) -> int:
        return max(0, self.committed - self.limit)


@dataclass
class Candidate:
    """A lead offered for queueing by the lead-selection collaborator."""

    subject_id: str
    priority: Priority = Priority.MEDIUM
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def coerce(cls, value) -> "Candidate":
        """Build a candidate from an id, a mapping or a Candidate."""
        if isinstance(value, cls):
            return value
        if isinstance(value, dict):
            subject_id = value["subject_id"] if "subject_id" in value else value.get("lead_id")
            if subject_id is None:
                raise ValueError("missing subject id")
            return cls(
                subject_id=str(subject_id).strip(),
                priority=Priority.parse(value.get("priority", Priority.MEDIUM)),
                metadata=dict(value.get("metadata") or {}),
            )
        if value is None:
            raise ValueError("missing subject id")
        return cls(subject_id=str(value).strip())


@dataclass
class ItemFilter:
    """Selection passed to the persistence collaborator."""

    statuses: Sequence[str] = ()
    subject_ids: Sequence[str] = ()
    due_before: Optional[datetime] = None
    updated_before: Optional[datetime] = None
    limit: Optional[int] = None


@dataclass
class Assignment:
    item: QueueItem
    scheduled_for: datetime


@dataclass
class Rejection:
    subject_id: str
    reason: str
    item_id: Optional[str] = None
    detail: Optional[str] = None


@dataclass
class DistributionResult:
    scheduled: List[Assignment] = field(default_factory=list)
    rejected: List[Rejection] = field(default_factory=list)

    def per_day(self) -> Dict[date, int]:
        """Number of scheduled items per calendar day."""
        out: Dict[date, int] = {}
        for assignment in self.scheduled:
            day = assignment.scheduled_for.date()
            out[day] = out.get(day, 0) + 1
        return out
