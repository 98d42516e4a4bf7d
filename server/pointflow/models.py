"""Pointflow — Domain records

Plain dataclasses for the rows the closure workflow reads and writes.
Repositories return copies; mutating a returned record does not write back.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from .errors import InvariantViolation
from .policy import PermissionAction, to_action, to_role
from .roles import Role


class ContainerKind(str, Enum):
    MEETING = "meeting"
    SERIES = "series"
    OCCURRENCE = "occurrence"


class ContainerStatus(str, Enum):
    SCHEDULED = "scheduled"
    CLOSED = "closed"
    # Occurrences only
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PointStatus(str, Enum):
    NEW = "new"
    OPEN = "open"
    ONGOING = "ongoing"
    CLOSED = "closed"
    POSTPONED = "postponed"


# Postponed is deliberately absent: it is parked, not unresolved
UNRESOLVED_POINT_STATUSES = frozenset({PointStatus.NEW, PointStatus.OPEN, PointStatus.ONGOING})


class CloseMode(str, Enum):
    MOVE = "move"
    CLOSE = "close"


@dataclass(frozen=True)
class ContainerRef:
    """Addresses one meeting, series or occurrence."""
    kind: ContainerKind
    id: str

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.id}"


@dataclass
class Meeting:
    id: str
    title: str
    project_id: Optional[str] = None
    date: str = ""
    status: ContainerStatus = ContainerStatus.SCHEDULED
    closed_at: Optional[datetime] = None

    @property
    def ref(self) -> ContainerRef:
        return ContainerRef(ContainerKind.MEETING, self.id)


@dataclass
class MeetingSeries:
    id: str
    title: str
    project_id: Optional[str] = None
    status: ContainerStatus = ContainerStatus.SCHEDULED
    closed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def ref(self) -> ContainerRef:
        return ContainerRef(ContainerKind.SERIES, self.id)


@dataclass
class MeetingOccurrence:
    """One dated instance of a series. Holds no points of its own."""
    id: str
    series_id: str
    date: str = ""
    status: ContainerStatus = ContainerStatus.SCHEDULED

    @property
    def ref(self) -> ContainerRef:
        return ContainerRef(ContainerKind.OCCURRENCE, self.id)


@dataclass
class Point:
    id: str
    title: str
    status: PointStatus
    meeting_id: Optional[str] = None
    series_id: Optional[str] = None
    assigned_to: str = ""
    assigned_to_ref: Optional[str] = None
    due_date: str = ""

    def __post_init__(self):
        self.status = PointStatus(self.status)
        if bool(self.meeting_id) == bool(self.series_id):
            raise InvariantViolation(
                f"Point {self.id} must belong to exactly one meeting or series"
            )

    @property
    def parent(self) -> ContainerRef:
        if self.meeting_id:
            return ContainerRef(ContainerKind.MEETING, self.meeting_id)
        return ContainerRef(ContainerKind.SERIES, self.series_id)

    @property
    def is_unresolved(self) -> bool:
        return self.status in UNRESOLVED_POINT_STATUSES


@dataclass(frozen=True)
class StatusUpdate:
    """Append-only history row for a point."""
    point_id: str
    date: str
    status: str
    action_on: str
    id: Optional[str] = None


@dataclass(frozen=True)
class PolicyOverride:
    """Admin edit adding (enabled) or removing (disabled) a role from an action."""
    role: Role
    action: PermissionAction
    enabled: bool

    def __post_init__(self):
        object.__setattr__(self, "role", to_role(self.role))
        object.__setattr__(self, "action", to_action(self.action))

    def to_dict(self) -> dict:
        return {"role": self.role.value, "action": self.action.value, "isEnabled": self.enabled}
