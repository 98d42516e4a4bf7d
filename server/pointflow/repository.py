"""Pointflow — Repository interface + in-memory implementation

All reads and writes go through a UnitOfWork obtained from
`Repository.transaction()`. Leaving the `with` block normally commits;
leaving it with an exception rolls every write in that block back.

    with repo.transaction() as uow:
        meeting = uow.get_meeting(meeting_id)
        ...
"""

import copy
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from .errors import NotFound
from .models import (
    ContainerKind,
    ContainerRef,
    ContainerStatus,
    Meeting,
    MeetingOccurrence,
    MeetingSeries,
    Point,
    PointStatus,
    PolicyOverride,
    StatusUpdate,
)


class UnitOfWork(ABC):
    """Operations available inside one transaction."""

    # --- Reads ---

    @abstractmethod
    def get_point(self, point_id: str) -> Optional[Point]: ...

    @abstractmethod
    def get_meeting(self, meeting_id: str) -> Optional[Meeting]: ...

    @abstractmethod
    def get_meeting_series(self, series_id: str) -> Optional[MeetingSeries]: ...

    @abstractmethod
    def get_meeting_occurrence(self, occurrence_id: str) -> Optional[MeetingOccurrence]: ...

    @abstractmethod
    def list_unresolved_points(self, container: ContainerRef) -> list[Point]:
        """Points parented to `container` whose status is new, open or ongoing."""

    @abstractmethod
    def list_points(self, container: ContainerRef) -> list[Point]: ...

    @abstractmethod
    def list_status_updates(self, point_id: str) -> list[StatusUpdate]: ...

    @abstractmethod
    def list_open_meetings(self, project_id: str, exclude_id: Optional[str] = None) -> list[Meeting]:
        """Scheduled meetings in a project, by date."""

    @abstractmethod
    def list_open_series(self, project_id: str, exclude_id: Optional[str] = None) -> list[MeetingSeries]:
        """Open series in a project, newest first."""

    @abstractmethod
    def get_policy_overrides(self) -> list[PolicyOverride]: ...

    # --- Writes ---

    @abstractmethod
    def update_point_status(self, point_id: str, status: PointStatus) -> None: ...

    @abstractmethod
    def reparent_point(self, point_id: str, new_parent: ContainerRef) -> None:
        """Point the point at `new_parent`, clearing the other parent field."""

    @abstractmethod
    def update_container_status(
        self,
        container: ContainerRef,
        status: ContainerStatus,
        closed_at: Optional[datetime] = None,
        expected_status: Optional[ContainerStatus] = None,
    ) -> bool:
        """Set status (and closed_at for meetings/series).

        With `expected_status` this is a compare-and-set: nothing is written
        and False is returned unless the current status matches.
        """

    @abstractmethod
    def append_status_update(self, update: StatusUpdate) -> StatusUpdate: ...

    @abstractmethod
    def upsert_policy_overrides(self, overrides: list[PolicyOverride]) -> list[PolicyOverride]:
        """Last write wins per (role, action). Returns the rows written."""

    @abstractmethod
    def add_meeting(self, meeting: Meeting) -> Meeting: ...

    @abstractmethod
    def add_meeting_series(self, series: MeetingSeries) -> MeetingSeries: ...

    @abstractmethod
    def add_meeting_occurrence(self, occurrence: MeetingOccurrence) -> MeetingOccurrence: ...

    @abstractmethod
    def add_point(self, point: Point) -> Point: ...

    # --- Shared helpers ---

    def get_container(self, container: ContainerRef):
        getter = {
            ContainerKind.MEETING: self.get_meeting,
            ContainerKind.SERIES: self.get_meeting_series,
            ContainerKind.OCCURRENCE: self.get_meeting_occurrence,
        }[container.kind]
        return getter(container.id)

    def require_container(self, container: ContainerRef):
        found = self.get_container(container)
        if found is None:
            raise NotFound(f"{container.kind.value.capitalize()} {container.id} not found")
        return found


class Repository(ABC):

    @abstractmethod
    def transaction(self) -> Iterator[UnitOfWork]:
        """Context manager yielding a UnitOfWork; commit on success, rollback on error."""

    def get_policy_overrides(self) -> list[PolicyOverride]:
        with self.transaction() as uow:
            return uow.get_policy_overrides()


# ==========================================================================
# In-memory implementation
# ==========================================================================

class _MemoryState:
    def __init__(self):
        self.meetings: dict[str, Meeting] = {}
        self.series: dict[str, MeetingSeries] = {}
        self.occurrences: dict[str, MeetingOccurrence] = {}
        self.points: dict[str, Point] = {}
        self.status_updates: list[StatusUpdate] = []
        self.overrides: dict[tuple, PolicyOverride] = {}


class InMemoryUnitOfWork(UnitOfWork):

    def __init__(self, state: _MemoryState):
        self._state = state

    def _require_point(self, point_id: str) -> Point:
        point = self._state.points.get(point_id)
        if point is None:
            raise NotFound(f"Point {point_id} not found")
        return point

    def get_point(self, point_id):
        return copy.copy(self._state.points.get(point_id))

    def get_meeting(self, meeting_id):
        return copy.copy(self._state.meetings.get(meeting_id))

    def get_meeting_series(self, series_id):
        return copy.copy(self._state.series.get(series_id))

    def get_meeting_occurrence(self, occurrence_id):
        return copy.copy(self._state.occurrences.get(occurrence_id))

    def list_points(self, container):
        return [copy.copy(p) for p in self._state.points.values() if p.parent == container]

    def list_unresolved_points(self, container):
        return [p for p in self.list_points(container) if p.is_unresolved]

    def list_status_updates(self, point_id):
        return [u for u in self._state.status_updates if u.point_id == point_id]

    def list_open_meetings(self, project_id, exclude_id=None):
        found = [
            copy.copy(m) for m in self._state.meetings.values()
            if m.project_id == project_id
            and m.status == ContainerStatus.SCHEDULED
            and m.id != exclude_id
        ]
        return sorted(found, key=lambda m: m.date)

    def list_open_series(self, project_id, exclude_id=None):
        found = [
            copy.copy(s) for s in self._state.series.values()
            if s.project_id == project_id
            and s.status == ContainerStatus.SCHEDULED
            and s.id != exclude_id
        ]
        return sorted(found, key=lambda s: s.created_at, reverse=True)

    def get_policy_overrides(self):
        return list(self._state.overrides.values())

    def update_point_status(self, point_id, status):
        self._require_point(point_id).status = PointStatus(status)

    def reparent_point(self, point_id, new_parent):
        point = self._require_point(point_id)
        if new_parent.kind == ContainerKind.MEETING:
            point.meeting_id, point.series_id = new_parent.id, None
        elif new_parent.kind == ContainerKind.SERIES:
            point.meeting_id, point.series_id = None, new_parent.id
        else:
            raise ValueError(f"Points cannot be parented to a {new_parent.kind.value}")

    def update_container_status(self, container, status, closed_at=None, expected_status=None):
        table = {
            ContainerKind.MEETING: self._state.meetings,
            ContainerKind.SERIES: self._state.series,
            ContainerKind.OCCURRENCE: self._state.occurrences,
        }[container.kind]
        row = table.get(container.id)
        if row is None:
            raise NotFound(f"{container.kind.value.capitalize()} {container.id} not found")
        if expected_status is not None and row.status != expected_status:
            return False
        row.status = status
        if container.kind != ContainerKind.OCCURRENCE:
            row.closed_at = closed_at
        return True

    def append_status_update(self, update):
        self._require_point(update.point_id)
        stored = StatusUpdate(
            id=update.id or str(uuid.uuid4()),
            point_id=update.point_id,
            date=update.date,
            status=update.status,
            action_on=update.action_on,
        )
        self._state.status_updates.append(stored)
        return stored

    def upsert_policy_overrides(self, overrides):
        for override in overrides:
            self._state.overrides[(override.role, override.action)] = override
        return list(overrides)

    def add_meeting(self, meeting):
        self._state.meetings[meeting.id] = copy.copy(meeting)
        return meeting

    def add_meeting_series(self, series):
        stored = copy.copy(series)
        if stored.created_at is None:
            stored.created_at = datetime.now(timezone.utc)
        self._state.series[series.id] = stored
        return series

    def add_meeting_occurrence(self, occurrence):
        self._state.occurrences[occurrence.id] = copy.copy(occurrence)
        return occurrence

    def add_point(self, point):
        self._state.points[point.id] = copy.copy(point)
        return point


class InMemoryRepository(Repository):
    """Dict-backed store.

    Transactions are serialized on one re-entrant lock and roll back by
    restoring a snapshot taken on entry.
    """

    def __init__(self):
        self._state = _MemoryState()
        self._lock = threading.RLock()

    @contextmanager
    def transaction(self) -> Iterator[UnitOfWork]:
        with self._lock:
            snapshot = copy.deepcopy(self._state)
            try:
                yield InMemoryUnitOfWork(self._state)
            except BaseException:
                # Restore in place so enclosing units of work see the rollback
                self._state.__dict__ = snapshot.__dict__
                raise
