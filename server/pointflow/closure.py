"""Pointflow — Closure Workflow

Closes and reopens meetings, series and occurrences.

Closing a meeting or series disposes of every unresolved point it owns
(status new/open/ongoing; postponed points are left alone):
- mode "move": re-parent each point to a target meeting or series
- mode "close": force each point to closed
and appends exactly one system StatusUpdate per point touched.

Each close is one repository transaction. The container's status flip is a
compare-and-set from scheduled, performed first, so a concurrent second
close of the same container finds it already claimed and fails before
touching any point. Any later failure rolls back the flip together with
every point mutation and history row, so a container is never left closed
with unresolved points.

Reopen only flips the status back. Moved or force-closed points stay where
the close put them.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional, Union

from .audit import describe_forced_close, describe_move, log_audit, system_status_update
from .config import get_settings
from .errors import AuthenticationRequired, ContainerAlreadyClosed, ValidationError
from .logging_config import get_logger
from .models import (
    CloseMode,
    ContainerKind,
    ContainerRef,
    ContainerStatus,
    Meeting,
    MeetingSeries,
    PointStatus,
    StatusUpdate,
)
from .permissions import require_project_access, require_project_permission
from .policy import PermissionAction
from .repository import Repository, UnitOfWork
from .user_context import CurrentUserContext

logger = get_logger(__name__)


@dataclass
class ClosureResult:
    container: ContainerRef
    mode: CloseMode
    target: Optional[ContainerRef] = None
    closed_at: Optional[datetime] = None
    moved_point_ids: list[str] = field(default_factory=list)
    closed_point_ids: list[str] = field(default_factory=list)
    status_updates: list[StatusUpdate] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "container": {"kind": self.container.kind.value, "id": self.container.id},
            "mode": self.mode.value,
            "target": {"kind": self.target.kind.value, "id": self.target.id} if self.target else None,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "moved_point_ids": self.moved_point_ids,
            "closed_point_ids": self.closed_point_ids,
            "status_update_count": len(self.status_updates),
        }


def parse_close_mode(mode: Optional[Union[str, CloseMode]]) -> CloseMode:
    if mode is None:
        raise ValidationError("Mode is required. Must be 'move' or 'close'")
    try:
        return CloseMode(mode)
    except ValueError:
        raise ValidationError("Invalid mode. Must be 'move' or 'close'")


def target_from_ids(
    target_meeting_id: Optional[str] = None,
    target_series_id: Optional[str] = None,
) -> Optional[ContainerRef]:
    """Build a move target from the (meeting id, series id) pair used on the wire."""
    if target_meeting_id and target_series_id:
        raise ValidationError("Specify a target meeting or a target series, not both")
    if target_meeting_id:
        return ContainerRef(ContainerKind.MEETING, target_meeting_id)
    if target_series_id:
        return ContainerRef(ContainerKind.SERIES, target_series_id)
    return None


class ClosureWorkflow:

    def __init__(
        self,
        repository: Repository,
        clock: Optional[Callable[[], datetime]] = None,
        system_actor: Optional[str] = None,
    ):
        self._repository = repository
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._system_actor = system_actor or get_settings().system_actor

    # --- Helpers ---

    @staticmethod
    def _require_user(user: Optional[CurrentUserContext]) -> CurrentUserContext:
        if user is None:
            raise AuthenticationRequired()
        return user

    @staticmethod
    def _project_of(uow: UnitOfWork, container: ContainerRef, row) -> Optional[str]:
        if container.kind == ContainerKind.OCCURRENCE:
            series = uow.get_meeting_series(row.series_id)
            return series.project_id if series else None
        return row.project_id

    def _load_authorized(self, uow: UnitOfWork, user: CurrentUserContext, container: ContainerRef):
        row = uow.require_container(container)
        require_project_permission(user, PermissionAction.MEETINGS_CLOSE, self._project_of(uow, container, row))
        return row

    def _resolve_target(
        self,
        uow: UnitOfWork,
        user: CurrentUserContext,
        source: ContainerRef,
        target: Optional[ContainerRef],
    ) -> Union[Meeting, MeetingSeries]:
        if target is None:
            raise ValidationError("Target meeting or series required for move mode")
        if target.kind == ContainerKind.OCCURRENCE:
            raise ValidationError("Points can only be moved to a meeting or a series")
        if target == source:
            raise ValidationError(f"Cannot move points into the {source.kind.value} being closed")
        destination = uow.require_container(target)
        if destination.status != ContainerStatus.SCHEDULED:
            raise ValidationError(f"Target {target.kind.value} {target.id} is closed")
        require_project_access(user, destination.project_id)
        return destination

    # --- Commands ---

    def close(
        self,
        user: Optional[CurrentUserContext],
        container: ContainerRef,
        mode: Optional[Union[str, CloseMode]],
        target: Optional[ContainerRef] = None,
    ) -> ClosureResult:
        """Close a meeting, series or occurrence.

        `mode` is required for meetings and series and ignored for
        occurrences, which hold no points.

        Raises AuthenticationRequired, NotFound, Forbidden, ValidationError or
        ContainerAlreadyClosed; all of them leave storage untouched.
        """
        user = self._require_user(user)

        if container.kind == ContainerKind.OCCURRENCE:
            result = self._close_occurrence(user, container)
        else:
            result = self._close_with_points(user, container, parse_close_mode(mode), target)

        detail = f"mode={result.mode.value}"
        if result.target:
            detail += f" target={result.target}"
        detail += f" moved={len(result.moved_point_ids)} closed={len(result.closed_point_ids)}"
        log_audit(user, "close", container.kind.value, container.id, detail)
        return result

    def _close_occurrence(self, user, container: ContainerRef) -> ClosureResult:
        # Occurrences hold no points: a pure status flip
        with self._repository.transaction() as uow:
            self._load_authorized(uow, user, container)
            claimed = uow.update_container_status(
                container, ContainerStatus.COMPLETED, expected_status=ContainerStatus.SCHEDULED
            )
            if not claimed:
                raise ContainerAlreadyClosed(f"Occurrence {container.id} is not scheduled")
        logger.info("Occurrence %s completed", container.id)
        return ClosureResult(container=container, mode=CloseMode.CLOSE)

    def _close_with_points(self, user, container: ContainerRef, mode: CloseMode,
                           target: Optional[ContainerRef]) -> ClosureResult:
        result = ClosureResult(container=container, mode=mode)

        with self._repository.transaction() as uow:
            source = self._load_authorized(uow, user, container)

            destination = None
            if mode == CloseMode.MOVE:
                destination = self._resolve_target(uow, user, container, target)
                result.target = target

            closed_at = self._clock()
            claimed = uow.update_container_status(
                container,
                ContainerStatus.CLOSED,
                closed_at=closed_at,
                expected_status=ContainerStatus.SCHEDULED,
            )
            if not claimed:
                raise ContainerAlreadyClosed(
                    f"{container.kind.value.capitalize()} {container.id} is already closed"
                )
            result.closed_at = closed_at

            today = closed_at.date()
            for point in uow.list_unresolved_points(container):
                if destination is not None:
                    uow.reparent_point(point.id, target)
                    text = describe_move(container.kind, source.title, target.kind, destination.title)
                    result.moved_point_ids.append(point.id)
                else:
                    uow.update_point_status(point.id, PointStatus.CLOSED)
                    text = describe_forced_close(container.kind)
                    result.closed_point_ids.append(point.id)
                result.status_updates.append(
                    uow.append_status_update(system_status_update(point.id, text, self._system_actor, today))
                )

        logger.info(
            "%s %s closed (mode=%s, moved=%d, closed=%d)",
            container.kind.value.capitalize(), container.id, mode.value,
            len(result.moved_point_ids), len(result.closed_point_ids),
        )
        return result

    def reopen(self, user: Optional[CurrentUserContext], container: ContainerRef) -> bool:
        """Set a closed container back to scheduled. Returns False if it was not closed."""
        user = self._require_user(user)
        with self._repository.transaction() as uow:
            self._load_authorized(uow, user, container)
            if container.kind == ContainerKind.OCCURRENCE:
                changed = uow.update_container_status(
                    container, ContainerStatus.SCHEDULED, expected_status=ContainerStatus.COMPLETED
                )
            else:
                changed = uow.update_container_status(
                    container, ContainerStatus.SCHEDULED, closed_at=None,
                    expected_status=ContainerStatus.CLOSED,
                )

        if changed:
            log_audit(user, "reopen", container.kind.value, container.id)
        else:
            logger.info("Reopen of %s ignored: not closed", container)
        return changed

    # --- Per-kind shortcuts ---

    def close_meeting(self, user, meeting_id: str, mode,
                      target_meeting_id: Optional[str] = None,
                      target_series_id: Optional[str] = None) -> ClosureResult:
        return self.close(user, ContainerRef(ContainerKind.MEETING, meeting_id), mode,
                          target_from_ids(target_meeting_id, target_series_id))

    def close_series(self, user, series_id: str, mode,
                     target_series_id: Optional[str] = None,
                     target_meeting_id: Optional[str] = None) -> ClosureResult:
        return self.close(user, ContainerRef(ContainerKind.SERIES, series_id), mode,
                          target_from_ids(target_meeting_id, target_series_id))

    def close_occurrence(self, user, occurrence_id: str) -> ClosureResult:
        return self.close(user, ContainerRef(ContainerKind.OCCURRENCE, occurrence_id), None)

    def reopen_meeting(self, user, meeting_id: str) -> bool:
        return self.reopen(user, ContainerRef(ContainerKind.MEETING, meeting_id))

    def reopen_series(self, user, series_id: str) -> bool:
        return self.reopen(user, ContainerRef(ContainerKind.SERIES, series_id))

    def reopen_occurrence(self, user, occurrence_id: str) -> bool:
        return self.reopen(user, ContainerRef(ContainerKind.OCCURRENCE, occurrence_id))

    # --- Target selection queries ---

    def list_open_meetings(self, user, project_id: str, exclude_id: Optional[str] = None) -> list[Meeting]:
        """Scheduled meetings in a project, candidates for a move target."""
        require_project_access(self._require_user(user), project_id)
        with self._repository.transaction() as uow:
            return uow.list_open_meetings(project_id, exclude_id)

    def list_open_series(self, user, project_id: str, exclude_id: Optional[str] = None) -> list[MeetingSeries]:
        require_project_access(self._require_user(user), project_id)
        with self._repository.transaction() as uow:
            return uow.list_open_series(project_id, exclude_id)
