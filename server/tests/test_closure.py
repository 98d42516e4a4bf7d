"""Tests for the closure workflow.

Covers:
- Force-close: every unresolved point closed, one history row each
- Move: unresolved points re-parented, postponed points left alone
- Target validation and NotFound, with nothing written
- Permission gate (Forbidden / AuthenticationRequired) before any write
- Atomicity: a failure partway through leaves the pre-call state
- Concurrent closes of one container migrate points once
- Reopen flips status only; occurrences complete/reopen
- Open-target queries
"""
import sys
import os
import threading
from contextlib import contextmanager
from datetime import datetime, timezone

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from pointflow.closure import ClosureWorkflow, target_from_ids
from pointflow.errors import (
    AuthenticationRequired,
    ContainerAlreadyClosed,
    Forbidden,
    NotFound,
    ValidationError,
)
from pointflow.models import (
    ContainerKind,
    ContainerRef,
    ContainerStatus,
    Meeting,
    MeetingOccurrence,
    MeetingSeries,
    Point,
    PointStatus,
)
from pointflow.repository import InMemoryRepository, InMemoryUnitOfWork
from pointflow.user_context import make_user_context

NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


# --- Fixtures ---

def _make_user(roles=("BIM_PROJECT_MANAGER",), project_ids=("p1",), project_roles=None):
    return make_user_context(
        user_id="7",
        email="pm@example.com",
        roles=roles,
        project_ids=project_ids,
        project_roles=project_roles,
    )


def _meeting(repo, meeting_id, title=None, project_id="p1", date="2026-03-02",
             status=ContainerStatus.SCHEDULED):
    with repo.transaction() as uow:
        uow.add_meeting(Meeting(id=meeting_id, title=title or f"Meeting {meeting_id}",
                                project_id=project_id, date=date, status=status))


def _series(repo, series_id, title=None, project_id="p1", status=ContainerStatus.SCHEDULED,
            created_at=None):
    with repo.transaction() as uow:
        uow.add_meeting_series(MeetingSeries(id=series_id, title=title or f"Series {series_id}",
                                             project_id=project_id, status=status,
                                             created_at=created_at))


def _point(repo, point_id, status, meeting_id=None, series_id=None):
    with repo.transaction() as uow:
        uow.add_point(Point(id=point_id, title=f"Point {point_id}", status=status,
                            meeting_id=meeting_id, series_id=series_id))


def _get_point(repo, point_id):
    with repo.transaction() as uow:
        return uow.get_point(point_id)


def _get_meeting(repo, meeting_id):
    with repo.transaction() as uow:
        return uow.get_meeting(meeting_id)


def _updates(repo, point_id):
    with repo.transaction() as uow:
        return uow.list_status_updates(point_id)


def _all_updates(repo):
    return list(repo._state.status_updates)


@pytest.fixture
def repo():
    repo = InMemoryRepository()
    _meeting(repo, "M", title="Weekly coordination")
    _meeting(repo, "N", title="Design review", date="2026-03-09")
    return repo


@pytest.fixture
def workflow(repo):
    return ClosureWorkflow(repo, clock=lambda: NOW, system_actor="System")


M = ContainerRef(ContainerKind.MEETING, "M")
N = ContainerRef(ContainerKind.MEETING, "N")


# --- Force-close ---

class TestForceClose:

    def test_closes_unresolved_points(self, repo, workflow):
        _point(repo, "a", PointStatus.OPEN, meeting_id="M")
        _point(repo, "b", PointStatus.ONGOING, meeting_id="M")
        _point(repo, "c", PointStatus.CLOSED, meeting_id="M")

        result = workflow.close(_make_user(), M, "close")

        for pid in ("a", "b", "c"):
            assert _get_point(repo, pid).status == PointStatus.CLOSED
        assert sorted(result.closed_point_ids) == ["a", "b"]
        assert len(_all_updates(repo)) == 2
        assert _updates(repo, "c") == []
        meeting = _get_meeting(repo, "M")
        assert meeting.status == ContainerStatus.CLOSED
        assert meeting.closed_at == NOW
        assert meeting.ref == M

    def test_status_update_contents(self, repo, workflow):
        _point(repo, "a", PointStatus.NEW, meeting_id="M")
        workflow.close(_make_user(), M, "close")
        (update,) = _updates(repo, "a")
        assert update.status == "Closed with meeting"
        assert update.action_on == "System"
        assert update.date == "2026-03-02"
        assert update.id

    def test_postponed_points_untouched(self, repo, workflow):
        _point(repo, "p", PointStatus.POSTPONED, meeting_id="M")
        workflow.close(_make_user(), M, "close")
        assert _get_point(repo, "p").status == PointStatus.POSTPONED
        assert _updates(repo, "p") == []

    def test_empty_meeting_closes(self, repo, workflow):
        result = workflow.close(_make_user(), M, "close")
        assert result.closed_point_ids == []
        assert _get_meeting(repo, "M").status == ContainerStatus.CLOSED

    def test_series_force_close_text(self, repo, workflow):
        _series(repo, "S")
        _point(repo, "a", PointStatus.OPEN, series_id="S")
        workflow.close_series(_make_user(), "S", "close")
        assert _updates(repo, "a")[0].status == "Closed with series"

    def test_missing_mode_rejected(self, repo, workflow):
        _point(repo, "a", PointStatus.OPEN, meeting_id="M")
        with pytest.raises(ValidationError):
            workflow.close(_make_user(roles=("BIM_MANAGER",)), M, None)
        assert _get_point(repo, "a").status == PointStatus.OPEN
        assert _get_meeting(repo, "M").status == ContainerStatus.SCHEDULED
        assert _all_updates(repo) == []

    def test_invalid_mode(self, repo, workflow):
        with pytest.raises(ValidationError):
            workflow.close(_make_user(), M, "archive")
        assert _get_meeting(repo, "M").status == ContainerStatus.SCHEDULED


# --- Move ---

class TestMove:

    def test_moves_open_point_to_meeting(self, repo, workflow):
        _point(repo, "a", PointStatus.OPEN, meeting_id="M")
        _point(repo, "p", PointStatus.POSTPONED, meeting_id="M")

        result = workflow.close(_make_user(), M, "move", N)

        moved = _get_point(repo, "a")
        assert moved.parent == N
        assert moved.status == PointStatus.OPEN
        assert _get_point(repo, "p").parent == M
        assert result.moved_point_ids == ["a"]
        (update,) = _all_updates(repo)
        assert update.status == 'Point moved from closed meeting "Weekly coordination" to meeting "Design review"'
        assert _get_meeting(repo, "M").status == ContainerStatus.CLOSED

    def test_moves_to_series(self, repo, workflow):
        _series(repo, "S", title="Coordination series")
        _point(repo, "a", PointStatus.ONGOING, meeting_id="M")

        workflow.close_meeting(_make_user(), "M", "move", target_series_id="S")

        point = _get_point(repo, "a")
        assert point.series_id == "S"
        assert point.meeting_id is None
        assert _updates(repo, "a")[0].status == (
            'Point moved from closed meeting "Weekly coordination" to series "Coordination series"'
        )

    def test_series_to_series(self, repo, workflow):
        _series(repo, "S1", title="Old")
        _series(repo, "S2", title="New")
        _point(repo, "a", PointStatus.OPEN, series_id="S1")
        workflow.close_series(_make_user(), "S1", "move", target_series_id="S2")
        assert _get_point(repo, "a").series_id == "S2"
        assert _updates(repo, "a")[0].status == 'Point moved from closed series "Old" to series "New"'

    def test_missing_target(self, repo, workflow):
        _point(repo, "a", PointStatus.OPEN, meeting_id="M")
        with pytest.raises(ValidationError):
            workflow.close(_make_user(), M, "move")
        assert _get_meeting(repo, "M").status == ContainerStatus.SCHEDULED
        assert _get_point(repo, "a").parent == M
        assert _all_updates(repo) == []

    def test_target_is_source(self, repo, workflow):
        with pytest.raises(ValidationError):
            workflow.close(_make_user(), M, "move", M)
        assert _get_meeting(repo, "M").status == ContainerStatus.SCHEDULED

    def test_target_closed(self, repo, workflow):
        _meeting(repo, "X", status=ContainerStatus.CLOSED)
        with pytest.raises(ValidationError):
            workflow.close(_make_user(), M, "move", ContainerRef(ContainerKind.MEETING, "X"))

    def test_target_not_found(self, repo, workflow):
        with pytest.raises(NotFound):
            workflow.close(_make_user(), M, "move", ContainerRef(ContainerKind.SERIES, "nope"))
        assert _get_meeting(repo, "M").status == ContainerStatus.SCHEDULED

    def test_target_occurrence_rejected(self, repo, workflow):
        with pytest.raises(ValidationError):
            workflow.close(_make_user(), M, "move", ContainerRef(ContainerKind.OCCURRENCE, "o1"))

    def test_target_in_inaccessible_project(self, repo, workflow):
        _meeting(repo, "Q", project_id="p2")
        _point(repo, "a", PointStatus.OPEN, meeting_id="M")
        with pytest.raises(Forbidden):
            workflow.close(_make_user(), M, "move", ContainerRef(ContainerKind.MEETING, "Q"))
        assert _get_point(repo, "a").parent == M

    def test_both_target_ids_rejected(self):
        with pytest.raises(ValidationError):
            target_from_ids("N", "S")


# --- Gate ---

class TestClosurePermissions:

    def test_unauthenticated(self, repo, workflow):
        with pytest.raises(AuthenticationRequired):
            workflow.close(None, M, "close")

    def test_viewer_forbidden_and_nothing_written(self, repo, workflow):
        _point(repo, "a", PointStatus.OPEN, meeting_id="M")
        with pytest.raises(Forbidden) as exc_info:
            workflow.close(_make_user(roles=("VIEWER",)), M, "close")
        assert exc_info.value.action == "meetings:close"
        assert _get_point(repo, "a").status == PointStatus.OPEN
        assert _get_meeting(repo, "M").status == ContainerStatus.SCHEDULED
        assert _all_updates(repo) == []

    def test_no_project_access(self, repo, workflow):
        with pytest.raises(Forbidden):
            workflow.close(_make_user(project_ids=("p2",)), M, "close")

    def test_project_role_can_close(self, repo, workflow):
        user = _make_user(roles=("VIEWER",), project_ids=(), project_roles={"p1": "PROJECT_LEADER"})
        workflow.close(user, M, "close")
        assert _get_meeting(repo, "M").status == ContainerStatus.CLOSED

    def test_administrator_without_membership(self, repo, workflow):
        workflow.close(_make_user(roles=("BIM_MANAGER",), project_ids=()), M, "close")
        assert _get_meeting(repo, "M").status == ContainerStatus.CLOSED

    def test_not_found(self, repo, workflow):
        with pytest.raises(NotFound):
            workflow.close_meeting(_make_user(), "missing", "close")


# --- Atomicity ---

class _FailingUnitOfWork(InMemoryUnitOfWork):
    """Fails on the second history append."""

    def __init__(self, state, counter):
        super().__init__(state)
        self._counter = counter

    def append_status_update(self, update):
        self._counter.append(update)
        if len(self._counter) == 2:
            raise RuntimeError("disk full")
        return super().append_status_update(update)


class _FailingRepository(InMemoryRepository):

    def __init__(self):
        super().__init__()
        self.appends = []
        self.fail = False

    @contextmanager
    def transaction(self):
        with super().transaction() as uow:
            yield _FailingUnitOfWork(self._state, self.appends) if self.fail else uow


class TestAtomicity:

    def test_failure_midway_restores_everything(self):
        repo = _FailingRepository()
        _meeting(repo, "M")
        for pid in ("a", "b", "c"):
            _point(repo, pid, PointStatus.OPEN, meeting_id="M")
        repo.fail = True
        workflow = ClosureWorkflow(repo, clock=lambda: NOW, system_actor="System")

        with pytest.raises(RuntimeError):
            workflow.close(_make_user(), M, "close")

        repo.fail = False
        meeting = _get_meeting(repo, "M")
        assert meeting.status == ContainerStatus.SCHEDULED
        assert meeting.closed_at is None
        for pid in ("a", "b", "c"):
            assert _get_point(repo, pid).status == PointStatus.OPEN
        assert _all_updates(repo) == []


# --- Concurrency ---

class TestConcurrentClose:

    def test_second_close_rejected(self, repo, workflow):
        workflow.close(_make_user(), M, "close")
        with pytest.raises(ContainerAlreadyClosed):
            workflow.close(_make_user(), M, "close")

    def test_concurrent_closes_migrate_once(self, repo, workflow):
        for i in range(5):
            _point(repo, f"pt{i}", PointStatus.OPEN, meeting_id="M")
        outcomes = []
        barrier = threading.Barrier(4)

        def attempt():
            barrier.wait()
            try:
                workflow.close(_make_user(), M, "move", N)
                outcomes.append("ok")
            except ContainerAlreadyClosed:
                outcomes.append("already")

        threads = [threading.Thread(target=attempt) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes) == ["already", "already", "already", "ok"]
        assert len(_all_updates(repo)) == 5
        for i in range(5):
            assert len(_updates(repo, f"pt{i}")) == 1


# --- Reopen ---

class TestReopen:

    def test_reopen_keeps_points_closed(self, repo, workflow):
        _point(repo, "a", PointStatus.OPEN, meeting_id="M")
        _point(repo, "b", PointStatus.ONGOING, meeting_id="M")
        _point(repo, "c", PointStatus.CLOSED, meeting_id="M")
        workflow.close(_make_user(), M, "close")

        assert workflow.reopen(_make_user(), M) is True

        meeting = _get_meeting(repo, "M")
        assert meeting.status == ContainerStatus.SCHEDULED
        assert meeting.closed_at is None
        for pid in ("a", "b", "c"):
            assert _get_point(repo, pid).status == PointStatus.CLOSED

    def test_reopen_after_move_leaves_points_moved(self, repo, workflow):
        _point(repo, "a", PointStatus.OPEN, meeting_id="M")
        workflow.close(_make_user(), M, "move", N)
        workflow.reopen_meeting(_make_user(), "M")
        assert _get_point(repo, "a").parent == N

    def test_reopen_open_meeting_is_noop(self, repo, workflow):
        assert workflow.reopen(_make_user(), M) is False
        assert _get_meeting(repo, "M").status == ContainerStatus.SCHEDULED

    def test_reopen_requires_permission(self, repo, workflow):
        workflow.close(_make_user(), M, "close")
        with pytest.raises(Forbidden):
            workflow.reopen(_make_user(roles=("ENGINEER",)), M)
        assert _get_meeting(repo, "M").status == ContainerStatus.CLOSED

    def test_close_again_after_reopen(self, repo, workflow):
        workflow.close(_make_user(), M, "close")
        workflow.reopen(_make_user(), M)
        workflow.close(_make_user(), M, "close")
        assert _get_meeting(repo, "M").status == ContainerStatus.CLOSED

    def test_reopen_series(self, repo, workflow):
        _series(repo, "S")
        workflow.close_series(_make_user(), "S", "close")
        assert workflow.reopen_series(_make_user(), "S") is True


# --- Occurrences ---

class TestOccurrences:

    @pytest.fixture
    def occurrence_repo(self, repo):
        _series(repo, "S", project_id="p1")
        with repo.transaction() as uow:
            uow.add_meeting_occurrence(MeetingOccurrence(id="o1", series_id="S", date="2026-03-02"))
        return repo

    def _status(self, repo):
        with repo.transaction() as uow:
            return uow.get_meeting_occurrence("o1").status

    def test_close_marks_completed(self, occurrence_repo, workflow):
        workflow.close_occurrence(_make_user(), "o1")
        assert self._status(occurrence_repo) == ContainerStatus.COMPLETED
        assert _all_updates(occurrence_repo) == []

    def test_reopen_marks_scheduled(self, occurrence_repo, workflow):
        workflow.close_occurrence(_make_user(), "o1")
        assert workflow.reopen_occurrence(_make_user(), "o1") is True
        assert self._status(occurrence_repo) == ContainerStatus.SCHEDULED

    def test_close_twice_rejected(self, occurrence_repo, workflow):
        workflow.close_occurrence(_make_user(), "o1")
        with pytest.raises(ContainerAlreadyClosed):
            workflow.close_occurrence(_make_user(), "o1")

    def test_permission_uses_series_project(self, occurrence_repo, workflow):
        with pytest.raises(Forbidden):
            workflow.close_occurrence(_make_user(project_ids=("p2",)), "o1")


# --- Target queries ---

class TestOpenTargets:

    def test_open_meetings_by_date(self, repo, workflow):
        _meeting(repo, "E", date="2026-02-01")
        _meeting(repo, "C", status=ContainerStatus.CLOSED)
        _meeting(repo, "O", project_id="p2")
        ids = [m.id for m in workflow.list_open_meetings(_make_user(), "p1")]
        assert ids == ["E", "M", "N"]

    def test_open_meetings_exclude(self, repo, workflow):
        ids = [m.id for m in workflow.list_open_meetings(_make_user(), "p1", exclude_id="M")]
        assert ids == ["N"]

    def test_open_series_newest_first(self, repo, workflow):
        _series(repo, "old", created_at=datetime(2025, 1, 1, tzinfo=timezone.utc))
        _series(repo, "new", created_at=datetime(2026, 1, 1, tzinfo=timezone.utc))
        _series(repo, "shut", status=ContainerStatus.CLOSED,
                created_at=datetime(2026, 2, 1, tzinfo=timezone.utc))
        ids = [s.id for s in workflow.list_open_series(_make_user(), "p1")]
        assert ids == ["new", "old"]

    def test_requires_project_access(self, repo, workflow):
        with pytest.raises(Forbidden):
            workflow.list_open_meetings(_make_user(project_ids=("p2",)), "p1")
