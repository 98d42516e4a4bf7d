"""Tests for the SQL repository (SQLite in memory through the SQLAlchemy pool).

Covers:
- Schema creation and row round trips
- Compare-and-set container status
- Re-parenting and unresolved-point filtering
- Policy override upsert (last write wins)
- Closure through SQL, including rollback on a mid-closure failure
- retry_on_transient: transient errors retried, others pass through
"""
import sys
import os
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from pointflow.closure import ClosureWorkflow
from pointflow.database import (
    SqlRepository,
    SqlUnitOfWork,
    create_engine_for_url,
    is_transient_error,
    retry_on_transient,
)
from pointflow.errors import NotFound, RepositoryUnavailable
from pointflow.models import (
    ContainerKind,
    ContainerRef,
    ContainerStatus,
    Meeting,
    MeetingSeries,
    Point,
    PointStatus,
    PolicyOverride,
    StatusUpdate,
)
from pointflow.policy import PermissionAction
from pointflow.roles import Role
from pointflow.user_context import make_user_context

NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)
M = ContainerRef(ContainerKind.MEETING, "M")
N = ContainerRef(ContainerKind.MEETING, "N")


@pytest.fixture
def repo():
    repo = SqlRepository(create_engine_for_url("sqlite://"))
    repo.create_schema()
    with repo.transaction() as uow:
        uow.add_meeting(Meeting(id="M", title="Weekly", project_id="p1", date="2026-03-02"))
        uow.add_meeting(Meeting(id="N", title="Next", project_id="p1", date="2026-03-09"))
    return repo


def _user():
    return make_user_context("7", "pm@example.com", ["BIM_PROJECT_MANAGER"], project_ids=["p1"])


class TestSqlUnitOfWork:

    def test_meeting_round_trip(self, repo):
        with repo.transaction() as uow:
            meeting = uow.get_meeting("M")
        assert meeting.title == "Weekly"
        assert meeting.status == ContainerStatus.SCHEDULED
        assert meeting.closed_at is None

    def test_missing_meeting(self, repo):
        with repo.transaction() as uow:
            assert uow.get_meeting("nope") is None
            with pytest.raises(NotFound):
                uow.require_container(ContainerRef(ContainerKind.MEETING, "nope"))

    def test_compare_and_set(self, repo):
        with repo.transaction() as uow:
            assert uow.update_container_status(M, ContainerStatus.CLOSED, closed_at=NOW,
                                               expected_status=ContainerStatus.SCHEDULED)
            assert not uow.update_container_status(M, ContainerStatus.CLOSED, closed_at=NOW,
                                                   expected_status=ContainerStatus.SCHEDULED)
            meeting = uow.get_meeting("M")
        assert meeting.status == ContainerStatus.CLOSED
        assert meeting.closed_at == NOW

    def test_compare_and_set_missing_row(self, repo):
        with pytest.raises(NotFound):
            with repo.transaction() as uow:
                uow.update_container_status(ContainerRef(ContainerKind.SERIES, "x"),
                                            ContainerStatus.CLOSED,
                                            expected_status=ContainerStatus.SCHEDULED)

    def test_reparent_clears_other_parent(self, repo):
        with repo.transaction() as uow:
            uow.add_point(Point(id="a", title="A", status="open", meeting_id="M"))
            uow.reparent_point("a", ContainerRef(ContainerKind.SERIES, "S"))
            point = uow.get_point("a")
        assert point.series_id == "S"
        assert point.meeting_id is None

    def test_unresolved_points_filter(self, repo):
        with repo.transaction() as uow:
            for pid, status in (("a", "new"), ("b", "postponed"), ("c", "closed"), ("d", "ongoing")):
                uow.add_point(Point(id=pid, title=pid, status=status, meeting_id="M"))
            ids = [p.id for p in uow.list_unresolved_points(M)]
        assert ids == ["a", "d"]

    def test_status_updates_in_insert_order(self, repo):
        with repo.transaction() as uow:
            uow.add_point(Point(id="a", title="A", status="open", meeting_id="M"))
            for text in ("first", "second", "third"):
                uow.append_status_update(StatusUpdate(point_id="a", date="2026-03-02",
                                                      status=text, action_on="System"))
            texts = [u.status for u in uow.list_status_updates("a")]
        assert texts == ["first", "second", "third"]

    def test_open_series_newest_first(self, repo):
        with repo.transaction() as uow:
            uow.add_meeting_series(MeetingSeries(id="old", title="Old", project_id="p1",
                                                 created_at=datetime(2025, 1, 1, tzinfo=timezone.utc)))
            uow.add_meeting_series(MeetingSeries(id="new", title="New", project_id="p1",
                                                 created_at=datetime(2026, 1, 1, tzinfo=timezone.utc)))
            ids = [s.id for s in uow.list_open_series("p1")]
            excluded = [s.id for s in uow.list_open_series("p1", exclude_id="new")]
        assert ids == ["new", "old"]
        assert excluded == ["old"]

    def test_rollback_on_error(self, repo):
        with pytest.raises(RuntimeError):
            with repo.transaction() as uow:
                uow.update_container_status(M, ContainerStatus.CLOSED, closed_at=NOW)
                raise RuntimeError("boom")
        with repo.transaction() as uow:
            assert uow.get_meeting("M").status == ContainerStatus.SCHEDULED


class TestPolicyOverrideStorage:

    def test_upsert_last_write_wins(self, repo):
        close = PermissionAction.MEETINGS_CLOSE
        with repo.transaction() as uow:
            uow.upsert_policy_overrides([PolicyOverride(Role.ENGINEER, close, True)])
        with repo.transaction() as uow:
            uow.upsert_policy_overrides([PolicyOverride(Role.ENGINEER, close, False)])
        overrides = repo.get_policy_overrides()
        assert overrides == [PolicyOverride(Role.ENGINEER, close, False)]

    def test_empty_store(self, repo):
        assert repo.get_policy_overrides() == []


class TestSqlClosure:

    def _seed_points(self, repo):
        with repo.transaction() as uow:
            uow.add_point(Point(id="a", title="A", status="open", meeting_id="M"))
            uow.add_point(Point(id="b", title="B", status="ongoing", meeting_id="M"))
            uow.add_point(Point(id="c", title="C", status="postponed", meeting_id="M"))

    def test_move_through_sql(self, repo):
        self._seed_points(repo)
        workflow = ClosureWorkflow(repo, clock=lambda: NOW, system_actor="System")

        result = workflow.close(_user(), M, "move", N)

        assert sorted(result.moved_point_ids) == ["a", "b"]
        with repo.transaction() as uow:
            assert [p.id for p in uow.list_points(N)] == ["a", "b"]
            assert [p.id for p in uow.list_points(M)] == ["c"]
            assert uow.get_meeting("M").status == ContainerStatus.CLOSED
            (update,) = uow.list_status_updates("a")
        assert update.status == 'Point moved from closed meeting "Weekly" to meeting "Next"'

    def test_failure_midway_rolls_back(self, repo):
        self._seed_points(repo)
        workflow = ClosureWorkflow(repo, clock=lambda: NOW, system_actor="System")
        original = SqlUnitOfWork.append_status_update
        calls = []

        def flaky(self, update):
            calls.append(update)
            if len(calls) == 2:
                raise RuntimeError("disk full")
            return original(self, update)

        with patch.object(SqlUnitOfWork, "append_status_update", flaky):
            with pytest.raises(RuntimeError):
                workflow.close(_user(), M, "close")

        with repo.transaction() as uow:
            assert uow.get_meeting("M").status == ContainerStatus.SCHEDULED
            assert uow.get_point("a").status == PointStatus.OPEN
            assert uow.get_point("b").status == PointStatus.ONGOING
            assert uow.list_status_updates("a") == []


class TestRetryOnTransient:

    def test_transient_detection(self):
        assert is_transient_error(Exception("[08S01] Communication link failure"))
        assert not is_transient_error(Exception("syntax error"))

    def test_retries_then_succeeds(self):
        func = MagicMock(side_effect=[Exception("40613 database unavailable"), "ok"])
        with patch("pointflow.database.time.sleep") as sleep:
            assert retry_on_transient()(func)() == "ok"
        assert func.call_count == 2
        sleep.assert_called_once_with(0.5)

    def test_exhausted_retries_raise_unavailable(self):
        func = MagicMock(side_effect=Exception("40501 service busy"))
        with patch("pointflow.database.time.sleep"):
            with pytest.raises(RepositoryUnavailable):
                retry_on_transient(max_retries=2)(func)()
        assert func.call_count == 3

    def test_non_transient_passes_through(self):
        func = MagicMock(side_effect=ValueError("bad input"))
        with pytest.raises(ValueError):
            retry_on_transient()(func)()
        assert func.call_count == 1

    def test_repository_unavailable_is_retried(self):
        func = MagicMock(side_effect=[RepositoryUnavailable(), "ok"])
        with patch("pointflow.database.time.sleep"):
            assert retry_on_transient()(func)() == "ok"


class TestInitDbScript:

    def test_creates_schema_and_reports_status(self, tmp_path, capsys):
        from scripts.init_db import main

        url = f"sqlite:///{tmp_path / 'pointflow.db'}"
        with patch("scripts.init_db.configure_logging"):
            assert main(["--url", url]) == 0
            assert main(["--url", url, "--status"]) == 0

        assert "No role permission overrides stored" in capsys.readouterr().out
        assert SqlRepository(create_engine_for_url(url)).get_policy_overrides() == []
