"""Pointflow — Database Repository

SQL implementation of the Repository interface over a DB-API cursor taken
from a SQLAlchemy connection pool. Statements use qmark parameters, which
both pyodbc (Azure SQL) and sqlite3 accept.

Engine selection:
- AZURE_SQL_SERVER set -> mssql+pyodbc with Entra ID token auth, QueuePool
  (pool_pre_ping detects stale connections after SQL auto-pause)
- otherwise DATABASE_URL (defaults to a local SQLite file)
"""

import struct
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Generator, Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.pool import QueuePool, StaticPool

from .config import get_settings
from .errors import NotFound, PointflowError, RepositoryUnavailable
from .logging_config import get_logger
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
    UNRESOLVED_POINT_STATUSES,
)
from .repository import Repository, UnitOfWork

logger = get_logger(__name__)

# Azure SQL transient error codes
TRANSIENT_SQL_ERRORS = {
    "08S01",   # Communication link failure
    "08001",   # Unable to connect to server
    "40613",   # Database not currently available (auto-pause resume)
    "40197",   # Service error processing request
    "40501",   # Service busy
    "49918",   # Not enough resources
    "49919",   # Cannot process request, not enough resources
    "49920",   # Too many requests
    "4060",    # Cannot open database (during failover)
    "40001",   # Deadlock victim
    "10054",   # Connection forcibly closed (TCP reset)
    "10053",   # Connection abort by software
    "233",     # Connection does not exist
}

# Pool configuration (Azure SQL Basic tier has a 30-connection limit)
POOL_SIZE = 5
MAX_OVERFLOW = 15
POOL_TIMEOUT = 30
POOL_RECYCLE = 1800

# Retry configuration
MAX_RETRIES = 3
BASE_DELAY = 0.5        # seconds
MAX_DELAY = 4.0

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE Meeting (
        MeetingId       NVARCHAR(64)    NOT NULL PRIMARY KEY,
        ProjectId       NVARCHAR(64)    NULL,
        Title           NVARCHAR(255)   NOT NULL,
        MeetingDate     NVARCHAR(32)    NOT NULL DEFAULT '',
        Status          NVARCHAR(20)    NOT NULL DEFAULT 'scheduled',
        ClosedAt        DATETIME2       NULL
    )
    """,
    """
    CREATE TABLE MeetingSeries (
        SeriesId        NVARCHAR(64)    NOT NULL PRIMARY KEY,
        ProjectId       NVARCHAR(64)    NULL,
        Title           NVARCHAR(255)   NOT NULL,
        Status          NVARCHAR(20)    NOT NULL DEFAULT 'scheduled',
        ClosedAt        DATETIME2       NULL,
        CreatedAt       DATETIME2       NULL
    )
    """,
    """
    CREATE TABLE MeetingOccurrence (
        OccurrenceId    NVARCHAR(64)    NOT NULL PRIMARY KEY,
        SeriesId        NVARCHAR(64)    NOT NULL,
        OccurrenceDate  NVARCHAR(32)    NOT NULL DEFAULT '',
        Status          NVARCHAR(20)    NOT NULL DEFAULT 'scheduled'
    )
    """,
    """
    CREATE TABLE Point (
        PointId         NVARCHAR(64)    NOT NULL PRIMARY KEY,
        MeetingId       NVARCHAR(64)    NULL,
        SeriesId        NVARCHAR(64)    NULL,
        Title           NVARCHAR(255)   NOT NULL,
        Status          NVARCHAR(20)    NOT NULL,
        AssignedTo      NVARCHAR(255)   NOT NULL DEFAULT '',
        AssignedToRef   NVARCHAR(255)   NULL,
        DueDate         NVARCHAR(32)    NOT NULL DEFAULT '',
        CONSTRAINT CK_Point_OneParent CHECK (
            (MeetingId IS NOT NULL AND SeriesId IS NULL)
            OR (MeetingId IS NULL AND SeriesId IS NOT NULL)
        )
    )
    """,
    """
    CREATE TABLE StatusUpdate (
        StatusUpdateId  NVARCHAR(64)    NOT NULL PRIMARY KEY,
        PointId         NVARCHAR(64)    NOT NULL,
        UpdateDate      NVARCHAR(32)    NOT NULL,
        StatusText      NVARCHAR(1000)  NOT NULL,
        ActionOn        NVARCHAR(255)   NOT NULL,
        Seq             INTEGER         NOT NULL
    )
    """,
    """
    CREATE TABLE RolePermission (
        Role            NVARCHAR(64)    NOT NULL,
        Action          NVARCHAR(64)    NOT NULL,
        IsEnabled       BIT             NOT NULL,
        UpdatedAt       DATETIME2       NULL,
        PRIMARY KEY (Role, Action)
    )
    """,
]


# ==========================================================================
# Engine + connection handling
# ==========================================================================

_engine = None


def _create_raw_connection():
    """Create a raw pyodbc connection with Azure AD token auth."""
    import pyodbc
    from azure.identity import DefaultAzureCredential

    settings = get_settings()

    credential = DefaultAzureCredential()
    token_bytes = credential.get_token(
        "https://database.windows.net/.default"
    ).token.encode("UTF-16-LE")
    token_struct = struct.pack(f'<I{len(token_bytes)}s', len(token_bytes), token_bytes)

    conn_str = (
        f"DRIVER={{ODBC Driver 18 for SQL Server}};"
        f"SERVER={settings.azure_sql_server};"
        f"DATABASE={settings.azure_sql_database};"
        f"Encrypt=yes;TrustServerCertificate=no;"
    )

    SQL_COPT_SS_ACCESS_TOKEN = 1256
    return pyodbc.connect(conn_str, attrs_before={SQL_COPT_SS_ACCESS_TOKEN: token_struct})


def create_engine_for_url(url: str):
    """Engine for a plain SQLAlchemy URL. In-memory SQLite shares one connection."""
    if url.startswith("sqlite") and (":memory:" in url or url.rstrip("/") == "sqlite:"):
        return create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    return create_engine(url, pool_pre_ping=True)


def _get_engine():
    """Get or create the SQLAlchemy engine with connection pooling."""
    global _engine
    if _engine is None:
        settings = get_settings()
        if settings.azure_sql_server:
            _engine = create_engine(
                "mssql+pyodbc://",
                creator=_create_raw_connection,
                poolclass=QueuePool,
                pool_size=POOL_SIZE,
                max_overflow=MAX_OVERFLOW,
                pool_timeout=POOL_TIMEOUT,
                pool_recycle=POOL_RECYCLE,
                pool_pre_ping=True,
            )
            logger.info(
                "Database pool configured",
                extra={
                    "pool_size": POOL_SIZE,
                    "max_overflow": MAX_OVERFLOW,
                    "pool_recycle": POOL_RECYCLE,
                },
            )
        else:
            _engine = create_engine_for_url(settings.database_url)
            logger.info("Database engine configured for %s", _engine.url.get_backend_name())
    return _engine


def is_transient_error(exception: Exception) -> bool:
    """Check if a database error is transient and worth retrying."""
    error_str = str(exception)
    return any(code in error_str for code in TRANSIENT_SQL_ERRORS)


def retry_on_transient(max_retries: int = MAX_RETRIES, base_delay: float = BASE_DELAY, max_delay: float = MAX_DELAY):
    """
    Retry on transient SQL errors with exponential backoff.

    Delays: 0.5s -> 1.0s -> 2.0s (capped at max_delay).
    After all retries exhaust, raises RepositoryUnavailable.
    Only wrap calls that own their whole transaction.
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except RepositoryUnavailable as e:
                    cause = e.__cause__ or e
                except Exception as e:
                    if not is_transient_error(e):
                        raise  # Non-transient errors pass through immediately
                    cause = e
                if attempt == max_retries:
                    logger.error(
                        "Database operation failed after %d attempts: %s",
                        attempt + 1, cause,
                    )
                    raise RepositoryUnavailable()
                delay = min(base_delay * (2 ** attempt), max_delay)
                logger.warning(
                    "Transient database error (attempt %d/%d): %s: %s. Retrying in %.1fs",
                    attempt + 1, max_retries + 1, type(cause).__name__, cause, delay
                )
                time.sleep(delay)
        return wrapper
    return decorator


@contextmanager
def get_db_for(engine) -> Generator[Any, None, None]:
    """Context manager yielding a cursor; commit on success, rollback on error.

    conn.close() returns the connection to the pool.
    """
    conn = engine.raw_connection()
    cursor = conn.cursor()
    try:
        yield cursor
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        cursor.close()
        conn.close()


def row_to_dict(cursor, row: Any) -> Optional[dict]:
    """Convert a DB-API row to a dictionary."""
    if row is None:
        return None
    columns = [column[0] for column in cursor.description]
    return dict(zip(columns, row))


def rows_to_list(cursor, rows: list) -> list[dict]:
    columns = [column[0] for column in cursor.description]
    return [dict(zip(columns, row)) for row in rows]


def _to_db_datetime(value: Optional[datetime]) -> Optional[str]:
    """Naive-UTC ISO text; DATETIME2 converts it, SQLite stores it as-is."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(sep=" ", timespec="microseconds")


def _from_db_datetime(value) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


# ==========================================================================
# Row mapping
# ==========================================================================

def _meeting(d: dict) -> Meeting:
    return Meeting(
        id=d["MeetingId"],
        project_id=d["ProjectId"],
        title=d["Title"],
        date=d["MeetingDate"],
        status=ContainerStatus(d["Status"]),
        closed_at=_from_db_datetime(d["ClosedAt"]),
    )


def _series(d: dict) -> MeetingSeries:
    return MeetingSeries(
        id=d["SeriesId"],
        project_id=d["ProjectId"],
        title=d["Title"],
        status=ContainerStatus(d["Status"]),
        closed_at=_from_db_datetime(d["ClosedAt"]),
        created_at=_from_db_datetime(d["CreatedAt"]),
    )


def _occurrence(d: dict) -> MeetingOccurrence:
    return MeetingOccurrence(
        id=d["OccurrenceId"],
        series_id=d["SeriesId"],
        date=d["OccurrenceDate"],
        status=ContainerStatus(d["Status"]),
    )


def _point(d: dict) -> Point:
    return Point(
        id=d["PointId"],
        meeting_id=d["MeetingId"],
        series_id=d["SeriesId"],
        title=d["Title"],
        status=PointStatus(d["Status"]),
        assigned_to=d["AssignedTo"],
        assigned_to_ref=d["AssignedToRef"],
        due_date=d["DueDate"],
    )


_CONTAINER_TABLES = {
    ContainerKind.MEETING: ("Meeting", "MeetingId"),
    ContainerKind.SERIES: ("MeetingSeries", "SeriesId"),
    ContainerKind.OCCURRENCE: ("MeetingOccurrence", "OccurrenceId"),
}

_POINT_PARENT_COLUMNS = {
    ContainerKind.MEETING: "MeetingId",
    ContainerKind.SERIES: "SeriesId",
}

_UNRESOLVED_VALUES = tuple(sorted(s.value for s in UNRESOLVED_POINT_STATUSES))


# ==========================================================================
# Unit of work
# ==========================================================================

class SqlUnitOfWork(UnitOfWork):
    """All calls run on one cursor inside one database transaction."""

    def __init__(self, cursor):
        self._cursor = cursor

    def _fetch_one(self, sql: str, params: tuple) -> Optional[dict]:
        self._cursor.execute(sql, params)
        return row_to_dict(self._cursor, self._cursor.fetchone())

    def _fetch_all(self, sql: str, params: tuple) -> list[dict]:
        self._cursor.execute(sql, params)
        rows = self._cursor.fetchall()
        if not rows:
            return []
        return rows_to_list(self._cursor, rows)

    # --- Reads ---

    def get_point(self, point_id):
        d = self._fetch_one("SELECT * FROM Point WHERE PointId = ?", (point_id,))
        return _point(d) if d else None

    def get_meeting(self, meeting_id):
        d = self._fetch_one("SELECT * FROM Meeting WHERE MeetingId = ?", (meeting_id,))
        return _meeting(d) if d else None

    def get_meeting_series(self, series_id):
        d = self._fetch_one("SELECT * FROM MeetingSeries WHERE SeriesId = ?", (series_id,))
        return _series(d) if d else None

    def get_meeting_occurrence(self, occurrence_id):
        d = self._fetch_one("SELECT * FROM MeetingOccurrence WHERE OccurrenceId = ?", (occurrence_id,))
        return _occurrence(d) if d else None

    def list_points(self, container):
        column = _POINT_PARENT_COLUMNS.get(container.kind)
        if column is None:
            return []
        rows = self._fetch_all(
            f"SELECT * FROM Point WHERE {column} = ? ORDER BY PointId", (container.id,)
        )
        return [_point(d) for d in rows]

    def list_unresolved_points(self, container):
        column = _POINT_PARENT_COLUMNS.get(container.kind)
        if column is None:
            return []
        placeholders = ", ".join("?" for _ in _UNRESOLVED_VALUES)
        rows = self._fetch_all(
            f"SELECT * FROM Point WHERE {column} = ? AND Status IN ({placeholders}) ORDER BY PointId",
            (container.id, *_UNRESOLVED_VALUES),
        )
        return [_point(d) for d in rows]

    def list_status_updates(self, point_id):
        rows = self._fetch_all(
            """
            SELECT StatusUpdateId, PointId, UpdateDate, StatusText, ActionOn
            FROM StatusUpdate
            WHERE PointId = ?
            ORDER BY Seq
            """,
            (point_id,),
        )
        return [
            StatusUpdate(
                id=d["StatusUpdateId"],
                point_id=d["PointId"],
                date=d["UpdateDate"],
                status=d["StatusText"],
                action_on=d["ActionOn"],
            )
            for d in rows
        ]

    def list_open_meetings(self, project_id, exclude_id=None):
        conditions = ["ProjectId = ?", "Status = ?"]
        params: list = [project_id, ContainerStatus.SCHEDULED.value]
        if exclude_id:
            conditions.append("MeetingId <> ?")
            params.append(exclude_id)
        rows = self._fetch_all(
            f"SELECT * FROM Meeting WHERE {' AND '.join(conditions)} ORDER BY MeetingDate ASC",
            tuple(params),
        )
        return [_meeting(d) for d in rows]

    def list_open_series(self, project_id, exclude_id=None):
        conditions = ["ProjectId = ?", "Status = ?"]
        params: list = [project_id, ContainerStatus.SCHEDULED.value]
        if exclude_id:
            conditions.append("SeriesId <> ?")
            params.append(exclude_id)
        rows = self._fetch_all(
            f"SELECT * FROM MeetingSeries WHERE {' AND '.join(conditions)} ORDER BY CreatedAt DESC",
            tuple(params),
        )
        return [_series(d) for d in rows]

    def get_policy_overrides(self):
        rows = self._fetch_all(
            "SELECT Role, Action, IsEnabled FROM RolePermission ORDER BY UpdatedAt, Role, Action",
            (),
        )
        return [
            PolicyOverride(role=d["Role"], action=d["Action"], enabled=bool(d["IsEnabled"]))
            for d in rows
        ]

    # --- Writes ---

    def update_point_status(self, point_id, status):
        self._cursor.execute(
            "UPDATE Point SET Status = ? WHERE PointId = ?",
            (PointStatus(status).value, point_id),
        )
        if self._cursor.rowcount == 0:
            raise NotFound(f"Point {point_id} not found")

    def reparent_point(self, point_id, new_parent):
        if new_parent.kind == ContainerKind.MEETING:
            params = (new_parent.id, None, point_id)
        elif new_parent.kind == ContainerKind.SERIES:
            params = (None, new_parent.id, point_id)
        else:
            raise ValueError(f"Points cannot be parented to a {new_parent.kind.value}")
        self._cursor.execute(
            "UPDATE Point SET MeetingId = ?, SeriesId = ? WHERE PointId = ?", params
        )
        if self._cursor.rowcount == 0:
            raise NotFound(f"Point {point_id} not found")

    def update_container_status(self, container, status, closed_at=None, expected_status=None):
        table, id_column = _CONTAINER_TABLES[container.kind]
        assignments = ["Status = ?"]
        params: list = [ContainerStatus(status).value]
        if container.kind != ContainerKind.OCCURRENCE:
            assignments.append("ClosedAt = ?")
            params.append(_to_db_datetime(closed_at))
        sql = f"UPDATE {table} SET {', '.join(assignments)} WHERE {id_column} = ?"
        params.append(container.id)
        if expected_status is not None:
            sql += " AND Status = ?"
            params.append(ContainerStatus(expected_status).value)

        self._cursor.execute(sql, tuple(params))
        if self._cursor.rowcount > 0:
            return True
        if self.get_container(container) is None:
            raise NotFound(f"{container.kind.value.capitalize()} {container.id} not found")
        return False

    def append_status_update(self, update):
        stored = StatusUpdate(
            id=update.id or str(uuid.uuid4()),
            point_id=update.point_id,
            date=update.date,
            status=update.status,
            action_on=update.action_on,
        )
        self._cursor.execute(
            """
            INSERT INTO StatusUpdate (StatusUpdateId, PointId, UpdateDate, StatusText, ActionOn, Seq)
            SELECT ?, ?, ?, ?, ?, COALESCE(MAX(Seq), 0) + 1 FROM StatusUpdate
            """,
            (stored.id, stored.point_id, stored.date, stored.status, stored.action_on),
        )
        return stored

    def upsert_policy_overrides(self, overrides):
        now = _to_db_datetime(datetime.now(timezone.utc))
        for override in overrides:
            params = (1 if override.enabled else 0, now, override.role.value, override.action.value)
            self._cursor.execute(
                "UPDATE RolePermission SET IsEnabled = ?, UpdatedAt = ? WHERE Role = ? AND Action = ?",
                params,
            )
            if self._cursor.rowcount == 0:
                self._cursor.execute(
                    "INSERT INTO RolePermission (IsEnabled, UpdatedAt, Role, Action) VALUES (?, ?, ?, ?)",
                    params,
                )
        return list(overrides)

    def add_meeting(self, meeting):
        self._cursor.execute(
            """
            INSERT INTO Meeting (MeetingId, ProjectId, Title, MeetingDate, Status, ClosedAt)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (meeting.id, meeting.project_id, meeting.title, meeting.date,
             ContainerStatus(meeting.status).value, _to_db_datetime(meeting.closed_at)),
        )
        return meeting

    def add_meeting_series(self, series):
        self._cursor.execute(
            """
            INSERT INTO MeetingSeries (SeriesId, ProjectId, Title, Status, ClosedAt, CreatedAt)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (series.id, series.project_id, series.title, ContainerStatus(series.status).value,
             _to_db_datetime(series.closed_at),
             _to_db_datetime(series.created_at or datetime.now(timezone.utc))),
        )
        return series

    def add_meeting_occurrence(self, occurrence):
        self._cursor.execute(
            """
            INSERT INTO MeetingOccurrence (OccurrenceId, SeriesId, OccurrenceDate, Status)
            VALUES (?, ?, ?, ?)
            """,
            (occurrence.id, occurrence.series_id, occurrence.date,
             ContainerStatus(occurrence.status).value),
        )
        return occurrence

    def add_point(self, point):
        self._cursor.execute(
            """
            INSERT INTO Point (PointId, MeetingId, SeriesId, Title, Status, AssignedTo, AssignedToRef, DueDate)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (point.id, point.meeting_id, point.series_id, point.title, point.status.value,
             point.assigned_to, point.assigned_to_ref, point.due_date),
        )
        return point


class SqlRepository(Repository):

    def __init__(self, engine=None):
        self._engine = engine

    @property
    def engine(self):
        if self._engine is None:
            self._engine = _get_engine()
        return self._engine

    @contextmanager
    def transaction(self) -> Iterator[UnitOfWork]:
        try:
            with get_db_for(self.engine) as cursor:
                yield SqlUnitOfWork(cursor)
        except PointflowError:
            raise
        except Exception as e:
            if is_transient_error(e):
                raise RepositoryUnavailable() from e
            raise

    @retry_on_transient()
    def get_policy_overrides(self) -> list[PolicyOverride]:
        return super().get_policy_overrides()

    @retry_on_transient()
    def create_schema(self) -> None:
        """Create all tables. Intended for fresh databases and tests."""
        with get_db_for(self.engine) as cursor:
            for statement in SCHEMA_STATEMENTS:
                cursor.execute(statement)


_repository: Optional[SqlRepository] = None


def get_repository() -> SqlRepository:
    """Process-wide repository over the configured engine."""
    global _repository
    if _repository is None:
        _repository = SqlRepository()
    return _repository
