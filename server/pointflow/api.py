"""Pointflow - REST API"""

from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .audit import log_audit
from .closure import ClosureWorkflow
from .config import get_settings
from .dependencies import get_current_user, get_repository_dep, get_workflow, require_permission
from .errors import PointflowError
from .logging_config import get_logger
from .models import ContainerKind, ContainerRef
from .permissions import get_permission_summary
from .policy import PermissionAction, get_permission_config
from .policy_cache import get_effective_matrix, load_policy_overrides, reload_effective_matrix
from .repository import Repository
from .schemas import CloseRequest, RolePermissionsUpdate
from .user_context import CurrentUserContext

logger = get_logger(__name__)


def _container_out(ref: ContainerRef) -> dict:
    return {"kind": ref.kind.value, "id": ref.id}


def create_app(repository: Optional[Repository] = None) -> FastAPI:
    """Build the API. Without a repository, the configured SQL database is used."""
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        from .database import get_repository
        repo = app.state.repository or get_repository()
        count = load_policy_overrides(repo)
        logger.info("API startup", extra={"overrides_loaded": count})
        yield

    app = FastAPI(title="Pointflow API", version="1.0.0", lifespan=lifespan)
    app.state.repository = repository

    # Request logging middleware
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        response = await call_next(request)
        logger.debug("Response", extra={
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
        })
        return response

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_cors_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(PointflowError)
    async def pointflow_error_handler(request: Request, exc: PointflowError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s: %s", request.method, request.url.path, exc.code, exc.message)
        else:
            logger.info("%s %s rejected: %s", request.method, request.url.path, exc.code)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        message = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ()) if p != 'body')}: {err.get('msg')}"
            for err in exc.errors()
        )
        return JSONResponse(
            status_code=400,
            content={"error": True, "code": "VALIDATION_ERROR", "message": message},
        )

    _register_closure_routes(app)
    _register_role_permission_routes(app)

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "service": "pointflow"}

    return app


# ============================================================================
# CLOSURE ENDPOINTS
# ============================================================================

def _register_closure_routes(app: FastAPI) -> None:

    def _close(workflow: ClosureWorkflow, user, ref: ContainerRef, body: Optional[CloseRequest]) -> dict:
        if body is None:
            result = workflow.close(user, ref, None)
        else:
            result = workflow.close(user, ref, body.mode, body.target)
        return {"success": True, **result.to_dict()}

    def _reopen(workflow: ClosureWorkflow, user, ref: ContainerRef) -> dict:
        changed = workflow.reopen(user, ref)
        return {"success": True, "container": _container_out(ref), "reopened": changed}

    @app.post("/api/meetings/{meeting_id}/close")
    def close_meeting_endpoint(
        meeting_id: str,
        body: CloseRequest,
        user: CurrentUserContext = Depends(get_current_user),
        workflow: ClosureWorkflow = Depends(get_workflow),
    ):
        """Close a meeting, moving or force-closing its unresolved points."""
        return _close(workflow, user, ContainerRef(ContainerKind.MEETING, meeting_id), body)

    @app.post("/api/meetings/{meeting_id}/reopen")
    def reopen_meeting_endpoint(
        meeting_id: str,
        user: CurrentUserContext = Depends(get_current_user),
        workflow: ClosureWorkflow = Depends(get_workflow),
    ):
        return _reopen(workflow, user, ContainerRef(ContainerKind.MEETING, meeting_id))

    @app.post("/api/meeting-series/{series_id}/close")
    def close_series_endpoint(
        series_id: str,
        body: CloseRequest,
        user: CurrentUserContext = Depends(get_current_user),
        workflow: ClosureWorkflow = Depends(get_workflow),
    ):
        """Close a series, moving or force-closing its unresolved points."""
        return _close(workflow, user, ContainerRef(ContainerKind.SERIES, series_id), body)

    @app.post("/api/meeting-series/{series_id}/reopen")
    def reopen_series_endpoint(
        series_id: str,
        user: CurrentUserContext = Depends(get_current_user),
        workflow: ClosureWorkflow = Depends(get_workflow),
    ):
        return _reopen(workflow, user, ContainerRef(ContainerKind.SERIES, series_id))

    @app.post("/api/meeting-occurrences/{occurrence_id}/close")
    def close_occurrence_endpoint(
        occurrence_id: str,
        body: Optional[CloseRequest] = None,
        user: CurrentUserContext = Depends(get_current_user),
        workflow: ClosureWorkflow = Depends(get_workflow),
    ):
        """Mark one occurrence of a series completed."""
        return _close(workflow, user, ContainerRef(ContainerKind.OCCURRENCE, occurrence_id), body)

    @app.post("/api/meeting-occurrences/{occurrence_id}/reopen")
    def reopen_occurrence_endpoint(
        occurrence_id: str,
        user: CurrentUserContext = Depends(get_current_user),
        workflow: ClosureWorkflow = Depends(get_workflow),
    ):
        return _reopen(workflow, user, ContainerRef(ContainerKind.OCCURRENCE, occurrence_id))

    @app.get("/api/projects/{project_id}/open-meetings")
    def open_meetings_endpoint(
        project_id: str,
        exclude: Optional[str] = Query(None, max_length=64),
        user: CurrentUserContext = Depends(get_current_user),
        workflow: ClosureWorkflow = Depends(get_workflow),
    ):
        """Move targets for the close dialog: scheduled meetings, by date."""
        return [asdict(m) for m in workflow.list_open_meetings(user, project_id, exclude)]

    @app.get("/api/projects/{project_id}/open-series")
    def open_series_endpoint(
        project_id: str,
        exclude: Optional[str] = Query(None, max_length=64),
        user: CurrentUserContext = Depends(get_current_user),
        workflow: ClosureWorkflow = Depends(get_workflow),
    ):
        """Move targets for the close dialog: open series, newest first."""
        return [asdict(s) for s in workflow.list_open_series(user, project_id, exclude)]


# ============================================================================
# ROLE PERMISSION ENDPOINTS
# ============================================================================

def _register_role_permission_routes(app: FastAPI) -> None:

    @app.get("/api/role-permissions/config")
    async def role_permissions_config_endpoint():
        """Actions, labels, categories, default matrix and roles for the admin editor."""
        return get_permission_config()

    @app.get("/api/role-permissions")
    def list_role_permissions_endpoint(
        user: CurrentUserContext = Depends(get_current_user),
        repository: Repository = Depends(get_repository_dep),
    ):
        """Stored overrides (not the effective matrix)."""
        return [o.to_dict() for o in repository.get_policy_overrides()]

    @app.get("/api/role-permissions/effective")
    async def effective_role_permissions_endpoint(
        user: CurrentUserContext = Depends(get_current_user),
    ):
        matrix = get_effective_matrix()
        return {
            action.value: sorted(role.value for role in roles)
            for action, roles in matrix.items()
        }

    @app.patch("/api/role-permissions")
    def update_role_permissions_endpoint(
        update: RolePermissionsUpdate,
        user: CurrentUserContext = Depends(require_permission(PermissionAction.USERS_MANAGE)),
        repository: Repository = Depends(get_repository_dep),
    ):
        """Bulk upsert overrides, then rebuild the effective matrix from storage."""
        overrides = [p.to_override() for p in update.permissions]
        with repository.transaction() as uow:
            written = uow.upsert_policy_overrides(overrides)
        reload_effective_matrix(repository)
        log_audit(user, "update_overrides", "role_permission", str(len(written)),
                  ", ".join(f"{o.role.value}:{o.action.value}={o.enabled}" for o in written))
        return [o.to_dict() for o in written]

    @app.get("/api/me/permissions")
    async def my_permissions_endpoint(
        user: CurrentUserContext = Depends(get_current_user),
    ):
        """Flags the frontend uses to show or hide controls."""
        return get_permission_summary(user)


app = create_app()
