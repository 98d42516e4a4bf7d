"""Pointflow — FastAPI Dependency Chain

Provides Depends()-compatible functions for the request's user, the
repository and the closure workflow.

Dependency chain:
  get_current_user → require_permission(action)
  get_repository_dep → get_workflow
"""

from typing import Optional

from fastapi import Depends, Request

from .closure import ClosureWorkflow
from .database import get_repository
from .errors import AuthenticationRequired
from .logging_config import get_logger
from .permissions import require_permission as _require_permission
from .policy import PermissionAction
from .repository import Repository
from .user_context import CurrentUserContext

logger = get_logger(__name__)


# --- Layer 1: Current user ---

def get_optional_user(request: Request) -> Optional[CurrentUserContext]:
    """The user placed on request.state by the authentication layer, if any."""
    user = getattr(request.state, "current_user", None)
    if user is not None and not isinstance(user, CurrentUserContext):
        logger.error("request.state.current_user has unexpected type %s", type(user).__name__)
        return None
    return user


def get_current_user(
    user: Optional[CurrentUserContext] = Depends(get_optional_user),
) -> CurrentUserContext:
    if user is None:
        raise AuthenticationRequired()
    return user


def require_permission(action: PermissionAction):
    """Dependency factory: the current user, after a global permission check."""
    def dependency(user: CurrentUserContext = Depends(get_current_user)) -> CurrentUserContext:
        _require_permission(user, action)
        return user
    return dependency


# --- Layer 2: Storage ---

def get_repository_dep(request: Request) -> Repository:
    """The app's repository; falls back to the process-wide SQL repository."""
    repository = getattr(request.app.state, "repository", None)
    if repository is None:
        repository = get_repository()
    return repository


# --- Layer 3: Workflow ---

def get_workflow(repository: Repository = Depends(get_repository_dep)) -> ClosureWorkflow:
    return ClosureWorkflow(repository)
