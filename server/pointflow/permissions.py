"""Pointflow — Permission Resolver

Stateless permission checks based on CurrentUserContext and the effective
policy cache. The query functions return booleans and never raise for a
well-formed context; the require_* guards raise Forbidden /
AuthenticationRequired for the command and HTTP layers.

Project-scoped checks are an ordered list of evaluators. Each answers
ALLOW, DENY or ABSTAIN; the first non-abstaining answer wins and
all-abstain means deny:

    administrator -> project access -> global role -> project role
"""

from enum import Enum
from typing import Callable, Optional, Sequence, Union

from .errors import AuthenticationRequired, Forbidden
from .policy import (
    ALL_PERMISSION_ACTIONS,
    PROJECT_ROLE_PERMISSIONS,
    PermissionAction,
)
from .policy_cache import policy_cache
from .roles import Role, COMPANY_SCOPED_ROLE
from .user_context import AssignmentReference, CurrentUserContext


class Decision(Enum):
    ALLOW = "allow"
    DENY = "deny"
    ABSTAIN = "abstain"


Evaluator = Callable[[CurrentUserContext, PermissionAction, Optional[str]], Decision]


# --- Evaluators ---

def administrator_evaluator(user: CurrentUserContext, action: PermissionAction, project_id: Optional[str]) -> Decision:
    return Decision.ALLOW if user.is_administrator else Decision.ABSTAIN


def project_access_evaluator(user: CurrentUserContext, action: PermissionAction, project_id: Optional[str]) -> Decision:
    return Decision.ABSTAIN if can_access_project(user, project_id) else Decision.DENY


def global_role_evaluator(user: CurrentUserContext, action: PermissionAction, project_id: Optional[str]) -> Decision:
    allowed = policy_cache.resolve(action)
    return Decision.ALLOW if user.roles & allowed else Decision.ABSTAIN


def project_role_evaluator(user: CurrentUserContext, action: PermissionAction, project_id: Optional[str]) -> Decision:
    project_role = user.project_role(project_id)
    if project_role is None:
        return Decision.ABSTAIN
    return Decision.ALLOW if action in PROJECT_ROLE_PERMISSIONS[project_role] else Decision.ABSTAIN


PROJECT_PERMISSION_EVALUATORS: tuple[Evaluator, ...] = (
    administrator_evaluator,
    project_access_evaluator,
    global_role_evaluator,
    project_role_evaluator,
)


def evaluate(
    evaluators: Sequence[Evaluator],
    user: CurrentUserContext,
    action: PermissionAction,
    project_id: Optional[str] = None,
) -> Decision:
    """First non-abstaining evaluator decides. Nobody deciding means deny."""
    for evaluator in evaluators:
        decision = evaluator(user, action, project_id)
        if decision is not Decision.ABSTAIN:
            return decision
    return Decision.DENY


# --- Role helpers ---

def has_role(user: CurrentUserContext, role: Role) -> bool:
    return role in user.roles


def has_any_role(user: CurrentUserContext, roles) -> bool:
    return any(role in user.roles for role in roles)


def is_administrator(user: CurrentUserContext) -> bool:
    return user.is_administrator


# --- Queries ---

def has_permission(user: CurrentUserContext, action: PermissionAction) -> bool:
    """Global (not project-scoped) permission check."""
    if user.is_administrator:
        return True
    return bool(user.roles & policy_cache.resolve(action))


def can_access_project(user: CurrentUserContext, project_id: Optional[str]) -> bool:
    if user.is_administrator:
        return True
    # No project = no restriction
    if not project_id:
        return True
    return project_id in user.project_ids


def has_project_permission(
    user: CurrentUserContext,
    action: PermissionAction,
    project_id: Optional[str],
) -> bool:
    """Global role grant OR project role grant, inside an accessible project."""
    return evaluate(PROJECT_PERMISSION_EVALUATORS, user, action, project_id) is Decision.ALLOW


def can_edit_point(
    user: CurrentUserContext,
    assigned_to_ref: Optional[str],
    project_id: Optional[str],
) -> bool:
    """Edit-any grants edit; edit-assigned grants edit only on the user's own points."""
    if not can_access_project(user, project_id):
        return False

    if has_permission(user, PermissionAction.POINTS_EDIT_ANY):
        return True

    if has_permission(user, PermissionAction.POINTS_EDIT_ASSIGNED):
        ref = AssignmentReference.parse(assigned_to_ref)
        return ref is not None and ref.designates(user)

    return False


def get_accessible_project_ids(user: CurrentUserContext) -> Union[list[str], str]:
    """'all' for the administrator, otherwise the assigned project ids."""
    if user.is_administrator:
        return "all"
    return sorted(user.project_ids)


def get_points_filter(user: CurrentUserContext) -> Optional[dict]:
    """Company-scoped viewers only see points linked to their own company."""
    if has_role(user, COMPANY_SCOPED_ROLE) and user.company_id:
        return {"company_id": user.company_id}
    return None


_SUMMARY_KEYS: dict[PermissionAction, str] = {
    PermissionAction.MEETINGS_CREATE: "canCreateMeetings",
    PermissionAction.MEETINGS_EDIT: "canEditMeetings",
    PermissionAction.MEETINGS_CLOSE: "canCloseMeetings",
    PermissionAction.MEETINGS_SEND_MINUTES: "canSendMinutes",
    PermissionAction.POINTS_CREATE: "canCreatePoints",
    PermissionAction.POINTS_EDIT_ANY: "canEditAnyPoint",
    PermissionAction.POINTS_EDIT_ASSIGNED: "canEditAssignedPoints",
    PermissionAction.POINTS_ASSIGN: "canAssignPoints",
    PermissionAction.ATTACHMENTS_UPLOAD: "canUploadAttachments",
    PermissionAction.COMMENTS_CREATE: "canComment",
    PermissionAction.ATTENDANCE_EDIT: "canEditAttendance",
    PermissionAction.PROJECTS_VIEW_ALL: "canViewAllProjects",
    PermissionAction.PROJECTS_CREATE: "canCreateProjects",
    PermissionAction.PROJECTS_EDIT: "canEditProjects",
    PermissionAction.USERS_MANAGE: "canManageUsers",
    PermissionAction.KPIS_VIEW_GLOBAL: "canViewGlobalKpis",
    PermissionAction.KPIS_VIEW_PROJECT: "canViewProjectKpis",
    PermissionAction.KPIS_VIEW_COMPANY: "canViewCompanyKpis",
}


def get_permission_summary(user: CurrentUserContext) -> dict[str, bool]:
    """Flag per global action, for the frontend to show/hide controls."""
    summary = {_SUMMARY_KEYS[action]: has_permission(user, action) for action in ALL_PERMISSION_ACTIONS}
    summary["isBimManager"] = user.is_administrator
    return summary


# --- Guards ---

def _require_user(user: Optional[CurrentUserContext]) -> CurrentUserContext:
    if user is None:
        raise AuthenticationRequired()
    return user


def require_permission(user: Optional[CurrentUserContext], action: PermissionAction) -> None:
    """Raise Forbidden unless `user` holds `action` globally. Returns None if allowed."""
    user = _require_user(user)
    if not has_permission(user, action):
        raise Forbidden(action=action.value)


def require_project_access(user: Optional[CurrentUserContext], project_id: Optional[str]) -> None:
    user = _require_user(user)
    if not can_access_project(user, project_id):
        raise Forbidden("Access to this project is not allowed", project_id=project_id)


def require_project_permission(
    user: Optional[CurrentUserContext],
    action: PermissionAction,
    project_id: Optional[str],
) -> None:
    user = _require_user(user)
    if not has_project_permission(user, action, project_id):
        raise Forbidden(action=action.value, project_id=project_id)


def require_point_edit(
    user: Optional[CurrentUserContext],
    point_id: str,
    assigned_to_ref: Optional[str],
    project_id: Optional[str],
) -> None:
    user = _require_user(user)
    if not can_edit_point(user, assigned_to_ref, project_id):
        raise Forbidden(
            "You can only edit points assigned to you",
            action=PermissionAction.POINTS_EDIT_ASSIGNED.value,
            project_id=project_id,
            point_id=point_id,
        )
