"""Pointflow — Static Policy Tables

PermissionAction plus the two fixed tables the resolver consults:
DEFAULT_PERMISSION_MATRIX (action -> roles allowed out of the box) and
PROJECT_ROLE_PERMISSIONS (project role -> actions granted inside a project).
Labels and categories exist only for the admin UI configuration payload.
"""

from enum import Enum
from typing import Union

from .errors import InvariantViolation
from .roles import (
    PROJECT_ROLE_DESCRIPTIONS,
    PROJECT_ROLE_DISPLAY_NAMES,
    ROLE_DESCRIPTIONS,
    ROLE_DISPLAY_NAMES,
    ProjectRole,
    Role,
)


class PermissionAction(str, Enum):
    # Meetings
    MEETINGS_CREATE = "meetings:create"
    MEETINGS_EDIT = "meetings:edit"
    MEETINGS_CLOSE = "meetings:close"
    MEETINGS_SEND_MINUTES = "meetings:send_minutes"
    # Points
    POINTS_CREATE = "points:create"
    POINTS_EDIT_ANY = "points:edit:any"
    POINTS_EDIT_ASSIGNED = "points:edit:assigned"
    POINTS_ASSIGN = "points:assign"
    # Attachments
    ATTACHMENTS_UPLOAD = "attachments:upload"
    # Comments / status updates
    COMMENTS_CREATE = "comments:create"
    # Attendance
    ATTENDANCE_EDIT = "attendance:edit"
    # Projects
    PROJECTS_VIEW_ALL = "projects:view_all"
    PROJECTS_CREATE = "projects:create"
    PROJECTS_EDIT = "projects:edit"
    # Users
    USERS_MANAGE = "users:manage"
    # KPIs
    KPIS_VIEW_GLOBAL = "kpis:view_global"
    KPIS_VIEW_PROJECT = "kpis:view_project"
    KPIS_VIEW_COMPANY = "kpis:view_company"


A = PermissionAction

ALL_PERMISSION_ACTIONS: tuple[PermissionAction, ...] = tuple(PermissionAction)

PERMISSION_ACTION_LABELS: dict[PermissionAction, str] = {
    A.MEETINGS_CREATE: "Create Meetings",
    A.MEETINGS_EDIT: "Edit Meetings",
    A.MEETINGS_CLOSE: "Close Meetings",
    A.MEETINGS_SEND_MINUTES: "Send Minutes",
    A.POINTS_CREATE: "Create Points",
    A.POINTS_EDIT_ANY: "Edit Any Point",
    A.POINTS_EDIT_ASSIGNED: "Edit Assigned Points",
    A.POINTS_ASSIGN: "Assign Points",
    A.ATTACHMENTS_UPLOAD: "Upload Attachments",
    A.COMMENTS_CREATE: "Create Comments",
    A.ATTENDANCE_EDIT: "Edit Attendance",
    A.PROJECTS_VIEW_ALL: "View All Projects",
    A.PROJECTS_CREATE: "Create Projects",
    A.PROJECTS_EDIT: "Edit Projects",
    A.USERS_MANAGE: "Manage Users",
    A.KPIS_VIEW_GLOBAL: "View Global KPIs",
    A.KPIS_VIEW_PROJECT: "View Project KPIs",
    A.KPIS_VIEW_COMPANY: "View Company KPIs",
}

PERMISSION_CATEGORIES: list[dict] = [
    {"name": "Meetings",
     "actions": [A.MEETINGS_CREATE, A.MEETINGS_EDIT, A.MEETINGS_CLOSE, A.MEETINGS_SEND_MINUTES]},
    {"name": "Points",
     "actions": [A.POINTS_CREATE, A.POINTS_EDIT_ANY, A.POINTS_EDIT_ASSIGNED, A.POINTS_ASSIGN]},
    {"name": "Content",
     "actions": [A.ATTACHMENTS_UPLOAD, A.COMMENTS_CREATE]},
    {"name": "Attendance",
     "actions": [A.ATTENDANCE_EDIT]},
    {"name": "Projects",
     "actions": [A.PROJECTS_VIEW_ALL, A.PROJECTS_CREATE, A.PROJECTS_EDIT]},
    {"name": "Administration",
     "actions": [A.USERS_MANAGE]},
    {"name": "KPIs & Analytics",
     "actions": [A.KPIS_VIEW_GLOBAL, A.KPIS_VIEW_PROJECT, A.KPIS_VIEW_COMPANY]},
]

_CONTRIBUTORS = frozenset({
    Role.BIM_MANAGER, Role.BIM_PROJECT_MANAGER, Role.BIM_COORDINATOR,
    Role.BIM_DESIGNER, Role.ENGINEER, Role.PROJECT_MANAGER, Role.DESIGN_MANAGER,
})

# PolicyDefaults. Never mutated; overrides are applied to copies.
DEFAULT_PERMISSION_MATRIX: dict[PermissionAction, frozenset[Role]] = {
    A.MEETINGS_CREATE: frozenset({Role.BIM_MANAGER, Role.BIM_PROJECT_MANAGER}),
    A.MEETINGS_EDIT: frozenset({Role.BIM_MANAGER, Role.BIM_PROJECT_MANAGER}),
    A.MEETINGS_CLOSE: frozenset({Role.BIM_MANAGER, Role.BIM_PROJECT_MANAGER}),
    A.MEETINGS_SEND_MINUTES: frozenset({Role.BIM_MANAGER, Role.BIM_PROJECT_MANAGER}),

    A.POINTS_CREATE: frozenset({Role.BIM_MANAGER, Role.BIM_PROJECT_MANAGER, Role.BIM_COORDINATOR}),
    A.POINTS_EDIT_ANY: frozenset({Role.BIM_MANAGER, Role.BIM_PROJECT_MANAGER, Role.BIM_COORDINATOR}),
    A.POINTS_EDIT_ASSIGNED: frozenset({Role.BIM_DESIGNER, Role.ENGINEER}),
    A.POINTS_ASSIGN: frozenset({Role.BIM_MANAGER, Role.BIM_PROJECT_MANAGER}),

    A.ATTACHMENTS_UPLOAD: _CONTRIBUTORS,
    A.COMMENTS_CREATE: _CONTRIBUTORS,

    A.ATTENDANCE_EDIT: frozenset({Role.BIM_MANAGER, Role.BIM_PROJECT_MANAGER, Role.BIM_COORDINATOR}),

    A.PROJECTS_VIEW_ALL: frozenset({Role.BIM_MANAGER}),
    A.PROJECTS_CREATE: frozenset({Role.BIM_MANAGER}),
    A.PROJECTS_EDIT: frozenset({Role.BIM_MANAGER, Role.BIM_PROJECT_MANAGER}),

    A.USERS_MANAGE: frozenset({Role.BIM_MANAGER}),

    A.KPIS_VIEW_GLOBAL: frozenset({Role.BIM_MANAGER}),
    A.KPIS_VIEW_PROJECT: frozenset({Role.BIM_MANAGER, Role.BIM_PROJECT_MANAGER}),
    A.KPIS_VIEW_COMPANY: frozenset({Role.PROJECT_MANAGER}),
}

_PROJECT_LEAD_GRANTS = frozenset({
    A.MEETINGS_CREATE, A.MEETINGS_EDIT, A.MEETINGS_CLOSE, A.MEETINGS_SEND_MINUTES,
    A.POINTS_CREATE, A.POINTS_EDIT_ANY, A.POINTS_ASSIGN,
    A.ATTACHMENTS_UPLOAD, A.COMMENTS_CREATE, A.ATTENDANCE_EDIT,
    A.PROJECTS_EDIT, A.KPIS_VIEW_PROJECT,
})

_ASSIGNED_WORK_GRANTS = frozenset({
    A.POINTS_EDIT_ASSIGNED, A.ATTACHMENTS_UPLOAD, A.COMMENTS_CREATE,
})

# ProjectGrantTable
PROJECT_ROLE_PERMISSIONS: dict[ProjectRole, frozenset[PermissionAction]] = {
    ProjectRole.PROJECT_LEADER: _PROJECT_LEAD_GRANTS,
    ProjectRole.BIM_MANAGER: _PROJECT_LEAD_GRANTS,
    ProjectRole.BIM_COORDINATOR: frozenset({
        A.MEETINGS_CREATE, A.MEETINGS_EDIT,
        A.POINTS_CREATE, A.POINTS_EDIT_ANY,
        A.ATTACHMENTS_UPLOAD, A.COMMENTS_CREATE, A.ATTENDANCE_EDIT,
    }),
    ProjectRole.DESIGN_LEAD: frozenset({
        A.POINTS_CREATE, A.POINTS_EDIT_ANY, A.ATTACHMENTS_UPLOAD, A.COMMENTS_CREATE,
    }),
    ProjectRole.DESIGN_MANAGER: frozenset({
        A.POINTS_CREATE, A.POINTS_EDIT_ANY, A.ATTACHMENTS_UPLOAD, A.COMMENTS_CREATE,
        A.KPIS_VIEW_PROJECT,
    }),
    ProjectRole.DESIGN_TEAM_MEMBER: _ASSIGNED_WORK_GRANTS,
    ProjectRole.ENGINEER: _ASSIGNED_WORK_GRANTS,
    ProjectRole.EXTERNAL_CONSULTANT: frozenset({A.COMMENTS_CREATE}),
    ProjectRole.PROJECT_VIEWER: frozenset(),
}


# --- Coercion (wire strings -> enums) ---

def to_action(value: Union[str, PermissionAction]) -> PermissionAction:
    """Coerce a wire value into a PermissionAction. Unknown values are bugs."""
    try:
        return PermissionAction(value)
    except ValueError:
        raise InvariantViolation(f"Unknown permission action: {value!r}")


def to_role(value: Union[str, Role]) -> Role:
    try:
        return Role(value)
    except ValueError:
        raise InvariantViolation(f"Unknown role: {value!r}")


def to_project_role(value: Union[str, ProjectRole]) -> ProjectRole:
    try:
        return ProjectRole(value)
    except ValueError:
        raise InvariantViolation(f"Unknown project role: {value!r}")


def get_permission_config() -> dict:
    """Static configuration payload for rendering the permission admin UI."""
    return {
        "actions": [a.value for a in ALL_PERMISSION_ACTIONS],
        "labels": {a.value: label for a, label in PERMISSION_ACTION_LABELS.items()},
        "categories": [
            {"name": c["name"], "actions": [a.value for a in c["actions"]]}
            for c in PERMISSION_CATEGORIES
        ],
        "defaults": {
            a.value: [r.value for r in Role if r in roles]
            for a, roles in DEFAULT_PERMISSION_MATRIX.items()
        },
        "roles": [r.value for r in Role],
        "roleLabels": {
            r.value: {"name": ROLE_DISPLAY_NAMES[r], "description": ROLE_DESCRIPTIONS[r]}
            for r in Role
        },
        "projectRoles": [
            {
                "role": r.value,
                "name": PROJECT_ROLE_DISPLAY_NAMES[r],
                "description": PROJECT_ROLE_DESCRIPTIONS[r],
                "actions": [a.value for a in ALL_PERMISSION_ACTIONS if a in PROJECT_ROLE_PERMISSIONS[r]],
            }
            for r in ProjectRole
        ],
    }
