"""Pointflow — Roles

Global roles (held across the whole application) and project roles (held per
project). Both are closed sets; anything outside them is a bug, not data.
"""

from enum import Enum


class Role(str, Enum):
    BIM_MANAGER = "BIM_MANAGER"
    BIM_PROJECT_MANAGER = "BIM_PROJECT_MANAGER"
    BIM_COORDINATOR = "BIM_COORDINATOR"
    BIM_DESIGNER = "BIM_DESIGNER"
    ENGINEER = "ENGINEER"
    PROJECT_MANAGER = "PROJECT_MANAGER"
    DESIGN_MANAGER = "DESIGN_MANAGER"
    VIEWER = "VIEWER"


class ProjectRole(str, Enum):
    PROJECT_LEADER = "PROJECT_LEADER"
    BIM_MANAGER = "BIM_MANAGER"
    BIM_COORDINATOR = "BIM_COORDINATOR"
    DESIGN_LEAD = "DESIGN_LEAD"
    DESIGN_MANAGER = "DESIGN_MANAGER"
    DESIGN_TEAM_MEMBER = "DESIGN_TEAM_MEMBER"
    ENGINEER = "ENGINEER"
    EXTERNAL_CONSULTANT = "EXTERNAL_CONSULTANT"
    PROJECT_VIEWER = "PROJECT_VIEWER"


# Satisfies every permission and project-access check unconditionally
ADMINISTRATOR_ROLE = Role.BIM_MANAGER

# Sees points only where their company is involved
COMPANY_SCOPED_ROLE = Role.PROJECT_MANAGER


ROLE_DISPLAY_NAMES: dict[Role, str] = {
    Role.BIM_MANAGER: "BIM Manager",
    Role.BIM_PROJECT_MANAGER: "BIM Project Manager",
    Role.BIM_COORDINATOR: "BIM Coordinator",
    Role.BIM_DESIGNER: "BIM Designer",
    Role.ENGINEER: "Engineer",
    Role.PROJECT_MANAGER: "Project Manager",
    Role.DESIGN_MANAGER: "Design Manager",
    Role.VIEWER: "Viewer",
}

ROLE_DESCRIPTIONS: dict[Role, str] = {
    Role.BIM_MANAGER: "Full access across all projects, global KPIs, user management",
    Role.BIM_PROJECT_MANAGER: "Full access within assigned projects, project-level KPIs",
    Role.BIM_COORDINATOR: "Add/edit points, attachments, statuses, attendance in assigned projects",
    Role.BIM_DESIGNER: "Edit assigned points, upload attachments, add comments",
    Role.ENGINEER: "Edit assigned points, upload attachments, add comments",
    Role.PROJECT_MANAGER: "Company-filtered view of points and KPIs in assigned projects",
    Role.DESIGN_MANAGER: "Review role: view all, comment and upload attachments only",
    Role.VIEWER: "Read-only access to assigned projects",
}

PROJECT_ROLE_DISPLAY_NAMES: dict[ProjectRole, str] = {
    ProjectRole.PROJECT_LEADER: "Project Leader",
    ProjectRole.BIM_MANAGER: "BIM Manager",
    ProjectRole.BIM_COORDINATOR: "BIM Coordinator",
    ProjectRole.DESIGN_LEAD: "Design Lead",
    ProjectRole.DESIGN_MANAGER: "Design Manager",
    ProjectRole.DESIGN_TEAM_MEMBER: "Design Team Member",
    ProjectRole.ENGINEER: "Engineer",
    ProjectRole.EXTERNAL_CONSULTANT: "External Consultant",
    ProjectRole.PROJECT_VIEWER: "Project Viewer",
}

PROJECT_ROLE_DESCRIPTIONS: dict[ProjectRole, str] = {
    ProjectRole.PROJECT_LEADER: "Overall project leadership and decision-making authority",
    ProjectRole.BIM_MANAGER: "Manages BIM processes, standards, and coordination",
    ProjectRole.BIM_COORDINATOR: "Coordinates BIM models and clash detection",
    ProjectRole.DESIGN_LEAD: "Leads design direction and reviews",
    ProjectRole.DESIGN_MANAGER: "Manages design team and deliverables",
    ProjectRole.DESIGN_TEAM_MEMBER: "Creates and updates design documentation",
    ProjectRole.ENGINEER: "Technical engineering role",
    ProjectRole.EXTERNAL_CONSULTANT: "External advisor or specialist",
    ProjectRole.PROJECT_VIEWER: "View-only access to project resources",
}
