"""Pointflow — User Context

Immutable dataclasses that carry the caller's identity through the request
lifecycle. Supplied once per request by the authentication layer and never
mutated afterwards.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from .policy import to_project_role, to_role
from .roles import Role, ProjectRole, ADMINISTRATOR_ROLE


@dataclass(frozen=True)
class CurrentUserContext:
    """Resolved per-request. Immutable for the duration of the request."""
    id: str
    email: str
    roles: frozenset[Role]
    name: str = ""
    company_id: Optional[str] = None
    project_ids: frozenset[str] = frozenset()
    project_roles: Mapping[str, ProjectRole] = field(default_factory=dict)

    def __post_init__(self):
        # Coerce loose inputs so an unknown role fails here, not at check time
        object.__setattr__(self, "roles", frozenset(to_role(r) for r in self.roles))
        object.__setattr__(self, "project_ids", frozenset(self.project_ids))
        object.__setattr__(self, "project_roles", MappingProxyType({
            pid: to_project_role(role) for pid, role in dict(self.project_roles).items()
        }))

    @property
    def is_administrator(self) -> bool:
        return ADMINISTRATOR_ROLE in self.roles

    def project_role(self, project_id: Optional[str]) -> Optional[ProjectRole]:
        """Shortcut: role held in one project, if any."""
        if not project_id:
            return None
        return self.project_roles.get(project_id)


def make_user_context(
    user_id: str,
    email: str,
    roles: Iterable[str],
    name: str = "",
    company_id: Optional[str] = None,
    project_roles: Optional[Mapping[str, str]] = None,
    project_ids: Optional[Iterable[str]] = None,
) -> CurrentUserContext:
    """Build a context from raw storage values.

    Membership in a project with a project role implies project access, so
    project_ids defaults to the keys of project_roles.
    """
    project_roles = dict(project_roles or {})
    ids = set(project_ids or ()) | set(project_roles)
    return CurrentUserContext(
        id=user_id,
        email=email,
        name=name,
        roles=frozenset(roles),
        company_id=company_id,
        project_ids=frozenset(ids),
        project_roles=project_roles,
    )


# --- Assignment references ---

class AssignmentKind(str, Enum):
    USER = "user"
    ATTENDEE = "attendee"
    COMPANY = "company"
    LEGACY = "legacy"


@dataclass(frozen=True)
class AssignmentReference:
    """Who a point is assigned to.

    Canonical forms are `user:<id>`, `attendee:<id>` and `company:<name>`.
    Anything else is a legacy free-text name or email.
    """
    kind: AssignmentKind
    value: str
    raw: str

    @classmethod
    def parse(cls, ref: Optional[str]) -> Optional["AssignmentReference"]:
        if not ref:
            return None
        tag, sep, value = ref.partition(":")
        if sep:
            for kind in (AssignmentKind.USER, AssignmentKind.ATTENDEE, AssignmentKind.COMPANY):
                if tag == kind.value:
                    return cls(kind=kind, value=value, raw=ref)
        return cls(kind=AssignmentKind.LEGACY, value=ref, raw=ref)

    @classmethod
    def for_user(cls, user_id: str) -> "AssignmentReference":
        return cls(kind=AssignmentKind.USER, value=user_id, raw=f"user:{user_id}")

    def designates(self, user: CurrentUserContext) -> bool:
        """Does this reference point at `user`?

        A `user:` tag decides on its own. Otherwise the legacy fallback applies:
        the user's email appearing anywhere in the raw reference counts as a
        match. That fallback is loose (one email can be a substring of another)
        and is kept only for rows written before canonical references existed.
        """
        if self.kind == AssignmentKind.USER:
            return self.value == user.id
        if not user.email:
            return False
        return user.email in self.raw
