"""Input validation schemas for the Pointflow API."""

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import Optional

from .models import CloseMode, ContainerKind, ContainerRef, PolicyOverride
from .policy import PermissionAction
from .roles import Role


# === Closure Schemas ===

class CloseRequest(BaseModel):
    mode: CloseMode = Field(...,
                            description="'move' re-parents unresolved points, 'close' force-closes them")
    target_meeting_id: Optional[str] = Field(None, max_length=64,
                                             description="Meeting receiving moved points")
    target_series_id: Optional[str] = Field(None, max_length=64,
                                            description="Series receiving moved points")

    @field_validator('mode', mode='before')
    @classmethod
    def validate_mode(cls, v):
        if isinstance(v, str):
            v = v.strip().lower()
            if v not in {m.value for m in CloseMode}:
                raise ValueError("Invalid mode. Must be 'move' or 'close'")
        return v

    @field_validator('target_meeting_id', 'target_series_id')
    @classmethod
    def blank_to_none(cls, v):
        if v is not None and not v.strip():
            return None
        return v

    @model_validator(mode='after')
    def at_most_one_target(self):
        if self.target_meeting_id and self.target_series_id:
            raise ValueError("Specify target_meeting_id or target_series_id, not both")
        return self

    @property
    def target(self) -> Optional[ContainerRef]:
        if self.target_meeting_id:
            return ContainerRef(ContainerKind.MEETING, self.target_meeting_id)
        if self.target_series_id:
            return ContainerRef(ContainerKind.SERIES, self.target_series_id)
        return None


# === Role Permission Schemas ===

class RolePermissionIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    role: Role = Field(..., description="Global role name, e.g. DESIGN_MANAGER")
    action: PermissionAction = Field(..., description="Permission action, e.g. meetings:close")
    is_enabled: bool = Field(..., alias="isEnabled",
                             description="True adds the role to the action, False removes it")

    def to_override(self) -> PolicyOverride:
        return PolicyOverride(role=self.role, action=self.action, enabled=self.is_enabled)


class RolePermissionsUpdate(BaseModel):
    permissions: list[RolePermissionIn] = Field(..., max_length=500,
                                                description="Overrides applied in order; last one wins")

    @field_validator('permissions')
    @classmethod
    def not_empty(cls, v):
        if not v:
            raise ValueError('permissions must contain at least one entry')
        return v
