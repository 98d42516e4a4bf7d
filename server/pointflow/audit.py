"""Pointflow — Audit

Two kinds of trail:
- StatusUpdate rows on each point touched by a closure. These are part of
  the closure's transaction and fail with it.
- One operation record per close/reopen, written to the audit logger after
  the transaction commits. Audit logging must never break the operation.
"""

from datetime import date
from typing import Optional

from .logging_config import get_logger
from .models import ContainerKind, StatusUpdate
from .user_context import CurrentUserContext

logger = get_logger(__name__)

_KIND_WORDS = {
    ContainerKind.MEETING: "meeting",
    ContainerKind.SERIES: "series",
    ContainerKind.OCCURRENCE: "occurrence",
}


def describe_move(source_kind: ContainerKind, source_title: str,
                  target_kind: ContainerKind, target_title: Optional[str]) -> str:
    return (
        f'Point moved from closed {_KIND_WORDS[source_kind]} "{source_title}" '
        f'to {_KIND_WORDS[target_kind]} "{target_title or "Unknown"}"'
    )


def describe_forced_close(source_kind: ContainerKind) -> str:
    return f"Closed with {_KIND_WORDS[source_kind]}"


def system_status_update(point_id: str, text: str, actor: str, on: date) -> StatusUpdate:
    """A history row attributed to the system actor rather than a person."""
    return StatusUpdate(point_id=point_id, date=on.isoformat(), status=text, action_on=actor)


def log_audit(
    user: CurrentUserContext,
    operation: str,
    entity_type: str,
    entity_id: str,
    detail: Optional[str] = None,
) -> None:
    """Record one operation in the audit log.

    Parameters:
        user: The acting user
        operation: e.g. 'close', 'reopen', 'update_overrides'
        entity_type: One of 'meeting', 'series', 'occurrence', 'role_permission'
        entity_id: ID of the entity
        detail: Optional free-text context (truncated to 500 chars)
    """
    try:
        logger.info(
            "audit %s %s %s by %s%s",
            operation, entity_type, entity_id, user.email or user.id,
            f": {detail[:500]}" if detail else "",
            extra={
                "audit_user_id": user.id,
                "audit_operation": operation,
                "audit_entity_type": entity_type,
                "audit_entity_id": entity_id,
            },
        )
    except Exception as e:
        # Audit failure must never break the main operation
        logger.error("Failed to write audit log: %s", e, exc_info=True)
