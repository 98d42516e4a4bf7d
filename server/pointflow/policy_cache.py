"""Pointflow — Effective Policy Cache

The effective matrix is the default matrix with every admin override applied.
It is read on every permission check and rewritten only when overrides
change, so it is published copy-on-write:

- writers build a complete new matrix off to the side, then swap the single
  `_matrix` reference (writers serialize on a lock among themselves)
- readers grab the reference once and never lock
- a published matrix is a read-only mapping of frozensets and is never
  modified in place
"""

import threading
from types import MappingProxyType
from typing import Iterable, Mapping

from .errors import InvariantViolation
from .logging_config import get_logger
from .models import PolicyOverride
from .policy import ALL_PERMISSION_ACTIONS, DEFAULT_PERMISSION_MATRIX, PermissionAction
from .roles import Role

logger = get_logger(__name__)

EffectiveMatrix = Mapping[PermissionAction, frozenset[Role]]


def build_effective_matrix(overrides: Iterable[PolicyOverride] = ()) -> EffectiveMatrix:
    """Rebuild the effective matrix from the defaults.

    Always starts from scratch so the result never depends on what was
    published before. Overrides apply in order: a later override for the
    same (role, action) replaces an earlier one.
    """
    working: dict[PermissionAction, set[Role]] = {
        action: set(DEFAULT_PERMISSION_MATRIX[action]) for action in ALL_PERMISSION_ACTIONS
    }
    for override in overrides:
        if override.enabled:
            working[override.action].add(override.role)
        else:
            working[override.action].discard(override.role)
    return MappingProxyType({action: frozenset(roles) for action, roles in working.items()})


class EffectivePolicyCache:
    """Single owner of the process-wide effective matrix."""

    def __init__(self):
        self._write_lock = threading.Lock()
        self._reload_lock = threading.Lock()
        self._matrix: EffectiveMatrix = build_effective_matrix()

    def resolve(self, action: PermissionAction) -> frozenset[Role]:
        """Roles allowed `action` right now."""
        matrix = self._matrix
        try:
            return matrix[action]
        except KeyError:
            raise InvariantViolation(f"Effective matrix has no entry for action {action!r}")

    def snapshot(self) -> EffectiveMatrix:
        """The currently published matrix (safe to hold; it never changes)."""
        return self._matrix

    def replace(self, matrix: Mapping[PermissionAction, Iterable[Role]]) -> None:
        missing = [a.value for a in ALL_PERMISSION_ACTIONS if a not in matrix]
        if missing:
            raise InvariantViolation(f"Effective matrix missing actions: {', '.join(missing)}")
        frozen = MappingProxyType({a: frozenset(matrix[a]) for a in ALL_PERMISSION_ACTIONS})
        with self._write_lock:
            self._matrix = frozen

    def rebuild(self, overrides: Iterable[PolicyOverride]) -> EffectiveMatrix:
        overrides = list(overrides)
        matrix = build_effective_matrix(overrides)
        with self._write_lock:
            self._matrix = matrix
        logger.info("Effective permission matrix rebuilt from %d override(s)", len(overrides))
        return matrix

    def reload(self, repository) -> int:
        """Re-read the committed overrides and publish them as one step.

        Reloads serialize, so a reload that read older storage can never
        publish after one that read newer storage.
        """
        with self._reload_lock:
            overrides = repository.get_policy_overrides()
            self.rebuild(overrides)
        return len(overrides)

    def reset(self) -> None:
        """Back to pure defaults."""
        self.rebuild(())


policy_cache = EffectivePolicyCache()


def update_effective_matrix(overrides: Iterable[PolicyOverride]) -> EffectiveMatrix:
    """Publish a matrix built from the given overrides."""
    return policy_cache.rebuild(overrides)


def reload_effective_matrix(repository) -> int:
    """Rebuild the process-wide matrix from what storage holds now. Call after every override write."""
    return policy_cache.reload(repository)


def get_effective_matrix() -> EffectiveMatrix:
    return policy_cache.snapshot()


def load_policy_overrides(repository) -> int:
    """Load persisted overrides into the process-wide cache.

    A failure here must not stop the service from starting: the defaults
    stay in force and the problem is logged. Returns the number of overrides
    applied (0 on failure).
    """
    try:
        count = policy_cache.reload(repository)
    except Exception as e:
        logger.warning("Failed to load role permission overrides, using defaults: %s", e)
        policy_cache.reset()
        return 0
    logger.info("Loaded %d role permission override(s) from storage", count)
    return count
