"""
Role hierarchy checks.

Roles form a strict total order (see models.Role), so every decision is a
rank comparison. Unknown or ambiguous role values are always denied.
"""
from typing import Any

from iam_service.auth.models import Role


class RoleAuthority:
    """Pure authorization decisions over the role hierarchy."""

    @staticmethod
    def authorize(actor_role: Any, required_role: Any) -> bool:
        """True iff the actor's rank is at least the required rank."""
        actor = Role.parse(actor_role)
        required = Role.parse(required_role)
        if actor is None or required is None:
            return False
        return actor >= required

    @staticmethod
    def can_assign(actor_role: Any, current_target_role: Any, requested_role: Any) -> bool:
        """
        Decide whether an actor may move a target from one role to another.

        The actor must strictly outrank both the target's current role and
        the requested role: nobody grants a role equal to or above their
        own, and nobody modifies a peer or a superior.
        """
        actor = Role.parse(actor_role)
        current = Role.parse(current_target_role)
        requested = Role.parse(requested_role)
        if actor is None or current is None or requested is None:
            return False
        return actor > current and actor > requested

    @staticmethod
    def can_manage(actor_role: Any, target_role: Any) -> bool:
        """True iff the actor strictly outranks the target."""
        actor = Role.parse(actor_role)
        target = Role.parse(target_role)
        if actor is None or target is None:
            return False
        return actor > target
