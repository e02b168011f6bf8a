"""Role/tier/action permission table.

Every approval and billing operation consults this table exactly once, with
the actor's effective role for the project concerned.
"""

from __future__ import annotations

from enum import Enum

from timesheet_billing.errors import AuthorizationError
from timesheet_billing.services.state_machine import Tier


class Role(str, Enum):
    """Directory and project roles."""

    EMPLOYEE = "employee"
    LEAD = "lead"
    MANAGER = "manager"
    MANAGEMENT = "management"
    SUPER_ADMIN = "super_admin"


class Action(str, Enum):
    """Actions gated by role."""

    APPROVE = "approve"
    REJECT = "reject"
    BULK_APPROVE = "bulk_approve"
    BULK_REJECT = "bulk_reject"
    ADJUST = "adjust"
    SNAPSHOT = "snapshot"
    BILL = "bill"
    MANAGE_RATES = "manage_rates"
    VIEW_BILLING = "view_billing"


# Roles whose global role outranks any project membership role
GLOBAL_ROLES = {Role.MANAGEMENT, Role.SUPER_ADMIN}

_REVIEW_ACTIONS = (Action.APPROVE, Action.REJECT, Action.BULK_APPROVE, Action.BULK_REJECT)

_TIER_REVIEWERS: dict[Tier, tuple[Role, ...]] = {
    Tier.LEAD: (Role.LEAD, Role.MANAGER, Role.SUPER_ADMIN),
    Tier.MANAGER: (Role.MANAGER, Role.SUPER_ADMIN),
    Tier.MANAGEMENT: (Role.MANAGEMENT, Role.SUPER_ADMIN),
}

_BILLING_ACTORS: dict[Action, tuple[Role, ...]] = {
    Action.ADJUST: (Role.MANAGER, Role.MANAGEMENT, Role.SUPER_ADMIN),
    Action.SNAPSHOT: (Role.MANAGEMENT, Role.SUPER_ADMIN),
    Action.BILL: (Role.MANAGEMENT, Role.SUPER_ADMIN),
    Action.MANAGE_RATES: (Role.MANAGEMENT, Role.SUPER_ADMIN),
    Action.VIEW_BILLING: (Role.MANAGER, Role.MANAGEMENT, Role.SUPER_ADMIN),
}

# (role, tier or None, action) triples; billing actions carry no tier
ALLOWED: frozenset[tuple[str, str | None, str]] = frozenset(
    {
        (role.value, tier.value, action.value)
        for tier, roles in _TIER_REVIEWERS.items()
        for role in roles
        for action in _REVIEW_ACTIONS
    }
    | {
        (role.value, None, action.value)
        for action, roles in _BILLING_ACTORS.items()
        for role in roles
    }
)


def _value(item: str | Enum | None) -> str | None:
    if item is None:
        return None
    return item.value if isinstance(item, Enum) else item


def is_allowed(role: str | None, action: str, tier: str | None = None) -> bool:
    """Check whether a role may perform an action (at a tier)."""
    if role is None:
        return False
    return (_value(role), _value(tier), _value(action)) in ALLOWED


def authorize(role: str | None, action: str, tier: str | None = None) -> None:
    """Raise AuthorizationError unless the triple is allowed."""
    if not is_allowed(role, action, tier):
        where = f" at {_value(tier)} tier" if tier is not None else ""
        raise AuthorizationError(
            f"Role '{_value(role)}' may not {_value(action)}{where}",
            {"role": _value(role), "action": _value(action), "tier": _value(tier)},
        )


def effective_role(global_role: str, project_role: str | None) -> str | None:
    """Role an actor holds for one project.

    Management and super admins act with their global role everywhere;
    everyone else acts with their project membership role, or none at all
    when they are not a member.
    """
    if global_role in GLOBAL_ROLES:
        return global_role
    return project_role


def tiers_for_role(role: str | None) -> list[Tier]:
    """Tiers a role may review, lowest first."""
    return [tier for tier in Tier if is_allowed(role, Action.APPROVE, tier)]
