"""auth/access.py -- Role to capability mapping.

The single place that answers "may this role do X". Route dependencies and
any page-level code consult can_access() instead of comparing role strings.
"""

from __future__ import annotations

from enum import Enum

from auth.models import Role


class Capability(str, Enum):
    VIEW_CONTACT_INFO = "view_contact_info"
    SUBMIT_REVIEWS = "submit_reviews"
    ACCESS_ADMIN = "access_admin"


_GRANTS: dict[Role, frozenset[Capability]] = {
    Role.VISITOR: frozenset(),
    Role.WHITELISTED: frozenset({Capability.VIEW_CONTACT_INFO, Capability.SUBMIT_REVIEWS}),
    Role.ADMIN: frozenset(Capability),
}


def can_access(role: Role | str, capability: Capability | str) -> bool:
    try:
        return Capability(capability) in _GRANTS[Role(role)]
    except ValueError:
        return False


def capabilities_for(role: Role) -> dict[str, bool]:
    """Flag map for UI consumers, e.g. {"access_admin": False, ...}."""
    return {cap.value: can_access(role, cap) for cap in Capability}
