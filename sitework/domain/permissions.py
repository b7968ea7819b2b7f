from __future__ import annotations

import os
from typing import Any

ROLE_SUPER_ADMIN = "SuperAdmin"
ROLE_PLATFORM_ADMIN = "PlatformAdmin"

PLATFORM_OVERRIDE_ROLES = frozenset(
    item.strip()
    for item in os.getenv("PLATFORM_OVERRIDE_ROLES", f"{ROLE_SUPER_ADMIN},{ROLE_PLATFORM_ADMIN}").split(",")
    if item.strip()
)


def claim_roles(claims: dict[str, Any]) -> frozenset[str]:
    roles = claims.get("roles", [])
    if not isinstance(roles, list):
        return frozenset()
    return frozenset(str(item) for item in roles)


def has_platform_override(roles: frozenset[str] | set[str]) -> bool:
    return not PLATFORM_OVERRIDE_ROLES.isdisjoint(roles)
