from __future__ import annotations

from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from gymauth.storage.models import Role


class PermissionMode(str, Enum):
    ANY = "any"
    ALL = "all"


def check_permissions(
    granted: Iterable[str], required: Sequence[str], mode: PermissionMode = PermissionMode.ANY
) -> bool:
    """True when ``granted`` satisfies ``required`` under ``mode``.

    An empty requirement is always satisfied.
    """
    if not required:
        return True
    held = set(granted)
    if PermissionMode(mode) is PermissionMode.ALL:
        return all(name in held for name in required)
    return any(name in held for name in required)


def missing_permissions(granted: Iterable[str], required: Sequence[str]) -> List[str]:
    held = set(granted)
    return [name for name in required if name not in held]


ADMIN_ROLES: Tuple[str, ...] = (Role.ADMIN.value,)
TRAINER_ROLES: Tuple[str, ...] = (Role.ADMIN.value, Role.TRAINER.value)
MEMBER_ROLES: Tuple[str, ...] = (Role.ADMIN.value, Role.TRAINER.value, Role.MEMBER.value)


def role_allowed(role: str, allowed_roles: Sequence[str]) -> bool:
    return not allowed_roles or role in allowed_roles


# Browser route prefixes and the permissions that open them (ANY semantics).
# Longest prefix wins so nested routes can be stricter than their parent.
ROUTE_PERMISSIONS: Dict[str, List[str]] = {
    "/members": ["members.view"],
    "/plans": ["plans.view"],
    "/memberships": ["memberships.view"],
    "/memberships/bulk-import": ["memberships.bulk_import"],
    "/reporting": ["reports.view"],
    "/settings": ["settings.view"],
    "/users": ["users.view"],
    "/profile": ["profile.view"],
}

PUBLIC_ROUTES: Tuple[str, ...] = ("/login", "/logout", "/setup", "/unauthorized")


def _matches(path: str, prefix: str) -> bool:
    return path == prefix or path.startswith(prefix.rstrip("/") + "/")


def is_public_route(path: str, public_routes: Sequence[str] = PUBLIC_ROUTES) -> bool:
    return any(_matches(path, prefix) for prefix in public_routes)


def route_permissions(
    path: str, table: Dict[str, List[str]] = ROUTE_PERMISSIONS
) -> Optional[List[str]]:
    """Permissions guarding ``path``; None when the route only needs a login."""
    best: Optional[str] = None
    for prefix in table:
        if _matches(path, prefix) and (best is None or len(prefix) > len(best)):
            best = prefix
    return list(table[best]) if best is not None else None
