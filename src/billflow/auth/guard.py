"""Role and permission checks for protected pages."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from .models import Identity, UserRole
from .session import IdentitySession

logger = logging.getLogger(__name__)

ROLE_HIERARCHY = {
    UserRole.ADMIN: 4,
    UserRole.MANAGER: 3,
    UserRole.ACCOUNTANT: 2,
    UserRole.EMPLOYEE: 1,
}


@dataclass(frozen=True)
class AccessDecision:
    """Whether a page may render, and the message to show if not."""

    allowed: bool
    reason: str = ""
    pending: bool = False


def has_permission(user: Identity, module: str, action: str) -> bool:
    """Check a ``module.action`` grant, honouring ``module.*`` wildcards."""
    granted = set(user.permissions)
    return f"{module}.{action}" in granted or f"{module}.*" in granted


def check_access(
    session: IdentitySession,
    required_role: UserRole | str | None = None,
    required_permissions: Iterable[str] = (),
    permission_check: Callable[[Identity, str, str], bool] = has_permission,
) -> AccessDecision:
    """Decide whether the current session may see a protected page."""
    if session.loading:
        return AccessDecision(False, "Checking permissions...", pending=True)

    user = session.user
    if user is None:
        return AccessDecision(False, "You must be logged in to access this page.")
    if not user.is_active:
        return AccessDecision(False, "Your account is not activated. Please contact an administrator.")
    if user.role == UserRole.ADMIN:
        return AccessDecision(True)

    if required_role is not None:
        required = UserRole(required_role)
        if ROLE_HIERARCHY[user.role] < ROLE_HIERARCHY[required]:
            logger.info("Role check failed for %s: %s < %s", user.id, user.role.value, required.value)
            return AccessDecision(
                False, f"You don't have permission to access this page. Required role: {required.value}"
            )

    required_permissions = list(required_permissions)
    missing = []
    for permission in required_permissions:
        module, _, action = permission.partition(".")
        if not permission_check(user, module, action):
            missing.append(permission)
    if missing:
        logger.warning("Permission denied for %s: %s", user.id, ", ".join(missing))
        return AccessDecision(
            False,
            "You don't have permission to access this page. "
            f"Required permissions: {', '.join(required_permissions)}",
        )
    return AccessDecision(True)
