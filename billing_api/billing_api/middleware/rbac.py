"""Role-based access control for billing endpoints.

Defines a four-tier role hierarchy (VIEWER, MEMBER, ADMIN, OWNER).  Each
role inherits the capabilities of the roles below it.

Usage in routers::

    from billing_api.middleware.rbac import Role, require_role

    @router.post("/subscription/cancel")
    async def cancel(
        ...,
        _role: Role = Depends(require_role(Role.ADMIN)),
    ) -> ...:
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import IntEnum

from fastapi import Depends, HTTPException, Request

logger = logging.getLogger(__name__)


class Role(IntEnum):
    """User roles ordered by privilege level (higher int = more authority)."""

    VIEWER = 0
    MEMBER = 1
    ADMIN = 2
    OWNER = 3


_ROLE_LOOKUP: dict[str, Role] = {r.name.lower(): r for r in Role}


def parse_role(raw: str) -> Role:
    """Convert a role header value into a :class:`Role`.

    Raises :class:`ValueError` if the string does not map to a known role.
    """
    try:
        return _ROLE_LOOKUP[raw.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown role '{raw}'. Valid roles: {sorted(_ROLE_LOOKUP)}")


def get_user_role(request: Request) -> Role:
    """Extract and validate the caller's role from ``request.state.role``.

    Requests without a role header get the least-privileged ``VIEWER``
    role.

    Raises
    ------
    HTTPException(403)
        If the role value is not a recognised role.
    """
    raw_role: str | None = getattr(request.state, "role", None)
    if raw_role is None:
        return Role.VIEWER

    try:
        return parse_role(raw_role)
    except ValueError:
        logger.warning("Unrecognised role '%s'; denying access", raw_role)
        raise HTTPException(
            status_code=403,
            detail=f"Unrecognised role '{raw_role}'. Valid roles: {sorted(_ROLE_LOOKUP)}",
        )


def require_role(min_role: Role) -> Callable[..., Role]:
    """Return a FastAPI dependency that enforces a minimum role level."""

    def _guard(role: Role = Depends(get_user_role)) -> Role:
        if role < min_role:
            logger.info(
                "Role check failed: has=%s, required=%s",
                role.name,
                min_role.name,
            )
            raise HTTPException(
                status_code=403,
                detail=f"Insufficient role: '{role.name.lower()}' requires at least '{min_role.name.lower()}'",
            )
        return role

    return _guard
