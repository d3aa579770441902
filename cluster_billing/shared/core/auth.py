"""
Caller identity.

Authentication happens at the ingress gateway, which forwards the verified
user id in `X-UserId` and the user's roles in `X-User-Roles`.
"""

from typing import Optional

import structlog
from fastapi import Depends, Header, Query
from pydantic import BaseModel, Field

from cluster_billing.shared.core.config import get_settings
from cluster_billing.shared.core.exceptions import AuthError

logger = structlog.get_logger()


class CurrentUser(BaseModel):
    """Represents the caller as forwarded by the gateway."""

    id: str
    roles: list[str] = Field(default_factory=list)

    def has_role(self, role: str) -> bool:
        return role in self.roles


def parse_roles(raw: Optional[str]) -> list[str]:
    if not raw:
        return []
    return [role.strip() for role in raw.split(",") if role.strip()]


async def get_current_user(
    x_user_id: Optional[str] = Header(default=None, alias="X-UserId"),
    x_user_roles: Optional[str] = Header(default=None, alias="X-User-Roles"),
) -> CurrentUser:
    if not x_user_id or not x_user_id.strip():
        raise AuthError("missing user identity")
    return CurrentUser(id=x_user_id.strip(), roles=parse_roles(x_user_roles))


async def get_billing_subject(
    for_user: Optional[str] = Query(default=None),
    user: CurrentUser = Depends(get_current_user),
) -> str:
    """
    The user whose billing data is requested: the caller, or `for_user`
    when the caller holds the admin role.
    """
    if not for_user:
        return user.id
    admin_role = get_settings().ADMIN_ROLE
    if not user.has_role(admin_role):
        logger.warning(
            "insufficient_permissions",
            user_id=user.id,
            required_role=admin_role,
            for_user=for_user,
        )
        raise AuthError("forbidden", status_code=403)
    return for_user
