"""Request identity.

Sign-in lives in the upstream auth service; it forwards the authenticated
user as ``X-User-Id`` / ``X-User-Role`` headers.
"""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header

from errors import AuthenticationError, ForbiddenError

ROLES = ("customer", "seller", "admin")


@dataclass(frozen=True)
class Identity:
    user_id: str
    role: str = "customer"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def is_staff(self) -> bool:
        return self.role in ("admin", "seller")


def get_current_user(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Identity:
    if not x_user_id:
        raise AuthenticationError()
    role = (x_user_role or "customer").lower()
    if role not in ROLES:
        raise ForbiddenError(f"Unknown role: {role}")
    return Identity(user_id=x_user_id, role=role)


def require_admin(user: Identity = Depends(get_current_user)) -> Identity:
    if not user.is_admin:
        raise ForbiddenError()
    return user


def require_staff(user: Identity = Depends(get_current_user)) -> Identity:
    if not user.is_staff:
        raise ForbiddenError()
    return user


def ensure_owner_or_admin(order: dict, user: Identity, message: str = "Not authorized to view this order") -> None:
    if str(order.get("user")) != user.user_id and not user.is_admin:
        raise ForbiddenError(message)


def ensure_owner(order: dict, user: Identity) -> None:
    if str(order.get("user")) != user.user_id:
        raise ForbiddenError()
