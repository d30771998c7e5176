from __future__ import annotations

from flask import g, request

from campusmarket.extensions import db
from campusmarket.models import User
from campusmarket.services.errors import AuthenticationRequired, NotAuthorized
from campusmarket.utils.jwt_utils import decode_token, get_bearer_token


def role_of(user: User | None) -> str:
    if not user:
        return "guest"
    return (getattr(user, "role", None) or "buyer").strip().lower()


def current_user() -> User | None:
    token = get_bearer_token(request.headers.get("Authorization", ""))
    if not token:
        return None
    payload = decode_token(token)
    if not payload:
        return None
    try:
        uid = int(payload.get("sub"))
    except (TypeError, ValueError):
        return None
    return db.session.get(User, uid)


def require_user(*roles: str) -> User:
    """Resolve the bearer token to an active user, optionally restricted to roles."""
    user = current_user()
    if user is None:
        raise AuthenticationRequired("Please sign in to continue.")
    if user.suspension_active():
        raise NotAuthorized(
            "Your account is suspended.",
            code="ACCOUNT_SUSPENDED",
            details={"suspension_reason": user.suspension_reason or ""},
        )
    if roles and role_of(user) not in roles:
        raise NotAuthorized("You do not have access to this action.", code="ROLE_FORBIDDEN")
    g.auth_user_id = int(user.id)
    g.auth_role = role_of(user)
    return user
