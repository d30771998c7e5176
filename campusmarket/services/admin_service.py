from __future__ import annotations

from datetime import datetime, timedelta

from campusmarket.models import User
from campusmarket.services.errors import ValidationFailed
from campusmarket.services.ledger_service import lock_user, transaction_scope
from campusmarket.utils.events import log_event
from campusmarket.utils.notify import Outbox, dispatch


def suspend_user(admin: User, user_id, payload: dict) -> User:
    payload = payload or {}
    reason = (payload.get("reason") or "").strip()
    if not reason:
        raise ValidationFailed("A suspension reason is required.", code="SUSPENSION_REASON_REQUIRED")
    try:
        days = int(payload.get("days") or 0)
    except (TypeError, ValueError):
        raise ValidationFailed("Days must be a whole number.", code="INVALID_SUSPENSION_DAYS")
    if days < 0:
        raise ValidationFailed("Days cannot be negative.", code="INVALID_SUSPENSION_DAYS")
    try:
        uid = int(user_id)
    except (TypeError, ValueError):
        raise ValidationFailed("User ID must be a number.", code="USER_ID_INVALID")

    outbox = Outbox()
    with transaction_scope("admin_suspend_user"):
        user = lock_user(uid)
        user.is_suspended = True
        # zero days means until lifted by an admin
        user.suspended_until = datetime.utcnow() + timedelta(days=days) if days else None
        user.suspension_reason = reason[:240]
        log_event(
            "user_suspended",
            actor_user_id=admin.id,
            subject_type="user",
            subject_id=user.id,
            severity="WARN",
            metadata={"days": days, "reason": reason[:240]},
        )
        outbox.add(user.id, "PENALTY", "Account Suspended", f"Your account has been suspended: {reason[:200]}")
    dispatch(outbox)
    return user
