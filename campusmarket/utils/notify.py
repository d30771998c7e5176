from __future__ import annotations

import json

from flask import current_app

from campusmarket.extensions import db
from campusmarket.models import Notification
from campusmarket.utils.observability import get_request_id


class Outbox:
    """Notifications collected during a ledger unit, sent after it commits."""

    def __init__(self):
        self.items: list[dict] = []

    def add(
        self,
        user_id: int | None,
        kind: str,
        title: str,
        message: str,
        *,
        order_id: int | None = None,
        dispute_id: int | None = None,
        meta: dict | None = None,
    ) -> None:
        if user_id is None:
            return
        self.items.append(
            {
                "user_id": int(user_id),
                "kind": kind,
                "title": title,
                "message": message,
                "order_id": order_id,
                "dispute_id": dispute_id,
                "meta": meta or {},
            }
        )

    def __len__(self):
        return len(self.items)


def write_notifications(items: list[dict]) -> int:
    """Insert in-app rows one at a time; a bad row never blocks the rest."""
    written = 0
    for item in items or []:
        try:
            db.session.add(
                Notification(
                    user_id=int(item["user_id"]),
                    kind=str(item.get("kind") or "GENERAL")[:32],
                    title=str(item.get("title") or "")[:160],
                    message=str(item.get("message") or ""),
                    order_id=item.get("order_id"),
                    dispute_id=item.get("dispute_id"),
                    meta=json.dumps(item.get("meta") or {}, separators=(",", ":")),
                )
            )
            db.session.commit()
            written += 1
        except Exception as e:
            db.session.rollback()
            current_app.logger.warning(
                "notification_write_failed user_id=%s kind=%s err=%s",
                item.get("user_id"),
                item.get("kind"),
                e,
            )
    return written


def dispatch(outbox: Outbox) -> int:
    """Fire-and-forget fan-out. Call only after the money-moving unit committed."""
    if not outbox or not len(outbox):
        return 0
    items = list(outbox.items)
    outbox.items = []
    if bool(current_app.config.get("NOTIFICATIONS_ASYNC")):
        try:
            from campusmarket.tasks.notification_tasks import deliver_notifications

            deliver_notifications.delay(items=items, trace_id=get_request_id())
            return len(items)
        except Exception as e:
            current_app.logger.warning("notification_enqueue_failed count=%s err=%s", len(items), e)
    return write_notifications(items)


def notify_admins(outbox: Outbox, kind: str, title: str, message: str, **kwargs) -> None:
    from campusmarket.models import User

    for admin in User.query.filter_by(role="admin").all():
        outbox.add(admin.id, kind, title, message, **kwargs)
