from __future__ import annotations

from flask import Blueprint, jsonify

from campusmarket.extensions import db
from campusmarket.models import Notification
from campusmarket.services.errors import NotFound
from campusmarket.utils.auth import require_user

notifications_bp = Blueprint("notifications_bp", __name__, url_prefix="/api")


@notifications_bp.get("/notifications")
def list_notifications():
    user = require_user()
    rows = (
        Notification.query.filter_by(user_id=user.id)
        .order_by(Notification.created_at.desc())
        .limit(80)
        .all()
    )
    unread = Notification.query.filter_by(user_id=user.id, is_read=False).count()
    return jsonify({"ok": True, "unread": unread, "items": [x.to_dict() for x in rows]}), 200


@notifications_bp.post("/notifications/<notification_id>/read")
def mark_notification_read(notification_id: str):
    user = require_user()
    try:
        notif_id = int(str(notification_id).strip())
    except ValueError:
        raise NotFound("Notification not found.", code="NOTIFICATION_NOT_FOUND")

    row = Notification.query.filter_by(id=notif_id, user_id=int(user.id)).first()
    if not row:
        raise NotFound("Notification not found.", code="NOTIFICATION_NOT_FOUND")

    try:
        stamped = row.mark_read()
        db.session.add(row)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return jsonify({"ok": True, "id": int(row.id), "is_read": True, "read_at": stamped.isoformat()}), 200
