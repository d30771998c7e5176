from datetime import datetime
import json

from campusmarket.extensions import db


class Notification(db.Model):
    """In-app bell entry. Push/email delivery happens outside this service."""

    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    # ORDER_PLACED | NEW_ORDER | ORDER_UPDATE | PAYMENT | DISPUTE | PENALTY | WITHDRAWAL | ...
    kind = db.Column(db.String(32), nullable=False, default="GENERAL")
    title = db.Column(db.String(160), nullable=True)
    message = db.Column(db.Text, nullable=False)

    order_id = db.Column(db.Integer, nullable=True, index=True)
    dispute_id = db.Column(db.Integer, nullable=True, index=True)

    is_read = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    read_at = db.Column(db.DateTime, nullable=True)

    meta = db.Column(db.Text, nullable=True)  # JSON string

    def meta_dict(self):
        raw = (self.meta or "").strip()
        if not raw:
            return {}
        try:
            data = json.loads(raw)
            return data if isinstance(data, dict) else {}
        except Exception:
            return {}

    def mark_read(self, read_at: datetime | None = None) -> datetime:
        stamped = read_at or datetime.utcnow()
        self.is_read = True
        self.read_at = stamped
        return stamped

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "kind": self.kind or "GENERAL",
            "title": self.title or "",
            "message": self.message or "",
            "order_id": self.order_id,
            "dispute_id": self.dispute_id,
            "is_read": bool(self.is_read),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "meta": self.meta_dict(),
        }
