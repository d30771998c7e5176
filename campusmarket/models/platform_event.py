from datetime import datetime
import json

from campusmarket.extensions import db


class PlatformEvent(db.Model):
    """Audit trail of money-moving and moderation events."""

    __tablename__ = "platform_events"

    id = db.Column(db.Integer, primary_key=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    event_type = db.Column(db.String(80), nullable=False, index=True)
    actor_user_id = db.Column(db.Integer, nullable=True, index=True)

    # order | dispute | user
    subject_type = db.Column(db.String(40), nullable=True, index=True)
    subject_id = db.Column(db.String(120), nullable=True, index=True)

    request_id = db.Column(db.String(80), nullable=True)
    idempotency_key = db.Column(db.String(180), nullable=True, unique=True, index=True)

    severity = db.Column(db.String(16), nullable=False, default="INFO")
    metadata_json = db.Column(db.Text, nullable=True)

    def metadata_dict(self) -> dict:
        try:
            parsed = json.loads(self.metadata_json or "{}")
        except Exception:
            return {"raw": str(self.metadata_json)}
        return parsed if isinstance(parsed, dict) else {"raw": parsed}

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "event_type": self.event_type or "",
            "actor_user_id": self.actor_user_id,
            "subject": f"{self.subject_type or ''}:{self.subject_id or ''}",
            "request_id": self.request_id or "",
            "severity": self.severity or "INFO",
            "metadata": self.metadata_dict(),
        }
