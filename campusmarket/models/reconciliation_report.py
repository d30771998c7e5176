from datetime import datetime
import json

from campusmarket.extensions import db


class ReconciliationReport(db.Model):
    """Snapshot of one ledger replay, kept for audit."""

    __tablename__ = "reconciliation_reports"

    id = db.Column(db.Integer, primary_key=True)
    user_count = db.Column(db.Integer, nullable=False, default=0)
    drift_count = db.Column(db.Integer, nullable=False, default=0)
    tolerance = db.Column(db.Float, nullable=False, default=0.01)
    total_drift = db.Column(db.Float, nullable=False, default=0.0)
    summary_json = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def drift_items(self) -> list:
        try:
            summary = json.loads(self.summary_json or "{}")
        except Exception:
            return []
        items = summary.get("drift_items") if isinstance(summary, dict) else None
        return items if isinstance(items, list) else []

    def to_dict(self):
        return {
            "id": int(self.id),
            "clean": int(self.drift_count or 0) == 0,
            "user_count": int(self.user_count or 0),
            "drift_count": int(self.drift_count or 0),
            "tolerance": float(self.tolerance or 0.0),
            "total_drift": float(self.total_drift or 0.0),
            "drift_items": self.drift_items(),
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
