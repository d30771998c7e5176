from datetime import datetime
from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash

from campusmarket.extensions import db


class User(db.Model, UserMixin):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(120), nullable=False, default="")
    email = db.Column(db.String(255), unique=True, index=True, nullable=False)
    phone = db.Column(db.String(32), unique=True, index=True, nullable=True)

    password_hash = db.Column(db.String(255), nullable=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    # buyer | seller | rider | admin
    role = db.Column(db.String(32), nullable=False, default="buyer")

    # Wallet. Only ledger_service may write these two columns.
    available_balance = db.Column(db.Float, nullable=False, default=0.0)
    pending_balance = db.Column(db.Float, nullable=False, default=0.0)

    # Campus delivery address snapshot copied onto orders
    hostel_name = db.Column(db.String(120), nullable=True)
    room_number = db.Column(db.String(32), nullable=True)
    landmark = db.Column(db.String(160), nullable=True)

    # Rider stats
    completed_deliveries = db.Column(db.Integer, nullable=False, default=0)

    # Moderation
    penalty_points = db.Column(db.Integer, nullable=False, default=0)
    warning_count = db.Column(db.Integer, nullable=False, default=0)
    last_warning_at = db.Column(db.DateTime, nullable=True)
    is_suspended = db.Column(db.Boolean, nullable=False, default=False)
    suspended_until = db.Column(db.DateTime, nullable=True)
    suspension_reason = db.Column(db.String(240), nullable=True)

    def set_password(self, raw_password: str) -> None:
        self.password_hash = generate_password_hash(raw_password)

    def check_password(self, raw_password: str) -> bool:
        return check_password_hash(self.password_hash, raw_password)

    def suspension_active(self, now: datetime | None = None) -> bool:
        if not self.is_suspended:
            return False
        if self.suspended_until is None:
            return True
        return (now or datetime.utcnow()) < self.suspended_until

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": getattr(self, "phone", None),
            "role": self.role or "buyer",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "available_balance": float(self.available_balance or 0.0),
            "pending_balance": float(self.pending_balance or 0.0),
            "hostel_name": self.hostel_name or "",
            "room_number": self.room_number or "",
            "landmark": self.landmark or "",
            "completed_deliveries": int(self.completed_deliveries or 0),
            "penalty_points": int(self.penalty_points or 0),
            "warning_count": int(self.warning_count or 0),
            "is_suspended": bool(self.is_suspended),
            "suspended_until": self.suspended_until.isoformat() if self.suspended_until else None,
        }
