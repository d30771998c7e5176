from datetime import datetime
import json

from campusmarket.extensions import db


class Dispute(db.Model):
    __tablename__ = "disputes"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, unique=True, index=True)
    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    reason = db.Column(db.Text, nullable=False)
    resolution_preference = db.Column(db.String(40), nullable=False, default="REFUND_WITH_PICKUP")
    evidence_json = db.Column(db.Text, nullable=True)
    pickup_address_json = db.Column(db.Text, nullable=True)

    status = db.Column(db.String(32), nullable=False, default="OPEN", index=True)

    # Human-readable outcome shown to the parties.
    resolution = db.Column(db.Text, nullable=True)
    # Internal admin notes; never shown to buyer or seller.
    admin_note = db.Column(db.Text, nullable=True)

    # Pickup-mediated refund progress: NONE | AWAITING_PICKUP | ITEM_RECEIVED
    pickup_stage = db.Column(db.String(24), nullable=False, default="NONE")
    refund_released = db.Column(db.Boolean, nullable=False, default=False)
    rider_paid = db.Column(db.Boolean, nullable=False, default=False)

    refund_amount = db.Column(db.Float, nullable=False, default=0.0)
    resolved_at = db.Column(db.DateTime, nullable=True)
    resolved_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def _load(self, raw, default):
        if not raw:
            return default
        try:
            data = json.loads(raw)
        except Exception:
            return default
        return data if isinstance(data, type(default)) else default

    def evidence(self) -> list:
        return self._load(self.evidence_json, [])

    def pickup_address(self) -> dict:
        return self._load(self.pickup_address_json, {})

    def pickup_state(self) -> str:
        if self.resolved_at is not None:
            return "resolved"
        if self.refund_released:
            return "refund_released"
        if self.rider_paid:
            return "rider_paid"
        if self.pickup_stage == "ITEM_RECEIVED":
            return "item_received"
        if self.pickup_stage == "AWAITING_PICKUP":
            return "awaiting_pickup"
        return "none"

    def to_dict(self, *, include_admin: bool = False):
        data = {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "buyer_id": int(self.buyer_id),
            "seller_id": int(self.seller_id),
            "reason": self.reason or "",
            "resolution_preference": self.resolution_preference or "",
            "evidence": self.evidence(),
            "pickup_address": self.pickup_address(),
            "status": self.status or "OPEN",
            "resolution": self.resolution or "",
            "refund_amount": float(self.refund_amount or 0.0),
            "pickup_state": self.pickup_state(),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolved_by": int(self.resolved_by) if self.resolved_by is not None else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_admin:
            data.update(
                {
                    "admin_note": self.admin_note or "",
                    "pickup_stage": self.pickup_stage or "NONE",
                    "refund_released": bool(self.refund_released),
                    "rider_paid": bool(self.rider_paid),
                }
            )
        return data


class DisputeMessage(db.Model):
    __tablename__ = "dispute_messages"

    id = db.Column(db.Integer, primary_key=True)
    dispute_id = db.Column(db.Integer, db.ForeignKey("disputes.id"), nullable=False, index=True)
    sender_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    # BUYER | ADMIN  (SELLER rows may exist from older data and are never served)
    sender_type = db.Column(db.String(16), nullable=False)
    message = db.Column(db.Text, nullable=False)
    attachments_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def to_dict(self):
        try:
            attachments = json.loads(self.attachments_json or "[]")
        except Exception:
            attachments = []
        return {
            "id": int(self.id),
            "dispute_id": int(self.dispute_id),
            "sender_id": int(self.sender_id),
            "sender_type": self.sender_type or "",
            "message": self.message or "",
            "attachments": attachments if isinstance(attachments, list) else [],
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
