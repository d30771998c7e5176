from datetime import datetime

from sqlalchemy import event, inspect

from campusmarket.extensions import db


# Fixed when the order is materialized from a verified payment.
FROZEN_MONEY_FIELDS = ("total_amount", "platform_commission", "delivery_fee", "product_price")

# Each stamp belongs to exactly one transition and is written once.
WRITE_ONCE_TIMESTAMPS = ("rider_assigned_at", "delivered_at", "completed_at", "cancelled_at")


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(64), nullable=False, unique=True, index=True)
    # Gateway reference shared by every order of one checkout.
    payment_id = db.Column(db.String(120), nullable=False, index=True)

    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    rider_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True)
    quantity = db.Column(db.Integer, nullable=False, default=1)

    product_price = db.Column(db.Float, nullable=False, default=0.0)
    delivery_fee = db.Column(db.Float, nullable=False, default=0.0)
    total_amount = db.Column(db.Float, nullable=False, default=0.0)
    platform_commission = db.Column(db.Float, nullable=False, default=0.0)

    status = db.Column(db.String(24), nullable=False, default="PENDING", index=True)
    is_disputed = db.Column(db.Boolean, nullable=False, default=False, index=True)
    is_paid = db.Column(db.Boolean, nullable=False, default=True)
    order_note = db.Column(db.Text, nullable=True)

    delivery_hostel = db.Column(db.String(120), nullable=True)
    delivery_room = db.Column(db.String(32), nullable=True)
    delivery_phone = db.Column(db.String(32), nullable=True)
    delivery_landmark = db.Column(db.String(160), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    rider_assigned_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    items = db.relationship("OrderItem", backref="order", lazy=True, cascade="all, delete-orphan")

    def to_dict(self):
        return {
            "id": int(self.id),
            "order_number": self.order_number or "",
            "payment_id": self.payment_id or "",
            "buyer_id": int(self.buyer_id),
            "seller_id": int(self.seller_id),
            "rider_id": int(self.rider_id) if self.rider_id is not None else None,
            "product_id": int(self.product_id) if self.product_id is not None else None,
            "quantity": int(self.quantity or 0),
            "product_price": float(self.product_price or 0.0),
            "delivery_fee": float(self.delivery_fee or 0.0),
            "total_amount": float(self.total_amount or 0.0),
            "platform_commission": float(self.platform_commission or 0.0),
            "status": self.status or "PENDING",
            "is_disputed": bool(self.is_disputed),
            "order_note": self.order_note or "",
            "delivery": {
                "hostel": self.delivery_hostel or "",
                "room": self.delivery_room or "",
                "phone": self.delivery_phone or "",
                "landmark": self.delivery_landmark or "",
            },
            "items": [i.to_dict() for i in (self.items or [])],
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "rider_assigned_at": self.rider_assigned_at.isoformat() if self.rider_assigned_at else None,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
        }


class OrderItem(db.Model):
    __tablename__ = "order_items"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True, index=True)

    name = db.Column(db.String(160), nullable=False, default="")
    unit_price = db.Column(db.Float, nullable=False, default=0.0)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    note = db.Column(db.String(500), nullable=True)

    def to_dict(self):
        return {
            "id": int(self.id) if self.id is not None else None,
            "product_id": int(self.product_id) if self.product_id is not None else None,
            "name": self.name or "",
            "unit_price": float(self.unit_price or 0.0),
            "quantity": int(self.quantity or 0),
            "note": self.note or "",
        }


@event.listens_for(Order, "before_update")
def _guard_frozen_columns(mapper, connection, target):
    state = inspect(target)
    for field in FROZEN_MONEY_FIELDS:
        hist = state.attrs[field].history
        if hist.deleted and hist.added and hist.deleted[0] != hist.added[0]:
            raise ValueError(f"order_{field}_is_immutable")
    for field in WRITE_ONCE_TIMESTAMPS:
        hist = state.attrs[field].history
        if hist.deleted and hist.deleted[0] is not None and hist.added and hist.added[0] != hist.deleted[0]:
            raise ValueError(f"order_{field}_already_set")
