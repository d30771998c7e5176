from datetime import datetime

from campusmarket.extensions import db


class Transaction(db.Model):
    """Append-only wallet ledger entry.

    ``balance_field`` names the wallet column the entry moved (``available``
    or ``pending``) or ``memo`` for entries that record an event without
    moving a balance, such as a card payment made through the gateway.
    """

    __tablename__ = "transactions"
    __table_args__ = (
        db.UniqueConstraint("user_id", "reference", name="uq_transactions_user_reference"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    # CREDIT | DEBIT | ESCROW | WITHDRAWAL
    type = db.Column(db.String(16), nullable=False)
    balance_field = db.Column(db.String(16), nullable=False, default="available")
    amount = db.Column(db.Float, nullable=False)

    description = db.Column(db.String(400), nullable=False, default="")
    reference = db.Column(db.String(160), nullable=False, index=True)

    balance_before = db.Column(db.Float, nullable=False, default=0.0)
    balance_after = db.Column(db.Float, nullable=False, default=0.0)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def to_dict(self):
        return {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "type": self.type or "",
            "balance_field": self.balance_field or "available",
            "amount": float(self.amount or 0.0),
            "description": self.description or "",
            "reference": self.reference or "",
            "balance_before": float(self.balance_before or 0.0),
            "balance_after": float(self.balance_after or 0.0),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
