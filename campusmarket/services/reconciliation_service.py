from __future__ import annotations

import json
from datetime import datetime

from campusmarket.extensions import db
from campusmarket.models import ReconciliationReport, Transaction, User
from campusmarket.services.ledger_service import BALANCE_FIELDS, TxnType


def _signed_amount(txn_type: str, amount: float) -> float:
    sign = TxnType.SIGN.get((txn_type or "").strip().upper(), 1)
    return sign * abs(float(amount or 0.0))


def recompute_balances(*, tolerance: float = 0.01, user_id: int | None = None) -> dict:
    """Replay every balance-moving ledger row and compare with stored wallets.

    Memo rows are skipped; they never moved a balance. ``user_id`` narrows
    the replay to one wallet.
    """
    user_q = User.query
    txn_q = Transaction.query.filter(Transaction.balance_field.in_(tuple(BALANCE_FIELDS)))
    if user_id is not None:
        user_q = user_q.filter(User.id == int(user_id))
        txn_q = txn_q.filter(Transaction.user_id == int(user_id))
    users = user_q.order_by(User.id.asc()).all()
    computed: dict[tuple[int, str], float] = {}
    for txn in txn_q.all():
        key = (int(txn.user_id), txn.balance_field)
        computed[key] = computed.get(key, 0.0) + _signed_amount(txn.type, txn.amount)

    drift_items = []
    for user in users:
        for field, column in BALANCE_FIELDS.items():
            stored = float(getattr(user, column) or 0.0)
            replayed = round(computed.get((int(user.id), field), 0.0), 4)
            drift = round(stored - replayed, 4)
            if abs(drift) > float(tolerance):
                drift_items.append(
                    {
                        "user_id": int(user.id),
                        "balance_field": field,
                        "stored_balance": stored,
                        "computed_balance": replayed,
                        "drift": drift,
                    }
                )

    return {
        "ok": True,
        "scope": "wallet_ledger" if user_id is None else f"wallet:{int(user_id)}",
        "tolerance": float(tolerance),
        "user_count": len(users),
        "drift_count": len(drift_items),
        "total_drift": round(sum(abs(item["drift"]) for item in drift_items), 4),
        "drift_items": drift_items,
        "generated_at": datetime.utcnow().isoformat(),
    }


def persist_report(summary: dict, *, created_by: int | None = None) -> ReconciliationReport:
    report = ReconciliationReport(
        user_count=int(summary.get("user_count") or 0),
        drift_count=int(summary.get("drift_count") or 0),
        tolerance=float(summary.get("tolerance") or 0.0),
        total_drift=float(summary.get("total_drift") or 0.0),
        summary_json=json.dumps(summary)[:200000],
        created_by=int(created_by) if created_by is not None else None,
        created_at=datetime.utcnow(),
    )
    db.session.add(report)
    db.session.commit()
    return report
