from __future__ import annotations

from contextlib import contextmanager

from flask import current_app
from sqlalchemy import text

from campusmarket.extensions import db
from campusmarket.models import Transaction, User
from campusmarket.services.errors import PreconditionFailed
from campusmarket.utils.fees import money
from campusmarket.utils.observability import note_rollback


class TxnType:
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"
    ESCROW = "ESCROW"
    WITHDRAWAL = "WITHDRAWAL"

    SIGN = {
        CREDIT: 1,
        ESCROW: 1,
        DEBIT: -1,
        WITHDRAWAL: -1,
    }


BALANCE_FIELDS = {
    "available": "available_balance",
    "pending": "pending_balance",
}
MEMO = "memo"


def _apply_local_timeouts() -> None:
    bind = db.session.get_bind()
    if (getattr(bind.dialect, "name", "") or "").lower() != "postgresql":
        return
    statement_ms = int(current_app.config.get("TXN_STATEMENT_TIMEOUT_MS", 15000))
    lock_ms = int(current_app.config.get("TXN_LOCK_TIMEOUT_MS", 20000))
    db.session.execute(text(f"SET LOCAL statement_timeout = {statement_ms}"))
    db.session.execute(text(f"SET LOCAL lock_timeout = {lock_ms}"))


@contextmanager
def transaction_scope(label: str):
    """One all-or-nothing unit of work.

    Commits on normal exit. Any exception rolls back every write made in
    the block, ledger rows included, and propagates.
    """
    _apply_local_timeouts()
    try:
        yield db.session
        db.session.commit()
    except Exception as exc:
        db.session.rollback()
        note_rollback(label, exc)
        raise


def lock_user(user_id: int) -> User:
    # populate_existing reloads the row; pending edits must reach the db first.
    db.session.flush()
    user = db.session.get(User, int(user_id), with_for_update=True, populate_existing=True)
    if user is None:
        raise PreconditionFailed(f"User {user_id} not found.", code="USER_NOT_FOUND")
    return user


def _ensure_unused_reference(user_id: int, reference: str) -> None:
    exists = Transaction.query.filter_by(user_id=int(user_id), reference=reference).first()
    if exists is not None:
        raise PreconditionFailed(
            "This payment step was already recorded.",
            code="DUPLICATE_LEDGER_REFERENCE",
            details={"reference": reference},
        )


def apply_balance_change(
    user_id: int,
    field: str,
    delta: float,
    *,
    txn_type: str,
    reference: str,
    description: str,
) -> Transaction:
    """Move one wallet balance and append the matching ledger row.

    Must be called inside ``transaction_scope``. The user row is locked
    for the rest of the unit. A change that would leave the balance below
    zero is refused.
    """
    column = BALANCE_FIELDS.get(field)
    if column is None:
        raise ValueError(f"unknown_balance_field {field}")
    sign = TxnType.SIGN.get(txn_type)
    if sign is None:
        raise ValueError(f"unknown_txn_type {txn_type}")
    amount = money(delta)
    if amount == 0 or (amount > 0) != (sign > 0):
        raise ValueError(f"delta_sign_mismatch type={txn_type} delta={amount}")
    reference = (reference or "").strip()
    if not reference:
        raise ValueError("reference required")

    user = lock_user(user_id)
    _ensure_unused_reference(user.id, reference)
    before = money(getattr(user, column) or 0.0)
    after = money(before + amount)
    if after < 0:
        raise PreconditionFailed(
            "Insufficient balance for this operation.",
            code="INSUFFICIENT_BALANCE",
            details={"user_id": int(user.id), "balance_field": field, "balance": before, "required": abs(amount)},
        )
    setattr(user, column, after)
    row = Transaction(
        user_id=int(user.id),
        type=txn_type,
        balance_field=field,
        amount=abs(amount),
        description=(description or "")[:400],
        reference=reference[:160],
        balance_before=before,
        balance_after=after,
    )
    db.session.add(row)
    db.session.flush()
    return row


def record_memo_entry(
    user_id: int,
    amount: float,
    *,
    txn_type: str,
    reference: str,
    description: str,
) -> Transaction:
    """Ledger row for an event that moves no wallet balance."""
    if txn_type not in TxnType.SIGN:
        raise ValueError(f"unknown_txn_type {txn_type}")
    user = lock_user(user_id)
    _ensure_unused_reference(user.id, reference)
    current = money(user.available_balance or 0.0)
    row = Transaction(
        user_id=int(user.id),
        type=txn_type,
        balance_field=MEMO,
        amount=abs(money(amount)),
        description=(description or "")[:400],
        reference=reference[:160],
        balance_before=current,
        balance_after=current,
    )
    db.session.add(row)
    db.session.flush()
    return row


def release_pending(
    user_id: int,
    amount: float,
    *,
    reference_prefix: str,
    description: str,
) -> tuple[Transaction, Transaction]:
    """Escrow release: pending debit paired with an available credit."""
    debit = apply_balance_change(
        user_id,
        "pending",
        -amount,
        txn_type=TxnType.DEBIT,
        reference=f"{reference_prefix}-ESCROW-RELEASE",
        description=f"Escrow released: {description}",
    )
    credit = apply_balance_change(
        user_id,
        "available",
        amount,
        txn_type=TxnType.CREDIT,
        reference=f"{reference_prefix}-RELEASE",
        description=description,
    )
    return debit, credit
