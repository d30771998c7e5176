from __future__ import annotations

import time

from flask import current_app

from campusmarket.extensions import db
from campusmarket.integrations.common import IntegrationCallError, IntegrationDisabledError, IntegrationMisconfiguredError
from campusmarket.integrations.payments.factory import build_payments_provider
from campusmarket.models import Order, Transaction, User
from campusmarket.services.errors import GatewayError, ValidationFailed
from campusmarket.services.ledger_service import TxnType, apply_balance_change, transaction_scope
from campusmarket.services.order_lifecycle import OrderStatus
from campusmarket.utils.auth import role_of
from campusmarket.utils.events import log_event
from campusmarket.utils.fees import money
from campusmarket.utils.notify import Outbox, dispatch


def _completed_order_count(user: User) -> int:
    column = {"seller": Order.seller_id, "rider": Order.rider_id}.get(role_of(user), Order.buyer_id)
    done = (OrderStatus.COMPLETED, OrderStatus.DELIVERED)
    return Order.query.filter(column == int(user.id), Order.status.in_(done)).count()


def wallet_summary(user: User, *, limit: int = 50) -> dict:
    available = money(user.available_balance or 0.0)
    pending = money(user.pending_balance or 0.0)
    if available < 0 or pending < 0:
        current_app.logger.error(
            "wallet_negative_balance user_id=%s available=%s pending=%s", user.id, available, pending
        )
        log_event(
            "wallet_negative_balance",
            actor_user_id=user.id,
            subject_type="user",
            subject_id=user.id,
            severity="ERROR",
            metadata={"available": available, "pending": pending},
        )
        db.session.commit()
    completed = _completed_order_count(user)
    rows = (
        Transaction.query.filter_by(user_id=int(user.id))
        .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        .limit(max(1, min(int(limit), 200)))
        .all()
    )
    return {
        "available_balance": available,
        "pending_balance": pending,
        "completed_orders": completed,
        "transactions": [r.to_dict() for r in rows],
    }


def _parse_amount(raw) -> float:
    try:
        amount = money(float(raw))
    except (TypeError, ValueError):
        raise ValidationFailed("Amount must be a number.", code="INVALID_AMOUNT")
    minimum = float(current_app.config.get("MIN_WITHDRAWAL", 1000))
    if amount < minimum:
        raise ValidationFailed(
            f"Minimum withdrawal is ₦{minimum:,.0f}.",
            code="BELOW_MIN_WITHDRAWAL",
            details={"minimum": minimum},
        )
    return amount


def withdraw(user: User, payload: dict) -> dict:
    """Debit available funds, then pay out through the gateway.

    A failed payout is compensated by a reversal credit; the original
    withdrawal row stays in the ledger.
    """
    payload = payload or {}
    amount = _parse_amount(payload.get("amount"))
    bank = {k: (str(payload.get(k) or "")).strip() for k in ("bank_code", "account_number", "account_name")}
    if not all(bank.values()):
        raise ValidationFailed("Bank code, account number and account name are required.", code="BANK_DETAILS_REQUIRED")

    reference = f"WD-{int(time.time() * 1000)}-{int(user.id)}"
    with transaction_scope("wallet_withdraw"):
        apply_balance_change(
            user.id,
            "available",
            -amount,
            txn_type=TxnType.WITHDRAWAL,
            reference=reference,
            description=f"Withdrawal to {bank['account_name']} ({bank['account_number'][-4:]})",
        )
        log_event(
            "withdrawal_debited",
            actor_user_id=user.id,
            subject_type="user",
            subject_id=user.id,
            idempotency_key=f"withdrawal_debited:{reference}",
            metadata={"amount": amount, "reference": reference},
        )

    outbox = Outbox()
    try:
        provider = build_payments_provider(current_app.config)
        result = provider.transfer(
            amount=amount,
            bank_code=bank["bank_code"],
            account_number=bank["account_number"],
            account_name=bank["account_name"],
            reference=reference,
            reason="CampusMarket wallet withdrawal",
        )
    except (IntegrationDisabledError, IntegrationMisconfiguredError, IntegrationCallError) as e:
        current_app.logger.warning("withdrawal_transfer_failed reference=%s err=%s", reference, e)
        with transaction_scope("wallet_withdraw_reversal"):
            apply_balance_change(
                user.id,
                "available",
                amount,
                txn_type=TxnType.CREDIT,
                reference=f"{reference}-REVERSAL",
                description="Withdrawal reversed: transfer failed",
            )
        outbox.add(
            user.id,
            "PAYMENT",
            "Withdrawal Failed",
            f"Your withdrawal of ₦{amount:,.2f} could not be processed and has been returned to your wallet.",
            meta={"reference": reference},
        )
        dispatch(outbox)
        raise GatewayError(
            "Transfer could not be completed. Your balance has been restored.",
            code="TRANSFER_FAILED",
            details={"reference": reference},
        )

    outbox.add(
        user.id,
        "PAYMENT",
        "Withdrawal Sent",
        f"₦{amount:,.2f} is on its way to {bank['account_name']}.",
        meta={"reference": reference, "transfer_code": getattr(result, "transfer_code", None)},
    )
    dispatch(outbox)
    db.session.refresh(user)
    return {
        "reference": reference,
        "amount": amount,
        "status": getattr(result, "status", "success"),
        "available_balance": money(user.available_balance or 0.0),
    }
