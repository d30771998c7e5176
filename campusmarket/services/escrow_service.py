from __future__ import annotations

from flask import current_app

from campusmarket.extensions import db
from campusmarket.models import Dispute, Order, Transaction, User
from campusmarket.services.errors import CooldownActive, NotAuthorized, NotFound, PreconditionFailed, ValidationFailed
from campusmarket.services.ledger_service import lock_user, release_pending, transaction_scope
from campusmarket.services.order_lifecycle import OrderStatus, lock_order, transition_order
from campusmarket.utils.events import log_event
from campusmarket.utils.fees import money, rider_fee, seller_net_share
from campusmarket.utils.notify import Outbox, dispatch
from campusmarket.utils.rate_limit import check_limit

NON_TERMINAL_DISPUTE = ("OPEN", "UNDER_REVIEW")


def _ledger_row(user_id, reference: str) -> Transaction | None:
    return Transaction.query.filter_by(user_id=int(user_id), reference=reference).first()


def seller_order_funds(order: Order) -> tuple[str, float]:
    """Which seller balance holds this order's proceeds, and how much is left.

    Proceeds sit in pending until the order is released, then in
    available. Dispute refunds already taken out of them are subtracted.
    """
    number = order.order_number
    escrow = _ledger_row(order.seller_id, f"{number}-SELLER-ESCROW")
    refunded = _ledger_row(order.seller_id, f"{number}-SELLER-DISPUTE-REFUND")
    released = _ledger_row(order.seller_id, f"{number}-SELLER-RELEASE")
    held = money(escrow.amount) if escrow is not None else 0.0
    if refunded is not None:
        held = money(held - refunded.amount)
    return ("available" if released is not None else "pending"), max(0.0, held)


def delivery_escrow_outstanding(order: Order, rider_id) -> bool:
    """Rider still has this order's accept-time fee in pending."""
    number = order.order_number
    return (
        _ledger_row(rider_id, f"{number}-RIDER-ESCROW") is not None
        and _ledger_row(rider_id, f"{number}-RIDER-ESCROW-RELEASE") is None
    )


def release_delivery_fee(order: Order, rider_id, *, description: str) -> float:
    fee = rider_fee()
    release_pending(rider_id, fee, reference_prefix=f"{order.order_number}-RIDER", description=description)
    return fee


def settle_cancelled_order(order: Order) -> float:
    """Hand a cancelled order's unrefunded escrow back to the seller."""
    field, held = seller_order_funds(order)
    if field != "pending" or held <= 0:
        return 0.0
    seller = lock_user(order.seller_id)
    amount = money(min(held, seller.pending_balance or 0.0))
    if amount <= 0:
        return 0.0
    release_pending(
        order.seller_id,
        amount,
        reference_prefix=f"{order.order_number}-SELLER",
        description=f"Remaining proceeds for cancelled Order #{order.order_number}",
    )
    return amount


def _already_completed(order: Order) -> PreconditionFailed:
    return PreconditionFailed(
        "This order has already been confirmed and payment released.",
        code="ORDER_ALREADY_COMPLETED",
        details={"already_completed": True, "order_id": int(order.id)},
    )


def _confirm_cooldown(user_id: int, order_id) -> None:
    window = int(current_app.config.get("CONFIRM_DELIVERY_COOLDOWN_SECONDS", 5))
    ok, retry_after = check_limit(f"confirm-delivery:{int(user_id)}-{order_id}", limit=1, window_seconds=window)
    if not ok:
        raise CooldownActive(
            f"Please wait {retry_after} seconds before confirming again.",
            details={"retry_after": int(retry_after)},
        )


def release_order_escrow(order_id, *, actor: User | None = None) -> dict:
    """Complete a delivered order and pay out its escrow.

    Seller receives total - commission - rider fee (rider fee only when a
    rider delivered), capped at what is left of this order's escrow after
    any dispute refund. The rider receives the fixed fee. Both move from
    pending to available in the same unit as the status change.
    """
    outbox = Outbox()
    with transaction_scope("escrow_release"):
        order = lock_order(order_id)
        if order.status == OrderStatus.COMPLETED:
            raise _already_completed(order)
        if order.status != OrderStatus.DELIVERED:
            raise PreconditionFailed(
                f"Cannot confirm. Order status is: {order.status}",
                code="ORDER_NOT_DELIVERED",
                details={"current_status": order.status},
            )
        open_dispute = Dispute.query.filter(
            Dispute.order_id == int(order.id),
            Dispute.status.in_(NON_TERMINAL_DISPUTE),
        ).first()
        if order.is_disputed or open_dispute is not None:
            raise PreconditionFailed(
                "This order is under dispute. Payment is on hold until it is resolved.",
                code="ORDER_DISPUTED",
            )

        transition_order(order, OrderStatus.COMPLETED, actor=actor, reason="buyer_confirmed_delivery")

        has_rider = order.rider_id is not None
        _, held = seller_order_funds(order)
        seller_share = money(
            min(seller_net_share(order.total_amount, order.platform_commission, with_rider=has_rider), held)
        )
        rider_share = rider_fee() if has_rider else 0.0
        if seller_share > 0:
            release_pending(
                order.seller_id,
                seller_share,
                reference_prefix=f"{order.order_number}-SELLER",
                description=f"Payment for Order #{order.order_number}",
            )
        if has_rider:
            release_delivery_fee(order, order.rider_id, description=f"Delivery fee for Order #{order.order_number}")
        log_event(
            "escrow_released",
            actor_user_id=actor.id if actor is not None else None,
            subject_type="order",
            subject_id=order.id,
            idempotency_key=f"escrow_released:{order.order_number}",
            metadata={
                "seller_id": int(order.seller_id),
                "seller_share": seller_share,
                "rider_id": int(order.rider_id) if has_rider else None,
                "rider_share": rider_share,
                "platform_commission": float(order.platform_commission or 0.0),
            },
        )
        if seller_share > 0:
            outbox.add(
                order.seller_id,
                "PAYMENT",
                "Payment Released",
                f"₦{seller_share:,.2f} for Order #{order.order_number} is now in your available balance.",
                order_id=order.id,
                meta={"amount": seller_share},
            )
        if has_rider:
            outbox.add(
                order.rider_id,
                "PAYMENT",
                "Delivery Fee Released",
                f"₦{rider_share:,.2f} for delivering Order #{order.order_number} is now available.",
                order_id=order.id,
                meta={"amount": rider_share},
            )
    dispatch(outbox)
    current_app.logger.info(
        "escrow_released order=%s seller_share=%s rider_share=%s",
        order.order_number,
        seller_share,
        rider_share,
    )
    return {"order": order, "seller_share": seller_share, "rider_share": rider_share}


def confirm_delivery(buyer: User, order_id) -> dict:
    if not order_id:
        raise ValidationFailed("Order ID required.", code="ORDER_ID_REQUIRED")
    _confirm_cooldown(int(buyer.id), order_id)
    try:
        oid = int(order_id)
    except (TypeError, ValueError):
        raise ValidationFailed("Order ID must be a number.", code="ORDER_ID_INVALID")
    order = db.session.get(Order, oid)
    if order is None:
        raise NotFound("Order not found.", code="ORDER_NOT_FOUND")
    if int(order.buyer_id) != int(buyer.id):
        raise NotAuthorized("Only the buyer can confirm this delivery.", code="NOT_ORDER_BUYER")
    if order.status == OrderStatus.COMPLETED:
        raise _already_completed(order)
    return release_order_escrow(oid, actor=buyer)
