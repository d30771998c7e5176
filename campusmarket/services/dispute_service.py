from __future__ import annotations

import json
from datetime import datetime, timedelta

from flask import current_app

from campusmarket.extensions import db
from campusmarket.models import Dispute, DisputeMessage, Order, Penalty, User
from campusmarket.services.errors import NotAuthorized, NotFound, PreconditionFailed, ValidationFailed
from campusmarket.services.escrow_service import (
    delivery_escrow_outstanding,
    release_delivery_fee,
    seller_order_funds,
    settle_cancelled_order,
)
from campusmarket.services.ledger_service import (
    BALANCE_FIELDS,
    TxnType,
    apply_balance_change,
    lock_user,
    record_memo_entry,
    release_pending,
    transaction_scope,
)
from campusmarket.services.order_lifecycle import OrderStatus, lock_order, transition_order
from campusmarket.utils.auth import role_of
from campusmarket.utils.events import log_event
from campusmarket.utils.fees import dispute_processing_fee, money, rider_fee
from campusmarket.utils.notify import Outbox, dispatch, notify_admins


class DisputeStatus:
    OPEN = "OPEN"
    UNDER_REVIEW = "UNDER_REVIEW"
    RESOLVED_BUYER_FAVOR = "RESOLVED_BUYER_FAVOR"
    RESOLVED_SELLER_FAVOR = "RESOLVED_SELLER_FAVOR"
    RESOLVED_COMPROMISE = "RESOLVED_COMPROMISE"
    DISMISSED = "DISMISSED"

    ACTIVE = (OPEN, UNDER_REVIEW)
    TERMINAL = (RESOLVED_BUYER_FAVOR, RESOLVED_SELLER_FAVOR, RESOLVED_COMPROMISE, DISMISSED)
    # Outcomes that pay the buyer back, less the processing fee.
    REFUNDING = (RESOLVED_BUYER_FAVOR, RESOLVED_COMPROMISE)


class PickupStage:
    NONE = "NONE"
    AWAITING_PICKUP = "AWAITING_PICKUP"
    ITEM_RECEIVED = "ITEM_RECEIVED"


PICKUP_ACTIONS = ("send_rider", "confirm_received", "release_refund", "release_rider_pay")
PICKUP_RESOLUTION_TEXT = "Item collected, refund and rider payment released."
PENALTY_POINTS_FALSE_CLAIM = 2
RESOLUTION_PREFERENCES = ("REFUND_WITH_PICKUP", "REFUND_ONLY", "REPLACEMENT", "OTHER")


def _lock_dispute(dispute_id) -> Dispute:
    try:
        did = int(dispute_id)
    except (TypeError, ValueError):
        raise ValidationFailed("Dispute ID must be a number.", code="DISPUTE_ID_INVALID")
    db.session.flush()
    dispute = db.session.get(Dispute, did, with_for_update=True, populate_existing=True)
    if dispute is None:
        raise NotFound("Dispute not found.", code="DISPUTE_NOT_FOUND")
    return dispute


def _ensure_active(dispute: Dispute) -> None:
    if dispute.status in DisputeStatus.TERMINAL:
        raise PreconditionFailed(
            "This dispute has already been resolved.",
            code="DISPUTE_ALREADY_RESOLVED",
            details={"dispute_status": dispute.status},
        )


def _window_days() -> int:
    return int(current_app.config.get("DISPUTE_WINDOW_DAYS", 7))


def _clean_pickup_address(raw) -> dict:
    raw = raw if isinstance(raw, dict) else {}
    return {key: str(raw.get(key) or "").strip()[:160] for key in ("hostel", "room", "landmark", "phone")}


def open_dispute(buyer: User, payload: dict, *, now: datetime | None = None) -> Dispute:
    payload = payload or {}
    reason = (payload.get("reason") or "").strip()
    if not payload.get("order_id") or not reason:
        raise ValidationFailed("Order and reason are required.", code="DISPUTE_FIELDS_REQUIRED")
    preference = (payload.get("resolution_preference") or "REFUND_WITH_PICKUP").strip().upper()
    if preference not in RESOLUTION_PREFERENCES:
        raise ValidationFailed("Unknown resolution preference.", code="INVALID_RESOLUTION_PREFERENCE")
    evidence = payload.get("evidence") or []
    if not isinstance(evidence, list):
        raise ValidationFailed("Evidence must be a list of links.", code="INVALID_EVIDENCE")

    outbox = Outbox()
    with transaction_scope("dispute_open"):
        order = lock_order(payload.get("order_id"))
        if int(order.buyer_id) != int(buyer.id):
            raise NotAuthorized("Only the buyer can open a dispute on this order.", code="NOT_ORDER_BUYER")
        if order.status not in (OrderStatus.DELIVERED, OrderStatus.COMPLETED):
            raise PreconditionFailed(
                "You can only dispute an order after it has been delivered.",
                code="ORDER_NOT_DELIVERED",
                details={"current_status": order.status},
            )
        if order.delivered_at is None:
            raise PreconditionFailed("This order has no delivery date on record.", code="ORDER_NOT_DELIVERED")
        stamp = now or datetime.utcnow()
        window = _window_days()
        if stamp - order.delivered_at > timedelta(days=window):
            raise PreconditionFailed(
                f"Disputes must be opened within {window} days of delivery.",
                code="DISPUTE_WINDOW_CLOSED",
            )
        if Dispute.query.filter_by(order_id=int(order.id)).first() is not None:
            raise PreconditionFailed("A dispute already exists for this order.", code="DISPUTE_EXISTS")

        dispute = Dispute(
            order_id=int(order.id),
            buyer_id=int(order.buyer_id),
            seller_id=int(order.seller_id),
            reason=reason[:4000],
            resolution_preference=preference,
            evidence_json=json.dumps([str(e)[:1024] for e in evidence][:10]),
            pickup_address_json=json.dumps(_clean_pickup_address(payload.get("pickup_address"))),
            status=DisputeStatus.OPEN,
        )
        db.session.add(dispute)
        order.is_disputed = True
        db.session.flush()
        log_event(
            "dispute_opened",
            actor_user_id=buyer.id,
            subject_type="dispute",
            subject_id=dispute.id,
            idempotency_key=f"dispute_opened:{order.order_number}",
            metadata={"order_id": int(order.id), "preference": preference},
        )
        outbox.add(
            buyer.id,
            "DISPUTE",
            "Dispute Opened",
            f"We received your dispute for Order #{order.order_number}. An admin will review it shortly.",
            order_id=order.id,
            dispute_id=dispute.id,
        )
        notify_admins(
            outbox,
            "DISPUTE",
            "New Dispute",
            f"Order #{order.order_number} was disputed: {reason[:140]}",
            order_id=order.id,
            dispute_id=dispute.id,
        )
    dispatch(outbox)
    return dispute


def _pay_refund(dispute: Dispute, order: Order, gross: float, actor: User) -> tuple[float, float]:
    """Credit the buyer the refund less the processing fee.

    The seller contributes what is left of this order's proceeds; the
    platform covers any remainder out of its commission, recorded as a
    memo on the buyer's ledger.
    """
    fee, net = dispute_processing_fee(gross)
    if net <= 0:
        return fee, 0.0
    number = order.order_number
    field, held = seller_order_funds(order)
    seller = lock_user(dispute.seller_id)
    balance = money(getattr(seller, BALANCE_FIELDS[field]) or 0.0)
    from_seller = money(min(net, held, balance))
    from_platform = money(net - from_seller)
    if from_seller > 0:
        apply_balance_change(
            dispute.seller_id,
            field,
            -from_seller,
            txn_type=TxnType.DEBIT,
            reference=f"{number}-SELLER-DISPUTE-REFUND",
            description=f"Dispute refund for Order #{number}",
        )
    apply_balance_change(
        dispute.buyer_id,
        "available",
        net,
        txn_type=TxnType.CREDIT,
        reference=f"{number}-BUYER-DISPUTE-REFUND",
        description=f"Dispute refund for Order #{number} (processing fee applied)",
    )
    if from_platform > 0:
        record_memo_entry(
            dispute.buyer_id,
            from_platform,
            txn_type=TxnType.CREDIT,
            reference=f"{number}-BUYER-REFUND-PLATFORM-SHARE",
            description=f"Platform-funded part of the dispute refund for Order #{number}",
        )
    if fee > 0:
        record_memo_entry(
            dispute.seller_id,
            fee,
            txn_type=TxnType.DEBIT,
            reference=f"{number}-SELLER-DISPUTE-FEE",
            description=f"Dispute processing fee for Order #{number}",
        )
    log_event(
        "dispute_refund_released",
        actor_user_id=actor.id,
        subject_type="dispute",
        subject_id=dispute.id,
        idempotency_key=f"dispute_refund_released:{number}",
        metadata={
            "gross": gross,
            "fee": fee,
            "net": net,
            "seller_funded": from_seller,
            "seller_balance_field": field,
            "platform_funded": from_platform,
        },
    )
    return fee, net


def _hold_pickup_fee(rider_id: int, order: Order) -> float:
    fee = rider_fee()
    apply_balance_change(
        rider_id,
        "pending",
        fee,
        txn_type=TxnType.ESCROW,
        reference=f"{order.order_number}-RIDER-PICKUP-ESCROW",
        description=f"Pickup fee held for disputed Order #{order.order_number}",
    )
    return fee


def _pay_pickup_fee(rider_id: int, order: Order) -> float:
    """Pay the pickup rider from the fee held for them on this order."""
    description = f"Dispute pickup payment for Order #{order.order_number}"
    if delivery_escrow_outstanding(order, rider_id):
        return release_delivery_fee(order, rider_id, description=description)
    fee = rider_fee()
    release_pending(
        rider_id,
        fee,
        reference_prefix=f"{order.order_number}-RIDER-PICKUP",
        description=description,
    )
    return fee


def _dispatch_pickup_rider(order: Order, rider: User, actor: User, outbox: Outbox, dispute: Dispute) -> None:
    previous = order.rider_id
    if previous is not None and int(previous) != int(rider.id) and delivery_escrow_outstanding(order, previous):
        # Handing the order to a new rider; the delivery itself was done.
        release_delivery_fee(order, previous, description=f"Delivery fee for Order #{order.order_number}")
    order.rider_id = int(rider.id)
    order.is_disputed = True
    transition_order(order, OrderStatus.RIDER_ASSIGNED, actor=actor, reason="dispute_pickup", dispute_pickup=True)
    if delivery_escrow_outstanding(order, rider.id):
        fee = rider_fee()
    else:
        fee = _hold_pickup_fee(rider.id, order)
    outbox.add(
        rider.id,
        "ORDER_DISPUTED",
        "Pickup Required: Disputed Order",
        f"Please return to collect the item for Order #{order.order_number}. "
        f"You will receive ₦{fee:,.0f} once the item is confirmed received.",
        order_id=order.id,
        dispute_id=dispute.id,
        meta={"action": "DISPUTE_PICKUP", "rider_pay": fee},
    )


def resolve_dispute(admin: User, dispute_id, payload: dict) -> dict:
    """Single-step admin resolution with optional refund, pickup and penalty."""
    payload = payload or {}
    status = (payload.get("status") or "").strip().upper()
    resolution = (payload.get("resolution") or "").strip()
    if not status or not resolution:
        raise ValidationFailed("Status and resolution are required.", code="RESOLUTION_FIELDS_REQUIRED")
    if status not in DisputeStatus.TERMINAL:
        raise ValidationFailed("Unknown resolution status.", code="INVALID_DISPUTE_STATUS")
    try:
        gross = money(float(payload.get("refund_amount") or 0))
    except (TypeError, ValueError):
        raise ValidationFailed("Refund amount must be a number.", code="INVALID_REFUND_AMOUNT")
    if gross < 0:
        raise ValidationFailed("Refund amount cannot be negative.", code="INVALID_REFUND_AMOUNT")
    assign_pickup = bool(payload.get("assign_rider_for_pickup"))
    penalize = bool(payload.get("penalize_buyer"))

    outbox = Outbox()
    with transaction_scope("dispute_resolve"):
        dispute = _lock_dispute(dispute_id)
        _ensure_active(dispute)
        if dispute.pickup_stage != PickupStage.NONE or dispute.refund_released or dispute.rider_paid:
            raise PreconditionFailed(
                "A pickup refund is already in progress for this dispute. Finish it with the pickup actions.",
                code="PICKUP_IN_PROGRESS",
                details={"pickup_state": dispute.pickup_state()},
            )
        order = lock_order(dispute.order_id)
        if gross > money(order.total_amount):
            raise ValidationFailed("Refund cannot exceed the order total.", code="REFUND_EXCEEDS_TOTAL")

        fee, net = (0.0, 0.0)
        if status in DisputeStatus.REFUNDING:
            fee, net = _pay_refund(dispute, order, gross, admin)

        rider = None
        if assign_pickup and payload.get("rider_id"):
            rider = db.session.get(User, int(payload.get("rider_id")))
            if rider is None or role_of(rider) != "rider":
                raise ValidationFailed("Selected rider not found.", code="RIDER_NOT_FOUND")
            _dispatch_pickup_rider(order, rider, admin, outbox, dispute)
        else:
            order.is_disputed = False

        if penalize:
            penalty_reason = (payload.get("penalty_reason") or "").strip() or "Unsubstantiated dispute claim"
            db.session.add(
                Penalty(
                    user_id=dispute.buyer_id,
                    dispute_id=dispute.id,
                    action="WARNING",
                    reason=penalty_reason[:400],
                    points=PENALTY_POINTS_FALSE_CLAIM,
                    issued_by=admin.id,
                )
            )
            buyer = lock_user(dispute.buyer_id)
            buyer.penalty_points = int(buyer.penalty_points or 0) + PENALTY_POINTS_FALSE_CLAIM
            buyer.warning_count = int(buyer.warning_count or 0) + 1
            buyer.last_warning_at = datetime.utcnow()
            outbox.add(
                buyer.id,
                "PENALTY",
                "Account Warning",
                f"You received a warning ({PENALTY_POINTS_FALSE_CLAIM} points): {penalty_reason}",
                dispute_id=dispute.id,
            )

        dispute.status = status
        dispute.resolution = resolution[:4000]
        dispute.admin_note = (payload.get("admin_note") or "").strip()[:4000] or dispute.admin_note
        dispute.refund_amount = net if status in DisputeStatus.REFUNDING else 0.0
        dispute.resolved_at = datetime.utcnow()
        dispute.resolved_by = int(admin.id)
        log_event(
            "dispute_resolved",
            actor_user_id=admin.id,
            subject_type="dispute",
            subject_id=dispute.id,
            idempotency_key=f"dispute_resolved:{dispute.id}",
            metadata={"status": status, "gross": gross, "fee": fee, "net": net, "pickup_rider": rider.id if rider else None},
        )
        outbox.add(
            dispute.buyer_id,
            "DISPUTE",
            "Dispute Resolved",
            f"Your dispute for Order #{order.order_number} was resolved: {resolution[:200]}",
            order_id=order.id,
            dispute_id=dispute.id,
            meta={"net_refund": net},
        )
    dispatch(outbox)
    return {
        "dispute": dispute,
        "summary": {"gross_refund": gross, "processing_fee": fee, "net_refund": net},
    }


def _finalize_pickup(dispute: Dispute, order: Order, admin: User) -> None:
    dispute.status = DisputeStatus.RESOLVED_BUYER_FAVOR
    dispute.resolution = PICKUP_RESOLUTION_TEXT
    dispute.resolved_at = datetime.utcnow()
    dispute.resolved_by = int(admin.id)
    order.is_disputed = False
    if OrderStatus.CANCELLED in OrderStatus.DISPUTE_PICKUP_ALLOWED.get(order.status, set()):
        transition_order(order, OrderStatus.CANCELLED, actor=admin, reason="dispute_refunded", dispute_pickup=True)
    settled = settle_cancelled_order(order) if order.status == OrderStatus.CANCELLED else 0.0
    log_event(
        "dispute_resolved",
        actor_user_id=admin.id,
        subject_type="dispute",
        subject_id=dispute.id,
        idempotency_key=f"dispute_resolved:{dispute.id}",
        metadata={
            "status": dispute.status,
            "path": "pickup",
            "net": float(dispute.refund_amount or 0.0),
            "seller_settled": settled,
        },
    )


def pickup_action(admin: User, dispute_id, action: str) -> dict:
    """One step of the pickup-mediated refund.

    Refund release and rider payment are independent; the dispute closes
    in buyer's favour only once both have happened, in either order.
    """
    action = (action or "").strip().lower()
    if action not in PICKUP_ACTIONS:
        raise ValidationFailed("Invalid action.", code="INVALID_PICKUP_ACTION")

    outbox = Outbox()
    result: dict = {"action": action}
    with transaction_scope(f"dispute_pickup_{action}"):
        dispute = _lock_dispute(dispute_id)
        _ensure_active(dispute)
        order = lock_order(dispute.order_id)

        if action == "send_rider":
            if order.rider_id is None:
                raise PreconditionFailed(
                    "No rider found on this order. The order may not have been delivered by a platform rider.",
                    code="NO_RIDER_ON_ORDER",
                )
            if dispute.pickup_stage != PickupStage.NONE:
                raise PreconditionFailed("A rider has already been sent for this item.", code="RIDER_ALREADY_SENT")
            rider = db.session.get(User, int(order.rider_id))
            _dispatch_pickup_rider(order, rider, admin, outbox, dispute)
            dispute.status = DisputeStatus.UNDER_REVIEW
            dispute.pickup_stage = PickupStage.AWAITING_PICKUP
            result["message"] = f"Rider {rider.name} has been notified to collect the item."
            result["rider"] = {"id": int(rider.id), "name": rider.name, "phone": rider.phone}

        elif action == "confirm_received":
            if dispute.pickup_stage != PickupStage.AWAITING_PICKUP:
                raise PreconditionFailed(
                    "Cannot confirm receipt: no rider pickup is awaiting this item.",
                    code="PICKUP_NOT_AWAITING",
                    details={"pickup_state": dispute.pickup_state()},
                )
            dispute.pickup_stage = PickupStage.ITEM_RECEIVED
            result["message"] = "Item marked as received. You can now release the refund and rider payment."

        elif action == "release_refund":
            if dispute.pickup_stage != PickupStage.ITEM_RECEIVED:
                raise PreconditionFailed(
                    "Cannot release refund: item not yet confirmed as received.",
                    code="ITEM_NOT_RECEIVED",
                    details={"pickup_state": dispute.pickup_state()},
                )
            if dispute.refund_released:
                raise PreconditionFailed("Refund has already been released.", code="REFUND_ALREADY_RELEASED")
            fee, net = _pay_refund(dispute, order, money(order.total_amount), admin)
            dispute.refund_released = True
            dispute.refund_amount = net
            outbox.add(
                dispute.buyer_id,
                "DISPUTE",
                "Refund Processed",
                f"Your refund of ₦{net:,.2f} has been added to your wallet for Order #{order.order_number}.",
                order_id=order.id,
                dispute_id=dispute.id,
                meta={"refund_amount": net, "processing_fee": fee},
            )
            result.update({"net_refund": net, "processing_fee": fee})
            result["message"] = f"Refund of ₦{net:,.2f} sent to buyer's wallet."

        else:
            if dispute.pickup_stage != PickupStage.ITEM_RECEIVED:
                raise PreconditionFailed(
                    "Cannot release rider payment: item not yet confirmed as received.",
                    code="ITEM_NOT_RECEIVED",
                    details={"pickup_state": dispute.pickup_state()},
                )
            if dispute.rider_paid:
                raise PreconditionFailed("Rider has already been paid for this pickup.", code="RIDER_ALREADY_PAID")
            if order.rider_id is None:
                raise PreconditionFailed("No rider on this order.", code="NO_RIDER_ON_ORDER")
            pay = _pay_pickup_fee(order.rider_id, order)
            dispute.rider_paid = True
            log_event(
                "dispute_rider_paid",
                actor_user_id=admin.id,
                subject_type="dispute",
                subject_id=dispute.id,
                idempotency_key=f"dispute_rider_paid:{order.order_number}",
                metadata={"rider_id": int(order.rider_id), "amount": pay},
            )
            outbox.add(
                order.rider_id,
                "PAYMENT",
                "Pickup Payment Released",
                f"₦{pay:,.0f} for collecting the disputed item (Order #{order.order_number}) "
                "has been added to your available balance.",
                order_id=order.id,
                dispute_id=dispute.id,
                meta={"amount": pay},
            )
            result["rider_pay"] = pay
            result["message"] = f"₦{pay:,.0f} released to the rider's wallet."

        if dispute.refund_released and dispute.rider_paid:
            _finalize_pickup(dispute, order, admin)
            outbox.add(
                dispute.buyer_id,
                "DISPUTE",
                "Dispute Resolved",
                f"Your dispute for Order #{order.order_number} is resolved. {PICKUP_RESOLUTION_TEXT}",
                order_id=order.id,
                dispute_id=dispute.id,
            )
        result["dispute"] = dispute
    dispatch(outbox)
    return result


def mark_pickup_collected(rider: User, order_id) -> Order:
    """Rider has collected a disputed item from the buyer."""
    outbox = Outbox()
    with transaction_scope("dispute_pickup_collected"):
        order = lock_order(order_id)
        if (
            order.rider_id is None
            or int(order.rider_id) != int(rider.id)
            or not order.is_disputed
            or order.status != OrderStatus.RIDER_ASSIGNED
        ):
            raise NotFound("Pickup job not found or already completed.", code="PICKUP_JOB_NOT_FOUND")
        transition_order(order, OrderStatus.PICKED_UP, actor=rider, reason="dispute_item_collected", dispute_pickup=True)
        dispute = Dispute.query.filter_by(order_id=int(order.id)).first()
        if dispute is not None and dispute.status in DisputeStatus.TERMINAL:
            # Already adjudicated in one step; nothing left for an admin to confirm.
            _pay_pickup_fee(rider.id, order)
            order.is_disputed = False
            transition_order(order, OrderStatus.CANCELLED, actor=rider, reason="dispute_item_returned", dispute_pickup=True)
            settle_cancelled_order(order)
        notify_admins(
            outbox,
            "DISPUTE",
            "Disputed Item Collected",
            f"Rider {rider.name} has collected the disputed item (Order #{order.order_number}) and is on the way back.",
            order_id=order.id,
            dispute_id=dispute.id if dispute is not None else None,
        )
    dispatch(outbox)
    return order


def _message_access(user: User, dispute: Dispute) -> str:
    role = role_of(user)
    if role == "admin":
        return "ADMIN"
    if int(dispute.buyer_id) == int(user.id):
        return "BUYER"
    raise NotAuthorized("Only the buyer and admins can access this conversation.", code="DISPUTE_CHAT_FORBIDDEN")


def _get_dispute(dispute_id) -> Dispute:
    try:
        did = int(dispute_id)
    except (TypeError, ValueError):
        raise ValidationFailed("Dispute ID must be a number.", code="DISPUTE_ID_INVALID")
    dispute = db.session.get(Dispute, did)
    if dispute is None:
        raise NotFound("Dispute not found.", code="DISPUTE_NOT_FOUND")
    return dispute


def list_messages(user: User, dispute_id) -> list[DisputeMessage]:
    dispute = _get_dispute(dispute_id)
    _message_access(user, dispute)
    return (
        DisputeMessage.query.filter(
            DisputeMessage.dispute_id == int(dispute.id),
            DisputeMessage.sender_type.in_(("BUYER", "ADMIN")),
        )
        .order_by(DisputeMessage.created_at.asc(), DisputeMessage.id.asc())
        .all()
    )


def post_message(user: User, dispute_id, message: str, attachments: list | None = None) -> DisputeMessage:
    text = (message or "").strip()
    if not text:
        raise ValidationFailed("Message cannot be empty.", code="EMPTY_MESSAGE")
    if attachments is not None and not isinstance(attachments, list):
        raise ValidationFailed("Attachments must be a list of links.", code="INVALID_ATTACHMENTS")

    outbox = Outbox()
    with transaction_scope("dispute_message"):
        dispute = _lock_dispute(dispute_id)
        sender_type = _message_access(user, dispute)
        row = DisputeMessage(
            dispute_id=int(dispute.id),
            sender_id=int(user.id),
            sender_type=sender_type,
            message=text[:4000],
            attachments_json=json.dumps([str(a)[:1024] for a in (attachments or [])][:5]),
        )
        db.session.add(row)
        if sender_type == "ADMIN":
            if dispute.status == DisputeStatus.OPEN:
                dispute.status = DisputeStatus.UNDER_REVIEW
            outbox.add(
                dispute.buyer_id,
                "DISPUTE",
                "New Message on Your Dispute",
                text[:200],
                order_id=dispute.order_id,
                dispute_id=dispute.id,
            )
        else:
            notify_admins(
                outbox,
                "DISPUTE",
                "Buyer Replied on Dispute",
                text[:200],
                order_id=dispute.order_id,
                dispute_id=dispute.id,
            )
        db.session.flush()
    dispatch(outbox)
    return row
