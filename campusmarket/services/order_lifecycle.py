from __future__ import annotations

from datetime import datetime

from campusmarket.extensions import db
from campusmarket.models import Order, OrderTransition, User
from campusmarket.services.errors import NotAuthorized, NotFound, PreconditionFailed, ValidationFailed
from campusmarket.services.ledger_service import TxnType, apply_balance_change, lock_user, transaction_scope
from campusmarket.utils.events import log_event
from campusmarket.utils.fees import rider_fee
from campusmarket.utils.notify import Outbox, dispatch


class OrderStatus:
    PENDING = "PENDING"
    RIDER_ASSIGNED = "RIDER_ASSIGNED"
    PICKED_UP = "PICKED_UP"
    ON_THE_WAY = "ON_THE_WAY"
    DELIVERED = "DELIVERED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    ALLOWED = {
        PENDING: {RIDER_ASSIGNED, CANCELLED},
        RIDER_ASSIGNED: {PICKED_UP},
        PICKED_UP: {ON_THE_WAY},
        ON_THE_WAY: {DELIVERED},
        DELIVERED: {COMPLETED},
        COMPLETED: set(),
        CANCELLED: set(),
    }

    # Return trip of a disputed item back from the buyer.
    DISPUTE_PICKUP_ALLOWED = {
        DELIVERED: {RIDER_ASSIGNED},
        COMPLETED: {RIDER_ASSIGNED},
        RIDER_ASSIGNED: {PICKED_UP, CANCELLED},
        PICKED_UP: {CANCELLED},
    }

    ACTIVE_DELIVERY = (RIDER_ASSIGNED, PICKED_UP, ON_THE_WAY, DELIVERED)
    RIDER_UPDATABLE = (PICKED_UP, ON_THE_WAY, DELIVERED)


def lock_order(order_id) -> Order:
    try:
        oid = int(order_id)
    except (TypeError, ValueError):
        raise ValidationFailed("Order ID must be a number.", code="ORDER_ID_INVALID")
    db.session.flush()
    order = db.session.get(Order, oid, with_for_update=True, populate_existing=True)
    if order is None:
        raise NotFound("Order not found.", code="ORDER_NOT_FOUND")
    return order


def transition_order(
    order: Order,
    to_status: str,
    *,
    actor: User | None = None,
    reason: str = "",
    dispute_pickup: bool = False,
) -> OrderTransition:
    """Move an order to ``to_status`` and append its audit row.

    Only documented predecessor states are accepted. Flushes but does not
    commit; callers run this inside ``transaction_scope``.
    """
    current = (order.status or OrderStatus.PENDING).strip().upper()
    target = (to_status or "").strip().upper()
    table = OrderStatus.DISPUTE_PICKUP_ALLOWED if dispute_pickup else OrderStatus.ALLOWED
    if target not in table.get(current, set()):
        raise PreconditionFailed(
            f"Cannot move order from {current.replace('_', ' ')} to {target.replace('_', ' ')}.",
            code="INVALID_ORDER_TRANSITION",
            details={"current_status": current, "requested_status": target},
        )
    now = datetime.utcnow()
    order.status = target
    if target == OrderStatus.RIDER_ASSIGNED and order.rider_assigned_at is None:
        order.rider_assigned_at = now
    elif target == OrderStatus.DELIVERED:
        order.delivered_at = now
    elif target == OrderStatus.COMPLETED:
        order.completed_at = now
    elif target == OrderStatus.CANCELLED:
        order.cancelled_at = now

    seq = OrderTransition.query.filter_by(order_id=int(order.id)).count() + 1
    row = OrderTransition(
        order_id=int(order.id),
        from_status=current,
        to_status=target,
        actor_role=((actor.role if actor else None) or "system")[:16],
        actor_id=int(actor.id) if actor is not None else None,
        idempotency_key=f"order:{int(order.id)}:{seq}:{current}->{target}"[:160],
        reason=(reason or "")[:240],
        created_at=now,
    )
    db.session.add(row)
    db.session.flush()
    return row


def rider_blockers(rider_id: int) -> tuple[Order | None, Order | None]:
    """(pending dispute pickup, active delivery) currently held by a rider."""
    pickup = (
        Order.query.filter_by(rider_id=int(rider_id), is_disputed=True, status=OrderStatus.RIDER_ASSIGNED)
        .order_by(Order.id.asc())
        .first()
    )
    active = (
        Order.query.filter(
            Order.rider_id == int(rider_id),
            Order.is_disputed.is_(False),
            Order.status.in_(OrderStatus.ACTIVE_DELIVERY),
        )
        .order_by(Order.id.asc())
        .first()
    )
    return pickup, active


def _ensure_rider_free(rider_id: int) -> None:
    pickup, active = rider_blockers(rider_id)
    if pickup is not None:
        raise PreconditionFailed(
            f"You have a pending dispute pickup (Order #{pickup.order_number}). "
            "You must complete that return first before accepting new orders.",
            code="PENDING_DISPUTE_PICKUP",
            details={"block_reason": "DISPUTE_PICKUP", "blocking_order_id": int(pickup.id)},
        )
    if active is not None:
        raise PreconditionFailed(
            f"You still have an active delivery (Order #{active.order_number}, "
            f"{active.status.replace('_', ' ')}). Complete it before accepting a new order.",
            code="ACTIVE_DELIVERY",
            details={"block_reason": "ACTIVE_DELIVERY", "blocking_order_id": int(active.id)},
        )


def accept_order(rider: User, order_id) -> Order:
    if not order_id:
        raise ValidationFailed("Order ID required.", code="ORDER_ID_REQUIRED")

    outbox = Outbox()
    with transaction_scope("rider_accept_order"):
        # Rider row lock serializes concurrent accepts by the same rider.
        lock_user(rider.id)
        _ensure_rider_free(int(rider.id))
        order = lock_order(order_id)
        if order.is_disputed:
            raise PreconditionFailed("This order is under dispute.", code="ORDER_DISPUTED")
        if order.rider_id is not None:
            raise PreconditionFailed("Order already has a rider.", code="ORDER_HAS_RIDER")
        if order.status != OrderStatus.PENDING:
            raise PreconditionFailed(
                "Order already assigned or completed.",
                code="ORDER_NOT_PENDING",
                details={"current_status": order.status},
            )
        order.rider_id = int(rider.id)
        transition_order(order, OrderStatus.RIDER_ASSIGNED, actor=rider, reason="rider_accepted")
        fee = rider_fee()
        apply_balance_change(
            rider.id,
            "pending",
            fee,
            txn_type=TxnType.ESCROW,
            reference=f"{order.order_number}-RIDER-ESCROW",
            description=f"Delivery fee held for Order #{order.order_number}",
        )
        log_event(
            "rider_escrow_held",
            actor_user_id=rider.id,
            subject_type="order",
            subject_id=order.id,
            idempotency_key=f"rider_escrow_held:{order.order_number}",
            metadata={"amount": fee, "rider_id": int(rider.id)},
        )
        outbox.add(
            order.buyer_id,
            "ORDER_UPDATE",
            "Rider Assigned",
            f"{rider.name or 'A rider'} is handling delivery of Order #{order.order_number}.",
            order_id=order.id,
        )
        outbox.add(
            order.seller_id,
            "ORDER_UPDATE",
            "Rider Assigned",
            f"A rider is on the way to collect Order #{order.order_number}.",
            order_id=order.id,
        )
    dispatch(outbox)
    return order


_STATUS_MESSAGES = {
    OrderStatus.PICKED_UP: ("Order Picked Up", "{rider} has picked up Order #{number}."),
    OrderStatus.ON_THE_WAY: ("Order On The Way", "{rider} is on the way with Order #{number}."),
    OrderStatus.DELIVERED: (
        "Order Delivered",
        "Order #{number} has been delivered. Please confirm delivery to release payment.",
    ),
}


def update_status(rider: User, order_id, status: str) -> Order:
    target = (status or "").strip().upper()
    if not order_id:
        raise ValidationFailed("Order ID required.", code="ORDER_ID_REQUIRED")
    if target not in OrderStatus.RIDER_UPDATABLE:
        raise ValidationFailed(
            "Status must be PICKED_UP, ON_THE_WAY or DELIVERED.",
            code="INVALID_STATUS",
        )

    outbox = Outbox()
    with transaction_scope("rider_update_status"):
        order = lock_order(order_id)
        if order.rider_id is None or int(order.rider_id) != int(rider.id):
            raise NotAuthorized("Not your delivery.", code="NOT_ORDER_RIDER")
        if order.is_disputed:
            raise PreconditionFailed(
                "This order is a dispute pickup. Use the dispute pickup action instead.",
                code="ORDER_DISPUTED",
            )
        transition_order(order, target, actor=rider, reason="rider_update")
        if target == OrderStatus.DELIVERED:
            locked_rider = lock_user(rider.id)
            locked_rider.completed_deliveries = int(locked_rider.completed_deliveries or 0) + 1
        title, template = _STATUS_MESSAGES[target]
        outbox.add(
            order.buyer_id,
            "ORDER_UPDATE",
            title,
            template.format(rider=rider.name or "Your rider", number=order.order_number),
            order_id=order.id,
        )
    dispatch(outbox)
    return order


def available_orders(rider: User) -> dict:
    open_orders = (
        Order.query.filter(
            Order.status == OrderStatus.PENDING,
            Order.rider_id.is_(None),
            Order.is_disputed.is_(False),
        )
        .order_by(Order.created_at.asc())
        .all()
    )
    pickups = (
        Order.query.filter(
            Order.rider_id == int(rider.id),
            Order.is_disputed.is_(True),
            Order.status.in_((OrderStatus.RIDER_ASSIGNED, OrderStatus.PICKED_UP)),
        )
        .order_by(Order.updated_at.desc())
        .all()
    )
    pickup_job, active = rider_blockers(int(rider.id))
    return {
        "orders": [o.to_dict() for o in open_orders],
        "dispute_pickups": [o.to_dict() for o in pickups],
        "can_accept": pickup_job is None and active is None,
    }


def order_detail(user: User, order_id) -> dict:
    """Order as seen by one of its parties, with the dispute summary if any."""
    from campusmarket.models import Dispute
    from campusmarket.utils.auth import role_of

    try:
        oid = int(order_id)
    except (TypeError, ValueError):
        raise ValidationFailed("Order ID must be a number.", code="ORDER_ID_INVALID")
    order = db.session.get(Order, oid)
    if order is None:
        raise NotFound("Order not found.", code="ORDER_NOT_FOUND")
    parties = {order.buyer_id, order.seller_id, order.rider_id}
    is_admin = role_of(user) == "admin"
    if int(user.id) not in parties and not is_admin:
        raise NotAuthorized("You are not a party to this order.", code="NOT_ORDER_PARTY")
    data = order.to_dict()
    dispute = Dispute.query.filter_by(order_id=int(order.id)).first()
    data["dispute"] = dispute.to_dict(include_admin=is_admin) if dispute is not None else None
    return data


def buyer_orders(user: User, *, limit: int = 50) -> list[Order]:
    return (
        Order.query.filter_by(buyer_id=int(user.id))
        .order_by(Order.created_at.desc(), Order.id.desc())
        .limit(max(1, min(int(limit), 200)))
        .all()
    )
