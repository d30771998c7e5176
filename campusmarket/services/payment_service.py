from __future__ import annotations

import secrets
import string
import time
from collections import OrderedDict

from flask import current_app

from campusmarket.extensions import db
from campusmarket.integrations.common import IntegrationCallError, IntegrationDisabledError, IntegrationMisconfiguredError
from campusmarket.integrations.payments.factory import build_payments_provider
from campusmarket.models import Order, OrderItem, Product, User
from campusmarket.services.errors import GatewayError, NotFound, ValidationFailed
from campusmarket.services.ledger_service import TxnType, apply_balance_change, record_memo_entry, transaction_scope
from campusmarket.services.order_lifecycle import OrderStatus
from campusmarket.utils.events import log_event
from campusmarket.utils.fees import apportion_delivery_fee, calculate_fees, money, seller_net_share
from campusmarket.utils.notify import Outbox, dispatch

_ALPHABET = string.ascii_uppercase + string.digits


class _AlreadyMaterialized(Exception):
    pass


def generate_order_number(prefix: str = "CM") -> str:
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(7))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


def _provider():
    try:
        return build_payments_provider(current_app.config)
    except (IntegrationDisabledError, IntegrationMisconfiguredError) as e:
        current_app.logger.error("payments_provider_unavailable err=%s", e)
        raise GatewayError("Payments are temporarily unavailable.", code="PAYMENTS_UNAVAILABLE")


def _unavailable(code: str, message: str, line: dict) -> ValidationFailed:
    return ValidationFailed(
        message,
        code=code,
        details={"product_id": line.get("product_id"), "product": line.get("name") or ""},
    )


def _check_product(product: Product | None, line: dict) -> Product:
    """All-or-nothing stock gate for a single cart line."""
    if product is None:
        raise _unavailable("PRODUCT_NOT_FOUND", f"Product not found: {line.get('name') or line.get('product_id')}", line)
    if not product.is_active:
        raise _unavailable("PRODUCT_INACTIVE", f"Product unavailable: {product.name}", line)
    if int(product.quantity or 0) < int(line.get("quantity") or 0):
        raise _unavailable("OUT_OF_STOCK", f"Not enough stock for {product.name}", line)
    return product


def _parse_quantity(raw) -> int:
    try:
        qty = int(raw if raw is not None else 1)
    except (TypeError, ValueError):
        raise ValidationFailed("Quantity must be a whole number.", code="INVALID_QUANTITY")
    if qty < 1:
        raise ValidationFailed("Quantity must be at least 1.", code="INVALID_QUANTITY")
    return qty


def build_checkout_lines(buyer: User, payload: dict) -> list[dict]:
    raw_items = payload.get("cart_items")
    if not raw_items and payload.get("product_id"):
        raw_items = [{"product_id": payload.get("product_id"), "quantity": 1, "order_note": payload.get("order_note")}]
    if not raw_items or not isinstance(raw_items, list):
        raise ValidationFailed("No products provided.", code="NO_PRODUCTS")

    lines = []
    for raw in raw_items:
        if not isinstance(raw, dict):
            raise ValidationFailed("Invalid cart item.", code="INVALID_CART_ITEM")
        try:
            product_id = int(raw.get("product_id"))
        except (TypeError, ValueError):
            raise ValidationFailed("Invalid product id.", code="INVALID_CART_ITEM")
        line = {"product_id": product_id, "quantity": _parse_quantity(raw.get("quantity")), "name": raw.get("name") or ""}
        product = _check_product(db.session.get(Product, product_id), line)
        if int(product.seller_id) == int(buyer.id):
            raise ValidationFailed("You cannot buy your own product.", code="OWN_PRODUCT")
        line.update(
            {
                "name": product.name,
                "price": money(product.price),
                "seller_id": int(product.seller_id),
                "category": product.category or "",
                "order_note": (raw.get("order_note") or "").strip()[:500],
            }
        )
        lines.append(line)
    return lines


def initialize_checkout(buyer: User, payload: dict) -> dict:
    lines = build_checkout_lines(buyer, payload or {})
    subtotal = money(sum(line["price"] * line["quantity"] for line in lines))
    delivery_fee = payload.get("delivery_fee")
    if delivery_fee is not None:
        try:
            delivery_fee = money(float(delivery_fee))
        except (TypeError, ValueError):
            raise ValidationFailed("Invalid delivery fee.", code="INVALID_DELIVERY_FEE")
        if delivery_fee < 0:
            raise ValidationFailed("Invalid delivery fee.", code="INVALID_DELIVERY_FEE")
    fees = calculate_fees(subtotal, delivery_fee)
    reference = f"CM-{int(time.time() * 1000)}-{int(buyer.id)}"
    metadata = {
        "user_id": int(buyer.id),
        "cart_items": lines,
        "delivery_fee": fees["delivery_fee"],
        "fees": fees,
    }
    try:
        result = _provider().initialize(amount=fees["total_amount"], email=buyer.email, reference=reference, metadata=metadata)
    except IntegrationCallError as e:
        current_app.logger.warning("payment_initialize_failed reference=%s err=%s", reference, e)
        raise GatewayError("Could not start payment. Please try again.", code="PAYMENT_INIT_FAILED")
    current_app.logger.info(
        "payment_initialized reference=%s buyer=%s total=%s lines=%s",
        reference,
        buyer.id,
        fees["total_amount"],
        len(lines),
    )
    return {
        "authorization_url": result.authorization_url,
        "reference": result.reference,
        "breakdown": fees,
    }


def _group_by_seller(lines: list[dict]) -> "OrderedDict[int, list[dict]]":
    groups: OrderedDict[int, list[dict]] = OrderedDict()
    for line in lines:
        groups.setdefault(int(line["seller_id"]), []).append(line)
    return groups


def _materialize_seller_order(buyer: User, seller_id: int, lines: list[dict], *, checkout_fees: dict, reference: str, outbox: Outbox) -> Order:
    seller_subtotal = money(sum(float(line["price"]) * int(line["quantity"]) for line in lines))
    delivery_share = apportion_delivery_fee(checkout_fees["delivery_fee"], seller_subtotal, checkout_fees["subtotal"])
    fees = calculate_fees(seller_subtotal, delivery_share)
    order_number = generate_order_number()
    notes = " | ".join(line["order_note"] for line in lines if (line.get("order_note") or "").strip())
    items_list = ", ".join(f"{line['name']} (x{line['quantity']})" for line in lines)

    order = Order(
        order_number=order_number,
        payment_id=reference,
        buyer_id=int(buyer.id),
        seller_id=int(seller_id),
        product_id=int(lines[0]["product_id"]),
        quantity=sum(int(line["quantity"]) for line in lines),
        product_price=seller_subtotal,
        delivery_fee=fees["delivery_fee"],
        total_amount=fees["total_amount"],
        platform_commission=fees["platform_total"],
        status=OrderStatus.PENDING,
        is_paid=True,
        order_note=notes or None,
        delivery_hostel=buyer.hostel_name or "",
        delivery_room=buyer.room_number or "",
        delivery_phone=buyer.phone or "",
        delivery_landmark=buyer.landmark or "",
    )
    db.session.add(order)
    db.session.flush()

    for line in lines:
        product = db.session.get(Product, int(line["product_id"]), with_for_update=True, populate_existing=True)
        _check_product(product, line)
        product.quantity = int(product.quantity or 0) - int(line["quantity"])
        db.session.add(
            OrderItem(
                order_id=order.id,
                product_id=product.id,
                name=line["name"],
                unit_price=float(line["price"]),
                quantity=int(line["quantity"]),
                note=line.get("order_note") or None,
            )
        )

    escrow = seller_net_share(order.total_amount, order.platform_commission, with_rider=True)
    if escrow > 0:
        apply_balance_change(
            seller_id,
            "pending",
            escrow,
            txn_type=TxnType.ESCROW,
            reference=f"{order_number}-SELLER-ESCROW",
            description=f"Escrow held for: {items_list} (Order: {order_number})",
        )
    record_memo_entry(
        buyer.id,
        order.total_amount,
        txn_type=TxnType.DEBIT,
        reference=f"{order_number}-BUYER-PAYMENT",
        description=f"Payment for: {items_list} (Order: {order_number})",
    )
    log_event(
        "order_materialized",
        actor_user_id=buyer.id,
        subject_type="order",
        subject_id=order.id,
        idempotency_key=f"order_materialized:{order_number}",
        metadata={"payment_id": reference, "seller_id": seller_id, "total_amount": order.total_amount, "escrow": escrow},
    )

    outbox.add(
        seller_id,
        "NEW_ORDER",
        "New Order",
        f"You have a new order: {items_list} (Order #{order_number})." + (f" Buyer note: {notes}" if notes else ""),
        order_id=order.id,
        meta={"order_number": order_number, "buyer_note": notes},
    )
    return order


def _queue_buyer_receipt(buyer: User, orders: list[Order], reference: str, outbox: Outbox) -> None:
    outbox.add(
        buyer.id,
        "ORDER_PLACED",
        "Order Placed",
        f"Payment received. {len(orders)} order(s) placed: " + ", ".join(f"#{o.order_number}" for o in orders),
        order_id=orders[0].id,
        meta={"payment_id": reference, "order_numbers": [o.order_number for o in orders]},
    )


def verify_and_materialize(reference: str) -> dict:
    """Turn a verified gateway payment into one PENDING order per seller.

    A reference that already produced orders is answered with those orders
    and nothing new is written.
    """
    ref = (reference or "").strip()
    if not ref:
        raise ValidationFailed("Payment reference missing.", code="NO_REFERENCE")

    existing = Order.query.filter_by(payment_id=ref).order_by(Order.id.asc()).all()
    if existing:
        current_app.logger.info("payment_verify_duplicate reference=%s orders=%s", ref, len(existing))
        return {"orders": existing, "duplicate": True}

    try:
        result = _provider().verify(ref)
    except IntegrationCallError as e:
        current_app.logger.warning("payment_verify_failed reference=%s err=%s", ref, e)
        raise GatewayError("Could not verify payment with the gateway. Please retry.", code="VERIFICATION_FAILED")
    if (result.status or "").lower() != "success":
        raise ValidationFailed("Payment was not successful.", code="PAYMENT_FAILED", details={"gateway_status": result.status})

    meta = result.metadata or {}
    lines = meta.get("cart_items") or []
    if not meta.get("user_id") or not isinstance(lines, list) or not lines:
        raise ValidationFailed("Payment metadata is incomplete.", code="INVALID_METADATA")
    buyer = db.session.get(User, int(meta["user_id"]))
    if buyer is None:
        raise NotFound("Buyer account not found.", code="USER_NOT_FOUND")
    subtotal = money(sum(float(line.get("price") or 0) * int(line.get("quantity") or 0) for line in lines))
    delivery_fee = meta.get("delivery_fee", (meta.get("fees") or {}).get("delivery_fee"))
    fees = calculate_fees(subtotal, delivery_fee)
    if result.amount and abs(money(result.amount) - money(fees.get("total_amount"))) > 0.01:
        raise ValidationFailed(
            "Paid amount does not match the order total.",
            code="AMOUNT_MISMATCH",
            details={"paid": money(result.amount), "expected": money(fees.get("total_amount"))},
        )

    for line in lines:
        _check_product(db.session.get(Product, int(line.get("product_id") or 0)), line)

    outbox = Outbox()
    try:
        with transaction_scope("payment_materialize"):
            # A concurrent redirect+webhook pair may race past the first check.
            if Order.query.filter_by(payment_id=ref).first() is not None:
                raise _AlreadyMaterialized()
            orders = [
                _materialize_seller_order(buyer, seller_id, seller_lines, checkout_fees=fees, reference=ref, outbox=outbox)
                for seller_id, seller_lines in _group_by_seller(lines).items()
            ]
            _queue_buyer_receipt(buyer, orders, ref, outbox)
    except _AlreadyMaterialized:
        existing = Order.query.filter_by(payment_id=ref).order_by(Order.id.asc()).all()
        return {"orders": existing, "duplicate": True}
    dispatch(outbox)
    current_app.logger.info("payment_materialized reference=%s orders=%s", ref, len(orders))
    return {"orders": orders, "duplicate": False}
