from __future__ import annotations

from flask import Blueprint, jsonify, request

from campusmarket.services.escrow_service import confirm_delivery
from campusmarket.services.order_lifecycle import buyer_orders, order_detail
from campusmarket.utils.auth import require_user

orders_bp = Blueprint("orders_bp", __name__, url_prefix="/api")


@orders_bp.post("/orders/confirm-delivery")
def confirm_delivery_route():
    buyer = require_user()
    payload = request.get_json(silent=True) or {}
    result = confirm_delivery(buyer, payload.get("order_id") or payload.get("orderId"))
    return (
        jsonify(
            {
                "ok": True,
                "message": "Delivery confirmed. Payment released to the seller.",
                "order": result["order"].to_dict(),
                "seller_share": result["seller_share"],
                "rider_share": result["rider_share"],
            }
        ),
        200,
    )


@orders_bp.get("/orders/my")
def my_orders():
    user = require_user()
    try:
        limit = int(request.args.get("limit") or 50)
    except (TypeError, ValueError):
        limit = 50
    return jsonify({"ok": True, "items": [o.to_dict() for o in buyer_orders(user, limit=limit)]}), 200


@orders_bp.get("/orders/<order_id>")
def get_order(order_id: str):
    user = require_user()
    return jsonify({"ok": True, "order": order_detail(user, order_id)}), 200
