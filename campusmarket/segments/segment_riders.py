from __future__ import annotations

from flask import Blueprint, jsonify, request

from campusmarket.services.dispute_service import mark_pickup_collected
from campusmarket.services.order_lifecycle import accept_order, available_orders, update_status
from campusmarket.utils.auth import require_user

riders_bp = Blueprint("riders_bp", __name__, url_prefix="/api/riders")


def _order_id(payload: dict):
    return payload.get("order_id") or payload.get("orderId")


@riders_bp.get("/available-orders")
def list_available_orders():
    rider = require_user("rider")
    return jsonify({"ok": True, **available_orders(rider)}), 200


@riders_bp.post("/accept-order")
def accept_order_route():
    rider = require_user("rider")
    payload = request.get_json(silent=True) or {}
    order = accept_order(rider, _order_id(payload))
    return jsonify({"ok": True, "message": "Order accepted.", "order": order.to_dict()}), 200


@riders_bp.post("/update-status")
def update_status_route():
    rider = require_user("rider")
    payload = request.get_json(silent=True) or {}
    order = update_status(rider, _order_id(payload), payload.get("status"))
    return jsonify({"ok": True, "order": order.to_dict()}), 200


@riders_bp.post("/dispute-picked-up")
def dispute_picked_up():
    rider = require_user("rider")
    payload = request.get_json(silent=True) or {}
    order = mark_pickup_collected(rider, _order_id(payload))
    return (
        jsonify({"ok": True, "message": "Pickup confirmed. Admin has been notified.", "order": order.to_dict()}),
        200,
    )
