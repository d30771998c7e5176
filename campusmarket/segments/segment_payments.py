from __future__ import annotations

from urllib.parse import urlencode

from flask import Blueprint, current_app, jsonify, redirect, request

from campusmarket.services.errors import MarketError
from campusmarket.services.payment_service import initialize_checkout, verify_and_materialize
from campusmarket.utils.auth import require_user

payments_bp = Blueprint("payments_bp", __name__, url_prefix="/api/payments")


def _app_url(path: str, params: dict) -> str:
    base = (current_app.config.get("PUBLIC_APP_URL") or "").rstrip("/")
    return f"{base}{path}?{urlencode(params)}"


@payments_bp.post("/initialize")
def initialize_payment():
    buyer = require_user()
    payload = request.get_json(silent=True) or {}
    result = initialize_checkout(buyer, payload)
    return jsonify({"ok": True, **result}), 200


@payments_bp.get("/verify")
def verify_payment():
    """Gateway redirect target. Browsers get a redirect, API callers pass format=json."""
    reference = (request.args.get("reference") or request.args.get("trxref") or "").strip()
    wants_json = (request.args.get("format") or "").strip().lower() == "json"
    if wants_json:
        result = verify_and_materialize(reference)
        orders = result["orders"]
        return (
            jsonify(
                {
                    "ok": True,
                    "duplicate": bool(result["duplicate"]),
                    "reference": reference,
                    "orders": [o.to_dict() for o in orders],
                }
            ),
            200,
        )

    try:
        result = verify_and_materialize(reference)
    except MarketError as e:
        current_app.logger.info("payment_verify_redirect_error reference=%s code=%s", reference, e.code)
        params = {"error": (e.code or "error").lower()}
        product = request.args.get("product")
        if product:
            params["product"] = product
        return redirect(_app_url("/checkout", params))
    orders = result["orders"]
    return redirect(
        _app_url(
            "/orders",
            {"payment": "success", "order": orders[0].id if orders else "", "count": len(orders)},
        )
    )
