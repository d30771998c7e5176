from __future__ import annotations

from flask import Blueprint, jsonify, request

from campusmarket.services.wallet_service import wallet_summary, withdraw
from campusmarket.utils.auth import require_user

wallets_bp = Blueprint("wallets_bp", __name__, url_prefix="/api/wallet")


@wallets_bp.get("")
def get_wallet():
    user = require_user()
    return jsonify({"ok": True, **wallet_summary(user)}), 200


@wallets_bp.post("/withdraw")
def withdraw_route():
    user = require_user()
    payload = request.get_json(silent=True) or {}
    result = withdraw(user, payload)
    return jsonify({"ok": True, **result}), 200
