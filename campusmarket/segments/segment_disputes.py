from __future__ import annotations

from flask import Blueprint, jsonify, request

from campusmarket.services.dispute_service import list_messages, open_dispute, post_message
from campusmarket.utils.auth import require_user

disputes_bp = Blueprint("disputes_bp", __name__, url_prefix="/api/disputes")


@disputes_bp.post("")
def create_dispute():
    buyer = require_user()
    payload = request.get_json(silent=True) or {}
    dispute = open_dispute(buyer, payload)
    return jsonify({"ok": True, "dispute": dispute.to_dict()}), 201


@disputes_bp.get("/<dispute_id>/messages")
def get_messages(dispute_id: str):
    user = require_user()
    rows = list_messages(user, dispute_id)
    return jsonify({"ok": True, "items": [m.to_dict() for m in rows]}), 200


@disputes_bp.post("/<dispute_id>/messages")
def send_message(dispute_id: str):
    user = require_user()
    payload = request.get_json(silent=True) or {}
    row = post_message(user, dispute_id, payload.get("message"), payload.get("attachments"))
    return jsonify({"ok": True, "message": row.to_dict()}), 201
