from __future__ import annotations

from flask import Blueprint, jsonify, request

from campusmarket.models import Dispute
from campusmarket.services.admin_service import suspend_user
from campusmarket.services.dispute_service import pickup_action, resolve_dispute
from campusmarket.services.reconciliation_service import persist_report, recompute_balances
from campusmarket.utils.auth import require_user

admin_bp = Blueprint("admin_bp", __name__, url_prefix="/api/admin")


@admin_bp.get("/disputes")
def list_disputes():
    require_user("admin")
    status = (request.args.get("status") or "").strip().upper()
    q = Dispute.query
    if status:
        q = q.filter_by(status=status)
    rows = q.order_by(Dispute.created_at.desc()).limit(200).all()
    return jsonify({"ok": True, "items": [d.to_dict(include_admin=True) for d in rows]}), 200


@admin_bp.post("/disputes/<dispute_id>/resolve")
def resolve_dispute_route(dispute_id: str):
    admin = require_user("admin")
    payload = request.get_json(silent=True) or {}
    result = resolve_dispute(admin, dispute_id, payload)
    return (
        jsonify(
            {
                "ok": True,
                "dispute": result["dispute"].to_dict(include_admin=True),
                "summary": result["summary"],
            }
        ),
        200,
    )


@admin_bp.post("/disputes/<dispute_id>/pickup")
def pickup_action_route(dispute_id: str):
    admin = require_user("admin")
    payload = request.get_json(silent=True) or {}
    result = pickup_action(admin, dispute_id, payload.get("action"))
    dispute = result.pop("dispute")
    return jsonify({"ok": True, **result, "dispute": dispute.to_dict(include_admin=True)}), 200


@admin_bp.post("/users/<user_id>/suspend")
def suspend_user_route(user_id: str):
    admin = require_user("admin")
    payload = request.get_json(silent=True) or {}
    user = suspend_user(admin, user_id, payload)
    return jsonify({"ok": True, "user": user.to_dict()}), 200


@admin_bp.get("/reconciliation")
def reconciliation():
    admin = require_user("admin")
    try:
        tolerance = float(request.args.get("tolerance") or 0.01)
    except (TypeError, ValueError):
        tolerance = 0.01
    user_id = request.args.get("user_id", type=int)
    summary = recompute_balances(tolerance=tolerance, user_id=user_id)
    if (request.args.get("persist") or "").strip() in ("1", "true", "yes"):
        report = persist_report(summary, created_by=int(admin.id))
        summary["report_id"] = int(report.id)
    return jsonify(summary), 200
