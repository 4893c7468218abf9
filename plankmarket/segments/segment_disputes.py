from __future__ import annotations

from flask import Blueprint, jsonify, request

from plankmarket.services.dispute_service import mark_under_review, open_dispute, resolve_dispute
from plankmarket.utils.capabilities import OPEN_DISPUTE, RESOLVE_DISPUTE
from plankmarket.utils.request_auth import require_user

disputes_bp = Blueprint("disputes_bp", __name__, url_prefix="/api")


@disputes_bp.post("/orders/<int:order_id>/dispute")
def create_dispute(order_id: int):
    u, err = require_user(OPEN_DISPUTE)
    if err:
        return err
    data = request.get_json(silent=True) or {}
    dispute = open_dispute(
        order_id,
        user_id=int(u.id),
        reason=str(data.get("reason") or ""),
        description=str(data.get("description") or ""),
    )
    return jsonify({"ok": True, "dispute": dispute.to_dict()}), 201


@disputes_bp.post("/admin/disputes/<int:dispute_id>/review")
def review_dispute(dispute_id: int):
    u, err = require_user(RESOLVE_DISPUTE)
    if err:
        return err
    dispute = mark_under_review(dispute_id, admin_id=int(u.id))
    return jsonify({"ok": True, "dispute": dispute.to_dict()}), 200


@disputes_bp.post("/admin/disputes/<int:dispute_id>/resolve")
def resolve(dispute_id: int):
    u, err = require_user(RESOLVE_DISPUTE)
    if err:
        return err
    data = request.get_json(silent=True) or {}
    refund_amount_cents = data.get("refund_amount_cents")
    if refund_amount_cents is not None:
        try:
            refund_amount_cents = int(refund_amount_cents)
        except (TypeError, ValueError):
            return jsonify({"ok": False, "message": "refund_amount_cents must be an integer"}), 400
    result = resolve_dispute(
        dispute_id,
        admin_id=int(u.id),
        outcome=str(data.get("outcome") or ""),
        resolution=str(data.get("resolution") or ""),
        refund_amount_cents=refund_amount_cents,
    )
    return jsonify({"ok": True, **result}), 200
