from __future__ import annotations

from flask import Blueprint, jsonify, request

from plankmarket.models import ContentViolation
from plankmarket.services.moderation_service import check_violation_status, review_violation
from plankmarket.utils.capabilities import REVIEW_VIOLATIONS
from plankmarket.utils.request_auth import require_user

moderation_bp = Blueprint("moderation_bp", __name__, url_prefix="/api")


@moderation_bp.get("/me/violation-status")
def my_violation_status():
    u, err = require_user()
    if err:
        return err
    return jsonify({"ok": True, **check_violation_status(int(u.id))}), 200


@moderation_bp.get("/admin/violations")
def list_violations():
    u, err = require_user(REVIEW_VIOLATIONS)
    if err:
        return err
    q = ContentViolation.query
    if (request.args.get("reviewed") or "").strip().lower() in ("0", "false", "no"):
        q = q.filter(ContentViolation.reviewed.is_(False))
    try:
        limit = max(1, min(int(request.args.get("limit") or 50), 200))
    except (TypeError, ValueError):
        limit = 50
    rows = q.order_by(ContentViolation.created_at.desc()).limit(limit).all()
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows]}), 200


@moderation_bp.post("/admin/violations/<int:violation_id>/review")
def review(violation_id: int):
    u, err = require_user(REVIEW_VIOLATIONS)
    if err:
        return err
    data = request.get_json(silent=True) or {}
    row = review_violation(
        violation_id,
        reviewer_id=int(u.id),
        false_positive=bool(data.get("false_positive")),
        notes=str(data.get("notes") or ""),
    )
    if row is None:
        return jsonify({"ok": False, "message": "Violation not found"}), 404
    return jsonify({"ok": True, "violation": row.to_dict()}), 200
