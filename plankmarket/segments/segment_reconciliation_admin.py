from __future__ import annotations

from flask import Blueprint, jsonify, request

from plankmarket.services.reconciliation_service import latest_report, persist_report, reconcile_escrow_ledger
from plankmarket.utils.capabilities import RUN_RECONCILIATION
from plankmarket.utils.request_auth import require_user

recon_bp = Blueprint("recon_bp", __name__, url_prefix="/api/admin/reconcile")


@recon_bp.post("")
def run_recon():
    u, err = require_user(RUN_RECONCILIATION)
    if err:
        return err
    data = request.get_json(silent=True) or {}
    try:
        held_days = int(data.get("held_after_delivery_days") or 7)
    except (TypeError, ValueError):
        return jsonify({"ok": False, "message": "held_after_delivery_days must be an integer"}), 400
    summary = reconcile_escrow_ledger(held_after_delivery_days=held_days)
    report_id = None
    if bool(data.get("persist", True)):
        report = persist_report(summary, created_by=int(u.id))
        report_id = int(report.id)
    return jsonify({"ok": True, "report_id": report_id, "summary": summary}), 200


@recon_bp.get("/latest")
def latest():
    u, err = require_user(RUN_RECONCILIATION)
    if err:
        return err
    row = latest_report()
    if not row:
        return jsonify({"ok": True, "report": None}), 200
    return jsonify({"ok": True, "report": row.to_dict()}), 200
