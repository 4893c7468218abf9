from __future__ import annotations

import hmac
import os

from flask import Blueprint, current_app, jsonify, request

from plankmarket.jobs.expiry_sweeper import (
    expire_listings,
    expire_pending_orders,
    expire_promotions,
    expire_stale_offers,
)

cron_bp = Blueprint("cron_bp", __name__, url_prefix="/api/cron")


def _authorize():
    """None when the caller holds the cron secret, else the error response."""
    secret = (os.getenv("CRON_SECRET") or "").strip()
    if not secret:
        current_app.logger.error("cron_secret_missing path=%s", request.path)
        return jsonify({"ok": False, "message": "Cron endpoint misconfigured"}), 500
    header = request.headers.get("Authorization", "")
    provided = header[len("Bearer "):] if header.startswith("Bearer ") else ""
    if not provided or not hmac.compare_digest(provided.encode("utf-8"), secret.encode("utf-8")):
        current_app.logger.warning(
            "cron_unauthorized path=%s has_auth_header=%s user_agent=%s",
            request.path,
            bool(header),
            request.headers.get("User-Agent", ""),
        )
        return jsonify({"ok": False, "message": "Unauthorized"}), 401
    return None


@cron_bp.route("/expire-pending-orders", methods=["GET", "POST"])
def cron_expire_pending_orders():
    denied = _authorize()
    if denied:
        return denied
    return jsonify(expire_pending_orders()), 200


@cron_bp.route("/expire-promotions", methods=["GET", "POST"])
def cron_expire_promotions():
    denied = _authorize()
    if denied:
        return denied
    expire_listings()
    return jsonify(expire_promotions()), 200


@cron_bp.route("/expire-offers", methods=["GET", "POST"])
def cron_expire_offers():
    denied = _authorize()
    if denied:
        return denied
    return jsonify(expire_stale_offers()), 200
