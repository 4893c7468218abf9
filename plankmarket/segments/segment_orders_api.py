from __future__ import annotations

from flask import Blueprint, jsonify, request

from plankmarket.services.escrow_service import process_order_refund, release_escrow_for_order
from plankmarket.services.order_service import (
    create_order,
    create_order_from_offer,
    get_order_for_user,
    update_order_status,
)
from plankmarket.utils.capabilities import BUY, CONFIRM_PICKUP, FULFIL_ORDER, REFUND_ORDER
from plankmarket.utils.fees import compute_order_fees
from plankmarket.utils.idempotency import discard_key, lookup_response, store_response
from plankmarket.utils.request_auth import require_user

orders_bp = Blueprint("orders_bp", __name__, url_prefix="/api")


def _shipping(data: dict) -> dict:
    shipping = data.get("shipping")
    if isinstance(shipping, dict):
        return shipping
    return {
        "name": data.get("shipping_name"),
        "address": data.get("shipping_address"),
        "city": data.get("shipping_city"),
        "state": data.get("shipping_state"),
        "zip": data.get("shipping_zip"),
    }


def _idempotent(user_id: int, scope: str, data: dict, handler):
    """Run ``handler`` once per Idempotency-Key; replays return the stored response."""
    idem = lookup_response(int(user_id), scope, data)
    if idem and idem[0] in ("hit", "conflict"):
        return jsonify(idem[1]), idem[2]
    idem_row = idem[1] if idem and idem[0] == "miss" else None
    try:
        body, status = handler()
    except Exception:
        if idem_row is not None:
            discard_key(idem_row)
        raise
    if idem_row is not None:
        store_response(idem_row, body, status)
    return jsonify(body), status


@orders_bp.post("/orders")
def create_buy_now_order():
    u, err = require_user(BUY)
    if err:
        return err
    data = request.get_json(silent=True) or {}
    try:
        listing_id = int(data.get("listing_id"))
    except (TypeError, ValueError):
        return jsonify({"ok": False, "message": "listing_id is required"}), 400

    def _handler():
        result = create_order(
            buyer_id=int(u.id),
            listing_id=listing_id,
            quantity_sq_ft=data.get("quantity_sq_ft"),
            shipping_price=data.get("shipping_price") or 0,
            shipping=_shipping(data),
        )
        return {"ok": True, **result.to_dict()}, 201

    return _idempotent(int(u.id), "/api/orders", data, _handler)


@orders_bp.post("/orders/from-offer")
def create_offer_order():
    u, err = require_user(BUY)
    if err:
        return err
    data = request.get_json(silent=True) or {}
    try:
        offer_id = int(data.get("offer_id"))
    except (TypeError, ValueError):
        return jsonify({"ok": False, "message": "offer_id is required"}), 400

    def _handler():
        result = create_order_from_offer(
            buyer_id=int(u.id),
            offer_id=offer_id,
            shipping_price=data.get("shipping_price") or 0,
            shipping=_shipping(data),
        )
        return {"ok": True, **result.to_dict()}, 201

    return _idempotent(int(u.id), "/api/orders/from-offer", data, _handler)


@orders_bp.get("/orders/<int:order_id>")
def get_order(order_id: int):
    u, err = require_user()
    if err:
        return err
    order = get_order_for_user(order_id, u)
    return jsonify({"ok": True, "order": order.to_dict()}), 200


@orders_bp.post("/orders/<int:order_id>/status")
def set_status(order_id: int):
    u, err = require_user(FULFIL_ORDER)
    if err:
        return err
    data = request.get_json(silent=True) or {}
    order = update_order_status(
        order_id,
        str(data.get("status") or ""),
        actor_id=int(u.id),
        tracking_number=data.get("tracking_number"),
        carrier=data.get("carrier"),
        notes=data.get("notes"),
    )
    return jsonify({"ok": True, "order": order.to_dict()}), 200


@orders_bp.post("/orders/<int:order_id>/pickup")
def confirm_pickup(order_id: int):
    u, err = require_user(CONFIRM_PICKUP)
    if err:
        return err
    result = release_escrow_for_order(order_id, actor={"type": "admin", "id": int(u.id)})
    return jsonify({"ok": True, **result}), 200


@orders_bp.post("/orders/<int:order_id>/refund")
def refund(order_id: int):
    u, err = require_user(REFUND_ORDER)
    if err:
        return err
    data = request.get_json(silent=True) or {}
    amount_cents = data.get("amount_cents")
    if amount_cents is not None:
        try:
            amount_cents = int(amount_cents)
        except (TypeError, ValueError):
            return jsonify({"ok": False, "message": "amount_cents must be an integer"}), 400
    result = process_order_refund(
        order_id,
        amount_cents=amount_cents,
        reason=str(data.get("reason") or "").strip()[:240],
        actor={"type": "admin", "id": int(u.id)},
    )
    return jsonify({"ok": True, "refund": result.to_dict()}), 200


@orders_bp.get("/fees/preview")
def fees_preview():
    subtotal = request.args.get("subtotal", 0)
    shipping = request.args.get("shipping", 0)
    return jsonify({"ok": True, "fees": compute_order_fees(subtotal, shipping).to_dict()}), 200
