from __future__ import annotations

from flask import Blueprint, jsonify, request

from plankmarket.extensions import db
from plankmarket.models import Offer
from plankmarket.services.offer_service import (
    accept_offer,
    counter_offer,
    create_offer,
    offer_events,
    reject_offer,
    replay_offer_events,
    withdraw_offer,
)
from plankmarket.utils.capabilities import MAKE_OFFER, NEGOTIATE
from plankmarket.utils.request_auth import require_user

offers_bp = Blueprint("offers_bp", __name__, url_prefix="/api/offers")


def _int_field(data: dict, key: str):
    try:
        return int(data.get(key))
    except (TypeError, ValueError):
        return None


@offers_bp.post("")
def create():
    u, err = require_user(MAKE_OFFER)
    if err:
        return err
    data = request.get_json(silent=True) or {}
    listing_id = _int_field(data, "listing_id")
    if listing_id is None:
        return jsonify({"ok": False, "message": "listing_id is required"}), 400
    offer = create_offer(
        buyer_id=int(u.id),
        listing_id=listing_id,
        price_per_sq_ft=data.get("price_per_sq_ft"),
        quantity_sq_ft=data.get("quantity_sq_ft"),
        message=data.get("message"),
    )
    return jsonify({"ok": True, "offer": offer.to_dict()}), 201


@offers_bp.get("/<int:offer_id>")
def get_offer(offer_id: int):
    u, err = require_user()
    if err:
        return err
    offer = db.session.get(Offer, int(offer_id))
    if offer is None or (u.role != "admin" and int(u.id) not in (int(offer.buyer_id), int(offer.seller_id))):
        return jsonify({"ok": False, "message": "Offer not found"}), 404
    events = offer_events(int(offer.id))
    return jsonify(
        {
            "ok": True,
            "offer": offer.to_dict(),
            "events": [e.to_dict() for e in events],
            "timeline": replay_offer_events(events),
        }
    ), 200


@offers_bp.post("/<int:offer_id>/counter")
def counter(offer_id: int):
    u, err = require_user(NEGOTIATE)
    if err:
        return err
    data = request.get_json(silent=True) or {}
    offer = counter_offer(
        offer_id,
        actor_id=int(u.id),
        price_per_sq_ft=data.get("price_per_sq_ft"),
        quantity_sq_ft=data.get("quantity_sq_ft"),
        message=data.get("message"),
    )
    return jsonify({"ok": True, "offer": offer.to_dict()}), 200


@offers_bp.post("/<int:offer_id>/accept")
def accept(offer_id: int):
    u, err = require_user(NEGOTIATE)
    if err:
        return err
    offer = accept_offer(offer_id, actor_id=int(u.id))
    return jsonify({"ok": True, "offer": offer.to_dict()}), 200


@offers_bp.post("/<int:offer_id>/reject")
def reject(offer_id: int):
    u, err = require_user(NEGOTIATE)
    if err:
        return err
    data = request.get_json(silent=True) or {}
    offer = reject_offer(offer_id, actor_id=int(u.id), message=data.get("message"))
    return jsonify({"ok": True, "offer": offer.to_dict()}), 200


@offers_bp.post("/<int:offer_id>/withdraw")
def withdraw(offer_id: int):
    u, err = require_user(MAKE_OFFER)
    if err:
        return err
    offer = withdraw_offer(offer_id, actor_id=int(u.id))
    return jsonify({"ok": True, "offer": offer.to_dict()}), 200
