from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app

from plankmarket.extensions import db
from plankmarket.models import Listing, Offer, OfferEvent, User
from plankmarket.services.errors import OfferError
from plankmarket.services.moderation_service import enforce_violation_status, screen_text
from plankmarket.services.notification_service import notify_user
from plankmarket.utils.events import log_event
from plankmarket.utils.fees import offer_total_price
from plankmarket.utils.unit_of_work import UnitOfWork, begin

OFFER_VALIDITY = timedelta(hours=48)

MAX_PRICE_PER_SQ_FT = 1000
MAX_QUANTITY_SQ_FT = 1_000_000
MAX_MESSAGE_LENGTH = 500


class OfferStatus:
    PENDING = "pending"
    COUNTERED = "countered"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"
    EXPIRED = "expired"

    OPEN = frozenset({PENDING, COUNTERED})
    TERMINAL = frozenset({ACCEPTED, REJECTED, WITHDRAWN, EXPIRED})


class OfferEventType:
    INITIAL_OFFER = "initial_offer"
    COUNTER = "counter"
    ACCEPT = "accept"
    REJECT = "reject"
    WITHDRAW = "withdraw"
    EXPIRE = "expire"


# Status each event leaves the offer in.
_EVENT_STATUS = {
    OfferEventType.INITIAL_OFFER: OfferStatus.PENDING,
    OfferEventType.COUNTER: OfferStatus.COUNTERED,
    OfferEventType.ACCEPT: OfferStatus.ACCEPTED,
    OfferEventType.REJECT: OfferStatus.REJECTED,
    OfferEventType.WITHDRAW: OfferStatus.WITHDRAWN,
    OfferEventType.EXPIRE: OfferStatus.EXPIRED,
}


def _now() -> datetime:
    return datetime.utcnow()


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _parse_number(value, field: str) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        raise OfferError(f"{field} must be a number")
    if parsed != parsed or parsed in (float("inf"), float("-inf")):
        raise OfferError(f"{field} must be a number")
    return parsed


def validate_price(value, *, label: str = "Offer price") -> float:
    price = _parse_number(value, label)
    if price <= 0:
        raise OfferError(f"{label} must be positive")
    if price > MAX_PRICE_PER_SQ_FT:
        raise OfferError("Price seems too high")
    return price


def validate_quantity(value) -> float:
    qty = _parse_number(value, "Quantity")
    if qty <= 0:
        raise OfferError("Quantity must be positive")
    if qty > MAX_QUANTITY_SQ_FT:
        raise OfferError("Quantity seems too high")
    return qty


def validate_message(value) -> str | None:
    text = (value or "").strip() if isinstance(value, str) or value is None else None
    if text is None:
        raise OfferError("Message must be text")
    if len(text) > MAX_MESSAGE_LENGTH:
        raise OfferError(f"Message must be at most {MAX_MESSAGE_LENGTH} characters")
    return text or None


def validate_turn(offer: Offer, actor_id: int) -> None:
    if offer.last_actor_id is None:
        raise OfferError("Offer has not been initialized properly")
    if int(offer.last_actor_id) == int(actor_id):
        raise OfferError("It's not your turn. Wait for the other party to respond.", status=403)
    if int(actor_id) not in (int(offer.buyer_id), int(offer.seller_id)):
        raise OfferError("You are not a party to this offer", status=403)


def is_expired(offer: Offer, *, now: datetime | None = None) -> bool:
    return bool(offer.expires_at and (now or _now()) > offer.expires_at)


def validate_actionable(offer: Offer, action: str, *, now: datetime | None = None) -> None:
    if (offer.status or "") not in OfferStatus.OPEN:
        raise OfferError(f"This offer cannot be {action}")
    if is_expired(offer, now=now):
        raise OfferError("This offer has expired")


def validate_withdrawable(offer: Offer, actor_id: int) -> None:
    if int(offer.buyer_id) != int(actor_id):
        raise OfferError("You can only withdraw your own offers", status=403)
    if (offer.status or "") not in OfferStatus.OPEN:
        raise OfferError("You can only withdraw pending or countered offers")


# ---------------------------------------------------------------------------
# Event log
# ---------------------------------------------------------------------------


def _append_event(offer: Offer, event_type: str, *, actor_id: int | None, message: str | None = None) -> OfferEvent:
    row = OfferEvent(
        offer_id=int(offer.id),
        actor_id=int(actor_id) if actor_id is not None else None,
        event_type=event_type,
        price_per_sq_ft=float(offer.price_per_sq_ft),
        quantity_sq_ft=float(offer.quantity_sq_ft),
        total_price=float(offer.total_price),
        message=message,
        created_at=_now(),
    )
    db.session.add(row)
    return row


def offer_events(offer_id: int) -> list:
    return OfferEvent.query.filter_by(offer_id=int(offer_id)).order_by(OfferEvent.id.asc()).all()


def replay_offer_events(events) -> dict:
    """Fold an offer's event list into the state it describes."""
    state = {
        "status": None,
        "price_per_sq_ft": None,
        "quantity_sq_ft": None,
        "total_price": None,
        "current_round": 0,
    }
    for ev in events:
        event_type = ev.event_type if hasattr(ev, "event_type") else ev["event_type"]
        if state["status"] in OfferStatus.TERMINAL:
            raise ValueError(f"event {event_type} after terminal status {state['status']}")
        if event_type not in _EVENT_STATUS:
            raise ValueError(f"unknown offer event {event_type}")
        get = (lambda k: getattr(ev, k)) if hasattr(ev, "event_type") else ev.get
        state["status"] = _EVENT_STATUS[event_type]
        state["price_per_sq_ft"] = get("price_per_sq_ft")
        state["quantity_sq_ft"] = get("quantity_sq_ft")
        state["total_price"] = get("total_price")
        if event_type in (OfferEventType.INITIAL_OFFER, OfferEventType.COUNTER):
            state["current_round"] += 1
    return state


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def _get_user(user_id: int) -> User:
    user = db.session.get(User, int(user_id))
    if user is None:
        raise OfferError("User not found", status=404)
    return user


def _lock_offer(tx: UnitOfWork, offer_id: int) -> Offer:
    offer = tx.locked(Offer, int(offer_id))
    if offer is None:
        raise OfferError("Offer not found", status=404)
    return offer


def _other_party(offer: Offer, actor_id: int) -> int:
    return int(offer.seller_id) if int(actor_id) == int(offer.buyer_id) else int(offer.buyer_id)


def _expire_in_place(offer: Offer, *, now: datetime) -> None:
    offer.status = OfferStatus.EXPIRED
    offer.updated_at = now
    _append_event(offer, OfferEventType.EXPIRE, actor_id=None)


def _refuse_if_expired(offer_id: int) -> None:
    """Persist the lazy expiry of an offer a party tried to move."""
    with begin() as tx:
        offer = _lock_offer(tx, offer_id)
        if (offer.status or "") in OfferStatus.OPEN and is_expired(offer):
            _expire_in_place(offer, now=_now())
            expired = True
        else:
            expired = False
    if expired:
        current_app.logger.info("offer_expired_on_access offer_id=%s", offer_id)
        raise OfferError("This offer has expired")


def create_offer(
    *,
    buyer_id: int,
    listing_id: int,
    price_per_sq_ft,
    quantity_sq_ft,
    message: str | None = None,
    uow: UnitOfWork | None = None,
) -> Offer:
    price = validate_price(price_per_sq_ft)
    qty = validate_quantity(quantity_sq_ft)
    text = validate_message(message)
    buyer = _get_user(buyer_id)
    enforce_violation_status(int(buyer.id))
    screen_text(text, user=buyer, content_type="offer", field_name="message", uow=uow)

    with begin(uow) as tx:
        listing = tx.locked(Listing, int(listing_id))
        if listing is None or (listing.status or "") != "active":
            raise OfferError("Listing not found or no longer available", status=404)
        if not listing.allow_offers:
            raise OfferError("Offers are not allowed on this listing")
        if int(listing.seller_id) == int(buyer.id):
            raise OfferError("You cannot make an offer on your own listing")
        if listing.floor_price is not None and price < float(listing.floor_price):
            raise OfferError(f"Offer must be at least {float(listing.floor_price):g} per sq ft")
        if qty > float(listing.total_sq_ft or 0.0):
            raise OfferError("Quantity exceeds available inventory", status=409)
        existing = (
            Offer.query.filter(
                Offer.listing_id == int(listing.id),
                Offer.buyer_id == int(buyer.id),
                Offer.status.in_(tuple(OfferStatus.OPEN)),
            ).first()
        )
        if existing is not None:
            raise OfferError("You already have a pending offer on this listing", status=409)

        now = _now()
        offer = Offer(
            listing_id=int(listing.id),
            buyer_id=int(buyer.id),
            seller_id=int(listing.seller_id),
            initial_price_per_sq_ft=price,
            price_per_sq_ft=price,
            quantity_sq_ft=qty,
            total_price=offer_total_price(price, qty),
            message=text,
            current_round=1,
            last_actor_id=int(buyer.id),
            status=OfferStatus.PENDING,
            expires_at=now + OFFER_VALIDITY,
            created_at=now,
            updated_at=now,
        )
        tx.add(offer)
        tx.flush()
        _append_event(offer, OfferEventType.INITIAL_OFFER, actor_id=int(buyer.id), message=text)
        listing.offer_count = int(listing.offer_count or 0) + 1
        notify_user(
            int(listing.seller_id),
            kind="offer_received",
            title="New Offer",
            message=f"You received an offer of ${price:.2f}/sq ft for {qty:g} sq ft on \"{listing.title}\".",
            meta={"offer_id": int(offer.id), "listing_id": int(listing.id)},
        )
        log_event("offer_created", actor_user_id=int(buyer.id), subject_type="offer", subject_id=offer.id)

    current_app.logger.info("offer_created offer_id=%s listing_id=%s buyer_id=%s", offer.id, listing_id, buyer_id)
    return offer


def counter_offer(
    offer_id: int,
    *,
    actor_id: int,
    price_per_sq_ft,
    quantity_sq_ft=None,
    message: str | None = None,
    uow: UnitOfWork | None = None,
) -> Offer:
    if price_per_sq_ft is None:
        raise OfferError("Counter price is required when countering an offer")
    price = validate_price(price_per_sq_ft, label="Counter price")
    qty = validate_quantity(quantity_sq_ft) if quantity_sq_ft is not None else None
    text = validate_message(message)
    actor = _get_user(actor_id)
    enforce_violation_status(int(actor.id))
    screen_text(text, user=actor, content_type="offer", field_name="counter message", uow=uow)

    if uow is None:
        _refuse_if_expired(offer_id)
    with begin(uow) as tx:
        offer = _lock_offer(tx, offer_id)
        validate_actionable(offer, "countered")
        validate_turn(offer, int(actor.id))

        offer.price_per_sq_ft = price
        if qty is not None:
            offer.quantity_sq_ft = qty
        offer.total_price = offer_total_price(price, offer.quantity_sq_ft)
        offer.counter_message = text
        offer.status = OfferStatus.COUNTERED
        offer.current_round = int(offer.current_round or 1) + 1
        offer.last_actor_id = int(actor.id)
        offer.expires_at = _now() + OFFER_VALIDITY
        offer.updated_at = _now()
        _append_event(offer, OfferEventType.COUNTER, actor_id=int(actor.id), message=text)
        notify_user(
            _other_party(offer, int(actor.id)),
            kind="offer_countered",
            title="Offer Countered",
            message=f"Your offer was countered at ${price:.2f}/sq ft (round {offer.current_round}).",
            meta={"offer_id": int(offer.id)},
        )

    current_app.logger.info("offer_countered offer_id=%s actor_id=%s round=%s", offer_id, actor_id, offer.current_round)
    return offer


def accept_offer(offer_id: int, *, actor_id: int, uow: UnitOfWork | None = None) -> Offer:
    """Accept the outstanding terms. The buyer then checks out from the offer."""
    actor = _get_user(actor_id)
    enforce_violation_status(int(actor.id))
    if uow is None:
        _refuse_if_expired(offer_id)
    with begin(uow) as tx:
        offer = _lock_offer(tx, offer_id)
        validate_actionable(offer, "accepted")
        validate_turn(offer, int(actor.id))

        offer.status = OfferStatus.ACCEPTED
        offer.last_actor_id = int(actor.id)
        offer.updated_at = _now()
        _append_event(offer, OfferEventType.ACCEPT, actor_id=int(actor.id))
        notify_user(
            _other_party(offer, int(actor.id)),
            kind="offer_accepted",
            title="Offer Accepted",
            message=f"Your offer was accepted at ${float(offer.price_per_sq_ft):.2f}/sq ft.",
            meta={"offer_id": int(offer.id), "listing_id": int(offer.listing_id)},
        )
        log_event("offer_accepted", actor_user_id=int(actor.id), subject_type="offer", subject_id=offer.id)

    current_app.logger.info("offer_accepted offer_id=%s actor_id=%s", offer_id, actor_id)
    return offer


def reject_offer(offer_id: int, *, actor_id: int, message: str | None = None, uow: UnitOfWork | None = None) -> Offer:
    text = validate_message(message)
    actor = _get_user(actor_id)
    enforce_violation_status(int(actor.id))
    screen_text(text, user=actor, content_type="offer", field_name="message", uow=uow)
    if uow is None:
        _refuse_if_expired(offer_id)
    with begin(uow) as tx:
        offer = _lock_offer(tx, offer_id)
        validate_actionable(offer, "rejected")
        validate_turn(offer, int(actor.id))

        offer.status = OfferStatus.REJECTED
        offer.last_actor_id = int(actor.id)
        offer.updated_at = _now()
        _append_event(offer, OfferEventType.REJECT, actor_id=int(actor.id), message=text)
        notify_user(
            _other_party(offer, int(actor.id)),
            kind="offer_rejected",
            title="Offer Declined",
            message=text or "Your offer was declined.",
            meta={"offer_id": int(offer.id)},
        )

    current_app.logger.info("offer_rejected offer_id=%s actor_id=%s", offer_id, actor_id)
    return offer


def withdraw_offer(offer_id: int, *, actor_id: int, uow: UnitOfWork | None = None) -> Offer:
    with begin(uow) as tx:
        offer = _lock_offer(tx, offer_id)
        validate_withdrawable(offer, int(actor_id))

        offer.status = OfferStatus.WITHDRAWN
        offer.last_actor_id = int(actor_id)
        offer.updated_at = _now()
        _append_event(offer, OfferEventType.WITHDRAW, actor_id=int(actor_id))
        notify_user(
            int(offer.seller_id),
            kind="offer_withdrawn",
            title="Offer Withdrawn",
            message="The buyer withdrew their offer.",
            meta={"offer_id": int(offer.id)},
        )

    current_app.logger.info("offer_withdrawn offer_id=%s actor_id=%s", offer_id, actor_id)
    return offer


def expire_offer(offer_id: int, *, now: datetime | None = None, uow: UnitOfWork | None = None) -> bool:
    """Expire one open offer past its window. False when already handled."""
    now = now or _now()
    with begin(uow) as tx:
        offer = tx.locked(Offer, int(offer_id))
        if offer is None or (offer.status or "") not in OfferStatus.OPEN or not is_expired(offer, now=now):
            return False
        _expire_in_place(offer, now=now)
        for party in (int(offer.buyer_id), int(offer.seller_id)):
            notify_user(
                party,
                kind="offer_expired",
                title="Offer Expired",
                message="An offer expired without a response.",
                meta={"offer_id": int(offer.id)},
            )
    return True
