from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from flask import current_app

from plankmarket.models import Listing, Order
from plankmarket.services.errors import InventoryError
from plankmarket.utils.unit_of_work import UnitOfWork, begin

RELEASED = "released"
ORDER_NOT_FOUND = "order_not_found"
ALREADY_RELEASED = "already_released"
ORDER_ALREADY_DELIVERED = "order_already_delivered"


@dataclass(frozen=True)
class InventoryReleaseResult:
    released: bool
    reason: str

    def to_dict(self) -> dict:
        return {"released": self.released, "reason": self.reason}


def _round4(value) -> float:
    return round(float(value or 0.0), 4)


def reserve_inventory(listing_id: int, quantity_sq_ft, *, buyer_id: int, uow: UnitOfWork | None = None) -> Listing:
    """Take ``quantity_sq_ft`` off an active listing under its row lock.

    Concurrent reservations against the same listing serialize on the lock,
    so the sum of successful reservations never exceeds what was available.
    """
    qty = _round4(quantity_sq_ft)
    if qty <= 0:
        raise InventoryError("Quantity must be positive")

    with begin(uow) as tx:
        listing = tx.locked(Listing, int(listing_id))
        if listing is None or (listing.status or "") != "active":
            raise InventoryError("Listing not found or no longer available", status=404)
        if int(listing.seller_id) == int(buyer_id):
            raise InventoryError("You cannot purchase your own listing")

        available = _round4(listing.total_sq_ft)
        if qty > available:
            raise InventoryError(
                f"Requested quantity exceeds available inventory ({available:g} sq ft)",
                status=409,
                error="INSUFFICIENT_INVENTORY",
            )

        remaining = _round4(available - qty)
        if remaining <= 0:
            listing.total_sq_ft = 0.0
            listing.status = "sold"
            listing.sold_at = datetime.utcnow()
        else:
            listing.total_sq_ft = remaining
        tx.flush()
        return listing


def release_reserved_inventory(order_id: int, reason: str, *, uow: UnitOfWork | None = None) -> InventoryReleaseResult:
    """Give an order's quantity back to its listing, at most once per order.

    Locks the order, then its listing. Safe to call from every recovery path
    (sweeper, webhook, cancellation): repeated calls report why nothing was
    done instead of raising.
    """
    with begin(uow) as tx:
        order = tx.locked(Order, int(order_id))
        if order is None:
            return InventoryReleaseResult(False, ORDER_NOT_FOUND)
        if order.inventory_released_at is not None:
            return InventoryReleaseResult(False, ALREADY_RELEASED)
        if (order.status or "") == "delivered":
            return InventoryReleaseResult(False, ORDER_ALREADY_DELIVERED)

        listing = tx.locked(Listing, int(order.listing_id))
        if listing is not None:
            restored = _round4(float(listing.total_sq_ft or 0.0) + float(order.quantity_sq_ft or 0.0))
            listing.total_sq_ft = restored
            if (listing.status or "") == "sold" and restored > 0:
                listing.status = "active"
                listing.sold_at = None

        order.append_note(f"[Inventory released: {reason}]")
        order.inventory_released_at = datetime.utcnow()
        tx.flush()

    current_app.logger.info(
        "inventory_released order_id=%s listing_id=%s quantity=%s reason=%s",
        order_id,
        order.listing_id,
        order.quantity_sq_ft,
        reason,
    )
    return InventoryReleaseResult(True, RELEASED)
