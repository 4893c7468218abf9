from datetime import datetime

from plankmarket.extensions import db


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(16), nullable=False, unique=True, index=True)

    listing_id = db.Column(db.Integer, db.ForeignKey("listings.id"), nullable=False, index=True)
    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    offer_id = db.Column(db.Integer, nullable=True, index=True)

    quantity_sq_ft = db.Column(db.Float, nullable=False)
    price_per_sq_ft = db.Column(db.Float, nullable=False)

    # Fee snapshot, written once at creation.
    subtotal = db.Column(db.Float, nullable=False)
    shipping_price = db.Column(db.Float, nullable=False, default=0.0)
    buyer_fee = db.Column(db.Float, nullable=False)
    seller_fee = db.Column(db.Float, nullable=False)
    total_price = db.Column(db.Float, nullable=False)
    seller_payout = db.Column(db.Float, nullable=False)

    stripe_payment_intent_id = db.Column(db.String(255), nullable=True, unique=True, index=True)
    stripe_transfer_id = db.Column(db.String(255), nullable=True)
    stripe_refund_id = db.Column(db.String(255), nullable=True)

    # pending | succeeded | failed | refunded | partially_refunded
    payment_status = db.Column(db.String(24), nullable=False, default="pending", index=True)
    # pending | confirmed | processing | shipped | delivered | cancelled | refunded
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    # held | released | refunded
    escrow_status = db.Column(db.String(16), nullable=False, default="held", index=True)

    shipping_name = db.Column(db.String(160), nullable=True)
    shipping_address = db.Column(db.String(255), nullable=True)
    shipping_city = db.Column(db.String(120), nullable=True)
    shipping_state = db.Column(db.String(64), nullable=True)
    shipping_zip = db.Column(db.String(16), nullable=True)

    tracking_number = db.Column(db.String(120), nullable=True)
    carrier = db.Column(db.String(120), nullable=True)

    # Append-only audit lines (cancellation, inventory release)
    notes = db.Column(db.Text, nullable=True)

    inventory_released_at = db.Column(db.DateTime, nullable=True)
    confirmed_at = db.Column(db.DateTime, nullable=True)
    shipped_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    escrow_released_at = db.Column(db.DateTime, nullable=True)
    refunded_at = db.Column(db.DateTime, nullable=True)
    refunded_amount = db.Column(db.Float, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def append_note(self, line: str) -> None:
        existing = (self.notes or "").rstrip("\n")
        self.notes = f"{existing}\n{line}" if existing else line

    def to_dict(self):
        def _iso(value):
            return value.isoformat() if value else None

        return {
            "id": int(self.id),
            "order_number": self.order_number,
            "listing_id": int(self.listing_id),
            "buyer_id": int(self.buyer_id),
            "seller_id": int(self.seller_id),
            "offer_id": int(self.offer_id) if self.offer_id is not None else None,
            "quantity_sq_ft": float(self.quantity_sq_ft or 0.0),
            "price_per_sq_ft": float(self.price_per_sq_ft or 0.0),
            "subtotal": float(self.subtotal or 0.0),
            "shipping_price": float(self.shipping_price or 0.0),
            "buyer_fee": float(self.buyer_fee or 0.0),
            "seller_fee": float(self.seller_fee or 0.0),
            "total_price": float(self.total_price or 0.0),
            "seller_payout": float(self.seller_payout or 0.0),
            "payment_status": self.payment_status or "pending",
            "status": self.status or "pending",
            "escrow_status": self.escrow_status or "held",
            "stripe_payment_intent_id": self.stripe_payment_intent_id or None,
            "tracking_number": self.tracking_number or "",
            "carrier": self.carrier or "",
            "notes": self.notes or "",
            "shipping": {
                "name": self.shipping_name or "",
                "address": self.shipping_address or "",
                "city": self.shipping_city or "",
                "state": self.shipping_state or "",
                "zip": self.shipping_zip or "",
            },
            "inventory_released_at": _iso(self.inventory_released_at),
            "confirmed_at": _iso(self.confirmed_at),
            "shipped_at": _iso(self.shipped_at),
            "delivered_at": _iso(self.delivered_at),
            "cancelled_at": _iso(self.cancelled_at),
            "escrow_released_at": _iso(self.escrow_released_at),
            "refunded_at": _iso(self.refunded_at),
            "refunded_amount": float(self.refunded_amount) if self.refunded_amount is not None else None,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
