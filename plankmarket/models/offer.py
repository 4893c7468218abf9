from datetime import datetime

from plankmarket.extensions import db


class Offer(db.Model):
    __tablename__ = "offers"
    __table_args__ = (
        db.Index("ix_offers_listing_buyer_status", "listing_id", "buyer_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)

    listing_id = db.Column(db.Integer, db.ForeignKey("listings.id"), nullable=False, index=True)
    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    initial_price_per_sq_ft = db.Column(db.Float, nullable=False)
    # Outstanding terms; replaced on every counter.
    price_per_sq_ft = db.Column(db.Float, nullable=False)
    quantity_sq_ft = db.Column(db.Float, nullable=False)
    total_price = db.Column(db.Float, nullable=False)

    message = db.Column(db.Text, nullable=True)
    counter_message = db.Column(db.Text, nullable=True)

    current_round = db.Column(db.Integer, nullable=False, default=1)
    last_actor_id = db.Column(db.Integer, nullable=True)

    # pending | countered | accepted | rejected | withdrawn | expired
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    expires_at = db.Column(db.DateTime, nullable=True, index=True)

    order_id = db.Column(db.Integer, nullable=True, index=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "listing_id": int(self.listing_id),
            "buyer_id": int(self.buyer_id),
            "seller_id": int(self.seller_id),
            "initial_price_per_sq_ft": float(self.initial_price_per_sq_ft or 0.0),
            "price_per_sq_ft": float(self.price_per_sq_ft or 0.0),
            "quantity_sq_ft": float(self.quantity_sq_ft or 0.0),
            "total_price": float(self.total_price or 0.0),
            "message": self.message or "",
            "counter_message": self.counter_message or "",
            "current_round": int(self.current_round or 1),
            "last_actor_id": int(self.last_actor_id) if self.last_actor_id is not None else None,
            "status": self.status or "pending",
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "order_id": int(self.order_id) if self.order_id is not None else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
