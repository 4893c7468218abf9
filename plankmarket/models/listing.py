from datetime import datetime

import sqlalchemy as sa

from plankmarket.extensions import db


class Listing(db.Model):
    __tablename__ = "listings"

    id = db.Column(db.Integer, primary_key=True)

    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    title = db.Column(db.String(160), nullable=False)
    description = db.Column(db.Text, nullable=True)

    # Remaining quantity; mutated only by the inventory ledger.
    total_sq_ft = db.Column(db.Float, nullable=False, default=0.0)
    ask_price_per_sq_ft = db.Column(db.Float, nullable=False, default=0.0)

    # Negotiation knobs
    floor_price = db.Column(db.Float, nullable=True)
    allow_offers = db.Column(db.Boolean, nullable=False, default=True, server_default=sa.text("true"))
    offer_count = db.Column(db.Integer, nullable=False, default=0, server_default="0")

    # draft | active | sold | expired | archived
    status = db.Column(db.String(16), nullable=False, default="active", index=True)
    expires_at = db.Column(db.DateTime, nullable=True, index=True)
    sold_at = db.Column(db.DateTime, nullable=True)

    # Denormalized from the active ListingPromotion
    promotion_tier = db.Column(db.String(16), nullable=True)
    promotion_expires_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "seller_id": int(self.seller_id),
            "title": self.title or "",
            "description": self.description or "",
            "total_sq_ft": float(self.total_sq_ft or 0.0),
            "ask_price_per_sq_ft": float(self.ask_price_per_sq_ft or 0.0),
            "floor_price": float(self.floor_price) if self.floor_price is not None else None,
            "allow_offers": bool(self.allow_offers),
            "offer_count": int(self.offer_count or 0),
            "status": self.status or "active",
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "sold_at": self.sold_at.isoformat() if self.sold_at else None,
            "promotion_tier": self.promotion_tier or None,
            "promotion_expires_at": self.promotion_expires_at.isoformat() if self.promotion_expires_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
