from datetime import datetime

from plankmarket.extensions import db


class ListingPromotion(db.Model):
    __tablename__ = "listing_promotions"

    id = db.Column(db.Integer, primary_key=True)
    listing_id = db.Column(db.Integer, db.ForeignKey("listings.id"), nullable=False, index=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    tier = db.Column(db.String(16), nullable=False)  # spotlight | featured | premium
    duration_days = db.Column(db.Integer, nullable=False)
    price_paid = db.Column(db.Float, nullable=False)

    starts_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    stripe_payment_intent_id = db.Column(db.String(255), nullable=True)
    # pending | succeeded | failed | refunded
    payment_status = db.Column(db.String(16), nullable=False, default="pending")
    cancelled_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "listing_id": int(self.listing_id),
            "seller_id": int(self.seller_id),
            "tier": self.tier,
            "duration_days": int(self.duration_days or 0),
            "price_paid": float(self.price_paid or 0.0),
            "starts_at": self.starts_at.isoformat() if self.starts_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "is_active": bool(self.is_active),
            "payment_status": self.payment_status or "pending",
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
        }
