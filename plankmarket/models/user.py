from datetime import datetime

from plankmarket.extensions import db


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    name = db.Column(db.String(120), nullable=False, default="")
    email = db.Column(db.String(255), unique=True, index=True, nullable=False)
    business_name = db.Column(db.String(160), nullable=True)

    # buyer | seller | admin
    role = db.Column(db.String(32), nullable=False, default="buyer")

    # Stripe Connect account receiving escrow payouts
    stripe_account_id = db.Column(db.String(255), nullable=True, index=True)
    stripe_onboarding_complete = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "business_name": self.business_name or "",
            "role": self.role or "buyer",
            "stripe_onboarding_complete": bool(self.stripe_onboarding_complete),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
