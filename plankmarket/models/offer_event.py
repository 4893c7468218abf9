from datetime import datetime

from sqlalchemy import event

from plankmarket.extensions import db


class OfferEvent(db.Model):
    """One row per offer transition. Rows are never updated or deleted."""

    __tablename__ = "offer_events"

    id = db.Column(db.Integer, primary_key=True)
    offer_id = db.Column(db.Integer, db.ForeignKey("offers.id"), nullable=False, index=True)
    # Null for system transitions (expiry sweep).
    actor_id = db.Column(db.Integer, nullable=True)

    # initial_offer | counter | accept | reject | withdraw | expire
    event_type = db.Column(db.String(24), nullable=False)

    price_per_sq_ft = db.Column(db.Float, nullable=True)
    quantity_sq_ft = db.Column(db.Float, nullable=True)
    total_price = db.Column(db.Float, nullable=True)
    message = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def to_dict(self):
        return {
            "id": int(self.id),
            "offer_id": int(self.offer_id),
            "actor_id": int(self.actor_id) if self.actor_id is not None else None,
            "event_type": self.event_type,
            "price_per_sq_ft": float(self.price_per_sq_ft) if self.price_per_sq_ft is not None else None,
            "quantity_sq_ft": float(self.quantity_sq_ft) if self.quantity_sq_ft is not None else None,
            "total_price": float(self.total_price) if self.total_price is not None else None,
            "message": self.message or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@event.listens_for(OfferEvent, "before_update")
def _refuse_offer_event_update(mapper, connection, target):
    raise RuntimeError("offer_events_append_only")


@event.listens_for(OfferEvent, "before_delete")
def _refuse_offer_event_delete(mapper, connection, target):
    raise RuntimeError("offer_events_append_only")
