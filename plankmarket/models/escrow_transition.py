from datetime import datetime

from plankmarket.extensions import db


class EscrowTransition(db.Model):
    """Append-only audit of escrow status changes for an order."""

    __tablename__ = "escrow_transitions"
    __table_args__ = (
        db.UniqueConstraint("order_id", "idempotency_key", name="uq_escrow_transition_order_key"),
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    from_status = db.Column(db.String(16), nullable=False)
    to_status = db.Column(db.String(16), nullable=False)
    actor_type = db.Column(db.String(32), nullable=False, default="system")
    actor_id = db.Column(db.Integer, nullable=True)
    idempotency_key = db.Column(db.String(160), nullable=False)
    # Processor object backing the move (transfer id, refund id)
    processor_ref = db.Column(db.String(255), nullable=True)
    reason = db.Column(db.String(240), nullable=True)
    metadata_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor_type": self.actor_type or "system",
            "actor_id": int(self.actor_id) if self.actor_id is not None else None,
            "idempotency_key": self.idempotency_key,
            "processor_ref": self.processor_ref or "",
            "reason": self.reason or "",
            "metadata_json": self.metadata_json or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
