from datetime import datetime

from plankmarket.extensions import db


class Dispute(db.Model):
    __tablename__ = "disputes"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, unique=True, index=True)
    initiator_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)

    reason = db.Column(db.String(64), nullable=False)
    description = db.Column(db.Text, nullable=False)

    # open | under_review | resolved_buyer | resolved_seller | closed
    status = db.Column(db.String(24), nullable=False, default="open", index=True)
    resolution = db.Column(db.Text, nullable=True)
    resolved_by = db.Column(db.Integer, nullable=True)
    resolved_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "initiator_id": int(self.initiator_id),
            "reason": self.reason,
            "description": self.description or "",
            "status": self.status or "open",
            "resolution": self.resolution or "",
            "resolved_by": int(self.resolved_by) if self.resolved_by is not None else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
