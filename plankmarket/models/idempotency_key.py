from datetime import datetime

from plankmarket.extensions import db


class IdempotencyKey(db.Model):
    __tablename__ = "idempotency_keys"
    __table_args__ = (
        db.UniqueConstraint("scope", "key", name="uq_idempotency_scope_key"),
    )

    id = db.Column(db.Integer, primary_key=True)

    key = db.Column(db.String(128), nullable=False, index=True)
    scope = db.Column(db.String(128), nullable=False, default="")
    user_id = db.Column(db.Integer, nullable=True)
    request_hash = db.Column(db.String(64), nullable=False, default="")

    # Empty until the first response for the key has been stored.
    response_body_json = db.Column(db.Text, nullable=True)
    response_code = db.Column(db.Integer, nullable=False, default=200)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "key": self.key,
            "scope": self.scope or "",
            "user_id": int(self.user_id) if self.user_id is not None else None,
            "request_hash": self.request_hash,
            "response_code": int(self.response_code or 200),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
