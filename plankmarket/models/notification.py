from datetime import datetime
import json

from plankmarket.extensions import db


class Notification(db.Model):
    """Outbox row for the notification dispatcher; delivery happens elsewhere."""

    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    channel = db.Column(db.String(32), nullable=False, default="in_app")  # in_app | email
    type = db.Column(db.String(48), nullable=False, default="system")
    title = db.Column(db.String(160), nullable=True)
    message = db.Column(db.Text, nullable=False)

    status = db.Column(db.String(24), nullable=False, default="queued")  # queued | sent | failed
    meta = db.Column(db.Text, nullable=True)  # JSON string

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def meta_dict(self) -> dict:
        raw = (self.meta or "").strip()
        if not raw:
            return {}
        try:
            data = json.loads(raw)
            return data if isinstance(data, dict) else {}
        except Exception:
            return {}

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "channel": self.channel or "in_app",
            "type": self.type or "system",
            "title": self.title or "",
            "message": self.message or "",
            "status": self.status or "queued",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "meta": self.meta_dict(),
        }
