from datetime import datetime
import json

from plankmarket.extensions import db


class ContentViolation(db.Model):
    __tablename__ = "content_violations"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    content_type = db.Column(db.String(16), nullable=False)  # message | listing | offer | review
    content_body = db.Column(db.Text, nullable=False)
    detections_json = db.Column(db.Text, nullable=False, default="[]")

    reviewed = db.Column(db.Boolean, nullable=False, default=False)
    reviewed_by = db.Column(db.Integer, nullable=True)
    reviewed_at = db.Column(db.DateTime, nullable=True)
    false_positive = db.Column(db.Boolean, nullable=False, default=False)
    admin_notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def detections(self) -> list:
        try:
            parsed = json.loads(self.detections_json or "[]")
        except Exception:
            return []
        return parsed if isinstance(parsed, list) else []

    def to_dict(self):
        return {
            "id": int(self.id),
            "user_id": int(self.user_id),
            "content_type": self.content_type,
            "content_body": self.content_body or "",
            "detections": self.detections(),
            "reviewed": bool(self.reviewed),
            "reviewed_by": int(self.reviewed_by) if self.reviewed_by is not None else None,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "false_positive": bool(self.false_positive),
            "admin_notes": self.admin_notes or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
