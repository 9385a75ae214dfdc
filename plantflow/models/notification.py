"""
Notification model.

Models:
    - Notification: in-app notification record.  The recipient is an actor
      id, a role name (``role:<name>``) or ``all``.
"""

from datetime import datetime, timezone

from plantflow.models import db


NOTIFICATION_CATEGORIES = frozenset({"transition", "rollback", "variance", "escalation", "denial", "system"})
NOTIFICATION_SEVERITIES = frozenset({"info", "warning", "error", "success"})


class Notification(db.Model):
    """
    In-app notification entity.

    One record per recipient per event.
    """

    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    recipient = db.Column(db.String(150), default="all", index=True,
                          comment="Actor id, 'role:<name>' or 'all' for broadcast")
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")
    category = db.Column(db.String(30), default="system")
    severity = db.Column(db.String(20), default="info")

    # Link to source entity
    entity_type = db.Column(db.String(30), default="", comment="quote/order/delivery_note/...")
    entity_id = db.Column(db.String(36), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "recipient": self.recipient,
            "title": self.title,
            "message": self.message,
            "category": self.category,
            "severity": self.severity,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.title[:40]}>"
