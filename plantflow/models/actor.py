"""
Actor role assignments.

Models:
    - ActorRole: one row per (actor, role).  An actor may hold several roles;
      capabilities are the union over all active rows.
"""

from datetime import datetime, timezone

from plantflow.models import db


def _utcnow():
    return datetime.now(timezone.utc)


class ActorRole(db.Model):
    __tablename__ = "actor_roles"
    __table_args__ = (
        db.UniqueConstraint("actor_id", "role", name="uq_actor_role"),
    )

    id = db.Column(db.Integer, primary_key=True)
    actor_id = db.Column(db.String(150), nullable=False, index=True)
    role = db.Column(
        db.String(40), nullable=False,
        comment="ceo | superviseur | commercial | directeur_operations | centraliste | …",
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "actor_id": self.actor_id,
            "role": self.role,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<ActorRole {self.actor_id}: {self.role}>"
