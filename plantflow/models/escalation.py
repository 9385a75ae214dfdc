"""
Escalation item model.

Models:
    - EscalationItemRecord: persisted time-boxed action item.  The in-memory
      deadline queue is rebuilt from the open rows on startup.
"""

import json
from datetime import timedelta

from plantflow.core.clock import to_utc
from plantflow.models import db
from plantflow.workflow.types import EscalationItem, EscalationStatus


class EscalationItemRecord(db.Model):
    __tablename__ = "escalation_items"
    __table_args__ = (
        db.Index("idx_escalation_document", "document_id"),
        db.Index("idx_escalation_status_deadline", "status", "deadline"),
    )

    id = db.Column(db.String(36), primary_key=True)
    document_id = db.Column(db.String(36), nullable=False)
    action_name = db.Column(db.String(80), nullable=False)
    phase = db.Column(db.String(40), default="")
    assigned_role = db.Column(db.String(40), nullable=False)
    deadline = db.Column(db.DateTime(timezone=True), nullable=True,
                         comment="NULL once the last escalation level has fired")
    status = db.Column(
        db.String(20), nullable=False, default=EscalationStatus.PENDING.value,
        comment="pending | in_progress | completed | escalated | failed | cancelled",
    )
    escalate_to_role = db.Column(db.String(40), nullable=False)
    escalate_after_seconds = db.Column(db.Integer, nullable=False)
    escalation_chain_json = db.Column(db.Text, default="[]")
    level = db.Column(db.Integer, nullable=False, default=0)
    archived = db.Column(db.Boolean, nullable=False, default=False)
    notes = db.Column(db.Text, nullable=True)
    history_json = db.Column(db.Text, default="[]")

    created_at = db.Column(db.DateTime(timezone=True), nullable=True)
    acknowledged_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    escalated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def apply(self, item: EscalationItem) -> None:
        self.document_id = item.document_id
        self.action_name = item.action_name
        self.phase = item.phase
        self.assigned_role = item.assigned_role
        self.deadline = item.deadline
        self.status = EscalationStatus(item.status).value
        self.escalate_to_role = item.escalate_to_role
        self.escalate_after_seconds = int(item.escalate_after.total_seconds())
        self.escalation_chain_json = json.dumps(list(item.escalation_chain))
        self.level = item.level
        self.archived = item.archived
        self.notes = item.notes
        self.history_json = json.dumps(list(item.history), default=str)
        self.created_at = item.created_at
        self.acknowledged_at = item.acknowledged_at
        self.completed_at = item.completed_at
        self.escalated_at = item.escalated_at

    def to_domain(self) -> EscalationItem:
        return EscalationItem(
            id=self.id,
            document_id=self.document_id,
            action_name=self.action_name,
            phase=self.phase or "",
            assigned_role=self.assigned_role,
            deadline=to_utc(self.deadline),
            status=EscalationStatus(self.status),
            escalate_to_role=self.escalate_to_role,
            escalate_after=timedelta(seconds=self.escalate_after_seconds),
            escalation_chain=tuple(json.loads(self.escalation_chain_json or "[]")),
            level=self.level,
            archived=bool(self.archived),
            notes=self.notes,
            history=json.loads(self.history_json or "[]"),
            created_at=to_utc(self.created_at),
            acknowledged_at=to_utc(self.acknowledged_at),
            completed_at=to_utc(self.completed_at),
            escalated_at=to_utc(self.escalated_at),
        )

    def to_dict(self) -> dict:
        return self.to_domain().to_dict()

    def __repr__(self):
        return f"<EscalationItemRecord {self.id}: {self.action_name} [{self.status}]>"
