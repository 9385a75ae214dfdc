"""
Audit ledger model.

Models:
    - AuditEntryRecord: immutable, append-only trail of every transition,
      rollback, payload update and denial.

Rows are insert-only.  ORM updates and deletes are refused by mapper events;
there is deliberately no write path besides ``db.session.add``.
"""

import json

from sqlalchemy import event as _sa_event

from plantflow.core.clock import to_utc
from plantflow.models import db
from plantflow.workflow.types import AuditAction, AuditEntry


class AuditEntryRecord(db.Model):
    """
    One row per audited action.

    ``sequence`` is the per-document append order assigned by the ledger;
    (document_id, sequence) is unique so two writers can never interleave
    silently.  ``snapshot_json`` carries before/after state, the variance
    report and the justification.
    """

    __tablename__ = "audit_entries"
    __table_args__ = (
        db.UniqueConstraint("document_id", "sequence", name="uq_audit_doc_seq"),
        db.Index("idx_audit_document", "document_id"),
        db.Index("idx_audit_actor", "actor_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.String(36), primary_key=True)
    document_id = db.Column(
        db.String(36), nullable=False,
        comment="Not a FK: denials on unknown documents are audited too",
    )
    sequence = db.Column(db.Integer, nullable=False)
    actor_id = db.Column(db.String(150), nullable=False)
    action = db.Column(
        db.String(20), nullable=False,
        comment="transition | rollback | update | denial",
    )
    from_state = db.Column(db.String(40), nullable=True)
    to_state = db.Column(db.String(40), nullable=True)
    reason = db.Column(db.Text, nullable=True)
    snapshot_json = db.Column(db.Text, default="{}")
    timestamp = db.Column(db.DateTime(timezone=True), nullable=False)

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def snapshot(self) -> dict:
        try:
            return json.loads(self.snapshot_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    @classmethod
    def from_domain(cls, entry: AuditEntry) -> "AuditEntryRecord":
        return cls(
            id=entry.id,
            document_id=entry.document_id,
            sequence=entry.sequence,
            actor_id=entry.actor_id,
            action=AuditAction(entry.action).value,
            from_state=entry.from_state,
            to_state=entry.to_state,
            reason=entry.reason,
            snapshot_json=json.dumps(entry.snapshot or {}, default=str),
            timestamp=entry.timestamp,
        )

    def to_domain(self) -> AuditEntry:
        return AuditEntry(
            id=self.id,
            document_id=self.document_id,
            actor_id=self.actor_id,
            action=AuditAction(self.action),
            from_state=self.from_state,
            to_state=self.to_state,
            reason=self.reason,
            timestamp=to_utc(self.timestamp),
            snapshot=self.snapshot,
            sequence=self.sequence,
        )

    def to_dict(self) -> dict:
        return self.to_domain().to_dict()

    def __repr__(self):
        return f"<AuditEntryRecord {self.document_id}#{self.sequence}: {self.action}>"


@_sa_event.listens_for(AuditEntryRecord, "before_update")
def _block_audit_update(mapper, connection, target) -> None:  # noqa: ANN001
    raise RuntimeError(f"audit entries are append-only (update of {target.id} refused)")


@_sa_event.listens_for(AuditEntryRecord, "before_delete")
def _block_audit_delete(mapper, connection, target) -> None:  # noqa: ANN001
    raise RuntimeError(f"audit entries are append-only (delete of {target.id} refused)")
