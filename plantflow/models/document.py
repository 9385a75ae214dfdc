"""
Workflow document model.

Models:
    - WorkflowDocument: any entity subject to workflow (quote, order, delivery
      note, production batch, material reception).  The type-specific payload
      is stored as JSON; ``version`` is SQLAlchemy's optimistic-concurrency
      counter.
"""

import json

from plantflow.core.clock import to_utc
from plantflow.models import db
from plantflow.workflow.types import Document


class WorkflowDocument(db.Model):
    __tablename__ = "workflow_documents"
    __table_args__ = (
        db.Index("idx_wfdoc_type_state", "document_type", "current_state"),
        db.Index("idx_wfdoc_creator", "created_by"),
    )

    id = db.Column(db.String(36), primary_key=True)
    document_type = db.Column(
        db.String(30), nullable=False,
        comment="quote | order | delivery_note | production_batch | material_reception",
    )
    current_state = db.Column(db.String(40), nullable=False)
    created_by = db.Column(db.String(150), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    locked_at = db.Column(
        db.DateTime(timezone=True), nullable=True,
        comment="Set on final approval; cleared only by a rollback edge",
    )
    payload_json = db.Column(db.Text, default="{}")
    version = db.Column(db.Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def payload(self) -> dict:
        try:
            return json.loads(self.payload_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_domain(self) -> Document:
        return Document(
            id=self.id,
            document_type=self.document_type,
            current_state=self.current_state,
            created_by=self.created_by,
            created_at=to_utc(self.created_at),
            locked_at=to_utc(self.locked_at),
            payload=self.payload,
            version=self.version,
        )

    def apply(self, document: Document) -> None:
        """Copy the mutable fields of a domain document onto this row."""
        self.current_state = document.current_state
        self.locked_at = document.locked_at
        self.payload_json = json.dumps(document.payload or {}, default=str)

    @classmethod
    def from_domain(cls, document: Document) -> "WorkflowDocument":
        row = cls(
            id=document.id,
            document_type=document.document_type,
            created_by=document.created_by,
            created_at=document.created_at,
        )
        row.apply(document)
        return row

    def to_dict(self) -> dict:
        return self.to_domain().to_dict()

    def __repr__(self):
        return f"<WorkflowDocument {self.id}: {self.document_type}/{self.current_state} v{self.version}>"
