"""
Engine-wide exception hierarchy.

Two families live here:

  * Platform errors (NotFoundError, ValidationError, ConflictError) raised by
    the store and the configuration loader.
  * Workflow denials (WorkflowError and subclasses) raised by the state
    machine.  Every denial carries a stable ``kind`` string which is what
    gets written to the audit ledger.

Usage:
    from plantflow.core.exceptions import Forbidden, WorkflowError

    try:
        engine.request_transition(doc, "approved", actor_id="u-42")
    except WorkflowError as exc:
        log.warning("denied: %s", exc.kind)
"""

from __future__ import annotations

from typing import Any


class NotFoundError(Exception):
    """Raised when a requested document or escalation item does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Document", "EscalationItem").
        resource_id: The identifier that was looked up.
    """

    def __init__(self, resource: str, resource_id: Any = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input or configuration is well-formed but breaks a rule.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when a write would collide with existing state.

    Args:
        resource: Entity name.
        field: The field that collides.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: Any = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")


class ConcurrentModification(ConflictError):
    """The document changed between load and save.

    Storage-layer signal, not a business denial: never audited.  Callers
    should reload the document and retry.
    """

    def __init__(self, document_id: str, expected_version: int, actual_version: int | None) -> None:
        self.document_id = document_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        Exception.__init__(
            self,
            f"Document {document_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})",
        )
        self.resource = "Document"
        self.field = "version"
        self.value = actual_version


# ── Workflow denials ─────────────────────────────────────────────────────────


class WorkflowError(Exception):
    """Base class for every typed transition denial."""

    kind = "workflow_error"

    def __init__(
        self,
        reason: str,
        *,
        document_id: str | None = None,
        from_state: str | None = None,
        to_state: str | None = None,
        actor_id: str | None = None,
    ) -> None:
        super().__init__(reason)
        self.reason = reason
        self.bind(document_id, from_state, to_state, actor_id)

    def bind(self, document_id, from_state=None, to_state=None, actor_id=None) -> "WorkflowError":
        """Attach the document context and rebuild the message."""
        self.document_id = document_id
        self.from_state = from_state
        self.to_state = to_state
        self.actor_id = actor_id
        msg = f"[{self.kind}] {self.reason}"
        if document_id is not None:
            msg += f" (document={document_id}, {from_state} -> {to_state})"
        self.args = (msg,)
        return self

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "reason": self.reason,
            "document_id": self.document_id,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "actor_id": self.actor_id,
        }


class InvalidTransition(WorkflowError):
    """Requested edge is not declared in the graph."""

    kind = "invalid_transition"


class DocumentLocked(WorkflowError):
    """Document is locked and the edge is not a rollback."""

    kind = "document_locked"


class Forbidden(WorkflowError):
    """Actor lacks the capability, or a stage gate forbids the edge."""

    kind = "forbidden"


class SelfApprovalBlocked(WorkflowError):
    """Actor created the document and the edge forbids self-approval."""

    kind = "self_approval_blocked"


class VarianceBlocked(WorkflowError):
    """A critical-band deviation exists and no adequate justification was given."""

    kind = "variance_blocked"

    def __init__(self, reason: str, *, report=None, **kwargs) -> None:
        super().__init__(reason, **kwargs)
        self.report = report

    def to_dict(self) -> dict:
        data = super().to_dict()
        if self.report is not None:
            data["variance"] = self.report.to_dict()
        return data


class JustificationRequired(WorkflowError):
    """Rollback attempted without a sufficiently long reason."""

    kind = "justification_required"


class PendingActionItems(WorkflowError):
    """Edge requires every timed action item to be completed first."""

    kind = "pending_action_items"

    def __init__(self, reason: str, *, open_items: list[str] | None = None, **kwargs) -> None:
        super().__init__(reason, **kwargs)
        self.open_items = open_items or []
