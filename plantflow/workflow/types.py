"""
Workflow domain types shared by every engine component.

Plain dataclasses and str-Enums only; no persistence concerns here.  The
graph types (Transition, StageGate, WorkflowGraph) are frozen because graphs
are static configuration: nothing mutates them after startup.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any


# ═════════════════════════════════════════════════════════════════════════════
# Enums
# ═════════════════════════════════════════════════════════════════════════════

class DocumentType(str, Enum):
    QUOTE = "quote"
    ORDER = "order"
    DELIVERY_NOTE = "delivery_note"
    PRODUCTION_BATCH = "production_batch"
    MATERIAL_RECEPTION = "material_reception"


class AuditAction(str, Enum):
    TRANSITION = "transition"
    DENIAL = "denial"
    ROLLBACK = "rollback"
    UPDATE = "update"


class EscalationStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ESCALATED = "escalated"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_open(self) -> bool:
        return self in (EscalationStatus.PENDING, EscalationStatus.IN_PROGRESS,
                        EscalationStatus.ESCALATED)


WILDCARD_CAPABILITY = "*"


# ═════════════════════════════════════════════════════════════════════════════
# Documents
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class Document:
    """Any entity subject to workflow.

    ``payload`` is the type-specific variant (amounts, quantities, formula
    reference); its shape is keyed by ``document_type``.  ``version`` is the
    optimistic-concurrency token maintained by the store.
    """
    id: str
    document_type: str
    current_state: str
    created_by: str
    created_at: datetime
    locked_at: datetime | None = None
    payload: dict = field(default_factory=dict)
    version: int = 0

    @property
    def is_locked(self) -> bool:
        return self.locked_at is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_type": self.document_type,
            "current_state": self.current_state,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "locked_at": self.locked_at.isoformat() if self.locked_at else None,
            "payload": dict(self.payload),
            "version": self.version,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Capabilities
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class CapabilitySet:
    """Capability flags resolved for one actor on one document type."""
    capabilities: frozenset = frozenset()

    def __contains__(self, capability: str) -> bool:
        return capability in self.capabilities

    def __bool__(self) -> bool:
        return bool(self.capabilities)

    @property
    def is_wildcard(self) -> bool:
        return WILDCARD_CAPABILITY in self.capabilities

    def with_flags(self, *flags: str) -> "CapabilitySet":
        return CapabilitySet(self.capabilities | frozenset(flags))

    def satisfies(self, requirement: "CapabilityRequirement") -> bool:
        return requirement.is_satisfied_by(self)


@dataclass(frozen=True)
class CapabilityRequirement:
    """OR-of-AND capability expression attached to an edge.

    ``any_of=({"a", "b"}, {"c"})`` reads "(a AND b) OR c".  No groups means
    the edge is open to any resolved actor.
    """
    any_of: tuple = ()

    def is_satisfied_by(self, caps: CapabilitySet) -> bool:
        if not self.any_of:
            return True
        if caps.is_wildcard:
            return True
        return any(group <= caps.capabilities for group in self.any_of)

    def describe(self) -> str:
        if not self.any_of:
            return "<none>"
        return " OR ".join("(" + " AND ".join(sorted(g)) + ")" for g in self.any_of)


# ═════════════════════════════════════════════════════════════════════════════
# Graph
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Transition:
    """Directed edge (document_type, from_state, to_state) with its guards."""
    document_type: str
    from_state: str
    to_state: str
    name: str
    requires: CapabilityRequirement = CapabilityRequirement()
    forbid_self_approval: bool = False
    requires_variance_check: bool = False
    variance_fields: tuple = ()
    rollback: bool = False
    locks: bool = False
    unlocks: bool = False
    permits_locked: bool = False
    requires_completed_actions: bool = False
    min_justification_length: int | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.from_state, self.to_state)


@dataclass(frozen=True)
class StageGate:
    """An edge that is categorically inadmissible (e.g. skipping a review step)."""
    from_state: str
    to_state: str
    reason: str


@dataclass(frozen=True)
class WorkflowGraph:
    document_type: str
    states: frozenset
    initial_state: str
    terminal_states: frozenset
    transitions: tuple = ()
    gates: tuple = ()

    def edge(self, from_state: str, to_state: str) -> Transition | None:
        for t in self.transitions:
            if t.from_state == from_state and t.to_state == to_state:
                return t
        return None

    def gate(self, from_state: str, to_state: str) -> StageGate | None:
        for g in self.gates:
            if g.from_state == from_state and g.to_state == to_state:
                return g
        return None

    def outgoing(self, from_state: str) -> list[Transition]:
        return [t for t in self.transitions if t.from_state == from_state]

    def is_terminal(self, state: str) -> bool:
        return state in self.terminal_states


# ═════════════════════════════════════════════════════════════════════════════
# Variance & escalation configuration
# ═════════════════════════════════════════════════════════════════════════════

class VarianceMode(str, Enum):
    RELATIVE = "relative"   # |obs - theo| / theo * 100
    ABSOLUTE = "absolute"   # |obs - theo| in the field's own unit


@dataclass(frozen=True)
class VarianceThreshold:
    warning: float
    critical: float
    mode: VarianceMode = VarianceMode.RELATIVE


@dataclass(frozen=True)
class Measurement:
    """One observed quantity against its theoretical reference."""
    field: str
    theoretical: float
    observed: float


@dataclass(frozen=True)
class EscalationTemplate:
    """Timed follow-up created when a document enters ``state``."""
    document_type: str
    state: str
    action_name: str
    assigned_role: str
    deadline: timedelta
    escalate_to_role: str
    escalate_after: timedelta
    phase: str = ""
    escalation_chain: tuple = ()
    payload_match: tuple = ()   # ((key, value), ...)

    def applies_to(self, payload: dict) -> bool:
        return all(payload.get(k) == v for k, v in self.payload_match)


@dataclass(frozen=True)
class WorkflowConfig:
    graphs: dict
    role_capabilities: dict
    document_role_capabilities: dict = field(default_factory=dict)
    variance_thresholds: dict = field(default_factory=dict)
    escalation_templates: tuple = ()
    min_justification_length: int = 10

    def graph_for(self, document_type: str) -> WorkflowGraph | None:
        return self.graphs.get(str(getattr(document_type, "value", document_type)))

    def thresholds_for(self, document_type: str) -> dict:
        return self.variance_thresholds.get(document_type, {})

    def templates_for(self, document_type: str, state: str) -> list[EscalationTemplate]:
        return [t for t in self.escalation_templates
                if t.document_type == document_type and t.state == state]


# ═════════════════════════════════════════════════════════════════════════════
# Requests, results, audit, escalation items
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class TransitionContext:
    """Supporting data supplied with a transition request."""
    justification: str | None = None
    measurements: list = field(default_factory=list)
    payload_updates: dict = field(default_factory=dict)
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class AuditEntry:
    """Immutable audit record.  ``sequence`` is the per-document append order."""
    id: str
    document_id: str
    actor_id: str
    action: AuditAction
    from_state: str | None
    to_state: str | None
    reason: str | None
    timestamp: datetime
    snapshot: dict = field(default_factory=dict)
    sequence: int = 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "actor_id": self.actor_id,
            "action": AuditAction(self.action).value,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "snapshot": self.snapshot,
            "sequence": self.sequence,
        }


@dataclass
class EscalationItem:
    """Time-boxed action item attached to a document.

    ``level`` counts escalations already fired; the role notified at level n
    is ``escalate_to_role`` for n=1 and ``escalation_chain[n-2]`` after that.
    """
    document_id: str
    action_name: str
    assigned_role: str
    deadline: datetime | None
    escalate_to_role: str
    escalate_after: timedelta
    phase: str = ""
    status: EscalationStatus = EscalationStatus.PENDING
    escalation_chain: tuple = ()
    level: int = 0
    id: str = ""
    created_at: datetime | None = None
    acknowledged_at: datetime | None = None
    completed_at: datetime | None = None
    escalated_at: datetime | None = None
    archived: bool = False
    notes: str | None = None
    history: list = field(default_factory=list)

    def target_for_level(self, level: int) -> str | None:
        if level <= 0:
            return self.assigned_role
        if level == 1:
            return self.escalate_to_role
        idx = level - 2
        if idx < len(self.escalation_chain):
            return self.escalation_chain[idx]
        return None

    @property
    def has_next_level(self) -> bool:
        return self.target_for_level(self.level + 1) is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "action_name": self.action_name,
            "phase": self.phase,
            "assigned_role": self.assigned_role,
            "deadline": self.deadline.isoformat() if self.deadline else None,
            "status": EscalationStatus(self.status).value,
            "escalate_to_role": self.escalate_to_role,
            "escalate_after_seconds": self.escalate_after.total_seconds(),
            "escalation_chain": list(self.escalation_chain),
            "level": self.level,
            "archived": self.archived,
            "history": list(self.history),
        }


@dataclass(frozen=True)
class TransitionResult:
    document: Document
    transition: Transition
    audit_entry: AuditEntry
    alerts: tuple = ()
    variance: Any = None
    scheduled_items: tuple = ()
