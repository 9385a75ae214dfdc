"""
Built-in workflow definitions for the concrete-plant documents.

Plain data, managed from a single location.  ``config_loader`` turns this
into immutable WorkflowConfig objects at startup; a JSON file with the same
shape (WORKFLOW_CONFIG_PATH) replaces it entirely.

Edge flags:
    requires                    list of capability groups, OR-of-AND
    forbid_self_approval        creator of the document may not take this edge
    variance_fields             run the variance gate over these fields
    rollback                    reopens a locked document, justification mandatory
    locks / unlocks             set / clear locked_at
    permits_locked              allowed while locked (no payload mutation)
    requires_completed_actions  every timed action item must be completed
"""

from __future__ import annotations

from typing import Any

# ═════════════════════════════════════════════════════════════════════════════
# Role → capability matrix
# ═════════════════════════════════════════════════════════════════════════════

ROLE_CAPABILITIES: dict[str, list[str]] = {
    "ceo": ["*"],
    "superviseur": [
        "quote.create", "quote.submit", "quote.approve", "quote.rollback",
        "order.create", "order.validate", "order.rollback", "order.cancel",
        "delivery.plan", "delivery.dispatch", "delivery.confirm", "delivery.rollback",
        "batch.validate", "batch.rollback",
        "reception.reject",
    ],
    "commercial": [
        "quote.create", "quote.submit", "order.create",
    ],
    "directeur_operations": [
        "order.validate", "order.start_production",
        "delivery.plan", "delivery.confirm",
        "batch.validate",
    ],
    "responsable_technique": [
        "delivery.technical_validate",
        "batch.review",
        "reception.technical_approve", "reception.reject",
    ],
    "centraliste": [
        "delivery.produce", "batch.record", "batch.submit",
        "order.start_production", "order.complete",
    ],
    "agent_administratif": [
        "delivery.confirm", "delivery.invoice",
        "reception.front_desk_validate", "reception.reject",
    ],
    "accounting": [
        "quote.approve", "delivery.invoice",
    ],
    "operator": [
        "reception.create",
    ],
    "auditeur": [],
}

# Per-document-type overrides merged over the global matrix.
DOCUMENT_ROLE_CAPABILITIES: dict[str, dict[str, list[str]]] = {
    "material_reception": {
        "superviseur": ["reception.front_desk_validate"],
    },
}


# ═════════════════════════════════════════════════════════════════════════════
# Variance thresholds (percent for relative, field unit for absolute)
# ═════════════════════════════════════════════════════════════════════════════

_BATCH_THRESHOLDS: dict[str, dict[str, Any]] = {
    "cement": {"warning": 2, "critical": 5},
    "sand": {"warning": 2, "critical": 5},
    "gravel": {"warning": 2, "critical": 5},
    "water": {"warning": 2, "critical": 5},
    "additive": {"warning": 5, "critical": 10},
}

VARIANCE_THRESHOLDS: dict[str, dict[str, dict[str, Any]]] = {
    "production_batch": _BATCH_THRESHOLDS,
    "material_reception": {
        "humidity": {"warning": 10, "critical": 15, "mode": "absolute"},
    },
    "delivery_note": {
        "unit_cost": {"warning": 2, "critical": 5},
    },
}


# ═════════════════════════════════════════════════════════════════════════════
# Graphs
# ═════════════════════════════════════════════════════════════════════════════

WORKFLOW_GRAPHS: dict[str, dict[str, Any]] = {
    # ── Quote (devis) ────────────────────────────────────────────────────
    "quote": {
        "initial_state": "draft",
        "states": ["draft", "pending_approval", "approved", "converted", "rejected"],
        "terminal_states": ["converted", "rejected"],
        "transitions": [
            {"name": "submit", "from": "draft", "to": "pending_approval",
             "requires": [["quote.submit"]]},
            {"name": "approve", "from": "pending_approval", "to": "approved",
             "requires": [["quote.approve"]], "forbid_self_approval": True, "locks": True},
            {"name": "return_to_draft", "from": "pending_approval", "to": "draft",
             "requires": [["quote.approve"]]},
            {"name": "reject", "from": "pending_approval", "to": "rejected",
             "requires": [["quote.approve"]]},
            {"name": "convert", "from": "approved", "to": "converted",
             "requires": [["order.create"]], "permits_locked": True},
            {"name": "rollback", "from": "approved", "to": "pending_approval",
             "requires": [["quote.rollback"]], "rollback": True, "unlocks": True},
        ],
    },
    # ── Order (bon de commande) ──────────────────────────────────────────
    "order": {
        "initial_state": "draft",
        "states": ["draft", "pending_validation", "validated", "in_production",
                   "completed", "cancelled"],
        "terminal_states": ["completed", "cancelled"],
        "transitions": [
            {"name": "submit", "from": "draft", "to": "pending_validation",
             "requires": [["order.create"]]},
            {"name": "validate", "from": "pending_validation", "to": "validated",
             "requires": [["order.validate"]], "forbid_self_approval": True, "locks": True},
            {"name": "start_production", "from": "validated", "to": "in_production",
             "requires": [["order.start_production"]], "permits_locked": True,
             "requires_completed_actions": True},
            {"name": "complete", "from": "in_production", "to": "completed",
             "requires": [["order.complete"]], "permits_locked": True},
            {"name": "cancel", "from": "draft", "to": "cancelled",
             "requires": [["order.cancel"], ["order.create"]]},
            {"name": "cancel", "from": "pending_validation", "to": "cancelled",
             "requires": [["order.cancel"]]},
            {"name": "rollback", "from": "validated", "to": "pending_validation",
             "requires": [["order.rollback"]], "rollback": True, "unlocks": True},
        ],
    },
    # ── Delivery note (bon de livraison) ─────────────────────────────────
    "delivery_note": {
        "initial_state": "planned",
        "states": ["planned", "in_production", "technical_validation", "in_delivery",
                   "delivered", "invoiced", "cancelled"],
        "terminal_states": ["invoiced", "cancelled"],
        "transitions": [
            {"name": "start_production", "from": "planned", "to": "in_production",
             "requires": [["delivery.plan"]]},
            {"name": "submit_technical", "from": "in_production", "to": "technical_validation",
             "requires": [["delivery.produce"]]},
            {"name": "technical_validate", "from": "technical_validation", "to": "in_delivery",
             "requires": [["delivery.technical_validate"]], "forbid_self_approval": True},
            {"name": "confirm_delivery", "from": "in_delivery", "to": "delivered",
             "requires": [["delivery.confirm"]], "variance_fields": ["unit_cost"],
             "locks": True},
            {"name": "invoice", "from": "delivered", "to": "invoiced",
             "requires": [["delivery.invoice"]], "permits_locked": True},
            {"name": "rollback", "from": "delivered", "to": "in_delivery",
             "requires": [["delivery.rollback"]], "rollback": True, "unlocks": True},
            # Only the "*" capability (ceo) can cancel.
            {"name": "cancel", "from": "planned", "to": "cancelled",
             "requires": [["delivery.cancel"]]},
            {"name": "cancel", "from": "in_production", "to": "cancelled",
             "requires": [["delivery.cancel"]]},
            {"name": "cancel", "from": "technical_validation", "to": "cancelled",
             "requires": [["delivery.cancel"]]},
        ],
    },
    # ── Production batch ─────────────────────────────────────────────────
    "production_batch": {
        "initial_state": "recorded",
        "states": ["recorded", "pending_review", "validated", "rejected"],
        "terminal_states": ["rejected"],
        "transitions": [
            {"name": "submit", "from": "recorded", "to": "pending_review",
             "requires": [["batch.submit"]]},
            {"name": "validate", "from": "pending_review", "to": "validated",
             "requires": [["batch.validate"], ["batch.review"]],
             "forbid_self_approval": True,
             "variance_fields": ["cement", "sand", "gravel", "water", "additive"],
             "locks": True},
            {"name": "reject", "from": "pending_review", "to": "rejected",
             "requires": [["batch.validate"], ["batch.review"]]},
            {"name": "rollback", "from": "validated", "to": "pending_review",
             "requires": [["batch.rollback"]], "rollback": True, "unlocks": True},
        ],
    },
    # ── Material reception (two-step approval) ───────────────────────────
    "material_reception": {
        "initial_state": "awaiting_technical_review",
        "states": ["awaiting_technical_review", "awaiting_front_desk_validation",
                   "finalized", "rejected"],
        "terminal_states": ["finalized", "rejected"],
        "transitions": [
            {"name": "technical_approve", "from": "awaiting_technical_review",
             "to": "awaiting_front_desk_validation",
             "requires": [["reception.technical_approve"]],
             "variance_fields": ["humidity"]},
            {"name": "front_desk_validate", "from": "awaiting_front_desk_validation",
             "to": "finalized",
             "requires": [["reception.front_desk_validate"]],
             "forbid_self_approval": True, "locks": True},
            {"name": "reject", "from": "awaiting_technical_review", "to": "rejected",
             "requires": [["reception.reject"]]},
            {"name": "reject", "from": "awaiting_front_desk_validation", "to": "rejected",
             "requires": [["reception.reject"]]},
        ],
        "gates": [
            {"from": "awaiting_technical_review", "to": "finalized",
             "reason": "technical review must be completed first"},
        ],
    },
}


# ═════════════════════════════════════════════════════════════════════════════
# Escalation templates (emergency orders)
# ═════════════════════════════════════════════════════════════════════════════

ESCALATION_TEMPLATES: list[dict[str, Any]] = [
    {
        "document_type": "order",
        "state": "validated",
        "payload_match": {"emergency": True},
        "action_name": "confirm_production_slot",
        "phase": "acceptance",
        "assigned_role": "centraliste",
        "deadline_minutes": 30,
        "escalate_to_role": "directeur_operations",
        "escalation_chain": ["ceo"],
        "escalate_after_minutes": 15,
    },
    {
        "document_type": "order",
        "state": "validated",
        "payload_match": {"emergency": True},
        "action_name": "confirm_quality_plan",
        "phase": "acceptance",
        "assigned_role": "responsable_technique",
        "deadline_minutes": 45,
        "escalate_to_role": "directeur_operations",
        "escalation_chain": ["ceo"],
        "escalate_after_minutes": 15,
    },
]


DEFAULT_WORKFLOW_CONFIG: dict[str, Any] = {
    "role_capabilities": ROLE_CAPABILITIES,
    "document_role_capabilities": DOCUMENT_ROLE_CAPABILITIES,
    "variance_thresholds": VARIANCE_THRESHOLDS,
    "graphs": WORKFLOW_GRAPHS,
    "escalation_templates": ESCALATION_TEMPLATES,
}
