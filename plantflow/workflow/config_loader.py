"""
Workflow configuration loader.

Parses the plain-dict definitions (built-in ``definitions.py`` or a JSON file
of the same shape) into an immutable WorkflowConfig, validating every
cross-reference once at startup.

Usage:
    from plantflow.workflow.config_loader import load_workflow_config

    cfg = load_workflow_config()                       # built-in defaults
    cfg = load_workflow_config_file("/etc/plant.json")  # override
"""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from pathlib import Path
from typing import Any

from plantflow.core.exceptions import ValidationError
from plantflow.workflow.definitions import DEFAULT_WORKFLOW_CONFIG
from plantflow.workflow.types import (
    CapabilityRequirement,
    EscalationTemplate,
    StageGate,
    Transition,
    VarianceMode,
    VarianceThreshold,
    WorkflowConfig,
    WorkflowGraph,
)

logger = logging.getLogger(__name__)

_EDGE_KEYS = {
    "name", "from", "to", "requires", "forbid_self_approval", "variance_fields",
    "rollback", "locks", "unlocks", "permits_locked", "requires_completed_actions",
    "min_justification_length",
}


def _parse_requirement(raw: Any, where: str) -> CapabilityRequirement:
    if raw is None:
        return CapabilityRequirement()
    if not isinstance(raw, (list, tuple)):
        raise ValidationError(f"{where}: 'requires' must be a list of capability groups")
    groups = []
    for group in raw:
        if isinstance(group, str):
            group = [group]
        if not group:
            raise ValidationError(f"{where}: empty capability group")
        groups.append(frozenset(group))
    return CapabilityRequirement(any_of=tuple(groups))


def _parse_threshold(raw: dict, where: str) -> VarianceThreshold:
    try:
        warning = float(raw["warning"])
        critical = float(raw["critical"])
    except (KeyError, TypeError, ValueError) as exc:
        raise ValidationError(f"{where}: warning and critical are required numbers") from exc
    try:
        mode = VarianceMode(raw.get("mode", VarianceMode.RELATIVE.value))
    except ValueError as exc:
        raise ValidationError(f"{where}: unknown mode {raw.get('mode')!r}") from exc
    # Bands must be monotonic: critical > warning > 0.
    if not (critical > warning > 0):
        raise ValidationError(
            f"{where}: thresholds must satisfy critical > warning > 0",
            details={"warning": warning, "critical": critical},
        )
    return VarianceThreshold(warning=warning, critical=critical, mode=mode)


def _parse_graph(document_type: str, raw: dict, default_min_len: int) -> WorkflowGraph:
    where = f"graph[{document_type}]"
    states = frozenset(raw.get("states") or [])
    if not states:
        raise ValidationError(f"{where}: no states declared")
    initial = raw.get("initial_state")
    if initial not in states:
        raise ValidationError(f"{where}: initial_state {initial!r} is not a declared state")
    terminal = frozenset(raw.get("terminal_states") or [])
    unknown_terminal = terminal - states
    if unknown_terminal:
        raise ValidationError(f"{where}: unknown terminal states {sorted(unknown_terminal)}")

    transitions: list[Transition] = []
    seen: set[tuple[str, str]] = set()
    for idx, edge in enumerate(raw.get("transitions") or []):
        ew = f"{where}.transitions[{idx}]"
        extra = set(edge) - _EDGE_KEYS
        if extra:
            raise ValidationError(f"{ew}: unknown keys {sorted(extra)}")
        src, dst = edge.get("from"), edge.get("to")
        if src not in states or dst not in states:
            raise ValidationError(f"{ew}: edge {src!r} -> {dst!r} references an undeclared state")
        if (src, dst) in seen:
            raise ValidationError(f"{ew}: duplicate edge {src!r} -> {dst!r}")
        seen.add((src, dst))

        variance_fields = tuple(edge.get("variance_fields") or ())
        rollback = bool(edge.get("rollback", False))
        permits_locked = bool(edge.get("permits_locked", False))
        if permits_locked and (rollback or edge.get("unlocks")):
            raise ValidationError(f"{ew}: permits_locked edges cannot unlock or roll back")
        min_len = edge.get("min_justification_length")
        transitions.append(Transition(
            document_type=document_type,
            from_state=src,
            to_state=dst,
            name=edge.get("name") or f"{src}_to_{dst}",
            requires=_parse_requirement(edge.get("requires"), ew),
            forbid_self_approval=bool(edge.get("forbid_self_approval", False)),
            requires_variance_check=bool(variance_fields),
            variance_fields=variance_fields,
            rollback=rollback,
            locks=bool(edge.get("locks", False)),
            unlocks=bool(edge.get("unlocks", rollback)),
            permits_locked=permits_locked,
            requires_completed_actions=bool(edge.get("requires_completed_actions", False)),
            min_justification_length=int(min_len) if min_len is not None else default_min_len,
        ))

    gates: list[StageGate] = []
    for idx, gate in enumerate(raw.get("gates") or []):
        gw = f"{where}.gates[{idx}]"
        src, dst = gate.get("from"), gate.get("to")
        if src not in states or dst not in states:
            raise ValidationError(f"{gw}: gate {src!r} -> {dst!r} references an undeclared state")
        if (src, dst) in seen:
            raise ValidationError(f"{gw}: {src!r} -> {dst!r} is both an edge and a gate")
        gates.append(StageGate(from_state=src, to_state=dst,
                               reason=gate.get("reason") or "edge is not admissible"))

    return WorkflowGraph(
        document_type=document_type,
        states=states,
        initial_state=initial,
        terminal_states=terminal,
        transitions=tuple(transitions),
        gates=tuple(gates),
    )


def _parse_template(raw: dict, graphs: dict[str, WorkflowGraph], idx: int) -> EscalationTemplate:
    where = f"escalation_templates[{idx}]"
    doc_type = raw.get("document_type")
    graph = graphs.get(doc_type)
    if graph is None:
        raise ValidationError(f"{where}: unknown document_type {doc_type!r}")
    if raw.get("state") not in graph.states:
        raise ValidationError(f"{where}: unknown state {raw.get('state')!r} for {doc_type}")
    try:
        deadline = timedelta(minutes=float(raw["deadline_minutes"]))
        escalate_after = timedelta(minutes=float(raw["escalate_after_minutes"]))
    except (KeyError, TypeError, ValueError) as exc:
        raise ValidationError(f"{where}: deadline_minutes and escalate_after_minutes are required") from exc
    if deadline <= timedelta(0) or escalate_after <= timedelta(0):
        raise ValidationError(f"{where}: durations must be positive")
    for key in ("action_name", "assigned_role", "escalate_to_role"):
        if not raw.get(key):
            raise ValidationError(f"{where}: {key} is required")
    return EscalationTemplate(
        document_type=doc_type,
        state=raw["state"],
        action_name=raw["action_name"],
        phase=raw.get("phase", ""),
        assigned_role=raw["assigned_role"],
        deadline=deadline,
        escalate_to_role=raw["escalate_to_role"],
        escalation_chain=tuple(raw.get("escalation_chain") or ()),
        escalate_after=escalate_after,
        payload_match=tuple(sorted((raw.get("payload_match") or {}).items())),
    )


def load_workflow_config(
    data: dict | None = None,
    *,
    min_justification_length: int = 10,
) -> WorkflowConfig:
    """Build a validated WorkflowConfig from plain data (defaults when None)."""
    data = DEFAULT_WORKFLOW_CONFIG if data is None else data
    if min_justification_length < 1:
        raise ValidationError("min_justification_length must be positive")

    graphs = {
        doc_type: _parse_graph(doc_type, raw, min_justification_length)
        for doc_type, raw in (data.get("graphs") or {}).items()
    }
    if not graphs:
        raise ValidationError("workflow configuration declares no graphs")

    thresholds: dict[str, dict[str, VarianceThreshold]] = {}
    for doc_type, fields in (data.get("variance_thresholds") or {}).items():
        if doc_type not in graphs:
            raise ValidationError(f"variance_thresholds: unknown document_type {doc_type!r}")
        thresholds[doc_type] = {
            name: _parse_threshold(raw, f"variance_thresholds[{doc_type}][{name}]")
            for name, raw in fields.items()
        }

    templates = tuple(
        _parse_template(raw, graphs, idx)
        for idx, raw in enumerate(data.get("escalation_templates") or [])
    )

    role_caps = {
        role: frozenset(caps)
        for role, caps in (data.get("role_capabilities") or {}).items()
    }
    doc_role_caps = {
        doc_type: {role: frozenset(caps) for role, caps in roles.items()}
        for doc_type, roles in (data.get("document_role_capabilities") or {}).items()
    }

    cfg = WorkflowConfig(
        graphs=graphs,
        role_capabilities=role_caps,
        document_role_capabilities=doc_role_caps,
        variance_thresholds=thresholds,
        escalation_templates=templates,
        min_justification_length=min_justification_length,
    )
    logger.debug("Workflow configuration loaded: %d graphs, %d escalation templates",
                 len(graphs), len(templates))
    return cfg


def load_workflow_config_file(path: str | Path, **kwargs) -> WorkflowConfig:
    """Load a JSON workflow configuration file."""
    p = Path(path)
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ValidationError(f"workflow configuration file not found: {p}") from exc
    except json.JSONDecodeError as exc:
        raise ValidationError(f"workflow configuration file is not valid JSON: {p}: {exc}") from exc
    return load_workflow_config(data, **kwargs)
