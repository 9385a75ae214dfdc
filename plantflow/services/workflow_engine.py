"""
Workflow State Machine.

Moves documents through their per-type transition graph.  Every request is
evaluated against, in order:

    1. graph        - declared edge (stage gates deny with Forbidden)
    2. lock         - locked documents only take rollback / permits_locked edges
    3. capability   - actor's CapabilitySet must satisfy the edge requirement
    4. self-approval- creator may not take a forbid_self_approval edge
    5. action items - requires_completed_actions edges wait for open items
    6. variance     - critical band blocks unless justified
    7. rollback     - justification of minimum length is mandatory

A success saves the document and its audit entry in one unit of work, then
publishes domain events.  A denial appends a ``denial`` audit entry and
raises the typed WorkflowError; the document is left untouched.

Requests for one document are serialized by a per-document lock, and the
caller's ``document.version`` must match the stored version (otherwise
ConcurrentModification, which is not audited).

Usage:
    engine = WorkflowEngine(cfg, store, resolver, ledger, scheduler, dispatcher)
    quote = engine.create_document("quote", actor_id="u-1", payload={"total": 1200})
    result = engine.request_transition(quote, "pending_approval", "u-1")
    quote = result.document
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace

from plantflow.core.clock import SystemClock
from plantflow.core.concurrency import KeyedLocks
from plantflow.core.exceptions import (
    ConcurrentModification,
    DocumentLocked,
    Forbidden,
    InvalidTransition,
    JustificationRequired,
    PendingActionItems,
    SelfApprovalBlocked,
    ValidationError,
    VarianceBlocked,
    WorkflowError,
)
from plantflow.services.audit_ledger import AuditLedger
from plantflow.services.escalation import EscalationScheduler
from plantflow.services.permission import RoleResolver
from plantflow.services.store import DocumentStore
from plantflow.services.variance import Band, VarianceReport, evaluate_all
from plantflow.workflow.events import (
    RollbackPerformed,
    TransitionApplied,
    TransitionDenied,
    VarianceAlert,
)
from plantflow.workflow.types import (
    AuditAction,
    AuditEntry,
    Document,
    EscalationItem,
    Measurement,
    Transition,
    TransitionContext,
    TransitionResult,
    WorkflowConfig,
    WorkflowGraph,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Outcome:
    """Value form of a transition request, see ``WorkflowEngine.try_transition``."""
    ok: bool
    result: TransitionResult | None = None
    error: Exception | None = None

    @property
    def kind(self) -> str:
        if self.ok:
            return "ok"
        return getattr(self.error, "kind", "concurrent_modification")


def _as_measurement(raw) -> Measurement:
    if isinstance(raw, Measurement):
        return raw
    try:
        return Measurement(field=raw["field"], theoretical=float(raw["theoretical"]),
                           observed=float(raw["observed"]))
    except (KeyError, TypeError, ValueError) as exc:
        raise ValidationError("measurement needs field, theoretical and observed",
                              details={"measurement": raw}) from exc


def _justification(ctx: TransitionContext) -> str:
    return (ctx.justification or "").strip()


class WorkflowEngine:
    def __init__(
        self,
        config: WorkflowConfig,
        store: DocumentStore,
        resolver: RoleResolver,
        ledger: AuditLedger | None = None,
        scheduler: EscalationScheduler | None = None,
        dispatcher=None,
        clock=None,
    ):
        self.config = config
        self.store = store
        self.resolver = resolver
        self.clock = clock or SystemClock()
        self.ledger = ledger or AuditLedger(store, self.clock)
        self.scheduler = scheduler
        self.dispatcher = dispatcher
        self._locks = KeyedLocks()

    # ═════════════════════════════════════════════════════════════════════
    # Helpers
    # ═════════════════════════════════════════════════════════════════════

    def _graph(self, document_type: str) -> WorkflowGraph:
        graph = self.config.graph_for(document_type)
        if graph is None:
            raise ValidationError(f"unknown document type {document_type!r}")
        return graph

    def _min_length(self, edge: Transition) -> int:
        if edge.min_justification_length is not None:
            return edge.min_justification_length
        return self.config.min_justification_length

    def _publish(self, events) -> None:
        if self.dispatcher is None:
            return
        for event in events:
            self.dispatcher.publish(event)

    def _load_current(self, document: Document | str) -> Document:
        """Fresh copy from the store; the caller's version must still be current."""
        if isinstance(document, str):
            return self.store.load_document(document)
        current = self.store.load_document(document.id)
        if current.version != document.version:
            raise ConcurrentModification(document.id, document.version, current.version)
        return current

    @staticmethod
    def _doc_id(document: Document | str) -> str:
        return document if isinstance(document, str) else document.id

    def _deny(self, current: Document, to_state: str | None, actor_id: str,
              exc: WorkflowError) -> TransitionDenied:
        exc.bind(current.id, current.current_state, to_state, actor_id)
        self.ledger.record(
            document_id=current.id,
            actor_id=actor_id,
            action=AuditAction.DENIAL,
            from_state=current.current_state,
            to_state=to_state,
            reason=f"{exc.kind}: {exc.reason}",
            snapshot={
                "failure_kind": exc.kind,
                "error": exc.to_dict(),
                "state": current.current_state,
                "locked": current.is_locked,
            },
        )
        logger.warning(
            "Transition denied (%s): %s", exc.kind, exc.reason,
            extra={
                "document_id": current.id,
                "document_type": current.document_type,
                "actor_id": actor_id,
                "failure_kind": exc.kind,
                "from_state": current.current_state,
                "to_state": to_state,
            },
        )
        return TransitionDenied(
            document_id=current.id,
            occurred_at=self.clock.now(),
            actor_id=actor_id,
            from_state=current.current_state,
            to_state=to_state,
            failure_kind=exc.kind,
            reason=exc.reason,
        )

    # ═════════════════════════════════════════════════════════════════════
    # Guard evaluation
    # ═════════════════════════════════════════════════════════════════════

    def _evaluate(
        self,
        current: Document,
        to_state: str,
        actor_id: str,
        ctx: TransitionContext,
    ) -> tuple[Transition, VarianceReport | None]:
        graph = self.config.graph_for(current.document_type)
        if graph is None:
            raise InvalidTransition(f"no workflow graph for document type {current.document_type!r}")

        # 1. Graph
        gate = graph.gate(current.current_state, to_state)
        if gate is not None:
            raise Forbidden(gate.reason)
        edge = graph.edge(current.current_state, to_state)
        if edge is None:
            raise InvalidTransition(
                f"no edge {current.current_state!r} -> {to_state!r} for {current.document_type}"
            )

        # 2. Lock
        if current.is_locked and not edge.rollback:
            if not edge.permits_locked:
                raise DocumentLocked(f"document locked since {current.locked_at.isoformat()}")
            if ctx.payload_updates:
                raise DocumentLocked("payload of a locked document can only change through a rollback")

        # 3. Capability
        caps = self.resolver.resolve(actor_id, current.document_type, document=current)
        if not caps.satisfies(edge.requires):
            raise Forbidden(f"requires {edge.requires.describe()}")

        # 4. Self-approval
        if edge.forbid_self_approval and actor_id == current.created_by:
            raise SelfApprovalBlocked("the creator of a document cannot approve it")

        # 5. Timed action items
        if edge.requires_completed_actions and self.scheduler is not None:
            open_items = self.scheduler.open_items_for(current.id)
            if open_items:
                names = sorted(i.action_name for i in open_items)
                raise PendingActionItems(
                    f"{len(open_items)} action item(s) still open: {', '.join(names)}",
                    open_items=names,
                )

        # 6. Variance
        report = None
        if edge.requires_variance_check:
            measurements = [_as_measurement(m) for m in ctx.measurements]
            report = evaluate_all(
                measurements,
                self.config.thresholds_for(current.document_type),
                fields=edge.variance_fields,
            )
            if report.has_critical and len(_justification(ctx)) < self._min_length(edge):
                fields = ", ".join(c.field for c in report.by_band(Band.CRITICAL))
                raise VarianceBlocked(
                    f"critical deviation on {fields} needs a justification "
                    f"of at least {self._min_length(edge)} characters",
                    report=report,
                )

        # 7. Rollback justification
        if edge.rollback and len(_justification(ctx)) < self._min_length(edge):
            raise JustificationRequired(
                f"rollback needs a justification of at least {self._min_length(edge)} characters"
            )

        return edge, report

    # ═════════════════════════════════════════════════════════════════════
    # Apply
    # ═════════════════════════════════════════════════════════════════════

    def _schedule_for_state(self, document: Document, now) -> list[EscalationItem]:
        if self.scheduler is None:
            return []
        items = []
        for template in self.config.templates_for(document.document_type, document.current_state):
            if not template.applies_to(document.payload):
                continue
            item = self.scheduler.build_item(document.id, template, now)
            self.scheduler.schedule(item, publish=False)
            items.append(item)
        return items

    def _apply(
        self,
        current: Document,
        edge: Transition,
        actor_id: str,
        ctx: TransitionContext,
        report: VarianceReport | None,
    ) -> TransitionResult:
        now = self.clock.now()
        graph = self._graph(current.document_type)
        updated = replace(
            current,
            current_state=edge.to_state,
            payload={**current.payload, **(ctx.payload_updates or {})},
        )
        if edge.locks:
            updated.locked_at = now
        elif edge.unlocks:
            updated.locked_at = None

        justification = _justification(ctx) or None
        snapshot = {
            "transition": edge.name,
            "before": {
                "state": current.current_state,
                "locked_at": current.locked_at.isoformat() if current.locked_at else None,
                "payload": current.payload,
            },
            "after": {
                "state": updated.current_state,
                "locked_at": updated.locked_at.isoformat() if updated.locked_at else None,
                "payload": updated.payload,
            },
        }
        if report is not None:
            snapshot["variance"] = report.to_dict()
        if justification:
            snapshot["justification"] = justification
        if ctx.metadata:
            snapshot["metadata"] = dict(ctx.metadata)

        with self.store.unit_of_work():
            saved = self.store.save_document(updated, expected_version=current.version)
            entry = self.ledger.record(
                document_id=current.id,
                actor_id=actor_id,
                action=AuditAction.ROLLBACK if edge.rollback else AuditAction.TRANSITION,
                from_state=current.current_state,
                to_state=edge.to_state,
                reason=justification,
                snapshot=snapshot,
            )
            scheduled: list[EscalationItem] = []
            if not graph.is_terminal(edge.to_state):
                scheduled = self._schedule_for_state(saved, now)

        # Item-locked scheduler calls stay outside the unit of work: the sweep
        # takes the item lock before touching the store.
        if self.scheduler is not None:
            if graph.is_terminal(edge.to_state):
                self.scheduler.archive_document(current.id)
            elif edge.rollback:
                fresh = {i.id for i in scheduled}
                for item in self.scheduler.open_items_for(current.id):
                    if item.id not in fresh:
                        self.scheduler.cancel(item.id, notes="document rolled back")

        alerts: list = []
        if report is not None:
            for check in report.checks:
                if check.band == Band.OK:
                    continue
                alerts.append(VarianceAlert(
                    document_id=current.id,
                    occurred_at=now,
                    field=check.field,
                    band=check.band.value,
                    deviation=check.percent_deviation,
                    justification=justification,
                ))
        if self.scheduler is not None:
            alerts.extend(self.scheduler.scheduled_event(item) for item in scheduled)

        return TransitionResult(
            document=saved,
            transition=edge,
            audit_entry=entry,
            alerts=tuple(alerts),
            variance=report,
            scheduled_items=tuple(scheduled),
        )

    # ═════════════════════════════════════════════════════════════════════
    # Public API
    # ═════════════════════════════════════════════════════════════════════

    def request_transition(
        self,
        document: Document | str,
        to_state: str,
        actor_id: str,
        context: TransitionContext | None = None,
    ) -> TransitionResult:
        """Evaluate and apply one transition, or raise the typed denial."""
        ctx = context or TransitionContext()
        denied = None
        with self._locks.hold(self._doc_id(document)):
            current = self._load_current(document)
            try:
                edge, report = self._evaluate(current, to_state, actor_id, ctx)
            except WorkflowError as exc:
                denied = (exc, self._deny(current, to_state, actor_id, exc))
            else:
                result = self._apply(current, edge, actor_id, ctx, report)

        if denied is not None:
            exc, event = denied
            self._publish([event])
            raise exc

        saved = result.document
        logger.info(
            "%s %s: %s -> %s", "Rollback" if edge.rollback else "Transition", edge.name,
            current.current_state, saved.current_state,
            extra={
                "document_id": saved.id,
                "document_type": saved.document_type,
                "actor_id": actor_id,
                "from_state": current.current_state,
                "to_state": saved.current_state,
            },
        )
        events: list = [TransitionApplied(
            document_id=saved.id,
            occurred_at=result.audit_entry.timestamp,
            document_type=saved.document_type,
            from_state=current.current_state,
            to_state=saved.current_state,
            actor_id=actor_id,
            transition=edge.name,
            alerts=result.alerts,
        )]
        if edge.rollback:
            events.append(RollbackPerformed(
                document_id=saved.id,
                occurred_at=result.audit_entry.timestamp,
                document_type=saved.document_type,
                from_state=current.current_state,
                to_state=saved.current_state,
                actor_id=actor_id,
                creator_id=saved.created_by,
                reason=result.audit_entry.reason or "",
            ))
        events.extend(result.alerts)
        self._publish(events)
        return result

    def try_transition(
        self,
        document: Document | str,
        to_state: str,
        actor_id: str,
        context: TransitionContext | None = None,
    ) -> Outcome:
        try:
            return Outcome(ok=True, result=self.request_transition(document, to_state, actor_id, context))
        except (WorkflowError, ConcurrentModification) as exc:
            return Outcome(ok=False, error=exc)

    def create_document(
        self,
        document_type: str,
        actor_id: str,
        payload: dict | None = None,
        document_id: str | None = None,
    ) -> Document:
        """Create a document in its graph's initial state (audited as "created")."""
        document_type = str(getattr(document_type, "value", document_type))
        graph = self._graph(document_type)
        now = self.clock.now()
        doc = Document(
            id=document_id or str(uuid.uuid4()),
            document_type=document_type,
            current_state=graph.initial_state,
            created_by=actor_id,
            created_at=now,
            payload=dict(payload or {}),
        )
        with self._locks.hold(doc.id):
            with self.store.unit_of_work():
                stored = self.store.insert_document(doc)
                self.ledger.record(
                    document_id=stored.id,
                    actor_id=actor_id,
                    action=AuditAction.TRANSITION,
                    from_state=None,
                    to_state=stored.current_state,
                    reason="created",
                    snapshot={"after": {"state": stored.current_state, "payload": stored.payload}},
                )
                scheduled = self._schedule_for_state(stored, now)

        logger.info("Document created in %s", stored.current_state,
                    extra={"document_id": stored.id, "document_type": document_type,
                           "actor_id": actor_id})
        if self.scheduler is not None:
            self._publish([self.scheduler.scheduled_event(i) for i in scheduled])
        return stored

    def update_payload(self, document: Document | str, actor_id: str, changes: dict) -> Document:
        """Merge ``changes`` into the payload of an unlocked document."""
        if not changes:
            raise ValidationError("no payload changes supplied")
        denied = None
        with self._locks.hold(self._doc_id(document)):
            current = self._load_current(document)
            if current.is_locked:
                exc = DocumentLocked("payload of a locked document can only change through a rollback")
                denied = (exc, self._deny(current, current.current_state, actor_id, exc))
            else:
                updated = replace(current, payload={**current.payload, **changes})
                with self.store.unit_of_work():
                    saved = self.store.save_document(updated, expected_version=current.version)
                    self.ledger.record(
                        document_id=current.id,
                        actor_id=actor_id,
                        action=AuditAction.UPDATE,
                        from_state=current.current_state,
                        to_state=current.current_state,
                        snapshot={
                            "before": {"payload": current.payload},
                            "after": {"payload": saved.payload},
                            "changes": sorted(changes),
                        },
                    )

        if denied is not None:
            exc, event = denied
            self._publish([event])
            raise exc
        logger.info("Payload updated (%s)", ", ".join(sorted(changes)),
                    extra={"document_id": saved.id, "actor_id": actor_id})
        return saved

    def available_transitions(self, document: Document | str, actor_id: str) -> list[str]:
        """Target states the actor could request now (graph, lock and capability only)."""
        current = self.store.load_document(self._doc_id(document))
        graph = self._graph(current.document_type)
        caps = self.resolver.resolve(actor_id, current.document_type, document=current)
        targets: list[str] = []
        for edge in graph.outgoing(current.current_state):
            if current.is_locked and not (edge.rollback or edge.permits_locked):
                continue
            if not caps.satisfies(edge.requires):
                continue
            if edge.to_state not in targets:
                targets.append(edge.to_state)
        return targets

    def get_document(self, document_id: str) -> Document:
        return self.store.load_document(document_id)

    def history(self, document_id: str) -> list[AuditEntry]:
        return self.ledger.query_by_document(document_id)
