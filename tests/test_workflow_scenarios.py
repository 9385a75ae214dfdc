"""
End-to-end workflow scenarios and cross-cutting properties.

Scenarios:
  - quote rollback by its creator, refused for a plain commercial
  - material reception humidity gate, blocked then justified
  - emergency order: timed action items, escalation, completion gate
Properties (every test runs over the in-memory and the SQL store):
  - current state is always a declared graph node
  - denial idempotence
  - lock monotonicity
  - rollback audit completeness
"""
import random
from datetime import timedelta

import pytest

from plantflow.core.exceptions import (
    DocumentLocked,
    Forbidden,
    PendingActionItems,
    SelfApprovalBlocked,
    VarianceBlocked,
)
from plantflow.workflow.events import EscalationFired, EscalationScheduled
from plantflow.workflow.types import (
    AuditAction,
    EscalationStatus,
    Measurement,
    TransitionContext,
)


@pytest.fixture(params=["memory", "sql"])
def engine(request, engine, sql_engine):
    """Run every scenario over both stores."""
    return engine if request.param == "memory" else sql_engine


# ═════════════════════════════════════════════════════════════════════════
# QUOTE ROLLBACK
# ═════════════════════════════════════════════════════════════════════════

class TestQuoteRollback:
    def test_plain_actor_is_forbidden(self, engine, approved_quote):
        with pytest.raises(Forbidden):
            engine.request_transition(approved_quote, "pending_approval", "B",
                                      TransitionContext(justification="price typo"))
        stored = engine.get_document(approved_quote.id)
        assert stored.current_state == "approved"
        assert stored.is_locked

    def test_creator_with_elevated_capability_rolls_back(self, engine, approved_quote):
        assert approved_quote.is_locked
        result = engine.request_transition(approved_quote, "pending_approval", "A",
                                           TransitionContext(justification="price typo"))

        assert result.document.current_state == "pending_approval"
        assert result.document.locked_at is None
        rollbacks = [e for e in engine.history(approved_quote.id) if e.action == AuditAction.ROLLBACK]
        assert len(rollbacks) == 1
        assert rollbacks[0].reason == "price typo"
        assert rollbacks[0].actor_id == "A"

    def test_reapproval_after_rollback(self, engine, approved_quote):
        reopened = engine.request_transition(
            approved_quote, "pending_approval", "A",
            TransitionContext(justification="price typo", payload_updates={"total": 12050}),
        ).document
        assert reopened.payload["total"] == 12050
        reapproved = engine.request_transition(reopened, "approved", "sup-1").document
        assert reapproved.is_locked
        # The creator is still barred from approving.
        rolled = engine.request_transition(reapproved, "pending_approval", "A",
                                           TransitionContext(justification="second revision")).document
        with pytest.raises(SelfApprovalBlocked):
            engine.request_transition(rolled, "approved", "A")


# ═════════════════════════════════════════════════════════════════════════
# MATERIAL RECEPTION
# ═════════════════════════════════════════════════════════════════════════

class TestMaterialReception:
    HUMIDITY = [Measurement("humidity", 0, 18)]

    @pytest.fixture()
    def reception(self, engine):
        return engine.create_document("material_reception", "op-1",
                                      payload={"material": "sable 0/4", "tonnage": 32})

    def test_critical_humidity_without_justification(self, engine, reception):
        with pytest.raises(VarianceBlocked):
            engine.request_transition(reception, "awaiting_front_desk_validation", "tech-1",
                                      TransitionContext(measurements=self.HUMIDITY))
        denial = engine.history(reception.id)[-1]
        assert denial.action == AuditAction.DENIAL
        assert denial.snapshot["failure_kind"] == "variance_blocked"
        assert engine.get_document(reception.id).current_state == "awaiting_technical_review"

    def test_critical_humidity_with_justification(self, engine, reception):
        ctx = TransitionContext(measurements=self.HUMIDITY,
                                justification="accepted with added drying step")
        result = engine.request_transition(reception, "awaiting_front_desk_validation", "tech-1", ctx)

        snapshot = result.audit_entry.snapshot
        assert snapshot["variance"]["band"] == "critical"
        assert snapshot["variance"]["checks"][0]["band"] == "critical"
        assert snapshot["justification"] == "accepted with added drying step"
        assert result.audit_entry.action == AuditAction.TRANSITION

    def test_two_step_approval(self, engine, reception):
        step1 = engine.request_transition(
            reception, "awaiting_front_desk_validation", "tech-1",
            TransitionContext(measurements=[Measurement("humidity", 0, 6)]),
        ).document
        final = engine.request_transition(step1, "finalized", "admin-1").document
        assert final.current_state == "finalized"
        assert final.is_locked

    def test_front_desk_cannot_skip_review(self, engine, reception):
        with pytest.raises(Forbidden):
            engine.request_transition(reception, "finalized", "admin-1")

    def test_reject_from_either_pending_state(self, engine, reception):
        assert engine.request_transition(reception, "rejected", "tech-1").document.current_state == "rejected"
        other = engine.create_document("material_reception", "op-1")
        other = engine.request_transition(
            other, "awaiting_front_desk_validation", "tech-2",
            TransitionContext(measurements=[Measurement("humidity", 0, 3)]),
        ).document
        assert engine.request_transition(other, "rejected", "admin-1").document.current_state == "rejected"


# ═════════════════════════════════════════════════════════════════════════
# EMERGENCY ORDER
# ═════════════════════════════════════════════════════════════════════════

class TestEmergencyOrder:
    @pytest.fixture()
    def validated_order(self, engine):
        order = engine.create_document("order", "com-1", payload={"emergency": True, "volume_m3": 24})
        order = engine.request_transition(order, "pending_validation", "com-1").document
        return engine.request_transition(order, "validated", "dop-1")

    def test_action_items_scheduled(self, engine, recorder, validated_order, clock):
        items = validated_order.scheduled_items
        assert {i.action_name for i in items} == {"confirm_production_slot", "confirm_quality_plan"}
        slot = next(i for i in items if i.action_name == "confirm_production_slot")
        assert slot.deadline == clock.now() + timedelta(minutes=30)
        assert slot.assigned_role == "centraliste"
        assert len(recorder.of_type(EscalationScheduled)) == 2

    def test_regular_order_has_no_items(self, engine):
        order = engine.create_document("order", "com-1", payload={"emergency": False})
        order = engine.request_transition(order, "pending_validation", "com-1").document
        result = engine.request_transition(order, "validated", "dop-1")
        assert result.scheduled_items == ()
        started = engine.request_transition(result.document, "in_production", "cent-1")
        assert started.document.current_state == "in_production"

    def test_escalation_fires_once(self, engine, recorder, validated_order, clock):
        clock.advance(minutes=31)
        fired = engine.scheduler.sweep()
        assert [e.action_name for e in fired] == ["confirm_production_slot"]
        assert fired[0].escalate_to_role == "directeur_operations"
        assert engine.scheduler.sweep() == []
        assert len(recorder.of_type(EscalationFired)) == 1

    def test_production_waits_for_action_items(self, engine, validated_order):
        order = validated_order.document
        with pytest.raises(PendingActionItems) as exc_info:
            engine.request_transition(order, "in_production", "cent-1")
        assert exc_info.value.open_items == ["confirm_production_slot", "confirm_quality_plan"]

        for item in validated_order.scheduled_items:
            engine.scheduler.complete(item.id)
        result = engine.request_transition(order, "in_production", "cent-1")
        assert result.document.current_state == "in_production"

    def test_terminal_state_archives_items(self, engine, validated_order):
        order = validated_order.document
        for item in validated_order.scheduled_items:
            engine.scheduler.complete(item.id)
        order = engine.request_transition(order, "in_production", "cent-1").document
        engine.request_transition(order, "completed", "cent-1")

        items = engine.scheduler.items_for(order.id)
        assert all(i.archived for i in items)
        assert all(i.status == EscalationStatus.COMPLETED for i in items)

    def test_rollback_cancels_open_items(self, engine, validated_order):
        order = validated_order.document
        engine.request_transition(order, "pending_validation", "sup-1",
                                  TransitionContext(justification="slot no longer available"))
        items = engine.scheduler.items_for(order.id)
        assert {i.status for i in items} == {EscalationStatus.CANCELLED}
        assert engine.scheduler.open_items_for(order.id) == []


# ═════════════════════════════════════════════════════════════════════════
# PROPERTIES
# ═════════════════════════════════════════════════════════════════════════

OK_MEASUREMENTS = [
    Measurement("cement", 350, 351),
    Measurement("humidity", 0, 2),
    Measurement("unit_cost", 700, 701),
]


class TestProperties:
    @pytest.mark.parametrize("seed", [1, 7, 42])
    def test_state_always_declared(self, engine, workflow_config, seed):
        rng = random.Random(seed)
        actors = ["A", "B", "ceo-1", "sup-1", "com-1", "acc-1", "dop-1", "tech-1",
                  "cent-1", "admin-1", "op-1", "aud-1", "stranger"]
        docs = [engine.create_document(t, rng.choice(actors)) for t in sorted(workflow_config.graphs)]

        for _ in range(150):
            idx = rng.randrange(len(docs))
            doc = docs[idx]
            graph = workflow_config.graph_for(doc.document_type)
            target = rng.choice(sorted(graph.states) + ["nowhere"])
            ctx = TransitionContext(measurements=OK_MEASUREMENTS,
                                    justification=rng.choice([None, "ten chars!", "x"]))
            outcome = engine.try_transition(doc, target, rng.choice(actors), ctx)
            if outcome.ok:
                docs[idx] = outcome.result.document
            for item in engine.scheduler.open_items_for(doc.id):
                engine.scheduler.complete(item.id)
            docs[idx] = engine.get_document(doc.id)
            assert docs[idx].current_state in graph.states

    def test_denial_idempotence(self, engine):
        quote = engine.create_document("quote", "com-1")
        quote = engine.request_transition(quote, "pending_approval", "com-1").document
        before = len(engine.history(quote.id))

        for _ in range(5):
            with pytest.raises(Forbidden):
                engine.request_transition(quote, "approved", "com-2")

        trail = engine.history(quote.id)
        assert len(trail) == before + 5
        assert all(e.action == AuditAction.DENIAL for e in trail[before:])
        stored = engine.get_document(quote.id)
        assert stored.current_state == "pending_approval"
        assert stored.version == quote.version

    def test_lock_monotonicity(self, engine, approved_quote):
        payload = dict(approved_quote.payload)

        with pytest.raises(DocumentLocked):
            engine.update_payload(approved_quote, "ceo-1", {"total": 1})
        with pytest.raises(DocumentLocked):
            engine.request_transition(approved_quote, "converted", "ceo-1",
                                      TransitionContext(payload_updates={"total": 1}))
        assert engine.get_document(approved_quote.id).payload == payload

        reopened = engine.request_transition(
            approved_quote, "pending_approval", "ceo-1",
            TransitionContext(justification="volume correction", payload_updates={"total": 1}),
        ).document
        assert reopened.payload["total"] == 1

    def test_every_rollback_has_one_reasoned_entry(self, engine, approved_quote):
        doc = approved_quote
        for n in range(3):
            doc = engine.request_transition(doc, "pending_approval", "sup-2",
                                            TransitionContext(justification=f"revision number {n}")).document
            doc = engine.request_transition(doc, "approved", "sup-1").document

        rollbacks = [e for e in engine.history(doc.id) if e.action == AuditAction.ROLLBACK]
        assert len(rollbacks) == 3
        assert all(e.reason for e in rollbacks)
