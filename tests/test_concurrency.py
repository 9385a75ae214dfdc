"""
Concurrency tests: racing transitions, racing escalation actions, lock registry.
"""
import threading
import time
from datetime import timedelta

from plantflow.core.concurrency import KeyedLocks
from plantflow.core.exceptions import ConcurrentModification, InvalidTransition
from plantflow.workflow.events import EscalationFired
from plantflow.workflow.types import AuditAction, EscalationStatus


def _race(targets):
    """Start every callable at the same barrier and collect outcomes."""
    barrier = threading.Barrier(len(targets))
    outcomes = [None] * len(targets)

    def run(idx, fn):
        barrier.wait()
        try:
            outcomes[idx] = fn()
        except Exception as exc:
            outcomes[idx] = exc

    threads = [threading.Thread(target=run, args=(i, fn)) for i, fn in enumerate(targets)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)
    return outcomes


def _pending_quote(engine):
    quote = engine.create_document("quote", "com-1", payload={"total": 900})
    return engine.request_transition(quote, "pending_approval", "com-1").document


class TestRacingTransitions:
    def test_same_snapshot_one_winner(self, engine):
        quote = _pending_quote(engine)
        outcomes = _race([
            lambda actor=actor: engine.request_transition(quote, "approved", actor)
            for actor in ("sup-1", "sup-2", "ceo-1", "acc-1")
        ])

        winners = [o for o in outcomes if not isinstance(o, Exception)]
        losers = [o for o in outcomes if isinstance(o, Exception)]
        assert len(winners) == 1
        assert all(isinstance(o, ConcurrentModification) for o in losers)
        assert engine.get_document(quote.id).current_state == "approved"

        # Version conflicts are not denials and leave no audit trace.
        trail = engine.history(quote.id)
        assert [e.action for e in trail].count(AuditAction.DENIAL) == 0
        assert [e.to_state for e in trail].count("approved") == 1

    def test_by_id_one_winner(self, engine):
        quote = _pending_quote(engine)
        outcomes = _race([
            lambda actor=actor: engine.request_transition(quote.id, "approved", actor)
            for actor in ("sup-1", "sup-2", "ceo-1")
        ])

        winners = [o for o in outcomes if not isinstance(o, Exception)]
        assert len(winners) == 1
        # Later callers reload the approved document and find no such edge.
        assert all(isinstance(o, InvalidTransition) for o in outcomes if isinstance(o, Exception))
        sequences = [e.sequence for e in engine.history(quote.id)]
        assert sequences == list(range(1, len(sequences) + 1))

    def test_different_documents_do_not_interfere(self, engine):
        quotes = [_pending_quote(engine) for _ in range(6)]
        outcomes = _race([
            lambda q=q: engine.request_transition(q, "approved", "sup-1")
            for q in quotes
        ])
        assert not any(isinstance(o, Exception) for o in outcomes)
        assert {engine.get_document(q.id).current_state for q in quotes} == {"approved"}


class TestLedgerAgainstTransition:
    def test_direct_append_during_transition(self, engine, monkeypatch):
        quote = _pending_quote(engine)
        saving = threading.Event()
        original_save = engine.store.save_document

        def slow_save(document, expected_version):
            saved = original_save(document, expected_version)
            saving.set()
            time.sleep(0.3)
            return saved

        monkeypatch.setattr(engine.store, "save_document", slow_save)

        def transition():
            engine.request_transition(quote, "approved", "sup-1")

        def note():
            saving.wait(timeout=5)
            engine.ledger.record(document_id=quote.id, actor_id="aud-1",
                                 action=AuditAction.DENIAL, reason="manual review note")

        threads = [threading.Thread(target=transition), threading.Thread(target=note)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        assert not any(t.is_alive() for t in threads)
        trail = engine.history(quote.id)
        assert [e.sequence for e in trail] == list(range(1, len(trail) + 1))
        assert trail[-1].reason == "manual review note"
        assert engine.get_document(quote.id).current_state == "approved"


class TestRacingEscalation:
    def test_complete_versus_sweep(self, engine, recorder, clock):
        order = engine.create_document("order", "com-1", payload={"emergency": True})
        order = engine.request_transition(order, "pending_validation", "com-1").document
        result = engine.request_transition(order, "validated", "dop-1")
        slot = next(i for i in result.scheduled_items if i.action_name == "confirm_production_slot")
        clock.advance(minutes=31)

        _race([lambda: engine.scheduler.complete(slot.id), engine.scheduler.sweep])

        final = engine.scheduler.items_for(order.id)
        slot_state = next(i for i in final if i.id == slot.id)
        assert slot_state.status == EscalationStatus.COMPLETED
        # Either the sweep fired before completion, or it found the item closed.
        assert len(recorder.of_type(EscalationFired)) <= 1
        clock.advance(hours=1)
        fired = [e.escalation_id for e in engine.scheduler.sweep()]
        assert slot.id not in fired


class TestKeyedLocks:
    def test_registry_empties(self):
        locks = KeyedLocks()
        with locks.hold("a"):
            with locks.hold("b"):
                assert len(locks) == 2
            with locks.hold("a"):
                assert len(locks) == 1
        assert len(locks) == 0

    def test_same_key_is_exclusive(self):
        locks = KeyedLocks()
        inside = []
        overlap = []

        def worker():
            for _ in range(200):
                with locks.hold("doc"):
                    inside.append(1)
                    if len(inside) > 1:
                        overlap.append(True)
                    inside.pop()

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert overlap == []
        assert len(locks) == 0

    def test_other_keys_not_blocked(self):
        locks = KeyedLocks()
        acquired = threading.Event()

        def other():
            with locks.hold("b"):
                acquired.set()

        with locks.hold("a"):
            t = threading.Thread(target=other)
            t.start()
            assert acquired.wait(timeout=2)
            t.join()


def test_sweep_interval_deadline_arithmetic(engine, clock):
    """Second-level deadline is measured from the moment of escalation."""
    order = engine.create_document("order", "com-1", payload={"emergency": True})
    order = engine.request_transition(order, "pending_validation", "com-1").document
    engine.request_transition(order, "validated", "dop-1")
    clock.advance(minutes=40)
    (fired,) = engine.scheduler.sweep()
    assert fired.next_deadline == clock.now() + timedelta(minutes=15)
