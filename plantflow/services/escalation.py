"""
Escalation Scheduler.

Tracks SLA deadlines on time-boxed action items and promotes them to the next
authority level when a deadline lapses without completion.

Queue:
    A min-heap of (deadline, seq, item_id, level).  Entries are never removed
    eagerly; the sweep re-reads the item under its per-item lock and drops the
    entry when the stored item no longer matches (completed, cancelled,
    acknowledged after an escalation, or already re-armed).  That re-read is
    the atomic check-then-act that keeps a racing ``complete`` from being
    overridden by a firing deadline.

Levels:
    level 0  -> assigned_role      (initial owner)
    level 1  -> escalate_to_role
    level n  -> escalation_chain[n - 2]
    After each fire the deadline is re-armed ``escalate_after`` later while a
    further level exists; at the last level the item stays ``escalated`` with
    no deadline until a human completes or cancels it.

Usage:
    scheduler = EscalationScheduler(store, dispatcher)
    handle = scheduler.schedule(item)
    scheduler.acknowledge(handle)
    scheduler.sweep()             # or scheduler.start(app, interval=30)
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import uuid
from datetime import datetime

from plantflow.core.clock import SystemClock, to_utc
from plantflow.core.concurrency import KeyedLocks
from plantflow.core.exceptions import NotFoundError, ValidationError
from plantflow.services.store import DocumentStore
from plantflow.workflow.events import EscalationFired, EscalationScheduled
from plantflow.workflow.types import EscalationItem, EscalationStatus, EscalationTemplate

logger = logging.getLogger(__name__)

_FIREABLE = (EscalationStatus.PENDING, EscalationStatus.IN_PROGRESS, EscalationStatus.ESCALATED)


class EscalationScheduler:
    def __init__(self, store: DocumentStore, dispatcher=None, clock=None):
        self.store = store
        self.dispatcher = dispatcher
        self.clock = clock or SystemClock()
        self._queue: list[tuple[datetime, int, str, int]] = []
        self._queue_lock = threading.Lock()
        self._seq = itertools.count()
        self._item_locks = KeyedLocks()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    # ── Queue ────────────────────────────────────────────────────────────

    def _arm(self, item: EscalationItem) -> None:
        if item.deadline is None:
            return
        with self._queue_lock:
            heapq.heappush(self._queue, (to_utc(item.deadline), next(self._seq), item.id, item.level))

    def pending_deadlines(self) -> int:
        with self._queue_lock:
            return len(self._queue)

    def next_deadline(self) -> datetime | None:
        with self._queue_lock:
            return self._queue[0][0] if self._queue else None

    def _publish(self, events) -> None:
        if self.dispatcher is None:
            return
        for event in events:
            self.dispatcher.publish(event)

    # ── Creation ─────────────────────────────────────────────────────────

    def build_item(self, document_id: str, template: EscalationTemplate,
                   now: datetime | None = None) -> EscalationItem:
        """Instantiate an item from a template, deadline counted from ``now``."""
        now = now or self.clock.now()
        return EscalationItem(
            id=str(uuid.uuid4()),
            document_id=document_id,
            action_name=template.action_name,
            phase=template.phase,
            assigned_role=template.assigned_role,
            deadline=now + template.deadline,
            escalate_to_role=template.escalate_to_role,
            escalate_after=template.escalate_after,
            escalation_chain=tuple(template.escalation_chain),
            created_at=now,
        )

    def schedule(self, item: EscalationItem, *, publish: bool = True) -> str:
        """Persist and arm ``item``; returns its handle.

        The engine schedules inside its unit of work and passes
        ``publish=False`` so the event goes out only after commit.
        """
        if item.deadline is None:
            raise ValidationError("escalation item needs a deadline")
        item.id = item.id or str(uuid.uuid4())
        item.created_at = item.created_at or self.clock.now()
        item.status = EscalationStatus.PENDING
        self.store.save_escalation_item(item)
        self._arm(item)
        logger.info(
            "Escalation item %s scheduled for %s, due %s", item.action_name,
            item.assigned_role, item.deadline.isoformat(),
            extra={"document_id": item.document_id, "escalation_id": item.id},
        )
        if publish:
            self._publish([self.scheduled_event(item)])
        return item.id

    def scheduled_event(self, item: EscalationItem) -> EscalationScheduled:
        return EscalationScheduled(
            document_id=item.document_id,
            occurred_at=item.created_at or self.clock.now(),
            escalation_id=item.id,
            action_name=item.action_name,
            assigned_role=item.assigned_role,
            deadline=item.deadline,
        )

    # ── Human actions ────────────────────────────────────────────────────

    def _mutate(self, handle: str, allowed: tuple, verb: str, mutate) -> EscalationItem:
        with self._item_locks.hold(handle):
            item = self.store.load_escalation_item(handle)
            status = EscalationStatus(item.status)
            if status not in allowed:
                raise ValidationError(
                    f"cannot {verb} escalation item in status {status.value}",
                    details={"escalation_id": handle, "status": status.value},
                )
            mutate(item, self.clock.now())
            self.store.save_escalation_item(item)
        logger.info("Escalation item %s: %s -> %s", handle, status.value,
                    EscalationStatus(item.status).value,
                    extra={"document_id": item.document_id, "escalation_id": handle})
        return item

    def acknowledge(self, handle: str) -> EscalationItem:
        """pending -> in_progress (deadline kept); escalated -> in_progress (deadline cleared)."""
        def _ack(item, now):
            if item.status == EscalationStatus.ESCALATED:
                item.deadline = None
            item.status = EscalationStatus.IN_PROGRESS
            item.acknowledged_at = now

        return self._mutate(handle, (EscalationStatus.PENDING, EscalationStatus.ESCALATED),
                            "acknowledge", _ack)

    def complete(self, handle: str, notes: str | None = None) -> EscalationItem:
        def _complete(item, now):
            item.status = EscalationStatus.COMPLETED
            item.completed_at = now
            item.deadline = None
            if notes:
                item.notes = notes

        return self._mutate(handle, _FIREABLE, "complete", _complete)

    def cancel(self, handle: str, notes: str | None = None) -> EscalationItem:
        def _cancel(item, now):
            item.status = EscalationStatus.CANCELLED
            item.deadline = None
            if notes:
                item.notes = notes

        return self._mutate(handle, _FIREABLE, "cancel", _cancel)

    def fail(self, handle: str, reason: str) -> EscalationItem:
        def _fail(item, now):
            item.status = EscalationStatus.FAILED
            item.deadline = None
            item.notes = reason

        return self._mutate(handle, _FIREABLE, "fail", _fail)

    # ── Document lifecycle hooks ─────────────────────────────────────────

    def open_items_for(self, document_id: str) -> list[EscalationItem]:
        return [i for i in self.store.escalation_items_for(document_id)
                if EscalationStatus(i.status).is_open and not i.archived]

    def items_for(self, document_id: str) -> list[EscalationItem]:
        return self.store.escalation_items_for(document_id)

    def archive_document(self, document_id: str) -> list[EscalationItem]:
        """Archive every item of a document that reached a terminal state."""
        archived = []
        for snapshot in self.store.escalation_items_for(document_id):
            if snapshot.archived:
                continue
            with self._item_locks.hold(snapshot.id):
                item = self.store.load_escalation_item(snapshot.id)
                if EscalationStatus(item.status).is_open:
                    item.status = EscalationStatus.CANCELLED
                item.deadline = None
                item.archived = True
                self.store.save_escalation_item(item)
            archived.append(item)
        if archived:
            logger.info("Archived %d escalation item(s)", len(archived),
                        extra={"document_id": document_id})
        return archived

    # ── Sweep ────────────────────────────────────────────────────────────

    def _fire_if_due(self, item_id: str, level: int, deadline: datetime,
                     now: datetime) -> EscalationFired | None:
        with self._item_locks.hold(item_id):
            try:
                item = self.store.load_escalation_item(item_id)
            except NotFoundError:
                # Scheduled inside a unit of work that rolled back.
                return None
            if (
                item.archived
                or EscalationStatus(item.status) not in _FIREABLE
                or item.level != level
                or item.deadline is None
                or to_utc(item.deadline) != deadline
            ):
                return None

            next_level = item.level + 1
            target = item.target_for_level(next_level)
            if target is None:
                item.deadline = None
                self.store.save_escalation_item(item)
                return None

            from_role = item.target_for_level(item.level)
            item.level = next_level
            item.status = EscalationStatus.ESCALATED
            item.escalated_at = now
            item.history.append({
                "level": next_level,
                "from_role": from_role,
                "to_role": target,
                "escalated_at": now.isoformat(),
            })
            item.deadline = now + item.escalate_after if item.has_next_level else None
            self.store.save_escalation_item(item)
            self._arm(item)

        logger.warning(
            "Escalation %s fired: %s -> %s (level %d)", item.action_name, from_role, target,
            next_level, extra={"document_id": item.document_id, "escalation_id": item.id},
        )
        return EscalationFired(
            document_id=item.document_id,
            occurred_at=now,
            escalation_id=item.id,
            action_name=item.action_name,
            level=next_level,
            from_role=from_role,
            escalate_to_role=target,
            next_deadline=item.deadline,
        )

    def sweep(self, now: datetime | None = None) -> list[EscalationFired]:
        """Fire every lapsed deadline; returns the events raised."""
        now = to_utc(now or self.clock.now())
        fired: list[EscalationFired] = []
        while True:
            with self._queue_lock:
                if not self._queue or self._queue[0][0] > now:
                    break
                deadline, _, item_id, level = heapq.heappop(self._queue)
            try:
                event = self._fire_if_due(item_id, level, deadline, now)
            except Exception:
                # Put the deadline back so the next sweep retries it.
                with self._queue_lock:
                    heapq.heappush(self._queue, (deadline, next(self._seq), item_id, level))
                self._publish(fired)
                raise
            if event is not None:
                fired.append(event)
        self._publish(fired)
        return fired

    def restore(self) -> int:
        """Re-arm every open item from the store (after a restart)."""
        with self._queue_lock:
            self._queue.clear()
        items = self.store.load_open_escalation_items()
        for item in items:
            self._arm(item)
        logger.info("Restored %d open escalation item(s)", len(items))
        return len(items)

    # ── Background loop ──────────────────────────────────────────────────

    def start(self, app, interval: float = 30.0) -> None:
        """Run ``sweep`` every ``interval`` seconds on a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()

        def _loop():
            while not self._stop.wait(interval):
                try:
                    with app.app_context():
                        self.sweep()
                except Exception:
                    logger.exception("Escalation sweep failed")

        self._thread = threading.Thread(target=_loop, name="escalation-sweep", daemon=True)
        self._thread.start()
        logger.info("Escalation sweep started (interval=%ss)", interval)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
