"""
Notification dispatch.

The engine and the scheduler publish domain events here once their state
change is durable.  Delivery is fire-and-forget: a failing subscriber is
logged and never propagates back into the workflow.

Subscribers:
    - LoggingSink:       structured log line per event.
    - NotificationSink:  in-app Notification rows (needs the Flask app).

Usage:
    dispatcher = NotificationDispatcher()
    dispatcher.subscribe(LoggingSink())
    dispatcher.subscribe(NotificationSink(app), event_types=("RollbackPerformed",))
    dispatcher.publish(event)
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Executor
from typing import Callable, Iterable

from plantflow.workflow.events import (
    DomainEvent,
    EscalationFired,
    EscalationScheduled,
    RollbackPerformed,
    TransitionApplied,
    TransitionDenied,
    VarianceAlert,
)

logger = logging.getLogger(__name__)

Subscriber = Callable[[DomainEvent], None]


class NotificationDispatcher:
    """Fan domain events out to subscribers.

    Without an executor subscribers run inline, one after the other; with one
    they are submitted and the publisher returns immediately.
    """

    def __init__(self, executor: Executor | None = None):
        self._executor = executor
        self._lock = threading.Lock()
        self._subscribers: list[tuple[Subscriber, frozenset | None]] = []

    def subscribe(self, subscriber: Subscriber, event_types: Iterable[str] | None = None) -> None:
        with self._lock:
            types = frozenset(event_types) if event_types is not None else None
            self._subscribers.append((subscriber, types))

    def unsubscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            self._subscribers = [(s, t) for s, t in self._subscribers if s is not subscriber]

    def publish(self, event: DomainEvent) -> None:
        with self._lock:
            targets = [s for s, types in self._subscribers
                       if types is None or event.event_type in types]
        for subscriber in targets:
            if self._executor is not None:
                self._executor.submit(self._deliver, subscriber, event)
            else:
                self._deliver(subscriber, event)

    def publish_all(self, events: Iterable[DomainEvent]) -> None:
        for event in events:
            self.publish(event)

    @staticmethod
    def _deliver(subscriber: Subscriber, event: DomainEvent) -> None:
        try:
            subscriber(event)
        except Exception:
            logger.exception(
                "Notification subscriber %r failed for %s", subscriber, event.event_type,
                extra={"document_id": event.document_id, "event_type": event.event_type},
            )


class LoggingSink:
    """Write one structured log record per event."""

    def __init__(self, log: logging.Logger | None = None):
        self.log = log or logging.getLogger("plantflow.events")

    def __call__(self, event: DomainEvent) -> None:
        level = logging.INFO
        if isinstance(event, (TransitionDenied, EscalationFired)):
            level = logging.WARNING
        elif isinstance(event, VarianceAlert) and event.band == "critical":
            level = logging.WARNING
        self.log.log(
            level, "%s on document %s", event.event_type, event.document_id,
            extra={"document_id": event.document_id, "event_type": event.event_type},
        )


def _render(event: DomainEvent) -> dict | None:
    """Map an event onto notification fields; None means "do not notify"."""
    if isinstance(event, RollbackPerformed):
        return {
            "recipient": event.creator_id,
            "title": f"{event.document_type} rolled back to {event.to_state}",
            "message": f"{event.actor_id} reopened the document: {event.reason}",
            "category": "rollback",
            "severity": "warning",
            "entity_type": event.document_type,
        }
    if isinstance(event, VarianceAlert):
        return {
            "recipient": "all",
            "title": f"Variance {event.band} on {event.field}",
            "message": (f"Deviation {event.deviation:.2f}"
                        + (f"; justification: {event.justification}" if event.justification else "")),
            "category": "variance",
            "severity": "error" if event.band == "critical" else "warning",
        }
    if isinstance(event, EscalationScheduled):
        return {
            "recipient": f"role:{event.assigned_role}",
            "title": f"Action required: {event.action_name}",
            "message": f"Due {event.deadline.isoformat() if event.deadline else 'now'}",
            "category": "escalation",
            "severity": "info",
        }
    if isinstance(event, EscalationFired):
        return {
            "recipient": f"role:{event.escalate_to_role}",
            "title": f"Escalated: {event.action_name} (level {event.level})",
            "message": f"{event.from_role} missed the deadline",
            "category": "escalation",
            "severity": "error",
        }
    if isinstance(event, TransitionDenied):
        return {
            "recipient": event.actor_id,
            "title": f"Transition denied: {event.failure_kind}",
            "message": event.reason,
            "category": "denial",
            "severity": "warning",
        }
    if isinstance(event, TransitionApplied):
        return {
            "recipient": "all",
            "title": f"{event.document_type} moved to {event.to_state}",
            "message": f"{event.actor_id}: {event.from_state} -> {event.to_state}",
            "category": "transition",
            "severity": "success",
            "entity_type": event.document_type,
        }
    return None


class NotificationSink:
    """Persist events as in-app Notification rows."""

    def __init__(self, app):
        self.app = app

    def __call__(self, event: DomainEvent) -> None:
        fields = _render(event)
        if fields is None:
            return
        from plantflow.models import db
        from plantflow.models.notification import (
            NOTIFICATION_CATEGORIES,
            NOTIFICATION_SEVERITIES,
            Notification,
        )

        if fields["category"] not in NOTIFICATION_CATEGORIES:
            raise ValueError(f"category must be one of: {', '.join(sorted(NOTIFICATION_CATEGORIES))}")
        if fields["severity"] not in NOTIFICATION_SEVERITIES:
            raise ValueError(f"severity must be one of: {', '.join(sorted(NOTIFICATION_SEVERITIES))}")

        with self.app.app_context():
            notif = Notification(entity_id=event.document_id, **fields)
            db.session.add(notif)
            try:
                db.session.commit()
            except Exception:
                db.session.rollback()
                raise
