"""
Domain events emitted by the engine and the escalation scheduler.

Events are fire-and-forget: the engine publishes them through the
NotificationDispatcher after the state change is durable and never waits on
consumers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class DomainEvent:
    document_id: str
    occurred_at: datetime

    @property
    def event_type(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict:
        data = {k: v for k, v in self.__dict__.items()}
        data["event_type"] = self.event_type
        data["occurred_at"] = self.occurred_at.isoformat()
        return data


@dataclass(frozen=True)
class VarianceAlert(DomainEvent):
    field: str = ""
    band: str = ""
    deviation: float = 0.0
    justification: str | None = None


@dataclass(frozen=True)
class TransitionApplied(DomainEvent):
    document_type: str = ""
    from_state: str | None = None
    to_state: str = ""
    actor_id: str = ""
    transition: str = ""
    alerts: tuple = field(default_factory=tuple)


@dataclass(frozen=True)
class RollbackPerformed(DomainEvent):
    """Raised on every successful rollback; the creator gets notified."""
    document_type: str = ""
    from_state: str = ""
    to_state: str = ""
    actor_id: str = ""
    creator_id: str = ""
    reason: str = ""


@dataclass(frozen=True)
class TransitionDenied(DomainEvent):
    actor_id: str = ""
    from_state: str | None = None
    to_state: str | None = None
    failure_kind: str = ""
    reason: str = ""


@dataclass(frozen=True)
class EscalationScheduled(DomainEvent):
    escalation_id: str = ""
    action_name: str = ""
    assigned_role: str = ""
    deadline: datetime | None = None


@dataclass(frozen=True)
class EscalationFired(DomainEvent):
    escalation_id: str = ""
    action_name: str = ""
    level: int = 0
    from_role: str = ""
    escalate_to_role: str = ""
    next_deadline: datetime | None = None
