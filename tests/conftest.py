"""
Shared pytest fixtures for the plantflow test suite.

Provides:
    - app: Flask application (session-scoped, "testing" config)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test app context, rollback + recreate (autouse)
    - clock: FakeClock, advanced explicitly by tests
    - identity: StaticIdentitySource with one actor per role
    - recorder: NotificationDispatcher that keeps every published event
    - engine: WorkflowEngine over an InMemoryStore
    - sql_engine: WorkflowEngine over the SqlAlchemyStore of ``app``
"""

from datetime import datetime, timedelta, timezone

import pytest

from plantflow import create_app
from plantflow.models import db as _db
from plantflow.services.audit_ledger import AuditLedger
from plantflow.services.escalation import EscalationScheduler
from plantflow.services.notification import NotificationDispatcher
from plantflow.services.permission import RoleResolver, StaticIdentitySource
from plantflow.services.store import InMemoryStore, SqlAlchemyStore
from plantflow.services.workflow_engine import WorkflowEngine
from plantflow.workflow.config_loader import load_workflow_config


# Actors used across the suite.  "A" and "B" mirror the rollback scenario.
ROLES = {
    "A": ["ceo"],
    "B": ["commercial"],
    "ceo-1": ["ceo"],
    "sup-1": ["superviseur"],
    "sup-2": ["superviseur"],
    "com-1": ["commercial"],
    "com-2": ["commercial"],
    "acc-1": ["accounting"],
    "dop-1": ["directeur_operations"],
    "tech-1": ["responsable_technique"],
    "tech-2": ["responsable_technique"],
    "cent-1": ["centraliste"],
    "admin-1": ["agent_administratif"],
    "op-1": ["operator"],
    "aud-1": ["auditeur"],
    "multi-1": ["commercial", "accounting"],
}


class FakeClock:
    """Deterministic clock; starts at a fixed UTC instant."""

    def __init__(self, start: datetime | None = None):
        self._now = start or datetime(2024, 3, 4, 8, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, **kwargs) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now


class Recorder:
    """Collects published events through a real dispatcher."""

    def __init__(self):
        self.events = []
        self.dispatcher = NotificationDispatcher()
        self.dispatcher.subscribe(self.events.append)

    def of_type(self, event_cls):
        return [e for e in self.events if isinstance(e, event_cls)]

    def clear(self):
        self.events.clear()


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


# ── Engine fixtures ──────────────────────────────────────────────────────


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def identity():
    return StaticIdentitySource(ROLES)


@pytest.fixture()
def recorder():
    return Recorder()


@pytest.fixture()
def workflow_config():
    return load_workflow_config()


def _build(store, workflow_config, identity, recorder, clock):
    ledger = AuditLedger(store, clock)
    scheduler = EscalationScheduler(store, recorder.dispatcher, clock)
    return WorkflowEngine(
        config=workflow_config,
        store=store,
        resolver=RoleResolver(workflow_config, identity),
        ledger=ledger,
        scheduler=scheduler,
        dispatcher=recorder.dispatcher,
        clock=clock,
    )


@pytest.fixture()
def engine(workflow_config, identity, recorder, clock):
    """Engine over a fresh InMemoryStore."""
    return _build(InMemoryStore(), workflow_config, identity, recorder, clock)


@pytest.fixture()
def sql_engine(workflow_config, identity, recorder, clock):
    """Engine over the SQLAlchemy store (uses the per-test app context)."""
    return _build(SqlAlchemyStore(), workflow_config, identity, recorder, clock)


# ── Document fixtures ────────────────────────────────────────────────────


@pytest.fixture()
def approved_quote(engine):
    """Quote created by "A", approved (and locked) by a superviseur."""
    quote = engine.create_document("quote", "A", payload={"total": 12500, "client": "BTP Atlas"})
    quote = engine.request_transition(quote, "pending_approval", "A").document
    return engine.request_transition(quote, "approved", "sup-1").document
