"""
Plantflow
Flask Application Factory.

Usage:
    from plantflow import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config

The workflow engine is built once per app and stored in
``app.extensions["workflow_engine"]``; use ``get_engine()`` inside an app
context.
"""

import logging
import os

from flask import Flask, current_app
from flask.cli import AppGroup
from flask_migrate import Migrate

from plantflow.config import config
from plantflow.core.clock import SystemClock
from plantflow.core.logging_config import configure_logging
from plantflow.models import db
from plantflow.services.audit_ledger import AuditLedger
from plantflow.services.escalation import EscalationScheduler
from plantflow.services.notification import LoggingSink, NotificationDispatcher, NotificationSink
from plantflow.services.permission import DbIdentitySource, RoleResolver, StaticIdentitySource
from plantflow.services.store import InMemoryStore, SqlAlchemyStore
from plantflow.services.workflow_engine import WorkflowEngine
from plantflow.workflow.config_loader import load_workflow_config, load_workflow_config_file

logger = logging.getLogger(__name__)

migrate = Migrate()


def _load_config(app):
    min_len = app.config.get("MIN_JUSTIFICATION_LENGTH", 10)
    path = app.config.get("WORKFLOW_CONFIG_PATH")
    if path:
        logger.info("Loading workflow configuration from %s", path)
        return load_workflow_config_file(path, min_justification_length=min_len)
    return load_workflow_config(min_justification_length=min_len)


def build_engine(app, *, identity=None, clock=None) -> WorkflowEngine:
    """Assemble store, resolver, ledger, scheduler and dispatcher for ``app``."""
    workflow_config = _load_config(app)
    clock = clock or SystemClock()

    store_kind = app.config.get("WORKFLOW_STORE", "sql")
    if store_kind == "memory":
        store = InMemoryStore()
        identity = identity or StaticIdentitySource(app.config.get("WORKFLOW_STATIC_ROLES"))
    elif store_kind == "sql":
        store = SqlAlchemyStore()
        identity = identity or DbIdentitySource()
    else:
        raise RuntimeError(f"WORKFLOW_STORE must be 'sql' or 'memory', got {store_kind!r}")

    dispatcher = NotificationDispatcher()
    dispatcher.subscribe(LoggingSink())
    if app.config.get("NOTIFICATIONS_ENABLED") and store_kind == "sql":
        dispatcher.subscribe(NotificationSink(app))

    scheduler = EscalationScheduler(store, dispatcher, clock)
    engine = WorkflowEngine(
        config=workflow_config,
        store=store,
        resolver=RoleResolver(workflow_config, identity),
        ledger=AuditLedger(store, clock),
        scheduler=scheduler,
        dispatcher=dispatcher,
        clock=clock,
    )
    app.extensions["workflow_engine"] = engine
    logger.debug("Workflow engine built (store=%s, graphs=%d)", store_kind, len(workflow_config.graphs))
    return engine


def get_engine() -> WorkflowEngine:
    return current_app.extensions["workflow_engine"]


# ── CLI ──────────────────────────────────────────────────────────────────────

escalations_cli = AppGroup("escalations", help="Escalation scheduler commands.")
workflow_cli = AppGroup("workflow", help="Workflow configuration commands.")


@escalations_cli.command("sweep")
def sweep_cmd():
    """Re-arm open escalation items and fire every lapsed deadline once."""
    scheduler = get_engine().scheduler
    scheduler.restore()
    fired = scheduler.sweep()
    for event in fired:
        logger.info("Escalated %s on %s to %s (level %d)", event.action_name,
                    event.document_id, event.escalate_to_role, event.level)
    logger.info("Escalation sweep fired %d event(s).", len(fired))


@workflow_cli.command("check-config")
def check_config_cmd():
    """Validate the workflow configuration and list its graphs."""
    cfg = _load_config(current_app)
    for doc_type, graph in sorted(cfg.graphs.items()):
        logger.info("%s: %d states, %d transitions, %d gates (initial=%s, terminal=%s)",
                    doc_type, len(graph.states), len(graph.transitions), len(graph.gates),
                    graph.initial_state, ", ".join(sorted(graph.terminal_states)))
    logger.info("Workflow configuration OK: %d graphs, %d escalation templates.",
                len(cfg.graphs), len(cfg.escalation_templates))


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config[config_name]())

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    if not app.config.get("TESTING"):
        with app.app_context():
            try:
                db.create_all()
                app.logger.info("db.create_all() completed successfully")
            except Exception as e:
                app.logger.warning("db.create_all() failed: %s", e)

    # ── Workflow engine ──────────────────────────────────────────────────
    engine = build_engine(app)

    if app.config.get("ESCALATION_SWEEP_ENABLED"):
        with app.app_context():
            engine.scheduler.restore()
        engine.scheduler.start(app, interval=app.config["ESCALATION_SWEEP_INTERVAL_SECONDS"])

    # ── CLI commands ─────────────────────────────────────────────────────
    app.cli.add_command(escalations_cli)
    app.cli.add_command(workflow_cli)

    return app
