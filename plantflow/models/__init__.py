"""
Plantflow persistence models.

Single SQLAlchemy instance shared by every model module; import ``db`` from
here, never instantiate another one.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

from plantflow.models.actor import ActorRole  # noqa: E402,F401
from plantflow.models.audit import AuditEntryRecord  # noqa: E402,F401
from plantflow.models.document import WorkflowDocument  # noqa: E402,F401
from plantflow.models.escalation import EscalationItemRecord  # noqa: E402,F401
from plantflow.models.notification import Notification  # noqa: E402,F401
