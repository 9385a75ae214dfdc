"""
Document, audit and escalation persistence.

The engine talks to storage only through ``DocumentStore``.  Two
implementations ship:

  * InMemoryStore   - thread-safe dicts, used by tests and by
                      ``WORKFLOW_STORE=memory``.
  * SqlAlchemyStore - Flask-SQLAlchemy session; must be used inside an app
                      context.

Both honour the same contract:

  * ``save_document(doc, expected_version)`` fails with
    ConcurrentModification when the stored version differs, and returns the
    document with its new version.
  * ``unit_of_work()`` groups writes so a state change and its audit entry
    become visible together or not at all.  Writes outside a unit of work are
    committed immediately.  Nested units join the outer one.
  * Audit entries are append-only; (document_id, sequence) is unique.
"""

from __future__ import annotations

import copy
import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from plantflow.core.exceptions import ConcurrentModification, ConflictError, NotFoundError
from plantflow.workflow.types import AuditEntry, Document, EscalationItem, EscalationStatus

logger = logging.getLogger(__name__)

_OPEN_STATUSES = tuple(s.value for s in EscalationStatus if s.is_open)


class DocumentStore(ABC):
    """Persistence seam used by the engine, the ledger and the scheduler."""

    # ── Documents ────────────────────────────────────────────────────────

    @abstractmethod
    def load_document(self, document_id: str) -> Document:
        """Return a fresh copy of the document or raise NotFoundError."""

    @abstractmethod
    def insert_document(self, document: Document) -> Document:
        """Persist a new document; the returned copy carries version 1."""

    @abstractmethod
    def save_document(self, document: Document, expected_version: int) -> Document:
        """Compare-and-swap on ``version``."""

    # ── Audit ────────────────────────────────────────────────────────────

    @abstractmethod
    def append_audit_entry(self, entry: AuditEntry) -> AuditEntry:
        ...

    @abstractmethod
    def query_audit_trail(self, document_id: str) -> list[AuditEntry]:
        """Entries for a document in append order."""

    @abstractmethod
    def last_audit_sequence(self, document_id: str) -> int:
        ...

    # ── Escalation items ─────────────────────────────────────────────────

    @abstractmethod
    def save_escalation_item(self, item: EscalationItem) -> EscalationItem:
        ...

    @abstractmethod
    def load_escalation_item(self, item_id: str) -> EscalationItem:
        ...

    @abstractmethod
    def escalation_items_for(self, document_id: str) -> list[EscalationItem]:
        ...

    @abstractmethod
    def load_open_escalation_items(self) -> list[EscalationItem]:
        """Every non-archived item still pending, in progress or escalated."""

    # ── Transactions ─────────────────────────────────────────────────────

    @abstractmethod
    def unit_of_work(self):
        ...


# ═════════════════════════════════════════════════════════════════════════════
# In-memory
# ═════════════════════════════════════════════════════════════════════════════


class InMemoryStore(DocumentStore):
    """Dict-backed store.

    A unit of work holds the store lock for its duration and keeps an undo
    journal; any exception replays the journal backwards.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._documents: dict[str, Document] = {}
        self._audit: dict[str, list[AuditEntry]] = defaultdict(list)
        self._escalations: dict[str, EscalationItem] = {}
        self._local = threading.local()

    def _record_undo(self, undo) -> None:
        journal = getattr(self._local, "journal", None)
        if journal is not None:
            journal.append(undo)

    @contextmanager
    def unit_of_work(self) -> Iterator[None]:
        with self._lock:
            if getattr(self._local, "journal", None) is not None:
                yield
                return
            self._local.journal = []
            try:
                yield
            except BaseException:
                for undo in reversed(self._local.journal):
                    undo()
                raise
            finally:
                self._local.journal = None

    # ── Documents ────────────────────────────────────────────────────────

    def load_document(self, document_id: str) -> Document:
        with self._lock:
            doc = self._documents.get(document_id)
            if doc is None:
                raise NotFoundError("Document", document_id)
            return copy.deepcopy(doc)

    def insert_document(self, document: Document) -> Document:
        with self._lock:
            if document.id in self._documents:
                raise ConflictError("Document", "id", document.id)
            stored = copy.deepcopy(document)
            stored.version = 1
            self._documents[stored.id] = stored
            self._record_undo(lambda: self._documents.pop(stored.id, None))
            return copy.deepcopy(stored)

    def save_document(self, document: Document, expected_version: int) -> Document:
        with self._lock:
            current = self._documents.get(document.id)
            if current is None:
                raise NotFoundError("Document", document.id)
            if current.version != expected_version:
                raise ConcurrentModification(document.id, expected_version, current.version)
            stored = copy.deepcopy(document)
            stored.version = current.version + 1
            self._documents[stored.id] = stored
            self._record_undo(lambda: self._documents.__setitem__(current.id, current))
            return copy.deepcopy(stored)

    # ── Audit ────────────────────────────────────────────────────────────

    def append_audit_entry(self, entry: AuditEntry) -> AuditEntry:
        with self._lock:
            trail = self._audit[entry.document_id]
            if entry.sequence != len(trail) + 1:
                raise ConflictError("AuditEntry", "sequence", entry.sequence)
            trail.append(entry)
            self._record_undo(trail.pop)
            return entry

    def query_audit_trail(self, document_id: str) -> list[AuditEntry]:
        with self._lock:
            return list(self._audit.get(document_id, ()))

    def last_audit_sequence(self, document_id: str) -> int:
        with self._lock:
            return len(self._audit.get(document_id, ()))

    # ── Escalation items ─────────────────────────────────────────────────

    def save_escalation_item(self, item: EscalationItem) -> EscalationItem:
        with self._lock:
            previous = self._escalations.get(item.id)
            self._escalations[item.id] = copy.deepcopy(item)
            if previous is None:
                self._record_undo(lambda: self._escalations.pop(item.id, None))
            else:
                self._record_undo(lambda: self._escalations.__setitem__(item.id, previous))
            return item

    def load_escalation_item(self, item_id: str) -> EscalationItem:
        with self._lock:
            item = self._escalations.get(item_id)
            if item is None:
                raise NotFoundError("EscalationItem", item_id)
            return copy.deepcopy(item)

    def escalation_items_for(self, document_id: str) -> list[EscalationItem]:
        with self._lock:
            return [copy.deepcopy(i) for i in self._escalations.values()
                    if i.document_id == document_id]

    def load_open_escalation_items(self) -> list[EscalationItem]:
        with self._lock:
            return [copy.deepcopy(i) for i in self._escalations.values()
                    if EscalationStatus(i.status).is_open and not i.archived]


# ═════════════════════════════════════════════════════════════════════════════
# SQLAlchemy
# ═════════════════════════════════════════════════════════════════════════════


class SqlAlchemyStore(DocumentStore):
    """Store backed by the Flask-SQLAlchemy session of the current app context."""

    def __init__(self) -> None:
        self._local = threading.local()

    @property
    def _session(self):
        from plantflow.models import db
        return db.session

    @property
    def _depth(self) -> int:
        return getattr(self._local, "depth", 0)

    def _commit(self, document_id: str | None = None, expected_version: int | None = None) -> None:
        """Flush, and commit unless a unit of work is open."""
        try:
            if self._depth:
                self._session.flush()
            else:
                self._session.commit()
        except StaleDataError as exc:
            self._session.rollback()
            raise ConcurrentModification(document_id, expected_version, None) from exc
        except IntegrityError as exc:
            self._session.rollback()
            raise ConflictError("AuditEntry", "sequence", str(exc.orig)) from exc

    @contextmanager
    def unit_of_work(self) -> Iterator[None]:
        if self._depth:
            self._local.depth += 1
            try:
                yield
            finally:
                self._local.depth -= 1
            return

        self._local.depth = 1
        self._local.pending = (None, None)
        try:
            yield
            self._local.depth = 0
            self._commit(*self._local.pending)
        except BaseException:
            self._session.rollback()
            raise
        finally:
            self._local.depth = 0

    # ── Documents ────────────────────────────────────────────────────────

    def _get_row(self, document_id: str):
        from plantflow.models.document import WorkflowDocument

        row = self._session.get(WorkflowDocument, document_id, populate_existing=True)
        if row is None:
            raise NotFoundError("Document", document_id)
        return row

    def load_document(self, document_id: str) -> Document:
        return self._get_row(document_id).to_domain()

    def insert_document(self, document: Document) -> Document:
        from plantflow.models.document import WorkflowDocument

        if self._session.get(WorkflowDocument, document.id) is not None:
            raise ConflictError("Document", "id", document.id)
        row = WorkflowDocument.from_domain(document)
        self._session.add(row)
        self._commit()
        return row.to_domain()

    def save_document(self, document: Document, expected_version: int) -> Document:
        row = self._get_row(document.id)
        if row.version != expected_version:
            raise ConcurrentModification(document.id, expected_version, row.version)
        row.apply(document)
        if self._depth:
            self._local.pending = (document.id, expected_version)
        self._commit(document.id, expected_version)
        return row.to_domain()

    # ── Audit ────────────────────────────────────────────────────────────

    def append_audit_entry(self, entry: AuditEntry) -> AuditEntry:
        from plantflow.models.audit import AuditEntryRecord

        self._session.add(AuditEntryRecord.from_domain(entry))
        self._commit()
        return entry

    def query_audit_trail(self, document_id: str) -> list[AuditEntry]:
        from plantflow.models.audit import AuditEntryRecord

        rows = (
            AuditEntryRecord.query
            .filter_by(document_id=document_id)
            .order_by(AuditEntryRecord.sequence.asc())
            .all()
        )
        return [r.to_domain() for r in rows]

    def last_audit_sequence(self, document_id: str) -> int:
        from plantflow.models.audit import AuditEntryRecord

        value = (
            self._session.query(func.max(AuditEntryRecord.sequence))
            .filter(AuditEntryRecord.document_id == document_id)
            .scalar()
        )
        return value or 0

    # ── Escalation items ─────────────────────────────────────────────────

    def save_escalation_item(self, item: EscalationItem) -> EscalationItem:
        from plantflow.models.escalation import EscalationItemRecord

        row = self._session.get(EscalationItemRecord, item.id)
        if row is None:
            row = EscalationItemRecord(id=item.id)
            self._session.add(row)
        row.apply(item)
        self._commit()
        return item

    def load_escalation_item(self, item_id: str) -> EscalationItem:
        from plantflow.models.escalation import EscalationItemRecord

        row = self._session.get(EscalationItemRecord, item_id, populate_existing=True)
        if row is None:
            raise NotFoundError("EscalationItem", item_id)
        return row.to_domain()

    def escalation_items_for(self, document_id: str) -> list[EscalationItem]:
        from plantflow.models.escalation import EscalationItemRecord

        rows = (
            EscalationItemRecord.query
            .filter_by(document_id=document_id)
            .order_by(EscalationItemRecord.created_at.asc())
            .all()
        )
        return [r.to_domain() for r in rows]

    def load_open_escalation_items(self) -> list[EscalationItem]:
        from plantflow.models.escalation import EscalationItemRecord

        rows = (
            EscalationItemRecord.query
            .filter(
                EscalationItemRecord.status.in_(_OPEN_STATUSES),
                EscalationItemRecord.archived.is_(False),
            )
            .all()
        )
        return [r.to_domain() for r in rows]
