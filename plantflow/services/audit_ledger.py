"""
Audit Ledger.

Append-only record of every state change and every denied attempt.  The
ledger owns sequence numbering: appends for one document are serialized, so
``query_by_document`` always returns entries in the order they happened.

There is no update or delete path.

Usage:
    ledger = AuditLedger(store)
    ledger.record(document_id=doc.id, actor_id="u-1", action=AuditAction.DENIAL,
                  from_state="draft", to_state="approved", reason="forbidden")
    ledger.query_by_document(doc.id)
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import replace

from plantflow.core.clock import SystemClock
from plantflow.core.concurrency import KeyedLocks
from plantflow.services.store import DocumentStore
from plantflow.workflow.types import AuditAction, AuditEntry

logger = logging.getLogger(__name__)


class AuditLedger:
    def __init__(self, store: DocumentStore, clock=None):
        self.store = store
        self.clock = clock or SystemClock()
        self._locks = KeyedLocks()

    def append(self, entry: AuditEntry) -> AuditEntry:
        """Persist ``entry`` with the next sequence number for its document.

        Lock order is store unit of work, then document key, the same order
        the engine takes when it records inside its own unit of work.
        """
        with self.store.unit_of_work(), self._locks.hold(entry.document_id):
            seq = self.store.last_audit_sequence(entry.document_id) + 1
            stored = replace(entry, sequence=seq, id=entry.id or str(uuid.uuid4()))
            self.store.append_audit_entry(stored)
        logger.debug(
            "Audit %s #%d %s -> %s by %s", AuditAction(stored.action).value, seq,
            stored.from_state, stored.to_state, stored.actor_id,
            extra={"document_id": stored.document_id, "actor_id": stored.actor_id},
        )
        return stored

    def record(
        self,
        *,
        document_id: str,
        actor_id: str,
        action: AuditAction,
        from_state: str | None = None,
        to_state: str | None = None,
        reason: str | None = None,
        snapshot: dict | None = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            id=str(uuid.uuid4()),
            document_id=document_id,
            actor_id=actor_id,
            action=AuditAction(action),
            from_state=from_state,
            to_state=to_state,
            reason=reason,
            timestamp=self.clock.now(),
            snapshot=snapshot or {},
        )
        return self.append(entry)

    def query_by_document(self, document_id: str) -> list[AuditEntry]:
        return self.store.query_audit_trail(document_id)

    def denials_for(self, document_id: str) -> list[AuditEntry]:
        return [e for e in self.query_by_document(document_id) if e.action == AuditAction.DENIAL]
