"""
Role & Permission Resolver.

Maps an actor to the capability flags it holds for a document type, using the
role → capability matrix from the workflow configuration.  The engine only
depends on ``RoleResolver.resolve``; where roles come from is the
IdentitySource's business.

Fail closed: unknown actors, and identity lookups that blow up, resolve to an
empty CapabilitySet.  resolve() never raises.

Usage:
    from plantflow.services.permission import RoleResolver, StaticIdentitySource

    resolver = RoleResolver(cfg, StaticIdentitySource({"u-1": ["ceo"]}))
    caps = resolver.resolve("u-1", "quote")
    caps.satisfies(edge.requires)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from plantflow.workflow.types import CapabilitySet, Document, WorkflowConfig

logger = logging.getLogger(__name__)

CREATOR_FLAG = "is_creator"


@dataclass(frozen=True)
class Actor:
    id: str
    assigned_roles: tuple = field(default_factory=tuple)


class IdentitySource(ABC):
    """Seam to the external identity / authorization collaborator."""

    @abstractmethod
    def lookup_actor(self, actor_id: str) -> Actor | None:
        """Return the actor with its roles, or None when unknown."""


class StaticIdentitySource(IdentitySource):
    """Identity source backed by a plain ``{actor_id: [roles]}`` mapping."""

    def __init__(self, roles_by_actor: dict[str, list[str]] | None = None):
        self._roles = {k: tuple(v) for k, v in (roles_by_actor or {}).items()}

    def lookup_actor(self, actor_id: str) -> Actor | None:
        roles = self._roles.get(actor_id)
        if roles is None:
            return None
        return Actor(id=actor_id, assigned_roles=roles)


class DbIdentitySource(IdentitySource):
    """Identity source reading ActorRole rows (requires an app context)."""

    def lookup_actor(self, actor_id: str) -> Actor | None:
        from plantflow.models.actor import ActorRole

        rows = ActorRole.query.filter_by(actor_id=actor_id, is_active=True).all()
        if not rows:
            return None
        return Actor(id=actor_id, assigned_roles=tuple(r.role for r in rows))


class RoleResolver:
    """Pure lookup from (actor, document type) to capabilities."""

    def __init__(self, config: WorkflowConfig, identity: IdentitySource):
        self.config = config
        self.identity = identity

    def roles_of(self, actor_id: str) -> tuple:
        if not actor_id:
            return ()
        try:
            actor = self.identity.lookup_actor(actor_id)
        except Exception:
            logger.warning("Identity lookup failed for actor %s; resolving to no capabilities",
                           actor_id, exc_info=True, extra={"actor_id": actor_id})
            return ()
        if actor is None:
            return ()
        return tuple(actor.assigned_roles)

    def resolve(
        self,
        actor_id: str,
        document_type: str,
        document: Document | None = None,
    ) -> CapabilitySet:
        """Union of capabilities granted by every role the actor holds.

        Per-document-type overrides are merged over the global matrix.  When
        ``document`` is given and the actor created it, the ``is_creator``
        flag is added.
        """
        caps: set[str] = set()
        overrides = self.config.document_role_capabilities.get(document_type, {})
        for role in self.roles_of(actor_id):
            caps.update(self.config.role_capabilities.get(role, frozenset()))
            caps.update(overrides.get(role, frozenset()))

        if document is not None and actor_id and document.created_by == actor_id:
            caps.add(CREATOR_FLAG)
        return CapabilitySet(frozenset(caps))
