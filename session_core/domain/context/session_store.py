from typing import Dict, Any, List, Optional, Union
from datetime import datetime
import asyncio
import pydantic
import structlog

from session_core.domain.models.errors import SessionNotFound, StaleVersion, ValidationError
from session_core.domain.models.session_context import (
    CapabilityUsage, CompanyFacts, MultimodalEntry, PersonFacts, SessionContext, SessionPatch
)
from session_core.infrastructure.observability.logging import core_logger
from .facts_repository import FactsRepository

logger = structlog.get_logger(__name__)

PatchLike = Union[SessionPatch, Dict[str, Any]]


class SessionContextStore:
    """Merged, versioned session state.

    Updates to one session key are serialized by a per-key lock and applied as
    a whole; readers only ever see committed copies. Different keys never
    share a lock.
    """

    def __init__(self, facts_repository: Optional[FactsRepository] = None, multimodal_limit: int = 20):
        self.contexts: Dict[str, SessionContext] = {}
        self.facts_repository = facts_repository
        self.multimodal_limit = multimodal_limit
        self._key_locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, session_key: str) -> asyncio.Lock:
        # no await between lookup and insert, so one lock per key
        lock = self._key_locks.get(session_key)
        if lock is None:
            lock = asyncio.Lock()
            self._key_locks[session_key] = lock
        return lock

    @staticmethod
    def _parse_patch(patch: PatchLike) -> SessionPatch:
        if isinstance(patch, SessionPatch):
            return patch
        if not isinstance(patch, dict):
            raise ValidationError("patch must be an object")
        try:
            return SessionPatch.model_validate(patch)
        except pydantic.ValidationError as e:
            errors = [
                {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
                for err in e.errors(include_url=False)
            ]
            raise ValidationError("Malformed session patch", details={"errors": errors})

    async def get(self, session_key: str) -> SessionContext:
        """Committed context for a session"""

        context = self.contexts.get(session_key)
        if context is None:
            raise SessionNotFound(session_key)
        return context.model_copy(deep=True)

    async def get_or_none(self, session_key: str) -> Optional[SessionContext]:
        context = self.contexts.get(session_key)
        return context.model_copy(deep=True) if context else None

    async def update(self, session_key: str, patch: PatchLike) -> SessionContext:
        """Atomically apply a partial patch and bump the version"""

        return await self._apply(session_key, self._parse_patch(patch), expected_version=None)

    async def update_if_version(self, session_key: str, patch: PatchLike, expected_version: int) -> SessionContext:
        """Apply only if the stored version still equals expected_version"""

        return await self._apply(session_key, self._parse_patch(patch), expected_version=expected_version)

    async def _apply(self, session_key: str, patch: SessionPatch, expected_version: Optional[int]) -> SessionContext:
        if not session_key:
            raise ValidationError("session key is required")

        async with self._lock_for(session_key):
            current = self.contexts.get(session_key)
            actual_version = current.version if current else 0
            if expected_version is not None and expected_version != actual_version:
                raise StaleVersion(session_key, expected_version, actual_version)

            # work on a copy so a rejected patch leaves the stored value untouched
            draft = current.model_copy(deep=True) if current else SessionContext(session_key=session_key)
            self._merge(draft, patch)
            draft.version = actual_version + 1
            draft.updated_at = datetime.utcnow()
            self.contexts[session_key] = draft
            committed = draft.model_copy(deep=True)

        core_logger.log_context_update(
            session_id=session_key,
            context_type="session_context",
            action="update",
            details={
                "version": committed.version,
                "fields": sorted(patch.model_dump(exclude_unset=True, exclude_defaults=True).keys()),
            },
        )

        if patch.touches_research():
            await self._persist_facts(session_key, patch)

        return committed

    def _merge(self, draft: SessionContext, patch: SessionPatch):
        if patch.identity is not None:
            if draft.identity is not None and not patch.identity_correction:
                raise ValidationError(
                    "Identity is already set for this session; send identity_correction to change it"
                )
            draft.identity = patch.identity.model_copy()

        if patch.company_facts is not None:
            draft.company_facts = draft.company_facts.model_copy(
                update=patch.company_facts.model_dump(exclude_unset=True)
            )

        if patch.person_facts is not None:
            draft.person_facts = draft.person_facts.model_copy(
                update=patch.person_facts.model_dump(exclude_unset=True)
            )

        if patch.role is not None:
            if draft.inferred_role is None or patch.role.confidence > draft.role_confidence:
                draft.inferred_role = patch.role.role
                draft.role_confidence = patch.role.confidence

        if patch.capabilities:
            draft.capabilities_used.extend(entry.model_copy() for entry in patch.capabilities)

        if patch.multimodal:
            draft.multimodal_history.extend(entry.model_copy() for entry in patch.multimodal)
            if len(draft.multimodal_history) > self.multimodal_limit:
                draft.multimodal_history = draft.multimodal_history[-self.multimodal_limit:]

    async def _persist_facts(self, session_key: str, patch: SessionPatch):
        if self.facts_repository is None:
            return

        facts: Dict[str, Any] = {}
        if patch.company_facts is not None:
            facts["company_facts"] = patch.company_facts.model_dump(exclude_unset=True)
        if patch.person_facts is not None:
            facts["person_facts"] = patch.person_facts.model_dump(exclude_unset=True)

        try:
            await self.facts_repository.save_facts(session_key, facts)
        except Exception as e:
            logger.error("Failed to persist research facts", session_id=session_key, error=str(e))

    async def hydrate(self, session_key: str) -> Optional[SessionContext]:
        """Load persisted research facts into a context that has none yet"""

        existing = self.contexts.get(session_key)
        if self.facts_repository is None or (existing is not None and existing.has_research()):
            return await self.get_or_none(session_key)

        try:
            facts = await self.facts_repository.load_facts(session_key)
        except Exception as e:
            logger.error("Failed to load research facts", session_id=session_key, error=str(e))
            return await self.get_or_none(session_key)

        if not facts:
            return await self.get_or_none(session_key)

        patch: Dict[str, Any] = {}
        if facts.get("company_facts"):
            patch["company_facts"] = CompanyFacts(**facts["company_facts"])
        if facts.get("person_facts"):
            patch["person_facts"] = PersonFacts(**facts["person_facts"])
        if not patch:
            return await self.get_or_none(session_key)

        async with self._lock_for(session_key):
            current = self.contexts.get(session_key)
            if current is not None and current.has_research():
                return current.model_copy(deep=True)
            draft = current.model_copy(deep=True) if current else SessionContext(session_key=session_key)
            self._merge(draft, SessionPatch(**patch))
            draft.version = (current.version if current else 0) + 1
            draft.updated_at = datetime.utcnow()
            self.contexts[session_key] = draft
            logger.info("Hydrated research facts", session_id=session_key, version=draft.version)
            return draft.model_copy(deep=True)

    async def record_capability(
        self,
        session_key: str,
        capability: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> SessionContext:
        """Append one capability usage entry"""

        return await self.update(
            session_key,
            SessionPatch(capabilities=[CapabilityUsage(capability=capability, metadata=metadata or {})])
        )

    async def add_multimodal(self, session_key: str, entry: MultimodalEntry) -> SessionContext:
        return await self.update(session_key, SessionPatch(multimodal=[entry]))

    async def capabilities(self, session_key: str, last_n: Optional[int] = None) -> List[CapabilityUsage]:
        """Capability log, optionally only the last N entries"""

        context = await self.get(session_key)
        entries = context.capabilities_used
        if last_n is not None:
            if last_n < 0:
                raise ValidationError("last_n must not be negative")
            entries = entries[-last_n:] if last_n else []
        return entries

    def stats(self) -> Dict[str, Any]:
        return {
            "sessions": len(self.contexts),
            "max_version": max((c.version for c in self.contexts.values()), default=0),
        }
