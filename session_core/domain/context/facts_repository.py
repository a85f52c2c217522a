from typing import Dict, Any, Optional, Protocol
import asyncio


class FactsRepository(Protocol):
    """Durable store for research facts shared across processes"""

    async def save_facts(self, session_key: str, facts: Dict[str, Any]) -> None:
        ...

    async def load_facts(self, session_key: str) -> Optional[Dict[str, Any]]:
        ...


class InMemoryFactsRepository:
    """Process-local stand-in used when no database is configured"""

    def __init__(self):
        self.facts: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def save_facts(self, session_key: str, facts: Dict[str, Any]) -> None:
        async with self._lock:
            stored = self.facts.setdefault(session_key, {})
            for section, values in facts.items():
                stored.setdefault(section, {}).update(values)

    async def load_facts(self, session_key: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            facts = self.facts.get(session_key)
            return {section: dict(values) for section, values in facts.items()} if facts else None
