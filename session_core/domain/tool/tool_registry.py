from typing import Dict, List, Any, Optional, Callable, Awaitable, Type
from dataclasses import dataclass, field
from pydantic import BaseModel

from session_core.domain.models.session_context import SessionContext, SessionPatch
from session_core.domain.models.turn_state import Usage
from session_core.domain.budget.model_selector import ModelChoice


@dataclass
class ToolCall:
    """Validated call handed to a tool handler"""
    tool_name: str
    session_key: Optional[str]
    payload: BaseModel
    context: Optional[SessionContext] = None
    model: Optional[ModelChoice] = None


@dataclass
class ToolOutput:
    output: Dict[str, Any]
    patch: Optional[SessionPatch] = None
    usage: Optional[Usage] = None


ToolHandler = Callable[[ToolCall], Awaitable[ToolOutput]]


@dataclass
class ToolSpec:
    """A tool plus the cross-cutting policy applied by the gateway"""
    name: str
    description: str
    category: str
    payload_model: Type[BaseModel]
    handler: ToolHandler
    capability: str
    max_calls: int = 10
    window_ms: int = 60_000
    idempotency_ttl_ms: int = 300_000
    feature: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def describe(self) -> Dict[str, Any]:
        return {
            "id": self.name,
            "description": self.description,
            "category": self.category,
            "capability": self.capability,
            "rate_limit": {"max_calls": self.max_calls, "window_ms": self.window_ms},
            "idempotency_ttl_ms": self.idempotency_ttl_ms,
            "budgeted": self.feature is not None,
            "parameters": self.payload_model.model_json_schema(),
        }


class ToolRegistry:
    """Registry for managing available tools"""

    def __init__(self):
        self.tools: Dict[str, ToolSpec] = {}
        self.tool_categories: Dict[str, List[str]] = {}

    def register_tool(self, spec: ToolSpec):
        """Register a new tool"""

        self.tools[spec.name] = spec

        if spec.category not in self.tool_categories:
            self.tool_categories[spec.category] = []
        if spec.name not in self.tool_categories[spec.category]:
            self.tool_categories[spec.category].append(spec.name)

    def get_tool(self, tool_name: str) -> Optional[ToolSpec]:
        return self.tools.get(tool_name)

    def get_available_tools(self) -> List[Dict[str, Any]]:
        """Get all available tools"""

        return [spec.describe() for spec in self.tools.values()]

    def get_tools_by_category(self, category: str) -> List[Dict[str, Any]]:
        """Get tools by category"""

        tool_names = self.tool_categories.get(category, [])
        return [self.tools[name].describe() for name in tool_names if name in self.tools]
