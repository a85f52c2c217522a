from typing import Any, Dict, List, Optional
from dataclasses import dataclass
from fastapi import Header, Request
from pydantic import BaseModel, ConfigDict, Field

from session_core.application.container import CoreServices
from session_core.domain.models.errors import ValidationError
from session_core.domain.models.turn_state import ChatMessage, DoneFrame, ErrorFrame, StreamFrame


class TurnBody(BaseModel):
    """Body of POST /api/v1/turn"""
    model_config = ConfigDict(extra="forbid")

    message: str = Field(min_length=1)
    feature_mode: str = Field(default="chat", min_length=1)
    history: List[ChatMessage] = Field(default_factory=list)


class HealthResponse(BaseModel):
    status: str
    service: str
    sessions: int
    pending_write_backs: int
    timestamp: str


@dataclass(frozen=True)
class RequestKeys:
    """Session and idempotency keys sent as headers"""
    session_key: Optional[str]
    idempotency_key: Optional[str]

    def require_session(self) -> str:
        if not self.session_key:
            raise ValidationError("X-Session-Id header is required")
        return self.session_key


async def get_request_keys(
    x_session_id: Optional[str] = Header(default=None),
    x_idempotency_key: Optional[str] = Header(default=None),
) -> RequestKeys:
    """Parse session and idempotency headers for every route"""
    return RequestKeys(
        session_key=(x_session_id or "").strip() or None,
        idempotency_key=(x_idempotency_key or "").strip() or None,
    )


def get_services(request: Request) -> CoreServices:
    return request.app.state.services


def encode_frame(frame: StreamFrame) -> str:
    """Server-sent event for one turn frame"""

    data = frame.model_dump_json()
    if isinstance(frame, DoneFrame):
        return f"event: end\ndata: {data}\n\n"
    if isinstance(frame, ErrorFrame):
        return f"event: error\ndata: {data}\n\n"
    return f"data: {data}\n\n"


def error_body(error: Exception, code: str, message: Optional[str] = None) -> Dict[str, Any]:
    return {"ok": False, "error_code": code, "error": message or str(error)}
