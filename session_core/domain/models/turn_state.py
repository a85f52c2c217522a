from typing import Dict, Any, List, Optional, Literal, Union
from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum


class TurnStatus(str, Enum):
    """Turn execution status"""
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TurnStatus.COMPLETED, TurnStatus.FAILED, TurnStatus.CANCELLED)


class ChatMessage(BaseModel):
    """Prior message supplied by the caller"""
    role: Literal["user", "assistant"]
    content: str


class TurnRequest(BaseModel):
    """One conversational turn for a session"""
    session_key: str = Field(min_length=1)
    message: str = Field(min_length=1)
    feature_mode: str = Field(default="chat", min_length=1)
    history: List[ChatMessage] = Field(default_factory=list)


class Usage(BaseModel):
    """Final usage figure reported by the provider"""
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class TextFrame(BaseModel):
    """Incremental output forwarded to the caller"""
    type: Literal["text"] = "text"
    seq: int
    content: str


class DoneFrame(BaseModel):
    """Clean end of a turn"""
    type: Literal["done"] = "done"
    seq: int
    model: str
    usage: Usage
    cost: float
    finished_at: datetime = Field(default_factory=datetime.utcnow)


class ErrorFrame(BaseModel):
    """Final frame of a turn that died mid-stream"""
    type: Literal["error"] = "error"
    seq: int
    error_code: str
    message: str
    partial: bool = Field(description="Whether text frames were delivered before the failure")


StreamFrame = Union[TextFrame, DoneFrame, ErrorFrame]


class TurnRecord(BaseModel):
    """Bookkeeping for a single turn, exposed for logs and tests"""
    session_key: str
    feature_mode: str
    status: TurnStatus = TurnStatus.PENDING
    model: Optional[str] = None
    estimated_tokens: int = 0
    estimated_cost: float = 0.0
    frames_sent: int = 0
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None

    def transition(self, status: TurnStatus):
        """Move to a new status"""
        self.status = status
        if status.is_terminal:
            self.finished_at = datetime.utcnow()

    def get_state_summary(self) -> Dict[str, Any]:
        return {
            "session_key": self.session_key,
            "feature_mode": self.feature_mode,
            "status": self.status.value,
            "model": self.model,
            "frames_sent": self.frames_sent,
            "error": self.error,
        }
