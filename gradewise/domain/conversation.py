"""Domain models for assistant conversations and turns."""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid
from pydantic import BaseModel, Field

DEFAULT_TITLE = "New Conversation"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ToolCall(BaseModel):
    """Structured tool invocation emitted by the model."""
    name: str
    args: Dict[str, Any] = Field(default_factory=dict)


class ChatMessage(BaseModel):
    """Chat message in a conversation."""
    role: str = Field(pattern="^(user|assistant)$")
    content: str
    tool_calls: List[ToolCall] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=_now)


class Conversation(BaseModel):
    """A teacher's conversation with the assistant.

    Messages are only ever appended; the title is the one field assigned
    after creation.
    """
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    tenant_id: str
    title: str = DEFAULT_TITLE
    messages: List[ChatMessage] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    deleted: bool = False


class ClassInfo(BaseModel):
    """A class the teacher can target with tools (id plus display name)."""
    id: str
    name: str


class TurnState(str, Enum):
    """Lifecycle of one assistant turn."""
    IDLE = "idle"
    RETRIEVING = "retrieving"
    GENERATING = "generating"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


class TurnOutcome(BaseModel):
    """Serializable summary of a finished turn, returned by the API."""
    state: TurnState
    response: str = ""
    tool_calls: List[ToolCall] = Field(default_factory=list)
    error: Optional[str] = None
