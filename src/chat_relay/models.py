"""Conversation data model shared by both memory backends."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["system", "user", "assistant"]


class ChatMessage(BaseModel):
    """A single role-tagged message. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str


class ConversationMemory(BaseModel):
    """One session's full history as persisted by a backend."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId")
    messages: List[ChatMessage] = Field(default_factory=list)
    created_at: str = Field(..., alias="createdAt")
    updated_at: str = Field(..., alias="updatedAt")
    # userAgent / ip plus any extra keys
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def utc_now_iso() -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a ``Z`` suffix."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def has_system_message(messages: Sequence[ChatMessage]) -> bool:
    return any(m.role == "system" for m in messages)


def truncate_messages(messages: Sequence[ChatMessage], cap: Optional[int]) -> List[ChatMessage]:
    """Keep the most recent ``cap`` messages.

    This is a plain suffix keep: a leading system message is dropped like any
    other once the history is over the cap. The orchestrator re-injects the
    default prompt on the next turn.
    """
    if cap is None or len(messages) <= cap:
        return list(messages)
    if cap <= 0:
        return []
    return list(messages[-cap:])
