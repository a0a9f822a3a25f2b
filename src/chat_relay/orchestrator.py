"""Per-request conversation handling on top of a :class:`SessionMemory` backend."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .errors import ChatRelayError, UpstreamInferenceError, ValidationError
from .identity import generate_session_id
from .inference import InferenceClient
from .memory import SessionMemory
from .models import ChatMessage, has_system_message

logger = logging.getLogger(__name__)

CHAT_FAILED = "Failed to process request"
GET_FAILED = "Failed to get memory"
DELETE_FAILED = "Failed to delete memory"
METADATA_FAILED = "Failed to update metadata"
SESSION_REQUIRED = "Session ID required"


@dataclass
class ChatResult:
    response: str
    session_id: str
    is_new_session: bool = False

    def to_dict(self) -> Dict[str, str]:
        return {"response": self.response, "sessionId": self.session_id}


def merge_history(
    stored: Optional[Sequence[ChatMessage]],
    submitted: Sequence[ChatMessage],
) -> List[ChatMessage]:
    """Combine stored history with the messages submitted in this request.

    With stored history, only submitted user/assistant turns are appended;
    submitted system messages are dropped. Without it, the submitted
    messages are used as given.
    """
    if stored is None:
        return list(submitted)
    merged = list(stored)
    merged.extend(m for m in submitted if m.role in ("user", "assistant"))
    return merged


def ensure_system_prompt(messages: Sequence[ChatMessage], system_prompt: str) -> List[ChatMessage]:
    if has_system_message(messages):
        return list(messages)
    return [ChatMessage(role="system", content=system_prompt), *messages]


def _require_session(session_id: Optional[str]) -> str:
    if not session_id:
        raise ValidationError(SESSION_REQUIRED)
    return session_id


class MemoryOrchestrator:
    """Resolves the session, merges history, calls inference and persists the turn."""

    def __init__(
        self,
        memory: SessionMemory,
        inference: InferenceClient,
        *,
        system_prompt: str,
        fallback_reply: str,
        max_tokens: int = 1024,
    ) -> None:
        self.memory = memory
        self.inference = inference
        self.system_prompt = system_prompt
        self.fallback_reply = fallback_reply
        self.max_tokens = max_tokens

    async def handle_chat(
        self,
        session_id: Optional[str],
        messages: Sequence[ChatMessage],
        *,
        user_agent: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> ChatResult:
        is_new = not session_id
        if not session_id:
            session_id = generate_session_id()

        try:
            stored = None if is_new else await self.memory.load(session_id)
            prior = list(stored.messages) if stored is not None else None
            merged_history = merge_history(prior, messages)
            new_count = len(merged_history) - (len(prior) if prior is not None else 0) + 1
            merged = ensure_system_prompt(merged_history, self.system_prompt)

            reply = await self._infer(session_id, merged)
            merged.append(ChatMessage(role="assistant", content=reply))

            metadata = {k: v for k, v in (("userAgent", user_agent), ("ip", ip)) if v}
            await self.memory.append_and_persist(
                session_id,
                merged,
                new_count=new_count,
                metadata=metadata or None,
            )
        except Exception as e:
            logger.exception("Error processing chat request for session %s", session_id)
            raise ChatRelayError(CHAT_FAILED, 500) from e

        logger.info(
            "chat session=%s new=%s history=%d reply_len=%d",
            session_id, is_new, len(merged), len(reply),
        )
        return ChatResult(response=reply, session_id=session_id, is_new_session=is_new)

    async def _infer(self, session_id: str, messages: Sequence[ChatMessage]) -> str:
        try:
            reply = await self.inference.complete(messages, self.max_tokens)
            if not reply or not reply.strip():
                raise UpstreamInferenceError("Inference returned an empty reply")
            return reply
        except UpstreamInferenceError as e:
            logger.warning("Inference failed for session %s, using fallback reply: %s", session_id, e)
            return self.fallback_reply

    async def get_memory(self, session_id: Optional[str]) -> Dict[str, Any]:
        session_id = _require_session(session_id)
        try:
            memory = await self.memory.load(session_id)
        except Exception as e:
            logger.exception("Error getting memory for session %s", session_id)
            raise ChatRelayError(GET_FAILED, 500) from e
        return memory.to_dict() if memory is not None else {"messages": []}

    async def clear_memory(self, session_id: Optional[str]) -> Dict[str, bool]:
        session_id = _require_session(session_id)
        try:
            await self.memory.clear(session_id)
        except Exception as e:
            logger.exception("Error deleting memory for session %s", session_id)
            raise ChatRelayError(DELETE_FAILED, 500) from e
        return {"success": True}

    async def metadata(
        self, session_id: Optional[str], patch: Optional[Mapping[str, Any]] = None
    ) -> Dict[str, Any]:
        session_id = _require_session(session_id)
        try:
            merged = await self.memory.merge_metadata(session_id, patch)
        except Exception as e:
            logger.exception("Error updating metadata for session %s", session_id)
            raise ChatRelayError(METADATA_FAILED, 500) from e
        return {"metadata": merged}
