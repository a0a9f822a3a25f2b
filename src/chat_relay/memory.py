"""Conversation memory backends.

Two interchangeable backends implement :class:`SessionMemory`:

* :class:`KVSessionMemory` wraps :class:`ConversationStore`, one JSON record
  per session in an expiring key-value store, fetched and overwritten
  wholesale. Concurrent writers for the same session race; last write wins.
* :class:`StatefulSessionMemory` routes every call to the session's single
  :class:`~chat_relay.session.ChatSession`, which serialises operations per
  session and keeps state until explicitly cleared.

The orchestrator only sees the :class:`SessionMemory` interface. Backend
guarantees are exposed as the ``ttl_seconds`` and ``serialized_per_session``
attributes.
"""
from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional, Sequence

import pydantic

from .errors import ConfigError, MalformedStoredRecord
from .kv import KeyValueStore, create_kv_store
from .models import ChatMessage, ConversationMemory, truncate_messages, utc_now_iso
from .session import ChatSession, SessionNamespace

logger = logging.getLogger(__name__)

MAX_MESSAGES_IN_MEMORY = 50
MEMORY_TTL = 60 * 60 * 24 * 7  # 7 days in seconds
KEY_PREFIX = "conversation:"


# -----------------------------
# KV-backed conversation store
# -----------------------------
def decode_record(raw: str) -> ConversationMemory:
    try:
        return ConversationMemory.model_validate(json.loads(raw))
    except (ValueError, pydantic.ValidationError) as e:
        raise MalformedStoredRecord(f"Cannot decode conversation record: {e}") from e


class ConversationStore:
    """Stateless view of conversation records in a :class:`KeyValueStore`."""

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        max_messages: int = MAX_MESSAGES_IN_MEMORY,
        ttl_seconds: int = MEMORY_TTL,
        key_prefix: str = KEY_PREFIX,
    ) -> None:
        self.kv = kv
        self.max_messages = max_messages
        self.ttl_seconds = ttl_seconds
        self.key_prefix = key_prefix

    def key(self, session_id: str) -> str:
        return f"{self.key_prefix}{session_id}"

    async def get(self, session_id: str) -> Optional[ConversationMemory]:
        """Load a record. Missing, expired and malformed records all read as ``None``."""
        raw = await self.kv.get(self.key(session_id))
        if raw is None:
            return None
        try:
            return decode_record(raw)
        except MalformedStoredRecord as e:
            logger.warning("Ignoring malformed record for session %s: %s", session_id, e)
            return None

    async def save(
        self,
        session_id: str,
        messages: Sequence[ChatMessage],
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> ConversationMemory:
        """Overwrite the record with the most recent ``max_messages`` messages.

        Both timestamps are set to the write time and the expiry clock
        restarts.
        """
        now = utc_now_iso()
        memory = ConversationMemory(
            session_id=session_id,
            messages=truncate_messages(messages, self.max_messages),
            created_at=now,
            updated_at=now,
            metadata=dict(metadata) if metadata is not None else None,
        )
        await self.kv.put(self.key(session_id), json.dumps(memory.to_dict(), ensure_ascii=False), self.ttl_seconds)
        return memory

    async def delete(self, session_id: str) -> None:
        await self.kv.delete(self.key(session_id))


# -----------------------------
# Backend-agnostic interface
# -----------------------------
class SessionMemory(ABC):
    """Session memory capability used by the orchestrator."""

    name: str = ""
    #: Seconds of inactivity before a session expires, ``None`` if never.
    ttl_seconds: Optional[int] = None
    #: Whether operations on one session are totally ordered.
    serialized_per_session: bool = False

    @abstractmethod
    async def load(self, session_id: str) -> Optional[ConversationMemory]: ...

    @abstractmethod
    async def append_and_persist(
        self,
        session_id: str,
        messages: Sequence[ChatMessage],
        *,
        new_count: Optional[int] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Persist ``messages``, the full merged history for this turn.

        The last ``new_count`` entries are new in this turn (submitted turns
        plus the reply); everything before them is the loaded history, with
        the default system prompt in front if it was injected. ``None``
        means every message is new.
        """

    @abstractmethod
    async def clear(self, session_id: str) -> None: ...

    @abstractmethod
    async def merge_metadata(
        self, session_id: str, patch: Optional[Mapping[str, Any]] = None
    ) -> Dict[str, Any]: ...

    async def close(self) -> None:
        return None


class KVSessionMemory(SessionMemory):
    name = "kv"
    serialized_per_session = False

    def __init__(self, store: ConversationStore) -> None:
        self.store = store
        self.ttl_seconds = store.ttl_seconds

    async def load(self, session_id: str) -> Optional[ConversationMemory]:
        return await self.store.get(session_id)

    async def append_and_persist(
        self,
        session_id: str,
        messages: Sequence[ChatMessage],
        *,
        new_count: Optional[int] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        # Whole-record overwrite: anything written since load() is lost.
        await self.store.save(session_id, messages, metadata)

    async def clear(self, session_id: str) -> None:
        await self.store.delete(session_id)

    async def merge_metadata(
        self, session_id: str, patch: Optional[Mapping[str, Any]] = None
    ) -> Dict[str, Any]:
        memory = await self.store.get(session_id)
        current = dict(memory.metadata or {}) if memory else {}
        if not patch:
            return current
        merged = {**current, **patch}
        await self.store.save(session_id, memory.messages if memory else [], merged)
        return merged

    async def close(self) -> None:
        await self.store.kv.close()


class StatefulSessionMemory(SessionMemory):
    name = "session"
    ttl_seconds = None
    serialized_per_session = True

    def __init__(self, namespace: SessionNamespace) -> None:
        self.namespace = namespace

    async def load(self, session_id: str) -> Optional[ConversationMemory]:
        session = self.namespace.get(session_id)
        memory = await session.load()
        self._release(session)
        return memory

    async def append_and_persist(
        self,
        session_id: str,
        messages: Sequence[ChatMessage],
        *,
        new_count: Optional[int] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        # Only the new tail is appended, so turns written concurrently by
        # other requests are kept rather than overwritten.
        if new_count is None:
            new_count = len(messages)
        split = len(messages) - new_count
        head, tail = messages[:split], messages[split:]
        system = head[0] if head and head[0].role == "system" else None
        await self.namespace.get(session_id).add_messages(tail, metadata, system_prompt=system)

    async def clear(self, session_id: str) -> None:
        session = self.namespace.get(session_id)
        await session.clear()
        self._release(session)

    async def merge_metadata(
        self, session_id: str, patch: Optional[Mapping[str, Any]] = None
    ) -> Dict[str, Any]:
        session = self.namespace.get(session_id)
        metadata = await session.get_or_update_metadata(patch)
        self._release(session)
        return metadata

    def _release(self, session: ChatSession) -> None:
        # Reads of unknown ids must not leave objects behind.
        self.namespace.release(session)


def create_session_memory(cfg: Mapping[str, Any]) -> SessionMemory:
    """Build the backend named by ``cfg["memory"]["backend"]``."""
    mem_cfg = cfg.get("memory", {})
    backend = str(mem_cfg.get("backend", "kv")).lower()
    if backend == "kv":
        kv_url = (mem_cfg.get("kv") or {}).get("url", "memory://")
        store = ConversationStore(
            create_kv_store(kv_url),
            max_messages=int(mem_cfg.get("max_messages", MAX_MESSAGES_IN_MEMORY)),
            ttl_seconds=int(mem_cfg.get("ttl_seconds", MEMORY_TTL)),
            key_prefix=str(mem_cfg.get("key_prefix", KEY_PREFIX)),
        )
        return KVSessionMemory(store)
    if backend == "session":
        sess_cfg = mem_cfg.get("session") or {}
        cap = sess_cfg.get("max_messages")
        resident = sess_cfg.get("max_resident", 1024)
        namespace = SessionNamespace(
            sess_cfg.get("data_dir", "data/sessions"),
            max_messages=int(cap) if cap is not None else None,
            max_resident=int(resident) if resident is not None else None,
        )
        return StatefulSessionMemory(namespace)
    raise ConfigError(f"Unknown memory backend: {backend!r} (expected 'kv' or 'session')")
