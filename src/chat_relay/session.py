"""Stateful per-session conversation objects with durable, disk-backed state.

Each session id maps to exactly one resident :class:`ChatSession`. All of its
operations run under the session's own lock, so two mutations of the same
session never interleave, while different sessions proceed independently.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import os
import re
import tempfile
from abc import ABC, abstractmethod
from collections import OrderedDict
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

import pydantic

from .errors import PersistenceError
from .models import (
    ChatMessage,
    ConversationMemory,
    has_system_message,
    truncate_messages,
    utc_now_iso,
)

STATE_KEY = "memory"


# -----------------------------
# Helpers
# -----------------------------
def _session_dir_name(session_id: str) -> str:
    # Ids come from clients; hashing keeps distinct ids in distinct directories.
    return hashlib.sha256(session_id.encode("utf-8")).hexdigest()


def _safe_name(name: str) -> str:
    # Keep it readable but filesystem-safe.
    s = re.sub(r"[^\w.\-@]+", "_", name.strip() or "default")
    return s[:128]


def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, dir=str(path.parent)) as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    os.replace(tmp_name, path)


# -----------------------------
# Durable per-session storage
# -----------------------------
class SessionStorage(ABC):
    """Isolated key/value storage scoped to one session."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    async def put(self, key: str, value: Mapping[str, Any]) -> None: ...


class DiskSessionStorage(SessionStorage):
    """One directory per session, one JSON file per key.

    Layout:
        root/
          <sha256 of session id>/
            memory.json
    """

    def __init__(self, root: str | Path, session_id: str) -> None:
        self.dir = Path(root) / _session_dir_name(session_id)

    def _path(self, key: str) -> Path:
        return self.dir / f"{_safe_name(key)}.json"

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._read, self._path(key))

    async def put(self, key: str, value: Mapping[str, Any]) -> None:
        text = json.dumps(value, ensure_ascii=False, indent=2)
        try:
            await asyncio.to_thread(_atomic_write_text, self._path(key), text)
        except OSError as e:
            raise PersistenceError(f"Failed to write session state to {self.dir}: {e}") from e

    @staticmethod
    def _read(path: Path) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as f:
                return json.load(f)
        except json.JSONDecodeError as e:
            raise PersistenceError(f"Corrupt session state at {path}: {e}") from e
        except OSError as e:
            raise PersistenceError(f"Failed to read session state at {path}: {e}") from e


# -----------------------------
# ChatSession
# -----------------------------
class ChatSession:
    """Authoritative in-memory state for one session.

    State is loaded from storage on first use and written back in full after
    every mutation, before the call returns. ``max_messages`` caps the
    history (suffix keep); ``None`` leaves it unbounded.
    """

    def __init__(
        self,
        session_id: str,
        storage: SessionStorage,
        *,
        max_messages: Optional[int] = None,
    ) -> None:
        self.session_id = session_id
        self.storage = storage
        self.max_messages = max_messages
        self.messages: List[ChatMessage] = []
        self.metadata: Dict[str, Any] = {}
        self.created_at = utc_now_iso()
        self.updated_at = self.created_at
        self.persisted = False
        self._loaded = False
        self._lock = asyncio.Lock()
        self._pending = 0

    @property
    def busy(self) -> bool:
        """True while any operation is running or waiting for the lock."""
        return self._pending > 0

    @asynccontextmanager
    async def _exclusive(self):
        self._pending += 1
        try:
            async with self._lock:
                yield
        finally:
            self._pending -= 1

    # --------- core API ----------
    async def list_messages(self) -> Dict[str, Any]:
        async with self._exclusive():
            await self._ensure_loaded()
            return self._snapshot()

    async def load(self) -> Optional[ConversationMemory]:
        """Return the stored memory, or ``None`` if nothing was ever persisted."""
        async with self._exclusive():
            await self._ensure_loaded()
            if not self.persisted:
                return None
            return self._memory()

    async def add_message(self, message: ChatMessage) -> Dict[str, int]:
        return await self.add_messages([message])

    async def add_messages(
        self,
        messages: Iterable[ChatMessage],
        metadata: Optional[Mapping[str, Any]] = None,
        *,
        system_prompt: Optional[ChatMessage] = None,
    ) -> Dict[str, int]:
        """Append messages (and merge ``metadata``) in a single persisted write.

        ``system_prompt`` is put first if the history has no system message.
        """
        async with self._exclusive():
            await self._ensure_loaded()
            if system_prompt is not None and not has_system_message(self.messages):
                self.messages.insert(0, system_prompt)
            self.messages.extend(messages)
            if metadata:
                self.metadata = {**self.metadata, **metadata}
            self.messages = truncate_messages(self.messages, self.max_messages)
            await self._save()
            return {"messageCount": len(self.messages)}

    async def clear(self) -> bool:
        async with self._exclusive():
            await self._ensure_loaded()
            self.messages = []
            # Nothing stored yet: clearing must not create a record.
            if self.persisted:
                await self._save()
            return True

    async def get_or_update_metadata(self, patch: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        async with self._exclusive():
            await self._ensure_loaded()
            if patch:
                self.metadata = {**self.metadata, **patch}
                await self._save()
            return dict(self.metadata)

    # --------- internals ----------
    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        stored = await self.storage.get(STATE_KEY)
        if stored:
            try:
                memory = ConversationMemory.model_validate(stored)
            except pydantic.ValidationError as e:
                raise PersistenceError(f"Invalid session state for {self.session_id}: {e}") from e
            self.messages = list(memory.messages)
            self.metadata = dict(memory.metadata or {})
            self.created_at = memory.created_at
            self.updated_at = memory.updated_at
            self.persisted = True
        self._loaded = True

    async def _save(self) -> None:
        previous = self.updated_at
        self.updated_at = utc_now_iso()
        try:
            await self.storage.put(STATE_KEY, self._memory().to_dict())
        except Exception:
            self.updated_at = previous
            raise
        self.persisted = True

    def _memory(self) -> ConversationMemory:
        return ConversationMemory(
            session_id=self.session_id,
            messages=list(self.messages),
            created_at=self.created_at,
            updated_at=self.updated_at,
            metadata=dict(self.metadata),
        )

    def _snapshot(self) -> Dict[str, Any]:
        return {
            "messages": [m.model_dump() for m in self.messages],
            "metadata": dict(self.metadata),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


class SessionNamespace:
    """Registry handing out the single resident :class:`ChatSession` per id.

    At most ``max_resident`` sessions are kept in memory; the least recently
    used idle ones are dropped first and reload from disk on next access.
    Sessions with an operation in flight are never dropped.
    """

    def __init__(
        self,
        data_dir: str | Path,
        *,
        max_messages: Optional[int] = None,
        max_resident: Optional[int] = 1024,
    ) -> None:
        self.root = Path(data_dir)
        self.max_messages = max_messages
        self.max_resident = max_resident
        self._sessions: "OrderedDict[str, ChatSession]" = OrderedDict()

    def get(self, session_id: str) -> ChatSession:
        # No await between lookup and insert, so this is atomic on the event loop.
        session = self._sessions.get(session_id)
        if session is None:
            session = ChatSession(
                session_id,
                DiskSessionStorage(self.root, session_id),
                max_messages=self.max_messages,
            )
            self._sessions[session_id] = session
            self._shrink()
        else:
            self._sessions.move_to_end(session_id)
        return session

    def _shrink(self) -> None:
        if self.max_resident is None:
            return
        excess = len(self._sessions) - self.max_resident
        if excess <= 0:
            return
        # Oldest first; the newest entry is the one just handed out.
        for session_id in list(self._sessions)[:-1]:
            if excess <= 0:
                break
            if self.evict(session_id):
                excess -= 1

    def evict(self, session_id: str) -> bool:
        """Drop an idle resident object; the next access reloads from disk.

        A session with an operation in flight is kept, otherwise a second
        object could be created for the same id.
        """
        session = self._sessions.get(session_id)
        if session is None or session.busy:
            return False
        del self._sessions[session_id]
        return True

    def release(self, session: ChatSession) -> bool:
        """Drop ``session`` if it is still resident and was never persisted."""
        if session.persisted or self._sessions.get(session.session_id) is not session:
            return False
        return self.evict(session.session_id)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
