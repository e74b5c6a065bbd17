from __future__ import annotations

import asyncio
import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import aiofiles

from .entities import Message, Session

logger = logging.getLogger(__name__)

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


@runtime_checkable
class SessionStore(Protocol):
    """Durable session/message storage consumed by the chat backend.

    A session's own history must be strongly consistent: a message returned
    by ``append_message`` is visible to the next ``list_recent_messages``.
    """

    async def create_session(
        self, title: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None
    ) -> Session:  # pragma: no cover - protocol
        ...

    async def find_session_by_id(self, session_id: str) -> Optional[Session]:  # pragma: no cover - protocol
        ...

    async def append_message(self, message: Message) -> Message:  # pragma: no cover - protocol
        ...

    async def list_recent_messages(self, session_id: str, limit: int) -> List[Message]:  # pragma: no cover - protocol
        """Return up to ``limit`` most recent messages, oldest first."""
        ...

    async def touch_last_activity(self, session_id: str) -> None:  # pragma: no cover - protocol
        ...

    async def update_session_title(self, session_id: str, title: str) -> None:  # pragma: no cover - protocol
        ...


class InMemorySessionStore:
    """Process-local store; sessions vanish on restart."""

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}
        self._messages: Dict[str, List[Message]] = {}

    async def create_session(
        self, title: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None
    ) -> Session:
        session = Session(title=title, metadata=metadata or {})
        self._sessions[session.id] = session
        self._messages[session.id] = []
        return session

    async def find_session_by_id(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    async def append_message(self, message: Message) -> Message:
        if message.session_id not in self._sessions:
            raise KeyError(message.session_id)
        self._messages[message.session_id].append(message)
        return message

    async def list_recent_messages(self, session_id: str, limit: int) -> List[Message]:
        messages = sorted(self._messages.get(session_id, []), key=lambda m: m.created_at)
        return messages[-limit:] if limit > 0 else []

    async def touch_last_activity(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            session.last_activity_at = datetime.now()
            session.updated_at = session.last_activity_at

    async def update_session_title(self, session_id: str, title: str) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            session.title = title
            session.updated_at = datetime.now()

    async def delete_session(self, session_id: str) -> None:
        """Soft-delete a session (status only; messages are kept)."""
        session = self._sessions.get(session_id)
        if session is not None:
            session.status = "deleted"
            session.updated_at = datetime.now()


class FileSessionStore:
    """Filesystem-backed sessions, one directory per session.

    Layout:
      <history_dir>/<session_id>/
        session.json
        messages.jsonl
    """

    def __init__(self, history_dir: Path):
        self.history_dir = Path(history_dir)
        self.history_dir.mkdir(parents=True, exist_ok=True)
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        if session_id not in self._locks:
            self._locks[session_id] = asyncio.Lock()
        return self._locks[session_id]

    def _session_dir(self, session_id: str) -> Optional[Path]:
        if not _SESSION_ID_RE.match(session_id or ""):
            return None
        return self.history_dir / session_id

    async def _read_session(self, session_id: str) -> Optional[Session]:
        d = self._session_dir(session_id)
        if d is None:
            return None
        path = d / "session.json"
        if not path.exists():
            return None
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            return Session.from_dict(json.loads(await f.read()))

    async def _write_session(self, session: Session) -> None:
        d = self.history_dir / session.id
        d.mkdir(parents=True, exist_ok=True)
        tmp = d / "session.json.tmp"
        async with aiofiles.open(tmp, "w", encoding="utf-8") as f:
            await f.write(json.dumps(session.to_dict(), ensure_ascii=False, indent=2))
        tmp.replace(d / "session.json")

    async def create_session(
        self, title: Optional[str] = None, metadata: Optional[Dict[str, Any]] = None
    ) -> Session:
        session = Session(title=title, metadata=metadata or {})
        async with self._lock_for(session.id):
            await self._write_session(session)
        logger.info("Created session %s", session.id)
        return session

    async def find_session_by_id(self, session_id: str) -> Optional[Session]:
        return await self._read_session(session_id)

    async def append_message(self, message: Message) -> Message:
        d = self._session_dir(message.session_id)
        if d is None or not (d / "session.json").exists():
            raise KeyError(message.session_id)
        line = json.dumps(message.to_dict(), ensure_ascii=False)
        async with self._lock_for(message.session_id):
            async with aiofiles.open(d / "messages.jsonl", "a", encoding="utf-8") as f:
                await f.write(line + "\n")
        return message

    async def list_recent_messages(self, session_id: str, limit: int) -> List[Message]:
        d = self._session_dir(session_id)
        if d is None or limit <= 0:
            return []
        path = d / "messages.jsonl"
        if not path.exists():
            return []
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            lines = (await f.read()).splitlines()
        messages: List[Message] = []
        for line in lines:
            if not line.strip():
                continue
            try:
                messages.append(Message.from_dict(json.loads(line)))
            except (ValueError, KeyError) as e:
                logger.warning("Skipping unreadable message in session %s: %s", session_id, e)
        messages.sort(key=lambda m: m.created_at)
        return messages[-limit:]

    async def touch_last_activity(self, session_id: str) -> None:
        async with self._lock_for(session_id):
            session = await self._read_session(session_id)
            if session is None:
                return
            session.last_activity_at = datetime.now()
            session.updated_at = session.last_activity_at
            await self._write_session(session)

    async def update_session_title(self, session_id: str, title: str) -> None:
        async with self._lock_for(session_id):
            session = await self._read_session(session_id)
            if session is None:
                return
            session.title = title
            session.updated_at = datetime.now()
            await self._write_session(session)
