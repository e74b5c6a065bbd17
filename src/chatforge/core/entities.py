from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, is_dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

ROLES = ("user", "assistant", "system")
MESSAGE_STATUSES = ("sent", "delivered", "error", "processing")
SESSION_STATUSES = ("active", "archived", "deleted")


def _now() -> datetime:
    return datetime.now()


def _new_id() -> str:
    return uuid.uuid4().hex


def _parse_dt(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        return datetime.fromisoformat(value)
    return _now()


def normalize_metadata(payload: Any) -> Any:
    """Convert a metadata value into plain JSON-safe data."""
    if is_dataclass(payload) and not isinstance(payload, type):
        return normalize_metadata(asdict(payload))
    if isinstance(payload, dict):
        return {str(k): normalize_metadata(v) for k, v in payload.items()}
    if isinstance(payload, (list, tuple)):
        return [normalize_metadata(item) for item in payload]
    if isinstance(payload, Path):
        return str(payload)
    if isinstance(payload, datetime):
        return payload.isoformat()
    if isinstance(payload, (str, int, float, bool)) or payload is None:
        return payload
    return repr(payload)


@dataclass
class Attachment:
    type: str
    url: str
    filename: str
    original_prompt: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "url": self.url,
            "filename": self.filename,
            "originalPrompt": self.original_prompt,
            "metadata": normalize_metadata(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Attachment":
        return cls(
            type=data.get("type", ""),
            url=data.get("url", ""),
            filename=data.get("filename", ""),
            original_prompt=data.get("originalPrompt"),
            metadata=data.get("metadata"),
        )


@dataclass
class Message:
    """A single chat message owned by one session."""

    session_id: str
    role: str
    content: str
    status: str = "sent"
    metadata: Dict[str, Any] = field(default_factory=dict)
    attachments: List[Attachment] = field(default_factory=list)
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"Invalid message role: {self.role!r}")
        if self.status not in MESSAGE_STATUSES:
            raise ValueError(f"Invalid message status: {self.status!r}")
        self.metadata = normalize_metadata(self.metadata or {})

    @classmethod
    def user(cls, session_id: str, content: str) -> "Message":
        return cls(session_id=session_id, role="user", content=content, status="sent")

    @classmethod
    def assistant(
        cls,
        session_id: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
        status: str = "delivered",
    ) -> "Message":
        return cls(
            session_id=session_id,
            role="assistant",
            content=content,
            status=status,
            metadata=metadata or {},
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "role": self.role,
            "content": self.content,
            "status": self.status,
            "metadata": normalize_metadata(self.metadata),
            "attachments": [a.to_dict() for a in self.attachments],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            id=data["id"],
            session_id=data["session_id"],
            role=data["role"],
            content=data.get("content", ""),
            status=data.get("status", "sent"),
            metadata=data.get("metadata") or {},
            attachments=[Attachment.from_dict(a) for a in data.get("attachments") or []],
            created_at=_parse_dt(data.get("created_at")),
            updated_at=_parse_dt(data.get("updated_at")),
        )


@dataclass
class Session:
    """A conversation; owns an append-only, chronological list of messages."""

    title: Optional[str] = None
    status: str = "active"
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=_new_id)
    last_activity_at: datetime = field(default_factory=_now)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    def __post_init__(self) -> None:
        if self.status not in SESSION_STATUSES:
            raise ValueError(f"Invalid session status: {self.status!r}")
        self.metadata = normalize_metadata(self.metadata or {})

    @property
    def is_deleted(self) -> bool:
        return self.status == "deleted"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status,
            "metadata": normalize_metadata(self.metadata),
            "last_activity_at": self.last_activity_at.isoformat(),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            id=data["id"],
            title=data.get("title"),
            status=data.get("status", "active"),
            metadata=data.get("metadata") or {},
            last_activity_at=_parse_dt(data.get("last_activity_at")),
            created_at=_parse_dt(data.get("created_at")),
            updated_at=_parse_dt(data.get("updated_at")),
        )
