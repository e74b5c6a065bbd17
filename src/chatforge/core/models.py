from __future__ import annotations

from datetime import datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field

from .entities import Message, Session


class BackendConfig(BaseModel):
    """Per-call override of the generation backend connection."""
    base_url: Optional[str] = None
    timeout_ms: Optional[int] = Field(default=None, ge=1)
    enabled: bool = True


class GenerationOptions(BaseModel):
    model: Optional[str] = None
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=2048, ge=1, le=4000)
    backend: Optional[BackendConfig] = None


class ChatRequest(BaseModel):
    """Request model for the chat endpoints."""
    message: str
    session_id: Optional[str] = None
    options: Optional[GenerationOptions] = None


class AttachmentOut(BaseModel):
    type: str
    url: str
    filename: str
    originalPrompt: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class MessageOut(BaseModel):
    id: str
    session_id: str
    role: str
    content: str
    status: str
    metadata: Dict[str, Any] = {}
    attachments: List[AttachmentOut] = []
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_message(cls, message: Message) -> "MessageOut":
        return cls(**message.to_dict())


class SessionOut(BaseModel):
    id: str
    title: Optional[str] = None
    status: str
    metadata: Dict[str, Any] = {}
    last_activity_at: datetime
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_session(cls, session: Session) -> "SessionOut":
        return cls(**session.to_dict())


class ChatResponse(BaseModel):
    """Response model for the chat endpoint."""
    user_message: MessageOut
    assistant_message: MessageOut
    session: SessionOut


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""
    status: str
    service: str
    backend_available: bool


class ModelsResponse(BaseModel):
    models: List[str]


class TitleRequest(BaseModel):
    message: str


class TitleResponse(BaseModel):
    title: str
