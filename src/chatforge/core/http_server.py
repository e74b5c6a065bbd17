from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, AsyncIterator, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from .config import ChatSettings, RECENT_MESSAGES_LIMIT, load_settings
from .core import ChatBackend, SendMessageResult
from .errors import SessionNotFoundError
from .inference import InferenceClient
from .logging import GenerationLogger
from .models import (
    ChatRequest,
    ChatResponse,
    HealthResponse,
    MessageOut,
    ModelsResponse,
    SessionOut,
    TitleRequest,
    TitleResponse,
)
from .store import FileSessionStore, InMemorySessionStore, SessionStore


logger = logging.getLogger(__name__)

_STREAM_END = object()


def _chat_response(sent: SendMessageResult) -> ChatResponse:
    return ChatResponse(
        user_message=MessageOut.from_message(sent.user_message),
        assistant_message=MessageOut.from_message(sent.assistant_message),
        session=SessionOut.from_session(sent.session),
    )


class HTTPServer:
    """FastAPI HTTP server for the chat backend."""

    def __init__(
        self,
        config_path: Optional[Path] = None,
        *,
        settings: Optional[ChatSettings] = None,
        backend: Optional[ChatBackend] = None,
    ):
        self.config_path = config_path
        self.settings = settings or load_settings(config_path)
        self.backend = backend or self._build_backend(self.settings)
        self.app = self._create_app()

    def _build_backend(self, settings: ChatSettings) -> ChatBackend:
        store: SessionStore
        if settings.history_dir is not None:
            store = FileSessionStore(settings.history_dir)
        else:
            store = InMemorySessionStore()
        generation_logger = GenerationLogger(settings.log_dir) if settings.log_dir is not None else None
        return ChatBackend(store, InferenceClient(settings), generation_logger=generation_logger)

    def _create_app(self) -> FastAPI:
        """Create and configure FastAPI application."""
        app = FastAPI(
            title="chatforge",
            version="0.1.0",
            description="Conversational inference over a streaming generation backend",
        )

        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        self._register_routes(app)
        return app

    def _register_routes(self, app: FastAPI) -> None:
        """Register API routes."""

        @app.post("/chat", response_model=ChatResponse)
        async def chat_endpoint(request: ChatRequest) -> ChatResponse:
            """Send a message and wait for the complete reply."""
            try:
                sent = await self.backend.send_message(request.session_id, request.message, request.options)
            except SessionNotFoundError as e:
                raise HTTPException(status_code=404, detail=str(e))
            return _chat_response(sent)

        @app.post("/chat/stream")
        async def chat_stream_endpoint(request: ChatRequest) -> StreamingResponse:
            """Send a message and stream the reply as NDJSON events."""
            if request.session_id is not None:
                found = await self.backend.store.find_session_by_id(request.session_id)
                if found is None or found.is_deleted:
                    raise HTTPException(status_code=404, detail=f"Session not found: {request.session_id}")
            return StreamingResponse(
                self._stream_chat(request),
                media_type="application/x-ndjson",
            )

        @app.get("/health", response_model=HealthResponse)
        async def health_endpoint() -> HealthResponse:
            """Health check endpoint."""
            return HealthResponse(
                status="healthy",
                service="chatforge",
                backend_available=await self.backend.is_available(),
            )

        @app.get("/models", response_model=ModelsResponse)
        async def models_endpoint() -> ModelsResponse:
            return ModelsResponse(models=await self.backend.list_models())

        @app.post("/title", response_model=TitleResponse)
        async def title_endpoint(request: TitleRequest) -> TitleResponse:
            return TitleResponse(title=await self.backend.generate_title(request.message))

        @app.get("/sessions/{session_id}/messages")
        async def session_messages(session_id: str, limit: int = RECENT_MESSAGES_LIMIT) -> list[MessageOut]:
            session = await self.backend.store.find_session_by_id(session_id)
            if session is None or session.is_deleted:
                raise HTTPException(status_code=404, detail=f"Session not found: {session_id}")
            messages = await self.backend.store.list_recent_messages(session_id, limit)
            return [MessageOut.from_message(m) for m in messages]

    async def _stream_chat(self, request: ChatRequest) -> AsyncIterator[str]:
        """Run the turn in its own task and relay its deltas.

        The task is cancelled if the client goes away before it finishes.
        """
        queue: asyncio.Queue = asyncio.Queue()

        async def on_delta(fragment: str, full_text: str, is_final: bool) -> None:
            await queue.put({"type": "delta", "fragment": fragment, "full_text": full_text, "final": is_final})

        async def run() -> None:
            try:
                sent = await self.backend.send_message(
                    request.session_id, request.message, request.options, on_delta=on_delta
                )
                await queue.put({"type": "done", "result": _chat_response(sent).model_dump(mode="json")})
            except SessionNotFoundError as e:
                await queue.put({"type": "error", "detail": str(e)})
            except Exception:
                logger.exception("Streamed chat turn failed")
                await queue.put({"type": "error", "detail": "internal error"})
            finally:
                await queue.put(_STREAM_END)

        task = asyncio.create_task(run())
        try:
            while True:
                item: Any = await queue.get()
                if item is _STREAM_END:
                    break
                yield json.dumps(item, ensure_ascii=False) + "\n"
        finally:
            if not task.done():
                logger.info("Client disconnected, cancelling generation")
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

    async def startup(self) -> None:
        """Startup tasks."""
        logger.info("Starting chatforge HTTP server (backend %s)", self.settings.backend_url)

    async def shutdown(self) -> None:
        """Cleanup tasks."""
        logger.info("Shutting down chatforge HTTP server")
        await self.backend.aclose()


def create_app(config_path: Optional[Path] = None, *, settings: Optional[ChatSettings] = None) -> FastAPI:
    """Build the app; ``settings`` takes precedence over ``config_path``."""
    server = HTTPServer(config_path, settings=settings)

    @server.app.on_event("startup")
    async def startup_event():
        await server.startup()

    @server.app.on_event("shutdown")
    async def shutdown_event():
        await server.shutdown()

    return server.app
