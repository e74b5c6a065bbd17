from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, replace
from typing import Callable, List, Optional, Sequence, Set, Tuple

from cachetools import TTLCache

from .config import DEFAULT_TITLE, RECENT_MESSAGES_LIMIT
from .context import build_context
from .entities import Message, Session
from .errors import InferenceError, SessionNotFoundError
from .inference import DeltaHandler, GenerationResult, InferenceClient
from .logging import GenerationLogger
from .models import GenerationOptions
from .store import SessionStore
from .titles import TitleGenerator, session_title


logger = logging.getLogger(__name__)


FALLBACK_RESPONSES: Tuple[str, ...] = (
    "Sorry, I'm having technical difficulties right now. Please try again in a few moments.",
    "A temporary problem occurred. Please rephrase your question.",
    "I'm experiencing some technical difficulties. Please try again.",
)

Selector = Callable[[Sequence[str]], str]


@dataclass
class SendMessageResult:
    user_message: Message
    assistant_message: Message
    session: Session
    result: GenerationResult


class ChatBackend:
    """Runs one conversational turn: persist, build context, generate, persist.

    Upstream failures never escape ``send_message``; they become a canned
    assistant reply flagged ``degraded`` in its metadata.
    """

    def __init__(
        self,
        store: SessionStore,
        client: InferenceClient,
        *,
        title_generator: Optional[TitleGenerator] = None,
        generation_logger: Optional[GenerationLogger] = None,
        selector: Optional[Selector] = None,
    ):
        self.store = store
        self.client = client
        self.settings = client.settings
        self.titles = title_generator or TitleGenerator(client)
        self.generation_logger = generation_logger
        self._choose: Selector = selector or random.choice
        self._title_tasks: Set[asyncio.Task] = set()
        # session_id -> True while a title attempt is running
        self._titles_in_flight: TTLCache = TTLCache(
            maxsize=1024, ttl=max(60.0, self.settings.title_timeout * 2)
        )

    @property
    def title_tasks(self) -> Tuple[asyncio.Task, ...]:
        return tuple(self._title_tasks)

    async def send_message(
        self,
        session_id: Optional[str],
        text: str,
        options: Optional[GenerationOptions] = None,
        *,
        on_delta: Optional[DeltaHandler] = None,
    ) -> SendMessageResult:
        """Append ``text`` as a user message and the model's reply after it.

        Without ``session_id`` a new session is created. ``on_delta`` streams
        the reply as it is generated.

        Raises:
            SessionNotFoundError: ``session_id`` is unknown or deleted
        """
        if options is None:
            options = GenerationOptions(
                temperature=self.settings.default_temperature,
                max_tokens=self.settings.default_max_tokens,
            )

        if session_id is None:
            session = await self.store.create_session(
                title=session_title(text),
                metadata={
                    "model": options.model or self.settings.default_model,
                    "temperature": options.temperature,
                    "maxTokens": options.max_tokens,
                },
            )
            needs_title = True
        else:
            found = await self.store.find_session_by_id(session_id)
            if found is None or found.is_deleted:
                raise SessionNotFoundError(session_id)
            session = found
            needs_title = not session.title or session.title == DEFAULT_TITLE

        user_message = await self.store.append_message(Message.user(session.id, text))
        await self.store.touch_last_activity(session.id)

        recent = await self.store.list_recent_messages(session.id, RECENT_MESSAGES_LIMIT)
        history = [m for m in recent if m.id != user_message.id]
        prompt = build_context(history, text)

        # everything received so far; a buffered call has nothing until it returns
        streamed = ""

        async def relay(fragment: str, full_text: str, is_final: bool) -> None:
            nonlocal streamed
            streamed = full_text
            if on_delta is not None:
                await on_delta(fragment, full_text, is_final)

        try:
            result = await self.client.generate(prompt, options, relay if on_delta else None)
            result = replace(result, used_history=bool(history))
            assistant = Message.assistant(session.id, result.content, {
                "model": result.model,
                "temperature": options.temperature,
                "tokenCount": result.token_count,
                "processingTimeMs": result.processing_time_ms,
                "usedHistory": result.used_history,
            })
        except InferenceError as exc:
            logger.warning(
                "Generation failed for session %s (%s), replying with fallback: %s",
                session.id, exc.kind, exc,
            )
            result = self._degraded_result()
            assistant = Message.assistant(session.id, result.content, {
                "model": result.model,
                "degraded": True,
                "usedHistory": False,
                "errorType": exc.kind,
                "originalError": str(exc),
            })
            if self.generation_logger is not None:
                await self.generation_logger.log_error(session.id, exc.kind, str(exc), {"prompt_chars": len(prompt)})
        except asyncio.CancelledError:
            logger.info("Generation cancelled for session %s", session.id)
            partial = Message.assistant(
                session.id,
                streamed,
                {"model": options.model or self.settings.default_model, "cancelled": True},
                status="error",
            )
            await asyncio.shield(self.store.append_message(partial))
            raise

        assistant_message = await self.store.append_message(assistant)

        if self.generation_logger is not None:
            await self.generation_logger.log_generation(session.id, prompt, {
                "model": result.model,
                "token_count": result.token_count,
                "processing_time_ms": result.processing_time_ms,
                "used_history": result.used_history,
                "degraded": result.degraded,
            })

        if needs_title:
            self.schedule_title(session.id, text)

        session = await self.store.find_session_by_id(session.id) or session
        return SendMessageResult(
            user_message=user_message,
            assistant_message=assistant_message,
            session=session,
            result=result,
        )

    async def generate_title(self, text: str) -> str:
        return await self.titles.generate_title(text)

    def schedule_title(self, session_id: str, text: str) -> Optional[asyncio.Task]:
        """Generate and store a session title in a detached task.

        Returns None when an attempt for ``session_id`` is already running.
        """
        if session_id in self._titles_in_flight:
            return None
        self._titles_in_flight[session_id] = True
        task = asyncio.create_task(self._title_task(session_id, text))
        self._title_tasks.add(task)
        task.add_done_callback(self._title_tasks.discard)
        return task

    async def is_available(self) -> bool:
        return await self.client.is_available()

    async def list_models(self) -> List[str]:
        return await self.client.list_models()

    async def aclose(self) -> None:
        """Cancel pending title tasks and release the HTTP client."""
        tasks = list(self._title_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.client.aclose()

    async def _title_task(self, session_id: str, text: str) -> None:
        try:
            title = await self.titles.generate_title(text)
            await self.store.update_session_title(session_id, title)
            logger.info("Set title for session %s: %r", session_id, title)
        except Exception as exc:
            logger.error("Failed to set title for session %s: %s", session_id, exc, exc_info=True)
        finally:
            self._titles_in_flight.pop(session_id, None)

    def _degraded_result(self) -> GenerationResult:
        return GenerationResult(
            content=self._choose(FALLBACK_RESPONSES),
            model="fallback",
            used_history=False,
            degraded=True,
        )
