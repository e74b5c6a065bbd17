"""
Per-session generation logs.

Layout under the configured log directory:
  chatforge-core/<session_id>/generations_YYYY-MM-DD.jsonl
  chatforge-core/<session_id>/errors_YYYY-MM-DD.jsonl
"""

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import aiofiles


class GenerationLogger:
    """
    Appends prompt/outcome and upstream error records to dated JSONL files.

    Failing to write a record is reported through ``logging`` and never
    interrupts the chat turn that produced it.
    """

    def __init__(self, base_log_dir: Path):
        self.root = Path(base_log_dir) / "chatforge-core"
        self._locks: Dict[str, asyncio.Lock] = {}

    def session_dir(self, session_id: str) -> Path:
        return self.root / session_id

    def _log_path(self, session_id: str, kind: str) -> Path:
        return self.session_dir(session_id) / f"{kind}_{datetime.now():%Y-%m-%d}.jsonl"

    async def _append(self, session_id: str, kind: str, entry: Dict[str, Any]) -> None:
        record = {"timestamp": datetime.now().isoformat(), "session": session_id}
        record.update(entry)
        line = json.dumps(record, ensure_ascii=False, default=str) + "\n"
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        try:
            async with lock:
                path = self._log_path(session_id, kind)
                path.parent.mkdir(parents=True, exist_ok=True)
                async with aiofiles.open(path, "a", encoding="utf-8") as f:
                    await f.write(line)
        except Exception as e:
            logging.error(f"Failed to write {kind} log for session {session_id}: {e}")

    async def log_generation(self, session_id: str, prompt: str, result: Dict[str, Any]) -> None:
        """Record the prompt sent and a summary of the outcome (model, tokens, timing, degraded)."""
        await self._append(session_id, "generations", {"prompt": prompt, "result": result})

    async def log_error(
        self,
        session_id: str,
        error_type: str,
        error_message: str,
        error_details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Record an upstream failure.

        Args:
            session_id: Session whose turn failed
            error_type: ``InferenceError.kind`` of the failure
            error_message: Text of the exception
            error_details: Extra context such as prompt size
        """
        await self._append(session_id, "errors", {
            "error_type": error_type,
            "error_message": error_message,
            "error_details": error_details or {},
        })
