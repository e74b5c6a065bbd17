"""Tests for per-session generation logs."""

import json
from datetime import datetime

from chatforge.core.logging import GenerationLogger


def read_jsonl(path):
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


async def test_generation_and_error_logs_are_separate_files(tmp_path):
    gen_logger = GenerationLogger(tmp_path)
    today = datetime.now().strftime("%Y-%m-%d")

    await gen_logger.log_generation("s1", "User: hi", {"model": "m", "token_count": 3})
    await gen_logger.log_generation("s1", "User: again", {"model": "m", "token_count": 1})
    await gen_logger.log_error("s1", "timeout", "took too long")

    session_dir = tmp_path / "chatforge-core" / "s1"
    generations = read_jsonl(session_dir / f"generations_{today}.jsonl")
    errors = read_jsonl(session_dir / f"errors_{today}.jsonl")

    assert [g["prompt"] for g in generations] == ["User: hi", "User: again"]
    assert generations[0]["session"] == "s1"
    assert generations[0]["result"] == {"model": "m", "token_count": 3}
    assert errors == [{
        "timestamp": errors[0]["timestamp"],
        "session": "s1",
        "error_type": "timeout",
        "error_message": "took too long",
        "error_details": {},
    }]


async def test_write_failures_are_not_raised(tmp_path, caplog):
    blocker = tmp_path / "blocked"
    blocker.write_text("not a directory", encoding="utf-8")
    gen_logger = GenerationLogger(blocker)

    await gen_logger.log_error("s1", "malformed", "bad json")

    assert "Failed to write errors log" in caplog.text
