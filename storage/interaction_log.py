# storage/interaction_log.py
"""Append-only JSONL sinks for interaction and correction records."""

from __future__ import annotations

import asyncio
import json
import os
from datetime import datetime, timezone
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


class InteractionLog:
    """Best-effort JSONL writer. Failures are counted, never raised."""

    def __init__(self) -> None:
        self.write_errors = 0
        self.last_error_at: str | None = None

    async def append(self, path: str, record: dict[str, Any], label: str) -> bool:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._append_sync, path, record)
        except (OSError, TypeError, ValueError) as exc:
            self.write_errors += 1
            self.last_error_at = datetime.now(timezone.utc).isoformat()
            logger.warning("Log write failed", label=label, path=path, error=str(exc))
            return False
        return True

    def _append_sync(self, path: str, record: dict[str, Any]) -> None:
        line = json.dumps(record, ensure_ascii=False)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(line + "\n")

    async def read_recent(self, path: str, limit: int = 2000) -> list[dict[str, Any]]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, read_jsonl_tail, path, limit)


def read_jsonl_tail(path: str, limit: int = 2000) -> list[dict[str, Any]]:
    """Parse the last ``limit`` non-blank lines, skipping malformed ones."""
    if limit <= 0 or not os.path.exists(path):
        return []
    try:
        with open(path, encoding="utf-8") as f:
            lines = [line for line in f if line.strip()]
    except OSError as exc:
        logger.warning("Failed to read log", path=path, error=str(exc))
        return []
    rows: list[dict[str, Any]] = []
    for line in lines[-limit:]:
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            rows.append(parsed)
    return rows
