# orchestration/services/retrieval_service.py
"""Reference-line retrieval from the speaker index on disk."""

from __future__ import annotations

import asyncio
import json
import os
from typing import Any

import structlog
from config import RETRIEVAL_INDEX_PATH
from models import SceneContext
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from processing.voice_profiles import VoiceProfileRegistry
from utils.text_processing import extract_keywords, map_location_group, normalize_character_id

logger = structlog.get_logger(__name__)

MIN_POOL_SIZE = 3
LOCATION_MATCH_SCORE = 5
KEYWORD_HIT_SCORE = 2


class RetrievalEntry(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    speaker: str
    line: str
    location_group: str = Field(default="", alias="locationGroup")
    tags: list[str] = Field(default_factory=list)


class RetrievalMemory:
    """In-memory view of ``retrieval_index.json``."""

    def __init__(
        self,
        registry: VoiceProfileRegistry,
        index_path: str = RETRIEVAL_INDEX_PATH,
    ) -> None:
        self.registry = registry
        self.index_path = index_path
        self.entries: list[RetrievalEntry] = []

    @property
    def ready(self) -> bool:
        return bool(self.entries)

    async def load(self) -> int:
        loop = asyncio.get_running_loop()
        self.entries = await loop.run_in_executor(None, self._load_sync)
        logger.info(
            "Retrieval index loaded", path=self.index_path, entries=len(self.entries)
        )
        return len(self.entries)

    def _load_sync(self) -> list[RetrievalEntry]:
        if not os.path.exists(self.index_path):
            logger.warning("Retrieval index missing", path=self.index_path)
            return []
        try:
            with open(self.index_path, encoding="utf-8") as f:
                data: Any = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            logger.error(
                "Failed to read retrieval index", path=self.index_path, error=str(exc)
            )
            return []
        raw_entries = data.get("entries", []) if isinstance(data, dict) else []
        entries: list[RetrievalEntry] = []
        for raw in raw_entries:
            if not isinstance(raw, dict):
                continue
            try:
                entry = RetrievalEntry.model_validate(raw)
            except ValidationError:
                continue
            if entry.line.strip():
                entries.append(entry)
        return entries

    def stats(self) -> dict[str, Any]:
        return {"retrieval_ready": self.ready, "retrieval_entries": len(self.entries)}

    def retrieve(
        self,
        character_id: str,
        scene: SceneContext,
        player_input: str,
        limit: int,
    ) -> list[RetrievalEntry]:
        """Top ``limit`` reference lines for a speaker and scene."""
        if not self.entries or limit <= 0:
            return []
        speaker = normalize_character_id(character_id)
        location = map_location_group(scene.location)
        keywords = extract_keywords(player_input)
        profile = self.registry.get(speaker)

        scoped = [e for e in self.entries if normalize_character_id(e.speaker) == speaker]
        by_location = (
            [e for e in scoped if e.location_group.upper() == location] if location else scoped
        )
        pool = by_location if len(by_location) >= MIN_POOL_SIZE else scoped
        filtered = [e for e in pool if profile.keeps_retrieval_line(e.line, player_input)]
        scoring_pool = filtered if len(filtered) >= MIN_POOL_SIZE else pool

        def _score(entry: RetrievalEntry) -> int:
            line = entry.line.lower()
            score = 0
            if location and entry.location_group.upper() == location:
                score += LOCATION_MATCH_SCORE
            score += KEYWORD_HIT_SCORE * sum(1 for kw in keywords if kw in line)
            return score

        return sorted(scoring_pool, key=_score, reverse=True)[:limit]
