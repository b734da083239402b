# orchestration/response_cache.py
"""Request fingerprinting, TTL response cache and in-flight deduplication."""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Callable
from dataclasses import dataclass

import structlog
from models import GenerationResponse, RequestContext

from utils.text_processing import short_hash

logger = structlog.get_logger(__name__)


def request_fingerprint(context: RequestContext) -> str:
    """Digest identifying logically equivalent requests.

    Covers speaker, intent, location, drunk level, encounter count, test
    case id, the normalized player input and a digest of the last two raw
    scene turns.
    """
    recent = "|".join(
        f"{turn.get('speaker', '')}:{str(turn.get('text', ''))[:48]}"
        for turn in context.scene.recent_turns[-2:]
        if isinstance(turn, dict)
    )
    payload = {
        "c": context.character_id,
        "i": context.intent,
        "l": context.scene.location,
        "d": context.scene.sonic_drunk_level,
        "e": context.scene.npc_encounter_count,
        "t": context.scene.test_case_id,
        "p": context.player_input.lower().strip(),
        "r": short_hash(recent),
    }
    return short_hash(json.dumps(payload, sort_keys=True, separators=(",", ":")))


@dataclass
class CacheEntry:
    response: GenerationResponse
    speaker: str
    expires_at: float


class ResponseCache:
    """Fingerprint keyed responses, expired lazily on lookup."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self._clock = clock

    def lookup(self, fingerprint: str) -> GenerationResponse | None:
        entry = self._entries.get(fingerprint)
        if entry is None:
            return None
        if self._clock() > entry.expires_at:
            del self._entries[fingerprint]
            return None
        return entry.response

    def store(
        self,
        fingerprint: str,
        response: GenerationResponse,
        ttl_seconds: float,
        speaker: str,
    ) -> None:
        self._entries[fingerprint] = CacheEntry(
            response=response,
            speaker=speaker,
            expires_at=self._clock() + ttl_seconds,
        )

    def invalidate_speaker(self, speaker: str) -> int:
        stale = [key for key, entry in self._entries.items() if entry.speaker == speaker]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.info("Cleared cached replies", speaker=speaker, count=len(stale))
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)


class InFlightRegistry:
    """At most one live execution per fingerprint.

    ``acquire_or_join`` never awaits, so on a single event loop the
    check-and-register step cannot interleave with another caller.
    """

    def __init__(self) -> None:
        self._pending: dict[str, asyncio.Future[GenerationResponse]] = {}

    def acquire_or_join(
        self, fingerprint: str
    ) -> tuple[bool, asyncio.Future[GenerationResponse]]:
        existing = self._pending.get(fingerprint)
        if existing is not None:
            return False, existing
        future: asyncio.Future[GenerationResponse] = (
            asyncio.get_running_loop().create_future()
        )
        self._pending[fingerprint] = future
        return True, future

    def settle(
        self,
        fingerprint: str,
        result: GenerationResponse | None = None,
        error: BaseException | None = None,
    ) -> None:
        """Resolve the shared future and drop the registration."""
        future = self._pending.pop(fingerprint, None)
        if future is None or future.done():
            return
        if error is not None:
            future.set_exception(error)
            # Mark retrieved so an unjoined failure is not reported by asyncio.
            future.exception()
        else:
            future.set_result(result)

    def __len__(self) -> int:
        return len(self._pending)
