# orchestration/services/fallback_service.py
"""In-character replacement lines for cooldown, errors and failed guards."""

from __future__ import annotations

import re
from collections.abc import Sequence

import structlog
from models import GenerationResponse, RequestContext

from orchestration.services.retrieval_service import RetrievalEntry
from processing.output_shaper import shape_reply
from processing.voice_profiles import VoiceProfileRegistry
from utils.text_processing import hash_index

logger = structlog.get_logger(__name__)

CONCISE_LINE_CHARS = 150
_SENTENCE_BREAK_RE = re.compile(r"(?<=[.!?])\s+")


def concise_line(text: str, max_chars: int = CONCISE_LINE_CHARS) -> str:
    """First sentence of ``text``, cut to ``max_chars`` with an ellipsis."""
    first = _SENTENCE_BREAK_RE.split(str(text or "").strip())[0].strip()
    if len(first) <= max_chars:
        return first
    return f"{first[: max_chars - 1].rstrip()}..."


class FallbackService:
    def __init__(self, registry: VoiceProfileRegistry) -> None:
        self.registry = registry

    def voice_line(self, context: RequestContext, intent: str = "flavor") -> str:
        bank = list(self.registry.get(context.character_id).fallback_bank(context))
        if not bank:
            return "Stay sharp."
        seed = f"{context.character_id}:{intent}:{context.scene.sonic_drunk_level}"
        return bank[hash_index(seed, len(bank))]

    def retrieval_line(
        self, context: RequestContext, examples: Sequence[RetrievalEntry]
    ) -> str:
        if not examples:
            return self.voice_line(context)
        seed = f"{context.character_id}:{context.player_input}"
        picked = concise_line(examples[hash_index(seed, len(examples))].line)
        return picked or self.voice_line(context)

    def build(
        self,
        context: RequestContext,
        examples: Sequence[RetrievalEntry] = (),
        reason: str = "fallback",
    ) -> GenerationResponse:
        base = context.fallback_text or self.retrieval_line(context, examples)
        text = shape_reply(base, context.max_sentences, context.max_chars)
        logger.debug("Fallback line built", speaker=context.character_id, reason=reason)
        return GenerationResponse(
            npc_text=text,
            intent=context.intent,
            time_cost_seconds=0,
            suggested_state_effects={"fallback_reason": reason} if reason else {},
            source="cooldown" if reason == "cooldown" else "fallback",
        )
