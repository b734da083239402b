# orchestration/services/context_service.py
"""Builds the immutable :class:`RequestContext` for one generation request."""

from __future__ import annotations

from typing import Any

import structlog
from config import settings
from models import IntentContext, RequestContext, SceneContext, VoiceContract

from utils.text_processing import normalize_character_id

logger = structlog.get_logger(__name__)


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_number(value: Any, default: float = 0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def same_speaker_turns(
    turns: list[Any], character_id: str, limit: int = settings.RECENT_NPC_TURNS_LIMIT
) -> list[str]:
    """Texts of the most recent turns spoken by ``character_id``."""
    texts = [
        str(turn.get("text") or "").strip()
        for turn in turns or []
        if isinstance(turn, dict)
        and normalize_character_id(turn.get("speaker")) == character_id
    ]
    return [text for text in texts if text][-limit:]


def build_contract(raw: Any) -> VoiceContract | None:
    data = _as_dict(raw)
    if not data:
        return None
    markers = data.get("style_markers", data.get("styleMarkers")) or []
    awareness = data.get("mission_awareness", data.get("missionAwareness")) or ""
    return VoiceContract(
        style_markers=[str(marker) for marker in markers if marker],
        mission_awareness=str(awareness),
    )


class ContextService:
    """Normalizes an already validated request mapping."""

    def __init__(
        self,
        max_sentences: int = settings.LLM_MAX_SENTENCES,
        max_chars: int = settings.LLM_MAX_BUBBLE_CHARS,
    ) -> None:
        self.max_sentences = max_sentences
        self.max_chars = max_chars

    def build(self, body: dict[str, Any]) -> RequestContext:
        character_id = normalize_character_id(body.get("character_id") or "unknown")
        raw_intent = _as_dict(body.get("intent_context"))
        current = _as_dict(body.get("current_context") or body.get("game_context"))
        mission = _as_dict(
            body.get("mission_progression") or current.get("progressive_context")
        )
        recent_raw = body.get("recent_turns") or current.get("recent_turns") or []
        memory_card = (
            body.get("npc_memory_card")
            or current.get("npc_memory_card")
            or mission.get("npcMemoryCard")
        )

        scene_fields = {
            key: value
            for key, value in current.items()
            if key not in {"recent_turns", "npc_memory_card", "progressive_context"}
        }
        scene_fields.update(
            location=str(current.get("location") or current.get("player_location") or ""),
            time_remaining_sec=_as_number(current.get("time_remaining_sec")),
            sonic_drunk_level=int(_as_number(current.get("sonic_drunk_level"))),
            sonic_following=bool(current.get("sonic_following")),
            sonic_location=str(current.get("sonic_location") or ""),
            npc_encounter_count=int(_as_number(current.get("npc_encounter_count"))),
            test_case_id=str(current.get("test_case_id") or ""),
            inventory=[str(item) for item in current.get("inventory") or []],
            nearby_npcs=[str(npc) for npc in current.get("nearby_npcs") or []],
            recent_turns=[turn for turn in recent_raw if isinstance(turn, dict)],
        )
        scene = SceneContext(**scene_fields)

        max_sentences = int(_as_number(current.get("max_sentences_per_reply")))
        if max_sentences <= 0:
            max_sentences = self.max_sentences
        max_chars = int(_as_number(current.get("max_bubble_length_chars")))
        if max_chars <= 0:
            max_chars = self.max_chars

        context = RequestContext(
            character_id=character_id,
            intent=str(body.get("intent") or "flavor"),
            function_id=str(body.get("function_id") or ""),
            player_input=str(body.get("player_input") or ""),
            fallback_text=str(body.get("fallback_text") or ""),
            intent_context=IntentContext(
                goal=str(raw_intent.get("goal") or ""),
                must_include=[str(term) for term in raw_intent.get("must_include") or []],
                avoid=[str(term) for term in raw_intent.get("avoid") or []],
                character_contract=_as_dict(raw_intent.get("character_contract")) or None,
            ),
            contract=build_contract(raw_intent.get("character_contract")),
            scene=scene,
            mission_progression=mission,
            recent_npc_turns=same_speaker_turns(recent_raw, character_id),
            npc_memory_card=_as_dict(memory_card) or None,
            max_sentences=max_sentences,
            max_chars=max_chars,
        )
        logger.debug(
            "Request context built",
            speaker=context.character_id,
            intent=context.intent,
            location=scene.location,
            recent_turns=len(context.recent_npc_turns),
        )
        return context
