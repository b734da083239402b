# orchestration/services/prompt_service.py
"""Prompt assembly for first generations and rewrites."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import structlog
from models import RequestContext
from prompt_renderer import render_prompt

from orchestration.services.retrieval_service import RetrievalEntry
from processing.voice_profiles import FLAT_YES_NO_RULE, VoiceProfile

logger = structlog.get_logger(__name__)

MAX_PROMPT_EXAMPLES = 4
MAX_PROMPT_TURNS = 4


def _current_context(context: RequestContext) -> dict[str, Any]:
    scene = context.scene
    return {
        "location": scene.location,
        "time_remaining_sec": scene.time_remaining_sec,
        "sonic_drunk_level": scene.sonic_drunk_level,
        "sonic_following": scene.sonic_following,
        "sonic_location": scene.sonic_location,
        "npc_encounter_count": scene.npc_encounter_count,
        "inventory": scene.inventory[:8],
        "nearby_npcs": scene.nearby_npcs[:5],
    }


def _mission_progression(context: RequestContext) -> dict[str, Any] | None:
    raw = context.mission_progression
    if not raw:
        return None
    return {
        "objective": raw.get("objective", ""),
        "sub_objective": raw.get("sub_objective", ""),
        "phase": raw.get("phase", ""),
        "dean_stage": raw.get("dean_stage", ""),
        "fail_warnings": raw.get("fail_warnings") or {},
        "route_flags": raw.get("route_flags") or {},
    }


def _memory_card(context: RequestContext) -> dict[str, Any]:
    raw = context.npc_memory_card or {}
    milestones = raw.get("milestones")
    return {
        "lastAdvice": raw.get("lastAdvice", ""),
        "lastWarning": raw.get("lastWarning", ""),
        "milestones": list(milestones)[-6:] if isinstance(milestones, list) else [],
    }


class PromptService:
    def speaker_rules(self, profile: VoiceProfile) -> list[str]:
        rules = list(profile.prompt_rules)
        if profile.flat_yes_no_penalty and FLAT_YES_NO_RULE not in rules:
            rules.append(FLAT_YES_NO_RULE)
        return rules

    def build(
        self,
        context: RequestContext,
        profile: VoiceProfile,
        examples: Sequence[RetrievalEntry] = (),
        rewrite_instruction: str = "",
    ) -> str:
        mission = _mission_progression(context)
        mission_aware = bool(mission) or (
            context.contract is not None and context.contract.mission_awareness == "explicit"
        )
        prompt = render_prompt(
            "dialogue_prompt.j2",
            {
                "character_id": context.character_id,
                "intent": context.intent,
                "function_id": context.function_id,
                "goal": context.intent_context.goal,
                "must_include": context.intent_context.must_include,
                "avoid": context.intent_context.avoid,
                "current_context": _current_context(context),
                "mission_progression": mission,
                "memory_card": _memory_card(context),
                "recent_turns": context.recent_npc_turns[-MAX_PROMPT_TURNS:],
                "contract": context.intent_context.character_contract or {},
                "examples": [
                    {
                        "line": entry.line,
                        "locationGroup": entry.location_group,
                        "tags": entry.tags[:3],
                    }
                    for entry in list(examples)[:MAX_PROMPT_EXAMPLES]
                ],
                "rewrite_instruction": rewrite_instruction,
                "mission_aware": mission_aware,
                "length_rule": profile.length_rule,
                "speaker_rules": self.speaker_rules(profile),
            },
        )
        logger.debug(
            "Prompt rendered",
            speaker=context.character_id,
            rewrite=bool(rewrite_instruction),
            chars=len(prompt),
        )
        return prompt

    def rewrite_instruction(
        self, eval_reasons: Sequence[str], guard_reasons: Sequence[str]
    ) -> str:
        return render_prompt(
            "rewrite_instruction.j2",
            {"eval_reasons": list(eval_reasons), "guard_reasons": list(guard_reasons)},
        )
