# models/dialogue_models.py
"""Pydantic models shared by the dialogue generation pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

ResponseSource = Literal["llm", "llm_regen", "cache", "fallback", "cooldown"]

CRITICAL_INTENT_MARKERS = (
    "WELCOME",
    "MISSION",
    "HINT",
    "SAFETY",
    "THREAT",
    "ESCORT",
    "STADIUM",
    "HANDOFF",
    "DISMISSAL",
)

# Soft style nudges. Reported, but never counted as hard failures.
NON_BLOCKING_REASONS = frozenset(
    {"missing_character_markers", "weak_location_anchor", "missing_humor_beat"}
)


def is_critical_intent(intent: str) -> bool:
    value = str(intent or "").upper()
    return any(marker in value for marker in CRITICAL_INTENT_MARKERS)


class FrozenModel(BaseModel):
    """Immutable base for per-request views."""

    model_config = ConfigDict(frozen=True, extra="ignore", from_attributes=True)


class IntentContext(FrozenModel):
    goal: str = ""
    must_include: list[str] = Field(default_factory=list)
    avoid: list[str] = Field(default_factory=list)
    character_contract: dict[str, Any] | None = None


class VoiceContract(FrozenModel):
    style_markers: list[str] = Field(default_factory=list)
    mission_awareness: str = ""


class SceneContext(FrozenModel):
    """Snapshot of the game state relevant to one reply.

    Unknown scene flags are kept as extra attributes.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    location: str = ""
    time_remaining_sec: float = 0
    sonic_drunk_level: int = 0
    sonic_following: bool = False
    sonic_location: str = ""
    npc_encounter_count: int = 0
    test_case_id: str = ""
    inventory: list[str] = Field(default_factory=list)
    nearby_npcs: list[str] = Field(default_factory=list)
    recent_turns: list[dict[str, Any]] = Field(default_factory=list)


class RequestContext(FrozenModel):
    """Normalized view of one generation request. Built once, never mutated."""

    character_id: str
    intent: str = "flavor"
    function_id: str = ""
    player_input: str = ""
    fallback_text: str = ""
    intent_context: IntentContext = Field(default_factory=IntentContext)
    contract: VoiceContract | None = None
    scene: SceneContext = Field(default_factory=SceneContext)
    mission_progression: dict[str, Any] = Field(default_factory=dict)
    recent_npc_turns: list[str] = Field(default_factory=list)
    npc_memory_card: dict[str, Any] | None = None
    max_sentences: int = 2
    max_chars: int = 190

    @property
    def is_critical(self) -> bool:
        return is_critical_intent(self.intent)

    @property
    def stable_seed(self) -> str:
        """Seed for deterministic content selection."""
        return (
            f"{self.character_id}:{self.player_input}:"
            f"{self.scene.time_remaining_sec:g}:"
            f"{self.scene.sonic_drunk_level}"
        )


class EvaluationReason(BaseModel):
    code: str
    dimension: str
    penalty: int = 0

    @property
    def blocking(self) -> bool:
        return self.code not in NON_BLOCKING_REASONS


class EvaluationResult(BaseModel):
    """Composite quality score for one candidate reply."""

    composite_score: int
    dimension_scores: dict[str, int] = Field(default_factory=dict)
    reasons: list[EvaluationReason] = Field(default_factory=list)
    should_regenerate: bool = False

    @property
    def reason_codes(self) -> list[str]:
        return [reason.code for reason in self.reasons]

    @property
    def blocking_reasons(self) -> list[str]:
        return [reason.code for reason in self.reasons if reason.blocking]

    def hard_failures(self, expected: set[str] | frozenset[str]) -> set[str]:
        """Blocking reasons that appear in ``expected``."""
        return {code for code in self.blocking_reasons if code in expected}


class GuardReport(BaseModel):
    """Independent repetition and novelty signals for one candidate."""

    repetitive: bool = False
    repetition_score: float = 0.0
    stale: bool = False
    overlap_score: float = 0.0
    opener_repeat_recent_turns: bool = False
    global_echo: bool = False
    global_echo_score: float = 0.0
    global_echo_threshold: float = 0.7
    opener_repeat: bool = False
    opener_key: str = ""
    cliche: bool = False
    bland: bool = False
    voice_separation_fail: bool = False
    voice_reason: str | None = None

    @property
    def any_flag(self) -> bool:
        return (
            self.repetitive
            or self.stale
            or self.global_echo
            or self.opener_repeat
            or self.cliche
            or self.bland
            or self.voice_separation_fail
        )

    def reasons(self) -> list[str]:
        out: list[str] = []
        if self.repetitive:
            out.append(f"repetition_score={self.repetition_score}")
        if self.stale:
            out.append(f"novelty_overlap={self.overlap_score}")
        if self.cliche:
            out.append("forbidden_cliche")
        if self.bland:
            out.append("generic_trade_line")
        if self.global_echo:
            out.append(f"global_echo_score={self.global_echo_score}")
        if self.opener_repeat:
            out.append(f"opener_repeat={self.opener_key}")
        if self.voice_separation_fail and self.voice_reason:
            out.append(self.voice_reason)
        return out


class GenerationResponse(BaseModel):
    """One reply as returned to the caller and persisted to the log."""

    npc_text: str
    intent: str
    time_cost_seconds: float = 0
    suggested_state_effects: dict[str, Any] = Field(default_factory=dict)
    source: ResponseSource
    provider: str | None = None
    style_score: int | None = None
    repetition_guard: bool = False
    repetition_score: float = 0.0
    novelty_guard: bool = False
    voice_guard_fail: bool = False
    latency_ms: int = 0

    def to_client(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "npc_text": self.npc_text,
            "intent": self.intent,
            "time_cost_seconds": self.time_cost_seconds,
            "suggested_state_effects": dict(self.suggested_state_effects),
            "source": self.source,
            "latency_ms": self.latency_ms,
        }
        if self.provider:
            payload["provider"] = self.provider
        if self.style_score is not None:
            payload["style_score"] = self.style_score
        return payload


@dataclass
class CooldownState:
    """Process-wide provider cooldown after quota failures."""

    cooldown_until: float = 0.0
    consecutive_quota_failures: int = 0

    def active(self, now: float) -> bool:
        return now < self.cooldown_until

    def remaining(self, now: float) -> float:
        return max(0.0, self.cooldown_until - now)

    def register_quota_failure(
        self, now: float, base_seconds: float, ceiling_seconds: float
    ) -> float:
        """Record a quota failure and return the new cooldown duration."""
        self.consecutive_quota_failures += 1
        duration = min(
            ceiling_seconds,
            base_seconds * (2 ** (self.consecutive_quota_failures - 1)),
        )
        self.cooldown_until = now + duration
        return duration

    def clear(self) -> None:
        self.cooldown_until = 0.0
        self.consecutive_quota_failures = 0
