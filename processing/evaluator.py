# processing/evaluator.py
"""Composite quality scoring for candidate replies.

Four sub-scores start at 100 and lose fixed penalties per failed rule:

* style (0.45): length, assistant phrasing, voice markers, speaker tics and
  repetition signals supplied by the caller
* intent (0.24): must-include concept groups and avoid terms
* anchor (0.16): scene vocabulary and direct answers to state questions
* humor (0.15): at least one engagement beat unless the goal is safety
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass

import structlog
from config import settings
from models import EvaluationReason, EvaluationResult, RequestContext

from processing.style_memory import StyleMemory
from processing.voice_profiles import VoiceProfile
from utils.text_processing import count_sentences, count_words, normalize_for_similarity

logger = structlog.get_logger(__name__)

WEIGHTS = {"style": 0.45, "intent": 0.24, "anchor": 0.16, "humor": 0.15}

GENERIC_ASSISTANT_PHRASES = ("as an ai", "i apologize", "i appreciate your request")

MARKER_VARIANTS: dict[str, list[str]] = {
    "reckless": ["reckless", "chaos", "wild", "bad decision"],
    "nightlife": ["nightlife", "party", "drink", "booze", "afterhours"],
    "celebrity": ["celebrity", "famous", "status", "spotlight"],
    "excess": ["excess", "overspend", "overkill", "too much"],
    "compliance": ["comply", "no deal", "not moving", "withhold", "gate"],
    "direct": ["direct", "straight", "cut to", "clear"],
    "mission": ["mission", "objective", "task", "route"],
    "frustrated": ["frustrated", "annoyed", "over it", "done waiting"],
    "hint": ["hint", "clue", "pointer", "best guess"],
    "single": ["single", "one move", "one step"],
    "challenge": ["challenge", "prove", "stand", "test"],
    "trade": ["trade", "deal", "condition", "swap"],
    "gross": ["gross", "filthy", "grime", "dirty", "bad decision"],
    "confessional": ["confession", "i did", "i once", "my bad"],
    "respect": ["respect", "careful", "warning", "consequence"],
    "direction": ["direction", "route", "move", "next step"],
    "results": ["results", "clock", "execute", "mission"],
}

INTENT_VARIANTS: dict[str, list[str]] = {
    "id": ["id", "student id", "clearance", "badge"],
    "clearance": ["clearance", "id", "student id", "authorized"],
    "move": ["move", "go", "head", "hustle", "dash", "push"],
    "route": ["route", "path", "track", "way", "lane", "line"],
    "mission": ["mission", "objective", "task", "goal", "stadium", "execute"],
    "finish": ["finish", "complete", "done", "wrap"],
    "trade": ["trade", "deal", "swap", "condition"],
    "respect": ["respect", "careful", "warning", "consequence"],
    "drink": ["drink", "booze", "shot", "buzzed"],
    "challenge": ["challenge", "callout", "prove", "play"],
    "escort": ["escort", "follow", "walk", "bring"],
    "taunt": ["taunt", "jab", "roast", "clown", "prove", "callout", "trash talk"],
    "short": ["short", "brief", "quick", "one line"],
    "cadence": ["cadence", "trainin and gainin", "movin and provin", "swingin and bringin"],
    "single": ["single", "one", "exactly one"],
    "social": ["social", "status", "vibe", "image"],
    "flex": ["flex", "brag", "ego", "show off"],
    "spin": ["spin", "frame", "reframe", "sell it"],
    "ego": ["ego", "genius", "superior", "smug"],
}

LOCATION_LEXEMES: dict[str, list[str]] = {
    "dean_office": ["dean", "office", "desk", "clock"],
    "quad": ["quad", "campus", "route"],
    "frat": ["frat", "pong", "house"],
    "tunnel": ["tunnel", "trade", "deal", "wine"],
    "stadium": ["stadium", "gate", "entry"],
}

MISSION_ANCHOR_RE = re.compile(
    r"(mission|route|stadium|move|trade|escort|\bid\b|objective|next step)", re.IGNORECASE
)
STATE_QUERY_PATTERNS = (
    re.compile(r"\bwhere(?:'s|\s+is|\s+are|\s+did|\s+was)?\s+(?:the\s+)?(?P<subject>[a-z_]+)"),
    re.compile(r"\b(?:find|seen|spotted)\s+(?:the\s+)?(?P<subject>[a-z_]+)"),
)
_STATE_QUERY_STOPWORDS = frozenset(
    {"you", "are", "the", "now", "can", "should", "did", "was", "his", "her", "him", "them"}
)
ANSWER_SIGNALS = (
    "here",
    "not here",
    "frat",
    "dorm",
    "cafeteria",
    "quad",
    "stadium",
    "tunnel",
    "office",
    "location",
    "find",
    "challenge",
)
DISCOURSE_MARKERS_RE = re.compile(r"(plot twist|quick note|anyway|listen|right,)", re.IGNORECASE)
ATTITUDE_RE = re.compile(r"(seriously|obviously|tragically|bold move|nice try)", re.IGNORECASE)


def _concept_variants(term: str, table: dict[str, list[str]], min_token: int) -> list[str]:
    value = str(term or "").lower().strip()
    tokens = [token for token in value.split() if len(token) >= min_token]
    variants = [value, *tokens]
    for token in tokens:
        variants.extend(table.get(token, []))
    return [variant for variant in dict.fromkeys(variants) if variant]


def marker_variants(marker: str) -> list[str]:
    return _concept_variants(marker, MARKER_VARIANTS, 4)


def intent_variants(term: str) -> list[str]:
    return _concept_variants(term, INTENT_VARIANTS, 3)


def state_query_subject(player_input: str) -> str | None:
    """Subject of a direct whereabouts question, if the input is one."""
    lowered = str(player_input or "").lower()
    for pattern in STATE_QUERY_PATTERNS:
        for match in pattern.finditer(lowered):
            subject = match.group("subject")
            if len(subject) >= 3 and subject not in _STATE_QUERY_STOPWORDS:
                return subject
    return None


@dataclass(frozen=True)
class StyleSignals:
    """Repetition signals passed in by the caller."""

    global_echo: bool = False
    opener_repeat: bool = False
    memory: StyleMemory | None = None


class QualityEvaluator:
    def __init__(self, threshold: int = settings.LLM_STYLE_THRESHOLD) -> None:
        self.threshold = threshold

    def score_style(
        self, text: str, profile: VoiceProfile, contract_markers: list[str], signals: StyleSignals
    ) -> tuple[int, list[EvaluationReason]]:
        lower = str(text or "").lower()
        penalties: list[tuple[str, int]] = []
        if count_sentences(text) > 2:
            penalties.append(("too_many_sentences", 24))
        if count_words(text) > 34:
            penalties.append(("too_wordy_mobile", 12))
        if any(phrase in lower for phrase in GENERIC_ASSISTANT_PHRASES):
            penalties.append(("generic_assistant_voice", 24))
        if contract_markers and not any(
            variant in lower for marker in contract_markers for variant in marker_variants(marker)
        ):
            penalties.append(("missing_character_markers", 8))
        penalties.extend(profile.style_penalties(text))
        if signals.global_echo:
            penalties.append(("global_echo_repeat", 12))
        if signals.opener_repeat:
            penalties.append(("repeated_first_three_tokens", 10))
        last_pattern = signals.memory.last_pattern if signals.memory else ""
        if last_pattern and last_pattern.replace("_", " ") in lower:
            penalties.append(("repeated_structure_pattern", 8))
        return self._tally("style", penalties)

    def score_intent(
        self, text: str, must_include: list[str], avoid: list[str]
    ) -> tuple[int, list[EvaluationReason]]:
        lower = str(text or "").lower()
        penalties: list[tuple[str, int]] = []
        for group in must_include:
            alternatives = [
                normalize_for_similarity(part)
                for part in str(group or "").lower().split("|")
                if normalize_for_similarity(part)
            ]
            if not alternatives:
                continue
            matched = any(
                len(variant) > 1 and variant in lower
                for term in alternatives
                for variant in intent_variants(term)
            )
            if not matched:
                code = "_or_".join(alternatives).replace(" ", "_")
                penalties.append((f"missing_intent_{code}", 14))
        for raw in avoid:
            term = normalize_for_similarity(raw)
            if not term:
                continue
            tokens = term.split(" ")
            if len(tokens) >= 2:
                hit = term in lower
            else:
                hit = any(len(token) > 3 and token in lower for token in tokens)
            if hit:
                penalties.append((f"violates_avoid_{term.replace(' ', '_')}", 22))
        return self._tally("intent", penalties)

    def score_anchor(
        self, text: str, context: RequestContext
    ) -> tuple[int, list[EvaluationReason]]:
        lower = str(text or "").lower()
        penalties: list[tuple[str, int]] = []
        lexemes = LOCATION_LEXEMES.get(context.scene.location.lower(), [])
        if lexemes and not any(token in lower for token in lexemes):
            must_include = [
                normalize_for_similarity(term) for term in context.intent_context.must_include
            ]
            has_must_include = any(term and term in lower for term in must_include)
            if not MISSION_ANCHOR_RE.search(lower) and not has_must_include:
                penalties.append(("weak_location_anchor", 8))
        subject = state_query_subject(context.player_input)
        if subject and not any(signal in lower for signal in (subject, *ANSWER_SIGNALS)):
            penalties.append(("generic_response_on_state_specific_question", 18))
        return self._tally("anchor", penalties)

    def score_humor(self, text: str, goal: str) -> tuple[int, list[EvaluationReason]]:
        if "safety" in str(goal or "").lower():
            return 100, []
        lower = str(text or "").lower()
        signals = (
            bool(DISCOURSE_MARKERS_RE.search(lower)),
            bool(ATTITUDE_RE.search(lower)),
            "!" in lower or "?" in lower,
        )
        penalties = [] if any(signals) else [("missing_humor_beat", 20)]
        return self._tally("humor", penalties)

    @staticmethod
    def _tally(
        dimension: str, penalties: list[tuple[str, int]]
    ) -> tuple[int, list[EvaluationReason]]:
        score = max(0, 100 - sum(penalty for _, penalty in penalties))
        reasons = [
            EvaluationReason(code=code, dimension=dimension, penalty=penalty)
            for code, penalty in penalties
        ]
        return score, reasons

    def evaluate(
        self,
        text: str,
        context: RequestContext,
        profile: VoiceProfile,
        signals: StyleSignals | None = None,
        threshold: int | None = None,
    ) -> EvaluationResult:
        signals = signals or StyleSignals()
        limit = self.threshold if threshold is None else threshold
        markers = context.contract.style_markers if context.contract else []
        style, style_reasons = self.score_style(text, profile, markers, signals)
        intent, intent_reasons = self.score_intent(
            text, context.intent_context.must_include, context.intent_context.avoid
        )
        anchor, anchor_reasons = self.score_anchor(text, context)
        humor, humor_reasons = self.score_humor(text, context.intent_context.goal)
        scores = {"style": style, "intent": intent, "anchor": anchor, "humor": humor}
        blended = sum(scores[name] * weight for name, weight in WEIGHTS.items())
        composite = min(100, max(0, math.floor(blended + 0.5)))
        return EvaluationResult(
            composite_score=composite,
            dimension_scores=scores,
            reasons=style_reasons + intent_reasons + anchor_reasons + humor_reasons,
            should_regenerate=composite < limit,
        )
