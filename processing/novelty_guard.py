# processing/novelty_guard.py
"""Repetition and novelty signals for candidate replies.

All checks are pure functions over the candidate text, the speaker's
recent turns, the global recent-line buffer and the speaker's style
memory. :class:`NoveltyGuard` bundles them into one
:class:`models.GuardReport`.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from typing import TYPE_CHECKING, TypeVar

import structlog
from models import GuardReport, RequestContext
from rapidfuzz import fuzz

from processing.style_memory import StyleMemory
from utils.text_processing import (
    hash_index,
    jaccard_similarity,
    normalize_for_similarity,
    opener_key,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from processing.voice_profiles import VoiceProfile

logger = structlog.get_logger(__name__)

T = TypeVar("T")

REPETITION_THRESHOLD = 0.74
STALE_THRESHOLD = 0.66
GLOBAL_ECHO_THRESHOLD = 0.70
RECENT_TURN_WINDOW = 2
OPENER_WINDOW = 3
CLICHE_MATCH_SCORE = 92


def seeded_pick(seed: str, values: Sequence[T]) -> T | None:
    if not values:
        return None
    return values[hash_index(seed, len(values))]


def seeded_pick_with_avoid(
    seed: str, entries: Sequence[T], is_avoided: Callable[[T], bool]
) -> T | None:
    """Pick an entry deterministically, skipping avoided ones.

    The seed hashes to a start index; entries are probed linearly from
    there. When every entry is avoided the start entry is returned anyway.
    """
    if not entries:
        return None
    start = hash_index(seed, len(entries))
    for step in range(len(entries)):
        candidate = entries[(start + step) % len(entries)]
        if not is_avoided(candidate):
            return candidate
    return entries[start]


def _recent(lines: Iterable[str], window: int) -> list[str]:
    normalized = [normalize_for_similarity(line) for line in lines]
    return [line for line in normalized if line][-window:]


def repetition_check(text: str, recent_turns: Sequence[str]) -> tuple[bool, float]:
    line = normalize_for_similarity(text)
    if not line:
        return False, 0.0
    score = max(
        (jaccard_similarity(line, prior) for prior in _recent(recent_turns, RECENT_TURN_WINDOW)),
        default=0.0,
    )
    score = round(score, 3)
    return score >= REPETITION_THRESHOLD, score


def novelty_check(text: str, recent_turns: Sequence[str]) -> tuple[bool, bool, float]:
    """Return ``(stale, opener_repeat, overlap_score)``."""
    line = normalize_for_similarity(text)
    if not line:
        return False, False, 0.0
    opener = opener_key(line, 4)
    recent = _recent(recent_turns, RECENT_TURN_WINDOW)
    opener_repeat = any(opener_key(prior, 4) == opener for prior in recent)
    overlap = round(max((jaccard_similarity(line, prior) for prior in recent), default=0.0), 3)
    return opener_repeat or overlap >= STALE_THRESHOLD, opener_repeat, overlap


def global_echo_check(
    text: str, recent_lines: Iterable[str], threshold: float = GLOBAL_ECHO_THRESHOLD
) -> tuple[bool, float]:
    line = normalize_for_similarity(text)
    if not line:
        return False, 0.0
    score = round(
        max((jaccard_similarity(line, prior) for prior in recent_lines), default=0.0), 3
    )
    return score >= threshold, score


def opener_repeat_check(text: str, recent_opener_keys: Sequence[str]) -> tuple[bool, str]:
    key = opener_key(text)
    if not key:
        return False, key
    return key in list(recent_opener_keys)[-OPENER_WINDOW:], key


def cliche_check(text: str, phrases: Iterable[str]) -> bool:
    """Fuzzy match against forbidden stock phrases."""
    line = normalize_for_similarity(text)
    if not line:
        return False
    for phrase in phrases:
        target = normalize_for_similarity(phrase)
        if target and fuzz.partial_ratio(target, line) >= CLICHE_MATCH_SCORE:
            return True
    return False


class NoveltyGuard:
    """Compute every guard signal for one candidate reply."""

    def inspect(
        self,
        text: str,
        context: RequestContext,
        memory: StyleMemory | None,
        global_lines: Iterable[str],
        profile: VoiceProfile,
    ) -> GuardReport:
        repetitive, repetition_score = repetition_check(text, context.recent_npc_turns)
        stale, opener_recent, overlap = novelty_check(text, context.recent_npc_turns)
        echoed, echo_score = global_echo_check(
            text, global_lines, profile.echo_threshold
        )
        opener_repeat, key = opener_repeat_check(
            text, memory.recent_opening_keys if memory else []
        )
        voice_reason = profile.voice_separation_reason(text)
        report = GuardReport(
            repetitive=repetitive,
            repetition_score=repetition_score,
            stale=stale,
            overlap_score=overlap,
            opener_repeat_recent_turns=opener_recent,
            global_echo=echoed,
            global_echo_score=echo_score,
            global_echo_threshold=profile.echo_threshold,
            opener_repeat=opener_repeat,
            opener_key=key,
            cliche=cliche_check(text, profile.cliche_phrases),
            bland=profile.is_bland(text),
            voice_separation_fail=voice_reason is not None,
            voice_reason=voice_reason,
        )
        if report.any_flag:
            logger.debug(
                "Guard flags raised",
                speaker=context.character_id,
                reasons=report.reasons(),
            )
        return report
