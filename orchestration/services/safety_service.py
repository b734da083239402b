# orchestration/services/safety_service.py
"""Pass/fail content policy checks for player input and generated replies."""

from __future__ import annotations

import re
from dataclasses import dataclass

import structlog

logger = structlog.get_logger(__name__)

HARD_BLOCK_PATTERNS = (
    re.compile(r"\b(rape|forced|non-consensual|without consent)\b", re.IGNORECASE),
    re.compile(
        r"\b(underage|minor|teen|child|kid)\b.{0,40}"
        r"\b(sex|hookup|nude|blowjob|oral|harm|hurt|abuse|assault)\b",
        re.IGNORECASE,
    ),
)

INPUT_ABORT_PATTERNS = (
    re.compile(
        r"\b(kill them|i will kill|lynch|self harm|suicide|hurt myself|hurt others|"
        r"hate all|hate group|ethnic cleansing)\b",
        re.IGNORECASE,
    ),
)

SAFETY_REFUSAL_TEXT = "Nope. I am not running with that request. Try another angle."


@dataclass(frozen=True)
class SafetyVerdict:
    ok: bool
    reason: str = ""


class SafetyService:
    def check_input(self, player_input: str) -> SafetyVerdict:
        text = str(player_input or "")
        patterns = INPUT_ABORT_PATTERNS + HARD_BLOCK_PATTERNS
        if any(pattern.search(text) for pattern in patterns):
            logger.info("Player input blocked by safety patterns")
            return SafetyVerdict(ok=False, reason="input_safety_abort")
        return SafetyVerdict(ok=True)

    def check_output(self, npc_text: str) -> SafetyVerdict:
        text = str(npc_text or "")
        if any(pattern.search(text) for pattern in HARD_BLOCK_PATTERNS):
            logger.warning("Generated reply blocked by safety patterns")
            return SafetyVerdict(ok=False, reason="output_safety_abort")
        return SafetyVerdict(ok=True)
