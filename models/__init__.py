"""Central package for dialogue pipeline data models."""

from .dialogue_models import (
    CooldownState,
    EvaluationReason,
    EvaluationResult,
    GenerationResponse,
    GuardReport,
    IntentContext,
    RequestContext,
    SceneContext,
    VoiceContract,
    is_critical_intent,
)

__all__ = [
    "CooldownState",
    "EvaluationReason",
    "EvaluationResult",
    "GenerationResponse",
    "GuardReport",
    "IntentContext",
    "RequestContext",
    "SceneContext",
    "VoiceContract",
    "is_critical_intent",
]
