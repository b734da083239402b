# orchestration/dialogue_orchestrator.py
"""Request lifecycle for one character-voiced reply.

safety check -> cache lookup -> acquire or join in-flight -> cooldown check
-> throttle -> first generation -> guard and evaluation -> optional single
rewrite -> finalize (style memory, recent lines, cache, logs).

All shared mutable state lives in :class:`PipelineState` and is only
touched from the event loop thread.
"""

from __future__ import annotations

import asyncio
import math
import time
from collections import deque
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog
from config import CORRECTION_LOG_PATH, INTERACTION_LOG_PATH, settings
from models import (
    CooldownState,
    EvaluationResult,
    GenerationResponse,
    GuardReport,
    RequestContext,
)

from core.errors import PipelineError, ProviderError
from core.model_router import ModelRouter
from core.providers import ProviderResult, default_adapters
from orchestration.response_cache import InFlightRegistry, ResponseCache, request_fingerprint
from orchestration.services.context_service import ContextService
from orchestration.services.fallback_service import FallbackService
from orchestration.services.prompt_service import PromptService
from orchestration.services.quality_report_service import QualityReportService
from orchestration.services.retrieval_service import RetrievalEntry, RetrievalMemory
from orchestration.services.safety_service import (
    SAFETY_REFUSAL_TEXT,
    SafetyService,
    SafetyVerdict,
)
from processing.evaluator import QualityEvaluator, StyleSignals
from processing.novelty_guard import NoveltyGuard
from processing.output_shaper import shape_reply
from processing.style_memory import StyleMemory, StyleMemoryStore
from processing.voice_profiles import (
    VoiceProfile,
    VoiceProfileRegistry,
    build_default_registry,
    render_voice,
)
from storage.interaction_log import InteractionLog
from utils.logging import setup_logging
from utils.text_processing import extract_json_from_text, normalize_character_id, short_hash

logger = structlog.get_logger(__name__)

LOGGED_TEXT_CHARS = 280
CACHEABLE_SOURCES = frozenset({"llm", "llm_regen"})


@dataclass
class PipelineState:
    """Process-wide mutable state owned by the orchestrator."""

    cache: ResponseCache
    in_flight: InFlightRegistry = field(default_factory=InFlightRegistry)
    style_memory: StyleMemoryStore = field(default_factory=StyleMemoryStore)
    recent_lines: deque[str] = field(
        default_factory=lambda: deque(maxlen=settings.GLOBAL_RECENT_LINES_LIMIT)
    )
    cooldown: CooldownState = field(default_factory=CooldownState)
    last_provider_call_at: float = float("-inf")

    def push_recent_line(self, text: str) -> None:
        line = str(text or "").strip()
        if line:
            self.recent_lines.append(line)


@dataclass
class Candidate:
    """One generated reply after shaping, voice rules and scoring."""

    text: str
    payload: dict[str, Any]
    provider: str
    safety: SafetyVerdict
    guard: GuardReport
    evaluation: EvaluationResult

    @property
    def score(self) -> int:
        return self.evaluation.composite_score

    def to_response(self, context: RequestContext, source: str) -> GenerationResponse:
        effects = self.payload.get("suggested_state_effects")
        try:
            time_cost = float(self.payload.get("time_cost_seconds") or 0)
        except (TypeError, ValueError):
            time_cost = 0.0
        return GenerationResponse(
            npc_text=self.text,
            intent=str(self.payload.get("intent") or context.intent),
            time_cost_seconds=time_cost,
            suggested_state_effects=effects if isinstance(effects, dict) else {},
            source=source,
            provider=self.provider,
            style_score=self.score,
            repetition_guard=self.guard.repetitive,
            repetition_score=self.guard.repetition_score,
            novelty_guard=self.guard.stale,
            voice_guard_fail=self.guard.voice_separation_fail,
        )


@dataclass
class RequestScope:
    """Per-request values shared by the lifecycle steps."""

    context: RequestContext
    profile: VoiceProfile
    memory: StyleMemory | None
    examples: list[RetrievalEntry]
    fingerprint: str
    started_at: float
    log_base: dict[str, Any]


class DialogueOrchestrator:
    def __init__(
        self,
        router: ModelRouter | None = None,
        *,
        registry: VoiceProfileRegistry | None = None,
        retrieval: RetrievalMemory | None = None,
        safety: SafetyService | None = None,
        interaction_log: InteractionLog | None = None,
        interaction_log_path: str = INTERACTION_LOG_PATH,
        correction_log_path: str = CORRECTION_LOG_PATH,
        throttle_seconds: float = settings.LLM_THROTTLE_SECONDS,
        cache_ttl_seconds: float = settings.LLM_CACHE_TTL_SECONDS,
        max_backoff_seconds: float = settings.LLM_MAX_BACKOFF_SECONDS,
        style_threshold: int = settings.LLM_STYLE_THRESHOLD,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.router = router or ModelRouter(default_adapters())
        self.registry = registry or build_default_registry()
        self.retrieval = retrieval or RetrievalMemory(self.registry)
        self.safety = safety or SafetyService()
        self.interaction_log = interaction_log or InteractionLog()
        self.interaction_log_path = interaction_log_path
        self.correction_log_path = correction_log_path
        self.throttle_seconds = throttle_seconds
        self.cache_ttl_seconds = cache_ttl_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.style_threshold = style_threshold
        self.regeneration_floor = max(
            settings.REGEN_THRESHOLD_FLOOR,
            style_threshold - settings.REGEN_THRESHOLD_MARGIN,
        )
        self._clock = clock
        self._sleep = sleep

        self.state = PipelineState(cache=ResponseCache(clock))
        self.context_service = ContextService()
        self.prompt_service = PromptService()
        self.fallback_service = FallbackService(self.registry)
        self.evaluator = QualityEvaluator(style_threshold)
        self.guard = NoveltyGuard()
        self.quality_service = QualityReportService(
            self.interaction_log, interaction_log_path, correction_log_path
        )

    async def init(self, *, configure_logging: bool = True) -> None:
        if configure_logging:
            setup_logging()
        await self.retrieval.load()

    async def aclose(self) -> None:
        await self.router.aclose()

    def _latency_ms(self, scope: RequestScope) -> int:
        return max(0, int(round((self._clock() - scope.started_at) * 1000)))

    async def _log_interaction(
        self, scope: RequestScope, source: str, response: GenerationResponse | None = None, **extra: Any
    ) -> None:
        record: dict[str, Any] = {**scope.log_base, "source": source}
        if response is not None:
            record.update(
                provider=response.provider,
                style_score=response.style_score,
                repetition_guard=response.repetition_guard,
                repetition_score=response.repetition_score,
                novelty_guard=response.novelty_guard,
                voice_guard_fail=response.voice_guard_fail,
                npc_text=response.npc_text[:LOGGED_TEXT_CHARS],
            )
        record.update(extra)
        record["latency_ms"] = self._latency_ms(scope)
        await self.interaction_log.append(
            self.interaction_log_path, record, f"interaction:{source}"
        )

    async def _log_correction(
        self,
        scope: RequestScope,
        model_output: str | None,
        style_score: int | None,
        reasons: Sequence[str],
        recommended: str,
    ) -> None:
        record = {
            **scope.log_base,
            "model_output": model_output,
            "style_score": style_score,
            "style_reasons": list(reasons),
            "recommended_fallback": recommended,
        }
        await self.interaction_log.append(
            self.correction_log_path, record, f"correction:{reasons[0] if reasons else 'unknown'}"
        )

    def _scope(self, body: dict[str, Any]) -> RequestScope:
        started = self._clock()
        context = self.context_service.build(body)
        limit = (
            settings.LLM_RETRIEVAL_EXAMPLES_CRITICAL
            if context.is_critical
            else settings.LLM_RETRIEVAL_EXAMPLES_DEFAULT
        )
        fingerprint = request_fingerprint(context)
        return RequestScope(
            context=context,
            profile=self.registry.get(context.character_id),
            memory=self.state.style_memory.get(context.character_id),
            examples=self.retrieval.retrieve(
                context.character_id, context.scene, context.player_input, limit
            ),
            fingerprint=fingerprint,
            started_at=started,
            log_base={
                "ts": datetime.now(timezone.utc).isoformat(),
                "request_id": short_hash(f"{fingerprint}:{time.time_ns()}"),
                "character_id": context.character_id,
                "intent": context.intent,
                "location": context.scene.location,
                "player_input": context.player_input,
            },
        )

    async def execute(self, body: dict[str, Any]) -> GenerationResponse:
        """Produce one reply. Never raises for provider or quality failures."""
        scope = self._scope(body)
        context = scope.context

        verdict = self.safety.check_input(context.player_input)
        if not verdict.ok:
            await self._log_interaction(scope, "safety_abort")
            return GenerationResponse(
                npc_text=SAFETY_REFUSAL_TEXT,
                intent="SAFETY_ABORT",
                time_cost_seconds=0,
                suggested_state_effects={"safety_abort": True},
                source="fallback",
                latency_ms=self._latency_ms(scope),
            )

        cached = self.state.cache.lookup(scope.fingerprint)
        if cached is not None:
            response = self._reformat(cached, scope)
            await self._log_interaction(scope, "cache")
            return response

        is_owner, shared = self.state.in_flight.acquire_or_join(scope.fingerprint)
        if not is_owner:
            result = await asyncio.shield(shared)
            response = self._reformat(result, scope)
            await self._log_interaction(scope, "cache", response, joined=True)
            return response

        # Detached: cancelling the caller never cancels the generation.
        task = asyncio.create_task(self._run_owner(scope))
        return await asyncio.shield(task)

    def _reformat(self, shared: GenerationResponse, scope: RequestScope) -> GenerationResponse:
        """Per-request formatting of content produced for another caller."""
        text = render_voice(
            scope.profile, shared.npc_text, scope.context, scope.memory, substitute=False
        )
        source = "cache" if shared.source in CACHEABLE_SOURCES else shared.source
        return shared.model_copy(
            update={
                "npc_text": text,
                "source": source,
                "latency_ms": self._latency_ms(scope),
            }
        )

    async def _run_owner(self, scope: RequestScope) -> GenerationResponse:
        outcome: GenerationResponse | None = None
        try:
            outcome = await self._produce(scope)
            return outcome
        finally:
            if outcome is not None:
                self.state.in_flight.settle(scope.fingerprint, result=outcome)
            else:
                self.state.in_flight.settle(
                    scope.fingerprint, error=PipelineError("generation did not complete")
                )

    async def _produce(self, scope: RequestScope) -> GenerationResponse:
        now = self._clock()
        if self.state.cooldown.active(now):
            logger.info(
                "Provider cooldown active; serving fallback",
                speaker=scope.context.character_id,
                remaining=round(self.state.cooldown.remaining(now), 2),
            )
            response = self._fallback_response(scope, "cooldown")
            self._remember(scope, response.npc_text)
            await self._log_interaction(scope, "cooldown")
            return response

        try:
            return await self._generate(scope)
        except ProviderError as exc:
            return await self._handle_provider_failure(scope, exc)

    async def _throttle(self) -> None:
        """Reserve the next provider slot, then wait for it."""
        now = self._clock()
        start = max(now, self.state.last_provider_call_at + self.throttle_seconds)
        self.state.last_provider_call_at = start
        if start > now:
            await self._sleep(start - now)

    async def _route(
        self, prompt: str, *, fast_path: bool, critical_path: bool
    ) -> ProviderResult:
        await self._throttle()
        try:
            return await self.router.route(
                prompt, fast_path=fast_path, critical_path=critical_path
            )
        finally:
            self.state.last_provider_call_at = max(
                self.state.last_provider_call_at, self._clock()
            )

    def _candidate(
        self, result: ProviderResult, scope: RequestScope
    ) -> Candidate:
        context = scope.context
        payload = extract_json_from_text(result.text) or {}
        raw = payload.get("npc_text") or result.text or ""
        shaped = shape_reply(str(raw), context.max_sentences, context.max_chars)
        text = render_voice(scope.profile, shaped, context, scope.memory)
        guard = self.guard.inspect(
            text, context, scope.memory, self.state.recent_lines, scope.profile
        )
        evaluation = self.evaluator.evaluate(
            text,
            context,
            scope.profile,
            StyleSignals(
                global_echo=guard.global_echo,
                opener_repeat=guard.opener_repeat,
                memory=scope.memory,
            ),
        )
        return Candidate(
            text=text,
            payload=payload,
            provider=result.provider,
            safety=self.safety.check_output(text),
            guard=guard,
            evaluation=evaluation,
        )

    def _needs_rewrite(self, first: Candidate) -> bool:
        return (
            not first.safety.ok
            or first.score < self.regeneration_floor
            or first.guard.any_flag
        )

    async def _generate(self, scope: RequestScope) -> GenerationResponse:
        context = scope.context
        critical = context.is_critical
        prompt = self.prompt_service.build(context, scope.profile, scope.examples)
        result = await self._route(prompt, fast_path=not critical, critical_path=critical)
        first = self._candidate(result, scope)
        response = first.to_response(context, "llm")

        if self._needs_rewrite(first):
            second = await self._rewrite(scope, first)
            if (
                second is not None
                and second.safety.ok
                and not second.guard.any_flag
                and second.score >= first.score
            ):
                logger.info(
                    "Rewrite accepted",
                    speaker=context.character_id,
                    first_score=first.score,
                    second_score=second.score,
                )
                response = second.to_response(context, "llm_regen")
            elif not first.safety.ok or first.guard.repetitive:
                logger.info(
                    "Rewrite rejected; first reply unusable, serving fallback",
                    speaker=context.character_id,
                    unsafe=not first.safety.ok,
                    repetitive=first.guard.repetitive,
                )
                return await self._reject_first(scope, first)
            else:
                logger.info(
                    "Rewrite rejected; keeping first reply",
                    speaker=context.character_id,
                    first_score=first.score,
                    second_score=second.score if second else None,
                )

        if self.state.cooldown.consecutive_quota_failures or self.state.cooldown.cooldown_until:
            logger.info("Provider cooldown cleared")
        self.state.cooldown.clear()
        return await self._finalize(scope, response)

    async def _rewrite(self, scope: RequestScope, first: Candidate) -> Candidate | None:
        instruction = self.prompt_service.rewrite_instruction(
            first.evaluation.reason_codes, first.guard.reasons()
        )
        prompt = self.prompt_service.build(
            scope.context, scope.profile, scope.examples, instruction
        )
        logger.info(
            "Requesting rewrite",
            speaker=scope.context.character_id,
            score=first.score,
            guard=first.guard.reasons(),
            unsafe=not first.safety.ok,
        )
        try:
            result = await self._route(prompt, fast_path=False, critical_path=True)
        except ProviderError as exc:
            logger.warning(
                "Rewrite call failed", speaker=scope.context.character_id, reason=exc.reason
            )
            return None
        return self._candidate(result, scope)

    def _remember(self, scope: RequestScope, text: str) -> None:
        meta = scope.profile.infer_style(text, scope.context)
        self.state.style_memory.record(
            scope.context.character_id, meta, scope.profile.style_windows
        )
        self.state.push_recent_line(text)

    async def _finalize(
        self, scope: RequestScope, response: GenerationResponse
    ) -> GenerationResponse:
        self._remember(scope, response.npc_text)
        if response.source in CACHEABLE_SOURCES:
            self.state.cache.store(
                scope.fingerprint,
                response,
                self.cache_ttl_seconds,
                scope.context.character_id,
            )
        await self._log_interaction(scope, response.source, response)
        if response.style_score is not None and response.style_score < self.style_threshold:
            recommended = self.fallback_service.build(
                scope.context, scope.examples, "quality"
            ).npc_text
            await self._log_correction(
                scope, response.npc_text, response.style_score, ["below_threshold"], recommended
            )
        return response.model_copy(update={"latency_ms": self._latency_ms(scope)})

    def _fallback_response(self, scope: RequestScope, reason: str) -> GenerationResponse:
        fallback = self.fallback_service.build(scope.context, scope.examples, reason)
        text = render_voice(scope.profile, fallback.npc_text, scope.context, scope.memory)
        return fallback.model_copy(
            update={"npc_text": text, "latency_ms": self._latency_ms(scope)}
        )

    async def _reject_first(self, scope: RequestScope, first: Candidate) -> GenerationResponse:
        reason = "output_safety_abort" if not first.safety.ok else "repetition_guard"
        response = self._fallback_response(scope, reason)
        self._remember(scope, response.npc_text)
        await self._log_interaction(scope, "fallback", response, reason=reason)
        await self._log_correction(
            scope, first.text, first.score, [reason, *first.guard.reasons()], response.npc_text
        )
        return response

    async def _handle_provider_failure(
        self, scope: RequestScope, exc: ProviderError
    ) -> GenerationResponse:
        if exc.is_quota:
            duration = self.state.cooldown.register_quota_failure(
                self._clock(), self.throttle_seconds, self.max_backoff_seconds
            )
            logger.warning(
                "Provider quota exhausted; cooldown set",
                provider=exc.provider,
                failures=self.state.cooldown.consecutive_quota_failures,
                cooldown_seconds=round(duration, 3),
            )
        else:
            logger.warning(
                "Provider call failed; serving fallback",
                provider=exc.provider,
                reason=exc.reason,
                kind=exc.kind,
            )
        response = self._fallback_response(scope, exc.reason)
        self._remember(scope, response.npc_text)
        await self._log_interaction(scope, "fallback", response, reason=exc.reason)
        await self._log_correction(scope, None, None, [exc.reason], response.npc_text)
        return response

    def health(self) -> dict[str, Any]:
        now = self._clock()
        return {
            "ok": True,
            "primary_provider": self.router.primary,
            "providers": {
                adapter.provider_id: adapter.is_configured() for adapter in self.router.adapters
            },
            **self.retrieval.stats(),
            "cache_size": len(self.state.cache),
            "inflight_requests": len(self.state.in_flight),
            "cooldown_seconds": math.ceil(self.state.cooldown.remaining(now)),
            "consecutive_quota_failures": self.state.cooldown.consecutive_quota_failures,
            "log_write_errors": self.interaction_log.write_errors,
            "last_log_write_error_at": self.interaction_log.last_error_at,
            "throttle_seconds": self.throttle_seconds,
            "fetch_timeout_seconds": self.router.call_timeout,
            "cache_ttl_seconds": self.cache_ttl_seconds,
            "style_threshold": self.style_threshold,
            "regeneration_floor": self.regeneration_floor,
        }

    async def quality(self, limit: int = settings.QUALITY_REPORT_WINDOW) -> dict[str, Any]:
        return await self.quality_service.build(limit)

    def clear_character_cache(self, character_id: str) -> int:
        speaker = normalize_character_id(character_id)
        if not speaker:
            return 0
        return self.state.cache.invalidate_speaker(speaker)
