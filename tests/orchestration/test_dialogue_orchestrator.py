import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from core.errors import ProviderError
from orchestration.services.safety_service import SAFETY_REFUSAL_TEXT
from storage.interaction_log import read_jsonl_tail

GOOD = "The quad route is open, so move now!"
FRESH = "Grab the blue door by the quad fountain, quick!"
LUIGI_FALLBACKS = (
    "I can hear you. Be respectful and I'll help.",
    "Say one nice thing and I give routes.",
)


def reply(text, intent="flavor"):
    return json.dumps({"npc_text": text, "intent": intent, "time_cost_seconds": 2})


def body(player_input="hello there", **overrides):
    payload = {
        "character_id": "luigi",
        "intent": "flavor",
        "player_input": player_input,
        "current_context": {"location": "quad", "time_remaining_sec": 300},
    }
    payload.update(overrides)
    return payload


def log_rows(orchestrator):
    return read_jsonl_tail(orchestrator.interaction_log_path, 100)


def correction_rows(orchestrator):
    return read_jsonl_tail(orchestrator.correction_log_path, 100)


@pytest.mark.asyncio
async def test_good_reply_is_served_from_llm(fake_adapter, make_orchestrator):
    openai = fake_adapter("openai", [reply(GOOD)])
    orchestrator = make_orchestrator(openai)
    response = await orchestrator.execute(body())

    assert response.source == "llm"
    assert response.npc_text == GOOD
    assert response.provider == "openai"
    assert response.style_score == 100
    assert response.time_cost_seconds == 2
    assert len(openai.calls) == 1
    assert [row["source"] for row in log_rows(orchestrator)] == ["llm"]
    assert correction_rows(orchestrator) == []


@pytest.mark.asyncio
async def test_concurrent_identical_requests_share_one_call(fake_adapter, make_orchestrator):
    openai = fake_adapter("openai", [reply(GOOD)], delay=0.05)
    orchestrator = make_orchestrator(openai)
    first, second = await asyncio.gather(orchestrator.execute(body()), orchestrator.execute(body()))

    assert len(openai.calls) == 1
    assert {first.source, second.source} == {"llm", "cache"}
    assert first.npc_text == second.npc_text == GOOD
    assert len(orchestrator.state.in_flight) == 0
    joined = [row for row in log_rows(orchestrator) if row.get("joined")]
    assert len(joined) == 1


@pytest.mark.asyncio
async def test_cache_entries_expire_after_ttl(fake_adapter, fake_clock, make_orchestrator):
    openai = fake_adapter("openai", [reply(GOOD), reply(FRESH)])
    orchestrator = make_orchestrator(openai, cache_ttl_seconds=10, clock=fake_clock)

    assert (await orchestrator.execute(body())).source == "llm"
    cached = await orchestrator.execute(body())
    assert cached.source == "cache"
    assert cached.npc_text == GOOD
    assert len(openai.calls) == 1

    fake_clock.advance(11)
    refreshed = await orchestrator.execute(body())
    assert refreshed.source == "llm"
    assert refreshed.npc_text == FRESH
    assert len(openai.calls) == 2


@pytest.mark.asyncio
async def test_repeated_reply_falls_back_after_failed_rewrite(fake_adapter, make_orchestrator):
    openai = fake_adapter("openai", [reply(GOOD)])
    orchestrator = make_orchestrator(openai)
    request = body(recent_turns=[{"speaker": "luigi", "text": GOOD}])
    response = await orchestrator.execute(request)

    assert len(openai.calls) == 2
    assert response.source == "fallback"
    assert response.suggested_state_effects == {"fallback_reason": "repetition_guard"}
    assert response.npc_text in LUIGI_FALLBACKS
    corrections = correction_rows(orchestrator)
    assert corrections[0]["style_reasons"][0] == "repetition_guard"
    assert corrections[0]["model_output"] == GOOD

    # Fallbacks are never cached.
    assert len(orchestrator.state.cache) == 0


@pytest.mark.asyncio
async def test_fresh_rewrite_replaces_repeated_reply(fake_adapter, make_orchestrator):
    openai = fake_adapter("openai", [reply(GOOD), reply(FRESH)])
    orchestrator = make_orchestrator(openai)
    request = body(recent_turns=[{"speaker": "luigi", "text": GOOD}])
    response = await orchestrator.execute(request)

    assert response.source == "llm_regen"
    assert response.npc_text == FRESH
    assert len(openai.calls) == 2
    assert "REWRITE:" in openai.calls[1]
    assert (await orchestrator.execute(request)).source == "cache"


@pytest.mark.asyncio
async def test_unsafe_output_falls_back(fake_adapter, make_orchestrator):
    openai = fake_adapter("openai", [reply("That was forced and without consent.")])
    orchestrator = make_orchestrator(openai)
    response = await orchestrator.execute(body())

    assert response.source == "fallback"
    assert response.suggested_state_effects == {"fallback_reason": "output_safety_abort"}
    assert len(openai.calls) == 2


@pytest.mark.asyncio
async def test_failed_rewrite_call_keeps_first_reply(fake_adapter, make_orchestrator):
    openai = fake_adapter(
        "openai",
        [reply(GOOD), reply(GOOD), ProviderError.from_status(401, provider="openai")],
    )
    orchestrator = make_orchestrator(openai)
    await orchestrator.execute(body("first question"))
    response = await orchestrator.execute(body("second question"))

    assert len(openai.calls) == 3
    assert response.source == "llm"
    assert response.npc_text == GOOD


@pytest.mark.asyncio
async def test_unsafe_input_aborts_without_provider_call(fake_adapter, make_orchestrator):
    openai = fake_adapter("openai", [reply(GOOD)])
    orchestrator = make_orchestrator(openai)
    response = await orchestrator.execute(body("i will kill them all"))

    assert openai.calls == []
    assert response.npc_text == SAFETY_REFUSAL_TEXT
    assert response.intent == "SAFETY_ABORT"
    assert response.source == "fallback"
    assert [row["source"] for row in log_rows(orchestrator)] == ["safety_abort"]


@pytest.mark.asyncio
async def test_quota_failure_starts_cooldown(fake_adapter, fake_clock, make_orchestrator):
    openai = fake_adapter("openai", [ProviderError.from_status(429, provider="openai")])
    gemini = fake_adapter("gemini", [ProviderError.from_status(429, provider="gemini")])
    sleep = AsyncMock()
    orchestrator = make_orchestrator(
        openai, gemini, throttle_seconds=5, clock=fake_clock, sleep=sleep
    )
    request = body(intent="MISSION_HANDOFF")

    failed = await orchestrator.execute(request)
    assert failed.source == "fallback"
    assert failed.intent == "MISSION_HANDOFF"
    assert failed.suggested_state_effects == {"fallback_reason": "quota_429"}
    assert len(openai.calls) == 1
    assert len(gemini.calls) == 1

    cooled = await orchestrator.execute(request)
    assert cooled.source == "cooldown"
    assert len(openai.calls) == 1
    health = orchestrator.health()
    assert health["cooldown_seconds"] == 5
    assert health["consecutive_quota_failures"] == 1

    fake_clock.advance(6)
    await orchestrator.execute(request)
    assert len(openai.calls) == 2
    assert orchestrator.health()["cooldown_seconds"] == 10
    sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_success_clears_cooldown(fake_adapter, fake_clock, make_orchestrator):
    openai = fake_adapter("openai", [ProviderError.from_status(429, provider="openai"), reply(GOOD)])
    orchestrator = make_orchestrator(
        openai, throttle_seconds=5, clock=fake_clock, sleep=AsyncMock()
    )
    assert (await orchestrator.execute(body())).source == "fallback"
    fake_clock.advance(6)
    assert (await orchestrator.execute(body())).source == "llm"
    health = orchestrator.health()
    assert health["consecutive_quota_failures"] == 0
    assert health["cooldown_seconds"] == 0


@pytest.mark.asyncio
async def test_provider_calls_are_throttled(fake_adapter, fake_clock, make_orchestrator):
    openai = fake_adapter("openai", [reply(GOOD), reply(FRESH)])
    sleep = AsyncMock()
    orchestrator = make_orchestrator(openai, throttle_seconds=5, clock=fake_clock, sleep=sleep)
    await orchestrator.execute(body("first"))
    fake_clock.advance(2)
    await orchestrator.execute(body("second"))
    sleep.assert_awaited_once_with(3)


@pytest.mark.asyncio
async def test_concurrent_distinct_requests_are_spaced(fake_adapter, fake_clock, make_orchestrator):
    openai = fake_adapter("openai", [reply(GOOD), reply(FRESH)])
    sleep = AsyncMock()
    orchestrator = make_orchestrator(openai, throttle_seconds=5, clock=fake_clock, sleep=sleep)
    first, second = await asyncio.gather(
        orchestrator.execute(body("first")), orchestrator.execute(body("second"))
    )

    assert len(openai.calls) == 2
    assert {first.npc_text, second.npc_text} == {GOOD, FRESH}
    sleep.assert_awaited_once_with(5)


@pytest.mark.asyncio
async def test_cooldown_reply_updates_recent_lines(fake_adapter, fake_clock, make_orchestrator):
    openai = fake_adapter("openai", [ProviderError.from_status(429, provider="openai")])
    orchestrator = make_orchestrator(
        openai, throttle_seconds=5, clock=fake_clock, sleep=AsyncMock()
    )
    assert (await orchestrator.execute(body("first"))).source == "fallback"
    before = len(orchestrator.state.recent_lines)

    cooled = await orchestrator.execute(body("second"))
    assert cooled.source == "cooldown"
    assert len(orchestrator.state.recent_lines) == before + 1
    assert orchestrator.state.recent_lines[-1] == cooled.npc_text


@pytest.mark.asyncio
async def test_cancelled_caller_still_fills_cache(fake_adapter, make_orchestrator):
    openai = fake_adapter("openai", [reply(GOOD)], delay=0.05)
    orchestrator = make_orchestrator(openai)
    caller = asyncio.create_task(orchestrator.execute(body()))
    await asyncio.sleep(0.01)
    caller.cancel()
    with pytest.raises(asyncio.CancelledError):
        await caller
    await asyncio.sleep(0.1)

    response = await orchestrator.execute(body())
    assert response.source == "cache"
    assert len(openai.calls) == 1


@pytest.mark.asyncio
async def test_low_score_reply_writes_correction_row(fake_adapter, make_orchestrator):
    openai = fake_adapter("openai", [reply("Stay calm, move on.")])
    orchestrator = make_orchestrator(openai, style_threshold=100)
    response = await orchestrator.execute(body())

    assert response.source == "llm"
    assert response.style_score == 97
    corrections = correction_rows(orchestrator)
    assert corrections[0]["style_reasons"] == ["below_threshold"]
    assert corrections[0]["recommended_fallback"] in LUIGI_FALLBACKS


@pytest.mark.asyncio
async def test_log_write_failures_are_counted(fake_adapter, make_orchestrator, tmp_path):
    openai = fake_adapter("openai", [reply(GOOD)])
    orchestrator = make_orchestrator(openai, interaction_log_path=str(tmp_path))
    response = await orchestrator.execute(body())

    assert response.source == "llm"
    health = orchestrator.health()
    assert health["log_write_errors"] >= 1
    assert health["last_log_write_error_at"] is not None


@pytest.mark.asyncio
async def test_clear_character_cache(fake_adapter, make_orchestrator):
    openai = fake_adapter("openai", [reply(GOOD), reply(FRESH)])
    orchestrator = make_orchestrator(openai)
    await orchestrator.execute(body())
    assert orchestrator.clear_character_cache("Luigi") == 1
    assert orchestrator.clear_character_cache("") == 0
    await orchestrator.execute(body())
    assert len(openai.calls) == 2


@pytest.mark.asyncio
async def test_health_and_quality_report(fake_adapter, make_orchestrator):
    openai = fake_adapter("openai", [reply(GOOD)])
    orchestrator = make_orchestrator(openai, style_threshold=56)
    await orchestrator.execute(body())
    await orchestrator.execute(body())

    health = orchestrator.health()
    assert health["ok"] is True
    assert health["primary_provider"] == "openai"
    assert health["providers"] == {"openai": True}
    assert health["cache_size"] == 1
    assert health["inflight_requests"] == 0
    assert health["regeneration_floor"] == 42
    assert health["retrieval_ready"] is False

    report = await orchestrator.quality()
    assert report["window_rows"] == 2
    assert report["source_counts"] == {"llm": 1, "cache": 1}
    assert report["per_character"]["luigi"]["rows"] == 2


@pytest.mark.asyncio
async def test_aclose_closes_router(fake_adapter, make_orchestrator):
    openai = fake_adapter("openai", [reply(GOOD)])
    orchestrator = make_orchestrator(openai)
    await orchestrator.aclose()
    assert openai.closed


@pytest.mark.asyncio
async def test_init_configures_logging_and_loads_retrieval(fake_adapter, make_orchestrator, monkeypatch, tmp_path):
    import orchestration.dialogue_orchestrator as dialogue_orchestrator
    from orchestration.services.retrieval_service import RetrievalMemory
    from processing.voice_profiles import build_default_registry

    calls = []
    monkeypatch.setattr(dialogue_orchestrator, "setup_logging", lambda: calls.append("setup"))
    retrieval = RetrievalMemory(build_default_registry(), str(tmp_path / "missing.json"))
    orchestrator = make_orchestrator(fake_adapter("openai", [reply(GOOD)]), retrieval=retrieval)

    await orchestrator.init()
    assert calls == ["setup"]
    assert retrieval.entries == []

    await orchestrator.init(configure_logging=False)
    assert calls == ["setup"]
