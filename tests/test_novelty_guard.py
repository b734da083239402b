from models import RequestContext, SceneContext
from processing.novelty_guard import (
    NoveltyGuard,
    cliche_check,
    global_echo_check,
    novelty_check,
    opener_repeat_check,
    repetition_check,
    seeded_pick,
    seeded_pick_with_avoid,
)
from processing.style_memory import StyleMemory
from processing.voice_profiles import FratBoysProfile, ThunderheadProfile, VoiceProfile


def test_repetition_check_flags_near_duplicate():
    repetitive, score = repetition_check(
        "The quad route is open, move now!", ["the quad route is open. Move now."]
    )
    assert repetitive is True
    assert score == 1.0


def test_repetition_check_only_looks_at_last_two_turns():
    turns = ["The quad route is open, move now!", "Pizza first.", "Nap later."]
    repetitive, _ = repetition_check("The quad route is open, move now!", turns)
    assert repetitive is False


def test_novelty_check_detects_opener_match():
    stale, opener_repeat, overlap = novelty_check(
        "Listen up kid, the stadium waits.", ["Listen up kid, the snack line moves."]
    )
    assert stale is True
    assert opener_repeat is True
    assert overlap < 0.66


def test_global_echo_respects_threshold():
    lines = ["bring the badge to the dean office right now"]
    echoed, score = global_echo_check("Bring the badge to the dean office now", lines)
    assert echoed is True
    assert score >= 0.7
    echoed, _ = global_echo_check("Totally different words here", lines)
    assert echoed is False


def test_opener_repeat_uses_last_three_keys():
    repeated, key = opener_repeat_check("Not to brag, but yes.", ["not to brag", "a b c", "d e f"])
    assert repeated is True
    assert key == "not to brag"
    repeated, _ = opener_repeat_check(
        "Not to brag, but yes.", ["not to brag", "a b c", "d e f", "g h i"]
    )
    assert repeated is False


def test_cliche_check_is_fuzzy():
    phrases = FratBoysProfile.cliche_phrases
    assert cliche_check("Yo, bring a stunt, a rumor or a challenge!", phrases) is True
    assert cliche_check("The pong table is open.", phrases) is False


def test_seeded_pick_is_deterministic():
    values = ["a", "b", "c", "d"]
    assert seeded_pick("seed", values) == seeded_pick("seed", values)
    assert seeded_pick("seed", []) is None


def test_seeded_pick_with_avoid_skips_avoided_entries():
    values = ["a", "b", "c", "d"]
    start = seeded_pick("seed", values)
    picked = seeded_pick_with_avoid("seed", values, lambda value: value == start)
    assert picked != start
    assert picked == values[(values.index(start) + 1) % len(values)]


def test_seeded_pick_with_avoid_falls_back_to_start_entry():
    values = ["a", "b", "c"]
    start = seeded_pick("seed", values)
    assert seeded_pick_with_avoid("seed", values, lambda _value: True) == start


def _context(**kwargs):
    return RequestContext(character_id="thunderhead", scene=SceneContext(location="tunnel"), **kwargs)


def test_guard_report_collects_profile_signals():
    guard = NoveltyGuard()
    report = guard.inspect(
        "Trade me the right item and we deal.",
        _context(recent_npc_turns=["Trade me the right item and we deal."]),
        StyleMemory(recent_opening_keys=["trade me the"]),
        ["trade me the right item and we deal"],
        ThunderheadProfile(),
    )
    assert report.repetitive
    assert report.stale
    assert report.global_echo
    assert report.global_echo_threshold == 0.64
    assert report.opener_repeat
    assert report.bland
    assert report.voice_separation_fail
    assert report.voice_reason == "thunderhead_too_clean_or_generic"
    assert report.any_flag
    assert "generic_trade_line" in report.reasons()


def test_guard_report_clean_for_fresh_default_reply():
    report = NoveltyGuard().inspect(
        "Grab the blue door by the fountain!",
        RequestContext(character_id="luigi"),
        None,
        [],
        VoiceProfile(),
    )
    assert not report.any_flag
    assert report.reasons() == []
