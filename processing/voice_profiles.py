# processing/voice_profiles.py
"""Per-speaker voice rules and deterministic content banks.

A :class:`VoiceProfile` bundles everything that differs between speakers:
formatting rules, content-bank substitution for stale or off-voice
output, evaluator tics, guard fingerprints, style-memory inference and
fallback lines. Unknown speakers get the base profile, which changes
nothing.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

import structlog
from models import RequestContext

from processing.novelty_guard import (
    GLOBAL_ECHO_THRESHOLD,
    seeded_pick,
    seeded_pick_with_avoid,
)
from processing.output_shaper import sanitize_text, shape_reply
from processing.style_memory import StyleMemory, StyleMeta, StyleWindows, recent_includes
from utils.text_processing import (
    jaccard_similarity,
    normalize_for_similarity,
    opener_key,
    short_hash,
    split_sentence_chunks,
)

logger = structlog.get_logger(__name__)

FLAT_YES_NO_RE = re.compile(
    r"(^|\s)(ready to|you ready|wanna|want to|are you|should we)\b", re.IGNORECASE
)
MISSION_QUESTION_RE = re.compile(
    r"(mission|stadium|route|escort|follow|objective|what now)", re.IGNORECASE
)
SONIC_WHEREABOUTS_RE = re.compile(
    r"(where.*sonic|sonic.*where|find sonic|seen sonic)", re.IGNORECASE
)
FLAT_YES_NO_RULE = (
    "Avoid flat yes/no party-check questions. Prefer taunts, observations, or specific reactions."
)
_GENERIC_OPENER_RE = re.compile(
    r"^(great|listen|look|okay|ok|alright|well|honestly|seriously)\b[:,.-]?\s*",
    re.IGNORECASE,
)
_FILLER_OPENER_RE = re.compile(r"^(quick note|real talk)\b[:,.-]?\s*", re.IGNORECASE)
_WEAK_LEAD_RE = re.compile(r"^(and|also|anyway|so|plus|besides)\b", re.IGNORECASE)
_PUNCHLINE_SIGNAL_RE = re.compile(
    r"[!?]|(lawyer|insurance|security|cleanup|heh-heh|khh|hrrk|autograph|deli|payphone|raccoon)",
    re.IGNORECASE,
)


def prune_generic_opener(text: str) -> str:
    line = str(text or "").strip()
    if not line:
        return line
    stripped = _FILLER_OPENER_RE.sub("", _GENERIC_OPENER_RE.sub("", line)).strip()
    return stripped or line


def _should_drop_second_sentence(first: str, second: str) -> bool:
    trimmed = second.strip()
    if not trimmed:
        return False
    weak = (
        bool(_WEAK_LEAD_RE.search(trimmed))
        or len(trimmed) < 24
        or jaccard_similarity(first, trimmed) > 0.56
    )
    return weak and not _PUNCHLINE_SIGNAL_RE.search(trimmed)


def compact_punchline_flow(text: str) -> str:
    """Keep a second sentence only when it lands a punchline."""
    chunks = split_sentence_chunks(text)
    if len(chunks) < 2:
        return text
    if _should_drop_second_sentence(chunks[0], chunks[1]):
        return chunks[0]
    return f"{chunks[0]} {chunks[1]}"


@dataclass(frozen=True)
class BankEntry:
    key: str
    line: str


class VoiceProfile:
    """Default voice: no rewriting, no extra penalties."""

    speaker_id = "default"
    echo_threshold = GLOBAL_ECHO_THRESHOLD
    sentence_cap: int | None = None
    compact_punchline = False
    flat_yes_no_penalty = False
    question_ending_penalty = False
    cliche_phrases: tuple[str, ...] = ()
    prompt_rules: tuple[str, ...] = ()
    length_rule = (
        "Max 2 short sentences. Use a fresh angle each turn and avoid repeating recent opener phrasing."
    )
    fallback_lines: tuple[str, ...] = ("Stay sharp.",)
    style_windows = StyleWindows()

    def format(self, text: str, context: RequestContext) -> str:
        """Deterministic formatting rules. Safe to re-apply to cached text."""
        return text

    def transform(
        self, text: str, context: RequestContext, memory: StyleMemory | None
    ) -> str:
        """Full voice rules, including content-bank substitution."""
        return self.format(text, context)

    def style_penalties(self, text: str) -> list[tuple[str, int]]:
        stripped = str(text or "").strip()
        penalties: list[tuple[str, int]] = []
        if not stripped.endswith("?"):
            return penalties
        if self.flat_yes_no_penalty and FLAT_YES_NO_RE.search(stripped.lower()):
            penalties.append(("flat_yes_no_setup", 16))
        if self.question_ending_penalty:
            penalties.append((f"{self.speaker_id}_question_ending", 14))
        return penalties

    def voice_separation_reason(self, text: str) -> str | None:
        return None

    def is_bland(self, text: str) -> bool:
        return False

    def infer_style(self, text: str, context: RequestContext) -> StyleMeta | None:
        line = str(text or "").strip()
        if not line:
            return None
        tokens = normalize_for_similarity(line).split(" ")
        second = (split_sentence_chunks(line)[1:] or [line])[0]
        return StyleMeta(
            category="_".join(tokens[:2]),
            pattern="_".join(tokens[:3]),
            punchline_id=short_hash(second, 10),
            opener_key=opener_key(line),
        )

    def keeps_retrieval_line(self, line: str, player_input: str) -> bool:
        return True

    def fallback_bank(self, context: RequestContext) -> Sequence[str]:
        return self.fallback_lines


class KnucklesProfile(VoiceProfile):
    speaker_id = "knuckles"
    sentence_cap = 1
    compact_punchline = True
    flat_yes_no_penalty = True
    fallback_lines = ("Training and painin, now prove it.", "Pick a move and stand on it.")
    prompt_rules = (
        "For Knuckles: include exactly one short cadence pair in the form "
        "'<verb>in and <verb>in', then continue normally.",
    )

    CADENCE_RE = re.compile(r"\b[a-z]{3,}in(?:g)?\s+and\s+[a-z]{3,}in(?:g)?\b", re.IGNORECASE)
    CADENCE_PAIRS = ("Trainin and gainin", "Movin and provin", "Swingin and bringin", "Stridin and glidin")

    @staticmethod
    def _one_sentence(raw: str) -> str:
        trimmed = raw.strip()
        if not trimmed:
            return ""
        trimmed = trimmed[0].upper() + trimmed[1:]
        first = (split_sentence_chunks(trimmed) or [trimmed])[0]
        return first if first[-1] in ".!?" else f"{first}."

    def format(self, text: str, context: RequestContext) -> str:
        line = str(text or "").strip()
        if not line:
            return "Trainin and gainin - pick your lane and close it."
        matches = self.CADENCE_RE.findall(line)
        if len(matches) == 1:
            return self._one_sentence(line)
        if matches:
            kept = {"count": 0}

            def _keep_first(match: re.Match[str]) -> str:
                kept["count"] += 1
                return match.group(0) if kept["count"] == 1 else ""

            compact = re.sub(r"\s+", " ", self.CADENCE_RE.sub(_keep_first, line)).strip()
            return self._one_sentence(compact)
        pair = seeded_pick(
            f"{context.player_input}:{context.scene.time_remaining_sec:g}",
            self.CADENCE_PAIRS,
        )
        first = (split_sentence_chunks(line) or [line])[0]
        return self._one_sentence(f"{pair} - {first}")


class FratBoysProfile(VoiceProfile):
    speaker_id = "frat_boys"
    flat_yes_no_penalty = True
    cliche_phrases = (
        "bring a stunt, a rumor, or a challenge",
        "earn your lane",
        "frat vibe",
    )
    prompt_rules = (
        "Forbidden cliches for Frat Boys: avoid repeating 'bring a stunt, a rumor, or a challenge', "
        "'earn your lane', or generic frat-vibe filler.",
    )
    fallback_lines = (
        "Diesel: Pong table is open. Show us something legendary or grab a mop.",
        "Diesel: The house has rules. Rule one is you impress us.",
    )

    WHEREABOUTS_ANSWER_RE = re.compile(
        r"(sonic|here|not here|frat|dorm|cafeteria|quad|location|challenge|find)",
        re.IGNORECASE,
    )

    def format(self, text: str, context: RequestContext) -> str:
        line = str(text or "").strip()
        if SONIC_WHEREABOUTS_RE.search(context.player_input.lower()) and not self.WHEREABOUTS_ANSWER_RE.search(line):
            where = context.scene.sonic_location or "somewhere on campus"
            line = f"Sonic was last seen at {where}. Track him down, challenge him, then bring him to Frat."
        if line.endswith("?") and FLAT_YES_NO_RE.search(line):
            line = "Diesel: Skip the checkbox talk. Show us a stunt worth a toast and we talk."
        return line

    def keeps_retrieval_line(self, line: str, player_input: str) -> bool:
        return not FLAT_YES_NO_RE.search(line)


class SonicProfile(VoiceProfile):
    """Washed-up celebrity voice built on named brag anecdotes."""

    speaker_id = "sonic"
    echo_threshold = 0.64
    sentence_cap = 1
    compact_punchline = True
    length_rule = "Max 2 short sentences. Prefer one compact anecdote clause plus one punchline."
    flat_yes_no_penalty = True
    style_windows = StyleWindows(
        categories=4, patterns=4, punchlines=5, openers=5, extras={"recent_stems": 4}
    )
    cliche_phrases = (
        "one drink, one rumor, one bad decision",
        "bring chaos, gossip, or cash-burn energy",
        "no freebies. bring chaos",
    )
    prompt_rules = (
        "For Sonic: never bring up stadium/mission/escort unless player_input directly asks for mission progress.",
        "For Sonic: voice must be casual, reckless, and conversational, an out-of-control superstar telling messy stories.",
        "For Sonic: include at least one concrete full name in any brag anecdote. Unnamed celebrity references are invalid.",
        "Voice separation: Sonic is casual and cocky, not gutter-trash. Avoid tunnel-filth slang.",
        "Vary openings naturally. Rotate frames like 'This reminds me...', 'Last month...', 'Not to brag, but...'.",
    )

    WOMEN = ("Candi Marlowe", "Jessa Vale", "Roxy Starling", "Dana Sparks", "Mimi Laurent")
    MEN = ("Chad Brannigan", "Rex Holloway", "Biff Castellano", "Duke Mercer", "Troy Vandermeer")

    JOKE_RE = re.compile(r"(drink|campus|chaos|party|status|reckless|nightlife)", re.IGNORECASE)
    BRAG_RE = re.compile(r"(yacht|jet|lawyer|insurance|party|rooftop)", re.IGNORECASE)
    BRAG_MARKERS_RE = re.compile(
        r"(yacht|jet|lawyer|insurance|rooftop|limo|studio|camera crew|cleanup|autograph)",
        re.IGNORECASE,
    )
    FINGERPRINT_RE = re.compile(
        r"(yacht|private jet|jet|rooftop|lawyer|insurance|camera crew|cleanup|autograph)",
        re.IGNORECASE,
    )
    MISSION_TALK_RE = re.compile(r"(mission|stadium|escort|follow me|route)", re.IGNORECASE)

    PATTERNS = (
        ("crash", re.compile(r"i crashed .* into ")),
        ("substance_spiral", re.compile(r"tequila|vodka|pill|hangover|blackout|shot|cough syrup")),
        ("financial_disaster", re.compile(r"credit card|maxed|debt|bank|receipt|invoice|auction")),
        ("legal", re.compile(r"lawyer|served me|insurance")),
        ("publicity", re.compile(r"camera crew|charity gala|satellite|headline")),
        ("luxury", re.compile(r"penthouse|limo|suite|vip|chauffeur")),
        ("romance", re.compile(r"voicemail|rebound|hook up|hookup|date")),
    )
    STEMS = (
        "i crashed",
        "i left a voicemail",
        "i rented a penthouse",
        "i faked a charity gala",
    )

    PUNCHLINES = (
        BankEntry("networking", "and my lawyer billed it as networking."),
        BankEntry("weather", "and insurance called it a weather event."),
        BankEntry("autographs", "and security booed me, then asked for autographs."),
        BankEntry("cleanup", "and cleanup took three crews and a priest."),
        BankEntry("tuesday", "and my lawyer called it a normal Tuesday."),
    )

    def has_named_anchor(self, text: str) -> bool:
        lower = str(text or "").lower()
        return any(name.lower() in lower for name in self.WOMEN + self.MEN)

    def detect_pattern(self, text: str) -> str:
        lower = str(text or "").lower()
        for name, pattern in self.PATTERNS:
            if pattern.search(lower):
                return name
        return "wild"

    def detect_stem(self, text: str) -> str:
        normalized = normalize_for_similarity(text)
        for stem in self.STEMS:
            if normalized.startswith(stem):
                return stem
        if " dared me to race " in f" {normalized} ":
            return "dared me to race"
        return opener_key(text)

    def _incidents(self, seed: str) -> list[BankEntry]:
        woman_a = seeded_pick(f"{seed}:womanA", self.WOMEN)
        woman_b = seeded_pick(f"{seed}:womanB", [n for n in self.WOMEN if n != woman_a])
        man_a = seeded_pick(f"{seed}:manA", self.MEN)
        man_b = seeded_pick(f"{seed}:manB", [n for n in self.MEN if n != man_a])
        return [
            BankEntry("crash", f"I crashed {man_a}'s leased jet into {man_b}'s yacht trying to impress {woman_a}"),
            BankEntry("publicity", f"{woman_a} dared me to race a limo through a studio lot on live satellite feed"),
            BankEntry("luxury", f"I rented a penthouse for {woman_a} and flooded the suite with champagne foam"),
            BankEntry("legal", f"I left a voicemail for {woman_a} and {man_a} had me served before breakfast"),
            BankEntry("romance", f"I faked a charity gala to meet {woman_b} but {man_b} stole my exit car"),
            BankEntry("substance_spiral", f"I mixed champagne and cough syrup and woke up in {man_a}'s studio fountain"),
            BankEntry("financial_disaster", f"I maxed a platinum card buying {woman_a} a crystal fog machine"),
        ]

    def generate_anecdote(self, seed: str, memory: StyleMemory | None) -> str:
        recent_categories = (memory.recent_categories if memory else [])[-2:]
        recent_patterns = (memory.recent_patterns if memory else [])[-2:]
        recent_punchlines = (memory.recent_punchline_ids if memory else [])[-3:]
        recent_stems = (memory.extra("recent_stems") if memory else [])[-3:]
        incident = seeded_pick_with_avoid(
            f"{seed}:body",
            self._incidents(seed),
            lambda entry: entry.key in recent_categories
            or self.detect_pattern(entry.line) in recent_patterns
            or self.detect_stem(entry.line) in recent_stems,
        )
        punchline = seeded_pick_with_avoid(
            f"{seed}:punch",
            self.PUNCHLINES,
            lambda entry: entry.key in recent_punchlines,
        )
        return f"{incident.line}, {punchline.line}"

    def detect_punchline_id(self, text: str) -> str:
        lower = str(text or "").lower()
        for entry in self.PUNCHLINES:
            if entry.line.lower().rstrip(".") in lower:
                return entry.key
        second = (split_sentence_chunks(text)[1:] or [text])[0]
        return short_hash(second, 10)

    def transform(
        self, text: str, context: RequestContext, memory: StyleMemory | None
    ) -> str:
        line = str(text or "").strip()
        asked_mission = bool(MISSION_QUESTION_RE.search(context.player_input))
        if not asked_mission and self.MISSION_TALK_RE.search(line):
            line = "Keep mission talk out of my mouth. Bring booze, gossip, or a reckless idea and maybe we talk."
        if asked_mission:
            return line
        recent_stems = memory.extra("recent_stems") if memory else []
        if (
            self.BRAG_MARKERS_RE.search(line)
            and self.has_named_anchor(line)
            and not recent_includes(recent_stems, self.detect_stem(line))
        ):
            return line
        seed = context.stable_seed
        generated = self.generate_anecdote(seed, memory)
        for attempt in range(1, 6):
            if not recent_includes(recent_stems, self.detect_stem(generated)):
                break
            generated = self.generate_anecdote(f"{seed}:alt:{attempt}", memory)
        return generated

    def style_penalties(self, text: str) -> list[tuple[str, int]]:
        penalties = super().style_penalties(text)
        lower = str(text or "").lower()
        if not self.JOKE_RE.search(lower):
            penalties.append(("sonic_missing_cutting_joke", 10))
        if self.BRAG_RE.search(lower) and not self.has_named_anchor(text):
            penalties.append(("sonic_missing_named_anchor", 12))
        return penalties

    def voice_separation_reason(self, text: str) -> str | None:
        if self.FINGERPRINT_RE.search(str(text or "")) and self.has_named_anchor(text):
            return None
        return "sonic_missing_named_anchor"

    def infer_style(self, text: str, context: RequestContext) -> StyleMeta | None:
        line = str(text or "").strip()
        if not line:
            return None
        pattern = self.detect_pattern(line)
        return StyleMeta(
            category=pattern,
            pattern=pattern,
            punchline_id=self.detect_punchline_id(line),
            opener_key=opener_key(line),
            extras={"recent_stems": self.detect_stem(line)},
        )

    def keeps_retrieval_line(self, line: str, player_input: str) -> bool:
        if MISSION_QUESTION_RE.search(player_input):
            return True
        return not re.search(r"(mission|stadium|route|escort|follow)", line, re.IGNORECASE)

    def fallback_bank(self, context: RequestContext) -> Sequence[str]:
        if context.scene.sonic_drunk_level >= 3:
            return (
                "I am operating on bad tequila and worse ideas. If we do this, we do it loud and expensive.",
                "Buzz is perfect. Give me a reckless plan with plausible deniability and a soundtrack.",
            )
        return (
            "Pitch chaos with style or pitch silence. I do not fund boring nights.",
            "Bring a headline-level stunt and maybe I stop pretending you are background.",
        )


class ThunderheadProfile(VoiceProfile):
    """Gutter-grime tunnel trader voice built on confession lines."""

    speaker_id = "thunderhead"
    echo_threshold = 0.64
    sentence_cap = 1
    compact_punchline = True
    length_rule = "Max 2 short sentences. Prefer one compact anecdote clause plus one punchline."
    style_windows = StyleWindows(
        categories=5,
        patterns=4,
        punchlines=5,
        openers=5,
        extras={"recent_confession_ids": 5, "recent_laugh_ids": 4},
    )
    cliche_phrases = (
        "trade me the right contraband. no freebies.",
        "no deal without the right move",
        "gross, but true",
    )
    prompt_rules = (
        "For Thunderhead: use uncouth gutter cadence, grimy confessions, transactional demands "
        "and optional end-laughs like 'heh-heh' or 'khh'. Never sound polished.",
        "For Thunderhead: include one specific grimy object or place detail (food, stain, deli, "
        "tunnel junk, payphone), not generic sleaze filler.",
        "Voice separation: Thunderhead is gutter-grimy, not smooth celebrity banter.",
        "Forbidden cliches for Thunderhead: avoid 'trade me the right contraband. no freebies.' "
        "or 'no deal without the right move.'",
    )
    fallback_lines = (
        "Bring me the filthy sorority relic and I uncork Tunnel Wine like a cursed sacrament.",
        "No proper contraband, no bottle. I run a grime temple with strict inventory control.",
    )

    CLEAN_RE = re.compile(
        r"\b(therefore|however|furthermore|please|kindly|professional|proceed|accordingly|transaction)\b",
        re.IGNORECASE,
    )
    POLISHED_RE = re.compile(
        r"\b(therefore|however|furthermore|kindly|professional|accordingly|transaction-only|protocol)\b",
        re.IGNORECASE,
    )
    COARSE_RE = re.compile(
        r"\b(ya|ain't|filthy|grime|grimy|grease|stank|sleaze|nasty|gutter|trash|khh|heh-heh|hrrk)\b",
        re.IGNORECASE,
    )
    GRIME_DETAIL_RE = re.compile(
        r"(deli|payphone|mannequin|roast beef|raccoon|motel|grease|tunnel)", re.IGNORECASE
    )
    FINGERPRINT_RE = re.compile(
        r"\b(heh-heh|khh|hrrk|filthy|grime|grimy|grease|sleaze|gutter|stank|nasty|"
        r"deli|payphone|mannequin|raccoon|motel|tunnel)\b",
        re.IGNORECASE,
    )
    LAUGH_END_RE = re.compile(r"(heh-heh|khh|hrrk-heh|hrrk)\.?$", re.IGNORECASE)
    TRADE_RE = re.compile(r"(trade|deal|swap|contraband|wine|item)", re.IGNORECASE)
    DEGENERATE_RE = re.compile(
        r"(filthy|gross|weird|grime|bad decision|sleazy|degenerate|sketchy|creepy|shame)",
        re.IGNORECASE,
    )

    CONFESSIONS = (
        BankEntry("deli", "I found a roast beef sandwich down here older than the tunnel lights and still ate the pickle"),
        BankEntry("payphone", "I licked barbecue sauce off a payphone and wrote your name in axle grease"),
        BankEntry("mannequin", "I slow-danced with a deli mannequin till dawn and she still had more standards than this campus"),
        BankEntry("raccoon", "I traded raccoon bones for motel cologne and wore it to confession"),
        BankEntry("storm_drain", "I found a lace glove in a storm drain by the tunnel and kissed it for luck"),
        BankEntry("mop_bucket", "I serenaded a bus-station mop bucket behind the tunnel vent and called it a first date"),
        BankEntry("locker_socks", "I sniffed gym-locker socks till sunrise and wrote haikus in motor grease"),
        BankEntry("sorority_trash", "I dug through sorority trash for lipstick napkins and framed 'em in my motel"),
        BankEntry("ashtray", "I rubbed motel ashtray dust on my chest and whispered pickup lines to a traffic cone"),
        BankEntry("vending", "I had a toxic affair with a busted tunnel vending machine and paid alimony in gum wrappers"),
        BankEntry("drainpipe", "I took a drainpipe on a dinner date and fed it cold deli ravioli with my fingers"),
        BankEntry("boot_mud", "I licked tunnel mud off my own boot and called it artisanal seasoning"),
        BankEntry("grease_poetry", "I wrote sonnets in axle grease to a pothole and begged it not to leave me"),
        BankEntry("parking_meter", "I flirted with a motel parking meter for twenty minutes and left feeling seen"),
    )
    LAUGHS = (
        BankEntry("heh", "heh-heh"),
        BankEntry("khh", "khh"),
        BankEntry("hrrk", "hrrk-heh"),
        BankEntry("none", ""),
    )

    def detect_confession_id(self, text: str) -> str:
        lower = str(text or "").lower()
        for entry in self.CONFESSIONS:
            if entry.line.lower()[:40] in lower:
                return entry.key
        return short_hash(lower, 8)

    def detect_laugh_id(self, text: str) -> str:
        lower = str(text or "").lower().rstrip(".")
        if lower.endswith("heh-heh") and not lower.endswith("hrrk-heh"):
            return "heh"
        if lower.endswith("khh"):
            return "khh"
        if "hrrk" in lower:
            return "hrrk"
        return "none"

    def generate_confession(self, seed: str, memory: StyleMemory | None) -> str:
        recent_confessions = (memory.extra("recent_confession_ids") if memory else [])[-3:]
        recent_laughs = (memory.extra("recent_laugh_ids") if memory else [])[-2:]
        confession = seeded_pick_with_avoid(
            f"{seed}:confess",
            self.CONFESSIONS,
            lambda entry: entry.key in recent_confessions,
        )
        laugh = seeded_pick_with_avoid(
            f"{seed}:laugh", self.LAUGHS, lambda entry: entry.key in recent_laughs
        )
        if laugh.line:
            return f"{confession.line}, {laugh.line}."
        return f"{confession.line}."

    def _fresh_confession(self, seed: str, memory: StyleMemory | None) -> str:
        recent = memory.extra("recent_confession_ids") if memory else []
        generated = self.generate_confession(seed, memory)
        for attempt in range(1, 6):
            if not recent_includes(recent, self.detect_confession_id(generated)):
                break
            generated = self.generate_confession(f"{seed}:alt:{attempt}", memory)
        return generated

    def transform(
        self, text: str, context: RequestContext, memory: StyleMemory | None
    ) -> str:
        line = str(text or "").strip()
        seed = context.stable_seed
        if not line or self.CLEAN_RE.search(line) or not self.COARSE_RE.search(line):
            return self._fresh_confession(seed, memory)
        if not self.LAUGH_END_RE.search(line):
            laugh = seeded_pick(f"{seed}:laugh-append", ("heh-heh", "khh", "hrrk-heh"))
            line = f"{line.rstrip('.!?')}, {laugh}."
        recent = memory.extra("recent_confession_ids") if memory else []
        if recent_includes(recent, self.detect_confession_id(line)):
            return self._fresh_confession(f"{seed}:model-retry", memory)
        return line

    def style_penalties(self, text: str) -> list[tuple[str, int]]:
        penalties = super().style_penalties(text)
        if not self.GRIME_DETAIL_RE.search(str(text or "")):
            penalties.append(("thunderhead_missing_specific_grime_detail", 10))
        return penalties

    def voice_separation_reason(self, text: str) -> str | None:
        line = str(text or "")
        if not self.POLISHED_RE.search(line) and self.FINGERPRINT_RE.search(line):
            return None
        return "thunderhead_too_clean_or_generic"

    def is_bland(self, text: str) -> bool:
        lower = str(text or "").lower()
        return bool(self.TRADE_RE.search(lower)) and not self.DEGENERATE_RE.search(lower)

    def infer_style(self, text: str, context: RequestContext) -> StyleMeta | None:
        line = str(text or "").strip()
        if not line:
            return None
        second = (split_sentence_chunks(line)[1:] or [line])[0]
        category = "grime" if self.GRIME_DETAIL_RE.search(line) else "gutter_misc"
        return StyleMeta(
            category=category,
            pattern="grime_confession",
            punchline_id=short_hash(second, 10),
            opener_key=opener_key(line),
            extras={
                "recent_confession_ids": self.detect_confession_id(line),
                "recent_laugh_ids": self.detect_laugh_id(line),
            },
        )


class TailsProfile(VoiceProfile):
    speaker_id = "tails"
    question_ending_penalty = True
    fallback_lines = (
        "Move Sonic to the Stadium now. Pick one route and finish.",
        "I can help with a best guess. Commit and keep pressure.",
    )


class EggmanProfile(VoiceProfile):
    speaker_id = "eggman"
    flat_yes_no_penalty = True
    fallback_lines = (
        "You again. Your route is inefficient.",
        "Quiz yourself: what's faster than wasting my genius?",
    )


class _LineOnlyProfile(VoiceProfile):
    def __init__(self, speaker_id: str, fallback_lines: tuple[str, ...]) -> None:
        self.speaker_id = speaker_id
        self.fallback_lines = fallback_lines


class VoiceProfileRegistry:
    """Maps a normalized speaker id to its voice profile."""

    def __init__(
        self,
        profiles: Iterable[VoiceProfile] = (),
        default: VoiceProfile | None = None,
    ) -> None:
        self._profiles: dict[str, VoiceProfile] = {}
        self._default = default or VoiceProfile()
        for profile in profiles:
            self.register(profile)

    def register(self, profile: VoiceProfile) -> None:
        self._profiles[profile.speaker_id] = profile

    def get(self, speaker: str) -> VoiceProfile:
        return self._profiles.get(speaker, self._default)

    def __contains__(self, speaker: object) -> bool:
        return speaker in self._profiles


def build_default_registry() -> VoiceProfileRegistry:
    return VoiceProfileRegistry(
        [
            KnucklesProfile(),
            FratBoysProfile(),
            SonicProfile(),
            ThunderheadProfile(),
            TailsProfile(),
            EggmanProfile(),
            _LineOnlyProfile(
                "luigi",
                ("I can hear you. Be respectful and I'll help.", "Say one nice thing and I give routes."),
            ),
            _LineOnlyProfile(
                "dean_cain",
                ("Clock is running. Deliver results.", "You enrolled to execute, not explain."),
            ),
            _LineOnlyProfile(
                "earthworm_jim",
                ("Short version: choose one move and finish.", "I will take credit later. Move now."),
            ),
        ]
    )


def render_voice(
    profile: VoiceProfile,
    text: str,
    context: RequestContext,
    memory: StyleMemory | None,
    *,
    substitute: bool = True,
) -> str:
    """Apply a speaker's voice rules and shape the result.

    With ``substitute`` off only the formatting rules run, so already
    accepted content is never swapped for a bank line.
    """
    line = sanitize_text(text)
    if substitute:
        line = profile.transform(line, context, memory)
    else:
        line = profile.format(line, context)
    line = prune_generic_opener(line)
    if profile.compact_punchline:
        line = compact_punchline_flow(line)
    max_sentences = profile.sentence_cap or context.max_sentences
    return shape_reply(line, max_sentences, context.max_chars)
