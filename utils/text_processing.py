# utils/text_processing.py
"""Normalization, tokenization and similarity helpers for reply text."""

from __future__ import annotations

import hashlib
import json
import re
from typing import Any

_NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")
_SPACE_RE = re.compile(r"\s+")
_SENTENCE_CHUNK_RE = re.compile(r"[^.!?]+[.!?]+(?:[\"')\]]+)?|[^.!?]+$")

_CHARACTER_ALIASES = {
    "frat_guys": "frat_boys",
}

_LOCATION_GROUPS = {
    "dean_office": "DEAN_OFFICE",
    "quad": "QUAD",
    "eggman_classroom": "EGGMAN_CLASSROOM",
    "frat": "FRAT",
    "sorority": "TUNNEL",
    "tunnel": "TUNNEL",
    "cafeteria": "CAFETERIA",
    "dorms": "DORM",
    "dorm_room": "DORM",
    "stadium": "STADIUM",
}


def short_hash(value: Any, length: int = 24) -> str:
    """Return a truncated sha256 hex digest of ``value``."""
    text = "" if value is None else str(value)
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:length]


def hash_index(seed: str, size: int) -> int:
    """Map ``seed`` onto ``range(size)`` deterministically."""
    if size <= 0:
        return 0
    return int(short_hash(seed, 12), 16) % size


def normalize_character_id(character_id: Any) -> str:
    value = str(character_id or "").strip().lower()
    if "dean" in value:
        return "dean_cain"
    if "earthworm" in value:
        return "earthworm_jim"
    value = _SPACE_RE.sub("_", value)
    return _CHARACTER_ALIASES.get(value, value)


def normalize_for_similarity(text: Any) -> str:
    """Lowercase, strip punctuation and collapse whitespace."""
    lowered = str(text or "").lower()
    return _SPACE_RE.sub(" ", _NON_ALNUM_RE.sub(" ", lowered)).strip()


def tokenize(text: Any) -> list[str]:
    normalized = normalize_for_similarity(text)
    return normalized.split(" ") if normalized else []


def token_set(text: Any) -> set[str]:
    """Word set used for overlap scoring. Very short words are ignored."""
    return {token for token in tokenize(text) if len(token) > 2}


def jaccard_similarity(a: Any, b: Any) -> float:
    """Token-set Jaccard similarity in ``[0, 1]``.

    Identical non-empty normalized texts always score 1.0, even when every
    word is too short to enter the token set.
    """
    norm_a = normalize_for_similarity(a)
    norm_b = normalize_for_similarity(b)
    if norm_a and norm_a == norm_b:
        return 1.0
    set_a = token_set(norm_a)
    set_b = token_set(norm_b)
    if not set_a or not set_b:
        return 0.0
    intersection = len(set_a & set_b)
    union = len(set_a | set_b)
    return intersection / union if union else 0.0


def opener_key(text: Any, size: int = 3) -> str:
    """First ``size`` normalized tokens joined by spaces."""
    return " ".join(tokenize(text)[:size])


def split_sentence_chunks(text: Any) -> list[str]:
    chunks = _SENTENCE_CHUNK_RE.findall(str(text or ""))
    return [chunk.strip() for chunk in chunks if chunk.strip()]


def count_sentences(text: Any) -> int:
    return len([part for part in re.split(r"[.!?]+", str(text or "")) if part.strip()])


def count_words(text: Any) -> int:
    return len(str(text or "").split())


def extract_keywords(text: Any) -> list[str]:
    return [token for token in tokenize(text) if len(token) >= 4]


def map_location_group(location: Any) -> str:
    return _LOCATION_GROUPS.get(str(location or "").strip().lower(), "")


def extract_json_from_text(text: str) -> dict[str, Any] | None:
    """Return the outermost JSON object embedded in ``text`` if it parses."""
    if not text:
        return None
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        return None
    try:
        parsed = json.loads(text[start : end + 1])
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None
