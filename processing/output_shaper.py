# processing/output_shaper.py
"""Deterministic sentence and length shaping for reply bubbles."""

from __future__ import annotations

import re

from utils.text_processing import split_sentence_chunks

ELLIPSIS = "..."

_UNDEFINED_RE = re.compile(r"\bundefined\b", re.IGNORECASE)
_NEWLINES_RE = re.compile(r"\s*\n+\s*")
_MULTI_SPACE_RE = re.compile(r"\s{2,}")
_SPACE_BEFORE_PUNCT_RE = re.compile(r"\s+([!?.,;:])")
_TERMINAL_RE = re.compile(r"[.!?][\"')\]]*$")
_DANGLING_RE = re.compile(r"[\s,;:\-]+$")


def sanitize_text(text: str) -> str:
    cleaned = _UNDEFINED_RE.sub("", str(text or ""))
    cleaned = _NEWLINES_RE.sub(" ", cleaned)
    cleaned = _MULTI_SPACE_RE.sub(" ", cleaned)
    cleaned = _SPACE_BEFORE_PUNCT_RE.sub(r"\1", cleaned)
    return cleaned.strip()


def capitalize_sentences(text: str) -> str:
    out: list[str] = []
    start_of_sentence = True
    for ch in text:
        if start_of_sentence and "a" <= ch <= "z":
            out.append(ch.upper())
            start_of_sentence = False
            continue
        out.append(ch)
        if ch in ".!?":
            start_of_sentence = True
        elif not ch.isspace():
            start_of_sentence = False
    return "".join(out)


def limit_sentences(text: str, max_sentences: int) -> str:
    chunks = split_sentence_chunks(text)
    if len(chunks) <= max_sentences:
        return str(text or "").strip()
    return " ".join(chunks[:max_sentences]).strip()


def polish_text(text: str) -> str:
    """Capitalize sentence starts and guarantee terminal punctuation."""
    cleaned = sanitize_text(text)
    if not cleaned:
        return ""
    chunks = split_sentence_chunks(cleaned)
    composed = " ".join(chunks) if chunks else cleaned
    normalized = _SPACE_BEFORE_PUNCT_RE.sub(r"\1", capitalize_sentences(composed)).strip()
    if not normalized or _TERMINAL_RE.search(normalized):
        return normalized
    normalized = _DANGLING_RE.sub("", normalized)
    return f"{normalized}." if normalized else ""


def shape_reply(text: str, max_sentences: int = 2, max_chars: int = 190) -> str:
    """Fit ``text`` into a reply bubble.

    Keeps at most ``max_sentences`` sentences and at most ``max_chars``
    characters; an over-long line is cut and marked with an ellipsis.
    """
    limited = limit_sentences(sanitize_text(text), max(1, max_sentences))
    polished = polish_text(limited)
    if not polished or max_chars <= 0 or len(polished) <= max_chars:
        return polished
    if max_chars <= len(ELLIPSIS):
        return polished[:max_chars]
    cut = polished[: max(0, max_chars - len(ELLIPSIS))].rstrip()
    return f"{cut}{ELLIPSIS}"
