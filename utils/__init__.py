# utils/__init__.py
"""General utility functions for the dialogue pipeline."""

from __future__ import annotations

from .logging import setup_logging
from .text_processing import (
    count_sentences,
    count_words,
    extract_json_from_text,
    extract_keywords,
    hash_index,
    jaccard_similarity,
    map_location_group,
    normalize_character_id,
    normalize_for_similarity,
    opener_key,
    short_hash,
    split_sentence_chunks,
    token_set,
    tokenize,
)

__all__ = [
    "setup_logging",
    "count_sentences",
    "count_words",
    "extract_json_from_text",
    "extract_keywords",
    "hash_index",
    "jaccard_similarity",
    "map_location_group",
    "normalize_character_id",
    "normalize_for_similarity",
    "opener_key",
    "short_hash",
    "split_sentence_chunks",
    "token_set",
    "tokenize",
]
