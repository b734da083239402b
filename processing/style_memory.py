# processing/style_memory.py
"""Per-speaker rolling record of recently used categories, patterns and openers."""

from __future__ import annotations

from dataclasses import dataclass, field

import structlog

logger = structlog.get_logger(__name__)


def push_recent(values: list[str], value: str, limit: int) -> list[str]:
    """Append ``value`` and keep the newest ``limit`` entries."""
    trimmed = str(value or "").strip()
    items = list(values or [])
    if trimmed:
        items.append(trimmed)
    return items[-limit:] if limit > 0 else []


def recent_includes(values: list[str], value: str, window: int = 3) -> bool:
    needle = str(value or "").strip()
    if not needle:
        return False
    return needle in list(values or [])[-window:]


@dataclass(frozen=True)
class StyleMeta:
    """Style tags inferred from one accepted reply."""

    category: str
    pattern: str
    punchline_id: str
    opener_key: str
    extras: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class StyleWindows:
    categories: int = 4
    patterns: int = 4
    punchlines: int = 4
    openers: int = 4
    extras: dict[str, int] = field(default_factory=dict)


@dataclass
class StyleMemory:
    last_category: str = ""
    last_pattern: str = ""
    last_punchline_id: str = ""
    recent_categories: list[str] = field(default_factory=list)
    recent_patterns: list[str] = field(default_factory=list)
    recent_punchline_ids: list[str] = field(default_factory=list)
    recent_opening_keys: list[str] = field(default_factory=list)
    extras: dict[str, list[str]] = field(default_factory=dict)

    def extra(self, name: str) -> list[str]:
        return list(self.extras.get(name, []))

    def updated(self, meta: StyleMeta, windows: StyleWindows) -> StyleMemory:
        """Return a new memory with ``meta`` folded in."""
        extras = {name: list(values) for name, values in self.extras.items()}
        for name, value in meta.extras.items():
            extras[name] = push_recent(
                extras.get(name, []), value, windows.extras.get(name, 4)
            )
        return StyleMemory(
            last_category=meta.category,
            last_pattern=meta.pattern,
            last_punchline_id=meta.punchline_id,
            recent_categories=push_recent(
                self.recent_categories, meta.category, windows.categories
            ),
            recent_patterns=push_recent(
                self.recent_patterns, meta.pattern, windows.patterns
            ),
            recent_punchline_ids=push_recent(
                self.recent_punchline_ids, meta.punchline_id, windows.punchlines
            ),
            recent_opening_keys=push_recent(
                self.recent_opening_keys, meta.opener_key, windows.openers
            ),
            extras=extras,
        )


class StyleMemoryStore:
    """Style memory keyed by normalized speaker id. Lives for the process."""

    def __init__(self) -> None:
        self._by_speaker: dict[str, StyleMemory] = {}

    def get(self, speaker: str) -> StyleMemory | None:
        return self._by_speaker.get(speaker)

    def record(
        self, speaker: str, meta: StyleMeta | None, windows: StyleWindows
    ) -> StyleMemory | None:
        if not speaker or meta is None:
            return self._by_speaker.get(speaker)
        current = self._by_speaker.get(speaker) or StyleMemory()
        updated = current.updated(meta, windows)
        self._by_speaker[speaker] = updated
        logger.debug(
            "Style memory updated",
            speaker=speaker,
            category=meta.category,
            opener=meta.opener_key,
        )
        return updated

    def __len__(self) -> int:
        return len(self._by_speaker)
