# orchestration/services/quality_report_service.py
"""Quality metrics derived from the interaction and correction logs."""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

import numpy as np
import structlog
from config import CORRECTION_LOG_PATH, INTERACTION_LOG_PATH, settings

from storage.interaction_log import InteractionLog
from utils.text_processing import tokenize

logger = structlog.get_logger(__name__)

RATE_SOURCES = {
    "llm_direct": "llm",
    "llm_regen": "llm_regen",
    "cache": "cache",
    "fallback": "fallback",
    "cooldown": "cooldown",
}


def nearest_rank_percentile(values: list[float], pct: float) -> float | None:
    if not values:
        return None
    return float(np.percentile(np.asarray(values, dtype=float), pct, method="inverted_cdf"))


def latency_summary(values: list[float]) -> dict[str, Any]:
    return {
        "samples": len(values),
        "avg": round(float(np.mean(values)), 2) if values else None,
        "p50": nearest_rank_percentile(values, 50),
        "p95": nearest_rank_percentile(values, 95),
    }


def rate_pct(count: int, total: int) -> float:
    return round(count / total * 100, 2) if total > 0 else 0.0


def top_repeated_ngrams(
    lines: Iterable[str], size: int = 2, top_n: int = 3
) -> list[dict[str, Any]]:
    """Most frequent n-grams that occur more than once."""
    counts: Counter[str] = Counter()
    for line in lines:
        tokens = tokenize(line)
        for i in range(len(tokens) - size + 1):
            counts[" ".join(tokens[i : i + size])] += 1
    return [
        {"ngram": ngram, "count": count}
        for ngram, count in counts.most_common()
        if count > 1
    ][:top_n]


def _latency(row: dict[str, Any]) -> float | None:
    try:
        value = float(row.get("latency_ms"))
    except (TypeError, ValueError):
        return None
    return value if np.isfinite(value) and value >= 0 else None


class QualityReportService:
    def __init__(
        self,
        log: InteractionLog,
        interaction_path: str = INTERACTION_LOG_PATH,
        correction_path: str = CORRECTION_LOG_PATH,
    ) -> None:
        self.log = log
        self.interaction_path = interaction_path
        self.correction_path = correction_path

    async def build(self, limit: int = settings.QUALITY_REPORT_WINDOW) -> dict[str, Any]:
        interactions = await self.log.read_recent(self.interaction_path, limit)
        corrections = await self.log.read_recent(self.correction_path, limit)
        report = self.summarize(interactions, len(corrections))
        logger.info("Quality report built", window_rows=report["window_rows"])
        return report

    def summarize(
        self, interactions: list[dict[str, Any]], correction_rows: int
    ) -> dict[str, Any]:
        total = len(interactions)
        source_counts = Counter(str(row.get("source") or "unknown") for row in interactions)

        latencies: list[float] = []
        by_source: dict[str, list[float]] = {}
        per_character: dict[str, dict[str, Any]] = {}
        lines_by_character: dict[str, list[str]] = {}
        for row in interactions:
            source = str(row.get("source") or "unknown")
            latency = _latency(row)
            if latency is not None:
                latencies.append(latency)
                by_source.setdefault(source, []).append(latency)

            speaker = str(row.get("character_id") or "unknown")
            stats = per_character.setdefault(
                speaker,
                {
                    "rows": 0,
                    "source_counts": Counter(),
                    "repetition_hits": 0,
                    "novelty_hits": 0,
                    "voice_guard_hits": 0,
                },
            )
            stats["rows"] += 1
            stats["source_counts"][source] += 1
            stats["repetition_hits"] += int(bool(row.get("repetition_guard")))
            stats["novelty_hits"] += int(bool(row.get("novelty_guard")))
            stats["voice_guard_hits"] += int(bool(row.get("voice_guard_fail")))
            text = row.get("npc_text")
            if isinstance(text, str) and text.strip():
                lines_by_character.setdefault(speaker, []).append(text.strip())

        for speaker, stats in per_character.items():
            rows = stats["rows"]
            counts = stats["source_counts"]
            lines = lines_by_character.get(speaker, [])
            stats["source_counts"] = dict(counts)
            stats["fallback_rate_pct"] = rate_pct(counts["fallback"] + counts["cooldown"], rows)
            stats["repetition_rate_pct"] = rate_pct(stats["repetition_hits"], rows)
            stats["novelty_pressure_rate_pct"] = rate_pct(stats["novelty_hits"], rows)
            stats["voice_separation_fail_rate_pct"] = rate_pct(stats["voice_guard_hits"], rows)
            stats["top_repeated_bigrams"] = top_repeated_ngrams(lines, 2, 3)
            stats["top_repeated_trigrams"] = top_repeated_ngrams(lines, 3, 3)

        return {
            "ok": True,
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "window_rows": total,
            "source_counts": dict(source_counts),
            "rates_pct": {
                name: rate_pct(source_counts[source], total)
                for name, source in RATE_SOURCES.items()
            },
            "latency_ms": latency_summary(latencies),
            "source_latency_ms": {
                source: latency_summary(values) for source, values in by_source.items()
            },
            "correction_dataset_rows": correction_rows,
            "per_character": per_character,
        }
