# config.py
"""Configuration settings for the character dialogue pipeline.
Uses Pydantic BaseSettings for automatic environment variable loading.
"""

from __future__ import annotations

import os

import structlog
from dotenv import load_dotenv
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()

logger = structlog.get_logger()

KNOWN_PROVIDERS = ("openai", "gemini")


class DialogueSettings(BaseSettings):
    """Full configuration for the dialogue generation pipeline."""

    # Provider Configuration
    PRIMARY_PROVIDER: str = "openai"
    OPENAI_API_BASE: str = "https://api.openai.com/v1"
    OPENAI_API_KEY: str = ""
    OPENAI_MODEL: str = "gpt-4o-mini"
    GEMINI_API_BASE: str = "https://generativelanguage.googleapis.com/v1beta"
    GEMINI_API_KEY: str = ""
    GEMINI_MODEL: str = "gemini-2.0-flash"

    # Sampling Settings
    TEMPERATURE_OPENAI: float = 0.62
    TEMPERATURE_GEMINI: float = 0.58
    MAX_REPLY_TOKENS: int = 190

    # Call Settings, Retries & Cooldown
    LLM_FETCH_TIMEOUT_SECONDS: float = 9.0
    LLM_TRANSIENT_RETRIES: int = 1
    LLM_RETRY_BACKOFF_BASE_SECONDS: float = 0.25
    LLM_RETRY_BACKOFF_CEILING_SECONDS: float = 1.8
    LLM_THROTTLE_SECONDS: float = 0.38
    LLM_MAX_BACKOFF_SECONDS: float = 60.0

    # Caching
    LLM_CACHE_TTL_SECONDS: float = 300.0

    # Quality Gate
    LLM_STYLE_THRESHOLD: int = 56
    REGEN_THRESHOLD_MARGIN: int = 14
    REGEN_THRESHOLD_FLOOR: int = 40

    # Output Budget
    LLM_MAX_BUBBLE_CHARS: int = 190
    LLM_MAX_SENTENCES: int = 2

    # Retrieval
    LLM_RETRIEVAL_EXAMPLES_DEFAULT: int = 3
    LLM_RETRIEVAL_EXAMPLES_CRITICAL: int = 4

    # Repetition Tracking
    GLOBAL_RECENT_LINES_LIMIT: int = 30
    RECENT_NPC_TURNS_LIMIT: int = 8

    # Output and File Paths
    DATA_DIR: str = "data"
    RETRIEVAL_INDEX_FILE: str = "retrieval_index.json"
    INTERACTION_LOG_FILE: str = os.path.join("logs", "interaction_log.jsonl")
    CORRECTION_LOG_FILE: str = os.path.join(
        "training", "voice_correction_candidates.jsonl"
    )
    QUALITY_REPORT_WINDOW: int = 2000

    # Logging
    LOG_LEVEL_STR: str = Field("INFO", alias="DIALOGUE_LOG_LEVEL")
    LOG_FORMAT: str = (
        "%(asctime)s - %(levelname)s - [%(name)s:%(funcName)s:%(lineno)d] - %(message)s"
    )
    LOG_DATE_FORMAT: str = "%Y-%m-%d %H:%M:%S"
    LOG_FILE: str | None = "dialogue_pipeline.log"
    ENABLE_RICH_LOGGING: bool = True

    @model_validator(mode="after")
    def normalize_values(self) -> DialogueSettings:
        provider = self.PRIMARY_PROVIDER.strip().lower()
        if provider not in KNOWN_PROVIDERS:
            logger.warning(
                "Unknown PRIMARY_PROVIDER. Falling back to openai.",
                provider=self.PRIMARY_PROVIDER,
            )
            provider = "openai"
        self.PRIMARY_PROVIDER = provider
        self.LLM_TRANSIENT_RETRIES = max(0, self.LLM_TRANSIENT_RETRIES)
        self.LLM_THROTTLE_SECONDS = max(0.0, self.LLM_THROTTLE_SECONDS)
        self.LLM_CACHE_TTL_SECONDS = max(0.0, self.LLM_CACHE_TTL_SECONDS)
        self.LLM_STYLE_THRESHOLD = min(100, max(0, self.LLM_STYLE_THRESHOLD))
        self.LLM_MAX_SENTENCES = max(1, self.LLM_MAX_SENTENCES)
        self.LLM_MAX_BUBBLE_CHARS = max(16, self.LLM_MAX_BUBBLE_CHARS)
        self.GLOBAL_RECENT_LINES_LIMIT = max(1, self.GLOBAL_RECENT_LINES_LIMIT)
        if self.LLM_MAX_BACKOFF_SECONDS < self.LLM_THROTTLE_SECONDS:
            self.LLM_MAX_BACKOFF_SECONDS = self.LLM_THROTTLE_SECONDS
        return self

    @property
    def regeneration_floor(self) -> int:
        """Score under which a first reply is always rewritten."""
        return max(
            self.REGEN_THRESHOLD_FLOOR,
            self.LLM_STYLE_THRESHOLD - self.REGEN_THRESHOLD_MARGIN,
        )

    model_config = SettingsConfigDict(
        env_prefix="", env_file=".env", populate_by_name=True, extra="ignore"
    )


settings = DialogueSettings()


RETRIEVAL_INDEX_PATH = os.path.join(settings.DATA_DIR, settings.RETRIEVAL_INDEX_FILE)
INTERACTION_LOG_PATH = os.path.join(settings.DATA_DIR, settings.INTERACTION_LOG_FILE)
CORRECTION_LOG_PATH = os.path.join(settings.DATA_DIR, settings.CORRECTION_LOG_FILE)
