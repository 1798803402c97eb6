from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .models import CronSchedule

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from .store import RecordStore

logger = logging.getLogger(__name__)

# --------------------------------
# Settings

# Gmail label that marks newsletters to ingest
LABEL_NAME = "n8n-newsletter"

# Maximum number of messages listed per run
MAX_MESSAGES = 50

# Tracked links point at the beehiiv redirect domain
TRACKING_LINK_PATTERN = r"link\.mail\.beehiiv\.com"

# Context-text heuristic thresholds
MIN_CONTEXT_CHARS = 10
MAX_CONTEXT_ANCESTORS = 3
CONTEXT_FALLBACK_CHARS = 500

# HTML budget sent to the summarization prompt
MAX_PROMPT_HTML_CHARS = 15_000

# Aggregation window
AGGREGATION_WINDOW_HOURS = 24
MIN_SUMMARIES_FOR_AGGREGATION = 2

# Runtime config keys (system_config table) and their defaults
KEY_CRON_SCHEDULE = "cron_schedule"
KEY_RATE_LIMIT_MS = "ollama_rate_limit_ms"
KEY_LINK_TIMEOUT_MS = "link_resolution_timeout_ms"

DEFAULT_RATE_LIMIT_MS = 1000
DEFAULT_LINK_TIMEOUT_MS = 10_000
DEFAULT_CRON_TIMES = ("06:00", "18:00")
DEFAULT_CRON_TIMEZONE = "America/New_York"

DEFAULT_OLLAMA_BASE_URL = "https://api.ollama.cloud/v1"
DEFAULT_OLLAMA_MODEL = "deepseek-v3.1:671b"
DEFAULT_DB_PATH = str(Path("data") / "newsletter_digest.db")

SUMMARY_SYSTEM_PROMPT = (
    "You are an expert at summarizing AI and technology newsletters. "
    "Create concise, informative summaries that preserve key information and context around links. "
    "Output in clean markdown format."
)

AGGREGATION_SYSTEM_PROMPT = (
    "You are an expert at aggregating and deduplicating information from multiple sources "
    "while preserving important details and links."
)
# --------------------------------


@dataclass
class Settings:
    gmail_credentials: str
    gmail_token: str
    ollama_api_key: str
    ollama_base_url: str = DEFAULT_OLLAMA_BASE_URL
    ollama_model: str = DEFAULT_OLLAMA_MODEL
    db_path: str = DEFAULT_DB_PATH

    @staticmethod
    def from_env() -> "Settings":
        def require(name: str) -> str:
            value = os.getenv(name)
            if value is None or not value.strip():
                raise ValueError(f"Environment variable {name} is required.")
            return value

        def optional_with_default(name: str, default: str) -> str:
            value = os.getenv(name)
            if value is None or not value.strip():
                return default
            return value.strip()

        return Settings(
            gmail_credentials=require("GMAIL_CREDENTIALS"),
            gmail_token=require("GMAIL_TOKEN"),
            ollama_api_key=require("OLLAMA_API_KEY"),
            ollama_base_url=optional_with_default("OLLAMA_BASE_URL", DEFAULT_OLLAMA_BASE_URL),
            ollama_model=optional_with_default("OLLAMA_MODEL", DEFAULT_OLLAMA_MODEL),
            db_path=optional_with_default("NEWSLETTER_DB_PATH", DEFAULT_DB_PATH),
        )


class RuntimeConfig:
    """Reads the tunable keys from the store on every call; nothing is cached."""

    def __init__(self, store: "RecordStore"):
        self._store = store

    def rate_limit_ms(self) -> int:
        return self._non_negative_int(KEY_RATE_LIMIT_MS, DEFAULT_RATE_LIMIT_MS)

    def link_resolution_timeout_ms(self) -> int:
        return self._non_negative_int(KEY_LINK_TIMEOUT_MS, DEFAULT_LINK_TIMEOUT_MS)

    def cron_schedule(self) -> CronSchedule:
        value = self._store.get_config(KEY_CRON_SCHEDULE)
        if value is None:
            return CronSchedule(times=list(DEFAULT_CRON_TIMES), timezone=DEFAULT_CRON_TIMEZONE)
        try:
            return CronSchedule.from_value(value, DEFAULT_CRON_TIMES, DEFAULT_CRON_TIMEZONE)
        except ValueError as exc:
            logger.warning("Invalid %s value %r (%s); using default", KEY_CRON_SCHEDULE, value, exc)
            return CronSchedule(times=list(DEFAULT_CRON_TIMES), timezone=DEFAULT_CRON_TIMEZONE)

    def _non_negative_int(self, key: str, default: int) -> int:
        value: Any = self._store.get_config(key)
        if value is None:
            return default
        if isinstance(value, bool) or not isinstance(value, (int, float, str)):
            logger.warning("Invalid %s value %r; using default %s", key, value, default)
            return default
        try:
            parsed = int(value)
        except (ValueError, OverflowError):
            logger.warning("Invalid %s value %r; using default %s", key, value, default)
            return default
        if parsed < 0:
            logger.warning("Negative %s value %s; using default %s", key, parsed, default)
            return default
        return parsed
