"""
Process settings read from the environment (.env is loaded by setup()).
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache

logger = logging.getLogger(__name__)


def _get_int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        logger.warning(f"Invalid integer for {name}, using default {default}")
        return default


def _get_float_env(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except Exception:
        logger.warning(f"Invalid float for {name}, using default {default}")
        return default


def _get_list_env(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    env: str = "dev"
    port: int = 8080
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db_name: str = "chat"
    llm_model: str = "gpt-5"
    triage_model: str = "gpt-5-nano"
    llm_api_key: str | None = None
    llm_base_url: str | None = None
    max_round_trips: int = 10
    model_timeout_secs: float = 120.0
    tool_timeout_secs: float = 30.0
    chat_max_tokens: int = 1000
    pokeapi_base_url: str = ""
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            env=os.getenv("ENV", "dev"),
            port=_get_int_env("PORT", 8080),
            mongo_uri=os.getenv("MONGO_URI", "mongodb://localhost:27017"),
            mongo_db_name=os.getenv("MONGO_DB_NAME", "chat"),
            llm_model=os.getenv("LLM_MODEL", "gpt-5"),
            triage_model=os.getenv("TRIAGE_MODEL", "gpt-5-nano"),
            llm_api_key=os.getenv("LLM_API_KEY") or None,
            llm_base_url=os.getenv("LLM_BASE_URL") or None,
            max_round_trips=_get_int_env("AGENT_MAX_ROUND_TRIPS", 10),
            model_timeout_secs=_get_float_env("MODEL_TIMEOUT_SECS", 120.0),
            tool_timeout_secs=_get_float_env("TOOL_TIMEOUT_SECS", 30.0),
            chat_max_tokens=_get_int_env("CHAT_MAX_TOKENS", 1000),
            pokeapi_base_url=os.getenv("POKEAPI_BASE_URL", "").rstrip("/"),
            cors_origins=_get_list_env("CORS_ORIGINS", ["*"]),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Settings for this process. Read once; call get_settings.cache_clear() in tests to re-read."""
    return Settings.from_env()
