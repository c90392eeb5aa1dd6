"""Configuration models for the coaching pipeline."""

from __future__ import annotations

import os

from pydantic import BaseModel, Field


class RegistryConfig(BaseModel):
    """Configures the read-through tool catalog cache."""

    ttl_seconds: float = Field(default=120.0, gt=0.0)
    read_timeout_seconds: float = Field(default=10.0, gt=0.0)


class MatcherConfig(BaseModel):
    """Weights and thresholds for intent-to-tool matching."""

    pattern_weight: float = Field(default=2.0, ge=0.0)
    keyword_weight: float = Field(default=1.0, ge=0.0)
    min_keyword_length: int = Field(default=4, ge=1)
    lexical_weight: float = Field(default=3.0, ge=0.0)
    boost_weight: float = Field(default=3.0, ge=0.0)
    min_score: float = Field(default=2.0, ge=0.0)
    assistant_title_overlap: float = Field(default=0.7, ge=0.0, le=1.0)


class RetrievalConfig(BaseModel):
    """Configures span retrieval thresholds and fallback broadening."""

    top_k: int = Field(default=4, ge=1)
    min_score: float = Field(default=0.55, ge=0.0, le=1.0)
    fallback_margin: float = Field(default=0.20, ge=0.0, le=1.0)
    fallback_floor: float = Field(default=0.35, ge=0.0, le=1.0)
    dedupe_prefix_chars: int = Field(default=120, ge=1)
    max_query_chars: int = Field(default=4000, ge=1)
    timeout_seconds: float = Field(default=10.0, gt=0.0)


class RouterConfig(BaseModel):
    """Configures the QA-first routing policy."""

    qa_top_k: int = Field(default=3, ge=1)
    qa_min_score: float = Field(default=0.75, ge=0.0, le=1.0)
    llm_enabled: bool = True
    llm_min_confidence: float = Field(default=0.6, ge=0.0, le=1.0)
    max_candidates: int = Field(default=6, ge=1)


class ComposerConfig(BaseModel):
    """Configures reply composition and self-heal heuristics."""

    history_turns: int = Field(default=12, ge=0)
    max_candidates: int = Field(default=5, ge=0)
    deep_dive_min_chars: int = Field(default=180, ge=1)
    min_media_items: int = Field(default=3, ge=1)
    max_media_items: int = Field(default=5, ge=1)


class AgentConfig(BaseModel):
    """Configures turn execution and latency targets."""

    target_latency_seconds: float = Field(default=8.0, gt=0.0)
    session_timeout_seconds: float = Field(default=3.0, gt=0.0)


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if not value:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """Process-level settings resolved from the environment."""

    openai_api_key: str | None = None
    chat_model: str = "gpt-4o-mini"
    embed_model: str = "text-embedding-3-small"
    db_path: str | None = None
    debug: bool = False
    tool_ttl_seconds: float = Field(default=120.0, gt=0.0)
    generation_timeout_seconds: float = Field(default=10.0, gt=0.0)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            chat_model=os.getenv("OPENAI_CHAT_MODEL", "gpt-4o-mini"),
            embed_model=os.getenv("OPENAI_EMBED_MODEL", "text-embedding-3-small"),
            db_path=os.getenv("COACH_DB_PATH") or None,
            debug=_env_flag("COACH_DEBUG"),
            tool_ttl_seconds=float(os.getenv("COACH_TOOL_TTL_SECONDS", "120")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
