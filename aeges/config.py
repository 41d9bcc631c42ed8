"""
AEGES Configuration.

Pydantic Settings v2: loads from .env, environment variables.
Provider credentials are SecretStr so they never render in reprs or logs.
"""

from typing import List

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────────────────
    app_name: str = "AEGES"
    app_version: str = "1.0.0"
    environment: str = Field(default="development", alias="ENVIRONMENT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: str = Field(default="console", alias="LOG_FORMAT")

    # ── Providers: credentials ─────────────────────────────────────────────
    xai_api_key: SecretStr = Field(default=SecretStr(""), alias="XAI_API_KEY")
    openai_api_key: SecretStr = Field(default=SecretStr(""), alias="OPENAI_API_KEY")
    anthropic_api_key: SecretStr = Field(default=SecretStr(""), alias="ANTHROPIC_API_KEY")

    # ── Providers: endpoints / models ──────────────────────────────────────
    xai_endpoint: str = Field(
        default="https://api.x.ai/v1/chat/completions", alias="XAI_ENDPOINT"
    )
    xai_model: str = Field(default="grok-beta", alias="XAI_MODEL")
    openai_endpoint: str = Field(
        default="https://api.openai.com/v1/chat/completions", alias="OPENAI_ENDPOINT"
    )
    openai_model: str = Field(default="gpt-4", alias="OPENAI_MODEL")
    anthropic_endpoint: str = Field(
        default="https://api.anthropic.com/v1/messages", alias="ANTHROPIC_ENDPOINT"
    )
    anthropic_model: str = Field(default="claude-3-sonnet-20240229", alias="ANTHROPIC_MODEL")
    provider_max_tokens: int = Field(default=2048, alias="AEGES_PROVIDER_MAX_TOKENS")
    provider_temperature: float = Field(default=0.3, alias="AEGES_PROVIDER_TEMPERATURE")

    # ── Providers: rate limits (requests per window) ───────────────────────
    xai_rate_limit: int = Field(default=1000, alias="XAI_RATE_LIMIT")
    openai_rate_limit: int = Field(default=500, alias="OPENAI_RATE_LIMIT")
    anthropic_rate_limit: int = Field(default=300, alias="ANTHROPIC_RATE_LIMIT")
    rate_limit_window_seconds: float = Field(default=60.0, alias="AEGES_RATE_LIMIT_WINDOW")

    # ── Consensus ────────────────────────────────────────────────────────
    analysis_mode: str = Field(default="fallback", alias="AEGES_ANALYSIS_MODE")
    fallback_order: List[str] = Field(
        default=["xai", "openai", "anthropic", "fallback"],
        alias="AEGES_FALLBACK_ORDER",
    )
    consensus_threshold: float = Field(default=0.6, alias="AEGES_CONSENSUS_THRESHOLD")
    max_consensus_providers: int = Field(default=3, alias="AEGES_MAX_CONSENSUS_PROVIDERS")
    require_agreement: bool = Field(default=False, alias="AEGES_REQUIRE_AGREEMENT")
    provider_timeout_seconds: float = Field(default=30.0, alias="AEGES_PROVIDER_TIMEOUT")
    fallback_confidence: float = Field(default=0.5, alias="AEGES_FALLBACK_CONFIDENCE")

    # ── Risk Engine ────────────────────────────────────────────────────────
    max_ai_weight: float = Field(default=0.4, alias="AEGES_MAX_AI_WEIGHT")
    threshold_medium: float = Field(default=0.4, alias="AEGES_THRESHOLD_MEDIUM")
    threshold_high: float = Field(default=0.6, alias="AEGES_THRESHOLD_HIGH")
    threshold_critical: float = Field(default=0.8, alias="AEGES_THRESHOLD_CRITICAL")
    velocity_multiple: float = Field(default=10.0, alias="AEGES_VELOCITY_MULTIPLE")
    velocity_max_account_age_days: float = Field(
        default=30.0, alias="AEGES_VELOCITY_MAX_ACCOUNT_AGE_DAYS"
    )

    # ── Containment / Recovery ─────────────────────────────────────────────
    containment_max_duration_hours: float = Field(
        default=168.0, alias="AEGES_CONTAINMENT_MAX_DURATION_HOURS"
    )
    expiry_sweep_interval_seconds: int = Field(default=300, alias="AEGES_EXPIRY_SWEEP_INTERVAL")
    stakeholder_roster: List[str] = Field(
        default=[
            "exchange_admin",
            "compliance_officer",
            "technical_validator",
            "security_auditor",
            "network_arbiter",
        ],
        alias="AEGES_STAKEHOLDERS",
    )

    # ── Events ─────────────────────────────────────────────────────────────
    event_queue_size: int = Field(default=1000, alias="AEGES_EVENT_QUEUE_SIZE")
    event_history_size: int = Field(default=500, alias="AEGES_EVENT_HISTORY_SIZE")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v_upper

    @field_validator("analysis_mode")
    @classmethod
    def validate_analysis_mode(cls, v: str) -> str:
        v_lower = v.lower()
        if v_lower not in ("fallback", "consensus"):
            raise ValueError("Analysis mode must be 'fallback' or 'consensus'")
        return v_lower

    @field_validator("consensus_threshold", "max_ai_weight", "fallback_confidence")
    @classmethod
    def validate_unit_interval(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("Value must be within [0, 1]")
        return v

    @property
    def containment_max_duration_seconds(self) -> float:
        return self.containment_max_duration_hours * 3600.0


settings = Settings()
