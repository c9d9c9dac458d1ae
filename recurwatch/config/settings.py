"""
Configuration Management for recurwatch

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here, but only the
factory in recurwatch.detector reads it. Engine classes receive settings
objects as constructor parameters, so the engine itself holds no
process-wide mutable state.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DetectionSettings(BaseSettings):
    """
    Thresholds for series analysis, classification and detectors.

    Every threshold the detectors use lives here rather than in code,
    including the zombie window (how long a charge must run unacknowledged
    before it is flagged for review).
    """

    model_config = SettingsConfigDict(
        env_prefix="DETECTION_",
        extra="ignore"
    )

    min_occurrences: int = Field(
        default=3,
        ge=3,
        description="Minimum charges before a series can be subscription-eligible"
    )
    interval_tolerance: float = Field(
        default=0.20,
        gt=0.0,
        lt=1.0,
        description="Allowed relative distance of an interval from its period"
    )
    interval_consistency: float = Field(
        default=0.70,
        ge=0.0,
        le=1.0,
        description="Fraction of intervals that must sit inside the tolerance band"
    )
    amount_tolerance: float = Field(
        default=0.20,
        ge=0.0,
        description="Max amount deviation from the median for a stable amount"
    )
    price_increase_threshold: float = Field(
        default=0.05,
        gt=0.0,
        description="Fractional increase that counts as a price increase"
    )
    zombie_min_days: int = Field(
        default=90,
        ge=0,
        description="Days a subscription must have run before it can be a zombie"
    )
    acknowledgment_stale_days: int = Field(
        default=90,
        ge=0,
        description="Days after which an acknowledgement expires (0 = never)"
    )
    ai_confidence_threshold: float = Field(
        default=0.70,
        ge=0.0,
        le=1.0,
        description="Minimum AI confidence for its verdict to be used"
    )
    max_concurrency: int = Field(
        default=4,
        ge=1,
        le=32,
        description="Maximum AI classification calls in flight"
    )


class GeminiSettings(BaseSettings):
    """Gemini LLM configuration."""

    model_config = SettingsConfigDict(
        env_prefix="GEMINI_",
        extra="ignore"
    )

    api_key: str = Field(
        ...,
        description="Gemini API key"
    )
    model_name: str = Field(
        default="gemini-1.5-flash",
        description="Gemini model to use"
    )
    max_tokens: int = Field(
        default=1024,
        ge=100,
        le=8192,
        description="Maximum tokens in response"
    )
    temperature: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Model temperature (lower = more deterministic)"
    )
    request_timeout_seconds: float = Field(
        default=20.0,
        gt=0.0,
        description="Timeout for a single request"
    )


class OllamaSettings(BaseSettings):
    """Local model server (Ollama) configuration."""

    model_config = SettingsConfigDict(
        env_prefix="OLLAMA_",
        extra="ignore"
    )

    host: str = Field(
        default="http://localhost:11434",
        description="Base URL of the Ollama server"
    )
    model: str = Field(
        ...,
        description="Model to use (e.g. llama3.1:8b)"
    )
    request_timeout_seconds: float = Field(
        default=30.0,
        gt=0.0,
        description="Timeout for a single request"
    )


class AISettings(BaseSettings):
    """Which AI classification backend, if any, is active."""

    model_config = SettingsConfigDict(
        env_prefix="AI_",
        extra="ignore"
    )

    backend: Literal["none", "ollama", "gemini"] = Field(
        default="none",
        description="Classification backend"
    )


class OrchestratorSettings(BaseSettings):
    """Agentic verifier configuration."""

    model_config = SettingsConfigDict(
        env_prefix="ORCHESTRATOR_",
        extra="ignore"
    )

    enabled: bool = Field(
        default=False,
        description="Run the agentic verification pass"
    )
    backend: Literal["ollama", "gemini"] = Field(
        default="ollama",
        description="Chat backend driving the orchestrator"
    )
    max_tool_calls: int = Field(
        default=4,
        ge=0,
        le=20,
        description="Tool-call budget per verification"
    )
    timeout_seconds: float = Field(
        default=60.0,
        gt=0.0,
        description="Wall-clock budget per verification"
    )
    max_verifications: int = Field(
        default=10,
        ge=0,
        description="Maximum alerts verified per run"
    )

    @model_validator(mode="after")
    def validate_budget(self) -> "OrchestratorSettings":
        if self.enabled and self.max_verifications == 0:
            raise ValueError("max_verifications must be positive when enabled")
        return self


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Note: These are loaded lazily to allow partial configuration

    @property
    def detection(self) -> DetectionSettings:
        return DetectionSettings()

    @property
    def ai(self) -> AISettings:
        return AISettings()

    @property
    def gemini(self) -> GeminiSettings:
        return GeminiSettings()

    @property
    def ollama(self) -> OllamaSettings:
        return OllamaSettings()

    @property
    def orchestrator(self) -> OrchestratorSettings:
        return OrchestratorSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}, with an extra
    "<name>_error" entry for every section that failed.
    """
    results = {}

    settings = get_settings()

    for name in ("detection", "ai", "gemini", "ollama", "orchestrator"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
