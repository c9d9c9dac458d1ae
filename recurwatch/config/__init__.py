"""Configuration package."""

from recurwatch.config.settings import (
    AISettings,
    DetectionSettings,
    GeminiSettings,
    OllamaSettings,
    OrchestratorSettings,
    Settings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AISettings",
    "DetectionSettings",
    "GeminiSettings",
    "OllamaSettings",
    "OrchestratorSettings",
    "Settings",
    "get_settings",
    "validate_all_settings",
]
