"""
AI Collaborators Package

Backends for subscription classification (Gemini, local Ollama) and
the tool-calling orchestrator used for alert verification.
"""

from recurwatch.ai.interface import (
    AIBackendError,
    AIError,
    AIRequestError,
    AITimeoutError,
    ChatBackend,
    ChatMessage,
    ClassificationContext,
    MalformedResponseError,
    OrchestratorError,
    SubscriptionClassifier,
)
from recurwatch.ai.gemini import GeminiChatBackend, GeminiClassifier
from recurwatch.ai.ollama import OllamaChatBackend, OllamaClassifier
from recurwatch.ai.orchestrator import AIOrchestrator

__all__ = [
    # Interfaces
    "ChatBackend",
    "ChatMessage",
    "ClassificationContext",
    "SubscriptionClassifier",
    # Exceptions
    "AIBackendError",
    "AIError",
    "AIRequestError",
    "AITimeoutError",
    "MalformedResponseError",
    "OrchestratorError",
    # Backends
    "GeminiChatBackend",
    "GeminiClassifier",
    "OllamaChatBackend",
    "OllamaClassifier",
    "AIOrchestrator",
]
