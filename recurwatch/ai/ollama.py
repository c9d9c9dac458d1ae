"""
Ollama Backends

Local model server (Ollama) classification and chat over httpx.

Uses /api/generate for single prompts and /api/chat for the
orchestrator conversation, both with stream disabled.
"""

from typing import Any, Optional

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from recurwatch.ai.interface import (
    AIBackendError,
    AIRequestError,
    AITimeoutError,
    ChatBackend,
    ChatMessage,
    ClassificationContext,
    MalformedResponseError,
    SubscriptionClassifier,
)
from recurwatch.ai.parsing import parse_duplicate_analysis, parse_subscription_classification
from recurwatch.ai.prompts import render_classification_prompt, render_duplicates_prompt
from recurwatch.config.settings import OllamaSettings
from recurwatch.models.alert import DuplicateAnalysis
from recurwatch.models.subscription import SubscriptionClassification


# Client errors that are still transient
_TRANSIENT_CLIENT_STATUSES = (408, 429)


class _OllamaClient:
    """Shared HTTP handling for the Ollama backends."""

    def __init__(
        self,
        settings: OllamaSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._settings = settings
        self._client = httpx.AsyncClient(
            base_url=settings.host.rstrip("/"),
            timeout=settings.request_timeout_seconds,
            transport=transport,
        )

    @property
    def model_name(self) -> str:
        return self._settings.model

    async def aclose(self) -> None:
        await self._client.aclose()

    @retry(
        stop=stop_after_attempt(2),
        retry=retry_if_exception_type(AIBackendError),
        wait=wait_exponential(multiplier=0.5, max=4),
        reraise=True,
    )
    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        """
        POST one request and return the decoded body.

        Retried once on transient errors (connection, timeout, 5xx, 408, 429).
        """
        try:
            response = await self._client.post(path, json=payload)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise AITimeoutError(f"Ollama timed out on {path}") from e
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            detail = e.response.text[:200] if e.response.text else ""
            message = f"Ollama returned {status} on {path}: {detail}"
            if 400 <= status < 500 and status not in _TRANSIENT_CLIENT_STATUSES:
                # Unknown model or bad payload: the same request fails again
                raise AIRequestError(message) from e
            raise AIBackendError(message) from e
        except httpx.HTTPError as e:
            raise AIBackendError(f"Ollama unreachable at {self._settings.host}: {e}") from e

        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponseError(f"Ollama returned a non-JSON body on {path}") from e

        if not isinstance(data, dict):
            raise MalformedResponseError(f"Ollama returned an unexpected body on {path}")
        return data

    async def _generate(self, prompt: str, json_mode: bool = False) -> str:
        payload: dict[str, Any] = {
            "model": self._settings.model,
            "prompt": prompt,
            "stream": False,
        }
        if json_mode:
            payload["format"] = "json"

        data = await self._post("/api/generate", payload)
        text = data.get("response")
        if not isinstance(text, str) or not text.strip():
            raise MalformedResponseError("Ollama generate response has no text")
        return text.strip()


class OllamaClassifier(_OllamaClient, SubscriptionClassifier):
    """Subscription classifier backed by a local Ollama model."""

    async def classify_subscription(
        self,
        merchant: str,
        context: ClassificationContext,
    ) -> SubscriptionClassification:
        text = await self._generate(
            render_classification_prompt(merchant, context),
            json_mode=True,
        )
        return parse_subscription_classification(text)

    async def analyze_duplicate_services(
        self,
        category: str,
        services: list[str],
    ) -> DuplicateAnalysis:
        text = await self._generate(render_duplicates_prompt(category, services))
        return parse_duplicate_analysis(text, services)


class OllamaChatBackend(_OllamaClient, ChatBackend):
    """Multi-turn chat backed by a local Ollama model, for the orchestrator."""

    async def chat(self, messages: list[ChatMessage]) -> str:
        payload = {
            "model": self._settings.model,
            "messages": [m.model_dump() for m in messages],
            "stream": False,
        }
        data = await self._post("/api/chat", payload)

        message = data.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str) or not content.strip():
            raise MalformedResponseError("Ollama chat response has no content")
        return content.strip()
