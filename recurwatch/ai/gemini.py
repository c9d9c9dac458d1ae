"""
Gemini Backends

Hosted classification and chat through google-generativeai.

DESIGN DECISION: The GenerativeModel can be injected. Production code
lets the classifier build its own from GeminiSettings; tests pass a fake
with a generate_content_async() coroutine so nothing hits the network.
"""

import asyncio
from typing import Any, Optional

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from google.generativeai.types import BlockedPromptException, StopCandidateException
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
from recurwatch.config.settings import GeminiSettings
from recurwatch.models.alert import DuplicateAnalysis
from recurwatch.models.subscription import SubscriptionClassification


class _GeminiClient:
    """Shared request handling for the Gemini backends."""

    def __init__(self, settings: GeminiSettings, model: Optional[Any] = None):
        self._settings = settings
        if model is None:
            model = self._configure_genai()
        self._model = model

    def _configure_genai(self) -> Any:
        """Configure Google Generative AI."""
        genai.configure(api_key=self._settings.api_key)
        return genai.GenerativeModel(
            model_name=self._settings.model_name,
            generation_config={
                "temperature": self._settings.temperature,
                "max_output_tokens": self._settings.max_tokens,
            }
        )

    @property
    def model_name(self) -> str:
        return self._settings.model_name

    @retry(
        stop=stop_after_attempt(2),
        retry=retry_if_exception_type(AIBackendError),
        wait=wait_exponential(multiplier=0.5, max=4),
        reraise=True,
    )
    async def _generate(self, contents: Any) -> str:
        """
        One request with its own timeout. Retried once on transient errors.
        """
        try:
            response = await asyncio.wait_for(
                self._model.generate_content_async(contents),
                timeout=self._settings.request_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            raise AITimeoutError(
                f"Gemini did not answer within {self._settings.request_timeout_seconds}s"
            ) from e
        except (google_exceptions.TooManyRequests, google_exceptions.ServerError) as e:
            raise AIBackendError(f"Gemini request failed: {e}") from e
        except google_exceptions.ClientError as e:
            # Bad key, unknown model or invalid argument: the same request fails again
            raise AIRequestError(f"Gemini rejected the request: {e}") from e
        except google_exceptions.GoogleAPIError as e:
            raise AIBackendError(f"Gemini request failed: {e}") from e
        except (BlockedPromptException, StopCandidateException) as e:
            # Safety filters: asking again gets the same answer
            raise MalformedResponseError(f"Gemini refused the request: {e!r}") from e
        except Exception as e:
            raise AIBackendError(f"Gemini request failed: {type(e).__name__}: {e}") from e

        try:
            text = response.text
        except Exception as e:
            # Blocked or empty candidates
            raise MalformedResponseError(f"Gemini returned no text: {e}") from e

        if not text or not text.strip():
            raise MalformedResponseError("Gemini returned an empty response")
        return text.strip()


class GeminiClassifier(_GeminiClient, SubscriptionClassifier):
    """Subscription classifier backed by Gemini."""

    async def classify_subscription(
        self,
        merchant: str,
        context: ClassificationContext,
    ) -> SubscriptionClassification:
        text = await self._generate(render_classification_prompt(merchant, context))
        return parse_subscription_classification(text)

    async def analyze_duplicate_services(
        self,
        category: str,
        services: list[str],
    ) -> DuplicateAnalysis:
        text = await self._generate(render_duplicates_prompt(category, services))
        return parse_duplicate_analysis(text, services)


class GeminiChatBackend(_GeminiClient, ChatBackend):
    """Multi-turn chat backed by Gemini, for the orchestrator."""

    async def chat(self, messages: list[ChatMessage]) -> str:
        return await self._generate(self._to_contents(messages))

    @staticmethod
    def _to_contents(messages: list[ChatMessage]) -> list[dict[str, Any]]:
        """
        Map the conversation onto Gemini's user/model turns.

        Gemini has no system or tool role: system text is folded into the
        first user turn and tool results are sent back as user turns.
        """
        contents: list[dict[str, Any]] = []
        pending_system: list[str] = []

        for message in messages:
            if message.role == "system":
                pending_system.append(message.content)
                continue

            if message.role == "assistant":
                role = "model"
                text = message.content
            elif message.role == "tool":
                role = "user"
                text = f"TOOL RESULT:\n{message.content}"
            else:
                role = "user"
                text = message.content

            if pending_system and role == "user":
                text = "\n\n".join(pending_system + [text])
                pending_system = []

            contents.append({"role": role, "parts": [text]})

        if pending_system:
            contents.insert(0, {"role": "user", "parts": ["\n\n".join(pending_system)]})
        return contents
