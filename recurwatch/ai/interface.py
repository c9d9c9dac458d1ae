"""
AI Collaborator Interfaces

CRITICAL BOUNDARIES:

1. SUBSCRIPTION CLASSIFIER:
   - CAN: Judge whether a merchant looks like a subscription service
   - CAN: Describe how services in one category overlap
   - CANNOT: Create, update or exclude subscriptions
   - CANNOT: Override a user's decision about a merchant

2. CHAT BACKEND (drives the orchestrator):
   - CAN: Ask for read-only tool calls against the transaction store
   - CAN: Explain an alert FROM the data those tools returned
   - CANNOT: Change a verdict, a status or an alert kind

Every backend raises the errors at the bottom of this module. The
engine treats any of them as "degrade and carry on", never as a verdict.
"""

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field

from recurwatch.models.alert import DuplicateAnalysis
from recurwatch.models.subscription import SubscriptionClassification
from recurwatch.models.transaction import CandidateSeries, Periodicity, SeriesProfile


class ClassificationContext(BaseModel):
    """
    What a classifier is told about a merchant.

    Only statistics and a few raw descriptions, never account data.
    """

    occurrence_count: int = Field(ge=0)
    periodicity: Periodicity
    median_interval_days: Optional[float] = None
    median_amount: Decimal
    amount_deviation: float = 0.0
    sample_descriptions: list[str] = Field(
        default_factory=list,
        description="Up to five raw bank descriptions"
    )

    @classmethod
    def from_profile(
        cls,
        profile: SeriesProfile,
        series: Optional[CandidateSeries] = None,
    ) -> "ClassificationContext":
        descriptions: list[str] = []
        if series is not None:
            for description in series.descriptions:
                if description and description not in descriptions:
                    descriptions.append(description)
                if len(descriptions) == 5:
                    break

        return cls(
            occurrence_count=profile.occurrence_count,
            periodicity=profile.periodicity,
            median_interval_days=profile.median_interval_days,
            median_amount=profile.median_amount,
            amount_deviation=profile.amount_deviation,
            sample_descriptions=descriptions,
        )

    def describe(self) -> str:
        """Render the context as prompt lines."""
        lines = [
            f"Charges seen: {self.occurrence_count}",
            f"Detected cadence: {self.periodicity.value}",
        ]
        if self.median_interval_days is not None:
            lines.append(f"Median days between charges: {self.median_interval_days:.1f}")
        lines.append(f"Typical amount: {self.median_amount}")
        lines.append(f"Amount variation: {self.amount_deviation:.0%}")
        if self.sample_descriptions:
            lines.append("Bank descriptions: " + "; ".join(self.sample_descriptions))
        return "\n".join(lines)


class ChatMessage(BaseModel):
    """One turn of an orchestrator conversation."""

    role: Literal["system", "user", "assistant", "tool"]
    content: str


class SubscriptionClassifier(ABC):
    """
    Abstract AI client used by the classification pipeline and the
    duplicate-analysis enrichment.
    """

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Identifier of the model answering."""
        pass

    @abstractmethod
    async def classify_subscription(
        self,
        merchant: str,
        context: ClassificationContext,
    ) -> SubscriptionClassification:
        """
        Decide whether a merchant is a subscription service.

        Raises:
            AIBackendError: Backend unreachable or failing
            AITimeoutError: Request timed out
            MalformedResponseError: Response had the wrong shape
        """
        pass

    @abstractmethod
    async def analyze_duplicate_services(
        self,
        category: str,
        services: list[str],
    ) -> DuplicateAnalysis:
        """
        Describe what a group of same-category services share and what
        each one offers on its own.

        Raises:
            AIError: Any failure
        """
        pass

    async def aclose(self) -> None:
        """Release held connections. Backends without any have nothing to do."""
        pass


class ChatBackend(ABC):
    """Abstract multi-turn text model used by the orchestrator."""

    @property
    @abstractmethod
    def model_name(self) -> str:
        pass

    @abstractmethod
    async def chat(self, messages: list[ChatMessage]) -> str:
        """
        Send the conversation so far and return the next assistant text.

        Raises:
            AIBackendError: Backend unreachable or failing
            AITimeoutError: Request timed out
        """
        pass

    async def aclose(self) -> None:
        pass


class AIError(Exception):
    """Base exception for AI collaborator failures."""
    pass


class AIBackendError(AIError):
    """Backend unreachable or returned an error. Transient."""
    pass


class AITimeoutError(AIBackendError):
    """Request to the backend timed out. Transient."""
    pass


class AIRequestError(AIError):
    """Backend rejected the request itself (unknown model, bad payload). Not retried."""
    pass


class MalformedResponseError(AIError):
    """Response could not be parsed into the expected shape. Not retried."""
    pass


class OrchestratorError(AIError):
    """Tool budget exceeded, unknown tool, or the loop did not finish."""
    pass
