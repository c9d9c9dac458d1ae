"""
Shared fixtures for recurwatch tests.

Test strategy:
1. Unit tests for the pure pieces (normalization, statistics, detectors)
2. Integration tests for detection runs over InMemoryStorage
3. No real API calls in tests: AI backends are fakes, HTTP goes
   through httpx.MockTransport
"""

import asyncio
from datetime import date
from decimal import Decimal
from typing import Callable, Optional, Union

import pytest

from recurwatch.ai.interface import (
    ChatBackend,
    ChatMessage,
    ClassificationContext,
    SubscriptionClassifier,
)
from recurwatch.config.settings import DetectionSettings
from recurwatch.models.alert import DuplicateAnalysis, ServiceFeature
from recurwatch.models.subscription import SubscriptionClassification
from recurwatch.models.transaction import Transaction
from recurwatch.services.storage import InMemoryStorage


AS_OF = date(2024, 12, 1)


def add_months(d: date, months: int) -> date:
    month = d.month - 1 + months
    return d.replace(year=d.year + month // 12, month=month % 12 + 1)


class TransactionFactory:
    """Builds expense transactions with unique ids."""

    def __init__(self):
        self._next_id = 1

    def __call__(
        self,
        description: str,
        on: date,
        amount: Union[str, Decimal] = "15.49",
        account_id: int = 1,
        archived: bool = False,
        credit: bool = False,
    ) -> Transaction:
        value = Decimal(str(amount))
        txn = Transaction(
            id=self._next_id,
            account_id=account_id,
            date=on,
            amount=value if credit else -value,
            description=description,
            archived=archived,
        )
        self._next_id += 1
        return txn

    def monthly(
        self,
        description: str,
        start: date,
        count: int,
        amount: Union[str, list[str]] = "15.49",
        account_id: int = 1,
    ) -> list[Transaction]:
        amounts = amount if isinstance(amount, list) else [amount] * count
        return [
            self(description, add_months(start, i), amounts[i], account_id=account_id)
            for i in range(count)
        ]


class FakeClassifier(SubscriptionClassifier):
    """
    Scripted classifier.

    responses maps merchant key -> SubscriptionClassification or an
    exception instance to raise. Unknown merchants get `default`.
    """

    def __init__(
        self,
        responses: Optional[dict] = None,
        default: Optional[SubscriptionClassification] = None,
        duplicate_analysis: Union[DuplicateAnalysis, Exception, None] = None,
        delay: float = 0.0,
    ):
        self.responses = responses or {}
        self.default = default or SubscriptionClassification(
            is_subscription=False, confidence=0.5, reason="unsure",
        )
        self.duplicate_analysis = duplicate_analysis
        self.delay = delay
        self.calls: list[str] = []
        self.duplicate_calls: list[tuple[str, list[str]]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    @property
    def model_name(self) -> str:
        return "fake-classifier"

    async def classify_subscription(
        self,
        merchant: str,
        context: ClassificationContext,
    ) -> SubscriptionClassification:
        self.calls.append(merchant)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            response = self.responses.get(merchant, self.default)
            if isinstance(response, Exception):
                raise response
            return response
        finally:
            self.in_flight -= 1

    async def analyze_duplicate_services(
        self,
        category: str,
        services: list[str],
    ) -> DuplicateAnalysis:
        self.duplicate_calls.append((category, services))
        if isinstance(self.duplicate_analysis, Exception):
            raise self.duplicate_analysis
        if self.duplicate_analysis is not None:
            return self.duplicate_analysis
        return DuplicateAnalysis(
            overlap=f"All are {category} services",
            unique_features=[ServiceFeature(service=s, unique="its catalogue") for s in services],
        )


class FakeChatBackend(ChatBackend):
    """
    Chat backend driven by a function of the conversation so far.

    The default script asks for one tool call, then confirms.
    """

    def __init__(
        self,
        script: Optional[Callable[[list[ChatMessage]], Union[str, Exception]]] = None,
        delay: float = 0.0,
    ):
        self.script = script or self.confirm_after_one_search
        self.delay = delay
        self.conversations: list[list[ChatMessage]] = []

    @property
    def model_name(self) -> str:
        return "fake-chat"

    async def chat(self, messages: list[ChatMessage]) -> str:
        self.conversations.append(list(messages))
        await asyncio.sleep(self.delay)
        reply = self.script(messages)
        if isinstance(reply, Exception):
            raise reply
        return reply

    @staticmethod
    def confirm_after_one_search(messages: list[ChatMessage]) -> str:
        if messages[-1].role == "tool":
            return "VERDICT: CONFIRMED\nEXPLANATION: The charges keep arriving every month."
        return '{"tool": "search_transactions", "arguments": {"limit": 5}}'


@pytest.fixture
def txns() -> TransactionFactory:
    return TransactionFactory()


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def settings() -> DetectionSettings:
    return DetectionSettings()


@pytest.fixture
def as_of() -> date:
    return AS_OF
