"""
End-to-end tests for SubscriptionDetector runs over InMemoryStorage.
"""

import pytest
from datetime import date
from decimal import Decimal

from conftest import AS_OF, FakeChatBackend, FakeClassifier
from recurwatch.ai import AIBackendError, AIOrchestrator
from recurwatch.config.settings import Settings
from recurwatch.detection.capability import CapabilityTier
from recurwatch.detection.overrides import cancel_subscription, exclude_subscription
from recurwatch.detector import SubscriptionDetector, create_detector
from recurwatch.models.alert import AlertKind
from recurwatch.models.subscription import SubscriptionStatus
from recurwatch.queries import ToolExecutor
from recurwatch.services.storage import InMemoryStorage, StorageUnavailableError


@pytest.fixture
def netflix_all_year(storage, txns):
    """Netflix, 15.49 on the 15th, January through November."""
    storage.add_transactions(txns.monthly("NETFLIX.COM*1A2B3", date(2024, 1, 15), 11))
    return storage


@pytest.fixture
def streaming_pair(storage, txns):
    """Netflix and Hulu, both started recently (too young to be zombies)."""
    storage.add_transactions(txns.monthly("NETFLIX.COM", date(2024, 9, 15), 3, "15.49"))
    storage.add_transactions(txns.monthly("HULU", date(2024, 9, 5), 3, "7.99"))
    return storage


def orchestrator_for(storage, backend=None) -> AIOrchestrator:
    return AIOrchestrator(backend or FakeChatBackend(), ToolExecutor(storage))


class TestRunModes:
    """Tests for detect_all and the single-detector modes."""

    @pytest.mark.asyncio
    async def test_netflix_all_year_is_zombie(self, netflix_all_year):
        """Eleven unacknowledged monthly charges make one zombie."""
        detector = SubscriptionDetector.bare(netflix_all_year)

        results = await detector.detect_all(as_of=AS_OF)

        assert results.subscriptions_found == 1
        assert results.zombies_detected == 1
        assert results.price_increases_detected == 0
        assert results.duplicates_detected == 0
        assert results.total_alerts == 1

        sub = await netflix_all_year.find_subscription("NETFLIX.COM", 1)
        assert sub.status == SubscriptionStatus.ZOMBIE
        alerts = await netflix_all_year.list_alerts(kind=AlertKind.ZOMBIE)
        assert [a.subscription_ids for a in alerts] == [(sub.id,)]

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, netflix_all_year):
        """Running twice changes neither the counts nor the stored rows."""
        detector = SubscriptionDetector.bare(netflix_all_year)

        first = await detector.detect_all(as_of=AS_OF)
        second = await detector.detect_all(as_of=AS_OF)

        assert first == second
        assert len(await netflix_all_year.list_subscriptions()) == 1
        assert len(await netflix_all_year.list_alerts()) == 1

    @pytest.mark.asyncio
    async def test_zombies_only(self, netflix_all_year, txns):
        """Single-detector modes still report subscriptions_found."""
        netflix_all_year.add_transactions(txns.monthly("HULU", date(2024, 1, 5), 11, "7.99"))
        detector = SubscriptionDetector.bare(netflix_all_year)

        results = await detector.detect_zombies_only(as_of=AS_OF)

        assert results.subscriptions_found == 2
        assert results.zombies_detected == 2
        assert results.duplicates_detected == 0
        assert await netflix_all_year.list_alerts(kind=AlertKind.DUPLICATE) == []

    @pytest.mark.asyncio
    async def test_increases_only(self, storage, txns):
        """A Netflix price rise is reported in its own mode."""
        storage.add_transactions(txns.monthly(
            "NETFLIX.COM", date(2024, 8, 15), 4, ["15.49", "15.49", "15.49", "17.99"],
        ))
        detector = SubscriptionDetector.bare(storage)

        results = await detector.detect_increases_only(as_of=AS_OF)

        assert results.price_increases_detected == 1
        assert results.zombies_detected == 0
        alert = (await storage.list_alerts(kind=AlertKind.PRICE_INCREASE))[0]
        assert alert.evidence.old_amount == Decimal("15.49")
        assert alert.evidence.new_amount == Decimal("17.99")

    @pytest.mark.asyncio
    async def test_duplicates_only(self, streaming_pair):
        """Netflix and Hulu are duplicate streaming services."""
        detector = SubscriptionDetector.bare(streaming_pair)

        results = await detector.detect_duplicates_only(as_of=AS_OF)

        assert results.subscriptions_found == 2
        assert results.duplicates_detected == 1
        alert = (await streaming_pair.list_alerts(kind=AlertKind.DUPLICATE))[0]
        assert alert.evidence.category == "Streaming"
        assert len(alert.subscription_ids) == 2
        assert alert.duplicate_analysis is None

    @pytest.mark.asyncio
    async def test_as_of_ignores_later_charges(self, storage, txns):
        """Charges after as_of are not part of the run."""
        storage.add_transactions(txns.monthly("NETFLIX.COM", date(2024, 1, 15), 11))
        detector = SubscriptionDetector.bare(storage)

        results = await detector.detect_all(as_of=date(2024, 2, 20))

        assert results.subscriptions_found == 0

    @pytest.mark.asyncio
    async def test_account_scope(self, storage, txns):
        """account_id limits the run to one account."""
        storage.add_transactions(txns.monthly("NETFLIX.COM", date(2024, 1, 15), 11, account_id=1))
        storage.add_transactions(txns.monthly("HULU", date(2024, 1, 5), 11, "7.99", account_id=2))
        detector = SubscriptionDetector.bare(storage)

        results = await detector.detect_all(as_of=AS_OF, account_id=2)

        assert results.subscriptions_found == 1
        assert await storage.find_subscription("NETFLIX.COM", 1) is None


class TestUserDecisions:
    """User decisions survive detection runs."""

    @pytest.mark.asyncio
    async def test_cancelled_stays_cancelled(self, netflix_all_year):
        """A cancelled subscription is never revived or re-alerted."""
        detector = SubscriptionDetector.bare(netflix_all_year)
        await detector.detect_all(as_of=AS_OF)
        sub = await netflix_all_year.find_subscription("NETFLIX.COM", 1)
        await cancel_subscription(netflix_all_year, sub.id)

        results = await detector.detect_all(as_of=AS_OF)

        assert results.subscriptions_found == 0
        assert results.zombies_detected == 0
        assert (await netflix_all_year.get_subscription(sub.id)).status == SubscriptionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_excluded_merchant_stays_excluded(self, netflix_all_year):
        """Excluding a subscription keeps it out of later runs, even with AI."""
        ai = FakeClassifier()
        await SubscriptionDetector.bare(netflix_all_year).detect_all(as_of=AS_OF)
        sub = await netflix_all_year.find_subscription("NETFLIX.COM", 1)
        await exclude_subscription(netflix_all_year, sub.id)

        results = await SubscriptionDetector.with_ai(netflix_all_year, ai).detect_all(as_of=AS_OF)

        assert results.subscriptions_found == 0
        assert (await netflix_all_year.get_subscription(sub.id)).status == SubscriptionStatus.EXCLUDED
        assert ai.calls == []

    @pytest.mark.asyncio
    async def test_cancelled_group_leader_leaves_one_duplicate_alert(self, storage, txns):
        """Cancelling the member a duplicate alert is keyed on regroups the rest under one alert."""
        storage.add_transactions(txns.monthly("NETFLIX.COM", date(2024, 9, 15), 3, "15.49"))
        storage.add_transactions(txns.monthly("HULU", date(2024, 9, 5), 3, "7.99"))
        storage.add_transactions(txns.monthly("DISNEY PLUS", date(2024, 9, 10), 3, "13.99"))
        detector = SubscriptionDetector.bare(storage)
        await detector.detect_duplicates_only(as_of=AS_OF)
        first = (await storage.list_alerts(kind=AlertKind.DUPLICATE))[0]
        assert len(first.subscription_ids) == 3

        await cancel_subscription(storage, first.primary_subscription_id)
        results = await detector.detect_duplicates_only(as_of=AS_OF)

        alerts = await storage.list_alerts(kind=AlertKind.DUPLICATE)
        assert results.duplicates_detected == 1
        assert [a.subscription_ids for a in alerts] == [first.subscription_ids[1:]]


class TestTiers:
    """Tests for tier selection and the AI enrichments."""

    def test_constructors_pick_tier(self, storage):
        """Each constructor builds the tier it names."""
        ai = FakeClassifier()
        orchestrator = orchestrator_for(storage)

        assert SubscriptionDetector.bare(storage).tier == CapabilityTier.BARE
        assert SubscriptionDetector.with_ai(storage, ai).tier == CapabilityTier.AI_ONLY
        assert (
            SubscriptionDetector.with_orchestrator(storage, orchestrator).tier
            == CapabilityTier.ORCHESTRATOR_ONLY
        )
        assert SubscriptionDetector.with_all(storage, ai, orchestrator).tier == CapabilityTier.FULL

    @pytest.mark.asyncio
    async def test_duplicate_analysis_in_ai_tier(self, streaming_pair):
        """Duplicate alerts get an analysis, once."""
        ai = FakeClassifier()
        detector = SubscriptionDetector.with_ai(streaming_pair, ai)

        await detector.detect_all(as_of=AS_OF)
        await detector.detect_all(as_of=AS_OF)

        alert = (await streaming_pair.list_alerts(kind=AlertKind.DUPLICATE))[0]
        assert alert.duplicate_analysis.overlap == "All are Streaming services"
        assert len(ai.duplicate_calls) == 1
        category, services = ai.duplicate_calls[0]
        assert category == "Streaming"
        assert sorted(services) == ["HULU", "NETFLIX.COM"]

    @pytest.mark.asyncio
    async def test_duplicate_analysis_failure_keeps_alert(self, streaming_pair):
        """A failed analysis still leaves the alert in place."""
        ai = FakeClassifier(duplicate_analysis=AIBackendError("down"))

        results = await SubscriptionDetector.with_ai(streaming_pair, ai).detect_all(as_of=AS_OF)

        assert results.duplicates_detected == 1
        alert = (await streaming_pair.list_alerts(kind=AlertKind.DUPLICATE))[0]
        assert alert.duplicate_analysis is None

    @pytest.mark.asyncio
    async def test_orchestrator_annotates_without_changing_counts(self, netflix_all_year):
        """Verification adds an explanation and nothing else."""
        bare_storage = InMemoryStorage(await netflix_all_year.list_transactions())
        bare = await SubscriptionDetector.bare(bare_storage).detect_all(as_of=AS_OF)

        chat = FakeChatBackend()
        detector = SubscriptionDetector.with_orchestrator(
            netflix_all_year, orchestrator_for(netflix_all_year, chat),
        )
        results = await detector.detect_all(as_of=AS_OF)

        assert results == bare
        alert = (await netflix_all_year.list_alerts(kind=AlertKind.ZOMBIE))[0]
        assert alert.explanation.corroborated is True
        assert alert.explanation.explanation == "The charges keep arriving every month."
        assert alert.explanation.model == "fake-chat"
        assert [c.name for c in alert.explanation.tool_calls] == ["search_transactions"]
        assert alert.confidence == 1.0

    @pytest.mark.asyncio
    async def test_explanation_carried_forward(self, netflix_all_year):
        """A re-run keeps the explanation without asking again."""
        chat = FakeChatBackend()
        detector = SubscriptionDetector.with_orchestrator(
            netflix_all_year, orchestrator_for(netflix_all_year, chat),
        )

        await detector.detect_all(as_of=AS_OF)
        calls_after_first_run = len(chat.conversations)
        await detector.detect_all(as_of=AS_OF)

        assert len(chat.conversations) == calls_after_first_run
        alert = (await netflix_all_year.list_alerts(kind=AlertKind.ZOMBIE))[0]
        assert alert.explanation is not None

    @pytest.mark.asyncio
    async def test_orchestrator_failure_means_no_annotation(self, netflix_all_year):
        """A failing chat backend leaves the alert unannotated."""
        chat = FakeChatBackend(script=lambda messages: AIBackendError("unreachable"))
        detector = SubscriptionDetector.with_orchestrator(
            netflix_all_year, orchestrator_for(netflix_all_year, chat),
        )

        results = await detector.detect_all(as_of=AS_OF)

        assert results.zombies_detected == 1
        alert = (await netflix_all_year.list_alerts(kind=AlertKind.ZOMBIE))[0]
        assert alert.explanation is None

    @pytest.mark.asyncio
    async def test_verification_budget(self, storage, txns):
        """No more than max_verifications alerts are verified per run."""
        for name in ("NETFLIX.COM", "SPOTIFY USA", "DROPBOX"):
            storage.add_transactions(txns.monthly(name, date(2024, 1, 10), 11))
        chat = FakeChatBackend()
        detector = SubscriptionDetector.with_orchestrator(
            storage, orchestrator_for(storage, chat), max_verifications=2,
        )

        results = await detector.detect_zombies_only(as_of=AS_OF)

        assert results.zombies_detected == 3
        alerts = await storage.list_alerts(kind=AlertKind.ZOMBIE)
        assert sum(1 for a in alerts if a.explanation is not None) == 2


class BrokenStorage(InMemoryStorage):
    """Storage whose transaction reads fail."""

    async def list_transactions(self, account_id=None, date_from=None, date_to=None):
        raise StorageUnavailableError("connection lost")


class TestFailures:
    """Fatal errors reach the caller."""

    @pytest.mark.asyncio
    async def test_storage_failure_is_raised(self):
        """A storage error aborts the run."""
        detector = SubscriptionDetector.bare(BrokenStorage())

        with pytest.raises(StorageUnavailableError):
            await detector.detect_all(as_of=AS_OF)


class TestCreateDetector:
    """Tests for the create_detector() factory."""

    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        for name in (
            "AI_BACKEND", "OLLAMA_MODEL", "GEMINI_API_KEY",
            "ORCHESTRATOR_ENABLED", "ORCHESTRATOR_BACKEND",
        ):
            monkeypatch.delenv(name, raising=False)

    def test_defaults_to_bare(self, storage):
        """No configuration, no AI."""
        assert create_detector(storage, Settings()).tier == CapabilityTier.BARE

    def test_ollama_classifier(self, storage, monkeypatch):
        """AI_BACKEND=ollama with a model gives the AI tier."""
        monkeypatch.setenv("AI_BACKEND", "ollama")
        monkeypatch.setenv("OLLAMA_MODEL", "llama3.1:8b")

        assert create_detector(storage, Settings()).tier == CapabilityTier.AI_ONLY

    def test_ollama_orchestrator(self, storage, monkeypatch):
        """ORCHESTRATOR_ENABLED adds verification."""
        monkeypatch.setenv("AI_BACKEND", "ollama")
        monkeypatch.setenv("OLLAMA_MODEL", "llama3.1:8b")
        monkeypatch.setenv("ORCHESTRATOR_ENABLED", "true")

        assert create_detector(storage, Settings()).tier == CapabilityTier.FULL

    def test_unconfigured_backend_falls_back(self, storage, monkeypatch):
        """Gemini without an API key leaves the detector one tier lower."""
        monkeypatch.setenv("AI_BACKEND", "gemini")

        assert create_detector(storage, Settings()).tier == CapabilityTier.BARE

    @pytest.mark.asyncio
    async def test_context_manager_closes_clients(self, storage, monkeypatch):
        """Leaving the async with block closes the Ollama connections."""
        monkeypatch.setenv("AI_BACKEND", "ollama")
        monkeypatch.setenv("OLLAMA_MODEL", "llama3.1:8b")
        monkeypatch.setenv("ORCHESTRATOR_ENABLED", "true")

        async with create_detector(storage, Settings()) as detector:
            classifier = detector.capability.ai
            assert not classifier._client.is_closed

        assert classifier._client.is_closed
        assert detector.capability.orchestrator._backend._client.is_closed
