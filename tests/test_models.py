"""
Tests for recurwatch data models.
"""

import pytest
from datetime import date, datetime
from decimal import Decimal

from pydantic import ValidationError

from recurwatch.models import (
    Alert,
    AlertEvidence,
    AlertKind,
    CachedAIAnswer,
    CandidateSeries,
    DetectionResults,
    Frequency,
    MerchantClassificationCacheEntry,
    Periodicity,
    SeriesProfile,
    Subscription,
    SubscriptionClassification,
    SubscriptionStatus,
    Transaction,
    UserOverride,
)


class TestTransactionModels:
    """Tests for transactions and series."""

    def test_transaction_expense_flag(self):
        """Negative amounts are expenses, positive ones are not."""
        charge = Transaction(id=1, account_id=1, date=date(2024, 1, 1), amount=Decimal("-9.99"))
        refund = Transaction(id=2, account_id=1, date=date(2024, 1, 2), amount=Decimal("9.99"))
        assert charge.is_expense
        assert not refund.is_expense

    def test_transaction_is_frozen(self):
        """Transactions can't be mutated after import."""
        txn = Transaction(id=1, account_id=1, date=date(2024, 1, 1), amount=Decimal("-1"))
        with pytest.raises(ValidationError):
            txn.amount = Decimal("-2")

    def test_series_sorted_by_date_then_id(self):
        """Series transactions are ordered ascending by date, id breaking ties."""
        t1 = Transaction(id=3, account_id=1, date=date(2024, 3, 1), amount=Decimal("-1"))
        t2 = Transaction(id=2, account_id=1, date=date(2024, 1, 1), amount=Decimal("-2"))
        t3 = Transaction(id=1, account_id=1, date=date(2024, 3, 1), amount=Decimal("-3"))
        series = CandidateSeries(merchant_key="X", account_id=1, transactions=(t1, t2, t3))

        assert [t.id for t in series.transactions] == [2, 1, 3]
        assert series.amounts == [Decimal("2"), Decimal("3"), Decimal("1")]
        assert len(series) == 3


class TestProfileModel:
    """Tests for SeriesProfile."""

    def _profile(self, **overrides) -> SeriesProfile:
        data = dict(
            merchant_key="NETFLIX.COM",
            account_id=1,
            occurrence_count=4,
            first_seen=date(2024, 1, 15),
            last_seen=date(2024, 4, 15),
            periodicity=Periodicity.MONTHLY,
            median_amount=Decimal("15.49"),
            amounts=(Decimal("15.49"),) * 4,
            eligible=True,
        )
        data.update(overrides)
        return SeriesProfile(**data)

    def test_fingerprint_is_stable(self):
        """Equal profiles have equal fingerprints."""
        assert self._profile().fingerprint == self._profile().fingerprint

    def test_fingerprint_changes_with_new_charge(self):
        """A new charge changes the fingerprint."""
        later = self._profile(occurrence_count=5, last_seen=date(2024, 5, 15))
        assert later.fingerprint != self._profile().fingerprint

    def test_expected_interval(self):
        """Expected interval comes from the canonical period."""
        assert self._profile().expected_interval_days == 30
        assert self._profile(periodicity=Periodicity.IRREGULAR).expected_interval_days is None

    def test_latest_amount(self):
        """Latest amount is the last charge."""
        profile = self._profile(amounts=(Decimal("15.49"), Decimal("17.99")))
        assert profile.latest_amount == Decimal("17.99")


class TestSubscriptionModels:
    """Tests for subscriptions and the classification cache."""

    def test_last_seen_before_first_seen_rejected(self):
        """last_seen can't precede first_seen."""
        with pytest.raises(ValidationError):
            Subscription(
                merchant="NETFLIX.COM",
                account_id=1,
                first_seen=date(2024, 5, 1),
                last_seen=date(2024, 1, 1),
            )

    def test_monthly_cost(self):
        """Amounts are normalized to a 30-day month."""
        annual = Subscription(
            merchant="AMAZON PRIME",
            account_id=1,
            amount=Decimal("139.00"),
            frequency=Frequency.ANNUAL,
            first_seen=date(2023, 1, 1),
            last_seen=date(2024, 1, 1),
        )
        assert annual.monthly_cost == Decimal("11.42")

    def test_monthly_cost_unknown_without_amount(self):
        """No amount means no monthly cost."""
        sub = Subscription(
            merchant="CITY POWER",
            account_id=1,
            frequency=Frequency.MONTHLY,
            first_seen=date(2024, 1, 1),
            last_seen=date(2024, 2, 1),
        )
        assert sub.monthly_cost is None

    def test_terminal_statuses(self):
        """Only cancelled and excluded are terminal."""
        assert SubscriptionStatus.CANCELLED.is_terminal
        assert SubscriptionStatus.EXCLUDED.is_terminal
        assert not SubscriptionStatus.ACTIVE.is_terminal
        assert SubscriptionStatus.ZOMBIE.is_live

    def test_frequency_from_periodicity(self):
        """Irregular periodicity has no frequency."""
        assert Frequency.from_periodicity(Periodicity.MONTHLY) == Frequency.MONTHLY
        assert Frequency.from_periodicity(Periodicity.IRREGULAR) is None

    def test_cache_entry_defaults(self):
        """A fresh cache entry carries no override."""
        entry = MerchantClassificationCacheEntry(merchant_key="NETFLIX.COM", is_subscription=True)
        assert entry.user_override == UserOverride.NONE
        assert entry.profile_fingerprint is None
        assert entry.ai_answers == {}
        assert entry.updated_at.tzinfo is not None

    def test_cached_answer_needs_matching_fingerprint(self):
        answer = SubscriptionClassification(is_subscription=False, confidence=0.4)
        entry = MerchantClassificationCacheEntry(
            merchant_key="CITY POWER",
            is_subscription=True,
            ai_answers={2: CachedAIAnswer(fingerprint="f2", classification=answer)},
        )

        assert entry.cached_answer(2, "f2") == answer
        assert entry.cached_answer(2, "changed") is None
        assert entry.cached_answer(1, "f2") is None


class TestAlertModels:
    """Tests for alerts and the run summary."""

    def test_alert_requires_subscription(self):
        """An alert must reference at least one subscription."""
        with pytest.raises(ValidationError):
            Alert(kind=AlertKind.ZOMBIE, subscription_ids=(), evidence=AlertEvidence())

    def test_alert_identity_uses_primary_subscription(self):
        """Identity is (kind, first subscription id)."""
        alert = Alert(
            kind=AlertKind.DUPLICATE,
            subscription_ids=(3, 7),
            evidence=AlertEvidence(category="Streaming"),
        )
        assert alert.identity == (AlertKind.DUPLICATE, 3)

    def test_confidence_bounds(self):
        """Confidence must lie in [0, 1]."""
        with pytest.raises(ValidationError):
            Alert(
                kind=AlertKind.ZOMBIE,
                subscription_ids=(1,),
                evidence=AlertEvidence(),
                confidence=1.5,
            )

    def test_detection_results_total(self):
        """total_alerts sums the three detector counts."""
        results = DetectionResults(
            subscriptions_found=5,
            zombies_detected=2,
            price_increases_detected=1,
            duplicates_detected=1,
        )
        assert results.total_alerts == 4
