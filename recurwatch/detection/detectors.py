"""
Detectors

Three detectors run over the output of the classification pipeline:

1. ZOMBIE: a live subscription that keeps charging on schedule and
   that the user hasn't acknowledged, flagged for review
2. PRICE INCREASE: the latest charges stepped up past the threshold
3. DUPLICATE SERVICE: several live subscriptions in one category

CRITICAL RULES:
- detect() is pure: same context, same outcome. It never calls AI,
  never touches storage
- commit() is the only place a detector writes
- Cancelled and excluded subscriptions are skipped unconditionally
- Alerts replace earlier alerts with the same (kind, primary
  subscription); re-running never duplicates them
- A duplicate group supersedes any stored duplicate alert it shares a
  member with
"""

from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from recurwatch.config.settings import DetectionSettings
from recurwatch.detection.categories import categorize_merchant, normalize_category
from recurwatch.models.alert import Alert, AlertEvidence, AlertKind
from recurwatch.models.subscription import (
    MerchantVerdict,
    Subscription,
    SubscriptionStatus,
)
from recurwatch.models.transaction import SeriesProfile
from recurwatch.services.storage import DetectionStorageInterface


# =============================================================================
# CONTEXT AND OUTCOME
# =============================================================================

class DetectionContext(BaseModel):
    """Inputs shared by every detector in one run."""

    as_of: date
    profiles: list[SeriesProfile] = Field(default_factory=list)
    verdicts: list[MerchantVerdict] = Field(default_factory=list)
    subscriptions: list[Subscription] = Field(
        default_factory=list,
        description="Live subscriptions classified as such in this run"
    )
    settings: DetectionSettings

    def profile_for(self, subscription: Subscription) -> Optional[SeriesProfile]:
        for profile in self.profiles:
            if (profile.merchant_key, profile.account_id) == (
                subscription.merchant, subscription.account_id
            ):
                return profile
        return None

    def verdict_for(self, subscription: Subscription) -> Optional[MerchantVerdict]:
        for verdict in self.verdicts:
            if (verdict.merchant_key, verdict.account_id) == (
                subscription.merchant, subscription.account_id
            ):
                return verdict
        return None

    def live_subscriptions(self) -> list[Subscription]:
        return [s for s in self.subscriptions if s.status.is_live]


class StatusChange(BaseModel):
    """A status transition a detector wants applied."""

    subscription_id: int
    old_status: SubscriptionStatus
    new_status: SubscriptionStatus


class DetectorOutcome(BaseModel):
    """What one detector found."""

    kind: AlertKind
    alerts: list[Alert] = Field(default_factory=list)
    status_changes: list[StatusChange] = Field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.alerts)


class Detector(ABC):
    """Base class: pure detect(), then commit() through storage."""

    kind: AlertKind

    @abstractmethod
    def detect(self, context: DetectionContext) -> DetectorOutcome:
        pass

    async def commit(
        self,
        outcome: DetectorOutcome,
        storage: DetectionStorageInterface,
    ) -> list[Alert]:
        """
        Apply status changes and upsert alerts.

        Raises:
            StorageError: Storage failed (fatal)
        """
        for change in outcome.status_changes:
            current = await storage.get_subscription(change.subscription_id)
            # Never move a subscription the user has since cancelled or excluded
            if current is None or current.status.is_terminal:
                continue
            if current.status != change.new_status:
                await storage.update_subscription_status(
                    change.subscription_id, change.new_status,
                )

        return [await storage.upsert_alert(alert) for alert in outcome.alerts]


# =============================================================================
# ZOMBIE
# =============================================================================

class ZombieDetector(Detector):
    """
    Flags stable, unacknowledged subscriptions for review.

    "Zombie" means "still charging, maybe forgotten", never a usage
    signal. How long a subscription must run before it qualifies and how
    long an acknowledgement lasts both come from DetectionSettings.
    """

    kind = AlertKind.ZOMBIE

    def detect(self, context: DetectionContext) -> DetectorOutcome:
        settings = context.settings
        outcome = DetectorOutcome(kind=self.kind)

        for sub in context.subscriptions:
            if sub.status.is_terminal or not sub.status.is_live:
                continue

            profile = context.profile_for(sub)
            verdict = context.verdict_for(sub)
            if profile is None or verdict is None or not verdict.is_subscription:
                continue
            if not profile.eligible:
                continue
            if sub.frequency is None or sub.frequency.value != profile.periodicity.value:
                continue
            if self._acknowledged(sub, context.as_of, settings):
                continue
            if (context.as_of - sub.first_seen).days < settings.zombie_min_days:
                continue
            if self._series_silent(profile, context.as_of):
                # Left for the surrounding workflow to cancel
                continue

            if sub.status == SubscriptionStatus.ACTIVE:
                outcome.status_changes.append(StatusChange(
                    subscription_id=sub.id,
                    old_status=sub.status,
                    new_status=SubscriptionStatus.ZOMBIE,
                ))

            months = (context.as_of - sub.first_seen).days // 30
            amount = f"{sub.amount}" if sub.amount is not None else "a varying amount"
            outcome.alerts.append(Alert(
                kind=self.kind,
                subscription_ids=(sub.id,),
                confidence=verdict.confidence,
                evidence=AlertEvidence(
                    message=(
                        f"{sub.merchant} has charged {amount} {profile.periodicity.value} "
                        f"for about {months} months ({profile.occurrence_count} charges) "
                        f"without being reviewed"
                    ),
                    new_amount=profile.latest_amount,
                    interval_days=profile.median_interval_days,
                    frequency=profile.periodicity.value,
                ),
            ))

        return outcome

    @staticmethod
    def _acknowledged(sub: Subscription, as_of: date, settings: DetectionSettings) -> bool:
        """Acknowledged, and the acknowledgement hasn't gone stale."""
        if not sub.user_acknowledged:
            return False
        if settings.acknowledgment_stale_days == 0 or sub.acknowledged_at is None:
            return True
        age = (as_of - sub.acknowledged_at.date()).days
        return age <= settings.acknowledgment_stale_days

    @staticmethod
    def _series_silent(profile: SeriesProfile, as_of: date) -> bool:
        expected = profile.expected_interval_days
        if expected is None:
            return False
        return (as_of - profile.last_seen).days > 2 * expected


# =============================================================================
# PRICE INCREASE
# =============================================================================

class PriceIncreaseDetector(Detector):
    """
    One alert per subscription whose latest charges stepped up.

    Several consecutive increases collapse into one alert carrying the
    latest step (old -> new) only.
    """

    kind = AlertKind.PRICE_INCREASE

    def detect(self, context: DetectionContext) -> DetectorOutcome:
        threshold = Decimal(str(context.settings.price_increase_threshold))
        outcome = DetectorOutcome(kind=self.kind)

        for sub in context.live_subscriptions():
            profile = context.profile_for(sub)
            if profile is None or not profile.trend_increasing:
                continue

            amounts = list(profile.amounts)
            baseline = amounts[-3]
            current = amounts[-1]
            if baseline <= 0 or (current - baseline) / baseline <= threshold:
                continue

            # Amount just before the latest step up
            old = next(a for a in reversed(amounts[:-1]) if a < current)
            step = (current - old) / old

            verdict = context.verdict_for(sub)
            outcome.alerts.append(Alert(
                kind=self.kind,
                subscription_ids=(sub.id,),
                confidence=verdict.confidence if verdict else 1.0,
                evidence=AlertEvidence(
                    message=f"{sub.merchant} went from {old} to {current} ({step:.1%})",
                    old_amount=old,
                    new_amount=current,
                    increase_fraction=float(step),
                    interval_days=profile.median_interval_days,
                    frequency=profile.periodicity.value,
                ),
            ))

        return outcome


# =============================================================================
# DUPLICATE SERVICE
# =============================================================================

class DuplicateServiceDetector(Detector):
    """
    Groups live subscriptions by category and flags every category with
    two or more of them.

    Category: the AI-provided one when known, else the keyword table in
    recurwatch.detection.categories. Subscriptions with neither are not
    grouped.
    """

    kind = AlertKind.DUPLICATE

    def detect(self, context: DetectionContext) -> DetectorOutcome:
        outcome = DetectorOutcome(kind=self.kind)
        groups: dict[str, list[Subscription]] = defaultdict(list)

        for sub in context.live_subscriptions():
            category = self.category_for(sub, context.verdict_for(sub))
            if category:
                groups[category].append(sub)

        for category in sorted(groups):
            members = sorted(groups[category], key=lambda s: s.id)
            if len(members) < 2:
                continue

            costs = [s.monthly_cost for s in members if s.monthly_cost is not None]
            names = ", ".join(s.merchant for s in members)
            message = f"{len(members)} {category} subscriptions: {names}"
            if costs:
                message += f" ({sum(costs, Decimal('0.00'))}/month)"

            outcome.alerts.append(Alert(
                kind=self.kind,
                subscription_ids=tuple(s.id for s in members),
                confidence=1.0,
                evidence=AlertEvidence(
                    message=message,
                    category=category,
                    overlap_description=f"Multiple {category} services",
                ),
            ))

        return outcome

    async def commit(
        self,
        outcome: DetectorOutcome,
        storage: DetectionStorageInterface,
    ) -> list[Alert]:
        """
        Upsert this run's groups and drop stored duplicate alerts they
        supersede.

        A group keyed by its lowest subscription id gets a new identity
        when that member is cancelled or excluded. The old alert shares
        members with the new group and is removed, so no subscription
        carries two duplicate alerts.
        """
        new_identities = {alert.identity for alert in outcome.alerts}
        grouped_ids = {sub_id for alert in outcome.alerts for sub_id in alert.subscription_ids}

        for stored in await storage.list_alerts(kind=self.kind):
            if stored.identity in new_identities:
                continue
            if grouped_ids.intersection(stored.subscription_ids):
                await storage.delete_alert(stored.id)

        return await super().commit(outcome, storage)

    @staticmethod
    def category_for(
        sub: Subscription,
        verdict: Optional[MerchantVerdict],
    ) -> Optional[str]:
        if verdict is not None and verdict.category:
            return normalize_category(verdict.category)
        if sub.category:
            return normalize_category(sub.category)
        return categorize_merchant(sub.merchant)
