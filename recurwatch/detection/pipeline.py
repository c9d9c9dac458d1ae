"""
Classification Pipeline

Decides, per (merchant key, account), whether a profile is a
subscription, then persists the verdict.

ORDER OF PRECEDENCE (highest first):
1. User override "excluded" in the merchant cache  -> never a subscription
2. AI verdict at or above the confidence threshold (AI tiers only)
3. Rule verdict from the stability statistics

CRITICAL RULES:
- The AI is only asked about profiles the rules can't settle: enough
  charges, but ineligible or with an unstable amount
- An AI failure (unreachable, timeout, malformed answer) degrades that
  ONE merchant to its rule verdict; the run carries on
- A malformed AI answer is NEVER read as "not a subscription"
- "unexcluded" means the user re-enabled a merchant: the AI can't
  suppress it again
- Cancelled and excluded subscriptions are never modified by the engine

CONCURRENCY:
- AI calls for distinct merchant keys run concurrently, bounded by a
  semaphore (max_concurrency)
- One lock per merchant key: at most one classification in flight per key
- One apply lock: cache and subscription writes happen one merchant at a time
- A storage error cancels outstanding work and propagates
"""

import asyncio
from collections import defaultdict
from typing import Any, Awaitable, Iterable, Optional

import structlog
from pydantic import BaseModel, Field

from recurwatch.ai.interface import AIError, ClassificationContext
from recurwatch.config.settings import DetectionSettings
from recurwatch.detection.capability import Capability
from recurwatch.detection.categories import normalize_category
from recurwatch.detection.stability import analyze_series
from recurwatch.log import get_logger
from recurwatch.models.subscription import (
    CachedAIAnswer,
    ClassificationSource,
    Frequency,
    MerchantClassificationCacheEntry,
    MerchantVerdict,
    Subscription,
    SubscriptionClassification,
    SubscriptionStatus,
    UserOverride,
)
from recurwatch.models.transaction import CandidateSeries, Periodicity, SeriesProfile
from recurwatch.services.storage import DetectionStorageInterface


class InvariantViolationError(Exception):
    """An internal invariant was broken. Fatal to the run."""
    pass


class PipelineOutcome(BaseModel):
    """Everything the detectors need from one classification pass."""

    profiles: list[SeriesProfile] = Field(default_factory=list)
    verdicts: list[MerchantVerdict] = Field(default_factory=list)
    subscriptions: list[Subscription] = Field(
        default_factory=list,
        description="Live subscriptions classified as such in this run"
    )
    created_ids: list[int] = Field(default_factory=list)
    degraded: int = Field(default=0, ge=0)

    @property
    def subscriptions_found(self) -> int:
        return len(self.subscriptions)


async def gather_or_cancel(aws: Iterable[Awaitable[Any]]) -> list[Any]:
    """
    Run awaitables concurrently; on the first error cancel the rest,
    wait for them to unwind, and re-raise that error.
    """
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class ClassificationPipeline:
    """
    Classifies every candidate series and persists the result.

    One instance serves one detector; per-run state (locks, AI memo)
    is created fresh by each run() call.
    """

    def __init__(
        self,
        storage: DetectionStorageInterface,
        capability: Capability,
        settings: DetectionSettings,
    ):
        self._storage = storage
        self._capability = capability
        self._settings = settings

    async def run(
        self,
        series_list: list[CandidateSeries],
        logger: Optional[structlog.stdlib.BoundLogger] = None,
    ) -> PipelineOutcome:
        """
        Profile, classify and persist every series.

        Raises:
            StorageError: Storage failed (fatal)
            InvariantViolationError: Internal invariant broken (fatal)
        """
        run = _PipelineRun(
            storage=self._storage,
            capability=self._capability,
            settings=self._settings,
            logger=logger or get_logger(__name__),
        )
        return await run.execute(series_list)


class _PipelineRun:
    """State for one pipeline run."""

    def __init__(
        self,
        storage: DetectionStorageInterface,
        capability: Capability,
        settings: DetectionSettings,
        logger: structlog.stdlib.BoundLogger,
    ):
        self._storage = storage
        self._capability = capability
        self._settings = settings
        self._logger = logger

        self._semaphore = asyncio.Semaphore(settings.max_concurrency)
        self._apply_lock = asyncio.Lock()
        self._key_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        # merchant key -> AI answer, None if the call failed
        self._ai_memo: dict[str, Optional[SubscriptionClassification]] = {}

        self._subscriptions: list[Subscription] = []
        self._created_ids: list[int] = []

    async def execute(self, series_list: list[CandidateSeries]) -> PipelineOutcome:
        seen: set[tuple[str, int]] = set()
        for series in series_list:
            identity = (series.merchant_key, series.account_id)
            if identity in seen:
                raise InvariantViolationError(
                    f"Series {identity} appears twice in one run"
                )
            seen.add(identity)

        profiles = [analyze_series(series, self._settings) for series in series_list]

        verdicts = await gather_or_cancel(
            self._process(series, profile)
            for series, profile in zip(series_list, profiles)
        )

        return PipelineOutcome(
            profiles=profiles,
            verdicts=verdicts,
            subscriptions=sorted(self._subscriptions, key=lambda s: s.id),
            created_ids=sorted(self._created_ids),
            degraded=sum(1 for v in verdicts if v.degraded),
        )

    # -------------------------------------------------------------------------
    # Per-merchant unit of work
    # -------------------------------------------------------------------------

    async def _process(
        self,
        series: CandidateSeries,
        profile: SeriesProfile,
    ) -> MerchantVerdict:
        key = profile.merchant_key

        async with self._key_locks[key]:
            cache = await self._storage.get_cache_entry(key)

            if cache is not None and cache.user_override == UserOverride.EXCLUDED:
                async with self._apply_lock:
                    await self._apply_exclusion(profile)
                return MerchantVerdict(
                    merchant_key=key,
                    account_id=profile.account_id,
                    is_subscription=False,
                    confidence=1.0,
                    source=ClassificationSource.USER,
                    reason="Excluded by user",
                )

            verdict = self._rule_verdict(profile, cache)
            classification: Optional[SubscriptionClassification] = None
            if self._capability.uses_ai_classification and self._needs_ai(profile):
                classification = await self._classification(series, profile, cache)
                verdict = self._ai_verdict(profile, cache, verdict, classification)

            async with self._apply_lock:
                await self._refresh_cache(profile, verdict, cache, classification)
                if verdict.is_subscription:
                    await self._persist(profile, verdict)

        return verdict

    def _rule_verdict(
        self,
        profile: SeriesProfile,
        cache: Optional[MerchantClassificationCacheEntry],
    ) -> MerchantVerdict:
        if profile.eligible:
            reason = (
                f"{profile.periodicity.value} charges, "
                f"{profile.occurrence_count} occurrences"
            )
        else:
            reason = "Not periodic enough to be a subscription"

        return MerchantVerdict(
            merchant_key=profile.merchant_key,
            account_id=profile.account_id,
            is_subscription=profile.eligible,
            confidence=1.0,
            source=ClassificationSource.RULE,
            reason=reason,
            category=cache.category if (cache and profile.eligible) else None,
        )

    def _needs_ai(self, profile: SeriesProfile) -> bool:
        """Enough charges, and the rules are unsure (ineligible or ambiguous)."""
        if profile.occurrence_count < self._settings.min_occurrences:
            return False
        return not profile.eligible or not profile.amount_stable

    async def _classification(
        self,
        series: CandidateSeries,
        profile: SeriesProfile,
        cache: Optional[MerchantClassificationCacheEntry],
    ) -> Optional[SubscriptionClassification]:
        """
        The AI answer for this profile: cached for an unchanged
        fingerprint, memoized within the run, or freshly asked.
        None if the call failed.
        """
        key = profile.merchant_key

        if cache is not None:
            cached = cache.cached_answer(profile.account_id, profile.fingerprint)
            if cached is not None:
                return cached

        if key not in self._ai_memo:
            self._ai_memo[key] = await self._call_ai(series, profile)
        return self._ai_memo[key]

    def _ai_verdict(
        self,
        profile: SeriesProfile,
        cache: Optional[MerchantClassificationCacheEntry],
        rule: MerchantVerdict,
        classification: Optional[SubscriptionClassification],
    ) -> MerchantVerdict:
        key = profile.merchant_key

        if classification is None:
            return rule.model_copy(update={"degraded": True})

        if classification.confidence < self._settings.ai_confidence_threshold:
            return rule

        category = normalize_category(classification.category)

        if classification.is_subscription:
            if profile.periodicity == Periodicity.IRREGULAR:
                return rule
            return MerchantVerdict(
                merchant_key=key,
                account_id=profile.account_id,
                is_subscription=True,
                confidence=classification.confidence,
                source=ClassificationSource.AI,
                reason=classification.reason,
                category=category,
            )

        if cache is not None and cache.user_override == UserOverride.UNEXCLUDED:
            # The user re-enabled this merchant
            return rule

        return MerchantVerdict(
            merchant_key=key,
            account_id=profile.account_id,
            is_subscription=False,
            confidence=classification.confidence,
            source=ClassificationSource.AI,
            reason=classification.reason,
        )

    async def _call_ai(
        self,
        series: CandidateSeries,
        profile: SeriesProfile,
    ) -> Optional[SubscriptionClassification]:
        """One AI call. Returns None (and logs) on failure."""
        context = ClassificationContext.from_profile(profile, series)
        try:
            async with self._semaphore:
                return await self._capability.ai.classify_subscription(
                    profile.merchant_key, context,
                )
        except AIError as e:
            self._logger.warning(
                "ai_classification_degraded",
                merchant=profile.merchant_key,
                account_id=profile.account_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return None

    # -------------------------------------------------------------------------
    # Writes (always under the apply lock)
    # -------------------------------------------------------------------------

    async def _apply_exclusion(self, profile: SeriesProfile) -> None:
        existing = await self._storage.find_subscription(
            profile.merchant_key, profile.account_id,
        )
        if existing is None or existing.status.is_terminal:
            return
        await self._storage.update_subscription_status(existing.id, SubscriptionStatus.EXCLUDED)
        self._logger.info(
            "subscription_excluded_by_override",
            merchant=profile.merchant_key,
            subscription_id=existing.id,
        )

    async def _refresh_cache(
        self,
        profile: SeriesProfile,
        verdict: MerchantVerdict,
        cache: Optional[MerchantClassificationCacheEntry],
        classification: Optional[SubscriptionClassification],
    ) -> None:
        override = UserOverride.NONE
        if cache is not None and cache.user_override == UserOverride.UNEXCLUDED:
            override = UserOverride.UNEXCLUDED

        category = verdict.category
        if category is None and cache is not None:
            category = cache.category

        # Other accounts keep their answers; this one records what it was told
        ai_answers = dict(cache.ai_answers) if cache is not None else {}
        if classification is not None:
            ai_answers[profile.account_id] = CachedAIAnswer(
                fingerprint=profile.fingerprint,
                classification=classification,
            )

        await self._storage.save_cache_entry(MerchantClassificationCacheEntry(
            merchant_key=profile.merchant_key,
            is_subscription=verdict.is_subscription,
            confidence=verdict.confidence,
            source=verdict.source,
            user_override=override,
            category=category,
            reason=verdict.reason,
            profile_fingerprint=profile.fingerprint,
            ai_answers=ai_answers,
        ))

    async def _persist(self, profile: SeriesProfile, verdict: MerchantVerdict) -> None:
        existing = await self._storage.find_subscription(
            profile.merchant_key, profile.account_id,
        )
        if existing is not None and existing.status.is_terminal:
            return

        amount = profile.median_amount if profile.amount_stable else None
        frequency = Frequency.from_periodicity(profile.periodicity)

        if existing is None:
            saved = await self._storage.save_subscription(Subscription(
                merchant=profile.merchant_key,
                account_id=profile.account_id,
                amount=amount,
                frequency=frequency,
                first_seen=profile.first_seen,
                last_seen=profile.last_seen,
                status=SubscriptionStatus.ACTIVE,
                category=verdict.category,
            ))
            if saved.id is None:
                raise InvariantViolationError(
                    f"Storage returned no id for new subscription {profile.merchant_key}"
                )
            self._created_ids.append(saved.id)
            self._logger.info(
                "subscription_created",
                merchant=profile.merchant_key,
                subscription_id=saved.id,
                source=verdict.source.value,
            )
        else:
            saved = await self._storage.save_subscription(Subscription(
                **existing.model_dump(exclude={
                    "amount", "frequency", "first_seen", "last_seen", "category",
                }),
                amount=amount,
                frequency=frequency,
                first_seen=min(existing.first_seen, profile.first_seen),
                last_seen=max(existing.last_seen, profile.last_seen),
                category=verdict.category or existing.category,
            ))

        self._subscriptions.append(saved)
