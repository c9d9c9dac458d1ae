"""
User Override Actions

The decisions only a user makes. The engine never calls these itself;
it only honours what they leave behind in storage:

- exclude:     "not a subscription" (sticky, also for future series)
- unexclude:   reverse an exclusion
- acknowledge: "I know about this one" (suppresses zombie flags)
- cancel:      the subscription has ended
"""

from datetime import datetime
from typing import Optional

from recurwatch.models.subscription import (
    ClassificationSource,
    MerchantClassificationCacheEntry,
    Subscription,
    SubscriptionStatus,
    UserOverride,
    utc_now,
)
from recurwatch.services.storage import DetectionStorageInterface, NotFoundError


async def _require(storage: DetectionStorageInterface, subscription_id: int) -> Subscription:
    subscription = await storage.get_subscription(subscription_id)
    if subscription is None:
        raise NotFoundError(f"Subscription {subscription_id} not found")
    return subscription


async def _set_override(
    storage: DetectionStorageInterface,
    merchant_key: str,
    override: UserOverride,
    is_subscription: bool,
) -> None:
    entry = await storage.get_cache_entry(merchant_key)
    if entry is None:
        entry = MerchantClassificationCacheEntry(
            merchant_key=merchant_key,
            is_subscription=is_subscription,
        )
    await storage.save_cache_entry(entry.model_copy(update={
        "is_subscription": is_subscription,
        "confidence": 1.0,
        "source": ClassificationSource.USER,
        "user_override": override,
        # Forces the next run to recompute instead of reusing an AI verdict
        "profile_fingerprint": None,
        "ai_answers": {},
        "updated_at": utc_now(),
    }))


async def exclude_subscription(
    storage: DetectionStorageInterface,
    subscription_id: int,
) -> Subscription:
    """
    Mark a subscription (and its merchant key) as not a subscription.

    Raises:
        NotFoundError: If the subscription doesn't exist
    """
    subscription = await _require(storage, subscription_id)
    await _set_override(storage, subscription.merchant, UserOverride.EXCLUDED, False)
    return await storage.update_subscription_status(subscription_id, SubscriptionStatus.EXCLUDED)


async def unexclude_subscription(
    storage: DetectionStorageInterface,
    subscription_id: int,
) -> Subscription:
    """Reverse an exclusion; the subscription becomes active again."""
    subscription = await _require(storage, subscription_id)
    await _set_override(storage, subscription.merchant, UserOverride.UNEXCLUDED, True)
    return await storage.update_subscription_status(subscription_id, SubscriptionStatus.ACTIVE)


async def acknowledge_subscription(
    storage: DetectionStorageInterface,
    subscription_id: int,
    acknowledged_at: Optional[datetime] = None,
) -> Subscription:
    """
    Record that the user knows about a subscription.

    A zombie goes back to active. Terminal statuses are left alone.
    """
    subscription = await _require(storage, subscription_id)
    status = subscription.status
    if status == SubscriptionStatus.ZOMBIE:
        status = SubscriptionStatus.ACTIVE

    return await storage.save_subscription(subscription.model_copy(update={
        "user_acknowledged": True,
        "acknowledged_at": acknowledged_at or utc_now(),
        "status": status,
    }))


async def cancel_subscription(
    storage: DetectionStorageInterface,
    subscription_id: int,
) -> Subscription:
    """Mark a subscription as cancelled. The engine never revives it."""
    await _require(storage, subscription_id)
    return await storage.update_subscription_status(subscription_id, SubscriptionStatus.CANCELLED)
