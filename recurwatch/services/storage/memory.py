"""
In-Memory Storage Implementation

Reference implementation of DetectionStorageInterface. Used by the test
suite and by embedders that want to run detection over a list of
transactions without a database.

Reads return copies, so callers can never mutate stored rows in place.
"""

from datetime import date
from typing import Iterable, Optional

from recurwatch.models.alert import Alert, AlertKind
from recurwatch.models.subscription import (
    MerchantClassificationCacheEntry,
    Subscription,
    SubscriptionStatus,
)
from recurwatch.models.transaction import Transaction
from recurwatch.services.storage.interface import (
    DetectionStorageInterface,
    NotFoundError,
)


class InMemoryStorage(DetectionStorageInterface):
    """Dictionary-backed storage."""

    def __init__(self, transactions: Optional[Iterable[Transaction]] = None):
        self._transactions: dict[int, Transaction] = {}
        self._subscriptions: dict[int, Subscription] = {}
        self._cache: dict[str, MerchantClassificationCacheEntry] = {}
        self._alerts: dict[int, Alert] = {}
        self._next_subscription_id = 1
        self._next_alert_id = 1

        for txn in transactions or []:
            self.add_transaction(txn)

    # -------------------------------------------------------------------------
    # Seeding helpers (not part of the interface)
    # -------------------------------------------------------------------------

    def add_transaction(self, txn: Transaction) -> None:
        self._transactions[txn.id] = txn

    def add_transactions(self, transactions: Iterable[Transaction]) -> None:
        for txn in transactions:
            self.add_transaction(txn)

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    async def list_transactions(
        self,
        account_id: Optional[int] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> list[Transaction]:
        results = []
        for txn in self._transactions.values():
            if txn.archived:
                continue
            if account_id is not None and txn.account_id != account_id:
                continue
            if date_from and txn.date < date_from:
                continue
            if date_to and txn.date > date_to:
                continue
            results.append(txn)
        return sorted(results, key=lambda t: (t.date, t.id))

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    async def list_subscriptions(
        self,
        account_id: Optional[int] = None,
        status: Optional[SubscriptionStatus] = None,
    ) -> list[Subscription]:
        results = []
        for sub in self._subscriptions.values():
            if account_id is not None and sub.account_id != account_id:
                continue
            if status is not None and sub.status != status:
                continue
            results.append(sub.model_copy())
        return sorted(results, key=lambda s: s.id)

    async def get_subscription(self, subscription_id: int) -> Optional[Subscription]:
        sub = self._subscriptions.get(subscription_id)
        return sub.model_copy() if sub else None

    async def find_subscription(
        self,
        merchant: str,
        account_id: int,
    ) -> Optional[Subscription]:
        for sub in self._subscriptions.values():
            if sub.merchant == merchant and sub.account_id == account_id:
                return sub.model_copy()
        return None

    async def save_subscription(self, subscription: Subscription) -> Subscription:
        if subscription.id is None:
            stored = subscription.model_copy(update={"id": self._next_subscription_id})
            self._next_subscription_id += 1
        else:
            if subscription.id not in self._subscriptions:
                raise NotFoundError(f"Subscription {subscription.id} not found")
            stored = subscription.model_copy()
        self._subscriptions[stored.id] = stored
        return stored.model_copy()

    async def update_subscription_status(
        self,
        subscription_id: int,
        status: SubscriptionStatus,
    ) -> Subscription:
        sub = self._subscriptions.get(subscription_id)
        if sub is None:
            raise NotFoundError(f"Subscription {subscription_id} not found")
        updated = sub.model_copy(update={"status": status})
        self._subscriptions[subscription_id] = updated
        return updated.model_copy()

    # -------------------------------------------------------------------------
    # Merchant classification cache
    # -------------------------------------------------------------------------

    async def get_cache_entry(
        self,
        merchant_key: str,
    ) -> Optional[MerchantClassificationCacheEntry]:
        entry = self._cache.get(merchant_key)
        return entry.model_copy(deep=True) if entry else None

    async def save_cache_entry(self, entry: MerchantClassificationCacheEntry) -> None:
        self._cache[entry.merchant_key] = entry.model_copy(deep=True)

    # -------------------------------------------------------------------------
    # Alerts
    # -------------------------------------------------------------------------

    async def list_alerts(
        self,
        kind: Optional[AlertKind] = None,
        subscription_id: Optional[int] = None,
    ) -> list[Alert]:
        results = []
        for alert in self._alerts.values():
            if kind is not None and alert.kind != kind:
                continue
            if subscription_id is not None and alert.primary_subscription_id != subscription_id:
                continue
            results.append(alert)
        return sorted(results, key=lambda a: a.id)

    async def upsert_alert(self, alert: Alert) -> Alert:
        for existing in self._alerts.values():
            if existing.identity == alert.identity:
                stored = alert.model_copy(update={"id": existing.id})
                self._alerts[existing.id] = stored
                return stored

        stored = alert.model_copy(update={"id": self._next_alert_id})
        self._next_alert_id += 1
        self._alerts[stored.id] = stored
        return stored

    async def delete_alert(self, alert_id: int) -> None:
        if alert_id not in self._alerts:
            raise NotFoundError(f"Alert {alert_id} not found")
        del self._alerts[alert_id]
