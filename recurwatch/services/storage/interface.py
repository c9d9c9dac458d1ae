"""
Abstract Storage Interface

DESIGN DECISION: The detection engine does not own a storage engine. It
consumes this interface, which allows us to:
1. Plug in whatever database the host application uses
2. Use in-memory storage for testing
3. Keep detection logic decoupled from persistence

The interface is intentionally small - just the operations detection
needs over transactions, subscriptions, the merchant cache and alerts.
"""

from abc import ABC, abstractmethod
from datetime import date
from typing import Optional

from recurwatch.models.alert import Alert, AlertKind
from recurwatch.models.subscription import (
    MerchantClassificationCacheEntry,
    Subscription,
    SubscriptionStatus,
)
from recurwatch.models.transaction import Transaction


class DetectionStorageInterface(ABC):
    """
    Abstract interface for the storage the engine reads and writes.

    Any storage implementation must implement these methods. Every
    method may raise StorageError; the engine treats that as fatal.
    """

    # -------------------------------------------------------------------------
    # Transactions (read-only)
    # -------------------------------------------------------------------------

    @abstractmethod
    async def list_transactions(
        self,
        account_id: Optional[int] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> list[Transaction]:
        """
        List non-archived transactions.

        Args:
            account_id: Only this account if given
            date_from: Transactions on or after this date
            date_to: Transactions on or before this date

        Returns:
            Matching transactions, archived ones excluded
        """
        pass

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    @abstractmethod
    async def list_subscriptions(
        self,
        account_id: Optional[int] = None,
        status: Optional[SubscriptionStatus] = None,
    ) -> list[Subscription]:
        """List subscriptions, optionally filtered by account and status."""
        pass

    @abstractmethod
    async def get_subscription(self, subscription_id: int) -> Optional[Subscription]:
        """
        Retrieve a subscription by its ID.

        Returns:
            The subscription if found, None otherwise
        """
        pass

    @abstractmethod
    async def find_subscription(
        self,
        merchant: str,
        account_id: int,
    ) -> Optional[Subscription]:
        """Retrieve the subscription for a merchant on an account."""
        pass

    @abstractmethod
    async def save_subscription(self, subscription: Subscription) -> Subscription:
        """
        Create or update a subscription.

        A subscription without an id is created and returned with its
        new id. One with an id replaces the stored row.

        Raises:
            NotFoundError: If the id doesn't exist
        """
        pass

    @abstractmethod
    async def update_subscription_status(
        self,
        subscription_id: int,
        status: SubscriptionStatus,
    ) -> Subscription:
        """
        Set the status of a subscription.

        Raises:
            NotFoundError: If the subscription doesn't exist
        """
        pass

    # -------------------------------------------------------------------------
    # Merchant classification cache
    # -------------------------------------------------------------------------

    @abstractmethod
    async def get_cache_entry(
        self,
        merchant_key: str,
    ) -> Optional[MerchantClassificationCacheEntry]:
        """Get the cached classification for a merchant key."""
        pass

    @abstractmethod
    async def save_cache_entry(self, entry: MerchantClassificationCacheEntry) -> None:
        """Insert or replace the cache entry for entry.merchant_key."""
        pass

    # -------------------------------------------------------------------------
    # Alerts
    # -------------------------------------------------------------------------

    @abstractmethod
    async def list_alerts(
        self,
        kind: Optional[AlertKind] = None,
        subscription_id: Optional[int] = None,
    ) -> list[Alert]:
        """
        List alerts.

        Args:
            kind: Only alerts of this kind
            subscription_id: Only alerts whose primary subscription is this one
        """
        pass

    @abstractmethod
    async def upsert_alert(self, alert: Alert) -> Alert:
        """
        Store an alert, replacing any alert with the same identity.

        Identity is (kind, primary subscription id). The replacement keeps
        the id of the alert it supersedes.

        Returns:
            The stored alert (with its id)
        """
        pass

    @abstractmethod
    async def delete_alert(self, alert_id: int) -> None:
        """
        Remove an alert that a newer one supersedes.

        Raises:
            NotFoundError: If the alert doesn't exist
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class StorageUnavailableError(StorageError):
    """Could not reach the storage backend."""
    pass
