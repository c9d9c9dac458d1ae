"""
Subscription and Classification Models

DESIGN DECISION: Status and override fields are explicit enums, never
booleans. "Previously excluded, now re-enabled" has to be told apart from
"never evaluated", and CANCELLED/EXCLUDED have to be told apart from
anything the engine assigns on its own.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from recurwatch.models.transaction import Periodicity


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================

class SubscriptionStatus(str, Enum):
    """
    Lifecycle status of a subscription.

    CRITICAL: CANCELLED and EXCLUDED are user decisions.
    The engine NEVER moves a subscription out of them.
    """
    ACTIVE = "active"
    ZOMBIE = "zombie"          # Flagged for user review
    CANCELLED = "cancelled"    # User action (or surrounding workflow)
    EXCLUDED = "excluded"      # User said "not a subscription"

    @property
    def is_terminal(self) -> bool:
        return self in (SubscriptionStatus.CANCELLED, SubscriptionStatus.EXCLUDED)

    @property
    def is_live(self) -> bool:
        return self in (SubscriptionStatus.ACTIVE, SubscriptionStatus.ZOMBIE)


class Frequency(str, Enum):
    """Billing frequency of a subscription."""
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUAL = "annual"

    @classmethod
    def from_periodicity(cls, periodicity: Periodicity) -> Optional["Frequency"]:
        if periodicity == Periodicity.IRREGULAR:
            return None
        return cls(periodicity.value)

    @property
    def days(self) -> int:
        return {
            Frequency.WEEKLY: 7,
            Frequency.MONTHLY: 30,
            Frequency.QUARTERLY: 91,
            Frequency.ANNUAL: 365,
        }[self]


class UserOverride(str, Enum):
    """Persisted user decision about a merchant."""
    NONE = "none"
    EXCLUDED = "excluded"        # Never flag this merchant
    UNEXCLUDED = "unexcluded"    # Exclusion was reversed by the user


class ClassificationSource(str, Enum):
    """Where a subscription verdict came from."""
    RULE = "rule"
    AI = "ai"
    USER = "user"


# =============================================================================
# SUBSCRIPTION
# =============================================================================

class Subscription(BaseModel):
    """
    A persisted recurring charge.

    Unique by (merchant, account_id). Amount is None when the charged
    amounts are too irregular to quote one; frequency is None when the
    cadence could not be pinned down.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: Optional[int] = Field(
        default=None,
        description="Assigned by storage on first save"
    )
    merchant: str = Field(
        ...,
        min_length=1,
        max_length=200,
        description="Normalized merchant key"
    )
    account_id: int
    amount: Optional[Decimal] = Field(default=None, ge=0)
    frequency: Optional[Frequency] = None
    first_seen: date
    last_seen: date
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    category: Optional[str] = Field(default=None, max_length=100)

    # Acknowledgement ("yes, I know about this one")
    user_acknowledged: bool = False
    acknowledged_at: Optional[datetime] = None

    @model_validator(mode="after")
    def validate_dates(self) -> "Subscription":
        """last_seen can never precede first_seen."""
        if self.last_seen < self.first_seen:
            raise ValueError("last_seen cannot be before first_seen")
        return self

    @property
    def monthly_cost(self) -> Optional[Decimal]:
        """Amount normalized to a 30-day month (None if unknown)."""
        if self.amount is None or self.frequency is None:
            return None
        factor = Decimal(30) / Decimal(self.frequency.days)
        return (self.amount * factor).quantize(Decimal("0.01"))


# =============================================================================
# CLASSIFICATION
# =============================================================================

class SubscriptionClassification(BaseModel):
    """
    AI verdict on whether a merchant is a subscription service.

    This is what classify_subscription() returns. The pipeline decides
    how much weight it gets.
    """

    is_subscription: bool
    confidence: float = Field(ge=0.0, le=1.0)
    reason: str = Field(default="", max_length=1000)
    category: Optional[str] = Field(
        default=None,
        max_length=100,
        description="Service category, if the model offered one"
    )


class CachedAIAnswer(BaseModel):
    """The AI's raw answer for one account's profile of a merchant."""

    fingerprint: str = Field(..., min_length=1)
    classification: SubscriptionClassification


class MerchantClassificationCacheEntry(BaseModel):
    """
    Cached classification for a merchant key.

    CRITICAL: user_override == EXCLUDED beats every statistical or AI
    signal in the same run.

    ai_answers holds the raw AI answer per account, whether or not it
    won. An answer is reused while that account's profile fingerprint is
    unchanged; a failed call is never stored.
    """

    merchant_key: str = Field(..., min_length=1)
    is_subscription: bool
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    source: ClassificationSource = ClassificationSource.RULE
    user_override: UserOverride = UserOverride.NONE
    category: Optional[str] = None
    reason: Optional[str] = None
    profile_fingerprint: Optional[str] = Field(
        default=None,
        description="Fingerprint of the profile this verdict was computed for"
    )
    ai_answers: dict[int, CachedAIAnswer] = Field(
        default_factory=dict,
        description="Account id -> last AI answer and the fingerprint it was given for"
    )
    updated_at: datetime = Field(default_factory=utc_now)

    def cached_answer(self, account_id: int, fingerprint: str) -> Optional[SubscriptionClassification]:
        answer = self.ai_answers.get(account_id)
        if answer is None or answer.fingerprint != fingerprint:
            return None
        return answer.classification


class MerchantVerdict(BaseModel):
    """Final pipeline decision for one series."""
    model_config = ConfigDict(frozen=True)

    merchant_key: str
    account_id: int
    is_subscription: bool
    confidence: float = Field(ge=0.0, le=1.0)
    source: ClassificationSource
    reason: Optional[str] = None
    category: Optional[str] = None
    degraded: bool = Field(
        default=False,
        description="True when an AI failure forced the rule verdict"
    )
