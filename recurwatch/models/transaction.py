"""
Transaction and Series Models

These models describe the raw material of detection:
1. Transactions as imported (owned by storage, read-only here)
2. Candidate series (transactions grouped per merchant and account)
3. Series profiles (the statistics computed over a series)

DESIGN DECISION: All three are frozen. A profile is a pure function of
its series, so nothing downstream is allowed to mutate either of them.
"""

import hashlib
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# ENUMS
# =============================================================================

class Periodicity(str, Enum):
    """
    Charge cadence detected for a series.

    IRREGULAR means the median interval matched none of the canonical
    periods and the series is not subscription-eligible.
    """
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUAL = "annual"
    IRREGULAR = "irregular"

    @property
    def canonical_days(self) -> Optional[int]:
        return CANONICAL_PERIOD_DAYS.get(self)


CANONICAL_PERIOD_DAYS: dict[Periodicity, int] = {
    Periodicity.WEEKLY: 7,
    Periodicity.MONTHLY: 30,
    Periodicity.QUARTERLY: 91,
    Periodicity.ANNUAL: 365,
}


# =============================================================================
# TRANSACTIONS
# =============================================================================

class Transaction(BaseModel):
    """
    A single imported transaction.

    Amount is signed: negative values are expenses, positive values are
    income or refunds. The engine only ever reads these.
    """
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    id: int
    account_id: int
    date: date
    amount: Decimal = Field(
        ...,
        description="Signed amount (negative = expense)"
    )
    description: str = Field(
        default="",
        max_length=500,
        description="Raw bank description"
    )
    archived: bool = False

    @property
    def is_expense(self) -> bool:
        return self.amount < 0


class CandidateSeries(BaseModel):
    """
    Transactions that share a normalized merchant key and an account.

    Transient: rebuilt on every detection run.
    """
    model_config = ConfigDict(frozen=True)

    merchant_key: str = Field(..., min_length=1)
    account_id: int
    transactions: tuple[Transaction, ...] = Field(default_factory=tuple)

    @field_validator("transactions")
    @classmethod
    def sort_by_date(cls, v: tuple[Transaction, ...]) -> tuple[Transaction, ...]:
        """Series are always ordered ascending by date (id breaks ties)."""
        return tuple(sorted(v, key=lambda t: (t.date, t.id)))

    @property
    def dates(self) -> list[date]:
        return [t.date for t in self.transactions]

    @property
    def amounts(self) -> list[Decimal]:
        """Absolute charge amounts in date order."""
        return [abs(t.amount) for t in self.transactions]

    @property
    def descriptions(self) -> list[str]:
        return [t.description for t in self.transactions]

    def __len__(self) -> int:
        return len(self.transactions)


# =============================================================================
# PROFILES
# =============================================================================

class SeriesProfile(BaseModel):
    """
    Statistical summary of a candidate series.

    CRITICAL: `eligible` is only ever True when there are enough samples
    to establish periodicity (see DetectionSettings.min_occurrences) and
    the intervals sit inside the configured tolerance band.
    """
    model_config = ConfigDict(frozen=True)

    merchant_key: str
    account_id: int
    occurrence_count: int = Field(ge=0)
    first_seen: date
    last_seen: date

    # Interval statistics
    median_interval_days: Optional[float] = Field(
        default=None,
        ge=0,
        description="Median days between consecutive charges"
    )
    interval_cv: Optional[float] = Field(
        default=None,
        ge=0,
        description="Coefficient of variation of the intervals"
    )
    interval_consistency: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        description="Fraction of intervals inside the tolerance band"
    )
    periodicity: Periodicity = Periodicity.IRREGULAR

    # Amount statistics
    median_amount: Decimal = Field(default=Decimal("0.00"), ge=0)
    amount_deviation: float = Field(
        default=0.0,
        ge=0,
        description="Max absolute deviation from the median, as a fraction of it"
    )
    amount_stable: bool = True
    amounts: tuple[Decimal, ...] = Field(default_factory=tuple)
    trend_increasing: bool = False

    eligible: bool = False

    @property
    def latest_amount(self) -> Optional[Decimal]:
        return self.amounts[-1] if self.amounts else None

    @property
    def expected_interval_days(self) -> Optional[int]:
        return self.periodicity.canonical_days

    @property
    def fingerprint(self) -> str:
        """
        Stable digest of the inputs an AI classification depends on.

        Two runs over an unchanged series produce the same fingerprint,
        which lets the pipeline reuse a cached AI verdict.
        """
        parts = [
            self.merchant_key,
            str(self.account_id),
            str(self.occurrence_count),
            self.last_seen.isoformat(),
            self.periodicity.value,
            str(self.median_amount),
            str(self.latest_amount),
        ]
        return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()[:16]
