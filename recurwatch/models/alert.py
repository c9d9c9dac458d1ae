"""
Alert and Result Models

Alerts are the user-facing output of a detection run. They are
immutable once created: a later run that detects the same thing for the
same subscription replaces the alert instead of adding a second one.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from recurwatch.models.subscription import utc_now


class AlertKind(str, Enum):
    """Kinds of alerts the detectors raise."""
    ZOMBIE = "zombie"
    PRICE_INCREASE = "price_increase"
    DUPLICATE = "duplicate"


# =============================================================================
# ENRICHMENTS
# =============================================================================

class ServiceFeature(BaseModel):
    """What makes one service in a duplicate group unique."""

    service: str
    unique: str


class DuplicateAnalysis(BaseModel):
    """AI analysis of a group of overlapping services."""

    overlap: str = Field(..., min_length=1)
    unique_features: list[ServiceFeature] = Field(default_factory=list)


class ToolCallRecord(BaseModel):
    """One read-only tool call made by the orchestrator."""

    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    success: bool
    output: Optional[str] = None


class VerificationAnnotation(BaseModel):
    """
    Explanation attached to an alert by the agentic verifier.

    IMPORTANT: This only ever augments evidence. It never changes the
    verdict, the subscription status or the alert kind.
    """

    explanation: str = Field(..., min_length=1)
    corroborated: Optional[bool] = Field(
        default=None,
        description="Whether the data backed the alert (None = undecided)"
    )
    tool_calls: list[ToolCallRecord] = Field(default_factory=list)
    model: Optional[str] = None
    verified_at: datetime = Field(default_factory=utc_now)


# =============================================================================
# ALERTS
# =============================================================================

class AlertEvidence(BaseModel):
    """Facts backing an alert. Which fields are set depends on the kind."""
    model_config = ConfigDict(frozen=True)

    message: str = ""
    old_amount: Optional[Decimal] = None
    new_amount: Optional[Decimal] = None
    increase_fraction: Optional[float] = None
    interval_days: Optional[float] = None
    frequency: Optional[str] = None
    category: Optional[str] = None
    overlap_description: Optional[str] = None


class Alert(BaseModel):
    """
    A detection result.

    Identity for replacement is (kind, primary subscription id), where
    the primary subscription is the first entry of subscription_ids.
    """
    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    kind: AlertKind
    subscription_ids: tuple[int, ...]
    evidence: AlertEvidence
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    duplicate_analysis: Optional[DuplicateAnalysis] = None
    explanation: Optional[VerificationAnnotation] = None
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator("subscription_ids")
    @classmethod
    def require_subscription(cls, v: tuple[int, ...]) -> tuple[int, ...]:
        if not v:
            raise ValueError("An alert must reference at least one subscription")
        return v

    @property
    def primary_subscription_id(self) -> int:
        return self.subscription_ids[0]

    @property
    def identity(self) -> tuple[AlertKind, int]:
        return self.kind, self.primary_subscription_id


# =============================================================================
# RUN SUMMARY
# =============================================================================

class DetectionResults(BaseModel):
    """
    Aggregate counts for one detection run.

    Pure aggregate: never persisted.
    """

    subscriptions_found: int = Field(default=0, ge=0)
    zombies_detected: int = Field(default=0, ge=0)
    price_increases_detected: int = Field(default=0, ge=0)
    duplicates_detected: int = Field(default=0, ge=0)
    degraded_merchants: int = Field(
        default=0,
        ge=0,
        description="Merchants that fell back to the rule verdict after an AI failure"
    )

    @property
    def total_alerts(self) -> int:
        return (
            self.zombies_detected
            + self.price_increases_detected
            + self.duplicates_detected
        )
