"""
Data Models Package

This package contains all Pydantic models used by recurwatch.
All data flowing through a detection run must conform to these schemas.
"""

from recurwatch.models.alert import (
    Alert,
    AlertEvidence,
    AlertKind,
    DetectionResults,
    DuplicateAnalysis,
    ServiceFeature,
    ToolCallRecord,
    VerificationAnnotation,
)
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
from recurwatch.models.transaction import (
    CANONICAL_PERIOD_DAYS,
    CandidateSeries,
    Periodicity,
    SeriesProfile,
    Transaction,
)

__all__ = [
    # Transaction models
    "CANONICAL_PERIOD_DAYS",
    "CandidateSeries",
    "Periodicity",
    "SeriesProfile",
    "Transaction",
    # Subscription models
    "CachedAIAnswer",
    "ClassificationSource",
    "Frequency",
    "MerchantClassificationCacheEntry",
    "MerchantVerdict",
    "Subscription",
    "SubscriptionClassification",
    "SubscriptionStatus",
    "UserOverride",
    # Alert models
    "Alert",
    "AlertEvidence",
    "AlertKind",
    "DetectionResults",
    "DuplicateAnalysis",
    "ServiceFeature",
    "ToolCallRecord",
    "VerificationAnnotation",
]
