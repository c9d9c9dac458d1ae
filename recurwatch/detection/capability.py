"""
Capability Selection

A detector runs in exactly one of four tiers, chosen once from which
optional AI collaborators it was given:

    | tier              | classifier | orchestrator |
    |-------------------|------------|--------------|
    | BARE              |     -      |      -       |
    | AI_ONLY           |    yes     |      -       |
    | ORCHESTRATOR_ONLY |     -      |     yes      |
    | FULL              |    yes     |     yes      |

DESIGN DECISION: The tier is a frozen tagged record, validated so the
tag always matches the handles it carries. Call sites ask the record
what it allows instead of testing handles for None.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, model_validator

from recurwatch.ai.interface import SubscriptionClassifier
from recurwatch.ai.orchestrator import AIOrchestrator


class CapabilityTier(str, Enum):
    BARE = "bare"
    AI_ONLY = "ai_only"
    ORCHESTRATOR_ONLY = "orchestrator_only"
    FULL = "full"

    @property
    def has_ai(self) -> bool:
        return self in (CapabilityTier.AI_ONLY, CapabilityTier.FULL)

    @property
    def has_orchestrator(self) -> bool:
        return self in (CapabilityTier.ORCHESTRATOR_ONLY, CapabilityTier.FULL)


class Capability(BaseModel):
    """The fixed capability of one detector instance."""
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    tier: CapabilityTier
    ai: Optional[SubscriptionClassifier] = None
    orchestrator: Optional[AIOrchestrator] = None

    @model_validator(mode="after")
    def validate_handles(self) -> "Capability":
        if self.tier.has_ai != (self.ai is not None):
            raise ValueError(f"Tier {self.tier.value} does not match the AI client given")
        if self.tier.has_orchestrator != (self.orchestrator is not None):
            raise ValueError(f"Tier {self.tier.value} does not match the orchestrator given")
        return self

    @property
    def uses_ai_classification(self) -> bool:
        return self.tier.has_ai

    @property
    def uses_orchestrator(self) -> bool:
        return self.tier.has_orchestrator


def select_capability(
    ai: Optional[SubscriptionClassifier] = None,
    orchestrator: Optional[AIOrchestrator] = None,
) -> Capability:
    """Pick the tier from the handles present."""
    if ai is not None and orchestrator is not None:
        tier = CapabilityTier.FULL
    elif ai is not None:
        tier = CapabilityTier.AI_ONLY
    elif orchestrator is not None:
        tier = CapabilityTier.ORCHESTRATOR_ONLY
    else:
        tier = CapabilityTier.BARE
    return Capability(tier=tier, ai=ai, orchestrator=orchestrator)
