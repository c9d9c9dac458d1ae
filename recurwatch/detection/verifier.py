"""
Alert Enrichment and Agentic Verification

Runs after the detectors and before their alerts are committed:

1. CARRY FORWARD: an alert whose stored predecessor has identical
   evidence keeps the predecessor's analysis and explanation, so a
   re-run neither loses them nor pays for them again
2. DUPLICATE ANALYSIS (AI tiers): duplicate alerts get a description
   of what the services share and what each offers alone
3. VERIFICATION (orchestrator tiers): alerts touching a subscription
   created or moved in this run get an explanation from the
   orchestrator, up to max_verifications per run

IMPORTANT: Enrichment only ever adds evidence. Kind, subscriptions,
confidence and status changes pass through untouched, and any AI
failure just means "no enrichment" for that alert.
"""

from typing import Optional

import structlog

from recurwatch.ai.interface import AIError
from recurwatch.detection.capability import Capability
from recurwatch.detection.detectors import DetectionContext, DetectorOutcome
from recurwatch.models.alert import Alert, AlertKind, DuplicateAnalysis, VerificationAnnotation
from recurwatch.models.subscription import Subscription
from recurwatch.services.storage import DetectionStorageInterface


VERIFY_INSTRUCTIONS = {
    AlertKind.ZOMBIE: (
        "Check that the charges are still arriving on schedule and whether "
        "anything suggests the user still relies on this service."
    ),
    AlertKind.PRICE_INCREASE: (
        "Check the recent charges and confirm when the amount changed and by how much."
    ),
    AlertKind.DUPLICATE: (
        "Check that all of these services are still being charged in the same period."
    ),
}


class AlertVerifier:
    """Enriches detector outcomes according to the capability tier."""

    def __init__(
        self,
        storage: DetectionStorageInterface,
        capability: Capability,
        max_verifications: int = 10,
    ):
        self._storage = storage
        self._capability = capability
        self._max_verifications = max_verifications

    async def enrich(
        self,
        outcomes: list[DetectorOutcome],
        context: DetectionContext,
        created_ids: list[int],
        logger: structlog.stdlib.BoundLogger,
    ) -> list[DetectorOutcome]:
        """
        Return the outcomes with enriched alerts.

        Raises:
            StorageError: Storage failed (fatal)
        """
        touched = set(created_ids)
        for outcome in outcomes:
            touched.update(change.subscription_id for change in outcome.status_changes)

        remaining = self._max_verifications
        enriched_outcomes = []

        for outcome in outcomes:
            alerts = []
            for alert in outcome.alerts:
                previous = await self._previous(alert)
                alert = self._carry_forward(alert, previous)

                if (
                    alert.kind == AlertKind.DUPLICATE
                    and alert.duplicate_analysis is None
                    and self._capability.uses_ai_classification
                ):
                    analysis = await self._analyze_duplicates(alert, context, logger)
                    if analysis is not None:
                        alert = alert.model_copy(update={"duplicate_analysis": analysis})

                if (
                    alert.explanation is None
                    and self._capability.uses_orchestrator
                    and remaining > 0
                    and touched.intersection(alert.subscription_ids)
                ):
                    remaining -= 1
                    annotation = await self._verify(alert, context, logger)
                    if annotation is not None:
                        alert = alert.model_copy(update={"explanation": annotation})

                alerts.append(alert)
            enriched_outcomes.append(outcome.model_copy(update={"alerts": alerts}))

        return enriched_outcomes

    async def _previous(self, alert: Alert) -> Optional[Alert]:
        stored = await self._storage.list_alerts(
            kind=alert.kind,
            subscription_id=alert.primary_subscription_id,
        )
        return stored[-1] if stored else None

    @staticmethod
    def _carry_forward(alert: Alert, previous: Optional[Alert]) -> Alert:
        if previous is None or previous.evidence != alert.evidence:
            return alert
        if previous.subscription_ids != alert.subscription_ids:
            return alert
        return alert.model_copy(update={
            "duplicate_analysis": previous.duplicate_analysis,
            "explanation": previous.explanation,
        })

    async def _analyze_duplicates(
        self,
        alert: Alert,
        context: DetectionContext,
        logger: structlog.stdlib.BoundLogger,
    ) -> Optional[DuplicateAnalysis]:
        services = [s.merchant for s in self._members(alert, context)]
        category = alert.evidence.category or "similar"
        try:
            return await self._capability.ai.analyze_duplicate_services(category, services)
        except AIError as e:
            logger.warning(
                "duplicate_analysis_failed",
                category=category,
                error_type=type(e).__name__,
                error=str(e),
            )
            return None

    async def _verify(
        self,
        alert: Alert,
        context: DetectionContext,
        logger: structlog.stdlib.BoundLogger,
    ) -> Optional[VerificationAnnotation]:
        try:
            return await self._capability.orchestrator.verify(
                self._describe(alert, context),
                VERIFY_INSTRUCTIONS.get(alert.kind),
            )
        except AIError as e:
            logger.warning(
                "verification_failed",
                alert_kind=alert.kind.value,
                subscription_id=alert.primary_subscription_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return None

    @staticmethod
    def _members(alert: Alert, context: DetectionContext) -> list[Subscription]:
        by_id = {s.id: s for s in context.subscriptions}
        return [by_id[i] for i in alert.subscription_ids if i in by_id]

    def _describe(self, alert: Alert, context: DetectionContext) -> str:
        """The alert and its subscriptions, as the orchestrator sees them."""
        lines = [
            f"Alert: {alert.kind.value}",
            f"Detected as of: {context.as_of.isoformat()}",
            f"Summary: {alert.evidence.message}",
        ]
        if alert.evidence.old_amount is not None:
            lines.append(f"Previous amount: {alert.evidence.old_amount}")
        if alert.evidence.new_amount is not None:
            lines.append(f"Current amount: {alert.evidence.new_amount}")

        lines.append("Subscriptions:")
        for sub in self._members(alert, context):
            frequency = sub.frequency.value if sub.frequency else "unknown"
            lines.append(
                f"- {sub.merchant} (account {sub.account_id}): {sub.amount or 'varies'} "
                f"{frequency}, first seen {sub.first_seen.isoformat()}, "
                f"last seen {sub.last_seen.isoformat()}"
            )
        return "\n".join(lines)
