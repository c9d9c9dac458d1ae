"""
Subscription Detector

This module ties together all the components and defines the
detection runs:

    transactions -> series -> profiles -> classification
                 -> detectors -> enrichment -> commit -> summary

Four run modes share the same front half (so subscriptions_found is
always reported) and differ only in which detectors run:

    detect_all              zombie + price increase + duplicate
    detect_zombies_only     zombie
    detect_increases_only   price increase
    detect_duplicates_only  duplicate

DESIGN DECISION: The capability tier is fixed at construction. The
constructors below say which tier they build; the generic constructor
picks it from the handles it is given. Configuration is read only by
create_detector(); the detector itself holds no global state.

ERROR HANDLING:
- StorageError / InvariantViolationError: fatal, surfaced to the caller
- AIError: degraded per merchant / per alert, logged, never surfaced
"""

from datetime import date
from typing import Optional

from pydantic import ValidationError

from recurwatch.ai import (
    AIOrchestrator,
    GeminiChatBackend,
    GeminiClassifier,
    OllamaChatBackend,
    OllamaClassifier,
    SubscriptionClassifier,
)
from recurwatch.config import DetectionSettings, Settings, get_settings
from recurwatch.detection.capability import Capability, CapabilityTier, select_capability
from recurwatch.detection.detectors import (
    DetectionContext,
    Detector,
    DuplicateServiceDetector,
    PriceIncreaseDetector,
    ZombieDetector,
)
from recurwatch.detection.pipeline import ClassificationPipeline, InvariantViolationError
from recurwatch.detection.series import build_series
from recurwatch.detection.verifier import AlertVerifier
from recurwatch.log import create_run_id, get_logger
from recurwatch.models.alert import AlertKind, DetectionResults
from recurwatch.queries import ToolExecutor
from recurwatch.services.storage import DetectionStorageInterface, StorageError


logger = get_logger(__name__)


class SubscriptionDetector:
    """
    Runs detection over one storage backend in one capability tier.

    Usage:
        async with create_detector(storage) as detector:
            results = await detector.detect_all()
    """

    def __init__(
        self,
        storage: DetectionStorageInterface,
        ai: Optional[SubscriptionClassifier] = None,
        orchestrator: Optional[AIOrchestrator] = None,
        settings: Optional[DetectionSettings] = None,
        max_verifications: int = 10,
    ):
        self._storage = storage
        self._settings = settings or DetectionSettings()
        self._capability = select_capability(ai, orchestrator)
        self._pipeline = ClassificationPipeline(storage, self._capability, self._settings)
        self._verifier = AlertVerifier(storage, self._capability, max_verifications)

    # -------------------------------------------------------------------------
    # Constructors, one per tier
    # -------------------------------------------------------------------------

    @classmethod
    def bare(
        cls,
        storage: DetectionStorageInterface,
        settings: Optional[DetectionSettings] = None,
    ) -> "SubscriptionDetector":
        """Rule-only detection."""
        return cls(storage, settings=settings)

    @classmethod
    def with_ai(
        cls,
        storage: DetectionStorageInterface,
        ai: SubscriptionClassifier,
        settings: Optional[DetectionSettings] = None,
    ) -> "SubscriptionDetector":
        """Rules plus AI classification."""
        return cls(storage, ai=ai, settings=settings)

    @classmethod
    def with_orchestrator(
        cls,
        storage: DetectionStorageInterface,
        orchestrator: AIOrchestrator,
        settings: Optional[DetectionSettings] = None,
        max_verifications: int = 10,
    ) -> "SubscriptionDetector":
        """Rules plus agentic verification."""
        return cls(
            storage,
            orchestrator=orchestrator,
            settings=settings,
            max_verifications=max_verifications,
        )

    @classmethod
    def with_all(
        cls,
        storage: DetectionStorageInterface,
        ai: SubscriptionClassifier,
        orchestrator: AIOrchestrator,
        settings: Optional[DetectionSettings] = None,
        max_verifications: int = 10,
    ) -> "SubscriptionDetector":
        """AI classification and agentic verification."""
        return cls(
            storage,
            ai=ai,
            orchestrator=orchestrator,
            settings=settings,
            max_verifications=max_verifications,
        )

    @property
    def capability(self) -> Capability:
        return self._capability

    @property
    def tier(self) -> CapabilityTier:
        return self._capability.tier

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def aclose(self) -> None:
        """Close the AI clients this detector was given."""
        if self._capability.ai is not None:
            await self._capability.ai.aclose()
        if self._capability.orchestrator is not None:
            await self._capability.orchestrator.aclose()

    async def __aenter__(self) -> "SubscriptionDetector":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # -------------------------------------------------------------------------
    # Run modes
    # -------------------------------------------------------------------------

    async def detect_all(
        self,
        as_of: Optional[date] = None,
        account_id: Optional[int] = None,
    ) -> DetectionResults:
        """Run every detector."""
        return await self._run(
            "all",
            [ZombieDetector(), PriceIncreaseDetector(), DuplicateServiceDetector()],
            as_of,
            account_id,
        )

    async def detect_zombies_only(
        self,
        as_of: Optional[date] = None,
        account_id: Optional[int] = None,
    ) -> DetectionResults:
        return await self._run("zombies", [ZombieDetector()], as_of, account_id)

    async def detect_increases_only(
        self,
        as_of: Optional[date] = None,
        account_id: Optional[int] = None,
    ) -> DetectionResults:
        return await self._run("increases", [PriceIncreaseDetector()], as_of, account_id)

    async def detect_duplicates_only(
        self,
        as_of: Optional[date] = None,
        account_id: Optional[int] = None,
    ) -> DetectionResults:
        return await self._run("duplicates", [DuplicateServiceDetector()], as_of, account_id)

    async def _run(
        self,
        mode: str,
        detectors: list[Detector],
        as_of: Optional[date],
        account_id: Optional[int],
    ) -> DetectionResults:
        as_of = as_of or date.today()
        run_logger = logger.bind(
            run_id=str(create_run_id()),
            tier=self.tier.value,
            mode=mode,
        )
        run_logger.info("detection_started", as_of=as_of.isoformat(), account_id=account_id)

        try:
            transactions = await self._storage.list_transactions(
                account_id=account_id,
                date_to=as_of,
            )
            series = build_series(transactions, account_id=account_id)
            outcome = await self._pipeline.run(series, run_logger)

            context = DetectionContext(
                as_of=as_of,
                profiles=outcome.profiles,
                verdicts=outcome.verdicts,
                subscriptions=outcome.subscriptions,
                settings=self._settings,
            )
            detector_outcomes = [detector.detect(context) for detector in detectors]
            detector_outcomes = await self._verifier.enrich(
                detector_outcomes, context, outcome.created_ids, run_logger,
            )
            for detector, detector_outcome in zip(detectors, detector_outcomes):
                await detector.commit(detector_outcome, self._storage)

        except (StorageError, InvariantViolationError) as e:
            run_logger.error(
                "detection_failed",
                error_type=type(e).__name__,
                error=str(e),
            )
            raise

        counts = {o.kind: o.count for o in detector_outcomes}
        results = DetectionResults(
            subscriptions_found=outcome.subscriptions_found,
            zombies_detected=counts.get(AlertKind.ZOMBIE, 0),
            price_increases_detected=counts.get(AlertKind.PRICE_INCREASE, 0),
            duplicates_detected=counts.get(AlertKind.DUPLICATE, 0),
            degraded_merchants=outcome.degraded,
        )
        run_logger.info(
            "detection_completed",
            series=len(series),
            **results.model_dump(),
        )
        return results


def create_detector(
    storage: DetectionStorageInterface,
    settings: Optional[Settings] = None,
) -> SubscriptionDetector:
    """
    Factory function to create a detector from configuration.

    AI_BACKEND picks the classifier (none/ollama/gemini) and
    ORCHESTRATOR_ENABLED turns on verification. A backend whose settings
    are incomplete is left out with a warning, so the detector falls to
    the next lower tier instead of failing.

    Args:
        storage: Storage the detector reads and writes
        settings: Settings to use (defaults to get_settings())

    Returns:
        A detector in the tier the configuration allows
    """
    settings = settings or get_settings()

    ai = None
    backend = settings.ai.backend
    try:
        if backend == "gemini":
            ai = GeminiClassifier(settings.gemini)
        elif backend == "ollama":
            ai = OllamaClassifier(settings.ollama)
    except ValidationError as e:
        logger.warning("ai_backend_not_configured", backend=backend, error=str(e))
        ai = None

    orchestrator = None
    orchestrator_settings = settings.orchestrator
    if orchestrator_settings.enabled:
        try:
            if orchestrator_settings.backend == "gemini":
                chat = GeminiChatBackend(settings.gemini)
            else:
                chat = OllamaChatBackend(settings.ollama)
            orchestrator = AIOrchestrator(
                chat,
                ToolExecutor(storage),
                max_tool_calls=orchestrator_settings.max_tool_calls,
                timeout_seconds=orchestrator_settings.timeout_seconds,
            )
        except ValidationError as e:
            logger.warning(
                "orchestrator_backend_not_configured",
                backend=orchestrator_settings.backend,
                error=str(e),
            )
            orchestrator = None

    return SubscriptionDetector(
        storage,
        ai=ai,
        orchestrator=orchestrator,
        settings=settings.detection,
        max_verifications=orchestrator_settings.max_verifications,
    )
