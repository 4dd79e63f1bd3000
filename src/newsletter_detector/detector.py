"""Detection orchestration - runs the analyzers, combines scores, logs the outcome."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence

from .analyzers import (
    ContentStructureAnalyzer,
    HeaderAnalyzer,
    SenderReputationAnalyzer,
    SignalAnalyzer,
    UserFeedbackIntegrator,
)
from .collector import FeedbackCollector, feedback_id_for
from .config import DetectorConfig
from .errors import NotFoundError, StorageError
from .improver import DetectionImprover
from .models import (
    CANONICAL_METHOD_ORDER,
    DetectionMethod,
    DetectionRecord,
    DetectionResult,
    Email,
    FeedbackItem,
    FeedbackType,
    UserFeedback,
)
from .scorer import ConfidenceAggregator
from .storage import Stores

logger = logging.getLogger(__name__)


def default_analyzers(stores: Stores | None = None) -> list[SignalAnalyzer]:
    return [
        HeaderAnalyzer(),
        ContentStructureAnalyzer(),
        SenderReputationAnalyzer(stores.reputation if stores else None),
        UserFeedbackIntegrator(stores.feedback if stores else None),
    ]


class NewsletterDetector:
    """Detection surface: classify emails and record ad hoc feedback."""

    def __init__(
        self,
        stores: Stores | None = None,
        config: DetectorConfig | None = None,
        analyzers: Sequence[SignalAnalyzer] | None = None,
        improver: DetectionImprover | None = None,
    ) -> None:
        self.stores = stores
        self.config = config or DetectorConfig()
        self.aggregator = ConfidenceAggregator(self.config)
        self.analyzers = {
            a.method: a for a in (default_analyzers(stores) if analyzers is None else analyzers)
        }
        if improver is None and stores is not None:
            improver = DetectionImprover(stores, self.config)
        self.improver = improver

    async def detect_newsletter(
        self,
        email: Email,
        user_feedback: UserFeedback | None = None,
        user_id: str | None = None,
    ) -> DetectionResult:
        """Classify one email.

        When ``user_feedback`` is given the feedback signal comes from the
        user's sender/domain lists instead of the stored history. A
        near-certain feedback signal suppresses the verification flag.
        """
        calls = []
        for method in CANONICAL_METHOD_ORDER:
            analyzer = self.analyzers.get(method)
            if analyzer is None:
                continue
            if user_feedback is not None and isinstance(analyzer, UserFeedbackIntegrator):
                calls.append(analyzer.apply_feedback(user_feedback, email, user_id))
            else:
                calls.append(analyzer.analyze(email, user_id))
        scores = list(await asyncio.gather(*calls))

        combined = self.aggregator.calculate_confidence(scores)
        needs_verification = self.aggregator.needs_verification(combined)
        if any(
            s.method is DetectionMethod.USER_FEEDBACK
            and s.confidence > self.config.feedback_override_confidence
            for s in scores
        ):
            needs_verification = False

        result = DetectionResult(
            is_newsletter=self.aggregator.is_newsletter(combined),
            combined_score=combined,
            needs_verification=needs_verification,
            scores=scores,
            email=email,
        )
        logger.info(
            "Email %s from %s: score=%.3f newsletter=%s verify=%s",
            email.id,
            email.sender or "<unknown>",
            combined,
            result.is_newsletter,
            result.needs_verification,
        )

        if self.stores is not None and user_id is not None:
            await self.stores.detections.upsert(
                DetectionRecord(
                    user_id=user_id,
                    email_id=email.id,
                    sender=email.sender,
                    sender_domain=email.sender_domain,
                    subject=email.subject,
                    message_id=email.message_id,
                    confidence=combined,
                    is_newsletter=result.is_newsletter,
                    features=result.features,
                )
            )
        return result

    async def get_confidence_score(
        self, email: Email, methods: Iterable[DetectionMethod | str] | None = None
    ) -> float:
        """Combined score over a subset of methods. Nothing is stored."""
        if methods is None:
            wanted = list(CANONICAL_METHOD_ORDER)
        else:
            wanted = []
            for m in methods:
                try:
                    wanted.append(DetectionMethod(m))
                except ValueError:
                    logger.debug("Skipping unknown detection method %r", m)
        selected = [self.analyzers[m] for m in CANONICAL_METHOD_ORDER if m in wanted and m in self.analyzers]
        scores = await asyncio.gather(*(a.analyze(email) for a in selected))
        return self.aggregator.calculate_confidence(scores)

    def needs_verification(self, result: DetectionResult) -> bool:
        return result.needs_verification

    async def record_feedback(
        self, email_id: str, is_newsletter: bool, user_id: str, email: Email | None = None
    ) -> FeedbackItem:
        """Record the user's verdict on an email and learn from it.

        The email's sender comes from the detection log, or from ``email``
        when it was never detected for this user. Repeating the same call
        changes nothing further.
        """
        if self.stores is None or self.improver is None:
            raise StorageError("Recording feedback requires attached stores")
        if email is None and await self.stores.detections.get(user_id, email_id) is None:
            raise NotFoundError(f"No detection recorded for email {email_id} of user {user_id}")

        feedback_type = FeedbackType.CONFIRM if is_newsletter else FeedbackType.REJECT
        collector = FeedbackCollector(self.stores, self.config)
        item = await collector.collect(
            user_id,
            email_id,
            feedback_type,
            email=email,
            feedback_id=feedback_id_for(user_id, email_id, feedback_type),
        )
        await self.improver.apply_feedback(item)
        return item
