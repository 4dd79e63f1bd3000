"""Feedback surface: submissions, verification round-trips, sweeps and statistics."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime
from typing import Protocol

from .collector import FeedbackCollector, feedback_id_for
from .config import DetectorConfig
from .errors import NewsletterDetectorError, ValidationError
from .feedback_analyzer import FeedbackAnalyzer
from .improver import DetectionImprover, PersonalizationHook
from .models import (
    BatchOutcome,
    Email,
    FeedbackItem,
    FeedbackStats,
    FeedbackType,
    UserFeedback,
    VerificationRequest,
    utcnow,
)
from .storage import Stores
from .verification import VerificationRequestGenerator

logger = logging.getLogger(__name__)


class EmailDelivery(Protocol):
    def send(self, to: str, subject: str, html: str, text: str) -> None: ...


def parse_feedback_type(value: str | FeedbackType) -> FeedbackType:
    if isinstance(value, FeedbackType):
        return value
    try:
        return FeedbackType(value.lower())
    except ValueError as exc:
        raise ValidationError(f"Unrecognized feedback type: {value!r}") from exc


class FeedbackService:
    def __init__(
        self,
        stores: Stores,
        config: DetectorConfig | None = None,
        delivery: EmailDelivery | None = None,
        clock: Callable[[], datetime] = utcnow,
        hook: PersonalizationHook | None = None,
    ) -> None:
        self.stores = stores
        self.config = config or DetectorConfig()
        self.delivery = delivery
        self.collector = FeedbackCollector(stores, self.config)
        self.improver = DetectionImprover(stores, self.config, hook)
        self.verification = VerificationRequestGenerator(stores, self.config, clock)
        self.analyzer = FeedbackAnalyzer(stores.feedback, clock)

    async def submit_feedback(
        self,
        user_id: str,
        email_id: str,
        feedback_type: str | FeedbackType,
        comment: str | None = None,
        email: Email | None = None,
    ) -> FeedbackItem:
        """Store a user's feedback on an email and apply it right away."""
        if not user_id or not email_id:
            raise ValidationError("Feedback needs both a user id and an email id")
        feedback_type = parse_feedback_type(feedback_type)
        item = await self.collector.collect(user_id, email_id, feedback_type, comment, email)
        await self.improver.apply_feedback(item)
        return item

    async def submit_feedback_batch(
        self, user_id: str, updates: Mapping[str, str | FeedbackType]
    ) -> BatchOutcome:
        """Submit feedback for several emails; one failure does not stop the rest."""
        outcome = BatchOutcome()
        for email_id, feedback_type in updates.items():
            try:
                await self.submit_feedback(user_id, email_id, feedback_type)
            except NewsletterDetectorError as exc:
                logger.warning("Feedback for email %s failed: %s", email_id, exc)
                outcome.record_failure(email_id, exc)
            else:
                outcome.succeeded += 1
        return outcome

    async def process_verification(self, token: str, is_newsletter: bool) -> VerificationRequest:
        return await self.process_verification_action(
            token, "confirm" if is_newsletter else "reject"
        )

    async def process_verification_action(self, token: str, action: str) -> VerificationRequest:
        """Resolve a request from its action link and learn from the answer."""
        request = await self.verification.process_response(token, action)
        item = await self.collector.collect(
            request.user_id,
            request.email_id,
            request.user_response,
            comment="Verification response",
            feedback_id=feedback_id_for(request.user_id, request.email_id, request.user_response),
        )
        await self.improver.apply_feedback(item)
        return request

    async def request_verification(
        self,
        user_id: str,
        email_id: str,
        confidence: float | None = None,
        to: str | None = None,
    ) -> VerificationRequest:
        """Create (or reuse) the pending request and, given a recipient, send it."""
        request = await self.verification.generate_verification_request(
            user_id, email_id, confidence
        )
        message = self.verification.format_verification_email(request)
        if self.delivery is None or not to:
            logger.info("Verification email for request %s prepared, not sent", request.id)
            return request

        request = await self.verification.resend_verification_request(request.id)
        await asyncio.to_thread(self.delivery.send, to, message.subject, message.html, message.body)
        logger.info("Sent verification request %s to %s", request.id, to)
        return request

    async def generate_verification_requests(
        self, confidence_threshold: float, limit: int
    ) -> list[VerificationRequest]:
        return await self.verification.generate_verification_requests(confidence_threshold, limit)

    async def get_feedback_stats(self, user_id: str) -> FeedbackStats:
        analytics = await self.analyzer.analyze_feedback(user_id, "all")
        return FeedbackStats(
            total_submitted=analytics.total_feedback,
            confirmed_newsletters=analytics.count(FeedbackType.CONFIRM),
            rejected_newsletters=analytics.count(FeedbackType.REJECT),
            pending_verifications=await self.stores.verification.count_pending(user_id),
        )

    async def get_pending_verifications(self, user_id: str) -> list[VerificationRequest]:
        """Open verification requests for a user, oldest first."""
        return await self.stores.verification.get_pending_for_user(user_id)

    async def process_expired_requests(self) -> int:
        return await self.verification.process_expired_requests()

    async def train_personalized_models(
        self, user_ids: Iterable[str] | None = None
    ) -> BatchOutcome:
        """Train every user's model; users without enough feedback are skipped."""
        if user_ids is None:
            user_ids = await self.stores.feedback.get_user_ids()
        outcome = BatchOutcome()
        for user_id in user_ids:
            try:
                trained = await self.improver.train_personalized_model(user_id)
            except Exception as exc:  # the hook is external code
                logger.exception("Training for user %s failed", user_id)
                outcome.record_failure(user_id, exc)
                continue
            if trained:
                outcome.succeeded += 1
            else:
                outcome.skipped += 1
        logger.info(
            "Trained %d personalized model(s), %d skipped, %d failed",
            outcome.succeeded,
            outcome.skipped,
            outcome.failed,
        )
        return outcome

    async def get_user_feedback(self, user_id: str) -> UserFeedback:
        return await self.stores.user_feedback.get(user_id)
