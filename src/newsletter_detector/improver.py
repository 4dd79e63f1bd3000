"""Learning from feedback: reputation and feature-weight updates."""

from __future__ import annotations

import logging
from typing import Protocol

from .config import DetectorConfig
from .errors import NewsletterDetectorError
from .models import BatchOutcome, FeedbackItem, FeedbackType
from .storage import DOMAIN, SENDER, Stores

logger = logging.getLogger(__name__)

# Feedback types that carry no newsletter/not-newsletter verdict
_NO_VERDICT = (FeedbackType.UNCERTAIN, FeedbackType.IGNORE)


class PersonalizationHook(Protocol):
    async def train(self, user_id: str, items: list[FeedbackItem]) -> bool: ...


class LoggingPersonalizationHook:
    """Default hook: accepts the training data without building a model."""

    async def train(self, user_id: str, items: list[FeedbackItem]) -> bool:
        logger.info("Personalization data for user %s: %d feedback item(s)", user_id, len(items))
        return True


class DetectionImprover:
    """Applies feedback events to the reputation and feature-weight stores.

    Feedback that contradicts a confident prior detection moves reputation
    further than feedback that merely agrees with it.
    """

    def __init__(
        self,
        stores: Stores,
        config: DetectorConfig | None = None,
        hook: PersonalizationHook | None = None,
    ) -> None:
        self.stores = stores
        self.config = config or DetectorConfig()
        self.hook = hook or LoggingPersonalizationHook()

    def surprise_multiplier(self, item: FeedbackItem) -> float:
        cfg = self.config
        confident_positive = item.detection_result and item.confidence > cfg.surprise_high_confidence
        confident_negative = (
            not item.detection_result and item.confidence < cfg.surprise_low_confidence
        )
        if item.type is FeedbackType.CONFIRM:
            if confident_positive:
                return cfg.surprise_dampen
            if confident_negative:
                return cfg.surprise_boost
        elif item.type is FeedbackType.REJECT:
            if confident_positive:
                return cfg.surprise_boost
            if confident_negative:
                return cfg.surprise_dampen
        return 1.0

    def calculate_feedback_weight(self, item: FeedbackItem) -> float:
        base = self.config.feedback_type_weights.get(item.type.value, 0.0)
        return base * self.surprise_multiplier(item)

    def is_high_impact(self, item: FeedbackItem) -> bool:
        """Confident prior that the feedback contradicts."""
        if item.confidence <= self.config.surprise_high_confidence:
            return False
        return (item.type is FeedbackType.REJECT and item.detection_result) or (
            item.type is FeedbackType.CONFIRM and not item.detection_result
        )

    async def apply_feedback(self, item: FeedbackItem) -> bool:
        """Apply one feedback event. Returns False when it was already processed."""
        stored = await self.stores.feedback.save_feedback(item)
        if stored.processed or not await self.stores.feedback.claim(stored.id):
            logger.info("Feedback %s already processed, skipping", stored.id)
            return False

        try:
            await self._learn(stored)
        except NewsletterDetectorError:
            await self.stores.feedback.release(stored.id)
            raise
        item.processed = True
        return True

    async def _learn(self, stored: FeedbackItem) -> None:
        weight = self.calculate_feedback_weight(stored)
        if stored.type not in _NO_VERDICT and stored.sender:
            direction = 1.0 if stored.type is FeedbackType.CONFIRM else -1.0
            delta = direction * self.config.reputation_step * weight
            rep = await self.stores.reputation.adjust(SENDER, stored.sender, delta)
            logger.info("Sender %s reputation now %.3f", stored.sender, rep.score)
            if stored.sender_domain:
                rep = await self.stores.reputation.adjust(DOMAIN, stored.sender_domain, delta)
                logger.info("Domain %s reputation now %.3f", stored.sender_domain, rep.score)

        if self.is_high_impact(stored) and stored.features:
            direction = 1.0 if stored.type is FeedbackType.CONFIRM else -1.0
            updates = {
                feature: direction * weight * (value / self.config.feature_value_scale)
                for feature, value in stored.features.items()
            }
            await self.stores.feature_weights.adjust_many(updates)
            logger.info("Adjusted %d feature weight(s) from feedback %s", len(updates), stored.id)

    async def train_personalized_model(self, user_id: str) -> bool:
        items = await self.stores.feedback.get_feedback_for_user(user_id)
        if len(items) < self.config.min_training_items:
            logger.info(
                "Not enough feedback (%d) to train a model for user %s", len(items), user_id
            )
            return False
        trained = await self.hook.train(user_id, items)
        if not trained:
            logger.warning("Personalized training failed for user %s", user_id)
        return trained

    async def process_unprocessed(self, limit: int | None = None) -> BatchOutcome:
        """Drain the unprocessed feedback queue, oldest first."""
        outcome = BatchOutcome()
        for item in await self.stores.feedback.get_unprocessed_feedback(limit):
            try:
                applied = await self.apply_feedback(item)
            except NewsletterDetectorError as exc:
                logger.warning("Could not apply feedback %s: %s", item.id, exc)
                outcome.record_failure(item.id, exc)
                continue
            if applied:
                outcome.succeeded += 1
            else:
                outcome.skipped += 1
        return outcome
