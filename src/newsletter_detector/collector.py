"""Turning a user's verdict on an email into a stored feedback event."""

from __future__ import annotations

import logging
import uuid

from .config import DetectorConfig
from .constants import DEFAULT_FEEDBACK_CONFIDENCE
from .models import (
    Email,
    FeedbackItem,
    FeedbackType,
    VerificationStatus,
    extract_domain,
    feedback_priority,
    utcnow,
)
from .storage import Stores

logger = logging.getLogger(__name__)

_CLOSING_STATUS = {
    FeedbackType.CONFIRM: VerificationStatus.CONFIRMED,
    FeedbackType.REJECT: VerificationStatus.REJECTED,
    FeedbackType.IGNORE: VerificationStatus.REJECTED,
}


def feedback_id_for(user_id: str, email_id: str, feedback_type: FeedbackType) -> str:
    """Stable id, so that recording the same verdict twice yields one event."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"feedback:{user_id}:{email_id}:{feedback_type.value}"))


class FeedbackCollector:
    def __init__(self, stores: Stores, config: DetectorConfig | None = None) -> None:
        self.stores = stores
        self.config = config or DetectorConfig()

    async def collect(
        self,
        user_id: str,
        email_id: str,
        feedback_type: FeedbackType,
        comment: str | None = None,
        email: Email | None = None,
        feedback_id: str | None = None,
    ) -> FeedbackItem:
        """Save a feedback event, filling in what the detection log knows about the email.

        Also updates the user's sender/domain lists and closes a pending
        verification request for the same email.
        """
        record = await self.stores.detections.get(user_id, email_id)
        if record is not None:
            sender, subject, message_id = record.sender, record.subject, record.message_id
            prior, confidence, features = record.is_newsletter, record.confidence, record.features
        else:
            sender = email.sender if email else ""
            subject = email.subject if email else ""
            message_id = email.message_id if email else ""
            prior, confidence, features = False, DEFAULT_FEEDBACK_CONFIDENCE, {}

        item = FeedbackItem(
            id=feedback_id or str(uuid.uuid4()),
            user_id=user_id,
            email_id=email_id,
            message_id=message_id,
            sender=sender,
            sender_domain=extract_domain(sender),
            subject=subject,
            type=feedback_type,
            priority=feedback_priority(feedback_type, confidence),
            detection_result=prior,
            confidence=confidence,
            features=dict(features),
            comment=comment,
        )
        saved = await self.stores.feedback.save_feedback(item)

        if sender and feedback_type in (FeedbackType.CONFIRM, FeedbackType.REJECT):
            await self.stores.user_feedback.track(
                user_id,
                sender,
                feedback_type is FeedbackType.CONFIRM,
                self.config.domain_promotion_count,
            )

        status = _CLOSING_STATUS.get(feedback_type)
        if status is not None:
            pending = await self.stores.verification.get_pending(user_id, email_id)
            if pending is not None:
                await self.stores.verification.resolve(pending.id, status, feedback_type, utcnow())
                logger.info("Closed verification request %s from feedback", pending.id)
            await self.stores.detections.mark_verified(user_id, email_id)

        logger.info(
            "Collected %s feedback %s from user %s for email %s",
            feedback_type.value,
            saved.id,
            user_id,
            email_id,
        )
        return saved
