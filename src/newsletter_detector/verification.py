"""Verification requests for ambiguous detections: creation, resend, expiry, responses."""

from __future__ import annotations

import html
import logging
import secrets
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from urllib.parse import urlencode

from .config import DetectorConfig
from .constants import NEUTRAL_SCORE
from .errors import NotFoundError, StateError, ValidationError
from .models import (
    FeedbackType,
    VerificationEmail,
    VerificationRequest,
    VerificationStatus,
    extract_domain,
    utcnow,
)
from .storage import Stores

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

_ACTION_RESPONSES = {
    "confirm": (VerificationStatus.CONFIRMED, FeedbackType.CONFIRM),
    "reject": (VerificationStatus.REJECTED, FeedbackType.REJECT),
    "ignore": (VerificationStatus.REJECTED, FeedbackType.IGNORE),
}

_ACTION_LABELS = {
    "confirm": "Yes, this is a newsletter",
    "reject": "No, this is not a newsletter",
    "ignore": "Ignore this email",
}


def new_token() -> str:
    return secrets.token_urlsafe(32)


def parse_action(action: str | FeedbackType) -> str:
    value = action.value if isinstance(action, FeedbackType) else str(action).lower()
    if value not in _ACTION_RESPONSES:
        raise ValidationError(f"Unknown verification action: {action!r}")
    return value


class VerificationRequestGenerator:
    """The verification request state machine.

    A request starts PENDING and ends CONFIRMED or REJECTED (user response
    through its token) or EXPIRED (sweep). Terminal requests never change.
    """

    def __init__(
        self,
        stores: Stores,
        config: DetectorConfig | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.stores = stores
        self.config = config or DetectorConfig()
        self.clock = clock

    def _expiry(self, now: datetime) -> datetime:
        return now + timedelta(days=self.config.verification_expiry_days)

    def action_link(self, token: str, action: str) -> str:
        return f"{self.config.verification_base_url}?{urlencode({'token': token, 'action': action})}"

    async def generate_verification_request(
        self,
        user_id: str,
        email_id: str,
        confidence: float | None = None,
        sender: str = "",
        subject: str = "",
        message_id: str = "",
    ) -> VerificationRequest:
        """Return the pending request for (user, email), creating one if there is none."""
        record = await self.stores.detections.get(user_id, email_id)
        if record is not None:
            sender = sender or record.sender
            subject = subject or record.subject
            message_id = message_id or record.message_id
            if confidence is None:
                confidence = record.confidence
        if confidence is None:
            confidence = NEUTRAL_SCORE

        now = self.clock()
        request = VerificationRequest(
            id=str(uuid.uuid4()),
            user_id=user_id,
            email_id=email_id,
            message_id=message_id,
            sender=sender.lower(),
            sender_domain=extract_domain(sender),
            subject=subject,
            confidence=confidence,
            token=new_token(),
            generated_at=now,
            expires_at=self._expiry(now),
        )
        stored, created = await self.stores.verification.create_if_absent(request)
        if created:
            logger.info("Created verification request %s for email %s", stored.id, email_id)
        else:
            logger.debug("Reusing pending verification request %s", stored.id)
        return stored

    async def resend_verification_request(self, request_id: str) -> VerificationRequest:
        request = await self.stores.verification.get(request_id)
        if request is None:
            raise NotFoundError(f"Verification request {request_id} not found")
        if request.status is not VerificationStatus.PENDING:
            raise StateError(f"Cannot resend verification request in status {request.status.value}")
        if request.request_sent_count >= self.config.max_resend_count:
            raise StateError(
                f"Verification request {request_id} already sent "
                f"{request.request_sent_count} time(s)"
            )

        updated = await self.stores.verification.record_resend(
            request_id, self.config.max_resend_count, self._expiry(self.clock())
        )
        if updated is None:
            # Lost a race with a response, an expiry or another resend
            raise StateError(f"Verification request {request_id} can no longer be resent")
        logger.info("Resent verification request %s (%d)", request_id, updated.request_sent_count)
        return updated

    def format_verification_email(self, request: VerificationRequest) -> VerificationEmail:
        links = {action: self.action_link(request.token, action) for action in _ACTION_LABELS}
        expires = request.expires_at.strftime("%Y-%m-%d")
        subject_line = request.subject or "(No subject)"

        body_lines = [
            "Hello,",
            "",
            "We need your help to improve our newsletter detection.",
            f'We are not sure if the email "{subject_line}" from {request.sender} is a newsletter.',
            "",
            "Please help us by clicking one of the links below:",
            "",
        ]
        body_lines += [f"{_ACTION_LABELS[a]}: {links[a]}" for a in _ACTION_LABELS]
        body_lines += [
            "",
            f"This verification request will expire on {expires}.",
            "",
            "Thank you for your help!",
        ]

        buttons = "\n".join(
            f'      <a href="{html.escape(links[a])}" class="button {a}">{_ACTION_LABELS[a]}</a>'
            for a in _ACTION_LABELS
        )
        html_body = f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>Newsletter Verification</title>
</head>
<body>
  <h1>Newsletter Verification</h1>
  <p>We need your help to improve our newsletter detection. We are not sure if the following email is a newsletter:</p>
  <div class="email-details">
    <p><strong>Subject:</strong> {html.escape(subject_line)}</p>
    <p><strong>From:</strong> {html.escape(request.sender)}</p>
  </div>
  <div class="verification-buttons">
{buttons}
  </div>
  <p>This verification request will expire on {expires}.</p>
  <p>Thank you for your help!</p>
</body>
</html>
"""
        return VerificationEmail(
            subject=f"Is this a newsletter? {request.subject}".strip(),
            body="\n".join(body_lines),
            html=html_body,
        )

    async def generate_verification_requests(
        self, confidence_threshold: float, limit: int
    ) -> list[VerificationRequest]:
        """Requests for unverified detections with confidence below the threshold, oldest first."""
        records = await self.stores.detections.find_unverified_below(confidence_threshold, limit)
        requests = []
        for record in records:
            requests.append(
                await self.generate_verification_request(
                    record.user_id,
                    record.email_id,
                    record.confidence,
                    sender=record.sender,
                    subject=record.subject,
                    message_id=record.message_id,
                )
            )
        logger.info(
            "Generated %d verification request(s) below confidence %.2f",
            len(requests),
            confidence_threshold,
        )
        return requests

    async def process_expired_requests(self) -> int:
        count = await self.stores.verification.expire_due(self.clock())
        if count:
            logger.info("Expired %d verification request(s)", count)
        return count

    async def process_response(self, token: str, action: str | FeedbackType) -> VerificationRequest:
        """Resolve a pending request from its token and the chosen action."""
        action = parse_action(action)
        request = await self.stores.verification.get_by_token(token)
        if request is None:
            raise NotFoundError("No verification request for this token")
        if request.status.is_terminal:
            logger.warning(
                "Verification request %s already %s", request.id, request.status.value
            )
            raise StateError(f"Verification request already {request.status.value}")

        now = self.clock()
        if request.expires_at < now:
            await self.stores.verification.resolve(request.id, VerificationStatus.EXPIRED, None, now)
            raise StateError("Verification request has expired")

        status, response = _ACTION_RESPONSES[action]
        updated = await self.stores.verification.resolve(request.id, status, response, now)
        if updated is None:
            raise StateError(f"Verification request {request.id} is no longer pending")
        await self.stores.detections.mark_verified(request.user_id, request.email_id)
        logger.info("Verification request %s resolved as %s", request.id, status.value)
        return updated
