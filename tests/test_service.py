"""Tests for the feedback service."""

import pytest

from newsletter_detector.detector import NewsletterDetector
from newsletter_detector.errors import StateError, ValidationError
from newsletter_detector.models import (
    DetectionRecord,
    FeedbackItem,
    FeedbackType,
    VerificationStatus,
)
from newsletter_detector.service import FeedbackService, parse_feedback_type


class FakeDelivery:
    def __init__(self):
        self.sent = []

    def send(self, to, subject, html, text):
        self.sent.append((to, subject, html, text))


class FlakyHook:
    def __init__(self, broken_user):
        self.broken_user = broken_user
        self.trained = []

    async def train(self, user_id, items):
        if user_id == self.broken_user:
            raise RuntimeError("model backend unavailable")
        self.trained.append(user_id)
        return True


async def _detection(stores, email_id, sender="digest@news.example.com", confidence=0.55, user_id="u1"):
    await stores.detections.upsert(
        DetectionRecord(
            user_id=user_id,
            email_id=email_id,
            sender=sender,
            sender_domain=sender.rpartition("@")[2],
            subject="Weekly roundup",
            confidence=confidence,
            is_newsletter=confidence >= 0.5,
            features={"header_analysis": 0.8},
        )
    )


@pytest.fixture
def service(stores, clock):
    return FeedbackService(stores, clock=clock)


def test_parse_feedback_type():
    assert parse_feedback_type("Confirm") is FeedbackType.CONFIRM
    assert parse_feedback_type(FeedbackType.IGNORE) is FeedbackType.IGNORE
    with pytest.raises(ValidationError):
        parse_feedback_type("spam")


@pytest.mark.asyncio
async def test_submit_feedback_uses_detection_log(stores, service):
    await _detection(stores, "e1")
    item = await service.submit_feedback("u1", "e1", "confirm", comment="yes")

    assert item.sender == "digest@news.example.com"
    assert item.detection_result is True
    assert item.features == {"header_analysis": 0.8}
    assert (await stores.feedback.get_feedback(item.id)).processed
    assert (await stores.detections.get("u1", "e1")).verified
    assert (await stores.reputation.get_sender("digest@news.example.com")).score > 0.5


@pytest.mark.asyncio
async def test_submit_feedback_validation(service):
    with pytest.raises(ValidationError):
        await service.submit_feedback("", "e1", "confirm")
    with pytest.raises(ValidationError):
        await service.submit_feedback("u1", "e1", "spam")


@pytest.mark.asyncio
async def test_domain_promotion_after_three_senders(stores, service):
    for i in range(3):
        await _detection(stores, f"e{i}", sender=f"writer{i}@letters.example.com")
        await service.submit_feedback("u1", f"e{i}", FeedbackType.CONFIRM)

    lists = await service.get_user_feedback("u1")
    assert len(lists.confirmed_senders) == 3
    assert lists.trusted_domains == {"letters.example.com"}


@pytest.mark.asyncio
async def test_changing_verdict_moves_sender(stores, service):
    await _detection(stores, "e1")
    await service.submit_feedback("u1", "e1", "confirm")
    await service.submit_feedback("u1", "e1", "reject")

    lists = await service.get_user_feedback("u1")
    assert lists.confirmed_senders == set()
    assert lists.rejected_senders == {"digest@news.example.com"}


@pytest.mark.asyncio
async def test_uncertain_feedback_keeps_detection_open(stores, service):
    await _detection(stores, "e1")
    await service.submit_feedback("u1", "e1", "uncertain")
    assert not (await stores.detections.get("u1", "e1")).verified
    assert (await service.get_user_feedback("u1")).confirmed_senders == set()


@pytest.mark.asyncio
async def test_feedback_closes_pending_request(stores, service):
    await _detection(stores, "e1")
    request = await service.request_verification("u1", "e1")
    await service.submit_feedback("u1", "e1", "reject")

    closed = await stores.verification.get(request.id)
    assert closed.status is VerificationStatus.REJECTED
    assert closed.user_response is FeedbackType.REJECT


@pytest.mark.asyncio
async def test_submit_feedback_batch(stores, service):
    await _detection(stores, "e1")
    await _detection(stores, "e2")
    outcome = await service.submit_feedback_batch("u1", {"e1": "confirm", "e2": "nonsense", "e3": "reject"})

    assert outcome.succeeded == 2
    assert outcome.failed == 1
    assert "e2" in outcome.errors


@pytest.mark.asyncio
async def test_process_verification_learns(stores, service):
    await _detection(stores, "e1")
    request = await service.request_verification("u1", "e1")

    resolved = await service.process_verification(request.token, is_newsletter=False)
    assert resolved.status is VerificationStatus.REJECTED

    feedback = await stores.feedback.get_feedback_for_email("e1")
    assert [f.type for f in feedback] == [FeedbackType.REJECT]
    assert feedback[0].processed
    assert (await stores.reputation.get_sender("digest@news.example.com")).score < 0.5

    with pytest.raises(StateError):
        await service.process_verification(request.token, is_newsletter=True)


@pytest.mark.asyncio
async def test_request_verification_sends_email(stores, clock):
    delivery = FakeDelivery()
    service = FeedbackService(stores, delivery=delivery, clock=clock)
    await _detection(stores, "e1")

    request = await service.request_verification("u1", "e1", to="bob@example.org")
    assert request.request_sent_count == 1
    assert len(delivery.sent) == 1
    to, subject, html, text = delivery.sent[0]
    assert to == "bob@example.org"
    assert subject == "Is this a newsletter? Weekly roundup"
    assert request.token in html
    assert request.token in text

    again = await service.request_verification("u1", "e1", to="bob@example.org")
    assert again.id == request.id
    assert again.request_sent_count == 2


@pytest.mark.asyncio
async def test_request_verification_without_recipient_is_not_sent(stores, clock):
    delivery = FakeDelivery()
    service = FeedbackService(stores, delivery=delivery, clock=clock)
    request = await service.request_verification("u1", "e1", 0.45)
    assert request.request_sent_count == 0
    assert delivery.sent == []


@pytest.mark.asyncio
async def test_feedback_stats(stores, service):
    for i, kind in enumerate(["confirm", "confirm", "reject", "uncertain"]):
        await _detection(stores, f"e{i}")
        await service.submit_feedback("u1", f"e{i}", kind)
    await service.request_verification("u1", "other", 0.5)

    stats = await service.get_feedback_stats("u1")
    assert stats.total_submitted == 4
    assert stats.confirmed_newsletters == 2
    assert stats.rejected_newsletters == 1
    assert stats.pending_verifications == 1


@pytest.mark.asyncio
async def test_process_expired_requests(stores, service, clock):
    await service.request_verification("u1", "e1", 0.5)
    clock.advance(days=10)
    assert await service.process_expired_requests() == 1
    assert (await service.get_feedback_stats("u1")).pending_verifications == 0


@pytest.mark.asyncio
async def test_training_isolates_failures(stores):
    service = FeedbackService(stores, hook=FlakyHook(broken_user="u2"))
    for user_id in ("u1", "u2"):
        for i in range(10):
            await stores.feedback.save_feedback(
                FeedbackItem(
                    id=f"{user_id}-{i}",
                    user_id=user_id,
                    email_id=f"e{i}",
                    sender="digest@news.example.com",
                    sender_domain="news.example.com",
                    type=FeedbackType.CONFIRM,
                )
            )
    await stores.feedback.save_feedback(
        {"user_id": "u3", "email_id": "e1", "type": "reject"}
    )

    outcome = await service.train_personalized_models()
    assert (outcome.succeeded, outcome.failed, outcome.skipped) == (1, 1, 1)
    assert "u2" in outcome.errors
    assert service.improver.hook.trained == ["u1"]


@pytest.mark.asyncio
async def test_detect_then_feedback_flow(stores, service, newsletter_email):
    detector = NewsletterDetector(stores)
    before = await detector.detect_newsletter(newsletter_email, user_id="u1")
    await service.submit_feedback("u1", newsletter_email.id, "reject")

    after = await detector.detect_newsletter(newsletter_email, user_id="u1")
    assert after.combined_score < before.combined_score


@pytest.mark.asyncio
async def test_pending_verifications_oldest_first(stores, service, clock):
    for email_id in ("e1", "e2", "e3"):
        await _detection(stores, email_id)
        await service.request_verification("u1", email_id)
        clock.advance(minutes=5)
    await service.request_verification("u2", "e9", 0.5)
    await service.submit_feedback("u1", "e2", "confirm")

    pending = await service.get_pending_verifications("u1")
    assert [r.email_id for r in pending] == ["e1", "e3"]
    assert all(r.status is VerificationStatus.PENDING for r in pending)
    assert await service.get_pending_verifications("nobody") == []
