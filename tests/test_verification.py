"""Tests for verification requests."""

import asyncio
from urllib.parse import parse_qs, urlsplit

import pytest

from newsletter_detector.config import DetectorConfig
from newsletter_detector.errors import NotFoundError, StateError, ValidationError
from newsletter_detector.models import DetectionRecord, FeedbackType, VerificationStatus
from newsletter_detector.verification import VerificationRequestGenerator, parse_action


@pytest.fixture
def generator(stores, clock):
    return VerificationRequestGenerator(stores, clock=clock)


async def _detection(stores, email_id, confidence, user_id="u1"):
    await stores.detections.upsert(
        DetectionRecord(
            user_id=user_id,
            email_id=email_id,
            sender="digest@news.example.com",
            sender_domain="news.example.com",
            subject=f"Issue {email_id}",
            confidence=confidence,
            is_newsletter=confidence >= 0.5,
        )
    )


@pytest.mark.asyncio
async def test_request_filled_from_detection(stores, generator, clock):
    await _detection(stores, "e1", 0.55)
    request = await generator.generate_verification_request("u1", "e1")
    assert request.status is VerificationStatus.PENDING
    assert request.sender == "digest@news.example.com"
    assert request.sender_domain == "news.example.com"
    assert request.confidence == pytest.approx(0.55)
    assert request.generated_at == clock.now
    assert (request.expires_at - request.generated_at).days == 7


@pytest.mark.asyncio
async def test_one_pending_request_per_email(generator):
    first = await generator.generate_verification_request("u1", "e1", 0.5, sender="a@b.com")
    second = await generator.generate_verification_request("u1", "e1", 0.5, sender="a@b.com")
    other = await generator.generate_verification_request("u1", "e2", 0.5, sender="a@b.com")
    assert second.id == first.id
    assert second.token == first.token
    assert other.token != first.token


@pytest.mark.asyncio
async def test_concurrent_generation_creates_one_request(stores, generator):
    await _detection(stores, "e1", 0.55)
    requests = await asyncio.gather(
        *(generator.generate_verification_request("u1", "e1") for _ in range(5))
    )
    assert len({r.id for r in requests}) == 1
    assert len({r.token for r in requests}) == 1
    assert await stores.verification.count_pending("u1") == 1


@pytest.mark.asyncio
async def test_confidence_defaults_to_neutral(generator):
    request = await generator.generate_verification_request("u1", "unknown")
    assert request.confidence == 0.5


@pytest.mark.asyncio
async def test_resend_limit(generator):
    request = await generator.generate_verification_request("u1", "e1", 0.5)
    for expected in (1, 2, 3):
        request = await generator.resend_verification_request(request.id)
        assert request.request_sent_count == expected
    with pytest.raises(StateError):
        await generator.resend_verification_request(request.id)


@pytest.mark.asyncio
async def test_resend_extends_expiry(generator, clock):
    request = await generator.generate_verification_request("u1", "e1", 0.5)
    clock.advance(days=2)
    resent = await generator.resend_verification_request(request.id)
    assert resent.expires_at > request.expires_at


@pytest.mark.asyncio
async def test_resend_unknown_or_closed(generator):
    with pytest.raises(NotFoundError):
        await generator.resend_verification_request("missing")

    request = await generator.generate_verification_request("u1", "e1", 0.5)
    await generator.process_response(request.token, "confirm")
    with pytest.raises(StateError):
        await generator.resend_verification_request(request.id)


@pytest.mark.asyncio
async def test_expiry_sweep_only_touches_due_pending(stores, generator, clock):
    old = await generator.generate_verification_request("u1", "old", 0.5)
    answered = await generator.generate_verification_request("u1", "answered", 0.5)
    await generator.process_response(answered.token, "reject")

    clock.advance(days=8)
    fresh = await generator.generate_verification_request("u1", "fresh", 0.5)

    assert await generator.process_expired_requests() == 1
    assert (await stores.verification.get(old.id)).status is VerificationStatus.EXPIRED
    assert (await stores.verification.get(answered.id)).status is VerificationStatus.REJECTED
    assert (await stores.verification.get(fresh.id)).status is VerificationStatus.PENDING

    # A second sweep finds nothing left to do
    assert await generator.process_expired_requests() == 0


@pytest.mark.asyncio
async def test_batch_generation_below_threshold(stores, generator):
    await _detection(stores, "e1", 0.3)
    await _detection(stores, "e2", 0.65)
    await _detection(stores, "e3", 0.9)

    requests = await generator.generate_verification_requests(0.7, 10)
    assert sorted(r.email_id for r in requests) == ["e1", "e2"]
    assert all(r.status is VerificationStatus.PENDING for r in requests)


@pytest.mark.asyncio
async def test_batch_generation_skips_verified(stores, generator):
    await _detection(stores, "e1", 0.3)
    await _detection(stores, "e2", 0.4)
    await stores.detections.mark_verified("u1", "e1")

    requests = await generator.generate_verification_requests(0.7, 10)
    assert [r.email_id for r in requests] == ["e2"]


@pytest.mark.asyncio
async def test_batch_generation_respects_limit(stores, generator):
    for i in range(5):
        await _detection(stores, f"e{i}", 0.2)
    assert len(await generator.generate_verification_requests(0.7, 2)) == 2


@pytest.mark.asyncio
async def test_links_carry_token_and_action(generator):
    request = await generator.generate_verification_request(
        "u1", "e1", 0.5, sender="digest@news.example.com", subject="Weekly <b>news</b> & more"
    )
    email = generator.format_verification_email(request)

    assert email.subject == "Is this a newsletter? Weekly <b>news</b> & more"
    for action in ("confirm", "reject", "ignore"):
        link = generator.action_link(request.token, action)
        query = parse_qs(urlsplit(link).query)
        assert query == {"token": [request.token], "action": [action]}
        assert link in email.body

    assert "Weekly &lt;b&gt;news&lt;/b&gt; &amp; more" in email.html
    assert "<b>news</b>" not in email.html
    assert request.expires_at.strftime("%Y-%m-%d") in email.body


@pytest.mark.asyncio
async def test_process_response_confirm(stores, generator):
    await _detection(stores, "e1", 0.55)
    request = await generator.generate_verification_request("u1", "e1")

    resolved = await generator.process_response(request.token, "confirm")
    assert resolved.status is VerificationStatus.CONFIRMED
    assert resolved.user_response is FeedbackType.CONFIRM
    assert resolved.responded_at is not None
    assert (await stores.detections.get("u1", "e1")).verified


@pytest.mark.asyncio
async def test_ignore_action_closes_as_rejected(generator):
    request = await generator.generate_verification_request("u1", "e1", 0.5)
    resolved = await generator.process_response(request.token, FeedbackType.IGNORE)
    assert resolved.status is VerificationStatus.REJECTED
    assert resolved.user_response is FeedbackType.IGNORE


@pytest.mark.asyncio
async def test_terminal_request_cannot_be_answered_again(stores, generator):
    request = await generator.generate_verification_request("u1", "e1", 0.5)
    await generator.process_response(request.token, "reject")
    with pytest.raises(StateError):
        await generator.process_response(request.token, "confirm")
    assert (await stores.verification.get(request.id)).status is VerificationStatus.REJECTED


@pytest.mark.asyncio
async def test_late_response_expires_request(stores, generator, clock):
    request = await generator.generate_verification_request("u1", "e1", 0.5)
    clock.advance(days=8)
    with pytest.raises(StateError):
        await generator.process_response(request.token, "confirm")
    assert (await stores.verification.get(request.id)).status is VerificationStatus.EXPIRED


@pytest.mark.asyncio
async def test_unknown_token_and_bad_action(generator):
    with pytest.raises(NotFoundError):
        await generator.process_response("no-such-token", "confirm")
    request = await generator.generate_verification_request("u1", "e1", 0.5)
    with pytest.raises(ValidationError):
        await generator.process_response(request.token, "maybe")


def test_parse_action():
    assert parse_action("CONFIRM") == "confirm"
    assert parse_action(FeedbackType.REJECT) == "reject"
    with pytest.raises(ValidationError):
        parse_action(FeedbackType.UNCERTAIN)


@pytest.mark.asyncio
async def test_expiry_days_from_config(stores, clock):
    generator = VerificationRequestGenerator(
        stores, DetectorConfig(verification_expiry_days=2), clock=clock
    )
    request = await generator.generate_verification_request("u1", "e1", 0.5)
    assert (request.expires_at - request.generated_at).days == 2
