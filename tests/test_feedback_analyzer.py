"""Tests for feedback analytics."""

from datetime import timedelta

import pytest

from newsletter_detector.errors import ValidationError
from newsletter_detector.feedback_analyzer import (
    FeedbackAnalyzer,
    confusion_counts,
    domain_breakdown,
    misclassified_domains,
)
from newsletter_detector.models import DomainTally, FeedbackItem, FeedbackType

_counter = iter(range(10_000))


def _item(feedback_type, prior, sender="digest@news.example.com", timestamp=None, user_id="u1"):
    n = next(_counter)
    data = dict(
        id=f"f{n}",
        user_id=user_id,
        email_id=f"e{n}",
        sender=sender,
        sender_domain=sender.rpartition("@")[2],
        type=feedback_type,
        detection_result=prior,
    )
    if timestamp is not None:
        data["timestamp"] = timestamp
    return FeedbackItem(**data)


async def _save(stores, *items):
    for item in items:
        await stores.feedback.save_feedback(item)


@pytest.fixture
def analyzer(stores, clock):
    return FeedbackAnalyzer(stores.feedback, clock)


def test_confusion_counts():
    items = [
        _item(FeedbackType.CONFIRM, True),
        _item(FeedbackType.CONFIRM, False),
        _item(FeedbackType.REJECT, True),
        _item(FeedbackType.REJECT, False),
        _item(FeedbackType.REJECT, False),
        _item(FeedbackType.UNCERTAIN, True),
    ]
    assert confusion_counts(items) == (1, 1, 2, 1)


def test_domain_breakdown_and_misclassified():
    items = [_item(FeedbackType.CONFIRM, True, sender=f"s{i}@mixed.com") for i in range(3)]
    items.append(_item(FeedbackType.REJECT, True, sender="x@mixed.com"))
    items += [_item(FeedbackType.CONFIRM, True, sender=f"s{i}@clean.com") for i in range(4)]
    items += [_item(FeedbackType.REJECT, False, sender="a@rare.com")]

    tallies = domain_breakdown(items)
    assert tallies["mixed.com"] == DomainTally(count=4, confirms=3, rejects=1)
    # clean.com has no minority verdict; rare.com has too few items
    assert misclassified_domains(tallies) == ["mixed.com"]


def test_misclassified_ranked_by_minority_rate():
    tallies = {
        "a.com": DomainTally(count=4, confirms=3, rejects=1),
        "b.com": DomainTally(count=4, confirms=2, rejects=2),
        "c.com": DomainTally(count=10, confirms=1, rejects=9),
    }
    assert misclassified_domains(tallies) == ["b.com", "a.com", "c.com"]


@pytest.mark.asyncio
async def test_empty_history(analyzer):
    analytics = await analyzer.analyze_feedback("u1")
    assert analytics.total_feedback == 0
    assert analytics.accuracy == 0.0
    metrics = await analyzer.calculate_accuracy_metrics("u1")
    assert (metrics.accuracy, metrics.precision, metrics.recall, metrics.f1_score) == (0, 0, 0, 0)


@pytest.mark.asyncio
async def test_analyze_feedback_counts(stores, analyzer):
    await _save(
        stores,
        _item(FeedbackType.CONFIRM, True),
        _item(FeedbackType.CONFIRM, True),
        _item(FeedbackType.REJECT, True),
        _item(FeedbackType.REJECT, False),
        _item(FeedbackType.IGNORE, False),
    )
    analytics = await analyzer.analyze_feedback("u1")
    assert analytics.total_feedback == 5
    assert analytics.count(FeedbackType.CONFIRM) == 2
    assert analytics.count(FeedbackType.IGNORE) == 1
    assert (analytics.true_positives, analytics.false_positives) == (2, 1)
    assert analytics.true_negatives == 1
    assert analytics.accuracy == pytest.approx(0.75)


@pytest.mark.asyncio
async def test_period_filter(stores, analyzer, clock):
    await _save(
        stores,
        _item(FeedbackType.CONFIRM, True, timestamp=clock.now - timedelta(hours=2)),
        _item(FeedbackType.CONFIRM, True, timestamp=clock.now - timedelta(days=3)),
        _item(FeedbackType.CONFIRM, True, timestamp=clock.now - timedelta(days=20)),
        _item(FeedbackType.CONFIRM, True, timestamp=clock.now - timedelta(days=90)),
    )
    counts = {p: (await analyzer.analyze_feedback("u1", p)).total_feedback for p in ("day", "week", "month", "all")}
    assert counts == {"day": 1, "week": 2, "month": 3, "all": 4}

    with pytest.raises(ValidationError):
        await analyzer.analyze_feedback("u1", "year")


@pytest.mark.asyncio
async def test_accuracy_metrics(stores, analyzer):
    await _save(
        stores,
        *[_item(FeedbackType.CONFIRM, True) for _ in range(3)],
        _item(FeedbackType.REJECT, True),
        _item(FeedbackType.CONFIRM, False),
        _item(FeedbackType.REJECT, False),
    )
    metrics = await analyzer.calculate_accuracy_metrics("u1")
    assert metrics.accuracy == pytest.approx(4 / 6)
    assert metrics.precision == pytest.approx(0.75)
    assert metrics.recall == pytest.approx(0.75)
    assert metrics.f1_score == pytest.approx(0.75)


@pytest.mark.asyncio
async def test_identify_patterns(stores, analyzer):
    await _save(
        stores,
        *[_item(FeedbackType.CONFIRM, True, sender="digest@news.example.com") for _ in range(3)],
        _item(FeedbackType.REJECT, True, sender="digest@news.example.com"),
        _item(FeedbackType.CONFIRM, True, sender="solo@other.org"),
    )
    patterns = await analyzer.identify_patterns("u1")
    assert patterns.frequent_senders == ["digest@news.example.com"]
    assert patterns.frequent_domains == ["news.example.com"]
    assert patterns.inconsistent_senders == ["digest@news.example.com"]
    assert len(patterns.inconsistent_feedback) == 4


@pytest.mark.asyncio
async def test_suggestions_for_small_sample(analyzer):
    suggestions = await analyzer.generate_suggestions("u1")
    assert suggestions == [
        "Collect more feedback to improve the detection accuracy. "
        "The current sample size is too small for reliable analysis."
    ]


@pytest.mark.asyncio
async def test_suggestions_for_false_positives(stores, analyzer):
    await _save(stores, *[_item(FeedbackType.REJECT, True, sender=f"s{i}@shop.com") for i in range(6)])
    await _save(stores, *[_item(FeedbackType.CONFIRM, True, sender=f"n{i}@news.com") for i in range(4)])

    suggestions = await analyzer.generate_suggestions("u1")
    assert any("retraining" in s for s in suggestions)
    assert any("false positives" in s for s in suggestions)
    assert not any("missing many newsletters" in s for s in suggestions)
    assert not any("Collect more feedback" in s for s in suggestions)


@pytest.mark.asyncio
async def test_suggestions_when_all_is_well(stores, analyzer):
    await _save(stores, *[_item(FeedbackType.CONFIRM, True, sender=f"n{i}@news.com") for i in range(10)])
    assert await analyzer.generate_suggestions("u1") == [
        "Continue collecting feedback to maintain detection quality."
    ]
