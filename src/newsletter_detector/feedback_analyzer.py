"""Accuracy and pattern reporting over stored feedback."""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable
from datetime import datetime, timedelta

from .constants import (
    MIN_DOMAIN_ITEMS,
    MIN_PATTERN_ITEMS,
    PERIOD_DAYS,
    TOP_MISCLASSIFIED_DOMAINS,
    TOP_PATTERN_ENTRIES,
)
from .errors import ValidationError
from .feedback_store import FeedbackStore
from .models import (
    AccuracyMetrics,
    DomainTally,
    FeedbackAnalytics,
    FeedbackItem,
    FeedbackPatterns,
    FeedbackType,
    utcnow,
)

logger = logging.getLogger(__name__)

PERIODS = (*PERIOD_DAYS, "all")


def confusion_counts(items: list[FeedbackItem]) -> tuple[int, int, int, int]:
    """Return (TP, FP, TN, FN) of the prior verdicts against CONFIRM/REJECT feedback."""
    tp = fp = tn = fn = 0
    for item in items:
        if item.type is FeedbackType.CONFIRM:
            if item.detection_result:
                tp += 1
            else:
                fn += 1
        elif item.type is FeedbackType.REJECT:
            if item.detection_result:
                fp += 1
            else:
                tn += 1
    return tp, fp, tn, fn


def domain_breakdown(items: list[FeedbackItem]) -> dict[str, DomainTally]:
    tallies: dict[str, DomainTally] = {}
    for item in items:
        if not item.sender_domain:
            continue
        tally = tallies.setdefault(item.sender_domain, DomainTally())
        tally.count += 1
        if item.type is FeedbackType.CONFIRM:
            tally.confirms += 1
        elif item.type is FeedbackType.REJECT:
            tally.rejects += 1
    return tallies


def misclassified_domains(tallies: dict[str, DomainTally]) -> list[str]:
    """Domains ranked by the share of their minority verdict."""
    rates = []
    for domain, t in tallies.items():
        if t.count < MIN_DOMAIN_ITEMS:
            continue
        minority = t.rejects if t.confirms > t.rejects else t.confirms
        if minority:
            rates.append((domain, minority / t.count))
    rates.sort(key=lambda r: r[1], reverse=True)
    return [domain for domain, _ in rates[:TOP_MISCLASSIFIED_DOMAINS]]


def _frequent(counter: Counter) -> list[str]:
    ranked = [(k, n) for k, n in counter.most_common() if n >= MIN_PATTERN_ITEMS]
    return [k for k, _ in ranked[:TOP_PATTERN_ENTRIES]]


class FeedbackAnalyzer:
    def __init__(self, feedback: FeedbackStore, clock: Callable[[], datetime] = utcnow) -> None:
        self.feedback = feedback
        self.clock = clock

    async def _items_for_period(self, user_id: str, period: str) -> list[FeedbackItem]:
        if period not in PERIODS:
            raise ValidationError(f"Unknown period {period!r}, expected one of {', '.join(PERIODS)}")
        items = await self.feedback.get_feedback_for_user(user_id)
        if period == "all":
            return items
        cutoff = self.clock() - timedelta(days=PERIOD_DAYS[period])
        return [i for i in items if i.timestamp >= cutoff]

    async def analyze_feedback(self, user_id: str, period: str = "all") -> FeedbackAnalytics:
        items = await self._items_for_period(user_id, period)
        tp, fp, tn, fn = confusion_counts(items)
        classified = tp + fp + tn + fn
        tallies = domain_breakdown(items)

        analytics = FeedbackAnalytics(
            user_id=user_id,
            period=period,
            total_feedback=len(items),
            type_counts=dict(Counter(i.type.value for i in items)),
            true_positives=tp,
            false_positives=fp,
            true_negatives=tn,
            false_negatives=fn,
            accuracy=(tp + tn) / classified if classified else 0.0,
            domain_breakdown=tallies,
            top_misclassified_domains=misclassified_domains(tallies),
            generated_at=self.clock(),
        )
        logger.info(
            "Analyzed %d feedback item(s) for user %s over %s: accuracy %.2f",
            len(items),
            user_id,
            period,
            analytics.accuracy,
        )
        return analytics

    async def identify_patterns(self, user_id: str) -> FeedbackPatterns:
        items = await self.feedback.get_feedback_for_user(user_id)
        senders = Counter(i.sender for i in items if i.sender)
        domains = Counter(i.sender_domain for i in items if i.sender_domain)

        verdicts: dict[str, set[FeedbackType]] = {}
        for item in items:
            verdicts.setdefault(item.sender, set()).add(item.type)
        inconsistent = [
            sender
            for sender, types in verdicts.items()
            if FeedbackType.CONFIRM in types and FeedbackType.REJECT in types
        ]

        return FeedbackPatterns(
            frequent_senders=_frequent(senders),
            frequent_domains=_frequent(domains),
            inconsistent_senders=inconsistent,
            inconsistent_feedback=[i for i in items if i.sender in inconsistent],
        )

    async def calculate_accuracy_metrics(self, user_id: str) -> AccuracyMetrics:
        items = await self.feedback.get_feedback_for_user(user_id)
        tp, fp, tn, fn = confusion_counts(items)
        accuracy = (tp + tn) / max(1, tp + tn + fp + fn)
        precision = tp / max(1, tp + fp)
        recall = tp / max(1, tp + fn)
        f1 = 2 * precision * recall / (precision + recall) if precision + recall else 0.0
        return AccuracyMetrics(accuracy=accuracy, precision=precision, recall=recall, f1_score=f1)

    async def generate_suggestions(self, user_id: str) -> list[str]:
        analytics = await self.analyze_feedback(user_id)
        patterns = await self.identify_patterns(user_id)
        suggestions = []

        if analytics.accuracy < 0.8 and analytics.total_feedback >= 10:
            suggestions.append(
                "Consider retraining the newsletter detection model with the latest "
                "feedback data to improve accuracy."
            )
        fp, fn = analytics.false_positives, analytics.false_negatives
        if fp > fn and fp >= 5:
            suggestions.append(
                "The system is detecting too many non-newsletters as newsletters. "
                "Consider adjusting the detection threshold to reduce false positives."
            )
        if fn > fp and fn >= 5:
            suggestions.append(
                "The system is missing many newsletters. "
                "Consider adjusting the detection threshold to catch more newsletters."
            )
        if len(patterns.inconsistent_feedback) >= 3:
            suggestions.append(
                "There is inconsistent feedback for some senders. Review the classification "
                "rules for these senders to ensure consistency."
            )
        if analytics.top_misclassified_domains:
            domains = ", ".join(analytics.top_misclassified_domains[:3])
            suggestions.append(
                f"Improve detection rules for these frequently misclassified domains: {domains}."
            )
        if analytics.total_feedback < 10:
            suggestions.append(
                "Collect more feedback to improve the detection accuracy. "
                "The current sample size is too small for reliable analysis."
            )
        if not suggestions:
            suggestions.append("Continue collecting feedback to maintain detection quality.")
        return suggestions
