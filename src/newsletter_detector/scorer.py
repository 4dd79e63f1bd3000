"""Combining per-method detection scores into one newsletter probability."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from .config import DetectorConfig
from .constants import NEUTRAL_SCORE, SCORE_LIKELY_NEWSLETTER, SCORE_NEWSLETTER, SCORE_UNCERTAIN
from .errors import ValidationError
from .models import DetectionMethod, DetectionScore

logger = logging.getLogger(__name__)

_DEFAULT_UNKNOWN_WEIGHT = 0.25


class ConfidenceAggregator:
    """Weighted average of analyzer scores, each weight scaled by the analyzer's confidence."""

    def __init__(self, config: DetectorConfig | None = None) -> None:
        self.config = config or DetectorConfig()
        self._weights = {
            DetectionMethod(name): weight for name, weight in self.config.method_weights.items()
        }
        self._band = (self.config.verification_band_low, self.config.verification_band_high)

    def calculate_confidence(self, scores: Iterable[DetectionScore]) -> float:
        """Return the combined score in [0, 1]; 0.5 when there is nothing to weigh."""
        total_weight = 0.0
        weighted = 0.0
        count = 0
        for score in scores:
            effective = self.get_method_weight(score.method) * score.confidence
            weighted += score.score * effective
            total_weight += effective
            count += 1

        logger.debug("Combining %d detection scores (weight sum %.3f)", count, total_weight)
        if total_weight <= 0:
            return NEUTRAL_SCORE
        return min(max(weighted / total_weight, 0.0), 1.0)

    def needs_verification(self, score: float) -> bool:
        """True when the score lies strictly inside the ambiguous band."""
        low, high = self._band
        return low < score < high

    def is_newsletter(self, score: float) -> bool:
        return score >= self.config.newsletter_threshold

    def get_method_weight(self, method: DetectionMethod) -> float:
        return self._weights.get(method, _DEFAULT_UNKNOWN_WEIGHT)

    def set_method_weight(self, method: DetectionMethod, weight: float) -> None:
        """Override one method weight; rescales all weights if they then exceed 1.0."""
        if not 0.0 <= weight <= 1.0:
            raise ValidationError("Weight must be between 0.0 and 1.0")
        self._weights[method] = weight
        total = sum(self._weights.values())
        if total > 1.0:
            for m, w in self._weights.items():
                self._weights[m] = w / total

    def set_verification_band(self, low: float, high: float) -> None:
        if not (0.0 <= low < high <= 1.0):
            raise ValidationError(
                "Thresholds must be between 0.0 and 1.0, and low must be less than high"
            )
        self._band = (low, high)

    @property
    def verification_band(self) -> tuple[float, float]:
        return self._band


def classify_score(score: float) -> str:
    """Human label for a combined score."""
    if score >= SCORE_NEWSLETTER:
        return "newsletter"
    if score >= SCORE_LIKELY_NEWSLETTER:
        return "likely_newsletter"
    if score >= SCORE_UNCERTAIN:
        return "uncertain"
    return "personal"
