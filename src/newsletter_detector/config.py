"""Tunable settings, with defaults from constants and optional JSON overrides."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path

from . import constants
from .errors import ValidationError
from .models import DetectionMethod

logger = logging.getLogger(__name__)


def _default_method_weights() -> dict[str, float]:
    return {
        "header_analysis": constants.WEIGHT_HEADER_ANALYSIS,
        "content_structure": constants.WEIGHT_CONTENT_STRUCTURE,
        "sender_reputation": constants.WEIGHT_SENDER_REPUTATION,
        "user_feedback": constants.WEIGHT_USER_FEEDBACK,
    }


@dataclass
class DetectorConfig:
    """All thresholds and weights used by detection and feedback learning."""

    method_weights: dict[str, float] = field(default_factory=_default_method_weights)
    newsletter_threshold: float = constants.NEWSLETTER_THRESHOLD
    verification_band_low: float = constants.VERIFICATION_BAND_LOW
    verification_band_high: float = constants.VERIFICATION_BAND_HIGH
    feedback_override_confidence: float = constants.FEEDBACK_OVERRIDE_CONFIDENCE

    feedback_type_weights: dict[str, float] = field(
        default_factory=lambda: dict(constants.FEEDBACK_TYPE_WEIGHTS)
    )
    surprise_high_confidence: float = constants.SURPRISE_HIGH_CONFIDENCE
    surprise_low_confidence: float = constants.SURPRISE_LOW_CONFIDENCE
    surprise_dampen: float = constants.SURPRISE_DAMPEN
    surprise_boost: float = constants.SURPRISE_BOOST
    reputation_step: float = constants.REPUTATION_STEP
    feature_value_scale: float = constants.FEATURE_VALUE_SCALE
    min_training_items: int = constants.MIN_TRAINING_ITEMS
    domain_promotion_count: int = constants.DOMAIN_PROMOTION_COUNT

    verification_expiry_days: int = constants.VERIFICATION_EXPIRY_DAYS
    max_resend_count: int = constants.MAX_RESEND_COUNT
    verification_base_url: str = constants.VERIFICATION_BASE_URL

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Raise ValidationError if the settings are inconsistent."""
        low, high = self.verification_band_low, self.verification_band_high
        if not (0.0 <= low < high <= 1.0):
            raise ValidationError(
                f"Verification band must satisfy 0 <= low < high <= 1, got ({low}, {high})"
            )
        if not (0.0 <= self.surprise_low_confidence < self.surprise_high_confidence <= 1.0):
            raise ValidationError("Surprise thresholds must satisfy 0 <= low < high <= 1")
        unknown = set(self.method_weights) - {m.value for m in DetectionMethod}
        if unknown:
            raise ValidationError(f"Unknown detection methods: {', '.join(sorted(unknown))}")
        if any(w < 0 for w in self.method_weights.values()):
            raise ValidationError("Method weights must be non-negative")
        if self.max_resend_count < 0 or self.verification_expiry_days <= 0:
            raise ValidationError("Resend limit and expiry days must be positive")

    @classmethod
    def from_dict(cls, data: dict) -> DetectorConfig:
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValidationError(f"Unknown config keys: {', '.join(sorted(unknown))}")
        return cls(**data)

    @classmethod
    def load(cls, path: Path | None = None) -> DetectorConfig:
        """Load overrides from a JSON file; missing file means defaults."""
        path = Path(path or constants.CONFIG_PATH)
        if not path.exists():
            return cls()
        try:
            with open(path) as f:
                data = json.load(f)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"Invalid config file {path}: {exc}") from exc
        logger.info("Loaded detector config overrides from %s", path)
        return cls.from_dict(data)
