"""Data models for Newsletter Detector."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

_FROM_RE = re.compile(r"^(.*?)\s*<([^>]+)>$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_from_header(from_value: str) -> tuple[str, str]:
    """Parse a From header into (display name, email address).

    Handles formats like:
      "John Doe <john@example.com>" -> ("John Doe", "john@example.com")
      "<john@example.com>"          -> ("", "john@example.com")
      "john@example.com"            -> ("", "john@example.com")
    """
    if not from_value:
        return ("", "")
    m = _FROM_RE.match(from_value.strip())
    if m:
        name = m.group(1).strip().strip('"').strip("'")
        return (name, m.group(2).strip())
    email = from_value.strip().strip("<>")
    return ("", email)


def extract_domain(address: str) -> str:
    """Return the lower-cased domain of an email address, or ''."""
    _, sep, domain = address.rpartition("@")
    return domain.lower() if sep else ""


class DetectionMethod(str, Enum):
    HEADER_ANALYSIS = "header_analysis"
    CONTENT_STRUCTURE = "content_structure"
    SENDER_REPUTATION = "sender_reputation"
    USER_FEEDBACK = "user_feedback"


# Order in which scores appear in a DetectionResult
CANONICAL_METHOD_ORDER = (
    DetectionMethod.HEADER_ANALYSIS,
    DetectionMethod.CONTENT_STRUCTURE,
    DetectionMethod.SENDER_REPUTATION,
    DetectionMethod.USER_FEEDBACK,
)


class FeedbackType(str, Enum):
    CONFIRM = "confirm"  # user says it is a newsletter
    REJECT = "reject"  # user says it is not
    UNCERTAIN = "uncertain"
    VERIFY = "verify"  # system asked for verification
    IGNORE = "ignore"


class FeedbackPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class VerificationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not VerificationStatus.PENDING


def feedback_priority(feedback_type: FeedbackType, confidence: float) -> FeedbackPriority:
    """Priority of a feedback event given the detector's prior confidence."""
    # Contradicting a confident detection matters most
    if (feedback_type is FeedbackType.REJECT and confidence > 0.8) or (
        feedback_type is FeedbackType.CONFIRM and confidence < 0.2
    ):
        return FeedbackPriority.HIGH
    if feedback_type in (FeedbackType.CONFIRM, FeedbackType.REJECT) and 0.4 <= confidence <= 0.6:
        return FeedbackPriority.MEDIUM
    if feedback_type is FeedbackType.VERIFY:
        return FeedbackPriority.MEDIUM
    if feedback_type in (FeedbackType.UNCERTAIN, FeedbackType.IGNORE):
        return FeedbackPriority.LOW
    return FeedbackPriority.MEDIUM


@dataclass
class Email:
    """An inbound message as handed over by the mail-access collaborator."""

    id: str
    headers: list[tuple[str, str]] = field(default_factory=list)
    body: bytes = b""
    charset: str = "utf-8"
    content_type: str = "text/plain"

    def header(self, name: str, default: str = "") -> str:
        """Return the first header value with the given name (case-insensitive)."""
        wanted = name.lower()
        for key, value in self.headers:
            if key.lower() == wanted:
                return value
        return default

    @property
    def header_map(self) -> dict[str, str]:
        """Lower-cased header names mapped to their first value."""
        result: dict[str, str] = {}
        for key, value in self.headers:
            result.setdefault(key.lower(), value)
        return result

    @property
    def from_header(self) -> str:
        return self.header("From")

    @property
    def display_name(self) -> str:
        return parse_from_header(self.from_header)[0]

    @property
    def sender(self) -> str:
        return parse_from_header(self.from_header)[1].lower()

    @property
    def sender_domain(self) -> str:
        return extract_domain(self.sender)

    @property
    def subject(self) -> str:
        return self.header("Subject")

    @property
    def message_id(self) -> str:
        return self.header("Message-ID")

    @property
    def text(self) -> str:
        """The decoded body."""
        return self.body.decode(self.charset or "utf-8", errors="replace")

    @property
    def is_html(self) -> bool:
        return self.content_type.lower().startswith("text/html")


@dataclass(frozen=True)
class DetectionScore:
    """Outcome of one signal analyzer for one email."""

    method: DetectionMethod
    score: float
    confidence: float
    reason: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class DetectionResult:
    is_newsletter: bool
    combined_score: float
    needs_verification: bool
    scores: list[DetectionScore]
    email: Email

    @property
    def features(self) -> dict[str, float]:
        """Per-method scores, stored alongside feedback for weight learning."""
        return {s.method.value: s.score for s in self.scores}

    def score_for(self, method: DetectionMethod) -> DetectionScore | None:
        for s in self.scores:
            if s.method == method:
                return s
        return None


@dataclass
class UserFeedback:
    """Per-user sender and domain lists built from feedback events."""

    confirmed_senders: set[str] = field(default_factory=set)
    rejected_senders: set[str] = field(default_factory=set)
    trusted_domains: set[str] = field(default_factory=set)
    blocked_domains: set[str] = field(default_factory=set)


@dataclass
class FeedbackItem:
    id: str
    user_id: str
    email_id: str
    sender: str
    sender_domain: str
    type: FeedbackType
    priority: FeedbackPriority = FeedbackPriority.MEDIUM
    detection_result: bool = False  # verdict before the feedback
    confidence: float = 0.5  # confidence before the feedback
    features: dict[str, float] = field(default_factory=dict)
    message_id: str = ""
    subject: str = ""
    comment: str | None = None
    timestamp: datetime = field(default_factory=utcnow)
    processed: bool = False
    processed_at: datetime | None = None


@dataclass
class VerificationRequest:
    id: str
    user_id: str
    email_id: str
    sender: str
    sender_domain: str
    confidence: float
    token: str
    generated_at: datetime
    expires_at: datetime
    status: VerificationStatus = VerificationStatus.PENDING
    message_id: str = ""
    subject: str = ""
    responded_at: datetime | None = None
    user_response: FeedbackType | None = None
    request_sent_count: int = 0


@dataclass
class VerificationEmail:
    subject: str
    body: str
    html: str


@dataclass
class DetectionRecord:
    """Last known detection outcome for an email, kept for later learning."""

    user_id: str
    email_id: str
    sender: str
    sender_domain: str
    confidence: float
    is_newsletter: bool
    subject: str = ""
    message_id: str = ""
    features: dict[str, float] = field(default_factory=dict)
    verified: bool = False
    detected_at: datetime = field(default_factory=utcnow)


@dataclass
class Reputation:
    key: str
    kind: str  # "sender" or "domain"
    score: float = 0.5
    observations: int = 0
    updated_at: datetime | None = None


@dataclass
class DomainTally:
    count: int = 0
    confirms: int = 0
    rejects: int = 0


@dataclass
class FeedbackAnalytics:
    user_id: str
    period: str
    total_feedback: int
    type_counts: dict[str, int]
    true_positives: int
    false_positives: int
    true_negatives: int
    false_negatives: int
    accuracy: float
    domain_breakdown: dict[str, DomainTally]
    top_misclassified_domains: list[str]
    generated_at: datetime = field(default_factory=utcnow)

    def count(self, feedback_type: FeedbackType) -> int:
        return self.type_counts.get(feedback_type.value, 0)


@dataclass
class FeedbackPatterns:
    frequent_senders: list[str]
    frequent_domains: list[str]
    inconsistent_senders: list[str]
    inconsistent_feedback: list[FeedbackItem]


@dataclass
class AccuracyMetrics:
    accuracy: float
    precision: float
    recall: float
    f1_score: float


@dataclass
class FeedbackStats:
    total_submitted: int
    confirmed_newsletters: int
    rejected_newsletters: int
    pending_verifications: int


@dataclass
class BatchOutcome:
    """Aggregate result of a batch where each item may fail on its own."""

    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: dict[str, str] = field(default_factory=dict)

    def record_failure(self, key: str, exc: BaseException) -> None:
        self.failed += 1
        self.errors[key] = str(exc)
