"""Independent newsletter signals, each scoring one email in [0, 1] with a confidence."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping

from bs4 import BeautifulSoup

from .constants import (
    BOILERPLATE_MATCHES_FOR_FULL_SCORE,
    BOILERPLATE_PATTERNS,
    BULK_PRECEDENCE_VALUES,
    CONTENT_BASE_CONFIDENCE,
    CONTENT_WEIGHT_BOILERPLATE,
    CONTENT_WEIGHT_LINK_DENSITY,
    CONTENT_WEIGHT_WRAPPER,
    FEEDBACK_DOMAIN_SCORES,
    FEEDBACK_HISTORY_CONFIDENCE_STEP,
    FEEDBACK_HISTORY_MAX_CONFIDENCE,
    FEEDBACK_NO_HISTORY_CONFIDENCE,
    FEEDBACK_SENDER_SCORES,
    HEADER_WEIGHT_LIST_UNSUBSCRIBE,
    HEADER_WEIGHT_PLATFORM_MARKERS,
    HEADER_WEIGHT_SENDER_PATTERN,
    KNOWN_NEWSLETTER_DOMAINS,
    KNOWN_PROVIDER_CONFIDENCE,
    KNOWN_PROVIDER_SCORE,
    LINKS_PER_100_WORDS_HIGH,
    LONG_BODY_CHARS,
    NEUTRAL_SCORE,
    NEWSLETTER_ESP_DOMAINS,
    NEWSLETTER_NAME_INDICATORS,
    NEWSLETTER_SENDER_PATTERNS,
    PLAIN_TEXT_CONFIDENCE,
    PLAIN_TEXT_SCORE,
    PLATFORM_HEADER_MARKERS,
    PLATFORM_MARKERS_FOR_FULL_SCORE,
    REPUTATION_CONFIDENCE_HALF_LIFE,
    REPUTATION_CONFIDENCE_SPAN,
    REPUTATION_MIN_CONFIDENCE,
    SENDER_SCORE_DISPLAY_NAME,
    SENDER_SCORE_ESP_DOMAIN,
    SENDER_SCORE_LOCAL_PART,
    WEIGHT_CONTENT_STRUCTURE,
    WEIGHT_HEADER_ANALYSIS,
    WEIGHT_SENDER_REPUTATION,
    WEIGHT_USER_FEEDBACK,
    WRAPPER_HINTS,
    WRAPPER_HINTS_FOR_FULL_SCORE,
)
from .feedback_store import FeedbackStore
from .models import (
    DetectionMethod,
    DetectionScore,
    Email,
    UserFeedback,
    extract_domain,
    parse_from_header,
)
from .storage import ReputationStore

logger = logging.getLogger(__name__)

_BOILERPLATE_RE = [re.compile(p, re.IGNORECASE) for p in BOILERPLATE_PATTERNS]
_URL_RE = re.compile(r"https?://\S+", re.IGNORECASE)
_WORD_RE = re.compile(r"\w+")


def _domain_matches(domain: str, candidates: list[str]) -> bool:
    return any(domain == c or domain.endswith("." + c) for c in candidates)


class SignalAnalyzer:
    """Base for one detection method."""

    method: DetectionMethod
    weight: float = 0.0

    def get_weight(self) -> float:
        return self.weight

    async def analyze(self, email: Email, user_id: str | None = None) -> DetectionScore:
        raise NotImplementedError


class HeaderAnalyzer(SignalAnalyzer):
    method = DetectionMethod.HEADER_ANALYSIS
    weight = WEIGHT_HEADER_ANALYSIS

    def check_list_unsubscribe(self, headers: Mapping[str, str]) -> float:
        """1.0 when a non-empty List-Unsubscribe header is present."""
        return 1.0 if headers.get("list-unsubscribe", "").strip() else 0.0

    def find_platform_markers(self, headers: Mapping[str, str]) -> list[str]:
        """Bulk-mail platform markers found among the (lower-cased) header names."""
        found = []
        for marker in PLATFORM_HEADER_MARKERS:
            if any(name.startswith(marker) for name in headers):
                found.append(marker)
        if headers.get("precedence", "").strip().lower() in BULK_PRECEDENCE_VALUES:
            found.append("precedence")
        return found

    def score_platform_markers(self, headers: Mapping[str, str]) -> tuple[list[str], float]:
        """Markers found and their score, full at PLATFORM_MARKERS_FOR_FULL_SCORE markers."""
        markers = self.find_platform_markers(headers)
        return markers, min(len(markers) / PLATFORM_MARKERS_FOR_FULL_SCORE, 1.0)

    def check_newsletter_headers(self, headers: Mapping[str, str]) -> float:
        return self.score_platform_markers(headers)[1]

    def analyze_sender_pattern(self, from_value: str) -> float:
        """Score the From header: automated local part, ESP domain, or newsletter-ish name."""
        name, address = parse_from_header(from_value)
        address = address.lower()
        if any(address.startswith(p) for p in NEWSLETTER_SENDER_PATTERNS):
            return SENDER_SCORE_LOCAL_PART
        if _domain_matches(extract_domain(address), NEWSLETTER_ESP_DOMAINS):
            return SENDER_SCORE_ESP_DOMAIN
        words = set(re.findall(r"[a-z]+", name.lower()))
        if words & set(NEWSLETTER_NAME_INDICATORS):
            return SENDER_SCORE_DISPLAY_NAME
        return 0.0

    async def analyze(self, email: Email, user_id: str | None = None) -> DetectionScore:
        headers = email.header_map
        unsubscribe = self.check_list_unsubscribe(headers)
        markers, marker_score = self.score_platform_markers(headers)
        sender_score = self.analyze_sender_pattern(email.from_header)

        score = (
            HEADER_WEIGHT_LIST_UNSUBSCRIBE * unsubscribe
            + HEADER_WEIGHT_PLATFORM_MARKERS * marker_score
            + HEADER_WEIGHT_SENDER_PATTERN * sender_score
        )
        indicators = int(unsubscribe > 0) + len(markers) + int(sender_score > 0)
        confidence = min(0.6 + 0.1 * indicators, 0.9)

        reasons = []
        if unsubscribe:
            reasons.append("List-Unsubscribe header")
        if markers:
            reasons.append(f"{len(markers)} bulk-mail header marker(s)")
        if sender_score:
            reasons.append("newsletter-style sender")
        reason = ", ".join(reasons) if reasons else "No newsletter headers"

        logger.debug("Header analysis for %s: score=%.2f (%s)", email.id, score, reason)
        return DetectionScore(
            method=self.method,
            score=min(score, 1.0),
            confidence=confidence,
            reason=reason,
            metadata={"markers": markers, "sender_pattern_score": sender_score},
        )


class ContentStructureAnalyzer(SignalAnalyzer):
    """Looks at wrapper markup, boilerplate phrases and link density of the body."""

    method = DetectionMethod.CONTENT_STRUCTURE
    weight = WEIGHT_CONTENT_STRUCTURE

    @staticmethod
    def count_wrapper_hints(soup: BeautifulSoup) -> int:
        hints = set()
        for tag in soup.find_all(["header", "footer"]):
            hints.add(tag.name)
        for tag in soup.find_all(True):
            attrs = " ".join([tag.get("id") or "", " ".join(tag.get("class") or [])]).lower()
            for hint in WRAPPER_HINTS:
                if hint in attrs:
                    hints.add(hint)
        return len(hints)

    @staticmethod
    def count_boilerplate(text: str) -> int:
        return sum(1 for pattern in _BOILERPLATE_RE if pattern.search(text))

    async def analyze(self, email: Email, user_id: str | None = None) -> DetectionScore:
        raw = email.text
        if email.is_html:
            soup = BeautifulSoup(raw, "html.parser")
            text = soup.get_text(" ", strip=True)
            links = len(soup.find_all("a", href=True))
            wrappers = self.count_wrapper_hints(soup)
        else:
            text = raw
            links = len(_URL_RE.findall(raw))
            wrappers = 0

        boilerplate = self.count_boilerplate(text)
        words = len(_WORD_RE.findall(text))
        links_per_100 = links * 100 / words if words else 0.0
        dense_links = links_per_100 >= LINKS_PER_100_WORDS_HIGH

        if not email.is_html and not boilerplate and not dense_links:
            return DetectionScore(
                method=self.method,
                score=PLAIN_TEXT_SCORE,
                confidence=PLAIN_TEXT_CONFIDENCE,
                reason="Plain text without newsletter structure",
            )

        boilerplate_score = min(boilerplate / BOILERPLATE_MATCHES_FOR_FULL_SCORE, 1.0)
        wrapper_score = min(wrappers / WRAPPER_HINTS_FOR_FULL_SCORE, 1.0)
        density_score = min(links_per_100 / LINKS_PER_100_WORDS_HIGH, 1.0)
        score = (
            CONTENT_WEIGHT_BOILERPLATE * boilerplate_score
            + CONTENT_WEIGHT_WRAPPER * wrapper_score
            + CONTENT_WEIGHT_LINK_DENSITY * density_score
        )

        signals = sum(1 for s in (boilerplate_score, wrapper_score, density_score) if s > 0)
        confidence = CONTENT_BASE_CONFIDENCE + 0.1 * signals
        if len(raw) > LONG_BODY_CHARS:
            confidence += 0.1
        confidence = min(confidence, 0.9)

        reason = (
            f"{boilerplate} boilerplate phrase(s), {wrappers} wrapper hint(s), "
            f"{links_per_100:.1f} links per 100 words"
        )
        logger.debug("Content analysis for %s: score=%.2f (%s)", email.id, score, reason)
        return DetectionScore(
            method=self.method,
            score=min(score, 1.0),
            confidence=confidence,
            reason=reason,
            metadata={
                "boilerplate_matches": boilerplate,
                "wrapper_hints": wrappers,
                "links": links,
                "words": words,
            },
        )


class SenderReputationAnalyzer(SignalAnalyzer):
    """Persisted sender reputation, falling back to the domain, then to known providers."""

    method = DetectionMethod.SENDER_REPUTATION
    weight = WEIGHT_SENDER_REPUTATION

    def __init__(self, reputation: ReputationStore | None = None) -> None:
        self.reputation = reputation

    @staticmethod
    def observation_confidence(observations: int) -> float:
        n = max(observations, 0)
        return REPUTATION_MIN_CONFIDENCE + REPUTATION_CONFIDENCE_SPAN * n / (
            n + REPUTATION_CONFIDENCE_HALF_LIFE
        )

    async def analyze(self, email: Email, user_id: str | None = None) -> DetectionScore:
        sender, domain = email.sender, email.sender_domain

        if self.reputation is not None:
            if sender:
                rep = await self.reputation.get_sender(sender)
                if rep.observations:
                    return DetectionScore(
                        method=self.method,
                        score=rep.score,
                        confidence=self.observation_confidence(rep.observations),
                        reason=f"Sender reputation from {rep.observations} observation(s)",
                        metadata={"key": sender, "kind": rep.kind},
                    )
            if domain:
                rep = await self.reputation.get_domain(domain)
                if rep.observations:
                    return DetectionScore(
                        method=self.method,
                        score=rep.score,
                        confidence=self.observation_confidence(rep.observations),
                        reason=f"Domain reputation from {rep.observations} observation(s)",
                        metadata={"key": domain, "kind": rep.kind},
                    )

        if domain and _domain_matches(domain, KNOWN_NEWSLETTER_DOMAINS):
            return DetectionScore(
                method=self.method,
                score=KNOWN_PROVIDER_SCORE,
                confidence=KNOWN_PROVIDER_CONFIDENCE,
                reason=f"Known newsletter provider {domain}",
                metadata={"key": domain, "kind": "provider"},
            )

        return DetectionScore(
            method=self.method,
            score=NEUTRAL_SCORE,
            confidence=REPUTATION_MIN_CONFIDENCE,
            reason="Unknown sender",
        )


class UserFeedbackIntegrator(SignalAnalyzer):
    """Turns stored or explicitly supplied user feedback into a detection signal.

    Passive mode averages the sender's stored confirm/reject history. Active
    mode (:meth:`apply_feedback`) consults the user's sender and domain lists
    first and only falls back to the history when the sender is not listed.
    """

    method = DetectionMethod.USER_FEEDBACK
    weight = WEIGHT_USER_FEEDBACK

    def __init__(self, feedback: FeedbackStore | None = None) -> None:
        self.feedback = feedback

    async def analyze(self, email: Email, user_id: str | None = None) -> DetectionScore:
        confirms = rejects = 0
        if self.feedback is not None and email.sender:
            confirms, rejects = await self.feedback.sender_history(email.sender, user_id)
        total = confirms + rejects
        if not total:
            return DetectionScore(
                method=self.method,
                score=NEUTRAL_SCORE,
                confidence=FEEDBACK_NO_HISTORY_CONFIDENCE,
                reason="No feedback history",
            )
        return DetectionScore(
            method=self.method,
            score=confirms / total,
            confidence=min(FEEDBACK_HISTORY_CONFIDENCE_STEP * total, FEEDBACK_HISTORY_MAX_CONFIDENCE),
            reason=f"{confirms} of {total} feedback item(s) confirmed newsletter",
            metadata={"confirms": confirms, "rejects": rejects},
        )

    async def apply_feedback(
        self, user_feedback: UserFeedback, email: Email, user_id: str | None = None
    ) -> DetectionScore:
        sender, domain = email.sender, email.sender_domain
        if sender in user_feedback.confirmed_senders:
            score, confidence = FEEDBACK_SENDER_SCORES["confirmed"]
            reason = "Sender confirmed as newsletter"
        elif sender in user_feedback.rejected_senders:
            score, confidence = FEEDBACK_SENDER_SCORES["rejected"]
            reason = "Sender rejected as newsletter"
        elif domain and domain in user_feedback.trusted_domains:
            score, confidence = FEEDBACK_DOMAIN_SCORES["trusted"]
            reason = f"Domain {domain} trusted"
        elif domain and domain in user_feedback.blocked_domains:
            score, confidence = FEEDBACK_DOMAIN_SCORES["blocked"]
            reason = f"Domain {domain} blocked"
        else:
            return await self.analyze(email, user_id)

        return DetectionScore(method=self.method, score=score, confidence=confidence, reason=reason)
