"""Shared fixtures for tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from newsletter_detector.database import Database
from newsletter_detector.models import DetectionMethod, DetectionScore, Email
from newsletter_detector.storage import Stores

NEWSLETTER_HTML = """<html><body>
<div id="preheader">This week's top stories</div>
<table class="masthead"><tr><td><img class="logo" src="https://example-news.com/logo.png"></td></tr></table>
<h1>The Weekly Digest</h1>
<p>Read <a href="https://example-news.com/a1">the first story</a>,
<a href="https://example-news.com/a2">the second story</a> and
<a href="https://example-news.com/a3">the third story</a>.</p>
<p><a href="https://example-news.com/web">View this email in your browser</a></p>
<div class="footer">
You are receiving this because you subscribed.
<a href="https://example-news.com/prefs">Manage your subscription</a> |
<a href="https://example-news.com/unsub">Unsubscribe</a>
</div>
</body></html>"""


class FixedClock:
    """Settable clock for time-dependent code."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FixedAnalyzer:
    """Analyzer stand-in returning a preset score."""

    def __init__(self, method: DetectionMethod, score: float, confidence: float = 1.0) -> None:
        self.method = method
        self.weight = 0.0
        self._score = DetectionScore(method=method, score=score, confidence=confidence, reason="fixed")

    def get_weight(self) -> float:
        return self.weight

    async def analyze(self, email, user_id=None) -> DetectionScore:
        return self._score


@pytest.fixture
def newsletter_email() -> Email:
    return Email(
        id="msg_nl_001",
        headers=[
            ("From", "The Weekly Digest <newsletter@example-news.com>"),
            ("To", "bob@example.org"),
            ("Subject", "Weekly Digest: Top Stories This Week"),
            ("Message-ID", "<nl-001@example-news.com>"),
            ("List-Unsubscribe", "<https://example-news.com/unsub>"),
            ("List-Id", "Weekly Digest <digest.example-news.com>"),
            ("X-Campaign-Id", "spring-2026"),
            ("Precedence", "bulk"),
        ],
        body=NEWSLETTER_HTML.encode("utf-8"),
        content_type="text/html",
    )


@pytest.fixture
def personal_email() -> Email:
    return Email(
        id="msg_ps_001",
        headers=[
            ("From", "Alice Smith <alice.smith@gmail.com>"),
            ("To", "bob@example.org"),
            ("Subject", "Re: Lunch tomorrow?"),
            ("Message-ID", "<ps-001@mail.gmail.com>"),
        ],
        body=b"Hi Bob,\n\nAre we still on for lunch tomorrow? Let me know.\n\nAlice",
    )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest_asyncio.fixture
async def db(tmp_path):
    database = await Database(tmp_path / "detector.db").open()
    yield database
    await database.close()


@pytest.fixture
def stores(db: Database) -> Stores:
    return Stores.from_database(db)
