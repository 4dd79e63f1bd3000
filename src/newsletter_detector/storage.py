"""Reputation, feature-weight, detection-log and user-list stores, plus the store registry."""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass

from .database import Database, from_timestamp, to_timestamp
from .feedback_store import FeedbackStore, VerificationStore
from .models import DetectionRecord, Reputation, UserFeedback, utcnow

SENDER = "sender"
DOMAIN = "domain"

_LIST_CONFIRMED = "confirmed_sender"
_LIST_REJECTED = "rejected_sender"
_LIST_TRUSTED = "trusted_domain"
_LIST_BLOCKED = "blocked_domain"


def _clamp(value: float) -> float:
    return min(max(value, 0.0), 1.0)


class ReputationStore:
    """Sender- and domain-keyed newsletter probability, neutral 0.5 when unseen."""

    def __init__(self, db: Database) -> None:
        self._db = db

    @staticmethod
    def _row_to_reputation(kind: str, key: str, row: sqlite3.Row | None) -> Reputation:
        if row is None:
            return Reputation(key=key, kind=kind)
        return Reputation(
            key=key,
            kind=kind,
            score=row["score"],
            observations=row["observations"],
            updated_at=from_timestamp(row["updated_at"]),
        )

    async def get(self, kind: str, key: str) -> Reputation:
        def _get(conn: sqlite3.Connection) -> Reputation:
            row = conn.execute(
                "SELECT * FROM reputations WHERE kind = ? AND key = ?", (kind, key)
            ).fetchone()
            return self._row_to_reputation(kind, key, row)

        return await self._db.run(_get)

    async def get_sender(self, sender: str) -> Reputation:
        return await self.get(SENDER, sender.lower())

    async def get_domain(self, domain: str) -> Reputation:
        return await self.get(DOMAIN, domain.lower())

    async def adjust(self, kind: str, key: str, delta: float) -> Reputation:
        """Atomically add ``delta`` to the score (clamped to [0, 1]) and count one observation."""

        def _adjust(conn: sqlite3.Connection) -> Reputation:
            row = conn.execute(
                "SELECT * FROM reputations WHERE kind = ? AND key = ?", (kind, key)
            ).fetchone()
            current = self._row_to_reputation(kind, key, row)
            now = utcnow()
            new = Reputation(
                key=key,
                kind=kind,
                score=_clamp(current.score + delta),
                observations=current.observations + 1,
                updated_at=now,
            )
            conn.execute(
                "INSERT INTO reputations (kind, key, score, observations, updated_at) "
                "VALUES (?, ?, ?, ?, ?) "
                "ON CONFLICT(kind, key) DO UPDATE SET score = excluded.score, "
                "observations = excluded.observations, updated_at = excluded.updated_at",
                (kind, key, new.score, new.observations, to_timestamp(now)),
            )
            return new

        return await self._db.run(_adjust)

    async def set(self, kind: str, key: str, score: float, observations: int = 0) -> Reputation:
        """Seed a reputation value directly."""

        def _set(conn: sqlite3.Connection) -> Reputation:
            now = utcnow()
            conn.execute(
                "INSERT OR REPLACE INTO reputations (kind, key, score, observations, updated_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (kind, key, _clamp(score), observations, to_timestamp(now)),
            )
            return Reputation(
                key=key, kind=kind, score=_clamp(score), observations=observations, updated_at=now
            )

        return await self._db.run(_set)


class FeatureWeightStore:
    """Global per-feature weights nudged by high-impact feedback."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def adjust_many(self, updates: dict[str, float]) -> dict[str, float]:
        """Add each delta to its feature weight; returns the new weights."""

        def _adjust(conn: sqlite3.Connection) -> dict[str, float]:
            now = to_timestamp(utcnow())
            result: dict[str, float] = {}
            for feature, delta in updates.items():
                conn.execute(
                    "INSERT INTO feature_weights (feature, weight, updated_at) VALUES (?, ?, ?) "
                    "ON CONFLICT(feature) DO UPDATE SET weight = weight + excluded.weight, "
                    "updated_at = excluded.updated_at",
                    (feature, delta, now),
                )
                row = conn.execute(
                    "SELECT weight FROM feature_weights WHERE feature = ?", (feature,)
                ).fetchone()
                result[feature] = row["weight"]
            return result

        return await self._db.run(_adjust)

    async def get_all(self) -> dict[str, float]:
        def _get(conn: sqlite3.Connection) -> dict[str, float]:
            rows = conn.execute("SELECT feature, weight FROM feature_weights").fetchall()
            return {r["feature"]: r["weight"] for r in rows}

        return await self._db.run(_get)


class DetectionStore:
    """Last known detection per (user, email)."""

    def __init__(self, db: Database) -> None:
        self._db = db

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> DetectionRecord:
        return DetectionRecord(
            user_id=row["user_id"],
            email_id=row["email_id"],
            sender=row["sender"] or "",
            sender_domain=row["sender_domain"] or "",
            subject=row["subject"] or "",
            message_id=row["message_id"] or "",
            confidence=row["confidence"],
            is_newsletter=bool(row["is_newsletter"]),
            features=json.loads(row["features_json"] or "{}"),
            verified=bool(row["verified"]),
            detected_at=from_timestamp(row["detected_at"]),
        )

    async def upsert(self, record: DetectionRecord) -> DetectionRecord:
        def _upsert(conn: sqlite3.Connection) -> DetectionRecord:
            conn.execute(
                "INSERT INTO detections (user_id, email_id, sender, sender_domain, subject, "
                "message_id, confidence, is_newsletter, features_json, verified, detected_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(user_id, email_id) DO UPDATE SET sender = excluded.sender, "
                "sender_domain = excluded.sender_domain, subject = excluded.subject, "
                "message_id = excluded.message_id, confidence = excluded.confidence, "
                "is_newsletter = excluded.is_newsletter, features_json = excluded.features_json, "
                "detected_at = excluded.detected_at",
                (
                    record.user_id,
                    record.email_id,
                    record.sender,
                    record.sender_domain,
                    record.subject,
                    record.message_id,
                    record.confidence,
                    int(record.is_newsletter),
                    json.dumps(record.features),
                    int(record.verified),
                    to_timestamp(record.detected_at),
                ),
            )
            return record

        return await self._db.run(_upsert)

    async def get(self, user_id: str, email_id: str) -> DetectionRecord | None:
        def _get(conn: sqlite3.Connection) -> DetectionRecord | None:
            row = conn.execute(
                "SELECT * FROM detections WHERE user_id = ? AND email_id = ?", (user_id, email_id)
            ).fetchone()
            return self._row_to_record(row) if row else None

        return await self._db.run(_get)

    async def find_unverified_below(
        self, confidence_threshold: float, limit: int
    ) -> list[DetectionRecord]:
        """Unverified detections with confidence below the threshold, oldest first."""

        def _find(conn: sqlite3.Connection) -> list[DetectionRecord]:
            rows = conn.execute(
                "SELECT * FROM detections WHERE verified = 0 AND confidence < ? "
                "ORDER BY detected_at ASC, rowid ASC LIMIT ?",
                (confidence_threshold, limit),
            ).fetchall()
            return [self._row_to_record(r) for r in rows]

        return await self._db.run(_find)

    async def mark_verified(self, user_id: str, email_id: str) -> bool:
        def _mark(conn: sqlite3.Connection) -> bool:
            cursor = conn.execute(
                "UPDATE detections SET verified = 1 WHERE user_id = ? AND email_id = ?",
                (user_id, email_id),
            )
            return cursor.rowcount > 0

        return await self._db.run(_mark)


class UserFeedbackStore:
    """Per-user confirmed/rejected senders and trusted/blocked domains."""

    def __init__(self, db: Database) -> None:
        self._db = db

    @staticmethod
    def _load(conn: sqlite3.Connection, user_id: str) -> UserFeedback:
        feedback = UserFeedback()
        targets = {
            _LIST_CONFIRMED: feedback.confirmed_senders,
            _LIST_REJECTED: feedback.rejected_senders,
            _LIST_TRUSTED: feedback.trusted_domains,
            _LIST_BLOCKED: feedback.blocked_domains,
        }
        rows = conn.execute(
            "SELECT list, value FROM user_feedback_lists WHERE user_id = ?", (user_id,)
        ).fetchall()
        for r in rows:
            targets[r["list"]].add(r["value"])
        return feedback

    async def get(self, user_id: str) -> UserFeedback:
        return await self._db.run(self._load, user_id)

    async def track(
        self, user_id: str, sender: str, is_newsletter: bool, promotion_count: int = 3
    ) -> UserFeedback:
        """Move the sender to the confirmed or rejected list.

        Once ``promotion_count`` senders of one domain sit in the same list,
        the domain itself becomes trusted (or blocked).
        """
        sender = sender.lower()
        _, _, domain = sender.rpartition("@")
        add_list, remove_list = (
            (_LIST_CONFIRMED, _LIST_REJECTED) if is_newsletter else (_LIST_REJECTED, _LIST_CONFIRMED)
        )
        domain_list = _LIST_TRUSTED if is_newsletter else _LIST_BLOCKED

        def _track(conn: sqlite3.Connection) -> UserFeedback:
            conn.execute(
                "DELETE FROM user_feedback_lists WHERE user_id = ? AND list = ? AND value = ?",
                (user_id, remove_list, sender),
            )
            conn.execute(
                "INSERT OR IGNORE INTO user_feedback_lists (user_id, list, value) VALUES (?, ?, ?)",
                (user_id, add_list, sender),
            )
            if domain:
                same_domain = conn.execute(
                    "SELECT COUNT(*) AS c FROM user_feedback_lists "
                    "WHERE user_id = ? AND list = ? AND value LIKE ?",
                    (user_id, add_list, f"%@{domain}"),
                ).fetchone()["c"]
                if same_domain >= promotion_count:
                    conn.execute(
                        "INSERT OR IGNORE INTO user_feedback_lists (user_id, list, value) "
                        "VALUES (?, ?, ?)",
                        (user_id, domain_list, domain),
                    )
            return self._load(conn, user_id)

        return await self._db.run(_track)


@dataclass
class Stores:
    """Typed registry of every store bound to one database."""

    database: Database
    reputation: ReputationStore
    feature_weights: FeatureWeightStore
    feedback: FeedbackStore
    verification: VerificationStore
    detections: DetectionStore
    user_feedback: UserFeedbackStore

    @classmethod
    def from_database(cls, database: Database) -> Stores:
        return cls(
            database=database,
            reputation=ReputationStore(database),
            feature_weights=FeatureWeightStore(database),
            feedback=FeedbackStore(database),
            verification=VerificationStore(database),
            detections=DetectionStore(database),
            user_feedback=UserFeedbackStore(database),
        )
