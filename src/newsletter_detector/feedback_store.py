"""Append-only feedback log and verification request persistence."""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from .constants import DEFAULT_FEEDBACK_CONFIDENCE
from .database import Database, from_timestamp, to_timestamp
from .errors import ValidationError
from .models import (
    FeedbackItem,
    FeedbackPriority,
    FeedbackType,
    VerificationRequest,
    VerificationStatus,
    extract_domain,
    feedback_priority,
    utcnow,
)

logger = logging.getLogger(__name__)


def _parse_feedback_type(value: Any) -> FeedbackType:
    if isinstance(value, FeedbackType):
        return value
    try:
        return FeedbackType(str(value).lower())
    except ValueError as exc:
        raise ValidationError(f"Unrecognized feedback type: {value!r}") from exc


def normalize_feedback(data: FeedbackItem | Mapping[str, Any]) -> FeedbackItem:
    """Turn a bare feedback mapping into a complete FeedbackItem.

    Missing confidence defaults to 0.5, missing features to an empty map,
    and the priority is derived from type and confidence when not given.
    """
    if isinstance(data, FeedbackItem):
        return data

    missing = [k for k in ("user_id", "email_id", "type") if not data.get(k)]
    if missing:
        raise ValidationError(f"Feedback is missing required fields: {', '.join(missing)}")

    feedback_type = _parse_feedback_type(data["type"])
    confidence = float(data.get("confidence", DEFAULT_FEEDBACK_CONFIDENCE))
    sender = str(data.get("sender") or "").lower()
    priority = data.get("priority")
    return FeedbackItem(
        id=str(data.get("id") or uuid.uuid4()),
        user_id=str(data["user_id"]),
        email_id=str(data["email_id"]),
        sender=sender,
        sender_domain=str(data.get("sender_domain") or extract_domain(sender)),
        type=feedback_type,
        priority=FeedbackPriority(priority) if priority else feedback_priority(feedback_type, confidence),
        detection_result=bool(data.get("detection_result", False)),
        confidence=confidence,
        features=dict(data.get("features") or {}),
        message_id=str(data.get("message_id") or ""),
        subject=str(data.get("subject") or ""),
        comment=data.get("comment"),
        timestamp=data.get("timestamp") or utcnow(),
        processed=bool(data.get("processed", False)),
        processed_at=data.get("processed_at"),
    )


class FeedbackStore:
    """Feedback events. Rows are never updated except for the processed flag."""

    def __init__(self, db: Database) -> None:
        self._db = db

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> FeedbackItem:
        return FeedbackItem(
            id=row["id"],
            user_id=row["user_id"],
            email_id=row["email_id"],
            message_id=row["message_id"] or "",
            sender=row["sender"] or "",
            sender_domain=row["sender_domain"] or "",
            subject=row["subject"] or "",
            type=FeedbackType(row["type"]),
            priority=FeedbackPriority(row["priority"]),
            detection_result=bool(row["detection_result"]),
            confidence=row["confidence"],
            features=json.loads(row["features_json"] or "{}"),
            comment=row["comment"],
            timestamp=from_timestamp(row["timestamp"]),
            processed=bool(row["processed"]),
            processed_at=from_timestamp(row["processed_at"]),
        )

    async def save_feedback(self, feedback: FeedbackItem | Mapping[str, Any]) -> FeedbackItem:
        """Insert a feedback event. Saving an id that already exists keeps the stored row."""
        item = normalize_feedback(feedback)

        def _save(conn: sqlite3.Connection) -> FeedbackItem:
            conn.execute(
                "INSERT OR IGNORE INTO feedback (id, user_id, email_id, message_id, sender, "
                "sender_domain, subject, type, priority, detection_result, confidence, "
                "features_json, comment, timestamp, processed, processed_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    item.id,
                    item.user_id,
                    item.email_id,
                    item.message_id,
                    item.sender,
                    item.sender_domain,
                    item.subject,
                    item.type.value,
                    item.priority.value,
                    int(item.detection_result),
                    item.confidence,
                    json.dumps(item.features),
                    item.comment,
                    to_timestamp(item.timestamp),
                    int(item.processed),
                    to_timestamp(item.processed_at),
                ),
            )
            row = conn.execute("SELECT * FROM feedback WHERE id = ?", (item.id,)).fetchone()
            return self._row_to_item(row)

        saved = await self._db.run(_save)
        logger.info("Saved %s feedback %s from user %s", saved.type.value, saved.id, saved.user_id)
        return saved

    async def get_feedback(self, feedback_id: str) -> FeedbackItem | None:
        def _get(conn: sqlite3.Connection) -> FeedbackItem | None:
            row = conn.execute("SELECT * FROM feedback WHERE id = ?", (feedback_id,)).fetchone()
            return self._row_to_item(row) if row else None

        return await self._db.run(_get)

    async def get_feedback_for_user(
        self, user_id: str, limit: int | None = None, offset: int = 0
    ) -> list[FeedbackItem]:
        """All feedback of a user, newest first."""

        def _get(conn: sqlite3.Connection) -> list[FeedbackItem]:
            rows = conn.execute(
                "SELECT * FROM feedback WHERE user_id = ? "
                "ORDER BY timestamp DESC, rowid DESC LIMIT ? OFFSET ?",
                (user_id, -1 if limit is None else limit, offset),
            ).fetchall()
            return [self._row_to_item(r) for r in rows]

        return await self._db.run(_get)

    async def get_feedback_for_email(self, email_id: str) -> list[FeedbackItem]:
        """All feedback on one email, newest first."""

        def _get(conn: sqlite3.Connection) -> list[FeedbackItem]:
            rows = conn.execute(
                "SELECT * FROM feedback WHERE email_id = ? ORDER BY timestamp DESC, rowid DESC",
                (email_id,),
            ).fetchall()
            return [self._row_to_item(r) for r in rows]

        return await self._db.run(_get)

    async def get_unprocessed_feedback(self, limit: int | None = None) -> list[FeedbackItem]:
        """Feedback not yet applied, oldest first."""

        def _get(conn: sqlite3.Connection) -> list[FeedbackItem]:
            rows = conn.execute(
                "SELECT * FROM feedback WHERE processed = 0 "
                "ORDER BY timestamp ASC, rowid ASC LIMIT ?",
                (-1 if limit is None else limit,),
            ).fetchall()
            return [self._row_to_item(r) for r in rows]

        return await self._db.run(_get)

    async def mark_as_processed(self, feedback_id: str, when: datetime | None = None) -> bool:
        """Flip the processed flag. Returns False for an unknown id."""
        processed_at = to_timestamp(when or utcnow())

        def _mark(conn: sqlite3.Connection) -> bool:
            exists = conn.execute(
                "SELECT processed FROM feedback WHERE id = ?", (feedback_id,)
            ).fetchone()
            if exists is None:
                return False
            conn.execute(
                "UPDATE feedback SET processed = 1, processed_at = ? "
                "WHERE id = ? AND processed = 0",
                (processed_at, feedback_id),
            )
            return True

        marked = await self._db.run(_mark)
        if not marked:
            logger.warning("Feedback %s not found, nothing marked as processed", feedback_id)
        return marked

    async def claim(self, feedback_id: str, when: datetime | None = None) -> bool:
        """Atomically mark unprocessed feedback as processed.

        Returns True only for the one caller that flipped the flag.
        """
        processed_at = to_timestamp(when or utcnow())

        def _claim(conn: sqlite3.Connection) -> bool:
            cursor = conn.execute(
                "UPDATE feedback SET processed = 1, processed_at = ? "
                "WHERE id = ? AND processed = 0",
                (processed_at, feedback_id),
            )
            return cursor.rowcount == 1

        return await self._db.run(_claim)

    async def release(self, feedback_id: str) -> None:
        """Undo a claim so the feedback is picked up again."""

        def _release(conn: sqlite3.Connection) -> None:
            conn.execute(
                "UPDATE feedback SET processed = 0, processed_at = NULL WHERE id = ?",
                (feedback_id,),
            )

        await self._db.run(_release)

    async def get_user_ids(self) -> list[str]:
        def _get(conn: sqlite3.Connection) -> list[str]:
            rows = conn.execute("SELECT DISTINCT user_id FROM feedback ORDER BY user_id").fetchall()
            return [r["user_id"] for r in rows]

        return await self._db.run(_get)

    async def sender_history(self, sender: str, user_id: str | None = None) -> tuple[int, int]:
        """Return (confirm count, reject count) recorded for a sender."""

        def _get(conn: sqlite3.Connection) -> tuple[int, int]:
            query = (
                "SELECT SUM(type = 'confirm') AS confirms, SUM(type = 'reject') AS rejects "
                "FROM feedback WHERE sender = ?"
            )
            params: tuple = (sender.lower(),)
            if user_id is not None:
                query += " AND user_id = ?"
                params += (user_id,)
            row = conn.execute(query, params).fetchone()
            return (row["confirms"] or 0, row["rejects"] or 0)

        return await self._db.run(_get)


class VerificationStore:
    """Verification requests, addressable by id and by token."""

    def __init__(self, db: Database) -> None:
        self._db = db

    @staticmethod
    def _row_to_request(row: sqlite3.Row) -> VerificationRequest:
        return VerificationRequest(
            id=row["id"],
            user_id=row["user_id"],
            email_id=row["email_id"],
            message_id=row["message_id"] or "",
            sender=row["sender"] or "",
            sender_domain=row["sender_domain"] or "",
            subject=row["subject"] or "",
            confidence=row["confidence"],
            status=VerificationStatus(row["status"]),
            generated_at=from_timestamp(row["generated_at"]),
            expires_at=from_timestamp(row["expires_at"]),
            responded_at=from_timestamp(row["responded_at"]),
            user_response=FeedbackType(row["user_response"]) if row["user_response"] else None,
            request_sent_count=row["request_sent_count"],
            token=row["token"],
        )

    @staticmethod
    def _select_pending(
        conn: sqlite3.Connection, user_id: str, email_id: str
    ) -> sqlite3.Row | None:
        return conn.execute(
            "SELECT * FROM verification_requests "
            "WHERE user_id = ? AND email_id = ? AND status = 'pending'",
            (user_id, email_id),
        ).fetchone()

    async def create_if_absent(
        self, request: VerificationRequest
    ) -> tuple[VerificationRequest, bool]:
        """Insert the request unless the same (user, email) already has a pending one.

        Returns the stored request and whether it was created by this call.
        The check and the insert run in one locked transaction; the partial
        unique index guards against other processes sharing the file.
        """

        def _create(conn: sqlite3.Connection) -> tuple[VerificationRequest, bool]:
            existing = self._select_pending(conn, request.user_id, request.email_id)
            if existing is not None:
                return self._row_to_request(existing), False
            try:
                conn.execute(
                    "INSERT INTO verification_requests (id, user_id, email_id, message_id, "
                    "sender, sender_domain, subject, confidence, status, generated_at, "
                    "expires_at, responded_at, user_response, request_sent_count, token) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        request.id,
                        request.user_id,
                        request.email_id,
                        request.message_id,
                        request.sender,
                        request.sender_domain,
                        request.subject,
                        request.confidence,
                        request.status.value,
                        to_timestamp(request.generated_at),
                        to_timestamp(request.expires_at),
                        to_timestamp(request.responded_at),
                        request.user_response.value if request.user_response else None,
                        request.request_sent_count,
                        request.token,
                    ),
                )
            except sqlite3.IntegrityError:
                existing = self._select_pending(conn, request.user_id, request.email_id)
                if existing is None:
                    raise
                return self._row_to_request(existing), False
            return request, True

        return await self._db.run(_create)

    async def get(self, request_id: str) -> VerificationRequest | None:
        def _get(conn: sqlite3.Connection) -> VerificationRequest | None:
            row = conn.execute(
                "SELECT * FROM verification_requests WHERE id = ?", (request_id,)
            ).fetchone()
            return self._row_to_request(row) if row else None

        return await self._db.run(_get)

    async def get_by_token(self, token: str) -> VerificationRequest | None:
        def _get(conn: sqlite3.Connection) -> VerificationRequest | None:
            row = conn.execute(
                "SELECT * FROM verification_requests WHERE token = ?", (token,)
            ).fetchone()
            return self._row_to_request(row) if row else None

        return await self._db.run(_get)

    async def get_pending(self, user_id: str, email_id: str) -> VerificationRequest | None:
        def _get(conn: sqlite3.Connection) -> VerificationRequest | None:
            row = self._select_pending(conn, user_id, email_id)
            return self._row_to_request(row) if row else None

        return await self._db.run(_get)

    async def get_pending_for_user(self, user_id: str) -> list[VerificationRequest]:
        def _get(conn: sqlite3.Connection) -> list[VerificationRequest]:
            rows = conn.execute(
                "SELECT * FROM verification_requests WHERE user_id = ? AND status = 'pending' "
                "ORDER BY generated_at ASC",
                (user_id,),
            ).fetchall()
            return [self._row_to_request(r) for r in rows]

        return await self._db.run(_get)

    async def resolve(
        self,
        request_id: str,
        status: VerificationStatus,
        response: FeedbackType | None,
        responded_at: datetime,
    ) -> VerificationRequest | None:
        """Move a PENDING request to a terminal status.

        Returns the updated request, or None when the request is missing or
        no longer pending.
        """

        def _resolve(conn: sqlite3.Connection) -> VerificationRequest | None:
            cursor = conn.execute(
                "UPDATE verification_requests SET status = ?, user_response = ?, responded_at = ? "
                "WHERE id = ? AND status = 'pending'",
                (
                    status.value,
                    response.value if response else None,
                    to_timestamp(responded_at),
                    request_id,
                ),
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute(
                "SELECT * FROM verification_requests WHERE id = ?", (request_id,)
            ).fetchone()
            return self._row_to_request(row)

        return await self._db.run(_resolve)

    async def record_resend(
        self, request_id: str, max_count: int, expires_at: datetime
    ) -> VerificationRequest | None:
        """Bump the sent count and push out the expiry, if still pending and under the limit."""

        def _resend(conn: sqlite3.Connection) -> VerificationRequest | None:
            cursor = conn.execute(
                "UPDATE verification_requests SET request_sent_count = request_sent_count + 1, "
                "expires_at = ? WHERE id = ? AND status = 'pending' AND request_sent_count < ?",
                (to_timestamp(expires_at), request_id, max_count),
            )
            if cursor.rowcount == 0:
                return None
            row = conn.execute(
                "SELECT * FROM verification_requests WHERE id = ?", (request_id,)
            ).fetchone()
            return self._row_to_request(row)

        return await self._db.run(_resend)

    async def expire_due(self, now: datetime) -> int:
        """Mark every pending request with expires_at before ``now`` as expired."""

        def _expire(conn: sqlite3.Connection) -> int:
            cursor = conn.execute(
                "UPDATE verification_requests SET status = 'expired' "
                "WHERE status = 'pending' AND expires_at < ?",
                (to_timestamp(now),),
            )
            return cursor.rowcount

        return await self._db.run(_expire)

    async def count_pending(self, user_id: str) -> int:
        def _count(conn: sqlite3.Connection) -> int:
            return conn.execute(
                "SELECT COUNT(*) AS c FROM verification_requests "
                "WHERE user_id = ? AND status = 'pending'",
                (user_id,),
            ).fetchone()["c"]

        return await self._db.run(_count)
