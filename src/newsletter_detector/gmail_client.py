"""Gmail mail access and delivery - fetches messages as Email values, sends verification mail."""

from __future__ import annotations

import base64
import logging
from email import message_from_bytes, policy
from email.message import EmailMessage

from googleapiclient.errors import HttpError
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from .constants import PAGE_SIZE
from .errors import NotFoundError
from .models import Email

logger = logging.getLogger(__name__)


def _is_retryable_http_error(exc: BaseException) -> bool:
    return isinstance(exc, HttpError) and exc.resp.status in (429, 500, 503)


_gmail_retry = retry(
    retry=retry_if_exception(_is_retryable_http_error),
    wait=wait_exponential(multiplier=1, min=1, max=60),
    stop=stop_after_attempt(5),
    reraise=True,
)


@_gmail_retry
def _execute(request) -> dict:
    return request.execute()


def list_message_ids(
    service,
    query: str | None = None,
    max_results: int | None = None,
) -> list[str]:
    """List message IDs matching a Gmail search query, following pagination."""
    ids: list[str] = []
    page_token: str | None = None

    while True:
        kwargs: dict = {"userId": "me", "maxResults": PAGE_SIZE, "fields": "messages/id,nextPageToken"}
        if query:
            kwargs["q"] = query
        if page_token:
            kwargs["pageToken"] = page_token

        resp = _execute(service.users().messages().list(**kwargs))
        for msg in resp.get("messages", []):
            ids.append(msg["id"])
            if max_results and len(ids) >= max_results:
                return ids[:max_results]

        page_token = resp.get("nextPageToken")
        if not page_token:
            break

    return ids


def email_from_raw(message_id: str, raw: bytes) -> Email:
    """Build an Email from RFC 822 bytes, preferring the HTML body part."""
    msg = message_from_bytes(raw, policy=policy.default)
    part = msg.get_body(preferencelist=("html", "plain"))
    if part is None:
        body, charset, content_type = b"", "utf-8", "text/plain"
    else:
        body = part.get_payload(decode=True) or b""
        charset = part.get_content_charset() or "utf-8"
        content_type = part.get_content_type()
    return Email(
        id=message_id,
        headers=[(name, str(value)) for name, value in msg.items()],
        body=body,
        charset=charset,
        content_type=content_type,
    )


def fetch_email(service, message_id: str) -> Email:
    """Fetch one message in raw form."""
    try:
        resp = _execute(service.users().messages().get(userId="me", id=message_id, format="raw"))
    except HttpError as exc:
        if exc.resp.status == 404:
            raise NotFoundError(f"Gmail message {message_id} not found") from exc
        raise
    raw = base64.urlsafe_b64decode(resp["raw"].encode("ascii"))
    logger.debug("Fetched message %s (%d bytes)", message_id, len(raw))
    return email_from_raw(message_id, raw)


def build_mime_message(to: str, subject: str, html: str, text: str) -> EmailMessage:
    msg = EmailMessage()
    msg["To"] = to
    msg["Subject"] = subject
    msg.set_content(text)
    msg.add_alternative(html, subtype="html")
    return msg


class GmailDelivery:
    """Sends mail as the authenticated user through users.messages.send."""

    def __init__(self, service) -> None:
        self.service = service

    def send(self, to: str, subject: str, html: str, text: str) -> None:
        msg = build_mime_message(to, subject, html, text)
        raw = base64.urlsafe_b64encode(msg.as_bytes()).decode("ascii")
        resp = _execute(self.service.users().messages().send(userId="me", body={"raw": raw}))
        logger.info("Sent message %s to %s", resp.get("id", "?"), to)
