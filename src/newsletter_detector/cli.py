"""CLI entry point for Newsletter Detector."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

import click
from rich.logging import RichHandler

from .auth import authenticated_address, get_gmail_service
from .config import DetectorConfig
from .constants import CONFIG_PATH, DATABASE_PATH, VERIFICATION_ACTIONS
from .database import Database
from .detector import NewsletterDetector
from .display import (
    console,
    create_progress,
    display_batch_outcome,
    display_detection,
    display_feedback,
    display_scan_results,
    display_stats,
    display_verification_requests,
)
from .errors import NewsletterDetectorError
from .gmail_client import GmailDelivery, fetch_email, list_message_ids
from .improver import DetectionImprover
from .models import FeedbackType
from .service import FeedbackService
from .storage import Stores

T = TypeVar("T")

DEFAULT_USER = "me"


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def _gmail():
    try:
        return get_gmail_service()
    except FileNotFoundError as e:
        raise click.ClickException(str(e)) from e


def _run(ctx: click.Context, work: Callable[[Stores, DetectorConfig], Awaitable[T]]) -> T:
    """Open the database, run ``work`` with the stores, close again."""
    db_path: Path = ctx.obj["db_path"]
    config: DetectorConfig = ctx.obj["config"]

    async def _main() -> T:
        async with Database(db_path) as db:
            return await work(Stores.from_database(db), config)

    try:
        return asyncio.run(_main())
    except NewsletterDetectorError as e:
        raise click.ClickException(str(e)) from e


@click.group()
@click.version_option(version="0.1.0", prog_name="newsletter-detector")
@click.option(
    "--db",
    "db_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DATABASE_PATH,
    envvar="NEWSLETTER_DETECTOR_DB",
    show_default=True,
    help="SQLite database file.",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=CONFIG_PATH,
    help="JSON file with detector setting overrides.",
)
@click.option("-v", "--verbose", is_flag=True, help="Show debug logging.")
@click.pass_context
def cli(ctx: click.Context, db_path: Path, config_path: Path, verbose: bool) -> None:
    """Newsletter Detector - classify Gmail messages and learn from your feedback."""
    _setup_logging(verbose)
    try:
        config = DetectorConfig.load(config_path)
    except NewsletterDetectorError as e:
        raise click.ClickException(str(e)) from e
    ctx.obj = {"db_path": db_path, "config": config}


@cli.command()
@click.argument("message_id")
@click.option("-u", "--user", default=DEFAULT_USER, show_default=True, help="User id.")
@click.pass_context
def detect(ctx: click.Context, message_id: str, user: str) -> None:
    """Classify one Gmail message."""
    try:
        email = fetch_email(_gmail(), message_id)
    except NewsletterDetectorError as e:
        raise click.ClickException(str(e)) from e

    async def work(stores: Stores, config: DetectorConfig):
        detector = NewsletterDetector(stores, config)
        user_feedback = await stores.user_feedback.get(user)
        return await detector.detect_newsletter(email, user_feedback, user_id=user)

    display_detection(_run(ctx, work))


@cli.command()
@click.option("-q", "--query", default=None, help="Gmail search query (e.g. 'newer_than:7d').")
@click.option("-m", "--max-messages", default=50, type=int, show_default=True, help="Messages to scan.")
@click.option("-u", "--user", default=DEFAULT_USER, show_default=True, help="User id.")
@click.pass_context
def scan(ctx: click.Context, query: str | None, max_messages: int, user: str) -> None:
    """Classify recent messages and log the detections."""
    service = _gmail()
    ids = list_message_ids(service, query=query, max_results=max_messages)
    console.print(f"Found [bold]{len(ids)}[/bold] messages")

    emails = []
    with create_progress("Fetching messages") as progress:
        task = progress.add_task("fetching", total=len(ids))
        for msg_id in ids:
            emails.append(fetch_email(service, msg_id))
            progress.advance(task)

    async def work(stores: Stores, config: DetectorConfig):
        detector = NewsletterDetector(stores, config)
        user_feedback = await stores.user_feedback.get(user)
        return [await detector.detect_newsletter(e, user_feedback, user_id=user) for e in emails]

    display_scan_results(_run(ctx, work))


@cli.command()
@click.argument("email_id")
@click.argument("feedback_type", type=click.Choice([t.value for t in FeedbackType if t is not FeedbackType.VERIFY]))
@click.option("-u", "--user", default=DEFAULT_USER, show_default=True, help="User id.")
@click.option("-c", "--comment", default=None, help="Free-form note stored with the feedback.")
@click.pass_context
def feedback(ctx: click.Context, email_id: str, feedback_type: str, user: str, comment: str | None) -> None:
    """Tell the detector whether an email is a newsletter."""

    async def work(stores: Stores, config: DetectorConfig):
        return await FeedbackService(stores, config).submit_feedback(
            user, email_id, feedback_type, comment
        )

    display_feedback(_run(ctx, work))


@cli.command()
@click.argument("token")
@click.argument("action", type=click.Choice(VERIFICATION_ACTIONS))
@click.pass_context
def verify(ctx: click.Context, token: str, action: str) -> None:
    """Answer a verification request by its token."""

    async def work(stores: Stores, config: DetectorConfig):
        return await FeedbackService(stores, config).process_verification_action(token, action)

    request = _run(ctx, work)
    console.print(f"[green]Verification request {request.id} is now {request.status.value}.[/green]")


@cli.command(name="request-verifications")
@click.option("--threshold", default=0.7, type=float, show_default=True, help="Confidence below which to ask.")
@click.option("--limit", default=10, type=int, show_default=True, help="Maximum requests to create.")
@click.option("--send", is_flag=True, help="Email each request to the authenticated Gmail account.")
@click.pass_context
def request_verifications(ctx: click.Context, threshold: float, limit: int, send: bool) -> None:
    """Create verification requests for uncertain detections."""
    delivery, to = None, None
    if send:
        service = _gmail()
        delivery, to = GmailDelivery(service), authenticated_address(service)

    async def work(stores: Stores, config: DetectorConfig):
        feedback_service = FeedbackService(stores, config, delivery=delivery)
        requests = await feedback_service.generate_verification_requests(threshold, limit)
        if to:
            requests = [
                await feedback_service.request_verification(r.user_id, r.email_id, r.confidence, to=to)
                for r in requests
            ]
        return requests

    display_verification_requests(_run(ctx, work))


@cli.command()
@click.option("-u", "--user", default=DEFAULT_USER, show_default=True, help="User id.")
@click.pass_context
def pending(ctx: click.Context, user: str) -> None:
    """List open verification requests for a user."""

    async def work(stores: Stores, config: DetectorConfig):
        return await FeedbackService(stores, config).get_pending_verifications(user)

    display_verification_requests(_run(ctx, work))


@cli.command()
@click.pass_context
def expire(ctx: click.Context) -> None:
    """Expire verification requests past their deadline."""

    async def work(stores: Stores, config: DetectorConfig):
        return await FeedbackService(stores, config).process_expired_requests()

    console.print(f"Expired [bold]{_run(ctx, work)}[/bold] verification request(s).")


@cli.command()
@click.option("-u", "--user", default=DEFAULT_USER, show_default=True, help="User id.")
@click.pass_context
def stats(ctx: click.Context, user: str) -> None:
    """Show feedback statistics and accuracy for a user."""

    async def work(stores: Stores, config: DetectorConfig):
        service = FeedbackService(stores, config)
        return (
            await service.get_feedback_stats(user),
            await service.analyzer.calculate_accuracy_metrics(user),
            await service.analyzer.generate_suggestions(user),
        )

    display_stats(user, *_run(ctx, work))


@cli.command()
@click.option("-u", "--user", "users", multiple=True, help="User id (repeatable; default all users).")
@click.pass_context
def train(ctx: click.Context, users: tuple[str, ...]) -> None:
    """Run personalized training for users with enough feedback."""

    async def work(stores: Stores, config: DetectorConfig):
        return await FeedbackService(stores, config).train_personalized_models(users or None)

    display_batch_outcome("Training", _run(ctx, work))


@cli.command()
@click.option("--limit", default=None, type=int, help="Maximum feedback items to apply.")
@click.pass_context
def learn(ctx: click.Context, limit: int | None) -> None:
    """Apply feedback that has not been learned from yet."""

    async def work(stores: Stores, config: DetectorConfig):
        return await DetectionImprover(stores, config).process_unprocessed(limit)

    display_batch_outcome("Learning", _run(ctx, work))


@cli.command()
def auth() -> None:
    """Test or set up Gmail authentication."""
    try:
        address = authenticated_address(_gmail())
    except click.ClickException:
        raise
    except Exception as exc:  # noqa: BLE001
        raise click.ClickException(f"Authentication failed: {exc}") from exc
    console.print(f"[green]Authenticated as {address}[/green]")
