"""Rich-based display functions for Newsletter Detector."""

from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from .constants import SCORE_LIKELY_NEWSLETTER, SCORE_NEWSLETTER, SCORE_UNCERTAIN
from .models import (
    AccuracyMetrics,
    BatchOutcome,
    DetectionResult,
    FeedbackItem,
    FeedbackStats,
    VerificationRequest,
)
from .scorer import classify_score

console = Console()


def _score_color(score: float) -> str:
    if score >= SCORE_NEWSLETTER:
        return "red"
    if score >= SCORE_LIKELY_NEWSLETTER:
        return "yellow"
    if score < SCORE_UNCERTAIN:
        return "green"
    return "white"


def create_progress(description: str) -> Progress:
    """Create a configured Rich Progress bar."""
    return Progress(
        SpinnerColumn(),
        TextColumn(f"[bold blue]{description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=console,
    )


def display_detection(result: DetectionResult) -> None:
    """Per-method breakdown of one detection."""
    email = result.email
    color = _score_color(result.combined_score)

    table = Table(title=f"Detection for {email.id}")
    table.add_column("Method")
    table.add_column("Score", justify="right")
    table.add_column("Confidence", justify="right")
    table.add_column("Reason")
    for s in result.scores:
        table.add_row(s.method.value, f"{s.score:.2f}", f"{s.confidence:.2f}", s.reason)
    console.print(table)

    lines = [
        f"[bold]From:[/bold] {email.from_header}",
        f"[bold]Subject:[/bold] {email.subject}",
        f"[bold]Score:[/bold] [{color}]{result.combined_score:.2f}[/{color}] "
        f"({classify_score(result.combined_score)})",
        f"[bold]Newsletter:[/bold] {'yes' if result.is_newsletter else 'no'}",
        f"[bold]Needs verification:[/bold] {'yes' if result.needs_verification else 'no'}",
    ]
    console.print(Panel("\n".join(lines), title="Result"))


def display_scan_results(results: list[DetectionResult]) -> None:
    """One row per scanned message, highest score first."""
    table = Table(title="Scan Results")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Sender")
    table.add_column("Subject")
    table.add_column("Score", justify="right")
    table.add_column("Classification")
    table.add_column("Verify")

    ordered = sorted(results, key=lambda r: r.combined_score, reverse=True)
    for idx, r in enumerate(ordered, start=1):
        color = _score_color(r.combined_score)
        table.add_row(
            str(idx),
            f"[{color}]{r.email.sender}[/{color}]",
            r.email.subject,
            f"[{color}]{r.combined_score:.2f}[/{color}]",
            f"[{color}]{classify_score(r.combined_score)}[/{color}]",
            "?" if r.needs_verification else "",
        )
    console.print(table)

    newsletters = sum(1 for r in results if r.is_newsletter)
    ambiguous = sum(1 for r in results if r.needs_verification)
    console.print(
        Panel(
            f"Messages: {len(results)}  |  Newsletters: {newsletters}  |  "
            f"Need verification: {ambiguous}",
            title="Summary",
        )
    )


def display_feedback(item: FeedbackItem) -> None:
    console.print(
        f"[green]Recorded {item.type.value} feedback[/green] for {item.email_id} "
        f"(sender {item.sender or 'unknown'}, priority {item.priority.value})"
    )


def display_verification_requests(requests: list[VerificationRequest]) -> None:
    if not requests:
        console.print("[dim]No verification requests.[/dim]")
        return
    table = Table(title="Verification Requests")
    table.add_column("Email")
    table.add_column("Sender")
    table.add_column("Confidence", justify="right")
    table.add_column("Status")
    table.add_column("Expires")
    table.add_column("Sent", justify="right")
    for r in requests:
        table.add_row(
            r.email_id,
            r.sender,
            f"{r.confidence:.2f}",
            r.status.value,
            r.expires_at.strftime("%Y-%m-%d"),
            str(r.request_sent_count),
        )
    console.print(table)


def display_stats(
    user_id: str, stats: FeedbackStats, metrics: AccuracyMetrics, suggestions: list[str]
) -> None:
    lines = [
        f"[bold]Feedback submitted:[/bold] {stats.total_submitted}",
        f"[bold]Confirmed newsletters:[/bold] {stats.confirmed_newsletters}",
        f"[bold]Rejected newsletters:[/bold] {stats.rejected_newsletters}",
        f"[bold]Pending verifications:[/bold] {stats.pending_verifications}",
        "",
        f"[bold]Accuracy:[/bold] {metrics.accuracy:.2f}  "
        f"[bold]Precision:[/bold] {metrics.precision:.2f}  "
        f"[bold]Recall:[/bold] {metrics.recall:.2f}  "
        f"[bold]F1:[/bold] {metrics.f1_score:.2f}",
    ]
    if suggestions:
        lines.append("")
        lines.append("[bold]Suggestions:[/bold]")
        lines.extend(f"  - {s}" for s in suggestions)
    console.print(Panel("\n".join(lines), title=f"Feedback for {user_id}"))


def display_batch_outcome(title: str, outcome: BatchOutcome) -> None:
    lines = [
        f"[green]Succeeded: {outcome.succeeded}[/green]",
        f"Skipped: {outcome.skipped}",
        f"[red]Failed: {outcome.failed}[/red]" if outcome.failed else "Failed: 0",
    ]
    for key, error in outcome.errors.items():
        lines.append(f"  - {key}: {error}")
    console.print(Panel("\n".join(lines), title=title))
