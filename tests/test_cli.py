"""Tests for the CLI module."""

import asyncio

import pytest
from click.testing import CliRunner

import newsletter_detector.cli as cli_module
from newsletter_detector.auth import load_credentials
from newsletter_detector.cli import cli
from newsletter_detector.database import Database
from newsletter_detector.models import DetectionRecord
from newsletter_detector.storage import Stores


@pytest.fixture
def invoke(tmp_path):
    """Run the CLI against a throwaway database and config."""
    db_path = tmp_path / "detector.db"
    runner = CliRunner()

    def _invoke(*args):
        return runner.invoke(
            cli, ["--db", str(db_path), "--config", str(tmp_path / "config.json"), *args]
        )

    _invoke.db_path = db_path
    return _invoke


def _with_stores(db_path, work):
    async def _main():
        async with Database(db_path) as db:
            return await work(Stores.from_database(db))

    return asyncio.run(_main())


def test_cli_help():
    """CLI --help should work and show commands."""
    runner = CliRunner()
    result = runner.invoke(cli, ["--help"])
    assert result.exit_code == 0
    for command in (
        "detect", "scan", "feedback", "verify", "request-verifications", "pending", "stats", "train", "auth"
    ):
        assert command in result.output


def test_cli_version():
    """CLI --version should show version."""
    runner = CliRunner()
    result = runner.invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert "0.1.0" in result.output


def test_detect_no_credentials(tmp_path, monkeypatch, invoke):
    """Detect without credentials should show clear error."""
    monkeypatch.setattr(
        cli_module,
        "get_gmail_service",
        lambda: load_credentials(tmp_path / "token.json", tmp_path / "nonexistent.json"),
    )
    result = invoke("detect", "msg-1")
    assert result.exit_code != 0
    assert "Credentials file not found" in result.output


def test_detect_logs_detection(monkeypatch, invoke, newsletter_email):
    monkeypatch.setattr(cli_module, "_gmail", lambda: object())
    monkeypatch.setattr(cli_module, "fetch_email", lambda service, message_id: newsletter_email)

    result = invoke("detect", newsletter_email.id, "-u", "u1")
    assert result.exit_code == 0, result.output
    assert "Newsletter: yes" in result.output

    record = _with_stores(invoke.db_path, lambda s: s.detections.get("u1", newsletter_email.id))
    assert record.is_newsletter


def test_bad_config_file(tmp_path):
    config = tmp_path / "config.json"
    config.write_text('{"verification_band_low": 0.9}')
    result = CliRunner().invoke(cli, ["--config", str(config), "expire"])
    assert result.exit_code != 0
    assert "Verification band" in result.output


def test_feedback_then_stats(invoke):
    result = invoke("feedback", "e1", "confirm", "-u", "u1", "-c", "weekly digest")
    assert result.exit_code == 0, result.output
    assert "Recorded confirm feedback" in result.output

    result = invoke("stats", "-u", "u1")
    assert result.exit_code == 0, result.output
    assert "Feedback submitted: 1" in result.output
    assert "Collect more feedback" in result.output


def test_feedback_rejects_unknown_type(invoke):
    result = invoke("feedback", "e1", "spam")
    assert result.exit_code != 0


def test_request_and_answer_verification(invoke):
    async def seed(stores):
        await stores.detections.upsert(
            DetectionRecord(
                user_id="u1",
                email_id="e1",
                sender="digest@news.example.com",
                sender_domain="news.example.com",
                confidence=0.45,
                is_newsletter=False,
            )
        )

    _with_stores(invoke.db_path, seed)

    result = invoke("request-verifications", "--threshold", "0.7")
    assert result.exit_code == 0, result.output
    assert "e1" in result.output

    async def pending_token(stores):
        return (await stores.verification.get_pending("u1", "e1")).token

    token = _with_stores(invoke.db_path, pending_token)
    result = invoke("verify", token, "confirm")
    assert result.exit_code == 0, result.output
    assert "confirmed" in result.output

    result = invoke("verify", token, "reject")
    assert result.exit_code != 0
    assert "already confirmed" in result.output


def test_pending_lists_open_requests(invoke):
    result = invoke("pending", "-u", "u1")
    assert result.exit_code == 0, result.output
    assert "No verification requests" in result.output

    async def seed(stores):
        await stores.detections.upsert(
            DetectionRecord(
                user_id="u1",
                email_id="e2",
                sender="digest@news.example.com",
                sender_domain="news.example.com",
                confidence=0.45,
                is_newsletter=False,
            )
        )

    _with_stores(invoke.db_path, seed)
    invoke("request-verifications", "--threshold", "0.7")

    result = invoke("pending", "-u", "u1")
    assert result.exit_code == 0, result.output
    assert "e2" in result.output
    assert "pending" in result.output


def test_verify_unknown_token(invoke):
    result = invoke("verify", "no-such-token", "confirm")
    assert result.exit_code != 0
    assert "No verification request" in result.output


def test_expire_empty(invoke):
    result = invoke("expire")
    assert result.exit_code == 0
    assert "Expired 0" in result.output


def test_train_and_learn(invoke):
    invoke("feedback", "e1", "reject", "-u", "u1")

    result = invoke("train")
    assert result.exit_code == 0, result.output
    assert "Skipped: 1" in result.output

    result = invoke("learn")
    assert result.exit_code == 0, result.output
    assert "Succeeded: 0" in result.output
