"""
test_email_sender.py — Email delivery through two SMTP accounts.

The SMTP transport is replaced by an in-memory fake; no network is used.

Run with:
    pytest tests/test_email_sender.py -v
"""

from __future__ import annotations

import asyncio
import smtplib
from unittest.mock import patch

import pytest

from backend.app.dispatch.channel_config import EmailConfig, SmtpAccountConfig
from backend.app.dispatch.channels.email_sender import (
    EmailSender,
    SmtpTransport,
    build_email,
)
from backend.app.dispatch.models import (
    EMAIL_FALLBACK_KEY,
    Attachment,
    Channel,
    EmailDeliveryRecord,
    Message,
    Recipient,
)
from backend.app.dispatch.recipients import ResolvedRecipient


class FakeSmtpTransport:
    """Records every transmission; raises for accounts listed in ``fail``
    and for destination addresses listed in ``refuse``."""

    def __init__(self, fail=(), refuse=()):
        self.fail = set(fail)
        self.refuse = set(refuse)
        self.sent = []
        self.verified = []

    async def send(self, account, email):
        self.sent.append((account.identifier, email))
        if account.identifier in self.fail or str(email["To"]) in self.refuse:
            raise smtplib.SMTPRecipientsRefused({str(email["To"]): (550, b"mailbox unavailable")})
        return "250 2.0.0 Ok: queued"

    async def verify(self, account):
        self.verified.append(account.identifier)
        if account.identifier in self.fail:
            raise smtplib.SMTPAuthenticationError(535, b"bad credentials")


def _account(identifier: str, *, configured: bool = True, **kwargs) -> SmtpAccountConfig:
    return SmtpAccountConfig(
        identifier=identifier,
        host=f"smtp.{identifier}.test",
        user=f"news@{identifier}.test",
        password="secret" if configured else None,
        **kwargs,
    )


def _make_config(acct1: bool = True, acct2: bool = True) -> EmailConfig:
    return EmailConfig(accounts=(
        _account("acct1", configured=acct1),
        _account("acct2", configured=acct2, port=465, secure=True),
    ))


def _make_sender(transport=None, **config_kwargs):
    pauses = []

    async def pause(seconds):
        pauses.append(seconds)

    sender = EmailSender(
        _make_config(**config_kwargs),
        transport=transport or FakeSmtpTransport(),
        time_unit=1.0,
        pause=pause,
    )
    return sender, pauses


def _message(subject="Test", body="Hello") -> Message:
    return Message(message_id=1, subject=subject, body=body, channels=[Channel.EMAIL])


def _resolved(*addresses):
    return [ResolvedRecipient(Recipient(custom_address=a), a) for a in addresses]


def _send(sender, addresses, attachments=()):
    return asyncio.run(sender.send(_message(), _resolved(*addresses), list(attachments)))


# ═══════════════════════════════════════════════════════════════════════════
# Delivery
# ═══════════════════════════════════════════════════════════════════════════

class TestEmailDelivery:

    def test_both_accounts_send_to_every_recipient(self):
        transport = FakeSmtpTransport()
        sender, pauses = _make_sender(transport)

        results = _send(sender, ["a@b.com", "c@d.com"])

        assert [r.recipient for r in results] == ["a@b.com", "c@d.com"]
        assert all(r.success for r in results)
        assert set(results[0].records) == {"email_acct1", "email_acct2"}
        assert [acct for acct, _ in transport.sent] == ["acct1", "acct2", "acct1", "acct2"]
        # 2-unit pause after every transmission
        assert pauses == [2.0] * 4

    def test_record_contents(self):
        sender, _ = _make_sender()
        record = _send(sender, ["a@b.com"])[0].records["email_acct2"]
        assert isinstance(record, EmailDeliveryRecord)
        assert record.success is True
        assert record.account == "acct2"
        assert record.sender == "news@acct2.test"
        assert record.response.startswith("250")
        assert record.message_id.startswith("<")

    def test_one_account_failing_still_succeeds(self):
        transport = FakeSmtpTransport(fail={"acct1"})
        sender, pauses = _make_sender(transport)

        result = _send(sender, ["a@b.com"])[0]

        assert result.success is True
        assert result.records["email_acct1"].success is False
        assert "mailbox unavailable" in result.records["email_acct1"].error
        assert result.records["email_acct2"].success is True
        # Pause follows failures too
        assert pauses == [2.0, 2.0]

    def test_all_accounts_failing(self):
        sender, _ = _make_sender(FakeSmtpTransport(fail={"acct1", "acct2"}))
        result = _send(sender, ["a@b.com"])[0]
        assert result.success is False
        assert result.error == "All SMTP accounts failed"

    def test_unconfigured_account_is_skipped(self):
        transport = FakeSmtpTransport()
        sender, pauses = _make_sender(transport, acct2=False)

        result = _send(sender, ["a@b.com"])[0]

        assert list(result.records) == ["email_acct1"]
        assert [acct for acct, _ in transport.sent] == ["acct1"]
        assert pauses == [2.0]


class TestEmailValidation:

    def test_invalid_address_fails_without_network(self):
        transport = FakeSmtpTransport()
        sender, pauses = _make_sender(transport)

        results = _send(sender, ["not-an-address", "a@b.com"])

        invalid = results[0]
        assert invalid.success is False
        assert invalid.records == {
            EMAIL_FALLBACK_KEY: EmailDeliveryRecord(success=False, error="Invalid email"),
        }
        assert results[1].success is True
        assert all(str(email["To"]) == "a@b.com" for _, email in transport.sent)

    def test_invalid_address_regardless_of_configuration(self):
        transport = FakeSmtpTransport()
        sender, _ = _make_sender(transport, acct1=False, acct2=False)
        result = _send(sender, ["broken"])[0]
        assert result.records[EMAIL_FALLBACK_KEY].error == "Invalid email"
        assert transport.sent == []

    def test_no_smtp_accounts(self):
        transport = FakeSmtpTransport()
        sender, pauses = _make_sender(transport, acct1=False, acct2=False)

        result = _send(sender, ["a@b.com"])[0]

        assert sender.configured is False
        assert result.success is False
        assert result.records[EMAIL_FALLBACK_KEY].error == "No SMTP servers available"
        assert transport.sent == []
        assert pauses == []

    def test_handle_passes_address_check_and_fails_per_account(self):
        # "@handle" contains "@", so it is attempted and refused by the server
        transport = FakeSmtpTransport(refuse={"@handle"})
        sender, _ = _make_sender(transport)

        handle, other = _send(sender, ["@handle", "a@b.com"])

        assert handle.success is False
        assert handle.error == "All SMTP accounts failed"
        assert set(handle.records) == {"email_acct1", "email_acct2"}
        assert EMAIL_FALLBACK_KEY not in handle.records
        assert other.success is True


# ═══════════════════════════════════════════════════════════════════════════
# Message building
# ═══════════════════════════════════════════════════════════════════════════

class TestBuildEmail:

    def test_headers_and_bodies(self):
        email = build_email(
            Message(message_id=1, subject="Hi", body="line one\nline <two>"),
            _account("acct1"),
            "a@b.com",
            [],
            mailer_name="Broadcaster",
        )
        assert email["From"] == "news@acct1.test"
        assert email["To"] == "a@b.com"
        assert email["Subject"] == "Hi"
        assert email["X-Priority"] == "1"
        assert email["X-Mailer"] == "Broadcaster"
        assert email["Message-ID"].endswith("@acct1.test>")

        plain = email.get_body(preferencelist=("plain",)).get_content()
        html = email.get_body(preferencelist=("html",)).get_content()
        assert "line one\nline <two>" in plain
        assert "line one<br>line &lt;two&gt;" in html

    def test_default_subject(self):
        email = build_email(Message(message_id=1, body="x"), _account("acct1"), "a@b.com", [])
        assert email["Subject"] == "Message"

    def test_attachments_read_from_disk(self, tmp_path):
        path = tmp_path / "stored-report.pdf"
        path.write_bytes(b"%PDF-1.4 test")
        email = build_email(
            _message(),
            _account("acct1"),
            "a@b.com",
            [Attachment(path=str(path), original_name="report.pdf")],
        )
        parts = list(email.iter_attachments())
        assert len(parts) == 1
        assert parts[0].get_filename() == "report.pdf"
        assert parts[0].get_content_type() == "application/pdf"
        assert parts[0].get_content() == b"%PDF-1.4 test"

    def test_missing_attachment_fails_that_transmission(self, tmp_path):
        sender, _ = _make_sender()
        missing = Attachment(path=str(tmp_path / "gone.bin"), original_name="gone.bin")
        result = _send(sender, ["a@b.com"], [missing])[0]
        assert result.success is False
        assert result.records["email_acct1"].success is False


# ═══════════════════════════════════════════════════════════════════════════
# Verification
# ═══════════════════════════════════════════════════════════════════════════

class TestEmailVerify:

    def test_verify_all_accounts(self):
        transport = FakeSmtpTransport()
        sender, _ = _make_sender(transport)
        assert asyncio.run(sender.verify()) is True
        assert transport.verified == ["acct1", "acct2"]

    def test_verify_reports_failure(self):
        sender, _ = _make_sender(FakeSmtpTransport(fail={"acct2"}))
        assert asyncio.run(sender.verify()) is False

    def test_verify_without_accounts(self):
        transport = FakeSmtpTransport()
        sender, _ = _make_sender(transport, acct1=False, acct2=False)
        assert asyncio.run(sender.verify()) is False
        assert transport.verified == []


class FakeSmtpConnection:
    """Stands in for smtplib.SMTP; ``login`` raises when ``reject_login`` is set."""

    instances = []
    reject_login_next = False

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.closed = False
        self.reject_login = FakeSmtpConnection.reject_login_next
        FakeSmtpConnection.instances.append(self)

    def ehlo(self):
        return 250, b"hello"

    def has_extn(self, name):
        return False

    def login(self, user, password):
        if self.reject_login:
            raise smtplib.SMTPAuthenticationError(535, b"5.7.8 bad credentials")

    def noop(self):
        return 250, b"ok"

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class TestSmtpTransport:

    def setup_method(self):
        FakeSmtpConnection.instances = []
        FakeSmtpConnection.reject_login_next = False

    def test_connection_closed_when_login_fails(self):
        FakeSmtpConnection.reject_login_next = True
        transport = SmtpTransport()

        with patch("backend.app.dispatch.channels.email_sender.smtplib.SMTP", FakeSmtpConnection):
            with pytest.raises(smtplib.SMTPAuthenticationError):
                asyncio.run(transport.verify(_account("acct1")))

        assert len(FakeSmtpConnection.instances) == 1
        assert FakeSmtpConnection.instances[0].closed is True

    def test_failed_login_becomes_failed_record(self):
        FakeSmtpConnection.reject_login_next = True
        sender, _ = _make_sender(SmtpTransport(), acct2=False)

        with patch("backend.app.dispatch.channels.email_sender.smtplib.SMTP", FakeSmtpConnection):
            result = _send(sender, ["a@b.com"])[0]

        assert result.success is False
        assert "bad credentials" in result.records["email_acct1"].error
        assert all(conn.closed for conn in FakeSmtpConnection.instances)

    def test_connection_closed_after_verify(self):
        transport = SmtpTransport()

        with patch("backend.app.dispatch.channels.email_sender.smtplib.SMTP", FakeSmtpConnection):
            asyncio.run(transport.verify(_account("acct1")))

        assert FakeSmtpConnection.instances[0].closed is True
