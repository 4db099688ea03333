"""
test_orchestrator.py — Dispatch orchestration, status reconciliation and
resend.

Covers:
    • Channel filtering and ConfigurationError before anything is stored
    • Submission (message, recipients, attachments, create history)
    • Attachment paths confined to the upload directory
    • Dispatch runs: two-account and one-account email scenarios,
      sent/failed verdict, sender exceptions, unreachable channels
    • Resend: success-preserving merge, text-only default, history
    • Message report with fully-delivered flag

Runs against InMemoryStorage with fake chat/social senders and the real
EmailSender on a fake SMTP transport.

Run with:
    pytest tests/test_orchestrator.py -v
"""

from __future__ import annotations

import asyncio

import pytest

from backend.app.core.errors import ConfigurationError, NotFoundError, ProviderError, ValidationError
from backend.app.dispatch.channel_config import EmailConfig, SmtpAccountConfig
from backend.app.dispatch.channels.base import ChannelSender
from backend.app.dispatch.channels.email_sender import EmailSender
from backend.app.dispatch.models import (
    CHAT_KEY,
    SOCIAL_KEY,
    Attachment,
    Channel,
    ChatDeliveryRecord,
    HistoryAction,
    MessageStatus,
    RecipientResult,
    SocialDeliveryRecord,
)
from backend.app.dispatch.orchestrator import DispatchOrchestrator, DispatchRequest
from backend.app.dispatch.storage import InMemoryStorage

ACCOUNTS = ("acct1", "acct2")


async def _no_pause(seconds):
    return None


class FakeSmtpTransport:
    def __init__(self):
        self.sent = []

    async def send(self, account, email):
        self.sent.append((account.identifier, str(email["To"])))
        return "250 OK"

    async def verify(self, account):
        return None


class FakeSender(ChannelSender):
    """Chat or social sender with scripted per-address outcomes."""

    _RECORDS = {
        Channel.CHAT: (CHAT_KEY, ChatDeliveryRecord),
        Channel.SOCIAL: (SOCIAL_KEY, SocialDeliveryRecord),
    }

    def __init__(self, channel: Channel, *, configured: bool = True, fail=(), raises=None):
        super().__init__(pause=_no_pause)
        self.channel = channel
        self._configured = configured
        self.fail = set(fail)
        self.raises = raises
        self.calls = []

    @property
    def configured(self) -> bool:
        return self._configured

    async def send(self, message, recipients, attachments):
        self.calls.append(([r.key for r in recipients], list(attachments)))
        if self.raises:
            raise self.raises
        key, record_cls = self._RECORDS[self.channel]
        results = []
        for resolved in recipients:
            ok = resolved.key not in self.fail
            error = None if ok else "rejected"
            results.append(RecipientResult(
                resolved.key, ok, {key: record_cls(success=ok, error=error)}, error,
            ))
        return results


def _email_sender(*, acct1=True, acct2=True, transport=None) -> EmailSender:
    accounts = tuple(
        SmtpAccountConfig(
            identifier=name,
            host=f"smtp.{name}.test",
            user=f"news@{name}.test",
            password="pw" if enabled else None,
        )
        for name, enabled in (("acct1", acct1), ("acct2", acct2))
    )
    return EmailSender(
        EmailConfig(accounts=accounts),
        transport=transport or FakeSmtpTransport(),
        pause=_no_pause,
    )


def _make_orchestrator(
    *,
    email=None,
    chat=None,
    social=None,
    resend_includes_attachments=False,
    upload_dir=None,
):
    storage = InMemoryStorage()
    senders = {
        Channel.EMAIL: email or _email_sender(),
        Channel.CHAT: chat or FakeSender(Channel.CHAT),
        Channel.SOCIAL: social or FakeSender(Channel.SOCIAL),
    }
    orchestrator = DispatchOrchestrator(
        storage, senders,
        email_accounts=ACCOUNTS,
        resend_includes_attachments=resend_includes_attachments,
        upload_dir=upload_dir,
    )
    return orchestrator, storage


def _stored_upload(upload_dir, name="a.pdf"):
    path = upload_dir / name
    path.write_bytes(b"%PDF-1.4")
    return Attachment(path=str(path), original_name=name)


def _run(coro):
    return asyncio.run(coro)


# ═══════════════════════════════════════════════════════════════════════════
# Channel filtering
# ═══════════════════════════════════════════════════════════════════════════

class TestAvailableChannels:

    def test_filters_unknown_duplicates_and_unconfigured(self):
        orchestrator, _ = _make_orchestrator(chat=FakeSender(Channel.CHAT, configured=False))
        assert orchestrator.available_channels(["email", "fax", "chat", "email", "social"]) == [
            Channel.EMAIL, Channel.SOCIAL,
        ]

    def test_email_unconfigured_without_accounts(self):
        orchestrator, _ = _make_orchestrator(email=_email_sender(acct1=False, acct2=False))
        assert orchestrator.available_channels(["email"]) == []

    def test_no_usable_channel_persists_nothing(self):
        orchestrator, storage = _make_orchestrator(
            email=_email_sender(acct1=False, acct2=False),
            chat=FakeSender(Channel.CHAT, configured=False),
            social=FakeSender(Channel.SOCIAL, configured=False),
        )
        request = DispatchRequest(body="Hello", channels=["email", "chat", "social"], custom_addresses=["a@b.com"])

        with pytest.raises(ConfigurationError) as exc_info:
            _run(orchestrator.submit(request))

        assert exc_info.value.status_code == 400
        assert exc_info.value.details["requested_channels"] == ["email", "chat", "social"]
        assert _run(storage.list_messages()) == []


# ═══════════════════════════════════════════════════════════════════════════
# Submission
# ═══════════════════════════════════════════════════════════════════════════

class TestSubmit:

    def test_persists_message_and_collaborators(self, tmp_path):
        orchestrator, storage = _make_orchestrator(upload_dir=tmp_path)

        async def scenario():
            contact_id = await storage.add_contact("Anna", email="anna@example.com", chat_id="10")
            message_id, channels = await orchestrator.submit(DispatchRequest(
                subject="Hi",
                body="Hello",
                channels=["chat", "email", "chat"],
                contact_ids=[contact_id],
                custom_addresses=["x@y.org", "  "],
                attachments=[_stored_upload(tmp_path)],
            ))
            return (
                message_id, channels,
                await storage.get_message(message_id),
                await storage.list_recipients(message_id),
                await storage.list_attachments(message_id),
                await storage.list_status_history(message_id),
            )

        message_id, channels, message, recipients, attachments, history = _run(scenario())

        assert channels == [Channel.CHAT, Channel.EMAIL]
        assert message.status == MessageStatus.PENDING
        assert message.channels == [Channel.CHAT, Channel.EMAIL]
        assert message.delivery_info.is_empty()
        assert [r.email for r in recipients] == ["anna@example.com", None]
        assert [r.custom_address for r in recipients] == [None, "x@y.org"]
        assert [a.original_name for a in attachments] == ["a.pdf"]
        assert [(h.action, h.status) for h in history] == [(HistoryAction.CREATE, MessageStatus.PENDING)]


class TestAttachmentPaths:

    def _submit(self, orchestrator, *attachments):
        return _run(orchestrator.submit(DispatchRequest(
            body="Hello", channels=["chat"], custom_addresses=["10"], attachments=list(attachments),
        )))

    def test_path_outside_upload_dir_rejected(self, tmp_path):
        uploads = tmp_path / "uploads"
        uploads.mkdir()
        secret = tmp_path / "secret.txt"
        secret.write_text("do not send")
        orchestrator, storage = _make_orchestrator(upload_dir=uploads)

        with pytest.raises(ValidationError) as exc_info:
            self._submit(orchestrator, Attachment(path=str(secret), original_name="secret.txt"))

        assert exc_info.value.status_code == 422
        assert exc_info.value.details["field"] == "attachments[0].path"
        assert _run(storage.list_messages()) == []

    def test_parent_traversal_rejected(self, tmp_path):
        uploads = tmp_path / "uploads"
        uploads.mkdir()
        (tmp_path / "secret.txt").write_text("do not send")
        orchestrator, storage = _make_orchestrator(upload_dir=uploads)

        with pytest.raises(ValidationError):
            self._submit(orchestrator, Attachment(path="../secret.txt", original_name="secret.txt"))
        assert _run(storage.list_messages()) == []

    def test_missing_file_rejected(self, tmp_path):
        orchestrator, storage = _make_orchestrator(upload_dir=tmp_path)

        with pytest.raises(ValidationError):
            self._submit(orchestrator, Attachment(path="gone.pdf", original_name="gone.pdf"))
        assert _run(storage.list_messages()) == []

    def test_directory_rejected(self, tmp_path):
        (tmp_path / "nested").mkdir()
        orchestrator, _ = _make_orchestrator(upload_dir=tmp_path)

        with pytest.raises(ValidationError):
            self._submit(orchestrator, Attachment(path="nested", original_name="nested"))

    def test_no_upload_dir_rejects_attachments(self, tmp_path):
        orchestrator, storage = _make_orchestrator()

        with pytest.raises(ValidationError) as exc_info:
            self._submit(orchestrator, _stored_upload(tmp_path))

        assert exc_info.value.details["field"] == "attachments"
        assert _run(storage.list_messages()) == []

    def test_no_upload_dir_still_accepts_plain_messages(self):
        orchestrator, _ = _make_orchestrator()
        message_id, channels = self._submit(orchestrator)
        assert channels == [Channel.CHAT]

    def test_relative_path_stored_as_absolute(self, tmp_path):
        (tmp_path / "1718000000-report.pdf").write_bytes(b"%PDF-1.4")
        orchestrator, storage = _make_orchestrator(upload_dir=tmp_path)

        message_id, _ = self._submit(
            orchestrator, Attachment(path="1718000000-report.pdf", original_name="report.pdf"),
        )

        stored = _run(storage.list_attachments(message_id))
        assert [a.path for a in stored] == [str((tmp_path / "1718000000-report.pdf").resolve())]
        assert [a.original_name for a in stored] == ["report.pdf"]


# ═══════════════════════════════════════════════════════════════════════════
# Dispatch runs
# ═══════════════════════════════════════════════════════════════════════════

def _submit_and_run(orchestrator, request, **run_kwargs):
    async def scenario():
        message_id, channels = await orchestrator.submit(request)
        report = await orchestrator.run(message_id, channels, **run_kwargs)
        message = await orchestrator.storage.get_message(message_id)
        return report, message

    return _run(scenario())


class TestDispatchRun:

    def test_two_account_email_scenario(self):
        transport = FakeSmtpTransport()
        orchestrator, _ = _make_orchestrator(email=_email_sender(transport=transport))

        report, message = _submit_and_run(orchestrator, DispatchRequest(
            subject="Test", body="Hello", channels=["email"], custom_addresses=["a@b.com"],
        ))

        info = message.delivery_info.to_dict()
        assert list(info) == ["a@b.com"]
        assert set(info["a@b.com"]) == {"email_acct1", "email_acct2"}
        assert info["a@b.com"]["email_acct1"]["success"] is True
        assert info["a@b.com"]["email_acct2"]["success"] is True
        assert message.status == MessageStatus.SENT
        assert report.status == MessageStatus.SENT
        assert transport.sent == [("acct1", "a@b.com"), ("acct2", "a@b.com")]

    def test_one_account_unconfigured_scenario(self):
        transport = FakeSmtpTransport()
        orchestrator, _ = _make_orchestrator(email=_email_sender(acct2=False, transport=transport))

        _, message = _submit_and_run(orchestrator, DispatchRequest(
            subject="Test", body="Hello", channels=["email"], custom_addresses=["a@b.com"],
        ))

        assert message.delivery_info.keys_for("a@b.com") == ["email_acct1"]
        assert message.status == MessageStatus.SENT
        assert [acct for acct, _ in transport.sent] == ["acct1"]

    def test_failed_when_no_record_succeeds(self):
        orchestrator, _ = _make_orchestrator(chat=FakeSender(Channel.CHAT, fail={"10", "20"}))

        report, message = _submit_and_run(orchestrator, DispatchRequest(
            body="Hello", channels=["chat"], custom_addresses=["10", "20"],
        ))

        assert report.status == MessageStatus.FAILED
        assert message.status == MessageStatus.FAILED
        assert report.attempted == 2
        assert report.delivered == 0

    def test_single_success_marks_message_sent(self):
        orchestrator, _ = _make_orchestrator(
            chat=FakeSender(Channel.CHAT, fail={"10", "20"}),
            social=FakeSender(Channel.SOCIAL, fail={"30"}),
        )

        _, message = _submit_and_run(orchestrator, DispatchRequest(
            body="Hello", channels=["chat", "social"], custom_addresses=["10", "20", "30", "40"],
        ))

        assert message.status == MessageStatus.SENT

    def test_invalid_stored_email_fails_without_network(self):
        transport = FakeSmtpTransport()
        orchestrator, storage = _make_orchestrator(email=_email_sender(transport=transport))

        async def scenario():
            contact_id = await storage.add_contact("Broken", email="broken-address")
            message_id, channels = await orchestrator.submit(DispatchRequest(
                body="Hello", channels=["email"], contact_ids=[contact_id],
            ))
            await orchestrator.run(message_id, channels)
            return await storage.get_message(message_id)

        message = _run(scenario())

        record = message.delivery_info.get("broken-address", "email")
        assert record.success is False
        assert record.error == "Invalid email"
        assert message.status == MessageStatus.FAILED
        assert transport.sent == []

    def test_sender_exception_skips_channel(self):
        orchestrator, _ = _make_orchestrator(
            social=FakeSender(Channel.SOCIAL, raises=ProviderError("social", "Community not found")),
        )

        report, message = _submit_and_run(orchestrator, DispatchRequest(
            body="Hello", channels=["social", "chat"], custom_addresses=["10"],
        ))

        assert report.skipped_channels == {Channel.SOCIAL: "Community not found"}
        assert message.delivery_info.get("10", CHAT_KEY).success is True
        assert message.delivery_info.get("10", SOCIAL_KEY) is None
        assert message.status == MessageStatus.SENT

    def test_channel_without_reachable_recipients(self):
        chat = FakeSender(Channel.CHAT)
        orchestrator, _ = _make_orchestrator(chat=chat)

        report, message = _submit_and_run(orchestrator, DispatchRequest(
            body="Hello", channels=["chat"], custom_addresses=["only@email.com"],
        ))

        assert chat.calls == []
        assert report.skipped_channels == {Channel.CHAT: "no reachable recipients"}
        assert message.status == MessageStatus.FAILED

    def test_stored_attachments_used_by_default(self, tmp_path):
        chat = FakeSender(Channel.CHAT)
        orchestrator, _ = _make_orchestrator(chat=chat, upload_dir=tmp_path)
        attachment = _stored_upload(tmp_path)

        _submit_and_run(orchestrator, DispatchRequest(
            body="Hello", channels=["chat"], custom_addresses=["10"], attachments=[attachment],
        ))

        sent_attachments = chat.calls[0][1]
        assert [a.original_name for a in sent_attachments] == ["a.pdf"]

    def test_run_appends_status_change(self):
        orchestrator, storage = _make_orchestrator()

        async def scenario():
            message_id, channels = await orchestrator.submit(DispatchRequest(
                body="Hello", channels=["chat"], custom_addresses=["10"],
            ))
            await orchestrator.run(message_id, channels)
            return await storage.list_status_history(message_id)

        history = _run(scenario())
        assert [(h.action, h.status) for h in history] == [
            (HistoryAction.STATUS_CHANGE, MessageStatus.SENT),
            (HistoryAction.CREATE, MessageStatus.PENDING),
        ]

    def test_unknown_message(self):
        orchestrator, _ = _make_orchestrator()
        with pytest.raises(NotFoundError):
            _run(orchestrator.run(999, [Channel.CHAT]))


# ═══════════════════════════════════════════════════════════════════════════
# Resend
# ═══════════════════════════════════════════════════════════════════════════

class TestResend:

    def test_resend_keeps_earlier_success(self):
        chat = FakeSender(Channel.CHAT)
        social = FakeSender(Channel.SOCIAL, fail={"10"})
        orchestrator, storage = _make_orchestrator(chat=chat, social=social)

        async def scenario():
            message_id, channels = await orchestrator.submit(DispatchRequest(
                body="Hello", channels=["chat", "social"], custom_addresses=["10"],
            ))
            await orchestrator.run(message_id, channels)

            # Second attempt: chat now fails, social recovers
            chat.fail = {"10"}
            social.fail = set()
            resend_channels = await orchestrator.prepare_resend(message_id)
            pending = await storage.get_message(message_id)
            await orchestrator.run(message_id, resend_channels, orchestrator.resend_attachments())
            return (
                resend_channels, pending,
                await storage.get_message(message_id),
                await storage.list_status_history(message_id),
            )

        channels, pending, message, history = _run(scenario())

        assert channels == [Channel.CHAT, Channel.SOCIAL]
        assert pending.status == MessageStatus.PENDING
        assert pending.delivery_info.get("10", CHAT_KEY).success is True

        assert message.delivery_info.get("10", CHAT_KEY).success is True
        assert message.delivery_info.get("10", SOCIAL_KEY).success is True
        assert message.status == MessageStatus.SENT
        assert [h.action for h in history] == [
            HistoryAction.STATUS_CHANGE,
            HistoryAction.RESEND,
            HistoryAction.STATUS_CHANGE,
            HistoryAction.CREATE,
        ]

    def test_resend_is_text_only_by_default(self, tmp_path):
        chat = FakeSender(Channel.CHAT)
        orchestrator, _ = _make_orchestrator(chat=chat, upload_dir=tmp_path)

        async def scenario():
            message_id, channels = await orchestrator.submit(DispatchRequest(
                body="Hello", channels=["chat"], custom_addresses=["10"],
                attachments=[_stored_upload(tmp_path)],
            ))
            await orchestrator.run(message_id, channels)
            channels = await orchestrator.prepare_resend(message_id)
            await orchestrator.run(message_id, channels, orchestrator.resend_attachments())

        _run(scenario())
        assert [len(attachments) for _, attachments in chat.calls] == [1, 0]

    def test_resend_with_attachments_enabled(self, tmp_path):
        chat = FakeSender(Channel.CHAT)
        orchestrator, _ = _make_orchestrator(chat=chat, resend_includes_attachments=True, upload_dir=tmp_path)

        async def scenario():
            message_id, channels = await orchestrator.submit(DispatchRequest(
                body="Hello", channels=["chat"], custom_addresses=["10"],
                attachments=[_stored_upload(tmp_path)],
            ))
            channels = await orchestrator.prepare_resend(message_id)
            await orchestrator.run(message_id, channels, orchestrator.resend_attachments())

        _run(scenario())
        assert [len(attachments) for _, attachments in chat.calls] == [1]

    def test_resend_unknown_message(self):
        orchestrator, _ = _make_orchestrator()
        with pytest.raises(NotFoundError):
            _run(orchestrator.prepare_resend(42))

    def test_resend_when_channels_no_longer_configured(self):
        chat = FakeSender(Channel.CHAT)
        orchestrator, storage = _make_orchestrator(chat=chat)

        async def scenario():
            message_id, _ = await orchestrator.submit(DispatchRequest(
                body="Hello", channels=["chat"], custom_addresses=["10"],
            ))
            chat._configured = False
            with pytest.raises(ConfigurationError):
                await orchestrator.prepare_resend(message_id)
            return await storage.list_status_history(message_id)

        history = _run(scenario())
        assert [h.action for h in history] == [HistoryAction.CREATE]

    def test_record_failure(self):
        orchestrator, storage = _make_orchestrator()

        async def scenario():
            message_id, _ = await orchestrator.submit(DispatchRequest(
                body="Hello", channels=["chat"], custom_addresses=["10"],
            ))
            await orchestrator.record_failure(message_id, "database is locked")
            return await storage.get_message(message_id), await storage.list_status_history(message_id)

        message, history = _run(scenario())
        assert message.status == MessageStatus.FAILED
        assert history[0].action == HistoryAction.STATUS_CHANGE
        assert "database is locked" in history[0].details


# ═══════════════════════════════════════════════════════════════════════════
# Reporting
# ═══════════════════════════════════════════════════════════════════════════

class TestReporting:

    def test_message_report(self):
        orchestrator, _ = _make_orchestrator()

        async def scenario():
            message_id, channels = await orchestrator.submit(DispatchRequest(
                subject="Test", body="Hello", channels=["email", "chat"],
                custom_addresses=["a@b.com", "10"],
            ))
            await orchestrator.run(message_id, channels)
            return await orchestrator.message_report(message_id)

        report = _run(scenario())

        assert report["status"] == "sent"
        assert report["fully_delivered"] is True
        assert report["channel_summary"] == {
            "email": {"email_acct1": True, "email_acct2": True},
            "chat": {"chat": True},
        }
        assert report["delivery_info"]["10"]["chat"]["kind"] == "chat"
        assert len(report["recipients"]) == 2
        assert [h["action"] for h in report["history"]] == ["status_change", "create"]

    def test_one_account_never_fully_delivered(self):
        orchestrator, _ = _make_orchestrator(email=_email_sender(acct2=False))

        async def scenario():
            message_id, channels = await orchestrator.submit(DispatchRequest(
                body="Hello", channels=["email"], custom_addresses=["a@b.com"],
            ))
            await orchestrator.run(message_id, channels)
            return await orchestrator.message_report(message_id)

        report = _run(scenario())
        assert report["status"] == "sent"
        assert report["fully_delivered"] is False

    def test_list_messages_and_history(self):
        orchestrator, _ = _make_orchestrator()

        async def scenario():
            first, _ = await orchestrator.submit(DispatchRequest(body="one", channels=["chat"]))
            second, _ = await orchestrator.submit(DispatchRequest(body="two", channels=["chat"]))
            return await orchestrator.list_messages(), await orchestrator.history(first)

        messages, history = _run(scenario())
        assert [m["body"] for m in messages] == ["two", "one"]
        assert all("fully_delivered" in m for m in messages)
        assert len(history) == 1

    def test_history_unknown_message(self):
        orchestrator, _ = _make_orchestrator()
        with pytest.raises(NotFoundError):
            _run(orchestrator.history(5))
