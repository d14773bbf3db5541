"""Tests for channel selection and delivery (email and SMS mocked)."""

import smtplib
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from app.core.exceptions import TransientDeliveryError
from app.services.email_service import EmailService, SMSService
from app.services.notification_service import NotificationService, Recipient


PAYLOAD = {"subject": "Stock expiration alert", "body": "2 lots expiring", "html": "<p>2 lots</p>"}


@pytest.fixture
def email_service() -> MagicMock:
    return MagicMock(spec=EmailService)


@pytest.fixture
def sms_service() -> AsyncMock:
    return AsyncMock(spec=SMSService)


class TestNotificationService:

    @pytest.mark.asyncio
    async def test_email_by_default(self, email_service, sms_service):
        service = NotificationService(email_service=email_service, sms_service=sms_service)
        recipient = Recipient(key="u1", email="agent@example.org", phone="+237")

        outcome = await service.send(recipient, PAYLOAD)

        assert outcome == {"success": True, "channel": "email", "error": None}
        email_service.send_email.assert_called_once_with(
            "agent@example.org", "Stock expiration alert", "<p>2 lots</p>", "2 lots expiring"
        )
        sms_service.send_sms.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sms_when_requested(self, email_service, sms_service):
        service = NotificationService(email_service=email_service, sms_service=sms_service)
        recipient = Recipient(key="+237", phone="+237 677")

        outcome = await service.send(recipient, {**PAYLOAD, "channel": "sms"})

        assert outcome["success"] is True
        assert outcome["channel"] == "sms"
        sms_service.send_sms.assert_awaited_once_with("+237 677", "2 lots expiring")

    @pytest.mark.asyncio
    async def test_phone_only_recipient_gets_sms(self, email_service, sms_service):
        service = NotificationService(email_service=email_service, sms_service=sms_service)

        outcome = await service.send(Recipient(key="p", phone="+237"), PAYLOAD)

        assert outcome["channel"] == "sms"
        email_service.send_email.assert_not_called()

    @pytest.mark.asyncio
    async def test_delivery_failure_reported(self, email_service, sms_service):
        email_service.send_email.side_effect = TransientDeliveryError("SMTP error: 421")
        service = NotificationService(email_service=email_service, sms_service=sms_service)

        outcome = await service.send(Recipient(key="u1", email="agent@example.org"), PAYLOAD)

        assert outcome == {"success": False, "channel": "email", "error": "SMTP error: 421"}

    @pytest.mark.asyncio
    async def test_no_contact(self, email_service, sms_service):
        service = NotificationService(email_service=email_service, sms_service=sms_service)

        outcome = await service.send(Recipient(key="nobody"), PAYLOAD)

        assert outcome["success"] is False
        assert outcome["channel"] is None


class TestEmailService:

    def test_unconfigured_raises(self):
        with pytest.raises(TransientDeliveryError):
            EmailService().send_email("a@example.org", "s", text_content="t")

    def test_sends_over_smtp(self):
        service = EmailService(smtp_user="ledger@example.org", smtp_password="secret")
        with patch("app.services.email_service.smtplib.SMTP") as smtp:
            service.send_email("a@example.org", "Subject", "<p>x</p>", "x")

        server = smtp.return_value.__enter__.return_value
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("ledger@example.org", "secret")
        from_addr, to_addr, _ = server.sendmail.call_args.args
        assert (from_addr, to_addr) == ("ledger@example.org", "a@example.org")

    def test_smtp_error_is_transient(self):
        service = EmailService(smtp_user="ledger@example.org", smtp_password="secret")
        with patch("app.services.email_service.smtplib.SMTP") as smtp:
            smtp.return_value.__enter__.return_value.sendmail.side_effect = smtplib.SMTPException("boom")
            with pytest.raises(TransientDeliveryError):
                service.send_email("a@example.org", "Subject", text_content="x")


class TestSMSService:

    @pytest.mark.asyncio
    async def test_posts_to_gateway(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = request.content
            return httpx.Response(200, json={"status": "queued"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            service = SMSService(gateway_url="https://sms.example.org/send", api_key="k", client=client)
            await service.send_sms("+237 677-00.00", "Reminder")

        assert seen["auth"] == "Bearer k"
        assert b'"to":"+2376770000"' in seen["body"].replace(b" ", b"")

    @pytest.mark.asyncio
    async def test_gateway_error_is_transient(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(502, text="bad gateway"))
        async with httpx.AsyncClient(transport=transport) as client:
            service = SMSService(gateway_url="https://sms.example.org/send", client=client)
            with pytest.raises(TransientDeliveryError) as exc_info:
                await service.send_sms("+237", "Reminder")

        assert exc_info.value.details == {"status_code": 502}

    @pytest.mark.asyncio
    async def test_unconfigured_gateway(self):
        with pytest.raises(TransientDeliveryError):
            await SMSService().send_sms("+237", "Reminder")
