"""
Notification delivery.

The ledger decides who gets told what; this module only moves a finished
message to a person over email or SMS. Delivery never raises to the caller:
``send`` reports ``{"success": False, "error": ...}`` instead, so one failed
recipient cannot abort a batch.
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Any

from app.core.exceptions import TransientDeliveryError
from app.services.email_service import EmailService, SMSService, get_email_service, get_sms_service


logger = logging.getLogger(__name__)


class NotificationChannel(str, Enum):
    """Notification delivery channels."""
    SMS = "sms"
    EMAIL = "email"


class NotificationType(str, Enum):
    """Kinds of messages the ledger sends."""
    STOCK_EXPIRATION = "stock_expiration"
    APPOINTMENT_REMINDER = "appointment_reminder"
    TRANSFER_PENDING = "transfer_pending"
    TRANSFER_REJECTED = "transfer_rejected"


@dataclass(frozen=True)
class Recipient:
    """
    A person to notify.

    ``key`` identifies the recipient in the notification ledger: a user id
    for staff, a contact address for guardians.
    """
    key: str
    name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None

    @property
    def contact(self) -> Optional[str]:
        return self.email or self.phone


class NotificationService:
    """Sends finished payloads over the configured channels."""

    def __init__(
        self,
        email_service: Optional[EmailService] = None,
        sms_service: Optional[SMSService] = None,
    ):
        self.email_service = email_service or get_email_service()
        self.sms_service = sms_service or get_sms_service()

    def _pick_channel(self, recipient: Recipient, payload: Dict[str, Any]) -> Optional[NotificationChannel]:
        requested = payload.get("channel")
        if requested:
            return NotificationChannel(requested)
        if recipient.email:
            return NotificationChannel.EMAIL
        if recipient.phone:
            return NotificationChannel.SMS
        return None

    async def send(self, recipient: Recipient, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Deliver ``payload`` (``subject``, ``body``, optional ``html`` and
        ``channel``) to ``recipient``.

        Returns:
            Dict with ``success``, ``channel`` and ``error``
        """
        channel = self._pick_channel(recipient, payload)
        if channel is None:
            return {"success": False, "channel": None, "error": "Recipient has no contact address"}

        try:
            if channel == NotificationChannel.EMAIL:
                if not recipient.email:
                    raise TransientDeliveryError("Recipient has no email address")
                await asyncio.to_thread(
                    self.email_service.send_email,
                    recipient.email,
                    payload["subject"],
                    payload.get("html"),
                    payload.get("body"),
                )
            else:
                if not recipient.phone:
                    raise TransientDeliveryError("Recipient has no phone number")
                await self.sms_service.send_sms(recipient.phone, payload["body"])
        except TransientDeliveryError as e:
            logger.warning(f"[NOTIFICATION] {channel.value.upper()} to {recipient.key} failed: {e.message}")
            return {"success": False, "channel": channel.value, "error": e.message}

        logger.info(f"[NOTIFICATION] {channel.value.upper()} to {recipient.key}: {payload['subject'][:100]}")
        return {"success": True, "channel": channel.value, "error": None}
