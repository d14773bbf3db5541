import smtplib
import httpx
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Optional
import logging

from app.core.exceptions import TransientDeliveryError

logger = logging.getLogger(__name__)


class EmailService:
    """Email channel over SMTP with STARTTLS."""

    def __init__(
        self,
        smtp_host: str = "smtp.gmail.com",
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        from_email: str = "",
        from_name: str = "Vaccine Stock Ledger"
    ):
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_user and self.smtp_password)

    def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: Optional[str] = None,
        text_content: Optional[str] = None
    ) -> None:
        """
        Send an email. Blocking; run it in a worker thread from async code.

        Raises:
            TransientDeliveryError: SMTP is not configured or the server
                refused or dropped the message.
        """
        if not self.is_configured:
            raise TransientDeliveryError("Email not configured. SMTP credentials missing.")

        msg = MIMEMultipart('alternative')
        msg['Subject'] = subject
        msg['From'] = f"{self.from_name} <{self.from_email}>"
        msg['To'] = to_email

        if text_content:
            msg.attach(MIMEText(text_content, 'plain'))
        if html_content:
            msg.attach(MIMEText(html_content, 'html'))

        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=10) as server:
                server.starttls()
                server.login(self.smtp_user, self.smtp_password)
                server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error("SMTP Authentication failed. Check email credentials.")
            raise TransientDeliveryError("SMTP authentication failed") from e
        except smtplib.SMTPException as e:
            logger.error(f"SMTP error: {e}")
            raise TransientDeliveryError(f"SMTP error: {e}") from e
        except TimeoutError as e:
            logger.error("SMTP connection timed out")
            raise TransientDeliveryError("SMTP connection timed out") from e
        except OSError as e:
            logger.error(f"Network error sending email: {e}")
            raise TransientDeliveryError(f"Network error: {e}") from e

        logger.info(f"Email sent successfully to {to_email}")


class SMSService:
    """SMS channel posting to an HTTP gateway."""

    def __init__(
        self,
        gateway_url: str = "",
        api_key: str = "",
        sender_id: str = "VACCIN",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.gateway_url = gateway_url
        self.api_key = api_key
        self.sender_id = sender_id
        self.timeout = timeout
        self._client = client

    @property
    def is_configured(self) -> bool:
        return bool(self.gateway_url)

    @staticmethod
    def normalize_phone(phone: str) -> str:
        return phone.replace(" ", "").replace("-", "").replace(".", "")

    async def send_sms(self, phone: str, message: str) -> None:
        """
        Send one text message.

        Raises:
            TransientDeliveryError: gateway missing, unreachable, or answered
                with a non-2xx status.
        """
        if not self.is_configured:
            raise TransientDeliveryError("SMS gateway not configured")

        phone = self.normalize_phone(phone)
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {
            "sender": self.sender_id,
            "to": phone,
            "message": message,
        }

        try:
            if self._client is not None:
                response = await self._client.post(
                    self.gateway_url, json=payload, headers=headers, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(
                        self.gateway_url, json=payload, headers=headers, timeout=self.timeout
                    )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(f"SMS failed: {e.response.status_code} {e.response.text}")
            raise TransientDeliveryError(
                f"SMS gateway answered {e.response.status_code}",
                details={"status_code": e.response.status_code},
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"Failed to send SMS to {phone}: {e}")
            raise TransientDeliveryError(f"SMS gateway unreachable: {e}") from e

        logger.info(f"SMS sent to {phone[-4:].rjust(len(phone), '*')}")


def get_email_service() -> EmailService:
    """Get configured email service instance."""
    from app.config import settings

    return EmailService(
        smtp_host=settings.SMTP_HOST,
        smtp_port=settings.SMTP_PORT,
        smtp_user=settings.SMTP_USER,
        smtp_password=settings.SMTP_PASSWORD,
        from_email=settings.SMTP_FROM_EMAIL,
        from_name=settings.SMTP_FROM_NAME,
    )


def get_sms_service() -> SMSService:
    """Get configured SMS service instance."""
    from app.config import settings

    return SMSService(
        gateway_url=settings.SMS_GATEWAY_URL,
        api_key=settings.SMS_API_KEY,
        sender_id=settings.SMS_SENDER_ID,
        timeout=settings.SMS_TIMEOUT_SECONDS,
    )
