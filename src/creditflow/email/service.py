"""Outbound email over the SendGrid v3 HTTP API."""

from html import escape
from urllib.parse import urlencode

import httpx

from creditflow.logging_config import get_logger
from creditflow.settings import settings

logger = get_logger(__name__)

INVITATION_TEMPLATE = """<!DOCTYPE html>
<html>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #333;">
  <p>Hello,</p>
  <p>{inviter} invited you to join {app_name}.</p>
  <p><a href="{accept_url}">Accept the invitation</a></p>
  <p style="font-size: 12px; color: #666;">If you did not expect this email, you can ignore it.</p>
</body>
</html>
"""


class EmailService:
    """Delivers transactional mail. Delivery is best-effort: failures are
    logged and reported as ``False``, never raised to the caller."""

    SENDGRID_API_URL = "https://api.sendgrid.com/v3/mail/send"
    TIMEOUT_SECONDS = 30.0

    def __init__(
        self,
        api_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Args:
            api_key: SendGrid key (defaults to settings)
            transport: Optional httpx transport, e.g. ``httpx.MockTransport``
        """
        self.api_key = settings.sendgrid_api_key if api_key is None else api_key
        self.sender = {"email": settings.sendgrid_from_email, "name": settings.sendgrid_from_name}
        self.transport = transport

        if not self.enabled:
            logger.warning("email_service_disabled", reason="SENDGRID_API_KEY not set")

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def send(self, to: str, subject: str, html: str) -> bool:
        """Send one HTML email.

        Returns:
            True when SendGrid accepted the message
        """
        if not self.enabled:
            logger.warning("email_not_sent", reason="service_disabled", to=to)
            return False

        payload = {
            "personalizations": [{"to": [{"email": to}], "subject": subject}],
            "from": self.sender,
            "content": [{"type": "text/html", "value": html}],
        }

        try:
            async with httpx.AsyncClient(
                transport=self.transport,
                timeout=self.TIMEOUT_SECONDS,
                headers={"Authorization": f"Bearer {self.api_key}"},
            ) as client:
                response = await client.post(self.SENDGRID_API_URL, json=payload)
        except httpx.RequestError as e:
            logger.error("email_send_error", to=to, error=str(e))
            return False

        if not response.is_success:
            logger.error("email_send_failed", to=to, status=response.status_code, body=response.text[:200])
            return False

        logger.info("email_sent", to=to, subject=subject)
        return True

    async def send_referral_invitation_email(
        self,
        email: str,
        invitation_token: str,
        inviter_name: str | None = None,
    ) -> bool:
        """Mail the sign-up link carrying the invitation token and address."""
        base_url = settings.frontend_url or settings.allowed_origins.split(",")[0]
        query = urlencode({"invitation": invitation_token, "email": email})
        accept_url = f"{base_url.rstrip('/')}/sign-up?{query}"
        inviter = inviter_name or "Someone"

        html = INVITATION_TEMPLATE.format(
            inviter=escape(inviter),
            app_name=escape(settings.app_name),
            accept_url=escape(accept_url, quote=True),
        )
        return await self.send(email, f"{inviter} invited you to {settings.app_name}", html)


email_service = EmailService()
