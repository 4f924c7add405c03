"""Outbound email — the sign-in link delivery channel.

Learn: Two implementations behind one tiny interface:
- ResendMailer posts to the Resend HTTP API with httpx.
- LogMailer writes the message to a dedicated structlog logger. It is
  the operator-visible fallback used in development (no API key) and
  whenever the real provider fails, so a provider outage never stops
  anyone from signing in.
"""

from typing import Optional, Protocol

import httpx
import structlog

from reps.config import settings

logger = structlog.get_logger()
fallback_logger = structlog.get_logger("reps.mail.fallback")

RESEND_API_URL = "https://api.resend.com/emails"


class MailDeliveryError(Exception):
    """Raised when a provider fails to accept a message."""


class Mailer(Protocol):
    async def send(self, to_address: str, subject: str, html: str, *, link: str = "") -> None:
        ...


class ResendMailer:
    """Send mail through the Resend HTTP API."""

    def __init__(
        self,
        api_key: str,
        from_address: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.api_key = api_key
        self.from_address = from_address
        self._client = client
        self.timeout = timeout

    async def send(self, to_address: str, subject: str, html: str, *, link: str = "") -> None:
        payload = {
            "from": self.from_address,
            "to": [to_address],
            "subject": subject,
            "html": html,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            if self._client is not None:
                r = await self._client.post(RESEND_API_URL, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    r = await client.post(RESEND_API_URL, json=payload, headers=headers)
            r.raise_for_status()
        except httpx.HTTPError as e:
            raise MailDeliveryError(f"Resend rejected message: {e}") from e

        logger.info("mail.sent", provider="resend", subject=subject)


class LogMailer:
    """Fallback: surface the link to operators through the log."""

    async def send(self, to_address: str, subject: str, html: str, *, link: str = "") -> None:
        fallback_logger.warning(
            "mail.fallback",
            to=to_address,
            subject=subject,
            link=link,
        )


def get_mailer() -> Mailer:
    """FastAPI dependency — the configured mailer."""
    if settings.resend_api_key:
        return ResendMailer(settings.resend_api_key, settings.resend_from)
    return LogMailer()


def render_sign_in_email(link: str, ttl_minutes: int) -> str:
    return (
        '<div style="font-family: -apple-system, sans-serif; max-width: 500px; margin: 0 auto;">'
        '<h1 style="font-size: 24px;">reps</h1>'
        f"<p>Click the button below to sign in. This link expires in {ttl_minutes} minutes.</p>"
        f'<a href="{link}" style="display: inline-block; padding: 12px 24px; '
        'border-radius: 8px; text-decoration: none;">Sign in to reps</a>'
        "<p style=\"font-size: 12px;\">If you didn't request this, you can safely ignore this email.</p>"
        "</div>"
    )
