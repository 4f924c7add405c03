"""Mailers — Resend over HTTP, and the log fallback."""

import json

import httpx
import pytest
from structlog.testing import capture_logs

from reps.mail import LogMailer, MailDeliveryError, ResendMailer, render_sign_in_email


@pytest.mark.asyncio
async def test_resend_posts_message():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "msg_1"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        mailer = ResendMailer("re_test", "reps <noreply@example.com>", client=client)
        await mailer.send("ada@example.com", "Sign in", "<p>hi</p>")

    assert len(seen) == 1
    assert str(seen[0].url) == "https://api.resend.com/emails"
    assert seen[0].headers["Authorization"] == "Bearer re_test"
    body = json.loads(seen[0].content)
    assert body["to"] == ["ada@example.com"]
    assert body["subject"] == "Sign in"


@pytest.mark.asyncio
async def test_resend_failure_raises_delivery_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"message": "boom"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        mailer = ResendMailer("re_test", "reps <noreply@example.com>", client=client)
        with pytest.raises(MailDeliveryError):
            await mailer.send("ada@example.com", "Sign in", "<p>hi</p>")


@pytest.mark.asyncio
async def test_log_mailer_surfaces_link():
    with capture_logs() as logs:
        await LogMailer().send(
            "ada@example.com", "Sign in", "<p>hi</p>", link="http://x/verify?token=abc"
        )

    assert logs[0]["event"] == "mail.fallback"
    assert logs[0]["link"] == "http://x/verify?token=abc"
    assert logs[0]["to"] == "ada@example.com"


def test_sign_in_email_contains_link_and_ttl():
    html = render_sign_in_email("http://x/verify?token=abc", 15)
    assert 'href="http://x/verify?token=abc"' in html
    assert "15 minutes" in html
