"""Outreach: email drafts, sending through Resend, and Airtable webhook export."""
from __future__ import annotations

import html
import logging
import os
import re
from datetime import UTC, datetime
from typing import Any

import httpx

from fundradar.errors import ConfigurationError, FundRadarError, InvalidRequestError
from fundradar.schemas import EmailDraft, Startup, StartupClusterMatch

log = logging.getLogger(__name__)

RESEND_API = "https://api.resend.com/emails"
RESEND_FROM_ADDRESS = "onboarding@resend.dev"
AIRTABLE_SOURCE = "Startup Clustering Tool"
_TIMEOUT = 15.0

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

_EMAIL_WRAPPER = (
    '<div style="font-family: -apple-system, BlinkMacSystemFont, \'Segoe UI\', Roboto, '
    "'Helvetica Neue', Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;\">"
    "{body}</div>"
)


def _clip(text: str, limit: int) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


def generate_email_draft(match: StartupClusterMatch, sender_name: str = "") -> EmailDraft:
    """Draft a first-contact email from a startup's match result."""
    startup = match.startup
    trend_names = ", ".join(c.cluster_name for c in match.clusters[:3])

    parts = [f"Hi,\n\nI came across {startup.name}"]
    if trend_names:
        parts.append(f" and was impressed by your work in {trend_names}")
    parts.append(".\n\n")
    if startup.blurb:
        parts.append(f'Your focus on "{_clip(startup.blurb, 150)}" caught my attention.\n\n')
    if startup.value_prop:
        parts.append(
            f"Your value proposition around {_clip(startup.value_prop, 100)} "
            "aligns well with trends we're seeing in the market.\n\n"
        )
    if startup.market:
        parts.append(
            "The market opportunity you're addressing seems promising, "
            "and I'd love to learn more about your traction and vision.\n\n"
        )
    else:
        parts.append(
            "I'd love to schedule a call to learn more about your vision "
            "and discuss potential investment opportunities.\n\n"
        )
    parts.append(f"Looking forward to connecting.\n\nBest regards,\n{sender_name or '[Your Name]'}")
    return EmailDraft(subject=f"Investment Inquiry - {startup.name}", body="".join(parts))


def is_valid_email(address: str) -> bool:
    return bool(_EMAIL_RE.match(address or ""))


def body_to_html(body: str) -> str:
    """Blank lines become ``<br>``, every other line a ``<p>``."""
    return "".join(
        "<br>" if not line.strip() else f"<p>{html.escape(line)}</p>"
        for line in body.split("\n")
    )


async def send_outreach_email(
    to: str,
    subject: str,
    body: str,
    sender_name: str = "",
    reply_to: str = "",
    startup_name: str = "",
    *,
    api_key: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, Any]:
    """Send an outreach email through the Resend REST API.

    Raises InvalidRequestError for missing fields or a malformed recipient,
    ConfigurationError without an API key, and FundRadarError when Resend
    rejects the message.
    """
    if not to or not subject or not body:
        raise InvalidRequestError("Missing required fields: to, subject, and body are required")
    if not is_valid_email(to):
        raise InvalidRequestError("Invalid recipient email format")
    api_key = api_key or os.environ.get("RESEND_API_KEY")
    if not api_key:
        raise ConfigurationError("RESEND_API_KEY not configured")

    payload: dict[str, Any] = {
        "from": f"{sender_name or 'Investor'} <{RESEND_FROM_ADDRESS}>",
        "to": [to],
        "subject": subject,
        "html": _EMAIL_WRAPPER.format(body=body_to_html(body)),
    }
    if reply_to:
        payload["reply_to"] = reply_to

    log.info("Sending outreach email to %s for startup: %s", to, startup_name)
    async with httpx.AsyncClient(transport=transport, timeout=httpx.Timeout(_TIMEOUT)) as client:
        resp = await client.post(
            RESEND_API, json=payload, headers={"Authorization": f"Bearer {api_key}"},
        )
    if resp.is_error:
        try:
            message = resp.json().get("message") or ""
        except ValueError:
            message = ""
        log.warning("Resend rejected email to %s: HTTP %s %s", to, resp.status_code, message)
        raise FundRadarError(message or "Failed to send email")
    return {"success": True, "data": resp.json()}


def airtable_payload(startups: list[Startup]) -> dict[str, Any]:
    return {
        "timestamp": datetime.now(UTC).isoformat(),
        "source": AIRTABLE_SOURCE,
        "total_startups": len(startups),
        "startups": [
            {
                "name": s.name or "",
                "website": s.website or "",
                "tags": s.tags or "",
                "location": s.location or "",
                "stage": s.maturity or "",
                "business_type": s.business_type or "",
                "description": s.blurb or "",
            }
            for s in startups
        ],
    }


async def send_to_airtable(
    webhook_url: str,
    startups: list[Startup],
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, Any]:
    """POST startups to an Airtable webhook. Never raises; returns ``{success, error}``."""
    if not webhook_url:
        return {"success": False, "error": "No webhook URL configured"}
    log.info("Sending %d startups to Airtable webhook", len(startups))
    try:
        async with httpx.AsyncClient(transport=transport, timeout=httpx.Timeout(_TIMEOUT)) as client:
            resp = await client.post(webhook_url, json=airtable_payload(startups))
            resp.raise_for_status()
    except httpx.HTTPStatusError as exc:
        log.warning("Airtable webhook returned %s", exc.response.status_code)
        return {"success": False, "error": f"HTTP {exc.response.status_code}"}
    except httpx.HTTPError as exc:
        log.warning("Error sending to Airtable: %s", exc)
        return {"success": False, "error": str(exc) or exc.__class__.__name__}
    return {"success": True, "error": None}
