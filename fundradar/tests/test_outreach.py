"""Tests for outreach drafts, Resend sending and Airtable export."""
from __future__ import annotations

import json

import httpx
import pytest

from fundradar.errors import ConfigurationError, FundRadarError, InvalidRequestError
from fundradar.outreach import (
    RESEND_API,
    airtable_payload,
    body_to_html,
    generate_email_draft,
    is_valid_email,
    send_outreach_email,
    send_to_airtable,
)
from fundradar.schemas import ClusterMatch, Startup, StartupClusterMatch


def _match(**startup_fields) -> StartupClusterMatch:
    return StartupClusterMatch(
        startup=Startup(name="Acme", **startup_fields),
        clusters=[
            ClusterMatch(cluster_id=1, cluster_name="AI Legal Tech", score=0.9),
            ClusterMatch(cluster_id=2, cluster_name="RegTech", score=0.6),
            ClusterMatch(cluster_id=3, cluster_name="Vertical SaaS", score=0.5),
            ClusterMatch(cluster_id=4, cluster_name="Ignored", score=0.1),
        ],
    )


# ---------------------------------------------------------------------------
# Tests: drafts
# ---------------------------------------------------------------------------


class TestGenerateEmailDraft:
    def test_full_draft(self):
        draft = generate_email_draft(_match(blurb="AI for lawyers"), "Sam")
        assert draft.subject == "Investment Inquiry - Acme"
        assert draft.body == (
            "Hi,\n\nI came across Acme and was impressed by your work in "
            "AI Legal Tech, RegTech, Vertical SaaS.\n\n"
            'Your focus on "AI for lawyers" caught my attention.\n\n'
            "I'd love to schedule a call to learn more about your vision "
            "and discuss potential investment opportunities.\n\n"
            "Looking forward to connecting.\n\nBest regards,\nSam"
        )

    def test_market_paragraph_and_placeholder_signature(self):
        draft = generate_email_draft(_match(market="Legal services, 20bn"))
        assert "The market opportunity you're addressing seems promising" in draft.body
        assert "schedule a call" not in draft.body
        assert draft.body.endswith("Best regards,\n[Your Name]")

    def test_long_fields_clipped(self):
        draft = generate_email_draft(_match(blurb="b" * 200, value_prop="v" * 120))
        assert f'"{"b" * 150}..."' in draft.body
        assert f"around {'v' * 100}... aligns" in draft.body

    def test_without_clusters(self):
        match = StartupClusterMatch(startup=Startup(name="Solo"))
        draft = generate_email_draft(match)
        assert draft.body.startswith("Hi,\n\nI came across Solo.\n\n")


class TestHelpers:
    @pytest.mark.parametrize("address,ok", [
        ("founder@acme.io", True),
        ("a.b+c@sub.example.co", True),
        ("no-at-sign.io", False),
        ("two words@acme.io", False),
        ("nodot@acme", False),
        ("", False),
    ])
    def test_is_valid_email(self, address, ok):
        assert is_valid_email(address) is ok

    def test_body_to_html(self):
        assert body_to_html("Hi <Ada>,\n\nBye") == "<p>Hi &lt;Ada&gt;,</p><br><p>Bye</p>"

    def test_airtable_payload(self):
        payload = airtable_payload([Startup(name="Acme", maturity="seed", blurb="Legal AI")])
        assert payload["source"] == "Startup Clustering Tool"
        assert payload["total_startups"] == 1
        assert payload["startups"][0] == {
            "name": "Acme", "website": "", "tags": "", "location": "",
            "stage": "seed", "business_type": "", "description": "Legal AI",
        }


# ---------------------------------------------------------------------------
# Tests: send_outreach_email
# ---------------------------------------------------------------------------


class TestSendOutreachEmail:
    @pytest.mark.asyncio
    async def test_sends_through_resend(self):
        captured: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["auth"] = request.headers["Authorization"]
            captured["payload"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "email-1"})

        result = await send_outreach_email(
            "founder@acme.io", "Hello", "Line one\n\nLine two",
            sender_name="Sam", reply_to="sam@fund.vc", startup_name="Acme",
            api_key="re_test", transport=httpx.MockTransport(handler),
        )
        assert result == {"success": True, "data": {"id": "email-1"}}
        assert captured["url"] == RESEND_API
        assert captured["auth"] == "Bearer re_test"
        payload = captured["payload"]
        assert payload["from"] == "Sam <onboarding@resend.dev>"
        assert payload["to"] == ["founder@acme.io"]
        assert payload["reply_to"] == "sam@fund.vc"
        assert "<p>Line one</p><br><p>Line two</p>" in payload["html"]

    @pytest.mark.asyncio
    async def test_default_sender_and_no_reply_to(self):
        captured: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured.update(json.loads(request.content))
            return httpx.Response(200, json={"id": "email-2"})

        await send_outreach_email(
            "founder@acme.io", "Hello", "Body",
            api_key="re_test", transport=httpx.MockTransport(handler),
        )
        assert captured["from"] == "Investor <onboarding@resend.dev>"
        assert "reply_to" not in captured

    @pytest.mark.asyncio
    async def test_missing_fields(self):
        with pytest.raises(InvalidRequestError, match="Missing required fields"):
            await send_outreach_email("founder@acme.io", "", "Body", api_key="re_test")

    @pytest.mark.asyncio
    async def test_invalid_recipient(self):
        with pytest.raises(InvalidRequestError) as exc_info:
            await send_outreach_email("not-an-email", "Hi", "Body", api_key="re_test")
        assert exc_info.value.message == "Invalid recipient email format"
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_missing_api_key(self, monkeypatch):
        monkeypatch.delenv("RESEND_API_KEY", raising=False)
        with pytest.raises(ConfigurationError, match="RESEND_API_KEY not configured"):
            await send_outreach_email("founder@acme.io", "Hi", "Body")

    @pytest.mark.asyncio
    async def test_provider_rejection(self):
        transport = httpx.MockTransport(
            lambda request: httpx.Response(422, json={"message": "Domain not verified"})
        )
        with pytest.raises(FundRadarError) as exc_info:
            await send_outreach_email("founder@acme.io", "Hi", "Body", api_key="re_test", transport=transport)
        assert exc_info.value.message == "Domain not verified"
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_provider_rejection_without_message(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(500, text="oops"))
        with pytest.raises(FundRadarError, match="Failed to send email"):
            await send_outreach_email("founder@acme.io", "Hi", "Body", api_key="re_test", transport=transport)


# ---------------------------------------------------------------------------
# Tests: send_to_airtable
# ---------------------------------------------------------------------------


class TestSendToAirtable:
    @pytest.mark.asyncio
    async def test_success(self):
        received: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(json.loads(request.content))
            return httpx.Response(200, text="ok")

        result = await send_to_airtable(
            "https://hooks.airtable.test/abc", [Startup(name="Acme")],
            transport=httpx.MockTransport(handler),
        )
        assert result == {"success": True, "error": None}
        assert received[0]["startups"][0]["name"] == "Acme"

    @pytest.mark.asyncio
    async def test_http_error_reported(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(500))
        result = await send_to_airtable("https://hooks.airtable.test/abc", [], transport=transport)
        assert result == {"success": False, "error": "HTTP 500"}

    @pytest.mark.asyncio
    async def test_no_webhook(self):
        assert await send_to_airtable("", []) == {"success": False, "error": "No webhook URL configured"}
