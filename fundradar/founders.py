"""Founder profile analysis through a Dust conversational agent.

Each LinkedIn profile becomes one Dust conversation: create it, post a
message mentioning the configured agent, then poll the events endpoint until
the agent answers. Profiles are processed one at a time; a failing profile is
recorded with the stage it failed at and the run carries on.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from collections.abc import AsyncIterable, Iterable
from datetime import UTC, datetime
from typing import Any

import httpx

from fundradar.errors import ConfigurationError, FundRadarError
from fundradar.schemas import (
    EnrichedFounder,
    FounderAnalysisResult,
    FounderAnalysisStats,
    FounderProfile,
    ProfileError,
)

log = logging.getLogger(__name__)

DUST_API = "https://dust.tt/api/v1/w"
_TIMEOUT = 30.0

ANALYSIS_PROMPT = """\
Analyze this LinkedIn profile and extract structured information for an investor:

LinkedIn URL: {linkedin_url}
Name: {name}

Please analyze the profile and provide:
1. Past Experience: Summarize key roles and companies (focus on relevant startup/tech experience)
2. Current Location: City and Country
3. Industry Tags: Relevant sectors/industries they work in (comma-separated, e.g., "AI, SaaS, Enterprise Software")
4. Notes: Key insights for investors - notable achievements, skills, potential as a founder, any red/green flags

Return your analysis in this exact JSON format:
{{
  "pastExperience": "Summary of key roles...",
  "currentLocation": "City, Country",
  "industryTag": "Tag1, Tag2, Tag3",
  "notes": "Key insights for investors..."
}}"""


class DustAPIError(FundRadarError):
    """The agent reported an error, or retries ran out."""


# ---------------------------------------------------------------------------
# HTTP with retry
# ---------------------------------------------------------------------------


def _retry_after_seconds(value: str | None) -> int | None:
    if value and value.strip().isdigit():
        return int(value.strip())
    return None


async def fetch_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    max_retries: int = 3,
    **kwargs: Any,
) -> httpx.Response:
    """Send a request, retrying rate limits and network errors with backoff.

    A 429 waits ``Retry-After`` seconds when the header is present, otherwise
    ``2**attempt`` seconds. Network errors wait ``2**attempt`` seconds.
    Timeouts are not retried and raise ``TimeoutError``. Any other status is
    returned to the caller as-is.
    """
    last_exc: Exception | None = None
    for attempt in range(max_retries):
        try:
            resp = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise TimeoutError(f"Request timeout for {url}") from exc
        except httpx.TransportError as exc:
            last_exc = exc
            if attempt < max_retries - 1:
                wait = 2 ** attempt
                log.info("Network error, waiting %ss before retry %d/%d", wait, attempt + 1, max_retries)
                await asyncio.sleep(wait)
            continue

        if resp.status_code == 429:
            wait = _retry_after_seconds(resp.headers.get("Retry-After"))
            if wait is None:
                wait = 2 ** attempt
            log.info("Rate limited, waiting %ss before retry %d/%d", wait, attempt + 1, max_retries)
            await asyncio.sleep(wait)
            continue
        return resp

    if last_exc is not None:
        raise last_exc
    raise DustAPIError("Max retries exceeded")


def _describe_failure(resp: httpx.Response, context: str) -> str:
    preview = resp.text[:500]
    log.warning(
        "%s: status=%s, content-type=%s, body=%s",
        context, resp.status_code, resp.headers.get("content-type", "unknown"), preview,
    )
    return f"HTTP {resp.status_code}: {preview[:100]}..."


# ---------------------------------------------------------------------------
# Event parsing
# ---------------------------------------------------------------------------


def _event_content(event: dict[str, Any]) -> str:
    message = event.get("message")
    if isinstance(message, dict) and isinstance(message.get("content"), str):
        return message["content"]
    content = event.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, dict) and isinstance(content.get("content"), str):
        return content["content"]
    return ""


def _event_error(event: dict[str, Any]) -> str:
    error = event.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(event.get("message"), str) and event["message"]:
        return event["message"]
    return "Agent error occurred"


class _EventAccumulator:
    """Builds the agent's reply from SSE lines; ``feed`` returns True once complete."""

    def __init__(self) -> None:
        self.content = ""
        self.done = False

    def feed(self, line: str) -> bool:
        text = line.strip()
        if not text or text.startswith(":") or not text.startswith("data:"):
            return self.done
        payload = text[5:].strip()
        if payload == "[DONE]":
            self.done = True
            return True
        try:
            event = json.loads(payload)
        except json.JSONDecodeError:
            return self.done
        if not isinstance(event, dict):
            return self.done

        etype = event.get("type")
        if etype in ("agent_error", "error"):
            raise DustAPIError(_event_error(event))
        if etype == "agent_message_success":
            self.content = _event_content(event) or self.content
            self.done = True
        elif etype == "generation_tokens" and event.get("text"):
            self.content += str(event["text"])
        elif etype == "agent_message":
            self.content = _event_content(event) or self.content
        return self.done


def parse_sse_events(lines: Iterable[str]) -> str:
    """Return the agent reply carried by a sequence of SSE lines.

    Raises DustAPIError on an ``agent_error`` or ``error`` event.
    """
    acc = _EventAccumulator()
    for line in lines:
        if acc.feed(line):
            break
    return acc.content


async def _parse_sse_stream(lines: AsyncIterable[str]) -> str:
    acc = _EventAccumulator()
    async for line in lines:
        if acc.feed(line):
            break
    return acc.content


def agent_text_from_events(data: Any) -> str:
    """Pull the agent reply out of a JSON (non-streaming) events payload."""
    events = data.get("events", data) if isinstance(data, dict) else data
    if not isinstance(events, list):
        return ""
    events = [e for e in events if isinstance(e, dict)]
    for event in events:
        if event.get("type") in ("agent_error", "error"):
            raise DustAPIError(_event_error(event))
    for etype in ("agent_message_success", "agent_message"):
        for event in events:
            if event.get("type") == etype:
                text = _event_content(event)
                if text:
                    return text
    return ""


_JSON_BLOCK = re.compile(r"\{[\s\S]*?\}")


def extract_profile_json(text: str) -> tuple[dict[str, Any], bool]:
    """Find the first ``{...}`` block in the agent's reply and parse it.

    Returns ``(fields, ok)``. Without a JSON block the whole reply becomes
    the notes; when the block does not parse, likewise, and ``ok`` is False.
    """
    m = _JSON_BLOCK.search(text)
    if not m:
        return {"notes": text}, True
    try:
        parsed = json.loads(m.group(0))
    except json.JSONDecodeError:
        return {"notes": text}, False
    if not isinstance(parsed, dict):
        return {"notes": text}, False
    return parsed, True


# ---------------------------------------------------------------------------
# Dust client
# ---------------------------------------------------------------------------


class DustClient:
    def __init__(
        self,
        api_key: str | None = None,
        workspace_id: str | None = None,
        agent_id: str | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = _TIMEOUT,
        max_retries: int = 3,
    ):
        api_key = api_key or os.environ.get("DUST_API_KEY")
        workspace_id = workspace_id or os.environ.get("DUST_WORKSPACE_ID")
        agent_id = agent_id or os.environ.get("DUST_AGENT_ID")
        if not (api_key and workspace_id and agent_id):
            raise ConfigurationError(
                "Dust API credentials not configured. "
                "Please add DUST_API_KEY, DUST_WORKSPACE_ID, and DUST_AGENT_ID."
            )
        self.agent_id = agent_id
        self.max_retries = max_retries
        self.conversations_url = f"{DUST_API}/{workspace_id}/assistant/conversations"
        self._http = httpx.AsyncClient(
            transport=transport,
            timeout=httpx.Timeout(timeout),
            headers={"Authorization": f"Bearer {api_key}"},
        )

    async def __aenter__(self) -> DustClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def create_conversation(self, title: str) -> httpx.Response:
        return await fetch_with_retry(
            self._http, "POST", self.conversations_url, self.max_retries,
            json={"title": title, "visibility": "unlisted"},
        )

    async def post_message(self, conversation_id: str, content: str) -> httpx.Response:
        return await fetch_with_retry(
            self._http, "POST", f"{self.conversations_url}/{conversation_id}/messages", self.max_retries,
            json={
                "content": content,
                "mentions": [{"configurationId": self.agent_id}],
                "context": {
                    "timezone": "UTC",
                    "username": "fundradar-api",
                    "profilePictureUrl": None,
                    "fullName": "FundRadar Analyst",
                    "email": None,
                    "origin": "api",
                },
            },
        )

    def events_url(self, conversation_id: str, message_id: str | None = None) -> str:
        base = f"{self.conversations_url}/{conversation_id}"
        return f"{base}/messages/{message_id}/events" if message_id else f"{base}/events"

    async def fetch_events(self, conversation_id: str, message_id: str | None = None) -> str:
        """Poll the events endpoint once; returns the agent reply or ``""`` if not ready."""
        url = self.events_url(conversation_id, message_id)
        try:
            async with self._http.stream("GET", url, headers={"Accept": "text/event-stream"}) as resp:
                if resp.status_code >= 400:
                    log.debug("Events endpoint returned %s", resp.status_code)
                    return ""
                if "text/event-stream" in resp.headers.get("content-type", ""):
                    return await _parse_sse_stream(resp.aiter_lines())
                await resp.aread()
                return agent_text_from_events(resp.json())
        except httpx.TimeoutException as exc:
            raise TimeoutError(f"Request timeout for {url}") from exc


# ---------------------------------------------------------------------------
# Analysis run
# ---------------------------------------------------------------------------


def _opt(fields: dict[str, Any], key: str) -> str | None:
    value = fields.get(key)
    return str(value) if value else None


async def _wait_for_reply(
    client: DustClient, conversation_id: str, message_id: str | None,
    poll_attempts: int, poll_interval: float,
) -> str:
    for attempt in range(1, poll_attempts + 1):
        try:
            reply = await client.fetch_events(conversation_id, message_id)
        except TimeoutError:
            log.info("Events fetch timeout, attempt %d/%d", attempt, poll_attempts)
            continue
        if reply:
            return reply
        await asyncio.sleep(poll_interval)
    return ""


async def analyze_profile(
    profile: FounderProfile,
    client: DustClient,
    poll_attempts: int = 90,
    poll_interval: float = 1.0,
) -> tuple[EnrichedFounder | None, list[ProfileError]]:
    """Run one profile through the agent. Returns the founder (if any) and its errors."""

    def _err(error: str, stage: str) -> ProfileError:
        return ProfileError(name=profile.name, error=error, stage=stage)

    resp = await client.create_conversation(f"Analysis: {profile.name}")
    if resp.is_error:
        msg = _describe_failure(resp, f"Create conversation for {profile.name}")
        return None, [_err(msg, "conversation_create")]
    conversation_id = resp.json()["conversation"]["sId"]

    prompt = ANALYSIS_PROMPT.format(linkedin_url=profile.linkedin_url, name=profile.name)
    resp = await client.post_message(conversation_id, prompt)
    if resp.is_error:
        msg = _describe_failure(resp, f"Send message for {profile.name}")
        return None, [_err(msg, "message_create")]
    data = resp.json()
    message_id = (data.get("message") or {}).get("sId") or (data.get("agentMessage") or {}).get("sId")
    log.debug("Message created for %s, messageId: %s", profile.name, message_id or "not found")

    await asyncio.sleep(poll_interval)
    try:
        reply = await _wait_for_reply(client, conversation_id, message_id, poll_attempts, poll_interval)
    except (DustAPIError, httpx.HTTPError) as exc:
        return None, [_err(str(exc), "events_stream")]
    if not reply:
        waited = round(poll_attempts * poll_interval)
        return None, [_err(f"Timeout after {waited}s waiting for agent response", "timeout")]

    fields, ok = extract_profile_json(reply)
    errors = [] if ok else [_err("JSON parse failed, using raw response", "parse_json")]
    if not ok:
        log.info("Could not parse JSON for %s, using raw response", profile.name)
    founder = EnrichedFounder(
        name=profile.name,
        linkedin_url=profile.linkedin_url,
        past_experience=_opt(fields, "pastExperience"),
        current_location=_opt(fields, "currentLocation"),
        industry_tag=_opt(fields, "industryTag"),
        notes=_opt(fields, "notes"),
        analyzed_at=datetime.now(UTC).isoformat(),
    )
    return founder, errors


async def analyze_profiles(
    profiles: list[FounderProfile],
    client: DustClient,
    poll_attempts: int = 90,
    poll_interval: float = 1.0,
    delay: float = 1.0,
) -> FounderAnalysisResult:
    """Analyze profiles sequentially; a failed profile never stops the run."""
    log.info("Analyzing %d founder profiles with Dust agent", len(profiles))
    founders: list[EnrichedFounder] = []
    errors: list[ProfileError] = []

    for i, profile in enumerate(profiles):
        log.info("Processing profile %d/%d: %s", i + 1, len(profiles), profile.name)
        try:
            founder, profile_errors = await analyze_profile(profile, client, poll_attempts, poll_interval)
        except Exception as exc:
            log.warning("Error analyzing %s: %s", profile.name, exc)
            founder, profile_errors = None, [
                ProfileError(name=profile.name, error=str(exc) or "Unknown error", stage="unknown"),
            ]
        if founder is not None:
            founders.append(founder)
        errors.extend(profile_errors)
        if i < len(profiles) - 1 and delay > 0:
            await asyncio.sleep(delay)

    log.info("Analysis complete: %d succeeded, %d errors", len(founders), len(errors))
    return FounderAnalysisResult(
        founders=founders,
        errors=errors or None,
        stats=FounderAnalysisStats(total=len(profiles), analyzed=len(founders), failed=len(errors)),
    )
