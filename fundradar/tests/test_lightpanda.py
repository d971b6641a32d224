"""Tests for Lightpanda scraping with Playwright mocked out."""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from fundradar.errors import ConfigurationError
from fundradar.lightpanda import LIGHTPANDA_WS, lightpanda_token, scrape_with_lightpanda


def _playwright(page: MagicMock, *, connect_error: Exception | None = None):
    browser = MagicMock()
    context = MagicMock()
    context.new_page = AsyncMock(return_value=page)
    browser.contexts = [context]
    browser.close = AsyncMock()

    pw = MagicMock()
    pw.chromium.connect_over_cdp = AsyncMock(return_value=browser, side_effect=connect_error)
    manager = MagicMock()
    manager.__aenter__ = AsyncMock(return_value=pw)
    manager.__aexit__ = AsyncMock(return_value=False)
    return MagicMock(return_value=manager), pw, browser


def _page(evaluated: dict | None = None, goto_error: Exception | None = None) -> MagicMock:
    page = MagicMock()
    page.goto = AsyncMock(side_effect=goto_error)
    page.evaluate = AsyncMock(return_value=evaluated)
    return page


class TestLightpandaToken:
    def test_missing(self, monkeypatch):
        monkeypatch.delenv("LIGHTPANDA_TOKEN", raising=False)
        with pytest.raises(ConfigurationError, match="Lightpanda not configured"):
            lightpanda_token()

    def test_present(self, monkeypatch):
        monkeypatch.setenv("LIGHTPANDA_TOKEN", "tok")
        assert lightpanda_token() == "tok"


class TestScrapeWithLightpanda:
    @pytest.mark.asyncio
    async def test_success(self):
        page = _page({
            "html": "<h1>Round</h1><p>Acme raised money</p>",
            "text": "Round\nAcme raised money",
            "metadata": {"title": "Round", "description": None, "author": "Jane"},
        })
        factory, pw, browser = _playwright(page)
        with patch("fundradar.lightpanda.async_playwright", factory):
            result = await scrape_with_lightpanda("https://example.com/a", "tok")

        assert result["success"] is True
        assert result["provider"] == "lightpanda"
        assert result["data"]["markdown"] == "# Round\n\nAcme raised money"
        assert result["data"]["content"] == "Round\nAcme raised money"
        assert result["data"]["metadata"] == {"title": "Round", "author": "Jane"}
        assert result["timing"]["durationMs"] >= 0
        pw.chromium.connect_over_cdp.assert_awaited_once_with(f"{LIGHTPANDA_WS}?token=tok")
        page.evaluate.assert_awaited_once()
        assert page.evaluate.await_args.args[1] is True
        browser.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_main_content_flag_passed(self):
        page = _page({"html": "", "text": "", "metadata": {}})
        factory, _, _ = _playwright(page)
        with patch("fundradar.lightpanda.async_playwright", factory):
            await scrape_with_lightpanda("https://example.com", "tok", only_main_content=False)
        assert page.evaluate.await_args.args[1] is False

    @pytest.mark.asyncio
    async def test_navigation_failure_reported(self):
        page = _page(goto_error=TimeoutError("Navigation timeout"))
        factory, _, browser = _playwright(page)
        with patch("fundradar.lightpanda.async_playwright", factory):
            result = await scrape_with_lightpanda("https://example.com", "tok")
        assert result["success"] is False
        assert result["error"] == "Navigation timeout"
        browser.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_connect_failure_reported(self):
        factory, _, _ = _playwright(_page(), connect_error=ConnectionError("refused"))
        with patch("fundradar.lightpanda.async_playwright", factory):
            result = await scrape_with_lightpanda("https://example.com", "tok")
        assert result == {
            "success": False,
            "provider": "lightpanda",
            "timing": {"durationMs": result["timing"]["durationMs"]},
            "error": "refused",
        }
