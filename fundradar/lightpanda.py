"""Single-page scraping through a Lightpanda cloud browser over CDP."""
from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Any

from playwright.async_api import async_playwright

from fundradar.errors import ConfigurationError
from fundradar.scraper import html_to_text

log = logging.getLogger(__name__)

LIGHTPANDA_WS = "wss://euwest.cloud.lightpanda.io/ws"
_NAV_TIMEOUT_MS = 30_000

# Evaluated in the page; receives the onlyMainContent flag.
_EXTRACT_JS = """
(onlyMain) => {
  const getMeta = (name) => {
    const meta = document.querySelector(
      'meta[name="' + name + '"], meta[property="' + name + '"], meta[property="og:' + name + '"]'
    );
    return meta ? meta.getAttribute("content") : undefined;
  };
  let el = null;
  if (onlyMain) {
    el = document.querySelector(
      "main, article, [role='main'], .main-content, #main-content, .article-content, .post-content"
    );
  }
  if (!el) el = document.body;
  return {
    html: el.innerHTML,
    text: el.innerText,
    metadata: {
      title: document.title || getMeta("title"),
      description: getMeta("description") || getMeta("og:description"),
      publishedTime: getMeta("article:published_time") || getMeta("datePublished"),
      author: getMeta("author") || getMeta("article:author"),
      keywords: getMeta("keywords"),
    },
  };
}
"""


def lightpanda_token() -> str:
    token = os.environ.get("LIGHTPANDA_TOKEN", "")
    if not token:
        raise ConfigurationError("Lightpanda not configured")
    return token


async def scrape_with_lightpanda(
    url: str,
    token: str,
    wait_for: int | None = None,
    only_main_content: bool | None = None,
) -> dict[str, Any]:
    """Render *url* in a remote browser and return its main content as text.

    Failures are reported in the returned dict (``success`` False plus
    ``error``) rather than raised.
    """
    started = time.monotonic()
    only_main = True if only_main_content is None else only_main_content
    log.info("Connecting to Lightpanda Cloud for: %s", url)

    def _elapsed() -> int:
        return int((time.monotonic() - started) * 1000)

    try:
        async with async_playwright() as pw:
            browser = await pw.chromium.connect_over_cdp(f"{LIGHTPANDA_WS}?token={token}")
            try:
                context = browser.contexts[0] if browser.contexts else await browser.new_context()
                page = await context.new_page()
                page.set_default_navigation_timeout(_NAV_TIMEOUT_MS)
                await page.goto(url, wait_until="networkidle", timeout=_NAV_TIMEOUT_MS)
                if wait_for and wait_for > 0:
                    await asyncio.sleep(wait_for / 1000)
                result = await page.evaluate(_EXTRACT_JS, only_main)
            finally:
                try:
                    await browser.close()
                except Exception as exc:
                    log.debug("Ignoring browser close error: %s", exc)
    except Exception as exc:
        log.warning("Lightpanda scrape error for %s: %s", url, exc)
        return {
            "success": False,
            "provider": "lightpanda",
            "timing": {"durationMs": _elapsed()},
            "error": str(exc) or exc.__class__.__name__,
        }

    duration_ms = _elapsed()
    log.info("Lightpanda scrape completed in %dms", duration_ms)
    metadata = {k: v for k, v in (result.get("metadata") or {}).items() if v}
    return {
        "success": True,
        "data": {
            "markdown": html_to_text(result.get("html") or ""),
            "content": result.get("text") or "",
            "metadata": metadata,
        },
        "provider": "lightpanda",
        "timing": {"durationMs": duration_ms},
    }
