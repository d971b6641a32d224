"""Article scraping through the Firecrawl API.

Two flows share the client here: scraping full text for articles the caller
already knows about (``scrape_articles``) and the daily crawl that discovers
fresh articles on the EU startup news sites and stores them
(``run_daily_scrape``).
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
import time
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, TypeVar

import httpx
from lxml import etree, html as lxml_html
from sqlalchemy.orm import Session

from fundradar import services
from fundradar.errors import ConfigurationError
from fundradar.schemas import NewsArticle, ScrapedArticle, ScrapeError, ScrapeResult, ScrapeStats

log = logging.getLogger(__name__)

FIRECRAWL_API = "https://api.firecrawl.dev/v1"
_TIMEOUT = 60.0
MAX_CONTENT = 5000
MAX_URLS_PER_SOURCE = 30
MAX_TAGS = 5

T = TypeVar("T")
R = TypeVar("R")


# ---------------------------------------------------------------------------
# Firecrawl client
# ---------------------------------------------------------------------------


class FirecrawlClient:
    """Thin async wrapper over the Firecrawl ``/scrape`` and ``/map`` endpoints.

    Non-2xx answers raise ``httpx.HTTPStatusError``; callers decide whether
    that aborts anything.
    """

    def __init__(
        self,
        api_key: str | None = None,
        *,
        base_url: str = FIRECRAWL_API,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = _TIMEOUT,
    ):
        api_key = api_key or os.environ.get("FIRECRAWL_API_KEY")
        if not api_key:
            raise ConfigurationError("FIRECRAWL_API_KEY not configured")
        self._http = httpx.AsyncClient(
            base_url=base_url,
            transport=transport,
            timeout=httpx.Timeout(timeout),
            headers={"Authorization": f"Bearer {api_key}"},
        )

    async def __aenter__(self) -> FirecrawlClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        resp = await self._http.post(path, json=payload)
        resp.raise_for_status()
        return resp.json()

    async def scrape(
        self, url: str, only_main_content: bool | None = None, wait_for: int | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"url": url, "formats": ["markdown"]}
        if only_main_content is not None:
            payload["onlyMainContent"] = only_main_content
        if wait_for is not None:
            payload["waitFor"] = wait_for
        return await self._post("/scrape", payload)

    async def map(self, url: str, search: str | None = None, limit: int = 50) -> dict[str, Any]:
        payload: dict[str, Any] = {"url": url, "limit": limit}
        if search:
            payload["search"] = search
        return await self._post("/map", payload)


def _markdown_of(payload: dict[str, Any]) -> str:
    data = payload.get("data") or {}
    return data.get("markdown") or payload.get("markdown") or ""


async def _run_batches(
    items: list[T], worker: Callable[[T], Awaitable[R]], batch_size: int, delay: float,
) -> list[R]:
    """Run *worker* over *items* in concurrent fixed-size batches with a pause between them."""
    results: list[R] = []
    total_batches = (len(items) + batch_size - 1) // batch_size
    for n, start in enumerate(range(0, len(items), batch_size), 1):
        batch = items[start:start + batch_size]
        log.debug("Batch %d/%d (%d items)", n, total_batches, len(batch))
        results.extend(await asyncio.gather(*(worker(item) for item in batch)))
        if start + batch_size < len(items) and delay > 0:
            await asyncio.sleep(delay)
    return results


# ---------------------------------------------------------------------------
# Funding amount extraction
# ---------------------------------------------------------------------------

_CUR = "[$€£]"
_NUM = r"(\d+(?:[.,]\d+)?)"

_BILLION_PATTERNS = [
    re.compile(rf"{_CUR}{_NUM}\s*(?:bn|billion)", re.I),
    re.compile(rf"{_NUM}\s*(?:bn|billion)\s*(?:dollars|euros|pounds)", re.I),
]

_MILLION_PATTERNS = [
    re.compile(rf"{_CUR}{_NUM}\s*(?:m|mn|million)", re.I),
    re.compile(rf"{_NUM}\s*(?:m|mn|million)\s*(?:dollars|euros|pounds)", re.I),
    re.compile(rf"raised\s+{_CUR}?{_NUM}\s*(?:m|mn|million)", re.I),
    re.compile(rf"funding\s+(?:of\s+)?{_CUR}?{_NUM}\s*(?:m|mn|million)", re.I),
    re.compile(rf"series\s+[a-z]\s+(?:of\s+)?{_CUR}?{_NUM}\s*(?:m|mn|million)", re.I),
]

# Case-sensitive suffixes: $50M, EUR-sign 100m, $2B
_SHORT_MILLION = re.compile(rf"{_CUR}(\d+(?:\.\d+)?)[Mm]\b")
_SHORT_BILLION = re.compile(rf"{_CUR}(\d+(?:\.\d+)?)[Bb]\b")


def _amount(raw: str) -> float:
    return float(raw.replace(",", ".", 1))


def extract_funding_amount(text: str) -> float | None:
    """Return the largest funding amount mentioned in *text*, in millions.

    Comma decimals ("1,5bn") are read as decimal points. Returns None when
    nothing matches.
    """
    if not text:
        return None
    candidates: list[float] = []
    for pattern in _BILLION_PATTERNS:
        candidates.extend(_amount(m) * 1000 for m in pattern.findall(text))
    for pattern in _MILLION_PATTERNS:
        candidates.extend(_amount(m) for m in pattern.findall(text))
    candidates.extend(float(m) for m in _SHORT_MILLION.findall(text))
    candidates.extend(float(m) * 1000 for m in _SHORT_BILLION.findall(text))
    best = max(candidates, default=0)
    return best if best > 0 else None


# ---------------------------------------------------------------------------
# Scrape known articles
# ---------------------------------------------------------------------------


async def scrape_articles(
    articles: list[NewsArticle],
    client: FirecrawlClient,
    batch_size: int = 5,
    delay: float = 1.0,
) -> ScrapeResult:
    """Scrape full text for each article; one failure never aborts the batch."""
    log.info("Processing %d articles for scraping", len(articles))
    errors: list[ScrapeError] = []

    async def _one(article: NewsArticle) -> ScrapedArticle | None:
        try:
            payload = await client.scrape(article.url, only_main_content=True, wait_for=2000)
        except httpx.HTTPStatusError as exc:
            log.warning("Failed to scrape %s: HTTP %s", article.url, exc.response.status_code)
            errors.append(ScrapeError(url=article.url, error=f"HTTP {exc.response.status_code}"))
            return None
        except Exception as exc:
            log.warning("Error scraping %s: %s", article.url, exc)
            errors.append(ScrapeError(url=article.url, error=str(exc)))
            return None
        content = _markdown_of(payload)
        title = article.title or ""
        excerpt = article.excerpt or ""
        return ScrapedArticle(
            url=article.url,
            title=title,
            excerpt=excerpt,
            content=content[:MAX_CONTENT],
            scraped_at=datetime.now(UTC).isoformat(),
            funding_amount=extract_funding_amount(f"{title} {excerpt} {content}"),
        )

    scraped = [r for r in await _run_batches(articles, _one, batch_size, delay) if r is not None]
    log.info("Successfully scraped %d articles, %d errors", len(scraped), len(errors))
    return ScrapeResult(
        success=True,
        data=scraped,
        errors=errors or None,
        stats=ScrapeStats(total=len(articles), scraped=len(scraped), failed=len(errors)),
    )


# ---------------------------------------------------------------------------
# News sources
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NewsSource:
    name: str
    base_url: str
    latest_path: str
    article_pattern: re.Pattern[str]
    link_pattern: re.Pattern[str]

    @property
    def listing_url(self) -> str:
        return f"{self.base_url}{self.latest_path}"

    def is_article(self, url: str) -> bool:
        return self.article_pattern.fullmatch(url) is not None


def _source(name: str, base_url: str, latest_path: str, article: str, link: str) -> NewsSource:
    return NewsSource(name, base_url, latest_path, re.compile(article), re.compile(link))


SOURCES: dict[str, NewsSource] = {
    "sifted": _source(
        "sifted", "https://sifted.eu", "/latest",
        r"https://sifted\.eu/articles/[^/\s]+/?",
        r"https://sifted\.eu/articles/[^\s)]+",
    ),
    "tech_eu": _source(
        "tech_eu", "https://tech.eu", "/news",
        r"https://tech\.eu/\d{4}/\d{2}/\d{2}/[^/\s]+/?",
        r'https://tech\.eu/\d{4}/\d{2}/\d{2}/[^\s)"]+',
    ),
    "eu_startups": _source(
        "eu_startups", "https://www.eu-startups.com", "/category/news",
        r"https://www\.eu-startups\.com/\d{4}/\d{2}/[^/\s]+/?",
        r'https://www\.eu-startups\.com/\d{4}/\d{2}/[^\s)"]+',
    ),
    "silicon_canals": _source(
        "silicon_canals", "https://siliconcanals.com", "/news",
        r"https://siliconcanals\.com/news/[^/\s]+/?",
        r'https://siliconcanals\.com/news/[^\s)"]+',
    ),
    "maddyness": _source(
        "maddyness", "https://www.maddyness.com", "/uk/category/startups",
        r"https://www\.maddyness\.com/uk/\d{4}/\d{2}/\d{2}/[^/\s]+/?",
        r'https://www\.maddyness\.com/uk/\d{4}/\d{2}/\d{2}/[^\s)"]+',
    ),
    "bpifrance_hub": _source(
        "bpifrance_hub", "https://lehub.bpifrance.fr", "/actualites",
        r"https://lehub\.bpifrance\.fr/[^/\s]+/?",
        r'https://lehub\.bpifrance\.fr/[^\s)"]+',
    ),
    "bpifrance_big": _source(
        "bpifrance_big", "https://bigmedia.bpifrance.fr", "/decryptages",
        r"https://bigmedia\.bpifrance\.fr/nos-dossiers/[^/\s]+/?",
        r'https://bigmedia\.bpifrance\.fr/nos-dossiers/[^\s)"]+',
    ),
}

_TRAILING_JUNK = re.compile(r'[)\]"]+$')


async def discover_source_articles(
    source: NewsSource, client: FirecrawlClient, limit: int = MAX_URLS_PER_SOURCE,
) -> list[str]:
    """Find article URLs on a source's listing page.

    Uses Firecrawl's site map first; when that fails, scrapes the listing page
    and pulls article links out of its markdown.
    """
    url = source.listing_url
    log.info("Discovering articles from %s", source.name)
    found: list[str] = []

    try:
        mapped = await client.map(url, search="articles", limit=50)
    except (httpx.HTTPError, ValueError) as exc:
        log.warning("[%s] Map request failed: %s", source.name, exc)
        mapped = {}

    if mapped.get("success") and mapped.get("links"):
        found = [u for u in mapped["links"] if isinstance(u, str) and source.is_article(u)]
        log.info("[%s] Found %d article URLs from map", source.name, len(found))
    else:
        log.info("[%s] Map failed, trying scrape method", source.name)
        try:
            page = await client.scrape(url)
        except (httpx.HTTPError, ValueError) as exc:
            log.warning("[%s] Listing scrape failed: %s", source.name, exc)
            page = {}
        markdown = _markdown_of(page)
        if page.get("success") and markdown:
            links = (_TRAILING_JUNK.sub("", u) for u in source.link_pattern.findall(markdown))
            found = [u for u in links if source.is_article(u)]
            log.info("[%s] Found %d article URLs from scrape", source.name, len(found))

    unique = list(dict.fromkeys(u[:-1] if u.endswith("/") else u for u in found))
    return unique[:limit]


def _meta(metadata: dict[str, Any], key: str) -> str | None:
    value = metadata.get(key)
    if isinstance(value, list):
        value = ", ".join(str(v) for v in value if v)
    if not value:
        return None
    return str(value).strip() or None


def parse_article_metadata(url: str, source: str, data: dict[str, Any] | None) -> NewsArticle:
    """Build an article record from a Firecrawl scrape ``data`` block."""
    data = data or {}
    metadata = data.get("metadata") or {}
    markdown = data.get("markdown") or ""

    author = _meta(metadata, "author")
    authors = [a.strip() for a in re.split(r"[,&]", author) if a.strip()] if author else []
    keywords = _meta(metadata, "keywords")
    tags = [t.strip() for t in keywords.split(",") if t.strip()] if keywords else []

    return NewsArticle(
        source=source,
        url=url,
        title=_meta(metadata, "title"),
        published_date=_meta(metadata, "publishedTime"),
        authors=authors,
        section=None,
        tags=tags[:MAX_TAGS],
        is_pro=source == "sifted" and ("Sifted Pro" in markdown or "Pro members" in markdown),
        excerpt=_meta(metadata, "description"),
    )


async def scrape_source_articles(
    urls: list[str],
    source: str,
    client: FirecrawlClient,
    batch_size: int = 5,
    delay: float = 0.5,
) -> list[NewsArticle]:
    """Scrape each discovered URL into an article record, skipping failures."""

    async def _one(url: str) -> NewsArticle | None:
        try:
            payload = await client.scrape(url)
        except (httpx.HTTPError, ValueError) as exc:
            log.warning("[%s] Error scraping %s: %s", source, url, exc)
            return None
        if payload.get("success") and payload.get("data"):
            return parse_article_metadata(url, source, payload["data"])
        return None

    results = await _run_batches(urls, _one, batch_size, delay)
    return [a for a in results if a is not None]


# ---------------------------------------------------------------------------
# Date filtering
# ---------------------------------------------------------------------------


def _parse_date(value: str) -> datetime | None:
    text = value.strip()
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        try:
            parsed = parsedate_to_datetime(text)
        except (TypeError, ValueError, IndexError):
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def filter_recent_articles(
    articles: list[NewsArticle], days: int = 7, now: datetime | None = None,
) -> list[NewsArticle]:
    """Drop articles published before the cutoff; undated or unparseable ones are kept."""
    cutoff = (now or datetime.now(UTC)) - timedelta(days=days)
    if cutoff.tzinfo is None:
        cutoff = cutoff.replace(tzinfo=UTC)
    recent = []
    for article in articles:
        published = _parse_date(article.published_date) if article.published_date else None
        if published is None or published >= cutoff:
            recent.append(article)
    return recent


# ---------------------------------------------------------------------------
# Daily crawl
# ---------------------------------------------------------------------------


async def run_daily_scrape(
    session: Session,
    client: FirecrawlClient,
    sources: dict[str, NewsSource] | None = None,
    batch_delay: float = 0.5,
    source_delay: float = 1.0,
    days: int = 7,
) -> dict[str, Any]:
    """Discover, scrape and store the last week's articles from every source."""
    sources = SOURCES if sources is None else sources
    log.info("Starting daily EU startup news scrape (%d sources)", len(sources))
    started = time.monotonic()

    collected: list[NewsArticle] = []
    per_source: dict[str, dict[str, int]] = {}
    for key, source in sources.items():
        try:
            urls = await discover_source_articles(source, client)
            if not urls:
                log.info("[%s] No articles discovered, skipping", source.name)
                per_source[key] = {"discovered": 0, "scraped": 0}
                continue
            articles = await scrape_source_articles(urls, source.name, client, delay=batch_delay)
            collected.extend(articles)
            per_source[key] = {"discovered": len(urls), "scraped": len(articles)}
            log.info("[%s] Scraped %d/%d articles", source.name, len(articles), len(urls))
            if source_delay > 0:
                await asyncio.sleep(source_delay)
        except Exception as exc:
            log.warning("[%s] Source error: %s", source.name, exc)
            per_source[key] = {"discovered": 0, "scraped": 0}

    recent = filter_recent_articles(collected, days=days)
    log.info("%d of %d articles from the last %d days", len(recent), len(collected), days)

    counts = services.upsert_articles(session, recent)
    duration = round(time.monotonic() - started, 1)
    log.info(
        "Daily scrape completed in %.1fs: %d saved, %d db errors",
        duration, counts["inserted"] + counts["updated"], counts["errors"],
    )
    return {
        "success": True,
        "stats": {
            "sources": per_source,
            "totalScraped": len(collected),
            "recentArticles": len(recent),
            "savedToDb": counts["inserted"] + counts["updated"],
            "dbErrors": counts["errors"],
            "durationSeconds": duration,
        },
        "articles": [a.model_dump() for a in recent],
    }


# ---------------------------------------------------------------------------
# HTML to text
# ---------------------------------------------------------------------------

_BLOCK_FORMAT = {
    "h1": ("# ", "\n\n"),
    "h2": ("## ", "\n\n"),
    "h3": ("### ", "\n\n"),
    "p": ("", "\n\n"),
    "li": ("- ", "\n"),
}


def _render(el: etree._Element, out: list[str]) -> None:
    tag = el.tag if isinstance(el.tag, str) else None
    if tag == "br":
        out.append("\n")
    elif tag in _BLOCK_FORMAT:
        prefix, suffix = _BLOCK_FORMAT[tag]
        out.append(f"{prefix}{' '.join(el.text_content().split())}{suffix}")
    elif tag is not None:
        if el.text:
            out.append(el.text)
        for child in el:
            _render(child, out)
    if el.tail:
        out.append(el.tail)


def html_to_text(raw_html: str) -> str:
    """Convert an HTML fragment to markdown-ish plain text.

    Headings become ``#`` lines, list items ``- `` lines, links keep only
    their text, and scripts and styles are dropped.
    """
    if not raw_html or not raw_html.strip():
        return ""
    try:
        root = lxml_html.fragment_fromstring(raw_html, create_parent="div")
    except (etree.ParserError, etree.XMLSyntaxError, ValueError):
        return ""
    for el in list(root.iter("script", "style")):
        el.drop_tree()

    out: list[str] = []
    if root.text:
        out.append(root.text)
    for child in root:
        _render(child, out)
    text = "\n".join(line.strip() for line in "".join(out).replace("\xa0", " ").splitlines())
    return re.sub(r"\n{3,}", "\n\n", text).strip()
