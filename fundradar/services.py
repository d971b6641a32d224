"""Persistence helpers shared by the API routes and the daily scraper."""
from __future__ import annotations

import json
import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from fundradar.models import Article, UserStartup
from fundradar.schemas import NewsArticle, ScrapedArticle, Startup
from fundradar.utils import json_parse

log = logging.getLogger(__name__)

# Startup attributes stored column-for-column on UserStartup
STARTUP_FIELDS = (
    "website", "tags", "linkedin", "email", "blurb", "location", "maturity",
    "amount_raised", "business_type", "team", "market", "value_prop", "competition",
)

ARTICLE_FIELDS = ("source", "title", "published_date", "section", "is_pro", "excerpt")

# ---------------------------------------------------------------------------
# Articles
# ---------------------------------------------------------------------------


def article_to_news(row: Article) -> NewsArticle:
    return NewsArticle(
        source=row.source,
        url=row.url,
        title=row.title,
        published_date=row.published_date,
        authors=json_parse(row.authors_json, []),
        section=row.section,
        tags=json_parse(row.tags_json, []),
        is_pro=bool(row.is_pro),
        excerpt=row.excerpt,
    )


def article_summary(row: Article) -> dict[str, Any]:
    return {
        "id": row.id,
        **article_to_news(row).model_dump(),
        "scraped_at": row.scraped_at.isoformat() if row.scraped_at else None,
    }


def upsert_articles(session: Session, articles: list[NewsArticle]) -> dict[str, int]:
    """Insert or update articles keyed on ``url``.

    Returns ``{"inserted", "updated", "errors"}``. Within one call the last
    occurrence of a URL wins.
    """
    by_url: dict[str, NewsArticle] = {}
    errors = 0
    for article in articles:
        if not article.url:
            errors += 1
            continue
        by_url[article.url] = article
    if not by_url:
        return {"inserted": 0, "updated": 0, "errors": errors}

    existing = {
        row.url: row
        for row in session.execute(select(Article).where(Article.url.in_(by_url))).scalars()
    }
    inserted = updated = 0
    for url, article in by_url.items():
        row = existing.get(url)
        if row is None:
            row = Article(url=url)
            session.add(row)
            inserted += 1
        else:
            updated += 1
        for field in ARTICLE_FIELDS:
            setattr(row, field, getattr(article, field))
        row.authors_json = json.dumps(article.authors)
        row.tags_json = json.dumps(article.tags[:5])

    try:
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        log.warning("Failed to save %d articles: %s", len(by_url), exc)
        return {"inserted": 0, "updated": 0, "errors": errors + len(by_url)}
    log.info("Articles saved: %d inserted, %d updated", inserted, updated)
    return {"inserted": inserted, "updated": updated, "errors": errors}


def list_articles(
    session: Session, days: int | None = None, source: str | None = None,
) -> list[Article]:
    """Stored articles, newest scrape first, optionally limited to the last *days*."""
    stmt = select(Article).order_by(Article.scraped_at.desc(), Article.id.desc())
    if days is not None:
        cutoff = datetime.now(UTC).replace(tzinfo=None) - timedelta(days=days)
        stmt = stmt.where(Article.scraped_at >= cutoff)
    if source:
        stmt = stmt.where(Article.source == source)
    return list(session.execute(stmt).scalars())


def articles_as_scraped(articles: list[Article]) -> list[ScrapedArticle]:
    """Use stored title and excerpt as article content for clustering."""
    now = datetime.now(UTC).isoformat()
    return [
        ScrapedArticle(
            url=a.url,
            title=a.title or "",
            excerpt=a.excerpt or "",
            content=f"{a.title or ''}. {a.excerpt or ''}",
            scraped_at=now,
        )
        for a in articles
    ]


# ---------------------------------------------------------------------------
# User startups
# ---------------------------------------------------------------------------


def startup_from_row(row: UserStartup) -> Startup:
    return Startup(name=row.name, **{f: getattr(row, f) or None for f in STARTUP_FIELDS})


def replace_user_startups(session: Session, user_id: str, startups: list[Startup]) -> int:
    """Delete all of the user's startups, then insert *startups*. Returns the count stored."""
    session.execute(delete(UserStartup).where(UserStartup.user_id == user_id))
    for s in startups:
        session.add(UserStartup(
            user_id=user_id,
            name=s.name,
            **{f: getattr(s, f) or "" for f in STARTUP_FIELDS},
        ))
    session.commit()
    log.info("Stored %d startups for user %s", len(startups), user_id)
    return len(startups)


def list_user_startups(session: Session, user_id: str) -> list[Startup]:
    rows = session.execute(
        select(UserStartup).where(UserStartup.user_id == user_id).order_by(UserStartup.id)
    ).scalars()
    return [startup_from_row(r) for r in rows]
