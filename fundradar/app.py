from __future__ import annotations

import logging
import os
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Generator

from fastapi import Depends, FastAPI, File, Header, HTTPException, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from fundradar import services
from fundradar.clusterer import LLMClient, cluster_startups
from fundradar.db import init_db, session_generator
from fundradar.errors import FundRadarError, InvalidRequestError
from fundradar.founders import DustClient, analyze_profiles
from fundradar.importer import parse_csv, parse_xlsx
from fundradar.lightpanda import lightpanda_token, scrape_with_lightpanda
from fundradar.outreach import generate_email_draft, send_outreach_email, send_to_airtable
from fundradar.schemas import (
    AirtableExportRequest,
    AnalyzeRequest,
    ClusteringRequest,
    EmailDraftRequest,
    FounderAnalysisRequest,
    LightpandaRequest,
    OutreachEmailRequest,
    ScoringConfig,
    ScrapeArticlesRequest,
    StartupImportResult,
    TierRequest,
    dump,
)
from fundradar.scoring import (
    SCORING_PRESETS,
    config_to_weights,
    default_config,
    investment_tier,
    normalize_weights,
)
from fundradar.scraper import FirecrawlClient, run_daily_scrape, scrape_articles
from fundradar.utils import ensure_scheme

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="FundRadar",
    version="0.1.0",
    description=(
        "Trend-driven startup scoring for venture investors. "
        "Scrapes EU startup news, clusters it into trends with an LLM, and scores "
        "uploaded startups against those trends. All endpoints return JSON. "
        "Callers are identified by the X-User-Id header; there is no authentication."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Clustering", "description": "LLM trend clustering and startup matching. Requires an LLM API key."},
        {"name": "Scraping", "description": "Article scraping via Firecrawl and Lightpanda."},
        {"name": "Founders", "description": "LinkedIn founder analysis via a Dust agent."},
        {"name": "Startups", "description": "Import and list the caller's startups."},
        {"name": "Articles", "description": "Browse stored news articles."},
        {"name": "Scoring", "description": "Scoring presets, weight normalization and tiers."},
        {"name": "Outreach", "description": "Email drafts, sending, and Airtable export."},
    ],
)


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"success": False, "error": message}, status_code=status_code)


@app.exception_handler(FundRadarError)
async def _fundradar_error(request: Request, exc: FundRadarError) -> JSONResponse:
    if exc.status_code >= 500:
        log.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return _error(exc.status_code, exc.message)


@app.exception_handler(StarletteHTTPException)
async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return _error(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if errors:
        first = errors[0]
        loc = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"Invalid request: {loc + ': ' if loc else ''}{first.get('msg', 'invalid value')}"
    else:
        message = "Invalid request"
    return _error(400, message)


@app.exception_handler(Exception)
async def _unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    log.exception("%s %s failed", request.method, request.url.path)
    return _error(500, str(exc) or "Unknown error")


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def current_user(x_user_id: str | None = Header(default=None)) -> str:
    return (x_user_id or "").strip() or "anonymous"


# ---------------------------------------------------------------------------
# Routes: Clustering
# ---------------------------------------------------------------------------


@app.post("/api/cluster-startups", tags=["Clustering"],
          summary="Cluster articles into trends and score startups against them")
async def cluster_startups_route(body: ClusteringRequest):
    if not body.scraped_articles:
        raise InvalidRequestError("Scraped articles array is required")
    if not body.startups:
        raise InvalidRequestError("Startups array is required")
    log.info("Processing %d articles and %d startups",
             len(body.scraped_articles), len(body.startups))
    result = await cluster_startups(
        body.scraped_articles, body.startups, LLMClient(),
        num_clusters=body.num_clusters, weights=body.scoring_weights,
    )
    return dump(result)


@app.post("/api/analyze", tags=["Clustering"],
          summary="Score the caller's stored startups against recently stored articles")
async def analyze(
    body: AnalyzeRequest | None = None,
    session: Session = Depends(db_session),
    user_id: str = Depends(current_user),
):
    body = body or AnalyzeRequest()
    startups = services.list_user_startups(session, user_id)
    if not startups:
        raise InvalidRequestError("No startups uploaded. Import a CSV first.")
    rows = services.list_articles(session, days=body.days)
    if not rows:
        raise InvalidRequestError("No articles available. Run the daily scrape first.")
    weights = config_to_weights(body.scoring_config or default_config())
    result = await cluster_startups(
        services.articles_as_scraped(rows), startups, LLMClient(),
        num_clusters=body.num_clusters, weights=weights,
    )
    return dump(result)


# ---------------------------------------------------------------------------
# Routes: Scraping
# ---------------------------------------------------------------------------


@app.post("/api/scrape-articles", tags=["Scraping"], summary="Scrape full text for known articles")
async def scrape_articles_route(body: ScrapeArticlesRequest):
    if body.articles is None:
        raise InvalidRequestError("Articles array is required")
    async with FirecrawlClient() as client:
        result = await scrape_articles(body.articles, client)
    return result.model_dump(by_alias=True, exclude_none=True)


@app.post("/api/scrape-sifted-daily", tags=["Scraping"],
          summary="Discover, scrape and store the last week's articles from all news sources")
async def scrape_daily(session: Session = Depends(db_session)):
    async with FirecrawlClient() as client:
        return await run_daily_scrape(session, client)


@app.post("/api/scrape-lightpanda", tags=["Scraping"], summary="Render one page in a Lightpanda cloud browser")
async def scrape_lightpanda(body: LightpandaRequest):
    if not body.url.strip():
        raise InvalidRequestError("URL is required")
    token = lightpanda_token()
    url = ensure_scheme(body.url)
    log.info("Scraping with Lightpanda: %s", url)
    return await scrape_with_lightpanda(url, token, body.wait_for, body.only_main_content)


# ---------------------------------------------------------------------------
# Routes: Founders
# ---------------------------------------------------------------------------


@app.post("/api/analyze-linkedin-profiles", tags=["Founders"],
          summary="Analyze founder LinkedIn profiles with a Dust agent")
async def analyze_linkedin_profiles(body: FounderAnalysisRequest):
    if not body.profiles:
        raise InvalidRequestError("Profiles array is required")
    async with DustClient() as client:
        result = await analyze_profiles(body.profiles, client)
    return dump(result)


# ---------------------------------------------------------------------------
# Routes: Startups & Articles
# ---------------------------------------------------------------------------


@app.post("/api/startups/import", tags=["Startups"],
          summary="Import startups from CSV or XLSX, replacing the caller's list")
async def import_startups(
    file: UploadFile = File(...),
    session: Session = Depends(db_session),
    user_id: str = Depends(current_user),
):
    filename = (file.filename or "").lower()
    content = await file.read()
    if filename.endswith(".csv"):
        startups = parse_csv(content.decode("utf-8-sig", errors="replace"))
    elif filename.endswith(".xlsx"):
        tmp_path = None
        try:
            with tempfile.NamedTemporaryFile(suffix=".xlsx", delete=False) as f:
                tmp_path = Path(f.name)
                f.write(content)
            startups = parse_xlsx(tmp_path)
        finally:
            if tmp_path:
                tmp_path.unlink(missing_ok=True)
    else:
        raise HTTPException(400, "Only .csv and .xlsx files are supported")

    total = services.replace_user_startups(session, user_id, startups)
    return dump(StartupImportResult(total_imported=total, startups=startups))


@app.get("/api/startups", tags=["Startups"], summary="List the caller's startups")
async def list_startups(
    session: Session = Depends(db_session),
    user_id: str = Depends(current_user),
):
    startups = services.list_user_startups(session, user_id)
    return {"startups": [dump(s) for s in startups], "total": len(startups)}


@app.get("/api/articles", tags=["Articles"], summary="List stored articles")
async def list_articles(
    days: int | None = Query(None, ge=1),
    source: str | None = Query(None),
    session: Session = Depends(db_session),
):
    rows = services.list_articles(session, days=days, source=source)
    return {"articles": [services.article_summary(r) for r in rows], "total": len(rows)}


# ---------------------------------------------------------------------------
# Routes: Scoring
# ---------------------------------------------------------------------------


@app.get("/api/scoring/presets", tags=["Scoring"], summary="Default scoring config and named presets")
async def scoring_presets():
    return {
        "default": dump(default_config()),
        "presets": {name: dump(cfg) for name, cfg in SCORING_PRESETS.items()},
    }


@app.post("/api/scoring/weights", tags=["Scoring"], summary="Normalize a scoring config into weights")
async def scoring_weights(body: ScoringConfig):
    metrics = normalize_weights(body.metrics) if body.normalize_weights else body.metrics
    return {
        "weights": config_to_weights(body),
        "metrics": [dump(m) for m in metrics],
    }


@app.post("/api/scoring/tier", tags=["Scoring"], summary="Investment tier for a score")
async def scoring_tier(body: TierRequest):
    return {"investmentScore": body.investment_score, "tier": investment_tier(body.investment_score)}


# ---------------------------------------------------------------------------
# Routes: Outreach
# ---------------------------------------------------------------------------


@app.post("/api/outreach/draft", tags=["Outreach"], summary="Draft an outreach email for a matched startup")
async def outreach_draft(body: EmailDraftRequest):
    return dump(generate_email_draft(body.match, body.sender_name))


@app.post("/api/send-outreach-email", tags=["Outreach"], summary="Send an outreach email via Resend")
async def send_outreach(body: OutreachEmailRequest) -> dict[str, Any]:
    return await send_outreach_email(
        body.to, body.subject, body.body,
        sender_name=body.sender_name, reply_to=body.reply_to, startup_name=body.startup_name,
    )


@app.post("/api/airtable/export", tags=["Outreach"], summary="Send startups to an Airtable webhook")
async def airtable_export(body: AirtableExportRequest):
    if not body.webhook_url.strip():
        raise InvalidRequestError("No webhook URL configured")
    result = await send_to_airtable(body.webhook_url.strip(), body.startups)
    if not result["success"]:
        return JSONResponse(result, status_code=502)
    return result


def main():
    import uvicorn
    logging.basicConfig(
        level=os.environ.get("FUNDRADAR_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("fundradar.app:app", host="127.0.0.1", port=8001, reload=True)
