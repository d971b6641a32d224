"""Integration tests for the FastAPI endpoints.

Uses TestClient with an in-memory database; LLM, scraping and outbound
calls are patched at the route module.
"""
from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fundradar.errors import ClusteringError
from fundradar.models import Article, Base
from fundradar.schemas import (
    ClusteringResult,
    ClusteringStats,
    ClusterResult,
    ScoreBreakdown,
    Startup,
    StartupClusterMatch,
)
from fundradar.scoring import config_to_weights, default_config

CSV = b"Name,Website,Tags,Stage\nAcme,acme.io,\"AI, Legal\",Seed\nBeta,beta.io,Fintech,Series A\n"


@pytest.fixture()
def test_db():
    """In-memory SQLite shared across connections via StaticPool."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return engine, TestSession


@pytest.fixture()
def client(test_db, tmp_path, monkeypatch):
    """FastAPI TestClient using the in-memory database."""
    monkeypatch.setenv("FUNDRADAR_DB", str(tmp_path / "lifespan.db"))
    engine, TestSession = test_db
    from fundradar.app import app, db_session

    def override_db_session():
        session = TestSession()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[db_session] = override_db_session
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c, TestSession
    app.dependency_overrides.clear()


@pytest.fixture()
def seeded_client(client):
    """Client with two startups imported for ``alice`` and three stored articles."""
    c, TestSession = client
    resp = c.post(
        "/api/startups/import",
        files={"file": ("startups.csv", CSV, "text/csv")},
        headers={"X-User-Id": "alice"},
    )
    assert resp.status_code == 200
    now = datetime.now(UTC).replace(tzinfo=None)
    session = TestSession()
    session.add_all([
        Article(source="sifted", url="https://sifted.eu/articles/a", title="AI legal round",
                excerpt="Acme raises", scraped_at=now),
        Article(source="tech_eu", url="https://tech.eu/2025/01/01/b", title="Fintech wave",
                scraped_at=now - timedelta(days=1)),
        Article(source="sifted", url="https://sifted.eu/articles/old", title="Old news",
                scraped_at=now - timedelta(days=40)),
    ])
    session.commit()
    session.close()
    return c, TestSession


def _clustering_result() -> ClusteringResult:
    return ClusteringResult(
        clusters=[ClusterResult(id=1, name="AI Legal Tech", trend_score=80, parent_category="saas")],
        startup_matches=[StartupClusterMatch(
            startup=Startup(name="Acme"),
            investment_score=72,
            score_breakdown=ScoreBreakdown(trend_alignment=30, market_timing=20, sector_fit=22),
        )],
        stats=ClusteringStats(total_articles=1, total_startups=1, clusters_created=1, startups_matched=1),
    )


SCRAPED = [{"url": "https://sifted.eu/articles/a", "title": "AI legal round", "content": "..."}]


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------


class TestErrorEnvelope:
    def test_unknown_route(self, client):
        c, _ = client
        resp = c.get("/api/nope")
        assert resp.status_code == 404
        assert resp.json() == {"success": False, "error": "Not Found"}

    def test_validation_error_is_400(self, client):
        c, _ = client
        resp = c.post("/api/scoring/tier", json={})
        assert resp.status_code == 400
        body = resp.json()
        assert body["success"] is False
        assert body["error"].startswith("Invalid request: investmentScore")

    def test_missing_configuration_is_500(self, client, monkeypatch):
        c, _ = client
        monkeypatch.delenv("FIRECRAWL_API_KEY", raising=False)
        resp = c.post("/api/scrape-articles", json={"articles": []})
        assert resp.status_code == 500
        assert resp.json() == {"success": False, "error": "FIRECRAWL_API_KEY not configured"}

    def test_unexpected_error_uses_envelope(self, client, monkeypatch):
        from fundradar.app import app

        monkeypatch.setenv("LLM_PROVIDER", "bogus")
        with TestClient(app, raise_server_exceptions=False) as c:
            resp = c.post("/api/cluster-startups", json={
                "scrapedArticles": SCRAPED, "startups": [{"name": "Acme"}],
            })
        assert resp.status_code == 500
        assert resp.json() == {"success": False, "error": "Unknown LLM provider: 'bogus'"}

    def test_corrupt_xlsx_is_400(self, client):
        c, _ = client
        resp = c.post(
            "/api/startups/import",
            files={"file": ("s.xlsx", b"not a zip", "application/octet-stream")},
        )
        assert resp.status_code == 400
        body = resp.json()
        assert body["success"] is False
        assert body["error"].startswith("Could not read XLSX file")


# ---------------------------------------------------------------------------
# Clustering
# ---------------------------------------------------------------------------


class TestClusterEndpoint:
    @pytest.mark.parametrize("payload,message", [
        ({}, "Scraped articles array is required"),
        ({"scrapedArticles": [], "startups": [{"name": "Acme"}]}, "Scraped articles array is required"),
        ({"scrapedArticles": SCRAPED}, "Startups array is required"),
    ])
    def test_required_arrays(self, client, payload, message):
        c, _ = client
        resp = c.post("/api/cluster-startups", json=payload)
        assert resp.status_code == 400
        assert resp.json()["error"] == message

    def test_returns_camel_case_result(self, client):
        c, _ = client
        fake = AsyncMock(return_value=_clustering_result())
        with patch("fundradar.app.LLMClient"), patch("fundradar.app.cluster_startups", fake):
            resp = c.post("/api/cluster-startups", json={
                "scrapedArticles": SCRAPED,
                "startups": [{"name": "Acme", "businessType": "saas"}],
                "numClusters": 5,
                "scoringWeights": {"trendAlignment": 100},
            })
        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["startupMatches"][0]["investmentScore"] == 72
        assert data["startupMatches"][0]["scoreBreakdown"]["trendAlignment"] == 30
        assert data["stats"]["clustersCreated"] == 1

        args, kwargs = fake.await_args
        assert args[1][0].business_type == "saas"
        assert kwargs == {"num_clusters": 5, "weights": {"trendAlignment": 100}}

    def test_gateway_error_status(self, client):
        c, _ = client
        fake = AsyncMock(side_effect=ClusteringError("Rate limit exceeded. Please try again later.", 429))
        with patch("fundradar.app.LLMClient"), patch("fundradar.app.cluster_startups", fake):
            resp = c.post("/api/cluster-startups", json={
                "scrapedArticles": SCRAPED, "startups": [{"name": "Acme"}],
            })
        assert resp.status_code == 429
        assert resp.json() == {"success": False, "error": "Rate limit exceeded. Please try again later."}

    def test_missing_llm_key(self, client, monkeypatch):
        c, _ = client
        monkeypatch.delenv("LLM_PROVIDER", raising=False)
        monkeypatch.delenv("AI_GATEWAY_API_KEY", raising=False)
        resp = c.post("/api/cluster-startups", json={
            "scrapedArticles": SCRAPED, "startups": [{"name": "Acme"}],
        })
        assert resp.status_code == 500
        assert resp.json()["error"] == "AI_GATEWAY_API_KEY not configured"


class TestAnalyzeEndpoint:
    def test_no_startups(self, client):
        c, _ = client
        resp = c.post("/api/analyze", headers={"X-User-Id": "nobody"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "No startups uploaded. Import a CSV first."

    def test_no_articles(self, client):
        c, _ = client
        c.post("/api/startups/import", files={"file": ("s.csv", CSV, "text/csv")})
        resp = c.post("/api/analyze")
        assert resp.status_code == 400
        assert resp.json()["error"] == "No articles available. Run the daily scrape first."

    def test_uses_recent_articles_and_default_weights(self, seeded_client):
        c, _ = seeded_client
        fake = AsyncMock(return_value=_clustering_result())
        with patch("fundradar.app.LLMClient"), patch("fundradar.app.cluster_startups", fake):
            resp = c.post("/api/analyze", json={"days": 7}, headers={"X-User-Id": "alice"})
        assert resp.status_code == 200

        args, kwargs = fake.await_args
        articles, startups = args[0], args[1]
        assert {a.url for a in articles} == {"https://sifted.eu/articles/a", "https://tech.eu/2025/01/01/b"}
        assert articles[0].content == "AI legal round. Acme raises"
        assert [s.name for s in startups] == ["Acme", "Beta"]
        assert kwargs["weights"] == config_to_weights(default_config())


# ---------------------------------------------------------------------------
# Startups & articles
# ---------------------------------------------------------------------------


class TestStartupEndpoints:
    def test_import_and_list_per_user(self, client):
        c, _ = client
        resp = c.post(
            "/api/startups/import",
            files={"file": ("startups.csv", CSV, "text/csv")},
            headers={"X-User-Id": "alice"},
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["totalImported"] == 2
        assert data["startups"][0]["tags"] == "AI, Legal"
        assert data["startups"][1]["maturity"] == "series-a"

        assert c.get("/api/startups", headers={"X-User-Id": "alice"}).json()["total"] == 2
        assert c.get("/api/startups", headers={"X-User-Id": "bob"}).json() == {"startups": [], "total": 0}

    def test_reimport_replaces(self, client):
        c, _ = client
        headers = {"X-User-Id": "alice"}
        c.post("/api/startups/import", files={"file": ("a.csv", CSV, "text/csv")}, headers=headers)
        c.post("/api/startups/import", files={"file": ("b.csv", b"Name\nGamma\n", "text/csv")}, headers=headers)
        data = c.get("/api/startups", headers=headers).json()
        assert [s["name"] for s in data["startups"]] == ["Gamma"]

    def test_anonymous_default_user(self, client):
        c, _ = client
        c.post("/api/startups/import", files={"file": ("a.csv", CSV, "text/csv")})
        assert c.get("/api/startups").json()["total"] == 2
        assert c.get("/api/startups", headers={"X-User-Id": "anonymous"}).json()["total"] == 2

    def test_unsupported_file_type(self, client):
        c, _ = client
        resp = c.post("/api/startups/import", files={"file": ("s.txt", b"Name\nAcme\n", "text/plain")})
        assert resp.status_code == 400
        assert resp.json() == {"success": False, "error": "Only .csv and .xlsx files are supported"}

    def test_csv_without_name_column(self, client):
        c, _ = client
        resp = c.post("/api/startups/import", files={"file": ("s.csv", b"Website\nacme.io\n", "text/csv")})
        assert resp.status_code == 400
        assert "Name" in resp.json()["error"]


class TestArticleEndpoints:
    def test_list_all(self, seeded_client):
        c, _ = seeded_client
        data = c.get("/api/articles").json()
        assert data["total"] == 3
        item = data["articles"][0]
        assert item["url"] == "https://sifted.eu/articles/a"
        assert {"id", "source", "title", "authors", "tags", "is_pro", "scraped_at"} <= set(item)

    def test_filters(self, seeded_client):
        c, _ = seeded_client
        assert c.get("/api/articles", params={"days": 7}).json()["total"] == 2
        data = c.get("/api/articles", params={"source": "sifted"}).json()
        assert [a["url"] for a in data["articles"]] == [
            "https://sifted.eu/articles/a", "https://sifted.eu/articles/old",
        ]

    def test_days_must_be_positive(self, seeded_client):
        c, _ = seeded_client
        assert c.get("/api/articles", params={"days": 0}).status_code == 400


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


class TestScoringEndpoints:
    def test_presets(self, client):
        c, _ = client
        data = c.get("/api/scoring/presets").json()
        assert set(data["presets"]) == {"market-focused", "balanced", "startup-focused"}
        assert data["default"]["normalizeWeights"] is True
        assert data["default"]["metrics"][0]["maxPoints"] == 40

    def test_weights_normalized(self, client):
        c, _ = client
        config = {"metrics": [
            {"id": "trendAlignment", "name": "Trend", "category": "market", "weight": 1},
            {"id": "sectorFit", "name": "Sector", "category": "market", "weight": 7},
            {"id": "teamStrength", "name": "Team", "category": "startup", "weight": 9, "enabled": False},
        ]}
        data = c.post("/api/scoring/weights", json=config).json()
        assert data["weights"] == {"trendAlignment": 13, "sectorFit": 88}
        assert [m["weight"] for m in data["metrics"]] == [13, 88, 9]

    @pytest.mark.parametrize("score,tier", [(85, "Hot"), (60, "Strong"), (10, "Minimal")])
    def test_tier(self, client, score, tier):
        c, _ = client
        resp = c.post("/api/scoring/tier", json={"investmentScore": score})
        assert resp.json() == {"investmentScore": score, "tier": tier}


# ---------------------------------------------------------------------------
# Scraping & founders
# ---------------------------------------------------------------------------


class TestScrapeEndpoints:
    def test_articles_required(self, client):
        c, _ = client
        resp = c.post("/api/scrape-articles", json={})
        assert resp.status_code == 400
        assert resp.json()["error"] == "Articles array is required"

    def test_lightpanda_requires_url(self, client):
        c, _ = client
        resp = c.post("/api/scrape-lightpanda", json={"url": "  "})
        assert resp.status_code == 400
        assert resp.json()["error"] == "URL is required"

    def test_lightpanda_not_configured(self, client, monkeypatch):
        c, _ = client
        monkeypatch.delenv("LIGHTPANDA_TOKEN", raising=False)
        resp = c.post("/api/scrape-lightpanda", json={"url": "example.com"})
        assert resp.status_code == 500
        assert resp.json()["error"] == "Lightpanda not configured"

    def test_lightpanda_adds_scheme(self, client, monkeypatch):
        c, _ = client
        monkeypatch.setenv("LIGHTPANDA_TOKEN", "tok")
        fake = AsyncMock(return_value={"success": True, "data": {"markdown": "hi"}})
        with patch("fundradar.app.scrape_with_lightpanda", fake):
            resp = c.post("/api/scrape-lightpanda", json={"url": "example.com", "waitFor": 500})
        assert resp.json()["success"] is True
        fake.assert_awaited_once_with("https://example.com", "tok", 500, None)

    def test_profiles_required(self, client):
        c, _ = client
        resp = c.post("/api/analyze-linkedin-profiles", json={"profiles": []})
        assert resp.status_code == 400
        assert resp.json()["error"] == "Profiles array is required"


# ---------------------------------------------------------------------------
# Outreach
# ---------------------------------------------------------------------------


class TestOutreachEndpoints:
    def test_draft(self, client):
        c, _ = client
        match = {
            "startup": {"name": "Acme"},
            "clusters": [{"clusterId": 1, "clusterName": "AI Legal Tech", "score": 0.9}],
        }
        resp = c.post("/api/outreach/draft", json={"match": match, "senderName": "Sam"})
        data = resp.json()
        assert data["subject"] == "Investment Inquiry - Acme"
        assert "your work in AI Legal Tech" in data["body"]
        assert data["body"].endswith("Sam")

    def test_send_email_validation(self, client):
        c, _ = client
        resp = c.post("/api/send-outreach-email", json={"to": "bad", "subject": "Hi", "body": "Body"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "Invalid recipient email format"

    def test_send_email_passes_fields(self, client):
        c, _ = client
        fake = AsyncMock(return_value={"success": True, "data": {"id": "e1"}})
        with patch("fundradar.app.send_outreach_email", fake):
            resp = c.post("/api/send-outreach-email", json={
                "to": "founder@acme.io", "subject": "Hi", "body": "Body",
                "senderName": "Sam", "startupName": "Acme",
            })
        assert resp.json() == {"success": True, "data": {"id": "e1"}}
        fake.assert_awaited_once_with(
            "founder@acme.io", "Hi", "Body", sender_name="Sam", reply_to="", startup_name="Acme",
        )

    def test_airtable_requires_webhook(self, client):
        c, _ = client
        resp = c.post("/api/airtable/export", json={"webhookUrl": "", "startups": []})
        assert resp.status_code == 400
        assert resp.json()["error"] == "No webhook URL configured"

    def test_airtable_failure_is_502(self, client):
        c, _ = client
        fake = AsyncMock(return_value={"success": False, "error": "HTTP 500"})
        with patch("fundradar.app.send_to_airtable", fake):
            resp = c.post("/api/airtable/export", json={
                "webhookUrl": "https://hooks.airtable.test/x", "startups": [{"name": "Acme"}],
            })
        assert resp.status_code == 502
        assert resp.json() == {"success": False, "error": "HTTP 500"}
