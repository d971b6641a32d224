from __future__ import annotations

import csv
import io
import logging
import re
import zipfile
from pathlib import Path

import openpyxl
from openpyxl.utils.exceptions import InvalidFileException

from fundradar.errors import StartupImportError
from fundradar.schemas import BUSINESS_TYPES, Startup

log = logging.getLogger(__name__)


def _s(value: object) -> str:
    """Safely coerce cell value to stripped string."""
    if value is None:
        return ""
    return str(value).strip()


def _col(row: list, idx: int | None) -> str:
    """Safely get a stripped column value; empty when the column is absent."""
    if idx is None or idx >= len(row):
        return ""
    return _s(row[idx]).strip("'\"").strip()


# ---------------------------------------------------------------------------
# Header mapping
# ---------------------------------------------------------------------------

# Startup field -> substrings that identify its column in a lower-cased header.
# Needles are tried in order; for each needle the leftmost unclaimed header wins.
_HEADER_NEEDLES: dict[str, tuple[str, ...]] = {
    "name": ("name", "startup", "company"),
    "website": ("website", "url", "site"),
    "tags": ("tag", "category", "sector", "industry"),
    "linkedin": ("linkedin",),
    "email": ("email", "e-mail", "mail"),
    "location": ("location", "city", "country", "hq", "headquarter"),
    "maturity": ("stage", "maturity", "round"),
    "amount_raised": ("funding", "raised", "amount"),
    "business_type": ("type", "model"),
    "blurb": ("blurb", "description", "about", "pitch", "summary"),
    "team": ("team", "founder"),
    "market": ("market",),
    "value_prop": ("value",),
    "competition": ("compet",),
}

# Columns that must never be claimed by the field they would otherwise match
_HEADER_EXCLUDES: dict[str, tuple[str, ...]] = {
    "name": ("founder",),
    "website": ("linkedin",),
    "email": ("linkedin",),
    "business_type": ("stage",),
}


def _clean_header(cell: object) -> str:
    return re.sub(r"['\"]", "", _s(cell)).strip().lower()


def map_headers(headers: list[str]) -> dict[str, int]:
    """Fuzzy-match header cells to Startup fields by substring.

    Raises StartupImportError if no column looks like a startup name.
    """
    cleaned = [_clean_header(h) for h in headers]
    mapping: dict[str, int] = {}
    claimed: set[int] = set()
    for field, needles in _HEADER_NEEDLES.items():
        excludes = _HEADER_EXCLUDES.get(field, ())
        idx = next(
            (
                i for n in needles for i, header in enumerate(cleaned)
                if i not in claimed and n in header and not any(x in header for x in excludes)
            ),
            None,
        )
        if idx is not None:
            mapping[field] = idx
            claimed.add(idx)
    if "name" not in mapping:
        raise StartupImportError('CSV must have a "Name" or "Startup Name" column')
    return mapping


# ---------------------------------------------------------------------------
# Value normalization
# ---------------------------------------------------------------------------

_MATURITY_PATTERNS: list[tuple[str, str]] = [
    (r"pre[\s_-]?seed", "pre-seed"),
    (r"series[\s_-]?[c-z]\b|series[\s_-]?[c-z]\+|c\+", "series-c+"),
    (r"series[\s_-]?b\b", "series-b"),
    (r"series[\s_-]?a\b", "series-a"),
    (r"\bseed\b", "seed"),
    (r"growth|late|ipo", "growth"),
]

_BUSINESS_TYPE_ALIASES: dict[str, str] = {
    "software": "saas", "b2b software": "saas", "ai": "saas",
    "bio": "biotech", "health": "biotech", "healthtech": "biotech", "medtech": "biotech",
    "foodtech": "food", "agritech": "food", "agtech": "food",
    "finance": "fintech", "insurtech": "fintech",
    "e-commerce": "marketplace", "ecommerce": "marketplace",
    "deep tech": "deeptech", "robotics": "hardware", "iot": "hardware",
}


def normalize_maturity(value: str | None) -> str | None:
    """Fold a free-text funding stage onto the maturity enum, None if unknown."""
    text = (value or "").strip().lower()
    if not text:
        return None
    for pattern, stage in _MATURITY_PATTERNS:
        if re.search(pattern, text):
            return stage
    return None


def normalize_business_type(value: str | None) -> str | None:
    """Fold a free-text business type onto the enum; unknown non-empty values become 'other'."""
    text = (value or "").strip().lower()
    if not text:
        return None
    if text in BUSINESS_TYPES:
        return text
    if text in _BUSINESS_TYPE_ALIASES:
        return _BUSINESS_TYPE_ALIASES[text]
    for bt in BUSINESS_TYPES:
        if bt != "other" and bt in text:
            return bt
    return "other"


# ---------------------------------------------------------------------------
# Row parsing
# ---------------------------------------------------------------------------


def _row_to_startup(row: list, mapping: dict[str, int]) -> Startup | None:
    name = _col(row, mapping.get("name"))
    if not name:
        return None
    fields = {
        field: (_col(row, idx) or None)
        for field, idx in mapping.items() if field != "name"
    }
    raw_stage = fields.get("maturity")
    stage = normalize_maturity(raw_stage)
    if raw_stage and stage is None:
        log.debug("Unrecognized stage %r for %s", raw_stage, name)
    fields["maturity"] = stage
    fields["business_type"] = normalize_business_type(fields.get("business_type"))
    return Startup(name=name, **fields)


def _parse_rows(rows: list[list]) -> list[Startup]:
    if len(rows) < 2:
        return []
    mapping = map_headers(rows[0])
    startups: list[Startup] = []
    for row in rows[1:]:
        if not row or not any(_s(c) for c in row):
            continue
        startup = _row_to_startup(row, mapping)
        if startup is not None:
            startups.append(startup)
    return startups


def parse_csv(text: str) -> list[Startup]:
    """Parse uploaded CSV text into startups.

    The first row is the header. Quoted fields may contain commas. Rows with
    an empty name are skipped.
    """
    text = text.lstrip("\ufeff").strip()
    reader = csv.reader(io.StringIO(text), skipinitialspace=True)
    rows = [row for row in reader]
    startups = _parse_rows(rows)
    log.info("Parsed %d startups from CSV", len(startups))
    return startups


def parse_xlsx(file_path: str | Path) -> list[Startup]:
    """Parse the first worksheet of an XLSX file using the same header rules as CSV."""
    try:
        wb = openpyxl.load_workbook(Path(file_path), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError) as exc:
        raise StartupImportError(f"Could not read XLSX file: {exc}") from exc
    try:
        ws = wb.worksheets[0]
        rows = [list(r) for r in ws.iter_rows(values_only=True)]
    finally:
        wb.close()
    startups = _parse_rows(rows)
    log.info("Parsed %d startups from XLSX", len(startups))
    return startups
