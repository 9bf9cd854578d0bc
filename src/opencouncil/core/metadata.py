"""Derive town, board, category and meeting date from an object key."""

import logging
import re
from datetime import date
from typing import Dict, List, Optional

from .errors import MetadataError
from .models import ExtractedMetadata

logger = logging.getLogger(__name__)

STRUCTURED_CATEGORIES = ("minutes", "agendas", "budgets")
DEFAULT_CATEGORY = "document"

BOARD_SYNONYMS: Dict[str, List[str]] = {
    "Board of Selectmen": ["selectmen", "bos", "select board"],
    "Planning Board": ["planning"],
    "Zoning Board": ["zoning", "zba"],
    "School Board": ["school board", "school dist"],
    "Budget Committee": ["budget comm", "budget cmte"],
    "Conservation Commission": ["conservation"],
    "Library Trustees": ["library"],
    "Trustees of Trust Funds": ["trustee of trust", "trustees of trust"],
    "Fire Precinct": ["fire precinct", "fire comm"],
}

# Checked in order; first hit wins.
CATEGORY_KEYWORDS = [
    ("minutes", ["minute", "min_"]),
    ("agendas", ["agenda"]),
    ("financials", ["budget", "expenditure", "revenue"]),
    ("reports", ["report", "audit"]),
    ("ordinances", ["ordinance", "regulation", "policy"]),
    ("permits", ["permit", "application"]),
    ("warrants", ["warrant"]),
    ("tax_records", ["tax"]),
]

YEAR_PATTERN = re.compile(r"(19|20)\d{2}")
DATE_PATTERN = re.compile(r"(\d{1,2}[-_]\d{1,2}[-_]\d{2,4})|(\d{4}[-_]\d{1,2}[-_]\d{1,2})")
LEADING_YEAR = re.compile(r"^(\d{4})")


def detect_board(filename: str) -> Optional[str]:
    lower = filename.lower().replace("_", " ").replace("-", " ")
    for formal_name, keywords in BOARD_SYNONYMS.items():
        if any(keyword in lower for keyword in keywords):
            return formal_name
    return None


def detect_category(filename: str) -> str:
    lower = filename.lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(keyword in lower for keyword in keywords):
            return category
    return DEFAULT_CATEGORY


def detect_year(filename: str) -> Optional[int]:
    match = YEAR_PATTERN.search(filename)
    return int(match.group(0)) if match else None


def parse_meeting_date(filename: str) -> Optional[date]:
    """Find an embedded MM-DD-YY[YY] or YYYY-MM-DD date; invalid dates are ignored."""
    match = DATE_PATTERN.search(filename)
    if not match:
        return None

    parts = match.group(0).replace("_", "-").split("-")
    try:
        if len(parts[0]) == 4:
            year, month, day = int(parts[0]), int(parts[1]), int(parts[2])
        else:
            month, day = int(parts[0]), int(parts[1])
            year_text = parts[2]
            if len(year_text) == 2:
                year_text = ("19" if int(year_text) > 50 else "20") + year_text
            year = int(year_text)
        return date(year, month, day)
    except ValueError:
        logger.debug(f"Ignoring invalid date {match.group(0)!r} in {filename}")
        return None


def infer_metadata(filename: str, town: str = "unknown") -> ExtractedMetadata:
    """Filename heuristics: year, board synonyms and category keywords."""
    category = detect_category(filename)
    metadata = ExtractedMetadata(
        town=town,
        category=category,
        board=detect_board(filename),
        year=detect_year(filename),
        filename=filename,
    )
    return _apply_meeting_date(metadata)


def parse_source_key(source_key: str) -> ExtractedMetadata:
    """Parse a key such as `town/category/Board_Name/2024/file.pdf`.

    Raises:
        MetadataError: if the key has fewer than two path segments
    """
    parts = [part for part in source_key.split("/") if part]
    if len(parts) < 2:
        raise MetadataError(f"Invalid S3 key structure: {source_key}")

    town = parts[0].lower()
    filename = parts[-1]

    if len(parts) >= 4 and parts[1].lower() in STRUCTURED_CATEGORIES:
        year_match = LEADING_YEAR.match(parts[3])
        metadata = ExtractedMetadata(
            town=town,
            category=parts[1].lower(),
            board=parts[2].replace("_", " "),
            year=int(year_match.group(1)) if year_match else None,
            filename=filename,
        )
        return _apply_meeting_date(metadata)

    return infer_metadata(filename, town=town)


def extract_metadata(source_key: str) -> ExtractedMetadata:
    """Never raises; malformed keys degrade to town=unknown, category=uncategorized."""
    try:
        return parse_source_key(source_key)
    except MetadataError as e:
        logger.warning(f"Metadata extraction failed, using defaults: {e}")
        filename = source_key.rstrip("/").rsplit("/", 1)[-1]
        return ExtractedMetadata(filename=filename)


def _apply_meeting_date(metadata: ExtractedMetadata) -> ExtractedMetadata:
    meeting_date = parse_meeting_date(metadata.filename)
    if meeting_date is not None:
        metadata.meeting_date = meeting_date
        metadata.year = meeting_date.year
    metadata.is_minutes = metadata.category == "minutes"
    return metadata
