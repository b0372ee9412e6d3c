"""Parsers for the semicolon-delimited AMFI NAV reports."""
import logging
import math
from dataclasses import dataclass
from datetime import date
from typing import Dict, List, Optional

from shared.errors import DataQualityError
from shared.utils import MONTH_ABBREVIATIONS

logger = logging.getLogger(__name__)

DAILY_COLUMN_COUNT = 6
HISTORICAL_COLUMN_COUNT = 8
# ISIN payout, ISIN reinvestment, repurchase price, sale price
HISTORICAL_SKIPPED_COLUMNS = {2, 3, 5, 6}
MAX_INVALID_RATIO = 0.10

MISSING_VALUES = {"", "-", "N.A."}
MONTHS = {name: index + 1 for index, name in enumerate(MONTH_ABBREVIATIONS)}


@dataclass
class NavRecord:
    """One parsed NAV row."""
    scheme_code: str
    scheme_name: str
    nav_value: Optional[float]
    nav_date: Optional[date]
    isin_div_payout_growth: Optional[str] = None
    isin_div_reinvestment: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return bool(
            self.scheme_code
            and self.scheme_name
            and self.nav_value is not None
            and self.nav_value > 0
            and self.nav_date is not None
        )


def parse_float_safe(value: Optional[str]) -> Optional[float]:
    """Parse a numeric cell; blank, '-' and 'N.A.' mean no value."""
    if value is None:
        return None
    cleaned = value.strip()
    if cleaned in MISSING_VALUES:
        return None
    try:
        parsed = float(cleaned.replace(",", ""))
    except ValueError:
        return None
    if math.isnan(parsed) or math.isinf(parsed):
        return None
    return parsed


def parse_nav_date(value: Optional[str]) -> Optional[date]:
    """
    Parse an AMFI date (DD-MMM-YYYY, e.g. 25-Sep-2024).

    Returns None unless the parts denote a real calendar day, so
    30-Feb-2024 is rejected rather than rolled over into March.
    """
    if not value or not value.strip():
        return None

    parts = value.strip().split("-")
    if len(parts) != 3:
        return None

    day_part, month_part, year_part = parts
    month = MONTHS.get(month_part.strip().title())
    if month is None:
        return None

    try:
        return date(int(year_part), month, int(day_part))
    except ValueError:
        return None


def _split_rows(body: str) -> List[List[str]]:
    lines = body.replace("\r\n", "\n").replace("\r", "\n").split("\n")
    return [line.split(";") for line in lines]


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _build_record(fields: Dict[str, str]) -> NavRecord:
    return NavRecord(
        scheme_code=(fields.get("Scheme Code") or "").strip(),
        scheme_name=(fields.get("Scheme Name") or "").strip(),
        nav_value=parse_float_safe(fields.get("Net Asset Value")),
        nav_date=parse_nav_date(fields.get("Date")),
        isin_div_payout_growth=_clean(fields.get("ISIN Div Payout/ ISIN Growth")),
        isin_div_reinvestment=_clean(fields.get("ISIN Div Reinvestment")),
    )


def parse_daily_nav_data(body: str) -> List[NavRecord]:
    """
    Parse the full daily snapshot.

    The first line is the header; data rows are the lines with exactly six
    columns and a non-blank first column. AMC headings and blank lines are
    skipped. Rows are returned whether complete or not; use
    `select_valid_records` to apply the quality gate.
    """
    rows = _split_rows(body)
    if not rows:
        return []

    headers = [header.strip() for header in rows[0]]
    records = []
    for row in rows[1:]:
        if len(row) != DAILY_COLUMN_COUNT or not row[0].strip():
            continue
        fields = {headers[j]: row[j] for j in range(min(len(headers), DAILY_COLUMN_COUNT))}
        records.append(_build_record(fields))
    return records


def parse_historical_nav_data(body: str) -> List[NavRecord]:
    """Parse a historical report (eight columns, four of them ignored)."""
    rows = _split_rows(body)
    if not rows:
        return []

    headers = [header.strip() for header in rows[0]]
    records = []
    for row in rows[1:]:
        if len(row) != HISTORICAL_COLUMN_COUNT or not row[0].strip():
            continue
        fields = {
            headers[j]: row[j]
            for j in range(min(len(headers), HISTORICAL_COLUMN_COUNT))
            if j not in HISTORICAL_SKIPPED_COLUMNS
        }
        records.append(_build_record(fields))
    return records


def select_valid_records(records: List[NavRecord], max_invalid_ratio: float = MAX_INVALID_RATIO) -> List[NavRecord]:
    """
    Apply the batch quality gate and return the complete rows.

    Raises DataQualityError when the batch is empty or when more than
    `max_invalid_ratio` of the rows are missing code, name, value or date.
    """
    if not records:
        raise DataQualityError("No NAV records found in response")

    invalid = sum(1 for record in records if not record.is_complete)
    ratio = invalid / len(records)
    if ratio > max_invalid_ratio:
        raise DataQualityError(
            f"Data quality issue: {ratio * 100:.1f}% invalid records ({invalid}/{len(records)})"
        )

    valid = [record for record in records if record.is_complete]
    logger.debug(f"NAV data validation completed: total={len(records)} invalid={invalid}")
    return valid
