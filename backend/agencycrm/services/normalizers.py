"""Field normalizers for spreadsheet and form input.

Pure functions: raw strings in, canonical values (or None) out.
"""
import logging
import math
import re
from datetime import date, datetime
from typing import Optional

import pandas as pd
from dateutil.relativedelta import relativedelta

logger = logging.getLogger(__name__)


# ── phone ────────────────────────────────────────────────────────────

def normalize_phone(raw) -> Optional[str]:
    """Normalize a phone number to E.164, assuming US for bare 10-digit input."""
    if not raw:
        return None
    raw = str(raw)
    digits = re.sub(r"\D", "", raw)
    if not digits:
        return None

    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits[0] == "1":
        return f"+{digits}"
    # International numbers must arrive with an explicit +
    if raw.strip().startswith("+") and 10 <= len(digits) <= 15:
        return f"+{digits}"
    return None


def format_phone(phone_e164: Optional[str]) -> str:
    """'+12175550100' -> '(217) 555-0100'; anything else is returned as-is."""
    if not phone_e164:
        return ""
    if phone_e164.startswith("+1"):
        digits = phone_e164[2:]
        if len(digits) == 10:
            return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"
    return phone_e164


# ── policy type ──────────────────────────────────────────────────────

POLICY_TYPE_SYNONYMS = {
    "Workers Compensation": ["wc", "workers comp", "workers compensation", "work comp"],
    "General Liability": ["gl", "general liability"],
    "Tailored Protection Policy": ["tpp", "tailored protection policy"],
    "Commercial Package Policy": ["cpp", "commercial package policy"],
    "BOP": ["bop", "business owners policy", "business owner policy"],
    "Commercial Auto": ["commercial auto", "comm auto", "ca"],
    "Personal Auto": ["personal auto", "pa"],
    "Homeowners": ["homeowners", "ho", "home"],
    "Dwelling Fire": ["dwelling fire", "df", "dp", "dwelling"],
    "Life": ["life", "life insurance"],
    "Health": ["health", "health insurance"],
}

_POLICY_TYPE_LOOKUP = {
    synonym: canonical
    for canonical, synonyms in POLICY_TYPE_SYNONYMS.items()
    for synonym in synonyms
}

POLICY_TYPES = list(POLICY_TYPE_SYNONYMS.keys())


def normalize_policy_type(raw) -> Optional[str]:
    """Map free-text policy type ('W.C.', 'workers comp') to its canonical label."""
    if not raw or not isinstance(raw, str):
        return None
    key = re.sub(r"[^\w\s]", "", raw.lower().strip())
    key = re.sub(r"\s+", " ", key).strip()
    return _POLICY_TYPE_LOOKUP.get(key)


# ── premium ──────────────────────────────────────────────────────────

def parse_premium(raw) -> Optional[float]:
    """Parse '$1,200.00' style premiums. Negative or unparsable -> None."""
    if raw is None or raw == "":
        return None
    cleaned = re.sub(r"[$,\s]", "", str(raw))
    try:
        value = float(cleaned)
    except ValueError:
        return None
    if not math.isfinite(value) or value < 0:
        return None
    return value


# ── dates ────────────────────────────────────────────────────────────

_DATE_PATTERNS = [
    (re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$"), ("m", "d", "y")),
    (re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})$"), ("y", "m", "d")),
    (re.compile(r"^(\d{1,2})-(\d{1,2})-(\d{4})$"), ("m", "d", "y")),
]


def parse_date(raw) -> Optional[date]:
    """Parse MM/DD/YYYY, YYYY-MM-DD or MM-DD-YYYY, then anything pandas understands.

    The strict formats must name a real calendar day: '02/30/2024' is
    rejected rather than rolled over into March.
    """
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    s = str(raw).strip()
    if not s:
        return None

    for pattern, order in _DATE_PATTERNS:
        match = pattern.match(s)
        if not match:
            continue
        parts = dict(zip(order, (int(g) for g in match.groups())))
        try:
            return date(parts["y"], parts["m"], parts["d"])
        except ValueError:
            # Matched a strict shape but not a real day; don't let the fallback guess
            return None

    # Keywords like "today" or "now" are not dates
    if not re.search(r"\d", s):
        return None
    try:
        parsed = pd.to_datetime(s)
    except (ValueError, TypeError, OverflowError):
        return None
    if pd.isna(parsed):
        return None
    return parsed.date()


def add_one_year(d: Optional[date]) -> Optional[date]:
    """Feb 29 + 1 year -> Feb 28."""
    if d is None:
        return None
    return d + relativedelta(years=1)


def subtract_one_year(d: Optional[date]) -> Optional[date]:
    if d is None:
        return None
    return d - relativedelta(years=1)


def add_months(d: Optional[date], months: int) -> Optional[date]:
    """Add months, clamping to the last day of the target month (Jan 31 + 1 -> Feb 28/29)."""
    if d is None:
        return None
    return d + relativedelta(months=months)
