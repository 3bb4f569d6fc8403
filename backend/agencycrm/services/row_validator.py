"""Spreadsheet row validation for the customer/policy CSV import.

Header text is matched once per file against a fixed alias table; each
row is then pulled through the normalizers into an ``ImportRecord`` or a
list of human-readable errors.
"""
import logging
from typing import Dict, List, Optional, Sequence

from agencycrm.schemas.csv_import import HeaderMapping, ImportRecord, RowResult
from agencycrm.services.normalizers import (
    add_one_year,
    normalize_phone,
    normalize_policy_type,
    parse_date,
    parse_premium,
    subtract_one_year,
)

logger = logging.getLogger(__name__)


FIELD_ALIASES: Dict[str, List[str]] = {
    "insured_name": ["insured name", "insured", "name", "client", "customer", "full name"],
    "address": ["address", "street", "street address", "addr"],
    "city": ["city"],
    "state": ["state", "st"],
    "zip": ["zip", "zipcode", "postal", "postal code", "zip code"],
    "policy_type": ["policy type", "type", "line", "lob", "policy", "line of business"],
    "effective_date": ["effective", "effective date", "eff date", "eff", "effective date start"],
    "expiration_date": ["expiration", "expiration date", "exp date", "exp", "expires", "expiration date end"],
    "insurance_company": ["company", "carrier", "insurance company", "insurer", "insurance carrier"],
    "premium": ["premium", "written premium", "annual premium", "total premium", "premium amount"],
    "phone": ["phone", "phone number", "mobile", "cell", "cell phone"],
}

REQUIRED_FIELDS = [
    "insured_name", "address", "city", "state", "zip",
    "policy_type", "insurance_company", "premium",
]

# Carriers whose term dates are never computed: both must be on the sheet
STRICT_DATE_CARRIERS = ("progressive",)


class HeaderMappingError(ValueError):
    def __init__(self, missing_fields: List[str]):
        self.missing_fields = missing_fields
        super().__init__(f"Missing required columns: {', '.join(missing_fields)}")


def map_header_to_field(header: str) -> Optional[str]:
    if not header:
        return None
    normalized = header.lower().strip()
    for field_name, aliases in FIELD_ALIASES.items():
        if normalized in aliases:
            return field_name
    return None


def create_header_mapping(headers: Sequence[str]) -> HeaderMapping:
    """Map CSV headers onto import fields and report required fields left unmapped."""
    mapping: Dict[str, str] = {}
    for header in headers:
        field_name = map_header_to_field(header)
        # First matching column wins
        if field_name and field_name not in mapping:
            mapping[field_name] = header

    missing = [f for f in REQUIRED_FIELDS if f not in mapping]
    if "effective_date" not in mapping and "expiration_date" not in mapping:
        missing.append("effective_date or expiration_date")

    logger.info(f"CSV header mapping: {mapping}")
    return HeaderMapping(mapping=mapping, missing_fields=missing or None)


def require_header_mapping(headers: Sequence[str]) -> HeaderMapping:
    """Like create_header_mapping, but reject the whole file when columns are missing."""
    header_mapping = create_header_mapping(headers)
    if header_mapping.missing_fields:
        raise HeaderMappingError(header_mapping.missing_fields)
    return header_mapping


def _extract(row: Sequence[str], mapping: Dict[str, str], headers: Sequence[str]) -> Dict[str, str]:
    values = {}
    for field_name in FIELD_ALIASES:
        header = mapping.get(field_name)
        value = ""
        if header is not None:
            idx = list(headers).index(header)
            if idx < len(row) and row[idx] is not None:
                value = str(row[idx])
        values[field_name] = value
    return values


def process_csv_row(
    row: Sequence[str],
    mapping: Dict[str, str],
    headers: Sequence[str],
    row_index: int,
) -> RowResult:
    """Validate and normalize one spreadsheet row (``row_index`` is 0-based)."""
    data = _extract(row, mapping, headers)
    result = RowResult(row_index=row_index + 1)

    def fail(message: str):
        result.valid = False
        result.errors.append(message)

    for field_name, label in (
        ("insured_name", "insured name"),
        ("address", "address"),
        ("city", "city"),
        ("state", "state"),
        ("zip", "zip"),
    ):
        if not data[field_name].strip():
            fail(f"Missing {label}")

    policy_type = normalize_policy_type(data["policy_type"])
    if not policy_type:
        fail(f"Unknown policy type: {data['policy_type'] or 'empty'}")

    company = data["insurance_company"].strip()
    if not company:
        fail("Missing insurance company")

    premium = parse_premium(data["premium"])
    if premium is None:
        fail(f"Invalid premium: {data['premium'] or 'empty'}")

    eff_raw = data["effective_date"].strip()
    exp_raw = data["expiration_date"].strip()
    effective = parse_date(eff_raw) if eff_raw else None
    expiration = parse_date(exp_raw) if exp_raw else None

    if eff_raw and effective is None:
        fail(f"Invalid effective date: {eff_raw}")
    if exp_raw and expiration is None:
        fail(f"Invalid expiration date: {exp_raw}")

    if any(name in company.lower() for name in STRICT_DATE_CARRIERS):
        if not eff_raw or not exp_raw:
            fail(f"{company} policy requires both effective and expiration dates")
    elif not eff_raw and not exp_raw:
        fail("Missing both effective and expiration dates")
    elif effective and not exp_raw:
        expiration = add_one_year(effective)
    elif expiration and not eff_raw:
        effective = subtract_one_year(expiration)

    if effective and expiration and effective > expiration:
        fail("Effective date is after expiration date")

    if result.valid:
        result.data = ImportRecord(
            insured_name=data["insured_name"].strip(),
            address=data["address"].strip(),
            city=data["city"].strip(),
            state=data["state"].strip().upper(),
            zip=data["zip"].strip(),
            policy_type_normalized=policy_type,
            raw_policy_type=data["policy_type"].strip(),
            effective_date=effective,
            expiration_date=expiration,
            insurance_company=company,
            premium=premium,
            phone_raw=data["phone"].strip() or None,
            phone_e164=normalize_phone(data["phone"]),
        )
    return result


def process_csv_rows(headers: Sequence[str], rows: Sequence[Sequence[str]]) -> List[RowResult]:
    """Validate every data row of a file; raises HeaderMappingError up front."""
    header_mapping = require_header_mapping(headers)
    results = [
        process_csv_row(row, header_mapping.mapping, headers, i)
        for i, row in enumerate(rows)
    ]
    invalid = sum(1 for r in results if not r.valid)
    logger.info(f"Validated {len(results)} rows: {len(results) - invalid} valid, {invalid} invalid")
    return results
