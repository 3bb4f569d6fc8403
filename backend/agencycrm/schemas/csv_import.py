from datetime import date
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class ImportRecord(BaseModel):
    """A validated, normalized spreadsheet row."""
    insured_name: str
    address: str
    city: str
    state: str
    zip: str
    policy_type_normalized: str
    raw_policy_type: str
    effective_date: date
    expiration_date: date
    insurance_company: str
    premium: float
    phone_raw: Optional[str] = None
    phone_e164: Optional[str] = None  # optional column; bad numbers are dropped, not errors


class RowResult(BaseModel):
    row_index: int  # 1-based
    valid: bool = True
    errors: List[str] = Field(default_factory=list)
    data: Optional[ImportRecord] = None


class RowError(BaseModel):
    row: int
    errors: List[str]


class ImportSummary(BaseModel):
    imported: int = 0
    updated: int = 0
    skipped: int = 0
    errors: List[RowError] = Field(default_factory=list)


class HeaderMapping(BaseModel):
    mapping: Dict[str, str] = Field(default_factory=dict)  # field -> CSV header
    missing_fields: Optional[List[str]] = None


class ImportResponse(ImportSummary):
    total_rows: int = 0
    errors_truncated: bool = False


class PreviewResponse(BaseModel):
    mapping: Dict[str, str]
    total_rows: int
    valid_rows: int
    invalid_rows: int
    customer_groups: int
    errors: List[RowError]
