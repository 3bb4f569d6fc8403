import enum
from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from agencycrm.schemas.base import DocumentModel


class PolicyStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class Policy(DocumentModel):
    policy_type_normalized: str
    raw_policy_type: Optional[str] = None
    effective_date: date
    expiration_date: date
    insurance_company: Optional[str] = None
    premium: Optional[float] = Field(None, ge=0)
    status: PolicyStatus = PolicyStatus.ACTIVE
    term_months: Optional[int] = None
    agency_id: Optional[str] = None  # denormalized for collection-group queries
    customer_id: Optional[str] = None
    imported_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _dates_in_order(self):
        if self.effective_date > self.expiration_date:
            raise ValueError("Effective date must be on or before expiration date")
        return self

    @property
    def active_premium(self) -> float:
        """Premium counted toward the agency total (active policies only)."""
        if self.status == PolicyStatus.ACTIVE.value and self.premium:
            return float(self.premium)
        return 0.0


class PolicyIn(BaseModel):
    """Policy form payload."""
    policy_type: str
    effective_date: date
    expiration_date: date
    insurance_company: Optional[str] = None
    premium: Optional[float] = Field(None, ge=0)
    status: PolicyStatus = PolicyStatus.ACTIVE
    term_months: Optional[int] = Field(None, ge=1, le=12)
