from datetime import datetime
from typing import Optional

from pydantic import Field

from agencycrm.schemas.base import DocumentModel


class MetricsSnapshot(DocumentModel):
    total_customers: int = 0
    total_premium: float = 0.0
    renewals_next_30_days: int = Field(0, alias="renewalsNext30Days")
    updated_at: Optional[datetime] = None
