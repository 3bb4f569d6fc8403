import enum
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from agencycrm.schemas.base import DocumentModel


class CustomerStatus(str, enum.Enum):
    LEAD = "lead"
    QUOTED = "quoted"
    ACTIVE = "active"
    LAPSED = "lapsed"
    CLOSED = "closed"


class Address(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None


class Customer(DocumentModel):
    full_name: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone_e164: Optional[str] = Field(None, alias="phoneE164")
    phone_raw: Optional[str] = None
    email: Optional[str] = None
    notes: Optional[str] = None
    address: Address = Field(default_factory=Address)
    preferred_language: str = "en"
    tags: List[str] = Field(default_factory=list)
    status: CustomerStatus = CustomerStatus.LEAD
    source: Optional[str] = None
    assigned_to_uid: Optional[str] = None
    last_contact_at: Optional[datetime] = None
    last_message_snippet: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CustomerCreate(BaseModel):
    """Form payload for creating a customer by hand."""
    full_name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone_raw: Optional[str] = None
    email: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    preferred_language: Optional[str] = None
    tags: Optional[List[str] | str] = None
    status: Optional[CustomerStatus] = None
    source: Optional[str] = None
    assigned_to_uid: Optional[str] = None


class CustomerUpdate(BaseModel):
    full_name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone_raw: Optional[str] = None
    email: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    preferred_language: Optional[str] = None
    tags: Optional[List[str]] = None
    status: Optional[CustomerStatus] = None
    assigned_to_uid: Optional[str] = None
