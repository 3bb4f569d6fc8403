from fastapi import Depends
from sqlalchemy.orm import Session

from agencycrm.core.database import get_db
from agencycrm.core.tenant import TenantContext, get_tenant
from agencycrm.services.customers import CustomerService
from agencycrm.services.document_store import DocumentStore


def get_store(db: Session = Depends(get_db)) -> DocumentStore:
    return DocumentStore(db)


def get_customer_service(
    store: DocumentStore = Depends(get_store),
    tenant: TenantContext = Depends(get_tenant),
) -> CustomerService:
    return CustomerService(store, tenant)
