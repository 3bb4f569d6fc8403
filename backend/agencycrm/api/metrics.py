"""Dashboard metrics API."""
import logging

from fastapi import APIRouter, Depends

from agencycrm.api.deps import get_store
from agencycrm.core.tenant import TenantContext, get_tenant
from agencycrm.services.dashboard_cache import cache_age_seconds
from agencycrm.services.document_store import DocumentStore
from agencycrm.services.metrics import MetricsService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/metrics", tags=["metrics"])


@router.get("/")
def get_metrics(
    store: DocumentStore = Depends(get_store),
    tenant: TenantContext = Depends(get_tenant),
):
    """Customer count, active premium and upcoming renewals for the dashboard."""
    metrics = MetricsService(store).get_metrics(tenant)
    return {**metrics, "cacheAgeSeconds": cache_age_seconds(tenant.tenant_id)}


@router.post("/renewals/recalculate")
def recalculate_renewals(
    store: DocumentStore = Depends(get_store),
    tenant: TenantContext = Depends(get_tenant),
):
    count = MetricsService(store).recalculate_renewals(tenant)
    return {"renewalsNext30Days": count, "recalculated": count is not None}
