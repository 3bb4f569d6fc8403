"""Incremental dashboard metrics per agency.

The metrics document (``agencies/{id}/stats/metrics``) is a cache:
customer count and active premium move by atomic deltas as customers and
policies change; the upcoming-renewals count is only ever recomputed from
the policy set, because "within 30 days of now" drifts every day.

Every write here is best effort. A failed metrics update is logged and
dropped; it must never fail the customer/policy write that triggered it.
"""
import functools
import logging
from datetime import date, timedelta
from typing import Optional, Tuple

from agencycrm.core.config import settings
from agencycrm.core.tenant import TenantContext
from agencycrm.schemas.metrics import MetricsSnapshot
from agencycrm.services.dashboard_cache import (
    clear_cached_metrics,
    get_cached_metrics,
    set_cached_metrics,
)
from agencycrm.services.document_store import SERVER_TIMESTAMP, DocumentStore, increment

logger = logging.getLogger(__name__)


def best_effort(fallback=None):
    """Swallow-and-log strategy for cache-like side effects.

    The wrapped call's exceptions are logged as warnings and replaced by
    ``fallback`` (called if callable).
    """
    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            try:
                return fn(*args, **kwargs)
            except Exception as e:
                logger.warning(f"[metrics] {fn.__name__} failed, cached metrics left as-is: {e}", exc_info=True)
                return fallback() if callable(fallback) else fallback
        return wrapper
    return decorator


def renewal_window(today: date, days: Optional[int] = None) -> Tuple[date, date]:
    """Inclusive [today, today + N days] range that counts as an upcoming renewal."""
    return today, today + timedelta(days=days if days is not None else settings.RENEWAL_WINDOW_DAYS)


def is_upcoming_renewal(expiration: date, today: date) -> bool:
    start, end = renewal_window(today)
    return start <= expiration <= end


def _zero_metrics() -> dict:
    return MetricsSnapshot().to_document(exclude={"updated_at"})


class MetricsService:
    def __init__(self, store: DocumentStore):
        self.store = store

    def _path(self, tenant: TenantContext) -> str:
        return tenant.path("stats", "metrics")

    def _ensure_doc(self, tenant: TenantContext) -> str:
        path = self._path(tenant)
        if self.store.get(path) is None:
            self.store.set(path, {**_zero_metrics(), "updatedAt": SERVER_TIMESTAMP})
        return path

    def _invalidate(self, tenant: TenantContext) -> None:
        # Signal only; the dashboard repopulates on its next read
        clear_cached_metrics(tenant.tenant_id)

    @best_effort()
    def increment_customer_count(self, tenant: TenantContext, delta: int = 1) -> None:
        path = self._ensure_doc(tenant)
        self.store.update(path, {
            "totalCustomers": increment(delta),
            "updatedAt": SERVER_TIMESTAMP,
        })
        self._invalidate(tenant)
        logger.debug(f"[metrics] {tenant.tenant_id}: totalCustomers {delta:+d}")

    @best_effort()
    def update_premium(self, tenant: TenantContext, delta: float) -> None:
        path = self._ensure_doc(tenant)
        self.store.update(path, {
            "totalPremium": increment(delta),
            "updatedAt": SERVER_TIMESTAMP,
        })
        self._invalidate(tenant)
        logger.debug(f"[metrics] {tenant.tenant_id}: totalPremium {delta:+.2f}")

    @best_effort()
    def recalculate_renewals(self, tenant: TenantContext) -> Optional[int]:
        """Recount active policies expiring inside the renewal window.

        Returns the new count, or None (prior value kept) if the query fails.
        """
        start, end = renewal_window(self.store.now().date())
        policies = self.store.collection_group("policies", filters=[
            ("agencyId", "==", tenant.tenant_id),
            ("status", "==", "active"),
            ("expirationDate", ">=", start.isoformat()),
            ("expirationDate", "<=", end.isoformat()),
        ])
        count = len(policies)

        path = self._ensure_doc(tenant)
        self.store.update(path, {
            "renewalsNext30Days": count,
            "updatedAt": SERVER_TIMESTAMP,
        })
        self._invalidate(tenant)
        logger.info(f"[metrics] {tenant.tenant_id}: {count} renewals between {start} and {end}")
        return count

    def apply_import_deltas(
        self,
        tenant: TenantContext,
        new_customers: int,
        new_premium: float,
        has_renewals: bool,
    ) -> None:
        """One aggregate update after a bulk import, instead of one per row."""
        if new_customers > 0:
            self.increment_customer_count(tenant, new_customers)
        if new_premium > 0:
            self.update_premium(tenant, new_premium)
        if has_renewals:
            self.recalculate_renewals(tenant)

    @best_effort(fallback=lambda: MetricsSnapshot().model_dump(by_alias=True, exclude={"id", "updated_at"}))
    def get_metrics(self, tenant: TenantContext) -> dict:
        cached = get_cached_metrics(tenant.tenant_id)
        if cached is not None:
            return cached
        path = self._ensure_doc(tenant)
        snapshot = MetricsSnapshot.from_document(self.store.get(path))
        metrics = snapshot.model_dump(by_alias=True, exclude={"id", "updated_at"})
        set_cached_metrics(tenant.tenant_id, metrics)
        return metrics
