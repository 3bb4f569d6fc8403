"""In-process TTL cache of per-agency dashboard metrics."""
import threading
import time
from typing import Any, Dict, Optional

from agencycrm.core.config import settings

_lock = threading.Lock()
_entries: Dict[str, Dict[str, Any]] = {}


def _key(tenant_id: str) -> str:
    return f"dashboardMetrics:{tenant_id}"


def is_fresh(fetched_at: Optional[float], ttl_seconds: float) -> bool:
    if not fetched_at:
        return False
    return time.monotonic() - fetched_at < ttl_seconds


def get_cached_metrics(tenant_id: str) -> Optional[dict]:
    key = _key(tenant_id)
    with _lock:
        entry = _entries.get(key)
        if entry is None:
            return None
        if is_fresh(entry["fetched_at"], entry["ttl"]):
            return dict(entry["data"])
        del _entries[key]
        return None


def set_cached_metrics(tenant_id: str, metrics: dict, ttl_seconds: Optional[float] = None) -> None:
    with _lock:
        _entries[_key(tenant_id)] = {
            "data": dict(metrics),
            "fetched_at": time.monotonic(),
            "ttl": ttl_seconds if ttl_seconds is not None else settings.DASHBOARD_CACHE_TTL_SECONDS,
        }


def clear_cached_metrics(tenant_id: str) -> None:
    with _lock:
        _entries.pop(_key(tenant_id), None)


def cache_age_seconds(tenant_id: str) -> Optional[int]:
    with _lock:
        entry = _entries.get(_key(tenant_id))
        if entry is None:
            return None
        return int(time.monotonic() - entry["fetched_at"])
