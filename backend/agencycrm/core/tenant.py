"""Tenant context passed explicitly into every customer/import/metrics call."""
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException


@dataclass(frozen=True)
class TenantContext:
    tenant_id: str
    user_id: Optional[str] = None
    role: Optional[str] = None

    @property
    def root(self) -> str:
        """Store path every tenant-owned collection hangs off."""
        return f"agencies/{self.tenant_id}"

    def path(self, *parts: str) -> str:
        return "/".join([self.root, *parts])


def get_tenant(
    x_tenant_id: Optional[str] = Header(None),
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> TenantContext:
    """FastAPI dependency. Authentication sits in front of us and sets these headers."""
    if not x_tenant_id or not x_tenant_id.strip():
        raise HTTPException(status_code=401, detail="Agency ID not available")
    return TenantContext(
        tenant_id=x_tenant_id.strip(),
        user_id=x_user_id,
        role=(x_user_role or "").lower() or None,
    )
