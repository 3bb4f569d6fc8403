"""Customers API: agency customer directory, policies and CSV import."""
import csv
import io
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, File, HTTPException, Query, UploadFile
from fastapi.responses import Response

from agencycrm.api.deps import get_customer_service, get_store
from agencycrm.core.config import settings
from agencycrm.core.tenant import TenantContext, get_tenant
from agencycrm.schemas.csv_import import ImportRecord, ImportResponse, PreviewResponse, RowError
from agencycrm.schemas.customer import CustomerCreate, CustomerStatus, CustomerUpdate
from agencycrm.schemas.policy import PolicyIn
from agencycrm.services.csv_import import CSVImportService, ImportAborted
from agencycrm.services.csv_reader import read_csv_bytes
from agencycrm.services.customers import CustomerNotFound, CustomerService, CustomerValidationError
from agencycrm.services.document_store import DocumentStore, StoreError
from agencycrm.services.matching import MatchCandidate, find_matches, group_rows_by_customer
from agencycrm.services.normalizers import format_phone
from agencycrm.services.row_validator import HeaderMappingError, create_header_mapping, process_csv_rows

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/customers", tags=["customers"])


def _customer_to_dict(customer) -> Dict[str, Any]:
    data = customer.model_dump(mode="json", by_alias=True)
    data["phoneDisplay"] = format_phone(customer.phone_e164)
    return data


async def _read_upload(file: UploadFile):
    file_bytes = await file.read()
    if len(file_bytes) == 0:
        raise HTTPException(status_code=400, detail="Empty file")
    if len(file_bytes) > settings.MAX_UPLOAD_SIZE:
        raise HTTPException(status_code=413, detail="File too large")
    try:
        return read_csv_bytes(file_bytes)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _validate_rows(headers, rows):
    try:
        return process_csv_rows(headers, rows)
    except HeaderMappingError as e:
        raise HTTPException(
            status_code=400,
            detail={"message": str(e), "missing_fields": e.missing_fields},
        )


# ── CSV import (specific paths first) ──────────────────────────────

@router.post("/import/preview", response_model=PreviewResponse)
async def preview_import(
    file: UploadFile = File(...),
    tenant: TenantContext = Depends(get_tenant),
):
    """Map headers and validate rows without writing anything."""
    headers, rows = await _read_upload(file)
    header_mapping = create_header_mapping(headers)
    if header_mapping.missing_fields:
        raise HTTPException(
            status_code=400,
            detail={
                "message": f"Missing required columns: {', '.join(header_mapping.missing_fields)}",
                "missing_fields": header_mapping.missing_fields,
            },
        )
    results = _validate_rows(headers, rows)
    invalid = [r for r in results if not r.valid]
    logger.info(f"[import] {tenant.tenant_id}: preview of {file.filename}, {len(results)} rows")
    return PreviewResponse(
        mapping=header_mapping.mapping,
        total_rows=len(results),
        valid_rows=len(results) - len(invalid),
        invalid_rows=len(invalid),
        customer_groups=len(group_rows_by_customer(results)),
        errors=[RowError(row=r.row_index, errors=r.errors) for r in invalid][:settings.IMPORT_MAX_REPORTED_ERRORS],
    )


@router.post("/import", response_model=ImportResponse)
def import_customers(
    file: UploadFile = File(...),
    store: DocumentStore = Depends(get_store),
    tenant: TenantContext = Depends(get_tenant),
):
    """Import customers and policies from a CSV file.

    Runs in the threadpool; rows are processed one at a time.
    """
    file_bytes = file.file.read()
    if len(file_bytes) == 0:
        raise HTTPException(status_code=400, detail="Empty file")
    if len(file_bytes) > settings.MAX_UPLOAD_SIZE:
        raise HTTPException(status_code=413, detail="File too large")
    try:
        headers, rows = read_csv_bytes(file_bytes)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    results = _validate_rows(headers, rows)
    logger.info(f"[import] {tenant.tenant_id}: importing {file.filename} ({len(results)} rows)")

    def on_progress(batch_number: int, total_batches: int, rows_done: int):
        logger.debug(f"[import] {tenant.tenant_id}: batch {batch_number}/{total_batches}, {rows_done} rows")

    try:
        summary = CSVImportService(store, tenant).import_csv_data(results, on_progress)
    except ImportAborted as e:
        raise HTTPException(
            status_code=502,
            detail={
                "message": "Import stopped partway. Rows already saved are kept; "
                           "re-running the same file is safe and will skip them.",
                "rows_committed": e.rows_committed,
                "imported": e.summary.imported,
            },
        )
    except StoreError as e:
        raise HTTPException(status_code=502, detail=f"Import failed: {str(e)[:300]}")

    truncated = len(summary.errors) > settings.IMPORT_MAX_REPORTED_ERRORS
    return ImportResponse(
        imported=summary.imported,
        updated=summary.updated,
        skipped=summary.skipped,
        errors=summary.errors[:settings.IMPORT_MAX_REPORTED_ERRORS],
        total_rows=len(results),
        errors_truncated=truncated,
    )


@router.post("/import/errors.csv")
def download_import_errors(errors: List[RowError] = Body(..., embed=True)):
    """Downloadable error report for an import result."""
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(["Row", "Errors"])
    for err in errors:
        writer.writerow([err.row, "; ".join(err.errors)])
    return Response(
        content=output.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="import_errors.csv"'},
    )


# ── Customers ──────────────────────────────────────────────────────

@router.get("/")
def list_customers(
    status: Optional[CustomerStatus] = None,
    q: str = Query("", description="Search by name, email, or phone"),
    limit: int = Query(50, ge=1, le=500),
    service: CustomerService = Depends(get_customer_service),
):
    customers = service.list_customers(
        status=status.value if status else None,
        search=q,
        limit=limit,
    )
    return {"customers": [_customer_to_dict(c) for c in customers], "total": len(customers)}


@router.post("/", status_code=201)
def create_customer(
    data: CustomerCreate,
    service: CustomerService = Depends(get_customer_service),
):
    try:
        customer_id = service.create_customer(data.model_dump(exclude_none=True))
    except CustomerValidationError as e:
        raise HTTPException(status_code=400, detail={"message": "Validation failed", "errors": e.errors})
    return {"id": customer_id}


@router.get("/by-phone/{phone}")
def get_customer_by_phone(phone: str, service: CustomerService = Depends(get_customer_service)):
    customer = service.get_customer_by_phone(phone)
    if customer is None:
        raise HTTPException(status_code=404, detail="Customer not found")
    return _customer_to_dict(customer)


@router.get("/{customer_id}")
def get_customer(customer_id: str, service: CustomerService = Depends(get_customer_service)):
    customer = service.get_customer(customer_id)
    if customer is None:
        raise HTTPException(status_code=404, detail="Customer not found")
    result = _customer_to_dict(customer)
    result["policies"] = [
        p.model_dump(mode="json", by_alias=True) for p in service.list_policies(customer_id)
    ]
    return result


@router.patch("/{customer_id}")
def update_customer(
    customer_id: str,
    data: CustomerUpdate,
    service: CustomerService = Depends(get_customer_service),
):
    try:
        service.update_customer(customer_id, data.model_dump(exclude_none=True))
    except CustomerNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except CustomerValidationError as e:
        raise HTTPException(status_code=400, detail={"message": "Validation failed", "errors": e.errors})
    return {"id": customer_id, "updated": True}


@router.delete("/{customer_id}")
def delete_customer(customer_id: str, service: CustomerService = Depends(get_customer_service)):
    try:
        return service.delete_customer(customer_id)
    except CustomerNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/{customer_id}/matches")
def customer_matches(customer_id: str, service: CustomerService = Depends(get_customer_service)):
    """Likely duplicates of a customer (fuzzy merge suggestions, best three)."""
    customer = service.get_customer(customer_id)
    if customer is None:
        raise HTTPException(status_code=404, detail="Customer not found")

    candidate = MatchCandidate.from_customer(customer)
    probe = ImportRecord.model_construct(
        insured_name=candidate.name,
        address=candidate.street,
        city=candidate.city,
        state=candidate.state,
        zip=candidate.zip,
    )
    others = [c for c in service.list_customers(limit=10_000) if c.id != customer_id]
    return {
        "customer_id": customer_id,
        "matches": [
            {**m.to_dict(), "customer": _customer_to_dict(m.customer)}
            for m in find_matches(probe, others)
        ],
    }


# ── Policies ───────────────────────────────────────────────────────

@router.post("/{customer_id}/policies", status_code=201)
def create_policy(
    customer_id: str,
    data: PolicyIn,
    service: CustomerService = Depends(get_customer_service),
):
    try:
        policy_id = service.save_policy(customer_id, data)
    except CustomerNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except CustomerValidationError as e:
        raise HTTPException(status_code=400, detail={"message": "Validation failed", "errors": e.errors})
    return {"id": policy_id}


@router.patch("/{customer_id}/policies/{policy_id}")
def update_policy(
    customer_id: str,
    policy_id: str,
    data: PolicyIn,
    service: CustomerService = Depends(get_customer_service),
):
    try:
        service.save_policy(customer_id, data, policy_id=policy_id)
    except CustomerNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except CustomerValidationError as e:
        raise HTTPException(status_code=400, detail={"message": "Validation failed", "errors": e.errors})
    return {"id": policy_id, "updated": True}


@router.delete("/{customer_id}/policies/{policy_id}")
def delete_policy(
    customer_id: str,
    policy_id: str,
    service: CustomerService = Depends(get_customer_service),
):
    try:
        service.delete_policy(customer_id, policy_id)
    except CustomerNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"id": policy_id, "deleted": True}
