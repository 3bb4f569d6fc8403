"""Bulk customer/policy import from validated spreadsheet rows.

Workflow:
1. Invalid rows are counted as skipped and their errors reported as-is
2. Each valid row, in file order: resolve the customer by exact
   (name, street, zip) identity, or queue a new one
3. Skip the policy if the customer already holds a duplicate of it,
   otherwise queue it
4. Queued writes are committed in batches kept under the store's ceiling
5. Metrics get one aggregate update at the end

A failure on one row is recorded against that row and the import moves on.
A failed batch commit stops the import; re-running the same file is safe
because customers and policies already written are recognized again.
"""
import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from agencycrm.core.config import settings
from agencycrm.core.tenant import TenantContext
from agencycrm.schemas.csv_import import ImportRecord, ImportSummary, RowError, RowResult
from agencycrm.schemas.customer import Address, Customer
from agencycrm.schemas.policy import Policy
from agencycrm.services.customers import CustomerService, customer_document, is_duplicate_policy
from agencycrm.services.document_store import SERVER_TIMESTAMP, DocumentStore, StoreError, WriteBatch
from agencycrm.services.matching import customer_key
from agencycrm.services.metrics import is_upcoming_renewal

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, int], None]


class ImportAborted(StoreError):
    """A batch commit failed; rows before the failed batch are already stored."""

    def __init__(self, message: str, summary: ImportSummary, rows_committed: int):
        super().__init__(message)
        self.summary = summary
        self.rows_committed = rows_committed


@dataclass
class _RowWrites:
    customer_id: str
    is_new_customer: bool
    ops: List[Tuple[str, str, Dict[str, Any]]]  # (kind, path, data)
    premium: float = 0.0
    renewal: bool = False
    duplicate_policy: bool = False
    matched_existing: bool = False
    phone_e164: Optional[str] = None  # phone claimed by a new customer


class CSVImportService:
    def __init__(
        self,
        store: DocumentStore,
        tenant: TenantContext,
        customer_status: Optional[str] = None,
        batch_size: Optional[int] = None,
        batch_margin: Optional[int] = None,
        progress_every: Optional[int] = None,
    ):
        self.store = store
        self.tenant = tenant
        self.customers = CustomerService(store, tenant)
        self.metrics = self.customers.metrics
        self.customer_status = customer_status or settings.IMPORT_CUSTOMER_STATUS
        self.batch_size = min(batch_size or settings.IMPORT_BATCH_SIZE, store.max_batch_ops)
        self.batch_margin = settings.IMPORT_BATCH_MARGIN if batch_margin is None else batch_margin
        self.progress_every = progress_every or settings.IMPORT_PROGRESS_EVERY

        if self.flush_threshold < 3:
            raise ValueError("Import batch size too small for one row's writes")

        # Customers created this run are invisible to lookups until their batch commits
        self._created: Dict[str, str] = {}
        # Policies queued this run, per customer, for duplicate checks before commit
        self._queued_policies: Dict[str, List[Dict[str, Any]]] = {}
        # Phones given to customers created this run: phone -> customer id
        self._claimed_phones: Dict[str, str] = {}

    @property
    def flush_threshold(self) -> int:
        """Most operations a batch may hold when committed."""
        return self.batch_size - self.batch_margin

    # ── per-row resolution ───────────────────────────────────────────

    def _available_phone(self, phone_e164: Optional[str]) -> Optional[str]:
        """The phone if no other customer owns it yet, else None."""
        if not phone_e164:
            return None
        owner = self._claimed_phones.get(phone_e164)
        if owner is None:
            entry = self.store.get(self.customers.phone_index_path(phone_e164))
            owner = entry.data.get("customerId") if entry else None
        if owner is not None:
            logger.info(f"[import] {phone_e164} already belongs to customer {owner}; new customer stored without it")
            return None
        return phone_e164

    def _new_customer_doc(self, record: ImportRecord, phone_e164: Optional[str]) -> Dict[str, Any]:
        customer = Customer(
            full_name=record.insured_name,
            phone_e164=phone_e164,
            phone_raw=record.phone_raw,
            address=Address(
                street=record.address,
                city=record.city,
                state=record.state,
                zip=record.zip,
            ),
            status=self.customer_status,
            source=settings.IMPORT_CUSTOMER_SOURCE,
        )
        return customer_document(customer)

    def _policy_doc(self, record: ImportRecord, customer_id: str) -> Dict[str, Any]:
        policy = Policy(
            policy_type_normalized=record.policy_type_normalized,
            raw_policy_type=record.raw_policy_type,
            effective_date=record.effective_date,
            expiration_date=record.expiration_date,
            insurance_company=record.insurance_company,
            premium=record.premium,
            status="active",
            agency_id=self.tenant.tenant_id,
            customer_id=customer_id,
        )
        doc = policy.to_document(exclude={"imported_at", "created_at", "updated_at", "term_months"})
        doc["importedAt"] = SERVER_TIMESTAMP
        doc["createdAt"] = SERVER_TIMESTAMP
        doc["updatedAt"] = SERVER_TIMESTAMP
        return doc

    def _resolve_row(self, record: ImportRecord) -> _RowWrites:
        ops: List[Tuple[str, str, Dict[str, Any]]] = []
        key = customer_key(record.insured_name, record.address, record.zip)

        if key in self._created:
            writes = _RowWrites(self._created[key], is_new_customer=False, ops=ops)
        else:
            existing = self.customers.find_customer_by_name_address_zip(
                record.insured_name, record.address, record.zip
            )
            if existing is not None:
                writes = _RowWrites(existing.id, is_new_customer=False, ops=ops, matched_existing=True)
                ops.append(("update", existing.path, {
                    "address.street": record.address,
                    "address.city": record.city,
                    "address.state": record.state,
                    "address.zip": record.zip,
                    "updatedAt": SERVER_TIMESTAMP,
                }))
            else:
                customer_id = self.customers.new_customer_id()
                phone = self._available_phone(record.phone_e164)
                writes = _RowWrites(customer_id, is_new_customer=True, ops=ops, phone_e164=phone)
                ops.append(("set", self.customers.customer_path(customer_id), self._new_customer_doc(record, phone)))
                if phone:
                    ops.append(("set", self.customers.phone_index_path(phone), {
                        "customerId": customer_id,
                        "updatedAt": SERVER_TIMESTAMP,
                    }))

        customer_id = writes.customer_id
        duplicate = any(
            is_duplicate_policy(p, record.policy_type_normalized, record.effective_date,
                                record.insurance_company, record.premium)
            for p in self._queued_policies.get(customer_id, [])
        ) or self.customers.find_existing_policy(
            customer_id,
            record.policy_type_normalized,
            record.effective_date,
            record.insurance_company,
            record.premium,
        ) is not None

        if duplicate:
            writes.duplicate_policy = True
        else:
            policy_doc = self._policy_doc(record, customer_id)
            ops.append(("set", self.customers.policy_path(customer_id, self.customers.new_customer_id()), policy_doc))
            writes.premium = record.premium or 0.0
            writes.renewal = is_upcoming_renewal(record.expiration_date, self.store.now().date())
        return writes

    # ── batching ─────────────────────────────────────────────────────

    def _queue(self, batch: WriteBatch, ops) -> None:
        for kind, path, data in ops:
            if kind == "set":
                batch.set(path, data)
            elif kind == "update":
                batch.update(path, data)
            else:
                batch.delete(path)

    # ── entry point ──────────────────────────────────────────────────

    def import_csv_data(
        self,
        processed_rows: Sequence[RowResult],
        progress_callback: Optional[ProgressCallback] = None,
    ) -> ImportSummary:
        summary = ImportSummary()

        valid_rows = [r for r in processed_rows if r.valid and r.data is not None]
        invalid_rows = [r for r in processed_rows if not (r.valid and r.data is not None)]
        summary.skipped += len(invalid_rows)
        summary.errors = [RowError(row=r.row_index, errors=list(r.errors)) for r in invalid_rows]

        # Rough estimate (~2 writes per row) for the progress bar only
        total_batches = max(1, math.ceil(len(valid_rows) / max(1, self.flush_threshold // 2)))
        batch_number = 1
        batch = self.store.batch(self.batch_size)
        rows_committed = 0

        new_customers = 0
        new_premium = 0.0
        has_renewals = False
        pending: Dict[str, Any] = {}

        def reset_pending():
            pending.update(customers=0, updated=0, skipped=0, premium=0.0, renewals=False)

        reset_pending()

        def report(done: int):
            if progress_callback:
                progress_callback(batch_number, total_batches, done)

        def flush(done: int):
            nonlocal batch, batch_number, rows_committed, new_customers, new_premium, has_renewals
            if len(batch) == 0:
                return
            ops = len(batch)
            try:
                batch.commit()
            except StoreError as e:
                logger.error(
                    f"[import] {self.tenant.tenant_id}: batch {batch_number} ({ops} ops) failed; "
                    f"{rows_committed} rows committed before it: {e}",
                    exc_info=True,
                )
                # Rows in the failed batch were never written
                summary.imported -= pending["customers"]
                summary.updated -= pending["updated"]
                summary.skipped -= pending["skipped"]
                raise ImportAborted(
                    f"Import stopped at batch {batch_number}: {e}",
                    summary=summary,
                    rows_committed=rows_committed,
                ) from e
            new_customers += pending["customers"]
            new_premium += pending["premium"]
            has_renewals = has_renewals or pending["renewals"]
            rows_committed = done
            reset_pending()
            logger.info(f"[import] {self.tenant.tenant_id}: committed batch {batch_number} ({ops} ops, {done} rows)")
            report(done)
            batch = self.store.batch(self.batch_size)
            batch_number += 1

        for i, row in enumerate(valid_rows):
            record = row.data
            try:
                writes = self._resolve_row(record)
            except Exception as e:
                logger.error(f"[import] Error processing row {row.row_index}: {e}", exc_info=True)
                summary.errors.append(RowError(row=row.row_index, errors=[str(e) or type(e).__name__]))
                summary.skipped += 1
                continue

            # A row's writes always land in the same batch
            if len(batch) + len(writes.ops) > self.flush_threshold:
                flush(i)
            self._queue(batch, writes.ops)

            if writes.is_new_customer:
                key = customer_key(record.insured_name, record.address, record.zip)
                self._created[key] = writes.customer_id
                if writes.phone_e164:
                    self._claimed_phones[writes.phone_e164] = writes.customer_id
                summary.imported += 1
                pending["customers"] += 1
                logger.debug(f"[import] Created customer {writes.customer_id} ({record.insured_name})")
            elif writes.matched_existing:
                summary.updated += 1
                pending["updated"] += 1
                logger.debug(f"[import] Matched existing customer {writes.customer_id} ({record.insured_name})")

            if writes.duplicate_policy:
                summary.skipped += 1
                pending["skipped"] += 1
                logger.debug(f"[import] Skipped duplicate {record.policy_type_normalized} policy for {writes.customer_id}")
            else:
                self._queued_policies.setdefault(writes.customer_id, []).append(writes.ops[-1][2])
                pending["premium"] += writes.premium
                pending["renewals"] = pending["renewals"] or writes.renewal

            if len(batch) >= self.flush_threshold:
                flush(i + 1)
            elif (i + 1) % self.progress_every == 0:
                report(i + 1)

        flush(len(valid_rows))

        logger.info(
            f"[import] {self.tenant.tenant_id}: {summary.imported} imported, {summary.updated} updated, "
            f"{summary.skipped} skipped, {len(summary.errors)} rows with errors"
        )

        self.metrics.apply_import_deltas(self.tenant, new_customers, new_premium, has_renewals)
        return summary


def import_csv_data(
    store: DocumentStore,
    tenant: TenantContext,
    processed_rows: Sequence[RowResult],
    progress_callback: Optional[ProgressCallback] = None,
    **options,
) -> ImportSummary:
    """Functional entry point: ``CSVImportService(...).import_csv_data(...)``."""
    return CSVImportService(store, tenant, **options).import_csv_data(processed_rows, progress_callback)
