from datetime import date

import pytest

from agencycrm.schemas.csv_import import ImportRecord, RowResult
from agencycrm.services.csv_import import CSVImportService, ImportAborted, import_csv_data
from agencycrm.services.csv_reader import read_csv_bytes
from agencycrm.services.customers import CustomerService
from agencycrm.services.document_store import DocumentStore, StoreError
from agencycrm.services.metrics import MetricsService
from agencycrm.services.row_validator import process_csv_rows

from conftest import FIXED_NOW, SCENARIO_CSV


def _record(name="John Smith", address="123 Main St", zip_code="62701", **kw):
    values = dict(
        insured_name=name,
        address=address,
        city="Springfield",
        state="IL",
        zip=zip_code,
        policy_type_normalized="Personal Auto",
        raw_policy_type="PA",
        effective_date=date(2024, 1, 15),
        expiration_date=date(2025, 1, 15),
        insurance_company="Acme Ins",
        premium=1200.0,
    )
    values.update(kw)
    return ImportRecord(**values)


def _rows(*records):
    return [RowResult(row_index=i + 1, data=r) for i, r in enumerate(records)]


def _customers(store, tenant):
    return store.query(tenant.path("customers"))


def _policies(store, customer_id, tenant):
    return store.query(tenant.path("customers", customer_id, "policies"))


class RecordingStore(DocumentStore):
    """Store that remembers the size of every committed batch."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.commit_sizes = []

    def _commit(self, ops):
        self.commit_sizes.append(len(ops))
        return super()._commit(ops)


class FailingLookupStore(DocumentStore):
    """Store whose customer lookup fails for one insured name."""

    def __init__(self, *args, fail_for: str, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_for = fail_for

    def query(self, collection_path, filters=None, order_by=None, limit=None):
        if any(f == ("nameKey", ">=", self.fail_for) for f in filters or []):
            raise StoreError("deadline exceeded")
        return super().query(collection_path, filters=filters, order_by=order_by, limit=limit)


class FailingCommitStore(DocumentStore):
    """Store that fails the Nth batch commit."""

    def __init__(self, *args, fail_on_commit: int, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_on_commit = fail_on_commit
        self.commits = 0

    def _commit(self, ops):
        self.commits += 1
        if self.commits == self.fail_on_commit:
            raise StoreError("unavailable")
        return super()._commit(ops)


class TestScenario:
    def test_single_row_file(self, store, tenant):
        headers, rows = read_csv_bytes(SCENARIO_CSV.encode())
        summary = import_csv_data(store, tenant, process_csv_rows(headers, rows))

        assert summary.model_dump() == {"imported": 1, "updated": 0, "skipped": 0, "errors": []}

        customers = _customers(store, tenant)
        assert len(customers) == 1
        customer = customers[0].data
        assert customer["fullName"] == "John Smith"
        assert customer["status"] == "active"
        assert customer["source"] == "CSV Import"
        assert customer["address"] == {"street": "123 Main St", "city": "Springfield", "state": "IL", "zip": "62701"}

        policies = _policies(store, customers[0].id, tenant)
        assert len(policies) == 1
        policy = policies[0].data
        assert policy["policyTypeNormalized"] == "Personal Auto"
        assert policy["effectiveDate"] == "2024-01-15"
        assert policy["expirationDate"] == "2025-01-15"
        assert policy["premium"] == 1200
        assert policy["agencyId"] == tenant.tenant_id
        assert policy["customerId"] == customers[0].id
        assert policy["importedAt"] == FIXED_NOW.isoformat()

    def test_metrics_get_one_aggregate_update(self, store, tenant):
        records = [_record(name=f"Customer {i}", premium=100.0) for i in range(3)]
        import_csv_data(store, tenant, _rows(*records))

        metrics = MetricsService(store).get_metrics(tenant)
        assert metrics["totalCustomers"] == 3
        assert metrics["totalPremium"] == 300.0
        # expirationDate 2025-01-15 is inside the window from 2024-12-20
        assert metrics["renewalsNext30Days"] == 3

    def test_lead_status_variant(self, store, tenant):
        CSVImportService(store, tenant, customer_status="lead").import_csv_data(_rows(_record()))
        assert _customers(store, tenant)[0].data["status"] == "lead"


class TestInvalidRows:
    def test_invalid_rows_are_skipped_with_errors_copied(self, store, tenant):
        rows = [
            RowResult(row_index=1, data=_record()),
            RowResult(row_index=2, valid=False, errors=["Missing zip", "Invalid premium: x"]),
        ]
        summary = import_csv_data(store, tenant, rows)
        assert summary.imported == 1
        assert summary.skipped == 1
        assert [(e.row, e.errors) for e in summary.errors] == [(2, ["Missing zip", "Invalid premium: x"])]


class TestCustomerResolution:
    def test_existing_customer_is_updated_not_duplicated(self, store, tenant):
        import_csv_data(store, tenant, _rows(_record()))
        summary = import_csv_data(store, tenant, _rows(
            _record(name="JOHN SMITH", address="123 Main Street", policy_type_normalized="Homeowners"),
        ))

        assert (summary.imported, summary.updated, summary.skipped) == (0, 1, 0)
        customers = _customers(store, tenant)
        assert len(customers) == 1
        assert customers[0].data["address"]["street"] == "123 Main Street"
        assert len(_policies(store, customers[0].id, tenant)) == 2

    def test_same_customer_twice_in_one_file(self, store, tenant):
        summary = import_csv_data(store, tenant, _rows(
            _record(),
            _record(policy_type_normalized="Homeowners", premium=900.0),
        ))
        assert summary.imported == 1
        customers = _customers(store, tenant)
        assert len(customers) == 1
        assert len(_policies(store, customers[0].id, tenant)) == 2

    def test_different_zip_is_a_different_customer(self, store, tenant):
        import_csv_data(store, tenant, _rows(_record(), _record(zip_code="62702")))
        assert len(_customers(store, tenant)) == 2

    def test_duplicate_policy_in_one_file_is_skipped(self, store, tenant):
        summary = import_csv_data(store, tenant, _rows(_record(), _record(premium=1200.004)))
        assert (summary.imported, summary.skipped) == (1, 1)
        customer_id = _customers(store, tenant)[0].id
        assert len(_policies(store, customer_id, tenant)) == 1

    def test_premium_a_dollar_off_is_a_new_policy(self, store, tenant):
        import_csv_data(store, tenant, _rows(_record()))
        summary = import_csv_data(store, tenant, _rows(_record(premium=1201.0)))
        assert (summary.updated, summary.skipped) == (1, 0)

    def test_phone_index_written_for_new_customers(self, store, tenant):
        import_csv_data(store, tenant, _rows(_record(phone_raw="(217) 555-0100", phone_e164="+12175550100")))
        customer = _customers(store, tenant)[0]
        assert store.get(tenant.path("phoneIndex", "+12175550100")).data["customerId"] == customer.id
        assert customer.data["phoneRaw"] == "(217) 555-0100"
        assert customer.data["phoneE164"] == "+12175550100"


def _assert_phone_index_consistent(store, tenant):
    for doc in _customers(store, tenant):
        phone = doc.data.get("phoneE164")
        if phone:
            assert store.get(tenant.path("phoneIndex", phone)).data["customerId"] == doc.id


class TestPhoneOwnership:
    def test_phone_owned_by_stored_customer_is_not_taken(self, store, tenant):
        alice_id = CustomerService(store, tenant).create_customer({"full_name": "Alice Ray", "phone_raw": "2175550100"})

        summary = import_csv_data(store, tenant, _rows(
            _record(name="Bob Ray", phone_raw="217-555-0100", phone_e164="+12175550100"),
        ))

        assert summary.imported == 1
        bob = next(d for d in _customers(store, tenant) if d.data["fullName"] == "Bob Ray")
        assert bob.data["phoneE164"] is None
        assert bob.data["phoneRaw"] == "217-555-0100"
        assert store.get(tenant.path("phoneIndex", "+12175550100")).data["customerId"] == alice_id
        _assert_phone_index_consistent(store, tenant)

    def test_same_phone_twice_in_one_file(self, store, tenant):
        summary = import_csv_data(store, tenant, _rows(
            _record(name="Dave Cole", phone_e164="+12175550111"),
            _record(name="Carol Cole", phone_e164="+12175550111"),
        ))

        assert summary.imported == 2
        by_name = {d.data["fullName"]: d for d in _customers(store, tenant)}
        assert by_name["Dave Cole"].data["phoneE164"] == "+12175550111"
        assert by_name["Carol Cole"].data["phoneE164"] is None
        entry = store.get(tenant.path("phoneIndex", "+12175550111"))
        assert entry.data["customerId"] == by_name["Dave Cole"].id
        _assert_phone_index_consistent(store, tenant)


class TestIdempotence:
    def test_second_run_creates_nothing(self, store, tenant):
        records = [
            _record(),
            _record(policy_type_normalized="Homeowners", premium=800.0),
            _record(name="Mary Jones", address="9 Elm Rd"),
        ]
        first = import_csv_data(store, tenant, _rows(*records))
        assert (first.imported, first.updated, first.skipped) == (2, 0, 0)

        second = import_csv_data(store, tenant, _rows(*records))
        assert second.imported == 0
        assert second.skipped == 3
        assert second.updated == 3
        assert len(_customers(store, tenant)) == 2

        metrics = MetricsService(store).get_metrics(tenant)
        assert metrics["totalCustomers"] == 2
        assert metrics["totalPremium"] == 3200.0


class TestBatching:
    def test_commits_never_exceed_ceiling_minus_margin(self, db, tenant):
        store = RecordingStore(db, max_batch_ops=20, now=lambda: FIXED_NOW)
        service = CSVImportService(store, tenant, batch_size=20, batch_margin=5)
        records = [_record(name=f"Customer {i:02d}") for i in range(30)]

        summary = service.import_csv_data(_rows(*records))

        assert summary.imported == 30
        assert len(_customers(store, tenant)) == 30
        assert max(store.commit_sizes) <= 15
        # 60 import writes cannot fit in one batch
        assert sum(1 for size in store.commit_sizes if size > 1) >= 4

    def test_progress_is_reported(self, db, tenant):
        store = DocumentStore(db, max_batch_ops=20, now=lambda: FIXED_NOW)
        service = CSVImportService(store, tenant, batch_size=20, batch_margin=5, progress_every=10)
        calls = []

        service.import_csv_data(
            _rows(*[_record(name=f"Customer {i:02d}") for i in range(25)]),
            lambda batch, total, done: calls.append((batch, total, done)),
        )

        assert calls
        done = [c[2] for c in calls]
        assert done == sorted(done)
        assert done[-1] == 25
        assert all(total >= 1 for _, total, _ in calls)

    def test_rejects_batch_too_small_for_a_row(self, store, tenant):
        with pytest.raises(ValueError):
            CSVImportService(store, tenant, batch_size=5, batch_margin=5)


class TestFaultIsolation:
    def test_row_five_failure_does_not_stop_the_others(self, db, tenant):
        store = FailingLookupStore(db, now=lambda: FIXED_NOW, fail_for="customer 5")
        records = [_record(name=f"Customer {i}") for i in range(1, 11)]

        summary = import_csv_data(store, tenant, _rows(*records))

        assert summary.imported == 9
        assert summary.skipped == 1
        assert [e.row for e in summary.errors] == [5]
        assert "deadline exceeded" in summary.errors[0].errors[0]
        names = sorted(d.data["fullName"] for d in _customers(store, tenant))
        assert "Customer 5" not in names
        assert len(names) == 9

    def test_failed_flush_aborts_and_rerun_is_safe(self, db, tenant):
        records = [_record(name=f"Customer {i:02d}") for i in range(30)]

        failing = FailingCommitStore(db, max_batch_ops=20, now=lambda: FIXED_NOW, fail_on_commit=2)
        with pytest.raises(ImportAborted) as exc:
            CSVImportService(failing, tenant, batch_size=20, batch_margin=5).import_csv_data(_rows(*records))
        assert exc.value.rows_committed > 0
        committed = len(_customers(failing, tenant))
        assert committed == exc.value.rows_committed

        store = DocumentStore(db, max_batch_ops=20, now=lambda: FIXED_NOW)
        summary = CSVImportService(store, tenant, batch_size=20, batch_margin=5).import_csv_data(_rows(*records))
        assert summary.imported == 30 - committed
        assert summary.updated == committed
        assert summary.skipped == committed
        assert len(_customers(store, tenant)) == 30

    def test_aborted_summary_counts_only_committed_rows(self, db, tenant):
        records = [_record(name=f"Customer {i:02d}") for i in range(30)]
        store = DocumentStore(db, max_batch_ops=20, now=lambda: FIXED_NOW)
        CSVImportService(store, tenant, batch_size=20, batch_margin=5).import_csv_data(_rows(*records))

        # Every row is now one customer update plus a duplicate policy skip
        failing = FailingCommitStore(db, max_batch_ops=20, now=lambda: FIXED_NOW, fail_on_commit=2)
        with pytest.raises(ImportAborted) as exc:
            CSVImportService(failing, tenant, batch_size=20, batch_margin=5).import_csv_data(_rows(*records))

        partial = exc.value.summary
        assert exc.value.rows_committed == 15
        assert (partial.imported, partial.updated, partial.skipped) == (0, 15, 15)
