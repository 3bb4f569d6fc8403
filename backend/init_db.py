"""
Database initialization script
Run this to create tables, and optionally import a customer CSV for an agency
"""
import argparse
import logging
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent))

from agencycrm.core.database import engine, Base, SessionLocal
from agencycrm.core.tenant import TenantContext
from agencycrm.models.document import Document  # noqa: F401
from agencycrm.services.csv_import import CSVImportService, ImportAborted
from agencycrm.services.csv_reader import read_csv_bytes
from agencycrm.services.document_store import DocumentStore
from agencycrm.services.row_validator import HeaderMappingError, process_csv_rows


def init_db():
    """Initialize database with tables"""
    print("Creating database tables...")
    Base.metadata.create_all(bind=engine)
    print("✓ Tables created successfully")


def import_csv(tenant_id: str, csv_path: str) -> int:
    """Import a customer/policy CSV for one agency; returns a process exit code"""
    path = Path(csv_path)
    if not path.exists():
        print(f"✗ File not found: {csv_path}")
        return 1

    try:
        headers, rows = read_csv_bytes(path.read_bytes())
        results = process_csv_rows(headers, rows)
    except HeaderMappingError as e:
        print(f"✗ {e}")
        return 1
    except ValueError as e:
        print(f"✗ Could not read {path.name}: {e}")
        return 1

    print(f"\nImporting {len(results)} rows from {path.name} into agency '{tenant_id}'...")

    def progress(batch_number, total_batches, rows_done):
        print(f"  batch {batch_number}/{total_batches}: {rows_done} rows processed")

    db = SessionLocal()
    try:
        service = CSVImportService(DocumentStore(db), TenantContext(tenant_id=tenant_id))
        summary = service.import_csv_data(results, progress)
    except ImportAborted as e:
        print(f"\n✗ {e}")
        print(f"  {e.rows_committed} rows were saved before the failure.")
        print("  Re-running the same file is safe; saved rows will be skipped.")
        return 2
    finally:
        db.close()

    print(f"\n✓ Imported: {summary.imported}")
    print(f"✓ Updated:  {summary.updated}")
    print(f"  Skipped:  {summary.skipped}")
    if summary.errors:
        print(f"\n{len(summary.errors)} rows with errors:")
        for err in summary.errors[:20]:
            print(f"  row {err.row}: {'; '.join(err.errors)}")
        if len(summary.errors) > 20:
            print(f"  ... and {len(summary.errors) - 20} more")
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Agency CRM - Database Initialization")
    parser.add_argument("--tenant", help="agency id to import into")
    parser.add_argument("--csv", help="customer/policy CSV file to import")
    args = parser.parse_args()

    if bool(args.tenant) != bool(args.csv):
        parser.error("--tenant and --csv must be given together")

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    print("=" * 60)
    print("Agency CRM - Database Initialization")
    print("=" * 60)

    init_db()

    exit_code = 0
    if args.csv:
        exit_code = import_csv(args.tenant, args.csv)

    print("\n" + "=" * 60)
    print("Initialization complete!" if exit_code == 0 else "Initialization finished with errors")
    print("=" * 60)
    sys.exit(exit_code)
