from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # App
    APP_NAME: str = "Agency CRM"
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    # Database (document store backing table)
    DATABASE_URL: str = "postgresql://crm_user:crm_pass@db:5432/crm_db"

    # Store write batches
    STORE_MAX_BATCH_OPS: int = 500  # hard ceiling enforced by the store

    # CSV import
    IMPORT_BATCH_SIZE: int = 400  # stay well under STORE_MAX_BATCH_OPS
    IMPORT_BATCH_MARGIN: int = 10
    IMPORT_PROGRESS_EVERY: int = 10  # rows between progress callbacks
    IMPORT_CUSTOMER_STATUS: str = "active"  # "lead" for the conservative variant
    IMPORT_CUSTOMER_SOURCE: str = "CSV Import"
    IMPORT_NAME_PREFIX_LENGTH: int = 20
    IMPORT_NAME_SCAN_LIMIT: int = 100
    IMPORT_MAX_REPORTED_ERRORS: int = 500

    # File Upload
    MAX_UPLOAD_SIZE: int = 10 * 1024 * 1024  # 10MB

    # Dashboard metrics
    RENEWAL_WINDOW_DAYS: int = 30
    DASHBOARD_CACHE_TTL_SECONDS: int = 60

    # App URL (frontend)
    FRONTEND_URL: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
