from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from agencycrm.core.config import settings


def normalize_db_url(db_url: str) -> str:
    # Render uses postgres:// but SQLAlchemy + psycopg3 needs postgresql+psycopg://
    if db_url.startswith("postgres://"):
        return "postgresql+psycopg://" + db_url[len("postgres://"):]
    if db_url.startswith("postgresql://") and "+psycopg" not in db_url:
        return "postgresql+psycopg://" + db_url[len("postgresql://"):]
    return db_url


def make_engine(db_url: str):
    """Build an engine; sqlite URLs (local runs, tests) skip the pool settings."""
    db_url = normalize_db_url(db_url)
    if db_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if db_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(db_url, **kwargs)
    return create_engine(
        db_url,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
        echo=False,
    )


# Create engine
engine = make_engine(settings.DATABASE_URL)

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for models
Base = declarative_base()


# Dependency for FastAPI routes
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
