import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from agencycrm.api import customers as customers_api
from agencycrm.api import metrics as metrics_api
from agencycrm.core.config import settings
from agencycrm.services.document_store import StoreError

logger = logging.getLogger(__name__)


def init_database():
    """Create the documents table if it is missing."""
    from agencycrm.core.database import Base, engine
    from agencycrm.models.document import Document  # noqa: F401 ensure table is registered

    logger.info("Creating database tables...")
    Base.metadata.create_all(bind=engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_database()
    yield


# Disable API docs in production
docs_url = "/docs" if settings.ENVIRONMENT != "production" else None
redoc_url = "/redoc" if settings.ENVIRONMENT != "production" else None

app = FastAPI(
    title=settings.APP_NAME,
    description="Agency CRM - customers, policies and CSV import API",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=docs_url,
    redoc_url=redoc_url,
)


# Global exception handlers - always return JSON (never plain text)
@app.exception_handler(StoreError)
async def store_exception_handler(request, exc):
    logger.error(f"Store error on {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=502,
        content={"detail": f"Document store error: {str(exc)[:300]}"},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"detail": f"Internal error: {str(exc)}"},
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request, exc):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
    )


# CORS - local dev plus the configured frontend
allowed_origins = ["http://localhost:3000"]
frontend_url = settings.FRONTEND_URL or ""
if frontend_url and frontend_url not in allowed_origins:
    allowed_origins.append(frontend_url)
    if not frontend_url.startswith("https"):
        allowed_origins.append(frontend_url.replace("http://", "https://"))

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health_check():
    return {"status": "healthy", "service": "agency-crm-api", "version": "1.0.0"}


# Include routers
app.include_router(customers_api.router)
app.include_router(metrics_api.router)
