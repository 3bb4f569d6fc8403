"""Document table backing the tenant document store."""
from sqlalchemy import Column, Integer, String, DateTime, JSON
from sqlalchemy.sql import func
from agencycrm.core.database import Base


class Document(Base):
    """One stored document, addressed by its full slash-separated path.

    ``agencies/{tenant}/customers/{id}`` lives in collection
    ``agencies/{tenant}/customers`` whose collection id is ``customers``;
    collection-group queries select on ``collection_id`` alone.
    """
    __tablename__ = "documents"

    id = Column(Integer, primary_key=True, index=True)

    path = Column(String, unique=True, nullable=False, index=True)
    collection_path = Column(String, nullable=False, index=True)
    collection_id = Column(String, nullable=False, index=True)
    doc_id = Column(String, nullable=False)

    data = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
