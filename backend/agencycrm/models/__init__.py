from agencycrm.models.document import Document

__all__ = [
    "Document",
]
