"""Decode/encode boundary between store documents and typed records."""
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from agencycrm.services.document_store import DocumentSnapshot, InvalidDocument


class DocumentModel(BaseModel):
    """Record stored as a camelCase JSON document; ``id`` is the document id."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
    )

    id: Optional[str] = None

    @classmethod
    def from_document(cls, snapshot: DocumentSnapshot):
        try:
            return cls.model_validate({**snapshot.data, "id": snapshot.id})
        except ValidationError as e:
            raise InvalidDocument(f"{snapshot.path} is not a valid {cls.__name__}: {e}") from e

    def to_document(self, exclude: Optional[set] = None) -> Dict[str, Any]:
        """JSON-safe document body (dates as ISO strings), without the id."""
        return self.model_dump(
            mode="json",
            by_alias=True,
            exclude={"id"} | (exclude or set()),
        )
