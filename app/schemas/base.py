"""
Base Schema Classes for Pydantic Models

Store documents use camelCase keys. These base classes map them onto
snake_case attributes so the rest of the code reads like Python.

RULE: Every model persisted to the document store MUST inherit from
StoreDocumentModel and be written back with `to_document()`.
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class StoreDocumentModel(BaseModel):
    """
    Base class for documents read from / written to the store.

    Features:
    - camelCase aliases (`date_in_transit` <-> `dateInTransit`)
    - Population by field name or alias
    - Unknown keys are kept, so a read-modify-write never drops data

    Usage:
        record = ReturnRecord.from_document(raw, key="RT-2025-0001")
        await store.set(f"return_records/{record.id}", record.to_document())
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        # Enum fields hold plain strings, defaults included
        use_enum_values=True,
        validate_default=True,
    )

    @classmethod
    def from_document(cls, data: Dict[str, Any], key: Optional[str] = None):
        """Build the model from a raw store value; `key` fills a missing id."""
        payload = dict(data)
        if key is not None and not payload.get("id"):
            payload["id"] = key
        return cls.model_validate(payload)

    def to_document(self) -> Dict[str, Any]:
        """Serialize to the store's wire shape (camelCase, no nulls)."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class BaseCreateSchema(BaseModel):
    """
    Base class for create/input schemas.

    Accepts camelCase or snake_case keys from clients.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class BaseUpdateSchema(BaseModel):
    """
    Base class for update/patch schemas.

    All fields are optional by default for partial updates.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def changes(self) -> Dict[str, Any]:
        """Only the keys the client actually sent, camelCased."""
        return self.model_dump(by_alias=True, exclude_unset=True, mode="json")
