"""Identity field access for record instances."""

from __future__ import annotations

from typing import Any

from bson import ObjectId
from pydantic import BaseModel

# Document key MongoDB uses for the primary key.
IDENTITY_KEY = "_id"


class IdentityLocator(BaseModel):
    """Reads and writes the identity field of a record.

    Resolved once per record type by :func:`ninja_mongorepo.schema.read_schema`
    and never changed afterwards.
    """

    attribute: str
    key: str = IDENTITY_KEY
    string_ids: bool = False

    model_config = {"frozen": True, "extra": "forbid"}

    def get(self, record: BaseModel) -> Any:
        return getattr(record, self.attribute)

    def set(self, record: BaseModel, value: Any) -> None:
        setattr(record, self.attribute, value)

    @staticmethod
    def is_empty(value: Any) -> bool:
        """True when *value* marks a record that has not been stored yet."""
        return value is None or value == ""

    def new_identity(self) -> ObjectId | str:
        """Generate a client-side identifier matching the field's declared type."""
        oid = ObjectId()
        return str(oid) if self.string_ids else oid
