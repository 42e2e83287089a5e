"""Record schema derivation from per-field annotations.

A record type is a pydantic model. Its fields carry the metadata the
repository needs:

- the identity field is the one stored under ``_id``, i.e. declared with
  ``Field(alias="_id")``;
- ``Annotated[..., Index("1, unique")]`` declares a single-field index;
- ``Annotated[..., CompoundIndex("{name:1,age:1};{age:1,created_at:1}")]``
  declares one compound index per brace group. By convention it sits on the
  identity field, but any field may carry it.

Example::

    class Person(BaseModel):
        id: Annotated[ObjectId | None, CompoundIndex("{name:1,age:-1}")] = Field(default=None, alias="_id")
        name: Annotated[str, Index("1, unique")]
        age: Annotated[int, Index("-1")] = 0

        model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True)

The schema is read once per type and cached.
"""

from __future__ import annotations

import functools
import types
import typing
from dataclasses import dataclass
from typing import Any, Literal

from bson import ObjectId
from pydantic import BaseModel, Field
from pydantic.fields import FieldInfo

from ninja_mongorepo.exceptions import SchemaError
from ninja_mongorepo.identity import IDENTITY_KEY, IdentityLocator

IndexKind = Literal[1, -1, "text", "2dsphere"]

_ORDER_TOKENS: dict[str, IndexKind] = {"1": 1, "-1": -1, "text": "text", "2dsphere": "2dsphere"}
_FLAG_TOKENS = frozenset({"unique", "sparse"})


@dataclass(frozen=True)
class Index:
    """Field annotation declaring a single-field index, e.g. ``Index("-1, sparse")``."""

    spec: str


@dataclass(frozen=True)
class CompoundIndex:
    """Field annotation declaring compound indexes, e.g. ``CompoundIndex("{a:1,b:-1};{c:1}")``."""

    spec: str


class IndexSpec(BaseModel):
    """One single-field index to create on the collection."""

    field: str = Field(description="Document key the index covers.")
    kind: IndexKind = Field(default=1, description="Sort order or index type.")
    unique: bool = False
    sparse: bool = False

    model_config = {"frozen": True, "extra": "forbid"}


class CompoundIndexSpec(BaseModel):
    """An ordered group of ``(field, order)`` keys created as one index."""

    keys: list[tuple[str, int]] = Field(min_length=1)

    model_config = {"frozen": True, "extra": "forbid"}


class RecordSchema(BaseModel):
    """Everything the repository derives from a record type at construction."""

    model_name: str
    identity: IdentityLocator
    indexes: list[IndexSpec] = Field(default_factory=list)
    compound_indexes: list[CompoundIndexSpec] = Field(default_factory=list)

    model_config = {"frozen": True, "extra": "forbid"}


def document_key(attribute: str, info: FieldInfo) -> str:
    """Return the key a field is stored under: its alias, else its attribute name."""
    return info.alias or attribute


@functools.lru_cache(maxsize=None)
def read_schema(model_type: type[BaseModel]) -> RecordSchema:
    """Derive the identity locator and index specifications of *model_type*.

    Raises:
        SchemaError: If the type is not a pydantic model, declares no identity
            field, or carries a malformed index annotation.
    """
    if not (isinstance(model_type, type) and issubclass(model_type, BaseModel)):
        raise SchemaError(
            entity_name=getattr(model_type, "__name__", repr(model_type)),
            operation="read_schema",
            detail="record type must be a pydantic BaseModel subclass.",
        )

    name = model_type.__name__
    identity: IdentityLocator | None = None
    indexes: list[IndexSpec] = []
    compound_indexes: list[CompoundIndexSpec] = []

    for attribute, info in model_type.model_fields.items():
        key = document_key(attribute, info)
        if identity is None and key == IDENTITY_KEY:
            identity_type = _identity_type(info.annotation)
            if identity_type is None:
                raise SchemaError(
                    entity_name=name,
                    operation="read_schema",
                    detail=f"identity field {attribute!r} must be typed ObjectId or str, got {info.annotation!r}.",
                )
            identity = IdentityLocator(attribute=attribute, string_ids=identity_type is str)

        index_markers = [m for m in info.metadata if isinstance(m, Index)]
        if len(index_markers) > 1:
            raise SchemaError(
                entity_name=name,
                operation="read_schema",
                detail=f"field {key!r} declares more than one Index annotation.",
            )
        if index_markers:
            indexes.append(parse_index(name, key, index_markers[0].spec))

        for marker in info.metadata:
            if isinstance(marker, CompoundIndex):
                compound_indexes.extend(parse_compound_indexes(name, marker.spec))

    if identity is None:
        raise SchemaError(
            entity_name=name,
            operation="read_schema",
            detail=f"no identity field declared; alias one field to {IDENTITY_KEY!r}.",
        )

    return RecordSchema(
        model_name=name,
        identity=identity,
        indexes=indexes,
        compound_indexes=compound_indexes,
    )


def parse_index(entity_name: str, field: str, text: str) -> IndexSpec:
    """Parse an index annotation such as ``"1, unique, sparse"``."""
    kind: IndexKind | None = None
    flags: dict[str, bool] = {}
    for raw in text.split(","):
        token = raw.strip()
        if token in _ORDER_TOKENS:
            if kind is not None:
                raise SchemaError(
                    entity_name=entity_name,
                    operation="read_schema",
                    detail=f"field {field!r} index {text!r} declares more than one order or kind.",
                )
            kind = _ORDER_TOKENS[token]
        elif token in _FLAG_TOKENS:
            flags[token] = True
        else:
            raise SchemaError(
                entity_name=entity_name,
                operation="read_schema",
                detail=f"unsupported index token {token!r} on field {field!r}.",
            )
    return IndexSpec(field=field, kind=kind if kind is not None else 1, **flags)


def parse_compound_indexes(entity_name: str, text: str) -> list[CompoundIndexSpec]:
    """Parse ``"{a:1,b:-1};{c:1}"`` into one spec per brace group."""
    specs: list[CompoundIndexSpec] = []
    for group in text.split(";"):
        fragment = group.strip()
        if not (fragment.startswith("{") and fragment.endswith("}")):
            raise SchemaError(
                entity_name=entity_name,
                operation="read_schema",
                detail=f"compound index group {fragment!r} must be wrapped in braces.",
            )
        body = fragment[1:-1]
        keys: list[tuple[str, int]] = []
        for part in body.split(","):
            pair = part.split(":")
            if len(pair) != 2 or not pair[0].strip():
                raise SchemaError(
                    entity_name=entity_name,
                    operation="read_schema",
                    detail=f"invalid compound index format: {part.strip()!r}.",
                )
            try:
                order = int(pair[1].strip())
            except ValueError as exc:
                raise SchemaError(
                    entity_name=entity_name,
                    operation="read_schema",
                    detail=f"invalid compound index order: {pair[1].strip()!r}.",
                    cause=exc,
                ) from exc
            keys.append((pair[0].strip(), order))
        specs.append(CompoundIndexSpec(keys=keys))
    return specs


def _identity_type(annotation: Any) -> type | None:
    """Return ``str`` or ``ObjectId`` when *annotation* is one of them (optionally ``None``-able)."""
    origin = typing.get_origin(annotation)
    if origin is typing.Union or origin is types.UnionType:
        members = [a for a in typing.get_args(annotation) if a is not type(None)]
    else:
        members = [annotation]
    if len(members) == 1 and members[0] in (str, ObjectId):
        return members[0]
    return None
