"""Tests for record schema derivation from field annotations."""

from __future__ import annotations

from typing import Annotated

import pytest
from _support import Person, Tag
from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field, create_model

from ninja_mongorepo.exceptions import SchemaError
from ninja_mongorepo.schema import (
    CompoundIndex,
    CompoundIndexSpec,
    Index,
    IndexSpec,
    parse_compound_indexes,
    parse_index,
    read_schema,
)

# ---------------------------------------------------------------------------
# Identity resolution
# ---------------------------------------------------------------------------


def test_identity_is_field_aliased_to_id():
    schema = read_schema(Person)
    assert schema.model_name == "Person"
    assert schema.identity.attribute == "id"
    assert schema.identity.key == "_id"
    assert schema.identity.string_ids is False


def test_string_identity_detected():
    assert read_schema(Tag).identity.string_ids is True


def test_missing_identity_raises_schema_error():
    class Anonymous(BaseModel):
        name: str

    with pytest.raises(SchemaError, match="no identity field declared") as exc_info:
        read_schema(Anonymous)
    assert exc_info.value.entity_name == "Anonymous"
    assert exc_info.value.operation == "read_schema"


@pytest.mark.parametrize("annotation", [int | None, ObjectId | str | None, dict])
def test_identity_of_unsupported_type_rejected(annotation):
    Counter = create_model(
        "Counter",
        __config__=ConfigDict(arbitrary_types_allowed=True),
        id=(annotation, Field(default=None, alias="_id")),
    )

    with pytest.raises(SchemaError, match="must be typed ObjectId or str"):
        read_schema(Counter)


def test_non_model_type_rejected():
    with pytest.raises(SchemaError, match="pydantic BaseModel"):
        read_schema(dict)  # type: ignore[arg-type]


def test_schema_is_cached_per_type():
    assert read_schema(Person) is read_schema(Person)


# ---------------------------------------------------------------------------
# Simple indexes
# ---------------------------------------------------------------------------


def test_simple_indexes_use_document_keys():
    schema = read_schema(Person)
    assert schema.indexes == [
        IndexSpec(field="name", kind=1),
        IndexSpec(field="email", kind=1, unique=True, sparse=True),
    ]


def test_aliased_field_indexed_under_alias():
    class Event(BaseModel):
        id: ObjectId | None = Field(default=None, alias="_id")
        started: Annotated[int, Index("-1")] = Field(default=0, alias="started_at")

        model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True)

    assert read_schema(Event).indexes == [IndexSpec(field="started_at", kind=-1)]


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("1", IndexSpec(field="f", kind=1)),
        ("-1", IndexSpec(field="f", kind=-1)),
        ("text", IndexSpec(field="f", kind="text")),
        ("2dsphere, sparse", IndexSpec(field="f", kind="2dsphere", sparse=True)),
        (" -1 ,unique ", IndexSpec(field="f", kind=-1, unique=True)),
        ("unique", IndexSpec(field="f", kind=1, unique=True)),
    ],
)
def test_parse_index_tokens(text: str, expected: IndexSpec):
    assert parse_index("E", "f", text) == expected


def test_unrecognized_index_token_fails_construction():
    class Fruit(BaseModel):
        id: str | None = Field(default=None, alias="_id")
        kind: Annotated[str, Index("banana")] = ""

    with pytest.raises(SchemaError, match="unsupported index token 'banana'"):
        read_schema(Fruit)


def test_two_orderings_on_one_field_rejected():
    with pytest.raises(SchemaError, match="more than one order"):
        parse_index("E", "f", "1, -1")


def test_empty_index_annotation_rejected():
    with pytest.raises(SchemaError, match="unsupported index token"):
        parse_index("E", "f", "")


def test_duplicate_index_annotations_rejected():
    class Doubled(BaseModel):
        id: str | None = Field(default=None, alias="_id")
        name: Annotated[str, Index("1"), Index("-1")] = ""

    with pytest.raises(SchemaError, match="more than one Index"):
        read_schema(Doubled)


# ---------------------------------------------------------------------------
# Compound indexes
# ---------------------------------------------------------------------------


def test_compound_indexes_from_identity_field():
    schema = read_schema(Person)
    assert schema.compound_indexes == [
        CompoundIndexSpec(keys=[("name", 1), ("age", 1)]),
        CompoundIndexSpec(keys=[("age", 1), ("created_at", 1)]),
    ]


def test_compound_index_on_non_identity_field():
    class Sale(BaseModel):
        id: str | None = Field(default=None, alias="_id")
        region: Annotated[str, CompoundIndex("{region:1, amount:-1}")] = ""

    assert read_schema(Sale).compound_indexes == [CompoundIndexSpec(keys=[("region", 1), ("amount", -1)])]


def test_no_compound_annotation_means_no_compound_indexes():
    assert read_schema(Tag).compound_indexes == []


@pytest.mark.parametrize(
    ("text", "fragment"),
    [
        ("{name:1,age}", "'age'"),
        ("{name:1:2}", "'name:1:2'"),
        ("{:1}", "':1'"),
        ("{name:up}", "'up'"),
        ("{name:1};", "''"),
        ("a:1", "'a:1'"),
        ("{a:1};b:-1", "'b:-1'"),
    ],
)
def test_malformed_compound_index_names_fragment(text: str, fragment: str):
    with pytest.raises(SchemaError, match=fragment):
        parse_compound_indexes("E", text)


def test_unbraced_compound_group_rejected():
    with pytest.raises(SchemaError, match="must be wrapped in braces"):
        parse_compound_indexes("E", "a:1,b:-1")


def test_malformed_compound_index_fails_construction():
    class Broken(BaseModel):
        id: Annotated[str | None, CompoundIndex("{a:1,b:x}")] = Field(default=None, alias="_id")

    with pytest.raises(SchemaError, match="invalid compound index order"):
        read_schema(Broken)
