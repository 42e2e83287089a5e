"""Index provisioning: turns a RecordSchema into createIndexes requests."""

from __future__ import annotations

import logging
from typing import Any

from pymongo import ASCENDING, DESCENDING, GEOSPHERE, TEXT, IndexModel

from ninja_mongorepo.context import QueryContext
from ninja_mongorepo.exceptions import IndexProvisionError
from ninja_mongorepo.schema import IndexKind, RecordSchema

logger = logging.getLogger(__name__)

_KIND_TO_DIRECTION: dict[IndexKind, Any] = {
    1: ASCENDING,
    -1: DESCENDING,
    "text": TEXT,
    "2dsphere": GEOSPHERE,
}


def build_index_models(schema: RecordSchema) -> list[IndexModel]:
    """Translate the schema's single-field index specs into PyMongo models."""
    models: list[IndexModel] = []
    for spec in schema.indexes:
        options: dict[str, Any] = {}
        if spec.unique:
            options["unique"] = True
        if spec.sparse:
            options["sparse"] = True
        models.append(IndexModel([(spec.field, _KIND_TO_DIRECTION[spec.kind])], **options))
    return models


async def provision_indexes(collection: Any, schema: RecordSchema, context: QueryContext) -> int:
    """Create every index declared on *schema* and return how many were requested.

    Single-field indexes go out in one ``create_indexes`` call; each compound
    index is created with its own ``create_index`` call. The store treats an
    identical existing index as a no-op.

    Raises:
        IndexProvisionError: On the first rejected request. Nothing is retried.
    """
    models = build_index_models(schema)
    requested = 0
    try:
        if models:
            await context.run(collection.create_indexes(models, session=context.session))
            requested += len(models)
        for compound in schema.compound_indexes:
            await context.run(collection.create_index(compound.keys, session=context.session))
            requested += 1
    except Exception as exc:
        logger.error("Index provisioning failed for %s: %s", schema.model_name, type(exc).__name__)
        raise IndexProvisionError(
            entity_name=schema.model_name,
            operation="ensure_indexes",
            detail=f"The store rejected an index request ({type(exc).__name__}).",
            cause=exc,
        ) from exc

    logger.info("Provisioned %d index(es) for %s", requested, schema.model_name)
    return requested
