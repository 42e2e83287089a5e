"""Generic Motor/MongoDB repository for pydantic record types."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from typing import Any, Generic, TypeVar

from pydantic import BaseModel
from pymongo import InsertOne, ReplaceOne
from pymongo.errors import BulkWriteError, ConnectionFailure, OperationFailure

from ninja_mongorepo.context import QueryContext, resolve_context
from ninja_mongorepo.exceptions import (
    ConnectionFailedError,
    DuplicateEntityError,
    NotFoundError,
    RepositoryError,
    StoreOperationError,
)
from ninja_mongorepo.indexes import provision_indexes
from ninja_mongorepo.query import QueryBuilder, QuerySpec
from ninja_mongorepo.schema import RecordSchema, document_key, read_schema

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

_DUPLICATE_KEY_CODE = 11000


class MongoRepository(Generic[T]):
    """Async repository over one Motor collection for the record type ``T``.

    Identity and index metadata are read from the record type's field
    annotations once, at construction (see :mod:`ninja_mongorepo.schema`).
    After that the repository holds only the collection handle and the cached
    schema, so one instance can serve concurrent callers.

    Build instances with :meth:`create`, which also provisions the declared
    indexes; a repository whose indexes were never provisioned refuses every
    store operation with ``RuntimeError``::

        repo = await MongoRepository.create(Person, db["people"])
        person = await repo.save(Person(name="Ada", age=36))

    Every operation accepts an optional keyword-only ``context``
    (:class:`~ninja_mongorepo.context.QueryContext`) carrying a deadline and a
    client session. Driver failures are re-raised as
    :class:`~ninja_mongorepo.exceptions.StoreOperationError` subclasses.
    """

    def __init__(self, model_type: type[T], collection: Any) -> None:
        self._model_type = model_type
        self._collection = collection
        self._schema = read_schema(model_type)
        self._provisioned = False

    @classmethod
    async def create(
        cls,
        model_type: type[T],
        collection: Any,
        *,
        context: QueryContext | None = None,
    ) -> MongoRepository[T]:
        """Build a repository and create the record type's indexes.

        Raises:
            SchemaError: If the record type's annotations are invalid.
            IndexProvisionError: If the store rejects an index.
        """
        repository = cls(model_type, collection)
        await provision_indexes(collection, repository._schema, resolve_context(context))
        repository._provisioned = True
        return repository

    @property
    def entity_name(self) -> str:
        return self._schema.model_name

    @property
    def schema(self) -> RecordSchema:
        return self._schema

    @property
    def collection(self) -> Any:
        return self._collection

    def query(self) -> QueryBuilder[T]:
        """Start a new single-use :class:`QueryBuilder` bound to this repository."""
        return QueryBuilder(self)

    # -- Writes -----------------------------------------------------------------

    async def save(self, record: T, *, context: QueryContext | None = None) -> T:
        """Insert or replace *record* and return it with its identity populated.

        A record with an empty identity is inserted and the store-assigned
        ``_id`` is written back onto it. A record that already has an identity
        replaces the stored document with upsert semantics.
        """
        ctx = self._begin(context)
        identity = self._schema.identity
        current = identity.get(record)
        with self._store_call("save"):
            if identity.is_empty(current):
                if identity.string_ids:
                    identity.set(record, identity.new_identity())
                    await ctx.run(self._collection.insert_one(self._encode(record), session=ctx.session))
                else:
                    result = await ctx.run(
                        self._collection.insert_one(self._encode(record, with_identity=False), session=ctx.session)
                    )
                    identity.set(record, result.inserted_id)
            else:
                await ctx.run(
                    self._collection.replace_one(
                        {identity.key: current}, self._encode(record), upsert=True, session=ctx.session
                    )
                )
        return record

    async def save_all(self, records: Iterable[T], *, context: QueryContext | None = None) -> list[T]:
        """Save *records* in one ordered bulk write.

        Records without an identity get a client-generated one before the
        write, so every returned record carries its ``_id``. A failure anywhere
        in the batch fails the whole call.
        """
        ctx = self._begin(context)
        identity = self._schema.identity
        items = list(records)
        if not items:
            return []

        requests: list[InsertOne[Any] | ReplaceOne[Any]] = []
        for record in items:
            current = identity.get(record)
            if identity.is_empty(current):
                identity.set(record, identity.new_identity())
                requests.append(InsertOne(self._encode(record)))
            else:
                requests.append(ReplaceOne({identity.key: current}, self._encode(record), upsert=True))

        with self._store_call("save_all"):
            await ctx.run(self._collection.bulk_write(requests, ordered=True, session=ctx.session))
        return items

    async def delete_by_id(self, id: Any, *, context: QueryContext | None = None) -> bool:
        """Delete the document with identity *id*. Returns True if one was deleted."""
        ctx = self._begin(context)
        with self._store_call("delete_by_id"):
            result = await ctx.run(self._collection.delete_one({self._schema.identity.key: id}, session=ctx.session))
        return result.deleted_count > 0

    async def delete(self, spec: QuerySpec | None = None, *, context: QueryContext | None = None) -> int:
        """Delete every document matching ``spec.filter``; returns the deleted count."""
        ctx = self._begin(context)
        spec = spec or QuerySpec()
        with self._store_call("delete"):
            result = await ctx.run(self._collection.delete_many(spec.filter, session=ctx.session))
        return result.deleted_count

    # -- Identity lookups -------------------------------------------------------

    async def find_by_id(self, id: Any, *, context: QueryContext | None = None) -> T:
        """Return the record with identity *id*.

        Raises:
            NotFoundError: If no document has that identity.
        """
        ctx = self._begin(context)
        with self._store_call("find_by_id"):
            document = await ctx.run(self._collection.find_one({self._schema.identity.key: id}, session=ctx.session))
            if document is None:
                raise NotFoundError(
                    entity_name=self.entity_name,
                    operation="find_by_id",
                    detail=f"No document with {self._schema.identity.key}={id!r}.",
                )
            return self._decode(document)

    async def find_by_ids(self, ids: Iterable[Any], *, context: QueryContext | None = None) -> list[T]:
        """Return the records whose identity is in *ids*, in store order."""
        query = {self._schema.identity.key: {"$in": list(ids)}}
        return await self._find_many("find_by_ids", query, self._begin(context))

    async def exists_by_id(self, id: Any, *, context: QueryContext | None = None) -> bool:
        ctx = self._begin(context)
        with self._store_call("exists_by_id"):
            count = await ctx.run(
                self._collection.count_documents({self._schema.identity.key: id}, limit=1, session=ctx.session)
            )
        return count > 0

    async def find_all(self, *, context: QueryContext | None = None) -> list[T]:
        return await self._find_many("find_all", {}, self._begin(context))

    # -- Counting ---------------------------------------------------------------

    async def count_all(self, *, context: QueryContext | None = None) -> int:
        return await self.count(None, context=context)

    async def count(self, spec: QuerySpec | None = None, *, context: QueryContext | None = None) -> int:
        """Count documents matching ``spec.filter`` (all documents when omitted)."""
        ctx = self._begin(context)
        query = spec.filter if spec is not None else {}
        with self._store_call("count"):
            return await ctx.run(self._collection.count_documents(query, session=ctx.session))

    # -- Queries ----------------------------------------------------------------

    async def query_one(self, spec: QuerySpec, *, context: QueryContext | None = None) -> T:
        """Return the first record matching *spec*, honouring projection and sort.

        A paginated spec returns the first record of the requested page.

        Raises:
            NotFoundError: If nothing matches.
        """
        ctx = self._begin(context)
        options = _find_options(spec, paginate=False)
        if spec.paginated:
            options["skip"] = spec.skip
        with self._store_call("query_one"):
            document = await ctx.run(self._collection.find_one(spec.filter, session=ctx.session, **options))
            if document is None:
                raise NotFoundError(
                    entity_name=self.entity_name,
                    operation="query_one",
                    detail="No document matched the query.",
                )
            return self._decode(document, partial=spec.projection is not None)

    async def query_many(self, spec: QuerySpec, *, context: QueryContext | None = None) -> list[T]:
        """Return every record matching *spec*, applying projection, sort and pagination."""
        return await self._find_many(
            "query_many",
            spec.filter,
            self._begin(context),
            partial=spec.projection is not None,
            **_find_options(spec),
        )

    # -- Aggregation ------------------------------------------------------------

    async def aggregate_one(
        self,
        pipeline: Sequence[Mapping[str, Any]],
        *,
        context: QueryContext | None = None,
    ) -> dict[str, Any] | None:
        """Run *pipeline* and return its first output document, or None if empty.

        Results are plain documents; their shape depends on the pipeline.
        """
        ctx = self._begin(context)
        with self._store_call("aggregate_one"):
            cursor = self._collection.aggregate(list(pipeline), session=ctx.session)
            return await ctx.run(_first(cursor))

    async def aggregate_many(
        self,
        pipeline: Sequence[Mapping[str, Any]],
        *,
        context: QueryContext | None = None,
    ) -> list[dict[str, Any]]:
        """Run *pipeline* and return all output documents."""
        ctx = self._begin(context)
        with self._store_call("aggregate_many"):
            cursor = self._collection.aggregate(list(pipeline), session=ctx.session)
            return await ctx.run(_drain(cursor))

    # -- Internals --------------------------------------------------------------

    def _begin(self, context: QueryContext | None) -> QueryContext:
        if not self._provisioned:
            raise RuntimeError(
                f"{type(self).__name__} for {self.entity_name} has no provisioned indexes; "
                "build it with `await MongoRepository.create(...)`."
            )
        return resolve_context(context)

    async def _find_many(
        self,
        operation: str,
        query: dict[str, Any],
        ctx: QueryContext,
        *,
        partial: bool = False,
        **options: Any,
    ) -> list[T]:
        with self._store_call(operation):
            cursor = self._collection.find(query, session=ctx.session, **options)
            documents = await ctx.run(_drain(cursor))
            return [self._decode(document, partial=partial) for document in documents]

    def _encode(self, record: T, *, with_identity: bool = True) -> dict[str, Any]:
        exclude = None if with_identity else {self._schema.identity.attribute}
        return record.model_dump(by_alias=True, exclude=exclude)

    def _decode(self, document: Mapping[str, Any], *, partial: bool = False) -> T:
        """Turn a stored document into a ``T``.

        Projected documents may omit required fields, so with *partial* the
        returned keys are set without validation and every other field keeps
        its default (required fields without one stay unset).
        """
        if not partial:
            return self._model_type.model_validate(dict(document))
        values: dict[str, Any] = {}
        for attribute, info in self._model_type.model_fields.items():
            key = document_key(attribute, info)
            if key in document:
                values[attribute] = document[key]
        return self._model_type.model_construct(_fields_set=set(values), **values)

    @contextmanager
    def _store_call(self, operation: str) -> Iterator[None]:
        """Re-raise driver and decode failures as :class:`StoreOperationError`."""
        try:
            yield
        except RepositoryError:
            raise
        except Exception as exc:
            if _is_duplicate_key_error(exc):
                error_cls: type[StoreOperationError] = DuplicateEntityError
                detail = "A document with the same key already exists."
            elif _is_connection_error(exc):
                error_cls = ConnectionFailedError
                detail = "Database connection failed."
            elif isinstance(exc, asyncio.TimeoutError):
                error_cls = StoreOperationError
                detail = "Deadline exceeded."
            else:
                error_cls = StoreOperationError
                detail = f"{type(exc).__name__} raised during {operation}."
            logger.error("Mongo %s failed for %s: %s", operation, self.entity_name, type(exc).__name__)
            raise error_cls(entity_name=self.entity_name, operation=operation, detail=detail, cause=exc) from exc


def _find_options(spec: QuerySpec, *, paginate: bool = True) -> dict[str, Any]:
    """Translate a QuerySpec into keyword options for ``find`` / ``find_one``."""
    options: dict[str, Any] = {}
    if spec.projection is not None:
        options["projection"] = spec.projection
    if spec.sort:
        options["sort"] = list(spec.sort)
    if paginate and spec.paginated:
        options["skip"] = spec.skip
        options["limit"] = spec.limit
    return options


async def _drain(cursor: Any) -> list[dict[str, Any]]:
    """Exhaust *cursor*, always releasing it server-side."""
    try:
        return [dict(document) async for document in cursor]
    finally:
        await cursor.close()


async def _first(cursor: Any) -> dict[str, Any] | None:
    try:
        async for document in cursor:
            return dict(document)
        return None
    finally:
        await cursor.close()


def _is_duplicate_key_error(exc: Exception) -> bool:
    """Check whether *exc* is a duplicate-key failure, including inside a bulk write."""
    if isinstance(exc, BulkWriteError):
        write_errors = (exc.details or {}).get("writeErrors", [])
        return any(error.get("code") == _DUPLICATE_KEY_CODE for error in write_errors)
    return isinstance(exc, OperationFailure) and exc.code == _DUPLICATE_KEY_CODE


def _is_connection_error(exc: Exception) -> bool:
    """Covers ``ConnectionFailure`` and its subclasses (``AutoReconnect``,
    ``NetworkTimeout``, ``ServerSelectionTimeoutError``)."""
    return isinstance(exc, ConnectionFailure)
