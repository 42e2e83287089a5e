"""Ninja Mongo Repository: annotation-driven generic repositories for MongoDB."""

from ninja_mongorepo.connections import ConnectionManager, ConnectionProfile, InvalidConnectionURL
from ninja_mongorepo.context import UNBOUNDED, QueryContext
from ninja_mongorepo.exceptions import (
    ConnectionFailedError,
    DuplicateEntityError,
    IndexProvisionError,
    NotFoundError,
    QueryBuildError,
    RepositoryError,
    SchemaError,
    StoreOperationError,
)
from ninja_mongorepo.identity import IDENTITY_KEY, IdentityLocator
from ninja_mongorepo.query import QueryBuilder, QuerySpec
from ninja_mongorepo.repository import MongoRepository
from ninja_mongorepo.schema import CompoundIndex, CompoundIndexSpec, Index, IndexSpec, RecordSchema, read_schema

__all__ = [
    "IDENTITY_KEY",
    "UNBOUNDED",
    "CompoundIndex",
    "CompoundIndexSpec",
    "ConnectionFailedError",
    "ConnectionManager",
    "ConnectionProfile",
    "DuplicateEntityError",
    "IdentityLocator",
    "Index",
    "IndexProvisionError",
    "IndexSpec",
    "InvalidConnectionURL",
    "MongoRepository",
    "NotFoundError",
    "QueryBuildError",
    "QueryBuilder",
    "QueryContext",
    "QuerySpec",
    "RecordSchema",
    "RepositoryError",
    "SchemaError",
    "StoreOperationError",
    "read_schema",
]
