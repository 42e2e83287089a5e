"""Domain exceptions for the repository layer.

Driver exceptions raised by Motor/PyMongo are caught at the repository boundary
and re-raised as one of these types with the original error chained as
``__cause__``, so callers can branch on the kind of failure without importing
driver internals.
"""

from __future__ import annotations


class RepositoryError(Exception):
    """Base exception for all repository errors.

    Attributes:
        entity_name: The record type (or collection) involved.
        operation: The operation that failed (e.g. ``"save"``, ``"query_many"``).
        detail: A sanitised description of what went wrong.
    """

    def __init__(
        self,
        *,
        entity_name: str,
        operation: str,
        detail: str,
        cause: Exception | None = None,
    ) -> None:
        self.entity_name = entity_name
        self.operation = operation
        self.detail = detail
        msg = f"[{entity_name}] {operation} failed: {detail}"
        super().__init__(msg)
        if cause is not None:
            self.__cause__ = cause


class SchemaError(RepositoryError):
    """Raised when a record type's field annotations cannot be turned into a schema."""


class IndexProvisionError(RepositoryError):
    """Raised when the store rejects an index-creation request at startup."""


class QueryBuildError(RepositoryError):
    """Raised when a filter, projection or sort clause cannot be built.

    Attributes:
        clause: The clause that failed (``"filter"``, ``"projection"`` or ``"sort"``).
    """

    def __init__(
        self,
        *,
        entity_name: str,
        operation: str,
        clause: str,
        detail: str,
        cause: Exception | None = None,
    ) -> None:
        self.clause = clause
        super().__init__(
            entity_name=entity_name,
            operation=operation,
            detail=f"invalid {clause}: {detail}",
            cause=cause,
        )


class StoreOperationError(RepositoryError):
    """Raised when the document store fails a CRUD, query or aggregate call."""


class DuplicateEntityError(StoreOperationError):
    """Raised when a write violates a uniqueness constraint."""


class ConnectionFailedError(StoreOperationError):
    """Raised when the repository cannot reach the database."""


class NotFoundError(RepositoryError):
    """Raised when a single-result lookup matches no document."""
