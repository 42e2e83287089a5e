"""Query specifications and the chainable query builder.

A :class:`QuerySpec` is the ready-to-execute bundle of filter, projection,
sort and pagination. :class:`QueryBuilder` assembles one across chained calls,
either from structured values::

    await repo.query().filter({"age": {"$gte": 30}}).sort([("age", 1)]).query_many()

or from Extended JSON templates with positional placeholders::

    await repo.query().filter('{"age": {"$gte": ?1}}', 30).sort('[{"age": 1}]').query_many()

Placeholder rendering is plain text substitution: string parameters are wrapped
in double quotes without escaping, every other parameter is written as
relaxed Extended JSON (numbers and booleans as plain JSON, ``{"$date": ...}``,
``{"$oid": ...}`` for BSON types). A string parameter that itself contains ``"`` or a
``?N`` sequence is therefore not safe to render; pass such values through the
structured form instead.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from bson import json_util
from bson.json_util import RELAXED_JSON_OPTIONS
from bson.errors import BSONError
from pydantic import BaseModel, Field, StrictInt

from ninja_mongorepo.context import QueryContext
from ninja_mongorepo.exceptions import QueryBuildError

if TYPE_CHECKING:
    from ninja_mongorepo.repository import MongoRepository

T = TypeVar("T", bound=BaseModel)

_PLACEHOLDER_RE = re.compile(r"\?(\d+)")


class QuerySpec(BaseModel):
    """Filter, projection, sort and pagination for one query.

    Pagination is active only when both ``page`` and ``size`` are set; the
    executor then skips ``page * size`` documents and returns at most ``size``.
    """

    filter: dict[str, Any] = Field(default_factory=dict, description="Match predicate; empty matches everything.")
    projection: dict[str, Any] | None = Field(default=None, description="Field inclusion/exclusion map.")
    sort: list[tuple[str, StrictInt]] | None = Field(default=None, description="Ordered (field, direction) pairs.")
    page: int | None = Field(default=None, ge=0, description="Zero-based page index.")
    size: int | None = Field(default=None, ge=1, description="Page size.")

    model_config = {"extra": "forbid", "arbitrary_types_allowed": True}

    @property
    def paginated(self) -> bool:
        return self.page is not None and self.size is not None

    @property
    def skip(self) -> int:
        if not self.paginated:
            return 0
        return self.page * self.size  # type: ignore[operator]

    @property
    def limit(self) -> int:
        """Maximum documents to return; ``0`` means no limit."""
        return self.size if self.paginated else 0  # type: ignore[return-value]


def render_template(template: str, params: Sequence[Any]) -> str:
    """Substitute ``?1``, ``?2``, ... in *template* with *params*.

    Raises:
        ValueError: If the placeholders and parameters do not match one to one,
            or a parameter has no Extended JSON representation.
    """
    referenced = {int(n) for n in _PLACEHOLDER_RE.findall(template)}
    if 0 in referenced:
        raise ValueError("placeholders are 1-indexed; found ?0")
    missing = sorted(n for n in referenced if n > len(params))
    if missing:
        raise ValueError(f"placeholder ?{missing[0]} has no parameter ({len(params)} supplied)")
    unused = [n for n in range(1, len(params) + 1) if n not in referenced]
    if unused:
        raise ValueError(f"parameter {unused[0]} is not referenced by any placeholder")

    rendered = template
    # Highest first so ?1 never matches the prefix of ?10.
    for n in range(len(params), 0, -1):
        rendered = rendered.replace(f"?{n}", _render_param(n, params[n - 1]))
    return rendered


def _render_param(position: int, value: Any) -> str:
    if isinstance(value, str):
        return f'"{value}"'
    try:
        return json_util.dumps(value, json_options=RELAXED_JSON_OPTIONS)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"parameter {position} ({type(value).__name__}) cannot be rendered as Extended JSON") from exc


def normalize_sort(value: Any) -> list[tuple[str, int]]:
    """Normalise a sort clause into ordered ``(field, direction)`` pairs.

    Accepts a list of single-key mappings (``[{"age": 1}, {"name": -1}]``), a
    list of pairs (``[("age", 1)]``) or a single mapping (``{"age": 1}``).
    """
    if isinstance(value, Mapping):
        pairs = list(value.items())
    elif isinstance(value, (list, tuple)):
        pairs = []
        for entry in value:
            if isinstance(entry, Mapping):
                if len(entry) != 1:
                    raise ValueError(f"sort entry {dict(entry)!r} must name exactly one field")
                pairs.extend(entry.items())
            elif isinstance(entry, (list, tuple)) and len(entry) == 2:
                pairs.append((entry[0], entry[1]))
            else:
                raise ValueError(f"unsupported sort entry {entry!r}")
    else:
        raise ValueError(f"sort must be a list or mapping, got {type(value).__name__}")

    keys: list[tuple[str, int]] = []
    for field, direction in pairs:
        if not isinstance(field, str) or not field:
            raise ValueError(f"sort field must be a non-empty string, got {field!r}")
        if isinstance(direction, bool) or not isinstance(direction, int):
            raise ValueError(f"sort direction for {field!r} must be an integer, got {direction!r}")
        keys.append((field, int(direction)))
    return keys


@dataclass(frozen=True)
class _Clause:
    value: Any
    params: tuple[Any, ...] = ()


class QueryBuilder(Generic[T]):
    """Chainable, single-use accumulator for a :class:`QuerySpec`.

    Templates are kept as raw text until a terminal call (``query_one``,
    ``query_many``, ``count``, ``delete``) renders and parses them; a parse
    failure raises :class:`QueryBuildError` and nothing is executed.
    """

    def __init__(self, repository: MongoRepository[T]) -> None:
        self._repository = repository
        self._filter: _Clause | None = None
        self._projection: _Clause | None = None
        self._sort: _Clause | None = None
        self._page: int | None = None
        self._size: int | None = None
        self._context: QueryContext | None = None
        self._consumed = False

    def filter(self, value: str | Mapping[str, Any], *params: Any) -> QueryBuilder[T]:
        self._filter = _Clause(value, params)
        return self

    def projection(self, value: str | Mapping[str, Any], *params: Any) -> QueryBuilder[T]:
        self._projection = _Clause(value, params)
        return self

    def sort(self, value: str | Sequence[Any] | Mapping[str, int], *params: Any) -> QueryBuilder[T]:
        self._sort = _Clause(value, params)
        return self

    def page(self, index: int, size: int) -> QueryBuilder[T]:
        """Request page *index* (zero-based) of *size* documents."""
        if index < 0:
            raise ValueError(f"page index must be >= 0, got {index}")
        if size < 1:
            raise ValueError(f"page size must be >= 1, got {size}")
        self._page, self._size = index, size
        return self

    def context(self, context: QueryContext) -> QueryBuilder[T]:
        self._context = context
        return self

    def build(self, operation: str = "build") -> QuerySpec:
        """Render and parse the accumulated clauses into a :class:`QuerySpec`."""
        return QuerySpec(
            filter=self._resolve_document(operation, "filter", self._filter) or {},
            projection=self._resolve_document(operation, "projection", self._projection),
            sort=self._resolve_sort(operation),
            page=self._page,
            size=self._size,
        )

    # -- Terminal calls ---------------------------------------------------------

    async def query_one(self) -> T:
        spec = self._consume("query_one")
        return await self._repository.query_one(spec, context=self._context)

    async def query_many(self) -> list[T]:
        spec = self._consume("query_many")
        return await self._repository.query_many(spec, context=self._context)

    async def count(self) -> int:
        spec = self._consume("count")
        return await self._repository.count(spec, context=self._context)

    async def delete(self) -> int:
        spec = self._consume("delete")
        return await self._repository.delete(spec, context=self._context)

    # -- Internals --------------------------------------------------------------

    def _consume(self, operation: str) -> QuerySpec:
        if self._consumed:
            raise RuntimeError("QueryBuilder is single-use; start a new one with repository.query().")
        self._consumed = True
        return self.build(operation)

    def _render(self, operation: str, clause: str, spec: _Clause) -> Any:
        """Return the clause as a Python value, parsing templates on the way."""
        if isinstance(spec.value, str):
            try:
                text = render_template(spec.value, spec.params)
                return json_util.loads(text)
            except (ValueError, TypeError, BSONError) as exc:
                raise self._error(operation, clause, str(exc), exc) from exc
        if spec.params:
            raise self._error(operation, clause, "parameters are only accepted with a template string")
        return spec.value

    def _resolve_document(self, operation: str, clause: str, spec: _Clause | None) -> dict[str, Any] | None:
        if spec is None:
            return None
        value = self._render(operation, clause, spec)
        if not isinstance(value, Mapping):
            raise self._error(operation, clause, f"expected a document, got {type(value).__name__}")
        return dict(value)

    def _resolve_sort(self, operation: str) -> list[tuple[str, int]] | None:
        if self._sort is None:
            return None
        value = self._render(operation, "sort", self._sort)
        try:
            return normalize_sort(value)
        except ValueError as exc:
            raise self._error(operation, "sort", str(exc), exc) from exc

    def _error(self, operation: str, clause: str, detail: str, cause: Exception | None = None) -> QueryBuildError:
        return QueryBuildError(
            entity_name=self._repository.entity_name,
            operation=operation,
            clause=clause,
            detail=detail,
            cause=cause,
        )
