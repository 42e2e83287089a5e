"""Execution context threaded through every store call."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import Any, TypeVar

from pydantic import BaseModel, Field

R = TypeVar("R")


class QueryContext(BaseModel):
    """Deadline and session carrier for repository operations.

    ``timeout`` bounds the whole operation (including draining a cursor) in
    seconds; ``None`` leaves it unbounded. ``session`` is an optional Motor
    client session forwarded to every driver call.
    """

    timeout: float | None = Field(default=None, gt=0, description="Deadline in seconds for the whole operation.")
    session: Any = Field(default=None, description="Motor client session passed to driver calls.")

    model_config = {"frozen": True, "extra": "forbid", "arbitrary_types_allowed": True}

    async def run(self, awaitable: Awaitable[R]) -> R:
        """Await *awaitable*, cancelling it once the deadline expires."""
        if self.timeout is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, self.timeout)


# Used whenever a caller does not supply a context: no deadline, no session.
UNBOUNDED = QueryContext()


def resolve_context(context: QueryContext | None) -> QueryContext:
    return context if context is not None else UNBOUNDED
