"""Shared fixtures for ninja-mongorepo tests."""

from __future__ import annotations

import pytest
from _support import FakeCollection, Person

from ninja_mongorepo import MongoRepository


@pytest.fixture
def collection() -> FakeCollection:
    return FakeCollection()


@pytest.fixture
async def repo(collection: FakeCollection) -> MongoRepository[Person]:
    return await MongoRepository.create(Person, collection)
