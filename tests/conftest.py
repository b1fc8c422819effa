"""Shared fixtures: seeded repository and a running processor."""

import pytest

from boq.pipelines.batch import BatchProcessor
from boq.repository import InMemoryRepository

from .fakes import CATALOG, ConceptProvider, strategy_factory


@pytest.fixture
def catalog():
    return list(CATALOG)


@pytest.fixture
def repository(catalog):
    return InMemoryRepository(catalog)


@pytest.fixture
def provider():
    return ConceptProvider()


@pytest.fixture
async def processor(repository, provider):
    proc = BatchProcessor(repository, strategy_factory(provider), max_concurrency=2, job_timeout=5)
    await proc.start()
    yield proc
    await proc.shutdown()
