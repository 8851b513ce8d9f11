"""Shared fixtures: in-memory collaborators and an orchestrator wired against them."""

from __future__ import annotations

import asyncio

import pytest

from kidbookai.automation import AutomationOrchestrator, AutomationSettings, InMemoryRunStore
from kidbookai.integrations import (
    Book,
    InMemoryBookStore,
    InMemoryObjectStorage,
    InMemoryUserStore,
    PhotoEvaluation,
    PhotoUpload,
)

BOOK_ID = "book-1"

READER = {
    "name": "Laura",
    "age": 6,
    "gender": "girl",
    "email": "parent@example.com",
    "country_code": "+972",
    "phone_number": "555-0100",
}


class FakeEvaluator:
    def __init__(self) -> None:
        self.rejected: set[str] = set()
        self.error: Exception | None = None
        self.calls: list[str] = []

    async def evaluate(self, photo_bytes, file_name, content_type=None):
        self.calls.append(file_name)
        if self.error is not None:
            raise self.error
        if file_name in self.rejected:
            return PhotoEvaluation(acceptable=False, verdict="reject", score=20)
        return PhotoEvaluation(acceptable=True, verdict="accept", score=90)


class FakeTrainingProvider:
    def __init__(self) -> None:
        self.requests = []
        self.error: Exception | None = None

    async def dispatch(self, request):
        if self.error is not None:
            raise self.error
        self.requests.append(request)
        return f"training-{len(self.requests)}"


class FakeAssemblyProvider:
    def __init__(self) -> None:
        self.requests = []
        self.error: Exception | None = None

    async def dispatch(self, request):
        # Yield so concurrent notifications can interleave with an in-flight dispatch.
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        self.requests.append(request)
        return f"job-{len(self.requests)}"


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings():
    return AutomationSettings()


@pytest.fixture
def users():
    return InMemoryUserStore()


@pytest.fixture
def books():
    return InMemoryBookStore([Book(id=BOOK_ID, name="Space Adventure", page_count=12)])


@pytest.fixture
def storage():
    return InMemoryObjectStorage()


@pytest.fixture
def evaluator():
    return FakeEvaluator()


@pytest.fixture
def training_provider():
    return FakeTrainingProvider()


@pytest.fixture
def assembly_provider():
    return FakeAssemblyProvider()


@pytest.fixture
def run_store():
    return InMemoryRunStore()


@pytest.fixture
def orchestrator(users, books, storage, evaluator, training_provider, assembly_provider, run_store, settings):
    instance = AutomationOrchestrator(
        users=users,
        books=books,
        evaluator=evaluator,
        storage=storage,
        training_provider=training_provider,
        assembly_provider=assembly_provider,
        store=run_store,
        settings=settings,
    )
    yield instance
    instance.stop()


@pytest.fixture
def reader():
    return dict(READER)


@pytest.fixture
def photos():
    return [
        PhotoUpload(file_name="laura-1.jpg", content=b"first-photo"),
        PhotoUpload(file_name="laura-2.png", content=b"second-photo"),
    ]
