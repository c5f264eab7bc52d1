"""Pytest configuration and fixtures."""
import uuid
from datetime import date
from typing import Callable, List

import pytest
from fastapi.testclient import TestClient

from api import app, get_uow
from application import (
    CreateProjectCommand,
    CreateProjectUseCase,
    CreateTaskCommand,
    CreateTaskUseCase,
    ProjectDTO,
    TaskDTO,
)
from infrastructure import InMemoryDatabase, InMemoryUnitOfWork
from model import ProjectCategory, Task

PROJECT_START = date(2025, 3, 3)


@pytest.fixture
def db() -> InMemoryDatabase:
    """A fresh, isolated in-memory database per test."""
    return InMemoryDatabase()


@pytest.fixture
def uow(db) -> InMemoryUnitOfWork:
    return InMemoryUnitOfWork(db)


@pytest.fixture
def uow_factory(db) -> Callable[[], InMemoryUnitOfWork]:
    """New unit of work on the shared test database, one per thread/request."""
    return lambda: InMemoryUnitOfWork(db)


@pytest.fixture
def project(uow) -> ProjectDTO:
    """A residential project without basement or fit-out scope."""
    cmd = CreateProjectCommand(
        name="Harbour View Apartments",
        code="HVA",
        category=ProjectCategory.RESIDENTIAL,
        start_date=PROJECT_START,
        floor_count=4,
        basement_levels=0,
    )
    return CreateProjectUseCase().execute(cmd, uow)


@pytest.fixture
def add_task(uow, project) -> Callable[..., TaskDTO]:
    """Create a task in the seeded project through the use case."""

    def _add(name: str, duration_days: int = 1, dependencies: List[str] = (), **kwargs) -> TaskDTO:
        cmd = CreateTaskCommand(
            project_id=uuid.UUID(project.id),
            name=name,
            duration_days=duration_days,
            dependencies=[uuid.UUID(d) for d in dependencies],
            **kwargs,
        )
        return CreateTaskUseCase().execute(cmd, uow)

    return _add


@pytest.fixture
def make_task() -> Callable[..., Task]:
    """Plain Task instances for service-level tests."""
    project_id = uuid.uuid4()

    def _make(name: str, duration_days: int = 1, dependencies=(), **kwargs) -> Task:
        return Task(
            project_id=project_id,
            name=name,
            duration_days=duration_days,
            dependencies=[d.id if isinstance(d, Task) else d for d in dependencies],
            **kwargs,
        )

    return _make


@pytest.fixture
def client(db):
    """API client bound to the per-test database."""
    app.dependency_overrides[get_uow] = lambda: InMemoryUnitOfWork(db)
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
