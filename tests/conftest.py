from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from api import app, get_clock, get_uow
from infrastructure import InMemoryDatabase, InMemoryUnitOfWork
from model import ContainerRecord

NOW = datetime(2025, 3, 10, 8, 0, tzinfo=timezone.utc)


class FixedClock:
    """Mutable clock so a test can move time forward between calls."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now = self.now + timedelta(**delta)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def db():
    return InMemoryDatabase()


@pytest.fixture
def uow_factory(db):
    return lambda: InMemoryUnitOfWork(db)


@pytest.fixture
def seed_containers(uow_factory):
    def _seed(*numbers, **fields):
        records = [ContainerRecord(container_no=n, **fields) for n in numbers]
        with uow_factory() as uow:
            for r in records:
                uow.containers.save(r)
            uow.commit()
        return records

    return _seed


@pytest.fixture
def client(db, clock):
    app.dependency_overrides[get_uow] = lambda: InMemoryUnitOfWork(db)
    app.dependency_overrides[get_clock] = lambda: clock
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
