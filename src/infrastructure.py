"""
infrastructure.py

In-memory implementation of the repository interfaces and the Unit of Work.

This is a self-contained, zero-dependency backend that stores plans and
container records in plain Python dicts keyed by UUID.  It is suitable for
local development, demos and integration testing without a real database.

Transactions
------------
Every InMemoryUnitOfWork holds the database lock from `__enter__` to
`__exit__`, so the read-check-write sequence of a use case (e.g. "no other
plan is IN_PROGRESS, so start this one") is atomic across threads.
Writes are staged per unit of work and only published on commit(); reads
return copies, so a refused transition never leaks a half-mutated plan.

To swap in a real database (e.g. SQLAlchemy + PostgreSQL) later, implement
the same Abstract* interfaces from application.py and override get_uow() in
api.py:

    app.dependency_overrides[get_uow] = lambda: SqlAlchemyUnitOfWork(session)

A SQL backend would enforce the single IN_PROGRESS plan with a partial
unique index or a row lock instead of the process lock used here.
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from typing import Dict, List, Optional, Set

from application import (
    AbstractContainerRecordRepository,
    AbstractPlanRepository,
    AbstractUnitOfWork,
    ConcurrencyConflictError,
)
from model import ContainerRecord, PlanStatus, ReceivePlan

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Generic in-memory store
# ---------------------------------------------------------------------------

class _Store(dict):
    """A plain dict with typed get/save/delete helpers."""

    def fetch(self, key: uuid.UUID):
        return self.get(key)

    def put(self, obj) -> None:
        self[obj.id] = obj

    def remove(self, key: uuid.UUID) -> None:
        self.pop(key, None)

    def all(self) -> list:
        return list(self.values())


class _StagedStore:
    """
    A per-transaction view over a _Store.

    Reads see this transaction's pending writes first; every object handed
    in or out is a deep copy, so callers never alias committed state.
    """

    def __init__(self, base: _Store):
        self._base = base
        self._writes: Dict[uuid.UUID, object] = {}
        self._deletes: Set[uuid.UUID] = set()

    def fetch(self, key: uuid.UUID):
        if key in self._deletes:
            return None
        obj = self._writes.get(key, self._base.fetch(key))
        return copy.deepcopy(obj)

    def all(self) -> list:
        merged = {k: v for k, v in self._base.items() if k not in self._deletes}
        merged.update(self._writes)
        return [copy.deepcopy(v) for v in merged.values()]

    def put(self, obj) -> None:
        self._deletes.discard(obj.id)
        self._writes[obj.id] = copy.deepcopy(obj)

    def remove(self, key: uuid.UUID) -> None:
        self._writes.pop(key, None)
        self._deletes.add(key)

    @property
    def dirty(self) -> bool:
        return bool(self._writes or self._deletes)

    def flush(self) -> None:
        for key in self._deletes:
            self._base.remove(key)
        for obj in self._writes.values():
            self._base.put(obj)
        self.discard()

    def discard(self) -> None:
        self._writes.clear()
        self._deletes.clear()


class _StagedCounters:
    """Per-transaction high-water marks over a plain dict of counters."""

    def __init__(self, base: Dict[str, int]):
        self._base = base
        self._pending: Dict[str, int] = {}

    def get(self, name: str) -> int:
        return self._pending.get(name, self._base.get(name, 0))

    def raise_to(self, name: str, value: int) -> None:
        self._pending[name] = max(self.get(name), value)

    def flush(self) -> None:
        self._base.update(self._pending)
        self._pending.clear()

    def discard(self) -> None:
        self._pending.clear()


# ---------------------------------------------------------------------------
# Shared in-memory database (module-level singleton)
# Lives as long as the process; a uvicorn restart starts empty.
# ---------------------------------------------------------------------------

class InMemoryDatabase:
    def __init__(self):
        self.plans:      _Store = _Store()
        self.containers: _Store = _Store()
        self.plan_numbers: Dict[str, int] = {}     # last code number issued per prefix
        self.lock = threading.RLock()


# Shared by every request unless a test passes its own database
_db = InMemoryDatabase()


# ---------------------------------------------------------------------------
# Repository implementations
# ---------------------------------------------------------------------------

class InMemoryPlanRepository(AbstractPlanRepository):
    def __init__(self, store: _StagedStore, numbers: _StagedCounters):
        self._s = store
        self._n = numbers
    def get(self, plan_id) -> Optional[ReceivePlan]: return self._s.fetch(plan_id)
    def list_all(self) -> List[ReceivePlan]:         return self._s.all()
    def list_by_status(self, *statuses):
        return [p for p in self._s.all() if p.status in statuses]
    def save(self, plan):             self._s.put(plan)
    def delete(self, plan_id):        self._s.remove(plan_id)
    def last_issued_number(self, prefix):            return self._n.get(prefix)
    def record_issued_number(self, prefix, number): self._n.raise_to(prefix, number)


class InMemoryContainerRecordRepository(AbstractContainerRecordRepository):
    def __init__(self, store: _StagedStore): self._s = store
    def get(self, container_id) -> Optional[ContainerRecord]: return self._s.fetch(container_id)
    def get_by_number(self, container_no):
        return next((c for c in self._s.all() if c.container_no == container_no), None)
    def list_all(self) -> List[ContainerRecord]:              return self._s.all()
    def save(self, container):        self._s.put(container)


# ---------------------------------------------------------------------------
# Unit of Work
# ---------------------------------------------------------------------------

class InMemoryUnitOfWork(AbstractUnitOfWork):
    """
    Wraps the in-memory repositories in a lock-guarded transaction.
    commit() publishes the staged writes; rollback() drops them.
    """

    def __init__(self, db: InMemoryDatabase = _db):
        self._db = db
        self._plan_store = _StagedStore(db.plans)
        self._container_store = _StagedStore(db.containers)
        self._plan_numbers = _StagedCounters(db.plan_numbers)
        self.plans = InMemoryPlanRepository(self._plan_store, self._plan_numbers)
        self.containers = InMemoryContainerRecordRepository(self._container_store)

    def __enter__(self) -> "InMemoryUnitOfWork":
        self._db.lock.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        try:
            super().__exit__(exc_type, exc_val, exc_tb)
        finally:
            self._db.lock.release()

    def commit(self) -> None:
        with self._db.lock:
            if self._plan_store.dirty:
                active = self.plans.list_by_status(PlanStatus.IN_PROGRESS)
                if len(active) > 1:
                    self.rollback()
                    logger.warning(
                        "Commit refused: %d plans would be IN_PROGRESS (%s)",
                        len(active), ", ".join(p.code for p in active),
                    )
                    raise ConcurrencyConflictError(
                        "Another plan was started concurrently; at most one plan may be IN_PROGRESS."
                    )
            self._plan_store.flush()
            self._container_store.flush()
            self._plan_numbers.flush()

    def rollback(self) -> None:
        self._plan_store.discard()
        self._container_store.discard()
        self._plan_numbers.discard()
