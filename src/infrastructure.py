"""
infrastructure.py

In-memory implementation of all repository interfaces and the Unit of Work.

This is a self-contained backend that stores everything in plain Python
dicts keyed by UUID.  It is suitable for local development, demos, and
integration testing without needing a real database.

Stores hand out and keep copies, never the caller's objects, so nothing
changes until a repository save.  The Unit of Work is transactional:
entering it takes the database lock, every put or remove inside it records
the previous value in an undo journal, and leaving it with an exception
replays that journal backwards.  That is what keeps a plan revision and
its history row (or a wholesale history replace) all-or-nothing without
copying the whole database per request.

To swap in a real database later, implement the same Abstract* interfaces
from application.py and override get_uow() in api.py:

    app.dependency_overrides[get_uow] = lambda: SqlAlchemyUnitOfWork(session)

Nothing in service.py, application.py, or api.py needs to change.
"""

from __future__ import annotations

import copy
import threading
import uuid
from typing import Callable, List, Optional, Tuple

from application import (
    AbstractConstructionTypeRepository,
    AbstractPlanHistoryRepository,
    AbstractPlotRepository,
    AbstractProgressRepository,
    AbstractProgressUpdateRepository,
    AbstractUnitOfWork,
    ConflictError,
)


# ---------------------------------------------------------------------------
# Generic in-memory store
# ---------------------------------------------------------------------------

_MISSING = object()

# (store, key, value before the write), newest last
Journal = List[Tuple["_Store", uuid.UUID, object]]


class _Store(dict):
    """
    A dict of private copies with typed fetch/put/remove helpers.

    Reads return deep copies and put() stores one, so a caller mutating an
    entity changes nothing until it saves it.  While `journal` is set,
    every write appends the value it replaced.
    """

    journal: Optional[Journal] = None

    def fetch(self, key: uuid.UUID):
        obj = self.get(key)
        return copy.deepcopy(obj) if obj is not None else None

    def select(self, predicate: Callable[[object], bool]) -> list:
        return [copy.deepcopy(obj) for obj in self.values() if predicate(obj)]

    def all(self) -> list:
        return [copy.deepcopy(obj) for obj in self.values()]

    def put(self, obj) -> None:
        self._record(obj.id)
        self[obj.id] = copy.deepcopy(obj)

    def remove(self, key: uuid.UUID) -> None:
        if key in self:
            self._record(key)
            del self[key]

    def _record(self, key: uuid.UUID) -> None:
        if self.journal is not None:
            self.journal.append((self, key, self.get(key, _MISSING)))


# ---------------------------------------------------------------------------
# Shared in-memory database (module-level singleton)
# Persists for the lifetime of the process; restarting uvicorn resets it.
# ---------------------------------------------------------------------------

class InMemoryDatabase:
    STORES = ("construction_types", "plots", "progress", "plan_history", "progress_updates")

    def __init__(self):
        self.construction_types: _Store = _Store()
        self.plots:              _Store = _Store()
        self.progress:           _Store = _Store()
        self.plan_history:       _Store = _Store()
        self.progress_updates:   _Store = _Store()
        self.lock = threading.RLock()
        self.journal: Optional[Journal] = None

    def attach(self, journal: Optional[Journal]) -> None:
        self.journal = journal
        for name in self.STORES:
            getattr(self, name).journal = journal


# Module-level singleton, shared across all requests
_db = InMemoryDatabase()


# ---------------------------------------------------------------------------
# Repository implementations
# ---------------------------------------------------------------------------

class InMemoryConstructionTypeRepository(AbstractConstructionTypeRepository):
    def __init__(self, store: _Store): self._s = store
    def get(self, type_id):           return self._s.fetch(type_id)
    def list_all(self):               return self._s.all()
    def save(self, construction_type): self._s.put(construction_type)


class InMemoryPlotRepository(AbstractPlotRepository):
    def __init__(self, store: _Store): self._s = store
    def get(self, plot_id):           return self._s.fetch(plot_id)
    def list_all(self):               return self._s.all()
    def save(self, plot):             self._s.put(plot)


class InMemoryProgressRepository(AbstractProgressRepository):
    def __init__(self, store: _Store): self._s = store
    def get(self, progress_id):       return self._s.fetch(progress_id)
    def get_for_plot_stage(self, plot_id, stage_id):
        matches = self._s.select(
            lambda p: p.plot_id == plot_id and p.construction_stage_id == stage_id
        )
        return matches[0] if matches else None
    def list_for_plot(self, plot_id):
        return self._s.select(lambda p: p.plot_id == plot_id)
    def save(self, progress):
        existing = self.get_for_plot_stage(progress.plot_id, progress.construction_stage_id)
        if existing is not None and existing.id != progress.id:
            raise ConflictError(
                f"Plot {progress.plot_id} already has a progress record for stage "
                f"{progress.construction_stage_id}."
            )
        self._s.put(progress)
    def delete(self, progress_id):    self._s.remove(progress_id)


class InMemoryPlanHistoryRepository(AbstractPlanHistoryRepository):
    def __init__(self, store: _Store): self._s = store
    def list_for_progress(self, progress_id):
        return sorted(
            self._s.select(lambda e: e.construction_progress_id == progress_id),
            key=lambda e: e.version_number,
        )
    def save(self, entry):            self._s.put(entry)
    def delete_for_progress(self, progress_id):
        for key in [k for k, e in self._s.items() if e.construction_progress_id == progress_id]:
            self._s.remove(key)


class InMemoryProgressUpdateRepository(AbstractProgressUpdateRepository):
    def __init__(self, store: _Store): self._s = store
    def list_for_progress(self, progress_id):
        return sorted(
            self._s.select(lambda u: u.construction_progress_id == progress_id),
            key=lambda u: u.submitted_at,
        )
    def save(self, update):           self._s.put(update)
    def delete_for_progress(self, progress_id):
        for key in [k for k, u in self._s.items() if u.construction_progress_id == progress_id]:
            self._s.remove(key)


# ---------------------------------------------------------------------------
# Unit of Work
# ---------------------------------------------------------------------------

class InMemoryUnitOfWork(AbstractUnitOfWork):
    """
    Wraps all in-memory repositories.

    Inside a `with` block the database lock is held, so units of work run
    one at a time, and every write is journalled.  commit() forgets the
    journal, handing it to the enclosing unit when nested; rollback()
    undoes the journalled writes newest first.  Outside a `with` block
    writes apply directly and both are no-ops.
    """

    def __init__(self, db: InMemoryDatabase = _db):
        self._db = db
        self._journal: Optional[Journal] = None
        self._outer: Optional[Journal] = None
        self.construction_types = InMemoryConstructionTypeRepository(db.construction_types)
        self.plots              = InMemoryPlotRepository(db.plots)
        self.progress           = InMemoryProgressRepository(db.progress)
        self.plan_history       = InMemoryPlanHistoryRepository(db.plan_history)
        self.progress_updates   = InMemoryProgressUpdateRepository(db.progress_updates)

    def __enter__(self) -> "InMemoryUnitOfWork":
        self._db.lock.acquire()
        self._outer = self._db.journal
        self._journal = []
        self._db.attach(self._journal)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        try:
            super().__exit__(exc_type, exc_val, exc_tb)
        finally:
            self._db.attach(self._outer)
            self._journal = self._outer = None
            self._db.lock.release()

    def commit(self) -> None:
        if self._journal is None:
            return
        if self._outer is not None:
            self._outer.extend(self._journal)
        self._journal.clear()

    def rollback(self) -> None:
        if self._journal is None:
            return
        while self._journal:
            store, key, previous = self._journal.pop()
            if previous is _MISSING:
                store.pop(key, None)
            else:
                store[key] = previous
