"""
infrastructure.py

In-memory implementation of all repository interfaces and the Unit of Work.

This is a self-contained backend that stores everything in plain Python
dicts keyed by UUID. Good enough for local runs and the test suite, and it
keeps the transactional guarantees the engine relies on:

- Every unit of work holds the database lock from `__enter__` to `__exit__`,
  so read-check-write sequences (capacity totals, baseline versions) are
  serialised across threads.
- Repositories hand out and store deep copies; callers never share mutable
  state with the store.
- Writes are journalled; rollback() restores the previous values.
- Baselines carry a unique (project, type, version) constraint, raised as
  application.UniqueConstraintError.

To swap in a real database (e.g. SQLAlchemy + PostgreSQL) later, implement
the same Abstract* interfaces from application.py and override get_uow() in
api.py:

    app.dependency_overrides[get_uow] = lambda: SqlAlchemyUnitOfWork(session)

Nothing in service.py, application.py, or api.py needs to change.
"""

from __future__ import annotations

import copy
import threading
import uuid
from typing import Any, List, Optional, Tuple

from application import (
    AbstractAssignmentRepository,
    AbstractBaselineHistoryRepository,
    AbstractBaselineRepository,
    AbstractComponentRepository,
    AbstractEventRepository,
    AbstractProjectRepository,
    AbstractTaskRepository,
    AbstractTemplateApplyLogRepository,
    AbstractTemplateRepository,
    AbstractUnitOfWork,
    UniqueConstraintError,
)


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


# (store, key, previous value or None)
_JournalEntry = Tuple[_Store, uuid.UUID, Optional[Any]]


# ---------------------------------------------------------------------------
# Shared in-memory database (module-level singleton)
# Persists for the lifetime of the process — restarting uvicorn resets it.
# ---------------------------------------------------------------------------

class InMemoryDatabase:
    def __init__(self):
        self.lock = threading.RLock()
        self.projects:            _Store = _Store()
        self.components:          _Store = _Store()
        self.tasks:               _Store = _Store()
        self.assignments:         _Store = _Store()
        self.templates:           _Store = _Store()
        self.template_apply_logs: _Store = _Store()
        self.baselines:           _Store = _Store()
        self.baseline_history:    _Store = _Store()
        self.events:              _Store = _Store()


# Module-level singleton — shared across all requests
_db = InMemoryDatabase()


# ---------------------------------------------------------------------------
# Repository implementations
# ---------------------------------------------------------------------------

class _InMemoryRepository:
    """Copy-in/copy-out access to one store, journalling every write."""

    def __init__(self, store: _Store, journal: List[_JournalEntry]):
        self._s = store
        self._journal = journal

    def _get(self, key):
        return copy.deepcopy(self._s.fetch(key))

    def _select(self, predicate) -> list:
        return [copy.deepcopy(o) for o in self._s.all() if predicate(o)]

    def _put(self, obj) -> None:
        self._journal.append((self._s, obj.id, self._s.fetch(obj.id)))
        self._s.put(copy.deepcopy(obj))

    def _remove(self, key) -> None:
        previous = self._s.fetch(key)
        if previous is not None:
            self._journal.append((self._s, key, previous))
            self._s.remove(key)


class InMemoryProjectRepository(_InMemoryRepository, AbstractProjectRepository):
    def get(self, project_id):        return self._get(project_id)
    def list_all(self):               return self._select(lambda p: True)
    def save(self, project):          self._put(project)


class InMemoryComponentRepository(_InMemoryRepository, AbstractComponentRepository):
    def get(self, component_id):      return self._get(component_id)
    def list_for_project(self, project_id):
        return self._select(lambda c: c.project_id == project_id)
    def save(self, component):        self._put(component)


class InMemoryTaskRepository(_InMemoryRepository, AbstractTaskRepository):
    def get(self, task_id):           return self._get(task_id)
    def list_for_project(self, project_id):
        return self._select(lambda t: t.project_id == project_id)
    def list_for_template(self, template_id):
        return self._select(lambda t: t.template_id == template_id)
    def save(self, task):             self._put(task)
    def delete(self, task_id):        self._remove(task_id)


class InMemoryAssignmentRepository(_InMemoryRepository, AbstractAssignmentRepository):
    def get(self, assignment_id):     return self._get(assignment_id)
    def list_for_task(self, task_id):
        return self._select(lambda a: a.task_id == task_id)
    def list_for_project(self, project_id):
        return self._select(lambda a: a.project_id == project_id)
    def list_for_user(self, user_id):
        return self._select(lambda a: a.user_id == user_id)
    def save(self, assignment):       self._put(assignment)
    def delete(self, assignment_id):  self._remove(assignment_id)


class InMemoryTemplateRepository(_InMemoryRepository, AbstractTemplateRepository):
    def get(self, template_id):       return self._get(template_id)
    def list_all(self):               return self._select(lambda t: True)
    def save(self, template):         self._put(template)
    def delete(self, template_id):    self._remove(template_id)


class InMemoryTemplateApplyLogRepository(_InMemoryRepository, AbstractTemplateApplyLogRepository):
    def list_for_project(self, project_id):
        return self._select(lambda log: log.project_id == project_id)
    def save(self, log):              self._put(log)


class InMemoryBaselineRepository(_InMemoryRepository, AbstractBaselineRepository):
    def get(self, baseline_id):       return self._get(baseline_id)
    def list_for_project(self, project_id):
        return self._select(lambda b: b.project_id == project_id)

    def add(self, baseline):
        for existing in self._s.all():
            if (
                existing.project_id == baseline.project_id
                and existing.baseline_type == baseline.baseline_type
                and existing.version == baseline.version
            ):
                raise UniqueConstraintError(
                    f"{baseline.baseline_type.value} baseline v{baseline.version} "
                    f"already exists for project {baseline.project_id}."
                )
        self._put(baseline)

    def save(self, baseline):         self._put(baseline)
    def delete(self, baseline_id):    self._remove(baseline_id)


class InMemoryBaselineHistoryRepository(_InMemoryRepository, AbstractBaselineHistoryRepository):
    def list_for_project(self, project_id):
        return self._select(lambda e: e.project_id == project_id)
    def save(self, entry):            self._put(entry)


class InMemoryEventRepository(_InMemoryRepository, AbstractEventRepository):
    def list_for_project(self, project_id):
        return self._select(lambda e: e.project_id == project_id)
    def save(self, event):            self._put(event)


# ---------------------------------------------------------------------------
# Unit of Work
# ---------------------------------------------------------------------------

class InMemoryUnitOfWork(AbstractUnitOfWork):
    """
    Wraps all in-memory repositories.  Entering the context takes the
    database lock; commit() forgets the journal, rollback() replays it
    backwards.  In a real SQL implementation, commit() would call
    session.commit().
    """

    def __init__(self, db: InMemoryDatabase = _db):
        self._db = db
        self._journal: List[_JournalEntry] = []
        self._depth = 0
        self.projects            = InMemoryProjectRepository(db.projects, self._journal)
        self.components          = InMemoryComponentRepository(db.components, self._journal)
        self.tasks               = InMemoryTaskRepository(db.tasks, self._journal)
        self.assignments         = InMemoryAssignmentRepository(db.assignments, self._journal)
        self.templates           = InMemoryTemplateRepository(db.templates, self._journal)
        self.template_apply_logs = InMemoryTemplateApplyLogRepository(db.template_apply_logs, self._journal)
        self.baselines           = InMemoryBaselineRepository(db.baselines, self._journal)
        self.baseline_history    = InMemoryBaselineHistoryRepository(db.baseline_history, self._journal)
        self.events              = InMemoryEventRepository(db.events, self._journal)

    def __enter__(self) -> "InMemoryUnitOfWork":
        self._db.lock.acquire()
        self._depth += 1
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        try:
            if self._depth == 1:
                super().__exit__(exc_type, exc_val, exc_tb)
        finally:
            self._depth -= 1
            self._db.lock.release()

    def commit(self) -> None:
        self._journal.clear()

    def rollback(self) -> None:
        while self._journal:
            store, key, previous = self._journal.pop()
            if previous is None:
                store.remove(key)
            else:
                store[key] = previous
