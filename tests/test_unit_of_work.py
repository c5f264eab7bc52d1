import uuid

import pytest

from application import UniqueConstraintError
from infrastructure import InMemoryUnitOfWork
from model import Baseline, BaselineType, Project


def test_commit_keeps_writes(db):
    project = Project(name="Depot")
    with InMemoryUnitOfWork(db) as uow:
        uow.projects.save(project)
        uow.commit()

    assert InMemoryUnitOfWork(db).projects.get(project.id).name == "Depot"


def test_exception_rolls_back_every_write(db):
    kept = Project(name="Kept")
    with InMemoryUnitOfWork(db) as uow:
        uow.projects.save(kept)
        uow.commit()

    with pytest.raises(RuntimeError):
        with InMemoryUnitOfWork(db) as uow:
            renamed = uow.projects.get(kept.id)
            renamed.name = "Renamed"
            uow.projects.save(renamed)
            uow.projects.save(Project(name="Discarded"))
            raise RuntimeError("abort")

    projects = InMemoryUnitOfWork(db).projects.list_all()
    assert [p.name for p in projects] == ["Kept"]


def test_repositories_hand_out_copies(db):
    project = Project(name="Depot")
    uow = InMemoryUnitOfWork(db)
    with uow:
        uow.projects.save(project)
        project.name = "Changed after save"
        loaded = uow.projects.get(project.id)
        loaded.name = "Changed after load"
        uow.commit()

    assert uow.projects.get(project.id).name == "Depot"


def test_nested_blocks_commit_once(db):
    uow = InMemoryUnitOfWork(db)
    with pytest.raises(RuntimeError):
        with uow:
            uow.projects.save(Project(name="Outer"))
            with uow:
                uow.projects.save(Project(name="Inner"))
            raise RuntimeError("abort outer")

    assert uow.projects.list_all() == []


def test_baseline_versions_are_unique(db):
    project_id = uuid.uuid4()
    uow = InMemoryUnitOfWork(db)
    with uow:
        uow.baselines.add(Baseline(project_id=project_id, baseline_type=BaselineType.EXECUTION, version=1))
        uow.baselines.add(Baseline(project_id=project_id, baseline_type=BaselineType.CONTRACT, version=1))
        with pytest.raises(UniqueConstraintError):
            uow.baselines.add(Baseline(project_id=project_id, baseline_type=BaselineType.EXECUTION, version=1))
        uow.commit()

    assert len(uow.baselines.list_for_project(project_id)) == 2
