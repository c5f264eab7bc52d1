import dataclasses
import threading
import uuid

import pytest

from application import (
    AmendBaselineNoteCommand,
    AmendBaselineNoteUseCase,
    CalculateProjectVarianceUseCase,
    CompareBaselinesQuery,
    CompareBaselinesUseCase,
    CreateBaselineCommand,
    CreateBaselineUseCase,
    DeleteBaselineCommand,
    DeleteBaselineUseCase,
    GetBaselineHistoryUseCase,
    GetCurrentBaselineUseCase,
    ListBaselinesUseCase,
    NotFoundError,
    RebaselineCommand,
    RebaselineUseCase,
    UniqueConstraintError,
    UpdateTaskCommand,
    UpdateTaskUseCase,
    VersionConflictError,
)
from infrastructure import InMemoryUnitOfWork
from model import Baseline, BaselineType
from service import BaselineHistoryService, BaselineService, ValidationError

EXECUTION = BaselineType.EXECUTION
CONTRACT = BaselineType.CONTRACT


@pytest.fixture
def planned(add_task):
    """Excavation (2d, 100) followed by footings (3d, 50)."""
    excavation = add_task("Excavation", 2, planned_cost=100)
    footings = add_task("Footings", 3, dependencies=[excavation.id], planned_cost=50)
    return excavation, footings


def _baseline(uow, project, baseline_type=EXECUTION, **kwargs):
    cmd = CreateBaselineCommand(project_id=uuid.UUID(project.id), baseline_type=baseline_type, **kwargs)
    return CreateBaselineUseCase().execute(cmd, uow)


def test_snapshot_captures_schedule_and_cost(uow, project, planned):
    baseline = _baseline(uow, project, note="Tender issue")

    assert baseline.version == 1
    assert baseline.start_date == "2025-03-03"
    assert baseline.end_date == "2025-03-08"
    assert baseline.cost == 150.0
    assert baseline.note == "Tender issue"


def test_versions_increase_per_type(uow, project, planned):
    versions = [_baseline(uow, project).version for _ in range(3)]
    contract = _baseline(uow, project, CONTRACT)

    assert versions == [1, 2, 3]
    assert contract.version == 1


def test_baselines_are_immutable():
    baseline = Baseline(cost=10.0)
    with pytest.raises(dataclasses.FrozenInstanceError):
        baseline.cost = 20.0


def test_later_edits_do_not_change_a_baseline(uow, project, planned):
    _, footings = planned
    first = _baseline(uow, project)
    UpdateTaskUseCase().execute(UpdateTaskCommand(task_id=uuid.UUID(footings.id), planned_cost=500), uow)

    current = GetCurrentBaselineUseCase().execute(uuid.UUID(project.id), EXECUTION, uow)
    assert current.id == first.id
    assert current.cost == 150.0


def test_compare_reports_second_minus_first(uow, project, planned):
    _, footings = planned
    v1 = _baseline(uow, project)
    UpdateTaskUseCase().execute(
        UpdateTaskCommand(task_id=uuid.UUID(footings.id), duration_days=5, planned_cost=80), uow
    )
    v2 = _baseline(uow, project)

    diff = CompareBaselinesUseCase().execute(
        CompareBaselinesQuery(uuid.UUID(project.id), uuid.UUID(v1.id), uuid.UUID(v2.id)), uow
    )

    assert diff.start_date_delta_days == 0
    assert diff.end_date_delta_days == 2
    assert diff.duration_delta_days == 2
    assert diff.cost_delta == 30.0
    assert diff.cost_delta_pct == 20.0


def test_compare_requires_same_project():
    svc = BaselineService()
    with pytest.raises(ValidationError) as excinfo:
        svc.compare(Baseline(project_id=uuid.uuid4()), Baseline(project_id=uuid.uuid4()))
    assert excinfo.value.context["reason"] == "project_mismatch"


def test_compare_from_zero_cost_has_no_percentage():
    project_id = uuid.uuid4()
    diff = BaselineService().compare(Baseline(project_id=project_id), Baseline(project_id=project_id, cost=50.0))
    assert diff.cost_delta == 50.0
    assert diff.cost_delta_pct is None


def test_variance_without_baseline(uow, project, planned):
    variance = CalculateProjectVarianceUseCase().execute(uuid.UUID(project.id), EXECUTION, uow)

    assert variance.status == "no_baseline"
    assert variance.cost_variance is None
    assert variance.schedule_variance_days is None


def test_variance_against_latest_baseline(uow, project, planned):
    excavation, _ = planned
    baseline = _baseline(uow, project)
    UpdateTaskUseCase().execute(
        UpdateTaskCommand(task_id=uuid.UUID(excavation.id), planned_cost=120, duration_days=3), uow
    )

    variance = CalculateProjectVarianceUseCase().execute(uuid.UUID(project.id), EXECUTION, uow)

    assert variance.status == "ok"
    assert variance.baseline_id == baseline.id
    assert variance.cost_variance == 20.0
    assert variance.schedule_variance_days == 1
    assert variance.start_variance_days == 0


def test_cost_overrun_is_positive_in_amount_and_percent(uow, project, add_task):
    slab = add_task("Ground slab", 2, planned_cost=100)
    _baseline(uow, project)
    UpdateTaskUseCase().execute(UpdateTaskCommand(task_id=uuid.UUID(slab.id), planned_cost=120), uow)

    variance = CalculateProjectVarianceUseCase().execute(uuid.UUID(project.id), EXECUTION, uow)

    assert variance.cost_variance == 20.0
    assert variance.cost_variance_pct == 20.0
    assert variance.schedule_variance_days == 0


def test_rebaseline_links_to_superseded_version(uow, project, planned):
    v1 = _baseline(uow, project, CONTRACT, contract_id=uuid.uuid4())
    v2 = RebaselineUseCase().execute(
        RebaselineCommand(project_id=uuid.UUID(project.id), baseline_id=uuid.UUID(v1.id), note="Variation 1"),
        uow,
    )

    assert v2.version == 2
    assert v2.baseline_type == "contract"
    assert v2.supersedes_id == v1.id
    assert v2.contract_id == v1.contract_id

    history = GetBaselineHistoryUseCase().execute(uuid.UUID(project.id), uow)
    assert [e.action for e in history] == ["created", "rebaselined"]
    assert [e.sequence_number for e in history] == [1, 2]
    assert history[1].previous_baseline_id == v1.id


def test_lineage_walks_back_to_the_first_baseline():
    first = Baseline(version=1)
    second = Baseline(project_id=first.project_id, version=2, supersedes_id=first.id)
    third = Baseline(project_id=first.project_id, version=3, supersedes_id=second.id)

    chain = BaselineHistoryService().lineage(third.id, [first, second, third])
    assert [b.version for b in chain] == [3, 2, 1]


def test_deleted_version_is_never_reissued(uow, project, planned):
    pid = uuid.UUID(project.id)
    _baseline(uow, project)
    v2 = _baseline(uow, project)
    DeleteBaselineUseCase().execute(DeleteBaselineCommand(project_id=pid, baseline_id=uuid.UUID(v2.id)), uow)

    v3 = _baseline(uow, project)

    assert v3.version == 3
    assert [b.version for b in ListBaselinesUseCase().execute(pid, uow)] == [1, 3]
    assert GetBaselineHistoryUseCase().execute(pid, uow)[-2].action == "deleted"


def test_note_is_the_only_editable_field(uow, project, planned):
    pid = uuid.UUID(project.id)
    original = _baseline(uow, project, note="draft")

    amended = AmendBaselineNoteUseCase().execute(
        AmendBaselineNoteCommand(project_id=pid, baseline_id=uuid.UUID(original.id), note="approved"), uow
    )

    assert amended.note == "approved"
    assert dataclasses.replace(amended, note="draft") == original
    assert GetBaselineHistoryUseCase().execute(pid, uow)[-1].action == "note_amended"


def test_current_baseline_missing(uow, project):
    with pytest.raises(NotFoundError):
        GetCurrentBaselineUseCase().execute(uuid.UUID(project.id), CONTRACT, uow)


def test_concurrent_snapshots_get_distinct_versions(uow_factory, project, planned):
    barrier = threading.Barrier(8)
    versions = []

    def worker():
        barrier.wait()
        versions.append(_baseline(uow_factory(), project).version)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(versions) == list(range(1, 9))


class _ClashingBaselines:
    """Baseline repository whose inserts lose the race a fixed number of times."""

    def __init__(self, inner, failures):
        self._inner = inner
        self.failures = failures
        self.attempts = 0

    def __getattr__(self, name):
        return getattr(self._inner, name)

    def add(self, baseline):
        self.attempts += 1
        if self.failures:
            self.failures -= 1
            raise UniqueConstraintError("version taken")
        self._inner.add(baseline)


def test_version_clash_is_retried(db, project, planned):
    uow = InMemoryUnitOfWork(db)
    uow.baselines = _ClashingBaselines(uow.baselines, failures=1)

    baseline = _baseline(uow, project)

    assert baseline.version == 1
    assert uow.baselines.attempts == 2


def test_version_clash_gives_up_after_max_attempts(db, project, planned):
    uow = InMemoryUnitOfWork(db)
    uow.baselines = _ClashingBaselines(uow.baselines, failures=10)

    with pytest.raises(VersionConflictError) as excinfo:
        _baseline(uow, project)

    assert uow.baselines.attempts == 3
    assert excinfo.value.context["attempts"] == 3
    assert GetBaselineHistoryUseCase().execute(uuid.UUID(project.id), InMemoryUnitOfWork(db)) == []
