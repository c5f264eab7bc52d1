import uuid
from datetime import date

import pytest

from application import (
    CalculateTaskScheduleUseCase,
    GetReadyTasksUseCase,
    GetScheduleUseCase,
    ScheduleQuery,
    UpdateTaskCommand,
    UpdateTaskUseCase,
)
from model import TaskStatus
from service import ScheduleCalculator

BASE = date(2025, 3, 3)


@pytest.fixture
def calculator():
    return ScheduleCalculator()


@pytest.fixture
def network(make_task):
    """A(2) -> B(3), A -> C(1), B and C -> D(1)."""
    a = make_task("A", 2)
    b = make_task("B", 3, dependencies=[a])
    c = make_task("C", 1, dependencies=[a])
    d = make_task("D", 1, dependencies=[b, c])
    return a, b, c, d


def test_critical_path_and_slack(calculator, network):
    a, b, c, d = network
    result = calculator.compute([a, b, c, d], BASE)

    assert result.project_duration == 6
    assert result.critical_path == [a.id, b.id, d.id]
    assert result.critical_path_duration == 6
    assert result.slack_of(c.id) == 2
    assert [result.slack_of(t.id) for t in (a, b, d)] == [0, 0, 0]
    assert result.tasks[d.id].earliest_start == 5
    assert result.tasks[c.id].latest_start == 4


def test_dates_follow_the_base_date(calculator, network):
    a, b, c, d = network
    result = calculator.compute([a, b, c, d], BASE)

    assert result.tasks[a.id].start_date == date(2025, 3, 3)
    assert result.tasks[a.id].end_date == date(2025, 3, 5)
    assert result.tasks[b.id].start_date == date(2025, 3, 5)
    assert result.finish_date == date(2025, 3, 9)


def test_explicit_target_shifts_every_slack(calculator, network):
    a, b, c, d = network
    result = calculator.compute([a, b, c, d], BASE, target_finish_days=8)

    assert result.slack_of(a.id) == 2
    assert result.slack_of(c.id) == 4
    assert result.critical_path == [a.id, b.id, d.id]
    assert all(result.tasks[t.id].is_critical for t in (a, b, d))
    assert not result.tasks[c.id].is_critical


def test_hidden_tasks_are_ignored(calculator, network):
    a, b, c, d = network
    b.is_hidden = True
    result = calculator.compute([a, b, c, d], BASE)

    assert b.id not in result.tasks
    assert result.tasks[d.id].earliest_start == 3
    assert result.critical_path == [a.id, c.id, d.id]


def test_offset_delays_a_task(calculator, make_task):
    early = make_task("Early", 2)
    late = make_task("Late", 1, offset_days=10)
    result = calculator.compute([early, late], BASE)

    assert result.tasks[late.id].earliest_start == 10
    assert result.project_duration == 11
    assert result.critical_path == [late.id]


def test_ties_prefer_the_smallest_id_sequence(calculator, make_task):
    x = make_task("X", 2)
    y = make_task("Y", 2)
    z = make_task("Z", 1, dependencies=[x, y])
    result = calculator.compute([x, y, z], BASE)

    first = min((x, y), key=lambda t: str(t.id))
    assert result.critical_path == [first.id, z.id]
    assert result.critical_path_duration == 3


def test_empty_network(calculator):
    result = calculator.compute([], BASE)
    assert result.project_duration == 0
    assert result.critical_path == []
    assert result.finish_date is None


def test_ready_tasks(calculator, network):
    a, b, c, d = network
    assert calculator.ready_tasks([a, b, c, d]) == [a]

    a.status = TaskStatus.DONE
    assert calculator.ready_tasks([a, b, c, d]) == [b, c]


def test_dependency_on_hidden_task_counts_as_satisfied(calculator, network):
    a, b, c, d = network
    a.status = TaskStatus.DONE
    b.status = TaskStatus.CANCELLED
    c.is_hidden = True
    assert calculator.ready_tasks([a, b, c, d]) == [d]


def test_apply_keeps_pinned_dates(calculator, network):
    a, b, c, d = network
    pinned = (date(2025, 1, 1), date(2025, 1, 2))
    c.start_date, c.end_date = pinned
    c.dates_overridden = True

    changed = calculator.apply_to_tasks([a, b, c, d], calculator.compute([a, b, c, d], BASE))

    assert c not in changed
    assert (c.start_date, c.end_date) == pinned
    assert d.end_date == date(2025, 3, 9)


def test_schedule_is_only_written_on_request(uow, project, add_task):
    a = add_task("Site setup", 2)
    b = add_task("Earthworks", 3, dependencies=[a.id])
    pid = uuid.UUID(project.id)

    schedule = GetScheduleUseCase().execute(ScheduleQuery(pid), uow)
    assert schedule.critical_path == [a.id, b.id]
    assert uow.tasks.get(uuid.UUID(b.id)).start_date is None

    written = CalculateTaskScheduleUseCase().execute(ScheduleQuery(pid), uow)
    assert written.updated_task_count == 2
    assert uow.tasks.get(uuid.UUID(b.id)).start_date == date(2025, 3, 5)

    # editing a duration does not move dates until recalculated
    UpdateTaskUseCase().execute(UpdateTaskCommand(task_id=uuid.UUID(a.id), duration_days=4), uow)
    assert uow.tasks.get(uuid.UUID(b.id)).start_date == date(2025, 3, 5)


def test_ready_tasks_use_case(uow, project, add_task):
    a = add_task("Survey")
    add_task("Excavate", dependencies=[a.id])
    ready = GetReadyTasksUseCase().execute(uuid.UUID(project.id), uow)
    assert [t.id for t in ready] == [a.id]
