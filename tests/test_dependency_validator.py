import uuid

import pytest

from service import (
    CycleError,
    DependencyValidator,
    SelfReferenceError,
    UnknownReferenceError,
    ValidationError,
)


@pytest.fixture
def validator():
    return DependencyValidator()


def test_accepts_dependencies_on_existing_tasks(validator, make_task):
    a = make_task("A")
    b = make_task("B", dependencies=[a])
    validator.validate(None, [a.id, b.id], [a, b])


def test_rejects_duplicate_ids(validator, make_task):
    a = make_task("A")
    with pytest.raises(ValidationError) as excinfo:
        validator.validate(None, [a.id, a.id], [a])
    assert excinfo.value.context["reason"] == "duplicate_dependency"


def test_duplicates_are_reported_before_unknown_ids(validator):
    ghost = uuid.uuid4()
    with pytest.raises(ValidationError):
        validator.validate(None, [ghost, ghost], [])


def test_rejects_self_reference(validator, make_task):
    a = make_task("A")
    with pytest.raises(SelfReferenceError) as excinfo:
        validator.validate(a.id, [a.id, uuid.uuid4()], [a])
    assert excinfo.value.kind == "self_reference"


def test_rejects_ids_from_outside_the_project(validator, make_task):
    a = make_task("A")
    ghost = uuid.uuid4()
    with pytest.raises(UnknownReferenceError) as excinfo:
        validator.validate(None, [a.id, ghost], [a])
    assert excinfo.value.context["unknown_ids"] == [str(ghost)]


def test_rejects_edge_that_closes_a_cycle(validator, make_task):
    a = make_task("A")
    b = make_task("B", dependencies=[a])
    c = make_task("C", dependencies=[b])

    with pytest.raises(CycleError) as excinfo:
        validator.validate(a.id, [c.id], [a, b, c])

    cycle = excinfo.value.context["cycle"]
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {str(a.id), str(b.id), str(c.id)}


def test_edit_replaces_the_tasks_existing_edges(validator, make_task):
    a = make_task("A")
    b = make_task("B", dependencies=[a])
    c = make_task("C")

    # resubmitting the stored list is neither a duplicate nor a cycle
    validator.validate(b.id, [a.id], [a, b, c])
    # b moves from a to c, after which a may depend on b
    b.dependencies = [c.id]
    validator.validate(a.id, [b.id], [a, b, c])


def test_long_chain_does_not_exhaust_the_stack(validator, make_task):
    tasks = [make_task("T0")]
    for i in range(1, 5000):
        tasks.append(make_task(f"T{i}", dependencies=[tasks[-1]]))

    validator.validate(None, [tasks[-1].id], tasks)
    with pytest.raises(CycleError):
        validator.validate(tasks[0].id, [tasks[-1].id], tasks)


def test_topological_order_puts_dependencies_first(validator, make_task):
    a = make_task("A")
    b = make_task("B", dependencies=[a])
    c = make_task("C", dependencies=[a])
    d = make_task("D", dependencies=[b, c])
    edges = {t.id: list(t.dependencies) for t in (d, c, b, a)}

    order = validator.topological_order(edges)

    assert order[0] == a.id
    assert order[-1] == d.id
    assert order[1:3] == sorted([b.id, c.id], key=str)


def test_topological_order_raises_on_cycle(validator):
    x, y = uuid.uuid4(), uuid.uuid4()
    with pytest.raises(CycleError):
        validator.topological_order({x: [y], y: [x]})
