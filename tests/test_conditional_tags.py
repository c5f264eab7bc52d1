import uuid

import pytest

from application import (
    CreateComponentCommand,
    CreateComponentUseCase,
    GetAvailableTagsUseCase,
    ProcessConditionalTagsUseCase,
    UpdateProjectCommand,
    UpdateProjectUseCase,
    UpdateTaskCommand,
    UpdateTaskUseCase,
)
from model import Component, ConditionalTag, Project, ProjectCategory
from service import ConditionalTagEvaluator, ValidationError


@pytest.fixture
def evaluator():
    return ConditionalTagEvaluator()


def test_every_tag_has_a_rule(evaluator):
    project = Project(name="P")
    for tag in ConditionalTag:
        assert isinstance(evaluator.evaluate(tag, project), bool)


def test_basement_tag_follows_basement_levels(evaluator):
    assert not evaluator.evaluate(ConditionalTag.SITE_BASEMENT, Project(basement_levels=0))
    assert evaluator.evaluate(ConditionalTag.SITE_BASEMENT, Project(basement_levels=2))


def test_high_rise_threshold(evaluator):
    assert not evaluator.evaluate(ConditionalTag.STRUCTURE_HIGH_RISE, Project(floor_count=7))
    assert evaluator.evaluate(ConditionalTag.STRUCTURE_HIGH_RISE, Project(floor_count=8))


def test_component_type_drives_material_tags(evaluator):
    project = Project(includes_interior_fitout=False)
    floor_package = Component(project_id=project.id, name="Level 2 floors", component_type="Flooring")
    assert evaluator.evaluate(ConditionalTag.MATERIAL_FLOORING, project, floor_package)
    assert not evaluator.evaluate(ConditionalTag.MATERIAL_FLOORING, project, None)


def test_unknown_tag_is_rejected(evaluator):
    with pytest.raises(ValidationError) as excinfo:
        evaluator.parse_tag("site/swimming_pool")
    assert excinfo.value.context["reason"] == "unknown_tag"
    assert "site/basement" in excinfo.value.context["allowed"]


def test_parse_tag_accepts_blank_as_none(evaluator):
    assert evaluator.parse_tag(None) is None
    assert evaluator.parse_tag("") is None
    assert evaluator.parse_tag(" Site/Basement ") == ConditionalTag.SITE_BASEMENT


def test_available_tags_depend_on_category(evaluator):
    tags = evaluator.available_tags(Project(category=ProjectCategory.INFRASTRUCTURE))
    assert ConditionalTag.SITE_BASEMENT in tags
    assert ConditionalTag.SCOPE_LANDSCAPING in tags
    assert ConditionalTag.USE_RESIDENTIAL not in tags
    assert ConditionalTag.STRUCTURE_MULTI_STOREY not in tags


def test_processing_is_idempotent(uow, project, add_task):
    pid = uuid.UUID(project.id)
    basement = add_task("Basement slab", conditional_tag="site/basement")
    assert basement.is_hidden

    first = ProcessConditionalTagsUseCase().execute(pid, uow)
    second = ProcessConditionalTagsUseCase().execute(pid, uow)

    assert first.processed == 1 and first.changed == 0
    assert second.changed == 0
    assert uow.tasks.get(uuid.UUID(basement.id)).is_hidden


def test_processing_picks_up_project_changes(uow, project, add_task):
    pid = uuid.UUID(project.id)
    basement = add_task("Basement slab", conditional_tag="site/basement")

    UpdateProjectUseCase().execute(UpdateProjectCommand(project_id=pid, basement_levels=1), uow)
    # attribute edits alone do not re-evaluate visibility
    assert uow.tasks.get(uuid.UUID(basement.id)).is_hidden

    result = ProcessConditionalTagsUseCase().execute(pid, uow)
    assert result.changed == 1
    assert result.visible == 1
    assert not uow.tasks.get(uuid.UUID(basement.id)).is_hidden


def test_untagged_tasks_keep_manual_visibility(uow, project, add_task):
    pid = uuid.UUID(project.id)
    manual = add_task("Temporary hoarding")
    UpdateTaskUseCase().execute(UpdateTaskCommand(task_id=uuid.UUID(manual.id), is_hidden=True), uow)

    result = ProcessConditionalTagsUseCase().execute(pid, uow)

    assert result.processed == 0
    assert uow.tasks.get(uuid.UUID(manual.id)).is_hidden


def test_clearing_a_tag_makes_the_task_visible(uow, project, add_task):
    pool = add_task("Basement pool", conditional_tag="site/basement")
    plant = add_task("Basement plant room", conditional_tag="site/basement")
    assert pool.is_hidden and plant.is_hidden

    cleared = UpdateTaskUseCase().execute(UpdateTaskCommand(task_id=uuid.UUID(pool.id), conditional_tag=""), uow)
    kept_hidden = UpdateTaskUseCase().execute(
        UpdateTaskCommand(task_id=uuid.UUID(plant.id), conditional_tag="", is_hidden=True), uow
    )

    assert cleared.conditional_tag is None
    assert not cleared.is_hidden
    assert kept_hidden.is_hidden


def test_component_tasks_use_their_component(uow, project, add_task):
    pid = uuid.UUID(project.id)
    flooring = CreateComponentUseCase().execute(
        CreateComponentCommand(project_id=pid, name="Floor finishes", component_type="flooring"), uow
    )
    inside = add_task("Lay oak boards", conditional_tag="material/flooring",
                      component_id=uuid.UUID(flooring.id))
    outside = add_task("Lay generic boards", conditional_tag="material/flooring")

    assert not inside.is_hidden
    assert outside.is_hidden


def test_available_tags_use_case(uow, project):
    tags = GetAvailableTagsUseCase().execute(uuid.UUID(project.id), uow)
    values = [t.tag for t in tags]
    assert "use/residential" in values
    assert "use/industrial" not in values
    assert all(t.label for t in tags)
