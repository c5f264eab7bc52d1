import uuid
from datetime import date

import pytest

from application import (
    ApplyTemplateCommand,
    ApplyTemplateUseCase,
    ConflictError,
    CreateTemplateCommand,
    CreateTemplateUseCase,
    DeleteTemplateCommand,
    DeleteTemplateUseCase,
    DuplicateTemplateCommand,
    DuplicateTemplateUseCase,
    GetProjectUseCase,
    ListTasksUseCase,
    ListTemplateApplyLogsUseCase,
    ListTemplatesUseCase,
    UpdateTemplateCommand,
    UpdateTemplateUseCase,
)
from infrastructure import InMemoryUnitOfWork
from model import ConflictBehavior
from service import TemplateInstantiationService, UnknownReferenceError, ValidationError

FRAME_TEMPLATE = [
    {"code": "SITE", "name": "Site setup", "duration_days": 2,
     "assignee_hint": "site_manager", "planned_cost": 1000},
    {"code": "BSMT", "name": "Basement excavation", "depends_on": [0],
     "conditional_tag": "site/basement", "duration_days": 5},
    {"code": "FRAM", "name": "Framing", "depends_on": [0, 1], "duration_days": 3,
     "assignee_hint": "carpenter", "planned_cost": 500},
]


@pytest.fixture
def template(uow):
    return CreateTemplateUseCase().execute(
        CreateTemplateCommand(name="Timber frame house", template_data=FRAME_TEMPLATE, category="residential"),
        uow,
    )


def _apply(uow, project, template, **kwargs):
    cmd = ApplyTemplateCommand(
        project_id=uuid.UUID(project.id), template_id=uuid.UUID(template.id), **kwargs
    )
    return ApplyTemplateUseCase().execute(cmd, uow)


def _tasks_by_name(uow, project):
    return {t.name: t for t in ListTasksUseCase().execute(uuid.UUID(project.id), uow)}


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("data, reason", [
    ([], "empty_template"),
    (["Site setup"], "malformed_entry"),
    ([{"name": "  "}], "missing_name"),
    ([{"name": "A", "depends_on": "0"}], "malformed_dependencies"),
    ([{"name": "A", "depends_on": [3]}], "dangling_index"),
    ([{"name": "A", "depends_on": [0]}], "self_reference"),
    ([{"name": "A"}, {"name": "B", "depends_on": [0, 0]}], "duplicate_dependency"),
    ([{"name": "A", "duration_days": -1}], "invalid_number"),
    ([{"name": "A", "code": "X"}, {"name": "B", "code": "X"}], "duplicate_code"),
    ([{"name": "A", "depends_on": [1]}, {"name": "B", "depends_on": [0]}], "cyclic_template"),
    ([{"name": "A", "conditional_tag": "site/moat"}], "unknown_tag"),
])
def test_parse_rejects_malformed_templates(data, reason):
    with pytest.raises(ValidationError) as excinfo:
        TemplateInstantiationService().parse(data)
    assert excinfo.value.context["reason"] == reason


def test_parse_accepts_dep_alias_and_assigns_codes():
    definitions = TemplateInstantiationService().parse([{"name": "A"}, {"name": "B", "dep": [0]}])
    assert [d.code for d in definitions] == ["T001", "T002"]
    assert definitions[1].depends_on == [0]
    assert definitions[0].duration_days == 1


def test_invalid_template_is_not_stored(uow):
    with pytest.raises(ValidationError):
        CreateTemplateUseCase().execute(
            CreateTemplateCommand(name="Broken", template_data=[{"name": "A", "depends_on": [0]}]), uow
        )
    assert ListTemplatesUseCase().execute(uow, include_inactive=True) == []


# ---------------------------------------------------------------------------
# Applying
# ---------------------------------------------------------------------------

def test_apply_creates_tasks_edges_and_assignments(uow, project, template):
    manager, crew = uuid.uuid4(), uuid.uuid4()
    result = _apply(uow, project, template, assignee_map={"site_manager": manager}, default_assignee_id=crew)

    assert result.created_tasks == 3
    assert result.created_dependencies == 3
    assert result.created_assignments == 3
    assert result.skipped == 0

    tasks = _tasks_by_name(uow, project)
    site, basement, framing = tasks["Site setup"], tasks["Basement excavation"], tasks["Framing"]
    assert basement.is_hidden
    assert framing.dependencies == [site.id, basement.id]
    assert framing.template_task_id == "FRAM"
    assert framing.template_id == template.id
    assert site.start_date == "2025-03-03"
    assert framing.start_date == "2025-03-05"
    assert framing.end_date == "2025-03-08"

    users = {a.task_id: a.user_id for a in result.assignments}
    assert users[site.id] == str(manager)
    assert users[framing.id] == str(crew)
    assert result.critical_path == [site.id, framing.id]


def test_apply_updates_project_rollups(uow, project, template):
    _apply(uow, project, template)
    assert GetProjectUseCase().execute(uuid.UUID(project.id), uow).planned_cost == 1500.0


def test_preview_writes_nothing(uow, project, template):
    result = _apply(uow, project, template, preview_only=True)

    assert result.preview_only
    assert result.created_tasks == 3
    assert result.log_id is None
    assert _tasks_by_name(uow, project) == {}
    assert ListTemplateApplyLogsUseCase().execute(uuid.UUID(project.id), uow) == []


def test_base_start_date_overrides_project_start(uow, project, template):
    _apply(uow, project, template, base_start_date=date(2025, 6, 2))
    assert _tasks_by_name(uow, project)["Site setup"].start_date == "2025-06-02"


def test_skip_reuses_existing_task(uow, project, template, add_task):
    existing = add_task("Site setup", 4)
    result = _apply(uow, project, template, conflict_behavior=ConflictBehavior.SKIP)

    assert result.created_tasks == 2
    assert result.skipped_codes == ["SITE"]
    tasks = _tasks_by_name(uow, project)
    assert tasks["Framing"].dependencies[0] == existing.id
    assert len(tasks) == 3


def test_rename_creates_copies(uow, project, template, add_task):
    add_task("Site setup")
    _apply(uow, project, template, conflict_behavior=ConflictBehavior.RENAME)
    _apply(uow, project, template, conflict_behavior=ConflictBehavior.RENAME)

    names = set(_tasks_by_name(uow, project))
    assert {"Site setup", "Site setup (Copy)", "Site setup (Copy 2)"} <= names
    assert {"Framing (Copy)", "Basement excavation (Copy)"} <= names


def test_attach_to_links_root_tasks(uow, project, template, add_task):
    survey = add_task("Survey", 1)
    _apply(uow, project, template, attach_to=[uuid.UUID(survey.id)])

    tasks = _tasks_by_name(uow, project)
    assert tasks["Site setup"].dependencies == [survey.id]
    assert survey.id not in tasks["Framing"].dependencies


def test_attach_to_unknown_task_is_rejected(uow, project, template):
    with pytest.raises(UnknownReferenceError):
        _apply(uow, project, template, attach_to=[uuid.uuid4()])
    assert _tasks_by_name(uow, project) == {}


def test_apply_is_logged(uow, project, template):
    result = _apply(uow, project, template, conflict_behavior=ConflictBehavior.RENAME)
    logs = ListTemplateApplyLogsUseCase().execute(uuid.UUID(project.id), uow)

    assert [log.id for log in logs] == [result.log_id]
    assert logs[0].template_version == 1
    assert logs[0].counts["created_tasks"] == 3
    assert logs[0].options["conflict_behavior"] == "rename"


class _FailingLogs:
    def list_for_project(self, project_id):
        return []

    def save(self, log):
        raise RuntimeError("log store unavailable")


def test_failed_apply_leaves_project_untouched(db, uow_factory, project, template):
    failing = InMemoryUnitOfWork(db)
    failing.template_apply_logs = _FailingLogs()

    with pytest.raises(RuntimeError):
        _apply(failing, project, template, default_assignee_id=uuid.uuid4())

    uow = uow_factory()
    assert _tasks_by_name(uow, project) == {}
    with uow:
        assert uow.assignments.list_for_project(uuid.UUID(project.id)) == []


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

def test_referenced_template_is_frozen(uow, project, template):
    tid = uuid.UUID(template.id)
    _apply(uow, project, template)

    with pytest.raises(ConflictError):
        UpdateTemplateUseCase().execute(UpdateTemplateCommand(template_id=tid, name="Renamed"), uow)
    with pytest.raises(ConflictError):
        DeleteTemplateUseCase().execute(DeleteTemplateCommand(template_id=tid), uow)

    deactivated = UpdateTemplateUseCase().execute(UpdateTemplateCommand(template_id=tid, is_active=False), uow)
    assert not deactivated.is_active
    with pytest.raises(ConflictError):
        _apply(uow, project, template)


def test_unreferenced_template_can_be_edited_and_deleted(uow, template):
    tid = uuid.UUID(template.id)
    updated = UpdateTemplateUseCase().execute(
        UpdateTemplateCommand(template_id=tid, template_data=[{"name": "Only task"}]), uow
    )
    assert updated.task_count == 1

    DeleteTemplateUseCase().execute(DeleteTemplateCommand(template_id=tid), uow)
    assert ListTemplatesUseCase().execute(uow, include_inactive=True) == []


def test_duplicate_bumps_version(uow, project, template):
    _apply(uow, project, template)
    copy = DuplicateTemplateUseCase().execute(
        DuplicateTemplateCommand(template_id=uuid.UUID(template.id),
                                 template_data=FRAME_TEMPLATE + [{"name": "Roof", "depends_on": [2]}]),
        uow,
    )

    assert copy.version == 2
    assert copy.duplicated_from_id == template.id
    assert copy.task_count == 4
    assert [t.version for t in ListTemplatesUseCase().execute(uow)] == [1, 2]
