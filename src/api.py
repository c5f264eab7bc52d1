"""
api.py

REST API layer for the Project Scheduling & Cost-Baseline Engine.

Framework : FastAPI
Auth      : None. Callers are pre-authorised; the acting user is read from
            the optional `X-User-Id` header (a UUID) and recorded on domain
            events, baselines and template apply logs.

Structure
---------
  Routers (all prefixed under /api/v1)
  ├── /projects                          — project CRUD, rollups, events
  │   ├── /{project_id}/components       — component tree
  │   ├── /{project_id}/tasks            — task creation & listing
  │   ├── /{project_id}/dependencies     — dependency dry-run validation
  │   ├── /{project_id}/schedule         — slack, critical path, date writing
  │   ├── /{project_id}/ready-tasks      — tasks that can start now
  │   ├── /{project_id}/conditional-tags — tag processing & pickers
  │   ├── /{project_id}/templates        — template application & logs
  │   ├── /{project_id}/baselines        — versioned baselines
  │   └── /{project_id}/variance         — live vs. baseline variance
  ├── /tasks/{task_id}                   — task edits, dependencies, assignments
  ├── /users/{user_id}/workload          — cross-task allocation of a user
  └── /templates                         — work template library

Error handling
--------------
  NotFoundError                    → 404
  ConflictError / VersionConflict  → 409
  ApplicationError                 → 422
  EngineError (validation, cycle,
    capacity, unknown reference)   → 422
  ValueError                       → 422
  Unhandled                        → 500 (FastAPI default)

Response envelope
-----------------
  Success  : { "data": <payload> }
  Error    : { "detail": "<message>", "kind": "<error kind>", "context": {...} }

Running
-------
  uvicorn main:app --reload
"""

from __future__ import annotations

import dataclasses
import uuid
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Path, Query, status
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi_mcp import FastApiMCP
from pydantic import BaseModel, Field, field_validator

from app_logger import get_logger
from application import (
    # Exceptions
    ApplicationError,
    ConflictError,
    NotFoundError,
    SYSTEM_USER_ID,
    AbstractUnitOfWork,
    # Commands / queries
    ApplyTemplateCommand,
    AmendBaselineNoteCommand,
    AssignTaskCommand,
    CompareBaselinesQuery,
    CreateBaselineCommand,
    CreateComponentCommand,
    CreateProjectCommand,
    CreateTaskCommand,
    CreateTemplateCommand,
    DeleteBaselineCommand,
    DeleteTaskCommand,
    DeleteTemplateCommand,
    DuplicateTemplateCommand,
    RebaselineCommand,
    RemoveAssignmentCommand,
    ReplaceTaskAssignmentsCommand,
    ScheduleQuery,
    SetTaskDependenciesCommand,
    UpdateProjectCommand,
    UpdateTaskCommand,
    UpdateTemplateCommand,
    ValidateDependenciesCommand,
    # Use cases
    AmendBaselineNoteUseCase,
    ApplyTemplateUseCase,
    AssignTaskUseCase,
    CalculateProjectVarianceUseCase,
    CalculateTaskScheduleUseCase,
    CompareBaselinesUseCase,
    CreateBaselineUseCase,
    CreateComponentUseCase,
    CreateProjectUseCase,
    CreateTaskUseCase,
    CreateTemplateUseCase,
    DeleteBaselineUseCase,
    DeleteTaskUseCase,
    DeleteTemplateUseCase,
    DuplicateTemplateUseCase,
    GetAvailableTagsUseCase,
    GetBaselineHistoryUseCase,
    GetCurrentBaselineUseCase,
    GetProjectUseCase,
    GetReadyTasksUseCase,
    GetScheduleUseCase,
    GetTaskAssignmentStatsUseCase,
    GetTaskUseCase,
    GetTemplateUseCase,
    GetUserWorkloadUseCase,
    ListBaselinesUseCase,
    ListComponentsUseCase,
    ListProjectEventsUseCase,
    ListProjectsUseCase,
    ListTaskAssignmentsUseCase,
    ListTasksUseCase,
    ListTemplateApplyLogsUseCase,
    ListTemplatesUseCase,
    ProcessConditionalTagsUseCase,
    RebaselineUseCase,
    RecalculateProjectUseCase,
    RemoveAssignmentUseCase,
    ReplaceTaskAssignmentsUseCase,
    SetTaskDependenciesUseCase,
    UpdateProjectUseCase,
    UpdateTaskUseCase,
    UpdateTemplateUseCase,
    ValidateDependenciesUseCase,
)
from infrastructure import InMemoryUnitOfWork
from model import (
    BaselineType,
    ConflictBehavior,
    ProjectCategory,
    ProjectStatus,
    TaskStatus,
    Visibility,
)
from service import EngineError
from settings import get_settings

logger = get_logger("api")
settings = get_settings()


# ---------------------------------------------------------------------------
# App bootstrap
# ---------------------------------------------------------------------------

app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=(
        "Scheduling and cost-baseline engine for construction projects: "
        "dependency graphs, critical path, conditional visibility, workload "
        "splits, work templates, versioned baselines and variance."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Global exception handlers
# ---------------------------------------------------------------------------

def _error(status_code: int, exc: Exception, kind: str, context: Optional[Dict] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({"detail": str(exc), "kind": kind, "context": context or {}}),
    )


@app.exception_handler(NotFoundError)
async def not_found_handler(request, exc: NotFoundError):
    return _error(404, exc, exc.kind, exc.context)


@app.exception_handler(ConflictError)
async def conflict_handler(request, exc: ConflictError):
    return _error(409, exc, exc.kind, exc.context)


@app.exception_handler(ApplicationError)
async def application_error_handler(request, exc: ApplicationError):
    return _error(422, exc, exc.kind, exc.context)


@app.exception_handler(EngineError)
async def engine_error_handler(request, exc: EngineError):
    return _error(422, exc, exc.kind, exc.context)


@app.exception_handler(ValueError)
async def value_error_handler(request, exc: ValueError):
    return _error(422, exc, "validation_error")


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_uow() -> AbstractUnitOfWork:
    """Returns the in-memory Unit of Work (no database required)."""
    return InMemoryUnitOfWork()


def get_current_user(x_user_id: Optional[uuid.UUID] = Header(default=None)) -> uuid.UUID:
    """The acting user, taken on trust from the X-User-Id header."""
    return x_user_id or SYSTEM_USER_ID


# ---------------------------------------------------------------------------
# Envelope helper
# ---------------------------------------------------------------------------

def _ok(data: Any) -> Dict:
    """Wrap a DTO or list of DTOs in the standard success envelope."""
    if dataclasses.is_dataclass(data):
        return {"data": dataclasses.asdict(data)}
    if isinstance(data, list):
        return {
            "data": [
                dataclasses.asdict(item) if dataclasses.is_dataclass(item) else item
                for item in data
            ]
        }
    return {"data": data}


# ===========================================================================
# REQUEST BODY SCHEMAS  (Pydantic v2)
# ===========================================================================

# ---------------------------------------------------------------------------
# Project schemas
# ---------------------------------------------------------------------------

class CreateProjectRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    code: str = Field(default="", max_length=50)
    description: str = Field(default="")
    category: ProjectCategory = ProjectCategory.RESIDENTIAL
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    floor_count: int = Field(default=1, ge=1)
    basement_levels: int = Field(default=0, ge=0)
    includes_interior_fitout: bool = False
    includes_landscaping: bool = False


class UpdateProjectRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    code: Optional[str] = Field(default=None, max_length=50)
    description: Optional[str] = None
    category: Optional[ProjectCategory] = None
    status: Optional[ProjectStatus] = None
    visibility: Optional[Visibility] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    floor_count: Optional[int] = Field(default=None, ge=1)
    basement_levels: Optional[int] = Field(default=None, ge=0)
    includes_interior_fitout: Optional[bool] = None
    includes_landscaping: Optional[bool] = None


class CreateComponentRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    parent_id: Optional[uuid.UUID] = None
    component_type: Optional[str] = Field(default=None, max_length=100)


# ---------------------------------------------------------------------------
# Task schemas
# ---------------------------------------------------------------------------

class CreateTaskRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: str = Field(default="")
    component_id: Optional[uuid.UUID] = None
    duration_days: int = Field(default=0, ge=0)
    offset_days: int = Field(default=0, ge=0)
    dependencies: List[uuid.UUID] = Field(default_factory=list)
    conditional_tag: Optional[str] = Field(
        default=None, description="One of the conditional tag values, e.g. 'site/basement'."
    )
    planned_cost: float = Field(default=0.0, ge=0.0)


class UpdateTaskRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    duration_days: Optional[int] = Field(default=None, ge=0)
    offset_days: Optional[int] = Field(default=None, ge=0)
    progress_pct: Optional[float] = Field(default=None, ge=0.0, le=100.0)
    planned_cost: Optional[float] = Field(default=None, ge=0.0)
    actual_cost: Optional[float] = Field(default=None, ge=0.0)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    dates_overridden: Optional[bool] = None
    conditional_tag: Optional[str] = Field(default=None, description="Empty string clears the tag.")
    is_hidden: Optional[bool] = None


class SetDependenciesRequest(BaseModel):
    dependencies: List[uuid.UUID] = Field(
        ..., description="Ordered ids of the tasks that must finish first."
    )


class ValidateDependenciesRequest(BaseModel):
    task_id: Optional[uuid.UUID] = Field(default=None, description="Omit for a task not yet created.")
    dependencies: List[uuid.UUID]


# ---------------------------------------------------------------------------
# Assignment schemas
# ---------------------------------------------------------------------------

class AssignTaskRequest(BaseModel):
    user_id: uuid.UUID
    split_percentage: float = Field(..., description="Share of the task, greater than 0 and at most 100.")


class UpdateAssignmentRequest(BaseModel):
    user_id: Optional[uuid.UUID] = None
    split_percentage: float


class SplitEntry(BaseModel):
    user_id: uuid.UUID
    split_percentage: float


class ReplaceAssignmentsRequest(BaseModel):
    assignments: List[SplitEntry]


# ---------------------------------------------------------------------------
# Template schemas
# ---------------------------------------------------------------------------

class CreateTemplateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    category: str = Field(default="", max_length=100)
    description: str = Field(default="")
    template_data: List[Dict[str, Any]] = Field(..., min_length=1)


class UpdateTemplateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    category: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = None
    template_data: Optional[List[Dict[str, Any]]] = None
    is_active: Optional[bool] = None


class DuplicateTemplateRequest(BaseModel):
    template_data: Optional[List[Dict[str, Any]]] = None


class ApplyTemplateRequest(BaseModel):
    template_id: uuid.UUID
    component_id: Optional[uuid.UUID] = None
    default_assignee_id: Optional[uuid.UUID] = None
    base_start_date: Optional[date] = None
    preview_only: bool = False
    conflict_behavior: ConflictBehavior = ConflictBehavior.CREATE
    include_dependencies: bool = True
    attach_to: List[uuid.UUID] = Field(default_factory=list)
    assignee_map: Dict[str, uuid.UUID] = Field(default_factory=dict)

    @field_validator("assignee_map")
    @classmethod
    def validate_hints(cls, v: Dict[str, uuid.UUID]) -> Dict[str, uuid.UUID]:
        if any(not hint.strip() for hint in v):
            raise ValueError("assignee_map keys must be non-empty hints")
        return v


# ---------------------------------------------------------------------------
# Baseline schemas
# ---------------------------------------------------------------------------

class CreateBaselineRequest(BaseModel):
    baseline_type: BaselineType
    note: str = Field(default="", max_length=2000)
    contract_id: Optional[uuid.UUID] = None


class RebaselineRequest(BaseModel):
    note: str = Field(default="", max_length=2000)
    contract_id: Optional[uuid.UUID] = None


class AmendBaselineNoteRequest(BaseModel):
    note: str = Field(..., max_length=2000)


# ===========================================================================
# ROUTERS
# ===========================================================================

api_v1 = APIRouter(prefix="/api/v1")


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------

project_router = APIRouter(prefix="/projects", tags=["Projects"])


@project_router.post("", status_code=status.HTTP_201_CREATED, summary="Create a project")
def create_project(
    body: CreateProjectRequest,
    uow: AbstractUnitOfWork = Depends(get_uow),
    current_user_id: uuid.UUID = Depends(get_current_user),
):
    cmd = CreateProjectCommand(acting_user_id=current_user_id, **body.model_dump())
    return _ok(CreateProjectUseCase().execute(cmd, uow))


@project_router.get("", summary="List all projects")
def list_projects(uow: AbstractUnitOfWork = Depends(get_uow)):
    return _ok(ListProjectsUseCase().execute(uow))


@project_router.get("/{project_id}", summary="Get a project by ID")
def get_project(
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(GetProjectUseCase().execute(project_id, uow))


@project_router.patch("/{project_id}", summary="Update project attributes")
def update_project(
    body: UpdateProjectRequest,
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    current_user_id: uuid.UUID = Depends(get_current_user),
):
    """
    Changing attributes read by conditional tags (category, floors,
    basements, scope flags) does not re-evaluate visibility; call
    `POST /conditional-tags/process` afterwards.
    """
    cmd = UpdateProjectCommand(
        project_id=project_id,
        acting_user_id=current_user_id,
        **body.model_dump(exclude_none=True),
    )
    return _ok(UpdateProjectUseCase().execute(cmd, uow))


@project_router.post("/{project_id}/recalculate", summary="Recompute cost and progress rollups")
def recalculate_project(
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(RecalculateProjectUseCase().execute(project_id, uow))


@project_router.get("/{project_id}/events", summary="Domain events of a project, newest first")
def list_project_events(
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(ListProjectEventsUseCase().execute(project_id, uow))


# ---------------------------------------------------------------------------
# Components
# ---------------------------------------------------------------------------

component_router = APIRouter(prefix="/projects/{project_id}/components", tags=["Components"])


@component_router.post("", status_code=status.HTTP_201_CREATED, summary="Add a component")
def create_component(
    body: CreateComponentRequest,
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    current_user_id: uuid.UUID = Depends(get_current_user),
):
    cmd = CreateComponentCommand(
        project_id=project_id,
        acting_user_id=current_user_id,
        name=body.name,
        parent_id=body.parent_id,
        component_type=body.component_type,
    )
    return _ok(CreateComponentUseCase().execute(cmd, uow))


@component_router.get("", summary="List the components of a project")
def list_components(
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(ListComponentsUseCase().execute(project_id, uow))


# ---------------------------------------------------------------------------
# Project tasks, dependencies, schedule, tags
# ---------------------------------------------------------------------------

project_task_router = APIRouter(prefix="/projects/{project_id}", tags=["Tasks"])


@project_task_router.post("/tasks", status_code=status.HTTP_201_CREATED, summary="Create a task")
def create_task(
    body: CreateTaskRequest,
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    current_user_id: uuid.UUID = Depends(get_current_user),
):
    """Dependencies are validated (unknown ids, self reference, cycles) before the task is stored."""
    cmd = CreateTaskCommand(project_id=project_id, acting_user_id=current_user_id, **body.model_dump())
    return _ok(CreateTaskUseCase().execute(cmd, uow))


@project_task_router.get("/tasks", summary="List tasks")
def list_tasks(
    project_id: uuid.UUID = Path(...),
    component_id: Optional[uuid.UUID] = Query(default=None, description="Restrict to a component subtree."),
    include_hidden: bool = Query(default=True),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(ListTasksUseCase().execute(project_id, uow, component_id, include_hidden))


@project_task_router.post("/dependencies/validate", summary="Dry-run a dependency edit")
def validate_dependencies(
    body: ValidateDependenciesRequest,
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    cmd = ValidateDependenciesCommand(
        project_id=project_id, dependencies=body.dependencies, task_id=body.task_id
    )
    return _ok(ValidateDependenciesUseCase().execute(cmd, uow))


schedule_router = APIRouter(prefix="/projects/{project_id}", tags=["Schedule"])


@schedule_router.get("/schedule", summary="Slack and critical path (read only)")
def get_schedule(
    project_id: uuid.UUID = Path(...),
    component_id: Optional[uuid.UUID] = Query(default=None),
    base_date: Optional[date] = Query(default=None),
    target_finish_days: Optional[int] = Query(default=None, ge=0),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    query = ScheduleQuery(project_id, component_id, base_date, target_finish_days)
    return _ok(GetScheduleUseCase().execute(query, uow))


@schedule_router.post("/schedule/calculate", summary="Write computed dates onto tasks")
def calculate_schedule(
    project_id: uuid.UUID = Path(...),
    component_id: Optional[uuid.UUID] = Query(default=None),
    base_date: Optional[date] = Query(default=None),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """Tasks with pinned dates keep them."""
    query = ScheduleQuery(project_id, component_id, base_date)
    return _ok(CalculateTaskScheduleUseCase().execute(query, uow))


@schedule_router.get("/ready-tasks", summary="Tasks whose dependencies are all finished")
def get_ready_tasks(
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(GetReadyTasksUseCase().execute(project_id, uow))


tag_router = APIRouter(prefix="/projects/{project_id}/conditional-tags", tags=["Conditional Tags"])


@tag_router.post("/process", summary="Re-evaluate tagged task visibility")
def process_conditional_tags(
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(ProcessConditionalTagsUseCase().execute(project_id, uow))


@tag_router.get("", summary="Tags meaningful for the project's category")
def get_available_tags(
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(GetAvailableTagsUseCase().execute(project_id, uow))


# ---------------------------------------------------------------------------
# Tasks (by id) and assignments
# ---------------------------------------------------------------------------

task_router = APIRouter(prefix="/tasks/{task_id}", tags=["Tasks"])


@task_router.get("", summary="Get a task by ID")
def get_task(
    task_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(GetTaskUseCase().execute(task_id, uow))


@task_router.patch("", summary="Update task fields")
def update_task(
    body: UpdateTaskRequest,
    task_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    current_user_id: uuid.UUID = Depends(get_current_user),
):
    """Setting start/end dates pins them; send `dates_overridden: false` to release."""
    cmd = UpdateTaskCommand(
        task_id=task_id,
        acting_user_id=current_user_id,
        **body.model_dump(exclude_none=True),
    )
    return _ok(UpdateTaskUseCase().execute(cmd, uow))


@task_router.delete("", status_code=status.HTTP_204_NO_CONTENT, summary="Delete an unused task")
def delete_task(
    task_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    current_user_id: uuid.UUID = Depends(get_current_user),
):
    DeleteTaskUseCase().execute(DeleteTaskCommand(task_id, current_user_id), uow)


@task_router.put("/dependencies", summary="Replace a task's dependency list")
def set_task_dependencies(
    body: SetDependenciesRequest,
    task_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    current_user_id: uuid.UUID = Depends(get_current_user),
):
    cmd = SetTaskDependenciesCommand(task_id, body.dependencies, current_user_id)
    return _ok(SetTaskDependenciesUseCase().execute(cmd, uow))


assignment_router = APIRouter(prefix="/tasks/{task_id}/assignments", tags=["Assignments"])


@assignment_router.post("", status_code=status.HTTP_201_CREATED, summary="Assign a user to a task")
def assign_task(
    body: AssignTaskRequest,
    task_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    current_user_id: uuid.UUID = Depends(get_current_user),
):
    """Rejected with `capacity_exceeded` when the task's splits would pass 100%."""
    cmd = AssignTaskCommand(task_id, body.user_id, body.split_percentage, current_user_id)
    return _ok(AssignTaskUseCase().execute(cmd, uow))


@assignment_router.get("", summary="List a task's assignments")
def list_task_assignments(
    task_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(ListTaskAssignmentsUseCase().execute(task_id, uow))


@assignment_router.put("", summary="Replace all assignments of a task")
def replace_task_assignments(
    body: ReplaceAssignmentsRequest,
    task_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    current_user_id: uuid.UUID = Depends(get_current_user),
):
    cmd = ReplaceTaskAssignmentsCommand(
        task_id=task_id,
        splits=[(entry.user_id, entry.split_percentage) for entry in body.assignments],
        acting_user_id=current_user_id,
    )
    return _ok(ReplaceTaskAssignmentsUseCase().execute(cmd, uow))


@assignment_router.get("/stats", summary="Allocated and remaining share of a task")
def get_task_assignment_stats(
    task_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(GetTaskAssignmentStatsUseCase().execute(task_id, uow))


@assignment_router.patch("/{assignment_id}", summary="Change an assignment's split")
def update_assignment(
    body: UpdateAssignmentRequest,
    task_id: uuid.UUID = Path(...),
    assignment_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    current_user_id: uuid.UUID = Depends(get_current_user),
):
    user_id = body.user_id
    if user_id is None:
        current = {a.id: a for a in ListTaskAssignmentsUseCase().execute(task_id, uow)}
        if str(assignment_id) not in current:
            raise NotFoundError(f"Assignment {assignment_id} not found.")
        user_id = uuid.UUID(current[str(assignment_id)].user_id)
    cmd = AssignTaskCommand(task_id, user_id, body.split_percentage, current_user_id, assignment_id)
    return _ok(AssignTaskUseCase().execute(cmd, uow))


@assignment_router.delete("/{assignment_id}", status_code=status.HTTP_204_NO_CONTENT,
                          summary="Remove an assignment")
def remove_assignment(
    task_id: uuid.UUID = Path(...),
    assignment_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    current_user_id: uuid.UUID = Depends(get_current_user),
):
    RemoveAssignmentUseCase().execute(RemoveAssignmentCommand(assignment_id, current_user_id), uow)


user_router = APIRouter(prefix="/users", tags=["Assignments"])


@user_router.get("/{user_id}/workload", summary="A user's total share across open tasks")
def get_user_workload(
    user_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(GetUserWorkloadUseCase().execute(user_id, uow))


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

template_router = APIRouter(prefix="/templates", tags=["Templates"])


@template_router.post("", status_code=status.HTTP_201_CREATED, summary="Create a work template")
def create_template(
    body: CreateTemplateRequest,
    uow: AbstractUnitOfWork = Depends(get_uow),
    current_user_id: uuid.UUID = Depends(get_current_user),
):
    """
    Each entry of `template_data` needs a `name`; optional keys are `code`,
    `depends_on` (indices into the same list), `conditional_tag`,
    `duration_days`, `offset_days`, `assignee_hint`, `description` and
    `planned_cost`.
    """
    cmd = CreateTemplateCommand(
        name=body.name,
        template_data=body.template_data,
        acting_user_id=current_user_id,
        category=body.category,
        description=body.description,
    )
    return _ok(CreateTemplateUseCase().execute(cmd, uow))


@template_router.get("", summary="List templates")
def list_templates(
    include_inactive: bool = Query(default=False),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(ListTemplatesUseCase().execute(uow, include_inactive))


@template_router.get("/{template_id}", summary="Get a template by ID")
def get_template(
    template_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(GetTemplateUseCase().execute(template_id, uow))


@template_router.patch("/{template_id}", summary="Edit an unused template")
def update_template(
    body: UpdateTemplateRequest,
    template_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    current_user_id: uuid.UUID = Depends(get_current_user),
):
    cmd = UpdateTemplateCommand(
        template_id=template_id,
        acting_user_id=current_user_id,
        **body.model_dump(exclude_none=True),
    )
    return _ok(UpdateTemplateUseCase().execute(cmd, uow))


@template_router.post("/{template_id}/duplicate", status_code=status.HTTP_201_CREATED,
                      summary="Copy a template as its next version")
def duplicate_template(
    body: DuplicateTemplateRequest,
    template_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    current_user_id: uuid.UUID = Depends(get_current_user),
):
    cmd = DuplicateTemplateCommand(template_id, current_user_id, body.template_data)
    return _ok(DuplicateTemplateUseCase().execute(cmd, uow))


@template_router.delete("/{template_id}", status_code=status.HTTP_204_NO_CONTENT,
                        summary="Delete an unused template")
def delete_template(
    template_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    current_user_id: uuid.UUID = Depends(get_current_user),
):
    DeleteTemplateUseCase().execute(DeleteTemplateCommand(template_id, current_user_id), uow)


project_template_router = APIRouter(prefix="/projects/{project_id}/templates", tags=["Templates"])


@project_template_router.post("/apply", summary="Instantiate a template into the project")
def apply_template(
    body: ApplyTemplateRequest,
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    current_user_id: uuid.UUID = Depends(get_current_user),
):
    """With `preview_only` the full plan is returned and nothing is written."""
    cmd = ApplyTemplateCommand(project_id=project_id, acting_user_id=current_user_id, **body.model_dump())
    return _ok(ApplyTemplateUseCase().execute(cmd, uow))


@project_template_router.get("/applications", summary="Template apply log of the project")
def list_template_applications(
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(ListTemplateApplyLogsUseCase().execute(project_id, uow))


# ---------------------------------------------------------------------------
# Baselines & variance
# ---------------------------------------------------------------------------

baseline_router = APIRouter(prefix="/projects/{project_id}", tags=["Baselines"])


@baseline_router.post("/baselines", status_code=status.HTTP_201_CREATED,
                      summary="Snapshot the project as a new baseline version")
def create_baseline(
    body: CreateBaselineRequest,
    project_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    current_user_id: uuid.UUID = Depends(get_current_user),
):
    cmd = CreateBaselineCommand(
        project_id=project_id,
        baseline_type=body.baseline_type,
        acting_user_id=current_user_id,
        note=body.note,
        contract_id=body.contract_id,
    )
    return _ok(CreateBaselineUseCase().execute(cmd, uow))


@baseline_router.get("/baselines", summary="List baselines ordered by type and version")
def list_baselines(
    project_id: uuid.UUID = Path(...),
    baseline_type: Optional[BaselineType] = Query(default=None),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(ListBaselinesUseCase().execute(project_id, uow, baseline_type))


@baseline_router.get("/baselines/current", summary="Highest version of a baseline type")
def get_current_baseline(
    project_id: uuid.UUID = Path(...),
    baseline_type: BaselineType = Query(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(GetCurrentBaselineUseCase().execute(project_id, baseline_type, uow))


@baseline_router.get("/baselines/history", summary="Baseline lifecycle log")
def get_baseline_history(
    project_id: uuid.UUID = Path(...),
    baseline_type: Optional[BaselineType] = Query(default=None),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    return _ok(GetBaselineHistoryUseCase().execute(project_id, uow, baseline_type))


@baseline_router.get("/baselines/compare", summary="Deltas between two baselines (to − from)")
def compare_baselines(
    project_id: uuid.UUID = Path(...),
    from_id: uuid.UUID = Query(..., alias="from"),
    to_id: uuid.UUID = Query(..., alias="to"),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    query = CompareBaselinesQuery(project_id, from_id, to_id)
    return _ok(CompareBaselinesUseCase().execute(query, uow))


@baseline_router.post("/baselines/{baseline_id}/rebaseline", status_code=status.HTTP_201_CREATED,
                      summary="Supersede a baseline with a fresh snapshot")
def rebaseline(
    body: RebaselineRequest,
    project_id: uuid.UUID = Path(...),
    baseline_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    current_user_id: uuid.UUID = Depends(get_current_user),
):
    cmd = RebaselineCommand(project_id, baseline_id, current_user_id, body.note, body.contract_id)
    return _ok(RebaselineUseCase().execute(cmd, uow))


@baseline_router.patch("/baselines/{baseline_id}", summary="Amend a baseline's note")
def amend_baseline_note(
    body: AmendBaselineNoteRequest,
    project_id: uuid.UUID = Path(...),
    baseline_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    current_user_id: uuid.UUID = Depends(get_current_user),
):
    cmd = AmendBaselineNoteCommand(project_id, baseline_id, body.note, current_user_id)
    return _ok(AmendBaselineNoteUseCase().execute(cmd, uow))


@baseline_router.delete("/baselines/{baseline_id}", status_code=status.HTTP_204_NO_CONTENT,
                        summary="Administrative baseline removal")
def delete_baseline(
    project_id: uuid.UUID = Path(...),
    baseline_id: uuid.UUID = Path(...),
    uow: AbstractUnitOfWork = Depends(get_uow),
    current_user_id: uuid.UUID = Depends(get_current_user),
):
    DeleteBaselineUseCase().execute(DeleteBaselineCommand(project_id, baseline_id, current_user_id), uow)


@baseline_router.get("/variance", summary="Current schedule and cost against the latest baseline")
def get_project_variance(
    project_id: uuid.UUID = Path(...),
    baseline_type: BaselineType = Query(default=BaselineType.EXECUTION),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """`status` is `no_baseline` (all variances null) when no baseline of the type exists."""
    return _ok(CalculateProjectVarianceUseCase().execute(project_id, baseline_type, uow))


# ---------------------------------------------------------------------------
# Register all routers
# ---------------------------------------------------------------------------

api_v1.include_router(project_router)
api_v1.include_router(component_router)
api_v1.include_router(project_task_router)
api_v1.include_router(schedule_router)
api_v1.include_router(tag_router)
api_v1.include_router(task_router)
api_v1.include_router(assignment_router)
api_v1.include_router(user_router)
api_v1.include_router(template_router)
api_v1.include_router(project_template_router)
api_v1.include_router(baseline_router)

app.include_router(api_v1)


# ---------------------------------------------------------------------------
# MCP server — exposes every endpoint above as an MCP tool
# Accessible at: http://localhost:8000/mcp
# ---------------------------------------------------------------------------

if settings.enable_mcp:
    mcp = FastApiMCP(app)
    mcp.mount()


@app.get("/health", tags=["Health"], summary="Service health check")
def health():
    return {"status": "ok"}


# ===========================================================================
# OPENAPI CUSTOMISATION — tag order and descriptions
# ===========================================================================

tags_metadata = [
    {"name": "Health", "description": "Liveness probe."},
    {
        "name": "Projects",
        "description": (
            "Construction projects, their attributes for conditional tags, derived "
            "cost/progress rollups and domain events."
        ),
    },
    {"name": "Components", "description": "Containment tree (building, floor, package) inside a project."},
    {
        "name": "Tasks",
        "description": (
            "Units of work and their dependency lists.  Every dependency edit is "
            "checked for unknown ids, self references and cycles."
        ),
    },
    {
        "name": "Schedule",
        "description": (
            "Forward/backward pass, slack and critical path.  Dates are only written "
            "to tasks on explicit request; pinned dates are kept."
        ),
    },
    {
        "name": "Conditional Tags",
        "description": "Closed tag vocabulary deciding which tasks apply to a project.",
    },
    {
        "name": "Assignments",
        "description": "Workload splits.  The splits of one task never exceed 100% in total.",
    },
    {
        "name": "Templates",
        "description": (
            "Reusable task lists.  Templates in use are frozen; duplicate them to "
            "publish a new version.  Application can be previewed first."
        ),
    },
    {
        "name": "Baselines",
        "description": (
            "Immutable, versioned contract/execution snapshots, comparison and "
            "variance against the live project."
        ),
    },
]

app.openapi_tags = tags_metadata
