"""
application.py

Application layer for the Project Scheduling & Cost-Baseline Engine.

Overview
--------
Use cases here turn a command into engine calls against one Unit of Work.
The REST and MCP surfaces only ever see the DTOs defined below.

  1. DTOs: flat dataclasses with ids as strings and dates as ISO text.
  2. Repository interfaces, implemented in infrastructure.py.
  3. AbstractUnitOfWork: a use case loads, validates and writes inside a
     single `with uow:` block and either commits all of it or none.
  4. Use cases, one class per operation. They call the pure services,
     persist the results, refresh cost rollups and append domain events
     or baseline history.

Structure
---------
DTOs
    ProjectDTO, ComponentDTO, TaskDTO, AssignmentDTO, TaskStatsDTO
    ScheduleDTO, TaskScheduleDTO, TagProcessingDTO, AvailableTagDTO
    TemplateDTO, TemplateApplyResultDTO, TemplateApplyLogDTO
    BaselineDTO, BaselineComparisonDTO, VarianceDTO, BaselineHistoryEntryDTO
    EventDTO

Repository interfaces
    AbstractProjectRepository, AbstractComponentRepository,
    AbstractTaskRepository, AbstractAssignmentRepository,
    AbstractTemplateRepository, AbstractTemplateApplyLogRepository,
    AbstractBaselineRepository, AbstractBaselineHistoryRepository,
    AbstractEventRepository

Unit of Work
    AbstractUnitOfWork

Use Cases
    --- Projects & components ---
    CreateProjectUseCase, UpdateProjectUseCase, GetProjectUseCase,
    ListProjectsUseCase, RecalculateProjectUseCase, ListProjectEventsUseCase,
    CreateComponentUseCase, ListComponentsUseCase

    --- Tasks & dependencies ---
    CreateTaskUseCase, UpdateTaskUseCase, SetTaskDependenciesUseCase,
    ValidateDependenciesUseCase, DeleteTaskUseCase, GetTaskUseCase,
    ListTasksUseCase

    --- Scheduling ---
    GetScheduleUseCase, CalculateTaskScheduleUseCase, GetReadyTasksUseCase

    --- Conditional tags ---
    ProcessConditionalTagsUseCase, GetAvailableTagsUseCase

    --- Workload ---
    AssignTaskUseCase, ReplaceTaskAssignmentsUseCase,
    RemoveAssignmentUseCase, ListTaskAssignmentsUseCase,
    GetTaskAssignmentStatsUseCase, GetUserWorkloadUseCase

    --- Templates ---
    CreateTemplateUseCase, UpdateTemplateUseCase, DuplicateTemplateUseCase,
    DeleteTemplateUseCase, GetTemplateUseCase, ListTemplatesUseCase,
    ApplyTemplateUseCase, ListTemplateApplyLogsUseCase

    --- Baselines & variance ---
    CreateBaselineUseCase, RebaselineUseCase, GetCurrentBaselineUseCase,
    ListBaselinesUseCase, GetBaselineHistoryUseCase, CompareBaselinesUseCase,
    AmendBaselineNoteUseCase, DeleteBaselineUseCase,
    CalculateProjectVarianceUseCase

Design notes
------------
- Use cases receive commands and return DTOs only; no domain objects cross
  the application boundary.
- Each use case accepts a UnitOfWork as its sole dependency.  The UoW
  exposes all repositories and handles commit/rollback.
- Engine rule violations (service.EngineError) propagate unchanged so the
  presentation layer can report their `kind` and `context`.
- All timestamps flowing out are ISO-8601 strings (UTC) for easy JSON
  serialisation.
"""

from __future__ import annotations

import abc
import time
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from app_logger import get_logger
from model import (
    Baseline,
    BaselineAction,
    BaselineHistoryEntry,
    BaselineType,
    Component,
    ConflictBehavior,
    DomainEvent,
    EventAction,
    Project,
    ProjectCategory,
    ProjectStatus,
    Task,
    TaskAssignment,
    TaskStatus,
    TemplateApplyLog,
    Visibility,
    WorkTemplate,
)
from service import (
    ApplyOptions,
    BaselineComparison,
    BaselineHistoryService,
    BaselineService,
    ComponentService,
    ConditionalTagEvaluator,
    DependencyValidator,
    EventService,
    ProjectService,
    RollupService,
    ScheduleCalculator,
    ScheduleResult,
    TaskService,
    TemplateInstantiationService,
    TemplateService,
    VarianceResult,
    WorkloadAllocator,
    elapsed_ms,
)
from settings import get_settings

logger = get_logger("application")

SYSTEM_USER_ID = uuid.UUID(int=0)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ApplicationError(Exception):
    """Raised when a use case cannot complete due to a business rule violation."""

    kind = "application_error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.context = context


class NotFoundError(ApplicationError):
    """Raised when a requested entity does not exist."""
    kind = "not_found"


class ConflictError(ApplicationError):
    """Raised when an entity cannot change because other records depend on it."""
    kind = "conflict"


class VersionConflictError(ConflictError):
    """Raised when a baseline version could not be claimed after all retries."""
    kind = "version_conflict"


class UniqueConstraintError(Exception):
    """
    Raised by a repository when an insert violates a uniqueness constraint.
    Use cases translate it; it never reaches the presentation layer.
    """


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _fmt(dt: Optional[datetime]) -> Optional[str]:
    """Convert a datetime to an ISO-8601 UTC string, or None."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def _fmt_date(d: Optional[date]) -> Optional[str]:
    return d.isoformat() if d else None


def _str_or_none(value: Optional[uuid.UUID]) -> Optional[str]:
    return str(value) if value else None


# ===========================================================================
# DTO DEFINITIONS
# ===========================================================================

# ---------------------------------------------------------------------------
# Project DTOs
# ---------------------------------------------------------------------------

@dataclass
class ProjectDTO:
    id: str
    name: str
    code: str
    description: str
    category: str
    status: str
    visibility: str
    start_date: Optional[str]
    end_date: Optional[str]
    floor_count: int
    basement_levels: int
    includes_interior_fitout: bool
    includes_landscaping: bool
    planned_cost: float
    actual_cost: float
    forecast_cost: float
    progress_pct: float
    created_at: str
    updated_at: str


@dataclass
class ComponentDTO:
    id: str
    project_id: str
    parent_id: Optional[str]
    name: str
    component_type: Optional[str]
    planned_cost: float
    actual_cost: float
    progress_pct: float


# ---------------------------------------------------------------------------
# Task DTOs
# ---------------------------------------------------------------------------

@dataclass
class TaskDTO:
    id: str
    project_id: str
    component_id: Optional[str]
    name: str
    description: str
    status: str
    duration_days: int
    offset_days: int
    start_date: Optional[str]
    end_date: Optional[str]
    dates_overridden: bool
    dependencies: List[str]
    conditional_tag: Optional[str]
    is_hidden: bool
    template_id: Optional[str]
    template_task_id: Optional[str]
    progress_pct: float
    planned_cost: float
    actual_cost: float
    created_at: str
    updated_at: str


@dataclass
class AssignmentDTO:
    id: str
    task_id: str
    project_id: str
    user_id: str
    split_percentage: float
    created_at: str
    updated_at: str


@dataclass
class TaskStatsDTO:
    task_id: str
    assignment_count: int
    total_split_percentage: float
    remaining_percentage: float


@dataclass
class UserWorkloadDTO:
    user_id: str
    open_task_count: int
    total_split_percentage: float


# ---------------------------------------------------------------------------
# Schedule DTOs
# ---------------------------------------------------------------------------

@dataclass
class TaskScheduleDTO:
    task_id: str
    name: str
    duration_days: int
    earliest_start: int
    earliest_finish: int
    latest_start: int
    latest_finish: int
    slack: int
    start_date: Optional[str]
    end_date: Optional[str]
    is_critical: bool


@dataclass
class ScheduleDTO:
    project_id: str
    component_id: Optional[str]
    base_date: Optional[str]
    project_duration_days: int
    finish_date: Optional[str]
    critical_path: List[str]
    critical_path_duration_days: int
    tasks: List[TaskScheduleDTO] = field(default_factory=list)
    updated_task_count: int = 0


@dataclass
class TagProcessingDTO:
    project_id: str
    processed: int
    changed: int
    hidden: int
    visible: int


@dataclass
class AvailableTagDTO:
    tag: str
    label: str


# ---------------------------------------------------------------------------
# Template DTOs
# ---------------------------------------------------------------------------

@dataclass
class TemplateDTO:
    id: str
    name: str
    category: str
    version: int
    description: str
    task_count: int
    template_data: List[Dict[str, Any]]
    is_active: bool
    duplicated_from_id: Optional[str]
    created_at: str
    updated_at: str


@dataclass
class TemplateApplyResultDTO:
    project_id: str
    template_id: str
    template_version: int
    preview_only: bool
    created_tasks: int
    created_dependencies: int
    created_assignments: int
    skipped: int
    warnings: List[str]
    skipped_codes: List[str]
    critical_path: List[str]
    tasks: List[TaskDTO] = field(default_factory=list)
    assignments: List[AssignmentDTO] = field(default_factory=list)
    log_id: Optional[str] = None


@dataclass
class TemplateApplyLogDTO:
    id: str
    project_id: str
    template_id: str
    template_version: int
    component_id: Optional[str]
    options: Dict[str, Any]
    counts: Dict[str, int]
    executor_id: Optional[str]
    duration_ms: int
    created_at: str


# ---------------------------------------------------------------------------
# Baseline DTOs
# ---------------------------------------------------------------------------

@dataclass
class BaselineDTO:
    id: str
    project_id: str
    baseline_type: str
    version: int
    start_date: Optional[str]
    end_date: Optional[str]
    cost: float
    note: str
    contract_id: Optional[str]
    supersedes_id: Optional[str]
    created_by: Optional[str]
    created_at: str


@dataclass
class BaselineComparisonDTO:
    project_id: str
    from_baseline_id: str
    to_baseline_id: str
    start_date_delta_days: Optional[int]
    end_date_delta_days: Optional[int]
    duration_delta_days: Optional[int]
    cost_delta: float
    cost_delta_pct: Optional[float]


@dataclass
class VarianceDTO:
    project_id: str
    baseline_type: str
    status: str
    baseline_id: Optional[str]
    baseline_version: Optional[int]
    baseline_start_date: Optional[str]
    baseline_end_date: Optional[str]
    baseline_cost: Optional[float]
    current_start_date: Optional[str]
    current_end_date: Optional[str]
    current_cost: Optional[float]
    start_variance_days: Optional[int]
    schedule_variance_days: Optional[int]
    cost_variance: Optional[float]
    cost_variance_pct: Optional[float]


@dataclass
class BaselineHistoryEntryDTO:
    id: str
    project_id: str
    sequence_number: int
    action: str
    baseline_id: str
    baseline_type: str
    version: int
    previous_baseline_id: Optional[str]
    actor_id: Optional[str]
    note: str
    occurred_at: str


@dataclass
class EventDTO:
    id: str
    entity_type: str
    entity_id: str
    project_id: Optional[str]
    action: str
    actor_id: Optional[str]
    payload: Dict[str, Any]
    occurred_at: str


# ===========================================================================
# DTO ASSEMBLERS
# ===========================================================================

class _Assembler:
    """Converts domain model instances into DTOs."""

    @staticmethod
    def project(p: Project) -> ProjectDTO:
        return ProjectDTO(
            id=str(p.id),
            name=p.name,
            code=p.code,
            description=p.description,
            category=p.category.value,
            status=p.status.value,
            visibility=p.visibility.value,
            start_date=_fmt_date(p.start_date),
            end_date=_fmt_date(p.end_date),
            floor_count=p.floor_count,
            basement_levels=p.basement_levels,
            includes_interior_fitout=p.includes_interior_fitout,
            includes_landscaping=p.includes_landscaping,
            planned_cost=round(p.planned_cost, 2),
            actual_cost=round(p.actual_cost, 2),
            forecast_cost=round(p.forecast_cost, 2),
            progress_pct=round(p.progress_pct, 2),
            created_at=_fmt(p.created_at),
            updated_at=_fmt(p.updated_at),
        )

    @staticmethod
    def component(c: Component) -> ComponentDTO:
        return ComponentDTO(
            id=str(c.id),
            project_id=str(c.project_id),
            parent_id=_str_or_none(c.parent_id),
            name=c.name,
            component_type=c.component_type,
            planned_cost=round(c.planned_cost, 2),
            actual_cost=round(c.actual_cost, 2),
            progress_pct=round(c.progress_pct, 2),
        )

    @staticmethod
    def task(t: Task) -> TaskDTO:
        return TaskDTO(
            id=str(t.id),
            project_id=str(t.project_id),
            component_id=_str_or_none(t.component_id),
            name=t.name,
            description=t.description,
            status=t.status.value,
            duration_days=t.duration_days,
            offset_days=t.offset_days,
            start_date=_fmt_date(t.start_date),
            end_date=_fmt_date(t.end_date),
            dates_overridden=t.dates_overridden,
            dependencies=[str(d) for d in t.dependencies],
            conditional_tag=t.conditional_tag.value if t.conditional_tag else None,
            is_hidden=t.is_hidden,
            template_id=_str_or_none(t.template_id),
            template_task_id=t.template_task_id,
            progress_pct=round(t.progress_pct, 2),
            planned_cost=t.planned_cost,
            actual_cost=t.actual_cost,
            created_at=_fmt(t.created_at),
            updated_at=_fmt(t.updated_at),
        )

    @staticmethod
    def assignment(a: TaskAssignment) -> AssignmentDTO:
        return AssignmentDTO(
            id=str(a.id),
            task_id=str(a.task_id),
            project_id=str(a.project_id),
            user_id=str(a.user_id),
            split_percentage=a.split_percentage,
            created_at=_fmt(a.created_at),
            updated_at=_fmt(a.updated_at),
        )

    @staticmethod
    def schedule(
        project_id: uuid.UUID,
        component_id: Optional[uuid.UUID],
        result: ScheduleResult,
        names: Dict[uuid.UUID, str],
        updated: int = 0,
    ) -> ScheduleDTO:
        return ScheduleDTO(
            project_id=str(project_id),
            component_id=_str_or_none(component_id),
            base_date=_fmt_date(result.base_date),
            project_duration_days=result.project_duration,
            finish_date=_fmt_date(result.finish_date),
            critical_path=[str(t) for t in result.critical_path],
            critical_path_duration_days=result.critical_path_duration,
            tasks=[
                TaskScheduleDTO(
                    task_id=str(s.task_id),
                    name=names.get(s.task_id, ""),
                    duration_days=s.duration_days,
                    earliest_start=s.earliest_start,
                    earliest_finish=s.earliest_finish,
                    latest_start=s.latest_start,
                    latest_finish=s.latest_finish,
                    slack=s.slack,
                    start_date=_fmt_date(s.start_date),
                    end_date=_fmt_date(s.end_date),
                    is_critical=s.is_critical,
                )
                for s in (result.tasks[tid] for tid in result.order)
            ],
            updated_task_count=updated,
        )

    @staticmethod
    def template(t: WorkTemplate) -> TemplateDTO:
        return TemplateDTO(
            id=str(t.id),
            name=t.name,
            category=t.category,
            version=t.version,
            description=t.description,
            task_count=len(t.template_data),
            template_data=list(t.template_data),
            is_active=t.is_active,
            duplicated_from_id=_str_or_none(t.duplicated_from_id),
            created_at=_fmt(t.created_at),
            updated_at=_fmt(t.updated_at),
        )

    @staticmethod
    def apply_log(log: TemplateApplyLog) -> TemplateApplyLogDTO:
        return TemplateApplyLogDTO(
            id=str(log.id),
            project_id=str(log.project_id),
            template_id=str(log.template_id),
            template_version=log.template_version,
            component_id=_str_or_none(log.component_id),
            options=dict(log.options),
            counts=dict(log.counts),
            executor_id=_str_or_none(log.executor_id),
            duration_ms=log.duration_ms,
            created_at=_fmt(log.created_at),
        )

    @staticmethod
    def baseline(b: Baseline) -> BaselineDTO:
        return BaselineDTO(
            id=str(b.id),
            project_id=str(b.project_id),
            baseline_type=b.baseline_type.value,
            version=b.version,
            start_date=_fmt_date(b.start_date),
            end_date=_fmt_date(b.end_date),
            cost=b.cost,
            note=b.note,
            contract_id=_str_or_none(b.contract_id),
            supersedes_id=_str_or_none(b.supersedes_id),
            created_by=_str_or_none(b.created_by),
            created_at=_fmt(b.created_at),
        )

    @staticmethod
    def comparison(c: BaselineComparison) -> BaselineComparisonDTO:
        return BaselineComparisonDTO(
            project_id=str(c.project_id),
            from_baseline_id=str(c.from_baseline_id),
            to_baseline_id=str(c.to_baseline_id),
            start_date_delta_days=c.start_date_delta_days,
            end_date_delta_days=c.end_date_delta_days,
            duration_delta_days=c.duration_delta_days,
            cost_delta=c.cost_delta,
            cost_delta_pct=c.cost_delta_pct,
        )

    @staticmethod
    def variance(v: VarianceResult) -> VarianceDTO:
        return VarianceDTO(
            project_id=str(v.project_id),
            baseline_type=v.baseline_type.value,
            status=v.status,
            baseline_id=_str_or_none(v.baseline_id),
            baseline_version=v.baseline_version,
            baseline_start_date=_fmt_date(v.baseline_start_date),
            baseline_end_date=_fmt_date(v.baseline_end_date),
            baseline_cost=v.baseline_cost,
            current_start_date=_fmt_date(v.current_start_date),
            current_end_date=_fmt_date(v.current_end_date),
            current_cost=v.current_cost,
            start_variance_days=v.start_variance_days,
            schedule_variance_days=v.schedule_variance_days,
            cost_variance=v.cost_variance,
            cost_variance_pct=v.cost_variance_pct,
        )

    @staticmethod
    def history_entry(e: BaselineHistoryEntry) -> BaselineHistoryEntryDTO:
        return BaselineHistoryEntryDTO(
            id=str(e.id),
            project_id=str(e.project_id),
            sequence_number=e.sequence_number,
            action=e.action.value,
            baseline_id=str(e.baseline_id),
            baseline_type=e.baseline_type.value,
            version=e.version,
            previous_baseline_id=_str_or_none(e.previous_baseline_id),
            actor_id=_str_or_none(e.actor_id),
            note=e.note,
            occurred_at=_fmt(e.occurred_at),
        )

    @staticmethod
    def event(e: DomainEvent) -> EventDTO:
        return EventDTO(
            id=str(e.id),
            entity_type=e.entity_type,
            entity_id=str(e.entity_id),
            project_id=_str_or_none(e.project_id),
            action=e.action.value,
            actor_id=_str_or_none(e.actor_id),
            payload=dict(e.payload),
            occurred_at=_fmt(e.occurred_at),
        )


# ===========================================================================
# REPOSITORY INTERFACES
# ===========================================================================

class AbstractProjectRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, project_id: uuid.UUID) -> Optional[Project]: ...
    @abc.abstractmethod
    def list_all(self) -> List[Project]: ...
    @abc.abstractmethod
    def save(self, project: Project) -> None: ...


class AbstractComponentRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, component_id: uuid.UUID) -> Optional[Component]: ...
    @abc.abstractmethod
    def list_for_project(self, project_id: uuid.UUID) -> List[Component]: ...
    @abc.abstractmethod
    def save(self, component: Component) -> None: ...


class AbstractTaskRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, task_id: uuid.UUID) -> Optional[Task]: ...
    @abc.abstractmethod
    def list_for_project(self, project_id: uuid.UUID) -> List[Task]: ...
    @abc.abstractmethod
    def list_for_template(self, template_id: uuid.UUID) -> List[Task]: ...
    @abc.abstractmethod
    def save(self, task: Task) -> None: ...
    @abc.abstractmethod
    def delete(self, task_id: uuid.UUID) -> None: ...


class AbstractAssignmentRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, assignment_id: uuid.UUID) -> Optional[TaskAssignment]: ...
    @abc.abstractmethod
    def list_for_task(self, task_id: uuid.UUID) -> List[TaskAssignment]: ...
    @abc.abstractmethod
    def list_for_project(self, project_id: uuid.UUID) -> List[TaskAssignment]: ...
    @abc.abstractmethod
    def list_for_user(self, user_id: uuid.UUID) -> List[TaskAssignment]: ...
    @abc.abstractmethod
    def save(self, assignment: TaskAssignment) -> None: ...
    @abc.abstractmethod
    def delete(self, assignment_id: uuid.UUID) -> None: ...


class AbstractTemplateRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, template_id: uuid.UUID) -> Optional[WorkTemplate]: ...
    @abc.abstractmethod
    def list_all(self) -> List[WorkTemplate]: ...
    @abc.abstractmethod
    def save(self, template: WorkTemplate) -> None: ...
    @abc.abstractmethod
    def delete(self, template_id: uuid.UUID) -> None: ...


class AbstractTemplateApplyLogRepository(abc.ABC):
    @abc.abstractmethod
    def list_for_project(self, project_id: uuid.UUID) -> List[TemplateApplyLog]: ...
    @abc.abstractmethod
    def save(self, log: TemplateApplyLog) -> None: ...


class AbstractBaselineRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, baseline_id: uuid.UUID) -> Optional[Baseline]: ...
    @abc.abstractmethod
    def list_for_project(self, project_id: uuid.UUID) -> List[Baseline]: ...
    @abc.abstractmethod
    def add(self, baseline: Baseline) -> None:
        """Insert; raises UniqueConstraintError if (project, type, version) is taken."""
    @abc.abstractmethod
    def save(self, baseline: Baseline) -> None: ...
    @abc.abstractmethod
    def delete(self, baseline_id: uuid.UUID) -> None: ...


class AbstractBaselineHistoryRepository(abc.ABC):
    @abc.abstractmethod
    def list_for_project(self, project_id: uuid.UUID) -> List[BaselineHistoryEntry]: ...
    @abc.abstractmethod
    def save(self, entry: BaselineHistoryEntry) -> None: ...


class AbstractEventRepository(abc.ABC):
    @abc.abstractmethod
    def list_for_project(self, project_id: uuid.UUID) -> List[DomainEvent]: ...
    @abc.abstractmethod
    def save(self, event: DomainEvent) -> None: ...


# ===========================================================================
# UNIT OF WORK
# ===========================================================================

class AbstractUnitOfWork(abc.ABC):
    """
    Groups all repositories under a single transactional boundary.
    Use as a context manager:

        with uow:
            uow.tasks.save(task)
            uow.commit()

    Implementations must isolate the block from concurrent units of work;
    the capacity and version invariants rely on read-check-write being
    serialised.
    """
    projects: AbstractProjectRepository
    components: AbstractComponentRepository
    tasks: AbstractTaskRepository
    assignments: AbstractAssignmentRepository
    templates: AbstractTemplateRepository
    template_apply_logs: AbstractTemplateApplyLogRepository
    baselines: AbstractBaselineRepository
    baseline_history: AbstractBaselineHistoryRepository
    events: AbstractEventRepository

    def __enter__(self) -> "AbstractUnitOfWork":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type:
            self.rollback()
        else:
            self.commit()

    @abc.abstractmethod
    def commit(self) -> None: ...

    @abc.abstractmethod
    def rollback(self) -> None: ...


# ===========================================================================
# SERVICE SINGLETONS (shared across use cases)
# ===========================================================================

_validator = DependencyValidator()
_calculator = ScheduleCalculator(_validator)
_tag_evaluator = ConditionalTagEvaluator()
_workload = WorkloadAllocator()
_rollup_svc = RollupService()
_project_svc = ProjectService()
_component_svc = ComponentService()
_task_svc = TaskService(_validator, _tag_evaluator)
_template_svc = TemplateService()
_baseline_svc = BaselineService(_calculator, _rollup_svc)
_history_svc = BaselineHistoryService()
_event_svc = EventService()


def _instantiation_svc() -> TemplateInstantiationService:
    return TemplateInstantiationService(
        validator=_validator,
        tags=_tag_evaluator,
        calculator=_calculator,
        workload=_workload,
        warning_threshold=get_settings().template_task_warning_threshold,
    )


# ===========================================================================
# USE CASE HELPERS
# ===========================================================================

def _get_project_or_raise(uow: AbstractUnitOfWork, project_id: uuid.UUID) -> Project:
    project = uow.projects.get(project_id)
    if project is None:
        raise NotFoundError(f"Project {project_id} not found.")
    return project


def _get_component_or_raise(
    uow: AbstractUnitOfWork, component_id: uuid.UUID, project_id: Optional[uuid.UUID] = None
) -> Component:
    component = uow.components.get(component_id)
    if component is None or (project_id is not None and component.project_id != project_id):
        raise NotFoundError(f"Component {component_id} not found.")
    return component


def _get_task_or_raise(
    uow: AbstractUnitOfWork, task_id: uuid.UUID, project_id: Optional[uuid.UUID] = None
) -> Task:
    task = uow.tasks.get(task_id)
    if task is None or (project_id is not None and task.project_id != project_id):
        raise NotFoundError(f"Task {task_id} not found.")
    return task


def _get_template_or_raise(uow: AbstractUnitOfWork, template_id: uuid.UUID) -> WorkTemplate:
    template = uow.templates.get(template_id)
    if template is None:
        raise NotFoundError(f"Template {template_id} not found.")
    return template


def _get_baseline_or_raise(
    uow: AbstractUnitOfWork, baseline_id: uuid.UUID, project_id: Optional[uuid.UUID] = None
) -> Baseline:
    baseline = uow.baselines.get(baseline_id)
    if baseline is None or (project_id is not None and baseline.project_id != project_id):
        raise NotFoundError(f"Baseline {baseline_id} not found.")
    return baseline


def _emit(
    uow: AbstractUnitOfWork,
    entity_type: str,
    entity_id: uuid.UUID,
    action: EventAction,
    actor_id: Optional[uuid.UUID],
    project_id: Optional[uuid.UUID] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> None:
    """Record a domain event in the current unit of work."""
    event = _event_svc.record(entity_type, entity_id, action, actor_id, project_id, payload)
    uow.events.save(event)
    logger.info("%s.%s %s (project %s)", entity_type, action.value, entity_id, project_id)


def _refresh_rollups(uow: AbstractUnitOfWork, project: Project) -> Project:
    """Recompute and persist project and component rollups."""
    components = uow.components.list_for_project(project.id)
    tasks = uow.tasks.list_for_project(project.id)
    project, components = _rollup_svc.recalculate(project, components, tasks)
    for component in components:
        uow.components.save(component)
    uow.projects.save(project)
    return project


def _component_subtree(components: List[Component], root_id: uuid.UUID) -> set:
    """Ids of a component and all of its descendants."""
    children: Dict[uuid.UUID, List[uuid.UUID]] = {}
    for c in components:
        if c.parent_id is not None:
            children.setdefault(c.parent_id, []).append(c.id)
    found = {root_id}
    stack = [root_id]
    while stack:
        for child in children.get(stack.pop(), []):
            if child not in found:
                found.add(child)
                stack.append(child)
    return found


def _scoped_tasks(
    uow: AbstractUnitOfWork, project_id: uuid.UUID, component_id: Optional[uuid.UUID]
) -> List[Task]:
    tasks = uow.tasks.list_for_project(project_id)
    if component_id is None:
        return tasks
    _get_component_or_raise(uow, component_id, project_id)
    scope = _component_subtree(uow.components.list_for_project(project_id), component_id)
    return [t for t in tasks if t.component_id in scope]


# ===========================================================================
# USE CASES — PROJECTS & COMPONENTS
# ===========================================================================

@dataclass
class CreateProjectCommand:
    name: str
    acting_user_id: uuid.UUID = SYSTEM_USER_ID
    code: str = ""
    description: str = ""
    category: ProjectCategory = ProjectCategory.RESIDENTIAL
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    floor_count: int = 1
    basement_levels: int = 0
    includes_interior_fitout: bool = False
    includes_landscaping: bool = False


class CreateProjectUseCase:
    def execute(self, cmd: CreateProjectCommand, uow: AbstractUnitOfWork) -> ProjectDTO:
        with uow:
            project = _project_svc.create_project(
                name=cmd.name,
                code=cmd.code,
                description=cmd.description,
                category=cmd.category,
                start_date=cmd.start_date,
                end_date=cmd.end_date,
                floor_count=cmd.floor_count,
                basement_levels=cmd.basement_levels,
                includes_interior_fitout=cmd.includes_interior_fitout,
                includes_landscaping=cmd.includes_landscaping,
                created_by=cmd.acting_user_id,
            )
            uow.projects.save(project)
            _emit(uow, "project", project.id, EventAction.CREATED, cmd.acting_user_id, project.id,
                  {"name": project.name})
            uow.commit()
            return _Assembler.project(project)


@dataclass
class UpdateProjectCommand:
    project_id: uuid.UUID
    acting_user_id: uuid.UUID = SYSTEM_USER_ID
    name: Optional[str] = None
    code: Optional[str] = None
    description: Optional[str] = None
    category: Optional[ProjectCategory] = None
    status: Optional[ProjectStatus] = None
    visibility: Optional[Visibility] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    floor_count: Optional[int] = None
    basement_levels: Optional[int] = None
    includes_interior_fitout: Optional[bool] = None
    includes_landscaping: Optional[bool] = None


class UpdateProjectUseCase:
    """
    Tag predicates read project attributes, but visibility is only
    re-evaluated when ProcessConditionalTagsUseCase runs.
    """

    def execute(self, cmd: UpdateProjectCommand, uow: AbstractUnitOfWork) -> ProjectDTO:
        with uow:
            project = _get_project_or_raise(uow, cmd.project_id)
            changes = {
                k: getattr(cmd, k)
                for k in (
                    "name", "code", "description", "category", "status", "visibility",
                    "start_date", "end_date", "floor_count", "basement_levels",
                    "includes_interior_fitout", "includes_landscaping",
                )
                if getattr(cmd, k) is not None
            }
            project = _project_svc.update_project(project, **changes)
            uow.projects.save(project)
            _emit(uow, "project", project.id, EventAction.UPDATED, cmd.acting_user_id, project.id,
                  {"fields": sorted(changes)})
            uow.commit()
            return _Assembler.project(project)


class GetProjectUseCase:
    def execute(self, project_id: uuid.UUID, uow: AbstractUnitOfWork) -> ProjectDTO:
        with uow:
            return _Assembler.project(_get_project_or_raise(uow, project_id))


class ListProjectsUseCase:
    def execute(self, uow: AbstractUnitOfWork) -> List[ProjectDTO]:
        with uow:
            projects = sorted(uow.projects.list_all(), key=lambda p: p.created_at)
            return [_Assembler.project(p) for p in projects]


class RecalculateProjectUseCase:
    """Recompute derived cost and progress rollups for a project and its components."""

    def execute(self, project_id: uuid.UUID, uow: AbstractUnitOfWork) -> ProjectDTO:
        with uow:
            project = _refresh_rollups(uow, _get_project_or_raise(uow, project_id))
            uow.commit()
            return _Assembler.project(project)


class ListProjectEventsUseCase:
    def execute(self, project_id: uuid.UUID, uow: AbstractUnitOfWork) -> List[EventDTO]:
        with uow:
            _get_project_or_raise(uow, project_id)
            events = _event_svc.for_project(project_id, uow.events.list_for_project(project_id))
            return [_Assembler.event(e) for e in events]


@dataclass
class CreateComponentCommand:
    project_id: uuid.UUID
    name: str
    acting_user_id: uuid.UUID = SYSTEM_USER_ID
    parent_id: Optional[uuid.UUID] = None
    component_type: Optional[str] = None


class CreateComponentUseCase:
    def execute(self, cmd: CreateComponentCommand, uow: AbstractUnitOfWork) -> ComponentDTO:
        with uow:
            project = _get_project_or_raise(uow, cmd.project_id)
            parent = None
            if cmd.parent_id is not None:
                parent = uow.components.get(cmd.parent_id)
                if parent is None:
                    raise NotFoundError(f"Component {cmd.parent_id} not found.")
            component = _component_svc.create_component(project, cmd.name, parent, cmd.component_type)
            uow.components.save(component)
            _emit(uow, "component", component.id, EventAction.CREATED, cmd.acting_user_id, project.id,
                  {"name": component.name})
            uow.commit()
            return _Assembler.component(component)


class ListComponentsUseCase:
    def execute(self, project_id: uuid.UUID, uow: AbstractUnitOfWork) -> List[ComponentDTO]:
        with uow:
            _get_project_or_raise(uow, project_id)
            components = sorted(uow.components.list_for_project(project_id), key=lambda c: c.created_at)
            return [_Assembler.component(c) for c in components]


# ===========================================================================
# USE CASES — TASKS & DEPENDENCIES
# ===========================================================================

@dataclass
class CreateTaskCommand:
    project_id: uuid.UUID
    name: str
    acting_user_id: uuid.UUID = SYSTEM_USER_ID
    component_id: Optional[uuid.UUID] = None
    description: str = ""
    duration_days: int = 0
    offset_days: int = 0
    dependencies: List[uuid.UUID] = field(default_factory=list)
    conditional_tag: Optional[str] = None
    planned_cost: float = 0.0


class CreateTaskUseCase:
    def execute(self, cmd: CreateTaskCommand, uow: AbstractUnitOfWork) -> TaskDTO:
        with uow:
            project = _get_project_or_raise(uow, cmd.project_id)
            component = None
            if cmd.component_id is not None:
                component = _get_component_or_raise(uow, cmd.component_id, project.id)
            task = _task_svc.create_task(
                project=project,
                project_tasks=uow.tasks.list_for_project(project.id),
                name=cmd.name,
                duration_days=cmd.duration_days,
                dependencies=cmd.dependencies,
                component=component,
                description=cmd.description,
                conditional_tag=cmd.conditional_tag,
                offset_days=cmd.offset_days,
                planned_cost=cmd.planned_cost,
                created_by=cmd.acting_user_id,
            )
            uow.tasks.save(task)
            _emit(uow, "task", task.id, EventAction.CREATED, cmd.acting_user_id, project.id,
                  {"name": task.name, "dependencies": [str(d) for d in task.dependencies]})
            _refresh_rollups(uow, project)
            uow.commit()
            return _Assembler.task(task)


@dataclass
class UpdateTaskCommand:
    task_id: uuid.UUID
    acting_user_id: uuid.UUID = SYSTEM_USER_ID
    name: Optional[str] = None
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    duration_days: Optional[int] = None
    offset_days: Optional[int] = None
    progress_pct: Optional[float] = None
    planned_cost: Optional[float] = None
    actual_cost: Optional[float] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    dates_overridden: Optional[bool] = None
    conditional_tag: Optional[str] = None       # "" clears the tag
    is_hidden: Optional[bool] = None


class UpdateTaskUseCase:
    """
    Field edits; dependency lists go through SetTaskDependenciesUseCase.
    Rollups are refreshed afterwards, dates are not recomputed.
    """

    _FIELDS = (
        "name", "description", "status", "duration_days", "offset_days",
        "progress_pct", "planned_cost", "actual_cost", "start_date", "end_date",
        "dates_overridden", "conditional_tag", "is_hidden",
    )

    def execute(self, cmd: UpdateTaskCommand, uow: AbstractUnitOfWork) -> TaskDTO:
        with uow:
            task = _get_task_or_raise(uow, cmd.task_id)
            project = _get_project_or_raise(uow, task.project_id)
            changes = {k: getattr(cmd, k) for k in self._FIELDS if getattr(cmd, k) is not None}
            if task.conditional_tag is not None and "is_hidden" in changes and "conditional_tag" not in changes:
                logger.warning("Manual visibility change on tagged task %s will be overwritten by tag processing",
                               task.id)
            task = _task_svc.update_task(task, **changes)
            if "conditional_tag" in changes and task.conditional_tag is not None:
                components = {c.id: c for c in uow.components.list_for_project(project.id)}
                _tag_evaluator.process(project, [task], components)
            uow.tasks.save(task)
            _emit(uow, "task", task.id, EventAction.UPDATED, cmd.acting_user_id, project.id,
                  {"fields": sorted(changes)})
            _refresh_rollups(uow, project)
            uow.commit()
            return _Assembler.task(task)


@dataclass
class SetTaskDependenciesCommand:
    task_id: uuid.UUID
    dependencies: List[uuid.UUID]
    acting_user_id: uuid.UUID = SYSTEM_USER_ID


class SetTaskDependenciesUseCase:
    def execute(self, cmd: SetTaskDependenciesCommand, uow: AbstractUnitOfWork) -> TaskDTO:
        with uow:
            task = _get_task_or_raise(uow, cmd.task_id)
            project_tasks = uow.tasks.list_for_project(task.project_id)
            try:
                task = _task_svc.set_dependencies(task, cmd.dependencies, project_tasks)
            except ValueError as exc:
                logger.warning("Rejected dependency edit on task %s: %s", task.id, exc)
                raise
            uow.tasks.save(task)
            _emit(uow, "task", task.id, EventAction.UPDATED, cmd.acting_user_id, task.project_id,
                  {"dependencies": [str(d) for d in task.dependencies]})
            uow.commit()
            return _Assembler.task(task)


@dataclass
class ValidateDependenciesCommand:
    project_id: uuid.UUID
    dependencies: List[uuid.UUID]
    task_id: Optional[uuid.UUID] = None


class ValidateDependenciesUseCase:
    """Dry run of a dependency edit; raises exactly what the edit would raise."""

    def execute(self, cmd: ValidateDependenciesCommand, uow: AbstractUnitOfWork) -> Dict[str, Any]:
        with uow:
            _get_project_or_raise(uow, cmd.project_id)
            if cmd.task_id is not None:
                _get_task_or_raise(uow, cmd.task_id, cmd.project_id)
            _validator.validate(cmd.task_id, cmd.dependencies, uow.tasks.list_for_project(cmd.project_id))
            return {"valid": True, "dependencies": [str(d) for d in cmd.dependencies]}


@dataclass
class DeleteTaskCommand:
    task_id: uuid.UUID
    acting_user_id: uuid.UUID = SYSTEM_USER_ID


class DeleteTaskUseCase:
    """A task may only be deleted once nothing depends on it and no one is assigned."""

    def execute(self, cmd: DeleteTaskCommand, uow: AbstractUnitOfWork) -> None:
        with uow:
            task = _get_task_or_raise(uow, cmd.task_id)
            project = _get_project_or_raise(uow, task.project_id)
            blockers = _task_svc.deletion_blockers(
                task,
                uow.tasks.list_for_project(task.project_id),
                uow.assignments.list_for_task(task.id),
            )
            if blockers:
                raise ConflictError(f"Task {task.id} is still in use and cannot be deleted.", **blockers)
            uow.tasks.delete(task.id)
            _emit(uow, "task", task.id, EventAction.DELETED, cmd.acting_user_id, task.project_id,
                  {"name": task.name})
            _refresh_rollups(uow, project)
            uow.commit()


class GetTaskUseCase:
    def execute(self, task_id: uuid.UUID, uow: AbstractUnitOfWork) -> TaskDTO:
        with uow:
            return _Assembler.task(_get_task_or_raise(uow, task_id))


class ListTasksUseCase:
    def execute(
        self,
        project_id: uuid.UUID,
        uow: AbstractUnitOfWork,
        component_id: Optional[uuid.UUID] = None,
        include_hidden: bool = True,
    ) -> List[TaskDTO]:
        with uow:
            _get_project_or_raise(uow, project_id)
            tasks = _scoped_tasks(uow, project_id, component_id)
            if not include_hidden:
                tasks = [t for t in tasks if not t.is_hidden]
            tasks.sort(key=lambda t: (t.created_at, str(t.id)))
            return [_Assembler.task(t) for t in tasks]


# ===========================================================================
# USE CASES — SCHEDULING
# ===========================================================================

@dataclass
class ScheduleQuery:
    project_id: uuid.UUID
    component_id: Optional[uuid.UUID] = None
    base_date: Optional[date] = None
    target_finish_days: Optional[int] = None


class GetScheduleUseCase:
    """Compute slack and the critical path without writing anything."""

    def execute(self, query: ScheduleQuery, uow: AbstractUnitOfWork) -> ScheduleDTO:
        with uow:
            project = _get_project_or_raise(uow, query.project_id)
            tasks = _scoped_tasks(uow, project.id, query.component_id)
            base = query.base_date or project.start_date
            result = _calculator.compute(tasks, base, query.target_finish_days)
            return _Assembler.schedule(project.id, query.component_id, result, {t.id: t.name for t in tasks})


class CalculateTaskScheduleUseCase:
    """
    Write computed start/end dates onto tasks. Pinned tasks keep their
    dates. This is the only path that moves task dates.
    """

    def execute(self, query: ScheduleQuery, uow: AbstractUnitOfWork) -> ScheduleDTO:
        with uow:
            project = _get_project_or_raise(uow, query.project_id)
            tasks = _scoped_tasks(uow, project.id, query.component_id)
            base = query.base_date or project.start_date or date.today()
            result = _calculator.compute(tasks, base, query.target_finish_days)
            changed = _calculator.apply_to_tasks(tasks, result)
            for task in changed:
                uow.tasks.save(task)
            logger.info("Scheduled project %s: %d task(s) moved, finish %s",
                        project.id, len(changed), result.finish_date)
            uow.commit()
            return _Assembler.schedule(
                project.id, query.component_id, result, {t.id: t.name for t in tasks}, len(changed)
            )


class GetReadyTasksUseCase:
    def execute(self, project_id: uuid.UUID, uow: AbstractUnitOfWork) -> List[TaskDTO]:
        with uow:
            _get_project_or_raise(uow, project_id)
            ready = _calculator.ready_tasks(uow.tasks.list_for_project(project_id))
            ready.sort(key=lambda t: (t.created_at, str(t.id)))
            return [_Assembler.task(t) for t in ready]


# ===========================================================================
# USE CASES — CONDITIONAL TAGS
# ===========================================================================

class ProcessConditionalTagsUseCase:
    """Re-evaluate every tagged task of a project; safe to run repeatedly."""

    def execute(self, project_id: uuid.UUID, uow: AbstractUnitOfWork) -> TagProcessingDTO:
        with uow:
            project = _get_project_or_raise(uow, project_id)
            components = {c.id: c for c in uow.components.list_for_project(project_id)}
            result, changed = _tag_evaluator.process(project, uow.tasks.list_for_project(project_id), components)
            for task in changed:
                uow.tasks.save(task)
            if changed:
                _refresh_rollups(uow, project)
            logger.info("Processed %d tagged task(s) of project %s, %d changed",
                        result.processed, project_id, result.changed)
            uow.commit()
            return TagProcessingDTO(
                project_id=str(project_id),
                processed=result.processed,
                changed=result.changed,
                hidden=result.hidden,
                visible=result.visible,
            )


class GetAvailableTagsUseCase:
    def execute(self, project_id: uuid.UUID, uow: AbstractUnitOfWork) -> List[AvailableTagDTO]:
        with uow:
            project = _get_project_or_raise(uow, project_id)
            return [
                AvailableTagDTO(tag=tag.value, label=_tag_evaluator.describe(tag))
                for tag in _tag_evaluator.available_tags(project)
            ]


# ===========================================================================
# USE CASES — WORKLOAD
# ===========================================================================

@dataclass
class AssignTaskCommand:
    task_id: uuid.UUID
    user_id: uuid.UUID
    split_percentage: float
    acting_user_id: uuid.UUID = SYSTEM_USER_ID
    assignment_id: Optional[uuid.UUID] = None


class AssignTaskUseCase:
    """
    Create or update one assignment. Reading the current total and writing
    the new assignment happen in one unit of work.
    """

    def execute(self, cmd: AssignTaskCommand, uow: AbstractUnitOfWork) -> AssignmentDTO:
        with uow:
            task = _get_task_or_raise(uow, cmd.task_id)
            existing = uow.assignments.list_for_task(task.id)
            try:
                assignment = _workload.assign(
                    task, cmd.user_id, cmd.split_percentage, existing, cmd.assignment_id
                )
            except ValueError as exc:
                logger.warning("Rejected assignment on task %s: %s", task.id, exc)
                raise
            uow.assignments.save(assignment)
            action = EventAction.CREATED if cmd.assignment_id is None else EventAction.UPDATED
            _emit(uow, "task_assignment", assignment.id, action, cmd.acting_user_id, task.project_id,
                  {"task_id": str(task.id), "user_id": str(cmd.user_id),
                   "split_percentage": assignment.split_percentage})
            uow.commit()
            return _Assembler.assignment(assignment)


@dataclass
class ReplaceTaskAssignmentsCommand:
    task_id: uuid.UUID
    splits: List[Tuple[uuid.UUID, float]]
    acting_user_id: uuid.UUID = SYSTEM_USER_ID


class ReplaceTaskAssignmentsUseCase:
    def execute(self, cmd: ReplaceTaskAssignmentsCommand, uow: AbstractUnitOfWork) -> List[AssignmentDTO]:
        with uow:
            task = _get_task_or_raise(uow, cmd.task_id)
            existing = uow.assignments.list_for_task(task.id)
            stored_ids = {a.id for a in existing}
            to_save, to_delete = _workload.replace_assignments(task, cmd.splits, existing)
            for assignment in to_delete:
                uow.assignments.delete(assignment.id)
                _emit(uow, "task_assignment", assignment.id, EventAction.DELETED, cmd.acting_user_id,
                      task.project_id, {"task_id": str(task.id)})
            for assignment in to_save:
                uow.assignments.save(assignment)
                action = EventAction.UPDATED if assignment.id in stored_ids else EventAction.CREATED
                _emit(uow, "task_assignment", assignment.id, action, cmd.acting_user_id,
                      task.project_id, {"task_id": str(task.id),
                                        "split_percentage": assignment.split_percentage})
            uow.commit()
            return [_Assembler.assignment(a) for a in to_save]


@dataclass
class RemoveAssignmentCommand:
    assignment_id: uuid.UUID
    acting_user_id: uuid.UUID = SYSTEM_USER_ID


class RemoveAssignmentUseCase:
    def execute(self, cmd: RemoveAssignmentCommand, uow: AbstractUnitOfWork) -> None:
        with uow:
            assignment = uow.assignments.get(cmd.assignment_id)
            if assignment is None:
                raise NotFoundError(f"Assignment {cmd.assignment_id} not found.")
            uow.assignments.delete(assignment.id)
            _emit(uow, "task_assignment", assignment.id, EventAction.DELETED, cmd.acting_user_id,
                  assignment.project_id, {"task_id": str(assignment.task_id)})
            uow.commit()


class ListTaskAssignmentsUseCase:
    def execute(self, task_id: uuid.UUID, uow: AbstractUnitOfWork) -> List[AssignmentDTO]:
        with uow:
            _get_task_or_raise(uow, task_id)
            assignments = sorted(uow.assignments.list_for_task(task_id), key=lambda a: a.created_at)
            return [_Assembler.assignment(a) for a in assignments]


class GetTaskAssignmentStatsUseCase:
    def execute(self, task_id: uuid.UUID, uow: AbstractUnitOfWork) -> TaskStatsDTO:
        with uow:
            _get_task_or_raise(uow, task_id)
            stats = _workload.task_stats(task_id, uow.assignments.list_for_task(task_id))
            return TaskStatsDTO(**stats)


class GetUserWorkloadUseCase:
    def execute(self, user_id: uuid.UUID, uow: AbstractUnitOfWork) -> UserWorkloadDTO:
        with uow:
            assignments = uow.assignments.list_for_user(user_id)
            tasks = {}
            for a in assignments:
                task = uow.tasks.get(a.task_id)
                if task is not None:
                    tasks[task.id] = task
            open_tasks = [t for t in tasks.values() if not t.status.is_terminal]
            return UserWorkloadDTO(
                user_id=str(user_id),
                open_task_count=len(open_tasks),
                total_split_percentage=_workload.user_workload(user_id, assignments, tasks),
            )


# ===========================================================================
# USE CASES — TEMPLATES
# ===========================================================================

@dataclass
class CreateTemplateCommand:
    name: str
    template_data: List[Dict[str, Any]]
    acting_user_id: uuid.UUID = SYSTEM_USER_ID
    category: str = ""
    description: str = ""


class CreateTemplateUseCase:
    def execute(self, cmd: CreateTemplateCommand, uow: AbstractUnitOfWork) -> TemplateDTO:
        with uow:
            template = _template_svc.create_template(
                cmd.name, cmd.category, cmd.template_data, cmd.description, cmd.acting_user_id
            )
            uow.templates.save(template)
            _emit(uow, "work_template", template.id, EventAction.CREATED, cmd.acting_user_id,
                  payload={"name": template.name, "version": template.version})
            uow.commit()
            return _Assembler.template(template)


@dataclass
class UpdateTemplateCommand:
    template_id: uuid.UUID
    acting_user_id: uuid.UUID = SYSTEM_USER_ID
    name: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    template_data: Optional[List[Dict[str, Any]]] = None
    is_active: Optional[bool] = None


class UpdateTemplateUseCase:
    """
    Content edits are refused once any task was created from the template;
    only the active flag may still be toggled.
    """

    def execute(self, cmd: UpdateTemplateCommand, uow: AbstractUnitOfWork) -> TemplateDTO:
        with uow:
            template = _get_template_or_raise(uow, cmd.template_id)
            edits_content = any(
                v is not None for v in (cmd.name, cmd.category, cmd.description, cmd.template_data)
            )
            if edits_content and _template_svc.is_referenced(template, uow.tasks.list_for_template(template.id)):
                raise ConflictError(
                    f"Template {template.id} is in use; duplicate it to make changes.",
                    template_id=str(template.id),
                )
            template = _template_svc.update_template(
                template, cmd.name, cmd.category, cmd.description, cmd.template_data
            )
            if cmd.is_active is not None:
                template.is_active = cmd.is_active
            uow.templates.save(template)
            _emit(uow, "work_template", template.id, EventAction.UPDATED, cmd.acting_user_id,
                  payload={"version": template.version})
            uow.commit()
            return _Assembler.template(template)


@dataclass
class DuplicateTemplateCommand:
    template_id: uuid.UUID
    acting_user_id: uuid.UUID = SYSTEM_USER_ID
    template_data: Optional[List[Dict[str, Any]]] = None


class DuplicateTemplateUseCase:
    def execute(self, cmd: DuplicateTemplateCommand, uow: AbstractUnitOfWork) -> TemplateDTO:
        with uow:
            source = _get_template_or_raise(uow, cmd.template_id)
            family = [t for t in uow.templates.list_all() if t.name == source.name]
            copy = _template_svc.duplicate(source, family, cmd.acting_user_id, cmd.template_data)
            uow.templates.save(copy)
            _emit(uow, "work_template", copy.id, EventAction.CREATED, cmd.acting_user_id,
                  payload={"name": copy.name, "version": copy.version,
                           "duplicated_from_id": str(source.id)})
            uow.commit()
            return _Assembler.template(copy)


@dataclass
class DeleteTemplateCommand:
    template_id: uuid.UUID
    acting_user_id: uuid.UUID = SYSTEM_USER_ID


class DeleteTemplateUseCase:
    def execute(self, cmd: DeleteTemplateCommand, uow: AbstractUnitOfWork) -> None:
        with uow:
            template = _get_template_or_raise(uow, cmd.template_id)
            if _template_svc.is_referenced(template, uow.tasks.list_for_template(template.id)):
                raise ConflictError(
                    f"Template {template.id} is in use and cannot be deleted; deactivate it instead.",
                    template_id=str(template.id),
                )
            uow.templates.delete(template.id)
            _emit(uow, "work_template", template.id, EventAction.DELETED, cmd.acting_user_id,
                  payload={"name": template.name, "version": template.version})
            uow.commit()


class GetTemplateUseCase:
    def execute(self, template_id: uuid.UUID, uow: AbstractUnitOfWork) -> TemplateDTO:
        with uow:
            return _Assembler.template(_get_template_or_raise(uow, template_id))


class ListTemplatesUseCase:
    def execute(self, uow: AbstractUnitOfWork, include_inactive: bool = False) -> List[TemplateDTO]:
        with uow:
            templates = [t for t in uow.templates.list_all() if include_inactive or t.is_active]
            templates.sort(key=lambda t: (t.name, t.version))
            return [_Assembler.template(t) for t in templates]


@dataclass
class ApplyTemplateCommand:
    project_id: uuid.UUID
    template_id: uuid.UUID
    acting_user_id: uuid.UUID = SYSTEM_USER_ID
    component_id: Optional[uuid.UUID] = None
    default_assignee_id: Optional[uuid.UUID] = None
    base_start_date: Optional[date] = None
    preview_only: bool = False
    conflict_behavior: ConflictBehavior = ConflictBehavior.CREATE
    include_dependencies: bool = True
    attach_to: List[uuid.UUID] = field(default_factory=list)
    assignee_map: Dict[str, uuid.UUID] = field(default_factory=dict)


class ApplyTemplateUseCase:
    """
    Instantiate a template into a project. Either every task, edge and
    assignment is written or none is; a preview computes the same plan and
    writes nothing.
    """

    def execute(self, cmd: ApplyTemplateCommand, uow: AbstractUnitOfWork) -> TemplateApplyResultDTO:
        started = time.perf_counter()
        with uow:
            project = _get_project_or_raise(uow, cmd.project_id)
            template = _get_template_or_raise(uow, cmd.template_id)
            if not template.is_active:
                raise ConflictError(f"Template {template.id} is inactive.", template_id=str(template.id))
            component = None
            if cmd.component_id is not None:
                component = _get_component_or_raise(uow, cmd.component_id, project.id)

            options = ApplyOptions(
                default_assignee_id=cmd.default_assignee_id,
                base_start_date=cmd.base_start_date,
                preview_only=cmd.preview_only,
                conflict_behavior=cmd.conflict_behavior,
                include_dependencies=cmd.include_dependencies,
                attach_to=list(cmd.attach_to),
                assignee_map=dict(cmd.assignee_map),
            )
            plan = _instantiation_svc().build_plan(
                template=template,
                project=project,
                project_tasks=uow.tasks.list_for_project(project.id),
                options=options,
                component=component,
                created_by=cmd.acting_user_id,
            )
            counts = plan.counts()
            result = TemplateApplyResultDTO(
                project_id=str(project.id),
                template_id=str(template.id),
                template_version=template.version,
                preview_only=cmd.preview_only,
                created_tasks=counts["created_tasks"],
                created_dependencies=counts["created_dependencies"],
                created_assignments=counts["created_assignments"],
                skipped=counts["skipped"],
                warnings=list(plan.warnings),
                skipped_codes=list(plan.skipped),
                critical_path=[str(t) for t in plan.schedule.critical_path] if plan.schedule else [],
                tasks=[_Assembler.task(t) for t in plan.tasks],
                assignments=[_Assembler.assignment(a) for a in plan.assignments],
            )
            if cmd.preview_only:
                return result

            for task in plan.tasks:
                uow.tasks.save(task)
                _emit(uow, "task", task.id, EventAction.CREATED, cmd.acting_user_id, project.id,
                      {"name": task.name, "template_id": str(template.id),
                       "template_task_id": task.template_task_id})
            for assignment in plan.assignments:
                uow.assignments.save(assignment)
                _emit(uow, "task_assignment", assignment.id, EventAction.CREATED, cmd.acting_user_id,
                      project.id, {"task_id": str(assignment.task_id), "user_id": str(assignment.user_id)})
            _refresh_rollups(uow, project)

            log = TemplateApplyLog(
                project_id=project.id,
                template_id=template.id,
                template_version=template.version,
                component_id=component.id if component else None,
                options=options.as_log_dict(),
                counts=counts,
                executor_id=cmd.acting_user_id,
                duration_ms=elapsed_ms(started),
            )
            uow.template_apply_logs.save(log)
            logger.info("Applied template %s v%d to project %s: %s",
                        template.id, template.version, project.id, counts)
            uow.commit()
            result.log_id = str(log.id)
            return result


class ListTemplateApplyLogsUseCase:
    def execute(self, project_id: uuid.UUID, uow: AbstractUnitOfWork) -> List[TemplateApplyLogDTO]:
        with uow:
            _get_project_or_raise(uow, project_id)
            logs = sorted(uow.template_apply_logs.list_for_project(project_id), key=lambda log: log.created_at)
            return [_Assembler.apply_log(log) for log in logs]


# ===========================================================================
# USE CASES — BASELINES & VARIANCE
# ===========================================================================

def _claim_baseline_version(
    uow: AbstractUnitOfWork,
    project_id: uuid.UUID,
    baseline_type: Optional[BaselineType],
    acting_user_id: uuid.UUID,
    note: str,
    contract_id: Optional[uuid.UUID],
    supersedes_id: Optional[uuid.UUID] = None,
) -> BaselineDTO:
    """
    Snapshot the project into the next free version. A concurrent writer that
    claims the same version makes the insert fail; the whole unit of work is
    then retried with a freshly computed version.
    """
    max_attempts = get_settings().baseline_version_max_attempts
    for attempt in range(1, max_attempts + 1):
        try:
            with uow:
                project = _get_project_or_raise(uow, project_id)
                supersedes = None
                if supersedes_id is not None:
                    supersedes = _get_baseline_or_raise(uow, supersedes_id, project_id)
                kind = supersedes.baseline_type if supersedes else baseline_type
                history = uow.baseline_history.list_for_project(project_id)
                version = _baseline_svc.next_version(
                    project_id, kind, uow.baselines.list_for_project(project_id), history
                )
                baseline = _baseline_svc.snapshot(
                    project=project,
                    tasks=uow.tasks.list_for_project(project_id),
                    baseline_type=kind,
                    version=version,
                    created_by=acting_user_id,
                    note=note,
                    contract_id=contract_id or (supersedes.contract_id if supersedes else None),
                    supersedes=supersedes,
                )
                uow.baselines.add(baseline)
                action = BaselineAction.REBASELINED if supersedes else BaselineAction.CREATED
                uow.baseline_history.save(
                    _history_svc.record(action, baseline, history, acting_user_id, supersedes_id, note)
                )
                _emit(uow, "baseline", baseline.id, EventAction.CREATED, acting_user_id, project_id,
                      {"baseline_type": kind.value, "version": version})
                uow.commit()
                return _Assembler.baseline(baseline)
        except UniqueConstraintError as exc:
            logger.warning(
                "Baseline version clash for project %s (attempt %d/%d): %s",
                project_id, attempt, max_attempts, exc,
            )
    raise VersionConflictError(
        f"Could not allocate a baseline version for project {project_id} after {max_attempts} attempts.",
        project_id=str(project_id),
        attempts=max_attempts,
    )


@dataclass
class CreateBaselineCommand:
    project_id: uuid.UUID
    baseline_type: BaselineType
    acting_user_id: uuid.UUID = SYSTEM_USER_ID
    note: str = ""
    contract_id: Optional[uuid.UUID] = None


class CreateBaselineUseCase:
    def execute(self, cmd: CreateBaselineCommand, uow: AbstractUnitOfWork) -> BaselineDTO:
        return _claim_baseline_version(
            uow, cmd.project_id, cmd.baseline_type, cmd.acting_user_id, cmd.note, cmd.contract_id
        )


@dataclass
class RebaselineCommand:
    project_id: uuid.UUID
    baseline_id: uuid.UUID
    acting_user_id: uuid.UUID = SYSTEM_USER_ID
    note: str = ""
    contract_id: Optional[uuid.UUID] = None


class RebaselineUseCase:
    """New version of the same type, linked to the baseline it supersedes."""

    def execute(self, cmd: RebaselineCommand, uow: AbstractUnitOfWork) -> BaselineDTO:
        return _claim_baseline_version(
            uow, cmd.project_id, None, cmd.acting_user_id, cmd.note, cmd.contract_id,
            supersedes_id=cmd.baseline_id,
        )


class GetCurrentBaselineUseCase:
    def execute(self, project_id: uuid.UUID, baseline_type: BaselineType, uow: AbstractUnitOfWork) -> BaselineDTO:
        with uow:
            _get_project_or_raise(uow, project_id)
            baseline = _baseline_svc.latest(uow.baselines.list_for_project(project_id), project_id, baseline_type)
            if baseline is None:
                raise NotFoundError(
                    f"Project {project_id} has no {baseline_type.value} baseline.",
                    baseline_type=baseline_type.value,
                )
            return _Assembler.baseline(baseline)


class ListBaselinesUseCase:
    def execute(
        self,
        project_id: uuid.UUID,
        uow: AbstractUnitOfWork,
        baseline_type: Optional[BaselineType] = None,
    ) -> List[BaselineDTO]:
        with uow:
            _get_project_or_raise(uow, project_id)
            baselines = [
                b for b in uow.baselines.list_for_project(project_id)
                if baseline_type is None or b.baseline_type == baseline_type
            ]
            return [_Assembler.baseline(b) for b in _baseline_svc.get_baseline_history(baselines)]


class GetBaselineHistoryUseCase:
    def execute(
        self,
        project_id: uuid.UUID,
        uow: AbstractUnitOfWork,
        baseline_type: Optional[BaselineType] = None,
    ) -> List[BaselineHistoryEntryDTO]:
        with uow:
            _get_project_or_raise(uow, project_id)
            entries = _history_svc.get_history(
                project_id, uow.baseline_history.list_for_project(project_id), baseline_type
            )
            return [_Assembler.history_entry(e) for e in entries]


@dataclass
class CompareBaselinesQuery:
    project_id: uuid.UUID
    from_baseline_id: uuid.UUID
    to_baseline_id: uuid.UUID


class CompareBaselinesUseCase:
    def execute(self, query: CompareBaselinesQuery, uow: AbstractUnitOfWork) -> BaselineComparisonDTO:
        with uow:
            _get_project_or_raise(uow, query.project_id)
            first = _get_baseline_or_raise(uow, query.from_baseline_id)
            second = _get_baseline_or_raise(uow, query.to_baseline_id)
            if first.project_id != query.project_id:
                raise NotFoundError(f"Baseline {first.id} not found.")
            return _Assembler.comparison(_baseline_svc.compare(first, second))


@dataclass
class AmendBaselineNoteCommand:
    project_id: uuid.UUID
    baseline_id: uuid.UUID
    note: str
    acting_user_id: uuid.UUID = SYSTEM_USER_ID


class AmendBaselineNoteUseCase:
    def execute(self, cmd: AmendBaselineNoteCommand, uow: AbstractUnitOfWork) -> BaselineDTO:
        with uow:
            baseline = _get_baseline_or_raise(uow, cmd.baseline_id, cmd.project_id)
            amended = _baseline_svc.amend_note(baseline, cmd.note)
            uow.baselines.save(amended)
            uow.baseline_history.save(
                _history_svc.record(
                    BaselineAction.NOTE_AMENDED,
                    amended,
                    uow.baseline_history.list_for_project(cmd.project_id),
                    cmd.acting_user_id,
                    note=cmd.note,
                )
            )
            uow.commit()
            return _Assembler.baseline(amended)


@dataclass
class DeleteBaselineCommand:
    project_id: uuid.UUID
    baseline_id: uuid.UUID
    acting_user_id: uuid.UUID = SYSTEM_USER_ID


class DeleteBaselineUseCase:
    """
    Administrative removal. The history entry keeps the version number
    reserved so it is never issued again.
    """

    def execute(self, cmd: DeleteBaselineCommand, uow: AbstractUnitOfWork) -> None:
        with uow:
            baseline = _get_baseline_or_raise(uow, cmd.baseline_id, cmd.project_id)
            uow.baselines.delete(baseline.id)
            uow.baseline_history.save(
                _history_svc.record(
                    BaselineAction.DELETED,
                    baseline,
                    uow.baseline_history.list_for_project(cmd.project_id),
                    cmd.acting_user_id,
                )
            )
            _emit(uow, "baseline", baseline.id, EventAction.DELETED, cmd.acting_user_id, cmd.project_id,
                  {"baseline_type": baseline.baseline_type.value, "version": baseline.version})
            logger.warning("Baseline %s (%s v%d) deleted from project %s",
                           baseline.id, baseline.baseline_type.value, baseline.version, cmd.project_id)
            uow.commit()


class CalculateProjectVarianceUseCase:
    def execute(self, project_id: uuid.UUID, baseline_type: BaselineType, uow: AbstractUnitOfWork) -> VarianceDTO:
        with uow:
            project = _get_project_or_raise(uow, project_id)
            baseline = _baseline_svc.latest(uow.baselines.list_for_project(project_id), project_id, baseline_type)
            result = _baseline_svc.variance(project, uow.tasks.list_for_project(project_id), baseline_type, baseline)
            return _Assembler.variance(result)
