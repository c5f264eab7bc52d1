"""
model.py

Domain models for the Project Scheduling & Cost-Baseline Engine.

Entities
--------
- Project
- Component
- Task
- TaskAssignment
- WorkTemplate
- Baseline
- BaselineHistoryEntry
- TemplateApplyLog
- DomainEvent

All models use Python dataclasses for clean, framework-agnostic definitions.
UUID primary keys are used throughout for portability.
Timestamps are always stored in UTC.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ProjectStatus(str, Enum):
    PLANNING = "planning"
    ACTIVE = "active"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ProjectCategory(str, Enum):
    """Kind of construction work; drives which conditional tags make sense."""
    RESIDENTIAL = "residential"
    COMMERCIAL = "commercial"
    INDUSTRIAL = "industrial"
    INFRASTRUCTURE = "infrastructure"
    MIXED_USE = "mixed_use"


class Visibility(str, Enum):
    PRIVATE = "private"
    TEAM = "team"
    PUBLIC = "public"


class TaskStatus(str, Enum):
    """Lifecycle status of a task."""
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    ON_HOLD = "on_hold"
    DONE = "done"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.DONE, TaskStatus.CANCELLED)


class ConditionalTag(str, Enum):
    """
    Closed vocabulary of visibility tags.

    Values follow the "group/item" labels used on task forms. Each tag is
    bound to a typed predicate in service.CONDITIONAL_TAG_RULES; the set is
    not extensible at runtime.
    """
    SITE_BASEMENT = "site/basement"
    STRUCTURE_MULTI_STOREY = "structure/multi_storey"
    STRUCTURE_HIGH_RISE = "structure/high_rise"
    USE_RESIDENTIAL = "use/residential"
    USE_COMMERCIAL = "use/commercial"
    USE_INDUSTRIAL = "use/industrial"
    SCOPE_INTERIOR_FITOUT = "scope/interior_fitout"
    SCOPE_LANDSCAPING = "scope/landscaping"
    MATERIAL_FLOORING = "material/flooring"


class BaselineType(str, Enum):
    """
    CONTRACT   – schedule/cost agreed with the client (contractual reference).
    EXECUTION  – internal working baseline used to steer delivery.
    """
    CONTRACT = "contract"
    EXECUTION = "execution"


class BaselineAction(str, Enum):
    CREATED = "created"
    REBASELINED = "rebaselined"
    NOTE_AMENDED = "note_amended"
    DELETED = "deleted"


class ConflictBehavior(str, Enum):
    """What template instantiation does when a task name already exists."""
    CREATE = "create"
    SKIP = "skip"
    RENAME = "rename"


class EventAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


# ---------------------------------------------------------------------------
# Core Project Entities
# ---------------------------------------------------------------------------


@dataclass
class Project:
    """
    Top-level container for a construction project.

    A project owns a tree of components and a set of tasks forming an
    acyclic dependency graph. Cost and progress figures are rollups written
    only by RollupService.recalculate; they are never edited directly.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    name: str = ""
    code: str = ""
    description: str = ""
    category: ProjectCategory = ProjectCategory.RESIDENTIAL
    status: ProjectStatus = ProjectStatus.PLANNING
    visibility: Visibility = Visibility.TEAM

    start_date: Optional[date] = None
    end_date: Optional[date] = None

    # Attributes read by conditional tag predicates
    floor_count: int = 1
    basement_levels: int = 0
    includes_interior_fitout: bool = False
    includes_landscaping: bool = False

    # Derived rollups
    planned_cost: float = 0.0
    actual_cost: float = 0.0
    forecast_cost: float = 0.0
    progress_pct: float = 0.0           # 0.0 – 100.0

    created_by: Optional[uuid.UUID] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class Component:
    """
    A node of the project's containment tree (building, floor, package ...).

    The parent is fixed at creation, so the tree can never contain a cycle.
    Rollup fields include every descendant component.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    project_id: uuid.UUID = field(default_factory=uuid.uuid4)   # FK → Project.id
    parent_id: Optional[uuid.UUID] = None                       # FK → Component.id
    name: str = ""
    component_type: Optional[str] = None    # e.g. "flooring", "landscape", "interior"

    planned_cost: float = 0.0
    actual_cost: float = 0.0
    progress_pct: float = 0.0

    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class Task:
    """
    An individual unit of work.

    `dependencies` lists the ids of tasks (same project) that must finish
    before this one starts; order is preserved and entries are unique.
    `start_date` / `end_date` are written by the schedule calculator only when
    it is explicitly invoked, unless `dates_overridden` pins them.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    project_id: uuid.UUID = field(default_factory=uuid.uuid4)   # FK → Project.id
    component_id: Optional[uuid.UUID] = None                    # FK → Component.id
    name: str = ""
    description: str = ""
    status: TaskStatus = TaskStatus.NOT_STARTED

    duration_days: int = 0
    offset_days: int = 0            # earliest start relative to the schedule base date
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    dates_overridden: bool = False

    dependencies: List[uuid.UUID] = field(default_factory=list)
    conditional_tag: Optional[ConditionalTag] = None
    is_hidden: bool = False

    template_id: Optional[uuid.UUID] = None
    template_task_id: Optional[str] = None      # definition code inside the template

    progress_pct: float = 0.0
    planned_cost: float = 0.0
    actual_cost: float = 0.0

    created_by: Optional[uuid.UUID] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class TaskAssignment:
    """
    Share of a task's workload held by one user.

    For a fixed task the split percentages of all assignments never sum
    above 100.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    task_id: uuid.UUID = field(default_factory=uuid.uuid4)      # FK → Task.id
    project_id: uuid.UUID = field(default_factory=uuid.uuid4)
    user_id: uuid.UUID = field(default_factory=uuid.uuid4)      # opaque user directory id
    split_percentage: float = 100.0
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


@dataclass
class WorkTemplate:
    """
    Reusable, declarative list of task definitions.

    Each entry of `template_data` is a mapping with at least a `name`, and
    optionally `code`, `depends_on` (indices into the same list),
    `conditional_tag`, `duration_days`, `offset_days`, `assignee_hint`,
    `description` and `planned_cost`.

    Once any task references the template it is frozen; edits go through a
    duplicate with a bumped version.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    name: str = ""
    category: str = ""
    version: int = 1
    description: str = ""
    template_data: List[Dict[str, Any]] = field(default_factory=list)
    is_active: bool = True
    duplicated_from_id: Optional[uuid.UUID] = None
    created_by: Optional[uuid.UUID] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class TemplateApplyLog:
    """Record of one template application against a project."""
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    project_id: uuid.UUID = field(default_factory=uuid.uuid4)
    template_id: uuid.UUID = field(default_factory=uuid.uuid4)
    template_version: int = 1
    component_id: Optional[uuid.UUID] = None
    options: Dict[str, Any] = field(default_factory=dict)
    counts: Dict[str, int] = field(default_factory=dict)
    executor_id: Optional[uuid.UUID] = None
    duration_ms: int = 0
    created_at: datetime = field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Baseline Entities
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Baseline:
    """
    An immutable, versioned snapshot of a project's schedule and cost.

    `version` is unique per (project, baseline_type) and increases from 1.
    The snapshotted fields can never change; only `note` may be amended,
    which produces a replaced instance via dataclasses.replace.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    project_id: uuid.UUID = field(default_factory=uuid.uuid4)   # FK → Project.id
    baseline_type: BaselineType = BaselineType.EXECUTION
    version: int = 1
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    cost: float = 0.0
    note: str = ""
    contract_id: Optional[uuid.UUID] = None
    supersedes_id: Optional[uuid.UUID] = None                   # FK → Baseline.id (re-baseline lineage)
    created_by: Optional[uuid.UUID] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class BaselineHistoryEntry:
    """
    Append-only lifecycle log for baselines.

    Entries are never edited or deleted; the re-baseline chain of a project
    can be reconstructed from `previous_baseline_id`.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    project_id: uuid.UUID = field(default_factory=uuid.uuid4)
    sequence_number: int = 0                                    # Monotonically increasing per project
    action: BaselineAction = BaselineAction.CREATED
    baseline_id: uuid.UUID = field(default_factory=uuid.uuid4)
    baseline_type: BaselineType = BaselineType.EXECUTION
    version: int = 1
    previous_baseline_id: Optional[uuid.UUID] = None
    actor_id: Optional[uuid.UUID] = None
    note: str = ""
    occurred_at: datetime = field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Domain events
# ---------------------------------------------------------------------------


@dataclass
class DomainEvent:
    """
    Created/updated/deleted notice for downstream activity-feed and
    notification consumers. The engine only emits; it never reads them back.
    """
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    entity_type: str = ""
    entity_id: uuid.UUID = field(default_factory=uuid.uuid4)
    project_id: Optional[uuid.UUID] = None
    action: EventAction = EventAction.CREATED
    actor_id: Optional[uuid.UUID] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=_utcnow)
