"""
service.py

Service layer for the Project Scheduling & Cost-Baseline Engine.

Responsibilities
----------------
Each service class encapsulates the business logic for its concern.
Services receive and return domain model instances (from model.py).
Nothing here touches storage; use cases load and save through a Unit of Work.

Services
--------
- DependencyValidator          – missing-reference, self-reference and cycle checks
- ScheduleCalculator           – forward/backward pass, slack, critical path, ready tasks
- ConditionalTagEvaluator      – closed tag vocabulary → visibility predicates
- WorkloadAllocator            – split-percentage capacity invariant
- TemplateInstantiationService – work template → concrete task plan
- TemplateService              – template lifecycle (create / freeze / duplicate)
- BaselineService              – versioned snapshots, comparison, variance
- BaselineHistoryService       – append-only baseline lifecycle log
- RollupService                – derived project/component cost & progress
- ProjectService / ComponentService / TaskService – entity rules
- EventService                 – created/updated/deleted domain events

Design notes
------------
- Business rule violations raise an EngineError subclass (a ValueError)
  carrying a machine-readable `kind` and a `context` dict.
- Nothing is clamped: an out-of-range value is rejected, never corrected.
- Graph algorithms run on an index arena (id → int, int edge lists) and are
  linear in nodes + edges.
- Methods that would normally persist data return the mutated object(s)
  so the caller can hand them to a repository.
"""

from __future__ import annotations

import dataclasses
import heapq
import time
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from app_logger import get_logger
from model import (
    Baseline,
    BaselineAction,
    BaselineHistoryEntry,
    BaselineType,
    Component,
    ConditionalTag,
    ConflictBehavior,
    DomainEvent,
    EventAction,
    Project,
    ProjectCategory,
    Task,
    TaskAssignment,
    TaskStatus,
    WorkTemplate,
)

logger = get_logger("service")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class EngineError(ValueError):
    """Base class for rejected engine operations."""

    kind = "engine_error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context


class ValidationError(EngineError):
    """Malformed input: template structure, out-of-range values, unknown tags."""
    kind = "validation_error"


class UnknownReferenceError(EngineError):
    kind = "unknown_reference"

    def __init__(self, unknown_ids: Sequence[Any], message: Optional[str] = None) -> None:
        ids = [str(i) for i in unknown_ids]
        super().__init__(
            message or f"Dependencies reference tasks outside this project: {', '.join(ids)}.",
            unknown_ids=ids,
        )


class SelfReferenceError(EngineError):
    kind = "self_reference"

    def __init__(self, task_id: uuid.UUID) -> None:
        super().__init__(f"Task {task_id} cannot depend on itself.", task_id=str(task_id))


class CycleError(EngineError):
    kind = "cycle"

    def __init__(self, cycle: Sequence[Any]) -> None:
        path = [str(n) for n in cycle]
        super().__init__(
            f"Dependency change would create a cycle: {' -> '.join(path)}.",
            cycle=path,
        )


class CapacityExceededError(EngineError):
    kind = "capacity_exceeded"

    def __init__(self, task_id: uuid.UUID, current_total: float, requested: float) -> None:
        super().__init__(
            f"Task {task_id} is already {current_total:g}% allocated; "
            f"adding {requested:g}% would exceed 100%.",
            task_id=str(task_id),
            current_total=current_total,
            requested=requested,
            available=round(MAX_SPLIT_PERCENTAGE - current_total, 6),
        )


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _visible(tasks: Iterable[Task]) -> List[Task]:
    return [t for t in tasks if not t.is_hidden]


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _find_cycle(edges: Dict[uuid.UUID, List[uuid.UUID]]) -> Optional[List[uuid.UUID]]:
    """
    Three-colour iterative DFS over an index arena.

    `edges` maps a node to the nodes it depends on; targets absent from the
    mapping are ignored. Returns the cycle as a node list whose first and
    last entries coincide, or None when the graph is acyclic.
    """
    nodes = sorted(edges, key=str)
    index = {node: i for i, node in enumerate(nodes)}
    adjacency = [[index[d] for d in edges[node] if d in index] for node in nodes]

    white, grey, black = 0, 1, 2
    colour = [white] * len(nodes)

    for root in range(len(nodes)):
        if colour[root] != white:
            continue
        colour[root] = grey
        stack: List[List[int]] = [[root, 0]]
        while stack:
            frame = stack[-1]
            node, position = frame
            if position < len(adjacency[node]):
                frame[1] += 1
                nxt = adjacency[node][position]
                if colour[nxt] == white:
                    colour[nxt] = grey
                    stack.append([nxt, 0])
                elif colour[nxt] == grey:
                    path = [f[0] for f in stack]
                    cycle = path[path.index(nxt):] + [nxt]
                    return [nodes[i] for i in cycle]
            else:
                colour[node] = black
                stack.pop()
    return None


# ---------------------------------------------------------------------------
# DependencyValidator
# ---------------------------------------------------------------------------

class DependencyValidator:
    """
    Guards every dependency edit. Pure: reads the task list it is given and
    never mutates it.
    """

    def validate(
        self,
        task_id: Optional[uuid.UUID],
        proposed_dependencies: Sequence[uuid.UUID],
        project_tasks: Sequence[Task],
    ) -> None:
        """
        Raise if `task_id` (None for a task not yet created) may not depend on
        `proposed_dependencies` given the current tasks of its project.
        """
        seen: set = set()
        duplicates = []
        for dep in proposed_dependencies:
            if dep in seen:
                duplicates.append(str(dep))
            seen.add(dep)
        if duplicates:
            raise ValidationError(
                "A task cannot list the same dependency twice.",
                reason="duplicate_dependency",
                duplicate_ids=duplicates,
            )

        if task_id is not None and task_id in seen:
            raise SelfReferenceError(task_id)

        known = {t.id for t in project_tasks}
        unknown = [d for d in proposed_dependencies if d not in known]
        if unknown:
            raise UnknownReferenceError(unknown)

        edges: Dict[uuid.UUID, List[uuid.UUID]] = {t.id: list(t.dependencies) for t in project_tasks}
        node = task_id if task_id is not None else uuid.uuid4()
        edges[node] = list(proposed_dependencies)
        self.validate_graph(edges)

    def validate_graph(self, edges: Dict[uuid.UUID, List[uuid.UUID]]) -> None:
        """Raise CycleError if the dependency mapping contains a directed cycle."""
        cycle = _find_cycle(edges)
        if cycle is not None:
            raise CycleError(cycle)

    def topological_order(self, edges: Dict[uuid.UUID, List[uuid.UUID]]) -> List[uuid.UUID]:
        """
        Kahn's algorithm; dependencies come before their dependents and ties
        are broken by the string form of the id so the order is stable.
        """
        in_degree: Dict[uuid.UUID, int] = {node: 0 for node in edges}
        dependents: Dict[uuid.UUID, List[uuid.UUID]] = {node: [] for node in edges}
        for node, deps in edges.items():
            for dep in deps:
                if dep in edges:
                    in_degree[node] += 1
                    dependents[dep].append(node)

        heap = [(str(node), node) for node, degree in in_degree.items() if degree == 0]
        heapq.heapify(heap)
        order: List[uuid.UUID] = []
        while heap:
            _, node = heapq.heappop(heap)
            order.append(node)
            for nxt in dependents[node]:
                in_degree[nxt] -= 1
                if in_degree[nxt] == 0:
                    heapq.heappush(heap, (str(nxt), nxt))

        if len(order) != len(edges):
            remaining = {n: edges[n] for n in edges if in_degree[n] > 0}
            raise CycleError(_find_cycle(remaining) or sorted(remaining, key=str))
        return order


# ---------------------------------------------------------------------------
# ScheduleCalculator
# ---------------------------------------------------------------------------

@dataclass
class TaskSchedule:
    task_id: uuid.UUID
    duration_days: int
    earliest_start: int
    earliest_finish: int
    latest_start: int
    latest_finish: int
    slack: int
    start_date: Optional[date]
    end_date: Optional[date]
    is_critical: bool = False


@dataclass
class ScheduleResult:
    base_date: Optional[date]
    target_finish: int
    project_duration: int
    finish_date: Optional[date]
    order: List[uuid.UUID] = field(default_factory=list)
    tasks: Dict[uuid.UUID, TaskSchedule] = field(default_factory=dict)
    critical_path: List[uuid.UUID] = field(default_factory=list)
    critical_path_duration: int = 0

    def slack_of(self, task_id: uuid.UUID) -> int:
        return self.tasks[task_id].slack


class ScheduleCalculator:
    """
    Critical-path scheduling over the visible tasks handed in.

    Offsets are whole days relative to `base_date`. A task finishing at day
    N lets its dependents start at day N (end = start + duration).
    """

    def __init__(self, validator: Optional[DependencyValidator] = None) -> None:
        self._validator = validator or DependencyValidator()

    def compute(
        self,
        tasks: Sequence[Task],
        base_date: Optional[date] = None,
        target_finish_days: Optional[int] = None,
    ) -> ScheduleResult:
        """
        Run the forward and backward passes.

        Hidden tasks are skipped and dependency edges pointing outside the
        supplied set are ignored, so a component's subset can be scheduled
        on its own.
        """
        visible = _visible(tasks)
        by_id = {t.id: t for t in visible}
        edges = {t.id: [d for d in t.dependencies if d in by_id] for t in visible}
        order = self._validator.topological_order(edges)

        earliest_start: Dict[uuid.UUID, int] = {}
        earliest_finish: Dict[uuid.UUID, int] = {}
        for tid in order:
            task = by_id[tid]
            start = max([task.offset_days] + [earliest_finish[d] for d in edges[tid]])
            earliest_start[tid] = start
            earliest_finish[tid] = start + task.duration_days

        project_duration = max(earliest_finish.values(), default=0)
        target = project_duration if target_finish_days is None else target_finish_days

        dependents: Dict[uuid.UUID, List[uuid.UUID]] = {tid: [] for tid in order}
        for tid in order:
            for dep in edges[tid]:
                dependents[dep].append(tid)

        latest_start: Dict[uuid.UUID, int] = {}
        latest_finish: Dict[uuid.UUID, int] = {}
        for tid in reversed(order):
            finish = min((latest_start[d] for d in dependents[tid]), default=target)
            latest_finish[tid] = finish
            latest_start[tid] = finish - by_id[tid].duration_days

        result = ScheduleResult(
            base_date=base_date,
            target_finish=target,
            project_duration=project_duration,
            finish_date=base_date + timedelta(days=project_duration) if base_date and order else None,
            order=order,
        )
        for tid in order:
            es = earliest_start[tid]
            ef = earliest_finish[tid]
            result.tasks[tid] = TaskSchedule(
                task_id=tid,
                duration_days=by_id[tid].duration_days,
                earliest_start=es,
                earliest_finish=ef,
                latest_start=latest_start[tid],
                latest_finish=latest_finish[tid],
                slack=latest_start[tid] - es,
                start_date=base_date + timedelta(days=es) if base_date else None,
                end_date=base_date + timedelta(days=ef) if base_date else None,
            )

        if order:
            path, duration = self._critical_path(result, edges)
            result.critical_path = path
            result.critical_path_duration = duration
        return result

    def _critical_path(
        self,
        result: ScheduleResult,
        edges: Dict[uuid.UUID, List[uuid.UUID]],
    ) -> Tuple[List[uuid.UUID], int]:
        """
        Pick one contiguous chain of minimum-slack tasks from a source to a
        sink finishing at the project end. Ties: larger cumulative duration,
        then the lexicographically smallest sequence of ids.
        """
        schedules = result.tasks
        min_slack = min(s.slack for s in schedules.values())
        critical = {tid for tid, s in schedules.items() if s.slack == min_slack}
        for tid in critical:
            schedules[tid].is_critical = True

        # best[tid] = (cumulative duration, id strings, path)
        best: Dict[uuid.UUID, Tuple[int, Tuple[str, ...], List[uuid.UUID]]] = {}
        has_tight_successor: set = set()
        for tid in result.order:
            if tid not in critical:
                continue
            current = schedules[tid]
            preds = [
                d for d in edges[tid]
                if d in critical and schedules[d].earliest_finish == current.earliest_start
            ]
            if preds:
                has_tight_successor.update(preds)
                chosen = min((best[p] for p in preds), key=lambda c: (-c[0], c[1]))
                best[tid] = (
                    chosen[0] + current.duration_days,
                    chosen[1] + (str(tid),),
                    chosen[2] + [tid],
                )
            else:
                best[tid] = (current.duration_days, (str(tid),), [tid])

        sinks = [
            best[tid] for tid in critical
            if tid not in has_tight_successor
            and schedules[tid].earliest_finish == result.project_duration
        ]
        if not sinks:
            return [], 0
        chosen = min(sinks, key=lambda c: (-c[0], c[1]))
        return chosen[2], chosen[0]

    def ready_tasks(self, tasks: Sequence[Task]) -> List[Task]:
        """
        Tasks that can start now: visible, not terminal, and every
        dependency terminal. Dependencies on hidden tasks are treated as
        satisfied because those tasks do not apply to the project.
        """
        by_id = {t.id: t for t in tasks}
        ready = []
        for task in tasks:
            if task.is_hidden or task.status.is_terminal:
                continue
            satisfied = True
            for dep_id in task.dependencies:
                dep = by_id.get(dep_id)
                if dep is None:
                    satisfied = False
                    break
                if not dep.is_hidden and not dep.status.is_terminal:
                    satisfied = False
                    break
            if satisfied:
                ready.append(task)
        return ready

    def apply_to_tasks(self, tasks: Sequence[Task], schedule: ScheduleResult) -> List[Task]:
        """
        Write computed dates onto tasks. Tasks with pinned dates, and tasks
        the schedule did not cover, are left untouched. Returns changed tasks.
        """
        changed = []
        now = _utcnow()
        for task in tasks:
            entry = schedule.tasks.get(task.id)
            if entry is None or task.dates_overridden:
                continue
            if task.start_date != entry.start_date or task.end_date != entry.end_date:
                task.start_date = entry.start_date
                task.end_date = entry.end_date
                task.updated_at = now
                changed.append(task)
        return changed


# ---------------------------------------------------------------------------
# ConditionalTagEvaluator
# ---------------------------------------------------------------------------

HIGH_RISE_FLOOR_THRESHOLD = 8

TagPredicate = Callable[[Project, Optional[Component]], bool]

_BUILDINGS: FrozenSet[ProjectCategory] = frozenset({
    ProjectCategory.RESIDENTIAL,
    ProjectCategory.COMMERCIAL,
    ProjectCategory.INDUSTRIAL,
    ProjectCategory.MIXED_USE,
})


@dataclass(frozen=True)
class TagRule:
    label: str
    predicate: TagPredicate
    categories: Optional[FrozenSet[ProjectCategory]] = None     # None = every category


def _component_type(component: Optional[Component]) -> Optional[str]:
    if component is None or not component.component_type:
        return None
    return component.component_type.strip().lower()


CONDITIONAL_TAG_RULES: Dict[ConditionalTag, TagRule] = {
    ConditionalTag.SITE_BASEMENT: TagRule(
        "Basement works",
        lambda p, c: p.basement_levels > 0,
    ),
    ConditionalTag.STRUCTURE_MULTI_STOREY: TagRule(
        "Multi-storey structure",
        lambda p, c: p.floor_count > 1,
        _BUILDINGS,
    ),
    ConditionalTag.STRUCTURE_HIGH_RISE: TagRule(
        "High-rise structure",
        lambda p, c: p.floor_count >= HIGH_RISE_FLOOR_THRESHOLD,
        frozenset({ProjectCategory.RESIDENTIAL, ProjectCategory.COMMERCIAL, ProjectCategory.MIXED_USE}),
    ),
    ConditionalTag.USE_RESIDENTIAL: TagRule(
        "Residential use",
        lambda p, c: p.category in (ProjectCategory.RESIDENTIAL, ProjectCategory.MIXED_USE),
        frozenset({ProjectCategory.RESIDENTIAL, ProjectCategory.MIXED_USE}),
    ),
    ConditionalTag.USE_COMMERCIAL: TagRule(
        "Commercial use",
        lambda p, c: p.category in (ProjectCategory.COMMERCIAL, ProjectCategory.MIXED_USE),
        frozenset({ProjectCategory.COMMERCIAL, ProjectCategory.MIXED_USE}),
    ),
    ConditionalTag.USE_INDUSTRIAL: TagRule(
        "Industrial use",
        lambda p, c: p.category == ProjectCategory.INDUSTRIAL,
        frozenset({ProjectCategory.INDUSTRIAL}),
    ),
    ConditionalTag.SCOPE_INTERIOR_FITOUT: TagRule(
        "Interior fit-out",
        lambda p, c: p.includes_interior_fitout or _component_type(c) == "interior",
        _BUILDINGS,
    ),
    ConditionalTag.SCOPE_LANDSCAPING: TagRule(
        "Landscaping",
        lambda p, c: p.includes_landscaping or _component_type(c) == "landscape",
    ),
    ConditionalTag.MATERIAL_FLOORING: TagRule(
        "Flooring material",
        lambda p, c: _component_type(c) == "flooring"
        or (c is None and p.includes_interior_fitout),
        _BUILDINGS,
    ),
}


@dataclass
class TagProcessingResult:
    processed: int = 0
    changed: int = 0
    hidden: int = 0
    visible: int = 0


class ConditionalTagEvaluator:
    """
    Maps each tag of the closed vocabulary to its predicate. Evaluation is
    deterministic: the same project/component attributes always give the
    same visibility.
    """

    def __init__(self, rules: Optional[Dict[ConditionalTag, TagRule]] = None) -> None:
        self._rules = rules or CONDITIONAL_TAG_RULES

    def parse_tag(self, value: Any) -> Optional[ConditionalTag]:
        """Convert a raw tag string (or None) into the enum, rejecting unknown tags."""
        if value is None or value == "":
            return None
        if isinstance(value, ConditionalTag):
            return value
        try:
            return ConditionalTag(str(value).strip().lower())
        except ValueError:
            raise ValidationError(
                f"Unknown conditional tag '{value}'.",
                reason="unknown_tag",
                tag=str(value),
                allowed=[t.value for t in ConditionalTag],
            ) from None

    def evaluate(
        self,
        tag: ConditionalTag,
        project: Project,
        component: Optional[Component] = None,
    ) -> bool:
        return bool(self._rules[tag].predicate(project, component))

    def process(
        self,
        project: Project,
        tasks: Sequence[Task],
        components: Dict[uuid.UUID, Component],
    ) -> Tuple[TagProcessingResult, List[Task]]:
        """
        Set `is_hidden = not predicate(...)` on every tagged task of the
        project. Untagged tasks keep whatever visibility was set by hand.
        Returns the counts and the tasks whose visibility changed.
        """
        result = TagProcessingResult()
        changed: List[Task] = []
        now = _utcnow()
        for task in tasks:
            if task.conditional_tag is None:
                continue
            component = components.get(task.component_id) if task.component_id else None
            hidden = not self.evaluate(task.conditional_tag, project, component)
            result.processed += 1
            if hidden:
                result.hidden += 1
            else:
                result.visible += 1
            if task.is_hidden != hidden:
                task.is_hidden = hidden
                task.updated_at = now
                changed.append(task)
        result.changed = len(changed)
        return result, changed

    def available_tags(self, project: Project) -> List[ConditionalTag]:
        """Tags that make sense for the project's category, for pickers only."""
        return [
            tag for tag, rule in self._rules.items()
            if rule.categories is None or project.category in rule.categories
        ]

    def describe(self, tag: ConditionalTag) -> str:
        return self._rules[tag].label


# ---------------------------------------------------------------------------
# WorkloadAllocator
# ---------------------------------------------------------------------------

MAX_SPLIT_PERCENTAGE = 100.0


def _total(values: Iterable[float]) -> float:
    # rounded so that 33.3 + 33.3 + 33.4 counts as exactly 100
    return round(sum(values), 6)


class WorkloadAllocator:
    """
    Enforces that the split percentages of one task never sum above 100.

    The check itself is pure; callers must run read-sum-write inside one
    Unit of Work so concurrent assignments are serialised.
    """

    def _check_split(self, split_percentage: float) -> None:
        if not _is_number(split_percentage) or not (0 < split_percentage <= MAX_SPLIT_PERCENTAGE):
            raise ValidationError(
                "split_percentage must be greater than 0 and at most 100.",
                reason="split_out_of_range",
                split_percentage=split_percentage,
            )

    def assign(
        self,
        task: Task,
        user_id: uuid.UUID,
        split_percentage: float,
        existing: Sequence[TaskAssignment],
        assignment_id: Optional[uuid.UUID] = None,
    ) -> TaskAssignment:
        """
        Create (assignment_id None) or update an assignment for `task`.
        `existing` must be every current assignment of the task.
        """
        self._check_split(split_percentage)
        current = [a for a in existing if a.task_id == task.id]

        if assignment_id is None:
            if any(a.user_id == user_id for a in current):
                raise ValidationError(
                    f"User {user_id} is already assigned to task {task.id}; update that assignment instead.",
                    reason="duplicate_assignment",
                    task_id=str(task.id),
                    user_id=str(user_id),
                )
            others = current
        else:
            target = next((a for a in current if a.id == assignment_id), None)
            if target is None:
                raise ValidationError(
                    f"Assignment {assignment_id} does not belong to task {task.id}.",
                    reason="assignment_task_mismatch",
                    assignment_id=str(assignment_id),
                )
            others = [a for a in current if a.id != assignment_id]
            if any(a.user_id == user_id for a in others):
                raise ValidationError(
                    f"User {user_id} already holds another assignment on task {task.id}.",
                    reason="duplicate_assignment",
                    task_id=str(task.id),
                    user_id=str(user_id),
                )

        current_total = _total(a.split_percentage for a in others)
        if _total([current_total, split_percentage]) > MAX_SPLIT_PERCENTAGE:
            raise CapacityExceededError(task.id, current_total, split_percentage)

        now = _utcnow()
        if assignment_id is None:
            return TaskAssignment(
                task_id=task.id,
                project_id=task.project_id,
                user_id=user_id,
                split_percentage=float(split_percentage),
                created_at=now,
                updated_at=now,
            )
        updated = next(a for a in current if a.id == assignment_id)
        updated.user_id = user_id
        updated.split_percentage = float(split_percentage)
        updated.updated_at = now
        return updated

    def replace_assignments(
        self,
        task: Task,
        splits: Sequence[Tuple[uuid.UUID, float]],
        existing: Sequence[TaskAssignment],
    ) -> Tuple[List[TaskAssignment], List[TaskAssignment]]:
        """
        Replace the whole assignment set of a task. Users already assigned
        keep their assignment id. Returns (assignments to save, assignments
        to delete).
        """
        users = [u for u, _ in splits]
        if len(set(users)) != len(users):
            raise ValidationError(
                "Each user may appear only once in an assignment list.",
                reason="duplicate_assignment",
                task_id=str(task.id),
            )
        for _, pct in splits:
            self._check_split(pct)
        requested = _total(p for _, p in splits)
        if requested > MAX_SPLIT_PERCENTAGE:
            raise CapacityExceededError(task.id, 0.0, requested)

        current = {a.user_id: a for a in existing if a.task_id == task.id}
        now = _utcnow()
        to_save: List[TaskAssignment] = []
        for user_id, pct in splits:
            assignment = current.pop(user_id, None)
            if assignment is None:
                assignment = TaskAssignment(
                    task_id=task.id,
                    project_id=task.project_id,
                    user_id=user_id,
                    created_at=now,
                )
            assignment.split_percentage = float(pct)
            assignment.updated_at = now
            to_save.append(assignment)
        return to_save, list(current.values())

    def task_stats(self, task_id: uuid.UUID, assignments: Sequence[TaskAssignment]) -> Dict[str, Any]:
        own = [a for a in assignments if a.task_id == task_id]
        total = _total(a.split_percentage for a in own)
        return {
            "task_id": str(task_id),
            "assignment_count": len(own),
            "total_split_percentage": total,
            "remaining_percentage": round(MAX_SPLIT_PERCENTAGE - total, 6),
        }

    def user_workload(
        self,
        user_id: uuid.UUID,
        assignments: Sequence[TaskAssignment],
        tasks_by_id: Dict[uuid.UUID, Task],
    ) -> float:
        """Sum of a user's split percentages across tasks still open."""
        return _total(
            a.split_percentage for a in assignments
            if a.user_id == user_id
            and a.task_id in tasks_by_id
            and not tasks_by_id[a.task_id].status.is_terminal
        )


# ---------------------------------------------------------------------------
# Template instantiation
# ---------------------------------------------------------------------------

DEFAULT_TEMPLATE_DURATION_DAYS = 1


@dataclass
class TemplateTaskDefinition:
    index: int
    code: str
    name: str
    description: str = ""
    depends_on: List[int] = field(default_factory=list)
    conditional_tag: Optional[ConditionalTag] = None
    duration_days: int = DEFAULT_TEMPLATE_DURATION_DAYS
    offset_days: int = 0
    assignee_hint: Optional[str] = None
    planned_cost: float = 0.0


@dataclass
class ApplyOptions:
    default_assignee_id: Optional[uuid.UUID] = None
    base_start_date: Optional[date] = None
    preview_only: bool = False
    conflict_behavior: ConflictBehavior = ConflictBehavior.CREATE
    include_dependencies: bool = True
    attach_to: List[uuid.UUID] = field(default_factory=list)
    assignee_map: Dict[str, uuid.UUID] = field(default_factory=dict)

    def as_log_dict(self) -> Dict[str, Any]:
        return {
            "default_assignee_id": str(self.default_assignee_id) if self.default_assignee_id else None,
            "base_start_date": self.base_start_date.isoformat() if self.base_start_date else None,
            "conflict_behavior": self.conflict_behavior.value,
            "include_dependencies": self.include_dependencies,
            "attach_to": [str(t) for t in self.attach_to],
            "assignee_map": {k: str(v) for k, v in self.assignee_map.items()},
        }


@dataclass
class InstantiationPlan:
    template_id: uuid.UUID
    template_version: int
    base_start_date: date
    definitions: List[TemplateTaskDefinition]
    tasks: List[Task] = field(default_factory=list)
    assignments: List[TaskAssignment] = field(default_factory=list)
    index_to_id: Dict[int, uuid.UUID] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    dependency_count: int = 0
    schedule: Optional[ScheduleResult] = None

    def counts(self) -> Dict[str, int]:
        return {
            "created_tasks": len(self.tasks),
            "created_dependencies": self.dependency_count,
            "created_assignments": len(self.assignments),
            "skipped": len(self.skipped),
            "warnings": len(self.warnings),
        }


class TemplateInstantiationService:
    """
    Expands a work template into concrete tasks.

    Template definitions only ever reference each other by local index; the
    index → task id map is built once per call and never stored back into
    the template.
    """

    def __init__(
        self,
        validator: Optional[DependencyValidator] = None,
        tags: Optional[ConditionalTagEvaluator] = None,
        calculator: Optional[ScheduleCalculator] = None,
        workload: Optional[WorkloadAllocator] = None,
        warning_threshold: int = 5000,
    ) -> None:
        self._validator = validator or DependencyValidator()
        self._tags = tags or ConditionalTagEvaluator()
        self._calculator = calculator or ScheduleCalculator(self._validator)
        self._workload = workload or WorkloadAllocator()
        self._warning_threshold = warning_threshold

    # --- Parsing ------------------------------------------------------------

    def parse(self, template_data: Any) -> List[TemplateTaskDefinition]:
        """Validate raw template data and return ordered task definitions."""
        if not isinstance(template_data, list) or not template_data:
            raise ValidationError(
                "Template must contain a non-empty list of task definitions.",
                reason="empty_template",
            )

        size = len(template_data)
        definitions: List[TemplateTaskDefinition] = []
        codes: set = set()
        for index, raw in enumerate(template_data):
            if not isinstance(raw, dict):
                raise ValidationError(
                    f"Template entry {index} must be a mapping.",
                    reason="malformed_entry",
                    index=index,
                )
            name = raw.get("name")
            if not isinstance(name, str) or not name.strip():
                raise ValidationError(
                    f"Template entry {index} needs a non-empty name.",
                    reason="missing_name",
                    index=index,
                )

            depends_on = raw.get("depends_on", raw.get("dep", []))
            if depends_on is None:
                depends_on = []
            if not isinstance(depends_on, list):
                raise ValidationError(
                    f"Template entry {index}: depends_on must be a list of indices.",
                    reason="malformed_dependencies",
                    index=index,
                )
            for ref in depends_on:
                if not _is_int(ref) or not (0 <= ref < size):
                    raise ValidationError(
                        f"Template entry {index} depends on missing entry {ref!r}.",
                        reason="dangling_index",
                        index=index,
                        reference=ref,
                    )
                if ref == index:
                    raise ValidationError(
                        f"Template entry {index} depends on itself.",
                        reason="self_reference",
                        index=index,
                    )
            if len(set(depends_on)) != len(depends_on):
                raise ValidationError(
                    f"Template entry {index} lists a dependency twice.",
                    reason="duplicate_dependency",
                    index=index,
                )

            duration = raw.get("duration_days", DEFAULT_TEMPLATE_DURATION_DAYS)
            offset = raw.get("offset_days", 0)
            for label, value in (("duration_days", duration), ("offset_days", offset)):
                if not _is_int(value) or value < 0:
                    raise ValidationError(
                        f"Template entry {index}: {label} must be a non-negative integer.",
                        reason="invalid_number",
                        index=index,
                        field=label,
                    )
            planned_cost = raw.get("planned_cost", 0.0)
            if not _is_number(planned_cost) or planned_cost < 0:
                raise ValidationError(
                    f"Template entry {index}: planned_cost must be a non-negative number.",
                    reason="invalid_number",
                    index=index,
                    field="planned_cost",
                )

            code = str(raw.get("code") or f"T{index + 1:03d}")
            if code in codes:
                raise ValidationError(
                    f"Template entry {index} reuses code '{code}'.",
                    reason="duplicate_code",
                    index=index,
                    code=code,
                )
            codes.add(code)

            try:
                tag = self._tags.parse_tag(raw.get("conditional_tag"))
            except ValidationError as exc:
                exc.context["index"] = index
                raise

            hint = raw.get("assignee_hint")
            definitions.append(
                TemplateTaskDefinition(
                    index=index,
                    code=code,
                    name=name.strip(),
                    description=str(raw.get("description") or ""),
                    depends_on=list(depends_on),
                    conditional_tag=tag,
                    duration_days=duration,
                    offset_days=offset,
                    assignee_hint=str(hint) if hint else None,
                    planned_cost=float(planned_cost),
                )
            )

        local_edges = {d.index: list(d.depends_on) for d in definitions}
        cycle = _find_cycle(local_edges)
        if cycle is not None:
            raise ValidationError(
                "Template dependencies form a cycle.",
                reason="cyclic_template",
                cycle=cycle,
            )
        return definitions

    # --- Planning -----------------------------------------------------------

    def build_plan(
        self,
        template: WorkTemplate,
        project: Project,
        project_tasks: Sequence[Task],
        options: ApplyOptions,
        component: Optional[Component] = None,
        created_by: Optional[uuid.UUID] = None,
    ) -> InstantiationPlan:
        """
        Produce the full set of tasks, edges and default assignments the
        template would create. Nothing is persisted here; the same plan backs
        both preview and apply.
        """
        definitions = self.parse(template.template_data)
        if len(definitions) > self._warning_threshold:
            logger.warning(
                "Template %s expands to %d tasks (threshold %d)",
                template.id, len(definitions), self._warning_threshold,
            )

        base_date = options.base_start_date or project.start_date or date.today()
        plan = InstantiationPlan(
            template_id=template.id,
            template_version=template.version,
            base_start_date=base_date,
            definitions=definitions,
        )

        known = {t.id: t for t in project_tasks}
        unknown = [t for t in options.attach_to if t not in known]
        if unknown:
            raise UnknownReferenceError(unknown)

        existing_by_name: Dict[str, Task] = {}
        for t in project_tasks:
            existing_by_name.setdefault(t.name.strip().lower(), t)
        taken_names = set(existing_by_name)

        # Allocate ids: skipped definitions resolve to the task already present.
        created: Dict[int, TemplateTaskDefinition] = {}
        names: Dict[int, str] = {}
        for definition in definitions:
            clash = existing_by_name.get(definition.name.lower())
            if clash is not None and options.conflict_behavior == ConflictBehavior.SKIP:
                plan.index_to_id[definition.index] = clash.id
                plan.skipped.append(definition.code)
                plan.warnings.append(f"Task '{definition.name}' already exists, skipped.")
                continue
            name = definition.name
            if clash is not None and options.conflict_behavior == ConflictBehavior.RENAME:
                name = self._unique_name(definition.name, taken_names)
                plan.warnings.append(f"Task '{definition.name}' already exists, created as '{name}'.")
            taken_names.add(name.lower())
            names[definition.index] = name
            created[definition.index] = definition
            plan.index_to_id[definition.index] = uuid.uuid4()

        now = _utcnow()
        for index, definition in created.items():
            dependencies: List[uuid.UUID] = []
            if options.include_dependencies:
                dependencies = [plan.index_to_id[i] for i in definition.depends_on]
                if not definition.depends_on:
                    dependencies.extend(t for t in options.attach_to if t not in dependencies)
            hidden = False
            if definition.conditional_tag is not None:
                hidden = not self._tags.evaluate(definition.conditional_tag, project, component)
            plan.tasks.append(
                Task(
                    id=plan.index_to_id[index],
                    project_id=project.id,
                    component_id=component.id if component else None,
                    name=names[index],
                    description=definition.description,
                    duration_days=definition.duration_days,
                    offset_days=definition.offset_days,
                    dependencies=dependencies,
                    conditional_tag=definition.conditional_tag,
                    is_hidden=hidden,
                    template_id=template.id,
                    template_task_id=definition.code,
                    planned_cost=definition.planned_cost,
                    created_by=created_by,
                    created_at=now,
                    updated_at=now,
                )
            )
        plan.dependency_count = sum(len(t.dependencies) for t in plan.tasks)

        # Edges may point at pre-existing tasks (skip/attach), so check the
        # combined graph rather than trusting the template alone.
        combined = {t.id: list(t.dependencies) for t in project_tasks}
        combined.update({t.id: list(t.dependencies) for t in plan.tasks})
        self._validator.validate_graph(combined)

        plan.schedule = self._calculator.compute(list(project_tasks) + plan.tasks, base_date)
        for task in plan.tasks:
            entry = plan.schedule.tasks.get(task.id)
            if entry is not None:
                task.start_date = entry.start_date
                task.end_date = entry.end_date

        for index, task in zip(created, plan.tasks):
            hint = created[index].assignee_hint
            assignee = options.assignee_map.get(hint) if hint else None
            assignee = assignee or options.default_assignee_id
            if assignee is not None:
                plan.assignments.append(self._workload.assign(task, assignee, MAX_SPLIT_PERCENTAGE, []))
        return plan

    @staticmethod
    def _unique_name(name: str, taken: set) -> str:
        candidate = f"{name} (Copy)"
        counter = 2
        while candidate.lower() in taken:
            candidate = f"{name} (Copy {counter})"
            counter += 1
        return candidate


# ---------------------------------------------------------------------------
# TemplateService
# ---------------------------------------------------------------------------

class TemplateService:
    """
    Template lifecycle. A template referenced by any task is frozen; the only
    way to change it is duplicate-with-version-bump.
    """

    def __init__(self, instantiation: Optional[TemplateInstantiationService] = None) -> None:
        self._instantiation = instantiation or TemplateInstantiationService()

    def create_template(
        self,
        name: str,
        category: str,
        template_data: List[Dict[str, Any]],
        description: str = "",
        created_by: Optional[uuid.UUID] = None,
    ) -> WorkTemplate:
        if not name.strip():
            raise ValidationError("Template name must not be empty.", reason="missing_name")
        self._instantiation.parse(template_data)
        now = _utcnow()
        return WorkTemplate(
            name=name.strip(),
            category=category,
            version=1,
            description=description,
            template_data=list(template_data),
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )

    def is_referenced(self, template: WorkTemplate, tasks: Iterable[Task]) -> bool:
        return any(t.template_id == template.id for t in tasks)

    def update_template(
        self,
        template: WorkTemplate,
        name: Optional[str] = None,
        category: Optional[str] = None,
        description: Optional[str] = None,
        template_data: Optional[List[Dict[str, Any]]] = None,
    ) -> WorkTemplate:
        """Apply edits to an unreferenced template (the caller checks references)."""
        if template_data is not None:
            self._instantiation.parse(template_data)
            template.template_data = list(template_data)
        if name is not None:
            if not name.strip():
                raise ValidationError("Template name must not be empty.", reason="missing_name")
            template.name = name.strip()
        if category is not None:
            template.category = category
        if description is not None:
            template.description = description
        template.updated_at = _utcnow()
        return template

    def duplicate(
        self,
        template: WorkTemplate,
        family: Sequence[WorkTemplate],
        created_by: Optional[uuid.UUID] = None,
        template_data: Optional[List[Dict[str, Any]]] = None,
    ) -> WorkTemplate:
        """
        Copy a template as the next version of its family (templates sharing
        its name). Optionally replace the task definitions in the copy.
        """
        data = template.template_data if template_data is None else template_data
        self._instantiation.parse(data)
        next_version = max([t.version for t in family] + [template.version]) + 1
        now = _utcnow()
        return WorkTemplate(
            name=template.name,
            category=template.category,
            version=next_version,
            description=template.description,
            template_data=[dict(entry) for entry in data],
            duplicated_from_id=template.id,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )


# ---------------------------------------------------------------------------
# RollupService
# ---------------------------------------------------------------------------

@dataclass
class CostRollup:
    planned: float = 0.0
    actual: float = 0.0
    forecast: float = 0.0
    progress_pct: float = 0.0


class RollupService:
    """
    Derived cost and progress figures. These are recomputed from the current
    tasks on every call rather than maintained incrementally.
    """

    def cost_rollup(self, tasks: Sequence[Task]) -> CostRollup:
        """
        Roll up visible tasks. Forecast counts what was spent on finished
        tasks and the larger of plan and spend on open ones.
        """
        visible = _visible(tasks)
        if not visible:
            return CostRollup()
        forecast = 0.0
        for t in visible:
            forecast += t.actual_cost if t.status.is_terminal else max(t.planned_cost, t.actual_cost)
        return CostRollup(
            planned=round(sum(t.planned_cost for t in visible), 2),
            actual=round(sum(t.actual_cost for t in visible), 2),
            forecast=round(forecast, 2),
            progress_pct=round(sum(t.progress_pct for t in visible) / len(visible), 2),
        )

    def recalculate(
        self,
        project: Project,
        components: Sequence[Component],
        tasks: Sequence[Task],
    ) -> Tuple[Project, List[Component]]:
        """
        Recompute every component (own tasks plus descendants) and the
        project. Call after any cost/progress-relevant change.
        """
        children: Dict[Optional[uuid.UUID], List[Component]] = {}
        for c in components:
            children.setdefault(c.parent_id, []).append(c)
        tasks_by_component: Dict[Optional[uuid.UUID], List[Task]] = {}
        for t in tasks:
            tasks_by_component.setdefault(t.component_id, []).append(t)

        now = _utcnow()

        def subtree_tasks(component: Component) -> List[Task]:
            collected = list(tasks_by_component.get(component.id, []))
            for child in children.get(component.id, []):
                collected.extend(subtree_tasks(child))
            return collected

        for component in components:
            rollup = self.cost_rollup(subtree_tasks(component))
            component.planned_cost = rollup.planned
            component.actual_cost = rollup.actual
            component.progress_pct = rollup.progress_pct
            component.updated_at = now

        rollup = self.cost_rollup(tasks)
        project.planned_cost = rollup.planned
        project.actual_cost = rollup.actual
        project.forecast_cost = rollup.forecast
        project.progress_pct = rollup.progress_pct
        project.updated_at = now
        return project, list(components)


# ---------------------------------------------------------------------------
# BaselineService
# ---------------------------------------------------------------------------

@dataclass
class ProjectMeasurement:
    start_date: Optional[date]
    end_date: Optional[date]
    cost: float


@dataclass
class BaselineComparison:
    project_id: uuid.UUID
    from_baseline_id: uuid.UUID
    to_baseline_id: uuid.UUID
    start_date_delta_days: Optional[int]
    end_date_delta_days: Optional[int]
    duration_delta_days: Optional[int]
    cost_delta: float
    cost_delta_pct: Optional[float]


@dataclass
class VarianceResult:
    """
    `status` is "ok" or "no_baseline". With no baseline every variance field
    is None, so callers cannot mistake it for on-budget / on-schedule.
    """
    project_id: uuid.UUID
    baseline_type: BaselineType
    status: str
    baseline_id: Optional[uuid.UUID] = None
    baseline_version: Optional[int] = None
    baseline_start_date: Optional[date] = None
    baseline_end_date: Optional[date] = None
    baseline_cost: Optional[float] = None
    current_start_date: Optional[date] = None
    current_end_date: Optional[date] = None
    current_cost: Optional[float] = None
    start_variance_days: Optional[int] = None
    schedule_variance_days: Optional[int] = None
    cost_variance: Optional[float] = None
    cost_variance_pct: Optional[float] = None

    @property
    def has_baseline(self) -> bool:
        return self.status == "ok"


def _days_between(later: Optional[date], earlier: Optional[date]) -> Optional[int]:
    if later is None or earlier is None:
        return None
    return (later - earlier).days


def _pct(delta: float, reference: float) -> Optional[float]:
    if not reference:
        return None
    return round(delta / reference * 100.0, 2)


class BaselineService:
    """
    Versioned, immutable schedule/cost snapshots and their comparison with
    each other and with the live project.
    """

    def __init__(
        self,
        calculator: Optional[ScheduleCalculator] = None,
        rollups: Optional[RollupService] = None,
    ) -> None:
        self._calculator = calculator or ScheduleCalculator()
        self._rollups = rollups or RollupService()

    def measure(self, project: Project, tasks: Sequence[Task]) -> ProjectMeasurement:
        """
        Current schedule bounds and forecast cost. Dates come from the
        schedule calculator over visible tasks; pinned task dates are used
        as stored. Without visible tasks the project's own dates are used.
        """
        visible = _visible(tasks)
        cost = self._rollups.cost_rollup(visible).forecast
        if not visible:
            return ProjectMeasurement(project.start_date, project.end_date, cost)

        base = project.start_date or date.today()
        schedule = self._calculator.compute(visible, base)
        starts: List[date] = []
        ends: List[date] = []
        for task in visible:
            if task.dates_overridden and task.start_date and task.end_date:
                starts.append(task.start_date)
                ends.append(task.end_date)
            else:
                entry = schedule.tasks[task.id]
                starts.append(entry.start_date)
                ends.append(entry.end_date)
        return ProjectMeasurement(min(starts), max(ends), cost)

    def next_version(
        self,
        project_id: uuid.UUID,
        baseline_type: BaselineType,
        baselines: Sequence[Baseline],
        history: Sequence[BaselineHistoryEntry] = (),
    ) -> int:
        """
        One more than the highest version ever issued for (project, type).
        History is consulted so a deleted version number is never reused.
        """
        versions = [
            b.version for b in baselines
            if b.project_id == project_id and b.baseline_type == baseline_type
        ]
        versions.extend(
            e.version for e in history
            if e.project_id == project_id and e.baseline_type == baseline_type
        )
        return max(versions, default=0) + 1

    def snapshot(
        self,
        project: Project,
        tasks: Sequence[Task],
        baseline_type: BaselineType,
        version: int,
        created_by: Optional[uuid.UUID],
        note: str = "",
        contract_id: Optional[uuid.UUID] = None,
        supersedes: Optional[Baseline] = None,
    ) -> Baseline:
        """Build (but do not store) a baseline of the project's current state."""
        if version < 1:
            raise ValidationError("Baseline versions start at 1.", reason="invalid_version", version=version)
        if supersedes is not None and (
            supersedes.project_id != project.id or supersedes.baseline_type != baseline_type
        ):
            raise ValidationError(
                "A re-baseline must stay within the same project and baseline type.",
                reason="lineage_mismatch",
                baseline_id=str(supersedes.id),
            )
        measured = self.measure(project, tasks)
        return Baseline(
            project_id=project.id,
            baseline_type=baseline_type,
            version=version,
            start_date=measured.start_date,
            end_date=measured.end_date,
            cost=measured.cost,
            note=note,
            contract_id=contract_id,
            supersedes_id=supersedes.id if supersedes else None,
            created_by=created_by,
            created_at=_utcnow(),
        )

    def amend_note(self, baseline: Baseline, note: str) -> Baseline:
        """The note is the only mutable part of a baseline."""
        return dataclasses.replace(baseline, note=note)

    def latest(
        self,
        baselines: Sequence[Baseline],
        project_id: uuid.UUID,
        baseline_type: BaselineType,
    ) -> Optional[Baseline]:
        candidates = [
            b for b in baselines
            if b.project_id == project_id and b.baseline_type == baseline_type
        ]
        return max(candidates, key=lambda b: b.version, default=None)

    def get_baseline_history(self, baselines: Sequence[Baseline]) -> List[Baseline]:
        """Return baselines sorted by type then version ascending."""
        return sorted(baselines, key=lambda b: (b.baseline_type.value, b.version))

    def compare(self, first: Baseline, second: Baseline) -> BaselineComparison:
        """Deltas are `second - first`; callers decide what the sign means."""
        if first.project_id != second.project_id:
            raise ValidationError(
                "Only baselines of the same project can be compared.",
                reason="project_mismatch",
            )
        first_duration = _days_between(first.end_date, first.start_date)
        second_duration = _days_between(second.end_date, second.start_date)
        duration_delta = None
        if first_duration is not None and second_duration is not None:
            duration_delta = second_duration - first_duration
        cost_delta = round(second.cost - first.cost, 2)
        return BaselineComparison(
            project_id=first.project_id,
            from_baseline_id=first.id,
            to_baseline_id=second.id,
            start_date_delta_days=_days_between(second.start_date, first.start_date),
            end_date_delta_days=_days_between(second.end_date, first.end_date),
            duration_delta_days=duration_delta,
            cost_delta=cost_delta,
            cost_delta_pct=_pct(cost_delta, first.cost),
        )

    def variance(
        self,
        project: Project,
        tasks: Sequence[Task],
        baseline_type: BaselineType,
        baseline: Optional[Baseline],
    ) -> VarianceResult:
        if baseline is None:
            return VarianceResult(project_id=project.id, baseline_type=baseline_type, status="no_baseline")

        current = self.measure(project, tasks)
        cost_variance = round(current.cost - baseline.cost, 2)
        return VarianceResult(
            project_id=project.id,
            baseline_type=baseline_type,
            status="ok",
            baseline_id=baseline.id,
            baseline_version=baseline.version,
            baseline_start_date=baseline.start_date,
            baseline_end_date=baseline.end_date,
            baseline_cost=baseline.cost,
            current_start_date=current.start_date,
            current_end_date=current.end_date,
            current_cost=current.cost,
            start_variance_days=_days_between(current.start_date, baseline.start_date),
            schedule_variance_days=_days_between(current.end_date, baseline.end_date),
            cost_variance=cost_variance,
            cost_variance_pct=_pct(cost_variance, baseline.cost),
        )


# ---------------------------------------------------------------------------
# BaselineHistoryService
# ---------------------------------------------------------------------------

class BaselineHistoryService:
    """
    Handles creation and querying of BaselineHistoryEntry records.
    Entries are immutable once written.
    """

    def record(
        self,
        action: BaselineAction,
        baseline: Baseline,
        existing_entries: Sequence[BaselineHistoryEntry],
        actor_id: Optional[uuid.UUID],
        previous_baseline_id: Optional[uuid.UUID] = None,
        note: str = "",
    ) -> BaselineHistoryEntry:
        """sequence_number is auto-incremented per project."""
        next_seq = max(
            (e.sequence_number for e in existing_entries if e.project_id == baseline.project_id),
            default=0,
        ) + 1
        return BaselineHistoryEntry(
            project_id=baseline.project_id,
            sequence_number=next_seq,
            action=action,
            baseline_id=baseline.id,
            baseline_type=baseline.baseline_type,
            version=baseline.version,
            previous_baseline_id=previous_baseline_id,
            actor_id=actor_id,
            note=note,
            occurred_at=_utcnow(),
        )

    def get_history(
        self,
        project_id: uuid.UUID,
        all_entries: Sequence[BaselineHistoryEntry],
        baseline_type: Optional[BaselineType] = None,
    ) -> List[BaselineHistoryEntry]:
        return sorted(
            [
                e for e in all_entries
                if e.project_id == project_id
                and (baseline_type is None or e.baseline_type == baseline_type)
            ],
            key=lambda e: e.sequence_number,
        )

    def lineage(
        self,
        baseline_id: uuid.UUID,
        baselines: Sequence[Baseline],
    ) -> List[Baseline]:
        """Walk `supersedes_id` back to the first baseline; newest first."""
        by_id = {b.id: b for b in baselines}
        chain: List[Baseline] = []
        current = by_id.get(baseline_id)
        while current is not None and current not in chain:
            chain.append(current)
            current = by_id.get(current.supersedes_id) if current.supersedes_id else None
        return chain


# ---------------------------------------------------------------------------
# Entity services
# ---------------------------------------------------------------------------

def _check_range(label: str, value: Optional[float], low: float, high: Optional[float] = None) -> None:
    if value is None:
        return
    if not _is_number(value) or value < low or (high is not None and value > high):
        bound = f"between {low:g} and {high:g}" if high is not None else f"at least {low:g}"
        raise ValidationError(f"{label} must be {bound}.", reason="out_of_range", field=label, value=value)


class ProjectService:
    """Project creation and attribute edits."""

    def create_project(
        self,
        name: str,
        code: str = "",
        description: str = "",
        category: ProjectCategory = ProjectCategory.RESIDENTIAL,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        floor_count: int = 1,
        basement_levels: int = 0,
        includes_interior_fitout: bool = False,
        includes_landscaping: bool = False,
        created_by: Optional[uuid.UUID] = None,
    ) -> Project:
        """Create and return a new Project instance (unsaved)."""
        if not name.strip():
            raise ValidationError("Project name must not be empty.", reason="missing_name")
        project = Project(
            name=name.strip(),
            code=code,
            description=description,
            category=category,
            start_date=start_date,
            end_date=end_date,
            floor_count=floor_count,
            basement_levels=basement_levels,
            includes_interior_fitout=includes_interior_fitout,
            includes_landscaping=includes_landscaping,
            created_by=created_by,
        )
        self._check(project)
        return project

    def update_project(self, project: Project, **changes: Any) -> Project:
        """Apply field-level updates; rollup fields cannot be set this way."""
        allowed = {
            "name", "code", "description", "category", "status", "visibility",
            "start_date", "end_date", "floor_count", "basement_levels",
            "includes_interior_fitout", "includes_landscaping",
        }
        for key, value in changes.items():
            if key not in allowed:
                raise ValidationError(f"Project field '{key}' cannot be updated.", reason="readonly_field", field=key)
            if value is not None:
                setattr(project, key, value)
        self._check(project)
        project.updated_at = _utcnow()
        return project

    @staticmethod
    def _check(project: Project) -> None:
        if project.start_date and project.end_date and project.end_date < project.start_date:
            raise ValidationError("end_date must not be before start_date.", reason="invalid_dates")
        _check_range("floor_count", project.floor_count, 1)
        _check_range("basement_levels", project.basement_levels, 0)


class ComponentService:
    def create_component(
        self,
        project: Project,
        name: str,
        parent: Optional[Component] = None,
        component_type: Optional[str] = None,
    ) -> Component:
        """The parent is fixed here and never changes, so the tree stays a tree."""
        if not name.strip():
            raise ValidationError("Component name must not be empty.", reason="missing_name")
        if parent is not None and parent.project_id != project.id:
            raise UnknownReferenceError(
                [parent.id], message=f"Parent component {parent.id} belongs to another project."
            )
        return Component(
            project_id=project.id,
            parent_id=parent.id if parent else None,
            name=name.strip(),
            component_type=component_type,
        )


class TaskService:
    """
    Task creation and edits. Dependency lists always pass through the
    DependencyValidator before they are set.
    """

    def __init__(
        self,
        validator: Optional[DependencyValidator] = None,
        tags: Optional[ConditionalTagEvaluator] = None,
    ) -> None:
        self._validator = validator or DependencyValidator()
        self._tags = tags or ConditionalTagEvaluator()

    def create_task(
        self,
        project: Project,
        project_tasks: Sequence[Task],
        name: str,
        duration_days: int = 0,
        dependencies: Sequence[uuid.UUID] = (),
        component: Optional[Component] = None,
        description: str = "",
        conditional_tag: Any = None,
        offset_days: int = 0,
        planned_cost: float = 0.0,
        created_by: Optional[uuid.UUID] = None,
    ) -> Task:
        if not name.strip():
            raise ValidationError("Task name must not be empty.", reason="missing_name")
        if component is not None and component.project_id != project.id:
            raise UnknownReferenceError(
                [component.id], message=f"Component {component.id} belongs to another project."
            )
        self._check_numbers(duration_days=duration_days, offset_days=offset_days, planned_cost=planned_cost)
        self._validator.validate(None, list(dependencies), project_tasks)
        tag = self._tags.parse_tag(conditional_tag)
        hidden = False
        if tag is not None:
            hidden = not self._tags.evaluate(tag, project, component)
        return Task(
            project_id=project.id,
            component_id=component.id if component else None,
            name=name.strip(),
            description=description,
            duration_days=duration_days,
            offset_days=offset_days,
            dependencies=list(dependencies),
            conditional_tag=tag,
            is_hidden=hidden,
            planned_cost=float(planned_cost),
            created_by=created_by,
        )

    def set_dependencies(
        self,
        task: Task,
        dependencies: Sequence[uuid.UUID],
        project_tasks: Sequence[Task],
    ) -> Task:
        self._validator.validate(task.id, list(dependencies), project_tasks)
        task.dependencies = list(dependencies)
        task.updated_at = _utcnow()
        return task

    def update_task(self, task: Task, **changes: Any) -> Task:
        """
        Field-level updates. Setting start/end dates pins them against the
        schedule calculator; `dates_overridden=False` releases the pin.
        """
        allowed = {
            "name", "description", "status", "duration_days", "offset_days",
            "progress_pct", "planned_cost", "actual_cost", "start_date", "end_date",
            "dates_overridden", "conditional_tag", "is_hidden",
        }
        for key in changes:
            if key not in allowed:
                raise ValidationError(f"Task field '{key}' cannot be updated.", reason="readonly_field", field=key)
        self._check_numbers(**{
            k: changes.get(k)
            for k in ("duration_days", "offset_days", "progress_pct", "planned_cost", "actual_cost")
        })

        if "conditional_tag" in changes:
            task.conditional_tag = self._tags.parse_tag(changes.pop("conditional_tag"))
            # an untagged task is visible unless hidden explicitly
            if task.conditional_tag is None and changes.get("is_hidden") is None:
                task.is_hidden = False
        pins_dates = changes.get("start_date") is not None or changes.get("end_date") is not None
        for key, value in changes.items():
            if value is not None:
                setattr(task, key, value)
        if pins_dates and changes.get("dates_overridden") is None:
            task.dates_overridden = True
        if task.start_date and task.end_date and task.end_date < task.start_date:
            raise ValidationError("end_date must not be before start_date.", reason="invalid_dates")
        if task.status == TaskStatus.DONE and "progress_pct" not in changes:
            task.progress_pct = 100.0
        task.updated_at = _utcnow()
        return task

    def deletion_blockers(
        self,
        task: Task,
        project_tasks: Sequence[Task],
        assignments: Sequence[TaskAssignment],
    ) -> Dict[str, Any]:
        """Empty when the task may be deleted."""
        blockers: Dict[str, Any] = {}
        dependents = [str(t.id) for t in project_tasks if task.id in t.dependencies]
        if dependents:
            blockers["dependent_task_ids"] = dependents
        own = [a for a in assignments if a.task_id == task.id]
        if own:
            blockers["assignment_count"] = len(own)
        return blockers

    @staticmethod
    def _check_numbers(**values: Any) -> None:
        for key in ("duration_days", "offset_days"):
            value = values.get(key)
            if value is not None and (not _is_int(value) or value < 0):
                raise ValidationError(f"{key} must be a non-negative integer.", reason="out_of_range", field=key)
        _check_range("progress_pct", values.get("progress_pct"), 0.0, 100.0)
        _check_range("planned_cost", values.get("planned_cost"), 0.0)
        _check_range("actual_cost", values.get("actual_cost"), 0.0)


# ---------------------------------------------------------------------------
# EventService
# ---------------------------------------------------------------------------

class EventService:
    """
    Creates DomainEvent records for created/updated/deleted entities.
    Delivery to consumers happens outside the engine.
    """

    def record(
        self,
        entity_type: str,
        entity_id: uuid.UUID,
        action: EventAction,
        actor_id: Optional[uuid.UUID] = None,
        project_id: Optional[uuid.UUID] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> DomainEvent:
        """Create and return a domain event (unsaved)."""
        return DomainEvent(
            entity_type=entity_type,
            entity_id=entity_id,
            project_id=project_id,
            action=action,
            actor_id=actor_id,
            payload=payload or {},
            occurred_at=_utcnow(),
        )

    def for_project(self, project_id: uuid.UUID, events: Sequence[DomainEvent]) -> List[DomainEvent]:
        """Return all events for a project, newest first."""
        return sorted(
            [e for e in events if e.project_id == project_id],
            key=lambda e: e.occurred_at,
            reverse=True,
        )


def elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
