"""Pydantic models for definitions, instances, history and tasks."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


class ProcessType(str, Enum):
    APPROVAL = "approval"
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    CONDITIONAL = "conditional"
    AUTOLAUNCHED = "autolaunched"


class InstanceStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"
    ERROR = "error"


class TaskStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RefConfig(BaseModel):
    """A parameterised guard or action reference: ``{type, params}``."""

    model_config = ConfigDict(frozen=True)

    type: str
    params: dict[str, Any] = Field(default_factory=dict)


GuardRef = str | RefConfig
ActionRef = str | RefConfig


def ref_name(ref: GuardRef | ActionRef) -> str:
    """Return the registry name a reference points at."""

    return ref if isinstance(ref, str) else ref.type


def ref_params(ref: GuardRef | ActionRef) -> dict[str, Any]:
    return {} if isinstance(ref, str) else dict(ref.params)


class TransitionConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    target: str
    guards: list[GuardRef] = Field(default_factory=list)
    actions: list[ActionRef] = Field(default_factory=list)
    timeout_ms: int | None = None
    on_timeout_transition: str | None = Field(
        default=None,
        description="Transition fired if the instance stays in `target` past `timeout_ms`",
    )
    metadata: dict[str, Any] = Field(default_factory=dict)


class StateConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    initial: bool = False
    final: bool = False
    on_enter_actions: list[ActionRef] = Field(default_factory=list)
    on_exit_actions: list[ActionRef] = Field(default_factory=list)
    transitions: dict[str, TransitionConfig] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)


class WorkflowDefinition(BaseModel):
    """Static description of a process. Immutable once registered."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    process_type: ProcessType = ProcessType.SEQUENTIAL
    version: int | str = 1
    initial_state: str
    states: dict[str, StateConfig]
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def version_key(self) -> str:
        return str(self.version)

    def state(self, name: str) -> StateConfig:
        return self.states[name]


class StateHistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    from_state: str
    to_state: str
    transition_name: str
    triggered_by: str
    timestamp: datetime = Field(default_factory=utc_now)
    comment: str | None = None
    data: dict[str, Any] | None = None


class WorkflowInstance(BaseModel):
    """One running execution of a definition. Owned by :class:`WorkflowAPI`."""

    id: str
    definition_name: str
    definition_version: str
    current_state: str
    status: InstanceStatus = InstanceStatus.RUNNING
    data: dict[str, Any] = Field(default_factory=dict)
    history: list[StateHistoryEntry] = Field(default_factory=list)

    started_by: str
    started_at: datetime = Field(default_factory=utc_now)
    entered_state_at: datetime = Field(default_factory=utc_now)
    completed_by: str | None = None
    completed_at: datetime | None = None
    aborted_at: datetime | None = None
    failed_at: datetime | None = None
    error: str | None = None


class WorkflowTask(BaseModel):
    """A pending human decision tied to exactly one instance."""

    id: str
    instance_id: str
    name: str
    description: str | None = None
    assigned_to: str
    status: TaskStatus = TaskStatus.PENDING
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)

    completed_at: datetime | None = None
    completed_by: str | None = None
    result: dict[str, Any] | None = None

    original_assignee: str | None = None
    delegated_at: datetime | None = None
    delegation_reason: str | None = None

    escalated_to: str | None = None
    escalated_at: datetime | None = None
    escalation_reason: str | None = None
    due_at: datetime | None = None
    escalation_target: str | None = None


InstanceSortField = Literal["started_at", "completed_at", "aborted_at", "entered_state_at"]


class InstanceQuery(BaseModel):
    status: InstanceStatus | list[InstanceStatus] | None = None
    started_by: str | None = None
    definition_name: str | None = None
    sort_by: InstanceSortField | None = None
    sort_order: Literal["asc", "desc"] = "desc"
    limit: int | None = Field(default=None, ge=0)
    skip: int = Field(default=0, ge=0)


class TaskQuery(BaseModel):
    instance_id: str | None = None
    status: TaskStatus | list[TaskStatus] | None = None
    assigned_to: str | None = None


def _statuses(value: Enum | list[Any] | None) -> list[Any] | None:
    if value is None:
        return None
    return value if isinstance(value, list) else [value]


def apply_instance_query(
    instances: list[WorkflowInstance], query: InstanceQuery
) -> list[WorkflowInstance]:
    """Filter, sort and paginate instances. Shared by the storage backends."""

    results = list(instances)
    if query.definition_name:
        results = [i for i in results if i.definition_name == query.definition_name]
    statuses = _statuses(query.status)
    if statuses is not None:
        results = [i for i in results if i.status in statuses]
    if query.started_by:
        results = [i for i in results if i.started_by == query.started_by]

    if query.sort_by:
        key = query.sort_by
        present = [i for i in results if getattr(i, key) is not None]
        missing = [i for i in results if getattr(i, key) is None]
        present.sort(key=lambda i: getattr(i, key), reverse=query.sort_order == "desc")
        # Missing values sort last ascending, first descending.
        results = present + missing if query.sort_order == "asc" else missing + present

    results = results[query.skip :]
    if query.limit is not None:
        results = results[: query.limit]
    return results


def apply_task_query(tasks: list[WorkflowTask], query: TaskQuery) -> list[WorkflowTask]:
    results = list(tasks)
    if query.instance_id:
        results = [t for t in results if t.instance_id == query.instance_id]
    statuses = _statuses(query.status)
    if statuses is not None:
        results = [t for t in results if t.status in statuses]
    if query.assigned_to:
        results = [t for t in results if t.assigned_to == query.assigned_to]
    return sorted(results, key=lambda t: t.created_at)
