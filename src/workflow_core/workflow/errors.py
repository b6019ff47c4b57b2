"""Structured workflow errors.

Every rejection carries a ``kind`` and the fields a caller needs to render it,
so the API layer never has to parse messages.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field


@dataclass(eq=False, slots=True)
class WorkflowError(Exception):
    """Base class for all workflow errors."""

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict[str, object]:
        out: dict[str, object] = {"kind": self.kind, "message": str(self)}
        out.update(asdict(self))
        return out


@dataclass(eq=False, slots=True)
class InvalidDefinition(WorkflowError):
    """A definition failed structural validation."""

    name: str
    errors: list[str] = field(default_factory=list)

    def __str__(self) -> str:
        return f"Invalid workflow definition {self.name!r}: " + "; ".join(self.errors)


@dataclass(eq=False, slots=True)
class InvalidFlow(WorkflowError):
    """A flow graph failed structural validation."""

    name: str
    errors: list[str] = field(default_factory=list)

    def __str__(self) -> str:
        return f"Invalid flow {self.name!r}: " + "; ".join(self.errors)


@dataclass(eq=False, slots=True)
class DefinitionNotFound(WorkflowError):
    name: str
    version: str | None = None

    def __str__(self) -> str:
        if self.version is None:
            return f"Workflow definition not found: {self.name}"
        return f"Workflow definition not found: {self.name} v{self.version}"


@dataclass(eq=False, slots=True)
class InstanceNotFound(WorkflowError):
    instance_id: str

    def __str__(self) -> str:
        return f"Workflow instance not found: {self.instance_id}"


@dataclass(eq=False, slots=True)
class TaskNotFound(WorkflowError):
    task_id: str

    def __str__(self) -> str:
        return f"Task not found: {self.task_id}"


@dataclass(eq=False, slots=True)
class InvalidState(WorkflowError):
    """An operation was attempted on an instance or task in the wrong status."""

    entity_id: str
    status: str
    operation: str

    def __str__(self) -> str:
        return f"Cannot {self.operation} {self.entity_id} in status: {self.status}"


@dataclass(eq=False, slots=True)
class TransitionNotFound(WorkflowError):
    state: str
    transition: str

    def __str__(self) -> str:
        return f'Transition "{self.transition}" not available in state "{self.state}"'


@dataclass(eq=False, slots=True)
class GuardRejected(WorkflowError):
    transition: str
    guard: str

    def __str__(self) -> str:
        return f'Transition "{self.transition}" blocked by guard "{self.guard}"'


@dataclass(eq=False, slots=True)
class ActionFailed(WorkflowError):
    """An action raised; the transition was not committed.

    The original exception is available as ``__cause__``.
    """

    action: str
    cause: str

    def __str__(self) -> str:
        return f'Action "{self.action}" failed: {self.cause}'
