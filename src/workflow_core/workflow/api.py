"""Instance orchestrator.

:class:`WorkflowAPI` owns instance lifecycle and task CRUD. Every state-changing
operation on an instance runs under that instance's lock, re-reads the stored
instance, and commits through a single ``update_instance`` call.
"""

from __future__ import annotations

import copy
import logging
import uuid
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from workflow_core.config import WorkflowSettings, build_storage

from .approval import APPROVAL_KEY, ApprovalService
from .concurrency import EscalationTimers, InstanceLocks, TimerFactory, TimerHandle
from .context import ExecutionContext
from .definition import parse_definition, validate_definition
from .engine import WorkflowEngine
from .errors import (
    ActionFailed,
    DefinitionNotFound,
    GuardRejected,
    InstanceNotFound,
    InvalidDefinition,
    InvalidState,
    TaskNotFound,
    TransitionNotFound,
    WorkflowError,
)
from .models import (
    InstanceQuery,
    InstanceStatus,
    StateHistoryEntry,
    TaskQuery,
    TaskStatus,
    TransitionConfig,
    WorkflowDefinition,
    WorkflowInstance,
    WorkflowTask,
    utc_now,
)
from .notifications import NotificationService
from .storage import WorkflowStorage

logger = logging.getLogger(__name__)


class WorkflowAPI:
    """High-level API for definitions, instances and tasks."""

    def __init__(
        self,
        storage: WorkflowStorage | None = None,
        engine: WorkflowEngine | None = None,
        *,
        settings: WorkflowSettings | None = None,
        notifications: NotificationService | None = None,
        timer_factory: TimerFactory | None = None,
    ) -> None:
        self.settings = settings or WorkflowSettings()
        self.storage = storage or build_storage(self.settings)
        self.engine = engine or WorkflowEngine()

        self.notifications = notifications or NotificationService()
        self.notifications.register_actions(self.engine)
        self.approvals = ApprovalService(self)
        self.approvals.register_actions(self.engine)

        self._locks = InstanceLocks()
        self._timers = EscalationTimers(timer_factory)

    @contextmanager
    def locked(self, instance_id: str) -> Iterator[None]:
        """Hold the instance's lock. Re-entrant on the same thread."""

        with self._locks.hold(instance_id):
            yield

    # Definitions

    def register_workflow(
        self, definition: WorkflowDefinition | Mapping[str, Any]
    ) -> WorkflowDefinition:
        """Validate and store a definition.

        Raises:
            InvalidDefinition: listing every violation, or if this name and
                version are already registered.
        """

        if not isinstance(definition, WorkflowDefinition):
            definition = parse_definition(definition)

        errors = validate_definition(definition)
        if self.storage.get_definition(definition.name, definition.version_key) is not None:
            errors.append(
                f"Workflow {definition.name!r} version {definition.version_key} "
                "is already registered"
            )
        if errors:
            raise InvalidDefinition(name=definition.name, errors=errors)

        self.storage.save_definition(definition)
        logger.info(
            "Workflow registered",
            extra={"workflow": definition.name, "version": definition.version_key},
        )
        return definition

    def get_workflow(self, name: str, version: str | int | None = None) -> WorkflowDefinition:
        key = str(version) if version is not None else None
        definition = self.storage.get_definition(name, key)
        if definition is None:
            raise DefinitionNotFound(name=name, version=key)
        return definition

    def list_workflows(self) -> list[WorkflowDefinition]:
        return self.storage.list_definitions()

    # Instances

    def start_workflow(
        self,
        definition_name: str,
        initial_data: Mapping[str, Any] | None = None,
        started_by: str | None = None,
        version: str | int | None = None,
    ) -> WorkflowInstance:
        """Create an instance in the initial state and run its enter actions.

        No history row is written; nothing is persisted if an enter action fails.
        """

        definition = self.get_workflow(definition_name, version)
        started_by = started_by or self.settings.system_principal
        initial = definition.state(definition.initial_state)
        now = utc_now()
        instance_id = f"wf_{uuid.uuid4().hex}"

        context = ExecutionContext(
            instance_id=instance_id,
            definition=definition,
            data=copy.deepcopy(dict(initial_data or {})),
            triggered_by=started_by,
            to_state=initial.name,
            entered_at=now,
        )
        with self.locked(instance_id):
            self.engine.run_actions(initial.on_enter_actions, context)
            instance = WorkflowInstance(
                id=instance_id,
                definition_name=definition.name,
                definition_version=definition.version_key,
                current_state=initial.name,
                data=context.data,
                started_by=started_by,
                started_at=now,
                entered_state_at=now,
            )
            if initial.final:
                instance.status = InstanceStatus.COMPLETED
                instance.completed_by = started_by
                instance.completed_at = now
            self.storage.save_instance(instance)
        if instance.status != InstanceStatus.RUNNING:
            self._locks.discard(instance_id)

        logger.info(
            "Workflow started",
            extra={"instance_id": instance_id, "workflow": definition.name, "state": initial.name},
        )
        context.run_commit_hooks()
        return instance

    def get_instance(self, instance_id: str) -> WorkflowInstance:
        instance = self.storage.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFound(instance_id=instance_id)
        return instance

    def _definition_for(self, instance: WorkflowInstance) -> WorkflowDefinition:
        return self.get_workflow(instance.definition_name, instance.definition_version)

    def get_available_transitions(self, instance_id: str) -> list[str]:
        """Names declared on the current state. Guards are not evaluated."""

        instance = self.get_instance(instance_id)
        if instance.status != InstanceStatus.RUNNING:
            return []
        definition = self._definition_for(instance)
        return list(definition.state(instance.current_state).transitions)

    def can_execute_transition(
        self,
        instance_id: str,
        transition_name: str,
        triggered_by: str | None = None,
        payload: Mapping[str, Any] | None = None,
    ) -> bool:
        """Evaluate guards against a throwaway copy of the instance data."""

        instance = self.storage.get_instance(instance_id)
        if instance is None or instance.status != InstanceStatus.RUNNING:
            return False
        definition = self._definition_for(instance)
        context = self._context_for(
            instance, definition, transition_name, triggered_by, payload, None, utc_now()
        )
        evaluation = self.engine.evaluate_transition(
            definition, instance.current_state, transition_name, context
        )
        return evaluation.allowed

    def execute_transition(
        self,
        instance_id: str,
        transition_name: str,
        triggered_by: str | None = None,
        payload: Mapping[str, Any] | None = None,
        comment: str | None = None,
    ) -> WorkflowInstance:
        """Move an instance along ``transition_name``.

        Raises:
            InstanceNotFound: unknown instance.
            InvalidState: the instance is not running.
            TransitionNotFound: the current state declares no such transition.
            GuardRejected: a guard returned False; names the guard.
            ActionFailed: an action raised; nothing was committed.
        """

        triggered_by = triggered_by or self.settings.system_principal
        with self.locked(instance_id):
            instance, context = self._commit_transition(
                instance_id, transition_name, triggered_by, payload, comment
            )
        if instance.status != InstanceStatus.RUNNING:
            self._locks.discard(instance_id)
        context.run_commit_hooks()
        return instance

    def _context_for(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        transition_name: str,
        triggered_by: str | None,
        payload: Mapping[str, Any] | None,
        comment: str | None,
        now: datetime,
    ) -> ExecutionContext:
        data = copy.deepcopy(instance.data)
        data.update(payload or {})
        return ExecutionContext(
            instance_id=instance.id,
            definition=definition,
            data=data,
            triggered_by=triggered_by or self.settings.system_principal,
            from_state=instance.current_state,
            transition_name=transition_name,
            comment=comment,
            payload=dict(payload or {}),
            entered_at=now,
        )

    def _commit_transition(
        self,
        instance_id: str,
        transition_name: str,
        triggered_by: str,
        payload: Mapping[str, Any] | None,
        comment: str | None,
    ) -> tuple[WorkflowInstance, ExecutionContext]:
        instance = self.get_instance(instance_id)
        if instance.status != InstanceStatus.RUNNING:
            raise InvalidState(
                entity_id=instance_id, status=instance.status.value, operation="transition"
            )

        definition = self._definition_for(instance)
        now = utc_now()
        context = self._context_for(
            instance, definition, transition_name, triggered_by, payload, comment, now
        )
        evaluation = self.engine.evaluate_transition(
            definition, instance.current_state, transition_name, context
        )
        if evaluation.unknown_transition:
            raise TransitionNotFound(state=instance.current_state, transition=transition_name)
        if not evaluation.allowed:
            logger.info(
                "Transition rejected by guard",
                extra={
                    "instance_id": instance_id,
                    "transition": transition_name,
                    "guard": evaluation.failed_guard,
                },
            )
            raise GuardRejected(transition=transition_name, guard=evaluation.failed_guard or "")

        source = definition.state(instance.current_state)
        transition = source.transitions[transition_name]
        target = definition.state(transition.target)
        context.to_state = target.name

        try:
            self.engine.run_actions(source.on_exit_actions, context)
            self.engine.run_actions(transition.actions, context)
            self.engine.run_actions(target.on_enter_actions, context)
        except ActionFailed as e:
            logger.warning(
                "Transition aborted by failing action",
                extra={"instance_id": instance_id, "transition": transition_name, "action": e.action},
            )
            raise

        entry = StateHistoryEntry(
            from_state=source.name,
            to_state=target.name,
            transition_name=transition_name,
            triggered_by=triggered_by,
            timestamp=now,
            comment=comment,
            data=dict(payload) if payload else None,
        )
        patch: dict[str, Any] = {
            "current_state": target.name,
            "data": context.data,
            "history": [*instance.history, entry],
            "entered_state_at": now,
        }
        if target.final:
            patch.update(
                status=InstanceStatus.COMPLETED, completed_by=triggered_by, completed_at=now
            )
        updated = self.storage.update_instance(instance_id, patch)

        self._timers.cancel(instance_id)
        self.approvals.cancel_pending(instance_id, state=source.name)
        if updated.status == InstanceStatus.RUNNING:
            self._schedule_escalation(updated, transition)

        logger.info(
            "Transition committed",
            extra={
                "instance_id": instance_id,
                "transition": transition_name,
                "from_state": source.name,
                "to_state": target.name,
                "status": updated.status.value,
            },
        )
        return updated, context

    def _schedule_escalation(
        self, instance: WorkflowInstance, transition: TransitionConfig
    ) -> None:
        if not self.settings.escalation_enabled:
            return
        if transition.timeout_ms is None or transition.on_timeout_transition is None:
            return
        self._timers.schedule(
            instance_id=instance.id,
            entered_at=instance.entered_state_at,
            state=instance.current_state,
            transition_name=transition.on_timeout_transition,
            delay_ms=transition.timeout_ms,
            fire=self._fire_escalation,
        )

    def _fire_escalation(self, handle: TimerHandle) -> None:
        """Timer callback. A stale timer is a silent no-op."""

        extra = {"instance_id": handle.instance_id, "transition": handle.transition_name}
        with self.locked(handle.instance_id):
            instance = self.storage.get_instance(handle.instance_id)
            if (
                instance is None
                or instance.status != InstanceStatus.RUNNING
                or instance.current_state != handle.state
                or instance.entered_state_at != handle.entered_at
            ):
                logger.debug("Stale escalation timer ignored", extra=extra)
                return
            try:
                self.execute_transition(
                    handle.instance_id,
                    handle.transition_name,
                    self.settings.system_principal,
                    comment=f"Escalated after timeout in state {handle.state}",
                )
            except WorkflowError:
                logger.exception("Escalation transition failed", extra=extra)
                return
        logger.info("Escalation transition fired", extra=extra)

    def pending_escalation(self, instance_id: str) -> TimerHandle | None:
        return self._timers.get(instance_id)

    def abort_workflow(self, instance_id: str, aborted_by: str | None = None) -> WorkflowInstance:
        """Stop an instance out-of-band. Exit actions are not run.

        Raises:
            InvalidState: the instance is not running (including a second abort).
        """

        aborted_by = aborted_by or self.settings.system_principal
        with self.locked(instance_id):
            instance = self.get_instance(instance_id)
            if instance.status != InstanceStatus.RUNNING:
                raise InvalidState(
                    entity_id=instance_id, status=instance.status.value, operation="abort"
                )
            updated = self.storage.update_instance(
                instance_id,
                {
                    "status": InstanceStatus.ABORTED,
                    "aborted_at": utc_now(),
                    "completed_by": aborted_by,
                },
            )
            self._timers.cancel(instance_id)
            cancelled = self.approvals.cancel_pending(instance_id)
        self._locks.discard(instance_id)

        logger.info(
            "Workflow aborted",
            extra={"instance_id": instance_id, "aborted_by": aborted_by, "cancelled_tasks": cancelled},
        )
        return updated

    def fail_workflow(
        self, instance_id: str, error: str, failed_by: str | None = None
    ) -> WorkflowInstance:
        """Mark a running instance as ``error`` (operator intervention)."""

        failed_by = failed_by or self.settings.system_principal
        with self.locked(instance_id):
            instance = self.get_instance(instance_id)
            if instance.status != InstanceStatus.RUNNING:
                raise InvalidState(
                    entity_id=instance_id, status=instance.status.value, operation="fail"
                )
            updated = self.storage.update_instance(
                instance_id,
                {
                    "status": InstanceStatus.ERROR,
                    "error": error,
                    "failed_at": utc_now(),
                    "completed_by": failed_by,
                },
            )
            self._timers.cancel(instance_id)
            self.approvals.cancel_pending(instance_id)
        self._locks.discard(instance_id)

        logger.warning("Workflow marked as failed", extra={"instance_id": instance_id, "error": error})
        return updated

    def query_workflows(
        self, query: InstanceQuery | None = None, **filters: Any
    ) -> list[WorkflowInstance]:
        return self.storage.query_instances(query or InstanceQuery(**filters))

    # Tasks

    def create_task(
        self,
        *,
        instance_id: str,
        name: str,
        assigned_to: str,
        description: str | None = None,
        data: Mapping[str, Any] | None = None,
        due_at: datetime | None = None,
        escalation_target: str | None = None,
    ) -> WorkflowTask:
        instance = self.get_instance(instance_id)
        if instance.status != InstanceStatus.RUNNING:
            raise InvalidState(
                entity_id=instance_id, status=instance.status.value, operation="create task for"
            )
        task = WorkflowTask(
            id=f"task_{uuid.uuid4().hex}",
            instance_id=instance_id,
            name=name,
            description=description,
            assigned_to=assigned_to,
            data=dict(data or {}),
            due_at=due_at,
            escalation_target=escalation_target,
        )
        self.storage.save_task(task)
        logger.info(
            "Task created",
            extra={"task_id": task.id, "instance_id": instance_id, "assigned_to": assigned_to},
        )
        return task

    def get_task(self, task_id: str) -> WorkflowTask:
        task = self.storage.get_task(task_id)
        if task is None:
            raise TaskNotFound(task_id=task_id)
        return task

    def get_instance_tasks(self, instance_id: str) -> list[WorkflowTask]:
        return self.storage.query_tasks(TaskQuery(instance_id=instance_id))

    def query_tasks(self, query: TaskQuery | None = None, **filters: Any) -> list[WorkflowTask]:
        return self.storage.query_tasks(query or TaskQuery(**filters))

    def complete_task(
        self,
        task_id: str,
        decision: Mapping[str, Any] | None = None,
        completed_by: str | None = None,
    ) -> WorkflowTask:
        """Record a decision and drive the instance with it.

        The transition is ``decision["transition"]`` if given, otherwise the
        configured approve/reject transition chosen by ``decision["approved"]``.
        Tasks belonging to an approval chain only fire a transition once their
        chain is decided. If the transition fails the task is restored to
        ``pending`` and the error propagates.

        ``decision["data"]`` is merged into the instance data and
        ``decision["comment"]`` is recorded in history.
        """

        decision = dict(decision or {})
        task = self.get_task(task_id)
        with self.locked(task.instance_id):
            task = self.get_task(task_id)
            if task.status != TaskStatus.PENDING:
                raise InvalidState(entity_id=task_id, status=task.status.value, operation="complete")
            instance = self.get_instance(task.instance_id)
            if instance.status != InstanceStatus.RUNNING:
                raise InvalidState(
                    entity_id=instance.id, status=instance.status.value, operation="complete task for"
                )

            actor = completed_by or task.assigned_to
            completed = self.storage.update_task(
                task_id,
                {
                    "status": TaskStatus.COMPLETED,
                    "completed_at": utc_now(),
                    "completed_by": actor,
                    "result": decision,
                },
            )
            try:
                transition = self._transition_for_decision(instance, completed, decision)
                if transition is not None:
                    self.execute_transition(
                        instance.id,
                        transition,
                        actor,
                        payload=decision.get("data"),
                        comment=decision.get("comment"),
                    )
            except Exception:
                self.storage.update_task(
                    task_id,
                    {
                        "status": TaskStatus.PENDING,
                        "completed_at": None,
                        "completed_by": None,
                        "result": None,
                    },
                )
                raise

        logger.info(
            "Task completed",
            extra={"task_id": task_id, "instance_id": task.instance_id, "transition": transition},
        )
        return self.get_task(task_id)

    def _transition_for_decision(
        self, instance: WorkflowInstance, task: WorkflowTask, decision: Mapping[str, Any]
    ) -> str | None:
        if decision.get("transition"):
            return str(decision["transition"])
        approved = bool(decision.get("approved"))
        if APPROVAL_KEY in task.data:
            return self.approvals.record_decision(instance, task, approved)
        return self.settings.approve_transition if approved else self.settings.reject_transition

    def delegate_task(
        self, task_id: str, delegate_to: str, delegated_by: str, reason: str | None = None
    ) -> WorkflowTask:
        return self.approvals.delegate_task(task_id, delegate_to, delegated_by, reason)

    def escalate_task(
        self,
        task_id: str,
        escalate_to: str,
        reason: str | None = None,
        escalated_by: str | None = None,
    ) -> WorkflowTask:
        return self.approvals.escalate_task(task_id, escalate_to, reason, escalated_by)

    def check_overdue_tasks(self, now: datetime | None = None) -> list[WorkflowTask]:
        return self.approvals.check_overdue_tasks(now)

    def shutdown(self) -> None:
        """Cancel every pending escalation timer."""

        self._timers.cancel_all()
