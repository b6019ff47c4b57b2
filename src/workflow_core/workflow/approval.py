"""Multi-level approval chains, delegation and task escalation.

The service is a client of :class:`~workflow_core.workflow.api.WorkflowAPI`: it
creates tasks through it and lets it fire the terminal approve/reject
transitions. It never moves an instance by itself.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, model_validator

from .context import ExecutionContext
from .errors import InvalidState, TaskNotFound
from .models import (
    TaskQuery,
    TaskStatus,
    WorkflowDefinition,
    WorkflowInstance,
    WorkflowTask,
    utc_now,
)

if TYPE_CHECKING:
    from .api import WorkflowAPI
    from .engine import WorkflowEngine

logger = logging.getLogger(__name__)

APPROVAL_KEY = "approval"


class ApprovalLevel(BaseModel):
    level: int
    approvers: list[str] = Field(min_length=1)
    description: str | None = None
    required: bool = True
    parallel: bool = True
    unanimous: bool = True
    escalation_target: str | None = None
    escalation_timeout_ms: int | None = Field(default=None, gt=0)

    @model_validator(mode="before")
    @classmethod
    def _single_approver(cls, data: Any) -> Any:
        if isinstance(data, dict) and "approvers" not in data and "approver" in data:
            data = {**data, "approvers": [data["approver"]]}
        return data


class ApprovalChain(BaseModel):
    levels: list[ApprovalLevel] = Field(min_length=1)
    approve_transition: str | None = None
    reject_transition: str | None = None


def chain_for_state(definition: WorkflowDefinition, state_name: str) -> ApprovalChain | None:
    """Read the chain for ``state_name`` from state metadata, then definition metadata."""

    state = definition.states.get(state_name)
    raw = state.metadata.get(APPROVAL_KEY) if state is not None else None
    if raw is None:
        raw = definition.metadata.get("approval_chain")
    if raw is None:
        return None
    return ApprovalChain.model_validate(raw)


class ApprovalService:
    def __init__(self, api: WorkflowAPI) -> None:
        self._api = api

    def register_actions(self, engine: WorkflowEngine, name: str = "request_approval") -> None:
        """Install the action that opens the first level on entering a state."""

        def _request_approval(context: ExecutionContext, params: dict[str, Any]) -> None:
            state = context.to_state
            if state is None:
                raise ValueError("request_approval must run on state entry")
            chain = chain_for_state(context.definition, state)
            if params.get("levels"):
                chain = ApprovalChain.model_validate(params)
            if chain is None:
                raise ValueError(f'No approval chain configured for state "{state}"')
            entered_at = context.entered_at
            instance_id = context.instance_id
            context.on_commit(
                lambda: self.open_level(
                    instance_id=instance_id, state=state, run=entered_at, chain=chain, index=0
                )
            )

        engine.register_action(name, _request_approval)

    def open_level(
        self,
        *,
        instance_id: str,
        state: str,
        run: datetime,
        chain: ApprovalChain,
        index: int,
        approver_index: int | None = None,
    ) -> list[WorkflowTask]:
        """Create the tasks for one level (or one approver of a sequential level)."""

        level = chain.levels[index]
        if approver_index is not None:
            picks = [approver_index]
        elif level.parallel:
            picks = list(range(len(level.approvers)))
        else:
            picks = [0]

        now = utc_now()
        due_at = (
            now + timedelta(milliseconds=level.escalation_timeout_ms)
            if level.escalation_timeout_ms
            else None
        )
        tasks = []
        for i in picks:
            tasks.append(
                self._api.create_task(
                    instance_id=instance_id,
                    name=f"{state}_approval_level_{level.level}",
                    description=level.description
                    or f"Approval required at level {level.level}",
                    assigned_to=level.approvers[i],
                    data={
                        APPROVAL_KEY: {
                            "state": state,
                            "run": run.isoformat(),
                            "index": index,
                            "level": level.level,
                            "approver_index": i,
                            "chain": chain.model_dump(mode="json"),
                        }
                    },
                    due_at=due_at,
                    escalation_target=level.escalation_target,
                )
            )
        logger.info(
            "Approval level opened",
            extra={"instance_id": instance_id, "state": state, "level": level.level},
        )
        return tasks

    def record_decision(
        self,
        instance: WorkflowInstance,
        task: WorkflowTask,
        approved: bool,
    ) -> str | None:
        """Advance the chain after ``task`` was completed.

        Returns the transition to fire, or None while the chain is still open.
        The caller holds the instance lock.
        """

        meta = task.data[APPROVAL_KEY]
        chain = ApprovalChain.model_validate(meta["chain"])
        settings = self._api.settings
        approve = chain.approve_transition or settings.approve_transition
        reject = chain.reject_transition or settings.reject_transition

        if instance.current_state != meta["state"]:
            logger.info(
                "Approval decision for a state the instance already left",
                extra={"instance_id": instance.id, "task_id": task.id},
            )
            return None

        index = meta["index"]
        level = chain.levels[index]
        if not approved and level.required:
            return reject

        siblings = self._level_tasks(instance.id, meta["run"], index)
        pending = [t for t in siblings if t.status == TaskStatus.PENDING]
        if not level.unanimous:
            # First responder decides; leaving the state cancels the rest otherwise.
            if index + 1 < len(chain.levels):
                self._cancel(pending)
            return self._advance(instance.id, meta, chain, approve)

        if pending:
            return None
        if not level.parallel and meta["approver_index"] + 1 < len(level.approvers):
            self.open_level(
                instance_id=instance.id,
                state=meta["state"],
                run=datetime.fromisoformat(meta["run"]),
                chain=chain,
                index=index,
                approver_index=meta["approver_index"] + 1,
            )
            return None
        return self._advance(instance.id, meta, chain, approve)

    def _advance(
        self, instance_id: str, meta: dict[str, Any], chain: ApprovalChain, approve: str
    ) -> str | None:
        next_index = meta["index"] + 1
        if next_index >= len(chain.levels):
            return approve
        self.open_level(
            instance_id=instance_id,
            state=meta["state"],
            run=datetime.fromisoformat(meta["run"]),
            chain=chain,
            index=next_index,
        )
        return None

    def _level_tasks(self, instance_id: str, run: str, index: int) -> list[WorkflowTask]:
        return [
            t
            for t in self._api.storage.query_tasks(TaskQuery(instance_id=instance_id))
            if APPROVAL_KEY in t.data
            and t.data[APPROVAL_KEY]["run"] == run
            and t.data[APPROVAL_KEY]["index"] == index
        ]

    def _cancel(self, tasks: Iterable[WorkflowTask]) -> None:
        for task in tasks:
            self._api.storage.update_task(task.id, {"status": TaskStatus.CANCELLED})

    def cancel_pending(self, instance_id: str, state: str | None = None) -> int:
        """Cancel pending tasks of an instance.

        With ``state`` only the approval tasks opened for that state are cancelled.
        """

        pending = self._api.storage.query_tasks(
            TaskQuery(instance_id=instance_id, status=TaskStatus.PENDING)
        )
        if state is not None:
            pending = [
                t for t in pending if t.data.get(APPROVAL_KEY, {}).get("state") == state
            ]
        self._cancel(pending)
        return len(pending)

    def delegate_task(
        self, task_id: str, delegate_to: str, delegated_by: str, reason: str | None = None
    ) -> WorkflowTask:
        """Reassign a pending task. Not a decision: the chain does not move."""

        task = self._pending_task(task_id, "delegate")
        with self._api.locked(task.instance_id):
            task = self._pending_task(task_id, "delegate")
            updated = self._api.storage.update_task(
                task_id,
                {
                    "assigned_to": delegate_to,
                    "original_assignee": task.original_assignee or task.assigned_to,
                    "delegated_at": utc_now(),
                    "delegation_reason": reason,
                },
            )
        logger.info(
            "Task delegated",
            extra={"task_id": task_id, "delegate_to": delegate_to, "delegated_by": delegated_by},
        )
        return updated

    def escalate_task(
        self,
        task_id: str,
        escalate_to: str,
        reason: str | None = None,
        escalated_by: str | None = None,
        automatic: bool = False,
    ) -> WorkflowTask:
        """Reassign a pending task to a higher authority."""

        task = self._pending_task(task_id, "escalate")
        with self._api.locked(task.instance_id):
            task = self._pending_task(task_id, "escalate")
            if reason is None and automatic:
                reason = "Automatic escalation due to timeout"
            updated = self._api.storage.update_task(
                task_id,
                {
                    "assigned_to": escalate_to,
                    "original_assignee": task.original_assignee or task.assigned_to,
                    "escalated_to": escalate_to,
                    "escalated_at": utc_now(),
                    "escalation_reason": reason,
                },
            )
        logger.info(
            "Task escalated",
            extra={
                "task_id": task_id,
                "escalate_to": escalate_to,
                "escalated_by": escalated_by or self._api.settings.system_principal,
            },
        )
        return updated

    def check_overdue_tasks(self, now: datetime | None = None) -> list[WorkflowTask]:
        """Escalate pending tasks past their due date that have an escalation target."""

        now = now or utc_now()
        escalated = []
        for task in self._api.storage.query_tasks(TaskQuery(status=TaskStatus.PENDING)):
            if task.due_at is None or task.escalation_target is None:
                continue
            if task.escalated_at is not None or task.due_at > now:
                continue
            escalated.append(
                self.escalate_task(
                    task.id,
                    task.escalation_target,
                    reason=f"Automatic escalation - task overdue since {task.due_at.isoformat()}",
                    automatic=True,
                )
            )
        return escalated

    def get_approval_history(self, instance_id: str) -> list[WorkflowTask]:
        """Approval tasks of an instance, decided ones first in decision order."""

        tasks = [
            t
            for t in self._api.storage.query_tasks(TaskQuery(instance_id=instance_id))
            if APPROVAL_KEY in t.data
        ]
        decided = sorted(
            (t for t in tasks if t.completed_at is not None), key=lambda t: t.completed_at
        )
        return decided + [t for t in tasks if t.completed_at is None]

    def _pending_task(self, task_id: str, operation: str) -> WorkflowTask:
        task = self._api.storage.get_task(task_id)
        if task is None:
            raise TaskNotFound(task_id=task_id)
        if task.status != TaskStatus.PENDING:
            raise InvalidState(entity_id=task_id, status=task.status.value, operation=operation)
        return task
