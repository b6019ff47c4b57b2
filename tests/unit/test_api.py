"""Orchestrator behaviour: lifecycle, history, atomicity and queries."""

from __future__ import annotations

from typing import Any

import pytest

from workflow_core.workflow.api import WorkflowAPI
from workflow_core.workflow.errors import (
    ActionFailed,
    DefinitionNotFound,
    GuardRejected,
    InstanceNotFound,
    InvalidDefinition,
    InvalidState,
    TaskNotFound,
    TransitionNotFound,
)
from workflow_core.workflow.models import InstanceQuery, InstanceStatus, TaskStatus

DOCUMENT = {"title": "Q3 report", "content": "Numbers", "author": "alice"}


def _submitted(api: WorkflowAPI) -> str:
    instance = api.start_workflow("document_approval", DOCUMENT, started_by="alice")
    api.execute_transition(instance.id, "submit", "alice")
    return instance.id


def test_happy_path_approval(document_api: WorkflowAPI) -> None:
    """Test submit then approve completes the instance with two history rows."""
    instance = document_api.start_workflow("document_approval", DOCUMENT, started_by="alice")
    assert instance.id.startswith("wf_")
    assert instance.current_state == "draft"
    assert instance.status == InstanceStatus.RUNNING
    assert instance.history == []

    submitted = document_api.execute_transition(instance.id, "submit", "alice")
    assert submitted.current_state == "pending_approval"

    approved = document_api.execute_transition(
        instance.id, "approve", "manager", comment="Looks good"
    )
    assert approved.current_state == "approved"
    assert approved.status == InstanceStatus.COMPLETED
    assert approved.completed_by == "manager"
    assert approved.completed_at is not None
    assert [(h.from_state, h.to_state, h.transition_name) for h in approved.history] == [
        ("draft", "pending_approval", "submit"),
        ("pending_approval", "approved", "approve"),
    ]
    assert approved.history[1].triggered_by == "manager"
    assert approved.history[1].comment == "Looks good"
    assert document_api.get_available_transitions(instance.id) == []


def test_guard_blocks_incomplete_document(document_api: WorkflowAPI) -> None:
    """Test a failing guard is reported by name and leaves the instance in place."""
    instance = document_api.start_workflow(
        "document_approval", {"title": "Draft", "content": "Content"}, started_by="alice"
    )

    with pytest.raises(GuardRejected) as excinfo:
        document_api.execute_transition(instance.id, "submit", "alice")

    assert excinfo.value.guard == "has_required_fields"
    stored = document_api.get_instance(instance.id)
    assert stored.current_state == "draft"
    assert stored.history == []


def test_payload_is_merged_and_recorded(document_api: WorkflowAPI) -> None:
    """Test the transition payload reaches guards, data and history."""
    instance = document_api.start_workflow(
        "document_approval", {"title": "Draft", "content": "Content"}, started_by="alice"
    )

    updated = document_api.execute_transition(
        instance.id, "submit", "alice", payload={"author": "alice"}
    )

    assert updated.current_state == "pending_approval"
    assert updated.data["author"] == "alice"
    assert updated.history[0].data == {"author": "alice"}


def test_history_chains_from_state_to_previous_to_state(document_api: WorkflowAPI) -> None:
    """Test every history row starts where the previous one ended."""
    instance_id = _submitted(document_api)
    final = document_api.execute_transition(instance_id, "reject", "manager")

    previous = "draft"
    for entry in final.history:
        assert entry.from_state == previous
        previous = entry.to_state
    assert previous == final.current_state


def test_unknown_transition(document_api: WorkflowAPI) -> None:
    """Test a transition not declared on the current state."""
    instance = document_api.start_workflow("document_approval", DOCUMENT, started_by="alice")

    with pytest.raises(TransitionNotFound) as excinfo:
        document_api.execute_transition(instance.id, "approve", "alice")

    assert excinfo.value.state == "draft"
    assert excinfo.value.to_dict()["kind"] == "TransitionNotFound"


def test_unknown_instance(document_api: WorkflowAPI) -> None:
    """Test operations on an instance id that does not exist."""
    with pytest.raises(InstanceNotFound):
        document_api.execute_transition("wf_missing", "submit")
    with pytest.raises(InstanceNotFound):
        document_api.get_instance("wf_missing")
    assert document_api.can_execute_transition("wf_missing", "submit") is False


def test_unknown_definition(api: WorkflowAPI) -> None:
    """Test starting a workflow that was never registered."""
    with pytest.raises(DefinitionNotFound):
        api.start_workflow("nope")


def test_transition_on_completed_instance(document_api: WorkflowAPI) -> None:
    """Test a completed instance accepts no further transitions."""
    instance_id = _submitted(document_api)
    document_api.execute_transition(instance_id, "approve", "manager")

    with pytest.raises(InvalidState) as excinfo:
        document_api.execute_transition(instance_id, "reject", "manager")

    assert excinfo.value.status == "completed"


def test_failing_action_commits_nothing(api: WorkflowAPI) -> None:
    """Test a failing action leaves state, data, history and hooks untouched."""
    side_effects: list[str] = []

    def mutate(ctx: Any, _params: dict[str, Any]) -> None:
        ctx.set_data("touched", True)
        ctx.on_commit(lambda: side_effects.append("committed"))

    def explode(_ctx: Any, _params: dict[str, Any]) -> None:
        raise RuntimeError("boom")

    api.engine.register_action("mutate", mutate)
    api.engine.register_action("explode", explode)
    api.register_workflow(
        {
            "name": "fragile",
            "states": {
                "a": {
                    "initial": True,
                    "on_exit": ["mutate"],
                    "transitions": {"go": {"target": "b", "actions": ["explode"]}},
                },
                "b": {"final": True},
            },
        }
    )
    instance = api.start_workflow("fragile", {"n": 1})

    with pytest.raises(ActionFailed) as excinfo:
        api.execute_transition(instance.id, "go")

    assert excinfo.value.action == "explode"
    stored = api.get_instance(instance.id)
    assert stored.current_state == "a"
    assert stored.data == {"n": 1}
    assert stored.history == []
    assert side_effects == []


def test_actions_run_exit_transition_enter(api: WorkflowAPI) -> None:
    """Test action phases run exit, transition, then enter."""
    order: list[str] = []
    for name in ("exit_a", "on_go", "enter_b"):
        api.engine.register_action(name, lambda _ctx, _p, name=name: order.append(name))
    api.register_workflow(
        {
            "name": "ordered",
            "states": {
                "a": {
                    "initial": True,
                    "on_exit": ["exit_a"],
                    "transitions": {"go": {"target": "b", "actions": ["on_go"]}},
                },
                "b": {"final": True, "on_enter": ["enter_b"]},
            },
        }
    )

    api.execute_transition(api.start_workflow("ordered").id, "go")

    assert order == ["exit_a", "on_go", "enter_b"]


def test_start_runs_initial_enter_actions(api: WorkflowAPI) -> None:
    """Test enter actions of the initial state run on start."""
    api.engine.register_action("stamp", lambda ctx, _p: ctx.set_data("stamped", True))
    api.register_workflow(
        {
            "name": "stamped",
            "states": {
                "a": {"initial": True, "on_enter": ["stamp"], "transitions": {"go": "b"}},
                "b": {"final": True},
            },
        }
    )

    instance = api.start_workflow("stamped", started_by="bob")

    assert instance.data == {"stamped": True}
    assert api.get_instance(instance.id).data == {"stamped": True}


def test_start_does_not_persist_when_enter_action_fails(api: WorkflowAPI) -> None:
    """Test a failing enter action on start stores no instance."""
    api.engine.register_action("explode", lambda _ctx, _p: 1 / 0)
    api.register_workflow(
        {
            "name": "doomed",
            "states": {
                "a": {"initial": True, "on_enter": ["explode"], "transitions": {"go": "b"}},
                "b": {"final": True},
            },
        }
    )

    with pytest.raises(ActionFailed):
        api.start_workflow("doomed")

    assert api.query_workflows() == []


def test_initial_final_state_completes_immediately(api: WorkflowAPI) -> None:
    """Test an instance starting in a final state is completed at once."""
    api.register_workflow({"name": "noop", "states": {"only": {"initial": True, "final": True}}})

    instance = api.start_workflow("noop", started_by="bob")

    assert instance.status == InstanceStatus.COMPLETED
    assert instance.completed_by == "bob"


def test_start_copies_initial_data(document_api: WorkflowAPI) -> None:
    """Test the caller's initial data is copied, not shared."""
    data = {"title": "T", "content": "C", "author": "A", "tags": ["x"]}
    instance = document_api.start_workflow("document_approval", data)

    data["tags"].append("y")

    assert document_api.get_instance(instance.id).data["tags"] == ["x"]


def test_can_execute_transition_has_no_side_effects(document_api: WorkflowAPI) -> None:
    """Test the dry-run check evaluates guards without committing."""
    calls: list[str] = []

    def tracking(ctx: Any, params: dict[str, Any]) -> bool:
        calls.append("guard")
        ctx.set_data("mutated", True)
        return True

    document_api.engine.register_guard("has_required_fields", tracking)
    instance = document_api.start_workflow("document_approval", DOCUMENT)

    assert document_api.can_execute_transition(instance.id, "submit", "alice")
    assert not document_api.can_execute_transition(instance.id, "approve", "alice")
    stored = document_api.get_instance(instance.id)
    assert stored.current_state == "draft"
    assert "mutated" not in stored.data
    assert calls == ["guard"]


def test_abort_workflow(document_api: WorkflowAPI) -> None:
    """Test abort stamps status, time and principal."""
    instance_id = _submitted(document_api)

    aborted = document_api.abort_workflow(instance_id, "admin")

    assert aborted.status == InstanceStatus.ABORTED
    assert aborted.aborted_at is not None
    assert aborted.completed_by == "admin"
    assert aborted.current_state == "pending_approval"
    assert document_api.get_available_transitions(instance_id) == []


def test_second_abort_is_rejected_and_keeps_timestamp(document_api: WorkflowAPI) -> None:
    """Test aborting twice is rejected and keeps the first abort time."""
    instance_id = _submitted(document_api)
    first = document_api.abort_workflow(instance_id, "admin")

    with pytest.raises(InvalidState) as excinfo:
        document_api.abort_workflow(instance_id, "admin")

    assert str(excinfo.value) == f"Cannot abort {instance_id} in status: aborted"
    assert document_api.get_instance(instance_id).aborted_at == first.aborted_at


def test_abort_skips_exit_actions(api: WorkflowAPI) -> None:
    """Test abort does not run exit actions."""
    ran: list[str] = []
    api.engine.register_action("cleanup", lambda _ctx, _p: ran.append("cleanup"))
    api.register_workflow(
        {
            "name": "abortable",
            "states": {
                "a": {"initial": True, "on_exit": ["cleanup"], "transitions": {"go": "b"}},
                "b": {"final": True},
            },
        }
    )

    api.abort_workflow(api.start_workflow("abortable").id)

    assert ran == []


def test_fail_workflow(document_api: WorkflowAPI) -> None:
    """Test an operator can move a running instance to error."""
    instance_id = _submitted(document_api)

    failed = document_api.fail_workflow(instance_id, "downstream system rejected payload", "ops")

    assert failed.status == InstanceStatus.ERROR
    assert failed.error == "downstream system rejected payload"
    assert failed.failed_at is not None
    with pytest.raises(InvalidState):
        document_api.execute_transition(instance_id, "approve", "manager")


def test_register_rejects_invalid_and_duplicate_definitions(
    api: WorkflowAPI, document_definition: dict[str, Any]
) -> None:
    """Test registration rejects invalid definitions and repeated versions."""
    api.register_workflow(document_definition)

    with pytest.raises(InvalidDefinition) as excinfo:
        api.register_workflow(document_definition)
    assert "already registered" in excinfo.value.errors[0]

    with pytest.raises(InvalidDefinition):
        api.register_workflow({"name": "bad", "states": {"a": {"initial": True}}})


def test_instances_stay_pinned_to_their_version(
    document_api: WorkflowAPI, document_definition: dict[str, Any]
) -> None:
    """Test instances keep the definition version they started on."""
    old = document_api.start_workflow("document_approval", DOCUMENT)
    v2 = {**document_definition, "version": "2.0.0"}
    v2["states"] = {
        **document_definition["states"],
        "pending_approval": {"transitions": {"approve": "approved"}},
    }
    document_api.register_workflow(v2)
    new = document_api.start_workflow("document_approval", DOCUMENT)

    assert old.definition_version == "1.0.0"
    assert new.definition_version == "2.0.0"
    assert document_api.get_workflow("document_approval").version == "2.0.0"
    assert [d.version for d in document_api.list_workflows()] == ["2.0.0"]

    document_api.execute_transition(old.id, "submit", "alice")
    document_api.execute_transition(new.id, "submit", "alice")
    assert document_api.get_available_transitions(old.id) == ["approve", "reject"]
    assert document_api.get_available_transitions(new.id) == ["approve"]


def test_query_workflows_filters_sorts_and_limits(document_api: WorkflowAPI) -> None:
    """Test instance queries with filters, sort order and pagination."""
    first = document_api.start_workflow("document_approval", DOCUMENT, started_by="alice")
    second = document_api.start_workflow("document_approval", DOCUMENT, started_by="bob")
    third = document_api.start_workflow("document_approval", DOCUMENT, started_by="alice")
    document_api.abort_workflow(second.id)

    running = document_api.query_workflows(status=InstanceStatus.RUNNING)
    assert {i.id for i in running} == {first.id, third.id}

    by_alice = document_api.query_workflows(
        InstanceQuery(started_by="alice", sort_by="started_at", sort_order="asc")
    )
    assert [i.id for i in by_alice] == [first.id, third.id]

    newest = document_api.query_workflows(sort_by="started_at", sort_order="desc", limit=1)
    assert [i.id for i in newest] == [third.id]

    by_abort = document_api.query_workflows(sort_by="aborted_at", sort_order="asc")
    assert by_abort[0].id == second.id

    assert document_api.query_workflows(definition_name="other") == []


def test_complete_task_fires_approve_transition(document_api: WorkflowAPI) -> None:
    """Test an approved task drives the approve transition."""
    instance_id = _submitted(document_api)
    task = document_api.create_task(
        instance_id=instance_id, name="review", assigned_to="manager"
    )

    completed = document_api.complete_task(
        task.id, {"approved": True, "comment": "ship it", "data": {"score": 5}}
    )

    assert completed.status == TaskStatus.COMPLETED
    assert completed.completed_by == "manager"
    instance = document_api.get_instance(instance_id)
    assert instance.current_state == "approved"
    assert instance.data["score"] == 5
    assert instance.history[-1].comment == "ship it"
    assert instance.history[-1].triggered_by == "manager"


def test_complete_task_rejects_by_default(document_api: WorkflowAPI) -> None:
    """Test a declined task drives the reject transition."""
    instance_id = _submitted(document_api)
    task = document_api.create_task(instance_id=instance_id, name="review", assigned_to="m")

    document_api.complete_task(task.id, {"approved": False}, completed_by="deputy")

    assert document_api.get_instance(instance_id).current_state == "rejected"
    assert document_api.get_task(task.id).completed_by == "deputy"


def test_complete_task_with_explicit_transition(document_api: WorkflowAPI) -> None:
    """Test a decision may name the transition to fire."""
    instance = document_api.start_workflow("document_approval", DOCUMENT)
    task = document_api.create_task(instance_id=instance.id, name="prepare", assigned_to="alice")

    document_api.complete_task(task.id, {"transition": "submit"})

    assert document_api.get_instance(instance.id).current_state == "pending_approval"


def test_complete_task_rolls_back_when_transition_fails(document_api: WorkflowAPI) -> None:
    """Test the task returns to pending when its transition fails."""
    instance = document_api.start_workflow("document_approval", {"title": "only"})
    task = document_api.create_task(instance_id=instance.id, name="prepare", assigned_to="alice")

    with pytest.raises(GuardRejected):
        document_api.complete_task(task.id, {"transition": "submit"})

    restored = document_api.get_task(task.id)
    assert restored.status == TaskStatus.PENDING
    assert restored.completed_at is None
    assert restored.result is None


def test_complete_task_twice_is_rejected(document_api: WorkflowAPI) -> None:
    """Test a completed task cannot be completed again."""
    instance_id = _submitted(document_api)
    task = document_api.create_task(instance_id=instance_id, name="review", assigned_to="m")
    document_api.complete_task(task.id, {"approved": True})

    with pytest.raises(InvalidState):
        document_api.complete_task(task.id, {"approved": True})


def test_task_errors(document_api: WorkflowAPI) -> None:
    """Test task lookups and creation against missing or stopped instances."""
    with pytest.raises(TaskNotFound):
        document_api.get_task("task_missing")
    with pytest.raises(InstanceNotFound):
        document_api.create_task(instance_id="wf_missing", name="x", assigned_to="y")

    instance_id = _submitted(document_api)
    document_api.abort_workflow(instance_id)
    with pytest.raises(InvalidState):
        document_api.create_task(instance_id=instance_id, name="x", assigned_to="y")


def test_query_tasks(document_api: WorkflowAPI) -> None:
    """Test task queries by instance, assignee and status."""
    instance_id = _submitted(document_api)
    a = document_api.create_task(instance_id=instance_id, name="a", assigned_to="ann")
    b = document_api.create_task(instance_id=instance_id, name="b", assigned_to="ben")

    assert [t.id for t in document_api.get_instance_tasks(instance_id)] == [a.id, b.id]
    assert [t.id for t in document_api.query_tasks(assigned_to="ben")] == [b.id]
    assert document_api.query_tasks(status=TaskStatus.COMPLETED) == []


def test_abort_cancels_pending_tasks(document_api: WorkflowAPI) -> None:
    """Test abort cancels every pending task of the instance."""
    instance_id = _submitted(document_api)
    task = document_api.create_task(instance_id=instance_id, name="review", assigned_to="m")

    document_api.abort_workflow(instance_id)

    assert document_api.get_task(task.id).status == TaskStatus.CANCELLED


def test_instance_locks_are_released_once_terminal(document_api: WorkflowAPI) -> None:
    """Test the per-instance lock registry only keeps running instances."""
    completed = _submitted(document_api)
    aborted = _submitted(document_api)
    failed = _submitted(document_api)
    running = _submitted(document_api)
    assert len(document_api._locks) == 4

    document_api.execute_transition(completed, "approve", "manager")
    document_api.abort_workflow(aborted)
    document_api.fail_workflow(failed, "broken")

    assert len(document_api._locks) == 1
    document_api.execute_transition(running, "reject", "manager")
    assert len(document_api._locks) == 0


def test_start_into_final_state_keeps_no_lock(api: WorkflowAPI) -> None:
    """Test an instance that completes on start leaves no lock behind."""
    api.register_workflow({"name": "noop", "states": {"only": {"initial": True, "final": True}}})

    api.start_workflow("noop")

    assert len(api._locks) == 0


def test_builtin_actions_are_registered(api: WorkflowAPI) -> None:
    """Test the notification and approval actions are available to every definition."""
    assert api.engine.has_action("notify")
    assert api.engine.has_action("request_approval")
