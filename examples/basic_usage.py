#!/usr/bin/env python3
"""Programmatic expense-approval example.

This demonstrates using the workflow components directly:

* register a definition with a guard, a notification and a two-level approval chain
* start an instance and submit it
* complete the approval tasks and inspect the history
"""

from __future__ import annotations

import argparse
from typing import Sequence

from workflow_core.config import WorkflowSettings
from workflow_core.logging import configure_logging
from workflow_core.workflow.api import WorkflowAPI
from workflow_core.workflow.notifications import LoggingNotificationHandler
from workflow_core.workflow.storage import InMemoryWorkflowStorage

EXPENSE_APPROVAL = {
    "name": "expense_approval",
    "type": "approval",
    "version": 1,
    "states": {
        "draft": {
            "initial": True,
            "transitions": {
                "submit": {"target": "pending_approval", "guards": ["has_amount"]},
            },
        },
        "pending_approval": {
            "on_enter": [
                "request_approval",
                {
                    "type": "notify",
                    "params": {
                        "channel": "email",
                        "recipients": ["finance@example.com"],
                        "subject": "Expense {{title}} awaits approval",
                        "template": "{{author}} submitted {{title}} for {{amount}}",
                    },
                },
            ],
            "transitions": {"approve": "approved", "reject": "rejected"},
            "metadata": {
                "approval": {
                    "levels": [
                        {"level": 1, "approver": "manager@example.com"},
                        {
                            "level": 2,
                            "approvers": ["cfo@example.com", "controller@example.com"],
                            "unanimous": False,
                        },
                    ]
                }
            },
        },
        "approved": {"final": True},
        "rejected": {"final": True},
    },
}


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run an expense approval end to end.")
    parser.add_argument("--amount", type=float, default=120.0, help="Expense amount")
    parser.add_argument("--reject", action="store_true", help="Reject at the first level")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    settings = WorkflowSettings()
    configure_logging(settings.log_level, json_output=settings.json_logs)

    api = WorkflowAPI(InMemoryWorkflowStorage(), settings=settings)
    api.engine.register_guard("has_amount", lambda ctx, _params: bool(ctx.get_data("amount")))
    api.notifications.register_handler("email", LoggingNotificationHandler("email"))
    api.register_workflow(EXPENSE_APPROVAL)

    instance = api.start_workflow(
        "expense_approval",
        {"title": "Team dinner", "author": "alice", "amount": args.amount},
        started_by="alice",
    )
    api.execute_transition(instance.id, "submit", "alice")

    while True:
        pending = [t for t in api.get_instance_tasks(instance.id) if t.status == "pending"]
        if not pending:
            break
        task = pending[0]
        print(f"Deciding {task.name} for {task.assigned_to}")
        api.complete_task(task.id, {"approved": not args.reject})

    final = api.get_instance(instance.id)
    print(f"Instance {final.id}: {final.status.value} in state {final.current_state}")
    for entry in final.history:
        print(f"  {entry.from_state} -[{entry.transition_name}]-> {entry.to_state} by {entry.triggered_by}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
