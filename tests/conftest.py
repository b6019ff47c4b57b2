"""Test configuration and fixtures."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from workflow_core.config import WorkflowSettings
from workflow_core.workflow.api import WorkflowAPI
from workflow_core.workflow.storage import InMemoryWorkflowStorage


class FakeTimer:
    """Stands in for threading.Timer; fired explicitly by tests."""

    def __init__(self, delay_seconds: float, callback: Callable[[], None]) -> None:
        self.delay_seconds = delay_seconds
        self.callback = callback
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        if not self.cancelled:
            self.callback()


class FakeTimerFactory:
    def __init__(self) -> None:
        self.timers: list[FakeTimer] = []

    def __call__(self, delay_seconds: float, callback: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(delay_seconds, callback)
        self.timers.append(timer)
        return timer

    @property
    def last(self) -> FakeTimer:
        return self.timers[-1]


@pytest.fixture
def settings() -> WorkflowSettings:
    """Settings that ignore any local `.env` file."""
    return WorkflowSettings(_env_file=None, storage_backend="memory")


@pytest.fixture
def storage() -> InMemoryWorkflowStorage:
    return InMemoryWorkflowStorage()


@pytest.fixture
def timers() -> FakeTimerFactory:
    return FakeTimerFactory()


@pytest.fixture
def api(
    storage: InMemoryWorkflowStorage, settings: WorkflowSettings, timers: FakeTimerFactory
) -> WorkflowAPI:
    return WorkflowAPI(storage, settings=settings, timer_factory=timers)


def has_required_fields(ctx: Any, _params: dict[str, Any]) -> bool:
    return all(ctx.get_data(key) for key in ("title", "content", "author"))


@pytest.fixture
def document_definition() -> dict[str, Any]:
    """draft -> pending_approval -> approved | rejected."""
    return {
        "name": "document_approval",
        "type": "approval",
        "version": "1.0.0",
        "states": {
            "draft": {
                "initial": True,
                "transitions": {
                    "submit": {
                        "target": "pending_approval",
                        "guards": ["has_required_fields"],
                    }
                },
            },
            "pending_approval": {
                "transitions": {"approve": "approved", "reject": "rejected"},
            },
            "approved": {"final": True},
            "rejected": {"final": True},
        },
    }


@pytest.fixture
def document_api(api: WorkflowAPI, document_definition: dict[str, Any]) -> WorkflowAPI:
    api.engine.register_guard("has_required_fields", has_required_fields)
    api.register_workflow(document_definition)
    return api
