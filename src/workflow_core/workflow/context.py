"""Execution context passed by reference through a guard/action chain."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .models import WorkflowDefinition, utc_now

logger = logging.getLogger(__name__)


@dataclass
class ExecutionContext:
    """The only channel through which guards and actions see or change an instance.

    ``data`` is a working copy of ``instance.data``; it is written back only when
    the transition commits.
    """

    instance_id: str
    definition: WorkflowDefinition
    data: dict[str, Any]
    triggered_by: str
    from_state: str | None = None
    to_state: str | None = None
    transition_name: str | None = None
    comment: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    entered_at: datetime = field(default_factory=utc_now)
    logger: logging.LoggerAdapter[logging.Logger] = field(init=False)
    _commit_hooks: list[Callable[[], None]] = field(default_factory=list, init=False, repr=False)

    def __post_init__(self) -> None:
        self.logger = logging.LoggerAdapter(
            logging.getLogger("workflow_core.actions"), {"instance_id": self.instance_id}
        )

    def get_data(self, key: str | None = None, default: Any = None) -> Any:
        if key is None:
            return self.data
        return self.data.get(key, default)

    def set_data(self, key: str, value: Any) -> None:
        self.data[key] = value

    def on_commit(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` once the transition has been persisted.

        Callbacks are dropped if the transition is rejected or an action fails.
        """

        self._commit_hooks.append(callback)

    def run_commit_hooks(self) -> None:
        hooks, self._commit_hooks = self._commit_hooks, []
        for hook in hooks:
            try:
                hook()
            except Exception:
                logger.exception(
                    "Post-commit hook failed",
                    extra={"instance_id": self.instance_id, "transition": self.transition_name},
                )
