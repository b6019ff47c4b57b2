"""Stateless FSM evaluator.

The engine owns the guard and action registries and nothing else. It never
touches storage and holds no per-instance state, so one engine is shared by
every running instance.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from .context import ExecutionContext
from .errors import ActionFailed
from .models import ActionRef, GuardRef, WorkflowDefinition, ref_name, ref_params

logger = logging.getLogger(__name__)

Guard = Callable[[ExecutionContext, dict[str, Any]], bool]
Action = Callable[[ExecutionContext, dict[str, Any]], None]


@dataclass(frozen=True, slots=True)
class TransitionEvaluation:
    """Outcome of :meth:`WorkflowEngine.evaluate_transition`.

    ``allowed=False`` with ``failed_guard=None`` means the transition does not
    exist on the current state.
    """

    allowed: bool
    failed_guard: str | None = None
    target_state: str | None = None

    @property
    def unknown_transition(self) -> bool:
        return not self.allowed and self.failed_guard is None


class WorkflowEngine:
    def __init__(self) -> None:
        self._guards: dict[str, Guard] = {}
        self._actions: dict[str, Action] = {}

    def register_guard(self, name: str, guard: Guard) -> None:
        # Last registration wins.
        if name in self._guards:
            logger.debug("Overwriting guard", extra={"guard": name})
        self._guards[name] = guard

    def register_action(self, name: str, action: Action) -> None:
        if name in self._actions:
            logger.debug("Overwriting action", extra={"action": name})
        self._actions[name] = action

    def has_guard(self, name: str) -> bool:
        return name in self._guards

    def has_action(self, name: str) -> bool:
        return name in self._actions

    def evaluate_transition(
        self,
        definition: WorkflowDefinition,
        current_state: str,
        transition_name: str,
        context: ExecutionContext,
    ) -> TransitionEvaluation:
        state = definition.states.get(current_state)
        transition = state.transitions.get(transition_name) if state is not None else None
        if transition is None:
            return TransitionEvaluation(allowed=False)

        failed = self._first_failing_guard(transition.guards, context)
        if failed is not None:
            return TransitionEvaluation(
                allowed=False, failed_guard=failed, target_state=transition.target
            )
        return TransitionEvaluation(allowed=True, target_state=transition.target)

    def _first_failing_guard(
        self, guards: Sequence[GuardRef], context: ExecutionContext
    ) -> str | None:
        for ref in guards:
            name = ref_name(ref)
            guard = self._guards.get(name)
            if guard is None:
                # An unregistered guard blocks the transition.
                logger.warning(
                    "Guard not registered", extra={"guard": name, "instance_id": context.instance_id}
                )
                return name
            if not guard(context, ref_params(ref)):
                return name
        return None

    def run_actions(self, actions: Sequence[ActionRef], context: ExecutionContext) -> None:
        """Run actions strictly in order.

        Raises:
            ActionFailed: wrapping the first exception raised by an action.
        """

        for ref in actions:
            name = ref_name(ref)
            action = self._actions.get(name)
            if action is None:
                logger.warning(
                    "Action not registered; skipping",
                    extra={"action": name, "instance_id": context.instance_id},
                )
                continue
            try:
                action(context, ref_params(ref))
            except ActionFailed:
                raise
            except Exception as e:
                raise ActionFailed(action=name, cause=str(e) or type(e).__name__) from e
