"""Definition validation and parsing from decoded documents.

Loading YAML or JSON is the caller's job; :func:`parse_definition` only maps an
already-decoded mapping onto the data model and validates it.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from .errors import InvalidDefinition
from .models import StateConfig, TransitionConfig, WorkflowDefinition


def validate_definition(definition: WorkflowDefinition) -> list[str]:
    """Return every structural violation found (empty when valid)."""

    errors: list[str] = []
    states = definition.states

    if not definition.name.strip():
        errors.append("Workflow must have a name")
    if not states:
        errors.append("Workflow must have at least one state")

    initial = [name for name, s in states.items() if s.initial]
    if len(initial) != 1:
        errors.append(f"Workflow must have exactly one initial state (found {len(initial)})")
    if not definition.initial_state:
        errors.append("Workflow must have an initial state")
    elif definition.initial_state not in states:
        errors.append(f'Initial state "{definition.initial_state}" does not exist')
    elif len(initial) == 1 and initial[0] != definition.initial_state:
        errors.append(
            f'Initial state "{definition.initial_state}" is not the state flagged initial '
            f'("{initial[0]}")'
        )

    if not any(s.final for s in states.values()):
        errors.append("Workflow must have at least one final state")

    for state_name, state in states.items():
        if state.name != state_name:
            errors.append(f'State key "{state_name}" does not match state name "{state.name}"')
        for transition_name, transition in state.transitions.items():
            errors.extend(_transition_errors(states, state_name, transition_name, transition))

    return errors


def _transition_errors(
    states: Mapping[str, StateConfig],
    state_name: str,
    transition_name: str,
    transition: TransitionConfig,
) -> list[str]:
    where = f'transition "{transition_name}" in state "{state_name}"'
    target = states.get(transition.target)
    if target is None:
        return [f'Invalid {where}: target state "{transition.target}" does not exist']

    errors: list[str] = []
    if transition.timeout_ms is not None and transition.timeout_ms <= 0:
        errors.append(f"Invalid {where}: timeout_ms must be positive")
    if transition.on_timeout_transition is not None:
        if transition.timeout_ms is None:
            errors.append(f"Invalid {where}: on_timeout_transition requires timeout_ms")
        if transition.on_timeout_transition not in target.transitions:
            errors.append(
                f'Invalid {where}: timeout transition "{transition.on_timeout_transition}" '
                f'is not declared on state "{transition.target}"'
            )
    return errors


def parse_definition(raw: Mapping[str, Any]) -> WorkflowDefinition:
    """Build and validate a definition from a decoded document.

    Accepts snake-case keys (``on_enter``/``on_exit``), shorthand transitions
    (``approve: approved``) and transitions given as a list of mappings with a
    ``name`` key.

    Raises:
        InvalidDefinition: listing every violation found.
    """

    if not isinstance(raw, Mapping):
        raise InvalidDefinition(name="", errors=["Definition must be a mapping"])

    name = str(raw.get("name") or "")
    errors: list[str] = []
    raw_states = raw.get("states") or {}
    if not isinstance(raw_states, Mapping):
        raise InvalidDefinition(name=name, errors=["States must be a mapping"])

    states: dict[str, dict[str, Any]] = {}
    for state_name, state_raw in raw_states.items():
        state_raw = state_raw or {}
        if not isinstance(state_raw, Mapping):
            errors.append(f'State "{state_name}" must be a mapping')
            continue
        transitions, transition_errors = _parse_transitions(
            state_name, state_raw.get("transitions")
        )
        errors.extend(transition_errors)
        states[state_name] = {
            "name": state_raw.get("name", state_name),
            "initial": bool(state_raw.get("initial", False)),
            "final": bool(state_raw.get("final", False)),
            "on_enter_actions": _first(state_raw, "on_enter_actions", "on_enter") or [],
            "on_exit_actions": _first(state_raw, "on_exit_actions", "on_exit") or [],
            "transitions": transitions,
            "metadata": state_raw.get("metadata") or {},
        }

    initial_state = raw.get("initial_state")
    if not initial_state:
        flagged = [n for n, s in states.items() if s["initial"]]
        initial_state = flagged[0] if flagged else ""

    try:
        definition = WorkflowDefinition.model_validate(
            {
                "name": name,
                "description": raw.get("description") or "",
                "process_type": _first(raw, "process_type", "type") or "sequential",
                "version": raw.get("version", 1),
                "initial_state": initial_state,
                "states": states,
                "metadata": raw.get("metadata") or {},
            }
        )
    except ValidationError as e:
        errors.extend(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise InvalidDefinition(name=name, errors=errors) from e

    errors.extend(validate_definition(definition))
    if errors:
        raise InvalidDefinition(name=name, errors=errors)
    return definition


def _first(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if raw.get(key) is not None:
            return raw[key]
    return None


def _parse_transitions(
    state_name: str, value: Any
) -> tuple[dict[str, dict[str, Any]], list[str]]:
    if not value:
        return {}, []

    errors: list[str] = []
    items: list[tuple[str, Any]] = []
    if isinstance(value, Mapping):
        items = list(value.items())
    elif isinstance(value, list):
        for index, entry in enumerate(value):
            if not isinstance(entry, Mapping):
                errors.append(f'Transition #{index} in state "{state_name}" must be a mapping')
                continue
            items.append((str(entry.get("name", "")), entry))
    else:
        return {}, [f'Transitions of state "{state_name}" must be a mapping or a list']

    out: dict[str, dict[str, Any]] = {}
    for name, config in items:
        if name in out:
            errors.append(f'Duplicate transition "{name}" in state "{state_name}"')
            continue
        if isinstance(config, str):
            out[name] = {"target": config}
        elif isinstance(config, Mapping):
            out[name] = {k: v for k, v in config.items() if k != "name"}
        else:
            errors.append(
                f'Transition "{name}" in state "{state_name}" must be a target name or a mapping'
            )
    return out, errors
