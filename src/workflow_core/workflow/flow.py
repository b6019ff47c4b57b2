"""Conversion between state-chart definitions and the node/edge flow graph.

Only the node types listed in :data:`FlowNodeType` are modelled. ``decision`` and
``loop`` nodes convert like any other node: conditions live on edges as guard
names, there is no richer branching semantics.
"""

from __future__ import annotations

from collections import Counter
from typing import Any, Literal

from pydantic import BaseModel, Field

from .definition import validate_definition
from .errors import InvalidDefinition, InvalidFlow
from .models import (
    ActionRef,
    ProcessType,
    StateConfig,
    TransitionConfig,
    WorkflowDefinition,
    ref_name,
)

FlowNodeType = Literal["start", "end", "decision", "assignment", "approval", "action", "loop"]

CONDITION_SEPARATOR = " && "


class FlowNode(BaseModel):
    id: str
    label: str
    type: FlowNodeType
    config: dict[str, Any] | None = None


class FlowEdge(BaseModel):
    id: str
    source: str
    target: str
    label: str | None = None
    condition: str | None = None


class Flow(BaseModel):
    name: str
    label: str = ""
    description: str = ""
    type: str = ProcessType.AUTOLAUNCHED.value
    version: int = 1
    nodes: list[FlowNode] = Field(default_factory=list)
    edges: list[FlowEdge] | None = Field(default_factory=list)


def validate_flow(flow: Flow) -> list[str]:
    """Return every structural problem with ``flow`` (empty when valid)."""

    errors: list[str] = []
    nodes = flow.nodes or []
    edges = flow.edges

    if not flow.name:
        errors.append("Flow must have a name")
    if not nodes:
        errors.append("Flow must have at least one node")
    if edges is None:
        errors.append("Flow must have an edges array")
        edges = []

    for node_id, count in Counter(n.id for n in nodes).items():
        if count > 1:
            errors.append(f"Node id {node_id} is declared {count} times")

    starts = [n for n in nodes if n.type == "start"]
    if len(starts) != 1:
        errors.append(f"Flow must have exactly one start node (found {len(starts)})")
    if not any(n.type == "end" for n in nodes):
        errors.append("Flow must have at least one end node")

    node_ids = {n.id for n in nodes}
    for edge in edges:
        if edge.source not in node_ids:
            errors.append(f"Edge {edge.id} references unknown source node: {edge.source}")
        if edge.target not in node_ids:
            errors.append(f"Edge {edge.id} references unknown target node: {edge.target}")

    targets = {e.target for e in edges}
    sources = {e.source for e in edges}
    for node in nodes:
        if node.type != "start" and node.id not in targets:
            errors.append(f"Node {node.label} ({node.id}) has no incoming edges")
    for node in nodes:
        if node.type != "end" and node.id not in sources:
            errors.append(f"Node {node.label} ({node.id}) has no outgoing edges")

    return errors


def _flow_version(version: int | str) -> int:
    if isinstance(version, int):
        return version
    head = version.split(".", 1)[0]
    return int(head) if head.isdigit() else 1


def _ref_json(ref: ActionRef) -> str | dict[str, Any]:
    return ref if isinstance(ref, str) else ref.model_dump()


def legacy_to_flow(definition: WorkflowDefinition) -> Flow:
    """One node per state, one edge per transition.

    Node config keeps the ``initial`` and ``final`` flags, so a state that is
    both start and end survives the way back.

    Raises:
        InvalidDefinition: if ``definition`` is not structurally valid.
    """

    errors = validate_definition(definition)
    if errors:
        raise InvalidDefinition(name=definition.name, errors=errors)

    node_ids: dict[str, str] = {}
    nodes: list[FlowNode] = []
    for index, (state_name, state) in enumerate(definition.states.items()):
        node_id = f"node_{index}"
        node_ids[state_name] = node_id
        node_type: FlowNodeType = "assignment"
        if state.initial:
            node_type = "start"
        elif state.final:
            node_type = "end"
        nodes.append(
            FlowNode(
                id=node_id,
                label=state_name,
                type=node_type,
                config={
                    "initial": state.initial,
                    "final": state.final,
                    "metadata": dict(state.metadata),
                    "on_enter": [_ref_json(a) for a in state.on_enter_actions],
                    "on_exit": [_ref_json(a) for a in state.on_exit_actions],
                },
            )
        )

    edges: list[FlowEdge] = []
    for state_name, state in definition.states.items():
        for transition_name, transition in state.transitions.items():
            guards = [ref_name(g) for g in transition.guards]
            edges.append(
                FlowEdge(
                    id=f"edge_{len(edges)}",
                    source=node_ids[state_name],
                    target=node_ids[transition.target],
                    label=transition_name,
                    condition=CONDITION_SEPARATOR.join(guards) if guards else None,
                )
            )

    return Flow(
        name=definition.name,
        label=definition.name,
        description=definition.description,
        type=definition.process_type.value,
        version=_flow_version(definition.version),
        nodes=nodes,
        edges=edges,
    )


def _conversion_errors(flow: Flow) -> list[str]:
    """Problems that leave no well-defined definition to convert to.

    Reachability is not checked: a state without incoming or outgoing
    transitions converts fine.
    """

    errors: list[str] = []
    for node_id, count in Counter(n.id for n in flow.nodes).items():
        if count > 1:
            errors.append(f"Node id {node_id} is declared {count} times")
    for label, count in Counter(n.label for n in flow.nodes).items():
        if count > 1:
            errors.append(f"State label {label} is used by {count} nodes")

    node_ids = {n.id for n in flow.nodes}
    for edge in flow.edges or []:
        if edge.source not in node_ids:
            errors.append(f"Edge {edge.id} references unknown source node: {edge.source}")
        if edge.target not in node_ids:
            errors.append(f"Edge {edge.id} references unknown target node: {edge.target}")

    starts = [n for n in flow.nodes if _is_initial(n)]
    if len(starts) != 1:
        errors.append(f"Flow must have exactly one start node (found {len(starts)})")
    return errors


def _is_initial(node: FlowNode) -> bool:
    return node.type == "start" or bool((node.config or {}).get("initial"))


def _is_final(node: FlowNode) -> bool:
    return node.type == "end" or bool((node.config or {}).get("final"))


def flow_to_legacy(
    flow: Flow,
    *,
    process_type: ProcessType | str | None = None,
    name: str | None = None,
) -> WorkflowDefinition:
    """Inverse of :func:`legacy_to_flow`.

    Edge labels become transition names (``to_<target>`` when absent) and edge
    conditions are split on ``&&`` into guard names. A node is initial if it is a
    ``start`` node or its config says ``initial``; likewise for ``end`` and ``final``.

    Raises:
        InvalidFlow: if the flow has dangling edges, duplicate ids, labels or
            transitions, or not exactly one start node.
    """

    errors = _conversion_errors(flow)

    labels = {n.id: n.label for n in flow.nodes}
    transitions: dict[str, dict[str, TransitionConfig]] = {n.label: {} for n in flow.nodes}
    for edge in flow.edges or []:
        source = labels.get(edge.source)
        target = labels.get(edge.target)
        if source is None or target is None:
            continue
        transition_name = edge.label or f"to_{target}"
        if transition_name in transitions[source]:
            errors.append(f'Duplicate transition "{transition_name}" out of node {edge.source}')
            continue
        guards = [g.strip() for g in (edge.condition or "").split("&&") if g.strip()]
        transitions[source][transition_name] = TransitionConfig(target=target, guards=guards)

    if errors:
        raise InvalidFlow(name=flow.name, errors=errors)

    states: dict[str, StateConfig] = {}
    initial_state = ""
    for node in flow.nodes:
        config = node.config or {}
        initial = _is_initial(node)
        states[node.label] = StateConfig(
            name=node.label,
            initial=initial,
            final=_is_final(node),
            on_enter_actions=list(config.get("on_enter") or []),
            on_exit_actions=list(config.get("on_exit") or []),
            transitions=transitions[node.label],
            metadata=dict(config.get("metadata") or {}),
        )
        if initial:
            initial_state = node.label

    if process_type is None:
        known = {p.value for p in ProcessType}
        process_type = flow.type if flow.type in known else ProcessType.SEQUENTIAL
    return WorkflowDefinition(
        name=name or flow.name,
        description=flow.description,
        process_type=ProcessType(process_type),
        version=str(flow.version),
        initial_state=initial_state,
        states=states,
    )
