from __future__ import annotations

from typing import Any

from loopgate.tasks.nodes import NODE_KINDS, Module, WorkNode, WorkNodeState

# Transition paths that reproduce a stored state from PENDING.
_REPLAY_PATHS: dict[WorkNodeState, tuple[WorkNodeState, ...]] = {
    WorkNodeState.PENDING: (),
    WorkNodeState.IN_PROGRESS: (WorkNodeState.IN_PROGRESS,),
    WorkNodeState.COMPLETE: (WorkNodeState.IN_PROGRESS, WorkNodeState.COMPLETE),
    WorkNodeState.FAILED: (WorkNodeState.IN_PROGRESS, WorkNodeState.FAILED),
}

_DEPTH_KINDS = ("module", "component", "task", "subtask")


def node_to_dict(node: WorkNode[Any]) -> dict[str, Any]:
    return {
        "kind": node.kind,
        "id": node.id,
        "name": node.name,
        "state": node.state.value,
        "children": [node_to_dict(child) for child in node.children],
    }


def node_from_dict(payload: dict[str, Any]) -> WorkNode[Any]:
    kind = str(payload.get("kind", ""))
    node_cls = NODE_KINDS.get(kind)
    if node_cls is None:
        raise ValueError(f"Unknown work node kind: {kind!r}")
    node = node_cls(str(payload.get("id", "")), payload.get("name"))
    for state in _REPLAY_PATHS[WorkNodeState(payload.get("state", "pending"))]:
        node.transition_to(state)
    children = payload.get("children", [])
    if isinstance(children, list):
        for item in children:
            if isinstance(item, dict):
                try:
                    node.add_child(node_from_dict(item))
                except TypeError as exc:
                    raise ValueError(f"Invalid work node tree under '{node.id}': {exc}") from exc
    return node


def kind_for_path(path: str) -> str:
    parts = split_path(path)
    if len(parts) > len(_DEPTH_KINDS):
        raise ValueError(f"Path '{path}' is deeper than the subtask level.")
    return _DEPTH_KINDS[len(parts) - 1]


def split_path(path: str) -> list[str]:
    parts = [part.strip() for part in path.strip().strip("/").split("/")]
    if not parts or any(not part for part in parts):
        raise ValueError(f"Invalid work node path: '{path}'")
    return parts


def find_node(modules: list[Module], path: str) -> WorkNode[Any] | None:
    parts = split_path(path)
    node: WorkNode[Any] | None = next((item for item in modules if item.id == parts[0]), None)
    for part in parts[1:]:
        if node is None:
            return None
        node = node.child(part)
    return node


def render_tree(node: WorkNode[Any]) -> dict[str, Any]:
    """Display payload: own state next to the state derived from children."""
    return {
        "kind": node.kind,
        "id": node.id,
        "name": node.name,
        "state": node.state.value,
        "aggregate_state": node.compute_aggregate_state().value,
        "children": [render_tree(child) for child in node.children],
    }
