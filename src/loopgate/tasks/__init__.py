from loopgate.tasks.nodes import (
    NODE_KINDS,
    Component,
    InvalidStateTransitionError,
    Module,
    Subtask,
    Task,
    WorkNode,
    WorkNodeState,
)
from loopgate.tasks.tree import find_node, kind_for_path, node_from_dict, node_to_dict, render_tree

__all__ = [
    "Component",
    "InvalidStateTransitionError",
    "Module",
    "NODE_KINDS",
    "Subtask",
    "Task",
    "WorkNode",
    "WorkNodeState",
    "find_node",
    "kind_for_path",
    "node_from_dict",
    "node_to_dict",
    "render_tree",
]
