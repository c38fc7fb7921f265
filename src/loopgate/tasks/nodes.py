from __future__ import annotations

import weakref
from collections.abc import Iterator
from enum import Enum
from typing import Any, ClassVar, Generic, Never, TypeVar

from loopgate.errors import LoopgateError


class WorkNodeState(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FAILED = "failed"


VALID_TRANSITIONS: frozenset[tuple[WorkNodeState, WorkNodeState]] = frozenset(
    {
        (WorkNodeState.PENDING, WorkNodeState.IN_PROGRESS),
        (WorkNodeState.IN_PROGRESS, WorkNodeState.COMPLETE),
        (WorkNodeState.IN_PROGRESS, WorkNodeState.FAILED),
        # retry
        (WorkNodeState.FAILED, WorkNodeState.IN_PROGRESS),
    }
)


class InvalidStateTransitionError(LoopgateError):
    """Raised when a work node is asked to move along an edge the state machine lacks."""

    def __init__(
        self,
        current_state: WorkNodeState,
        target_state: WorkNodeState,
        message: str | None = None,
    ) -> None:
        super().__init__(
            message
            or f"Cannot transition from {current_state.value} to {target_state.value}."
        )
        self.current_state = current_state
        self.target_state = target_state


TChild = TypeVar("TChild", bound="WorkNode[Any]")


class WorkNode(Generic[TChild]):
    """Composite node of the module/component/task/subtask hierarchy.

    All state-machine behaviour lives here; the concrete subclasses only
    declare which node kind they may contain. The parent link is a weak
    reference and is never used for lifetime decisions.
    """

    kind: ClassVar[str] = "node"
    child_type: ClassVar[type[WorkNode[Any]] | None] = None

    def __init__(self, id: str, name: str | None = None) -> None:
        node_id = str(id).strip()
        if not node_id:
            raise ValueError(f"{self.kind} id must be a non-empty string.")
        self.id = node_id
        self.name = (name or node_id).strip() or node_id
        self._state = WorkNodeState.PENDING
        self._children: list[TChild] = []
        self._parent: weakref.ReferenceType[WorkNode[Any]] | None = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id!r}, state={self._state.value!r})"

    @property
    def state(self) -> WorkNodeState:
        return self._state

    @property
    def children(self) -> tuple[TChild, ...]:
        return tuple(self._children)

    @property
    def parent(self) -> WorkNode[Any] | None:
        if self._parent is None:
            return None
        return self._parent()

    def add_child(self, child: TChild) -> TChild:
        expected = self.child_type
        if expected is None:
            raise TypeError(f"{type(self).__name__} cannot contain child nodes.")
        if not isinstance(child, expected):
            raise TypeError(
                f"{type(self).__name__} children must be {expected.__name__}, "
                f"got {type(child).__name__}."
            )
        current_parent = child.parent
        if current_parent is not None and current_parent is not self:
            raise ValueError(f"{child.kind} '{child.id}' already belongs to '{current_parent.id}'.")
        if any(existing.id == child.id for existing in self._children):
            raise ValueError(f"{type(self).__name__} '{self.id}' already has a child '{child.id}'.")
        child._parent = weakref.ref(self)
        self._children.append(child)
        return child

    def child(self, child_id: str) -> TChild | None:
        for item in self._children:
            if item.id == child_id:
                return item
        return None

    def transition_to(self, target_state: WorkNodeState) -> None:
        target = WorkNodeState(target_state)
        if (self._state, target) not in VALID_TRANSITIONS:
            raise InvalidStateTransitionError(self._state, target)
        self._state = target

    def compute_aggregate_state(self) -> WorkNodeState:
        if not self._children:
            return self._state
        states = [item.state for item in self._children]
        if WorkNodeState.FAILED in states:
            return WorkNodeState.FAILED
        if all(state == WorkNodeState.COMPLETE for state in states):
            return WorkNodeState.COMPLETE
        if any(state in {WorkNodeState.IN_PROGRESS, WorkNodeState.COMPLETE} for state in states):
            return WorkNodeState.IN_PROGRESS
        return WorkNodeState.PENDING

    def descendants(self) -> Iterator[WorkNode[Any]]:
        for item in self._children:
            yield item
            yield from item.descendants()

    def leaves(self) -> Iterator[WorkNode[Any]]:
        if not self._children:
            yield self
            return
        for item in self._children:
            yield from item.leaves()

    def path(self) -> list[str]:
        parts: list[str] = []
        node: WorkNode[Any] | None = self
        while node is not None:
            parts.append(node.id)
            node = node.parent
        return list(reversed(parts))


class Subtask(WorkNode[Never]):
    kind = "subtask"


class Task(WorkNode[Subtask]):
    kind = "task"
    child_type = Subtask


class Component(WorkNode[Task]):
    kind = "component"
    child_type = Task


class Module(WorkNode[Component]):
    kind = "module"
    child_type = Component


NODE_KINDS: dict[str, type[WorkNode[Any]]] = {
    "module": Module,
    "component": Component,
    "task": Task,
    "subtask": Subtask,
}
