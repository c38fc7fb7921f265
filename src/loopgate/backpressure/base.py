from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any


def _frozen_counts(value: Mapping[str, int] | None, label: str) -> Mapping[str, int] | None:
    if value is None:
        return None
    counts: dict[str, int] = {}
    for key, count in value.items():
        if int(count) < 0:
            raise ValueError(f"{label} for '{key}' must be non-negative.")
        counts[str(key)] = int(count)
    return MappingProxyType(counts)


def _counts_key(value: Mapping[str, int] | None) -> tuple[tuple[str, int], ...] | None:
    return None if value is None else tuple(sorted(value.items()))


@dataclass(frozen=True, slots=True)
class GuardrailContext:
    """Immutable per-iteration snapshot that every guardrail evaluates."""

    module_name: str
    task_name: str | None = None
    iteration_count: int = 0
    tool_call_count: int = 0
    file_read_counts: Mapping[str, int] | None = None
    command_retry_counts: Mapping[str, int] | None = None

    def __post_init__(self) -> None:
        if not self.module_name or not self.module_name.strip():
            raise ValueError("module_name must be a non-empty string.")
        if self.iteration_count < 0:
            raise ValueError("iteration_count must be non-negative.")
        if self.tool_call_count < 0:
            raise ValueError("tool_call_count must be non-negative.")
        object.__setattr__(
            self, "file_read_counts", _frozen_counts(self.file_read_counts, "File read count")
        )
        object.__setattr__(
            self,
            "command_retry_counts",
            _frozen_counts(self.command_retry_counts, "Command retry count"),
        )

    def __hash__(self) -> int:
        return hash(
            (
                self.module_name,
                self.task_name,
                self.iteration_count,
                self.tool_call_count,
                _counts_key(self.file_read_counts),
                _counts_key(self.command_retry_counts),
            )
        )


@dataclass(frozen=True, slots=True)
class Pass:
    pass


@dataclass(frozen=True, slots=True)
class Warn:
    message: str

    def __post_init__(self) -> None:
        if not self.message or not self.message.strip():
            raise ValueError("Warn requires a message.")


@dataclass(frozen=True, slots=True)
class Block:
    message: str

    def __post_init__(self) -> None:
        if not self.message or not self.message.strip():
            raise ValueError("Block requires a message.")


GuardrailResult = Pass | Warn | Block


def result_to_dict(result: GuardrailResult) -> dict[str, Any]:
    if isinstance(result, Block):
        return {"outcome": "block", "message": result.message}
    if isinstance(result, Warn):
        return {"outcome": "warn", "message": result.message}
    if isinstance(result, Pass):
        return {"outcome": "pass"}
    raise TypeError(f"Unknown guardrail result: {result!r}")


class Guardrail(ABC):
    """One independent back-pressure policy.

    Lower ``order`` runs first. When ``short_circuit_on_block`` is set, a
    Block from this guardrail stops the rest of the pipeline.
    """

    order: int = 1000
    short_circuit_on_block: bool = False

    @property
    def name(self) -> str:
        return type(self).__name__

    @abstractmethod
    async def evaluate(self, context: GuardrailContext) -> GuardrailResult:
        """Judge the snapshot and return Pass, Warn or Block."""


class NoOpGuardrail(Guardrail):
    """Placeholder for a policy that has nothing wired to it; always passes."""

    def __init__(self, order: int, *, label: str = "noop") -> None:
        self.order = order
        self.label = label

    @property
    def name(self) -> str:
        return f"NoOpGuardrail[{self.label}]"

    async def evaluate(self, context: GuardrailContext) -> GuardrailResult:
        _ = context
        return Pass()
