from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any

from loopgate.backpressure import (
    Block,
    ChurnDetectionGuardrail,
    Guardrail,
    GuardrailContext,
    GuardrailPipeline,
    GuardrailResult,
    NoOpGuardrail,
    Pass,
    QualityGateGuardrail,
    ResourceLimitGuardrail,
    ToolDisciplineGuardrail,
    Warn,
    verification_key,
)
from loopgate.config import LoopgateConfig
from loopgate.tokens import InMemoryTokenTracker
from loopgate.verification.tracker import VerificationScope, VerificationTracker

LoopEventHook = Callable[[dict[str, Any]], None]


class IterationAction(str, Enum):
    CONTINUE = "continue"
    WARN = "warn"
    HALT = "halt"


@dataclass(frozen=True, slots=True)
class IterationDecision:
    action: IterationAction
    iteration: int
    results: tuple[GuardrailResult, ...] = ()
    warnings: tuple[str, ...] = ()
    block_reason: str | None = None

    @property
    def should_continue(self) -> bool:
        return self.action != IterationAction.HALT


class CompletionBoundary:
    """Tracks which scopes are currently being finalized."""

    def __init__(self) -> None:
        self._active: set[tuple[VerificationScope, str]] = set()

    def __call__(self, context: GuardrailContext) -> bool:
        return verification_key(context) in self._active

    @contextmanager
    def marked(self, context: GuardrailContext) -> Iterator[None]:
        key = verification_key(context)
        self._active.add(key)
        try:
            yield
        finally:
            self._active.discard(key)


def build_pipeline(
    config: LoopgateConfig,
    *,
    token_tracker: InMemoryTokenTracker,
    verification_tracker: VerificationTracker | None = None,
    is_completion_boundary: Callable[[GuardrailContext], bool] | None = None,
    event_hook: LoopEventHook | None = None,
) -> GuardrailPipeline:
    guardrails: list[Guardrail] = []

    if config.budget.premium_request_budget > 0:
        guardrails.append(
            ResourceLimitGuardrail(
                token_tracker,
                config.budget.premium_request_budget,
                warn_threshold=config.budget.warning_threshold,
                block_threshold=config.budget.confirmation_threshold,
                event_hook=event_hook,
            )
        )
    else:
        guardrails.append(NoOpGuardrail(ResourceLimitGuardrail.order, label="resource_limit"))

    guardrails.append(ChurnDetectionGuardrail(config.workflow.failure_threshold))

    if verification_tracker is not None and is_completion_boundary is not None:
        guardrails.append(
            QualityGateGuardrail.for_tracker(verification_tracker, is_completion_boundary)
        )
    else:
        guardrails.append(NoOpGuardrail(QualityGateGuardrail.order, label="quality_gate"))

    guardrails.append(
        ToolDisciplineGuardrail(
            tool_call_threshold=config.tool_discipline.tool_call_threshold,
            max_file_reads=config.tool_discipline.max_file_reads,
            max_command_retries=config.tool_discipline.max_command_retries,
        )
    )
    return GuardrailPipeline(guardrails, event_hook=event_hook)


class ProgressLoop:
    """Per-iteration back-pressure decisions for the outer agent loop.

    Counts attempts per task, snapshots them into a guardrail context, runs the
    pipeline and folds the results into continue / warn / halt.
    """

    def __init__(
        self,
        pipeline: GuardrailPipeline,
        *,
        completion_boundary: CompletionBoundary | None = None,
        max_iterations: int | None = None,
        event_hook: LoopEventHook | None = None,
    ) -> None:
        if max_iterations is not None and max_iterations <= 0:
            raise ValueError("max_iterations must be positive.")
        self.pipeline = pipeline
        self.completion_boundary = completion_boundary or CompletionBoundary()
        self.max_iterations = max_iterations
        self.event_hook = event_hook
        self.total_iterations = 0
        self._task_iterations: dict[str, int] = {}

    @classmethod
    def from_config(
        cls,
        config: LoopgateConfig,
        *,
        token_tracker: InMemoryTokenTracker,
        verification_tracker: VerificationTracker,
        event_hook: LoopEventHook | None = None,
    ) -> ProgressLoop:
        boundary = CompletionBoundary()
        pipeline = build_pipeline(
            config,
            token_tracker=token_tracker,
            verification_tracker=verification_tracker,
            is_completion_boundary=boundary,
            event_hook=event_hook,
        )
        return cls(
            pipeline,
            completion_boundary=boundary,
            max_iterations=config.workflow.max_iterations,
            event_hook=event_hook,
        )

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    @staticmethod
    def _focus_key(module_name: str, task_name: str | None) -> str:
        return f"{module_name}/{task_name}" if task_name else module_name

    def iteration_count(self, module_name: str, task_name: str | None = None) -> int:
        return self._task_iterations.get(self._focus_key(module_name, task_name), 0)

    def reset_task(self, module_name: str, task_name: str | None = None) -> None:
        self._task_iterations.pop(self._focus_key(module_name, task_name), None)

    async def run_iteration(
        self,
        module_name: str,
        task_name: str | None = None,
        *,
        tool_call_count: int = 0,
        file_read_counts: Mapping[str, int] | None = None,
        command_retry_counts: Mapping[str, int] | None = None,
        completing: bool = False,
        cancel_event: asyncio.Event | None = None,
    ) -> IterationDecision:
        key = self._focus_key(module_name, task_name)
        if self.max_iterations is not None and self.total_iterations >= self.max_iterations:
            reason = (
                f"Iteration limit reached ({self.total_iterations}/{self.max_iterations}). "
                "User confirmation required to continue."
            )
            self._emit({"event": "iteration_blocked", "module": module_name, "reason": reason})
            return IterationDecision(
                IterationAction.HALT, self._task_iterations.get(key, 0), block_reason=reason
            )

        attempts = self._task_iterations.get(key, 0) + 1
        self._task_iterations[key] = attempts
        self.total_iterations += 1
        self._emit(
            {
                "event": "iteration_started",
                "module": module_name,
                "task": task_name,
                "attempt": attempts,
                "total": self.total_iterations,
            }
        )

        context = GuardrailContext(
            module_name=module_name,
            task_name=task_name,
            iteration_count=attempts,
            tool_call_count=tool_call_count,
            file_read_counts=file_read_counts,
            command_retry_counts=command_retry_counts,
        )
        try:
            if completing:
                with self.completion_boundary.marked(context):
                    results = await self.pipeline.evaluate(context, cancel_event)
            else:
                results = await self.pipeline.evaluate(context, cancel_event)
        except asyncio.CancelledError:
            # Cancelled attempts are not counted.
            self._task_iterations[key] = attempts - 1
            self.total_iterations -= 1
            raise

        warnings: list[str] = []
        block_reason: str | None = None
        for result in results:
            if isinstance(result, Block):
                if block_reason is None:
                    block_reason = result.message
            elif isinstance(result, Warn):
                warnings.append(result.message)
            elif not isinstance(result, Pass):
                raise TypeError(f"Unknown guardrail result: {result!r}")

        if block_reason is not None:
            self._emit(
                {"event": "iteration_blocked", "module": module_name, "reason": block_reason}
            )
            action = IterationAction.HALT
        elif warnings:
            self._emit(
                {"event": "iteration_warned", "module": module_name, "warnings": list(warnings)}
            )
            action = IterationAction.WARN
        else:
            action = IterationAction.CONTINUE

        return IterationDecision(
            action,
            attempts,
            results=tuple(results),
            warnings=tuple(warnings),
            block_reason=block_reason,
        )
