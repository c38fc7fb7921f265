from __future__ import annotations

from loopgate.backpressure.base import (
    Block,
    Guardrail,
    GuardrailContext,
    GuardrailResult,
    Pass,
    Warn,
)


class ChurnDetectionGuardrail(Guardrail):
    """Flags a task that keeps getting re-attempted without converging.

    Does not short-circuit, so the remaining guardrails still report.
    """

    order = 200
    short_circuit_on_block = False

    def __init__(self, failure_threshold: int = 3) -> None:
        if failure_threshold <= 0:
            raise ValueError("failure_threshold must be positive.")
        self.failure_threshold = failure_threshold

    async def evaluate(self, context: GuardrailContext) -> GuardrailResult:
        task = context.task_name or "unknown"
        attempts = context.iteration_count
        if attempts >= self.failure_threshold:
            return Block(
                f"Task '{task}' has been attempted {attempts} times "
                f"(threshold: {self.failure_threshold}). User intervention recommended."
            )
        if attempts >= self.failure_threshold - 1:
            return Warn(
                f"Task '{task}' approaching failure threshold "
                f"({attempts}/{self.failure_threshold})."
            )
        return Pass()
