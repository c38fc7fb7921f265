from __future__ import annotations

from collections.abc import Callable

from loopgate.backpressure.base import Block, Guardrail, GuardrailContext, GuardrailResult, Pass
from loopgate.verification.gate import VERIFY_TOOL_NAMES
from loopgate.verification.tracker import VerificationScope, VerificationTracker

ContextPredicate = Callable[[GuardrailContext], bool]


def verification_key(context: GuardrailContext) -> tuple[VerificationScope, str]:
    if context.task_name:
        return VerificationScope.TASK, context.task_name
    return VerificationScope.MODULE, context.module_name


class QualityGateGuardrail(Guardrail):
    """Refuses to let a completion boundary pass without oracle sign-off."""

    order = 300
    short_circuit_on_block = True

    def __init__(
        self,
        is_completion_boundary: ContextPredicate,
        has_passing_verification: ContextPredicate,
    ) -> None:
        if not callable(is_completion_boundary):
            raise TypeError("is_completion_boundary must be callable.")
        if not callable(has_passing_verification):
            raise TypeError("has_passing_verification must be callable.")
        self.is_completion_boundary = is_completion_boundary
        self.has_passing_verification = has_passing_verification

    @classmethod
    def for_tracker(
        cls,
        tracker: VerificationTracker,
        is_completion_boundary: ContextPredicate,
    ) -> QualityGateGuardrail:
        def _verified(context: GuardrailContext) -> bool:
            scope, identifier = verification_key(context)
            return tracker.is_verified(scope, identifier)

        return cls(is_completion_boundary, _verified)

    async def evaluate(self, context: GuardrailContext) -> GuardrailResult:
        if not self.is_completion_boundary(context):
            return Pass()
        if self.has_passing_verification(context):
            return Pass()
        scope, identifier = verification_key(context)
        return Block(
            f"Quality gate: completion of '{identifier}' requires passing oracle "
            f"verification. Run {VERIFY_TOOL_NAMES[scope]} first."
        )
