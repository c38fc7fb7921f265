from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from loopgate.verification.tracker import VerificationScope, VerificationTracker

GateEventHook = Callable[[dict[str, Any]], None]

VERIFY_TOOL_NAMES = {
    VerificationScope.TASK: "verify_task_completion",
    VerificationScope.COMPONENT: "verify_component_completion",
    VerificationScope.MODULE: "verify_module_completion",
}


@dataclass(frozen=True, slots=True)
class TaskStatusGateResult:
    is_allowed: bool
    rejection_reason: str | None = None

    @classmethod
    def allowed(cls) -> TaskStatusGateResult:
        return cls(True)

    @classmethod
    def rejected(cls, reason: str) -> TaskStatusGateResult:
        return cls(False, reason)


class TaskStatusGate:
    """Single enforcement point consulted before anything is marked complete.

    The gate decides permission only. Whether the transition itself is legal
    is still the work node state machine's call.
    """

    def __init__(
        self,
        verification_tracker: VerificationTracker,
        event_hook: GateEventHook | None = None,
    ) -> None:
        self.verification_tracker = verification_tracker
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def validate_completion(
        self, scope: VerificationScope, identifier: str
    ) -> TaskStatusGateResult:
        if not identifier or not identifier.strip():
            raise ValueError("identifier must be a non-empty string.")
        scope = VerificationScope(scope)

        if self.verification_tracker.is_verified(scope, identifier):
            self._emit({"event": "completion_allowed", "scope": scope.value, "id": identifier})
            return TaskStatusGateResult.allowed()

        reason = (
            f"Cannot mark {scope.value} '{identifier}' as complete: "
            f"no passing oracle verification found. Call {VERIFY_TOOL_NAMES[scope]} "
            "first and ensure it passes."
        )
        self._emit({"event": "completion_rejected", "scope": scope.value, "id": identifier})
        return TaskStatusGateResult.rejected(reason)
