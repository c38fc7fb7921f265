from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any


class FailureSeverity(str, Enum):
    WARNING = "warning"
    TASK_FAILURE = "task_failure"
    REPEATED_FAILURE = "repeated_failure"
    CRITICAL = "critical"


class FailureAction(str, Enum):
    SELF_CORRECT = "self_correct"
    PROMPT_USER = "prompt_user"
    BLOCK = "block"


@dataclass(frozen=True, slots=True)
class FailureClassification:
    severity: FailureSeverity
    action: FailureAction
    message: str
    task_id: str | None = None
    consecutive_failures: int = 0


def _require_text(value: str, label: str) -> str:
    if not value or not value.strip():
        raise ValueError(f"{label} must be a non-empty string.")
    return value.strip()


class FailureHandler:
    """Counts consecutive failures per task and decides who should react.

    Below the threshold the agent self-corrects inline; at the threshold the
    user is asked to step in.
    """

    def __init__(
        self,
        failure_threshold: int = 3,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        if failure_threshold <= 0:
            raise ValueError("failure_threshold must be positive.")
        self.failure_threshold = failure_threshold
        self.event_hook = event_hook
        # Task ids compare case-insensitively.
        self._failure_counts: dict[str, int] = {}

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def record_failure(self, task_id: str, error_message: str) -> FailureClassification:
        task_id = _require_text(task_id, "task_id")
        _require_text(error_message, "error_message")
        key = task_id.casefold()
        count = self._failure_counts.get(key, 0) + 1
        self._failure_counts[key] = count

        if count >= self.failure_threshold:
            self._emit(
                {
                    "event": "task_failure_escalated",
                    "task_id": task_id,
                    "count": count,
                    "threshold": self.failure_threshold,
                    "error": error_message,
                }
            )
            return FailureClassification(
                FailureSeverity.REPEATED_FAILURE,
                FailureAction.PROMPT_USER,
                f"Task '{task_id}' has failed {count} consecutive times. "
                "User intervention recommended.",
                task_id,
                count,
            )

        self._emit(
            {
                "event": "task_failure",
                "task_id": task_id,
                "count": count,
                "threshold": self.failure_threshold,
                "error": error_message,
            }
        )
        return FailureClassification(
            FailureSeverity.TASK_FAILURE,
            FailureAction.SELF_CORRECT,
            f"Task '{task_id}' failed (attempt {count}/{self.failure_threshold}). Self-correcting.",
            task_id,
            count,
        )

    def record_critical_error(self, error_message: str) -> FailureClassification:
        message = _require_text(error_message, "error_message")
        self._emit({"event": "critical_error", "error": message})
        return FailureClassification(FailureSeverity.CRITICAL, FailureAction.BLOCK, message)

    def record_warning(self, message: str) -> FailureClassification:
        text = _require_text(message, "message")
        return FailureClassification(FailureSeverity.WARNING, FailureAction.SELF_CORRECT, text)

    def reset_failure_count(self, task_id: str) -> None:
        self._failure_counts.pop(_require_text(task_id, "task_id").casefold(), None)

    def failure_count(self, task_id: str) -> int:
        return self._failure_counts.get(_require_text(task_id, "task_id").casefold(), 0)

    def counts(self) -> dict[str, int]:
        return dict(self._failure_counts)

    def restore_counts(self, counts: dict[str, Any]) -> None:
        self._failure_counts = {
            str(key).casefold(): int(value)
            for key, value in counts.items()
            if str(key).strip() and int(value) > 0
        }
