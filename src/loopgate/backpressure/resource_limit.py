from __future__ import annotations

from collections.abc import Callable
from typing import Any

from loopgate.backpressure.base import (
    Block,
    Guardrail,
    GuardrailContext,
    GuardrailResult,
    Pass,
    Warn,
)
from loopgate.tokens import InMemoryTokenTracker

DEFAULT_WARN_THRESHOLD = 0.80
DEFAULT_BLOCK_THRESHOLD = 0.90


class ResourceLimitGuardrail(Guardrail):
    """Warns, then blocks, as premium request usage approaches the session budget."""

    order = 100
    short_circuit_on_block = True

    def __init__(
        self,
        token_tracker: InMemoryTokenTracker,
        premium_request_budget: int,
        warn_threshold: float = DEFAULT_WARN_THRESHOLD,
        block_threshold: float = DEFAULT_BLOCK_THRESHOLD,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        if premium_request_budget <= 0:
            raise ValueError("premium_request_budget must be positive.")
        if not 0 < warn_threshold <= 1:
            raise ValueError("warn_threshold must be in (0, 1].")
        if not 0 < block_threshold <= 1:
            raise ValueError("block_threshold must be in (0, 1].")
        if block_threshold <= warn_threshold:
            raise ValueError("block_threshold must be greater than warn_threshold.")
        self.token_tracker = token_tracker
        self.premium_request_budget = premium_request_budget
        self.warn_threshold = warn_threshold
        self.block_threshold = block_threshold
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def evaluate(self, context: GuardrailContext) -> GuardrailResult:
        used = self.token_tracker.session_metrics().premium_request_count
        budget = self.premium_request_budget
        ratio = used / budget
        event = {
            "used": used,
            "budget": budget,
            "ratio": round(ratio, 4),
            "module": context.module_name,
        }

        if ratio >= self.block_threshold:
            self._emit({"event": "budget_blocked", **event})
            return Block(
                f"Premium request budget exceeded ({used}/{budget}). "
                "User confirmation required to continue."
            )
        if ratio >= self.warn_threshold:
            self._emit({"event": "budget_warning", **event})
            return Warn(f"Approaching premium request budget ({used}/{budget}).")
        return Pass()
