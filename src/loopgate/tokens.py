from __future__ import annotations

import threading
from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class TokenUsage:
    input_tokens: int
    output_tokens: int
    is_premium_request: bool = False

    def __post_init__(self) -> None:
        if self.input_tokens < 0 or self.output_tokens < 0:
            raise ValueError("Token counts must be non-negative.")


@dataclass(frozen=True, slots=True)
class SessionTokenMetrics:
    per_iteration: tuple[TokenUsage, ...] = field(default_factory=tuple)
    cumulative_input_tokens: int = 0
    cumulative_output_tokens: int = 0
    premium_request_count: int = 0


class InMemoryTokenTracker:
    """Session-scoped usage counters; safe to feed from backend callbacks."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._iterations: list[TokenUsage] = []
        self._cumulative_input = 0
        self._cumulative_output = 0
        self._premium_count = 0

    def record_usage(self, usage: TokenUsage) -> None:
        with self._lock:
            self._iterations.append(usage)
            self._cumulative_input += usage.input_tokens
            self._cumulative_output += usage.output_tokens
            if usage.is_premium_request:
                self._premium_count += 1

    def session_metrics(self) -> SessionTokenMetrics:
        with self._lock:
            return SessionTokenMetrics(
                per_iteration=tuple(self._iterations),
                cumulative_input_tokens=self._cumulative_input,
                cumulative_output_tokens=self._cumulative_output,
                premium_request_count=self._premium_count,
            )

    def reset_session(self) -> None:
        with self._lock:
            self._iterations.clear()
            self._cumulative_input = 0
            self._cumulative_output = 0
            self._premium_count = 0

    def restore_metrics(
        self, cumulative_input: int, cumulative_output: int, premium_count: int
    ) -> None:
        with self._lock:
            self._cumulative_input = max(0, int(cumulative_input))
            self._cumulative_output = max(0, int(cumulative_output))
            self._premium_count = max(0, int(premium_count))
