from __future__ import annotations

from loopgate.backpressure.base import Guardrail, GuardrailContext, GuardrailResult, Pass, Warn


class ToolDisciplineGuardrail(Guardrail):
    """Spots wasteful tool usage and turns it into guidance for the next turn.

    Only ever warns. Total tool calls past ``tool_call_threshold`` warn;
    past twice the threshold the wording escalates.
    """

    order = 400
    short_circuit_on_block = False

    def __init__(
        self,
        tool_call_threshold: int = 50,
        max_file_reads: int = 3,
        max_command_retries: int = 3,
    ) -> None:
        if tool_call_threshold <= 0:
            raise ValueError("tool_call_threshold must be positive.")
        if max_file_reads <= 0:
            raise ValueError("max_file_reads must be positive.")
        if max_command_retries <= 0:
            raise ValueError("max_command_retries must be positive.")
        self.tool_call_threshold = tool_call_threshold
        self.max_file_reads = max_file_reads
        self.max_command_retries = max_command_retries

    async def evaluate(self, context: GuardrailContext) -> GuardrailResult:
        warnings: list[str] = []

        for file_path, count in (context.file_read_counts or {}).items():
            if count > self.max_file_reads:
                warnings.append(
                    f"File '{file_path}' read {count} times (max {self.max_file_reads}). "
                    "Read once and reference the content instead of re-reading."
                )

        for command, count in (context.command_retry_counts or {}).items():
            if count > self.max_command_retries:
                warnings.append(
                    f"Command retried {count} times (max {self.max_command_retries}): "
                    f"'{command}'. Analyze the error before retrying; a different "
                    "approach may be more effective."
                )

        calls = context.tool_call_count
        if calls > self.tool_call_threshold * 2:
            warnings.append(
                f"Excessive tool calls ({calls}) in this iteration. "
                "Consider a more focused approach: read files once, make targeted changes, "
                "then verify."
            )
        elif calls > self.tool_call_threshold:
            warnings.append(
                f"High tool call count ({calls}/{self.tool_call_threshold}). "
                "Ensure each tool call serves a purpose."
            )

        if not warnings:
            return Pass()
        return Warn(" ".join(warnings))
