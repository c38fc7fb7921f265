from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from typing import Any

from loopgate.backpressure.base import (
    Block,
    Guardrail,
    GuardrailContext,
    GuardrailResult,
    result_to_dict,
)

PipelineEventHook = Callable[[dict[str, Any]], None]


class GuardrailPipeline:
    """Runs registered guardrails in ascending ``order``, one at a time.

    Every result is returned in evaluation order. A Block from a guardrail
    with ``short_circuit_on_block`` ends the evaluation early. Cancellation
    (task cancellation or ``cancel_event``) propagates as
    ``asyncio.CancelledError`` and yields no partial results.
    """

    def __init__(
        self,
        guardrails: Iterable[Guardrail] = (),
        event_hook: PipelineEventHook | None = None,
    ) -> None:
        self._guardrails: list[Guardrail] = list(guardrails)
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def register(self, guardrail: Guardrail) -> None:
        self._guardrails.append(guardrail)

    @property
    def guardrails(self) -> list[Guardrail]:
        # sorted() is stable, so equal orders keep registration order.
        return sorted(self._guardrails, key=lambda item: item.order)

    async def evaluate(
        self,
        context: GuardrailContext,
        cancel_event: asyncio.Event | None = None,
    ) -> list[GuardrailResult]:
        results: list[GuardrailResult] = []
        for guardrail in self.guardrails:
            # Yield once so a pending task cancellation lands before the next guardrail.
            await asyncio.sleep(0)
            if cancel_event is not None and cancel_event.is_set():
                self._emit(
                    {
                        "event": "guardrail_evaluation_cancelled",
                        "module": context.module_name,
                        "before": guardrail.name,
                        "completed": len(results),
                    }
                )
                raise asyncio.CancelledError("Guardrail evaluation cancelled.")

            result = await guardrail.evaluate(context)
            results.append(result)
            self._emit(
                {
                    "event": "guardrail_evaluated",
                    "guardrail": guardrail.name,
                    "order": guardrail.order,
                    "module": context.module_name,
                    "task": context.task_name,
                    **result_to_dict(result),
                }
            )
            if isinstance(result, Block) and guardrail.short_circuit_on_block:
                self._emit(
                    {
                        "event": "guardrail_short_circuit",
                        "guardrail": guardrail.name,
                        "module": context.module_name,
                        "skipped": len(self._guardrails) - len(results),
                    }
                )
                break
        return results
