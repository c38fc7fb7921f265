import asyncio
from typing import Any

import pytest

from loopgate.backpressure import (
    Block,
    Guardrail,
    GuardrailContext,
    GuardrailPipeline,
    GuardrailResult,
    NoOpGuardrail,
    Pass,
    Warn,
    result_to_dict,
)


class CountingGuardrail(Guardrail):
    def __init__(
        self,
        order: int,
        result: GuardrailResult | None = None,
        *,
        short_circuit: bool = False,
        calls: list[str] | None = None,
        label: str = "",
    ) -> None:
        self.order = order
        self.result = result or Pass()
        self.short_circuit_on_block = short_circuit
        self.calls = calls if calls is not None else []
        self.label = label or f"g{order}"
        self.invocations = 0

    @property
    def name(self) -> str:
        return self.label

    async def evaluate(self, context: GuardrailContext) -> GuardrailResult:
        _ = context
        self.invocations += 1
        self.calls.append(self.label)
        return self.result


class SlowGuardrail(Guardrail):
    order = 100

    def __init__(self, started: asyncio.Event) -> None:
        self.started = started

    async def evaluate(self, context: GuardrailContext) -> GuardrailResult:
        _ = context
        self.started.set()
        await asyncio.sleep(0.05)
        return Pass()


class CancellingGuardrail(Guardrail):
    order = 100

    def __init__(self, cancel_event: asyncio.Event) -> None:
        self.cancel_event = cancel_event

    async def evaluate(self, context: GuardrailContext) -> GuardrailResult:
        _ = context
        self.cancel_event.set()
        return Pass()


def _context(**kwargs: Any) -> GuardrailContext:
    return GuardrailContext(module_name="auth", **kwargs)


def test_guardrails_run_in_ascending_order() -> None:
    calls: list[str] = []
    pipeline = GuardrailPipeline(
        [
            CountingGuardrail(300, calls=calls),
            CountingGuardrail(100, calls=calls),
            CountingGuardrail(200, calls=calls),
        ]
    )

    results = asyncio.run(pipeline.evaluate(_context()))

    assert calls == ["g100", "g200", "g300"]
    assert results == [Pass(), Pass(), Pass()]


def test_equal_order_keeps_registration_order() -> None:
    calls: list[str] = []
    pipeline = GuardrailPipeline()
    pipeline.register(CountingGuardrail(100, calls=calls, label="first"))
    pipeline.register(CountingGuardrail(100, calls=calls, label="second"))

    asyncio.run(pipeline.evaluate(_context()))

    assert calls == ["first", "second"]


def test_empty_pipeline_returns_no_results() -> None:
    assert asyncio.run(GuardrailPipeline().evaluate(_context())) == []


def test_short_circuit_block_stops_later_guardrails() -> None:
    blocker = CountingGuardrail(100, Block("stop"), short_circuit=True)
    later = CountingGuardrail(200)
    pipeline = GuardrailPipeline([later, blocker])

    results = asyncio.run(pipeline.evaluate(_context()))

    assert results == [Block("stop")]
    assert later.invocations == 0


def test_non_short_circuit_block_lets_later_guardrails_run() -> None:
    blocker = CountingGuardrail(100, Block("stop"))
    later = CountingGuardrail(200, Warn("careful"))
    pipeline = GuardrailPipeline([blocker, later])

    results = asyncio.run(pipeline.evaluate(_context()))

    assert results == [Block("stop"), Warn("careful")]
    assert later.invocations == 1


def test_short_circuit_flag_ignored_for_warn() -> None:
    warner = CountingGuardrail(100, Warn("hm"), short_circuit=True)
    later = CountingGuardrail(200)

    results = asyncio.run(GuardrailPipeline([warner, later]).evaluate(_context()))

    assert results == [Warn("hm"), Pass()]


def test_cancel_event_stops_before_next_guardrail() -> None:
    async def _run() -> CountingGuardrail:
        cancel_event = asyncio.Event()
        second = CountingGuardrail(200)
        pipeline = GuardrailPipeline([CancellingGuardrail(cancel_event), second])
        with pytest.raises(asyncio.CancelledError):
            await pipeline.evaluate(_context(), cancel_event)
        return second

    second = asyncio.run(_run())

    assert second.invocations == 0


def test_task_cancellation_propagates_without_partial_results() -> None:
    events: list[dict[str, Any]] = []

    async def _run() -> CountingGuardrail:
        started = asyncio.Event()
        second = CountingGuardrail(200)
        pipeline = GuardrailPipeline([SlowGuardrail(started), second], event_hook=events.append)
        task = asyncio.create_task(pipeline.evaluate(_context()))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return second

    second = asyncio.run(_run())

    assert second.invocations == 0
    assert not any(event["event"] == "guardrail_evaluated" for event in events)


def test_pipeline_emits_events() -> None:
    events: list[dict[str, Any]] = []
    pipeline = GuardrailPipeline(
        [CountingGuardrail(100, Block("no"), short_circuit=True), CountingGuardrail(200)],
        event_hook=events.append,
    )

    asyncio.run(pipeline.evaluate(_context(task_name="t1")))

    assert [event["event"] for event in events] == [
        "guardrail_evaluated",
        "guardrail_short_circuit",
    ]
    assert events[0]["outcome"] == "block"
    assert events[0]["task"] == "t1"
    assert events[1]["skipped"] == 1


def test_context_is_immutable_and_validated() -> None:
    reads = {"a.py": 2}
    context = _context(file_read_counts=reads)
    reads["a.py"] = 9

    assert context.file_read_counts == {"a.py": 2}
    with pytest.raises(TypeError):
        context.file_read_counts["a.py"] = 5  # type: ignore[index]
    with pytest.raises(AttributeError):
        context.module_name = "other"  # type: ignore[misc]
    with pytest.raises(ValueError):
        GuardrailContext(module_name="")
    with pytest.raises(ValueError):
        _context(iteration_count=-1)
    with pytest.raises(ValueError):
        _context(command_retry_counts={"pytest": -1})


def test_contexts_with_counts_hash_by_value() -> None:
    first = _context(file_read_counts={"a.py": 1, "b.py": 2}, command_retry_counts={"pytest": 1})
    second = _context(file_read_counts={"b.py": 2, "a.py": 1}, command_retry_counts={"pytest": 1})

    assert first == second
    assert hash(first) == hash(second)
    assert len({first, second, _context()}) == 2


def test_result_types() -> None:
    assert Warn("a") == Warn("a")
    assert Warn("a") != Block("a")
    with pytest.raises(ValueError):
        Warn("")
    with pytest.raises(ValueError):
        Block("  ")
    assert result_to_dict(Pass()) == {"outcome": "pass"}
    assert result_to_dict(Block("x")) == {"outcome": "block", "message": "x"}


def test_noop_guardrail_always_passes() -> None:
    guardrail = NoOpGuardrail(150, label="budget")

    assert guardrail.order == 150
    assert guardrail.name == "NoOpGuardrail[budget]"
    assert asyncio.run(guardrail.evaluate(_context(iteration_count=99))) == Pass()
