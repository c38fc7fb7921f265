import asyncio
from collections.abc import AsyncIterator
from typing import Any

import pytest

from loopgate.backends.base import AgentBackend, BackendExecutionError
from loopgate.verification import (
    OracleVerifier,
    TaskStatusGate,
    VerificationScope,
    VerificationTracker,
)


class ScriptedBackend(AgentBackend):
    def __init__(self, *chunks: str) -> None:
        self.chunks = chunks
        self.prompts: list[str] = []

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, context
        self.prompts.append(user_prompt)
        for chunk in self.chunks:
            yield chunk


class BrokenBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context
        raise BackendExecutionError("claude exited with 1", backend="claude", exit_code=1)
        yield ""  # pragma: no cover


def test_tracker_defaults_to_unverified() -> None:
    tracker = VerificationTracker()

    assert tracker.is_verified(VerificationScope.TASK, "t1") is False
    assert len(tracker) == 0


def test_tracker_last_write_wins_and_scopes_are_separate() -> None:
    tracker = VerificationTracker()
    tracker.record_verification(VerificationScope.TASK, "auth", True)

    assert tracker.is_verified(VerificationScope.TASK, "auth") is True
    assert tracker.is_verified(VerificationScope.MODULE, "auth") is False

    tracker.record_verification(VerificationScope.TASK, "auth", False)
    assert tracker.is_verified(VerificationScope.TASK, "auth") is False
    assert len(tracker) == 1


def test_tracker_records_roundtrip_and_skip_garbage() -> None:
    tracker = VerificationTracker()
    tracker.record_verification(VerificationScope.COMPONENT, "login", True)
    tracker.record_verification(VerificationScope.TASK, "t1", False)

    records = tracker.to_records() + [{"scope": "epic", "id": "x"}, "junk", {"scope": "task"}]
    restored = VerificationTracker.from_records(records)

    assert len(restored) == 2
    assert restored.is_verified(VerificationScope.COMPONENT, "login") is True
    assert restored.is_verified(VerificationScope.TASK, "t1") is False


def test_gate_rejects_then_allows_after_passing_verification() -> None:
    events: list[dict[str, Any]] = []
    tracker = VerificationTracker()
    gate = TaskStatusGate(tracker, event_hook=events.append)

    rejected = gate.validate_completion(VerificationScope.TASK, "t1")
    tracker.record_verification(VerificationScope.TASK, "t1", True)
    allowed = gate.validate_completion(VerificationScope.TASK, "t1")

    assert rejected.is_allowed is False
    assert rejected.rejection_reason is not None
    assert "Cannot mark task 't1' as complete" in rejected.rejection_reason
    assert "verify_task_completion" in rejected.rejection_reason
    assert allowed.is_allowed is True
    assert allowed.rejection_reason is None
    assert [event["event"] for event in events] == ["completion_rejected", "completion_allowed"]


def test_gate_rejects_after_failed_verification() -> None:
    tracker = VerificationTracker()
    tracker.record_verification(VerificationScope.MODULE, "auth", False)

    result = TaskStatusGate(tracker).validate_completion(VerificationScope.MODULE, "auth")

    assert result.is_allowed is False
    assert "verify_module_completion" in (result.rejection_reason or "")


def test_gate_rejects_blank_identifier() -> None:
    with pytest.raises(ValueError):
        TaskStatusGate(VerificationTracker()).validate_completion(VerificationScope.TASK, " ")


@pytest.mark.parametrize(
    ("output", "passed", "gaps"),
    [
        ('{"pass": true, "gaps": []}', True, []),
        ('```json\n{"pass": true, "gaps": []}\n```', True, []),
        ('{"pass": false, "gaps": ["no tests"]}', False, ["no tests"]),
        ('{"pass": true, "gaps": ["missing docs"]}', False, ["missing docs"]),
        ('Verdict: {"pass": true}', True, []),
        ("", False, ["Oracle returned empty response"]),
        ("[1, 2]", False, ["Oracle response could not be parsed"]),
    ],
)
def test_parse_verdict(output: str, passed: bool, gaps: list[str]) -> None:
    verdict = OracleVerifier.parse_verdict(output, VerificationScope.TASK)

    assert verdict.passed is passed
    assert verdict.gaps == gaps


def test_parse_verdict_reports_invalid_json() -> None:
    verdict = OracleVerifier.parse_verdict("looks good to me", VerificationScope.TASK)

    assert verdict.passed is False
    assert verdict.gaps[0].startswith("Oracle response was not valid JSON")


def test_oracle_verify_runs_backend_and_emits_events() -> None:
    events: list[dict[str, Any]] = []
    backend = ScriptedBackend('{"pass": ', 'true, "gaps": []}')
    oracle = OracleVerifier(backend, event_hook=events.append)

    verdict = asyncio.run(
        oracle.verify(VerificationScope.COMPONENT, "all tests green", "login works")
    )

    assert verdict.passed is True
    assert verdict.scope == VerificationScope.COMPONENT
    assert "login works" in backend.prompts[0]
    assert "all tests green" in backend.prompts[0]
    assert [event["event"] for event in events] == ["oracle_dispatch", "oracle_verdict"]


def test_oracle_backend_failure_is_a_failing_verdict() -> None:
    events: list[dict[str, Any]] = []
    oracle = OracleVerifier(BrokenBackend(), event_hook=events.append)

    verdict = asyncio.run(oracle.verify(VerificationScope.TASK, "evidence", "criteria"))

    assert verdict.passed is False
    assert verdict.gaps == ["Oracle invocation failed: claude exited with 1"]
    assert events[-1]["event"] == "oracle_failed"


def test_oracle_rejects_blank_inputs() -> None:
    oracle = OracleVerifier(ScriptedBackend("{}"))

    with pytest.raises(ValueError):
        asyncio.run(oracle.verify(VerificationScope.TASK, "  ", "criteria"))
    with pytest.raises(ValueError):
        asyncio.run(oracle.verify(VerificationScope.TASK, "evidence", ""))
