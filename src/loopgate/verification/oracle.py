from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from loopgate.backends.base import AgentBackend, BackendExecutionError
from loopgate.verification.tracker import VerificationScope

OracleEventHook = Callable[[dict[str, Any]], None]

ORACLE_SYSTEM_PROMPT = """
You are a verification oracle for an autonomous coding loop.
You never write code. You only judge evidence against acceptance criteria.
""".strip()


@dataclass(frozen=True, slots=True)
class OracleVerdict:
    passed: bool
    scope: VerificationScope
    gaps: list[str] = field(default_factory=list)


class OracleVerifier:
    """Asks a cheap agent turn whether work at a scope meets its acceptance criteria."""

    def __init__(
        self,
        backend: AgentBackend,
        *,
        model: str | None = None,
        event_hook: OracleEventHook | None = None,
    ) -> None:
        self.backend = backend
        self.model = model
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    @staticmethod
    def build_prompt(scope: VerificationScope, evidence: str, acceptance_criteria: str) -> str:
        return (
            "Review the evidence and determine whether the "
            f"{VerificationScope(scope).value} meets its acceptance criteria.\n\n"
            "Rules:\n"
            "- Be strict: every acceptance criterion must be met\n"
            "- If any criterion is not satisfied, the verification fails\n"
            "- List each unmet criterion as a separate gap\n"
            '- Respond ONLY with a JSON object: {"pass": true/false, "gaps": ["gap1", "gap2"]}\n'
            "- Do not include any text outside the JSON object\n\n"
            f"## Acceptance Criteria\n\n{acceptance_criteria.strip()}\n\n"
            f"## Evidence\n\n{evidence.strip()}\n"
        )

    @staticmethod
    def extract_json(text: str) -> str:
        trimmed = text.strip()
        if trimmed.startswith("```"):
            first_newline = trimmed.find("\n")
            if first_newline >= 0:
                trimmed = trimmed[first_newline + 1 :]
            last_fence = trimmed.rfind("```")
            if last_fence >= 0:
                trimmed = trimmed[:last_fence]
        start = trimmed.find("{")
        end = trimmed.rfind("}")
        if start >= 0 and end > start:
            return trimmed[start : end + 1]
        return trimmed

    @classmethod
    def parse_verdict(cls, output: str | None, scope: VerificationScope) -> OracleVerdict:
        if not output or not output.strip():
            return OracleVerdict(False, scope, ["Oracle returned empty response"])
        try:
            payload = json.loads(cls.extract_json(output))
        except json.JSONDecodeError:
            return OracleVerdict(
                False, scope, [f"Oracle response was not valid JSON: {output[:200]}"]
            )
        if not isinstance(payload, dict):
            return OracleVerdict(False, scope, ["Oracle response could not be parsed"])

        raw_gaps = payload.get("gaps") or []
        gaps = [str(item) for item in raw_gaps] if isinstance(raw_gaps, list) else [str(raw_gaps)]
        passed = payload.get("pass") is True and not gaps
        return OracleVerdict(passed, scope, gaps)

    async def verify(
        self,
        scope: VerificationScope,
        evidence: str,
        acceptance_criteria: str,
    ) -> OracleVerdict:
        if not evidence or not evidence.strip():
            raise ValueError("evidence must be a non-empty string.")
        if not acceptance_criteria or not acceptance_criteria.strip():
            raise ValueError("acceptance_criteria must be a non-empty string.")
        scope = VerificationScope(scope)

        self._emit({"event": "oracle_dispatch", "scope": scope.value, "model": self.model})
        context: dict[str, Any] = {"model": self.model} if self.model else {}
        try:
            output = await self.backend.complete(
                ORACLE_SYSTEM_PROMPT,
                self.build_prompt(scope, evidence, acceptance_criteria),
                context,
            )
        except BackendExecutionError as exc:
            self._emit({"event": "oracle_failed", "scope": scope.value, "error": str(exc)})
            return OracleVerdict(False, scope, [f"Oracle invocation failed: {exc}"])

        verdict = self.parse_verdict(output, scope)
        self._emit(
            {
                "event": "oracle_verdict",
                "scope": scope.value,
                "passed": verdict.passed,
                "gap_count": len(verdict.gaps),
            }
        )
        return verdict
