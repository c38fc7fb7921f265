from __future__ import annotations

from enum import Enum
from typing import Any


class VerificationScope(str, Enum):
    TASK = "task"
    COMPONENT = "component"
    MODULE = "module"


class VerificationTracker:
    """Last-write-wins table of oracle verdicts keyed by (scope, id)."""

    def __init__(self) -> None:
        self._records: dict[tuple[VerificationScope, str], bool] = {}

    def record_verification(self, scope: VerificationScope, identifier: str, passed: bool) -> None:
        self._records[(VerificationScope(scope), identifier)] = bool(passed)

    def is_verified(self, scope: VerificationScope, identifier: str) -> bool:
        return self._records.get((VerificationScope(scope), identifier), False)

    def __len__(self) -> int:
        return len(self._records)

    def to_records(self) -> list[dict[str, Any]]:
        return [
            {"scope": scope.value, "id": identifier, "passed": passed}
            for (scope, identifier), passed in self._records.items()
        ]

    @classmethod
    def from_records(cls, records: list[Any]) -> VerificationTracker:
        tracker = cls()
        for item in records:
            if not isinstance(item, dict):
                continue
            try:
                scope = VerificationScope(item.get("scope"))
            except ValueError:
                continue
            identifier = item.get("id")
            if isinstance(identifier, str) and identifier:
                tracker.record_verification(scope, identifier, bool(item.get("passed")))
        return tracker
