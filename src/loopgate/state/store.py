from __future__ import annotations

import json
import os
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from loopgate.errors import LoopgateError

MAX_EVENTS = 200


class SessionStateError(LoopgateError):
    """Raised when session-state operations fail."""


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class SessionStore:
    """Versioned JSON documents for one working directory's loop session.

    Each namespace is a file holding ``{schema_version, revision, updated_at,
    data}``. Writes take an exclusive lock file; ``update_json`` retries on a
    revision mismatch.
    """

    NAMESPACES = {"tree", "verifications", "usage", "failures", "events"}
    SCHEMA_VERSION = 1

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir.resolve()
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.state_dir / ".lock"

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in SessionStore.NAMESPACES:
            raise SessionStateError(f"Unsupported namespace: {namespace}")

    def _file(self, namespace: str) -> Path:
        return self.state_dir / f"{namespace}.json"

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0) -> Iterator[None]:
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise SessionStateError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw_json(self, namespace: str) -> Any:
        path = self._file(namespace)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return None

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or _utcnow_iso(),
                "data": raw_payload.get("data", default),
            }
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": _utcnow_iso(),
            "data": default if raw_payload is None else raw_payload,
        }

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        return self._normalize_envelope(
            self._read_raw_json(namespace), {} if default is None else default
        )

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default).get("data")

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        self._validate_namespace(namespace)
        with self._state_lock():
            current = self.get_envelope(namespace, default={})
            current_revision = int(current.get("revision", 1))
            if expected_revision is not None and expected_revision != current_revision:
                raise SessionStateError(
                    f"Concurrent state update detected for namespace '{namespace}'."
                )
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": current_revision + 1,
                "updated_at": _utcnow_iso(),
                "data": data,
            }
            self._file(namespace).write_text(
                json.dumps(envelope, ensure_ascii=False, indent=2), encoding="utf-8"
            )

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        default_value = {} if default is None else default
        last_error: Exception | None = None
        for _ in range(4):
            current = self.get_envelope(namespace, default=default_value)
            updated = updater(current.get("data", default_value))
            try:
                self.set_json(namespace, updated, expected_revision=int(current.get("revision", 1)))
                return updated
            except SessionStateError as exc:
                last_error = exc
                if "Concurrent state update detected" not in str(exc):
                    raise
                time.sleep(0.01)
        raise SessionStateError(str(last_error) if last_error else "State update failed.")

    def get_tree(self) -> list[dict[str, Any]]:
        payload = self.get_json("tree", default={"modules": []})
        modules = payload.get("modules", []) if isinstance(payload, dict) else []
        return modules if isinstance(modules, list) else []

    def set_tree(self, modules: list[dict[str, Any]]) -> None:
        self.set_json("tree", {"modules": modules})

    def get_verifications(self) -> list[dict[str, Any]]:
        payload = self.get_json("verifications", default={"records": []})
        records = payload.get("records", []) if isinstance(payload, dict) else []
        return records if isinstance(records, list) else []

    def set_verifications(self, records: list[dict[str, Any]]) -> None:
        self.set_json("verifications", {"records": records})

    def get_usage(self) -> dict[str, Any]:
        usage = self.get_json("usage", default={})
        return usage if isinstance(usage, dict) else {}

    def set_usage(self, usage: dict[str, Any]) -> None:
        self.set_json("usage", usage)

    def get_failures(self) -> dict[str, int]:
        failures = self.get_json("failures", default={})
        if not isinstance(failures, dict):
            return {}
        return {str(key): int(value) for key, value in failures.items() if isinstance(value, int)}

    def set_failures(self, counts: dict[str, int]) -> None:
        self.set_json("failures", counts)

    def get_events(self) -> list[dict[str, Any]]:
        payload = self.get_json("events", default={"events": []})
        events = payload.get("events", []) if isinstance(payload, dict) else []
        return events if isinstance(events, list) else []

    def record_event(self, event: dict[str, Any]) -> None:
        event_payload = dict(event)
        event_payload["at"] = _utcnow_iso()

        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {"events": []}
            events = result.get("events")
            if not isinstance(events, list):
                events = []
            events.append(event_payload)
            result["events"] = events[-MAX_EVENTS:]
            return result

        self.update_json("events", _updater, default={"events": []})
