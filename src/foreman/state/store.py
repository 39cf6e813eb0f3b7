from __future__ import annotations

import json
import os
import time
from collections.abc import Callable
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from foreman.errors import StateError

MAX_HISTORY_ENTRIES = 100
MAX_BACKEND_EVENTS = 200


class StateStore:
    """Versioned JSON namespaces kept under the project's state directory."""

    NAMESPACES = {"history", "metrics"}
    SCHEMA_VERSION = 1

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir.resolve()
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.state_dir / ".lock"

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in StateStore.NAMESPACES:
            raise StateError(f"Unsupported namespace: {namespace}")

    def _file(self, namespace: str) -> Path:
        return self.state_dir / f"{namespace}.json"

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise StateError("Timed out waiting for state lock.") from exc
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

    def _write_raw_json(self, namespace: str, payload: Any) -> None:
        serialized = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
        target = self._file(namespace)
        staging = target.with_suffix(".json.tmp")
        staging.write_text(serialized, encoding="utf-8")
        staging.replace(target)

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
                "updated_at": raw_payload.get("updated_at") or self._utcnow_iso(),
                "data": raw_payload.get("data", default),
            }
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": self._utcnow_iso(),
            "data": default if raw_payload is None else raw_payload,
        }

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        return self._normalize_envelope(self._read_raw_json(namespace), default_value)

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default).get("data")

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        self._validate_namespace(namespace)
        with self._state_lock():
            current = self.get_envelope(namespace, default={})
            current_revision = int(current.get("revision", 1))
            if expected_revision is not None and expected_revision != current_revision:
                raise StateError(f"Concurrent state update detected for namespace '{namespace}'.")
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": current_revision + 1,
                "updated_at": self._utcnow_iso(),
                "data": data,
            }
            self._write_raw_json(namespace, envelope)

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
            except StateError as exc:
                last_error = exc
                if "Concurrent state update detected" not in str(exc):
                    raise
                time.sleep(0.01)
        raise StateError(str(last_error) if last_error else "State update failed.")

    def get_history(self) -> list[dict[str, Any]]:
        payload = self.get_json("history", default={"runs": []})
        if not isinstance(payload, dict):
            return []
        runs = payload.get("runs", [])
        return runs if isinstance(runs, list) else []

    def add_run(self, run: dict[str, Any]) -> None:
        """Record a finished run, newest first."""

        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {"runs": []}
            runs = result.get("runs") if isinstance(result.get("runs"), list) else []
            result["runs"] = [run, *runs][:MAX_HISTORY_ENTRIES]
            return result

        self.update_json("history", _updater, default={"runs": []})

    def get_metrics(self) -> dict[str, Any]:
        metrics = self.get_json("metrics", default={})
        return metrics if isinstance(metrics, dict) else {}

    def increment_metric(self, key: str, value: int = 1) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {}
            result[key] = int(result.get(key, 0)) + value
            return result

        self.update_json("metrics", _updater, default={})

    def record_backend_event(self, event: dict[str, Any]) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {}
            events = result.get("backend_events")
            events = events if isinstance(events, list) else []
            events.append({**event, "recorded_at": self._utcnow_iso()})
            result["backend_events"] = events[-MAX_BACKEND_EVENTS:]
            name = str(event.get("event", "unknown"))
            counts = result.get("backend_event_counts")
            counts = counts if isinstance(counts, dict) else {}
            counts[name] = int(counts.get(name, 0)) + 1
            result["backend_event_counts"] = counts
            return result

        self.update_json("metrics", _updater, default={})
