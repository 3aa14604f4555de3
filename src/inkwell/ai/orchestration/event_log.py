"""Debug event logging for orchestration runs (one JSONL file per run)."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Mapping, Sequence

from ...utils import logging as logging_utils

LOGGER = logging.getLogger(__name__)


def _default_event_dir() -> Path:
    log_path = logging_utils.get_log_path()
    if log_path is not None:
        return log_path.parent / "events"
    return Path.home() / ".inkwell" / "logs" / "events"


@dataclass(slots=True)
class NullEventLogRun:
    """No-op implementation used when event logging is disabled."""

    path: Path | None = None

    def __enter__(self) -> "NullEventLogRun":  # noqa: D401
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:  # noqa: D401
        return False

    def log_assistant_turn(self, *_: Any, **__: Any) -> None:
        return

    def log_correction(self, *_: Any, **__: Any) -> None:
        return

    def log_tool_batch(self, *_: Any, **__: Any) -> None:
        return

    def log_completion(self, *_: Any, **__: Any) -> None:
        return

    def log_failure(self, *_: Any, **__: Any) -> None:
        return


class EventLogRun:
    """Context manager that writes structured JSONL entries for one loop run."""

    def __init__(self, path: Path, *, context: Mapping[str, Any]) -> None:
        self.path = path
        self._file = path.open("w", encoding="utf-8")
        self._finalized = False
        self._write_entry("start", context)

    def __enter__(self) -> "EventLogRun":  # noqa: D401
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:  # noqa: D401
        if exc is not None and not self._finalized:
            self.log_failure(message=str(exc))
        elif not self._finalized:
            self.log_failure(message="run aborted without completion")
        return False

    def close(self) -> None:
        try:
            self._file.close()
        except OSError:  # pragma: no cover - defensive guard
            LOGGER.debug("Failed to close event log %s", self.path, exc_info=True)

    def log_assistant_turn(
        self,
        *,
        iteration: int,
        content: str | None,
        phase: str | None,
        tool_calls: Sequence[Mapping[str, Any]],
        usage: Mapping[str, Any],
    ) -> None:
        payload = {
            "iteration": iteration,
            "content": content,
            "phase": phase,
            "tool_calls": list(tool_calls),
            "usage": dict(usage),
        }
        self._write_entry("assistant", payload)

    def log_correction(self, *, iteration: int, kind: str, message: str, count: int) -> None:
        self._write_entry(
            "correction",
            {"iteration": iteration, "kind": kind, "message": message, "count": count},
        )

    def log_tool_batch(self, *, iteration: int, records: Sequence[Mapping[str, Any]]) -> None:
        if not records:
            return
        self._write_entry("tools", {"iteration": iteration, "tool_records": list(records)})

    def log_completion(
        self,
        *,
        response_text: str,
        iterations: int,
        usage: Mapping[str, Any],
        degraded: bool = False,
        reason: str | None = None,
    ) -> None:
        if self._finalized:
            return
        payload = {
            "response_text": response_text,
            "iterations": iterations,
            "usage": dict(usage),
            "degraded": degraded,
            "reason": reason,
            "status": "success",
        }
        self._write_entry("completion", payload)
        self._finalized = True
        self.close()

    def log_failure(self, *, message: str, details: Mapping[str, Any] | None = None) -> None:
        if self._finalized:
            return
        payload: dict[str, Any] = {
            "status": "failure",
            "message": message,
        }
        if details:
            payload["details"] = dict(details)
        self._write_entry("failure", payload)
        self._finalized = True
        self.close()

    def _write_entry(self, event: str, payload: Mapping[str, Any] | None = None) -> None:
        entry: dict[str, Any] = {
            "event": event,
            "timestamp": time.time(),
        }
        if payload:
            for key, value in payload.items():
                entry[key] = self._safe_json(value)
        json.dump(entry, self._file, ensure_ascii=False)
        self._file.write("\n")
        self._file.flush()

    def _safe_json(self, value: Any, *, depth: int = 0) -> Any:
        if depth > 6:
            return repr(value)
        if value is None or isinstance(value, (str, int, float, bool)):
            return value
        if isinstance(value, Mapping):
            return {str(key): self._safe_json(val, depth=depth + 1) for key, val in value.items()}
        if isinstance(value, (list, tuple, set)):
            return [self._safe_json(item, depth=depth + 1) for item in value]
        if isinstance(value, bytes):
            return value.decode("utf-8", errors="replace")
        return repr(value)


class EventLogger:
    """Factory for per-run event logs when debug event logging is enabled."""

    def __init__(self, *, enabled: bool, base_dir: Path | str | None = None) -> None:
        self.enabled = bool(enabled)
        self._base_dir = Path(base_dir) if base_dir else _default_event_dir()

    def start_run(
        self,
        *,
        run_id: str,
        prompt: str,
        require_envelope: bool,
        tools: Sequence[str],
    ) -> EventLogRun | NullEventLogRun:
        if not self.enabled:
            return NullEventLogRun()
        try:
            self._base_dir.mkdir(parents=True, exist_ok=True)
            path = self._allocate_path(run_id)
            context = {
                "run_id": run_id,
                "prompt": prompt,
                "require_envelope": require_envelope,
                "tools": list(tools),
            }
            log_run = EventLogRun(path, context=context)
            LOGGER.debug("Event log started: %s", path)
            return log_run
        except OSError:  # pragma: no cover - best effort logging
            LOGGER.debug("Failed to start event log", exc_info=True)
            return NullEventLogRun()

    def _allocate_path(self, run_id: str) -> Path:
        timestamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
        safe_run_id = "".join(ch for ch in run_id if ch.isalnum())[:12] or "run"
        return self._base_dir / f"run-{timestamp}-{safe_run_id}.jsonl"


__all__ = [
    "EventLogger",
    "EventLogRun",
    "NullEventLogRun",
]
