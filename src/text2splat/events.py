from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Literal, Optional

from .logging import get_logger

EventKind = Literal["attempt", "outcome", "progress", "log", "artifact", "status"]

logger = get_logger("events")


@dataclass(frozen=True)
class PipelineEvent:
    """
    A structured event emitted while a job runs.

    - kind="attempt": a stage step is about to be attempted (attempt number set)
    - kind="outcome": result of one attempt (error set on failure, delay_s on retry)
    - kind="progress": stage + progress in [0,1]
    - kind="artifact": an artifact was persisted
    - kind="log": a human-readable message
    - kind="status": coarse job state transitions
    """

    kind: EventKind
    stage: str
    ts_ns: int
    job_id: Optional[str] = None
    step: Optional[str] = None
    message: Optional[str] = None
    progress: Optional[float] = None
    attempt: Optional[int] = None
    delay_s: Optional[float] = None
    error: Optional[Dict[str, Any]] = None
    artifact: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "kind": self.kind,
            "stage": self.stage,
            "ts_ns": self.ts_ns,
        }
        for key in ("job_id", "step", "message", "progress", "attempt", "delay_s", "error", "artifact"):
            value = getattr(self, key)
            if value is not None:
                d[key] = value
        return d

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


Emitter = Callable[[PipelineEvent], None]


def noop_emitter(_: PipelineEvent) -> None:
    return


class ThreadSafeEmitter:
    """
    Wrap any Emitter so it can safely be called from multiple threads.

    A failing downstream handler is logged and otherwise ignored so progress
    reporting can never break a job.
    """

    def __init__(self, emit: Emitter):
        self._emit = emit
        self._lock = threading.Lock()

    def __call__(self, event: PipelineEvent) -> None:
        with self._lock:
            try:
                self._emit(event)
            except Exception:
                logger.debug("event handler failed for %s", event.kind, exc_info=True)


class JsonlEventLog:
    """Append-only ``events.jsonl`` inside a job directory."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def __call__(self, event: PipelineEvent) -> None:
        with self._path.open("a", encoding="utf-8") as handle:
            handle.write(event.to_json())
            handle.write("\n")


def fan_out(*emitters: Emitter) -> Emitter:
    def _emit(event: PipelineEvent) -> None:
        for e in emitters:
            try:
                e(event)
            except Exception:
                logger.debug("event handler %r failed", e, exc_info=True)

    return _emit


def now_ns() -> int:
    return time.time_ns()
