from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Generic, Iterator, Optional, TypeVar

from .config import RetryPolicy
from .errors import ErrorKind, StageError
from .events import Emitter, PipelineEvent, noop_emitter, now_ns
from .logging import get_logger

T = TypeVar("T")

logger = get_logger("runner")

_local = threading.local()


class CancelToken:
    """Cooperative cancellation signal shared by everything working on one job."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; returns True as soon as cancellation is requested."""
        return self._event.wait(max(0.0, timeout))


class AttemptToken:
    """
    Identifies one timed attempt. Once the runner gives up on it, the attempt
    may keep running on its thread but must not publish any output.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._abandoned = False

    def abandon(self) -> None:
        with self._lock:
            self._abandoned = True

    @property
    def abandoned(self) -> bool:
        return self._abandoned

    @contextmanager
    def publishing(self) -> Iterator[bool]:
        """Hold off abandonment while output is moved into place; yields False if already abandoned."""
        with self._lock:
            yield not self._abandoned


def current_attempt() -> Optional[AttemptToken]:
    """The token of the timed attempt running on this thread, if any."""
    return getattr(_local, "attempt", None)


class Outcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class StageResult(Generic[T]):
    outcome: Outcome
    value: Optional[T] = None
    error: Optional[StageError] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.outcome == Outcome.SUCCEEDED

    @property
    def cancelled(self) -> bool:
        return self.outcome == Outcome.CANCELLED

    @classmethod
    def success(cls, value: Any = None, *, attempts: int = 1) -> "StageResult":
        return cls(outcome=Outcome.SUCCEEDED, value=value, attempts=attempts)

    @classmethod
    def failure(cls, error: StageError, *, attempts: int) -> "StageResult":
        return cls(outcome=Outcome.FAILED, error=error, attempts=attempts)

    @classmethod
    def cancel(cls, *, attempts: int) -> "StageResult":
        return cls(outcome=Outcome.CANCELLED, attempts=attempts)


class _AttemptCancelled(Exception):
    pass


def backoff_delay(attempt: int, policy: RetryPolicy, kind: ErrorKind = ErrorKind.TRANSIENT_NETWORK) -> float:
    """Wait before retrying after failed attempt number ``attempt`` (1-based)."""
    delay = policy.backoff_s * (2 ** max(0, attempt - 1))
    cap = policy.backoff_cap_s
    if kind == ErrorKind.QUOTA_EXCEEDED:
        delay *= policy.quota_backoff_factor
        cap *= policy.quota_backoff_factor
    return min(delay, cap)


def attempt_ceiling(policy: RetryPolicy, kind: ErrorKind) -> int:
    if kind == ErrorKind.QUOTA_EXCEEDED:
        return min(policy.max_attempts, policy.quota_max_attempts)
    return policy.max_attempts


class StageRunner:
    """
    Execution wrapper for a single stage step: per-attempt timeout, retry with
    exponential backoff and cooperative cancellation.

    The runner is the only place that decides retry vs. propagate; callers only
    ever see a StageResult.
    """

    def __init__(
        self,
        *,
        policy: Optional[RetryPolicy] = None,
        cancel: Optional[CancelToken] = None,
        emit: Optional[Emitter] = None,
        job_id: Optional[str] = None,
        cancel_check_s: float = 0.2,
    ):
        self.policy = policy or RetryPolicy()
        self.cancel = cancel or CancelToken()
        self.emit = emit or noop_emitter
        self.job_id = job_id
        self.cancel_check_s = cancel_check_s

    def run(
        self,
        stage: str,
        step: str,
        fn: Callable[[], T],
        *,
        policy: Optional[RetryPolicy] = None,
        on_attempt: Optional[Callable[[int], None]] = None,
        on_retry: Optional[Callable[[int, StageError, float], None]] = None,
    ) -> StageResult[T]:
        policy = policy or self.policy
        attempt = 0
        last_delay = 0.0

        while True:
            if self.cancel.cancelled:
                return self._cancelled(stage, step, attempt)

            attempt += 1
            self._event("attempt", stage, step, attempt=attempt, message=f"{step} attempt {attempt}")
            if on_attempt:
                on_attempt(attempt)
            logger.debug("[stage] %s/%s attempt %d/%d", stage, step, attempt, policy.max_attempts)

            try:
                value = self._call(stage, step, fn, policy.attempt_timeout_s)
            except _AttemptCancelled:
                return self._cancelled(stage, step, attempt)
            except StageError as exc:
                error = exc
            except OSError as exc:
                error = StageError(ErrorKind.STORAGE, f"{type(exc).__name__}: {exc}")
            except Exception as exc:
                logger.exception("[stage] %s/%s raised unexpectedly", stage, step)
                error = StageError(ErrorKind.INTERNAL, f"{type(exc).__name__}: {exc}")
            else:
                self._event("outcome", stage, step, attempt=attempt, message=f"{step} succeeded")
                return StageResult.success(value, attempts=attempt)

            if self.cancel.cancelled:
                return self._cancelled(stage, step, attempt)

            ceiling = attempt_ceiling(policy, error.kind)
            if not error.retryable or attempt >= ceiling:
                logger.error("[stage] %s/%s failed after %d attempt(s): %s", stage, step, attempt, error)
                self._event("outcome", stage, step, attempt=attempt, error=_error_dict(error), message=str(error))
                return StageResult.failure(error, attempts=attempt)

            delay = max(backoff_delay(attempt, policy, error.kind), last_delay)
            last_delay = delay
            logger.warning(
                "[stage] %s/%s attempt %d/%d failed (%s); retrying in %.1fs",
                stage,
                step,
                attempt,
                ceiling,
                error,
                delay,
            )
            self._event(
                "outcome",
                stage,
                step,
                attempt=attempt,
                error=_error_dict(error),
                delay_s=delay,
                message=f"{error.hint or error.kind.value}; retrying",
            )
            if on_retry:
                on_retry(attempt, error, delay)
            if self.cancel.wait(delay):
                return self._cancelled(stage, step, attempt)

    def _call(self, stage: str, step: str, fn: Callable[[], T], timeout_s: Optional[float]) -> T:
        if timeout_s is None:
            return fn()

        box: Dict[str, Any] = {}
        done = threading.Event()
        token = AttemptToken()

        def _target() -> None:
            _local.attempt = token
            try:
                box["value"] = fn()
            except BaseException as exc:  # re-raised on the caller's thread
                box["error"] = exc
            finally:
                done.set()

        # Daemon thread: a hung call is abandoned, not joined.
        worker = threading.Thread(target=_target, name=f"{stage}-{step}", daemon=True)
        worker.start()
        deadline = time.monotonic() + timeout_s
        while not done.wait(min(self.cancel_check_s, max(0.0, deadline - time.monotonic()))):
            if self.cancel.cancelled:
                token.abandon()
                raise _AttemptCancelled()
            if time.monotonic() >= deadline:
                token.abandon()
                raise StageError(ErrorKind.TIMEOUT, f"{step} did not finish within {timeout_s:g}s")

        if "error" in box:
            raise box["error"]
        return box["value"]

    def _cancelled(self, stage: str, step: str, attempts: int) -> StageResult:
        logger.info("[stage] %s/%s cancelled", stage, step)
        self._event("outcome", stage, step, attempt=attempts or None, message="cancelled")
        return StageResult.cancel(attempts=attempts)

    def _event(self, kind: str, stage: str, step: str, **fields: Any) -> None:
        self.emit(PipelineEvent(kind=kind, stage=stage, step=step, ts_ns=now_ns(), job_id=self.job_id, **fields))


def _error_dict(error: StageError) -> Dict[str, Any]:
    return {"kind": error.kind.value, "message": error.message, "retryable": error.retryable}
