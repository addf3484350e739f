"""Retry, timeout, circuit-breaker, and batch helpers for fallible operations.

Everything here is synchronous. Concurrency, where needed, comes from a
thread pool:

``retry``
    Bounded retry with exponential backoff and up to 10% jitter.

``with_timeout``
    Races an operation against a timer. The losing call is abandoned, not
    cancelled: a worker thread that outlives its timeout keeps running until
    the underlying operation returns.

``CircuitBreaker``
    Closed / open / half-open breaker that fails fast once a collaborator
    keeps failing.

``execute_batch``
    Fixed-width chunked fan-out with optional abort on first failure.
"""

from __future__ import annotations

import json
import logging
import random
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Generic, Iterable, List, Mapping, Optional, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")

LOGGER = logging.getLogger(__name__)
TELEMETRY_LOGGER = logging.getLogger("swe.telemetry")

_RETRYABLE_MESSAGE_FRAGMENTS = (
    "network",
    "timeout",
    "timed out",
    "econnrefused",
    "econnreset",
    "connection reset",
    "connection refused",
    "socket hang up",
    "fetch failed",
)
_RETRYABLE_STATUS_CODES = ("429", "500", "502", "503", "504")
_RATE_LIMIT_FRAGMENTS = ("rate limit", "too many requests", "quota exceeded")
_RETRYABLE_ERROR_NAMES = ("networkerror", "timeouterror")

_JITTER_RATIO = 0.1


class CircuitOpenError(RuntimeError):
    """Raised when a circuit breaker rejects a call without running it."""

    def __init__(self, message: str, *, breaker_name: str | None = None, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.breaker_name = breaker_name
        self.retry_after = retry_after


class OperationTimeoutError(TimeoutError):
    """Raised when an operation loses the race against its timer."""

    def __init__(self, message: str, *, timeout_seconds: float | None = None) -> None:
        super().__init__(message)
        self.timeout_seconds = timeout_seconds


def _emit_event(event: str, **fields: Any) -> None:
    payload = {"event": event, "timestamp": datetime.now(timezone.utc).isoformat()}
    payload.update({key: value if isinstance(value, (str, int, float, bool)) or value is None else str(value) for key, value in fields.items()})
    TELEMETRY_LOGGER.info(json.dumps(payload, separators=(",", ":"), ensure_ascii=True))


# ---------------------------------------------------------------- retry


@dataclass(slots=True)
class RetryPolicy:
    """Retry budget and backoff shape.

    Delays are expressed in seconds. ``should_retry`` overrides the default
    error classifier and ``on_retry`` is invoked with ``(attempt, error,
    delay)`` before each wait, ``attempt`` counting retries from 1.
    """

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_factor: float = 2.0
    should_retry: Optional[Callable[[BaseException], bool]] = None
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None

    @classmethod
    def from_config(cls, config: Mapping[str, Any] | None) -> "RetryPolicy":
        """Build a policy from the ``resilience`` configuration section."""
        section = config or {}
        if not isinstance(section, Mapping):
            section = {}
        defaults = cls()
        return cls(
            max_retries=int(section.get("max_retries", defaults.max_retries)),
            initial_delay=float(section.get("initial_delay", defaults.initial_delay)),
            max_delay=float(section.get("max_delay", defaults.max_delay)),
            backoff_factor=float(section.get("backoff_factor", defaults.backoff_factor)),
        )


def calculate_backoff(
    attempt: int,
    policy: RetryPolicy | None = None,
    *,
    rng: random.Random | None = None,
) -> float:
    """Return the delay before retry ``attempt`` (0-based), capped at ``max_delay``."""
    policy = policy or RetryPolicy()
    base_delay = policy.initial_delay * (policy.backoff_factor**attempt)
    jitter = (rng or random).random() * _JITTER_RATIO * base_delay
    return min(base_delay + jitter, policy.max_delay)


def is_retryable_error(error: BaseException) -> bool:
    """Classify ``error`` as transient (network, timeout, 5xx, rate limit)."""
    if isinstance(error, (ConnectionError, TimeoutError)):
        return True

    message = str(error).lower()
    name = type(error).__name__.lower()

    if any(fragment in message for fragment in _RETRYABLE_MESSAGE_FRAGMENTS):
        return True
    if any(code in message for code in _RETRYABLE_STATUS_CODES):
        return True
    if any(fragment in message for fragment in _RATE_LIMIT_FRAGMENTS):
        return True
    return name in _RETRYABLE_ERROR_NAMES


def retry(
    fn: Callable[[], T],
    policy: RetryPolicy | None = None,
    *,
    sleep: Callable[[float], None] = time.sleep,
    rng: random.Random | None = None,
) -> T:
    """Call ``fn`` until it succeeds or the retry budget is exhausted.

    Non-retryable errors propagate immediately. On persistent failure ``fn``
    runs exactly ``max_retries + 1`` times and the last error is re-raised
    unchanged.
    """
    policy = policy or RetryPolicy()
    classify = policy.should_retry or is_retryable_error

    attempt = 0
    while True:
        try:
            return fn()
        except Exception as error:
            if attempt >= policy.max_retries or not classify(error):
                raise
            delay = calculate_backoff(attempt, policy, rng=rng)
            attempt += 1
            LOGGER.debug("Retrying after %.3fs (attempt %d/%d): %s", delay, attempt, policy.max_retries, error)
            if policy.on_retry is not None:
                policy.on_retry(attempt, error, delay)
            sleep(delay)


# -------------------------------------------------------------- timeouts


def with_timeout(
    fn: Callable[[], T],
    timeout: float,
    message: str = "Operation timed out",
) -> T:
    """Run ``fn`` in a worker thread and fail if it has not settled in ``timeout`` seconds."""
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="swe-timeout")
    future: Future[T] = executor.submit(fn)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError as error:
        if future.done():
            raise
        raise OperationTimeoutError(message, timeout_seconds=timeout) from error
    finally:
        executor.shutdown(wait=False)


def retry_with_timeout(
    fn: Callable[[], T],
    policy: RetryPolicy | None = None,
    timeout: float | None = None,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Retry ``fn`` with each attempt individually bounded by ``timeout``."""
    if timeout is None:
        return retry(fn, policy, sleep=sleep)
    return retry(lambda: with_timeout(fn, timeout), policy, sleep=sleep)


# -------------------------------------------------------- circuit breaker


class CircuitState(str, Enum):
    """States of a circuit breaker."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class CircuitBreaker:
    """Fail fast after ``threshold`` consecutive failures.

    While open, calls are rejected with :class:`CircuitOpenError` until
    ``reset_timeout`` seconds have passed since the last failure. The next
    call is then let through as the single half-open trial: success closes
    the circuit, failure re-opens it.
    """

    def __init__(
        self,
        threshold: int = 5,
        reset_timeout: float = 30.0,
        *,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        self.threshold = threshold
        self.reset_timeout = reset_timeout
        self.name = name
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: float | None = None
        self._trial_in_flight = False
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def last_failure_time(self) -> float | None:
        return self._last_failure_time

    def execute(self, fn: Callable[[], T]) -> T:
        """Run ``fn`` through the breaker."""
        self._before_call()
        try:
            result = fn()
        except Exception:
            self._record_failure()
            raise
        self._record_success()
        return result

    def reset(self) -> None:
        with self._lock:
            self._transition(CircuitState.CLOSED)
            self._failure_count = 0
            self._last_failure_time = None
            self._trial_in_flight = False

    def _before_call(self) -> None:
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return
            if self._state == CircuitState.OPEN:
                elapsed = self._clock() - (self._last_failure_time or 0.0)
                if elapsed < self.reset_timeout:
                    raise CircuitOpenError(
                        f"Circuit breaker '{self.name}' is open",
                        breaker_name=self.name,
                        retry_after=self.reset_timeout - elapsed,
                    )
                self._transition(CircuitState.HALF_OPEN)
            if self._trial_in_flight:
                raise CircuitOpenError(
                    f"Circuit breaker '{self.name}' is half-open with a trial in flight",
                    breaker_name=self.name,
                )
            self._trial_in_flight = True

    def _record_success(self) -> None:
        with self._lock:
            self._trial_in_flight = False
            if self._state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.CLOSED)
            self._failure_count = 0

    def _record_failure(self) -> None:
        with self._lock:
            self._trial_in_flight = False
            self._failure_count += 1
            self._last_failure_time = self._clock()
            if self._state == CircuitState.HALF_OPEN or self._failure_count >= self.threshold:
                self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        if new_state == self._state:
            return
        old_state = self._state
        self._state = new_state
        _emit_event(
            "circuit.state_change",
            breaker=self.name,
            old_state=old_state.value,
            new_state=new_state.value,
            failure_count=self._failure_count,
        )


# ----------------------------------------------------------------- batch


@dataclass(slots=True)
class BatchSuccess(Generic[T, R]):
    item: T
    result: R


@dataclass(slots=True)
class BatchFailure(Generic[T]):
    item: T
    error: BaseException


@dataclass(slots=True)
class BatchResult(Generic[T, R]):
    """Partitioned outcome of :func:`execute_batch`."""

    successful: List[BatchSuccess[T, R]] = field(default_factory=list)
    failed: List[BatchFailure[T]] = field(default_factory=list)


def execute_batch(
    items: Iterable[T],
    fn: Callable[[T], R],
    *,
    concurrency: int = 5,
    continue_on_error: bool = True,
) -> BatchResult[T, R]:
    """Apply ``fn`` to ``items`` in concurrent chunks of ``concurrency``.

    Chunks run one after another. When ``continue_on_error`` is false the
    first failing item (in input order) of a chunk is re-raised once that
    chunk has settled, and no further chunk is started.
    """
    if concurrency < 1:
        raise ValueError("concurrency must be at least 1")

    pending: Sequence[T] = list(items)
    outcome: BatchResult[T, R] = BatchResult()
    if not pending:
        return outcome

    with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="swe-batch") as executor:
        for start in range(0, len(pending), concurrency):
            chunk = pending[start : start + concurrency]
            futures = [executor.submit(fn, item) for item in chunk]
            first_error: BaseException | None = None
            for item, future in zip(chunk, futures):
                error = future.exception()
                if error is None:
                    outcome.successful.append(BatchSuccess(item=item, result=future.result()))
                    continue
                outcome.failed.append(BatchFailure(item=item, error=error))
                if first_error is None:
                    first_error = error
            if first_error is not None and not continue_on_error:
                raise first_error

    return outcome


__all__ = [
    "BatchFailure",
    "BatchResult",
    "BatchSuccess",
    "CircuitBreaker",
    "CircuitOpenError",
    "CircuitState",
    "OperationTimeoutError",
    "RetryPolicy",
    "calculate_backoff",
    "execute_batch",
    "is_retryable_error",
    "retry",
    "retry_with_timeout",
    "with_timeout",
]
