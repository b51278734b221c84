"""Resilient generation client: timeout, retry/backoff and circuit breaking.

Every stage goes through ResilientClient.invoke(). Dependency failures are
returned as values (InvocationResult.error), never raised, so the calling
stage decides how to record them on its Envelope.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import anthropic
import openai

from flowsmith.build.cassette import CassetteMiss
from flowsmith.build.llm_client import LLMResponse
from flowsmith.core.config import ResiliencePolicy

logger = logging.getLogger(__name__)

TRANSIENT = "transient"
PERMANENT = "permanent"

_TIMEOUT_ERRORS = (anthropic.APITimeoutError, openai.APITimeoutError, TimeoutError)
_CONNECTION_ERRORS = (anthropic.APIConnectionError, openai.APIConnectionError, ConnectionError)
_STATUS_ERRORS = (anthropic.APIStatusError, openai.APIStatusError)


@dataclass(frozen=True)
class GenerationError:
    """A classified failure of a model invocation."""

    kind: str  # "transient" | "permanent"
    reason: str
    message: str
    status_code: int | None = None
    retry_after: float | None = None

    @property
    def transient(self) -> bool:
        return self.kind == TRANSIENT


@dataclass
class InvocationResult:
    """Outcome of ResilientClient.invoke(): exactly one of response/error is set."""

    response: LLMResponse | None = None
    error: GenerationError | None = None
    attempts: int = 0
    delays: list[float] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class MetricsRecord:
    """Emitted once per invocation attempt."""

    label: str
    attempt: int
    outcome: str  # "success" | "failure" | "circuit-open" | "cancelled"
    latency: float
    reason: str = ""
    tokens: int = 0


def parse_retry_after(headers) -> float | None:
    """Read a retry hint from response headers, in seconds.

    Understands ``retry-after-ms``, ``retry-after`` as seconds and
    ``retry-after`` as an HTTP date.
    """
    if headers is None:
        return None
    raw_ms = headers.get("retry-after-ms")
    if raw_ms:
        try:
            return max(float(raw_ms) / 1000.0, 0.0)
        except ValueError:
            pass
    raw = headers.get("retry-after")
    if not raw:
        return None
    try:
        return max(float(raw), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


def pause(delay: float, cancel: threading.Event | None = None) -> bool:
    """Sleep for ``delay`` seconds; returns True if ``cancel`` was set meanwhile."""
    if cancel is None:
        time.sleep(delay)
        return False
    return cancel.wait(delay)


def classify_error(exc: BaseException) -> GenerationError:
    """Map an SDK or network exception to transient vs permanent."""
    message = str(exc) or exc.__class__.__name__

    if isinstance(exc, CassetteMiss):
        return GenerationError(PERMANENT, "cassette-miss", message)
    if isinstance(exc, _TIMEOUT_ERRORS):
        return GenerationError(TRANSIENT, "timeout", message)
    if isinstance(exc, _CONNECTION_ERRORS):
        return GenerationError(TRANSIENT, "connection", message)
    if isinstance(exc, _STATUS_ERRORS):
        status = exc.status_code
        if status == 429:
            response = getattr(exc, "response", None)
            retry_after = parse_retry_after(response.headers if response is not None else None)
            return GenerationError(TRANSIENT, "rate-limited", message, status, retry_after)
        if status >= 500:
            return GenerationError(TRANSIENT, f"http-{status}", message, status)
        return GenerationError(PERMANENT, f"http-{status}", message, status)
    return GenerationError(PERMANENT, "malformed-request", message)


class CircuitBreaker:
    """Rolling-window failure counter with closed / open / half-open states.

    ``failure_threshold`` transient failures inside ``failure_window`` seconds
    open the circuit for ``cooldown`` seconds. After the cooldown a single
    trial call is let through; its outcome closes or re-opens the circuit.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"

    def __init__(
        self,
        failure_threshold: int = 5,
        failure_window: float = 60.0,
        cooldown: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.failure_window = failure_window
        self.cooldown = cooldown
        self._clock = clock
        self._lock = threading.Lock()
        self._failures: deque[float] = deque()
        self._state = self.CLOSED
        self._opened_at = 0.0
        self._trial_in_flight = False

    @classmethod
    def from_policy(cls, policy: ResiliencePolicy, clock: Callable[[], float] = time.monotonic) -> CircuitBreaker:
        return cls(policy.failure_threshold, policy.failure_window, policy.cooldown, clock)

    @property
    def state(self) -> str:
        with self._lock:
            self._refresh()
            return self._state

    def _refresh(self) -> None:
        if self._state == self.OPEN and self._clock() - self._opened_at >= self.cooldown:
            self._state = self.HALF_OPEN
            self._trial_in_flight = False

    def _prune(self, now: float) -> None:
        while self._failures and now - self._failures[0] > self.failure_window:
            self._failures.popleft()

    def allow(self) -> bool:
        """Whether a call may proceed right now."""
        with self._lock:
            self._refresh()
            if self._state == self.CLOSED:
                return True
            if self._state == self.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                return True
            return False

    def record_success(self) -> None:
        with self._lock:
            self._failures.clear()
            self._state = self.CLOSED
            self._trial_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            now = self._clock()
            if self._state == self.HALF_OPEN:
                self._trip(now)
                return
            self._failures.append(now)
            self._prune(now)
            if len(self._failures) >= self.failure_threshold:
                self._trip(now)

    def _trip(self, now: float) -> None:
        logger.warning("Circuit opened after %d transient failures", len(self._failures))
        self._state = self.OPEN
        self._opened_at = now
        self._trial_in_flight = False
        self._failures.clear()


MetricsSink = Callable[[MetricsRecord], None]


class ResilientClient:
    """Single place where retry, backoff and circuit-breaker policy lives.

    Wraps a transport exposing ``complete(messages, timeout=...)`` (LLMClient
    or a cassette wrapper around it). The breaker is shared by every request
    using this client.
    """

    def __init__(
        self,
        client,
        policy: ResiliencePolicy | None = None,
        breaker: CircuitBreaker | None = None,
        metrics_sinks: list[MetricsSink] | None = None,
    ):
        self.client = client
        self.policy = policy or ResiliencePolicy()
        self.breaker = breaker or CircuitBreaker.from_policy(self.policy)
        self._sinks: list[MetricsSink] = list(metrics_sinks or [])

    def add_sink(self, sink: MetricsSink) -> None:
        self._sinks.append(sink)

    def _emit(self, record: MetricsRecord) -> None:
        for sink in self._sinks:
            try:
                sink(record)
            except Exception:
                logger.warning("Metrics sink %r failed", sink, exc_info=True)

    def delay_for(self, retry_index: int, error: GenerationError) -> float:
        """Backoff before retry ``retry_index``; a retry-after hint overrides it."""
        if error.retry_after is not None:
            return min(error.retry_after, self.policy.max_retry_after)
        return self.policy.backoff_delay(retry_index)

    def invoke(
        self,
        prompt: str | list[dict],
        timeout: float | None = None,
        *,
        label: str = "",
        cancel: threading.Event | None = None,
    ) -> InvocationResult:
        """Call the model, retrying transient failures.

        Returns an InvocationResult carrying either the response or a
        GenerationError. Permanent errors return after one attempt; transient
        errors are retried until ``policy.max_attempts`` attempts are spent.
        """
        messages = [{"role": "user", "content": prompt}] if isinstance(prompt, str) else prompt
        delays: list[float] = []
        last_error: GenerationError | None = None

        for attempt in range(1, self.policy.max_attempts + 1):
            if cancel is not None and cancel.is_set():
                return self._cancelled(label, attempt, delays)

            if not self.breaker.allow():
                self._emit(MetricsRecord(label, attempt, "circuit-open", 0.0, "circuit-open"))
                error = GenerationError(TRANSIENT, "circuit-open", "Circuit breaker is open; failing fast")
                return InvocationResult(error=error, attempts=attempt - 1, delays=delays)

            start = time.monotonic()
            try:
                response = self.client.complete(messages, timeout=timeout)
            except Exception as exc:
                latency = time.monotonic() - start
                error = classify_error(exc)
                if error.transient:
                    self.breaker.record_failure()
                else:
                    self.breaker.record_success()
                self._emit(MetricsRecord(label, attempt, "failure", latency, error.reason))

                if not error.transient:
                    return InvocationResult(error=error, attempts=attempt, delays=delays)

                last_error = error
                if attempt == self.policy.max_attempts:
                    break

                delay = self.delay_for(attempt - 1, error)
                delays.append(delay)
                logger.info("Retrying %s in %.2fs after %s (attempt %d)", label or "call", delay, error.reason, attempt)
                if pause(delay, cancel):
                    return self._cancelled(label, attempt + 1, delays)
                continue

            latency = time.monotonic() - start
            self.breaker.record_success()
            self._emit(MetricsRecord(label, attempt, "success", latency, tokens=response.total_tokens))
            return InvocationResult(response=response, attempts=attempt, delays=delays)

        assert last_error is not None
        error = GenerationError(
            TRANSIENT,
            last_error.reason,
            f"Gave up after {self.policy.max_attempts} attempts: {last_error.message}",
            last_error.status_code,
            last_error.retry_after,
        )
        return InvocationResult(error=error, attempts=self.policy.max_attempts, delays=delays)

    def _cancelled(self, label: str, attempt: int, delays: list[float]) -> InvocationResult:
        self._emit(MetricsRecord(label, attempt, "cancelled", 0.0, "cancelled"))
        error = GenerationError(TRANSIENT, "cancelled", "Request cancelled before the call completed")
        return InvocationResult(error=error, attempts=attempt - 1, delays=delays)
