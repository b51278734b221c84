"""Stage orchestrator: drives one Envelope through a fixed stage sequence.

State machine::

    pending -> running(stage_1) -> ... -> running(stage_n) -> completed
        \\                  \\
         +-> halted          +-> halted

A fatal error from intake or any stage halts the run; everything gathered
so far is returned. Requests are independent: run() may be called from many
threads at once, and submit() schedules runs on a shared thread pool.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from uuid import uuid4

from flowsmith.build.intake import normalize_contact, validate_raw_request
from flowsmith.build.sinks import AuditSink, DeliverySink
from flowsmith.build.stages import INTAKE, BaseStage, StageContext
from flowsmith.core.errors import ErrorKind, PipelineError
from flowsmith.core.logging import PipelineLogger
from flowsmith.core.models import (
    AuditRecord,
    Envelope,
    PipelineState,
    RawRequest,
    StageError,
    StageOutcome,
    StageTiming,
    utcnow,
)

logger = logging.getLogger(__name__)

_TRANSITIONS = {
    PipelineState.PENDING: {PipelineState.RUNNING, PipelineState.HALTED},
    PipelineState.RUNNING: {PipelineState.RUNNING, PipelineState.COMPLETED, PipelineState.HALTED},
    PipelineState.COMPLETED: set(),
    PipelineState.HALTED: set(),
}


class CancelToken(threading.Event):
    """Request-scoped cancellation signal, observed at stage boundaries."""

    def __init__(self):
        super().__init__()
        self.reason = ""

    def cancel(self, reason: str = "cancelled") -> None:
        if not self.is_set():
            self.reason = reason
        self.set()


def validate_sequence(stages: list[BaseStage]) -> None:
    """Reject duplicate names and reads of outputs not produced earlier."""
    available = {INTAKE}
    for stage in stages:
        if not stage.name:
            raise PipelineError(f"Stage {stage!r} has no name")
        if stage.name in available:
            raise PipelineError(f"Duplicate stage name '{stage.name}'")
        for key in stage.reads:
            if key not in available:
                raise PipelineError(f"Stage '{stage.name}' reads '{key}', which is not produced before it")
        available.add(stage.name)


def _outcome(new_errors: tuple[StageError, ...]) -> StageOutcome:
    if any(e.fatal and e.kind is ErrorKind.CANCELLED for e in new_errors):
        return StageOutcome.CANCELLED
    if any(e.fatal for e in new_errors):
        return StageOutcome.FAILED
    if new_errors:
        return StageOutcome.DEGRADED
    return StageOutcome.OK


class Orchestrator:
    """Runs requests through ``stages`` in order.

    ``audit`` receives one AuditRecord per stage transition and ``delivery``
    one TerminalSnapshot per finished request. Both are fire-and-forget: a
    failing sink is logged and never affects the run.
    """

    def __init__(
        self,
        stages: list[BaseStage],
        *,
        min_brief_length: int = 5,
        max_brief_length: int = 5000,
        audit: AuditSink | None = None,
        delivery: DeliverySink | None = None,
        pipeline_logger: PipelineLogger | None = None,
        max_workers: int = 4,
        request_timeout: float | None = None,
    ):
        validate_sequence(stages)
        self.stages = list(stages)
        self.min_brief_length = min_brief_length
        self.max_brief_length = max_brief_length
        self.audit = audit
        self.delivery = delivery
        self.pipeline_logger = pipeline_logger
        self.max_workers = max(1, max_workers)
        self.request_timeout = request_timeout
        self._lock = threading.Lock()
        self._pool: ThreadPoolExecutor | None = None
        self._futures: dict[str, Future] = {}
        self._tokens: dict[str, CancelToken] = {}

    @property
    def stage_names(self) -> list[str]:
        return [s.name for s in self.stages]

    # -- Synchronous run --

    def run(self, raw: RawRequest, request_id: str | None = None, cancel: CancelToken | None = None) -> Envelope:
        """Drive one request to completed or halted and return its Envelope."""
        token = cancel or CancelToken()
        envelope = Envelope.open(raw, request_id)
        if self.pipeline_logger is not None:
            self.pipeline_logger.request_start(envelope.request_id, raw.priority.value)

        timer = None
        if self.request_timeout is not None:
            timer = threading.Timer(self.request_timeout, token.cancel, args=(f"request timed out after {self.request_timeout}s",))
            timer.daemon = True
            timer.start()
        try:
            envelope = self._intake(envelope)
            if envelope.state is PipelineState.HALTED:
                return self._finish(envelope)
            envelope = self._transition(envelope, PipelineState.RUNNING)

            ctx = StageContext(request_id=envelope.request_id, logger=self.pipeline_logger, cancel=token)
            for stage in self.stages:
                if token.is_set():
                    envelope = self._cancel_at(envelope, stage, token)
                    return self._finish(envelope)
                envelope = self._run_stage(envelope, stage, ctx)
                if envelope.has_fatal:
                    envelope = self._transition(envelope, PipelineState.HALTED, stage.name)
                    return self._finish(envelope)

            envelope = self._transition(envelope, PipelineState.COMPLETED)
            return self._finish(envelope)
        finally:
            if timer is not None:
                timer.cancel()

    def _intake(self, envelope: Envelope) -> Envelope:
        entered = utcnow()
        raw = envelope.raw_request
        brief, errors = validate_raw_request(raw, self.min_brief_length, self.max_brief_length)
        for error in errors:
            envelope = envelope.with_error(error)
            self._log_error(envelope.request_id, error)

        if envelope.has_fatal:
            self._emit_audit(envelope.request_id, INTAKE, entered, utcnow(), StageOutcome.FAILED)
            return self._transition(envelope, PipelineState.HALTED, INTAKE)

        envelope = envelope.with_output(INTAKE, {
            "brief": brief,
            "contact_ref": normalize_contact(raw.contact_ref),
            "priority": raw.priority.value,
        })
        exited = utcnow()
        self._emit_audit(envelope.request_id, INTAKE, entered, exited, _outcome(tuple(errors)))
        return envelope.with_timing(StageTiming(INTAKE, entered, exited))

    def _run_stage(self, envelope: Envelope, stage: BaseStage, ctx: StageContext) -> Envelope:
        envelope = self._transition(envelope, PipelineState.RUNNING, stage.name)
        if self.pipeline_logger is not None:
            self.pipeline_logger.stage_start(envelope.request_id, stage.name)

        entered = utcnow()
        before = envelope
        try:
            result = stage.run(envelope, ctx)
        except Exception as exc:
            logger.exception("Stage %s raised for request %s", stage.name, envelope.request_id)
            result = envelope.with_error(StageError(
                stage.name, ErrorKind.STRUCTURAL, f"{type(exc).__name__}: {exc}", fatal=True
            ))
        self._check_append_only(before, result, stage.name)
        exited = utcnow()
        result = result.with_timing(StageTiming(stage.name, entered, exited))

        new_errors = result.errors[len(before.errors):]
        for error in new_errors:
            self._log_error(result.request_id, error)
        outcome = _outcome(new_errors)
        if self.pipeline_logger is not None:
            self.pipeline_logger.stage_finish(result.request_id, stage.name, outcome.value)
        self._emit_audit(result.request_id, stage.name, entered, exited, outcome)
        return result

    def _cancel_at(self, envelope: Envelope, stage: BaseStage, token: CancelToken) -> Envelope:
        now = utcnow()
        error = StageError(stage.name, ErrorKind.CANCELLED, f"Request cancelled: {token.reason or 'cancelled'}", fatal=True)
        envelope = envelope.with_error(error)
        self._log_error(envelope.request_id, error)
        self._emit_audit(envelope.request_id, stage.name, now, now, StageOutcome.CANCELLED)
        return self._transition(envelope, PipelineState.HALTED, stage.name)

    @staticmethod
    def _check_append_only(before: Envelope, after: Envelope, stage_name: str) -> None:
        if after.request_id != before.request_id:
            raise PipelineError(f"Stage '{stage_name}' changed the request id")
        if after.raw_request is not before.raw_request:
            raise PipelineError(f"Stage '{stage_name}' replaced the raw request")
        for key, value in before.stage_outputs.items():
            if after.stage_outputs.get(key) is not value:
                raise PipelineError(f"Stage '{stage_name}' rewrote the output of stage '{key}'")
        if after.errors[: len(before.errors)] != before.errors:
            raise PipelineError(f"Stage '{stage_name}' dropped earlier errors")

    @staticmethod
    def _transition(envelope: Envelope, state: PipelineState, stage: str | None = None) -> Envelope:
        if state not in _TRANSITIONS[envelope.state]:
            raise PipelineError(f"Illegal transition {envelope.state.value} -> {state.value}")
        return envelope.with_state(state, stage if stage is not None else envelope.current_stage)

    def _finish(self, envelope: Envelope) -> Envelope:
        snapshot = envelope.snapshot()
        if self.delivery is not None:
            try:
                self.delivery.deliver(snapshot)
            except Exception:
                logger.warning("Delivery failed for request %s", envelope.request_id, exc_info=True)
        if self.pipeline_logger is not None:
            self.pipeline_logger.request_finish(envelope.request_id, envelope.state.value, snapshot.outcome.value)
        return envelope

    def _emit_audit(self, request_id, stage, entered, exited, outcome: StageOutcome) -> None:
        if self.audit is None:
            return
        try:
            self.audit.emit(AuditRecord(request_id, stage, entered, exited, outcome))
        except Exception:
            logger.warning("Audit emission failed for request %s stage %s", request_id, stage, exc_info=True)

    def _log_error(self, request_id: str, error: StageError) -> None:
        if self.pipeline_logger is not None:
            self.pipeline_logger.stage_error(request_id, error.stage, error.kind.value, error.message, error.fatal)

    # -- Concurrent submission --

    def submit(self, raw: RawRequest, request_id: str | None = None) -> str:
        """Schedule a run on the worker pool and return its request id."""
        request_id = request_id or uuid4().hex
        token = CancelToken()
        with self._lock:
            if request_id in self._futures:
                raise PipelineError(f"Request {request_id} already submitted")
            if self._pool is None:
                self._pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="flowsmith")
            self._tokens[request_id] = token
            future = self._pool.submit(self.run, raw, request_id, token)
            self._futures[request_id] = future
        future.add_done_callback(lambda _: self._release_token(request_id, token))
        return request_id

    def _release_token(self, request_id: str, token: CancelToken) -> None:
        with self._lock:
            if self._tokens.get(request_id) is token:
                del self._tokens[request_id]

    def result(self, request_id: str, timeout: float | None = None) -> Envelope:
        """Block until a submitted request finishes. Raises KeyError if unknown.

        Once its result has been collected the request is forgotten: the
        id can no longer be queried and may be submitted again.
        """
        with self._lock:
            future = self._futures[request_id]
        try:
            return future.result(timeout=timeout)
        finally:
            if future.done():
                with self._lock:
                    if self._futures.get(request_id) is future:
                        del self._futures[request_id]

    def done(self, request_id: str) -> bool:
        with self._lock:
            return self._futures[request_id].done()

    def cancel(self, request_id: str, reason: str = "cancelled by caller") -> bool:
        """Signal cancellation; returns False when the request already finished."""
        with self._lock:
            future = self._futures.get(request_id)
            token = self._tokens.get(request_id)
        if future is None or token is None or future.done():
            return False
        token.cancel(reason)
        return True

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=wait)

    def __enter__(self) -> Orchestrator:
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()
