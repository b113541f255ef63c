"""Lifecycle of a single payment-notification job.

A job waits durably until its wake time, then makes one webhook attempt and
records the outcome. Two once-only fields in the execution state hash keep the
transitions race-free across API processes and workers:

- ``gate`` decides the wait boundary: the worker claims it with ``dispatch``,
  a cancel request claims it with ``cancel``. Whoever is first wins.
- ``terminal`` holds the terminal phase. The first writer wins and every later
  cancel/terminate sees ``AlreadyTerminal``.

A terminate that lands while the webhook POST is in flight wins ``terminal``;
the POST still runs to completion and its outcome is dropped. The outcome is
recorded (``pending_result``/``outcome``) before the terminal claim, so a
fault while closing the job leaves it for the recovery scan to settle.
"""
import json
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from . import metrics
from .config import DEFAULT_DELAY_SECONDS, DISPATCH_GRACE_SECONDS, WEBHOOK_TIMEOUT_SECONDS
from .errors import AlreadyTerminal, InvalidTransition, WebhookError
from .redis_helper import (
    GATE_FIELD,
    TERMINAL_FIELD,
    claim_state_field,
    get_execution,
    get_state,
    list_executions,
    schedule_wake,
    set_state,
    unschedule_wake,
)

logger = logging.getLogger(__name__)

GATE_DISPATCH = "dispatch"
GATE_CANCEL = "cancel"

PENDING_RESULT_FIELD = "pending_result"
OUTCOME_FIELD = "outcome"


class ExecutionStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    TERMINATED = "TERMINATED"


class JobPhase(str, Enum):
    CREATED = "CREATED"
    WAITING = "WAITING"
    DISPATCHING = "DISPATCHING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    TERMINATED = "TERMINATED"


TERMINAL_PHASES = frozenset(
    {JobPhase.COMPLETED, JobPhase.FAILED, JobPhase.CANCELLED, JobPhase.TERMINATED}
)

TRANSITIONS = {
    JobPhase.CREATED: {JobPhase.WAITING, JobPhase.TERMINATED},
    JobPhase.WAITING: {JobPhase.DISPATCHING, JobPhase.CANCELLED, JobPhase.FAILED, JobPhase.TERMINATED},
    JobPhase.DISPATCHING: {JobPhase.COMPLETED, JobPhase.FAILED, JobPhase.TERMINATED},
}


def check_transition(current: JobPhase, target: JobPhase) -> JobPhase:
    if target not in TRANSITIONS.get(current, ()):
        raise InvalidTransition(current, target)
    return target


def status_for(phase: JobPhase) -> ExecutionStatus:
    if phase in TERMINAL_PHASES:
        return ExecutionStatus(phase.value)
    return ExecutionStatus.RUNNING


def phase_from_state(state: Dict[str, str]) -> JobPhase:
    terminal = state.get(TERMINAL_FIELD)
    if terminal:
        return JobPhase(terminal)
    if state.get(GATE_FIELD) == GATE_DISPATCH:
        return JobPhase.DISPATCHING
    return JobPhase.WAITING


@dataclass
class JobRequest:
    callback_url: str
    delay_seconds: Optional[int] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self):
        if not self.delay_seconds or self.delay_seconds <= 0:
            self.delay_seconds = DEFAULT_DELAY_SECONDS
        if self.payload is None:
            self.payload = {}

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobRequest":
        return cls(
            id=data["id"],
            callback_url=data["callback_url"],
            delay_seconds=data.get("delay_seconds"),
            payload=data.get("payload") or {},
        )


@dataclass
class JobResult:
    id: str
    webhook_sent: bool
    webhook_response: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        return {k: v for k, v in data.items() if v is not None}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobResult":
        return cls(
            id=data["id"],
            webhook_sent=bool(data["webhook_sent"]),
            webhook_response=data.get("webhook_response"),
            error=data.get("error"),
        )


async def finish(
    redis_client,
    workflow_id: str,
    target: JobPhase,
    *,
    result: Optional[JobResult] = None,
    reason: Optional[str] = None,
    now: Optional[float] = None,
) -> JobPhase:
    """Move an execution into a terminal phase.

    Raises AlreadyTerminal when another writer got there first.
    """
    now = now if now is not None else time.time()
    current = phase_from_state(await get_state(redis_client, workflow_id))
    if current in TERMINAL_PHASES:
        raise AlreadyTerminal(workflow_id, status_for(current).value)
    check_transition(current, target)

    won, holder = await claim_state_field(redis_client, workflow_id, TERMINAL_FIELD, target.value)
    if not won:
        raise AlreadyTerminal(workflow_id, holder)

    fields: Dict[str, Any] = {"close_time": now}
    if result is not None:
        fields["result"] = _dump_result(result)
    if reason:
        fields["reason"] = reason
    await set_state(redis_client, workflow_id, fields)
    await unschedule_wake(redis_client, workflow_id)
    logger.info("execution %s closed as %s", workflow_id, target.value)
    return target


async def request_cancel(redis_client, workflow_id: str, now: Optional[float] = None) -> JobPhase:
    """Cooperative cancellation, effective only while the job is still waiting."""
    now = now if now is not None else time.time()
    current = phase_from_state(await get_state(redis_client, workflow_id))
    if current in TERMINAL_PHASES:
        raise AlreadyTerminal(workflow_id, status_for(current).value)

    await set_state(redis_client, workflow_id, {"cancel_requested_at": now})
    _, gate = await claim_state_field(redis_client, workflow_id, GATE_FIELD, GATE_CANCEL)
    if gate != GATE_CANCEL:
        logger.info("cancel for %s arrived during dispatch; delivery runs to completion", workflow_id)
        return JobPhase.DISPATCHING

    record = await get_execution(redis_client, workflow_id)
    return await finish(
        redis_client,
        workflow_id,
        JobPhase.CANCELLED,
        result=_cancelled_result(record),
        now=now,
    )


async def run_wake(
    redis_client,
    workflow_id: str,
    send: Callable[[JobRequest], Awaitable[str]],
    now: Optional[float] = None,
) -> Optional[JobPhase]:
    """Handle an execution whose wait elapsed: claim the gate, dispatch once, record the outcome."""
    record = await get_execution(redis_client, workflow_id)
    if record is None:
        logger.warning("wake for unknown execution %s ignored", workflow_id)
        return None

    phase = phase_from_state(await get_state(redis_client, workflow_id))
    if phase in TERMINAL_PHASES:
        logger.info("execution %s already %s, nothing to dispatch", workflow_id, phase.value)
        return phase

    won, gate = await claim_state_field(redis_client, workflow_id, GATE_FIELD, GATE_DISPATCH)
    if not won:
        if gate == GATE_CANCEL:
            try:
                return await finish(
                    redis_client, workflow_id, JobPhase.CANCELLED, result=_cancelled_result(record), now=now
                )
            except AlreadyTerminal as exc:
                return JobPhase(exc.status) if exc.status else None
        # duplicate wake; another worker owns the dispatch
        logger.info("dispatch for %s already claimed", workflow_id)
        return JobPhase.DISPATCHING

    started = time.time()
    await set_state(redis_client, workflow_id, {"dispatch_started_at": now if now is not None else started})
    if TERMINAL_FIELD in await get_state(redis_client, workflow_id):
        logger.info("execution %s terminated before dispatch", workflow_id)
        return JobPhase.TERMINATED

    request = JobRequest.from_dict(record["request"])
    logger.info("sending webhook for payment %s to %s", request.id, request.callback_url)
    target = JobPhase.COMPLETED
    try:
        response = await send(request)
        result = JobResult(id=request.id, webhook_sent=True, webhook_response=response)
        metrics.webhooks_sent_total.inc()
    except WebhookError as exc:
        logger.warning("webhook for payment %s failed: %s", request.id, exc)
        result = JobResult(id=request.id, webhook_sent=False, error=str(exc))
        metrics.webhook_failures_total.inc()
    except Exception as exc:
        logger.exception("dispatch for payment %s raised", request.id)
        target = JobPhase.FAILED
        result = JobResult(id=request.id, webhook_sent=False, error=f"workflow error: {exc}")
    finally:
        metrics.dispatch_latency_seconds.observe(time.time() - started)

    # recorded before the terminal claim so recovery can close the job with it
    await set_state(
        redis_client, workflow_id, {PENDING_RESULT_FIELD: _dump_result(result), OUTCOME_FIELD: target.value}
    )
    try:
        return await finish(
            redis_client, workflow_id, target, result=result, reason=_reason_for(target, result), now=now
        )
    except AlreadyTerminal as exc:
        logger.warning(
            "execution %s became %s during dispatch; outcome dropped (webhook_sent=%s)",
            workflow_id,
            exc.status,
            result.webhook_sent,
        )
        return JobPhase(exc.status) if exc.status else None


async def fail(redis_client, workflow_id: str, error: str, now: Optional[float] = None) -> JobPhase:
    record = await get_execution(redis_client, workflow_id)
    payment_id = record["request"]["id"] if record else workflow_id
    return await finish(
        redis_client,
        workflow_id,
        JobPhase.FAILED,
        result=JobResult(id=payment_id, webhook_sent=False, error=error),
        reason=error,
        now=now,
    )


async def recover_executions(
    redis_client,
    now: Optional[float] = None,
    dispatch_deadline: float = WEBHOOK_TIMEOUT_SECONDS + DISPATCH_GRACE_SECONDS,
) -> Dict[str, int]:
    """Bring every unfinished execution back under the scheduler after a restart.

    Waiting jobs are re-armed at their stored wake time. A dispatch whose outcome
    was recorded but never closed is closed with that outcome. A dispatch that
    started and never recorded an outcome is closed as delivered-unknown rather
    than sent again.
    """
    now = now if now is not None else time.time()
    counts = {"rescheduled": 0, "cancelled": 0, "settled": 0, "lost": 0}
    for record in await list_executions(redis_client):
        workflow_id = record["workflow_id"]
        state = await get_state(redis_client, workflow_id)
        if phase_from_state(state) in TERMINAL_PHASES:
            continue
        gate = state.get(GATE_FIELD)
        try:
            if gate == GATE_CANCEL:
                await finish(
                    redis_client, workflow_id, JobPhase.CANCELLED, result=_cancelled_result(record), now=now
                )
                counts["cancelled"] += 1
            elif gate == GATE_DISPATCH and state.get(OUTCOME_FIELD):
                outcome = JobPhase(state[OUTCOME_FIELD])
                result = JobResult.from_dict(json.loads(state[PENDING_RESULT_FIELD]))
                await finish(
                    redis_client, workflow_id, outcome, result=result, reason=_reason_for(outcome, result), now=now
                )
                counts["settled"] += 1
            elif gate == GATE_DISPATCH:
                started = float(state.get("dispatch_started_at") or record["wake_at"])
                if now - started >= dispatch_deadline:
                    lost = JobResult(
                        id=record["request"]["id"],
                        webhook_sent=False,
                        error="dispatch outcome unknown: worker stopped during webhook delivery",
                    )
                    await finish(redis_client, workflow_id, JobPhase.COMPLETED, result=lost, now=now)
                    counts["lost"] += 1
            else:
                await schedule_wake(redis_client, workflow_id, float(record["wake_at"]))
                counts["rescheduled"] += 1
        except AlreadyTerminal:
            continue
    return counts


def _cancelled_result(record: Optional[Dict[str, Any]]) -> Optional[JobResult]:
    if record is None:
        return None
    return JobResult(id=record["request"]["id"], webhook_sent=False, error="cancelled before dispatch")


def _reason_for(target: JobPhase, result: JobResult) -> Optional[str]:
    return result.error if target is JobPhase.FAILED else None


def _dump_result(result: JobResult) -> str:
    return json.dumps(result.to_dict())
