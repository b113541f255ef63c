"""Payment-facing operations over the execution engine: create, status, cancel/delete."""
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from . import metrics
from .config import WORKFLOW_ID_PREFIX
from .engine import RedisExecutionEngine
from .errors import AlreadyTerminal, EngineError, InvalidPaymentRequest, NotFound
from .workflow import ExecutionStatus, JobRequest, JobResult

logger = logging.getLogger(__name__)

DELETE_REASON = "Deleted by user"


class DomainStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    TERMINATED = "TERMINATED"
    NOT_FOUND = "NOT_FOUND"


class CancelIntent(str, Enum):
    CANCEL = "cancel"
    DELETE = "delete"


@dataclass
class StatusView:
    payment_id: str
    workflow_id: str
    status: DomainStatus
    run_id: Optional[str] = None
    start_time: Optional[datetime] = None
    close_time: Optional[datetime] = None
    result: Optional[JobResult] = None


@dataclass
class CancelOutcome:
    payment_id: str
    intent: CancelIntent
    already_finished: bool = False

    @property
    def status(self) -> str:
        return "deleted" if self.intent is CancelIntent.DELETE else "cancelled"


def workflow_id_for(payment_id: str) -> str:
    return f"{WORKFLOW_ID_PREFIX}{payment_id}"


def payment_id_from(workflow_id: str) -> str:
    if workflow_id.startswith(WORKFLOW_ID_PREFIX) and len(workflow_id) > len(WORKFLOW_ID_PREFIX):
        return workflow_id[len(WORKFLOW_ID_PREFIX):]
    return workflow_id


class PaymentService:
    def __init__(self, engine: RedisExecutionEngine):
        self.engine = engine

    async def create(self, webhook_url: str, sleep: Optional[int] = None,
                     data: Optional[Dict[str, Any]] = None) -> str:
        if not webhook_url or not webhook_url.strip():
            raise InvalidPaymentRequest("webhook_url is required")

        request = JobRequest(callback_url=webhook_url.strip(), delay_seconds=sleep, payload=data or {})
        await self.engine.start(workflow_id_for(request.id), request)
        metrics.payments_created_total.inc()
        logger.info("payment %s scheduled, webhook in %ss", request.id, request.delay_seconds)
        return request.id

    async def get_status(self, payment_id: str) -> StatusView:
        workflow_id = workflow_id_for(payment_id)
        try:
            info = await self.engine.describe(workflow_id)
        except NotFound:
            return StatusView(payment_id=payment_id, workflow_id=workflow_id, status=DomainStatus.NOT_FOUND)

        view = StatusView(
            payment_id=payment_id,
            workflow_id=workflow_id,
            status=DomainStatus(info.status.value),
            run_id=info.run_id,
            start_time=info.start_time,
            close_time=info.close_time,
        )
        if info.status is ExecutionStatus.COMPLETED:
            try:
                view.result = await self.engine.result(workflow_id)
            except EngineError as exc:
                logger.warning("result for payment %s unavailable: %s", payment_id, exc)
        return view

    async def cancel(self, payment_id: str, intent: CancelIntent = CancelIntent.CANCEL) -> CancelOutcome:
        """Cancel (cooperative) or delete (terminate) a payment.

        A payment that already finished is reported as success.
        """
        workflow_id = workflow_id_for(payment_id)
        outcome = CancelOutcome(payment_id=payment_id, intent=intent)
        try:
            if intent is CancelIntent.DELETE:
                await self.engine.terminate(workflow_id, DELETE_REASON)
                metrics.payments_terminated_total.inc()
            else:
                await self.engine.cancel(workflow_id)
                metrics.payments_cancelled_total.inc()
        except AlreadyTerminal as exc:
            logger.info("payment %s already %s, treating %s as success",
                        payment_id, (exc.status or "finished").lower(), intent.value)
            outcome.already_finished = True
            return outcome

        logger.info("payment %s %s", payment_id, outcome.status)
        return outcome
