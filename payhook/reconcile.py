"""List and delete-all over an execution enumeration that may be stale by the time it is acted on."""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from . import metrics
from .engine import RedisExecutionEngine
from .errors import AlreadyTerminal
from .lifecycle import payment_id_from
from .workflow import ExecutionStatus

logger = logging.getLogger(__name__)

DELETE_ALL_REASON = "Deleted all by user"

HIDDEN_STATUSES = frozenset({ExecutionStatus.TERMINATED, ExecutionStatus.COMPLETED, ExecutionStatus.CANCELLED})
DONE_STATUSES = frozenset({ExecutionStatus.COMPLETED, ExecutionStatus.CANCELLED})


@dataclass
class ActivePayment:
    id: str
    workflow_id: str
    run_id: str
    status: ExecutionStatus
    start_time: Optional[datetime]


@dataclass
class DeleteAllReport:
    terminated: List[str] = field(default_factory=list)
    already_terminated: List[str] = field(default_factory=list)
    already_done: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def total_affected(self) -> int:
        return len(self.terminated) + len(self.already_terminated) + len(self.already_done)

    def to_response(self) -> Dict[str, Any]:
        response: Dict[str, Any] = {
            "status": "deleted",
            "count": self.total_affected,
            "terminated": len(self.terminated),
            "already_terminated": len(self.already_terminated),
            "completed_filtered": len(self.already_done),
        }
        if self.failed:
            response["failed"] = len(self.failed)
            response["failed_ids"] = [payment_id_from(w) for w in self.failed]
        return response


async def list_active(engine: RedisExecutionEngine) -> List[ActivePayment]:
    """Executions a user can still act on, in the engine's enumeration order."""
    active: List[ActivePayment] = []
    for info in await engine.list_executions():
        if info.status in HIDDEN_STATUSES:
            continue
        active.append(
            ActivePayment(
                id=payment_id_from(info.workflow_id),
                workflow_id=info.workflow_id,
                run_id=info.run_id,
                status=info.status,
                start_time=info.start_time,
            )
        )
    return active


async def delete_all(engine: RedisExecutionEngine, reason: str = DELETE_ALL_REASON) -> DeleteAllReport:
    """Terminate every running payment execution.

    Each execution is classified by the status read at enumeration time. An
    execution that finishes between that read and the terminate call lands in
    ``already_done``, never in ``failed``. Partial failure is reported, not
    rolled back.
    """
    report = DeleteAllReport()
    for info in await engine.list_executions():
        workflow_id = info.workflow_id
        if info.status in DONE_STATUSES:
            report.already_done.append(workflow_id)
            continue
        if info.status is ExecutionStatus.TERMINATED:
            report.already_terminated.append(workflow_id)
            continue

        try:
            await engine.terminate(workflow_id, reason)
        except AlreadyTerminal as exc:
            logger.info("execution %s finished before terminate (%s), counted as done", workflow_id, exc.status)
            report.already_done.append(workflow_id)
            continue
        except Exception as exc:
            logger.error("failed to terminate execution %s: %s", workflow_id, exc)
            metrics.delete_all_failures_total.inc()
            report.failed[workflow_id] = str(exc)
            continue
        metrics.payments_terminated_total.inc()
        report.terminated.append(workflow_id)

    logger.info(
        "delete-all affected %d executions (terminated: %d, already terminated: %d, completed/cancelled: %d, failed: %d)",
        report.total_affected,
        len(report.terminated),
        len(report.already_terminated),
        len(report.already_done),
        len(report.failed),
    )
    return report
