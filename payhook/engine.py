"""Redis-backed durable execution engine.

The API layers talk to executions only through ``RedisExecutionEngine``:
start, describe, result, cancel, terminate and list_executions. The engine keeps no
in-process bookkeeping; every call reads or writes Redis.
"""
import functools
import json
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

from redis.exceptions import RedisError

from . import redis_helper
from .config import WORKFLOW_TYPE
from .errors import AlreadyExists, EngineError, EngineUnavailable, NotFound
from .workflow import (
    ExecutionStatus,
    JobPhase,
    JobRequest,
    JobResult,
    check_transition,
    finish,
    phase_from_state,
    request_cancel,
    status_for,
)

logger = logging.getLogger(__name__)


@dataclass
class ExecutionHandle:
    workflow_id: str
    run_id: str


@dataclass
class ExecutionInfo:
    workflow_id: str
    run_id: str
    workflow_type: str
    status: ExecutionStatus
    start_time: Optional[datetime] = None
    close_time: Optional[datetime] = None


def _engine_call(func):
    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except (RedisError, OSError) as exc:
            raise EngineUnavailable(f"execution store unavailable: {exc}") from exc

    return wrapper


def _to_datetime(value) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


class RedisExecutionEngine:
    def __init__(self, redis_client, clock: Callable[[], float] = time.time):
        self.redis = redis_client
        self.clock = clock

    @_engine_call
    async def start(self, workflow_id: str, request: JobRequest, workflow_type: str = WORKFLOW_TYPE) -> ExecutionHandle:
        now = self.clock()
        record = {
            "workflow_id": workflow_id,
            "run_id": str(uuid.uuid4()),
            "workflow_type": workflow_type,
            "request": request.to_dict(),
            "start_time": now,
            "wake_at": now + request.delay_seconds,
        }
        if not await redis_helper.create_execution(self.redis, workflow_id, record):
            raise AlreadyExists(workflow_id)
        check_transition(JobPhase.CREATED, JobPhase.WAITING)
        await redis_helper.schedule_wake(self.redis, workflow_id, record["wake_at"])
        logger.info("execution %s started, wakes in %ss", workflow_id, request.delay_seconds)
        return ExecutionHandle(workflow_id=workflow_id, run_id=record["run_id"])

    @_engine_call
    async def describe(self, workflow_id: str) -> ExecutionInfo:
        record = await self._record(workflow_id)
        state = await redis_helper.get_state(self.redis, workflow_id)
        return self._info(record, state)

    @_engine_call
    async def result(self, workflow_id: str) -> JobResult:
        await self._record(workflow_id)
        state = await redis_helper.get_state(self.redis, workflow_id)
        raw = state.get("result")
        if not raw:
            raise EngineError(f"execution {workflow_id} has no recorded result")
        return JobResult.from_dict(json.loads(raw))

    @_engine_call
    async def cancel(self, workflow_id: str) -> None:
        await self._record(workflow_id)
        await request_cancel(self.redis, workflow_id, now=self.clock())

    @_engine_call
    async def terminate(self, workflow_id: str, reason: str) -> None:
        await self._record(workflow_id)
        await finish(self.redis, workflow_id, JobPhase.TERMINATED, reason=reason, now=self.clock())

    @_engine_call
    async def list_executions(self, workflow_type: Optional[str] = WORKFLOW_TYPE) -> List[ExecutionInfo]:
        """Enumerate executions. Each entry's status is read separately, so the
        result is not a snapshot of a single instant."""
        infos = []
        for record in await redis_helper.list_executions(self.redis):
            if workflow_type and record.get("workflow_type") != workflow_type:
                continue
            state = await redis_helper.get_state(self.redis, record["workflow_id"])
            infos.append(self._info(record, state))
        return infos

    async def close(self):
        await self.redis.aclose()

    async def _record(self, workflow_id: str) -> dict:
        record = await redis_helper.get_execution(self.redis, workflow_id)
        if record is None:
            raise NotFound(workflow_id)
        return record

    @staticmethod
    def _info(record: dict, state: dict) -> ExecutionInfo:
        return ExecutionInfo(
            workflow_id=record["workflow_id"],
            run_id=record["run_id"],
            workflow_type=record.get("workflow_type", WORKFLOW_TYPE),
            status=status_for(phase_from_state(state)),
            start_time=_to_datetime(record.get("start_time")),
            close_time=_to_datetime(state.get("close_time")),
        )
