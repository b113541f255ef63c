import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from payhook.engine import RedisExecutionEngine
from payhook.errors import AlreadyTerminal, InvalidTransition, WebhookError
from payhook.redis_helper import (
    EXECUTIONS_HASH,
    SCHEDULED_ZSET,
    TERMINAL_FIELD,
    AsyncInMemoryRedis,
    set_state,
    unschedule_wake,
)
from payhook.workflow import (
    ExecutionStatus,
    JobPhase,
    JobRequest,
    JobResult,
    check_transition,
    recover_executions,
    run_wake,
    status_for,
)
from scripts.worker import handle_job


class FakeSender:
    def __init__(self, response="Status: 200, Body: ok", error=None, during=None):
        self.response = response
        self.error = error
        self.during = during
        self.requests = []

    async def __call__(self, request):
        self.requests.append(request)
        if self.during is not None:
            await self.during()
        if self.error is not None:
            raise WebhookError(self.error)
        return self.response


async def start_job(engine, delay=1, payment_id="p-1"):
    request = JobRequest(callback_url="http://receiver.test/hook", delay_seconds=delay,
                         payload={"amount": 10}, id=payment_id)
    await engine.start(f"payment-{payment_id}", request)
    return f"payment-{payment_id}"


def test_transition_table():
    assert check_transition(JobPhase.CREATED, JobPhase.WAITING) is JobPhase.WAITING
    assert check_transition(JobPhase.WAITING, JobPhase.CANCELLED) is JobPhase.CANCELLED
    assert check_transition(JobPhase.DISPATCHING, JobPhase.TERMINATED) is JobPhase.TERMINATED
    with pytest.raises(InvalidTransition):
        check_transition(JobPhase.DISPATCHING, JobPhase.CANCELLED)
    with pytest.raises(InvalidTransition):
        check_transition(JobPhase.COMPLETED, JobPhase.TERMINATED)


def test_waiting_and_dispatching_report_running():
    assert status_for(JobPhase.WAITING) is ExecutionStatus.RUNNING
    assert status_for(JobPhase.DISPATCHING) is ExecutionStatus.RUNNING
    assert status_for(JobPhase.CANCELLED) is ExecutionStatus.CANCELLED


@pytest.mark.parametrize("delay", [None, 0, -3])
def test_job_request_falls_back_to_default_delay(delay):
    assert JobRequest(callback_url="http://x", delay_seconds=delay).delay_seconds == 5


def test_job_request_ids_are_unique():
    assert JobRequest(callback_url="http://x").id != JobRequest(callback_url="http://x").id


def test_job_result_omits_empty_fields():
    assert JobResult(id="a", webhook_sent=True, webhook_response="ok").to_dict() == {
        "id": "a",
        "webhook_sent": True,
        "webhook_response": "ok",
    }


@pytest.mark.asyncio
async def test_wake_dispatches_once_and_completes(engine, redis_client):
    workflow_id = await start_job(engine)
    sender = FakeSender()

    phase = await run_wake(redis_client, workflow_id, sender)

    assert phase is JobPhase.COMPLETED
    assert (await engine.describe(workflow_id)).status is ExecutionStatus.COMPLETED
    result = await engine.result(workflow_id)
    assert result.webhook_sent is True
    assert result.webhook_response == "Status: 200, Body: ok"
    assert result.error is None
    assert sender.requests[0].payload == {"amount": 10}

    # a duplicate wake never sends twice
    assert await run_wake(redis_client, workflow_id, sender) is JobPhase.COMPLETED
    assert len(sender.requests) == 1


@pytest.mark.asyncio
async def test_webhook_failure_is_a_completed_outcome(engine, redis_client):
    workflow_id = await start_job(engine)

    phase = await run_wake(redis_client, workflow_id, FakeSender(error="connection refused"))

    assert phase is JobPhase.COMPLETED
    result = await engine.result(workflow_id)
    assert result.webhook_sent is False
    assert result.error == "connection refused"


@pytest.mark.asyncio
async def test_cancel_while_waiting_prevents_dispatch(engine, redis_client):
    workflow_id = await start_job(engine)
    sender = FakeSender()

    await engine.cancel(workflow_id)

    assert (await engine.describe(workflow_id)).status is ExecutionStatus.CANCELLED
    assert await redis_client.zscore(SCHEDULED_ZSET, workflow_id) is None
    assert await run_wake(redis_client, workflow_id, sender) is JobPhase.CANCELLED
    assert sender.requests == []


@pytest.mark.asyncio
async def test_cancel_during_dispatch_lets_delivery_finish(engine, redis_client):
    workflow_id = await start_job(engine)
    sender = FakeSender(during=lambda: engine.cancel(workflow_id))

    phase = await run_wake(redis_client, workflow_id, sender)

    assert phase is JobPhase.COMPLETED
    assert (await engine.result(workflow_id)).webhook_sent is True


@pytest.mark.asyncio
async def test_terminate_during_dispatch_wins_and_drops_outcome(engine, redis_client):
    workflow_id = await start_job(engine)
    sender = FakeSender(during=lambda: engine.terminate(workflow_id, "Deleted by user"))

    phase = await run_wake(redis_client, workflow_id, sender)

    assert phase is JobPhase.TERMINATED
    assert len(sender.requests) == 1
    assert (await engine.describe(workflow_id)).status is ExecutionStatus.TERMINATED
    with pytest.raises(AlreadyTerminal):
        await engine.cancel(workflow_id)


@pytest.mark.asyncio
async def test_recovery_rearms_waiting_job_at_original_wake_time(engine, redis_client, clock):
    workflow_id = await start_job(engine, delay=30)
    await unschedule_wake(redis_client, workflow_id)

    counts = await recover_executions(redis_client, now=clock() + 10)

    assert counts["rescheduled"] == 1
    assert await redis_client.zscore(SCHEDULED_ZSET, workflow_id) == clock() + 30


@pytest.mark.asyncio
async def test_recovery_closes_interrupted_dispatch_without_resending(engine, redis_client, clock):
    workflow_id = await start_job(engine)
    await set_state(redis_client, workflow_id, {"gate": "dispatch", "dispatch_started_at": clock()})

    counts = await recover_executions(redis_client, now=clock() + 120)

    assert counts["lost"] == 1
    result = await engine.result(workflow_id)
    assert result.webhook_sent is False
    assert "outcome unknown" in result.error


@pytest.mark.asyncio
async def test_recovery_leaves_recent_dispatch_alone(engine, redis_client, clock):
    workflow_id = await start_job(engine)
    await set_state(redis_client, workflow_id, {"gate": "dispatch", "dispatch_started_at": clock()})

    counts = await recover_executions(redis_client, now=clock() + 5)

    assert counts == {"rescheduled": 0, "cancelled": 0, "settled": 0, "lost": 0}
    assert (await engine.describe(workflow_id)).status is ExecutionStatus.RUNNING


@pytest.mark.asyncio
async def test_recovery_finishes_half_done_cancel(engine, redis_client, clock):
    workflow_id = await start_job(engine)
    await set_state(redis_client, workflow_id, {"gate": "cancel"})

    counts = await recover_executions(redis_client, now=clock())

    assert counts["cancelled"] == 1
    assert (await engine.describe(workflow_id)).status is ExecutionStatus.CANCELLED


class DropsTerminalClaim(AsyncInMemoryRedis):
    """Loses the connection once, on the first terminal-status write."""

    def __init__(self):
        super().__init__()
        self.dropped = False

    async def hsetnx(self, name, key, value):
        if key == TERMINAL_FIELD and not self.dropped:
            self.dropped = True
            raise RedisConnectionError("blip")
        return await super().hsetnx(name, key, value)


class DropsFirstRecordRead(AsyncInMemoryRedis):
    def __init__(self):
        super().__init__()
        self.dropped = False

    async def hget(self, name, key):
        if name == EXECUTIONS_HASH and not self.dropped:
            self.dropped = True
            raise RedisConnectionError("blip")
        return await super().hget(name, key)


def receiver_client(deliveries, fault=None):
    async def receiver(request: httpx.Request) -> httpx.Response:
        deliveries.append(request)
        if fault is not None:
            raise fault
        return httpx.Response(status_code=200, text="ok", request=request)

    return httpx.AsyncClient(transport=httpx.MockTransport(receiver))


async def crashing_sender(request):
    raise RuntimeError("serializer exploded")


@pytest.mark.asyncio
async def test_unexpected_sender_fault_fails_job(engine, redis_client):
    workflow_id = await start_job(engine)

    phase = await run_wake(redis_client, workflow_id, crashing_sender)

    assert phase is JobPhase.FAILED
    assert (await engine.describe(workflow_id)).status is ExecutionStatus.FAILED
    result = await engine.result(workflow_id)
    assert result.webhook_sent is False
    assert result.error == "workflow error: serializer exploded"


@pytest.mark.asyncio
async def test_worker_fails_job_on_unexpected_transport_fault(engine, redis_client):
    workflow_id = await start_job(engine)
    deliveries = []

    async with receiver_client(deliveries, fault=RuntimeError("boom")) as http_client:
        phase = await handle_job(redis_client, workflow_id, http_client)

    assert phase is JobPhase.FAILED
    assert (await engine.describe(workflow_id)).status is ExecutionStatus.FAILED
    assert (await engine.result(workflow_id)).error == "workflow error: boom"


@pytest.mark.asyncio
async def test_worker_reports_unreachable_receiver_as_completed(engine, redis_client):
    workflow_id = await start_job(engine)
    deliveries = []
    refused = httpx.ConnectError("connection refused")

    async with receiver_client(deliveries, fault=refused) as http_client:
        phase = await handle_job(redis_client, workflow_id, http_client)

    assert phase is JobPhase.COMPLETED
    assert (await engine.describe(workflow_id)).status is ExecutionStatus.COMPLETED
    result = await engine.result(workflow_id)
    assert result.webhook_sent is False
    assert result.error.startswith("failed to send webhook")


@pytest.mark.asyncio
async def test_worker_fault_before_dispatch_fails_job(clock):
    redis_client = DropsFirstRecordRead()
    engine = RedisExecutionEngine(redis_client, clock=clock)
    workflow_id = await start_job(engine)
    deliveries = []

    async with receiver_client(deliveries) as http_client:
        phase = await handle_job(redis_client, workflow_id, http_client)

    assert phase is JobPhase.FAILED
    assert deliveries == []
    result = await engine.result(workflow_id)
    assert result.webhook_sent is False
    assert result.error == "workflow error: blip"


@pytest.mark.asyncio
async def test_delivered_webhook_survives_fault_while_closing(clock):
    redis_client = DropsTerminalClaim()
    engine = RedisExecutionEngine(redis_client, clock=clock)
    workflow_id = await start_job(engine)
    deliveries = []

    async with receiver_client(deliveries) as http_client:
        assert await handle_job(redis_client, workflow_id, http_client) is None

    assert len(deliveries) == 1
    assert (await engine.describe(workflow_id)).status is ExecutionStatus.RUNNING

    counts = await recover_executions(redis_client, now=clock())

    assert counts["settled"] == 1
    assert (await engine.describe(workflow_id)).status is ExecutionStatus.COMPLETED
    result = await engine.result(workflow_id)
    assert result.webhook_sent is True
    assert result.webhook_response == "Status: 200, Body: ok"
    assert len(deliveries) == 1
