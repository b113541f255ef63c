#!/usr/bin/env python3
"""Scheduler that moves executions whose wait elapsed from `scheduled_zset` into `ready_queue`.

It runs a recovery scan on startup and again every RECOVERY_SECONDS, so
executions left unfinished by a crashed worker are re-armed (waiting, or popped
and lost) or closed (interrupted dispatch) while the scheduler keeps running.

Usage:
  python scripts/scheduler.py

Environment variables:
- REDIS_URL (optional)
- TESTING=1 to use in-memory redis
- POLL_SECONDS (optional, default 0.5)
- RECOVERY_SECONDS (optional, default 15)
"""
import asyncio
import logging
import os
import time

from payhook import metrics
from payhook.config import configure_logging
from payhook.redis_helper import get_redis, pop_due_jobs, push_ready
from payhook.workflow import recover_executions

POLL_SECONDS = float(os.getenv("POLL_SECONDS", "0.5"))
RECOVERY_SECONDS = float(os.getenv("RECOVERY_SECONDS", "15"))

logger = logging.getLogger("payhook.scheduler")


async def promote_due(redis_client, now=None, count: int = 100):
    due = await pop_due_jobs(redis_client, now if now is not None else time.time(), count=count)
    for workflow_id in due:
        await push_ready(redis_client, workflow_id)
        metrics.wakes_promoted_total.inc()
        logger.info("scheduler: %s ready for dispatch", workflow_id)
    return due


async def recover(redis_client, level=logging.INFO):
    recovered = await recover_executions(redis_client)
    if any(recovered.values()):
        logger.log(level, "scheduler: recovery %s", recovered)
    return recovered


async def run_scheduler(redis_client=None, recovery_seconds: float = RECOVERY_SECONDS):
    redis_client = redis_client or await get_redis()
    logger.info("scheduler: connected")
    await recover(redis_client)
    last_recovery = time.monotonic()
    try:
        while True:
            await promote_due(redis_client)
            if time.monotonic() - last_recovery >= recovery_seconds:
                # waiting jobs are re-armed on every pass; only the startup scan logs at INFO
                await recover(redis_client, level=logging.DEBUG)
                last_recovery = time.monotonic()
            await asyncio.sleep(POLL_SECONDS)
    except asyncio.CancelledError:
        pass


if __name__ == "__main__":
    configure_logging()
    try:
        asyncio.run(run_scheduler())
    except KeyboardInterrupt:
        logger.info("scheduler: exiting")
