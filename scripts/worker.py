#!/usr/bin/env python3
"""Async worker that pops execution ids from the Redis `ready_queue` and runs their
wake boundary: claim the dispatch gate, POST the webhook once, record the outcome.

Usage:
  REDIS_URL=redis://localhost:6379/0 python scripts/worker.py

Set TESTING=1 to use the in-memory AsyncInMemoryRedis implementation used by the tests.
"""
import asyncio
import logging
import os
from functools import partial

import httpx

from payhook.config import TESTING, WEBHOOK_TIMEOUT_SECONDS, configure_logging
from payhook.errors import AlreadyTerminal
from payhook.redis_helper import GATE_FIELD, get_redis, get_state, pop_ready
from payhook.webhook import send_webhook
from payhook.workflow import GATE_DISPATCH, fail, run_wake

SLEEP_BETWEEN_POLLS = float(os.getenv("WORKER_POLL_SECONDS", "0.5"))

logger = logging.getLogger("payhook.worker")


async def handle_job(redis_client, workflow_id: str, http_client: httpx.AsyncClient):
    send = partial(send_webhook, client=http_client)
    try:
        return await run_wake(redis_client, workflow_id, send)
    except Exception as exc:
        logger.exception("worker: error handling %s", workflow_id)
        state = await get_state(redis_client, workflow_id)
        if state.get(GATE_FIELD) == GATE_DISPATCH:
            # the webhook may already be out; recovery closes it from the recorded outcome
            logger.warning("worker: %s left to the recovery scan", workflow_id)
            return None
        try:
            return await fail(redis_client, workflow_id, f"workflow error: {exc}")
        except AlreadyTerminal:
            return None


async def run_worker(redis_client=None, http_client=None):
    redis_client = redis_client or await get_redis()
    owns_client = http_client is None
    http_client = http_client or httpx.AsyncClient(timeout=WEBHOOK_TIMEOUT_SECONDS)
    logger.info("worker: connected, testing=%s", TESTING)
    try:
        while True:
            workflow_id = await pop_ready(redis_client)
            if workflow_id:
                try:
                    await handle_job(redis_client, workflow_id, http_client)
                except Exception:
                    logger.exception("worker: could not record failure for %s", workflow_id)
            else:
                await asyncio.sleep(SLEEP_BETWEEN_POLLS)
    except asyncio.CancelledError:
        pass
    finally:
        if owns_client:
            await http_client.aclose()


if __name__ == "__main__":
    configure_logging()
    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        logger.info("worker: exiting")
