import json
from typing import Any, Dict, Optional, List, Tuple

import redis.asyncio as redis

from .config import REDIS_URL, TESTING

# Key names
EXECUTIONS_HASH = "executions"
STATE_KEY_PREFIX = "execution_state:"
SCHEDULED_ZSET = "scheduled_zset"
READY_QUEUE = "ready_queue"

# Fields of the per-execution state hash that are written exactly once (HSETNX)
GATE_FIELD = "gate"
TERMINAL_FIELD = "terminal"


class AsyncInMemoryRedis:
    def __init__(self):
        self._hashes: Dict[str, Dict[str, str]] = {}
        self._lists: Dict[str, List[str]] = {}
        self._zsets: Dict[str, Dict[str, float]] = {}

    async def aclose(self):
        return None

    async def hset(self, name: str, key: Optional[str] = None, value: Optional[str] = None,
                   mapping: Optional[Dict[str, str]] = None):
        h = self._hashes.setdefault(name, {})
        items = dict(mapping or {})
        if key is not None:
            items[key] = value
        added = sum(1 for k in items if k not in h)
        h.update(items)
        return added

    async def hsetnx(self, name: str, key: str, value: str) -> int:
        h = self._hashes.setdefault(name, {})
        if key in h:
            return 0
        h[key] = value
        return 1

    async def hget(self, name: str, key: str) -> Optional[str]:
        h = self._hashes.get(name, {})
        return h.get(key)

    async def hgetall(self, name: str) -> Dict[str, str]:
        return dict(self._hashes.get(name, {}))

    async def rpush(self, name: str, *values: str):
        lst = self._lists.setdefault(name, [])
        for v in values:
            lst.append(v)
        return len(lst)

    async def lpop(self, name: str) -> Optional[str]:
        lst = self._lists.get(name, [])
        if not lst:
            return None
        return lst.pop(0)

    # zset methods
    async def zadd(self, name: str, mapping: Dict[str, float]):
        z = self._zsets.setdefault(name, {})
        added = 0
        for member, score in mapping.items():
            if member not in z:
                added += 1
            z[member] = score
        return added

    async def zscore(self, name: str, member: str) -> Optional[float]:
        return self._zsets.get(name, {}).get(member)

    async def zrem(self, name: str, *members: str) -> int:
        z = self._zsets.get(name, {})
        removed = 0
        for m in members:
            if m in z:
                del z[m]
                removed += 1
        return removed

    async def zpopmin(self, name: str, count: int = 1) -> List[Tuple[str, float]]:
        z = self._zsets.get(name, {})
        if not z:
            return []
        items = sorted(z.items(), key=lambda kv: kv[1])
        popped = items[:count]
        for m, _ in popped:
            del z[m]
        return popped


# Singleton in-memory client for testing
_inmemory_client: Optional[AsyncInMemoryRedis] = None


async def get_redis():
    global _inmemory_client
    if TESTING:
        if _inmemory_client is None:
            _inmemory_client = AsyncInMemoryRedis()
        return _inmemory_client
    return redis.Redis.from_url(REDIS_URL, decode_responses=True)


def state_key(workflow_id: str) -> str:
    return f"{STATE_KEY_PREFIX}{workflow_id}"


# Execution records
async def create_execution(redis_client, workflow_id: str, record: Dict[str, Any]) -> bool:
    """Store the immutable execution record. Returns False if the id is already tracked."""
    created = await redis_client.hsetnx(EXECUTIONS_HASH, workflow_id, json.dumps(record))
    return bool(created)


async def get_execution(redis_client, workflow_id: str) -> Optional[Dict[str, Any]]:
    raw = await redis_client.hget(EXECUTIONS_HASH, workflow_id)
    if raw is None:
        return None
    return json.loads(raw)


async def list_executions(redis_client) -> List[Dict[str, Any]]:
    all_items = await redis_client.hgetall(EXECUTIONS_HASH)
    return [json.loads(v) for v in all_items.values()]


# Mutable execution state
async def get_state(redis_client, workflow_id: str) -> Dict[str, str]:
    return await redis_client.hgetall(state_key(workflow_id))


async def set_state(redis_client, workflow_id: str, fields: Dict[str, Any]):
    await redis_client.hset(state_key(workflow_id), mapping={k: str(v) for k, v in fields.items()})


async def claim_state_field(redis_client, workflow_id: str, field: str, value: str) -> Tuple[bool, str]:
    """Write `field` only if unset. Returns whether this call wrote it and the value that holds."""
    if await redis_client.hsetnx(state_key(workflow_id), field, value):
        return True, value
    current = await redis_client.hget(state_key(workflow_id), field)
    return False, current if current is not None else value


# Wake scheduling
async def schedule_wake(redis_client, workflow_id: str, wake_at: float):
    await redis_client.zadd(SCHEDULED_ZSET, {workflow_id: wake_at})


async def unschedule_wake(redis_client, workflow_id: str) -> int:
    return await redis_client.zrem(SCHEDULED_ZSET, workflow_id)


async def pop_due_jobs(redis_client, max_score: float, count: int = 100) -> List[str]:
    """Pop up to `count` ids from scheduled_zset with score <= max_score.

    ZPOPMIN may pop members that are not yet due; those are pushed back with
    their original score.
    """
    pairs = await redis_client.zpopmin(SCHEDULED_ZSET, count)
    due = [m for m, s in pairs if s <= max_score]
    for m, s in pairs:
        if s > max_score:
            await redis_client.zadd(SCHEDULED_ZSET, {m: s})
    return due


async def push_ready(redis_client, workflow_id: str):
    await redis_client.rpush(READY_QUEUE, workflow_id)


async def pop_ready(redis_client) -> Optional[str]:
    return await redis_client.lpop(READY_QUEUE)
