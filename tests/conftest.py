import os

import httpx
import pytest
import pytest_asyncio

os.environ["TESTING"] = "1"

from payhook.engine import RedisExecutionEngine
from payhook.main import app as fastapi_app
from payhook.redis_helper import AsyncInMemoryRedis


class Clock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def redis_client():
    return AsyncInMemoryRedis()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def engine(redis_client, clock):
    return RedisExecutionEngine(redis_client, clock=clock)


@pytest_asyncio.fixture
async def client(engine):
    fastapi_app.state.engine = engine
    transport = httpx.ASGITransport(app=fastapi_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
    fastapi_app.state.engine = None

