import os
import tempfile

# must be set before ticketgate.config is imported
_DB_DIR = tempfile.mkdtemp(prefix="ticketgate-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_DIR}/test.db"
os.environ.setdefault("TICKET_SIGNING_SECRET", "test_signing_secret")
os.environ.setdefault("PAYMENT_WEBHOOK_SECRET", "test_webhook_secret")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

import httpx
import pytest_asyncio
from fakeredis import aioredis

from ticketgate.deps import get_redis
from ticketgate.main import app


@pytest_asyncio.fixture(scope="function")
async def redis():
    r = aioredis.FakeRedis(decode_responses=True)
    try:
        await r.flushall()
        yield r
    finally:
        await r.aclose()


@pytest_asyncio.fixture(scope="function")
async def client(redis):
    app.dependency_overrides[get_redis] = lambda: redis
    transport = httpx.ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver", timeout=10.0) as c:
            yield c
    finally:
        app.dependency_overrides.pop(get_redis, None)
