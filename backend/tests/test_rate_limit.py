import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from naksyetu.middleware.rate_limit import RedisRateLimit


@pytest.fixture
def limited_app(monkeypatch):
    for name in ("RATE_LIMIT_MAX_REQUESTS", "RATE_LIMIT_WINDOW", "REDIS_URL"):
        monkeypatch.delenv(name, raising=False)
    app = FastAPI()
    app.add_middleware(RedisRateLimit, max_requests=2, window_sec=60)

    @app.get("/ping")
    async def ping():
        return {"ok": True}

    return app


@pytest.mark.asyncio
async def test_in_memory_limit_per_client(limited_app):
    async with AsyncClient(transport=ASGITransport(app=limited_app), base_url="http://testserver") as c:
        codes = [(await c.get("/ping")).status_code for _ in range(3)]
        assert codes == [200, 200, 429]

        other = await c.get("/ping", headers={"X-Forwarded-For": "10.0.0.9, 172.16.0.1"})
        assert other.status_code == 200
        limited = await c.get("/ping")
        assert limited.json() == {"detail": "Rate limit exceeded"}
