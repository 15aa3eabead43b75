import asyncio
import os

import httpx
import pytest
from httpx import AsyncClient

os.environ["TESTING"] = "1"

from evalrunner.api_testing import ApiTester
from evalrunner.dry_run import DryRunTestRunner
from evalrunner.events import EventBus
from evalrunner.main import app as fastapi_app
from evalrunner.redis_helper import AsyncInMemoryRedis
from evalrunner.services import Services, set_services


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Stands in for asyncio.sleep; records the delay and moves the clock forward."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.calls = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        self.clock.advance(seconds)
        await asyncio.sleep(0)


def _pattern_api(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"ok": True, "path": request.url.path})


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeper(clock):
    return RecordingSleep(clock)


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def redis_client():
    return AsyncInMemoryRedis()


@pytest.fixture
def runner():
    return DryRunTestRunner(cases_per_suite=3, failure_rate=0.0)


@pytest.fixture
def api_tester():
    return ApiTester(base_url="http://patterns.test/api", transport=httpx.MockTransport(_pattern_api))


@pytest.fixture
async def services(redis_client, runner, api_tester):
    svc = Services(redis_client, runner=runner, api_tester=api_tester)
    set_services(svc)
    yield svc
    await svc.shutdown()
    set_services(None)


@pytest.fixture
async def client(services):
    # ASGITransport skips the lifespan; the services fixture stands in for it
    async with AsyncClient(transport=httpx.ASGITransport(app=fastapi_app), base_url="http://testserver") as ac:
        yield ac
