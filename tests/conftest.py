"""Shared fixtures: a fake backend behind ASGITransport and a desk wired to it."""

import httpx
import pytest
import pytest_asyncio

from gymdesk.services.api_client import GymApiClient
from gymdesk.services.consistency import ConsistencyCoordinator
from gymdesk.services.subscriptions import SubscriptionDesk

from factories import NOW, make_plan
from fake_backend import FakeGym, create_app

BASE_URL = "http://testserver"


@pytest.fixture
def gym() -> FakeGym:
    gym = FakeGym(now=NOW)
    gym.add_plan(make_plan())
    gym.add_plan(make_plan(id="plan-quarterly", name="Quarterly", price=270000, duration_days=90))
    gym.add_plan(make_plan(id="plan-trial", name="Trial", price=0, duration_days=7))
    return gym


@pytest_asyncio.fixture
async def api(gym):
    transport = httpx.ASGITransport(app=create_app(gym))
    client = httpx.AsyncClient(transport=transport, base_url=BASE_URL)
    async with GymApiClient(base_url=BASE_URL, client=client) as api:
        yield api


@pytest.fixture
def desk(api, gym) -> SubscriptionDesk:
    return SubscriptionDesk(api, ConsistencyCoordinator(), clock=lambda: gym.now)
