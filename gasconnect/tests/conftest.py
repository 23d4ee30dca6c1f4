from __future__ import annotations

from types import SimpleNamespace

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gasconnect.common import (
    MessageConsumer,
    MessageProducer,
    ServiceSettings,
    create_schema,
    dispose_engines,
    get_session_factory,
)
from gasconnect.order_service.app.actors import Actor, ActorRole
from gasconnect.order_service.app.events import EVENTS_EXCHANGE, OrderEventPublisher
from gasconnect.order_service.app.models import Base
from gasconnect.tests.helpers import (
    ADMIN_ID,
    CUSTOMER_ID,
    DRIVER_ID,
    OTHER_CUSTOMER_ID,
    OTHER_DRIVER_ID,
    Engine,
    EventLog,
    FakeClock,
    Seeder,
    build_engine,
    make_settings,
)


@pytest_asyncio.fixture
async def database_url(tmp_path):
    url = f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}"
    await create_schema(url, Base.metadata)
    yield url
    await dispose_engines()


@pytest.fixture
def session_factory(database_url: str) -> async_sessionmaker[AsyncSession]:
    return get_session_factory(database_url)


@pytest.fixture
def seeder(session_factory: async_sessionmaker[AsyncSession]) -> Seeder:
    return Seeder(session_factory)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(database_url: str) -> ServiceSettings:
    return make_settings(database_url)


@pytest_asyncio.fixture
async def event_log():
    log = EventLog()
    consumer = MessageConsumer(EVENTS_EXCHANGE, ["#"], log)
    await consumer.start()
    yield log
    await consumer.stop()


@pytest_asyncio.fixture
async def publisher(event_log: EventLog):
    producer = MessageProducer(EVENTS_EXCHANGE)
    await producer.connect()
    yield OrderEventPublisher(producer, attempts=2, backoff_seconds=0.0)
    await producer.close()


@pytest.fixture
def engine(
    settings: ServiceSettings,
    session_factory: async_sessionmaker[AsyncSession],
    clock: FakeClock,
    publisher: OrderEventPublisher,
) -> Engine:
    return build_engine(settings, session_factory, clock, publisher)


@pytest_asyncio.fixture
async def catalog(seeder: Seeder) -> SimpleNamespace:
    """Two nearby suppliers, one far away, one customer address.

    ``near`` is the closest supplier but poorly rated; ``best`` is 4 km away,
    well rated and cheaper, so routine orders go to ``best`` and emergency
    orders to ``near``.
    """

    lpg = await seeder.gas_type("LPG")
    best = await seeder.supplier("Best Gas", rating=5.0, distance_km=4.0)
    near = await seeder.supplier("Corner Gas", rating=1.0, distance_km=0.6)
    far = await seeder.supplier("Abuja Gas", rating=5.0, distance_km=400.0)
    home = await seeder.address(CUSTOMER_ID)
    other_home = await seeder.address(OTHER_CUSTOMER_ID)
    best_large = await seeder.inventory(best, lpg, "12.5kg", available=10, reorder_level=3, unit_cost_cents=700000)
    near_large = await seeder.inventory(near, lpg, "12.5kg", available=10, reorder_level=2, unit_cost_cents=720000)
    best_small = await seeder.inventory(best, lpg, "6kg", available=5, unit_cost_cents=340000)
    near_jumbo = await seeder.inventory(near, lpg, "25kg", available=0, reorder_level=4, unit_cost_cents=1500000)
    far_large = await seeder.inventory(far, lpg, "12.5kg", available=50, unit_cost_cents=600000)
    rule = await seeder.pricing_rule(
        best, lpg, "12.5kg", base_price_cents=700000, bulk_threshold=5, bulk_percentage="10.00"
    )
    return SimpleNamespace(
        lpg=lpg,
        best=best,
        near=near,
        far=far,
        home=home,
        other_home=other_home,
        best_large=best_large,
        near_large=near_large,
        best_small=best_small,
        near_jumbo=near_jumbo,
        far_large=far_large,
        rule=rule,
    )


@pytest.fixture
def customer() -> Actor:
    return Actor(CUSTOMER_ID, ActorRole.CUSTOMER, "household")


@pytest.fixture
def other_customer() -> Actor:
    return Actor(OTHER_CUSTOMER_ID, ActorRole.CUSTOMER, "household")


@pytest.fixture
def admin() -> Actor:
    return Actor(ADMIN_ID, ActorRole.ADMIN, "platform_admin")


@pytest.fixture
def driver() -> Actor:
    return Actor(DRIVER_ID, ActorRole.DRIVER, "driver")


@pytest.fixture
def other_driver() -> Actor:
    return Actor(OTHER_DRIVER_ID, ActorRole.DRIVER, "driver")
