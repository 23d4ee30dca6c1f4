"""Concurrency checks that need real row locks (set GASCONNECT_TEST_POSTGRES_URL to run)."""

import asyncio
import os

import pytest
import pytest_asyncio

from gasconnect.common import (
    create_engine,
    create_schema,
    dispose_engines,
    get_session_factory,
    lifespan_session,
)
from gasconnect.order_service.app.actors import Actor, ActorRole
from gasconnect.order_service.app.errors import BusinessLogicError, InsufficientInventory, ValidationError
from gasconnect.order_service.app.inventory import InventoryLedger
from gasconnect.order_service.app.models import Base, OrderStatus
from gasconnect.tests.helpers import (
    ADMIN_ID,
    CUSTOMER_ID,
    DRIVER_ID,
    HOME_LAT,
    HOME_LON,
    FakeClock,
    Seeder,
    build_engine,
    make_settings,
    order_payload,
)

POSTGRES_URL = os.environ.get("GASCONNECT_TEST_POSTGRES_URL")

pytestmark = pytest.mark.skipif(POSTGRES_URL is None, reason="GASCONNECT_TEST_POSTGRES_URL is not set")


@pytest_asyncio.fixture
async def pg_factory():
    async with create_engine(POSTGRES_URL).begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await create_schema(POSTGRES_URL, Base.metadata)
    yield get_session_factory(POSTGRES_URL)
    await dispose_engines()


async def _reserve(session_factory, inventory_id: int, quantity: int) -> bool:
    try:
        async with lifespan_session(session_factory) as session:
            await InventoryLedger(session).reserve_record(inventory_id, quantity)
    except InsufficientInventory:
        return False
    return True


@pytest.mark.asyncio
async def test_concurrent_holds_never_oversell(pg_factory) -> None:
    seeder = Seeder(pg_factory)
    gas = await seeder.gas_type()
    supplier = await seeder.supplier("Contended Gas", rating=4.0, distance_km=1.0)
    record = await seeder.inventory(supplier, gas, "12.5kg", available=10)

    outcomes = await asyncio.gather(*(_reserve(pg_factory, record.id, 3) for _ in range(8)))

    assert outcomes.count(True) == 3
    stored = await seeder.get_inventory(record.id)
    assert (stored.quantity_available, stored.quantity_reserved) == (10, 9)


@pytest.mark.asyncio
async def test_concurrent_orders_for_last_units(pg_factory) -> None:
    seeder = Seeder(pg_factory)
    gas = await seeder.gas_type()
    supplier = await seeder.supplier("Last Stock Gas", rating=4.0, distance_km=1.0)
    home = await seeder.address(CUSTOMER_ID)
    record = await seeder.inventory(supplier, gas, "12.5kg", available=4)
    engine = build_engine(make_settings(POSTGRES_URL), pg_factory, FakeClock(), publisher=None)
    customer = Actor(CUSTOMER_ID, ActorRole.CUSTOMER, "household")
    payload = order_payload(("12.5kg", 2), gas_type_id=gas.id, address_id=home.id)

    results = await asyncio.gather(
        *(engine.orders.create_order(customer, payload) for _ in range(5)), return_exceptions=True
    )

    placed = [result for result in results if not isinstance(result, BaseException)]
    assert len(placed) == 2
    assert all(isinstance(result, BusinessLogicError) for result in results if isinstance(result, BaseException))
    stored = await seeder.get_inventory(record.id)
    assert stored.quantity_reserved == 4

    cancelled = await asyncio.gather(
        *(engine.state_machine.transition(order.id, OrderStatus.CANCELLED, customer) for order in placed)
    )
    assert {order.status for order in cancelled} == {OrderStatus.CANCELLED.value}
    assert (await seeder.get_inventory(record.id)).quantity_reserved == 0


@pytest.mark.asyncio
async def test_driver_report_and_admin_transition_do_not_deadlock(pg_factory) -> None:
    seeder = Seeder(pg_factory)
    gas = await seeder.gas_type()
    supplier = await seeder.supplier("Racing Gas", rating=4.0, distance_km=1.0)
    home = await seeder.address(CUSTOMER_ID)
    record = await seeder.inventory(supplier, gas, "12.5kg", available=10)
    engine = build_engine(make_settings(POSTGRES_URL), pg_factory, FakeClock(), publisher=None)
    customer = Actor(CUSTOMER_ID, ActorRole.CUSTOMER, "household")
    dispatcher = Actor(supplier.id, ActorRole.SUPPLIER, "supplier")
    driver = Actor(DRIVER_ID, ActorRole.DRIVER, "driver")
    admin = Actor(ADMIN_ID, ActorRole.ADMIN, "admin")
    payload = order_payload(("12.5kg", 1), gas_type_id=gas.id, address_id=home.id)

    orders = []
    for _ in range(5):
        order = await engine.orders.create_order(customer, payload)
        await engine.state_machine.transition(order.id, OrderStatus.CONFIRMED, dispatcher)
        await engine.tracker.assign_driver(order.id, driver.id, dispatcher)
        await engine.state_machine.transition(order.id, OrderStatus.PREPARING, dispatcher)
        await engine.state_machine.transition(order.id, OrderStatus.OUT_FOR_DELIVERY, driver)
        orders.append(order)

    for order in orders:
        report, failure = await asyncio.wait_for(
            asyncio.gather(
                engine.tracker.update_location(order.id, driver, HOME_LAT, HOME_LON, status="delivered"),
                engine.state_machine.transition(order.id, OrderStatus.FAILED, admin, reason="Road closed"),
                return_exceptions=True,
            ),
            timeout=30,
        )
        outcomes = [report, failure]
        assert sum(not isinstance(outcome, BaseException) for outcome in outcomes) == 1
        assert all(isinstance(outcome, ValidationError) for outcome in outcomes if isinstance(outcome, BaseException))

    stored = await seeder.get_inventory(record.id)
    assert stored.quantity_reserved == 0
