"""Shared builders for the order engine test suites."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from prometheus_client import REGISTRY
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gasconnect.common import ServiceSettings, lifespan_session
from gasconnect.order_service.app.events import OrderEventPublisher
from gasconnect.order_service.app.geo import EARTH_RADIUS_KM
from gasconnect.order_service.app.models import (
    Address,
    GasType,
    InventoryRecord,
    Order,
    PricingRule,
    Reservation,
    Supplier,
)
from gasconnect.order_service.app.realtime import RealtimeHub
from gasconnect.order_service.app.schemas import OrderCreate
from gasconnect.order_service.app.services import InventoryService, OrderService
from gasconnect.order_service.app.state_machine import OrderStateMachine
from gasconnect.order_service.app.tracking import DeliveryTracker

FIXED_NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

# Customer address in Lagos; suppliers sit due north of it so distances are exact arcs.
HOME_LAT, HOME_LON = 6.5244, 3.3792
CUSTOMER_ID = 100
OTHER_CUSTOMER_ID = 101
DRIVER_ID = 500
OTHER_DRIVER_ID = 501
ADMIN_ID = 1


def north_of_home(distance_km: float) -> tuple[float, float]:
    return HOME_LAT + math.degrees(distance_km / EARTH_RADIUS_KM), HOME_LON


class FakeClock:
    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


class MetricTracker:
    def __init__(self, name: str, labels: dict[str, str] | None = None) -> None:
        self.name = name
        self.labels = labels or {}
        baseline = REGISTRY.get_sample_value(name, self.labels)
        self._baseline = baseline if baseline is not None else 0.0

    def delta(self) -> float:
        current = REGISTRY.get_sample_value(self.name, self.labels)
        value = current if current is not None else 0.0
        return value - self._baseline


def make_settings(database_url: str, **overrides: Any) -> ServiceSettings:
    values: dict[str, Any] = {
        "app_name": "Order Engine Test",
        "enable_metrics": False,
        "enable_tracing": False,
        "enable_reaper": False,
        "database_url": database_url,
        "event_retry_backoff_seconds": 0.0,
    }
    values.update(overrides)
    return ServiceSettings(**values)


def order_payload(*items: tuple[str, int], gas_type_id: int, address_id: int, **overrides: Any) -> OrderCreate:
    body: dict[str, Any] = {
        "deliveryAddressId": address_id,
        "items": [
            {"gasTypeId": gas_type_id, "cylinderSize": size, "quantity": quantity} for size, quantity in items
        ],
    }
    body.update(overrides)
    return OrderCreate.model_validate(body)


class Seeder:
    """Writes reference data and reads back committed state for assertions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def _add(self, instance: Any) -> Any:
        async with lifespan_session(self.session_factory) as session:
            session.add(instance)
            await session.flush()
        return instance

    async def supplier(self, name: str, *, rating: float, distance_km: float | None, is_active: bool = True) -> Supplier:
        latitude, longitude = north_of_home(distance_km) if distance_km is not None else (None, None)
        return await self._add(
            Supplier(name=name, rating=rating, latitude=latitude, longitude=longitude, is_active=is_active)
        )

    async def gas_type(self, name: str = "LPG") -> GasType:
        return await self._add(GasType(name=name, category="cooking"))

    async def address(self, user_id: int, *, latitude: float | None = HOME_LAT, longitude: float | None = HOME_LON) -> Address:
        return await self._add(
            Address(
                user_id=user_id,
                street_address="12 Broad Street",
                city="Lagos",
                state="Lagos",
                latitude=latitude,
                longitude=longitude,
            )
        )

    async def inventory(
        self,
        supplier: Supplier,
        gas_type: GasType,
        cylinder_size: str,
        *,
        available: int,
        reserved: int = 0,
        reorder_level: int = 0,
        unit_cost_cents: int | None = None,
    ) -> InventoryRecord:
        return await self._add(
            InventoryRecord(
                supplier_id=supplier.id,
                gas_type_id=gas_type.id,
                cylinder_size=cylinder_size,
                quantity_available=available,
                quantity_reserved=reserved,
                reorder_level=reorder_level,
                unit_cost_cents=unit_cost_cents,
            )
        )

    async def pricing_rule(
        self,
        supplier: Supplier,
        gas_type: GasType,
        cylinder_size: str,
        *,
        base_price_cents: int,
        customer_type: str = "retail",
        priority: int = 0,
        bulk_threshold: int | None = None,
        bulk_percentage: str | None = None,
        valid_from: date | None = None,
        valid_until: date | None = None,
        is_active: bool = True,
    ) -> PricingRule:
        return await self._add(
            PricingRule(
                supplier_id=supplier.id,
                gas_type_id=gas_type.id,
                cylinder_size=cylinder_size,
                customer_type=customer_type,
                base_price_cents=base_price_cents,
                bulk_discount_threshold=bulk_threshold,
                bulk_discount_percentage=Decimal(bulk_percentage) if bulk_percentage is not None else None,
                priority=priority,
                valid_from=valid_from,
                valid_until=valid_until,
                is_active=is_active,
            )
        )

    async def get_inventory(self, inventory_id: int) -> InventoryRecord:
        async with lifespan_session(self.session_factory) as session:
            record = await session.get(InventoryRecord, inventory_id)
            assert record is not None
            return record

    async def get_reservation(self, reservation_id: int) -> Reservation:
        async with lifespan_session(self.session_factory) as session:
            reservation = await session.get(Reservation, reservation_id)
            assert reservation is not None
            return reservation

    async def reservations_for(self, order_id: int) -> list[Reservation]:
        async with lifespan_session(self.session_factory) as session:
            result = await session.execute(
                select(Reservation).where(Reservation.order_id == order_id).order_by(Reservation.id)
            )
            return list(result.scalars().all())

    async def order_count(self) -> int:
        async with lifespan_session(self.session_factory) as session:
            return (await session.execute(select(func.count(Order.id)))).scalar_one()


@dataclass
class EventLog:
    """Captures everything published on the domain events exchange."""

    messages: list[tuple[str, dict[str, Any]]] = field(default_factory=list)

    async def __call__(self, routing_key: str, message: dict[str, Any]) -> None:
        self.messages.append((routing_key, message))

    def keys(self) -> list[str]:
        return [routing_key for routing_key, _ in self.messages]

    def of(self, routing_key: str) -> list[dict[str, Any]]:
        return [message for key, message in self.messages if key == routing_key]

    def clear(self) -> None:
        self.messages.clear()


@dataclass
class Engine:
    settings: ServiceSettings
    session_factory: async_sessionmaker[AsyncSession]
    clock: FakeClock
    publisher: OrderEventPublisher
    hub: RealtimeHub
    orders: OrderService
    inventory: InventoryService
    state_machine: OrderStateMachine
    tracker: DeliveryTracker


def build_engine(
    settings: ServiceSettings,
    session_factory: async_sessionmaker[AsyncSession],
    clock: FakeClock,
    publisher: OrderEventPublisher,
    **order_service_kwargs: Any,
) -> Engine:
    hub = RealtimeHub()
    state_machine = OrderStateMachine(session_factory, settings, publisher=publisher, hub=hub, clock=clock)
    return Engine(
        settings=settings,
        session_factory=session_factory,
        clock=clock,
        publisher=publisher,
        hub=hub,
        orders=OrderService(session_factory, settings, publisher=publisher, clock=clock, **order_service_kwargs),
        inventory=InventoryService(session_factory, settings, publisher=publisher, clock=clock),
        state_machine=state_machine,
        tracker=DeliveryTracker(session_factory, settings, state_machine, publisher=publisher, hub=hub, clock=clock),
    )

