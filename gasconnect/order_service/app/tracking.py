"""Driver location updates and the tracking read model."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gasconnect.common.config import ServiceSettings
from gasconnect.common.database import lifespan_session
from gasconnect.common.tracing import start_span

from .actors import Actor, ActorRole
from .errors import NotFoundError, ValidationError
from .events import OrderEventPublisher
from .geo import distance_or_none, estimate_arrival, estimate_minutes, validate_coordinates
from .inventory import Clock, utcnow
from .models import Delivery, DeliveryStatus, DeliveryTracking, Order, OrderStatus
from .realtime import RealtimeHub
from .repository import DeliveryFilters, OrderRepository, can_view
from .state_machine import OrderStateMachine, TransitionResult

logger = logging.getLogger(__name__)

_ROUTED_STATUSES = {
    DeliveryStatus.DELIVERED.value: OrderStatus.DELIVERED,
    DeliveryStatus.FAILED.value: OrderStatus.FAILED,
}
_DRIVER_STATUSES = {DeliveryStatus.IN_TRANSIT.value, *_ROUTED_STATUSES}
_ASSIGNABLE_ORDER_STATUSES = {OrderStatus.CONFIRMED.value, OrderStatus.PREPARING.value}
_DISPATCHER_ROLES = {ActorRole.SUPPLIER, ActorRole.ADMIN}


@dataclass
class LocationUpdateResult:
    delivery: Delivery
    order_status: str
    estimated_minutes: int | None
    estimated_arrival: datetime | None


@dataclass
class TrackingView:
    order: Order
    delivery: Delivery | None
    history: list[DeliveryTracking]
    distance_km: float | None
    estimated_minutes: int | None


class DeliveryTracker:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: ServiceSettings,
        state_machine: OrderStateMachine,
        *,
        publisher: OrderEventPublisher | None = None,
        hub: RealtimeHub | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._state_machine = state_machine
        self._publisher = publisher
        self._hub = hub
        self._clock = clock

    async def update_location(
        self,
        order_id: int,
        driver: Actor,
        latitude: float,
        longitude: float,
        *,
        status: str | None = None,
        notes: str | None = None,
    ) -> LocationUpdateResult:
        errors = validate_coordinates(latitude, longitude)
        if errors:
            raise ValidationError("Invalid coordinates", errors=errors)
        if status is not None and status not in _DRIVER_STATUSES:
            raise ValidationError(
                f"Unsupported delivery status '{status}'",
                errors=[{"field": "status", "message": "must be in_transit, delivered or failed"}],
            )

        transition: TransitionResult | None = None
        with start_span("delivery.update_location", **{"order.id": order_id, "driver.id": driver.id}):
            async with lifespan_session(self._session_factory) as session:
                repository = OrderRepository(session)
                order, delivery = await repository.lock_order(order_id)
                if order is None or delivery is None or not self._assigned_to(delivery, driver):
                    raise NotFoundError("Delivery not found", details={"orderId": order_id})
                if delivery.status != DeliveryStatus.IN_TRANSIT.value:
                    raise ValidationError(
                        f"Delivery is {delivery.status}; location updates need an in-transit delivery",
                        details={"orderId": order_id, "deliveryStatus": delivery.status},
                    )

                now = self._clock()
                delivery.current_latitude = latitude
                delivery.current_longitude = longitude
                delivery.location_updated_at = now
                if notes:
                    delivery.notes = notes

                minutes: int | None = None
                address = order.delivery_address
                distance = distance_or_none(latitude, longitude, address.latitude, address.longitude)
                if distance is not None and status not in _ROUTED_STATUSES:
                    minutes, delivery.estimated_arrival = estimate_arrival(
                        now, distance, self._settings.average_speed_kmh
                    )

                tracking = await repository.add_tracking(
                    delivery,
                    status=status or delivery.status,
                    latitude=latitude,
                    longitude=longitude,
                    notes=notes,
                    updated_by=driver.id,
                )
                await session.flush()

                if status in _ROUTED_STATUSES:
                    transition = await self._state_machine.apply(
                        session, order_id, _ROUTED_STATUSES[status], driver, reason=notes
                    )
                    order = transition.order

        if self._publisher is not None:
            await self._publisher.delivery_location_updated(
                delivery, tracking_id=tracking.id, estimated_minutes=minutes
            )
        if self._hub is not None:
            await self._hub.broadcast(
                order_id,
                "delivery_updated",
                {
                    "deliveryId": delivery.id,
                    "status": delivery.status,
                    "latitude": latitude,
                    "longitude": longitude,
                    "estimatedMinutes": minutes,
                    "notes": notes,
                },
            )
        if transition is not None:
            await self._state_machine.after_commit(transition)

        return LocationUpdateResult(
            delivery=delivery,
            order_status=order.status,
            estimated_minutes=minutes,
            estimated_arrival=delivery.estimated_arrival,
        )

    async def get_tracking(self, order_id: int, actor: Actor) -> TrackingView:
        async with lifespan_session(self._session_factory) as session:
            repository = OrderRepository(session)
            order = await repository.get_order(order_id)
            if order is None or not can_view(order, actor):
                raise NotFoundError("Order not found", details={"orderId": order_id})
            delivery = order.delivery
            history: list[DeliveryTracking] = []
            if delivery is not None:
                history = await repository.recent_tracking(
                    delivery.id, limit=self._settings.tracking_history_limit
                )

        distance = None
        minutes = None
        if delivery is not None and delivery.status == DeliveryStatus.IN_TRANSIT.value:
            address = order.delivery_address
            distance = distance_or_none(
                delivery.current_latitude, delivery.current_longitude, address.latitude, address.longitude
            )
            if distance is not None:
                minutes = estimate_minutes(distance, self._settings.average_speed_kmh)
        return TrackingView(
            order=order,
            delivery=delivery,
            history=history,
            distance_km=round(distance, 3) if distance is not None else None,
            estimated_minutes=minutes,
        )

    async def assign_driver(
        self,
        order_id: int,
        driver_id: int,
        actor: Actor,
        *,
        scheduled_date: date | None = None,
        notes: str | None = None,
    ) -> Delivery:
        """Put a driver on a confirmed or preparing order's delivery.

        A supplier on the order or an admin may assign, and may reassign until
        the delivery is dispatched. The order keeps its status; dispatch stays
        an ``out_for_delivery`` transition, which picks up the assigned driver.
        """

        if driver_id < 1:
            raise ValidationError(
                "Invalid driver id",
                errors=[{"field": "driverId", "message": "must be a positive integer"}],
            )
        now = self._clock()
        if scheduled_date is not None and scheduled_date < now.date():
            raise ValidationError(
                "Scheduled date is in the past",
                errors=[{"field": "scheduledDate", "message": "must be today or later"}],
            )

        with start_span("delivery.assign_driver", **{"order.id": order_id, "driver.id": driver_id}):
            async with lifespan_session(self._session_factory) as session:
                repository = OrderRepository(session)
                order, delivery = await repository.lock_order(order_id)
                if order is None or not can_view(order, actor):
                    raise NotFoundError("Order not found", details={"orderId": order_id})
                if actor.role not in _DISPATCHER_ROLES:
                    raise ValidationError(
                        f"Role {actor.role.value} may not assign drivers",
                        details={"orderId": order_id, "role": actor.role.value},
                    )
                if order.status not in _ASSIGNABLE_ORDER_STATUSES or delivery is None:
                    raise ValidationError(
                        f"Order is {order.status}; drivers are assigned to confirmed or preparing orders",
                        details={"orderId": order_id, "status": order.status},
                    )

                delivery.driver_id = driver_id
                delivery.assigned_by = actor.id
                delivery.assigned_at = now
                if scheduled_date is not None:
                    delivery.scheduled_date = scheduled_date
                if notes:
                    delivery.notes = notes
                await session.flush()

        logger.info(
            "Order %s delivery assigned to driver %s by %s %s",
            order.order_number,
            driver_id,
            actor.role.value,
            actor.id,
        )
        if self._publisher is not None:
            await self._publisher.delivery_assigned(delivery)
        if self._hub is not None:
            await self._hub.broadcast(
                order_id,
                "delivery_assigned",
                {
                    "deliveryId": delivery.id,
                    "driverId": delivery.driver_id,
                    "scheduledDate": delivery.scheduled_date,
                    "notes": notes,
                },
            )
        return delivery

    async def list_deliveries(
        self,
        actor: Actor,
        filters: DeliveryFilters,
        *,
        limit: int,
        offset: int,
    ) -> tuple[list[Delivery], int]:
        async with lifespan_session(self._session_factory) as session:
            return await OrderRepository(session).list_deliveries(
                actor=actor, filters=filters, limit=limit, offset=offset
            )

    @staticmethod
    def _assigned_to(delivery: Delivery, driver: Actor) -> bool:
        if driver.role is ActorRole.ADMIN:
            return True
        return driver.role is ActorRole.DRIVER and delivery.driver_id == driver.id
