"""Domain event publishing for the order engine."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

from gasconnect.common.broker import MessageProducer

from .metrics import EVENT_PUBLISH_FAILURES_TOTAL
from .models import Delivery, Order, OrderStatusHistory, Reservation

logger = logging.getLogger(__name__)

EVENTS_EXCHANGE = "gasconnect.events"


def _iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    else:
        dt = dt.astimezone(timezone.utc)
    return dt.isoformat()


@dataclass(frozen=True)
class PendingEvent:
    """An event captured inside a transaction and published once it commits."""

    routing_key: str
    payload: dict[str, Any]
    idempotency_key: str


def reservation_event(routing_key: str, reservation: Reservation, **extra: Any) -> PendingEvent:
    payload = {
        "reservationId": reservation.id,
        "inventoryId": reservation.inventory_id,
        "orderId": reservation.order_id,
        "orderRef": reservation.order_ref,
        "quantity": reservation.quantity,
        "status": reservation.status,
        "expiresAt": _iso(reservation.expires_at),
        **extra,
    }
    return PendingEvent(routing_key, payload, f"{routing_key}:{reservation.id}")


def serialize_order_summary(order: Order) -> dict[str, Any]:
    return {
        "orderId": order.id,
        "orderNumber": order.order_number,
        "customerId": order.customer_id,
        "status": order.status,
        "orderType": order.order_type,
        "isEmergency": order.is_emergency,
        "supplierIds": sorted({item.supplier_id for item in order.items}),
        "currency": order.currency,
        "totalCents": order.total_cents,
    }


class OrderEventPublisher:
    """Publishes order, delivery and inventory events after their transaction commits.

    Delivery is at least once: each publish is retried a bounded number of times
    and a final failure is logged and counted rather than raised, since the
    state it describes is already committed.
    """

    def __init__(
        self,
        producer: MessageProducer | None,
        *,
        attempts: int = 3,
        backoff_seconds: float = 0.05,
    ) -> None:
        self._producer = producer
        self._attempts = max(1, attempts)
        self._backoff_seconds = backoff_seconds

    async def _emit(self, routing_key: str, payload: dict[str, Any], *, idempotency_key: str) -> bool:
        if self._producer is None:
            return False
        envelope = {
            "eventType": routing_key,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "idempotencyKey": idempotency_key,
            **payload,
        }
        for attempt in range(1, self._attempts + 1):
            try:
                await self._producer.publish(routing_key, envelope)
                return True
            except Exception as exc:
                logger.warning(
                    "Publishing %s failed (attempt %s/%s): %s",
                    routing_key,
                    attempt,
                    self._attempts,
                    exc,
                    extra={"idempotency_key": idempotency_key},
                )
                if attempt < self._attempts:
                    await asyncio.sleep(self._backoff_seconds * attempt)
        EVENT_PUBLISH_FAILURES_TOTAL.labels(routing_key=routing_key).inc()
        logger.error("Dropped %s event %s after %s attempts", routing_key, idempotency_key, self._attempts)
        return False

    async def publish_pending(self, events: Iterable[PendingEvent]) -> None:
        for event in events:
            await self._emit(event.routing_key, event.payload, idempotency_key=event.idempotency_key)

    async def order_created(self, order: Order) -> None:
        payload = serialize_order_summary(order)
        payload["items"] = [
            {
                "orderItemId": item.id,
                "gasTypeId": item.gas_type_id,
                "cylinderSize": item.cylinder_size,
                "quantity": item.quantity,
                "supplierId": item.supplier_id,
                "inventoryId": item.inventory_id,
                "reservationId": item.reservation_id,
                "unitPriceCents": item.unit_price_cents,
            }
            for item in order.items
        ]
        payload["createdAt"] = _iso(order.created_at)
        await self._emit("order.created", payload, idempotency_key=f"order.created:{order.id}")

    async def order_status_changed(self, order: Order, history: OrderStatusHistory) -> None:
        payload = serialize_order_summary(order)
        payload.update(
            {
                "previousStatus": history.previous_status,
                "newStatus": history.new_status,
                "changedBy": history.changed_by,
                "actorRole": history.actor_role,
                "reason": history.reason,
            }
        )
        await self._emit(
            "order.status.changed",
            payload,
            idempotency_key=f"order.status.changed:{order.id}:{history.id}",
        )

    async def delivery_location_updated(
        self,
        delivery: Delivery,
        *,
        tracking_id: int,
        estimated_minutes: int | None,
    ) -> None:
        await self._emit(
            "delivery.location_updated",
            {
                "deliveryId": delivery.id,
                "orderId": delivery.order_id,
                "driverId": delivery.driver_id,
                "status": delivery.status,
                "latitude": delivery.current_latitude,
                "longitude": delivery.current_longitude,
                "estimatedMinutes": estimated_minutes,
                "estimatedArrival": _iso(delivery.estimated_arrival),
            },
            idempotency_key=f"delivery.location_updated:{delivery.id}:{tracking_id}",
        )

    async def delivery_assigned(self, delivery: Delivery) -> None:
        await self._emit(
            "delivery.assigned",
            {
                "deliveryId": delivery.id,
                "orderId": delivery.order_id,
                "driverId": delivery.driver_id,
                "scheduledDate": delivery.scheduled_date.isoformat() if delivery.scheduled_date else None,
                "assignedBy": delivery.assigned_by,
                "assignedAt": _iso(delivery.assigned_at),
            },
            idempotency_key=f"delivery.assigned:{delivery.id}:{delivery.driver_id}:{_iso(delivery.assigned_at)}",
        )
