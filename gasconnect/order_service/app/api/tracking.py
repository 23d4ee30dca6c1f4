"""HTTP routes for driver assignment, location updates and delivery tracking."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query

from ..actors import Actor
from ..dependencies import get_current_actor, get_tracker
from ..models import DeliveryStatus
from ..repository import DeliveryFilters
from ..schemas import (
    DeliveryListResponse,
    DeliveryResponse,
    DriverAssignment,
    LocationUpdate,
    LocationUpdateResponse,
    TrackingResponse,
)
from ..tracking import DeliveryTracker
from .orders import money, serialize_delivery

router = APIRouter(prefix="/orders", tags=["tracking"])
deliveries_router = APIRouter(prefix="/deliveries", tags=["tracking"])


@router.post("/{order_id}/delivery/assign", response_model=DeliveryResponse)
async def assign_driver(
    order_id: int,
    payload: DriverAssignment,
    actor: Actor = Depends(get_current_actor),
    tracker: DeliveryTracker = Depends(get_tracker),
) -> DeliveryResponse:
    delivery = await tracker.assign_driver(
        order_id,
        payload.driver_id,
        actor,
        scheduled_date=payload.scheduled_date,
        notes=payload.notes,
    )
    return DeliveryResponse.model_validate(serialize_delivery(delivery))


@router.put("/{order_id}/delivery/location", response_model=LocationUpdateResponse)
async def update_location(
    order_id: int,
    payload: LocationUpdate,
    actor: Actor = Depends(get_current_actor),
    tracker: DeliveryTracker = Depends(get_tracker),
) -> LocationUpdateResponse:
    result = await tracker.update_location(
        order_id,
        actor,
        payload.latitude,
        payload.longitude,
        status=payload.status,
        notes=payload.notes,
    )
    return LocationUpdateResponse.model_validate(
        {
            "deliveryId": result.delivery.id,
            "status": result.delivery.status,
            "orderStatus": result.order_status,
            "estimatedMinutes": result.estimated_minutes,
            "estimatedArrival": result.estimated_arrival,
        }
    )


@router.get("/{order_id}/tracking", response_model=TrackingResponse)
async def get_tracking(
    order_id: int,
    actor: Actor = Depends(get_current_actor),
    tracker: DeliveryTracker = Depends(get_tracker),
) -> TrackingResponse:
    view = await tracker.get_tracking(order_id, actor)
    return TrackingResponse.model_validate(
        {
            "orderId": view.order.id,
            "orderNumber": view.order.order_number,
            "status": view.order.status,
            "delivery": serialize_delivery(view.delivery),
            "history": [
                {
                    "status": entry.status,
                    "latitude": entry.latitude,
                    "longitude": entry.longitude,
                    "notes": entry.notes,
                    "updatedBy": entry.updated_by,
                    "createdAt": entry.created_at,
                }
                for entry in view.history
            ],
            "estimatedMinutes": view.estimated_minutes,
            "distanceKm": view.distance_km,
        }
    )


@deliveries_router.get("", response_model=DeliveryListResponse)
async def list_deliveries(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    status_filter: DeliveryStatus | None = Query(default=None, alias="status"),
    driver_id: int | None = Query(default=None, alias="driverId"),
    created_from: datetime | None = Query(default=None, alias="createdFrom"),
    created_to: datetime | None = Query(default=None, alias="createdTo"),
    actor: Actor = Depends(get_current_actor),
    tracker: DeliveryTracker = Depends(get_tracker),
) -> DeliveryListResponse:
    filters = DeliveryFilters(
        status=status_filter,
        driver_id=driver_id,
        created_from=created_from,
        created_to=created_to,
    )
    deliveries, total = await tracker.list_deliveries(actor, filters, limit=limit, offset=offset)
    items = [
        {
            **serialize_delivery(delivery),
            "orderId": delivery.order_id,
            "orderNumber": delivery.order.order_number,
            "orderStatus": delivery.order.status,
            "isEmergency": delivery.order.is_emergency,
            "totalAmount": money(delivery.order.total_cents),
            "deliveryAddressId": delivery.order.delivery_address_id,
            "createdAt": delivery.created_at,
        }
        for delivery in deliveries
    ]
    return DeliveryListResponse.model_validate({"items": items, "total": total})
