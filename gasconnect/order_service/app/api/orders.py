"""HTTP routes for placing, reading and moving orders."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends, Query, status

from ..actors import Actor
from ..dependencies import (
    bearer_token,
    get_current_actor,
    get_order_service,
    get_repository,
    get_state_machine,
)
from ..errors import NotFoundError
from ..models import Delivery, Order, OrderStatus
from ..repository import OrderFilters, OrderRepository, can_view
from ..schemas import OrderCreate, OrderListResponse, OrderResponse, OrderStatusUpdate
from ..services import OrderService
from ..state_machine import OrderStateMachine

router = APIRouter(prefix="/orders", tags=["orders"])


def money(cents: int) -> Decimal:
    return (Decimal(cents) / Decimal("100")).quantize(Decimal("0.01"))


def serialize_delivery(delivery: Delivery | None) -> dict[str, object] | None:
    if delivery is None:
        return None
    return {
        "id": delivery.id,
        "driverId": delivery.driver_id,
        "status": delivery.status,
        "scheduledDate": delivery.scheduled_date,
        "estimatedArrival": delivery.estimated_arrival,
        "actualDeparture": delivery.actual_departure,
        "actualArrival": delivery.actual_arrival,
        "currentLatitude": delivery.current_latitude,
        "currentLongitude": delivery.current_longitude,
        "assignedBy": delivery.assigned_by,
        "assignedAt": delivery.assigned_at,
    }


def serialize_order(order: Order) -> dict[str, object]:
    return {
        "id": order.id,
        "orderNumber": order.order_number,
        "customerId": order.customer_id,
        "deliveryAddressId": order.delivery_address_id,
        "orderType": order.order_type,
        "priority": order.priority,
        "isEmergency": order.is_emergency,
        "status": order.status,
        "currency": order.currency,
        "subtotal": money(order.subtotal_cents),
        "taxAmount": money(order.tax_cents),
        "deliveryFee": money(order.delivery_fee_cents),
        "emergencySurcharge": money(order.emergency_surcharge_cents),
        "totalAmount": money(order.total_cents),
        "specialInstructions": order.special_instructions,
        "scheduledDeliveryDate": order.scheduled_delivery_date,
        "cancellationReason": order.cancellation_reason,
        "cancelledAt": order.cancelled_at,
        "deliveredAt": order.delivered_at,
        "items": [
            {
                "id": item.id,
                "gasTypeId": item.gas_type_id,
                "cylinderSize": item.cylinder_size,
                "quantity": item.quantity,
                "unitPrice": money(item.unit_price_cents),
                "originalPrice": money(item.original_price_cents),
                "discountAmount": money(item.discount_cents),
                "totalPrice": money(item.total_price_cents),
                "supplierId": item.supplier_id,
                "inventoryId": item.inventory_id,
                "reservationId": item.reservation_id,
                "pricingSource": item.pricing_source,
            }
            for item in order.items
        ],
        "statusHistory": [
            {
                "previousStatus": entry.previous_status,
                "newStatus": entry.new_status,
                "changedBy": entry.changed_by,
                "actorRole": entry.actor_role,
                "reason": entry.reason,
                "createdAt": entry.created_at,
            }
            for entry in order.status_history
        ],
        "delivery": serialize_delivery(order.delivery),
        "createdAt": order.created_at,
        "updatedAt": order.updated_at,
    }


@router.post("", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def create_order(
    payload: OrderCreate,
    actor: Actor = Depends(get_current_actor),
    token: str | None = Depends(bearer_token),
    service: OrderService = Depends(get_order_service),
) -> OrderResponse:
    order = await service.create_order(actor, payload, auth_token=token)
    return OrderResponse.model_validate(serialize_order(order))


@router.get("", response_model=OrderListResponse)
async def list_orders(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    status_filter: OrderStatus | None = Query(default=None, alias="status"),
    emergency: bool | None = Query(default=None),
    created_from: datetime | None = Query(default=None, alias="createdFrom"),
    created_to: datetime | None = Query(default=None, alias="createdTo"),
    actor: Actor = Depends(get_current_actor),
    repository: OrderRepository = Depends(get_repository),
) -> OrderListResponse:
    filters = OrderFilters(
        status=status_filter,
        is_emergency=emergency,
        created_from=created_from,
        created_to=created_to,
    )
    orders, total = await repository.list_orders(actor=actor, filters=filters, limit=limit, offset=offset)
    items = [OrderResponse.model_validate(serialize_order(order)) for order in orders]
    return OrderListResponse(items=items, total=total)


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: int,
    actor: Actor = Depends(get_current_actor),
    repository: OrderRepository = Depends(get_repository),
) -> OrderResponse:
    order = await repository.get_order(order_id)
    if order is None or not can_view(order, actor):
        raise NotFoundError("Order not found", details={"orderId": order_id})
    return OrderResponse.model_validate(serialize_order(order))


@router.patch("/{order_id}/status", response_model=OrderResponse)
async def update_order_status(
    order_id: int,
    payload: OrderStatusUpdate,
    actor: Actor = Depends(get_current_actor),
    state_machine: OrderStateMachine = Depends(get_state_machine),
) -> OrderResponse:
    order = await state_machine.transition(
        order_id,
        payload.status,
        actor,
        reason=payload.reason,
        driver_id=payload.driver_id,
    )
    return OrderResponse.model_validate(serialize_order(order))
