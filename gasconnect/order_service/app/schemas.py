"""Pydantic schemas for the order engine HTTP surface."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, field_validator

from .models import OrderStatus


class OrderItemRequest(BaseModel):
    gas_type_id: PositiveInt = Field(alias="gasTypeId")
    cylinder_size: str = Field(min_length=1, max_length=16, alias="cylinderSize")
    quantity: PositiveInt = Field(le=1000)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("cylinder_size")
    @classmethod
    def _normalize_size(cls, value: str) -> str:
        cleaned = value.strip().lower().replace(" ", "")
        if not cleaned:
            msg = "value must be non-empty"
            raise ValueError(msg)
        return cleaned


class OrderCreate(BaseModel):
    delivery_address_id: PositiveInt = Field(alias="deliveryAddressId")
    items: list[OrderItemRequest] = Field(min_length=1, max_length=50)
    order_type: Literal["regular", "emergency", "recurring"] = Field(default="regular", alias="orderType")
    priority: Literal["low", "normal", "high", "urgent"] = Field(default="normal")
    is_emergency: bool = Field(default=False, alias="isEmergency")
    special_instructions: str | None = Field(default=None, max_length=1000, alias="specialInstructions")
    scheduled_delivery_date: date | None = Field(default=None, alias="scheduledDeliveryDate")
    delivery_time_slot: str | None = Field(default=None, max_length=32, alias="deliveryTimeSlot")

    model_config = ConfigDict(populate_by_name=True)

    @property
    def emergency(self) -> bool:
        return self.is_emergency or self.order_type == "emergency"


class OrderStatusUpdate(BaseModel):
    status: OrderStatus
    reason: str | None = Field(default=None, max_length=1000)
    driver_id: PositiveInt | None = Field(default=None, alias="driverId")

    model_config = ConfigDict(populate_by_name=True)


class LocationUpdate(BaseModel):
    # Range checks happen in the tracker so they surface as engine validation errors.
    latitude: float
    longitude: float
    status: Literal["in_transit", "delivered", "failed"] | None = None
    notes: str | None = Field(default=None, max_length=1000)


class DriverAssignment(BaseModel):
    driver_id: PositiveInt = Field(alias="driverId")
    scheduled_date: date | None = Field(default=None, alias="scheduledDate")
    notes: str | None = Field(default=None, max_length=1000)

    model_config = ConfigDict(populate_by_name=True)


class ReservationCreate(BaseModel):
    supplier_id: PositiveInt = Field(alias="supplierId")
    gas_type_id: PositiveInt = Field(alias="gasTypeId")
    cylinder_size: str = Field(min_length=1, max_length=16, alias="cylinderSize")
    quantity: PositiveInt
    ttl_seconds: PositiveInt | None = Field(default=None, le=7 * 24 * 3600, alias="ttlSeconds")
    order_ref: str | None = Field(default=None, max_length=64, alias="orderRef")

    model_config = ConfigDict(populate_by_name=True)


class ReservationRelease(BaseModel):
    reason: str = Field(default="released", min_length=1, max_length=255)


class OrderItemResponse(BaseModel):
    id: PositiveInt
    gas_type_id: int = Field(alias="gasTypeId")
    cylinder_size: str = Field(alias="cylinderSize")
    quantity: int
    unit_price: Decimal = Field(alias="unitPrice")
    original_price: Decimal = Field(alias="originalPrice")
    discount_amount: Decimal = Field(alias="discountAmount")
    total_price: Decimal = Field(alias="totalPrice")
    supplier_id: int = Field(alias="supplierId")
    inventory_id: int = Field(alias="inventoryId")
    reservation_id: int | None = Field(default=None, alias="reservationId")
    pricing_source: str = Field(alias="pricingSource")

    model_config = ConfigDict(populate_by_name=True)


class StatusHistoryResponse(BaseModel):
    previous_status: str | None = Field(default=None, alias="previousStatus")
    new_status: str = Field(alias="newStatus")
    changed_by: int | None = Field(default=None, alias="changedBy")
    actor_role: str | None = Field(default=None, alias="actorRole")
    reason: str | None = None
    created_at: datetime = Field(alias="createdAt")

    model_config = ConfigDict(populate_by_name=True)


class DeliveryResponse(BaseModel):
    id: PositiveInt
    driver_id: int | None = Field(default=None, alias="driverId")
    status: str
    scheduled_date: date | None = Field(default=None, alias="scheduledDate")
    estimated_arrival: datetime | None = Field(default=None, alias="estimatedArrival")
    actual_departure: datetime | None = Field(default=None, alias="actualDeparture")
    actual_arrival: datetime | None = Field(default=None, alias="actualArrival")
    current_latitude: float | None = Field(default=None, alias="currentLatitude")
    current_longitude: float | None = Field(default=None, alias="currentLongitude")
    assigned_by: int | None = Field(default=None, alias="assignedBy")
    assigned_at: datetime | None = Field(default=None, alias="assignedAt")

    model_config = ConfigDict(populate_by_name=True)


class OrderResponse(BaseModel):
    id: PositiveInt
    order_number: str = Field(alias="orderNumber")
    customer_id: int = Field(alias="customerId")
    delivery_address_id: int = Field(alias="deliveryAddressId")
    order_type: str = Field(alias="orderType")
    priority: str
    is_emergency: bool = Field(alias="isEmergency")
    status: str
    currency: str
    subtotal: Decimal
    tax_amount: Decimal = Field(alias="taxAmount")
    delivery_fee: Decimal = Field(alias="deliveryFee")
    emergency_surcharge: Decimal = Field(alias="emergencySurcharge")
    total_amount: Decimal = Field(alias="totalAmount")
    special_instructions: str | None = Field(default=None, alias="specialInstructions")
    scheduled_delivery_date: date | None = Field(default=None, alias="scheduledDeliveryDate")
    cancellation_reason: str | None = Field(default=None, alias="cancellationReason")
    cancelled_at: datetime | None = Field(default=None, alias="cancelledAt")
    delivered_at: datetime | None = Field(default=None, alias="deliveredAt")
    items: list[OrderItemResponse]
    status_history: list[StatusHistoryResponse] = Field(default_factory=list, alias="statusHistory")
    delivery: DeliveryResponse | None = None
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True)


class OrderListResponse(BaseModel):
    items: list[OrderResponse]
    total: int


class TrackingEntryResponse(BaseModel):
    status: str
    latitude: float
    longitude: float
    notes: str | None = None
    updated_by: int = Field(alias="updatedBy")
    created_at: datetime = Field(alias="createdAt")

    model_config = ConfigDict(populate_by_name=True)


class TrackingResponse(BaseModel):
    order_id: int = Field(alias="orderId")
    order_number: str = Field(alias="orderNumber")
    status: str
    delivery: DeliveryResponse | None = None
    history: list[TrackingEntryResponse]
    estimated_minutes: int | None = Field(default=None, alias="estimatedMinutes")
    distance_km: float | None = Field(default=None, alias="distanceKm")

    model_config = ConfigDict(populate_by_name=True)


class LocationUpdateResponse(BaseModel):
    delivery_id: int = Field(alias="deliveryId")
    status: str
    order_status: str = Field(alias="orderStatus")
    estimated_minutes: int | None = Field(default=None, alias="estimatedMinutes")
    estimated_arrival: datetime | None = Field(default=None, alias="estimatedArrival")

    model_config = ConfigDict(populate_by_name=True)


class DeliveryListItemResponse(DeliveryResponse):
    order_id: int = Field(alias="orderId")
    order_number: str = Field(alias="orderNumber")
    order_status: str = Field(alias="orderStatus")
    is_emergency: bool = Field(alias="isEmergency")
    total_amount: Decimal = Field(alias="totalAmount")
    delivery_address_id: int = Field(alias="deliveryAddressId")
    created_at: datetime = Field(alias="createdAt")


class DeliveryListResponse(BaseModel):
    items: list[DeliveryListItemResponse]
    total: int


class ReservationResponse(BaseModel):
    id: PositiveInt
    inventory_id: int = Field(alias="inventoryId")
    order_id: int | None = Field(default=None, alias="orderId")
    order_ref: str | None = Field(default=None, alias="orderRef")
    quantity: int
    status: str
    expires_at: datetime = Field(alias="expiresAt")
    release_reason: str | None = Field(default=None, alias="releaseReason")

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


class LowStockItemResponse(BaseModel):
    inventory_id: int = Field(alias="inventoryId")
    supplier_id: int = Field(alias="supplierId")
    gas_type_id: int = Field(alias="gasTypeId")
    cylinder_size: str = Field(alias="cylinderSize")
    quantity_available: int = Field(alias="quantityAvailable")
    quantity_reserved: int = Field(alias="quantityReserved")
    reorder_level: int = Field(alias="reorderLevel")
    urgency: Literal["critical", "high", "medium"]

    model_config = ConfigDict(populate_by_name=True)


class LowStockResponse(BaseModel):
    items: list[LowStockItemResponse]
    total: int
