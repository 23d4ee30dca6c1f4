"""HTTP routes for standalone stock holds and low-stock reports."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status

from ..actors import Actor
from ..dependencies import get_current_actor, get_inventory_service
from ..schemas import LowStockResponse, ReservationCreate, ReservationRelease, ReservationResponse
from ..services import InventoryService

router = APIRouter(prefix="/inventory", tags=["inventory"])


@router.post("/reservations", response_model=ReservationResponse, status_code=status.HTTP_201_CREATED)
async def create_reservation(
    payload: ReservationCreate,
    actor: Actor = Depends(get_current_actor),
    service: InventoryService = Depends(get_inventory_service),
) -> ReservationResponse:
    reservation = await service.reserve(actor, payload)
    return ReservationResponse.model_validate(reservation)


@router.post("/reservations/{reservation_id}/release", response_model=ReservationResponse)
async def release_reservation(
    reservation_id: int,
    payload: ReservationRelease | None = None,
    actor: Actor = Depends(get_current_actor),
    service: InventoryService = Depends(get_inventory_service),
) -> ReservationResponse:
    reason = payload.reason if payload is not None else "released"
    reservation = await service.release(actor, reservation_id, reason)
    return ReservationResponse.model_validate(reservation)


@router.get("/low-stock", response_model=LowStockResponse)
async def low_stock(
    supplier_id: int | None = Query(default=None, alias="supplierId"),
    actor: Actor = Depends(get_current_actor),
    service: InventoryService = Depends(get_inventory_service),
) -> LowStockResponse:
    entries = await service.low_stock(actor, supplier_id=supplier_id)
    items = [
        {
            "inventoryId": entry.record.id,
            "supplierId": entry.record.supplier_id,
            "gasTypeId": entry.record.gas_type_id,
            "cylinderSize": entry.record.cylinder_size,
            "quantityAvailable": entry.record.quantity_available,
            "quantityReserved": entry.record.quantity_reserved,
            "reorderLevel": entry.record.reorder_level,
            "urgency": entry.urgency,
        }
        for entry in entries
    ]
    return LowStockResponse.model_validate({"items": items, "total": len(items)})
