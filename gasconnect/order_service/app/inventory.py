"""Inventory ledger: every stock mutation goes through here.

Each mutating operation locks the inventory row (``SELECT ... FOR UPDATE``)
before it reads ``quantity_available``/``quantity_reserved``. When an operation
also touches a reservation, the inventory row is locked first and the
reservation row second, so the ledger, the reaper and the state machine all
acquire locks in the same order. Multi-row callers lock inventory rows in
ascending id order.

The ledger never commits. Callers own the transaction, and events collected in
``events`` must only be published after that transaction commits.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import BusinessLogicError, InsufficientInventory, NotFoundError, ValidationError
from .events import PendingEvent, reservation_event
from .metrics import INVENTORY_OPERATIONS_TOTAL, INVENTORY_REJECTIONS_TOTAL
from .models import InventoryRecord, OrderItem, Reservation, ReservationStatus, Supplier

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything the engine stores is UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def low_stock_urgency(quantity_available: int, reorder_level: int) -> str:
    if quantity_available <= 0:
        return "critical"
    if quantity_available <= reorder_level * 0.5:
        return "high"
    return "medium"


@dataclass(frozen=True)
class LowStockEntry:
    record: InventoryRecord
    urgency: str


class InventoryLedger:
    """Transactional stock operations over ``inventory_records`` and ``reservations``."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        reservation_ttl: timedelta = timedelta(minutes=15),
        clock: Clock = utcnow,
    ) -> None:
        self.session = session
        self.reservation_ttl = reservation_ttl
        self._clock = clock
        self.events: list[PendingEvent] = []

    def drain_events(self) -> list[PendingEvent]:
        events, self.events = self.events, []
        return events

    # Locking ------------------------------------------------------------------------------
    async def lock_record(self, inventory_id: int) -> InventoryRecord:
        result = await self.session.execute(
            select(InventoryRecord)
            .where(InventoryRecord.id == inventory_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise NotFoundError("Inventory record not found", details={"inventoryId": inventory_id})
        return record

    async def _lock_record_by_key(self, supplier_id: int, gas_type_id: int, cylinder_size: str) -> InventoryRecord:
        result = await self.session.execute(
            select(InventoryRecord)
            .where(
                InventoryRecord.supplier_id == supplier_id,
                InventoryRecord.gas_type_id == gas_type_id,
                InventoryRecord.cylinder_size == cylinder_size,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        record = result.scalar_one_or_none()
        if record is None:
            raise NotFoundError(
                "Inventory record not found",
                details={"supplierId": supplier_id, "gasTypeId": gas_type_id, "cylinderSize": cylinder_size},
            )
        return record

    async def _lock_reservation(self, reservation_id: int) -> tuple[Reservation, InventoryRecord]:
        current = await self.session.get(Reservation, reservation_id)
        if current is None:
            raise NotFoundError("Reservation not found", details={"reservationId": reservation_id})
        record = await self.lock_record(current.inventory_id)
        result = await self.session.execute(
            select(Reservation)
            .where(Reservation.id == reservation_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one(), record

    # Reservations -------------------------------------------------------------------------
    async def reserve(
        self,
        supplier_id: int,
        gas_type_id: int,
        cylinder_size: str,
        quantity: int,
        *,
        order_id: int | None = None,
        order_ref: str | None = None,
        ttl: timedelta | None = None,
    ) -> Reservation:
        _require_positive(quantity)
        record = await self._lock_record_by_key(supplier_id, gas_type_id, cylinder_size)
        return await self._hold(record, quantity, order_id=order_id, order_ref=order_ref, ttl=ttl)

    async def reserve_record(
        self,
        inventory_id: int,
        quantity: int,
        *,
        order_id: int | None = None,
        order_ref: str | None = None,
        ttl: timedelta | None = None,
    ) -> Reservation:
        _require_positive(quantity)
        record = await self.lock_record(inventory_id)
        return await self._hold(record, quantity, order_id=order_id, order_ref=order_ref, ttl=ttl)

    async def _hold(
        self,
        record: InventoryRecord,
        quantity: int,
        *,
        order_id: int | None,
        order_ref: str | None,
        ttl: timedelta | None,
    ) -> Reservation:
        self._ensure_free(record, quantity)
        record.quantity_reserved += quantity
        reservation = Reservation(
            inventory_id=record.id,
            order_id=order_id,
            order_ref=order_ref,
            quantity=quantity,
            status=ReservationStatus.ACTIVE.value,
            expires_at=self._clock() + (ttl or self.reservation_ttl),
        )
        self.session.add(reservation)
        await self.session.flush()
        INVENTORY_OPERATIONS_TOTAL.labels(operation="reserve").inc()
        self.events.append(reservation_event("inventory.reserved", reservation, supplierId=record.supplier_id))
        logger.debug(
            "Reserved %s units on inventory %s (reservation %s)", quantity, record.id, reservation.id
        )
        return reservation

    async def release(self, reservation_id: int, reason: str = "released") -> Reservation:
        """Return a held quantity to free stock. Releasing a non-active reservation is a no-op."""

        reservation, record = await self._lock_reservation(reservation_id)
        if reservation.status == ReservationStatus.CONSUMED.value:
            logger.warning("Ignoring release of consumed reservation %s", reservation.id)
            return reservation
        if reservation.status != ReservationStatus.ACTIVE.value:
            return reservation

        record.quantity_reserved -= reservation.quantity
        reservation.status = ReservationStatus.RELEASED.value
        reservation.released_at = self._clock()
        reservation.release_reason = reason[:255]
        await self.session.flush()
        INVENTORY_OPERATIONS_TOTAL.labels(operation="release").inc()
        self.events.append(reservation_event("inventory.released", reservation, reason=reason))
        return reservation

    async def commit_decrement(self, reservation_id: int) -> Reservation:
        """Turn an active hold into a permanent stock decrement."""

        reservation, record = await self._lock_reservation(reservation_id)
        if reservation.status == ReservationStatus.CONSUMED.value:
            return reservation
        if reservation.status != ReservationStatus.ACTIVE.value:
            raise BusinessLogicError(
                f"Reservation {reservation.id} is {reservation.status} and cannot be committed",
                details={"reservationId": reservation.id, "status": reservation.status},
            )
        self._consume(reservation, record)
        await self.session.flush()
        return reservation

    def _consume(self, reservation: Reservation, record: InventoryRecord) -> None:
        record.quantity_available -= reservation.quantity
        record.quantity_reserved -= reservation.quantity
        reservation.status = ReservationStatus.CONSUMED.value
        reservation.consumed_at = self._clock()
        INVENTORY_OPERATIONS_TOTAL.labels(operation="commit").inc()
        self.events.append(reservation_event("inventory.committed", reservation))

    # Direct stock changes -----------------------------------------------------------------
    async def direct_decrement(self, inventory_id: int, quantity: int) -> InventoryRecord:
        _require_positive(quantity)
        record = await self.lock_record(inventory_id)
        self._ensure_free(record, quantity)
        record.quantity_available -= quantity
        await self.session.flush()
        INVENTORY_OPERATIONS_TOTAL.labels(operation="direct_decrement").inc()
        return record

    async def direct_increment(self, inventory_id: int, quantity: int) -> InventoryRecord:
        _require_positive(quantity)
        record = await self.lock_record(inventory_id)
        record.quantity_available += quantity
        await self.session.flush()
        INVENTORY_OPERATIONS_TOTAL.labels(operation="direct_increment").inc()
        return record

    def _ensure_free(self, record: InventoryRecord, quantity: int) -> None:
        free = record.quantity_available - record.quantity_reserved
        if free < quantity:
            INVENTORY_REJECTIONS_TOTAL.inc()
            raise InsufficientInventory(inventory_id=record.id, requested=quantity, available=max(free, 0))

    # Order-level helpers ------------------------------------------------------------------
    async def release_for_order(self, order_id: int, reason: str) -> list[Reservation]:
        result = await self.session.execute(
            select(Reservation.id)
            .where(Reservation.order_id == order_id, Reservation.status == ReservationStatus.ACTIVE.value)
            .order_by(Reservation.inventory_id, Reservation.id)
        )
        return [await self.release(reservation_id, reason) for reservation_id in result.scalars().all()]

    async def commit_for_items(self, items: Sequence[OrderItem]) -> None:
        """Consume the holds behind ``items``; items without a hold were decremented at creation."""

        for item in sorted(items, key=lambda entry: (entry.inventory_id, entry.id)):
            if item.reservation_id is None:
                continue
            reservation, record = await self._lock_reservation(item.reservation_id)
            if reservation.status == ReservationStatus.CONSUMED.value:
                continue
            if reservation.status == ReservationStatus.ACTIVE.value:
                self._consume(reservation, record)
                continue
            # The hold lapsed before delivery; take the stock directly if it is still there.
            logger.warning(
                "Reservation %s for order item %s is %s at delivery; decrementing stock directly",
                reservation.id,
                item.id,
                reservation.status,
            )
            self._ensure_free(record, reservation.quantity)
            record.quantity_available -= reservation.quantity
            reservation.status = ReservationStatus.CONSUMED.value
            reservation.consumed_at = self._clock()
            INVENTORY_OPERATIONS_TOTAL.labels(operation="direct_decrement").inc()
            self.events.append(reservation_event("inventory.committed", reservation, fallback="direct"))
        await self.session.flush()

    async def extend_for_order(self, order_id: int, expires_at: datetime) -> int:
        result = await self.session.execute(
            update(Reservation)
            .where(Reservation.order_id == order_id, Reservation.status == ReservationStatus.ACTIVE.value)
            .values(expires_at=expires_at)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0

    async def expire_stale(self, *, now: datetime | None = None, limit: int = 500) -> list[Reservation]:
        """Release active holds whose expiry has passed, oldest inventory rows first."""

        cutoff = now or self._clock()
        result = await self.session.execute(
            select(Reservation.id)
            .where(Reservation.status == ReservationStatus.ACTIVE.value, Reservation.expires_at < cutoff)
            .order_by(Reservation.inventory_id, Reservation.id)
            .limit(limit)
        )
        expired: list[Reservation] = []
        for reservation_id in result.scalars().all():
            reservation, record = await self._lock_reservation(reservation_id)
            # Re-check under the lock: the hold may have been extended, released or consumed.
            if reservation.status != ReservationStatus.ACTIVE.value or as_utc(reservation.expires_at) >= cutoff:
                continue
            record.quantity_reserved -= reservation.quantity
            reservation.status = ReservationStatus.EXPIRED.value
            reservation.released_at = cutoff
            reservation.release_reason = "expired"
            INVENTORY_OPERATIONS_TOTAL.labels(operation="expire").inc()
            self.events.append(reservation_event("inventory.expired", reservation))
            expired.append(reservation)
        await self.session.flush()
        return expired

    # Reads --------------------------------------------------------------------------------
    async def available_stock(self, gas_type_id: int, cylinder_size: str) -> list[InventoryRecord]:
        """Inventory rows of active suppliers with any free quantity for the given SKU."""

        result = await self.session.execute(
            select(InventoryRecord)
            .join(Supplier, Supplier.id == InventoryRecord.supplier_id)
            .where(
                InventoryRecord.gas_type_id == gas_type_id,
                InventoryRecord.cylinder_size == cylinder_size,
                Supplier.is_active.is_(True),
                InventoryRecord.quantity_available - InventoryRecord.quantity_reserved > 0,
            )
            .order_by(InventoryRecord.id)
        )
        return list(result.scalars().all())

    async def low_stock(self, *, supplier_id: int | None = None) -> list[LowStockEntry]:
        stmt = select(InventoryRecord).where(InventoryRecord.quantity_available <= InventoryRecord.reorder_level)
        if supplier_id is not None:
            stmt = stmt.where(InventoryRecord.supplier_id == supplier_id)
        result = await self.session.execute(stmt.order_by(InventoryRecord.quantity_available, InventoryRecord.id))
        return [
            LowStockEntry(record, low_stock_urgency(record.quantity_available, record.reorder_level))
            for record in result.scalars().all()
        ]

    async def get_reservation(self, reservation_id: int) -> Reservation | None:
        return await self.session.get(Reservation, reservation_id)


def _require_positive(quantity: int) -> None:
    if quantity <= 0:
        raise ValidationError(
            "Quantity must be positive",
            errors=[{"field": "quantity", "message": "must be greater than 0"}],
        )
