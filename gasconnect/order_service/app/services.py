"""Order orchestration: the transaction boundary for placing orders."""

from __future__ import annotations

import logging
import secrets
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from time import perf_counter
from typing import Any, Protocol, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gasconnect.common.config import ServiceSettings
from gasconnect.common.database import lifespan_session
from gasconnect.common.tracing import start_span

from .actors import Actor, ActorRole
from .errors import BusinessLogicError, EngineError, NotFoundError, SupplierServiceError, ValidationError
from .events import OrderEventPublisher, PendingEvent
from .geo import distance_or_none
from .inventory import Clock, InventoryLedger, LowStockEntry, utcnow
from .metrics import ORDER_CREATION_FAILURES_TOTAL, ORDER_CREATION_LATENCY_SECONDS, ORDERS_CREATED_TOTAL
from .models import (
    Address,
    InventoryMode,
    InventoryRecord,
    Order,
    OrderItem,
    OrderStatus,
    OrderType,
    Reservation,
)
from .pricing import PriceQuote, PricingResolver, SupplierPricingSource, normalize_customer_class, percent_of, to_cents
from .repository import OrderRepository
from .schemas import OrderCreate, OrderItemRequest, ReservationCreate
from .selection import SelectionWeights, SupplierOffer, SupplierSelector

logger = logging.getLogger(__name__)

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


class SupplierInventorySync(SupplierPricingSource, Protocol):
    async def check_availability(
        self, supplier_id: int, items: list[dict[str, Any]], auth_token: str | None = None
    ) -> dict[str, dict[str, Any]]: ...

    async def update_inventory_quantities(
        self, supplier_id: int, items: list[dict[str, object]], auth_token: str | None = None
    ) -> None: ...


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_order_number(prefix: str, *, epoch_ms: int) -> str:
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"{prefix}{_base36(epoch_ms)}{suffix}".upper()


@dataclass(frozen=True)
class FeeSchedule:
    """Tax, surcharge and delivery fee parameters, money in minor units."""

    tax_rate_percent: Decimal
    emergency_surcharge_percent: Decimal
    base_fee_cents: int
    per_km_cents: int
    max_km: Decimal
    min_fee_cents: int
    default_fee_cents: int
    emergency_multiplier: Decimal

    @classmethod
    def from_settings(cls, settings: ServiceSettings) -> "FeeSchedule":
        return cls(
            tax_rate_percent=Decimal(str(settings.tax_rate_percent)),
            emergency_surcharge_percent=Decimal(str(settings.emergency_surcharge_percent)),
            base_fee_cents=to_cents(settings.delivery_base_fee),
            per_km_cents=to_cents(settings.delivery_fee_per_km),
            max_km=Decimal(str(settings.delivery_fee_max_km)),
            min_fee_cents=to_cents(settings.delivery_min_fee),
            default_fee_cents=to_cents(settings.delivery_default_fee),
            emergency_multiplier=Decimal(str(settings.emergency_delivery_multiplier)),
        )

    def delivery_fee(self, distance_km: float | None, *, is_emergency: bool) -> int:
        if distance_km is None:
            fee = Decimal(self.default_fee_cents)
        else:
            billable_km = min(Decimal(str(distance_km)), self.max_km)
            fee = max(Decimal(self.min_fee_cents), self.base_fee_cents + self.per_km_cents * billable_km)
        if is_emergency:
            fee *= self.emergency_multiplier
        return int(fee.to_integral_value(rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class OrderTotals:
    subtotal_cents: int
    tax_cents: int
    delivery_fee_cents: int
    emergency_surcharge_cents: int
    total_cents: int


def compute_totals(
    schedule: FeeSchedule,
    item_totals: Sequence[int],
    *,
    distance_km: float | None,
    is_emergency: bool,
) -> OrderTotals:
    subtotal = sum(item_totals)
    tax = percent_of(subtotal, schedule.tax_rate_percent)
    surcharge = percent_of(subtotal, schedule.emergency_surcharge_percent) if is_emergency else 0
    fee = schedule.delivery_fee(distance_km, is_emergency=is_emergency)
    return OrderTotals(
        subtotal_cents=subtotal,
        tax_cents=tax,
        delivery_fee_cents=fee,
        emergency_surcharge_cents=surcharge,
        total_cents=subtotal + tax + fee + surcharge,
    )


@dataclass(frozen=True)
class _PlannedLine:
    request: OrderItemRequest
    offer: SupplierOffer
    quote: PriceQuote

    @property
    def total_cents(self) -> int:
        return self.quote.unit_price_cents * self.request.quantity


class OrderService:
    """Creates orders atomically: selection, pricing, persistence and stock holds share one transaction."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: ServiceSettings,
        *,
        publisher: OrderEventPublisher | None = None,
        supplier_client: SupplierInventorySync | None = None,
        selector: SupplierSelector | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._publisher = publisher
        self._supplier_client = supplier_client
        self._selector = selector or SupplierSelector(SelectionWeights.from_settings(settings))
        self._fees = FeeSchedule.from_settings(settings)
        self._clock = clock

    async def create_order(self, actor: Actor, payload: OrderCreate, *, auth_token: str | None = None) -> Order:
        if actor.role is not ActorRole.CUSTOMER:
            raise ValidationError(
                "Only customers can place orders",
                errors=[{"field": "role", "message": f"role '{actor.role.value}' cannot place orders"}],
            )

        started = perf_counter()
        with start_span(
            "order.create",
            **{"order.customer_id": actor.id, "order.items": len(payload.items), "order.emergency": payload.emergency},
        ):
            try:
                async with lifespan_session(self._session_factory) as session:
                    order, pending = await self._create(session, actor, payload, auth_token)
            except EngineError as exc:
                ORDER_CREATION_FAILURES_TOTAL.labels(reason=exc.code.lower()).inc()
                logger.warning("Order creation rejected for customer %s: %s", actor.id, exc.message)
                raise
            except Exception:
                ORDER_CREATION_FAILURES_TOTAL.labels(reason="internal").inc()
                logger.exception("Order creation failed for customer %s", actor.id)
                raise

        ORDERS_CREATED_TOTAL.labels(order_type=order.order_type).inc()
        ORDER_CREATION_LATENCY_SECONDS.observe(perf_counter() - started)
        logger.info(
            "Created order %s for customer %s (%s items, total %s %s)",
            order.order_number,
            actor.id,
            len(order.items),
            order.total_cents,
            order.currency,
        )

        if self._publisher is not None:
            await self._publisher.order_created(order)
            await self._publisher.publish_pending(pending)
        await self._sync_remote_inventory(order, auth_token)
        return order

    async def _create(
        self,
        session: AsyncSession,
        actor: Actor,
        payload: OrderCreate,
        auth_token: str | None,
    ) -> tuple[Order, list[PendingEvent]]:
        settings = self._settings
        repository = OrderRepository(session)
        ledger = InventoryLedger(
            session,
            reservation_ttl=timedelta(seconds=settings.reservation_ttl_seconds),
            clock=self._clock,
        )
        pricing = PricingResolver(
            session,
            remote=self._supplier_client,
            auth_token=auth_token,
            today=lambda: self._clock().date(),
        )
        customer_class = normalize_customer_class(actor.source_role or actor.role.value)
        is_emergency = payload.emergency

        address = await repository.get_address(payload.delivery_address_id)
        if address is None or not address.is_active or address.user_id != actor.id:
            raise ValidationError(
                "Invalid delivery address",
                errors=[{"field": "deliveryAddressId", "message": "address not found or not owned by customer"}],
            )

        planned: dict[int, int] = defaultdict(int)
        lines: list[_PlannedLine] = []
        unavailable: list[dict[str, object]] = []
        for index, request in enumerate(payload.items):
            gas_type = await repository.get_gas_type(request.gas_type_id)
            if gas_type is None or not gas_type.is_active:
                raise ValidationError(
                    "Unknown gas type",
                    errors=[{"field": f"items[{index}].gasTypeId", "message": "gas type not found"}],
                )
            offers = await self._offers(ledger, request, address, planned)
            if not offers:
                unavailable.append(
                    {
                        "index": index,
                        "gasTypeId": request.gas_type_id,
                        "gasTypeName": gas_type.name,
                        "cylinderSize": request.cylinder_size,
                        "quantity": request.quantity,
                    }
                )
                continue
            offer = self._selector.select(offers, is_emergency=is_emergency)
            quote = await pricing.price(
                offer.supplier_id,
                request.gas_type_id,
                request.cylinder_size,
                request.quantity,
                customer_class,
            )
            planned[offer.inventory_id] += request.quantity
            lines.append(_PlannedLine(request, offer, quote))

        if unavailable:
            raise BusinessLogicError(
                "Some items are not available from any supplier",
                details={"unavailableItems": unavailable},
            )
        if settings.check_remote_availability and self._supplier_client is not None:
            await self._confirm_remote_availability(self._supplier_client, lines, auth_token)

        distances = [line.offer.distance_km for line in lines if line.offer.distance_km is not None]
        totals = compute_totals(
            self._fees,
            [line.total_cents for line in lines],
            distance_km=max(distances) if distances else None,
            is_emergency=is_emergency,
        )

        order = await repository.add_order(
            order_number=await self._unique_order_number(repository),
            customer_id=actor.id,
            customer_role=actor.source_role or actor.role.value,
            delivery_address_id=address.id,
            order_type=OrderType.EMERGENCY.value if is_emergency else payload.order_type,
            priority="urgent" if is_emergency else payload.priority,
            is_emergency=is_emergency,
            status=OrderStatus.PENDING.value,
            inventory_mode=settings.inventory_mode,
            currency=settings.currency,
            subtotal_cents=totals.subtotal_cents,
            tax_cents=totals.tax_cents,
            delivery_fee_cents=totals.delivery_fee_cents,
            emergency_surcharge_cents=totals.emergency_surcharge_cents,
            total_cents=totals.total_cents,
            special_instructions=payload.special_instructions,
            scheduled_delivery_date=self._scheduled_date(payload, is_emergency),
            delivery_time_slot=payload.delivery_time_slot,
        )
        items: list[tuple[_PlannedLine, OrderItem]] = []
        for line in lines:
            item = await repository.add_item(
                order,
                gas_type_id=line.request.gas_type_id,
                cylinder_size=line.request.cylinder_size,
                quantity=line.request.quantity,
                unit_price_cents=line.quote.unit_price_cents,
                original_price_cents=line.quote.base_price_cents,
                discount_cents=line.quote.discount_cents * line.request.quantity,
                total_price_cents=line.total_cents,
                supplier_id=line.offer.supplier_id,
                inventory_id=line.offer.inventory_id,
                pricing_rule_id=line.quote.rule_id,
                pricing_source=line.quote.source,
            )
            items.append((line, item))
        await repository.add_history(
            order,
            previous_status=None,
            new_status=OrderStatus.PENDING.value,
            actor=actor,
            reason="Order created",
        )

        # Stock is touched last and in inventory-id order so concurrent orders lock rows identically.
        for line, item in sorted(items, key=lambda pair: (pair[0].offer.inventory_id, pair[1].id)):
            if settings.inventory_mode == InventoryMode.RESERVATION.value:
                reservation = await ledger.reserve_record(
                    line.offer.inventory_id,
                    line.request.quantity,
                    order_id=order.id,
                    order_ref=order.order_number,
                )
                item.reservation_id = reservation.id
            else:
                await ledger.direct_decrement(line.offer.inventory_id, line.request.quantity)

        await session.flush()
        await repository.reload_order(order)
        return order, ledger.drain_events()

    async def _offers(
        self,
        ledger: InventoryLedger,
        request: OrderItemRequest,
        address: Address,
        planned: dict[int, int],
    ) -> list[SupplierOffer]:
        offers: list[SupplierOffer] = []
        for record in await ledger.available_stock(request.gas_type_id, request.cylinder_size):
            free = record.free_quantity - planned.get(record.id, 0)
            if free < request.quantity:
                continue
            supplier = record.supplier
            distance = distance_or_none(address.latitude, address.longitude, supplier.latitude, supplier.longitude)
            if distance is not None and distance > self._settings.supplier_search_radius_km:
                continue
            offers.append(
                SupplierOffer(
                    supplier_id=supplier.id,
                    inventory_id=record.id,
                    rating=supplier.rating,
                    distance_km=distance,
                    price_cents=record.unit_cost_cents,
                    available_quantity=free,
                )
            )
        return offers

    async def _confirm_remote_availability(
        self, client: SupplierInventorySync, lines: Sequence[_PlannedLine], auth_token: str | None
    ) -> None:
        """Ask each chosen supplier's own inventory service whether it can cover its lines.

        Availability keys follow the supplier service convention ``"<gasTypeId>-<cylinderSize>"``.
        Transport failures propagate and abort the order.
        """

        wanted: dict[int, dict[str, dict[str, Any]]] = defaultdict(dict)
        for line in lines:
            key = f"{line.request.gas_type_id}-{line.request.cylinder_size}"
            entry = wanted[line.offer.supplier_id].setdefault(
                key,
                {"gasTypeId": line.request.gas_type_id, "cylinderSize": line.request.cylinder_size, "quantity": 0},
            )
            entry["quantity"] += line.request.quantity

        unavailable: list[dict[str, object]] = []
        for supplier_id, entries in sorted(wanted.items()):
            availability = await client.check_availability(supplier_id, list(entries.values()), auth_token)
            for key, entry in entries.items():
                status = availability.get(key)
                if isinstance(status, dict) and status.get("available"):
                    continue
                unavailable.append(
                    {
                        "supplierId": supplier_id,
                        "gasTypeId": entry["gasTypeId"],
                        "cylinderSize": entry["cylinderSize"],
                        "requested": entry["quantity"],
                        "available": status.get("quantityAvailable", 0) if isinstance(status, dict) else 0,
                    }
                )
        if unavailable:
            raise BusinessLogicError(
                "Some items are not available in requested quantities",
                details={"unavailableItems": unavailable},
            )

    async def _unique_order_number(self, repository: OrderRepository) -> str:
        for _ in range(5):
            epoch_ms = int(self._clock().timestamp() * 1000)
            candidate = generate_order_number(self._settings.order_number_prefix, epoch_ms=epoch_ms)
            if not await repository.order_number_exists(candidate):
                return candidate
        raise RuntimeError("Could not allocate a unique order number")

    def _scheduled_date(self, payload: OrderCreate, is_emergency: bool) -> date:
        if payload.scheduled_delivery_date is not None:
            return payload.scheduled_delivery_date
        today = self._clock().date()
        if is_emergency:
            return today
        return today + timedelta(days=self._settings.delivery_schedule_offset_days)

    async def _sync_remote_inventory(self, order: Order, auth_token: str | None) -> None:
        if not self._settings.sync_remote_inventory or self._supplier_client is None:
            return
        by_supplier: dict[int, list[dict[str, object]]] = defaultdict(list)
        for item in order.items:
            by_supplier[item.supplier_id].append(
                {"gasTypeId": item.gas_type_id, "cylinderSize": item.cylinder_size, "quantity": item.quantity}
            )
        for supplier_id, items in sorted(by_supplier.items()):
            try:
                await self._supplier_client.update_inventory_quantities(supplier_id, items, auth_token)
            except SupplierServiceError as exc:
                logger.warning(
                    "Remote inventory sync failed for order %s, supplier %s: %s",
                    order.order_number,
                    supplier_id,
                    exc,
                )


class InventoryService:
    """Standalone reservation and stock-report operations for suppliers and admins."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: ServiceSettings,
        *,
        publisher: OrderEventPublisher | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._publisher = publisher
        self._clock = clock

    def _ledger(self, session: AsyncSession) -> InventoryLedger:
        return InventoryLedger(
            session,
            reservation_ttl=timedelta(seconds=self._settings.reservation_ttl_seconds),
            clock=self._clock,
        )

    async def reserve(self, actor: Actor, payload: ReservationCreate) -> Reservation:
        _require_stock_owner(actor, payload.supplier_id)
        ttl = timedelta(seconds=payload.ttl_seconds) if payload.ttl_seconds else None
        async with lifespan_session(self._session_factory) as session:
            ledger = self._ledger(session)
            reservation = await ledger.reserve(
                payload.supplier_id,
                payload.gas_type_id,
                payload.cylinder_size.strip().lower(),
                payload.quantity,
                order_ref=payload.order_ref,
                ttl=ttl,
            )
            pending = ledger.drain_events()
        await self._publish(pending)
        return reservation

    async def release(self, actor: Actor, reservation_id: int, reason: str) -> Reservation:
        async with lifespan_session(self._session_factory) as session:
            ledger = self._ledger(session)
            reservation = await ledger.get_reservation(reservation_id)
            record = await session.get(InventoryRecord, reservation.inventory_id) if reservation else None
            if reservation is None or record is None or not _owns_stock(actor, record.supplier_id):
                raise NotFoundError("Reservation not found", details={"reservationId": reservation_id})
            reservation = await ledger.release(reservation_id, reason)
            pending = ledger.drain_events()
        await self._publish(pending)
        return reservation

    async def low_stock(self, actor: Actor, *, supplier_id: int | None = None) -> list[LowStockEntry]:
        if actor.role is ActorRole.SUPPLIER:
            supplier_id = actor.id
        elif actor.role is not ActorRole.ADMIN:
            raise NotFoundError("Inventory not found")
        async with lifespan_session(self._session_factory) as session:
            return await self._ledger(session).low_stock(supplier_id=supplier_id)

    async def _publish(self, pending: list[PendingEvent]) -> None:
        if self._publisher is not None:
            await self._publisher.publish_pending(pending)


def _owns_stock(actor: Actor, supplier_id: int) -> bool:
    if actor.role is ActorRole.ADMIN:
        return True
    return actor.role is ActorRole.SUPPLIER and actor.id == supplier_id


def _require_stock_owner(actor: Actor, supplier_id: int) -> None:
    if not _owns_stock(actor, supplier_id):
        raise NotFoundError("Inventory record not found", details={"supplierId": supplier_id})
