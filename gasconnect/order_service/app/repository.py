"""Data access helpers for the order engine."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import ColumnElement, Select, and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from .actors import Actor, ActorRole
from .models import (
    Address,
    Delivery,
    DeliveryStatus,
    DeliveryTracking,
    GasType,
    Order,
    OrderItem,
    OrderStatus,
    OrderStatusHistory,
)


@dataclass(frozen=True)
class OrderFilters:
    """Typed list filters; each set field becomes one bound SQL expression."""

    status: OrderStatus | None = None
    is_emergency: bool | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None

    def clauses(self) -> list[ColumnElement[bool]]:
        clauses: list[ColumnElement[bool]] = []
        if self.status is not None:
            clauses.append(Order.status == self.status.value)
        if self.is_emergency is not None:
            clauses.append(Order.is_emergency.is_(self.is_emergency))
        if self.created_from is not None:
            clauses.append(Order.created_at >= self.created_from)
        if self.created_to is not None:
            clauses.append(Order.created_at <= self.created_to)
        return clauses


@dataclass(frozen=True)
class DeliveryFilters:
    status: DeliveryStatus | None = None
    driver_id: int | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None

    def clauses(self) -> list[ColumnElement[bool]]:
        clauses: list[ColumnElement[bool]] = []
        if self.status is not None:
            clauses.append(Delivery.status == self.status.value)
        if self.driver_id is not None:
            clauses.append(Delivery.driver_id == self.driver_id)
        if self.created_from is not None:
            clauses.append(Delivery.created_at >= self.created_from)
        if self.created_to is not None:
            clauses.append(Delivery.created_at <= self.created_to)
        return clauses


def visibility_clause(actor: Actor) -> ColumnElement[bool] | None:
    """SQL form of ``can_view``; ``None`` means unrestricted."""

    if actor.role is ActorRole.ADMIN:
        return None
    if actor.role is ActorRole.CUSTOMER:
        return Order.customer_id == actor.id
    if actor.role is ActorRole.SUPPLIER:
        return Order.id.in_(select(OrderItem.order_id).where(OrderItem.supplier_id == actor.id))
    # Uncorrelated so the clause also works in queries that already join deliveries.
    return or_(
        Order.id.in_(select(Delivery.order_id).where(Delivery.driver_id == actor.id).correlate(None)),
        and_(
            Order.status == OrderStatus.PREPARING.value,
            Order.id.in_(select(Delivery.order_id).where(Delivery.driver_id.is_(None)).correlate(None)),
        ),
    )


def can_view(order: Order, actor: Actor) -> bool:
    if actor.role is ActorRole.ADMIN:
        return True
    if actor.role is ActorRole.CUSTOMER:
        return order.customer_id == actor.id
    if actor.role is ActorRole.SUPPLIER:
        return any(item.supplier_id == actor.id for item in order.items)
    delivery = order.delivery
    if delivery is None:
        return False
    if delivery.driver_id is None:
        return order.status == OrderStatus.PREPARING.value
    return delivery.driver_id == actor.id


class OrderRepository:
    """Persistence helpers for orders and related entities."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # Reference data -----------------------------------------------------------------------
    async def get_address(self, address_id: int) -> Address | None:
        return await self.session.get(Address, address_id)

    async def get_gas_type(self, gas_type_id: int) -> GasType | None:
        return await self.session.get(GasType, gas_type_id)

    # Orders -------------------------------------------------------------------------------
    async def order_number_exists(self, order_number: str) -> bool:
        result = await self.session.execute(select(Order.id).where(Order.order_number == order_number))
        return result.scalar_one_or_none() is not None

    async def add_order(self, **fields: Any) -> Order:
        order = Order(**fields)
        self.session.add(order)
        await self.session.flush()
        return order

    async def add_item(self, order: Order, **fields: Any) -> OrderItem:
        item = OrderItem(order_id=order.id, **fields)
        self.session.add(item)
        await self.session.flush()
        return item

    async def add_history(
        self,
        order: Order,
        *,
        previous_status: str | None,
        new_status: str,
        actor: Actor,
        reason: str | None = None,
    ) -> OrderStatusHistory:
        entry = OrderStatusHistory(
            order_id=order.id,
            previous_status=previous_status,
            new_status=new_status,
            changed_by=actor.id,
            actor_role=actor.role.value,
            reason=reason,
        )
        self.session.add(entry)
        await self.session.flush()
        await self.session.refresh(entry, attribute_names=["created_at"])
        return entry

    async def get_order(self, order_id: int, *, for_update: bool = False) -> Order | None:
        stmt = select(Order).where(Order.id == order_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def lock_order(self, order_id: int) -> tuple[Order | None, Delivery | None]:
        """Lock an order row, then its delivery row.

        Every writer that touches both rows goes through here so row locks are
        always taken order -> delivery -> inventory.
        """

        order = await self.get_order(order_id, for_update=True)
        if order is None:
            return None, None
        return order, await self.get_delivery_for_order(order_id, for_update=True)

    async def reload_order(self, order: Order) -> Order:
        """Refresh an order and its collections after writes in this session."""

        await self.session.refresh(
            order, attribute_names=["items", "status_history", "delivery", "created_at", "updated_at"]
        )
        return order

    async def list_orders(
        self,
        *,
        actor: Actor,
        filters: OrderFilters,
        limit: int,
        offset: int,
    ) -> tuple[list[Order], int]:
        clauses = filters.clauses()
        scope = visibility_clause(actor)
        if scope is not None:
            clauses.append(scope)

        base: Select[tuple[Order]] = select(Order)
        count: Select[tuple[int]] = select(func.count(Order.id))
        if clauses:
            base = base.where(and_(*clauses))
            count = count.where(and_(*clauses))

        total = (await self.session.execute(count)).scalar_one()
        result = await self.session.execute(
            base.order_by(Order.created_at.desc(), Order.id.desc()).offset(offset).limit(limit)
        )
        return list(result.scalars().unique()), total

    # Deliveries ---------------------------------------------------------------------------
    async def get_delivery_for_order(self, order_id: int, *, for_update: bool = False) -> Delivery | None:
        stmt = select(Delivery).where(Delivery.order_id == order_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_deliveries(
        self,
        *,
        actor: Actor,
        filters: DeliveryFilters,
        limit: int,
        offset: int,
    ) -> tuple[list[Delivery], int]:
        """Deliveries whose order the actor may view, newest first."""

        clauses = filters.clauses()
        scope = visibility_clause(actor)
        if scope is not None:
            clauses.append(scope)

        base: Select[tuple[Delivery]] = (
            select(Delivery).join(Order, Delivery.order_id == Order.id).options(selectinload(Delivery.order))
        )
        count: Select[tuple[int]] = (
            select(func.count(Delivery.id)).select_from(Delivery).join(Order, Delivery.order_id == Order.id)
        )
        if clauses:
            base = base.where(and_(*clauses))
            count = count.where(and_(*clauses))

        total = (await self.session.execute(count)).scalar_one()
        result = await self.session.execute(
            base.order_by(Delivery.created_at.desc(), Delivery.id.desc()).offset(offset).limit(limit)
        )
        return list(result.scalars().unique()), total

    async def add_delivery(self, order: Order, **fields: Any) -> Delivery:
        delivery = Delivery(order_id=order.id, **fields)
        self.session.add(delivery)
        await self.session.flush()
        return delivery

    async def add_tracking(self, delivery: Delivery, **fields: Any) -> DeliveryTracking:
        entry = DeliveryTracking(delivery_id=delivery.id, **fields)
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def recent_tracking(self, delivery_id: int, *, limit: int) -> list[DeliveryTracking]:
        result = await self.session.execute(
            select(DeliveryTracking)
            .where(DeliveryTracking.delivery_id == delivery_id)
            .order_by(DeliveryTracking.created_at.desc(), DeliveryTracking.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
