"""Order status lifecycle.

    pending -> confirmed -> preparing -> out_for_delivery -> delivered | failed
    pending | confirmed | preparing -> cancelled
    failed -> pending | cancelled            (admin only)

``TRANSITIONS`` is the complete table: a (from, to) pair that is missing, or
present without the caller's role, is rejected. Each target status has one
side-effect handler that runs inside the transaction that writes the status;
events, real-time broadcasts and lifecycle hooks run only after it commits.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Awaitable, Callable, Mapping, Protocol, Sequence

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gasconnect.common.config import ServiceSettings
from gasconnect.common.database import lifespan_session
from gasconnect.common.tracing import start_span

from .actors import Actor, ActorRole
from .errors import NotFoundError, ValidationError
from .events import OrderEventPublisher, PendingEvent, serialize_order_summary
from .inventory import Clock, InventoryLedger, utcnow
from .metrics import ORDER_TRANSITIONS_TOTAL
from .models import Delivery, DeliveryStatus, InventoryMode, Order, OrderStatus, OrderStatusHistory
from .realtime import RealtimeHub
from .repository import OrderRepository, can_view

logger = logging.getLogger(__name__)

_CUSTOMER, _SUPPLIER, _DRIVER, _ADMIN = (
    ActorRole.CUSTOMER,
    ActorRole.SUPPLIER,
    ActorRole.DRIVER,
    ActorRole.ADMIN,
)

TRANSITIONS: Mapping[tuple[OrderStatus, OrderStatus], frozenset[ActorRole]] = {
    (OrderStatus.PENDING, OrderStatus.CONFIRMED): frozenset({_SUPPLIER, _ADMIN}),
    (OrderStatus.PENDING, OrderStatus.CANCELLED): frozenset({_CUSTOMER, _SUPPLIER, _ADMIN}),
    (OrderStatus.CONFIRMED, OrderStatus.PREPARING): frozenset({_SUPPLIER, _ADMIN}),
    (OrderStatus.CONFIRMED, OrderStatus.CANCELLED): frozenset({_SUPPLIER, _ADMIN}),
    (OrderStatus.PREPARING, OrderStatus.OUT_FOR_DELIVERY): frozenset({_SUPPLIER, _DRIVER, _ADMIN}),
    (OrderStatus.PREPARING, OrderStatus.CANCELLED): frozenset({_SUPPLIER, _ADMIN}),
    (OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED): frozenset({_DRIVER, _ADMIN}),
    (OrderStatus.OUT_FOR_DELIVERY, OrderStatus.FAILED): frozenset({_DRIVER, _ADMIN}),
    (OrderStatus.FAILED, OrderStatus.PENDING): frozenset({_ADMIN}),
    (OrderStatus.FAILED, OrderStatus.CANCELLED): frozenset({_ADMIN}),
}

TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})


def allowed_roles(current: OrderStatus, target: OrderStatus) -> frozenset[ActorRole]:
    return TRANSITIONS.get((current, target), frozenset())


def check_transition(current: OrderStatus, target: OrderStatus, actor: Actor) -> None:
    if actor.role not in allowed_roles(current, target):
        raise ValidationError(
            f"Invalid status transition from {current.value} to {target.value} for role {actor.role.value}",
            details={"from": current.value, "to": target.value, "role": actor.role.value},
        )


class LifecycleHook(Protocol):
    """Post-commit integration point (payments, escrow release, notifications)."""

    async def on_transition(
        self, order: Order, previous: OrderStatus, current: OrderStatus, actor: Actor
    ) -> None: ...


@dataclass
class TransitionResult:
    order: Order
    history: OrderStatusHistory
    previous: OrderStatus
    current: OrderStatus
    actor: Actor
    events: list[PendingEvent] = field(default_factory=list)


@dataclass
class _TransitionContext:
    order: Order
    delivery: Delivery | None
    actor: Actor
    previous: OrderStatus
    reason: str | None
    driver_id: int | None
    repository: OrderRepository
    ledger: InventoryLedger


class OrderStateMachine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: ServiceSettings,
        *,
        publisher: OrderEventPublisher | None = None,
        hub: RealtimeHub | None = None,
        hooks: Sequence[LifecycleHook] = (),
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._publisher = publisher
        self._hub = hub
        self._hooks = list(hooks)
        self._clock = clock
        self._handlers: dict[OrderStatus, Callable[[_TransitionContext], Awaitable[None]]] = {
            OrderStatus.PENDING: self._on_retry,
            OrderStatus.CONFIRMED: self._on_confirmed,
            OrderStatus.PREPARING: self._on_preparing,
            OrderStatus.OUT_FOR_DELIVERY: self._on_out_for_delivery,
            OrderStatus.DELIVERED: self._on_delivered,
            OrderStatus.FAILED: self._on_failed,
            OrderStatus.CANCELLED: self._on_cancelled,
        }

    async def transition(
        self,
        order_id: int,
        target: OrderStatus | str,
        actor: Actor,
        *,
        reason: str | None = None,
        driver_id: int | None = None,
    ) -> Order:
        target_status = _parse_status(target)
        with start_span(
            "order.transition",
            **{"order.id": order_id, "order.target_status": target_status.value, "actor.role": actor.role.value},
        ):
            async with lifespan_session(self._session_factory) as session:
                result = await self.apply(session, order_id, target_status, actor, reason=reason, driver_id=driver_id)
        await self.after_commit(result)
        return result.order

    async def apply(
        self,
        session: AsyncSession,
        order_id: int,
        target: OrderStatus | str,
        actor: Actor,
        *,
        reason: str | None = None,
        driver_id: int | None = None,
    ) -> TransitionResult:
        """Validate and write one transition inside the caller's transaction."""

        target_status = _parse_status(target)
        repository = OrderRepository(session)
        ledger = InventoryLedger(
            session,
            reservation_ttl=timedelta(seconds=self._settings.reservation_ttl_seconds),
            clock=self._clock,
        )
        order, delivery = await repository.lock_order(order_id)
        if order is None or not can_view(order, actor):
            raise NotFoundError("Order not found", details={"orderId": order_id})

        previous = OrderStatus(order.status)
        check_transition(previous, target_status, actor)

        context = _TransitionContext(
            order=order,
            delivery=delivery,
            actor=actor,
            previous=previous,
            reason=reason,
            driver_id=driver_id,
            repository=repository,
            ledger=ledger,
        )
        await self._handlers[target_status](context)

        order.status = target_status.value
        history = await repository.add_history(
            order,
            previous_status=previous.value,
            new_status=target_status.value,
            actor=actor,
            reason=reason,
        )
        await session.flush()
        await repository.reload_order(order)
        return TransitionResult(
            order=order,
            history=history,
            previous=previous,
            current=target_status,
            actor=actor,
            events=ledger.drain_events(),
        )

    async def after_commit(self, result: TransitionResult) -> None:
        order = result.order
        ORDER_TRANSITIONS_TOTAL.labels(to_status=result.current.value).inc()
        logger.info(
            "Order %s moved %s -> %s by %s %s",
            order.order_number,
            result.previous.value,
            result.current.value,
            result.actor.role.value,
            result.actor.id,
        )
        if self._publisher is not None:
            await self._publisher.order_status_changed(order, result.history)
            await self._publisher.publish_pending(result.events)
        if self._hub is not None:
            payload = serialize_order_summary(order)
            payload.update({"previousStatus": result.previous.value, "reason": result.history.reason})
            await self._hub.broadcast(order.id, "order_status_changed", payload)
        for hook in self._hooks:
            try:
                await hook.on_transition(order, result.previous, result.current, result.actor)
            except Exception:
                logger.exception(
                    "Lifecycle hook %s failed for order %s", type(hook).__name__, order.order_number
                )

    # Side effects -------------------------------------------------------------------------
    async def _on_confirmed(self, ctx: _TransitionContext) -> None:
        now = self._clock()
        scheduled = ctx.order.scheduled_delivery_date or (
            now.date() + timedelta(days=self._settings.delivery_schedule_offset_days)
        )
        if ctx.delivery is None:
            ctx.delivery = await ctx.repository.add_delivery(
                ctx.order,
                status=DeliveryStatus.ASSIGNED.value,
                scheduled_date=scheduled,
            )
        else:
            # Re-confirmation after an admin retry starts the delivery over.
            ctx.delivery.status = DeliveryStatus.ASSIGNED.value
            ctx.delivery.scheduled_date = scheduled
            ctx.delivery.driver_id = None
            ctx.delivery.assigned_by = None
            ctx.delivery.assigned_at = None
            ctx.delivery.estimated_arrival = None
            ctx.delivery.actual_departure = None
            ctx.delivery.actual_arrival = None
        await ctx.ledger.extend_for_order(
            ctx.order.id, now + timedelta(seconds=self._settings.confirmed_reservation_ttl_seconds)
        )

    async def _on_preparing(self, ctx: _TransitionContext) -> None:
        delivery = _require_delivery(ctx)
        delivery.estimated_arrival = self._clock() + timedelta(minutes=self._settings.preparation_lead_time_minutes)

    async def _on_out_for_delivery(self, ctx: _TransitionContext) -> None:
        delivery = _require_delivery(ctx)
        driver_id = ctx.driver_id
        if driver_id is None and ctx.actor.role is ActorRole.DRIVER:
            driver_id = ctx.actor.id
        if driver_id is None:
            driver_id = delivery.driver_id
        if driver_id is None:
            raise ValidationError(
                "A driver is required to dispatch the order",
                errors=[{"field": "driverId", "message": "required when no driver is assigned"}],
            )
        delivery.status = DeliveryStatus.IN_TRANSIT.value
        delivery.driver_id = driver_id
        delivery.actual_departure = self._clock()

    async def _on_delivered(self, ctx: _TransitionContext) -> None:
        now = self._clock()
        delivery = _require_delivery(ctx)
        delivery.status = DeliveryStatus.DELIVERED.value
        delivery.actual_arrival = now
        ctx.order.delivered_at = now
        # Direct-mode items carry no reservation; their stock left at creation.
        await ctx.ledger.commit_for_items(ctx.order.items)

    async def _on_failed(self, ctx: _TransitionContext) -> None:
        if ctx.delivery is not None:
            ctx.delivery.status = DeliveryStatus.FAILED.value
        await self._return_stock(ctx, default_reason="Delivery failed")

    async def _on_cancelled(self, ctx: _TransitionContext) -> None:
        await self._return_stock(ctx, default_reason="Order cancelled")

    async def _return_stock(self, ctx: _TransitionContext, *, default_reason: str) -> None:
        order = ctx.order
        reason = ctx.reason or default_reason
        if order.inventory_mode == InventoryMode.RESERVATION.value:
            await ctx.ledger.release_for_order(order.id, reason)
        elif order.stock_released_at is None:
            for item in sorted(order.items, key=lambda entry: (entry.inventory_id, entry.id)):
                await ctx.ledger.direct_increment(item.inventory_id, item.quantity)
            order.stock_released_at = self._clock()
        order.cancellation_reason = reason
        order.cancelled_at = self._clock()

    async def _on_retry(self, ctx: _TransitionContext) -> None:
        """failed -> pending: take the stock again from the same inventory rows."""

        order = ctx.order
        for item in sorted(order.items, key=lambda entry: (entry.inventory_id, entry.id)):
            if order.inventory_mode == InventoryMode.RESERVATION.value:
                reservation = await ctx.ledger.reserve_record(
                    item.inventory_id,
                    item.quantity,
                    order_id=order.id,
                    order_ref=order.order_number,
                )
                item.reservation_id = reservation.id
            else:
                await ctx.ledger.direct_decrement(item.inventory_id, item.quantity)
        order.stock_released_at = None
        order.cancellation_reason = None
        order.cancelled_at = None


def _parse_status(value: OrderStatus | str) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationError(
            f"Unknown order status '{value}'",
            errors=[{"field": "status", "message": "unknown status"}],
        ) from None


def _require_delivery(ctx: _TransitionContext) -> Delivery:
    if ctx.delivery is None:
        raise ValidationError(
            "Order has no delivery record",
            details={"orderId": ctx.order.id, "status": ctx.previous.value},
        )
    return ctx.delivery
