"""Periodic release of expired inventory holds."""

from __future__ import annotations

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gasconnect.common.database import lifespan_session
from gasconnect.common.tracing import start_span

from .events import OrderEventPublisher
from .inventory import Clock, InventoryLedger, utcnow
from .metrics import REAPER_RECLAIMED_UNITS_TOTAL

logger = logging.getLogger(__name__)

JOB_ID = "reservation-reaper"


class ReservationReaper:
    """Returns the stock of expired ``active`` reservations to free inventory."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        publisher: OrderEventPublisher | None = None,
        interval_seconds: int = 60,
        batch_size: int = 500,
        clock: Clock = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._publisher = publisher
        self._interval_seconds = interval_seconds
        self._batch_size = batch_size
        self._clock = clock
        self._scheduler: AsyncIOScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    async def sweep(self) -> int:
        """Expire one batch of stale holds and return the number of units reclaimed."""

        with start_span("inventory.reap", **{"reaper.batch_size": self._batch_size}):
            async with lifespan_session(self._session_factory) as session:
                ledger = InventoryLedger(session, clock=self._clock)
                expired = await ledger.expire_stale(limit=self._batch_size)
                events = ledger.drain_events()

        reclaimed = sum(reservation.quantity for reservation in expired)
        if expired:
            REAPER_RECLAIMED_UNITS_TOTAL.inc(reclaimed)
            logger.info(
                "Released %s expired reservations (%s units)",
                len(expired),
                reclaimed,
                extra={"reservation_ids": [reservation.id for reservation in expired]},
            )
        if self._publisher is not None:
            await self._publisher.publish_pending(events)
        return reclaimed

    async def _run_sweep(self) -> None:
        try:
            await self.sweep()
        except Exception:
            logger.exception("Reservation sweep failed")

    def start(self) -> None:
        if self.running:
            return
        scheduler = AsyncIOScheduler(timezone="UTC")
        scheduler.add_job(
            self._run_sweep,
            "interval",
            seconds=self._interval_seconds,
            id=JOB_ID,
            name="Release expired inventory reservations",
            coalesce=True,
            max_instances=1,
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("Reservation reaper started (every %ss)", self._interval_seconds)

    def stop(self) -> None:
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Reservation reaper stopped")
