import logging

import pytest

from gasconnect.order_service.app.events import OrderEventPublisher, PendingEvent
from gasconnect.tests.helpers import MetricTracker


class _FlakyProducer:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.sent: list[tuple[str, dict]] = []
        self.attempts = 0

    async def publish(self, routing_key: str, message: dict) -> int:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise ConnectionError("broker unavailable")
        self.sent.append((routing_key, message))
        return 1


def _event(key: str = "inventory.released", reservation_id: int = 1) -> PendingEvent:
    return PendingEvent(key, {"reservationId": reservation_id}, f"{key}:{reservation_id}")


@pytest.mark.asyncio
async def test_transient_failures_are_retried() -> None:
    producer = _FlakyProducer(failures=2)
    publisher = OrderEventPublisher(producer, attempts=3, backoff_seconds=0)

    await publisher.publish_pending([_event()])

    assert producer.attempts == 3
    [(routing_key, message)] = producer.sent
    assert routing_key == "inventory.released"
    assert message["eventType"] == "inventory.released"
    assert message["idempotencyKey"] == "inventory.released:1"
    assert message["reservationId"] == 1
    assert message["timestamp"].endswith("+00:00")


@pytest.mark.asyncio
async def test_exhausted_retries_are_counted_not_raised(caplog) -> None:
    producer = _FlakyProducer(failures=10)
    publisher = OrderEventPublisher(producer, attempts=2, backoff_seconds=0)
    tracker = MetricTracker("gasconnect_event_publish_failures_total", {"routing_key": "inventory.expired"})

    with caplog.at_level(logging.WARNING):
        await publisher.publish_pending([_event("inventory.expired", 7), _event("inventory.expired", 8)])

    assert producer.attempts == 4
    assert producer.sent == []
    assert tracker.delta() == 2
    assert "Dropped inventory.expired event inventory.expired:7 after 2 attempts" in caplog.text


@pytest.mark.asyncio
async def test_publisher_without_producer_is_silent() -> None:
    publisher = OrderEventPublisher(None)

    assert await publisher._emit("order.created", {}, idempotency_key="order.created:1") is False
    await publisher.publish_pending([_event()])


@pytest.mark.asyncio
async def test_at_least_one_attempt_is_made() -> None:
    producer = _FlakyProducer(failures=0)
    publisher = OrderEventPublisher(producer, attempts=0)

    delivered = await publisher._emit("order.created", {"orderId": 1}, idempotency_key="order.created:1")

    assert delivered is True
    assert producer.attempts == 1
