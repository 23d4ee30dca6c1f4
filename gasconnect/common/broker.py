"""In-process topic exchange used for domain events.

Routing keys are dot-separated words. Bindings follow the usual topic-exchange
rules: ``*`` matches exactly one word and ``#`` matches zero or more words.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Sequence

Handler = Callable[[str, dict[str, Any]], Awaitable[None]]

logger = logging.getLogger(__name__)


def routing_key_matches(pattern: str, routing_key: str) -> bool:
    """Return True when ``routing_key`` satisfies the binding ``pattern``."""

    return _match(pattern.split("."), routing_key.split("."))


def _match(pattern: list[str], words: list[str]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        return any(_match(rest, words[index:]) for index in range(len(words) + 1))
    if not words:
        return False
    if head == "*" or head == words[0]:
        return _match(rest, words[1:])
    return False


class _TopicExchange:
    """Dispatches published messages to every handler whose binding matches."""

    def __init__(self) -> None:
        self._bindings: dict[str, dict[str, list[Handler]]] = defaultdict(lambda: defaultdict(list))

    def bind(self, exchange: str, pattern: str, handler: Handler) -> None:
        self._bindings[exchange][pattern].append(handler)

    def unbind(self, exchange: str, pattern: str, handler: Handler) -> None:
        handlers = self._bindings.get(exchange, {}).get(pattern)
        if handlers and handler in handlers:
            handlers.remove(handler)
            if not handlers:
                self._bindings[exchange].pop(pattern, None)

    async def publish(self, exchange: str, routing_key: str, message: dict[str, Any]) -> int:
        delivered = 0
        # Copy so handlers may rebind while we iterate.
        for pattern, handlers in list(self._bindings.get(exchange, {}).items()):
            if not routing_key_matches(pattern, routing_key):
                continue
            for handler in list(handlers):
                await handler(routing_key, message)
                delivered += 1
        return delivered


_EXCHANGE = _TopicExchange()


class MessageProducer:
    """Publishes JSON-compatible messages to a named topic exchange."""

    def __init__(self, exchange: str, *, url: str | None = None) -> None:
        self.exchange = exchange
        self.url = url
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True
        logger.debug("Producer connected to exchange %s", self.exchange)

    async def publish(self, routing_key: str, message: dict[str, Any]) -> int:
        if not self._connected:
            raise RuntimeError("Producer not connected")
        return await _EXCHANGE.publish(self.exchange, routing_key, message)

    async def close(self) -> None:
        self._connected = False


class MessageConsumer:
    """Binds a handler to one or more routing-key patterns on an exchange."""

    def __init__(self, exchange: str, patterns: Sequence[str], handler: Handler) -> None:
        self.exchange = exchange
        self._patterns = list(patterns)
        self._handler = handler
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        for pattern in self._patterns:
            _EXCHANGE.bind(self.exchange, pattern, self._handler)
        self._started = True

    async def stop(self) -> None:
        if not self._started:
            return
        for pattern in self._patterns:
            _EXCHANGE.unbind(self.exchange, pattern, self._handler)
        self._started = False
