"""WebSocket channel streaming order and delivery updates."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from gasconnect.common import lifespan_session

from ..dependencies import authenticate
from ..errors import EngineError
from ..realtime import RealtimeHub
from ..repository import OrderRepository, can_view

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


@router.websocket("/ws/orders/{order_id}")
async def order_updates(websocket: WebSocket, order_id: int, token: str | None = None) -> None:
    app_state = websocket.app.state
    try:
        actor = await authenticate(app_state.identity_client, token)
        async with lifespan_session(app_state.session_factory) as session:
            order = await OrderRepository(session).get_order(order_id)
    except EngineError as exc:
        logger.info("Rejected real-time subscription to order %s: %s", order_id, exc.message)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    if order is None or not can_view(order, actor):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    hub: RealtimeHub = app_state.realtime_hub
    await websocket.accept()
    async with hub.subscribe(order_id) as queue:
        await websocket.send_json({"type": "subscribed", "orderId": order_id, "status": order.status})

        async def forward() -> None:
            while True:
                await websocket.send_json(await queue.get())

        forwarder = asyncio.create_task(forward())
        try:
            # Inbound frames are ignored; receiving is how a disconnect is noticed.
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.debug("Subscriber left order %s channel", order_id)
        finally:
            forwarder.cancel()
            # A send racing the disconnect fails with one of these.
            with suppress(asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
                await forwarder
