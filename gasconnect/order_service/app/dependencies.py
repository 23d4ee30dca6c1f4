"""Dependency helpers for the order engine routes."""

from __future__ import annotations

from collections.abc import AsyncIterator

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gasconnect.common import lifespan_session

from .actors import Actor
from .clients import IdentityClient
from .errors import AuthenticationError
from .repository import OrderRepository
from .services import InventoryService, OrderService
from .state_machine import OrderStateMachine
from .tracking import DeliveryTracker


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    """Yield an AsyncSession for the current request lifecycle."""

    session_factory: async_sessionmaker[AsyncSession] = request.app.state.session_factory
    async with lifespan_session(session_factory) as session:
        yield session


def get_repository(session: AsyncSession = Depends(get_session)) -> OrderRepository:
    return OrderRepository(session)


def bearer_token(authorization: str | None = Header(default=None)) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def authenticate(identity: IdentityClient, token: str | None) -> Actor:
    if token is None:
        raise AuthenticationError("Missing bearer token")
    result = await identity.validate_token(token)
    if not result.is_valid or result.user is None:
        raise AuthenticationError(result.error or "Invalid or expired token")
    return Actor.from_identity(result.user.id, result.user.role)


async def get_current_actor(request: Request, token: str | None = Depends(bearer_token)) -> Actor:
    return await authenticate(request.app.state.identity_client, token)


def get_order_service(request: Request) -> OrderService:
    return request.app.state.order_service


def get_inventory_service(request: Request) -> InventoryService:
    return request.app.state.inventory_service


def get_state_machine(request: Request) -> OrderStateMachine:
    return request.app.state.state_machine


def get_tracker(request: Request) -> DeliveryTracker:
    return request.app.state.delivery_tracker
