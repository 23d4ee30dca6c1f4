import logging
from contextlib import asynccontextmanager
from typing import Sequence

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from httpx import AsyncClient

from gasconnect.common import (
    DEFAULT_APP_NAME,
    MessageProducer,
    ServiceSettings,
    build_app,
    close_redis_connections,
    configure_logging,
    dispose_engines,
    get_session_factory,
    resolve_database_url,
    resolve_redis,
)

from .api.health import router as health_router
from .api.inventory import router as inventory_router
from .api.orders import router as orders_router
from .api.realtime import router as realtime_router
from .api.tracking import deliveries_router
from .api.tracking import router as tracking_router
from .clients import IdentityClient, SupplierServiceClient
from .errors import EngineError
from .events import EVENTS_EXCHANGE, OrderEventPublisher
from .realtime import RealtimeHub
from .reaper import ReservationReaper
from .services import InventoryService, OrderService
from .state_machine import LifecycleHook, OrderStateMachine
from .tracking import DeliveryTracker

SERVICE_NAME = "Order Service"
DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./order_service.db"

logger = logging.getLogger(__name__)


def _error_response(status_code: int, code: str, message: str, details: dict | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message, "details": details or {}}},
    )


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
        return _error_response(exc.status_code, exc.code, exc.message, exc.details)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            {"field": ".".join(str(part) for part in error["loc"][1:]) or str(error["loc"][0]), "message": error["msg"]}
            for error in exc.errors()
        ]
        return _error_response(400, "VALIDATION_ERROR", "Request validation failed", {"errors": errors})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _error_response(500, "INTERNAL_ERROR", "Internal server error")


def create_app(settings: ServiceSettings | None = None, *, hooks: Sequence[LifecycleHook] = ()) -> FastAPI:
    """Create the Order Service FastAPI application."""

    resolved_settings = settings or ServiceSettings()
    if resolved_settings.app_name == DEFAULT_APP_NAME:
        resolved_settings = resolved_settings.model_copy(update={"app_name": SERVICE_NAME})
    configure_logging(resolved_settings)
    database_url = resolve_database_url(resolved_settings, DEFAULT_DATABASE_URL)
    session_factory = get_session_factory(database_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        http_client: AsyncClient | None = None
        producer: MessageProducer | None = None
        hub: RealtimeHub | None = None
        reaper: ReservationReaper | None = None
        redis_client = resolve_redis(resolved_settings)
        app.state.session_factory = session_factory
        try:
            http_client = AsyncClient(timeout=resolved_settings.http_timeout_seconds)
            identity_client = IdentityClient(http_client, resolved_settings.auth_service_url)
            supplier_client = None
            if resolved_settings.supplier_service_url:
                supplier_client = SupplierServiceClient(
                    http_client,
                    resolved_settings.supplier_service_url,
                    service_token=resolved_settings.internal_service_token,
                )

            producer = MessageProducer(EVENTS_EXCHANGE, url=resolved_settings.broker_url)
            await producer.connect()
            publisher = OrderEventPublisher(
                producer,
                attempts=resolved_settings.event_publish_attempts,
                backoff_seconds=resolved_settings.event_retry_backoff_seconds,
            )
            hub = RealtimeHub(redis_client)
            await hub.start()

            state_machine = OrderStateMachine(
                session_factory,
                resolved_settings,
                publisher=publisher,
                hub=hub,
                hooks=hooks,
            )
            app.state.identity_client = identity_client
            app.state.supplier_client = supplier_client
            app.state.producer = producer
            app.state.event_publisher = publisher
            app.state.realtime_hub = hub
            app.state.state_machine = state_machine
            app.state.order_service = OrderService(
                session_factory,
                resolved_settings,
                publisher=publisher,
                supplier_client=supplier_client,
            )
            app.state.inventory_service = InventoryService(session_factory, resolved_settings, publisher=publisher)
            app.state.delivery_tracker = DeliveryTracker(
                session_factory,
                resolved_settings,
                state_machine,
                publisher=publisher,
                hub=hub,
            )
            reaper = ReservationReaper(
                session_factory,
                publisher=publisher,
                interval_seconds=resolved_settings.reaper_interval_seconds,
                batch_size=resolved_settings.reaper_batch_size,
            )
            app.state.reservation_reaper = reaper
            if resolved_settings.enable_reaper:
                reaper.start()
            yield
        finally:
            for name in (
                "identity_client",
                "supplier_client",
                "producer",
                "event_publisher",
                "realtime_hub",
                "state_machine",
                "order_service",
                "inventory_service",
                "delivery_tracker",
                "reservation_reaper",
            ):
                setattr(app.state, name, None)
            if reaper is not None:
                reaper.stop()
            if hub is not None:
                await hub.stop()
            if producer is not None:
                await producer.close()
            if http_client is not None:
                await http_client.aclose()
            await dispose_engines()
            if redis_client is not None:
                await close_redis_connections()

    app = build_app(resolved_settings, lifespan=lifespan)
    register_exception_handlers(app)
    app.include_router(health_router)
    app.include_router(orders_router)
    app.include_router(tracking_router)
    app.include_router(deliveries_router)
    app.include_router(inventory_router)
    app.include_router(realtime_router)
    return app


app = create_app()
