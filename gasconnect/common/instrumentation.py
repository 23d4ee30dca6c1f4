from typing import Any, cast

from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from .config import ServiceSettings
from .tracing import configure_tracing

SERVICE_VERSION = "1.0.0"
_UNMETERED_PATHS = ["/health", "/metrics"]


def _http_metrics() -> Instrumentator:
    # Series are labelled by route template, never by raw path.
    return Instrumentator(
        should_group_status_codes=False,
        should_ignore_untemplated=True,
        excluded_handlers=_UNMETERED_PATHS,
    )


def instrument_app(app: FastAPI, settings: ServiceSettings) -> None:
    """Mount ``/metrics`` when metrics are on and keep ``settings`` on the app state."""

    cast(Any, app.state).settings = settings
    if not settings.enable_metrics:
        return
    _http_metrics().instrument(app).expose(app, include_in_schema=False)


def build_app(settings: ServiceSettings, **extra_kwargs: Any) -> FastAPI:
    app = FastAPI(title=settings.app_name, version=SERVICE_VERSION, **extra_kwargs)
    instrument_app(app, settings)
    configure_tracing(app, settings)
    return app
