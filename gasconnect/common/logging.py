import logging
from typing import Literal

from opentelemetry import trace

from .config import ServiceSettings


_NO_TRACE = "-"
_LOG_FORMAT = (
    "%(asctime)s | %(levelname)s | %(service)s | %(name)s | "
    "trace_id=%(trace_id)s span_id=%(span_id)s | %(message)s"
)
# APScheduler logs every reaper run at INFO.
_CHATTY_LOGGERS = ("apscheduler.executors.default", "apscheduler.scheduler")


class TraceContextFilter(logging.Filter):
    """Stamp service name and OpenTelemetry trace/span ids on every record."""

    def __init__(self, service_name: str = _NO_TRACE) -> None:
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "service"):
            record.service = self.service_name
        context = trace.get_current_span().get_span_context()
        if context.is_valid:
            record.trace_id = format(context.trace_id, "032x")
            record.span_id = format(context.span_id, "016x")
        else:
            record.trace_id = _NO_TRACE
            record.span_id = _NO_TRACE
        return True


def _context_filter(root: logging.Logger, service_name: str) -> TraceContextFilter:
    for existing in root.filters:
        if isinstance(existing, TraceContextFilter):
            existing.service_name = service_name
            return existing
    created = TraceContextFilter(service_name)
    root.addFilter(created)
    return created


def configure_logging(settings: ServiceSettings) -> None:
    """Configure root logging level, format and the trace context filter."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = settings.log_level
    logging.basicConfig(level=level, format=_LOG_FORMAT)
    root = logging.getLogger()
    root.setLevel(level)
    context_filter = _context_filter(root, settings.app_name)
    # Root-logger filters do not run for propagated records.
    for handler in root.handlers:
        if context_filter not in handler.filters:
            handler.addFilter(context_filter)
    if level != "DEBUG":
        for name in _CHATTY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
