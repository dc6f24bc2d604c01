"""Structured JSON logging with a request-scoped logger handed to services."""

import logging
import sys
import uuid
from typing import Optional

from fastapi import Request
from pythonjsonlogger.json import JsonFormatter

from core.config import settings


class ServiceFilter(logging.Filter):
    """Stamp the service name on every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.APP_NAME
        return True


class RequestLogger(logging.LoggerAdapter):
    """Logger adapter that merges bound context with per-call `extra`."""

    def process(self, msg, kwargs):
        extra = dict(self.extra or {})
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs


def configure_logging() -> None:
    """Configure root logger once per process."""

    handler = logging.StreamHandler(sys.stdout)
    service_filter = ServiceFilter()
    handler.addFilter(service_filter)
    handler.setFormatter(JsonFormatter("%(asctime)s %(levelname)s %(name)s %(service_name)s %(message)s"))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.LOG_LEVEL)


def request_logger(request_id: Optional[str] = None, name: str = "payments") -> RequestLogger:
    return RequestLogger(logging.getLogger(name), {"request_id": request_id or uuid.uuid4().hex})


def get_request_logger(request: Request) -> RequestLogger:
    """FastAPI dependency: a logger bound to the caller's X-Request-ID (or a fresh one)."""
    return request_logger(request.headers.get("x-request-id"))
