import logging
import json
import time
import sys
import uuid
import traceback
from contextvars import ContextVar
from datetime import datetime
from typing import Callable, Optional
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

# Headers never written to the logs in clear
MASKED_HEADERS = {"authorization", "cookie", "x-api-key", "stripe-signature"}

# Attributes copied onto the JSON record when a log call (or the context filter) sets them
EXTRA_FIELDS = (
    "request_id",
    "user_id",
    "order_id",
    "event_id",
    "event_type",
    "idempotency_key",
    "total",
    "method",
    "path",
    "status_code",
    "duration_ms",
    "headers",
)

# Request id of the request currently being served, so checkout and webhook
# logs can be correlated with the access log line
current_request_id: ContextVar[Optional[str]] = ContextVar("current_request_id", default=None)


class RequestContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            request_id = current_request_id.get()
            if request_id:
                record.request_id = request_id
        return True


class JSONFormatter(logging.Formatter):
    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.utcnow().isoformat(),
            "service": self.service_name,
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "module": record.module,
            "func": record.funcName,
            "line": record.lineno,
        }
        entry.update({f: getattr(record, f) for f in EXTRA_FIELDS if hasattr(record, f)})

        if record.exc_info:
            entry["exception"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(entry, default=str)


def setup_logging(service_name: str, level: int = logging.INFO) -> logging.Logger:
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter(service_name))
    handler.addFilter(RequestContextFilter())
    root.addHandler(handler)

    # The gateway client logs every HTTP exchange at INFO
    logging.getLogger("stripe").setLevel(logging.WARNING)

    return logging.getLogger(service_name)


def masked_headers(request: Request) -> dict:
    return {
        k: ("***" if k.lower() in MASKED_HEADERS else v)
        for k, v in request.headers.items()
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One access log line per request, tagged with a correlation id."""

    def __init__(self, app: ASGIApp, service_name: str):
        super().__init__(app)
        self.logger = logging.getLogger(f"{service_name}.access")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = current_request_id.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            self.log_request(request, 500, started, exc_info=sys.exc_info())
            raise
        finally:
            current_request_id.reset(token)

        self.log_request(request, response.status_code, started)
        response.headers["X-Request-ID"] = request_id
        return response

    def log_request(self, request: Request, status_code: int, started: float, exc_info=None):
        extra = {
            "request_id": request.state.request_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            "headers": masked_headers(request),
            # Set by the auth dependencies once a bearer token checks out
            "user_id": getattr(request.state, "user_id", None),
        }

        message = f"{request.method} {request.url.path} -> {status_code}"
        if status_code >= 500:
            self.logger.error(message, extra=extra, exc_info=exc_info)
        elif status_code >= 400:
            self.logger.warning(message, extra=extra)
        else:
            self.logger.info(message, extra=extra)
