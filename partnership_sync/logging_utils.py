import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from partnership_sync.metrics import record_http_request


# Context variable to store request_id for the current host API request
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Context variable to store the partnership a poll loop or write belongs to.
# Tasks copy the context at creation, so setting it before spawning is enough.
partnership_id_ctx: ContextVar[Optional[str]] = ContextVar("partnership_id", default=None)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter to ensure ISO-8601 timestamps, request_id and partnership_id."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        # Ensure timestamp is in ISO-8601 format with Z suffix
        if not log_record.get('ts'):
            log_record['ts'] = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        if 'request_id' not in log_record:
            req_id = request_id_ctx.get()
            if req_id:
                log_record['request_id'] = req_id

        if 'partnership_id' not in log_record:
            partnership_id = partnership_id_ctx.get()
            if partnership_id:
                log_record['partnership_id'] = partnership_id


def setup_logging(log_level: str = "INFO"):
    """
    Setup structured JSON logging for the panel process.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logger = logging.getLogger()
    logger.setLevel(log_level.upper())

    # Remove existing handlers
    logger.handlers = []

    json_handler = logging.StreamHandler(sys.stdout)
    formatter = CustomJsonFormatter(
        '%(ts)s %(level)s %(name)s %(message)s'
    )
    json_handler.setFormatter(formatter)
    logger.addHandler(json_handler)

    # Route Uvicorn loggers through the same JSON handler
    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers = []
        uvicorn_logger.addHandler(json_handler)
        uvicorn_logger.propagate = False

    # Disable uvicorn.access logger since we have our own middleware
    logging.getLogger("uvicorn.access").disabled = True

    # urllib3 logs every connection at DEBUG; one poll per five seconds is noise
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    return logger


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all host API requests in structured JSON format.

    Logged keys:
    - ts, level: from the formatter
    - request_id: unique per request
    - method, path, status
    - latency_ms: request processing time in milliseconds

    Panel routes also attach:
    - partnership_id: the panel the request targeted
    - action: open, close, send, propose, accept
    - result: ok, invalid, write_failed, not_open
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)

        start_time = time.time()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            latency_seconds = time.time() - start_time
            latency_ms = round(latency_seconds * 1000, 2)

            # Exclude /metrics to avoid self-instrumentation noise
            if request.url.path != "/metrics":
                # Label by route template so partnership ids stay out of label values
                route = request.scope.get("route")
                record_http_request(
                    method=request.method,
                    path=getattr(route, "path", request.url.path),
                    status=response.status_code,
                    latency_seconds=latency_seconds
                )

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": latency_ms,
            }

            if hasattr(request.state, "panel_log_data"):
                log_data.update(request.state.panel_log_data)

            logger = logging.getLogger("partnership_sync.requests")

            if response.status_code >= 500:
                logger.error("Request completed", extra=log_data)
            elif response.status_code >= 400:
                logger.warning("Request completed", extra=log_data)
            else:
                logger.info("Request completed", extra=log_data)

            return response
        finally:
            request_id_ctx.reset(token)


def log_panel_action(request: Request, partnership_id: str, action: str, result: str = None):
    """
    Attach panel-specific logging data to the request state.
    This data will be included in the request log by the middleware.

    Args:
        request: FastAPI request object
        partnership_id: Partnership whose panel was targeted
        action: open, close, snapshot, send, propose or accept
        result: ok, invalid, write_failed or not_open
    """
    panel_data = {"partnership_id": partnership_id, "action": action}
    if result is not None:
        panel_data["result"] = result
    request.state.panel_log_data = panel_data
