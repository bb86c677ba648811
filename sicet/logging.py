import uuid
import time
import logging
from typing import Optional

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response


QUIET_PATHS = ("/health", "/metrics")


def setup_logging(level: Optional[str] = None) -> None:
    """JSON logs through the stdlib root logger, with request context merged in."""
    level_value = getattr(logging, (level or "INFO").upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", level=level_value)
    if level_value > logging.DEBUG:
        # SQL statements only at DEBUG
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind ``request_id``, method and path for every log line of the request.

    The id is taken from ``X-Request-ID`` when the client sends one and echoed
    back on the response.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        structlog.contextvars.bind_contextvars(request_id=request_id, method=request.method, path=request.url.path)
        started = time.perf_counter()
        log = structlog.get_logger()
        try:
            response: Response = await call_next(request)
            if request.url.path not in QUIET_PATHS:
                log.info(
                    "request_finished",
                    status_code=response.status_code,
                    duration_ms=round((time.perf_counter() - started) * 1000, 1),
                )
        except Exception:
            log.error("request_failed", duration_ms=round((time.perf_counter() - started) * 1000, 1))
            raise
        finally:
            structlog.contextvars.unbind_contextvars("request_id", "method", "path")
        response.headers["X-Request-ID"] = request_id
        return response
