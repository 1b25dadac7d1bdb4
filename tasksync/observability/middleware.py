import logging
import time
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

logger = logging.getLogger(__name__)

_request_id: ContextVar[str] = ContextVar("tasksync_request_id", default="unknown")


def current_request_id() -> str:
    """Id of the request being served, readable from the endpoint thread without passing the Request around."""
    return _request_id.get()


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """Gives each request an id (the caller's x-request-id or a fresh uuid4), exposes it through current_request_id(), logs the outcome with latency and echoes the id in the response. Server errors and unhandled exceptions are logged at warning so failed runs stand out among routine calls.
    Why available: A run can take tens of seconds of model calls; the id ties the process_failed / process_done lines to the HTTP call that caused them."""

    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("x-request-id") or uuid.uuid4().hex
        token = _request_id.set(rid)
        start = time.perf_counter()
        fields = {"request_id": rid, "path": request.url.path, "method": request.method}
        try:
            response = await call_next(request)
        except Exception:
            logger.warning("request_crashed", exc_info=True, extra={**fields, "latency_ms": _elapsed_ms(start)})
            raise
        finally:
            _request_id.reset(token)

        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        logger.log(level, "request_finished", extra={**fields, "status": response.status_code, "latency_ms": _elapsed_ms(start)})
        response.headers["x-request-id"] = rid
        return response


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000.0, 2)
