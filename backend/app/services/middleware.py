"""Request tracing and response-hardening middleware."""
import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("defects-api.middleware")

REQUEST_ID_HEADER = "X-Request-ID"
SKIP_LOG_PATHS = {"/health", "/metrics"}
_MAX_INBOUND_ID_LEN = 64


def _request_id_for(request: Request) -> str:
    # Honour an id from the viewer client or proxy so one tap can be traced end to end
    inbound = request.headers.get(REQUEST_ID_HEADER, "").strip()
    if inbound and len(inbound) <= _MAX_INBOUND_ID_LEN and inbound.isprintable():
        return inbound
    return uuid.uuid4().hex


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """
    Tags every request with an id (``request.state.request_id``), times it and
    reports both back as ``X-Request-ID`` / ``X-Process-Time``.

    One log line per request; 5xx responses are logged at ERROR and 4xx at
    WARNING so rejected status changes and evidence violations stand out.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = _request_id_for(request)
        request.state.request_id = request_id
        started = time.perf_counter()

        response: Response = await call_next(request)

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers["X-Process-Time"] = str(duration_ms)

        if request.url.path in SKIP_LOG_PATHS:
            return response

        status = response.status_code
        level = logging.ERROR if status >= 500 else logging.WARNING if status >= 400 else logging.INFO
        logger.log(
            level,
            f"{request.method} {request.url.path} -> {status}",
            extra={
                "http_method": request.method,
                "http_path": request.url.path,
                "http_status": status,
                "request_id": request_id,
                "duration_ms": duration_ms,
            },
        )
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Hardening headers; API payloads (issue data, signed photo links) are never cached."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        if request.url.path.startswith("/api/") and "Cache-Control" not in response.headers:
            response.headers["Cache-Control"] = "no-store"
        return response
