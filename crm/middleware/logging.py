from __future__ import annotations

import time
from typing import Mapping

from fastapi import Request
from fastapi.responses import Response
from starlette.middleware.base import BaseHTTPMiddleware

from crm.core.logging import get_structlog_logger

logger = get_structlog_logger(__name__)

QUIET_PATHS = ("/health", "/api/health", "/metrics")

SENSITIVE_HEADERS = (
    "authorization",
    "cookie",
    "set-cookie",
    "x-api-key",
    "x-website-key",
    "x-hub-signature",
    "secret",
    "token",
    "password",
)


def filter_headers(headers: Mapping[str, str]) -> dict:
    """Redact credentials and webhook signatures."""
    filtered = {}
    for key, value in headers.items():
        key_lower = key.lower()
        if any(sensitive in key_lower for sensitive in SENSITIVE_HEADERS):
            filtered[key] = "[REDACTED]"
        else:
            filtered[key] = value
    return filtered


class LoggingMiddleware(BaseHTTPMiddleware):
    """Request/response logging."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        quiet = request.url.path in QUIET_PATHS

        if not quiet:
            logger.info(
                "request.received",
                method=request.method,
                path=request.url.path,
                query_params=dict(request.query_params) if request.query_params else None,
                client_ip=request.client.host if request.client else "unknown",
                headers=filter_headers(request.headers),
            )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "request.exception",
                method=request.method,
                path=request.url.path,
                response_time_ms=(time.time() - start_time) * 1000,
                exception_type=type(e).__name__,
                exception_message=str(e),
            )
            raise

        response_time = time.time() - start_time
        response.headers["X-Response-Time"] = f"{response_time:.3f}"
        if not quiet:
            self._log_response(request, response, response_time)
        return response

    def _log_response(
        self,
        request: Request,
        response: Response,
        response_time: float,
    ) -> None:
        status_code = response.status_code
        log_data = {
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "response_time_ms": round(response_time * 1000, 2),
            "response_size": response.headers.get("content-length", "0"),
        }
        if status_code >= 500:
            logger.warning("response.sent", error_type="server_error", **log_data)
        elif status_code >= 400:
            logger.warning("response.sent", error_type="client_error", **log_data)
        else:
            logger.info("response.sent", **log_data)
