"""Security and audit middleware for the dev-memory API.

Provides:
    - API key authentication (X-API-Key header)
    - Audit logging (one structured line per request)
"""

from __future__ import annotations

import logging
import secrets
import time
from typing import Callable, Set

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("devmemory.audit")


class APIKeyMiddleware(BaseHTTPMiddleware):
    """Require a matching X-API-Key header on all non-exempt paths."""

    EXEMPT_PATHS: Set[str] = {"/v1/health", "/docs", "/openapi.json", "/redoc"}

    def __init__(self, app, api_key: str):
        super().__init__(app)
        self.api_key = api_key

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.EXEMPT_PATHS:
            return await call_next(request)

        key = request.headers.get("X-API-Key", "")
        if not key or not secrets.compare_digest(key, self.api_key):
            audit_logger.warning(
                "AUTH_FAIL ip=%s path=%s",
                request.client.host if request.client else "unknown",
                request.url.path,
            )
            return JSONResponse(
                status_code=401,
                content={"error": "Invalid or missing API key", "status_code": 401},
            )

        return await call_next(request)


class AuditLogMiddleware(BaseHTTPMiddleware):
    """Log every request with method, path, status and latency."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start = time.time()
        response = await call_next(request)
        elapsed_ms = round((time.time() - start) * 1000, 1)

        audit_logger.info(
            "method=%s path=%s status=%d ip=%s elapsed_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            request.client.host if request.client else "unknown",
            elapsed_ms,
        )
        return response
