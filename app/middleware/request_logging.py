"""
Request Logging Middleware

- Assigns a unique request_id to every request
- Sets tenant_id / user_id context from the X-Organization-Id header and JWT
- Logs request start & end with timing
"""

import logging
import time

from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from app.config import settings
from app.logging_config import (
    generate_request_id,
    request_id_ctx,
    tenant_id_ctx,
    user_id_ctx,
)

logger = logging.getLogger("salesintel.request")

ORG_HEADER = "x-organization-id"


def _extract_user_context(request: Request) -> tuple[str, str]:
    """Best-effort tenant_id / user_id for log context. Not an auth check."""
    tenant_id = request.headers.get(ORG_HEADER, "-") or "-"
    auth = request.headers.get("authorization", "")
    if not auth.startswith("Bearer "):
        return tenant_id, "-"
    try:
        payload = jwt.decode(
            auth[7:], settings.SECRET_KEY, algorithms=[settings.ALGORITHM],
            options={"verify_exp": False},
        )
    except JWTError:
        return tenant_id, "-"
    return tenant_id, str(payload.get("sub", "-"))


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        # Generate & set request ID
        rid = generate_request_id()
        request_id_ctx.set(rid)

        tid, uid = _extract_user_context(request)
        tenant_id_ctx.set(tid)
        user_id_ctx.set(uid)

        method = request.method
        path = request.url.path
        client_ip = request.client.host if request.client else "-"

        logger.info("→ %s %s from %s", method, path, client_ip)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            elapsed = (time.perf_counter() - start) * 1000
            logger.exception("✗ %s %s (%.1fms, unhandled exception)", method, path, elapsed)
            raise

        elapsed = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = rid

        logger.info(
            "← %s %s %d (%.1fms)",
            method, path, response.status_code, elapsed,
        )
        return response
