"""
Request logging middleware.

Binds request_id / actor / tenant to the log context for the whole request,
echoes the id back as ``X-Request-ID`` and logs one line per response.
Tenant comes from ``X-Tenant-ID`` or, on the evaluation API, from the path.
"""

import logging
import re
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from flagops.logging_config import (
    actor_ctx,
    generate_request_id,
    request_id_ctx,
    tenant_id_ctx,
)

logger = logging.getLogger("flagops.request")

_EVALUATION_PATH = re.compile(r"/feature-flags/([^/]+)")
_QUIET_PATHS = ("/health", "/metrics")


def _tenant_for(request: Request) -> str:
    tenant = request.headers.get("x-tenant-id")
    if tenant:
        return tenant
    match = _EVALUATION_PATH.search(request.url.path)
    return match.group(1) if match else "-"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        rid = request.headers.get("x-request-id") or generate_request_id()
        request_id_ctx.set(rid)
        actor_ctx.set(request.headers.get("x-actor") or "-")
        tenant_id_ctx.set(_tenant_for(request))

        method, path = request.method, request.url.path
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("%s %s crashed after %.1fms", method, path, (time.perf_counter() - start) * 1000)
            raise

        elapsed = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = rid

        if response.status_code >= 500:
            level = logging.ERROR
        elif response.status_code >= 400:
            level = logging.WARNING
        elif path in _QUIET_PATHS:
            level = logging.DEBUG
        else:
            level = logging.INFO
        logger.log(level, "%s %s -> %d (%.1fms)", method, path, response.status_code, elapsed)
        return response
