from __future__ import annotations

import logging
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from orderflow.core.request_context import clear_request_context, set_request_context

logger = logging.getLogger(__name__)


class ObservabilityMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        set_request_context(request_id=request_id)

        status_code = 500
        response = None
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            identity = getattr(request.state, "user", None)
            user_id = getattr(identity, "user_id", None)

            logger.info(
                "request completed",
                extra={
                    "request_id": request_id,
                    "tenant_id": _extract_tenant_id(request),
                    "user_id": user_id,
                    "endpoint": request.url.path,
                    "method": request.method,
                    "status_code": status_code,
                    "duration_ms": duration_ms,
                },
            )
            if response is not None:
                response.headers["X-Request-ID"] = request_id
            clear_request_context()


def _extract_tenant_id(request: Request) -> str | None:
    tenant = request.path_params.get("tenant_id")
    if tenant:
        return str(tenant)
    identity = getattr(request.state, "user", None)
    tenant_id = getattr(identity, "tenant_id", None)
    return str(tenant_id) if tenant_id is not None else None
