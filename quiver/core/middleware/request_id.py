"""
Request correlation.

Every request gets one id: the caller's x-request-id when it is a sane token,
otherwise a fresh one. The id is bound to the logging context for the
duration of the request and echoed on the response.
"""

import logging
import re
import time
from typing import Optional
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from quiver.core.logging import latency_bucket_ms, request_id_ctx_var


REQUEST_ID_HEADER = "x-request-id"

# Load balancers poll these every few seconds
QUIET_PATHS = frozenset({"/healthz", "/readyz"})

_TOKEN = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

logger = logging.getLogger("quiver.http")


def accept_request_id(value: Optional[str]) -> str:
    """Caller-supplied id if it is a plain token, else a new uuid."""
    if value and _TOKEN.match(value):
        return value
    return str(uuid4())


class RequestIdMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, header_name: str = REQUEST_ID_HEADER):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        rid = accept_request_id(request.headers.get(self.header_name))
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)
        started = time.perf_counter()
        try:
            response = await call_next(request)
            response.headers[self.header_name] = rid
            level = logging.DEBUG if request.url.path in QUIET_PATHS else logging.INFO
            logger.log(
                level,
                "request.complete",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": response.status_code,
                    "latency_bucket": latency_bucket_ms((time.perf_counter() - started) * 1000),
                },
            )
            return response
        finally:
            request_id_ctx_var.reset(token)
