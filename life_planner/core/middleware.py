"""HTTP request/response logging middleware."""

from __future__ import annotations

import logging
import time
from typing import Callable
from urllib.parse import parse_qsl, urlencode

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

# Paths to skip logging (health checks, etc.)
SKIP_LOGGING_PATHS = {"/healthz", "/"}

# Query parameters that carry OAuth secrets
REDACTED_PARAMS = {"code", "state", "token"}


def redact_query(query: str) -> str:
    """Mask OAuth codes and state tokens in a raw query string."""
    if not query:
        return ""
    pairs = [
        (key, "***" if key in REDACTED_PARAMS else value)
        for key, value in parse_qsl(query, keep_blank_values=True)
    ]
    return urlencode(pairs, safe="*")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log HTTP requests and responses."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in SKIP_LOGGING_PATHS:
            return await call_next(request)

        start_time = time.time()

        method = request.method
        path = request.url.path
        query_string = redact_query(str(request.url.query))
        full_path = f"{path}?{query_string}" if query_string else path

        logger.info(f"{method} {full_path}")

        try:
            response = await call_next(request)
        except Exception as e:
            # user_id is set on request.state by get_current_user when auth succeeded
            user_id = getattr(request.state, "user_id", None)
            duration = time.time() - start_time
            logger.error(
                f"{method} {full_path} user_id={user_id or 'unknown'} "
                f"ERROR {duration:.3f}s: {type(e).__name__}: {str(e)}",
                exc_info=True,
            )
            raise

        duration = time.time() - start_time
        status_code = response.status_code
        status_text = "OK" if 200 <= status_code < 300 else "ERROR" if status_code >= 400 else "REDIRECT"
        user_id = getattr(request.state, "user_id", None)

        logger.info(
            f"{method} {full_path} user_id={user_id or 'unknown'} "
            f"{status_code} {status_text} {duration:.3f}s"
        )

        return response
