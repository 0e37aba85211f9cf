"""Correlation ID middleware.

Tags every request with a correlation ID (taken from the
``X-Correlation-ID`` header when it looks sane, generated otherwise),
exposes it to the logging context and echoes it on the response.

Pure ASGI rather than BaseHTTPMiddleware, so request handling stays on
the same task as the database session.
"""

import re
import time
import uuid

from starlette.types import ASGIApp, Message, Receive, Scope, Send

from src.logging_config import correlation_id_ctx, get_logger

logger = get_logger(__name__)

CORRELATION_ID_HEADER = "X-Correlation-ID"

# Upstream IDs are reused only if they are short and log-safe
_VALID_CORRELATION_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

# Probe traffic is not worth a log line per hit
QUIET_PATH_PREFIXES = ("/health",)


def extract_correlation_id(scope: Scope) -> str:
    """Reuse a valid inbound correlation ID or mint a new one."""
    for name, value in scope.get("headers", []):
        if name == b"x-correlation-id":
            candidate = value.decode("latin-1").strip()
            if _VALID_CORRELATION_ID.match(candidate):
                return candidate
            break
    return str(uuid.uuid4())


class CorrelationIdMiddleware:
    """Pure ASGI middleware that adds correlation IDs to requests."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        correlation_id = extract_correlation_id(scope)
        token = correlation_id_ctx.set(correlation_id)

        method = scope.get("method", "")
        path = scope.get("path", "")
        quiet = path.startswith(QUIET_PATH_PREFIXES)
        start_time = time.perf_counter()
        status_code: int | None = None

        async def send_wrapper(message: Message) -> None:
            nonlocal status_code

            if message["type"] == "http.response.start":
                status_code = message.get("status")
                headers = list(message.get("headers", []))
                headers.append(
                    (CORRELATION_ID_HEADER.lower().encode(), correlation_id.encode())
                )
                message = {**message, "headers": headers}

            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
            if not quiet:
                logger.info(
                    "Request completed",
                    method=method,
                    path=path,
                    status_code=status_code,
                    duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
                )
        except Exception:
            logger.exception(
                "Request failed",
                method=method,
                path=path,
                duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
            )
            raise
        finally:
            correlation_id_ctx.reset(token)
