"""ASGI middleware for the on-call escalation API."""

from src.middleware.correlation import (
    CORRELATION_ID_HEADER,
    CorrelationIdMiddleware,
    extract_correlation_id,
)

__all__ = ["CORRELATION_ID_HEADER", "CorrelationIdMiddleware", "extract_correlation_id"]
