"""Mapping of domain errors onto HTTP responses."""

from fastapi import HTTPException, status

from src.core.exceptions import (
    ConflictError,
    InvalidConfigError,
    InvalidRangeError,
    OncallError,
    OverrideNotFoundError,
    PolicyNotFoundError,
    RotationNotFoundError,
    RunNotFoundError,
)

_STATUS_BY_ERROR: list[tuple[type[OncallError], int]] = [
    (InvalidConfigError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvalidRangeError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (RotationNotFoundError, status.HTTP_404_NOT_FOUND),
    (PolicyNotFoundError, status.HTTP_404_NOT_FOUND),
    (OverrideNotFoundError, status.HTTP_404_NOT_FOUND),
    (RunNotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
]


def http_error(exc: OncallError) -> HTTPException:
    """HTTPException for a domain error; unknown ones map to 400."""
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
