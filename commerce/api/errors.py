"""
api/errors.py
-------------
Translation of business exceptions into HTTP errors for route handlers.

TenantNotProvisioned and BrokerUnavailable are not listed here: they can
surface from any route and are handled by the global handlers in main.py.
"""

from typing import Dict, Type

from fastapi import HTTPException, status

from commerce.core.exceptions import (
    CommerceError,
    DuplicateUserError,
    NotFoundError,
    PermissionDeniedError,
    TenantConflict,
    ValidationError,
)

BUSINESS_ERRORS = (
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
    DuplicateUserError,
    TenantConflict,
)

_STATUS_CODES: Dict[Type[CommerceError], int] = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    PermissionDeniedError: status.HTTP_403_FORBIDDEN,
    ValidationError: status.HTTP_400_BAD_REQUEST,
    DuplicateUserError: status.HTTP_409_CONFLICT,
    TenantConflict: status.HTTP_409_CONFLICT,
}


def to_http_exception(exc: CommerceError) -> HTTPException:
    for error_type, status_code in _STATUS_CODES.items():
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
