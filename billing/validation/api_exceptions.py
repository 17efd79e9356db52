"""
DRF exception handler.

Renders the engine's APIError hierarchy and DRF's own exceptions in the one
error envelope the API uses.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from rest_framework import exceptions
from rest_framework.response import Response
from rest_framework.views import exception_handler

from billingengine.middleware import get_current_request_id

from .errors import APIError, ErrorCode, ErrorDetail, ErrorResponse, FieldError

logger = logging.getLogger(__name__)

# DRF exception -> (code, fallback message); first isinstance match wins
DRF_ERRORS = [
    (exceptions.NotAuthenticated, ErrorCode.AUTHENTICATION_REQUIRED, "Authentication required."),
    (exceptions.AuthenticationFailed, ErrorCode.AUTHENTICATION_FAILED, "Authentication failed."),
    (exceptions.PermissionDenied, ErrorCode.PERMISSION_DENIED, "You do not have permission to perform this action."),
    (exceptions.NotFound, ErrorCode.RESOURCE_NOT_FOUND, "Resource not found."),
    (exceptions.MethodNotAllowed, ErrorCode.METHOD_NOT_ALLOWED, "Method not allowed."),
    (exceptions.ValidationError, ErrorCode.VALIDATION_ERROR, "Validation failed. Please check your input."),
]

DRF_FIELD_CODES = {
    "required": ErrorCode.FIELD_REQUIRED,
    "blank": ErrorCode.FIELD_REQUIRED,
    "null": ErrorCode.FIELD_REQUIRED,
    "empty": ErrorCode.FIELD_REQUIRED,
    "max_length": ErrorCode.FIELD_TOO_LONG,
    "min_length": ErrorCode.FIELD_TOO_SHORT,
    "max_value": ErrorCode.FIELD_OUT_OF_RANGE,
    "min_value": ErrorCode.FIELD_OUT_OF_RANGE,
    "max_digits": ErrorCode.FIELD_OUT_OF_RANGE,
    "max_decimal_places": ErrorCode.FIELD_INVALID_FORMAT,
    "date": ErrorCode.FIELD_INVALID_FORMAT,
    "does_not_exist": ErrorCode.RESOURCE_NOT_FOUND,
    "unique": ErrorCode.RESOURCE_ALREADY_EXISTS,
}


def custom_exception_handler(exc: Exception, context: Dict[str, Any]) -> Optional[Response]:
    request = context.get("request")
    request_id = getattr(request, "request_id", None) or get_current_request_id()

    if isinstance(exc, APIError):
        exc.request_id = request_id
        if exc.status >= 409:
            logger.warning(f"{exc.code} [{exc.status}]: {exc.message}")
        return Response(exc.to_response().to_dict(), status=exc.status)

    response = exception_handler(exc, context)
    if response is None:
        # Not an API exception; Django's 500 handling and Sentry take over
        return None

    detail = _describe(exc, response.status_code)
    return Response(ErrorResponse(error=detail, request_id=request_id).to_dict(), status=response.status_code)


def _describe(exc: Exception, status_code: int) -> ErrorDetail:
    for exc_class, code, fallback in DRF_ERRORS:
        if isinstance(exc, exc_class):
            if exc_class is exceptions.ValidationError:
                return ErrorDetail(code=code.value, message=fallback, fields=field_errors(exc.detail))
            return ErrorDetail(code=code.value, message=_message(exc, fallback))

    # Django's Http404 and PermissionDenied only show up as the response status
    if status_code == 404:
        return ErrorDetail(code=ErrorCode.RESOURCE_NOT_FOUND.value, message="Resource not found.")
    if status_code == 403:
        return ErrorDetail(code=ErrorCode.PERMISSION_DENIED.value, message="You do not have permission to perform this action.")
    return ErrorDetail(code=ErrorCode.INTERNAL_ERROR.value, message=_message(exc, "An error occurred."))


def _message(exc: Exception, fallback: str) -> str:
    detail = getattr(exc, "detail", None)
    return str(detail) if detail else fallback


def field_errors(detail: Any, prefix: str = "") -> List[FieldError]:
    """Flatten a (possibly nested) DRF error detail into dotted-path field errors."""
    if isinstance(detail, dict):
        errors = []
        for name, value in detail.items():
            errors.extend(field_errors(value, f"{prefix}{name}."))
        return errors

    if isinstance(detail, list):
        errors = []
        for index, value in enumerate(detail):
            # Lists of dicts come from many=True serializers; index them
            nested_prefix = f"{prefix}{index}." if isinstance(value, dict) else prefix
            errors.extend(field_errors(value, nested_prefix))
        return errors

    code = DRF_FIELD_CODES.get(getattr(detail, "code", None), ErrorCode.FIELD_INVALID)
    return [FieldError(field=prefix.rstrip(".") or "__all__", code=code.value, message=str(detail))]
