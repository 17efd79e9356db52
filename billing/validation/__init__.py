"""
Centralized error taxonomy for the billing engine.

Service functions raise these; the DRF exception handler renders them.
"""

from .errors import (
    APIError,
    BusinessRuleError,
    ConflictError,
    ErrorCode,
    ErrorDetail,
    ErrorResponse,
    FieldError,
    NotFoundError,
    ValidationError,
)

__all__ = [
    "APIError",
    "BusinessRuleError",
    "ConflictError",
    "ErrorCode",
    "ErrorDetail",
    "ErrorResponse",
    "FieldError",
    "NotFoundError",
    "ValidationError",
]
