"""
Error taxonomy for the billing engine.

Services raise these; ``custom_exception_handler`` renders them as
``{success: false, error: {code, message, fields?}, request_id}``.

    400  ValidationError    bad amount, missing field, malformed payload
    404  NotFoundError
    409  ConflictError      illegal transition, overpayment, credit over-application
    422  BusinessRuleError  well-formed request the current data cannot honour

A 409 is never resolved by clamping amounts; the caller gets the conflict.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from billingengine.middleware import get_current_request_id


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    FIELD_REQUIRED = "FIELD_REQUIRED"
    FIELD_INVALID = "FIELD_INVALID"
    FIELD_TOO_SHORT = "FIELD_TOO_SHORT"
    FIELD_TOO_LONG = "FIELD_TOO_LONG"
    FIELD_OUT_OF_RANGE = "FIELD_OUT_OF_RANGE"
    FIELD_INVALID_FORMAT = "FIELD_INVALID_FORMAT"

    AUTHENTICATION_REQUIRED = "AUTHENTICATION_REQUIRED"
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    PERMISSION_DENIED = "PERMISSION_DENIED"

    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    RESOURCE_ALREADY_EXISTS = "RESOURCE_ALREADY_EXISTS"
    RESOURCE_CONFLICT = "RESOURCE_CONFLICT"
    METHOD_NOT_ALLOWED = "METHOD_NOT_ALLOWED"

    # Ledger and lifecycle
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    OVERPAYMENT = "OVERPAYMENT"
    INSUFFICIENT_CREDIT = "INSUFFICIENT_CREDIT"
    INVALID_CREDIT_SOURCE = "INVALID_CREDIT_SOURCE"
    INVOICE_ALREADY_PAID = "INVOICE_ALREADY_PAID"
    INVOICE_INVALID = "INVOICE_INVALID"
    LATE_FEE_NOT_APPLICABLE = "LATE_FEE_NOT_APPLICABLE"

    # Generation
    RECURRING_INVALID = "RECURRING_INVALID"
    DUPLICATE_GENERATION = "DUPLICATE_GENERATION"

    # Workflow
    TRIGGER_INVALID = "TRIGGER_INVALID"
    EVENT_INVALID = "EVENT_INVALID"

    BUSINESS_RULE_VIOLATION = "BUSINESS_RULE_VIOLATION"
    INTERNAL_ERROR = "INTERNAL_ERROR"


@dataclass
class FieldError:
    field: str
    code: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"field": self.field, "code": self.code, "message": self.message}


@dataclass
class ErrorDetail:
    code: str
    message: str
    fields: Optional[List[FieldError]] = None

    def to_dict(self) -> Dict[str, Any]:
        detail: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.fields:
            detail["fields"] = [f.to_dict() for f in self.fields]
        return detail


@dataclass
class ErrorResponse:
    error: ErrorDetail
    request_id: str = field(default_factory=get_current_request_id)

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "error": self.error.to_dict(), "request_id": self.request_id}


def _code_value(code: Union[ErrorCode, str]) -> str:
    return code.value if isinstance(code, ErrorCode) else code


class APIError(Exception):
    status = 500

    def __init__(
        self,
        code: Union[ErrorCode, str],
        message: str,
        status: Optional[int] = None,
        fields: Optional[List[FieldError]] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.code = _code_value(code)
        self.message = message
        if status is not None:
            self.status = status
        self.fields = fields
        self.request_id = request_id or get_current_request_id()

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(
            error=ErrorDetail(code=self.code, message=self.message, fields=self.fields),
            request_id=self.request_id,
        )


class ValidationError(APIError):
    status = 400

    def __init__(self, message: str = "Validation failed", fields: Optional[List[FieldError]] = None,
                 code: Union[ErrorCode, str] = ErrorCode.VALIDATION_ERROR, request_id: Optional[str] = None):
        super().__init__(code, message, fields=fields, request_id=request_id)


class NotFoundError(APIError):
    status = 404

    def __init__(self, message: str = "Resource not found", request_id: Optional[str] = None):
        super().__init__(ErrorCode.RESOURCE_NOT_FOUND, message, request_id=request_id)


class ConflictError(APIError):
    status = 409

    def __init__(self, message: str = "Resource conflict",
                 code: Union[ErrorCode, str] = ErrorCode.RESOURCE_CONFLICT, request_id: Optional[str] = None):
        super().__init__(code, message, request_id=request_id)


class BusinessRuleError(APIError):
    status = 422

    def __init__(self, message: str,
                 code: Union[ErrorCode, str] = ErrorCode.BUSINESS_RULE_VIOLATION, request_id: Optional[str] = None):
        super().__init__(code, message, request_id=request_id)
