"""
Error taxonomy and standardized error responses for the webhook and ledger services
"""
import logging
import time
import traceback
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)

class ErrorDetail(BaseModel):
    code: str
    message: str
    field: Optional[str] = None
    context: Optional[Dict[str, Any]] = None

class StandardErrorResponse(BaseModel):
    success: bool = False
    error: ErrorDetail
    timestamp: float
    trace_id: Optional[str] = None
    request_id: Optional[str] = None

class ErrorCodes:
    # Webhook boundary
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"
    UNSUPPORTED_PROVIDER = "UNSUPPORTED_PROVIDER"

    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    NOT_FOUND = "NOT_FOUND"

    # Business logic
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
    TRANSACTION_NOT_FOUND = "TRANSACTION_NOT_FOUND"
    EVENT_NOT_FOUND = "EVENT_NOT_FOUND"
    UNMATCHED_REFERENCE = "UNMATCHED_REFERENCE"
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"
    IDEMPOTENCY_CONFLICT = "IDEMPOTENCY_CONFLICT"
    CURRENCY_MISMATCH = "CURRENCY_MISMATCH"

    # Ledger invariants
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    LEDGER_INVARIANT = "LEDGER_INVARIANT"

    # System and provider
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"

STATUS_CODES = {
    ErrorCodes.INVALID_SIGNATURE: 400,
    ErrorCodes.INVALID_PAYLOAD: 400,
    ErrorCodes.VALIDATION_ERROR: 400,
    ErrorCodes.INVALID_INPUT: 400,
    ErrorCodes.CURRENCY_MISMATCH: 400,
    ErrorCodes.UNSUPPORTED_PROVIDER: 404,
    ErrorCodes.NOT_FOUND: 404,
    ErrorCodes.ACCOUNT_NOT_FOUND: 404,
    ErrorCodes.TRANSACTION_NOT_FOUND: 404,
    ErrorCodes.EVENT_NOT_FOUND: 404,
    ErrorCodes.UNMATCHED_REFERENCE: 404,
    ErrorCodes.INVALID_STATE_TRANSITION: 409,
    ErrorCodes.IDEMPOTENCY_CONFLICT: 409,
    ErrorCodes.INSUFFICIENT_FUNDS: 422,
    ErrorCodes.LEDGER_INVARIANT: 422,
    ErrorCodes.INTERNAL_SERVER_ERROR: 500,
    ErrorCodes.EXTERNAL_SERVICE_ERROR: 502,
    ErrorCodes.SERVICE_UNAVAILABLE: 503,
    ErrorCodes.TIMEOUT_ERROR: 504,
}

class BusinessLogicError(Exception):
    """Expected, caller-facing failure; maps to a 4xx response"""
    def __init__(self, code: str, message: str, field: str = None, context: Dict[str, Any] = None):
        self.code = code
        self.message = message
        self.field = field
        self.context = context or {}
        super().__init__(message)

class InvalidSignatureError(BusinessLogicError):
    def __init__(self, provider: str):
        super().__init__(ErrorCodes.INVALID_SIGNATURE, "Invalid signature", context={"provider": provider})

class InvalidPayloadError(BusinessLogicError):
    def __init__(self, message: str = "Malformed webhook payload"):
        super().__init__(ErrorCodes.INVALID_PAYLOAD, message)

class AccountNotFoundError(BusinessLogicError):
    def __init__(self, account_id: str):
        super().__init__(ErrorCodes.ACCOUNT_NOT_FOUND, f"Account {account_id} not found", field="account_id")

class TransactionNotFoundError(BusinessLogicError):
    def __init__(self, transaction_id: str):
        super().__init__(ErrorCodes.TRANSACTION_NOT_FOUND, f"Transaction {transaction_id} not found", field="transaction_id")

class EventNotFoundError(BusinessLogicError):
    def __init__(self, event_id: str):
        super().__init__(ErrorCodes.EVENT_NOT_FOUND, f"Webhook event {event_id} not found")

class UnmatchedReferenceError(BusinessLogicError):
    """A provider notification names a reference the ledger does not know."""
    def __init__(self, provider: str, reference: Optional[str]):
        super().__init__(
            ErrorCodes.UNMATCHED_REFERENCE,
            f"No {provider} transaction matches reference {reference!r}",
            context={"provider": provider, "reference": reference},
        )

class InvalidStateTransitionError(BusinessLogicError):
    def __init__(self, entity: str, current: str, target: str):
        super().__init__(
            ErrorCodes.INVALID_STATE_TRANSITION,
            f"Cannot move {entity} from {current} to {target}",
            context={"current": current, "target": target},
        )

class IdempotencyConflictError(BusinessLogicError):
    def __init__(self, message: str):
        super().__init__(ErrorCodes.IDEMPOTENCY_CONFLICT, message, field="external_reference")

class InvariantViolationError(BusinessLogicError):
    """A mutation would break a ledger invariant and must not be applied."""
    def __init__(self, message: str, code: str = ErrorCodes.LEDGER_INVARIANT, context: Dict[str, Any] = None):
        super().__init__(code, message, context=context)

class ServiceError(Exception):
    """Infrastructure or dependency failure; maps to a 5xx response"""
    def __init__(self, code: str, message: str, original_error: Exception = None):
        self.code = code
        self.message = message
        self.original_error = original_error
        super().__init__(message)

class ProviderError(ServiceError):
    def __init__(self, provider: str, message: str, original_error: Exception = None):
        super().__init__(ErrorCodes.EXTERNAL_SERVICE_ERROR, f"{provider}: {message}", original_error)

class ReconciliationTimeoutError(ServiceError):
    def __init__(self, account_id: str, timeout: float):
        super().__init__(ErrorCodes.TIMEOUT_ERROR, f"Reconciliation for {account_id} exceeded {timeout}s")

def create_error_response(
    request: Request,
    error_code: str,
    message: str,
    status_code: Optional[int] = None,
    field: str = None,
    context: Dict[str, Any] = None,
) -> JSONResponse:
    """Build the standard error body, tagged with the request's trace ids"""
    body = StandardErrorResponse(
        error=ErrorDetail(code=error_code, message=message, field=field, context=context),
        timestamp=time.time(),
        trace_id=getattr(request.state, "trace_id", None),
        request_id=getattr(request.state, "request_id", None),
    )
    return JSONResponse(
        status_code=status_code or STATUS_CODES.get(error_code, 500),
        content=body.model_dump(),
    )

def _log_context(request: Request, **fields) -> Dict[str, Any]:
    return {
        "trace_id": getattr(request.state, "trace_id", None),
        "request_id": getattr(request.state, "request_id", None),
        "path": request.url.path,
        **fields,
    }

async def business_logic_exception_handler(request: Request, exc: BusinessLogicError):
    logger.warning(
        f"{request.method} {request.url.path} -> {exc.code}: {exc.message}",
        extra=_log_context(request, error_code=exc.code, field=exc.field, context=exc.context),
    )
    return create_error_response(request, exc.code, exc.message, field=exc.field, context=exc.context)

async def service_exception_handler(request: Request, exc: ServiceError):
    logger.error(
        f"{request.method} {request.url.path} -> {exc.code}: {exc.message}",
        extra=_log_context(
            request,
            error_code=exc.code,
            original_error=repr(exc.original_error) if exc.original_error else None,
        ),
    )
    return create_error_response(request, exc.code, exc.message)

async def validation_exception_handler(request: Request, exc: RequestValidationError):
    first_error = exc.errors()[0]
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    message = first_error.get("msg", "Validation error")
    logger.warning(f"Validation error on {request.url.path}: {message} ({field})")
    return create_error_response(
        request,
        ErrorCodes.VALIDATION_ERROR,
        f"Validation error on field '{field}': {message}",
        field=field,
    )

async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    code = {
        400: ErrorCodes.INVALID_INPUT,
        404: ErrorCodes.NOT_FOUND,
        503: ErrorCodes.SERVICE_UNAVAILABLE,
    }.get(exc.status_code, ErrorCodes.INTERNAL_SERVER_ERROR)
    return create_error_response(request, code, str(exc.detail), status_code=exc.status_code)

async def general_exception_handler(request: Request, exc: Exception):
    logger.error(
        f"Unexpected error on {request.url.path}: {exc}",
        extra=_log_context(request, traceback=traceback.format_exc()),
    )
    # Providers and operators never see internal detail
    return create_error_response(
        request,
        ErrorCodes.INTERNAL_SERVER_ERROR,
        "An unexpected error occurred. Please try again later.",
    )

def add_error_handlers(app):
    app.add_exception_handler(BusinessLogicError, business_logic_exception_handler)
    app.add_exception_handler(ServiceError, service_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
