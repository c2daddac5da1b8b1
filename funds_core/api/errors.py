"""
Mapping from funds_core errors to HTTP responses

Validation -> 422, authorization -> 401/403 with a generic message,
missing records -> 404, other state conflicts -> 409, concurrency -> 503.
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..errors import (
    BankingError, ValidationError, AuthorizationError, NotAdmin,
    StateError, AccountNotFound, TransactionNotFound, AttemptNotFound,
    ConcurrencyError
)
from ..logging_config import get_logger, log_action


logger = get_logger("funds_core.api")

NOT_FOUND_ERRORS = (AccountNotFound, TransactionNotFound, AttemptNotFound)


def status_for(error: BankingError) -> int:
    if isinstance(error, ValidationError):
        return 422
    if isinstance(error, NotAdmin):
        return 403
    if isinstance(error, AuthorizationError):
        return 401
    if isinstance(error, NOT_FOUND_ERRORS):
        return 404
    if isinstance(error, StateError):
        return 409
    if isinstance(error, ConcurrencyError):
        return 503
    return 400


async def banking_error_handler(request: Request, error: BankingError) -> JSONResponse:
    status_code = status_for(error)
    if isinstance(error, AuthorizationError):
        # Never reveal which check failed
        detail = "Not authorized" if isinstance(error, NotAdmin) else "Invalid credential"
        log_action(logger, "warning", f"{request.method} {request.url.path} refused",
                   action=error.code, extra={"reason": getattr(error, "reason", None)})
    else:
        detail = error.message

    return JSONResponse(status_code=status_code, content={"detail": detail, "code": error.code})


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BankingError, banking_error_handler)
