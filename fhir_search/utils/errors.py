"""
Errors raised by the search core and their HTTP mapping.

Each ``SearchError`` subclass fixes its error code and status; raise sites
only pass a message and, for request problems, the offending parameters as
``ErrorDetail`` entries. ``setup_error_handlers`` renders all of them, plus
FastAPI validation failures and unexpected exceptions, as ``ErrorResponse``.
"""

from enum import Enum
from typing import Any, List, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from fhir_search.utils.logging import get_logger

logger = get_logger(__name__)


class ErrorCode(str, Enum):
    """Stable codes carried in error responses."""

    # Server errors (1xxx)
    SERVER_ERROR = "1000"
    CONFIGURATION_ERROR = "1001"

    # Request errors (3xxx)
    BAD_REQUEST = "3000"
    VALIDATION_ERROR = "3001"
    NOT_FOUND = "3002"

    # Search errors (6xxx)
    INVALID_SEARCH_PARAMETER = "6000"
    UNSUPPORTED_CHAIN = "6001"
    UNSUPPORTED_INCLUDE = "6002"
    INVALID_PAGE_REQUEST = "6003"


class ErrorDetail(BaseModel):
    """One offending input: where it was, its name and value, what is wrong."""

    location: Optional[str] = None
    param: Optional[str] = None
    value: Optional[Any] = None
    message: str


class ErrorResponse(BaseModel):
    code: str
    message: str
    details: Optional[List[ErrorDetail]] = None
    request_id: Optional[str] = None


class SearchError(Exception):
    """
    Base class for search engine errors.

    Subclasses set ``code``, ``status_code`` and ``default_message``; any of
    them can still be overridden per instance.
    """

    code: ErrorCode = ErrorCode.SERVER_ERROR
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message: str = "Search error"

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[List[ErrorDetail]] = None,
        code: Optional[ErrorCode] = None,
        status_code: Optional[int] = None,
    ):
        self.message = message or self.default_message
        self.details = list(details or [])
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)

    def to_response(self, request_id: Optional[str] = None) -> ErrorResponse:
        return ErrorResponse(
            code=self.code.value,
            message=self.message,
            details=self.details,
            request_id=request_id,
        )


class InvalidRequestError(SearchError):
    """The request names parameters, values or combinations the engine rejects."""

    code = ErrorCode.INVALID_SEARCH_PARAMETER
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid search request"


class UnsupportedChainError(InvalidRequestError):
    code = ErrorCode.UNSUPPORTED_CHAIN
    default_message = "Unsupported chained search parameter"


class UnsupportedIncludeError(InvalidRequestError):
    code = ErrorCode.UNSUPPORTED_INCLUDE
    default_message = "Unsupported include"


class SearchConfigurationError(SearchError):
    """The engine is wired incorrectly, e.g. a relationship to an unregistered type."""

    code = ErrorCode.CONFIGURATION_ERROR
    default_message = "Search configuration error"


def _request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)


def _validation_details(exc: RequestValidationError) -> List[ErrorDetail]:
    details = []
    for error in exc.errors():
        loc = error.get("loc") or ()
        details.append(
            ErrorDetail(
                location=".".join(str(part) for part in loc),
                param=str(loc[-1]) if loc else None,
                message=error.get("msg", "Validation error"),
            )
        )
    return details


def setup_error_handlers(app: FastAPI) -> None:
    """
    Register handlers that turn search errors into JSON error responses.

    Args:
        app: FastAPI application serving search results
    """

    @app.exception_handler(SearchError)
    async def search_error_handler(request: Request, exc: SearchError) -> JSONResponse:
        log = logger.warning if exc.status_code < 500 else logger.error
        log(
            "%s %s: %s",
            exc.code.value,
            type(exc).__name__,
            exc.message,
            extra={"request_id": _request_id(request), "status_code": exc.status_code},
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_response(_request_id(request)).model_dump(),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.warning("Request validation failed: %s", exc.errors(), extra={"request_id": _request_id(request)})
        response = ErrorResponse(
            code=ErrorCode.VALIDATION_ERROR.value,
            message="Request validation error",
            details=_validation_details(exc),
            request_id=_request_id(request),
        )
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=response.model_dump())

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        # DAO and translator failures outside per-entity translation end up here
        logger.exception("Unhandled %s during search", type(exc).__name__, extra={"request_id": _request_id(request)})
        response = ErrorResponse(
            code=ErrorCode.SERVER_ERROR.value,
            message="An unexpected error occurred",
            request_id=_request_id(request),
        )
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=response.model_dump())
