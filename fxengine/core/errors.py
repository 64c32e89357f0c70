from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette import status
import logging

logger = logging.getLogger("fxengine.errors")


class RateEngineError(Exception):
    """Base class for every error raised by the rate engine."""


class ConfigurationError(RateEngineError):
    """Provider credential (or other required setting) is missing."""


class ProviderError(RateEngineError):
    """Upstream rate provider call failed."""


class ProviderUnavailable(ProviderError):
    """Transport level failure: connection refused, HTTP error, DNS, ..."""


class ProviderTimeout(ProviderUnavailable):
    pass


class QuotaExceeded(ProviderError):
    pass


class InvalidResponse(ProviderError):
    """Provider answered, but not with a usable success envelope."""


class RateNotFound(RateEngineError):
    def __init__(self, base: str, target: str):
        super().__init__(f"No exchange rate available for {base} -> {target}")
        self.base = base
        self.target = target


class RateValidationError(RateEngineError, ValueError):
    pass


class OwnerNotFound(RateEngineError):
    def __init__(self, kind: str, owner_id: int):
        super().__init__(f"{kind} {owner_id} not found")
        self.kind = kind
        self.owner_id = owner_id


def not_found_handler(request: Request, exc):  # type: ignore
    if getattr(exc, "status_code", status.HTTP_404_NOT_FOUND) != 404:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": "http_error", "detail": exc.detail},
        )
    detail = getattr(exc, "detail", None)
    if not detail or detail == "Not Found":
        detail = f"No route for {request.method} {request.url.path}"
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"error": "not_found", "detail": detail},
    )


def validation_error_handler(request: Request, exc: RequestValidationError):  # type: ignore
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "validation_error",
            "detail": exc.errors(),
        },
    )


def rate_validation_handler(request: Request, exc: RateValidationError):  # type: ignore
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "invalid_rate_request", "detail": str(exc)},
    )


def owner_not_found_handler(request: Request, exc: OwnerNotFound):  # type: ignore
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"error": "not_found", "detail": str(exc)},
    )


def configuration_error_handler(request: Request, exc: ConfigurationError):  # type: ignore
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "not_configured", "detail": str(exc)},
    )


def provider_error_handler(request: Request, exc: ProviderError):  # type: ignore
    logger.warning("provider error surfaced to client: %s", exc)
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={
            "error": "provider_error",
            "kind": type(exc).__name__,
            "detail": str(exc),
        },
    )


def server_error_handler(request: Request, exc: Exception):  # type: ignore
    logger.exception("unhandled exception")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "internal_error",
            "detail": "An unexpected error occurred.",
        },
    )
