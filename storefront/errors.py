"""Error taxonomy shared by the storefront services and the HTTP layer."""
from fastapi import Request
from fastapi.responses import JSONResponse


class StorefrontError(Exception):
    """Base error; subclasses pick the HTTP status used to report them."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(StorefrontError):
    status_code = 400


class AuthenticationError(StorefrontError):
    status_code = 401


class AuthorizationError(StorefrontError):
    status_code = 403


class NotFoundError(StorefrontError):
    status_code = 404


class ConflictError(StorefrontError):
    status_code = 409


class IntegrityError(StorefrontError):
    """Stored order data disagrees with what the payment gateway reports."""

    status_code = 500


class GatewayError(StorefrontError):
    """Payment gateway returned an error or an unexpected payload."""

    status_code = 502

    def __init__(self, message: str, details: dict | None = None):
        self.details = details or {}
        super().__init__(message)


class GatewayUnavailable(GatewayError):
    """Gateway unreachable or timed out. Safe to retry later."""


async def storefront_error_handler(request: Request, exc: StorefrontError) -> JSONResponse:
    headers = None
    if isinstance(exc, AuthenticationError):
        headers = {"WWW-Authenticate": "Cookie"}
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message}, headers=headers)
