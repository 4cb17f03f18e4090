"""
Error types raised by the orders service.

Handlers raise these and the application converts them into
``{"success": false, "error": ...}`` responses with the matching status code.
"""
from typing import Optional, Sequence


def describe_validation_errors(errors: Sequence[dict]) -> str:
    """One readable message from pydantic-style error dicts (first error wins)."""
    if not errors:
        return "Invalid request"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid value")
    return f"{location}: {message}" if location else message


class PharmaShopError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class AuthenticationRequired(PharmaShopError):
    status_code = 401


class AuthorizationDenied(PharmaShopError):
    status_code = 403


class ValidationFailed(PharmaShopError):
    status_code = 400


class NotFound(PharmaShopError):
    status_code = 404


class Conflict(PharmaShopError):
    status_code = 409


class UpstreamFailure(PharmaShopError):
    """Object storage or database failure; ``detail`` is only shown outside production."""

    status_code = 500

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.detail = detail


class InsufficientStock(ValidationFailed):
    def __init__(self, product_name: str, available: int, requested: int):
        self.product_name = product_name
        self.available = available
        self.requested = requested
        super().__init__(f"Insufficient stock for {product_name}. Available: {available}")
