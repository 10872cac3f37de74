"""
Standardized error responses for the webhook API.
"""

from typing import Optional

from .response_utils import error_response


class APIError(Exception):
    """Base class for API errors."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 400,
        details: Optional[dict] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> dict:
        """Convert to API Gateway response format."""
        return error_response(self.status_code, self.code, self.message, details=self.details)


class WebhookVerificationError(APIError):
    """Raised when a delivery cannot be authenticated against any signing secret."""

    def __init__(self, code: str = "invalid_signature", message: str = "Invalid signature"):
        super().__init__(code=code, message=message, status_code=400)


class BillingNotConfiguredError(APIError):
    """Raised when Stripe secrets are missing from the deployment."""

    def __init__(self, message: str = "Stripe not configured"):
        super().__init__(code="stripe_not_configured", message=message, status_code=500)


class CollaboratorUnavailableError(APIError):
    """Raised when the account write fails and the provider should retry."""

    def __init__(self, message: str = "Temporary error, please retry"):
        super().__init__(code="temporary_error", message=message, status_code=500)


class InternalError(APIError):
    """Raised for internal server errors."""

    def __init__(self, message: str = "Processing failed"):
        super().__init__(code="processing_failed", message=message, status_code=500)
