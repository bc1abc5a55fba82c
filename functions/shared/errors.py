"""
Error taxonomy for the entitlement handlers.

APIError subclasses carry their HTTP status and render the
``{"ok": false, "error": ...}`` body the mobile app expects.
"""

import json
from typing import Optional


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
        body = {
            "ok": False,
            "error": self.message,
            "code": self.code,
        }
        if self.details:
            body["details"] = self.details

        return {
            "statusCode": self.status_code,
            "headers": {"Content-Type": "application/json"},
            "body": json.dumps(body),
        }


class InvalidRequestError(APIError):
    """Raised for user input that can never succeed as sent."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(
            code="invalid_request",
            message=message,
            status_code=400,
            details=details,
        )


class UnauthorizedError(APIError):
    """Raised when the bearer token is missing or invalid."""

    def __init__(self, message: str = "Invalid session."):
        super().__init__(
            code="unauthorized",
            message=message,
            status_code=401,
        )


class RateLimitExceededError(APIError):
    """Raised when a student has used up their invite quota."""

    def __init__(self, limit: int, retry_after_seconds: int):
        super().__init__(
            code="rate_limit_exceeded",
            message="Invite limit reached. Please try again tomorrow.",
            status_code=429,
            details={"limit": limit, "retry_after_seconds": retry_after_seconds},
        )
        self.retry_after_seconds = retry_after_seconds

    def to_response(self) -> dict:
        response = super().to_response()
        response["headers"]["Retry-After"] = str(self.retry_after_seconds)
        return response


class ClaimNotFoundError(APIError):
    def __init__(self):
        super().__init__(code="code_not_found", message="Code not found.", status_code=404)


class ClaimNotPaidError(APIError):
    """Raised when a claim code is redeemed before the parent's payment landed."""

    def __init__(self):
        super().__init__(
            code="not_yet_paid",
            message="This code has not been paid for yet. Please try again shortly.",
            status_code=400,
        )


class ClaimAlreadyUsedError(APIError):
    def __init__(self):
        super().__init__(code="already_used", message="This code has already been used.", status_code=409)


class ConfigurationError(APIError):
    """Raised when credentials or settings required for a request are missing.

    These are operator bugs rather than transient failures, so handlers log
    them at CRITICAL.
    """

    def __init__(self, message: str):
        super().__init__(code="not_configured", message=message, status_code=500)


class ExternalServiceError(APIError):
    """Raised when a downstream provider call fails."""

    def __init__(self, service: str, message: str, status: Optional[int] = None):
        super().__init__(
            code=f"{service}_error",
            message=message,
            status_code=502,
            details={"upstream_status": status} if status else None,
        )
        self.service = service
        self.upstream_status = status


class EntitlementStoreError(ExternalServiceError):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__("revenuecat", message, status)


class EmailDeliveryError(ExternalServiceError):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__("sendgrid", message, status)


class EmailInProgressError(APIError):
    """Raised when another delivery of the same event holds the email lease."""

    def __init__(self, claim_id: str):
        super().__init__(
            code="email_in_progress",
            message=f"Redemption email for claim {claim_id} is being sent by another delivery",
            status_code=409,
        )


class InviteConflictError(APIError):
    """Raised when concurrent invite requests for one student keep colliding."""

    def __init__(self):
        super().__init__(
            code="invite_conflict",
            message="Another invite is being sent. Please try again.",
            status_code=409,
        )
