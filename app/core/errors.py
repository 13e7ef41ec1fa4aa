from __future__ import annotations


class BillingError(Exception):
    """Base for every failure the billing core reports to callers.

    `code` and the short message are what clients see; anything more
    specific stays in the server log.
    """

    code = "billing_error"
    http_status = 500
    retryable = False
    default_message = "Billing error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": {"code": self.code, "message": self.message}}


class AuthenticationFailed(BillingError):
    code = "authentication_failed"
    http_status = 400
    default_message = "Invalid webhook signature"


class AlreadyApplied(BillingError):
    code = "already_applied"
    http_status = 200
    default_message = "Event already applied"


class ValidationError(BillingError):
    code = "validation_error"
    http_status = 400
    default_message = "Invalid request"


class QuotaExceeded(BillingError):
    code = "quota_exceeded"
    http_status = 403
    default_message = "Usage limit exceeded"

    def __init__(self, message: str | None = None, *, remaining: int = 0):
        super().__init__(message)
        self.remaining = remaining

    def to_dict(self) -> dict:
        body = super().to_dict()
        body.update(allowed=False, remaining=self.remaining)
        return body


class StaleEvent(BillingError):
    code = "stale_event"
    http_status = 200
    default_message = "Event is older than stored state"


class NotFound(BillingError):
    code = "not_found"
    http_status = 404
    default_message = "Not found"


class StorageFailure(BillingError):
    code = "storage_failure"
    http_status = 500
    retryable = True
    default_message = "Temporary storage failure"


class ProviderUnavailable(BillingError):
    code = "provider_unavailable"
    http_status = 503
    retryable = True
    default_message = "Payment provider unavailable, try again"


class Unauthenticated(BillingError):
    code = "unauthenticated"
    http_status = 401
    default_message = "Sign in required"


class Forbidden(BillingError):
    code = "forbidden"
    http_status = 403
    default_message = "Not allowed"
