"""
Error taxonomy for the chat pipeline.

Every error carries an HTTP status and a stable machine-readable code.
Pre-stream failures are rendered as JSON error responses by the handlers
registered in app.main; failures after the stream has opened become the
final ``{"error", "code"}`` event of the stream.
"""

from typing import Any, Dict, Optional


class ChatlineError(Exception):
    """Base class for all domain errors."""

    status_code: int = 500
    code: str = "internal_error"
    default_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None, **context: Any):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "code": self.code, "success": False}


class BadRequest(ChatlineError):
    status_code = 400
    code = "bad_request"
    default_message = "Malformed request"


class Unauthorized(ChatlineError):
    status_code = 401
    code = "unauthorized"
    default_message = "Invalid or expired token"


class InsufficientCredits(ChatlineError):
    status_code = 402
    code = "insufficient_credits"
    default_message = "You have run out of credits. Upgrade to premium to keep chatting."


class UnknownModel(ChatlineError):
    status_code = 400
    code = "unknown_model"
    default_message = "Unknown model"


class ModelRequiresUpgrade(ChatlineError):
    status_code = 403
    code = "model_requires_upgrade"
    default_message = "This model is only available on the premium plan"


class Forbidden(ChatlineError):
    status_code = 403
    code = "forbidden"
    default_message = "You do not have access to this resource"


class NotFound(ChatlineError):
    status_code = 404
    code = "not_found"
    default_message = "Not found"


class PaymentError(ChatlineError):
    status_code = 400
    code = "payment_error"
    default_message = "Payment could not be processed"


class StorageError(ChatlineError):
    status_code = 500
    code = "storage_error"
    default_message = "The conversation could not be saved"


class UpstreamError(ChatlineError):
    """
    Upstream provider failed. ``partial`` holds whatever text the provider
    produced before failing (possibly empty).
    """

    status_code = 502
    code = "upstream_error"
    default_message = "The model provider failed to respond"

    def __init__(self, message: Optional[str] = None, partial: str = "", **context: Any):
        super().__init__(message, **context)
        self.partial = partial


class UpstreamTimeout(UpstreamError):
    status_code = 504
    code = "upstream_timeout"
    default_message = "The model provider stopped responding"
